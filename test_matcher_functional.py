import os

import cv2
import numpy as np
import pytest
from PIL import Image

from masksearch import matcher
from masksearch.cli import main as cli_main
from masksearch.matcher import Region, ScoredCandidate, find_mask_in_image
from masksearch.pixel_grid import HIGHLIGHT, load_pixel_grid

BLUE = (0, 0, 200, 255)
RED = (220, 20, 20, 255)
WHITE = (255, 255, 255, 255)
BLACK = (0, 0, 0, 255)

PLUS = [(0, 1), (1, 0), (1, 1), (1, 2), (2, 1)]

# Near the top-left corner: an imperfect plus at (0, 0) and a perfect one at
# (0, 2) that overlaps it. A perfect plus sits in the opposite corner.
CORNER_CASE_REDS = [
    (0, 1), (1, 1), (1, 2), (2, 1),
    (0, 3), (1, 3), (1, 4), (2, 3),
    (13, 14), (14, 13), (14, 14), (14, 15), (15, 14),
]


def _write_rgba(path: os.PathLike, rgba: np.ndarray) -> str:
    Image.fromarray(rgba).save(path)
    return str(path)


def _solid(width: int, height: int, color) -> np.ndarray:
    data = np.empty((height, width, 4), dtype=np.uint8)
    data[:] = color
    return data


def _plus_mask() -> np.ndarray:
    mask = _solid(3, 3, BLACK)
    for r, c in PLUS:
        mask[r, c] = WHITE
    return mask


@pytest.fixture
def corner_case(tmp_path):
    main = _solid(16, 16, BLUE)
    for r, c in CORNER_CASE_REDS:
        main[r, c] = RED
    main_path = _write_rgba(tmp_path / "main.png", main)
    mask_path = _write_rgba(tmp_path / "mask.png", _plus_mask())
    return main_path, mask_path, tmp_path / "out.png"


def test_solid_image_all_background_mask(tmp_path):
    main_path = _write_rgba(tmp_path / "main.png", _solid(10, 10, (30, 160, 90, 255)))
    mask_path = _write_rgba(tmp_path / "mask.png", _solid(2, 2, BLACK))
    out_path = str(tmp_path / "out.png")

    payload = find_mask_in_image(
        main_path, mask_path, out_path, match_percent=50, tolerance=10
    )

    assert payload.candidate_count == 81
    assert len(payload.potential) == 81
    assert {c.score for c in payload.potential} == {4}
    assert payload.matches == [Region(0, 0, 2, 2)]

    out = load_pixel_grid(out_path)
    assert out.get_pixel(0, 0) == HIGHLIGHT
    assert out.get_pixel(1, 1) == HIGHLIGHT
    assert out.get_pixel(2, 2) != HIGHLIGHT


@pytest.mark.parametrize("mask_size", [(12, 4), (4, 12), (11, 11)])
def test_mask_larger_than_main_reports_nothing(tmp_path, mask_size):
    main = _solid(10, 10, BLUE)
    main[3:6, 3:6] = RED
    main_path = _write_rgba(tmp_path / "main.png", main)
    mask_path = _write_rgba(tmp_path / "mask.png", _solid(*mask_size, BLACK))
    out_path = str(tmp_path / "out.png")

    payload = find_mask_in_image(main_path, mask_path, out_path)

    assert payload.candidate_count == 0
    assert payload.potential == []
    assert payload.matches == []
    assert np.array_equal(load_pixel_grid(out_path).data, main)
    assert matcher.format_match_report(payload) == "Number of matches: 0"


def test_corner_matches_and_overlap_suppression(corner_case):
    main_path, mask_path, out_path = corner_case

    payload = find_mask_in_image(
        main_path, mask_path, str(out_path), match_percent=60, tolerance=32
    )

    assert payload.threshold == 5
    assert payload.potential == [
        ScoredCandidate(Region(0, 0, 3, 3), 7),
        ScoredCandidate(Region(0, 2, 3, 5), 9),
        ScoredCandidate(Region(13, 13, 16, 16), 9),
    ]
    # the higher-scoring (0, 2) placement loses to the earlier-ranked one
    assert payload.matches == [Region(0, 0, 3, 3), Region(13, 13, 16, 16)]

    out = load_pixel_grid(str(out_path))
    for row, col in [(0, 0), (0, 2), (2, 0), (2, 2), (13, 13), (15, 15)]:
        assert out.get_pixel(row, col) == HIGHLIGHT
    assert out.get_pixel(1, 4) != HIGHLIGHT


def test_repeated_runs_are_identical(corner_case):
    main_path, mask_path, out_path = corner_case
    first = find_mask_in_image(main_path, mask_path, None, 60, 32, workers=1)
    second = find_mask_in_image(main_path, mask_path, None, 60, 32, workers=3)
    assert first.matches == second.matches
    assert first.annotated == second.annotated
    assert not os.path.exists(out_path)


def test_rgb_images_are_normalized(tmp_path):
    main = np.full((12, 12, 3), (200, 0, 0), dtype=np.uint8)  # BGR blue
    main[5:8, 5:8] = (0, 0, 255)
    main_path = str(tmp_path / "main.png")
    cv2.imwrite(main_path, main)
    mask = np.zeros((5, 5, 3), dtype=np.uint8)
    mask[1:4, 1:4] = 255
    mask_path = str(tmp_path / "mask.png")
    cv2.imwrite(mask_path, mask)

    payload = find_mask_in_image(main_path, mask_path, match_percent=90)
    assert payload.matches == [Region(4, 4, 9, 9)]


def test_missing_image_raises(tmp_path):
    mask_path = _write_rgba(tmp_path / "mask.png", _plus_mask())
    with pytest.raises(RuntimeError, match="Failed to load image"):
        find_mask_in_image(str(tmp_path / "nope.png"), mask_path)


def test_undecodable_image_raises(tmp_path):
    bogus = tmp_path / "bogus.png"
    bogus.write_bytes(b"not a png")
    mask_path = _write_rgba(tmp_path / "mask.png", _plus_mask())
    with pytest.raises(RuntimeError, match="Failed to load image"):
        find_mask_in_image(str(bogus), mask_path)


def test_profile_output(monkeypatch, capsys, corner_case):
    main_path, mask_path, out_path = corner_case
    monkeypatch.setenv(matcher.PROFILE_ENV, "1")
    find_mask_in_image(main_path, mask_path, str(out_path))
    out = capsys.readouterr().out
    assert out.startswith("matcher profile:")
    for label in ("load=", "score=", "suppress=", "annotate=", "write=", "total="):
        assert label in out


def test_cli_reports_matches(capsys, corner_case):
    main_path, mask_path, out_path = corner_case
    code = cli_main([main_path, mask_path, str(out_path), "true", "60", "32"])
    assert code == 0
    assert capsys.readouterr().out.splitlines() == [
        "sub-image matched at: 0, 0, 3, 3",
        "sub-image matched at: 13, 13, 16, 16",
        "Number of matches: 2",
    ]
    assert os.path.exists(out_path)


def test_cli_options_override_positionals(capsys, corner_case):
    main_path, mask_path, out_path = corner_case
    code = cli_main(
        [
            main_path,
            mask_path,
            str(out_path),
            "true",
            "100",
            "--match-percent",
            "60",
            "--workers",
            "2",
            "--no-output",
        ]
    )
    assert code == 0
    assert capsys.readouterr().out.splitlines()[-1] == "Number of matches: 2"
    assert not os.path.exists(out_path)


def test_cli_defaults(capsys, corner_case):
    main_path, mask_path, out_path = corner_case
    # default threshold is 75% of 9, truncated to 6
    assert cli_main([main_path, mask_path, str(out_path)]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "sub-image matched at: 0, 0, 3, 3",
        "sub-image matched at: 13, 13, 16, 16",
        "Number of matches: 2",
    ]


def test_cli_errors(capsys, corner_case, tmp_path):
    main_path, mask_path, out_path = corner_case
    assert cli_main([main_path, mask_path, str(out_path), "true", "150"]) == 1
    assert "match_percent" in capsys.readouterr().out
    assert cli_main([str(tmp_path / "missing.png"), mask_path, str(out_path)]) == 1
    assert capsys.readouterr().out.startswith("Error: Failed to load image")


def test_cli_non_mask_flag_prints_note(capsys, corner_case):
    main_path, mask_path, out_path = corner_case
    assert cli_main([main_path, mask_path, str(out_path), "false", "60"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Note:")
    assert "Number of matches: 2" in out
