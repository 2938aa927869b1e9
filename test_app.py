"""Handler tests for the Gradio mask search app (no browser needed)"""
import numpy as np
import pytest
from PIL import Image

app = pytest.importorskip("app")

BLUE = (0, 0, 200, 255)
RED = (220, 20, 20, 255)
WHITE = (255, 255, 255, 255)
BLACK = (0, 0, 0, 255)


def _save(path, rgba):
    Image.fromarray(rgba).save(path)
    return str(path)


@pytest.fixture
def two_squares(tmp_path):
    main = np.empty((20, 30, 4), dtype=np.uint8)
    main[:] = BLUE
    main[3:6, 3:6] = RED
    main[12:15, 22:25] = RED
    mask = np.empty((5, 5, 4), dtype=np.uint8)
    mask[:] = BLACK
    mask[1:4, 1:4] = WHITE
    return _save(tmp_path / "main.png", main), _save(tmp_path / "mask.png", mask)


def _unpack(outputs):
    plot, mask_view, focus_view, report, summary, state, idx = outputs
    return plot, mask_view, focus_view, report, summary, state, idx


def test_run_search_renders_matches(two_squares):
    main_path, mask_path = two_squares
    plot, mask_view, focus_view, report, summary, state, idx = _unpack(
        app.run_search(main_path, mask_path, 90, 32)
    )
    assert idx == 0
    assert state is not None
    assert [str(r) for r in state.matches] == ["2, 2, 7, 7", "11, 21, 16, 26"]
    assert mask_view.shape == (5, 5, 3)
    assert focus_view.ndim == 3 and focus_view.shape[2] == 3
    assert "Number of matches: 2" in report
    assert "Match #1 / 2" in summary
    assert plot is not None


def test_match_navigation_wraps(two_squares):
    main_path, mask_path = two_squares
    *_, state, idx = app.run_search(main_path, mask_path, 90, 32)

    outputs = app.goto_next_match(state, idx)
    assert outputs[-1] == 1
    assert "Match #2 / 2" in outputs[4]

    outputs = app.goto_next_match(state, outputs[-1])
    assert outputs[-1] == 0

    outputs = app.goto_previous_match(state, 0)
    assert outputs[-1] == 1


def test_missing_uploads():
    outputs = app.run_search(None, None, 75, 32)
    assert outputs[4] == "Please upload a main image."
    assert outputs[5] is None


def test_navigation_without_state():
    outputs = app.goto_next_match(None, 0)
    assert "Run the search" in outputs[4]


def test_invalid_parameters_are_reported(two_squares):
    main_path, mask_path = two_squares
    outputs = app.run_search(main_path, mask_path, 75, -3)
    assert outputs[4].startswith("Error: tolerance")


def test_no_matches_summary(two_squares):
    main_path, mask_path = two_squares
    outputs = app.run_search(main_path, mask_path, 100, 32)
    assert outputs[2] is None
    assert outputs[4].startswith("No matches")
    assert "Number of matches: 0" in outputs[3]
