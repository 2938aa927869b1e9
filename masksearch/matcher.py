"""
Exhaustive mask search: every placement of the mask inside the main image is
scored against the local background color under the mask, hits above the
match threshold are ranked by position and greedily reduced to a set of
non-overlapping regions, which are then outlined on a copy of the main image.

``generate_regions``, ``compute_background_pixel``, ``net_match_score`` and
``rank_regions`` are the per-placement reference forms. The pipeline runs
their vectorized counterparts (``score_row`` over the tasks from
``_build_tasks``, then ``rank_candidates``), which must agree with them exactly.
"""

from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Iterator, List, NamedTuple, Optional, Tuple

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from masksearch.pixel_grid import (
    HIGHLIGHT,
    MASK_BACKGROUND,
    Pixel,
    PixelGrid,
    load_pixel_grid,
    save_pixel_grid,
)

# ---------- configuration ----------
DEFAULT_MATCH_PERCENT = 75
DEFAULT_TOLERANCE = 32
# Upper bound on window cells (columns * mask pixels * 3 channels) scored in
# one task; keeps the sliding-window temporaries to a few tens of MB.
BATCH_CELL_BUDGET = 2_000_000
PROFILE_ENV = "MASKSEARCH_PROFILE"
WORKERS_ENV = "MASKSEARCH_WORKERS"
# Channel differences never exceed 255, so any larger tolerance behaves alike.
MAX_EFFECTIVE_TOLERANCE = 256
# A tolerance of 0 still admits exact channel equality.
MIN_EFFECTIVE_TOLERANCE = 1
FOCUS_PAD_PX = 16


# ---------- helper types ----------
class Region(NamedTuple):
    top_row: int
    top_col: int
    bottom_row: int
    bottom_col: int

    def __str__(self) -> str:
        return ", ".join(str(v) for v in self)

    @classmethod
    def parse(cls, text: str) -> "Region":
        tokens = text.replace(",", " ").split()
        if len(tokens) != 4:
            raise ValueError(f"Region needs four integers, got {text!r}")
        return cls(*(int(t) for t in tokens))


class ScoredCandidate(NamedTuple):
    region: Region
    score: int


@dataclass
class MatchPayload:
    main: PixelGrid
    mask: PixelGrid
    potential: List[ScoredCandidate]
    matches: List[Region]
    annotated: PixelGrid
    threshold: int
    match_percent: int
    tolerance: int
    candidate_count: int

    def score_of(self, region: Region) -> Optional[int]:
        for candidate in self.potential:
            if candidate.region == region:
                return candidate.score
        return None


# ---------- candidate generation ----------
def generate_regions(
    mask_width: int, mask_height: int, main_width: int, main_height: int
) -> Iterator[Region]:
    """Every in-bounds placement of the mask, row-major. Empty if it cannot fit."""
    for r in range(main_height - mask_height + 1):
        for c in range(main_width - mask_width + 1):
            yield Region(r, c, r + mask_height, c + mask_width)


def candidate_count(
    mask_width: int, mask_height: int, main_width: int, main_height: int
) -> int:
    rows = main_height - mask_height + 1
    cols = main_width - mask_width + 1
    if rows <= 0 or cols <= 0:
        return 0
    return rows * cols


# ---------- scoring ----------
def _window(main: PixelGrid, mask: PixelGrid, top_row: int, top_col: int) -> np.ndarray:
    if (
        top_row < 0
        or top_col < 0
        or top_row + mask.height > main.height
        or top_col + mask.width > main.width
    ):
        raise ValueError(
            f"Placement ({top_row}, {top_col}) of a {mask.width}x{mask.height} "
            f"mask does not fit a {main.width}x{main.height} image"
        )
    return main.data[
        top_row : top_row + mask.height, top_col : top_col + mask.width, :3
    ].astype(np.int32)


def _effective_tolerance(tolerance: int) -> int:
    return min(max(tolerance, MIN_EFFECTIVE_TOLERANCE), MAX_EFFECTIVE_TOLERANCE)


def compute_background_pixel(
    main: PixelGrid, mask: PixelGrid, top_row: int, top_col: int
) -> Pixel:
    """
    Mean color of the main image under the mask's background pixels.

    Channels are integer-truncated and alpha is zero. A mask without any
    background pixels falls back to the sentinel's RGB.
    """
    window = _window(main, mask, top_row, top_col)
    bg_mask = mask.background_mask()
    count = int(bg_mask.sum())
    if count == 0:
        return Pixel(MASK_BACKGROUND.red, MASK_BACKGROUND.green, MASK_BACKGROUND.blue, 0)
    sums = window[bg_mask].sum(axis=0, dtype=np.int64)
    red, green, blue = (int(v) // count for v in sums)
    return Pixel(red, green, blue, 0)


def net_match_score(
    main: PixelGrid,
    mask: PixelGrid,
    top_row: int,
    top_col: int,
    background: Pixel,
    tolerance: int,
) -> int:
    """
    Matches minus mismatches over every mask pixel at one placement.

    A main pixel is "within tolerance" when each RGB channel differs from
    ``background`` by strictly less than ``tolerance``. Background mask pixels
    match when within tolerance, foreground mask pixels when not.
    """
    window = _window(main, mask, top_row, top_col)
    tol = _effective_tolerance(tolerance)
    bg = np.array([background.red, background.green, background.blue], dtype=np.int32)
    within = np.all(np.abs(window - bg) < tol, axis=2)
    agree = within == mask.background_mask()
    matched = int(agree.sum())
    return matched - (int(agree.size) - matched)


def score_row(
    main_rgb: np.ndarray,
    bg_mask: np.ndarray,
    top_row: int,
    tolerance: int,
    col_start: int = 0,
    col_stop: Optional[int] = None,
) -> np.ndarray:
    """
    Net match scores for placements ``(top_row, col_start:col_stop)``.

    Vectorized form of ``compute_background_pixel`` + ``net_match_score``
    over one strip of the main image; ``main_rgb`` is the (H, W, 3) int32
    color plane and ``bg_mask`` the (h, w) background classification.
    """
    h, w = bg_mask.shape
    if col_stop is None:
        col_stop = main_rgb.shape[1] - w + 1
    ncols = col_stop - col_start
    if ncols <= 0:
        return np.zeros(0, dtype=np.int64)
    band = main_rgb[top_row : top_row + h, col_start : col_stop + w - 1]
    # (ncols, 3, h, w)
    windows = sliding_window_view(band, (h, w), axis=(0, 1))[0]

    count = int(bg_mask.sum())
    if count:
        bg = windows[:, :, bg_mask].sum(axis=2, dtype=np.int64) // count
    else:
        bg = np.zeros((ncols, 3), dtype=np.int64)
    bg = bg.astype(np.int32)[:, :, np.newaxis, np.newaxis]

    tol = _effective_tolerance(tolerance)
    within = (np.abs(windows - bg) < tol).all(axis=1)
    matched = (within == bg_mask).sum(axis=(1, 2), dtype=np.int64)
    return 2 * matched - h * w


def match_threshold(mask_width: int, mask_height: int, match_percent: int) -> int:
    return mask_width * mask_height * match_percent // 100


def _build_tasks(
    main_width: int, main_height: int, mask_width: int, mask_height: int
) -> List[Tuple[int, int, int]]:
    if not candidate_count(mask_width, mask_height, main_width, main_height):
        return []
    rows = main_height - mask_height + 1
    cols = main_width - mask_width + 1
    per_task = max(1, BATCH_CELL_BUDGET // (mask_width * mask_height * 3))
    tasks = []
    for r in range(rows):
        for start in range(0, cols, per_task):
            tasks.append((r, start, min(cols, start + per_task)))
    return tasks


def _resolve_workers(workers: Optional[int]) -> int:
    if workers is None:
        env_value = os.getenv(WORKERS_ENV, "").strip()
        if env_value:
            try:
                workers = int(env_value)
            except ValueError as exc:
                raise ValueError(
                    f"{WORKERS_ENV} must be an integer, got {env_value!r}"
                ) from exc
        else:
            workers = os.cpu_count() or 1
    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")
    return workers


def score_candidates(
    main: PixelGrid,
    mask: PixelGrid,
    tolerance: int,
    threshold: int,
    workers: Optional[int] = None,
) -> List[ScoredCandidate]:
    """
    Score every placement and keep those strictly above ``threshold``.

    Rows of placements are scored in a thread pool; each task returns its own
    list and the lists are concatenated here in task order, so the result is
    row-major no matter which task finishes first.
    """
    tasks = _build_tasks(main.width, main.height, mask.width, mask.height)
    if not tasks:
        return []
    main_rgb = main.rgb
    bg_mask = mask.background_mask()
    h, w = bg_mask.shape

    def _score_task(task: Tuple[int, int, int]) -> List[ScoredCandidate]:
        top_row, col_start, col_stop = task
        scores = score_row(main_rgb, bg_mask, top_row, tolerance, col_start, col_stop)
        hits = np.nonzero(scores > threshold)[0]
        return [
            ScoredCandidate(
                Region(top_row, col_start + int(i), top_row + h, col_start + int(i) + w),
                int(scores[i]),
            )
            for i in hits
        ]

    n_workers = min(_resolve_workers(workers), len(tasks))
    if n_workers == 1:
        results = [_score_task(task) for task in tasks]
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            results = list(pool.map(_score_task, tasks))

    potential: List[ScoredCandidate] = []
    for local in results:
        potential.extend(local)
    return potential


# ---------- ranking and suppression ----------
def rank_regions(regions: Iterable[Region]) -> List[Region]:
    """Sort by (top_row, top_col, bottom_row, bottom_col) ascending."""
    return sorted(regions, key=tuple)


def rank_candidates(candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    return sorted(candidates, key=lambda c: tuple(c.region))


def regions_overlap(a: Region, b: Region) -> bool:
    # Closed intervals: boxes that share an edge overlap.
    if a.bottom_row < b.top_row or b.bottom_row < a.top_row:
        return False
    if a.bottom_col < b.top_col or b.bottom_col < a.top_col:
        return False
    return True


def suppress_overlaps(ranked: Iterable[Region]) -> List[Region]:
    accepted: List[Region] = []
    for region in ranked:
        if any(regions_overlap(region, existing) for existing in accepted):
            continue
        accepted.append(region)
    return accepted


# ---------- annotation ----------
def draw_box(
    grid: PixelGrid,
    row: int,
    col: int,
    width: int,
    height: int,
    color: Pixel = HIGHLIGHT,
) -> None:
    """Draw a one-pixel outline spanning rows [row, row+height], cols [col, col+width]."""
    if not grid.writable:
        raise ValueError("Cannot draw on a read-only PixelGrid; use copy()")
    if (
        width < 0
        or height < 0
        or row < 0
        or col < 0
        or row + height >= grid.height
        or col + width >= grid.width
    ):
        raise ValueError(
            f"Box at ({row}, {col}) size {width}x{height} exceeds "
            f"{grid.width}x{grid.height} image"
        )
    if width == 0 and height == 0:
        # A single-pixel mask has no outline.
        return
    cv2.rectangle(
        grid.data,
        (col, row),
        (col + width, row + height),
        (color.red, color.green, color.blue, color.alpha),
        1,
    )


def annotate_matches(
    main: PixelGrid,
    matches: Iterable[Region],
    mask_width: int,
    mask_height: int,
    color: Pixel = HIGHLIGHT,
) -> PixelGrid:
    out = main.copy()
    for region in matches:
        draw_box(out, region.top_row, region.top_col, mask_width - 1, mask_height - 1, color)
    return out


# ---------- pipeline ----------
def _validate_parameters(match_percent: int, tolerance: int) -> None:
    if not 0 <= match_percent <= 100:
        raise ValueError(f"match_percent must be in [0, 100], got {match_percent}")
    if tolerance < 0:
        raise ValueError(f"tolerance must be >= 0, got {tolerance}")


def _profile_enabled() -> bool:
    profile_value = os.getenv(PROFILE_ENV, "").strip().lower()
    return profile_value not in ("", "0", "false", "no")


def _print_profile(t0: float, marks: List[Tuple[str, float]]) -> None:
    t_end = time.perf_counter()
    prev = t0
    parts = []
    for label, ts in marks:
        parts.append(f"{label}={((ts - prev) * 1000.0):.2f}ms")
        prev = ts
    parts.append(f"total={((t_end - t0) * 1000.0):.2f}ms")
    print("matcher profile:", " ".join(parts))


def search_mask(
    main: PixelGrid,
    mask: PixelGrid,
    match_percent: int = DEFAULT_MATCH_PERCENT,
    tolerance: int = DEFAULT_TOLERANCE,
    workers: Optional[int] = None,
    marks: Optional[List[Tuple[str, float]]] = None,
) -> MatchPayload:
    _validate_parameters(match_percent, tolerance)
    threshold = match_threshold(mask.width, mask.height, match_percent)

    potential = score_candidates(main, mask, tolerance, threshold, workers)
    if marks is not None:
        marks.append(("score", time.perf_counter()))

    ranked = rank_candidates(potential)
    matches = suppress_overlaps(c.region for c in ranked)
    if marks is not None:
        marks.append(("suppress", time.perf_counter()))

    annotated = annotate_matches(main, matches, mask.width, mask.height)
    if marks is not None:
        marks.append(("annotate", time.perf_counter()))

    return MatchPayload(
        main=main,
        mask=mask,
        potential=ranked,
        matches=matches,
        annotated=annotated,
        threshold=threshold,
        match_percent=match_percent,
        tolerance=tolerance,
        candidate_count=candidate_count(mask.width, mask.height, main.width, main.height),
    )


def find_mask_in_image(
    main_image_path: str,
    mask_image_path: str,
    output_image_path: Optional[str] = None,
    match_percent: int = DEFAULT_MATCH_PERCENT,
    tolerance: int = DEFAULT_TOLERANCE,
    workers: Optional[int] = None,
) -> MatchPayload:
    profile = _profile_enabled()
    t0 = time.perf_counter()
    marks: Optional[List[Tuple[str, float]]] = [] if profile else None

    main = load_pixel_grid(main_image_path)
    mask = load_pixel_grid(mask_image_path)
    if marks is not None:
        marks.append(("load", time.perf_counter()))

    payload = search_mask(main, mask, match_percent, tolerance, workers, marks)

    if output_image_path:
        save_pixel_grid(payload.annotated, output_image_path)
        if marks is not None:
            marks.append(("write", time.perf_counter()))

    if marks is not None:
        _print_profile(t0, marks)
    return payload


# ---------- reporting ----------
def format_match_report(payload: MatchPayload) -> str:
    lines = [f"sub-image matched at: {region}" for region in payload.matches]
    lines.append(f"Number of matches: {len(payload.matches)}")
    return "\n".join(lines)


def format_match_summary(payload: MatchPayload, match_index: int) -> str:
    if not payload.matches:
        return (
            f"No matches ({payload.candidate_count} placements scanned, "
            f"threshold {payload.threshold})."
        )
    idx = max(0, min(match_index, len(payload.matches) - 1))
    region = payload.matches[idx]
    score = payload.score_of(region)
    lines = [
        f"Match #{idx + 1} / {len(payload.matches)}",
        f"Region: {region}",
        f"Score: {score} / {payload.mask.width * payload.mask.height} "
        f"(threshold {payload.threshold})",
        f"Potential matches: {len(payload.potential)} of "
        f"{payload.candidate_count} placements",
    ]
    return "  \n".join(lines)


def render_match_focus(
    payload: MatchPayload, match_index: int, pad: int = FOCUS_PAD_PX
) -> np.ndarray:
    """RGB crop of the annotated image around one accepted match."""
    if not payload.matches:
        raise RuntimeError("No matches available to render")
    idx = max(0, min(match_index, len(payload.matches) - 1))
    region = payload.matches[idx]
    img = payload.annotated.data
    h, w = img.shape[:2]
    y0 = max(0, region.top_row - pad)
    x0 = max(0, region.top_col - pad)
    y1 = min(h, region.bottom_row + pad)
    x1 = min(w, region.bottom_col + pad)
    return img[y0:y1, x0:x1, :3].copy()
