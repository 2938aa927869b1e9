#!/usr/bin/env python3

import argparse
import math
import statistics
import time
from typing import Dict, List, Tuple

import numpy as np

from masksearch import matcher
from masksearch.pixel_grid import PixelGrid

# name -> (main width, main height, mask side, planted copies)
CaseSpec = Tuple[int, int, int, int]
Case = Tuple[str, PixelGrid, PixelGrid]

CASE_MATRIX: Dict[str, CaseSpec] = {
    "small": (160, 120, 9, 4),
    "medium": (480, 360, 17, 8),
    "large": (960, 720, 25, 12),
}

SEED = 1234


def _percentile(sorted_vals: List[float], p: float) -> float:
    if not sorted_vals:
        return 0.0
    k = (len(sorted_vals) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_vals[int(k)]
    return sorted_vals[f] * (c - k) + sorted_vals[c] * (k - f)


def _format_ms(value_s: float) -> str:
    return f"{value_s * 1000.0:.2f} ms"


def make_star_mask(side: int) -> np.ndarray:
    """Plus-shaped white subject on the black background sentinel."""
    mask = np.zeros((side, side, 4), dtype=np.uint8)
    mask[..., 3] = 255
    mid = side // 2
    arm = max(1, side // 6)
    mask[mid - arm : mid + arm + 1, 1:-1, :3] = 255
    mask[1:-1, mid - arm : mid + arm + 1, :3] = 255
    return mask


def make_scene(
    width: int, height: int, mask: np.ndarray, copies: int, seed: int = SEED
) -> np.ndarray:
    """Noisy blue field with ``copies`` white subjects planted on a coarse grid."""
    rng = np.random.default_rng(seed)
    scene = np.empty((height, width, 4), dtype=np.uint8)
    scene[..., 0] = rng.integers(10, 40, size=(height, width))
    scene[..., 1] = rng.integers(30, 60, size=(height, width))
    scene[..., 2] = rng.integers(120, 160, size=(height, width))
    scene[..., 3] = 255

    side = mask.shape[0]
    step = side * 3
    subject = ~np.all(mask == (0, 0, 0, 255), axis=2)
    slots = [
        (r, c)
        for r in range(side, height - side, step)
        for c in range(side, width - side, step)
    ]
    order = rng.permutation(len(slots))[:copies]
    for idx in order:
        r, c = slots[idx]
        patch = scene[r : r + side, c : c + side]
        patch[subject] = (245, 245, 245, 255)
    return scene


def _resolve_cases(selected: List[str]) -> List[Case]:
    if selected:
        names = []
        for name in selected:
            if name not in CASE_MATRIX:
                raise ValueError(
                    f"Unknown case '{name}'. Available: {', '.join(CASE_MATRIX)}"
                )
            names.append(name)
    else:
        names = list(CASE_MATRIX)

    resolved: List[Case] = []
    for name in names:
        width, height, side, copies = CASE_MATRIX[name]
        mask = make_star_mask(side)
        scene = make_scene(width, height, mask, copies)
        resolved.append((name, PixelGrid(scene), PixelGrid(mask)))
    return resolved


def _run_benchmark(
    cases: List[Case],
    iterations: int,
    repeats: int,
    warmup: int,
    workers: int,
) -> Dict[str, List[float]]:
    timings: Dict[str, List[float]] = {name: [] for name, *_ in cases}

    def _run_cases(record: bool) -> None:
        for name, main, mask in cases:
            start = time.perf_counter()
            matcher.search_mask(main, mask, workers=workers)
            if record:
                timings[name].append(time.perf_counter() - start)

    for _ in range(warmup):
        _run_cases(record=False)

    for _ in range(repeats):
        for _ in range(iterations):
            _run_cases(record=True)

    return timings


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark mask search runtime.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=3,
        help="Iterations per repeat (per case).",
    )
    parser.add_argument(
        "--repeats",
        type=int,
        default=3,
        help="Repeat count for the iteration loop.",
    )
    parser.add_argument(
        "--warmup",
        type=int,
        default=1,
        help="Warmup passes before timing.",
    )
    parser.add_argument(
        "--case",
        action="append",
        default=[],
        help="Case name to benchmark (repeatable).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Scoring threads (default: matcher default).",
    )
    parser.add_argument(
        "--batch-cells",
        type=int,
        default=None,
        help="Override matcher.BATCH_CELL_BUDGET.",
    )
    args = parser.parse_args()

    if args.batch_cells is not None:
        matcher.BATCH_CELL_BUDGET = args.batch_cells

    cases = _resolve_cases(args.case)
    timings = _run_benchmark(
        cases=cases,
        iterations=args.iterations,
        repeats=args.repeats,
        warmup=args.warmup,
        workers=args.workers,
    )

    total_runs = sum(len(v) for v in timings.values())
    print(
        f"Runs: {total_runs} | cases: {len(cases)} | "
        f"iterations: {args.iterations} | repeats: {args.repeats} | warmup: {args.warmup}"
    )
    print(
        "scoring:",
        f"batch_cells={matcher.BATCH_CELL_BUDGET}",
        f"workers={args.workers if args.workers is not None else 'default'}",
    )

    def _summarize(label: str, values: List[float]) -> str:
        sorted_vals = sorted(values)
        return (
            f"{label}: median {_format_ms(statistics.median(sorted_vals))}, "
            f"mean {_format_ms(statistics.mean(sorted_vals))}, "
            f"p95 {_format_ms(_percentile(sorted_vals, 95))}, "
            f"min {_format_ms(sorted_vals[0])}, "
            f"max {_format_ms(sorted_vals[-1])}"
        )

    combined: List[float] = []
    for name, values in timings.items():
        combined.extend(values)
        print(_summarize(name, values))

    if combined:
        print(_summarize("overall", combined))


if __name__ == "__main__":
    main()
