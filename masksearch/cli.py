#!/usr/bin/env python3

import argparse
import sys
from typing import List, Optional

from masksearch import matcher


def _parse_bool(value: str) -> bool:
    return value.strip().lower() == "true"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="masksearch",
        description="Find and outline every occurrence of a mask image in a main image.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s flag.png star_mask.png result.png
  %(prog)s flag.png star_mask.png result.png true 50 64
  %(prog)s flag.png star_mask.png result.png --tolerance 16 --workers 4
        """,
    )
    parser.add_argument("main_image", help="Image to search in")
    parser.add_argument("mask_image", help="Mask image to search for")
    parser.add_argument("output_image", help="Where to write the annotated image")
    parser.add_argument(
        "is_mask",
        nargs="?",
        type=_parse_bool,
        default=True,
        help="Treat the search image as a mask (true/false, default: true)",
    )
    parser.add_argument(
        "match_percent",
        nargs="?",
        type=int,
        default=None,
        help=f"Required net match percentage (default: {matcher.DEFAULT_MATCH_PERCENT})",
    )
    parser.add_argument(
        "tolerance",
        nargs="?",
        type=int,
        default=None,
        help=f"Per-channel color tolerance (default: {matcher.DEFAULT_TOLERANCE})",
    )
    parser.add_argument(
        "--match-percent",
        dest="match_percent_opt",
        type=int,
        default=None,
        help="Same as the match_percent positional; takes precedence.",
    )
    parser.add_argument(
        "--tolerance",
        dest="tolerance_opt",
        type=int,
        default=None,
        help="Same as the tolerance positional; takes precedence.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Scoring threads (default: ${matcher.WORKERS_ENV} or CPU count).",
    )
    parser.add_argument(
        "--no-output",
        action="store_true",
        help="Only print the report; do not write the annotated image.",
    )
    return parser


def _pick(option: Optional[int], positional: Optional[int], default: int) -> int:
    if option is not None:
        return option
    if positional is not None:
        return positional
    return default


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    match_percent = _pick(
        args.match_percent_opt, args.match_percent, matcher.DEFAULT_MATCH_PERCENT
    )
    tolerance = _pick(args.tolerance_opt, args.tolerance, matcher.DEFAULT_TOLERANCE)
    if not args.is_mask:
        print("Note: exact sub-image search is not supported; treating search image as a mask.")

    try:
        payload = matcher.find_mask_in_image(
            main_image_path=args.main_image,
            mask_image_path=args.mask_image,
            output_image_path=None if args.no_output else args.output_image,
            match_percent=match_percent,
            tolerance=tolerance,
            workers=args.workers,
        )
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(matcher.format_match_report(payload))
    return 0


if __name__ == "__main__":
    sys.exit(main())
