#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Tabulate paired-end insert sizes for one or more alignment files.

Each proper pair is counted once, from its forward-strand mate. The output is a
tab-delimited table with a `size` column covering every size in the requested
range and one count column per input file.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

import polars as pl
from loguru import logger
from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass

from alignment_io import (
    add_verbosity_flags,
    configure_logging,
    open_alignment,
    run_per_file,
)

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True)
class HistogramRange:
    """Inclusive range of insert sizes to tabulate."""

    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=500, ge=0)

    @field_validator("max_size")
    @classmethod
    def max_not_below_min(cls, v: int, info: ValidationInfo) -> int:
        if info.data and "min_size" in info.data and v < info.data["min_size"]:
            error_msg = "max_size must not be below min_size"
            raise ValueError(error_msg)
        return v


def count_insert_sizes(path: str, size_range: HistogramRange) -> dict[int, int]:
    """Insert-size counts for one file, restricted to `size_range`."""
    logger.info(f"Counting {path}...")
    counts: Counter[int] = Counter()
    with open_alignment(path, write=False) as bam:
        for aln in bam.fetch(until_eof=True):
            if aln.is_unmapped or aln.is_secondary or aln.is_supplementary:
                continue
            if not aln.is_proper_pair:
                continue
            # one count per pair: the forward mate carries the positive size
            if aln.is_reverse:
                continue
            size = aln.template_length
            if size_range.min_size <= size <= size_range.max_size:
                counts[size] += 1
    logger.debug(f"{path}: {sum(counts.values())} pairs within range")
    return dict(counts)


def column_name(path: str) -> str:
    return Path(path).stem


def build_histogram_table(
    paths: Sequence[str],
    counts: Sequence[dict[int, int]],
    size_range: HistogramRange,
) -> pl.DataFrame:
    sizes = list(range(size_range.min_size, size_range.max_size + 1))
    columns: dict[str, list[int]] = {"size": sizes}
    for path, per_size in zip(paths, counts, strict=True):
        name = column_name(path)
        if name in columns:
            name = path
        columns[name] = [per_size.get(size, 0) for size in sizes]
    return pl.DataFrame(columns)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Count paired-end insert sizes in SAM/BAM/CRAM files into one table.",
    )
    p.add_argument("paths", nargs="+", help="Input SAM/BAM/CRAM files")
    p.add_argument("-o", "--out", dest="out_path", required=True, help="Output TSV")
    p.add_argument("--min", dest="min_size", type=int, default=1, help="Smallest size (default: 1)")
    p.add_argument("--max", dest="max_size", type=int, default=500, help="Largest size (default: 500)")
    p.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        help="Number of files to count in parallel (default: 1)",
    )
    add_verbosity_flags(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        size_range = HistogramRange(min_size=args.min_size, max_size=args.max_size)
    except ValidationError as exc:
        logger.error(f"Invalid size range: {exc}")
        sys.exit(1)

    missing = [path for path in args.paths if not Path(path).is_file()]
    if missing:
        logger.error(f"Input file(s) not found: {', '.join(missing)}")
        sys.exit(1)

    counts = run_per_file(
        partial(count_insert_sizes, size_range=size_range),
        args.paths,
        jobs=max(1, args.jobs),
    )
    table = build_histogram_table(args.paths, counts, size_range)
    table.write_csv(args.out_path, separator="\t")
    logger.success(f"Wrote {table.height} sizes for {len(args.paths)} files to '{args.out_path}'")


if __name__ == "__main__":
    main()
