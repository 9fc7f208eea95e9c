#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pysam",
# ]
# ///
"""
Count alignments on each reference sequence for one or more SAM/BAM/CRAM files
and write the counts as a tab-delimited table. Files do not need to be sorted or
indexed. Every alignment record is counted, including secondary and
supplementary ones; unmapped records get their own row.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import polars as pl
from loguru import logger

from alignment_io import (
    add_verbosity_flags,
    alignment_extension,
    configure_logging,
    open_alignment,
    run_per_file,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

UNMAPPED_ROW = "unmapped"


@dataclass
class ReferenceCounts:
    total: int = 0
    unmapped: int = 0
    per_reference: dict[str, int] = field(default_factory=dict)


def count_references(path: str) -> ReferenceCounts:
    logger.info(f"Working on {path}...")
    counts = ReferenceCounts()
    with open_alignment(path, write=False) as bam:
        counts.per_reference = dict.fromkeys(bam.references, 0)
        for aln in bam.fetch(until_eof=True):
            counts.total += 1
            if aln.is_unmapped:
                counts.unmapped += 1
                continue
            name = aln.reference_name
            counts.per_reference[name] = counts.per_reference.get(name, 0) + 1
    logger.debug(f"{path}: total={counts.total}, unmapped={counts.unmapped}")
    return counts


def build_count_table(
    paths: Sequence[str],
    counts: Sequence[ReferenceCounts],
) -> pl.DataFrame:
    """Rows: 'unmapped' first, then every reference name seen, sorted."""
    references = sorted({name for c in counts for name in c.per_reference})
    columns: dict[str, list] = {"reference": [UNMAPPED_ROW, *references]}
    for path, c in zip(paths, counts, strict=True):
        name = Path(path).stem
        if name in columns:
            name = path
        columns[name] = [c.unmapped, *(c.per_reference.get(ref, 0) for ref in references)]
    return pl.DataFrame(columns)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Count alignments for each reference sequence in SAM/BAM/CRAM files.",
    )
    p.add_argument("paths", nargs="+", help="Input SAM/BAM/CRAM files")
    p.add_argument("-o", "--out", dest="out_path", required=True, help="Output TSV")
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

    paths = []
    for path in args.paths:
        if alignment_extension(path) is None:
            logger.warning(f"{path} is not a SAM/BAM/CRAM file; skipping")
            continue
        if not Path(path).is_file():
            logger.error(f"Input file '{path}' does not exist")
            sys.exit(1)
        paths.append(path)
    if not paths:
        logger.error("No alignment files to count")
        sys.exit(1)

    counts = run_per_file(count_references, paths, jobs=max(1, args.jobs))
    table = build_count_table(paths, counts)
    table.write_csv(args.out_path, separator="\t")
    for path, c in zip(paths, counts, strict=True):
        logger.info(f"{path}: {c.total} total alignments")
    logger.success(f"Wrote counts for {len(paths)} files to '{args.out_path}'")


if __name__ == "__main__":
    main()
