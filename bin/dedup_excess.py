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
Remove excessive duplicate alignments, keeping at most LIMIT alignments that
start at any given position. Unlike ordinary duplicate removal, which keeps a
single alignment per position, this only trims pile-ups above the limit.

The first LIMIT alignments seen at a position (in input order) are kept; there
is no selection by quality. Paired-end data are treated as single-end, so mates
may be separated. The input must be coordinate sorted.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import polars as pl
from loguru import logger

from alignment_io import (
    DEBUG_EVERY,
    AlignmentSink,
    add_verbosity_flags,
    configure_logging,
    format_count,
    open_alignment,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    import pysam


@dataclass
class DedupStats:
    total: int = 0
    positions: int = 0
    kept: int = 0
    tossed: int = 0
    skipped_unmapped: int = 0
    # reads-per-position -> number of positions with that depth
    depth_histogram: Counter[int] = field(default_factory=Counter)

    @property
    def original_duplicate_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.total - self.positions) / self.total

    @property
    def new_duplicate_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.tossed / self.total


class PositionQueue:
    """Alignments sharing the current (reference id, start) position."""

    def __init__(self) -> None:
        self.position: tuple[int, int] | None = None
        self.reads: list[pysam.AlignedSegment] = []

    def offer(self, aln: pysam.AlignedSegment) -> list[pysam.AlignedSegment] | None:
        """
        Queue `aln`. When it starts a new position, the previous position's
        reads are returned so the caller can write them out.
        """
        pos = (aln.reference_id, aln.reference_start)
        released = None
        if pos != self.position:
            released = self.drain()
            self.position = pos
        self.reads.append(aln)
        return released

    def drain(self) -> list[pysam.AlignedSegment] | None:
        if not self.reads:
            return None
        released, self.reads = self.reads, []
        return released


def _write_capped(
    group: list[pysam.AlignedSegment],
    out: AlignmentSink,
    limit: int,
    stats: DedupStats,
) -> None:
    stats.positions += 1
    stats.depth_histogram[len(group)] += 1
    for aln in group[:limit]:
        out.write(aln)
    stats.kept += min(limit, len(group))
    stats.tossed += max(0, len(group) - limit)


def cap_duplicates(
    records: Iterable[pysam.AlignedSegment],
    out: AlignmentSink,
    limit: int,
    stats: DedupStats | None = None,
) -> DedupStats:
    """Stream `records` to `out`, keeping at most `limit` alignments per start position."""
    assert limit > 0, f"limit must be positive, got {limit}"
    stats = stats if stats is not None else DedupStats()
    queue = PositionQueue()

    for aln in records:
        if aln.is_unmapped:
            stats.skipped_unmapped += 1
            continue
        stats.total += 1
        if stats.total % DEBUG_EVERY == 0:
            logger.debug(f"Progress: reads={stats.total}, kept={stats.kept}, tossed={stats.tossed}")
        released = queue.offer(aln)
        if released:
            _write_capped(released, out, limit, stats)

    released = queue.drain()
    if released:
        _write_capped(released, out, limit, stats)

    assert stats.kept + stats.tossed == stats.total, (
        f"Dedup count inconsistency: kept={stats.kept}, tossed={stats.tossed}, total={stats.total}"
    )
    return stats


def format_report(stats: DedupStats) -> str:
    return "\n".join(
        [
            "",
            f" {format_count(stats.total):>12} total mapped reads",
            f" {format_count(stats.kept):>12} mapped reads retained",
            f" {format_count(stats.tossed):>12} duplicate mapped reads discarded",
            f" original duplicate rate {stats.original_duplicate_rate:.3f}",
            f" new duplicate rate {stats.new_duplicate_rate:.3f}",
            "",
        ],
    )


def histogram_frame(stats: DedupStats) -> pl.DataFrame:
    """Reads-per-position histogram, sorted by depth."""
    depths = sorted(stats.depth_histogram)
    return pl.DataFrame(
        {
            "reads_per_position": depths,
            "positions": [stats.depth_histogram[d] for d in depths],
        },
        schema={"reads_per_position": pl.Int64, "positions": pl.Int64},
    )


def positive_int(text: str) -> int:
    if not text.isdigit() or int(text) < 1:
        msg = f"{text} is not a positive integer"
        raise argparse.ArgumentTypeError(msg)
    return int(text)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Keep at most LIMIT alignments starting at any one position of a "
            "coordinate-sorted SAM/BAM/CRAM. Mates are treated independently."
        ),
    )
    p.add_argument("limit", type=positive_int, help="Maximum alignments kept per position")
    p.add_argument("in_path", help="Input SAM/BAM/CRAM (coordinate sorted)")
    p.add_argument("out_path", help="Output SAM/BAM/CRAM")
    p.add_argument(
        "--histogram",
        dest="histogram_path",
        default=None,
        help="Optional TSV of reads-per-position depth counts",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    add_verbosity_flags(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    if not Path(args.in_path).is_file():
        logger.error(f"Input file '{args.in_path}' does not exist")
        sys.exit(1)

    try:
        input_alignment = open_alignment(args.in_path, write=False, reference=args.reference)
    except (OSError, ValueError) as exc:
        logger.error(f"Unable to open input file '{args.in_path}': {exc}")
        sys.exit(1)
    try:
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template_or_header=input_alignment,
            reference=args.reference,
        )
    except (OSError, ValueError) as exc:
        input_alignment.close()
        logger.error(f"Unable to open output file '{args.out_path}': {exc}")
        sys.exit(1)

    try:
        stats = cap_duplicates(
            input_alignment.fetch(until_eof=True),
            output_alignment,
            args.limit,
        )
    finally:
        output_alignment.close()
        input_alignment.close()

    if args.histogram_path:
        histogram_frame(stats).write_csv(args.histogram_path, separator="\t")
        logger.info(f"Wrote depth histogram to '{args.histogram_path}'")

    print(format_report(stats))
    logger.success(
        f"Kept: {stats.kept} | Discarded: {stats.tossed} | Positions: {stats.positions}",
    )


if __name__ == "__main__":
    main()
