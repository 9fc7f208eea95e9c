#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Split a paired-end SAM/BAM/CRAM file into one output per fragment insert-size
range.

Alignments are streamed in file order, one reference sequence at a time. In the
default paired mode the forward ("left") mate of a proper pair is held until its
reverse ("right") mate arrives, and the pair is then written to every size range
that contains the fragment length. Rejected alignments may be collected in a
separate "fail" file. A summary of counts is printed at the end of the run.

Outputs follow the input order within each reference sequence and should be
re-sorted and re-indexed before downstream use.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass as std_dataclass
from dataclasses import field
from enum import Enum, auto
from itertools import groupby
from operator import attrgetter
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

from loguru import logger
from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass

from alignment_io import (
    DEBUG_EVERY,
    AlignmentSink,
    add_verbosity_flags,
    alignment_extension,
    configure_logging,
    format_count,
    format_percent,
    open_alignment,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    import pysam

__version__ = "1.1.0"

# ------------------------------- CONSTANTS -------------------------------- #

DEFAULT_MIN_SIZE: int = 100
DEFAULT_MAX_SIZE: int = 200

# MNase cuts almost exclusively at A/T dinucleotides
AT_BASES = frozenset("AaTt")

SIZE_RANGE_PATTERN = re.compile(r"^(\d+)-(\d+)$")


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class SizeRange:
    """Inclusive fragment-length range."""

    min_size: int = Field(ge=0)
    max_size: int = Field(ge=0)

    @field_validator("max_size")
    @classmethod
    def max_not_below_min(cls, v: int, info: ValidationInfo) -> int:
        if info.data and "min_size" in info.data and v < info.data["min_size"]:
            error_msg = f"maximum size {v} is below minimum size {info.data['min_size']}"
            raise ValueError(error_msg)
        return v

    def contains(self, length: int) -> bool:
        return self.min_size <= length <= self.max_size

    @property
    def label(self) -> str:
        return f"{self.min_size}_{self.max_size}"


def parse_size_range(text: str) -> SizeRange:
    """Parse a `<min>-<max>` command-line size range."""
    match = SIZE_RANGE_PATTERN.match(text.strip())
    if match is None:
        msg = f"Improperly formatted size range [{text}], expected <min>-<max>"
        raise argparse.ArgumentTypeError(msg)
    try:
        return SizeRange(min_size=int(match.group(1)), max_size=int(match.group(2)))
    except ValidationError as exc:
        msg = f"Invalid size range [{text}]: {exc.errors()[0]['msg']}"
        raise argparse.ArgumentTypeError(msg) from exc


@dataclass(frozen=True)
class SplitConfig:
    """Classification settings shared by every record of one run."""

    size_ranges: list[SizeRange] = Field(min_length=1)
    min_quality: int = Field(default=0, ge=0, le=255)
    at_ends: bool = False
    quick: bool = False

    @property
    def lowest(self) -> int:
        return min(r.min_size for r in self.size_ranges)

    @property
    def highest(self) -> int:
        return max(r.max_size for r in self.size_ranges)

    def within_bounds(self, length: int) -> bool:
        return self.lowest <= length <= self.highest


class Verdict(Enum):
    """What the scan loop should do with the records of a Decision."""

    ACCEPT = auto()  # completed pair (or quick-mode read) goes to the size buckets
    FAIL = auto()  # written to the fail file, if one was requested
    HOLD = auto()  # left mate buffered until its right mate shows up
    IGNORE = auto()  # dropped without output


class Decision(NamedTuple):
    verdict: Verdict
    records: tuple[pysam.AlignedSegment, ...] = ()


@std_dataclass
class SplitStats:
    """Tallies for one run. Pair percentages are relative to `pairs_seen`."""

    reads_seen: int = 0
    pairs_seen: int = 0
    quality_failed: int = 0
    non_paired: int = 0
    improper: int = 0
    improper_diff_reference: int = 0
    improper_mate_unmapped: int = 0
    improper_same_strand: int = 0
    malformed_pairs: int = 0
    too_small: int = 0
    too_big: int = 0
    just_right: int = 0
    non_at_end: int = 0
    missing_left_mate: int = 0
    missing_right_mate: int = 0
    skipped_unmapped: int = 0
    skipped_nonprimary: int = 0

    @property
    def proper(self) -> int:
        return self.too_small + self.too_big + self.just_right

    @property
    def failed_to_write(self) -> int:
        return self.non_at_end + self.missing_right_mate + self.missing_left_mate

    def percent_of_pairs(self, count: int) -> str:
        return format_percent(count, self.pairs_seen)


class PairBuffer:
    """
    Left mates waiting for their right mate, keyed by query name, plus the
    names of left mates already rejected by the read checks so their right
    mates are not mistaken for out-of-order reads. Scoped to a single
    reference sequence: whatever is left at the end of that reference is
    flushed as orphans.
    """

    def __init__(self) -> None:
        self._pending: dict[str, pysam.AlignedSegment] = {}
        self._rejected: set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, qname: str) -> bool:
        return qname in self._pending

    def hold(self, aln: pysam.AlignedSegment) -> None:
        if aln.query_name in self._pending:
            logger.debug(f"Replacing buffered left mate for '{aln.query_name}'")
        self._pending[aln.query_name] = aln

    def pop(self, qname: str) -> pysam.AlignedSegment | None:
        return self._pending.pop(qname, None)

    def reject(self, qname: str) -> None:
        self._rejected.add(qname)

    def pop_rejected(self, qname: str) -> bool:
        """True (once) if the left mate named `qname` was rejected on this reference."""
        if qname in self._rejected:
            self._rejected.remove(qname)
            return True
        return False

    def flush(self) -> int:
        """Discard every pending left mate and return how many there were."""
        orphans = len(self._pending)
        if orphans:
            logger.debug(f"Flushing {orphans} left mates without a right mate")
        self._pending.clear()
        self._rejected.clear()
        return orphans


@std_dataclass
class SizeBucket:
    size_range: SizeRange
    sink: AlignmentSink
    path: str = ""
    pairs_written: int = 0


@std_dataclass
class SizeBucketRouter:
    """Fan accepted pairs out to every bucket whose range holds the fragment."""

    buckets: list[SizeBucket] = field(default_factory=list)

    def route(self, records: Sequence[pysam.AlignedSegment]) -> int:
        """
        Write `records` (left mate first) to each matching bucket and return
        the number of buckets written. Only a forward first record bumps a
        bucket's pair count, so quick-mode right mates are not counted twice.
        """
        assert records, "route() needs at least one record"
        first = records[0]
        length = abs(first.template_length)
        matched = 0
        for bucket in self.buckets:
            if not bucket.size_range.contains(length):
                continue
            for aln in records:
                bucket.sink.write(aln)
            if not first.is_reverse:
                bucket.pairs_written += 1
            matched += 1
        if matched == 0:
            logger.debug(
                f"No size range holds fragment '{first.query_name}' of length {length}; dropped",
            )
        return matched


# ------------------------------ CLASSIFIER --------------------------------- #


def has_at_end(aln: pysam.AlignedSegment) -> bool:
    """True when the read's sequence begins with A or T (a missing sequence fails)."""
    seq = aln.query_sequence or "N"
    return seq[0] in AT_BASES


def tally_improper(aln: pysam.AlignedSegment, stats: SplitStats) -> None:
    """
    Record why a paired read is not a proper pair. Both mates reach this, so
    the different-reference and same-strand reasons only count from the mate
    with the lower reference id / start. An unmapped mate never reaches the
    reference comparison.
    """
    if aln.mate_is_unmapped:
        stats.pairs_seen += 1
        stats.improper += 1
        stats.improper_mate_unmapped += 1
    elif aln.reference_id != aln.next_reference_id:
        if aln.reference_id < aln.next_reference_id:
            stats.pairs_seen += 1
            stats.improper += 1
            stats.improper_diff_reference += 1
    elif aln.is_reverse == aln.mate_is_reverse:
        if aln.reference_start < aln.next_reference_start:
            stats.pairs_seen += 1
            stats.improper += 1
            stats.improper_same_strand += 1


def _screen_read(aln: pysam.AlignedSegment, config: SplitConfig, stats: SplitStats) -> Decision | None:
    """Checks shared by both modes; None means the read is a usable proper pair mate."""
    stats.reads_seen += 1

    if aln.mapping_quality < config.min_quality:
        stats.quality_failed += 1
        return Decision(Verdict.FAIL, (aln,))

    if not aln.is_paired:
        stats.non_paired += 1
        return Decision(Verdict.FAIL, (aln,))

    if not aln.is_proper_pair:
        tally_improper(aln, stats)
        return Decision(Verdict.FAIL, (aln,))

    # flagged proper but no usable mate coordinates
    if aln.mate_is_unmapped or aln.next_reference_id < 0:
        stats.malformed_pairs += 1
        logger.debug(f"Proper pair '{aln.query_name}' has no mate position; failing it")
        return Decision(Verdict.FAIL, (aln,))

    return None


def classify_paired(
    aln: pysam.AlignedSegment,
    config: SplitConfig,
    buffer: PairBuffer,
    stats: SplitStats,
) -> Decision:
    """
    Decide the fate of one alignment in paired mode.

    Left (forward) mates are size-checked and buffered; a right (reverse) mate
    completes the pair found in the buffer, which is then AT-checked (when
    enabled) and accepted as a (left, right) tuple. A pair with one mate failing
    the read checks is failed as a whole.
    """
    screened = _screen_read(aln, config, stats)
    if screened is not None:
        if not aln.is_reverse:
            buffer.reject(aln.query_name)
            return screened
        # a held left mate cannot be written without this one
        left = buffer.pop(aln.query_name)
        if left is not None:
            return Decision(screened.verdict, (*screened.records, left))
        return screened

    if aln.is_reverse:
        left = buffer.pop(aln.query_name)
        if left is None:
            if buffer.pop_rejected(aln.query_name):
                return Decision(Verdict.FAIL, (aln,))
            # the left mate normally failed the size check; if this mate's
            # size says it should have passed, the input is out of order
            if config.within_bounds(abs(aln.template_length)):
                stats.missing_left_mate += 1
                return Decision(Verdict.FAIL, (aln,))
            return Decision(Verdict.IGNORE, (aln,))

        if config.at_ends and not (has_at_end(left) and has_at_end(aln)):
            stats.non_at_end += 1
            return Decision(Verdict.FAIL, (aln, left))

        return Decision(Verdict.ACCEPT, (left, aln))

    stats.pairs_seen += 1
    size = aln.template_length
    if size < config.lowest:
        stats.too_small += 1
        return Decision(Verdict.FAIL, (aln,))
    if size > config.highest:
        stats.too_big += 1
        return Decision(Verdict.FAIL, (aln,))

    stats.just_right += 1
    buffer.hold(aln)
    return Decision(Verdict.HOLD, (aln,))


def classify_quick(
    aln: pysam.AlignedSegment,
    config: SplitConfig,
    stats: SplitStats,
) -> Decision:
    """
    Decide the fate of one alignment without waiting for its mate.

    Each read is judged on the magnitude of its own template length and, with
    AT filtering, on its own first base only. Mates can therefore part ways:
    one may be accepted while the other fails. Size tallies count the forward
    mate only so they stay comparable with `pairs_seen`.
    """
    screened = _screen_read(aln, config, stats)
    if screened is not None:
        return screened

    is_left = not aln.is_reverse
    if is_left:
        stats.pairs_seen += 1

    size = abs(aln.template_length)
    if size < config.lowest:
        if is_left:
            stats.too_small += 1
        return Decision(Verdict.FAIL, (aln,))
    if size > config.highest:
        if is_left:
            stats.too_big += 1
        return Decision(Verdict.FAIL, (aln,))
    if is_left:
        stats.just_right += 1

    if config.at_ends and not has_at_end(aln):
        stats.non_at_end += 1
        return Decision(Verdict.FAIL, (aln,))

    return Decision(Verdict.ACCEPT, (aln,))


# ------------------------------ CORE LOGIC --------------------------------- #


def iter_reference_scans(
    records: Iterable[pysam.AlignedSegment],
) -> Iterator[tuple[int, Iterator[pysam.AlignedSegment]]]:
    """Group a position-sorted stream into consecutive runs per reference id."""
    yield from groupby(records, key=attrgetter("reference_id"))


def split_stream(
    records: Iterable[pysam.AlignedSegment],
    config: SplitConfig,
    router: SizeBucketRouter,
    failed: AlignmentSink | None = None,
    stats: SplitStats | None = None,
    reference_names: Sequence[str] | None = None,
) -> SplitStats:
    """
    Classify every alignment of `records` and write it where it belongs.

    Unmapped and secondary/supplementary alignments are skipped. After each
    reference sequence (and after the last) the pair buffer is flushed and its
    leftovers are counted as missing right mates.
    """
    stats = stats if stats is not None else SplitStats()
    buffer = PairBuffer()
    processed = 0

    for tid, scan in iter_reference_scans(records):
        name = (
            reference_names[tid]
            if reference_names is not None and 0 <= tid < len(reference_names)
            else str(tid)
        )
        logger.info(f"Splitting reads on sequence {name}")

        for aln in scan:
            if aln.is_unmapped:
                stats.skipped_unmapped += 1
                continue
            if aln.is_secondary or aln.is_supplementary:
                stats.skipped_nonprimary += 1
                continue

            if config.quick:
                decision = classify_quick(aln, config, stats)
            else:
                decision = classify_paired(aln, config, buffer, stats)

            match decision.verdict:
                case Verdict.ACCEPT:
                    router.route(decision.records)
                case Verdict.FAIL:
                    if failed is not None:
                        for rec in decision.records:
                            failed.write(rec)
                case Verdict.HOLD | Verdict.IGNORE:
                    pass

            processed += 1
            if processed % DEBUG_EVERY == 0:
                logger.debug(
                    f"Progress: reads={stats.reads_seen}, pairs={stats.pairs_seen}, "
                    f"buffered={len(buffer)}",
                )

        stats.missing_right_mate += buffer.flush()

    assert len(buffer) == 0, "pair buffer must be empty after the last reference"
    assert stats.improper == (
        stats.improper_diff_reference + stats.improper_mate_unmapped + stats.improper_same_strand
    ), f"Improper pair breakdown does not add up: {stats}"

    logger.info(
        f"Split totals: reads={stats.reads_seen}, pairs={stats.pairs_seen}, "
        f"acceptable={stats.just_right}, orphans={stats.missing_right_mate}",
    )
    return stats


# ------------------------------- REPORTING --------------------------------- #


def format_report(stats: SplitStats, config: SplitConfig, router: SizeBucketRouter) -> str:
    """Human-readable run summary; percentages are of total pairs."""
    pct = stats.percent_of_pairs
    lines = [
        "",
        f" There were {format_count(stats.reads_seen)} total mapped reads",
        f" There were {format_count(stats.quality_failed)} reads that failed"
        f" minimum quality of {config.min_quality}",
    ]
    if stats.non_paired:
        lines.append(f" There were {format_count(stats.non_paired)} non-paired reads")
    lines.append(f" There were {format_count(stats.pairs_seen)} total alignment pairs")

    optional = [
        (stats.improper, "   {} ({}) pairs were improper"),
        (stats.improper_mate_unmapped, "     {} ({}) pairs had an unmapped mate"),
        (stats.improper_same_strand, "     {} ({}) pairs had mates on the same strand"),
        (stats.improper_diff_reference, "     {} ({}) pairs had mates on different chromosomes"),
    ]
    lines.extend(template.format(format_count(n), pct(n)) for n, template in optional if n)

    lines.extend(
        [
            f"   {format_count(stats.proper)} ({pct(stats.proper)}) pairs were proper",
            f"     {format_count(stats.too_small)} ({pct(stats.too_small)}) pairs had"
            f" insertions below the minimum {config.lowest} bp",
            f"     {format_count(stats.too_big)} ({pct(stats.too_big)}) pairs had"
            f" insertions above the maximum {config.highest} bp",
            f"     {format_count(stats.just_right)} ({pct(stats.just_right)}) pairs had"
            " insertions of acceptable size",
        ],
    )

    failures = [
        (stats.failed_to_write, "   {} ({}) pairs failed to write"),
        (stats.non_at_end, "     {} ({}) pairs had one or more non-AT ends"),
        (stats.missing_right_mate, "     {} ({}) pairs had a missing right mate"),
        (stats.missing_left_mate, "     {} ({}) pairs had a missing left mate"),
        (stats.malformed_pairs, "   {} ({}) proper pair reads lacked mate information"),
    ]
    lines.extend(template.format(format_count(n), pct(n)) for n, template in failures if n)

    lines.extend(
        f" {format_count(b.pairs_written)} ({pct(b.pairs_written)}) pairs were written"
        f" to file '{b.path}'"
        for b in router.buckets
    )
    lines.append("")
    return "\n".join(lines)


# ----------------------------- OUTPUT NAMING ------------------------------- #


def default_out_base(in_path: str) -> str:
    """Input path without its alignment extension and any '.sorted' tag."""
    base = in_path
    ext = alignment_extension(base)
    if ext is not None:
        base = base[: -len(ext)]
    return base.replace(".sorted", "")


def bucket_path(base: str, size_range: SizeRange, ext: str) -> str:
    return f"{base}.{size_range.label}{ext}"


def fail_path(path: str) -> str:
    return path if alignment_extension(path) is not None else f"{path}.bam"


def resolve_size_ranges(args: argparse.Namespace) -> list[SizeRange]:
    """
    --size wins over --min/--max; otherwise fall back to the defaults. A range
    given more than once is kept once, since each range owns one output file.
    """
    if args.size:
        if args.min_size is not None or args.max_size is not None:
            logger.warning("--size given; ignoring --min/--max")
        ranges: dict[tuple[int, int], SizeRange] = {}
        for size_range in args.size:
            key = (size_range.min_size, size_range.max_size)
            if key in ranges:
                logger.warning(f"Size range {size_range.min_size}-{size_range.max_size} given more than once")
                continue
            ranges[key] = size_range
        return list(ranges.values())
    min_size, max_size = args.min_size, args.max_size
    if min_size is None:
        min_size = DEFAULT_MIN_SIZE
        logger.info(f"Using default minimum size of {DEFAULT_MIN_SIZE} bp")
    if max_size is None:
        max_size = DEFAULT_MAX_SIZE
        logger.info(f"Using default maximum size of {DEFAULT_MAX_SIZE} bp")
    return [SizeRange(min_size=min_size, max_size=max_size)]


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Split a paired-end SAM/BAM/CRAM file by fragment insert size.\n"
            "Pairs whose insert size falls inside a --size range (inclusive) are written to\n"
            "<out>.<min>_<max>.<ext>; ranges may overlap. Outputs need re-sorting and indexing."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument("input", nargs="?", default=None, help="Input SAM/BAM/CRAM (or use --in)")
    p.add_argument("-i", "--in", dest="in_path", default=None, help="Input SAM/BAM/CRAM")
    p.add_argument(
        "-o",
        "--out",
        dest="out_base",
        default=None,
        help="Base name for output files (default: input name without extension)",
    )
    p.add_argument(
        "-f",
        "--fail",
        dest="fail_path",
        default=None,
        help="Optional file collecting every rejected alignment",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Size selection
    p.add_argument(
        "--min",
        dest="min_size",
        type=int,
        default=None,
        help=f"Minimum fragment size (default: {DEFAULT_MIN_SIZE})",
    )
    p.add_argument(
        "--max",
        dest="max_size",
        type=int,
        default=None,
        help=f"Maximum fragment size (default: {DEFAULT_MAX_SIZE})",
    )
    p.add_argument(
        "--size",
        action="append",
        type=parse_size_range,
        default=[],
        metavar="MIN-MAX",
        help="Size range to write to its own file; repeatable, overrides --min/--max",
    )

    # Filters
    p.add_argument(
        "--at",
        dest="at_ends",
        action="store_true",
        help="Require both mates to begin with an A or T (MNase cut ends)",
    )
    p.add_argument(
        "--qual",
        dest="min_quality",
        type=int,
        default=0,
        help="Minimum mapping quality (default: 0)",
    )
    p.add_argument(
        "--quick",
        action="store_true",
        help=(
            "Judge every read on its own without pairing mates. Faster and lighter, "
            "but may write only one mate of a pair."
        ),
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    add_verbosity_flags(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    in_path = args.in_path or args.input
    if not in_path:
        parser.print_usage(sys.stderr)
        logger.error("An input alignment file must be specified")
        sys.exit(1)
    if not Path(in_path).is_file():
        logger.error(f"Input file '{in_path}' does not exist")
        sys.exit(1)

    try:
        config = SplitConfig(
            size_ranges=resolve_size_ranges(args),
            min_quality=args.min_quality,
            at_ends=args.at_ends,
            quick=args.quick,
        )
    except ValidationError as exc:
        logger.error(f"Invalid configuration: {exc}")
        sys.exit(1)
    logger.debug(f"SplitConfig: {config}")
    if config.quick and config.at_ends:
        logger.warning("--quick with --at checks each mate on its own; pairs may be split")

    ext = alignment_extension(in_path)
    out_base = args.out_base or default_out_base(in_path)

    try:
        input_alignment = open_alignment(in_path, write=False, reference=args.reference)
    except (OSError, ValueError) as exc:
        logger.error(f"Unable to open input file '{in_path}': {exc}")
        sys.exit(1)

    opened: list[pysam.AlignmentFile] = []
    router = SizeBucketRouter()
    failed = None
    try:
        for size_range in config.size_ranges:
            path = bucket_path(out_base, size_range, ext)
            sink = open_alignment(
                path,
                write=True,
                template_or_header=input_alignment,
                reference=args.reference,
            )
            opened.append(sink)
            router.buckets.append(SizeBucket(size_range=size_range, sink=sink, path=path))
            logger.info(f"Output file '{path}'")
        if args.fail_path:
            path = fail_path(args.fail_path)
            failed = open_alignment(
                path,
                write=True,
                template_or_header=input_alignment,
                reference=args.reference,
            )
            opened.append(failed)
            logger.info(f"Failed alignments file '{path}'")
    except (OSError, ValueError) as exc:
        for handle in opened:
            handle.close()
        input_alignment.close()
        logger.error(f"Unable to open output file: {exc}")
        sys.exit(1)

    try:
        stats = split_stream(
            input_alignment.fetch(until_eof=True),
            config,
            router,
            failed=failed,
            reference_names=input_alignment.references,
        )
    finally:
        for handle in opened:
            handle.close()
        input_alignment.close()

    print(format_report(stats, config, router))
    logger.success(
        "Finished splitting: "
        + " | ".join(f"{b.size_range.label}: {b.pairs_written}" for b in router.buckets)
        + ". Output files need to be sorted and indexed.",
    )


if __name__ == "__main__":
    main()
