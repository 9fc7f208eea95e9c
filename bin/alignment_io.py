#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Shared helpers for the alignment scripts in this directory: opening SAM/BAM/CRAM
files with the right pysam mode, loguru verbosity setup, per-file fan-out and
count formatting for the human-readable summaries.
"""

from __future__ import annotations

import sys
from multiprocessing import Pool
from typing import TYPE_CHECKING, Protocol, TypeVar

import pysam
from loguru import logger

if TYPE_CHECKING:
    import argparse
    from collections.abc import Callable, Sequence

T = TypeVar("T")

ALIGNMENT_EXTENSIONS = (".sam", ".bam", ".cram")

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000

# quietest to loudest; each -v/-q moves one step from the default
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")
DEFAULT_LOG_LEVEL = "SUCCESS"


class AlignmentSink(Protocol):
    """Anything alignments can be written to (pysam.AlignmentFile in practice)."""

    def write(self, read: pysam.AlignedSegment) -> int | None: ...


# ----------------------------- LOGGING SETUP ------------------------------- #


def log_level(verbose: int, quiet: int) -> str:
    """Loguru level for the net count of -v over -q flags, clamped at both ends."""
    index = LOG_LEVELS.index(DEFAULT_LOG_LEVEL) + verbose - quiet
    return LOG_LEVELS[max(0, min(index, len(LOG_LEVELS) - 1))]


def configure_logging(verbose: int, quiet: int) -> None:
    """Send loguru output to stderr; the run summary is logged at SUCCESS."""
    level = log_level(verbose, quiet)
    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.debug(f"Logging to stderr at {level}")


def add_verbosity_flags(p: argparse.ArgumentParser) -> None:
    """-v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)."""
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )


# ----------------------------- I/O UTILITIES ------------------------------- #


def alignment_extension(path: str) -> str | None:
    """Return the lower-cased alignment extension of `path`, or None."""
    lower = path.lower()
    for ext in ALIGNMENT_EXTENSIONS:
        if lower.endswith(ext):
            return ext
    return None


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    match alignment_extension(path):
        case ".sam":
            return "w" if write else "r"
        case ".bam":
            return "wb" if write else "rb"
        case ".cram":
            return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open an alignment file for reading or writing. Outputs take their header
    from `template_or_header`: an open input file (copied as-is) or a header
    dict. Inputs are opened without requiring @SQ lines or an index.
    """
    assert isinstance(path, str) and path, f"Path must be a non-empty string, got: {path!r}"  # noqa: PT018

    mode = _io_mode_from_ext(path, write)
    kwargs: dict[str, object] = {}
    if alignment_extension(path) == ".cram":
        if reference is None:
            logger.warning(f"No --ref given for CRAM file {path}; decoding relies on the embedded reference")
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening {path} (mode={mode})")
    if not write:
        return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)

    assert template_or_header is not None, f"Writing to '{path}' requires template_or_header but got None"
    match template_or_header:
        case pysam.AlignmentFile():
            kwargs["template"] = template_or_header
        case dict():
            kwargs["header"] = template_or_header
        case _:
            msg = (
                "Writing requires either a template AlignmentFile or a header dict, "
                f"got {type(template_or_header).__name__}"
            )
            logger.error(msg)
            raise ValueError(msg)
    return pysam.AlignmentFile(path, mode, **kwargs)


def run_per_file(
    func: Callable[[str], T],
    paths: Sequence[str],
    jobs: int = 1,
) -> list[T]:
    """
    Apply `func` to every path, preserving input order. With jobs > 1 the
    files are fanned out to a process pool; each call owns all of its state.
    """
    assert jobs >= 1, f"jobs must be at least 1, got {jobs}"
    if jobs == 1 or len(paths) <= 1:
        return [func(path) for path in paths]
    workers = min(jobs, len(paths))
    logger.info(f"Counting {len(paths)} files with {workers} worker processes")
    with Pool(processes=workers) as pool:
        return pool.map(func, paths)


# ------------------------------ FORMATTING --------------------------------- #


def format_count(n: int) -> str:
    """Thousands-separated integer, e.g. 1234567 -> '1,234,567'."""
    return f"{n:,}"


def format_percent(count: int, total: int) -> str:
    """Percentage of `total` with two decimals; 0.00% when total is zero."""
    if total <= 0:
        return "0.00%"
    return f"{count / total * 100:.2f}%"
