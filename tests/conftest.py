# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the paired-end BAM utilities.

Provides a mock alignment record carrying the fields the classifiers read, an
in-memory sink, helpers that build proper pairs, and small SAM/BAM fixture
files written with pysam.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

READ_LEN = 20

# SAM flag bits
PAIRED = 0x1
PROPER_PAIR = 0x2
UNMAPPED = 0x4
MATE_UNMAPPED = 0x8
REVERSE = 0x10
MATE_REVERSE = 0x20
READ1 = 0x40
READ2 = 0x80
SECONDARY = 0x100


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


class MockAlignedSegment:
    """Mock AlignedSegment exposing the attributes the classifiers use."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ACGTACGTACGTACGTACGT",
        reference_id: int = 0,
        reference_start: int = 0,
        next_reference_id: int = 0,
        next_reference_start: int = 0,
        template_length: int = 0,
        mapping_quality: int = 60,
        is_paired: bool = True,
        is_proper_pair: bool = True,
        is_reverse: bool = False,
        mate_is_reverse: bool = True,
        mate_is_unmapped: bool = False,
        is_unmapped: bool = False,
        is_secondary: bool = False,
        is_supplementary: bool = False,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        self.reference_id = reference_id
        self.reference_start = reference_start
        self.next_reference_id = next_reference_id
        self.next_reference_start = next_reference_start
        self.template_length = template_length
        self.mapping_quality = mapping_quality
        self.is_paired = is_paired
        self.is_proper_pair = is_proper_pair
        self.is_reverse = is_reverse
        self.mate_is_reverse = mate_is_reverse
        self.mate_is_unmapped = mate_is_unmapped
        self.is_unmapped = is_unmapped
        self.is_secondary = is_secondary
        self.is_supplementary = is_supplementary

    def __repr__(self) -> str:
        strand = "-" if self.is_reverse else "+"
        return f"<Mock {self.query_name} {self.reference_id}:{self.reference_start}{strand} tlen={self.template_length}>"


class ListSink:
    """Collects written records in memory."""

    def __init__(self) -> None:
        self.records: list[Any] = []

    def write(self, read: Any) -> None:
        self.records.append(read)

    @property
    def names(self) -> list[str]:
        return [r.query_name for r in self.records]


def mock_pair(
    name: str,
    start: int,
    size: int,
    reference_id: int = 0,
    left_seq: str = "ACGTACGTACGTACGTACGT",
    right_seq: str = "TCGTACGTACGTACGTACGT",
    mapping_quality: int = 60,
) -> tuple[MockAlignedSegment, MockAlignedSegment]:
    """A proper pair: forward left mate at `start`, reverse right mate ending at start + size."""
    right_start = start + max(size - READ_LEN, 0)
    left = MockAlignedSegment(
        query_name=name,
        query_sequence=left_seq,
        reference_id=reference_id,
        reference_start=start,
        next_reference_id=reference_id,
        next_reference_start=right_start,
        template_length=size,
        mapping_quality=mapping_quality,
        is_reverse=False,
        mate_is_reverse=True,
    )
    right = MockAlignedSegment(
        query_name=name,
        query_sequence=right_seq,
        reference_id=reference_id,
        reference_start=right_start,
        next_reference_id=reference_id,
        next_reference_start=start,
        template_length=-size,
        mapping_quality=mapping_quality,
        is_reverse=True,
        mate_is_reverse=False,
    )
    return left, right


def position_sorted(records: list[Any]) -> list[Any]:
    return sorted(records, key=lambda r: (r.reference_id, r.reference_start))


def create_sam_header(references: list[tuple[str, int]] | None = None) -> dict[str, Any]:
    """Create a minimal coordinate-sorted SAM header for testing."""
    references = references or [("chr1", 10_000), ("chr2", 10_000)]
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in references],
        "PG": [{"ID": "test", "PN": "split_bam_by_isize_test", "VN": "0.1.0"}],
    }


def make_read(
    name: str,
    flag: int,
    reference_id: int,
    start: int,
    next_reference_id: int,
    next_start: int,
    tlen: int,
    seq: str = "ACGTACGTACGTACGTACGT",
    mapq: int = 60,
) -> pysam.AlignedSegment:
    read = pysam.AlignedSegment()
    read.query_name = name
    read.query_sequence = seq
    read.query_qualities = [30] * len(seq)
    read.flag = flag
    read.reference_id = reference_id
    read.reference_start = start
    if not flag & UNMAPPED:
        read.cigartuples = [(0, len(seq))]
    read.mapping_quality = mapq
    read.next_reference_id = next_reference_id
    read.next_reference_start = next_start
    read.template_length = tlen
    return read


def make_pair(
    name: str,
    start: int,
    size: int,
    reference_id: int = 0,
    left_seq: str = "ACGTACGTACGTACGTACGT",
    right_seq: str = "TCGTACGTACGTACGTACGT",
    mapq: int = 60,
) -> list[pysam.AlignedSegment]:
    """Real pysam proper pair with forward R1 at `start` and reverse R2 downstream."""
    right_start = start + max(size - READ_LEN, 0)
    left = make_read(
        name,
        PAIRED | PROPER_PAIR | MATE_REVERSE | READ1,
        reference_id,
        start,
        reference_id,
        right_start,
        size,
        seq=left_seq,
        mapq=mapq,
    )
    right = make_read(
        name,
        PAIRED | PROPER_PAIR | REVERSE | READ2,
        reference_id,
        right_start,
        reference_id,
        start,
        -size,
        seq=right_seq,
        mapq=mapq,
    )
    return [left, right]


def write_alignments(path: Path, reads: list[pysam.AlignedSegment], header: dict | None = None) -> Path:
    """Write `reads` (sorted by position) to a SAM or BAM file."""
    header = header or create_sam_header()
    mode = "wb" if path.suffix == ".bam" else "w"
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for read in position_sorted(reads):
            out.write(read)
    return path


def read_names(path: Path) -> list[str]:
    mode = "rb" if path.suffix == ".bam" else "r"
    with pysam.AlignmentFile(str(path), mode, check_sq=False) as bam:
        return [r.query_name for r in bam.fetch(until_eof=True)]


# fragment sizes of the ten-pair scenario: 2 too small, 3 too big, 5 in 100-200
SCENARIO_SIZES = [50, 120, 150, 180, 250, 300, 99, 201, 150, 150]


@pytest.fixture
def scenario_pairs() -> list[MockAlignedSegment]:
    records = []
    for i, size in enumerate(SCENARIO_SIZES):
        records.extend(mock_pair(f"pair{i:02d}", start=100 + i * 500, size=size))
    return position_sorted(records)


@pytest.fixture
def scenario_bam(temp_dir: Path) -> Path:
    """BAM with the ten-pair scenario on chr1 plus a few rejects on chr2."""
    reads = []
    for i, size in enumerate(SCENARIO_SIZES):
        reads.extend(make_pair(f"pair{i:02d}", start=100 + i * 500, size=size))
    # improper: mate unmapped
    reads.append(
        make_read("lonely", PAIRED | MATE_UNMAPPED | READ1, 1, 50, 1, 50, 0),
    )
    # not paired at all
    reads.append(make_read("single", 0, 1, 60, -1, -1, 0))
    # low mapping quality proper pair
    reads.extend(make_pair("lowq", start=500, size=150, reference_id=1, mapq=5))
    return write_alignments(temp_dir / "scenario.sorted.bam", reads)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
