# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pytest",
#     "xopen",
# ]
# ///
"""
Pytest fixtures and configuration for the FASTQ trimmer tests.

Provides record factories, on-disk (gzipped) FASTQ writers, and a quiet
loguru configuration shared by every test module.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from xopen import xopen

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from fastq_io import FastqRecord

HIGH_QUAL = ord("I")  # Phred 40 at origin 33
LOW_QUAL = ord("#")  # Phred 2 at origin 33


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def make_record() -> Callable[..., FastqRecord]:
    """
    Build a FastqRecord from str arguments. Qualities default to all-high;
    pass `quals` explicitly to shape them.
    """

    def _make(seq: str, quals: str | None = None, name: str = "@read_001") -> FastqRecord:
        if quals is None:
            quals = chr(HIGH_QUAL) * len(seq)
        return FastqRecord(name.encode(), seq.encode(), quals.encode())

    return _make


def fastq_text(reads: list[tuple[str, str, str]]) -> str:
    """Render (name, seq, quals) triples as FASTQ text."""
    return "".join(f"{name}\n{seq}\n+\n{quals}\n" for name, seq, quals in reads)


@pytest.fixture
def write_fastq_file(temp_dir: Path) -> Callable[..., Path]:
    """Write reads to a FASTQ file in temp_dir; gzipped when the name ends in .gz."""

    def _write(filename: str, reads: list[tuple[str, str, str]]) -> Path:
        path = temp_dir / filename
        with xopen(path, "wb") as handle:
            handle.write(fastq_text(reads).encode())
        return path

    return _write


@pytest.fixture
def read_fastq_file() -> Callable[[Path], list[tuple[str, str, str]]]:
    """Read a (possibly gzipped) FASTQ file back as (name, seq, quals) triples."""

    def _read(path: Path) -> list[tuple[str, str, str]]:
        with xopen(path, "rb") as handle:
            lines = handle.read().decode().splitlines()
        assert len(lines) % 4 == 0, f"Truncated FASTQ output: {len(lines)} lines"
        triples = []
        for i in range(0, len(lines), 4):
            assert lines[i + 2] == "+"
            triples.append((lines[i], lines[i + 1], lines[i + 3]))
        return triples

    return _read


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
