# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "xopen",
# ]
# ///
"""
FASTQ record type and line-oriented (optionally compressed) record I/O.

Records are kept as raw bytes end to end: the trimmers slice sequences and
qualities by position and never need to decode them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from loguru import logger
from xopen import xopen

if TYPE_CHECKING:
    from collections.abc import Iterator

# ------------------------------- CONSTANTS -------------------------------- #

NAME_PREFIX = b"@"
SEPARATOR_LINE = b"+"
LINE_TERMINATORS = b"\r\n"


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class FastqRecord:
    """One sequencing read: identifier line, bases, and per-base qualities."""

    name: bytes
    seq: bytes
    quals: bytes

    def __post_init__(self) -> None:
        if len(self.seq) != len(self.quals):
            msg = (
                f"Sequence/quality length mismatch for {self.name!r}: "
                f"seq={len(self.seq)}, qual={len(self.quals)}"
            )
            raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.seq)

    def slice(self, start: int, end: int, name: bytes | None = None) -> FastqRecord:
        """Return the [start, end) sub-read, optionally under a new identifier."""
        return FastqRecord(
            self.name if name is None else name,
            self.seq[start:end],
            self.quals[start:end],
        )

    def display_name(self) -> str:
        """Identifier without the '@' prefix, for log messages."""
        return self.name.removeprefix(NAME_PREFIX).decode(errors="replace")


# ----------------------------- I/O UTILITIES ------------------------------- #


def open_fastq(path: str, write: bool) -> BinaryIO:  # noqa: FBT001
    """
    Open a FASTQ path in binary mode through xopen.

    Reading sniffs gzip/bzip2/xz/zstd from the file content; writing picks the
    compression from the extension. "-" maps to stdin/stdout.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )
    mode = "wb" if write else "rb"
    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    return xopen(path, mode)


def _chomp(line: bytes) -> bytes:
    return line.rstrip(LINE_TERMINATORS)


def read_fastq(handle: BinaryIO) -> Iterator[FastqRecord]:
    """
    Decode 4-line FASTQ records from a binary line reader.

    A truncated or malformed record ends the stream: it is reported as a
    warning and neither it nor anything after it is yielded.
    """
    while True:
        name_line = handle.readline()
        if not name_line:
            return
        name = _chomp(name_line)
        if not name.startswith(NAME_PREFIX):
            logger.warning(
                f"Identifier line does not start with '@' ({name[:40]!r}); "
                "treating as end of input.",
            )
            return

        seq_line = handle.readline()
        orientation_line = handle.readline()
        qual_line = handle.readline()

        record_name = name.decode(errors="replace")
        if not seq_line:
            logger.warning(f"Missing sequence line for read {record_name}")
            return
        if not orientation_line:
            logger.warning(f"Missing orientation line for read {record_name}")
            return
        if not qual_line:
            logger.warning(f"Missing quality line for read {record_name}")
            return

        seq = _chomp(seq_line)
        quals = _chomp(qual_line)
        if len(seq) != len(quals):
            logger.warning(
                f"Sequence/quality length mismatch for read {record_name} "
                f"(seq={len(seq)}, qual={len(quals)}); treating as end of input.",
            )
            return

        yield FastqRecord(name, seq, quals)


def write_fastq(handle: BinaryIO, record: FastqRecord) -> None:
    """Encode one record in 4-line form with a bare '+' separator."""
    handle.write(
        b"".join(
            (
                record.name,
                b"\n",
                record.seq,
                b"\n",
                SEPARATOR_LINE,
                b"\n",
                record.quals,
                b"\n",
            ),
        ),
    )
