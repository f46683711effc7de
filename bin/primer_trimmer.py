# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
# ]
# ///
"""
Primer / adapter contamination trimming.

Each primer is searched for in both orientations with an ungapped
(Hamming-distance) scan. The single best hit decides the outcome: hits near
the 5' end cut the front, hits near the 3' end cut the back, and interior
hits either drop the read or split it around the contaminant.
"""

from __future__ import annotations

from functools import cached_property
from typing import NamedTuple

from loguru import logger
from pydantic import Field, field_validator
from pydantic.dataclasses import dataclass

from fastq_io import FastqRecord
from read_trimmers import NO_TRIM, TrimProposal

# ------------------------------- CONSTANTS -------------------------------- #

# IUPAC-aware complement table; unknown bytes pass through unchanged
COMPLEMENT = bytes.maketrans(
    b"ACGTUNRYKMSWBDHVacgtunrykmswbdhv",
    b"TGCAANYRMKSWVHDBtgcaanyrmkswvhdb",
)


def reverse_complement(seq: bytes) -> bytes:
    return seq.translate(COMPLEMENT)[::-1]


# ------------------------------- DATA TYPES -------------------------------- #


class PrimerHit(NamedTuple):
    """An accepted ungapped alignment of a candidate pattern to a read."""

    offset: int
    length: int
    mismatches: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def end_distance(self, read_length: int) -> int:
        """Bases between the hit and the nearer read end."""
        return min(self.offset, read_length - self.end)

    def rank(self, read_length: int) -> tuple[int, int, int]:
        """Sort key: fewest mismatches, then nearest an end, then leftmost."""
        return (self.mismatches, self.end_distance(read_length), self.offset)


# ------------------------------- ALIGNMENT --------------------------------- #


def count_mismatches(pattern: bytes, seq: bytes, offset: int, limit: int) -> int:
    """
    Hamming distance between `pattern` and `seq[offset:offset+len(pattern)]`.
    Stops counting once `limit` is exceeded.
    """
    mismatches = 0
    for i, base in enumerate(pattern):
        if seq[offset + i] != base:
            mismatches += 1
            if mismatches > limit:
                break
    return mismatches


def best_alignment(pattern: bytes, seq: bytes, max_mismatches: int) -> PrimerHit | None:
    """Best full-overlap placement of `pattern` in `seq`, if any is within tolerance."""
    pattern_length = len(pattern)
    read_length = len(seq)
    if pattern_length == 0 or pattern_length > read_length:
        return None

    best: PrimerHit | None = None
    for offset in range(read_length - pattern_length + 1):
        mismatches = count_mismatches(pattern, seq, offset, max_mismatches)
        if mismatches > max_mismatches:
            continue
        hit = PrimerHit(offset, pattern_length, mismatches)
        if best is None or hit.rank(read_length) < best.rank(read_length):
            best = hit
    return best


# ------------------------------- TRIMMER ----------------------------------- #


@dataclass(frozen=True)
class PrimerTrimmer:
    """
    Remove primer contamination near either read end.

    end_proportion: fraction of the read length, measured from each end, in
        which a hit counts as an end hit rather than an interior one.
    allow_split: split reads with interior hits instead of dropping them.
    """

    primers: tuple[bytes, ...] = Field(min_length=1)
    max_mismatches: int = Field(default=1, ge=0, le=255)
    end_proportion: float = Field(default=0.2, gt=0.0, le=0.5)
    allow_split: bool = False

    @field_validator("primers")
    @classmethod
    def normalize_primers(cls, v: tuple[bytes, ...]) -> tuple[bytes, ...]:
        normalized = tuple(primer.strip().upper() for primer in v)
        if any(len(primer) == 0 for primer in normalized):
            msg = "primers cannot contain an empty sequence"
            raise ValueError(msg)
        return normalized

    @cached_property
    def candidates(self) -> tuple[bytes, ...]:
        """Every primer plus its reverse complement, palindromes counted once."""
        patterns: dict[bytes, None] = {}
        for primer in self.primers:
            patterns[primer] = None
            patterns[reverse_complement(primer)] = None
        return tuple(patterns)

    def locate(self, seq: bytes) -> PrimerHit | None:
        """Best hit across all candidate patterns."""
        target = seq.upper()
        read_length = len(target)
        best: PrimerHit | None = None
        for pattern in self.candidates:
            hit = best_alignment(pattern, target, self.max_mismatches)
            if hit is None:
                continue
            if best is None or hit.rank(read_length) < best.rank(read_length):
                best = hit
        return best

    def propose(self, record: FastqRecord) -> TrimProposal:
        hit = self.locate(record.seq)
        if hit is None:
            return NO_TRIM

        read_length = len(record)
        margin = self.end_proportion * read_length
        from_front = hit.offset
        from_back = read_length - hit.end
        logger.trace(
            f"Primer hit in '{record.display_name()}': offset={hit.offset}, "
            f"length={hit.length}, mismatches={hit.mismatches}",
        )

        near_front = from_front <= margin
        near_back = from_back <= margin
        if near_front and (not near_back or from_front <= from_back):
            return TrimProposal(front_cut=hit.end)
        if near_back:
            return TrimProposal(back_cut=read_length - hit.offset)
        if self.allow_split:
            return TrimProposal(split_point=hit.offset, split_width=hit.length)
        return TrimProposal(drop=True)
