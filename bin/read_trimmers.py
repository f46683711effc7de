# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
# ]
# ///
"""
Trim proposals, their composition into one decision per read, and the
quality-window and poly-X tail trimming strategies.

Every strategy only *proposes* cuts. Proposals are folded with an associative,
commutative merge (max of the cuts, earliest split, any drop), so the final
geometry does not depend on the order strategies ran in.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from functools import reduce
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass as validated_dataclass

from fastq_io import FastqRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

# ------------------------------- CONSTANTS -------------------------------- #

# Appended to the first token of a split read's identifier, per fragment
FRAGMENT_SUFFIXES: tuple[bytes, bytes] = (b"_1", b"_2")


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class TrimProposal:
    """
    One strategy's verdict on one read.

    front_cut / back_cut: bases to remove from the 5' / 3' end.
    split_point: start of an interior contaminant that divides the read in two.
    split_width: length of that contaminant; it is removed from both fragments.
    drop: the whole read is unusable.
    """

    front_cut: int = 0
    back_cut: int = 0
    split_point: int | None = None
    split_width: int = 0
    drop: bool = False

    def merge(self, other: TrimProposal) -> TrimProposal:
        """Intersect the retained spans of two proposals."""
        split_point, split_width = _earliest_split(self, other)
        return TrimProposal(
            front_cut=max(self.front_cut, other.front_cut),
            back_cut=max(self.back_cut, other.back_cut),
            split_point=split_point,
            split_width=split_width,
            drop=self.drop or other.drop,
        )


NO_TRIM = TrimProposal()


@dataclass(frozen=True)
class TrimDecision(TrimProposal):
    """A composed proposal, clamped to the read it was composed for."""

    @property
    def keep(self) -> bool:
        # A read that can be split around its contaminant is never dropped
        return not self.drop or self.split_point is not None

    @property
    def is_split(self) -> bool:
        return self.split_point is not None


def _earliest_split(a: TrimProposal, b: TrimProposal) -> tuple[int | None, int]:
    if a.split_point is None:
        return b.split_point, b.split_width
    if b.split_point is None:
        return a.split_point, a.split_width
    return min((a.split_point, a.split_width), (b.split_point, b.split_width))


class ReadTrimmer(Protocol):
    """Anything that can look at a read and propose how to trim it."""

    def propose(self, record: FastqRecord) -> TrimProposal: ...


# ---------------------------- DECISION ALGEBRA ----------------------------- #


def compose(proposals: Iterable[TrimProposal], read_length: int) -> TrimDecision:
    """
    Fold proposals into the decision for a read of `read_length` bases.

    Cuts are clamped so that front_cut + back_cut never exceeds the read.
    """
    assert read_length >= 0, f"Read length must be non-negative, got {read_length}"

    merged = reduce(TrimProposal.merge, proposals, NO_TRIM)
    front = min(merged.front_cut, read_length)
    back = min(merged.back_cut, read_length - front)
    decision = TrimDecision(
        front_cut=front,
        back_cut=back,
        split_point=merged.split_point,
        split_width=merged.split_width,
        drop=merged.drop,
    )

    assert front >= 0 and back >= 0, (  # noqa: PT018
        f"Composed cuts must be non-negative: front={front}, back={back}"
    )
    assert front + back <= read_length, (
        f"Composed cuts exceed read: {front} + {back} > {read_length}"
    )
    return decision


def fragment_name(name: bytes, index: int) -> bytes:
    """Tag the read name (first token of the identifier line) with a fragment suffix."""
    head, sep, tail = name.partition(b" ")
    return head + FRAGMENT_SUFFIXES[index] + sep + tail


def materialize(decision: TrimDecision, record: FastqRecord) -> list[FastqRecord]:
    """
    Apply a decision to its read.

    Returns no fragments for a dropped read, two for a split read (possibly
    empty ones, so that mates always yield comparable counts), one otherwise.
    """
    read_length = len(record)
    assert decision.front_cut + decision.back_cut <= read_length, (
        f"Decision does not fit read {record.display_name()}: "
        f"front={decision.front_cut}, back={decision.back_cut}, length={read_length}"
    )

    if not decision.keep:
        logger.debug(f"Dropping contaminated read '{record.display_name()}'")
        return []

    start = decision.front_cut
    end = read_length - decision.back_cut
    if decision.split_point is None:
        fragment = record.slice(start, end)
        assert len(fragment) == read_length - decision.front_cut - decision.back_cut
        return [fragment]

    # The contaminant span is clipped to the retained region before dividing it
    left_end = max(start, min(decision.split_point, end))
    right_start = min(end, max(decision.split_point + decision.split_width, start))
    return [
        record.slice(start, left_end, name=fragment_name(record.name, 0)),
        record.slice(right_start, end, name=fragment_name(record.name, 1)),
    ]


# -------------------------- QUALITY WINDOW TRIMMING ------------------------- #


class WindowScan(Enum):
    """Which read ends the quality window scans from."""

    TAIL_ONLY = auto()  # 3' end only (paired-end runs)
    HEAD_AND_TAIL = auto()  # both ends independently (single-end runs)


@validated_dataclass(frozen=True)
class QualityWindowTrimmer:
    """
    Sliding-window quality trimming.

    Scanning inward from an end, the first window whose mean quality (relative
    to `quality_origin`) is below `min_avg_quality` starts the cut, which grows
    through every directly following failing window; everything from the last
    of them to the scanned end is removed. Reads shorter than the window are
    judged as a single window.
    """

    window_size: int = Field(default=10, gt=0)
    min_avg_quality: int = Field(default=10, ge=0, le=255)
    quality_origin: int = Field(default=33, ge=0, le=255)
    scan: WindowScan = WindowScan.TAIL_ONLY

    def _window_fails(self, quals: bytes, start: int, width: int) -> bool:
        # Integer form of mean(q - origin) < min_avg_quality
        total = sum(quals[start : start + width]) - self.quality_origin * width
        return total < self.min_avg_quality * width

    def back_cut(self, quals: bytes) -> int:
        read_length = len(quals)
        if read_length == 0:
            return 0
        width = min(self.window_size, read_length)
        cut_start: int | None = None
        for start in range(read_length - width, -1, -1):
            if self._window_fails(quals, start, width):
                cut_start = start
            elif cut_start is not None:
                break
        return 0 if cut_start is None else read_length - cut_start

    def front_cut(self, quals: bytes) -> int:
        read_length = len(quals)
        if read_length == 0:
            return 0
        width = min(self.window_size, read_length)
        cut_end = 0
        for start in range(read_length - width + 1):
            if self._window_fails(quals, start, width):
                cut_end = start + width
            elif cut_end:
                break
        return cut_end

    def propose(self, record: FastqRecord) -> TrimProposal:
        match self.scan:
            case WindowScan.TAIL_ONLY:
                return TrimProposal(back_cut=self.back_cut(record.quals))
            case WindowScan.HEAD_AND_TAIL:
                return TrimProposal(
                    front_cut=self.front_cut(record.quals),
                    back_cut=self.back_cut(record.quals),
                )


# --------------------------- POLY-X TAIL TRIMMING --------------------------- #


@validated_dataclass(frozen=True)
class PolyXTrimmer:
    """
    Trim a 3' tail enriched for one base (poly-A in RNA-seq, poly-G from
    two-colour chemistry running off the end of the insert).

    If the trailing window reaches `min_proportion` of `bases`, the window is
    slid 5'-ward while it keeps meeting the threshold; the tail cut runs from
    the last passing window to the read end, so that window is removed whole.
    """

    bases: bytes = Field(min_length=1)
    window_size: int = Field(default=10, gt=0)
    min_proportion: float = Field(default=0.9, ge=0.0, le=1.0)

    @classmethod
    def for_base(cls, base: str, window_size: int, min_proportion: float) -> PolyXTrimmer:
        """Case-insensitive trimmer for a single nucleotide."""
        return cls(
            bases=(base.upper() + base.lower()).encode(),
            window_size=window_size,
            min_proportion=min_proportion,
        )

    def _passes(self, window: bytes) -> bool:
        hits = sum(1 for base in window if base in self.bases)
        return hits / len(window) >= self.min_proportion

    def back_cut(self, seq: bytes) -> int:
        read_length = len(seq)
        if read_length == 0:
            return 0
        width = min(self.window_size, read_length)
        start = read_length - width
        if not self._passes(seq[start:]):
            return 0
        while start > 0 and self._passes(seq[start - 1 : start - 1 + width]):
            start -= 1
        return read_length - start

    def propose(self, record: FastqRecord) -> TrimProposal:
        return TrimProposal(back_cut=self.back_cut(record.seq))
