#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "rich",
#     "xopen",
# ]
# ///
"""
Quality-control trimming for single-end or paired-end FASTQ.

Each read goes through primer trimming, optional poly-A / poly-G tail
trimming, and sliding-window quality trimming. The strategies' proposals are
composed into one decision per read, the read is cut (or split, or dropped),
and fragments shorter than --min-len are discarded. Paired mates are kept
strictly in step: both streams must have the same number of reads and each
pair must yield the same number of fragments.
"""

from __future__ import annotations

import argparse
import sys
from contextlib import ExitStack
from typing import TYPE_CHECKING, BinaryIO, NamedTuple, Protocol

from loguru import logger
from pydantic import Field, ValidationError, field_validator
from pydantic.dataclasses import dataclass
from rich.console import Console
from rich.text import Text

from fastq_io import FastqRecord, open_fastq, read_fastq, write_fastq
from primer_trimmer import PrimerTrimmer
from read_trimmers import (
    PolyXTrimmer,
    QualityWindowTrimmer,
    ReadTrimmer,
    TrimDecision,
    WindowScan,
    compose,
    materialize,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress debug line after processing this many reads (or pairs)
DEBUG_EVERY: int = 100_000

# Printable Phred+33 range used to colour bases in preview mode
PREVIEW_QUAL_FLOOR: int = 33
PREVIEW_QUAL_CEILING: int = 93


# -------------------------------- ERRORS ----------------------------------- #


class TrimmingError(Exception):
    """A condition that aborts the whole run."""


class ConfigurationError(TrimmingError):
    """Conflicting or missing run modes, detected before any read is processed."""


class DesynchronizedMatesError(TrimmingError):
    """The two mate streams no longer describe the same fragments."""

    def __init__(self, message: str, read_name: str) -> None:
        super().__init__(message)
        self.read_name = read_name


class MissingMateError(DesynchronizedMatesError):
    """One mate stream ran out of reads before the other."""


class FragmentCountMismatchError(DesynchronizedMatesError):
    """Mates were cut into different numbers of fragments."""


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass
class RunConfig:
    """Everything the command line controls, validated."""

    fastq1: str | None = None
    fastq2: str | None = None
    out_fastq1: str | None = None
    out_fastq2: str | None = None
    preview: bool = False
    min_len: int = Field(default=10, ge=0)
    window_size: int = 10
    window_min_qual: int = 10
    quality_origin: int = 33
    trim_poly_a: bool = False
    trim_poly_g: bool = False
    poly_x_length: int = 10
    poly_x_proportion: float = 0.9
    primers: tuple[str, ...] = ()
    primer_max_mismatches: int = 1
    primer_end_proportion: float = 0.2
    split_on_internal_primers: bool = False

    @field_validator("primers", mode="before")
    @classmethod
    def split_primer_list(cls, v: object) -> object:
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(primer.strip() for primer in v.split(",") if primer.strip())
        return v

    @property
    def paired(self) -> bool:
        return self.fastq2 is not None

    def check_modes(self) -> None:
        """Reject mutually exclusive or incomplete mode combinations."""
        if self.fastq1 is None:
            msg = "--fastq1 is required"
            raise ConfigurationError(msg)
        if self.preview == (self.out_fastq1 is not None):
            msg = "Either --preview or --out-fastq1 must be set, but not both"
            raise ConfigurationError(msg)
        if self.out_fastq2 is not None and not self.paired:
            msg = "--out-fastq2 was given without --fastq2"
            raise ConfigurationError(msg)
        if self.paired and not self.preview and self.out_fastq2 is None:
            msg = "Paired-end input requires --out-fastq2 (or --preview)"
            raise ConfigurationError(msg)


class TrimStats(NamedTuple):
    """Per-run counters. For paired runs every count is in pairs."""

    records: int
    emitted: int
    dropped_contaminated: int
    dropped_short: int
    split: int


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE (every strategy's proposal)
      +2   = DEBUG (every composed decision and discarded fragment)
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- TRIMMER ASSEMBLY ----------------------------- #


def build_trimmers(config: RunConfig, paired: bool) -> list[ReadTrimmer]:  # noqa: FBT001
    """
    Strategies in the order they run: primers, poly-A, poly-G, quality window.
    Single-end reads are quality-trimmed from both ends, mates from the 3' end only.
    """
    trimmers: list[ReadTrimmer] = []

    if config.primers:
        logger.info(f"Using primers: {', '.join(config.primers)}")
        trimmers.append(
            PrimerTrimmer(
                primers=tuple(primer.encode() for primer in config.primers),
                max_mismatches=config.primer_max_mismatches,
                end_proportion=config.primer_end_proportion,
                allow_split=config.split_on_internal_primers,
            ),
        )

    if config.trim_poly_a:
        trimmers.append(
            PolyXTrimmer.for_base("A", config.poly_x_length, config.poly_x_proportion),
        )
    if config.trim_poly_g:
        trimmers.append(
            PolyXTrimmer.for_base("G", config.poly_x_length, config.poly_x_proportion),
        )

    trimmers.append(
        QualityWindowTrimmer(
            window_size=config.window_size,
            min_avg_quality=config.window_min_qual,
            quality_origin=config.quality_origin,
            scan=WindowScan.TAIL_ONLY if paired else WindowScan.HEAD_AND_TAIL,
        ),
    )
    logger.debug(f"Trimmers: {trimmers}")
    return trimmers


# ------------------------------ OUTPUT SINKS ------------------------------- #


class ReadSink(Protocol):
    def emit(
        self,
        original: FastqRecord,
        decision: TrimDecision,
        fragment: FastqRecord,
    ) -> None: ...


class FastqSink:
    """Writes surviving fragments as FASTQ."""

    def __init__(self, handle: BinaryIO) -> None:
        self.handle = handle

    def emit(
        self,
        original: FastqRecord,  # noqa: ARG002
        decision: TrimDecision,  # noqa: ARG002
        fragment: FastqRecord,
    ) -> None:
        write_fastq(self.handle, fragment)


class PreviewSink:
    """Shows each surviving read once, annotated with its decision."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self._last: FastqRecord | None = None

    def emit(
        self,
        original: FastqRecord,
        decision: TrimDecision,
        fragment: FastqRecord,  # noqa: ARG002
    ) -> None:
        if original is self._last:
            return
        self._last = original
        self.console.print(render_read(original, decision))


# -------------------------------- PREVIEW ---------------------------------- #


def quality_intensity(quality: int) -> int:
    """Map a raw quality byte onto 0..255 across the printable Phred+33 range."""
    clamped = min(max(quality, PREVIEW_QUAL_FLOOR), PREVIEW_QUAL_CEILING)
    span = PREVIEW_QUAL_CEILING - PREVIEW_QUAL_FLOOR
    return int((clamped - PREVIEW_QUAL_FLOOR) / span * 255)


def render_read(record: FastqRecord, decision: TrimDecision) -> Text:
    """
    Annotated view of a read: kept bases upper-case and coloured red → green by
    quality, trimmed bases lower-case and dimmed, a split's contaminant reversed.
    """
    read_length = len(record)
    start = decision.front_cut
    end = read_length - decision.back_cut
    if decision.split_point is None:
        gap = range(0)
    else:
        gap = range(decision.split_point, decision.split_point + decision.split_width)

    text = Text(f">{record.display_name()}\n")
    for position, (base, quality) in enumerate(zip(record.seq, record.quals)):
        char = chr(base)
        if position < start or position >= end:
            text.append(char.lower(), style="dim")
        elif position in gap:
            text.append(char.lower(), style="reverse")
        else:
            level = quality_intensity(quality)
            text.append(char.upper(), style=f"rgb({255 - level},{level},0)")
    text.append(
        f" [front={decision.front_cut} back={decision.back_cut} "
        f"split={decision.split_point} keep={decision.keep}]",
    )
    return text


# ------------------------------ CORE LOGIC --------------------------------- #


def decide(record: FastqRecord, trimmers: Sequence[ReadTrimmer]) -> TrimDecision:
    """Run every strategy on the read, in order, and compose their proposals."""
    proposals = []
    for trimmer in trimmers:
        proposal = trimmer.propose(record)
        logger.trace(
            f"{type(trimmer).__name__} on '{record.display_name()}': {proposal}",
        )
        proposals.append(proposal)
    decision = compose(proposals, len(record))
    logger.debug(f"Decision for '{record.display_name()}': {decision}")
    return decision


def process_single_end(
    reads: Iterable[FastqRecord],
    sink: ReadSink,
    trimmers: Sequence[ReadTrimmer],
    min_length: int,
) -> TrimStats:
    """
    Trim a single stream of reads.

    Output order follows input order; dropped reads and short fragments are
    skipped silently (they are policy, not errors).
    """
    assert min_length >= 0, f"min_length must be non-negative, got {min_length}"

    records = 0
    emitted = 0
    dropped_contaminated = 0
    dropped_short = 0
    split = 0

    for record in reads:
        records += 1
        if records % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: reads={records}, emitted={emitted}, "
                f"dropped_contaminated={dropped_contaminated}, dropped_short={dropped_short}",
            )

        decision = decide(record, trimmers)
        fragments = materialize(decision, record)
        if not fragments:
            dropped_contaminated += 1
            continue
        if decision.is_split:
            split += 1

        for fragment in fragments:
            if len(fragment) < min_length:
                dropped_short += 1
                logger.debug(
                    f"Dropping short fragment of '{record.display_name()}': "
                    f"length={len(fragment)} < min_len={min_length}",
                )
                continue
            sink.emit(record, decision, fragment)
            emitted += 1

    stats = TrimStats(records, emitted, dropped_contaminated, dropped_short, split)
    logger.info(f"Single-end totals: {stats}")
    return stats


def process_paired_end(  # noqa: PLR0913
    reads1: Iterable[FastqRecord],
    reads2: Iterable[FastqRecord],
    sink1: ReadSink,
    sink2: ReadSink,
    trimmers: Sequence[ReadTrimmer],
    min_length: int,
) -> TrimStats:
    """
    Trim two positionally paired streams in lockstep.

    Mates are decided independently but emitted together: a fragment pair is
    written only when both fragments pass --min-len. Running out of mates on
    either side, or mates yielding different fragment counts, raises a
    DesynchronizedMatesError before anything of that pair is written.
    """
    assert min_length >= 0, f"min_length must be non-negative, got {min_length}"

    records = 0
    emitted = 0
    dropped_contaminated = 0
    dropped_short = 0
    split = 0

    mates = iter(reads2)
    for record1 in reads1:
        record2 = next(mates, None)
        if record2 is None:
            msg = (
                f"Reads in fastq1 and fastq2 are not paired: fastq2 ended before "
                f"read1 {record1.display_name()}"
            )
            raise MissingMateError(msg, record1.display_name())

        records += 1
        if records % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: pairs={records}, emitted={emitted}, "
                f"dropped_contaminated={dropped_contaminated}, dropped_short={dropped_short}",
            )

        decision1 = decide(record1, trimmers)
        decision2 = decide(record2, trimmers)
        fragments1 = materialize(decision1, record1)
        fragments2 = materialize(decision2, record2)
        if len(fragments1) != len(fragments2):
            msg = (
                f"Resulting fragments from read1 {record1.display_name()} and read2 "
                f"{record2.display_name()} differ in number "
                f"({len(fragments1)} and {len(fragments2)})"
            )
            raise FragmentCountMismatchError(msg, record1.display_name())

        if not fragments1:
            dropped_contaminated += 1
            continue
        if decision1.is_split:
            split += 1

        for fragment1, fragment2 in zip(fragments1, fragments2, strict=True):
            if len(fragment1) < min_length or len(fragment2) < min_length:
                dropped_short += 1
                logger.debug(
                    f"Dropping short pair '{record1.display_name()}': "
                    f"lengths={len(fragment1)}/{len(fragment2)} < min_len={min_length}",
                )
                continue
            sink1.emit(record1, decision1, fragment1)
            sink2.emit(record2, decision2, fragment2)
            emitted += 1

    leftover = next(mates, None)
    if leftover is not None:
        msg = (
            f"Reads in fastq1 and fastq2 are not paired: fastq1 ended before "
            f"read2 {leftover.display_name()}"
        )
        raise MissingMateError(msg, leftover.display_name())

    stats = TrimStats(records, emitted, dropped_contaminated, dropped_short, split)
    logger.info(f"Paired-end totals: {stats}")
    return stats


def run(config: RunConfig, trimmers: Sequence[ReadTrimmer]) -> TrimStats:
    """Open the configured inputs and outputs and drive the matching pipeline."""
    assert config.fastq1 is not None, "check_modes() must run before run()"

    with ExitStack() as stack:
        reads1 = read_fastq(stack.enter_context(open_fastq(config.fastq1, write=False)))

        if config.preview:
            console = Console(highlight=False, soft_wrap=True)
            sink1: ReadSink = PreviewSink(console)
            sink2: ReadSink = PreviewSink(console)
        else:
            assert config.out_fastq1 is not None
            sink1 = FastqSink(stack.enter_context(open_fastq(config.out_fastq1, write=True)))
            sink2 = sink1
            if config.out_fastq2 is not None:
                sink2 = FastqSink(
                    stack.enter_context(open_fastq(config.out_fastq2, write=True)),
                )

        if config.fastq2 is None:
            return process_single_end(reads1, sink1, trimmers, config.min_len)

        reads2 = read_fastq(stack.enter_context(open_fastq(config.fastq2, write=False)))
        return process_paired_end(
            reads1,
            reads2,
            sink1,
            sink2,
            trimmers,
            config.min_len,
        )


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Quality-control trimming of single-end or paired-end FASTQ (optionally gzipped):\n"
            "  - primer contamination (both orientations, with mismatches)\n"
            "  - poly-A / poly-G tails\n"
            "  - sliding-window quality\n"
            "Paired mates are kept in step; fragments shorter than --min-len are dropped."
        ),
    )

    # I/O
    p.add_argument("--fastq1", default=None, help="First (or only) input FASTQ")
    p.add_argument(
        "--fastq2",
        default=None,
        help="Second input FASTQ, for Illumina paired-end reads",
    )
    p.add_argument("--out-fastq1", default=None, help="Output FASTQ for fastq1")
    p.add_argument(
        "--out-fastq2",
        default=None,
        help="Output FASTQ for fastq2 (paired-end only)",
    )
    p.add_argument(
        "--min-len",
        type=int,
        default=10,
        help="Minimum remaining read length after trimming; shorter reads are discarded",
    )

    # Quality window
    window_group = p.add_argument_group("Quality Window")
    window_group.add_argument(
        "--window-size",
        type=int,
        default=10,
        help="Quality trimming window size",
    )
    window_group.add_argument(
        "--window-min-qual",
        type=int,
        default=10,
        help="Minimum average quality score a window must have",
    )
    window_group.add_argument(
        "--quality-origin",
        type=int,
        default=33,
        help="Offset subtracted from quality bytes before averaging (default: 33, Phred+33)",
    )

    # Poly-X tails
    poly_group = p.add_argument_group("Poly-X Tails")
    poly_group.add_argument(
        "--trim-poly-a",
        action="store_true",
        help="Trim poly-A tails (seen in RNA-seq data)",
    )
    poly_group.add_argument(
        "--trim-poly-g",
        action="store_true",
        help="Trim poly-G tails (seen when sequencing past the insert with 2-color chemistry)",
    )
    poly_group.add_argument(
        "--poly-x-length",
        type=int,
        default=10,
        help="Window length used to detect a poly-X tail",
    )
    poly_group.add_argument(
        "--poly-x-proportion",
        type=float,
        default=0.9,
        help="Proportion of the window that must be X to trim the read end",
    )

    # Primers
    primer_group = p.add_argument_group("Primers")
    primer_group.add_argument(
        "--primers",
        default=None,
        help="Comma-separated primers to remove (reverse complements are searched too)",
    )
    primer_group.add_argument(
        "--primer-max-mismatches",
        type=int,
        default=1,
        help="Maximum mismatches allowed in a primer hit (1 or 2 works best)",
    )
    primer_group.add_argument(
        "--primer-end-proportion",
        type=float,
        default=0.2,
        help="Fraction of the read, from each end, where a primer hit is trimmed; "
        "interior hits drop (or split) the read",
    )
    primer_group.add_argument(
        "--split-on-internal-primers",
        action="store_true",
        help="Split a read in two around an interior primer instead of dropping it",
    )

    p.add_argument(
        "--preview",
        action="store_true",
        help="Print reads annotated with what would be cut instead of writing output",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
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

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting trimming run.")

    try:
        config = RunConfig(
            fastq1=args.fastq1,
            fastq2=args.fastq2,
            out_fastq1=args.out_fastq1,
            out_fastq2=args.out_fastq2,
            preview=args.preview,
            min_len=args.min_len,
            window_size=args.window_size,
            window_min_qual=args.window_min_qual,
            quality_origin=args.quality_origin,
            trim_poly_a=args.trim_poly_a,
            trim_poly_g=args.trim_poly_g,
            poly_x_length=args.poly_x_length,
            poly_x_proportion=args.poly_x_proportion,
            primers=args.primers,
            primer_max_mismatches=args.primer_max_mismatches,
            primer_end_proportion=args.primer_end_proportion,
            split_on_internal_primers=args.split_on_internal_primers,
        )
        config.check_modes()
        logger.debug(f"RunConfig: {config}")
        trimmers = build_trimmers(config, paired=config.paired)
        stats = run(config, trimmers)
    except (TrimmingError, ValidationError) as exc:
        logger.error(f"{exc}")
        sys.exit(1)

    logger.success(
        f"Reads: {stats.records} | Written: {stats.emitted} | "
        f"Dropped (contaminated): {stats.dropped_contaminated} | "
        f"Dropped (too short after trim): {stats.dropped_short} | Split: {stats.split}",
    )
    logger.info("Trimming run complete.")


if __name__ == "__main__":
    main()
