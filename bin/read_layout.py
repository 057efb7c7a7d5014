"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import dataclasses
from collections.abc import Sequence
from functools import lru_cache
from typing import NamedTuple, Optional

import regex

from libpipspeak import ConfigError, MalformedReadError

BARCODE_NAMES = ("cb1", "cb2", "cb3", "cb4")
LINKER_NAMES = ("linker1", "linker2", "linker3")
SEGMENT_NAMES = ("cb1", "linker1", "cb2", "linker2", "cb3", "linker3", "cb4", "umi")
SPACER_BASES = frozenset("ACGTN")


class Segment(NamedTuple):
    name: str
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length

    def slice(self, shift: int = 0) -> slice:
        return slice(self.start + shift, self.end + shift)


class SegmentSet(NamedTuple):
    """Substrings of one R1 read, named after the layout segments."""

    cb1: str
    linker1: str
    cb2: str
    linker2: str
    cb3: str
    linker3: str
    cb4: str
    umi: str
    shift: int = 0

    @property
    def barcodes(self) -> tuple[str, str, str, str]:
        return self.cb1, self.cb2, self.cb3, self.cb4

    @property
    def linkers(self) -> tuple[str, str, str]:
        return self.linker1, self.linker2, self.linker3


@lru_cache(64)
def get_linker_regex(spacer: str, max_mismatch: int):
    """
    Gets (and caches) the regex.Pattern matching the spacer with up to max_mismatch substitutions
    """
    return regex.compile(rf"(?:{spacer}){{s<={max_mismatch}}}")


@dataclasses.dataclass(frozen=True)
class LayoutDescriptor:
    """
    Positions of the barcode, linker and UMI segments in R1:

        cb1 | linker1 | cb2 | linker2 | cb3 | linker3 | cb4 | umi

    Linker lengths come from the spacer sequences, barcode lengths from the whitelists.
    """

    segments: tuple[Segment, ...]
    spacers: tuple[str, str, str]
    read_length: Optional[int] = None

    MAX_READ_LENGTH = 1000

    def __post_init__(self):
        names = tuple(segment.name for segment in self.segments)
        if names != SEGMENT_NAMES:
            raise ConfigError(f"Segments must be ordered {SEGMENT_NAMES}, got {names}")
        if bad := [segment.name for segment in self.segments if segment.length <= 0]:
            raise ConfigError(f"Segment length must be positive: {', '.join(bad)}")
        for prev, segment in zip(self.segments, self.segments[1:]):
            if segment.start != prev.end:
                raise ConfigError(f"Segment {segment.name} does not follow {prev.name}")
        if self.total_length > self.MAX_READ_LENGTH:
            raise ConfigError(
                f"Layout requires {self.total_length} bases, more than the maximum read length "
                f"of {self.MAX_READ_LENGTH}"
            )
        if self.read_length is not None and self.read_length != self.total_length:
            raise ConfigError(
                f"Layout requires {self.total_length} bases but R1 reads are declared to be "
                f"{self.read_length} bases long"
            )

    @classmethod
    def from_config(
        cls,
        spacers: Sequence[str],
        barcode_lengths: Sequence[int],
        umi_len: int = 12,
        read_length: Optional[int] = None,
    ) -> "LayoutDescriptor":
        """Lay out the R1 segments from the configured spacers and whitelist barcode lengths.

        :param spacers: The three linker sequences, in read order
        :param barcode_lengths: Lengths of the four barcodes, in read order
        :param umi_len: Length of the UMI following the fourth barcode
        :param read_length: If given, the exact R1 length the layout must add up to
        :raises ConfigError: on a missing, empty or non-DNA spacer or a nonpositive length
        """
        if len(spacers) != len(LINKER_NAMES):
            raise ConfigError(f"Expected {len(LINKER_NAMES)} spacers, got {len(spacers)}")
        if len(barcode_lengths) != len(BARCODE_NAMES):
            raise ConfigError(
                f"Expected {len(BARCODE_NAMES)} barcode lengths, got {len(barcode_lengths)}"
            )
        spacers = tuple(spacer.upper() for spacer in spacers)
        for name, spacer in zip(LINKER_NAMES, spacers):
            if not SPACER_BASES.issuperset(spacer):
                raise ConfigError(f"Spacer for {name} is not a DNA sequence: {spacer!r}")

        lengths = [barcode_lengths[0]]
        for spacer, bclen in zip(spacers, barcode_lengths[1:]):
            lengths += [len(spacer), bclen]
        lengths.append(umi_len)

        segments = []
        start = 0
        for name, length in zip(SEGMENT_NAMES, lengths):
            segments.append(Segment(name, start, length))
            start += length
        return cls(tuple(segments), spacers, read_length)

    def segment_offsets(self) -> tuple[Segment, ...]:
        return self.segments

    def segment(self, name: str) -> Segment:
        for segment in self.segments:
            if segment.name == name:
                return segment
        raise KeyError(name)

    @property
    def total_length(self) -> int:
        return self.segments[-1].end

    @property
    def barcode_length(self) -> int:
        return sum(self.segment(name).length for name in BARCODE_NAMES)

    @property
    def umi_length(self) -> int:
        return self.segments[-1].length

    def target_layout(self) -> tuple[tuple[str, int], tuple[str, int]]:
        return ("barcode", self.barcode_length), ("umi", self.umi_length)

    def expected_linker(self, name: str) -> str:
        if name not in LINKER_NAMES:
            raise KeyError(name)
        return self.spacers[LINKER_NAMES.index(name)]

    def output_slices(self, shift: int = 0) -> tuple[slice, ...]:
        """Slices of R1 that make up the output R1 (barcodes then UMI), in output order"""
        return tuple(self.segment(name).slice(shift) for name in BARCODE_NAMES + ("umi",))

    def linker_mismatches(self, segments: SegmentSet, max_mismatch: int = 1) -> list[str]:
        """
        Names of the linkers in segments that differ from the configured spacer by more than
        max_mismatch substitutions.
        """
        mismatched = []
        for name, spacer, observed in zip(LINKER_NAMES, self.spacers, segments.linkers):
            observed = observed.upper()
            if observed != spacer and not get_linker_regex(spacer, max_mismatch).fullmatch(
                observed
            ):
                mismatched.append(name)
        return mismatched


class SegmentExtractor:
    __slots__ = ("layout", "_slices")

    def __init__(self, layout: LayoutDescriptor):
        self.layout = layout
        self._slices = tuple(segment.slice() for segment in layout.segments)

    def extract(self, r1_sequence: str, shift: int = 0) -> SegmentSet:
        """
        Slices an R1 sequence into its segments.
        :param r1_sequence: Nucleotide sequence of R1
        :param shift: Number of leading bases to skip before the layout starts
        :raises MalformedReadError: if the read is too short for the layout at this shift
        """
        if len(r1_sequence) < self.layout.total_length + shift:
            raise MalformedReadError(
                f"R1 length too short (expected {self.layout.total_length + shift}, got {len(r1_sequence)})"
            )
        if shift:
            r1_sequence = r1_sequence[shift:]
        return SegmentSet(*(r1_sequence[s] for s in self._slices), shift)

    __call__ = extract
