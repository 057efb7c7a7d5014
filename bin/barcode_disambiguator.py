"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import enum
from collections.abc import Sequence
from typing import NamedTuple, Optional, Union

from libpipspeak import ConfigError
from read_layout import BARCODE_NAMES, SegmentSet
from whitelist_index import MatchStatus, WhitelistIndex


class RejectReason(enum.Enum):
    CB1_UNMATCHED = "cb1 unmatched"
    CB1_AMBIGUOUS = "cb1 ambiguous"
    CB2_UNMATCHED = "cb2 unmatched"
    CB2_AMBIGUOUS = "cb2 ambiguous"
    CB3_UNMATCHED = "cb3 unmatched"
    CB3_AMBIGUOUS = "cb3 ambiguous"
    CB4_UNMATCHED = "cb4 unmatched"
    CB4_AMBIGUOUS = "cb4 ambiguous"
    MALFORMED = "malformed read"

    @classmethod
    def for_position(cls, name: str, status: MatchStatus) -> "RejectReason":
        return cls(f"{name} {status.value}")


class Accepted(NamedTuple):
    barcode: str
    umi: str
    segments: SegmentSet
    statuses: tuple[MatchStatus, ...]


class Rejected(NamedTuple):
    reason: RejectReason
    segments: Optional[SegmentSet] = None


Outcome = Union[Accepted, Rejected]


class BarcodeDisambiguator:
    __slots__ = ("whitelists",)

    def __init__(self, whitelists: Sequence[WhitelistIndex]):
        """
        :param whitelists: One WhitelistIndex per barcode position, in read order (cb1..cb4)
        """
        if len(whitelists) != len(BARCODE_NAMES):
            raise ConfigError(
                f"Expected {len(BARCODE_NAMES)} whitelists, got {len(whitelists)}"
            )
        self.whitelists = tuple(whitelists)

    def resolve(self, segments: SegmentSet) -> Outcome:
        """
        Corrects the four barcodes of a read against their whitelists. The read is accepted only
        if every barcode corrects to a single canonical sequence; the first failing position
        determines the rejection reason.
        :param segments: The segments of one R1 read
        :return: Accepted with the combined barcode and UMI, or Rejected with the reason
        """
        corrected = []
        statuses = []
        for name, whitelist, observed in zip(
            BARCODE_NAMES, self.whitelists, segments.barcodes
        ):
            canonical, status = whitelist.lookup(observed)
            if canonical is None:
                return Rejected(RejectReason.for_position(name, status), segments)
            corrected.append(canonical)
            statuses.append(status)
        return Accepted("".join(corrected), segments.umi, segments, tuple(statuses))

    __call__ = resolve
