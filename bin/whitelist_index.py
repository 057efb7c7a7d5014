"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import enum
import logging
import os
from collections.abc import Iterable, Iterator
from typing import Optional

import pandas as pd

from libpipspeak import ConfigError


class MatchStatus(enum.Enum):
    EXACT = "exact"
    CORRECTED = "corrected"
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"


class WhitelistIndex:
    """
    Lookup table for one barcode position. Holds the canonical barcodes and every sequence one
    substitution away from exactly one of them.
    """

    ALPHABET = "ACGTN"
    CANONICAL_BASES = frozenset("ACGT")

    __slots__ = ("name", "length", "exact", "barcodes", "_neighbors", "_ambiguous")

    def __init__(self, barcodes: Iterable[str], *, name: str = "whitelist", exact=False):
        """Build the index.

        :param barcodes: Canonical barcode sequences, all of the same length
        :param name: Label used in log and error messages (e.g. bc1)
        :param exact: If True, only verbatim matches are accepted
        :raises ConfigError: if the whitelist is empty, the lengths differ, or a barcode contains
            anything other than A, C, G or T
        """
        logger = logging.getLogger("Whitelist")
        seqs = [seq.strip().upper() for seq in barcodes]
        seqs = [seq for seq in seqs if seq]
        if not seqs:
            raise ConfigError(f"Whitelist {name} is empty")
        lengths = {len(seq) for seq in seqs}
        if len(lengths) != 1:
            raise ConfigError(
                f"Whitelist {name} has barcodes of different lengths: "
                + ", ".join(map(str, sorted(lengths)))
            )
        if bad := [seq for seq in seqs if not self.CANONICAL_BASES.issuperset(seq)]:
            raise ConfigError(
                f"Whitelist {name} has non-ACGT barcode(s): {', '.join(bad[:5])}"
            )

        self.name = name
        (self.length,) = lengths
        self.exact = exact
        self.barcodes: frozenset[str] = frozenset(seqs)
        if len(self.barcodes) != len(seqs):
            logger.warning(
                "Whitelist %s contains %d duplicate barcode(s)",
                name,
                len(seqs) - len(self.barcodes),
            )

        self._neighbors: dict[str, str] = {}
        self._ambiguous: set[str] = set()
        if not exact:
            self._build_neighbors()
        logger.debug(
            "Whitelist %s: %d barcodes of length %d, %d correctable neighbors, %d ambiguous",
            name,
            len(self.barcodes),
            self.length,
            len(self._neighbors),
            len(self._ambiguous),
        )

    @classmethod
    def from_file(
        cls, path: str | os.PathLike, *, name: Optional[str] = None, exact=False
    ) -> "WhitelistIndex":
        """
        Reads a newline-delimited whitelist. Only the first tab-separated column is used, so
        annotated barcode tables are accepted as well.
        """
        name = name or os.path.basename(path)
        try:
            table = pd.read_csv(path, sep="\t", header=None, usecols=[0], dtype=str)
        except (OSError, pd.errors.EmptyDataError, pd.errors.ParserError) as e:
            raise ConfigError(f"Unable to read whitelist {name} from {path}: {e}") from e
        return cls(table[0].dropna(), name=name, exact=exact)

    def _build_neighbors(self):
        # Sorted so the result does not depend on set iteration order
        for parent in sorted(self.barcodes):
            for child in self.substitutions(parent):
                if child in self.barcodes or child in self._ambiguous:
                    continue
                if self._neighbors.setdefault(child, parent) != parent:
                    del self._neighbors[child]
                    self._ambiguous.add(child)

    @classmethod
    def substitutions(cls, seq: str) -> Iterator[str]:
        """Yields every sequence exactly one substitution away from seq."""
        for i, base in enumerate(seq):
            for x in cls.ALPHABET:
                if x != base:
                    yield seq[:i] + x + seq[i + 1 :]

    def lookup(self, observed: str) -> tuple[Optional[str], MatchStatus]:
        """
        Looks up an observed barcode.
        :param observed: Barcode sequence as read from R1
        :return: A 2-tuple of the canonical barcode (or None) and how it was found
        """
        observed = observed.upper()
        if observed in self.barcodes:
            return observed, MatchStatus.EXACT
        if (parent := self._neighbors.get(observed)) is not None:
            return parent, MatchStatus.CORRECTED
        if observed in self._ambiguous:
            return None, MatchStatus.AMBIGUOUS
        return None, MatchStatus.UNMATCHED

    def correct(self, observed: str) -> Optional[str]:
        return self.lookup(observed)[0]

    def __contains__(self, seq: str):
        return seq in self.barcodes

    def __len__(self):
        return len(self.barcodes)

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, n={len(self)}, length={self.length}, exact={self.exact})"
