"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import dataclasses
import logging
import os
import typing
from collections.abc import Mapping
from typing import Any, Optional

import yaml

from libpipspeak import ConfigError, wrap_exception
from read_layout import LayoutDescriptor
from whitelist_index import WhitelistIndex

BARCODE_KEYS = ("bc1", "bc2", "bc3", "bc4")
SPACER_KEYS = ("s1", "s2", "s3")


@wrap_exception((OSError, yaml.YAMLError), ConfigError)
def read_yaml(fname: str | os.PathLike | typing.TextIO) -> Any:
    needs_close = not hasattr(fname, "read")
    fh: typing.TextIO = open(fname) if needs_close else fname
    try:
        return yaml.safe_load(fh)
    finally:
        if needs_close:
            fh.close()


@dataclasses.dataclass(frozen=True)
class RunConfig:
    """
    Barcode whitelist paths and spacer sequences describing one chemistry, e.g.

        barcodes:
          bc1: barcodes/bc1.tsv
          bc2: barcodes/bc2.tsv
          bc3: barcodes/bc3.tsv
          bc4: barcodes/bc4.tsv
        spacers:
          s1: ATG
          s2: GAG
          s3: TCGAG
    """

    whitelists: tuple[str, str, str, str]
    spacers: tuple[str, str, str]

    @classmethod
    def from_file(cls, fname: str | os.PathLike | typing.TextIO) -> "RunConfig":
        return cls.from_mapping(read_yaml(fname))

    @classmethod
    def from_mapping(cls, config: Mapping) -> "RunConfig":
        if not isinstance(config, Mapping):
            raise ConfigError("Configuration must be a mapping with barcodes and spacers")
        return cls(
            tuple(cls._get_str(config, "barcodes", key) for key in BARCODE_KEYS),
            tuple(cls._get_str(config, "spacers", key).upper() for key in SPACER_KEYS),
        )

    @staticmethod
    def _get_str(config: Mapping, section: str, key: str) -> str:
        if not isinstance(group := config.get(section), Mapping):
            raise ConfigError(f"Configuration is missing the {section} section")
        if (value := group.get(key)) is None:
            raise ConfigError(f"{section.capitalize()} entry {key} not found")
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{section.capitalize()} entry {key} must be a nonempty string")
        return value

    def build_whitelists(self, exact=False) -> list[WhitelistIndex]:
        logger = logging.getLogger("Config")
        whitelists = []
        for key, path in zip(BARCODE_KEYS, self.whitelists):
            logger.info("Reading %s whitelist %s", key, path)
            whitelists.append(WhitelistIndex.from_file(path, name=key, exact=exact))
        return whitelists

    def build_layout(
        self,
        whitelists: list[WhitelistIndex],
        umi_len: int = 12,
        read_length: Optional[int] = None,
    ) -> LayoutDescriptor:
        return LayoutDescriptor.from_config(
            self.spacers,
            [whitelist.length for whitelist in whitelists],
            umi_len=umi_len,
            read_length=read_length,
        )
