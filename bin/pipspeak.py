#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import collections
import contextlib
import dataclasses
import datetime
import itertools
import logging
import multiprocessing
import multiprocessing.pool
import os
import sys
import threading
import time
import typing
from collections.abc import Iterable, Iterator
from typing import Any, NamedTuple, Optional

import pandas as pd
import pysam
import xopen
import yaml

from barcode_disambiguator import (
    Accepted,
    BarcodeDisambiguator,
    Outcome,
    Rejected,
    RejectReason,
)
from libpipspeak import (
    MalformedReadError,
    PairMismatchError,
    PipspeakError,
    __version__,
    logs_runtime,
)
from pipspeak_config import RunConfig
from read_layout import BARCODE_NAMES, LINKER_NAMES, LayoutDescriptor, SegmentExtractor
from whitelist_index import MatchStatus, WhitelistIndex


class FastqRecord(NamedTuple):
    name: str
    sequence: str
    quality: str

    def __str__(self):
        return f"@{self.name}\n{self.sequence}\n+\n{self.quality}\n"


ReadPair = tuple[FastqRecord, FastqRecord]


# Dataclass for tracking QC statistics
@dataclasses.dataclass
class Summary:
    total: int = 0
    accepted: int = 0
    rejected: dict[str, int] = dataclasses.field(
        default_factory=lambda: {reason.value: 0 for reason in RejectReason}
    )
    corrected: dict[str, int] = dataclasses.field(
        default_factory=lambda: dict.fromkeys(BARCODE_NAMES, 0)
    )
    linker_mismatches: dict[str, int] = dataclasses.field(
        default_factory=lambda: dict.fromkeys(LINKER_NAMES, 0)
    )
    num_barcodes: int = 0

    @property
    def num_rejected(self) -> int:
        return sum(self.rejected.values())

    @property
    def fraction_passing(self) -> float:
        return self.accepted / self.total if self.total else 0.0

    def update(self, other: "Summary"):
        self.total += other.total
        self.accepted += other.accepted
        for mine, theirs in (
            (self.rejected, other.rejected),
            (self.corrected, other.corrected),
            (self.linker_mismatches, other.linker_mismatches),
        ):
            for key, count in theirs.items():
                mine[key] = mine.get(key, 0) + count

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_reads": self.total,
            "passing_reads": self.accepted,
            "fraction_passing": self.fraction_passing,
            "rejected_reads": self.num_rejected,
            "rejected": dict(self.rejected),
            "corrected": dict(self.corrected),
            "linker_mismatches": dict(self.linker_mismatches),
            "num_barcodes": self.num_barcodes,
        }


class ChunkResult(NamedTuple):
    records: list[ReadPair]
    barcodes: set[str]
    summary: Summary


def iter_fastq(fqname: str) -> Iterator[FastqRecord]:
    """
    Reads a FASTQ file (optionally compressed) as FastqRecords, keeping the full identifier line.
    """
    with pysam.FastxFile(fqname, persist=False) as fq:
        try:
            for read in fq:
                if read.quality is None:
                    raise PipspeakError(
                        f"{fqname} is not a FASTQ file (no qualities for {read.name})"
                    )
                yield FastqRecord(
                    f"{read.name} {read.comment}" if read.comment else read.name,
                    read.sequence,
                    read.quality,
                )
        except ValueError as e:
            # pysam reports truncated or garbled records as ValueError
            raise PipspeakError(f"Malformed FASTQ file {fqname}: {e}") from e


class PairedFastqWriter:
    """
    Writes the R1 and R2 output files. Records go to hidden partial files, which are renamed to
    their final names only when the context exits without an exception.
    """

    __slots__ = ("paths", "partial_paths", "threads", "handles", "num_written", "_stack")

    def __init__(self, r1_path: str, r2_path: str, threads: Optional[int] = None):
        self.paths = (r1_path, r2_path)
        self.partial_paths = tuple(self.partial_path(path) for path in self.paths)
        self.threads = threads
        self.handles: tuple[typing.TextIO, ...] = ()
        self.num_written = 0
        self._stack = contextlib.ExitStack()

    @staticmethod
    def partial_path(path: str) -> str:
        # Keep the extension so the compression format is unchanged
        head, tail = os.path.split(path)
        return os.path.join(head, f".partial.{tail}")

    def write(self, r1: FastqRecord, r2: FastqRecord):
        r1_out, r2_out = self.handles
        r1_out.write(str(r1))
        r2_out.write(str(r2))
        self.num_written += 1

    def __enter__(self):
        self.handles = tuple(
            self._stack.enter_context(xopen.xopen(path, "w", threads=self.threads))
            for path in self.partial_paths
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stack.__exit__(exc_type, exc_val, exc_tb)
        self.handles = ()
        for partial, path in zip(self.partial_paths, self.paths):
            if exc_type is None:
                os.replace(partial, path)
            else:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(partial)


class RecordTransformer:
    __slots__ = ("layout", "_slices")

    def __init__(self, layout: LayoutDescriptor):
        self.layout = layout
        self._slices = layout.output_slices()

    def transform(
        self, accepted: Accepted, r1: FastqRecord, r2: FastqRecord
    ) -> ReadPair:
        """
        Builds the output read pair for an accepted read.
        :param accepted: The correction outcome for r1
        :param r1: The original R1 record
        :param r2: The original R2 record
        :return: A 2-tuple of the new R1 (corrected barcode + UMI, with the qualities of the bases
            they were read from) and the unchanged R2
        """
        shift = accepted.segments.shift
        slices = self.layout.output_slices(shift) if shift else self._slices
        quality = "".join(r1.quality[s] for s in slices)
        return FastqRecord(r1.name, accepted.barcode + accepted.umi, quality), r2


class ReadConverter:
    """
    Per-read work of the conversion: extract the segments, correct the barcodes and build the
    output records. Holds only read-only state, so one instance is shared by all workers.
    """

    __slots__ = (
        "layout",
        "extractor",
        "disambiguator",
        "transformer",
        "max_offset",
        "max_linker_mismatch",
    )

    def __init__(
        self,
        layout: LayoutDescriptor,
        whitelists: list[WhitelistIndex],
        *,
        max_offset=0,
        max_linker_mismatch=1,
    ):
        """
        :param layout: Positions of the segments in R1
        :param whitelists: The four barcode whitelists, in read order
        :param max_offset: Also try the layout shifted by up to this many leading bases
        :param max_linker_mismatch: Substitutions tolerated in a linker before it is counted as a
            mismatch. Linker mismatches are reported but never cause a rejection.
        """
        self.layout = layout
        self.extractor = SegmentExtractor(layout)
        self.disambiguator = BarcodeDisambiguator(whitelists)
        self.transformer = RecordTransformer(layout)
        self.max_offset = max_offset
        self.max_linker_mismatch = max_linker_mismatch

    def resolve(self, sequence: str) -> Outcome:
        """
        Tries each shift in turn and returns the first accepted outcome. If no shift is accepted,
        returns the rejection at shift 0.
        """
        first: Optional[Rejected] = None
        for shift in range(self.max_offset + 1):
            try:
                segments = self.extractor.extract(sequence, shift)
            except MalformedReadError:
                break
            outcome = self.disambiguator.resolve(segments)
            if isinstance(outcome, Accepted):
                return outcome
            if first is None:
                first = outcome
        return first if first is not None else Rejected(RejectReason.MALFORMED)

    def convert_chunk(self, chunk: list[ReadPair]) -> ChunkResult:
        summary = Summary()
        records: list[ReadPair] = []
        barcodes: set[str] = set()
        for r1, r2 in chunk:
            summary.total += 1
            outcome = self.resolve(r1.sequence.upper())
            if isinstance(outcome, Rejected):
                summary.rejected[outcome.reason.value] += 1
                continue
            summary.accepted += 1
            for name, status in zip(BARCODE_NAMES, outcome.statuses):
                if status is MatchStatus.CORRECTED:
                    summary.corrected[name] += 1
            for name in self.layout.linker_mismatches(
                outcome.segments, self.max_linker_mismatch
            ):
                summary.linker_mismatches[name] += 1
            barcodes.add(outcome.barcode)
            records.append(self.transformer.transform(outcome, r1, r2))
        return ChunkResult(records, barcodes, summary)


# Set once in each worker process by the pool initializer
_worker_converter: Optional[ReadConverter] = None


def _init_worker(converter: ReadConverter):
    global _worker_converter
    _worker_converter = converter


def _convert_chunk(chunk: list[ReadPair]) -> ChunkResult:
    return _worker_converter.convert_chunk(chunk)


class ReadCountPrinter(threading.Thread):
    def __init__(self, interval: float = 30):
        super().__init__(target=self.run_printer, daemon=True)
        self._counter = 0
        self._interval = interval
        self._lock = threading.Lock()
        self._logger = logging.getLogger("ReadCount")
        self._enabled = False
        self._condition = threading.Condition(lock=self._lock)

    def increment(self, n: int = 1):
        with self._lock:
            self._counter += n

    def run_printer(self):
        with self._condition:
            while not self._condition.wait_for(lambda: not self._enabled, self._interval):
                self._logger.info("Processed %d read pairs", self._counter)

    def stop(self):
        with self._condition:
            self._enabled = False
            self._condition.notify_all()

    def __enter__(self):
        self._enabled = True
        self.start()
        return self

    def __exit__(self, exc_type, exc, exc_tb):
        self.stop()
        self.join()


class Converter:
    def __init__(
        self,
        read_converter: ReadConverter,
        *,
        threads: Optional[int] = None,
        chunk_size=10000,
        check_names=False,
        progress_interval: float = 30,
        mp_context: Optional[str] = None,
    ):
        """Drives the conversion of a pair of read streams.

        :param read_converter: Per-read conversion, shared read-only with the workers
        :param threads: Number of worker processes (default: number of CPUs). With 1, chunks are
            converted in this process.
        :param chunk_size: Number of read pairs per unit of work
        :param check_names: If True, R1 and R2 read names must agree pair by pair
        :param progress_interval: Seconds between progress log messages
        :param mp_context: multiprocessing start method, or None for the platform default
        """
        self.read_converter = read_converter
        self.threads = threads or os.cpu_count() or 1
        self.chunk_size = chunk_size
        self.check_names = check_names
        self.progress_interval = progress_interval
        self.mp_context = mp_context
        # Bound the number of chunks held in memory
        self.max_pending = 2 * self.threads
        self.logger = logging.getLogger("Converter")

        self.stats = Summary()
        self.cell_barcodes: set[str] = set()

    @staticmethod
    def read_name(identifier: str) -> str:
        name = identifier.split(maxsplit=1)[0] if identifier else ""
        return name[:-2] if name.endswith(("/1", "/2")) else name

    def iter_chunks(
        self, r1_records: Iterable[FastqRecord], r2_records: Iterable[FastqRecord]
    ) -> Iterator[list[ReadPair]]:
        """
        Pairs up the two read streams in lockstep and groups the pairs into chunks.
        :raises PairMismatchError: if one stream ends before the other, or with check_names, if
            the read names of a pair differ
        """
        chunk: list[ReadPair] = []
        for i, (r1, r2) in enumerate(itertools.zip_longest(r1_records, r2_records)):
            if r1 is None or r2 is None:
                raise PairMismatchError(
                    f"{'R1' if r1 is None else 'R2'} ended after {i} reads "
                    f"but {'R2' if r1 is None else 'R1'} has more"
                )
            if self.check_names and self.read_name(r1.name) != self.read_name(r2.name):
                raise PairMismatchError(
                    f"Read names disagree at pair {i + 1}: {r1.name!r} vs {r2.name!r}"
                )
            chunk.append((r1, r2))
            if len(chunk) >= self.chunk_size:
                yield chunk
                chunk = []
        if chunk:
            yield chunk

    def map_chunks(self, chunks: Iterable[list[ReadPair]]) -> Iterator[ChunkResult]:
        """
        Converts chunks, in parallel if threads > 1, yielding the results in input order.
        """
        if self.threads <= 1:
            yield from map(self.read_converter.convert_chunk, chunks)
            return
        pending: collections.deque[multiprocessing.pool.AsyncResult] = collections.deque()
        context = multiprocessing.get_context(self.mp_context)
        with context.Pool(
            self.threads, initializer=_init_worker, initargs=(self.read_converter,)
        ) as pool:
            for chunk in chunks:
                pending.append(pool.apply_async(_convert_chunk, (chunk,)))
                if len(pending) >= self.max_pending:
                    yield pending.popleft().get()
            while pending:
                yield pending.popleft().get()

    def run(
        self,
        r1_records: Iterable[FastqRecord],
        r2_records: Iterable[FastqRecord],
        writer,
    ) -> Summary:
        """
        Converts a pair of read streams, writing the accepted read pairs to writer in input order.
        Records are written as chunks complete, so on PairMismatchError the writer has already
        received the pairs before the mismatch. PairedFastqWriter discards them by removing its
        partial files.
        :param r1_records: R1 records (barcodes and UMI)
        :param r2_records: R2 records (cDNA), in the same order as r1_records
        :param writer: Object with a write(r1, r2) method
        :return: Counts of processed, accepted and rejected read pairs
        """
        stats = Summary()
        barcodes: set[str] = set()
        self.logger.info(
            "Converting with %d worker(s), %d read pairs per chunk",
            self.threads,
            self.chunk_size,
        )
        with ReadCountPrinter(self.progress_interval) as printer, contextlib.closing(
            self.map_chunks(self.iter_chunks(r1_records, r2_records))
        ) as results:
            for result in results:
                for r1, r2 in result.records:
                    writer.write(r1, r2)
                stats.update(result.summary)
                barcodes |= result.barcodes
                printer.increment(result.summary.total)
        stats.num_barcodes = len(barcodes)
        self.stats = stats
        self.cell_barcodes = barcodes
        return stats

    @staticmethod
    def output_paths(prefix: str) -> tuple[str, str, str]:
        return f"{prefix}_R1.fq.gz", f"{prefix}_R2.fq.gz", f"{prefix}_whitelist.txt"

    def write_whitelist(self, path: str):
        pd.Series(sorted(self.cell_barcodes), dtype=str).to_csv(
            path, index=False, header=False
        )

    @logs_runtime
    def convert_files(
        self, r1fq: str, r2fq: str, prefix: str, io_threads: Optional[int] = None
    ) -> Summary:
        """
        Ingests a pair of FASTQ files, writes the converted pair as <prefix>_R1.fq.gz and
        <prefix>_R2.fq.gz and the accepted barcodes as <prefix>_whitelist.txt.
        :param r1fq: File containing R1 reads (barcodes+UMI)
        :param r2fq: File containing R2 reads (cDNA)
        :param prefix: Output filename prefix
        :param io_threads: Compression threads per output file (default: xopen's choice)
        """
        r1_out, r2_out, whitelist_out = self.output_paths(prefix)
        with PairedFastqWriter(r1_out, r2_out, threads=io_threads) as writer:
            stats = self.run(iter_fastq(r1fq), iter_fastq(r2fq), writer)
        self.write_whitelist(whitelist_out)
        return stats


@dataclasses.dataclass
class RunLog:
    parameters: dict[str, Any]
    file_io: dict[str, str]
    statistics: dict[str, Any]
    timing: dict[str, Any]

    def dump(self, path: str):
        with open(path, "w") as ofp:
            yaml.safe_dump(dataclasses.asdict(self), ofp, sort_keys=False)


def positive_int(value: str) -> int:
    if (ivalue := int(value)) <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def nonnegative_int(value: str) -> int:
    if (ivalue := int(value)) < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a nonnegative integer")
    return ivalue


def log_summary(logger: logging.Logger, stats: Summary):
    logger.info("Total number of read pairs: %d", stats.total)
    logger.info("Number of read pairs passing: %d", stats.accepted)
    logger.info("Percentage of read pairs passing: %.2f%%", stats.fraction_passing * 100)
    logger.info("Number of distinct cell barcodes: %d", stats.num_barcodes)
    for reason, count in stats.rejected.items():
        if count:
            logger.info("Filtered read pairs (%s): %d", reason, count)
    for name, count in stats.linker_mismatches.items():
        if count:
            logger.info("Accepted read pairs with mismatched %s: %d", name, count)


class CLI(argparse.Namespace):
    r1: str
    r2: str
    prefix: str
    config: str
    umi_len: int = 12
    offset: int = 0
    threads: int = os.cpu_count() or 1
    io_threads: Optional[int] = None
    chunk_size: int = 10000
    exact: bool = False
    max_linker_mismatch: int = 1
    check_names: bool = False
    read_length: Optional[int] = None
    log: Optional[str] = None
    debug: bool = False

    _parser = argparse.ArgumentParser(
        description="Convert PIPseq reads to 10X Genomics compatible FASTQ files"
    )
    _parser.add_argument(
        "-i", "--r1", required=True, help="Path to read-1 fastq file (barcodes+UMI)"
    )
    _parser.add_argument(
        "-I", "--r2", required=True, help="Path to read-2 fastq file (cDNA)"
    )
    _parser.add_argument(
        "-p",
        "--prefix",
        required=True,
        help="Output file prefix (output files will be named <prefix>_R[12].fq.gz and "
        "<prefix>_whitelist.txt)",
    )
    _parser.add_argument(
        "-c",
        "--config",
        required=True,
        help="YAML file describing the file paths of the 4 barcode whitelists and the 3 spacers",
    )
    _parser.add_argument(
        "-u",
        "--umi-len",
        type=positive_int,
        default=12,
        help="Number of bases in the UMI sequence (default: %(default)d)",
    )
    _parser.add_argument(
        "-s",
        "--offset",
        type=nonnegative_int,
        default=0,
        help="Also look for the barcodes shifted by up to this many bases from the start of R1 "
        "(default: %(default)d)",
    )
    _parser.add_argument(
        "-t",
        "--threads",
        type=positive_int,
        default=os.cpu_count() or 1,
        help="Number of worker processes (default: %(default)d)",
    )
    _parser.add_argument(
        "--io-threads",
        type=positive_int,
        help="Number of compression threads per output file",
    )
    _parser.add_argument(
        "--chunk-size",
        type=positive_int,
        default=10000,
        help="Number of read pairs handed to a worker at a time (default: %(default)d)",
    )
    _parser.add_argument(
        "--exact",
        action="store_true",
        default=False,
        help="Only accept barcodes matching the whitelists exactly (no 1-mismatch correction)",
    )
    _parser.add_argument(
        "--max-linker-mismatch",
        type=nonnegative_int,
        default=1,
        help="Substitutions allowed in a linker before it is reported as mismatched "
        "(default: %(default)d)",
    )
    _parser.add_argument(
        "--check-names",
        action="store_true",
        default=False,
        help="If set, abort when the R1 and R2 read names of a pair differ",
    )
    _parser.add_argument(
        "--read-length",
        type=positive_int,
        help="Expected R1 length; abort if the configured layout does not add up to it",
    )
    _parser.add_argument(
        "-l", "--log", help="Path of the YAML run log (default: <prefix>_log.yaml)"
    )
    _parser.add_argument(
        "--debug", action="store_true", default=False, help="Increase logging verbosity"
    )

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.DEBUG if self.debug else logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        logger = logging.getLogger("pipspeak")
        timestamp = datetime.datetime.now().isoformat(timespec="seconds")
        start = time.perf_counter()
        try:
            config = RunConfig.from_file(self.config)
            whitelists = config.build_whitelists(exact=self.exact)
            layout = config.build_layout(
                whitelists, umi_len=self.umi_len, read_length=self.read_length
            )
            converter = Converter(
                ReadConverter(
                    layout,
                    whitelists,
                    max_offset=self.offset,
                    max_linker_mismatch=self.max_linker_mismatch,
                ),
                threads=self.threads,
                chunk_size=self.chunk_size,
                check_names=self.check_names,
            )
            stats = converter.convert_files(
                self.r1, self.r2, self.prefix, io_threads=self.io_threads
            )
        except (PipspeakError, OSError):
            logger.critical("Aborting", exc_info=True)
            sys.exit(1)
        log_summary(logger, stats)

        r1_out, r2_out, whitelist_out = converter.output_paths(self.prefix)
        RunLog(
            {
                "offset": self.offset,
                "umi_len": self.umi_len,
                "exact_matching": self.exact,
                "threads": self.threads,
                "pipspeak_version": __version__,
            },
            {
                "readpath_r1": self.r1,
                "readpath_r2": self.r2,
                "writepath_r1": r1_out,
                "writepath_r2": r2_out,
                "writepath_whitelist": whitelist_out,
            },
            stats.to_dict(),
            {
                "timestamp": timestamp,
                "elapsed_time": time.perf_counter() - start,
            },
        ).dump(self.log or f"{self.prefix}_log.yaml")


def main():
    CLI().main()


if __name__ == "__main__":
    main()
