"""
Append-only CSV sink for measurement rows.

One header line is written when the file is opened, then one line per
successful measurement. Any I/O failure is raised as PersistenceError; the
crawl must stop rather than keep measuring without recording.
"""

import csv
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)

HEADER = [
    'cycle', 'node_id', 'ip:port', 'rttMin', 'rttAvg', 'bwMaxMbps', 'bwAvgMbps',
    'pubkey', 'forkDigest', 'attnets', 'attnets_number', 'client',
]


class PersistenceError(Exception):
    """The peer store could not be opened or written."""


@dataclass
class MeasurementRow:
    """One persisted measurement, in output column order."""
    cycle: int
    node_id: str
    address: str
    rtt_min: int
    rtt_avg: int
    bw_max_mbps: float
    bw_avg_mbps: float
    pubkey: str
    fork_digest: str
    attnets: str
    attnets_number: int
    client: str

    def to_csv(self) -> List[str]:
        return [
            str(self.cycle), self.node_id, self.address,
            str(self.rtt_min), str(self.rtt_avg),
            str(self.bw_max_mbps), str(self.bw_avg_mbps),
            self.pubkey, self.fork_digest, self.attnets,
            str(self.attnets_number), self.client,
        ]

    @classmethod
    def from_csv(cls, values: List[str]) -> 'MeasurementRow':
        if len(values) != len(HEADER):
            raise ValueError(f"Expected {len(HEADER)} columns, got {len(values)}")
        return cls(
            cycle=int(values[0]),
            node_id=values[1],
            address=values[2],
            rtt_min=int(values[3]),
            rtt_avg=int(values[4]),
            bw_max_mbps=float(values[5]),
            bw_avg_mbps=float(values[6]),
            pubkey=values[7],
            fork_digest=values[8],
            attnets=values[9],
            attnets_number=int(values[10]),
            client=values[11],
        )


class PeerStoreWriter:
    """CSV writer owning the output file for the whole crawl."""

    def __init__(self, path: str):
        self.path = path
        self._file = None
        self._writer = None
        self.rows_written = 0

    def open(self):
        """Open (truncating) the file and write the header line."""
        try:
            self._file = open(self.path, 'w', newline='', encoding='utf-8')
        except OSError as e:
            raise PersistenceError(f"Failed to open {self.path} for writing: {e}") from e

        self._writer = csv.writer(self._file)
        try:
            self._write(HEADER)
        except PersistenceError:
            self._abandon()
            raise
        logger.info(f"Persisting peers at: {self.path}")

    def write_row(self, row: MeasurementRow):
        """Append one row and flush it to disk."""
        self._write(row.to_csv())
        self.rows_written += 1

    def _write(self, values: List[str]):
        if self._file is None:
            raise PersistenceError(f"Peer store {self.path} is not open")
        try:
            self._writer.writerow(values)
            self._file.flush()
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to write to {self.path}: {e}") from e

    def close(self):
        """Flush and close the file; a failed final flush raises PersistenceError."""
        if self._file is None:
            return

        file, self._file, self._writer = self._file, None, None
        try:
            # The OS handle is released even when the flush fails
            file.close()
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to close {self.path}: {e}") from e
        logger.debug(f"Closed {self.path} after {self.rows_written} rows")

    def _abandon(self):
        """Close after an earlier failure, which stays the one reported."""
        try:
            self.close()
        except PersistenceError as e:
            logger.error(f"{e}")

    def __enter__(self) -> 'PeerStoreWriter':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self._abandon()


def read_peerstore(path: str, skip_invalid: bool = False) -> Iterator[MeasurementRow]:
    """
    Read rows back from a finished (or still growing) peer store file.

    Args:
        path: CSV file written by PeerStoreWriter
        skip_invalid: Log and skip malformed lines instead of raising

    Yields:
        MeasurementRow per data line
    """
    with open(path, 'r', newline='', encoding='utf-8') as f:
        reader = csv.reader(f)
        header: Optional[List[str]] = next(reader, None)
        if header != HEADER:
            raise ValueError(f"{path} does not look like a peer store (header: {header})")

        for line_number, values in enumerate(reader, start=2):
            if not values:
                continue
            try:
                yield MeasurementRow.from_csv(values)
            except ValueError as e:
                if not skip_invalid:
                    raise ValueError(f"{path}:{line_number}: {e}") from e
                logger.warning(f"Skipping malformed line {line_number} in {path}: {e}")
