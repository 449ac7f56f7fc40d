#!/usr/bin/env python3
"""
Tests for the CSV peer store
"""

import os
import tempfile
import unittest
from unittest.mock import MagicMock

from discv5_crawler.peerstore import (
    HEADER,
    MeasurementRow,
    PeerStoreWriter,
    PersistenceError,
    read_peerstore,
)

from tests.fakes import FULL_DEVICE, FullDiskPeerStore


def sample_row(cycle=0, node_id='aa' * 32, client='teku/v24.1.0') -> MeasurementRow:
    return MeasurementRow(
        cycle=cycle,
        node_id=node_id,
        address='10.0.0.1:9000',
        rtt_min=12,
        rtt_avg=20,
        bw_max_mbps=1.235,
        bw_avg_mbps=0.25,
        pubkey='02' + '33' * 32,
        fork_digest='6a95a1a9',
        attnets='ff00',
        attnets_number=8,
        client=client,
    )


class TestPeerStoreWriter(unittest.TestCase):
    """Test PeerStoreWriter"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, 'peerstore.csv')

    def read_lines(self):
        with open(self.path, encoding='utf-8') as f:
            return f.read().splitlines()

    def test_header_written_on_open(self):
        """Test the header line is written when the file is opened"""
        with PeerStoreWriter(self.path):
            pass
        self.assertEqual(self.read_lines(), [
            'cycle,node_id,ip:port,rttMin,rttAvg,bwMaxMbps,bwAvgMbps,'
            'pubkey,forkDigest,attnets,attnets_number,client'
        ])

    def test_rows_flushed_immediately(self):
        """Test each row is on disk before the writer is closed"""
        with PeerStoreWriter(self.path) as writer:
            writer.write_row(sample_row())
            lines = self.read_lines()

        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[1].split(',')[0], '0')
        self.assertEqual(lines[1].split(',')[2], '10.0.0.1:9000')
        self.assertEqual(writer.rows_written, 1)

    def test_existing_file_truncated(self):
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write('old contents\n')

        with PeerStoreWriter(self.path):
            pass

        self.assertEqual(self.read_lines(), [','.join(HEADER)])

    def test_open_failure(self):
        """Test an unopenable path raises PersistenceError"""
        writer = PeerStoreWriter(os.path.join(self.tmpdir.name, 'missing', 'peerstore.csv'))
        with self.assertRaises(PersistenceError):
            writer.open()

    def test_write_when_closed(self):
        writer = PeerStoreWriter(self.path)
        with self.assertRaises(PersistenceError):
            writer.write_row(sample_row())

    def test_write_failure(self):
        """Test an I/O error while writing raises PersistenceError"""
        writer = PeerStoreWriter(self.path)
        writer.open()
        self.addCleanup(writer.close)
        writer._writer = MagicMock()
        writer._writer.writerow.side_effect = OSError("No space left on device")

        with self.assertRaises(PersistenceError):
            writer.write_row(sample_row())
        self.assertEqual(writer.rows_written, 0)

    def test_close_failure_while_unwinding(self):
        """Test a close failure does not replace the error being raised"""
        with self.assertLogs('discv5_crawler.peerstore', level='ERROR'):
            with self.assertRaises(RuntimeError):
                with PeerStoreWriter(self.path) as writer:
                    self.addCleanup(writer._file.close)
                    writer._file = MagicMock()
                    writer._file.close.side_effect = OSError("File too large")
                    raise RuntimeError("query task failed")
        self.assertIsNone(writer._file)

    @unittest.skipUnless(os.path.exists(FULL_DEVICE), "needs /dev/full")
    def test_header_failure_releases_file(self):
        """Test the file is closed when the header cannot be written"""
        writer = PeerStoreWriter(FULL_DEVICE)
        with self.assertRaises(PersistenceError):
            with writer:
                pass
        self.assertIsNone(writer._file)

    @unittest.skipUnless(os.path.exists(FULL_DEVICE), "needs /dev/full")
    def test_close_after_failed_write(self):
        """Test a failed final flush on close raises PersistenceError"""
        writer = FullDiskPeerStore(self.path)
        writer.open()
        with self.assertRaises(PersistenceError):
            writer.write_row(sample_row())

        with self.assertRaises(PersistenceError):
            writer.close()
        self.assertIsNone(writer._file)

    @unittest.skipUnless(os.path.exists(FULL_DEVICE), "needs /dev/full")
    def test_failed_write_stays_reported_error(self):
        """Test leaving the with block after a failed write keeps the write error"""
        with self.assertRaises(PersistenceError) as ctx:
            with FullDiskPeerStore(self.path) as writer:
                writer.write_row(sample_row())

        self.assertIn('Failed to write', str(ctx.exception))
        self.assertIsNone(writer._file)


class TestReadPeerstore(unittest.TestCase):
    """Test reading peer store files back"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, 'peerstore.csv')

    def test_read_written_rows(self):
        rows = [sample_row(cycle=0), sample_row(cycle=1, client='')]
        with PeerStoreWriter(self.path) as writer:
            for row in rows:
                writer.write_row(row)

        self.assertEqual(list(read_peerstore(self.path)), rows)

    def test_wrong_header(self):
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write('ip,port\n1.2.3.4,8333\n')

        with self.assertRaises(ValueError):
            list(read_peerstore(self.path))

    def test_malformed_line(self):
        """Test malformed lines raise unless skipped"""
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(','.join(HEADER) + '\n')
            f.write(','.join(sample_row().to_csv()) + '\n')
            f.write('x,truncated\n')

        with self.assertRaises(ValueError):
            list(read_peerstore(self.path))

        with self.assertLogs('discv5_crawler.peerstore', level='WARNING'):
            rows = list(read_peerstore(self.path, skip_invalid=True))
        self.assertEqual(len(rows), 1)


if __name__ == '__main__':
    unittest.main()
