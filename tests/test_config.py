#!/usr/bin/env python3
"""
Tests for crawler configuration and bootnode loading
"""

import logging
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import requests

from discv5_crawler.config import (
    CrawlConfig,
    fetch_bootnode_list,
    load_bootnodes,
    parse_bootnode_lines,
    parse_log_level,
)
from discv5_crawler.enr import EnrError

from tests.fakes import make_enr

BOOTNODE_A = make_enr({b'id': b'v4', b'ip': bytes([1, 2, 3, 4]), b'udp': b'\x23\x28'})
BOOTNODE_B = make_enr({b'id': b'v4', b'ip': bytes([5, 6, 7, 8]), b'udp': b'\x23\x28'})


class TestCrawlConfig(unittest.TestCase):
    """Test CrawlConfig defaults and validation"""

    def test_defaults(self):
        config = CrawlConfig()
        self.assertEqual(config.distances, (256, 255, 254))
        self.assertEqual(config.udp_port, 9009)
        self.assertEqual(config.max_pending, 500)
        self.assertEqual(config.bootnodes, [])

    def test_invalid_values(self):
        """Test out of range values are rejected"""
        for kwargs in ({'query_interval': -1}, {'pending_wait_interval': 0},
                       {'idle_interval': 0}, {'max_pending': -1},
                       {'query_timeout': -5}, {'distances': ()}, {'udp_port': 70000}):
            with self.subTest(**{k: str(v) for k, v in kwargs.items()}):
                with self.assertRaises(ValueError):
                    CrawlConfig(**kwargs)

    def test_zero_query_interval_allowed(self):
        self.assertEqual(CrawlConfig(query_interval=0).query_interval, 0)


class TestBootnodeSources(unittest.TestCase):
    """Test bootnode list parsing and loading"""

    def test_parse_yaml_list(self):
        """Test YAML bullets, quotes and comments are stripped"""
        lines = [
            '# Lighthouse team',
            f'- "{BOOTNODE_A}"',
            f"- '{BOOTNODE_B}'  # second",
            '',
            'not an enr',
        ]
        self.assertEqual(parse_bootnode_lines(lines), [BOOTNODE_A, BOOTNODE_B])

    @patch('discv5_crawler.config.time.sleep')
    @patch('discv5_crawler.config.requests.get')
    def test_fetch_retries(self, mock_get, mock_sleep):
        """Test fetching retries with doubling delay"""
        response = MagicMock()
        response.text = f"- {BOOTNODE_A}\n"
        mock_get.side_effect = [requests.ConnectionError("down"), requests.Timeout("slow"), response]

        result = fetch_bootnode_list('https://example.org/bootnodes.yaml', max_retries=3, retry_delay=1.0)

        self.assertEqual(result, [BOOTNODE_A])
        self.assertEqual(mock_get.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1.0, 2.0])

    @patch('discv5_crawler.config.time.sleep')
    @patch('discv5_crawler.config.requests.get')
    def test_fetch_gives_up(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.ConnectionError("down")

        with self.assertRaises(requests.RequestException):
            fetch_bootnode_list('https://example.org/bootnodes.yaml', max_retries=2)
        self.assertEqual(mock_get.call_count, 2)

    def test_load_from_file_and_inline(self):
        """Test file and inline sources are merged without duplicates"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'bootnodes.txt')
            with open(path, 'w', encoding='utf-8') as f:
                f.write(f"{BOOTNODE_A}\n{BOOTNODE_B}\n")

            records = load_bootnodes([BOOTNODE_A, path])

        self.assertEqual([r.address for r in records], [('1.2.3.4', 9000), ('5.6.7.8', 9000)])

    @patch('discv5_crawler.config.fetch_bootnode_list')
    def test_load_from_url(self, mock_fetch):
        mock_fetch.return_value = [BOOTNODE_B]
        records = load_bootnodes(['https://example.org/bootnodes.yaml'])

        mock_fetch.assert_called_once_with('https://example.org/bootnodes.yaml')
        self.assertEqual(records[0].address, ('5.6.7.8', 9000))

    def test_load_invalid_record(self):
        with self.assertRaises(EnrError):
            load_bootnodes(['enr:AAAA'])

    def test_load_missing_file(self):
        with self.assertRaises(OSError):
            load_bootnodes(['/nonexistent/bootnodes.txt'])


class TestLogLevel(unittest.TestCase):

    def test_known_levels(self):
        self.assertEqual(parse_log_level('debug'), logging.DEBUG)
        self.assertEqual(parse_log_level('WARNING'), logging.WARNING)

    def test_unknown_level(self):
        with self.assertRaises(ValueError):
            parse_log_level('chatty')


if __name__ == '__main__':
    unittest.main()
