"""
Crawler configuration.

Defaults come from DCRAWL_* environment variables and are overridden by CLI
flags. Bootnodes can be given inline, as files, or as URLs of published
bootnode lists.
"""

import logging
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import requests

from .enr import ENR_PREFIX, decode_enr
from .node import NodeRecord

logger = logging.getLogger(__name__)

DEFAULT_PERSISTING_FILE = os.environ.get('DCRAWL_PERSISTING_FILE', 'peerstore.csv')
DEFAULT_LOG_LEVEL = os.environ.get('DCRAWL_LOG_LEVEL', 'INFO')
DEFAULT_LISTEN_ADDRESS = os.environ.get('DCRAWL_LISTEN_ADDRESS', '0.0.0.0')
DEFAULT_UDP_PORT = int(os.environ.get('DCRAWL_UDP_PORT', '9009'))
DEFAULT_QUERY_INTERVAL = float(os.environ.get('DCRAWL_QUERY_INTERVAL', '0.1'))
DEFAULT_MAX_PENDING = int(os.environ.get('DCRAWL_MAX_PENDING', '500'))
DEFAULT_QUERY_TIMEOUT = float(os.environ.get('DCRAWL_QUERY_TIMEOUT', '30'))
DEFAULT_CLIENT = os.environ.get('DCRAWL_CLIENT')

# Distances at the far end of the table; these return the broadest peer sample
DEFAULT_DISTANCES = (256, 255, 254)


@dataclass
class CrawlConfig:
    """Configuration for the crawler."""
    persisting_file: str = DEFAULT_PERSISTING_FILE
    query_interval: float = DEFAULT_QUERY_INTERVAL    # Pacing between dispatches
    pending_wait_interval: float = 0.1                 # Wait while queries are in flight
    idle_interval: float = 1.0                         # Wait after an empty cycle
    distances: Tuple[int, ...] = DEFAULT_DISTANCES
    max_pending: int = DEFAULT_MAX_PENDING             # 0 = no cap
    query_timeout: float = DEFAULT_QUERY_TIMEOUT       # 0 = no outer timeout
    seed_sample_size: int = sys.maxsize

    # Handed to the protocol client factory
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    udp_port: int = DEFAULT_UDP_PORT
    enr_auto_update: bool = False
    bootnodes: List[NodeRecord] = field(default_factory=list)

    def __post_init__(self):
        if self.query_interval < 0 or self.pending_wait_interval <= 0 or self.idle_interval <= 0:
            raise ValueError("Crawl intervals must be positive")
        if self.max_pending < 0:
            raise ValueError("max_pending must be >= 0")
        if self.query_timeout < 0:
            raise ValueError("query_timeout must be >= 0")
        if not self.distances:
            raise ValueError("At least one findNode distance is required")
        if not 0 < self.udp_port < 65536:
            raise ValueError(f"Invalid UDP port: {self.udp_port}")


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                           BOOTNODE SOURCES                                  ║
# ╚══════════════════════════════════════════════════════════════════════════╝

def parse_bootnode_lines(lines: Iterable[str]) -> List[str]:
    """
    Pull enr: entries out of a bootnode list.

    Accepts plain one-per-line lists as well as the YAML lists network
    configs publish ("- enr:..." with optional quotes and comments).
    """
    entries = []
    for line in lines:
        line = line.split('#', 1)[0].strip()
        if line.startswith('-'):
            line = line[1:].strip()
        line = line.strip('\'"')
        if line.startswith(ENR_PREFIX):
            entries.append(line)
    return entries


def fetch_bootnode_list(url: str, max_retries: int = 3, retry_delay: float = 2.0) -> List[str]:
    """Fetch a published bootnode list with retry logic.

    Args:
        url: http(s) URL of the list
        max_retries: Maximum number of attempts
        retry_delay: Initial delay between attempts (doubles with each retry)

    Returns:
        List of enr: strings found in the response body
    """
    headers = {
        'User-Agent': 'discv5-crawler/0.1',
        'Accept': 'text/plain, application/yaml, */*',
    }

    for attempt in range(max_retries):
        try:
            response = requests.get(url, headers=headers, timeout=30)
            response.raise_for_status()
            entries = parse_bootnode_lines(response.text.splitlines())
            logger.info(f"Fetched {len(entries)} bootnodes from {url}")
            return entries
        except requests.RequestException as e:
            if attempt < max_retries - 1:
                wait_time = retry_delay * (2 ** attempt)
                logger.warning(f"Failed to fetch bootnodes from {url}: {e}. "
                               f"Retrying in {wait_time:.0f}s ({attempt + 1}/{max_retries})")
                time.sleep(wait_time)
                continue
            raise

    return []


def load_bootnodes(sources: Iterable[str]) -> List[NodeRecord]:
    """
    Resolve bootnode sources into decoded records.

    Each source is an enr: string, a http(s) URL or a local file path.
    Raises ValueError for undecodable records and OSError/RequestException
    when a source cannot be read.
    """
    entries: List[str] = []
    for source in sources:
        if source.startswith(ENR_PREFIX):
            entries.append(source)
        elif source.startswith(('http://', 'https://')):
            entries.extend(fetch_bootnode_list(source))
        else:
            with open(source, 'r', encoding='utf-8') as f:
                found = parse_bootnode_lines(f)
            logger.info(f"Loaded {len(found)} bootnodes from {source}")
            entries.extend(found)

    records = []
    seen = set()
    for entry in entries:
        if entry in seen:
            continue
        seen.add(entry)
        records.append(decode_enr(entry))

    return records


def parse_log_level(value: Optional[str]) -> int:
    """Map a level name to a logging constant; unknown names raise ValueError."""
    level = logging.getLevelName((value or DEFAULT_LOG_LEVEL).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value}")
    return level
