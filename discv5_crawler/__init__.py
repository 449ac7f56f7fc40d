"""Discovery network crawler: measures every reachable peer, cycle after cycle."""

from .config import CrawlConfig
from .crawler import CrawlState, CrawlStats, DiscoveryCrawler, EmptyQueue, crawl, extract_attributes
from .enr import EnrError, decode_enr
from .node import Node, NodeId, NodeRecord, NodeStats, ProtocolClient, QueryError
from .peerstore import MeasurementRow, PeerStoreWriter, PersistenceError, read_peerstore

__version__ = '0.1.0'

__all__ = [
    'CrawlConfig',
    'CrawlState',
    'CrawlStats',
    'DiscoveryCrawler',
    'EmptyQueue',
    'EnrError',
    'MeasurementRow',
    'Node',
    'NodeId',
    'NodeRecord',
    'NodeStats',
    'PeerStoreWriter',
    'PersistenceError',
    'ProtocolClient',
    'QueryError',
    'crawl',
    'decode_enr',
    'extract_attributes',
    'read_peerstore',
]
