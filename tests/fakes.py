"""
Scripted stand-ins for the protocol client and the peer store.
"""

import asyncio
import base64
import csv
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from discv5_crawler.node import Node, NodeId, NodeRecord, NodeStats, QueryError
from discv5_crawler.peerstore import PeerStoreWriter, PersistenceError

# Device whose writes fail with ENOSPC (Linux)
FULL_DEVICE = '/dev/full'

# Instances handed out by create_client, newest last
CREATED_CLIENTS: List['FakeProtocolClient'] = []


def node_id(n: int) -> NodeId:
    return NodeId(n.to_bytes(32, 'big'))


def make_node(n: int, pairs: Optional[Dict[str, bytes]] = None, **stats) -> Node:
    """Node number n at 10.0.0.n:9000 with the given record attributes and stats."""
    record_pairs = {'ip': bytes([10, 0, 0, n % 256]), 'udp': (9000).to_bytes(2, 'big')}
    record_pairs.update(pairs or {})
    return Node(node_id(n), NodeRecord(seq=1, pairs=record_pairs), NodeStats(**stats))


class FakeProtocolClient:
    """
    Protocol client answering findNode from a script.

    replies maps a node number to the node numbers it returns; numbers in
    failing raise QueryError and numbers in hanging never answer.
    """

    def __init__(self, known: Iterable[int] = (), replies: Optional[Dict[int, List[int]]] = None,
                 failing: Iterable[int] = (), hanging: Iterable[int] = ()):
        self.nodes: Dict[int, Node] = {}
        self.known = [self.node(n) for n in known]
        self.replies = replies or {}
        self.failing = {node_id(n) for n in failing}
        self.hanging = {node_id(n) for n in hanging}
        self.find_node_calls = []
        self.opened = False
        self.closed = False

    def node(self, n: int) -> Node:
        if n not in self.nodes:
            self.nodes[n] = make_node(n, rtt_min=timedelta(milliseconds=n), bw_max=1e6 * n)
        return self.nodes[n]

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def random_nodes(self, max_amount: int) -> List[Node]:
        return self.known[:max_amount]

    async def find_node(self, node: Node, distances) -> List[Node]:
        self.find_node_calls.append((node.node_id, list(distances)))
        await asyncio.sleep(0)
        if node.node_id in self.hanging:
            await asyncio.sleep(3600)
        if node.node_id in self.failing:
            raise QueryError(f"no reply from {node}")
        number = int.from_bytes(node.node_id.raw, 'big')
        return [self.node(n) for n in self.replies.get(number, [])]

    async def ping(self, node: Node):
        return f"pong from {node}"

    async def talk_req(self, node: Node, protocol: bytes, request: bytes) -> bytes:
        return b'\x01\x02'

    def node_from_record(self, record: NodeRecord) -> Node:
        return Node(node_id(99), record)


def create_client(config) -> FakeProtocolClient:
    """Client factory for CLI tests (--client tests.fakes:create_client)."""
    client = FakeProtocolClient(known=[1], replies={1: [2, 3]})
    client.config = config
    CREATED_CLIENTS.append(client)
    return client


def broken_factory(config):
    raise OSError("address already in use")


class MemoryPeerStore:
    """Peer store keeping rows in a list."""

    def __init__(self, fail_on_write: bool = False):
        self.rows = []
        self.fail_on_write = fail_on_write

    def write_row(self, row):
        if self.fail_on_write:
            raise PersistenceError("disk full")
        self.rows.append(row)


class FullDiskPeerStore(PeerStoreWriter):
    """Peer store that writes its header to path, then every row to a full disk."""

    def open(self):
        super().open()
        self._file.close()
        self._file = open(FULL_DEVICE, 'w', newline='', encoding='utf-8')
        self._writer = csv.writer(self._file)


# ── record text helpers ──────────────────────────────────────────────────

def rlp_encode(item) -> bytes:
    if isinstance(item, list):
        body = b''.join(rlp_encode(i) for i in item)
        return _rlp_prefix(len(body), 0xc0) + body
    if len(item) == 1 and item[0] < 0x80:
        return item
    return _rlp_prefix(len(item), 0x80) + item


def _rlp_prefix(length: int, offset: int) -> bytes:
    if length <= 55:
        return bytes([offset + length])
    size = (length.bit_length() + 7) // 8
    return bytes([offset + 55 + size]) + length.to_bytes(size, 'big')


def enr_text(payload: bytes) -> str:
    return 'enr:' + base64.urlsafe_b64encode(payload).rstrip(b'=').decode('ascii')


def make_enr(pairs: Dict[bytes, bytes], seq: int = 1) -> str:
    """Record text over the given key/value pairs with a dummy signature."""
    items = [b'\x11' * 64, seq.to_bytes(max(1, (seq.bit_length() + 7) // 8), 'big')]
    for key in sorted(pairs):
        items.extend([key, pairs[key]])
    return enr_text(rlp_encode(items))
