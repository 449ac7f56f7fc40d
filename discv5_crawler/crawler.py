"""
Discovery network crawler.

Starting from the nodes the protocol client already knows, every queued node
is sent one findNode query. Each successful reply yields a measurement row
(transport stats plus the node's declared attributes) and feeds newly seen
peers back into the queue. When the queue and all in-flight queries are
drained, every measured node is queued again and a new cycle starts.

Features:
- Paced dispatch of concurrent queries on a single event loop
- Explicit cap on in-flight queries
- Failed nodes are dropped, never persisted
- Persistence failures stop the whole crawl
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .config import CrawlConfig
from .enr import EnrError, decode_rlp
from .node import Node, NodeId, NodeRecord, ProtocolClient, QueryError, format_address
from .peerstore import MeasurementRow, PeerStoreWriter

logger = logging.getLogger(__name__)

FORK_DIGEST_SIZE = 4

# Errors a single query may end with; anything else is a bug and stops the crawl
QUERY_ERRORS = (QueryError, asyncio.TimeoutError, OSError)


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                              CRAWL STATE                                    ║
# ╚══════════════════════════════════════════════════════════════════════════╝

class EmptyQueue(Exception):
    """Nothing is queued for measurement right now."""


@dataclass
class CrawlState:
    """
    Node bookkeeping owned by the crawler.

    queued and measured never share an identity. pending maps each in-flight
    query task to the identity it measures; a cycle may only rotate once it
    is empty.
    """
    queued: Dict[NodeId, Node] = field(default_factory=dict)
    measured: Dict[NodeId, Node] = field(default_factory=dict)
    pending: Dict[asyncio.Task, NodeId] = field(default_factory=dict)
    in_flight: Set[NodeId] = field(default_factory=set)
    cycle: int = 0

    def take_next(self) -> Node:
        """Remove and return any queued node."""
        try:
            _, node = self.queued.popitem()
        except KeyError:
            raise EmptyQueue()
        return node

    def enqueue(self, node: Node) -> bool:
        """Queue a node unless it is already known in this cycle."""
        node_id = node.node_id
        if node_id in self.queued or node_id in self.measured or node_id in self.in_flight:
            return False
        self.queued[node_id] = node
        return True

    def mark_measured(self, node: Node):
        self.queued.pop(node.node_id, None)
        self.measured[node.node_id] = node

    def track(self, task: asyncio.Task, node: Node):
        self.pending[task] = node.node_id
        self.in_flight.add(node.node_id)

    def untrack(self, task: asyncio.Task) -> Optional[NodeId]:
        node_id = self.pending.pop(task, None)
        if node_id is not None:
            self.in_flight.discard(node_id)
        return node_id

    @property
    def cycle_complete(self) -> bool:
        return not self.queued and not self.pending

    def rotate(self):
        """Start the next cycle: everything measured gets queued again."""
        if not self.cycle_complete:
            raise RuntimeError("Cannot rotate a cycle with queued or pending nodes")
        self.queued = self.measured
        self.measured = {}
        self.cycle += 1


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                          ATTRIBUTE EXTRACTION                               ║
# ╚══════════════════════════════════════════════════════════════════════════╝

@dataclass
class PeerAttributes:
    """Self-declared attributes read from a node record."""
    public_key: bytes = b''
    fork_digest: bytes = b'\x00' * FORK_DIGEST_SIZE
    attnets: bytes = b''
    attnets_count: int = 0
    client: str = ''


def decode_client(value: Optional[bytes]) -> str:
    """Client name from the 'client' attribute.

    The attribute is either a plain string or an RLP list of
    [name, version, build]; list elements are joined with '/'.
    A value that is itself valid UTF-8 is always read as a plain string.
    """
    if not value:
        return ''

    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        pass

    if value[0] >= 0xc0:
        parts = _decode_client_list(value)
        if parts is not None:
            return '/'.join(p for p in parts if p)

    return value.decode('utf-8', errors='ignore')


def _decode_client_list(value: bytes) -> Optional[List[str]]:
    """[name, version, ...] elements, or None when value is not such a list."""
    try:
        item = decode_rlp(value)
    except EnrError:
        return None
    if not isinstance(item, list) or len(item) < 2:
        return None
    if not all(isinstance(p, bytes) for p in item):
        return None
    try:
        return [p.decode('utf-8') for p in item]
    except UnicodeDecodeError:
        return None


def extract_attributes(record: NodeRecord) -> PeerAttributes:
    """Read the attributes this crawler reports; absent ones get defaults."""
    public_key = record.get('secp256k1') or b''
    eth2 = record.get('eth2') or b''
    attnets = record.get('attnets') or b''

    return PeerAttributes(
        public_key=bytes(public_key),
        fork_digest=bytes(eth2[:FORK_DIGEST_SIZE]).ljust(FORK_DIGEST_SIZE, b'\x00'),
        attnets=bytes(attnets),
        attnets_count=sum(bin(byte).count('1') for byte in attnets),
        client=decode_client(record.get('client')),
    )


def _millis(value: timedelta) -> int:
    return value // timedelta(milliseconds=1)


def build_row(cycle: int, node: Node, attributes: PeerAttributes) -> MeasurementRow:
    """Assemble the persisted row for one successful measurement."""
    stats = node.stats
    return MeasurementRow(
        cycle=cycle,
        node_id=node.node_id.hex(),
        address=format_address(node.address),
        rtt_min=_millis(stats.rtt_min),
        rtt_avg=_millis(stats.rtt_avg),
        bw_max_mbps=round(stats.bw_max / 1e6, 3),
        bw_avg_mbps=round(stats.bw_avg / 1e6, 3),
        pubkey=attributes.public_key.hex(),
        fork_digest=attributes.fork_digest.hex(),
        attnets=attributes.attnets.hex(),
        attnets_number=attributes.attnets_count,
        client=attributes.client,
    )


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                           STATISTICS TRACKER                                ║
# ╚══════════════════════════════════════════════════════════════════════════╝

class CrawlStats:
    """Track crawl statistics."""

    def __init__(self):
        self.dispatched_queries = 0
        self.successful_queries = 0
        self.failed_queries = 0
        self.rows_written = 0
        self.discovered_nodes = 0
        self.cycles_completed = 0
        self.start_time = 0.0

    def to_dict(self) -> Dict[str, Any]:
        elapsed = time.time() - self.start_time if self.start_time else 0
        return {
            'dispatched_queries': self.dispatched_queries,
            'successful_queries': self.successful_queries,
            'failed_queries': self.failed_queries,
            'rows_written': self.rows_written,
            'discovered_nodes': self.discovered_nodes,
            'cycles_completed': self.cycles_completed,
            'duration_seconds': int(elapsed),
        }


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                             MAIN CRAWLER                                    ║
# ╚══════════════════════════════════════════════════════════════════════════╝

class DiscoveryCrawler:
    """
    Paced, cycle-based crawler over a discovery protocol client.

    The crawler owns its CrawlState; only the crawler and the query tasks it
    spawns touch it, always from the event loop thread.
    """

    def __init__(self, client: ProtocolClient, peer_store: PeerStoreWriter,
                 config: Optional[CrawlConfig] = None):
        """
        Initialize the crawler.

        Args:
            client: Opened discovery protocol client
            peer_store: Opened sink receiving one row per measurement
            config: Crawl configuration
        """
        self.client = client
        self.peer_store = peer_store
        self.config = config or CrawlConfig()
        self.state = CrawlState()
        self.stats = CrawlStats()
        self._failure: Optional[BaseException] = None

    def seed(self) -> int:
        """Queue the nodes the client already knows; returns how many were new."""
        added = 0
        for node in self.client.random_nodes(self.config.seed_sample_size):
            if self.state.enqueue(node):
                added += 1
        return added

    # ── measurement ────────────────────────────────────────────────────────

    async def _find_node(self, node: Node) -> List[Node]:
        query = self.client.find_node(node, list(self.config.distances))
        if self.config.query_timeout:
            return await asyncio.wait_for(query, self.config.query_timeout)
        return await query

    async def measure(self, node: Node, cycle: int):
        """Query one node; persist its row and queue its peers on success."""
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            discovered = await self._find_node(node)
        except QUERY_ERRORS as e:
            self.stats.failed_queries += 1
            logger.debug(f"findNode failed for {node}: {e!r}")
            return

        query_time = loop.time() - started
        logger.debug(f"findNode finished for {node}: query_time={query_time:.3f}s, "
                     f"new_nodes={len(discovered)}, queued={len(self.state.queued)}")

        self.state.mark_measured(node)
        row = build_row(cycle, node, extract_attributes(node.record))
        logger.debug(f"crawl {node}: rttMin={row.rtt_min} rttAvg={row.rtt_avg} "
                     f"bwMaxMbps={row.bw_max_mbps} bwAvgMbps={row.bw_avg_mbps}")
        self.peer_store.write_row(row)
        self.stats.successful_queries += 1
        self.stats.rows_written += 1

        for peer in discovered:
            if self.state.enqueue(peer):
                self.stats.discovered_nodes += 1

    def dispatch(self, node: Node) -> asyncio.Task:
        """Start measuring a node concurrently and track it as pending."""
        task = asyncio.get_running_loop().create_task(self.measure(node, self.state.cycle))
        self.state.track(task, node)
        task.add_done_callback(self._query_done)
        self.stats.dispatched_queries += 1
        return task

    def _query_done(self, task: asyncio.Task):
        if self.state.untrack(task) is None:
            logger.error("Finished query was not in the pending set")

        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self._failure is None:
            self._failure = error

    # ── scheduling ─────────────────────────────────────────────────────────

    async def step(self):
        """One scheduler iteration: dispatch a node, wait, or rotate the cycle."""
        if self._failure is not None:
            raise self._failure

        if self.config.max_pending and len(self.state.pending) >= self.config.max_pending:
            logger.debug(f"{len(self.state.pending)} queries in flight, waiting")
            await asyncio.sleep(self.config.pending_wait_interval)
            return

        try:
            node = self.state.take_next()
        except EmptyQueue:
            if self.state.pending:
                logger.debug("Pending queries, waiting")
                await asyncio.sleep(self.config.pending_wait_interval)
            else:
                await self._next_cycle()
            return

        logger.debug(f"Measuring {node}")
        self.dispatch(node)
        await asyncio.sleep(self.config.query_interval)

    async def _next_cycle(self):
        logger.info(f"No more nodes in cycle {self.state.cycle}, starting next cycle "
                    f"({len(self.state.measured)} nodes measured)")
        self.state.rotate()
        self.stats.cycles_completed += 1
        logger.info(f"Crawl stats: {self.stats.to_dict()}")

        if not self.state.queued:
            added = self.seed()
            logger.warning(f"Nothing was measured in the last cycle, "
                           f"re-seeded {added} nodes from the client")
            await asyncio.sleep(self.config.idle_interval)

    async def run(self):
        """Crawl until cancelled or until a measurement fails fatally."""
        self.stats.start_time = time.time()
        added = self.seed()
        logger.info(f"Starting peer discovery with {added} known nodes")

        try:
            while True:
                await self.step()
        finally:
            await self._cancel_pending()

    async def _cancel_pending(self):
        tasks = list(self.state.pending)
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelling {len(tasks)} in-flight queries")
            await asyncio.gather(*tasks, return_exceptions=True)


async def crawl(client: ProtocolClient, config: CrawlConfig):
    """Open the peer store for the lifetime of the crawl and run it."""
    with PeerStoreWriter(config.persisting_file) as peer_store:
        crawler = DiscoveryCrawler(client, peer_store, config)
        await crawler.run()
