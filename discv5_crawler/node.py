"""
Node model shared by the crawler and the protocol client it drives.

The discovery wire protocol itself lives outside this package. A client
implementation only has to satisfy ProtocolClient and hand back Node objects
whose stats it keeps updating as round-trips complete.
"""

import socket
import struct
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

NODE_ID_SIZE = 32


class QueryError(Exception):
    """A discovery query timed out or returned a malformed reply."""


@dataclass(frozen=True)
class NodeId:
    """Fixed-size identity of a peer; also the DHT distance metric."""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) != NODE_ID_SIZE:
            raise ValueError(f"Node id must be {NODE_ID_SIZE} bytes, got {len(self.raw)}")

    @classmethod
    def from_hex(cls, value: str) -> 'NodeId':
        if value.startswith('0x'):
            value = value[2:]
        return cls(bytes.fromhex(value))

    def hex(self) -> str:
        return self.raw.hex()

    def __str__(self) -> str:
        # Same short form discovery clients print in their logs
        h = self.hex()
        return f"{h[:2]}*{h[-6:]}"


@dataclass
class NodeRecord:
    """
    Signed attribute set describing a peer.

    Only a handful of keys are ever read by the crawler; everything else is
    carried through untouched.
    """
    seq: int = 0
    pairs: Dict[str, bytes] = field(default_factory=dict)
    signature: bytes = b''

    def get(self, key: str) -> Optional[bytes]:
        """Look up a declared attribute, None when the peer did not declare it."""
        return self.pairs.get(key)

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """(ip, udp_port) from the record, preferring IPv4."""
        ip = self.get('ip')
        udp = self.get('udp')
        if ip is not None and len(ip) == 4 and udp:
            return socket.inet_ntoa(ip), _decode_port(udp)

        ip6 = self.get('ip6')
        udp6 = self.get('udp6') or udp
        if ip6 is not None and len(ip6) == 16 and udp6:
            return socket.inet_ntop(socket.AF_INET6, ip6), _decode_port(udp6)

        return None


def _decode_port(value: bytes) -> int:
    # Record integers are big-endian with leading zero bytes stripped
    return struct.unpack('>H', value.rjust(2, b'\x00')[-2:])[0]


@dataclass
class NodeStats:
    """Live transport statistics the protocol client keeps per node."""
    rtt_min: timedelta = timedelta(0)
    rtt_avg: timedelta = timedelta(0)
    bw_max: float = 0.0    # bytes/second
    bw_avg: float = 0.0    # bytes/second


@dataclass(eq=False)
class Node:
    """A queryable peer: identity, record and live stats."""
    node_id: NodeId
    record: NodeRecord = field(default_factory=NodeRecord)
    stats: NodeStats = field(default_factory=NodeStats)
    explicit_address: Optional[Tuple[str, int]] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        return self.explicit_address or self.record.address

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return self.node_id == other.node_id

    def __hash__(self):
        return hash(self.node_id)

    def __str__(self) -> str:
        address = self.address
        if address is None:
            return f"{self.node_id}"
        return f"{self.node_id}:{format_address(address)}"


def format_address(address: Optional[Tuple[str, int]]) -> str:
    """Render an address as ip:port, bracketing IPv6 hosts."""
    if address is None:
        return ''
    ip, port = address
    if ':' in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


class ProtocolClient(Protocol):
    """Capability the crawler consumes; implemented outside this package."""

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    def random_nodes(self, max_amount: int) -> List[Node]:
        ...

    async def find_node(self, node: Node, distances: Sequence[int]) -> List[Node]:
        ...

    async def ping(self, node: Node) -> Any:
        ...

    async def talk_req(self, node: Node, protocol: bytes, request: bytes) -> bytes:
        ...

    def node_from_record(self, record: NodeRecord) -> Node:
        ...
