"""
Decoding of node records in their "enr:" text form (EIP-778).

The text form is base64url (no padding) over an RLP list:

    [signature, seq, k1, v1, k2, v2, ...]

Only decoding is needed here: bootnodes and diagnostic targets arrive as text
and are handed to the protocol client. Signatures are carried, not verified.
"""

import base64
import binascii
from typing import List, Tuple, Union

from .node import NodeRecord

ENR_PREFIX = 'enr:'
MAX_RECORD_SIZE = 300

RlpItem = Union[bytes, List['RlpItem']]


class EnrError(ValueError):
    """Raised for any malformed record text or payload."""


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                              RLP DECODING                                  ║
# ╚══════════════════════════════════════════════════════════════════════════╝

def _read_length(data: bytes, offset: int, size: int) -> int:
    """Read a big-endian length of `size` bytes starting at offset."""
    if offset + size > len(data):
        raise EnrError("Truncated RLP length")
    if data[offset] == 0:
        raise EnrError("RLP length has leading zero bytes")
    return int.from_bytes(data[offset:offset + size], 'big')


def decode_item(data: bytes, offset: int = 0) -> Tuple[RlpItem, int]:
    """Decode one RLP item, return (item, new_offset)."""
    if offset >= len(data):
        raise EnrError("Unexpected end of RLP data")

    prefix = data[offset]

    if prefix < 0x80:
        return data[offset:offset + 1], offset + 1

    if prefix <= 0xb7:
        length = prefix - 0x80
        start = offset + 1
        if length == 1 and start < len(data) and data[start] < 0x80:
            raise EnrError("Single byte below 0x80 must not be length-prefixed")
    elif prefix <= 0xbf:
        size = prefix - 0xb7
        length = _read_length(data, offset + 1, size)
        start = offset + 1 + size
    elif prefix <= 0xf7:
        length = prefix - 0xc0
        start = offset + 1
        return _decode_list(data, start, start + length)
    else:
        size = prefix - 0xf7
        length = _read_length(data, offset + 1, size)
        start = offset + 1 + size
        return _decode_list(data, start, start + length)

    end = start + length
    if end > len(data):
        raise EnrError("RLP string runs past end of data")
    return data[start:end], end


def _decode_list(data: bytes, start: int, end: int) -> Tuple[RlpItem, int]:
    if end > len(data):
        raise EnrError("RLP list runs past end of data")
    items = []
    offset = start
    while offset < end:
        item, offset = decode_item(data, offset)
        items.append(item)
    if offset != end:
        raise EnrError("RLP list item overruns list boundary")
    return items, end


def decode_rlp(data: bytes) -> RlpItem:
    """Decode a complete RLP payload, rejecting trailing bytes."""
    item, offset = decode_item(data, 0)
    if offset != len(data):
        raise EnrError(f"{len(data) - offset} trailing bytes after RLP item")
    return item


def _item_span(data: bytes, offset: int) -> Tuple[RlpItem, bytes, int]:
    """Decode an item and also return its raw encoding."""
    item, end = decode_item(data, offset)
    return item, data[offset:end], end


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                            RECORD DECODING                                 ║
# ╚══════════════════════════════════════════════════════════════════════════╝

def decode_record(payload: bytes) -> NodeRecord:
    """Decode the RLP payload of a record into a NodeRecord."""
    if len(payload) > MAX_RECORD_SIZE:
        raise EnrError(f"Record is {len(payload)} bytes, max is {MAX_RECORD_SIZE}")
    if not payload or payload[0] < 0xc0:
        raise EnrError("Record payload is not an RLP list")

    # Walk the outer list by hand so list-valued attributes keep their raw bytes
    prefix = payload[0]
    if prefix <= 0xf7:
        offset = 1
        end = 1 + prefix - 0xc0
    else:
        size = prefix - 0xf7
        offset = 1 + size
        end = offset + _read_length(payload, 1, size)
    if end != len(payload):
        raise EnrError("Record length does not match payload size")

    elements = []
    while offset < end:
        item, raw, offset = _item_span(payload, offset)
        elements.append((item, raw))
    if offset != end:
        raise EnrError("Record item overruns list boundary")

    if len(elements) < 2 or len(elements) % 2 != 0:
        raise EnrError("Record must hold a signature, seq and key/value pairs")

    signature, _ = elements[0]
    seq_bytes, _ = elements[1]
    if not isinstance(signature, bytes) or not isinstance(seq_bytes, bytes):
        raise EnrError("Signature and seq must be byte strings")

    pairs = {}
    for (key, _), (value, raw_value) in zip(elements[2::2], elements[3::2]):
        if not isinstance(key, bytes):
            raise EnrError("Record keys must be byte strings")
        try:
            name = key.decode('ascii')
        except UnicodeDecodeError:
            raise EnrError(f"Record key is not ASCII: {key!r}")
        if name in pairs:
            raise EnrError(f"Duplicate record key: {name}")
        pairs[name] = value if isinstance(value, bytes) else raw_value

    return NodeRecord(
        seq=int.from_bytes(seq_bytes, 'big'),
        pairs=pairs,
        signature=signature,
    )


def decode_enr(text: str) -> NodeRecord:
    """Decode a record from its "enr:" text form."""
    text = text.strip()
    if not text.startswith(ENR_PREFIX):
        raise EnrError(f"Record text must start with '{ENR_PREFIX}'")

    body = text[len(ENR_PREFIX):]
    try:
        payload = base64.urlsafe_b64decode(body + '=' * (-len(body) % 4))
    except (binascii.Error, ValueError) as e:
        raise EnrError(f"Invalid base64 in record: {e}")

    return decode_record(payload)
