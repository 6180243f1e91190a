"""
Identifier Helpers
==================

Node ids, path prefixes, ghost sentinels and edge keys all pass through
here so every module spells them the same way.

Identifier Forms
----------------
    Node hash:   "0xABCD1234"  (any case or 0x-less input is accepted)
    Path prefix: "AB"          (first byte of the hash, one hop in a path)
    Ghost id:    "ghost:C2"    (hop that decoded to no known node)
    Edge key:    "0xAB12->0xCD34" (directed)

    >>> normalize_hash("abcd1234"), get_prefix("0xabcd1234")
    ('0xABCD1234', 'AB')
"""

import json
import re
from typing import List, Optional, Tuple

HASH_RE = re.compile(r'^(0x)?[0-9A-Fa-f]{2,}$')
PREFIX_RE = re.compile(r'^[0-9A-Fa-f]{2}$')

GHOST_ID_PREFIX = "ghost:"
EDGE_KEY_SEPARATOR = "->"


def _strip_hex(value) -> str:
    text = str(value).strip().upper()
    return text[2:] if text.startswith("0X") else text


def normalize_hash(node_input: Optional[str]) -> str:
    """Canonical "0x" + uppercase form of a node hash; "" for empty input."""
    if not node_input:
        return ""
    digits = _strip_hex(node_input)
    return f"0x{digits}" if digits else ""


def get_prefix(full_hash: Optional[str]) -> str:
    """
    Path prefix of a node hash: its first byte as two uppercase hex chars.

    Input shorter than a byte is returned as-is (uppercased).
    """
    if not full_hash:
        return ""
    return _strip_hex(full_hash)[:2]


def validate_hash(hash_str: Optional[str]) -> bool:
    """True if hash_str is hex, at least one byte, with or without "0x"."""
    return bool(hash_str) and HASH_RE.match(str(hash_str).strip()) is not None


def validate_prefix(prefix: Optional[str]) -> bool:
    """True for exactly two hex characters ("ab", "C2"); "0xAB" is not a prefix."""
    return bool(prefix) and PREFIX_RE.match(str(prefix).strip()) is not None


def ghost_node_id(prefix: str) -> str:
    """Synthetic node id for an unresolved hop with this prefix."""
    return f"{GHOST_ID_PREFIX}{prefix.upper()}"


def is_ghost_id(node_id: Optional[str]) -> bool:
    return bool(node_id) and node_id.startswith(GHOST_ID_PREFIX)


def make_edge_key(from_id: str, to_id: str) -> str:
    """
    Create a directed edge key.

    Unlike an undirected key the endpoints are not sorted: A->B and B->A
    are separate edges, since a decoded path records the forwarding
    direction.

    Examples:
        >>> make_edge_key("0xABCD", "0xEF01")
        '0xABCD->0xEF01'
        >>> make_edge_key("0xEF01", "ghost:C2")
        '0xEF01->ghost:C2'
    """
    return f"{from_id}{EDGE_KEY_SEPARATOR}{to_id}"


def parse_edge_key(edge_key: str) -> Tuple[str, str]:
    """
    Parse edge key back into its two endpoints.

    Raises:
        ValueError: If edge_key is not valid format
    """
    parts = edge_key.split(EDGE_KEY_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid edge key format: {edge_key}")
    return parts[0], parts[1]


def parse_path(raw_path) -> Optional[List]:
    """
    Unpack a packet path from the formats the backend serves.

    Handles:
        - JSON string: '["AB", "CD", "EF"]'
        - List of strings: ["AB", "CD", "EF"]
        - List of ints: [0xAB, 0xCD, 0xEF]
        - None/empty

    Elements are returned as given (ints formatted as 2-char hex);
    checking each hop is left to the validation layer.

    Returns:
        List of hop values, or None if the container itself is unusable
    """
    if raw_path is None:
        return None

    if isinstance(raw_path, (list, tuple)):
        path = list(raw_path)
    elif isinstance(raw_path, str):
        if not raw_path.strip():
            return []
        try:
            path = json.loads(raw_path)
        except (json.JSONDecodeError, ValueError):
            return None
        if not isinstance(path, list):
            return None
    else:
        return None

    result = []
    for hop in path:
        if isinstance(hop, bool):
            result.append(hop)
        elif isinstance(hop, int):
            result.append(f"{hop:02X}" if 0 <= hop <= 0xFF else hop)
        elif isinstance(hop, str):
            result.append(hop.strip().upper())
        else:
            result.append(hop)

    return result


def get_position_from_index(index: int, path_length: int) -> int:
    """
    Convert path array index to position number.

    Position 1 = last hop (direct forwarder to local)
    Position 2 = second-to-last, etc.
    """
    return path_length - index
