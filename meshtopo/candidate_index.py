"""
Candidate Index - Known identities behind each 2-char prefix
============================================================

For every 2-character path prefix, the set of known nodes whose hash
starts with it, plus the historical statistics the scorer needs.

The Problem
-----------
MeshCore paths name each hop by the first byte of its public key. With
a few hundred contacts and only 256 possible prefixes, collisions are
inevitable:

    - Node A: 0xABCDEF12 -> prefix "AB"
    - Node B: 0xAB998877 -> prefix "AB"

The index keeps both and lets the scorer decide per packet.

What Is Indexed
---------------
    Candidates:
        Built from the contact registry. Hash, optional location,
        last-seen time, name and contact type. Contacts with a bad
        hash, coordinates or timestamp are dropped and reported.
        Duplicate hashes merge, keeping the newest last_seen.

    Age filter:
        Candidates not seen within CANDIDATE.MAX_AGE_HOURS (14 days)
        of the reference time are not eligible. They stay in the index
        (visible through candidates()) but never reach the decoder.

    Position statistics:
        Per prefix, how often it appears at each position counted from
        the local end. Position 1 is the direct forwarder; positions
        beyond MAX_POSITIONS are clamped.

    Co-occurrence statistics:
        Per prefix, how often each other prefix sits immediately next
        to it in a path.

Position and co-occurrence statistics belong to the prefix, not to a
candidate: every candidate behind "AB" shares them.

Example
-------
    >>> index = CandidateIndex.build(
    ...     contacts={"0xAB12": {"latitude": 51.5, "longitude": -0.1,
    ...                          "last_seen": 1704067200}},
    ...     observations=snapshot,
    ...     local_node=LocalNode("0xFF00", 51.49, -0.12),
    ...     reference_time=1704070800,
    ... )
    >>> [c.node_hash for c in index.eligible("AB")]
    ['0xAB12']
"""

import logging
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import CandidateConfig, Config
from .errors import ErrorCode
from .geo_utils import LatLon, has_valid_coordinates
from .observation_store import DataQualityReport, Observation
from .utils import get_position_from_index, get_prefix, normalize_hash
from .validation import (
    ValidationError,
    validate_coordinates,
    validate_hash_param,
    validate_timestamp,
)

logger = logging.getLogger("Topology.CandidateIndex")

# A prefix with this many candidates or more is listed in the stats
HIGH_COLLISION_COUNT = 3


def is_repeater(contact: Mapping) -> bool:
    """
    Determine if a contact is a repeater (participates in mesh routing).

    Companions and room servers don't forward packets, so their prefixes
    never appear in paths. Unknown types are excluded.
    """
    contact_type = contact.get("contact_type") or contact.get("contactType") or ""
    if contact_type:
        ct = str(contact_type).lower()
        if ct in ("repeater", "rep"):
            return True
        if ct in ("companion", "client", "cli", "room server", "room_server", "room", "server"):
            return False

    is_rep = contact.get("is_repeater")
    if is_rep is True:
        return True
    return False


@dataclass
class NodeCandidate:
    """A known node that could be behind its prefix."""
    node_hash: str
    prefix: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_seen: float = 0.0
    name: Optional[str] = None
    contact_type: Optional[str] = None

    def __post_init__(self):
        self.node_hash = normalize_hash(self.node_hash)
        if not self.prefix:
            self.prefix = get_prefix(self.node_hash)

    @property
    def location(self) -> Optional[LatLon]:
        if has_valid_coordinates(self.latitude, self.longitude):
            return (self.latitude, self.longitude)
        return None

    @property
    def has_location(self) -> bool:
        return self.location is not None

    def touch(self, timestamp: float) -> bool:
        """
        Record activity at timestamp.

        last_seen never moves backwards.

        Returns:
            True if last_seen advanced
        """
        if timestamp > self.last_seen:
            self.last_seen = timestamp
            return True
        return False

    def age_hours(self, reference_time: float) -> float:
        return (reference_time - self.last_seen) / 3600

    def to_dict(self) -> dict:
        return {
            "hash": self.node_hash,
            "prefix": self.prefix,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "lastSeen": self.last_seen,
            "name": self.name,
            "contactType": self.contact_type,
        }


@dataclass
class LocalNode:
    """The receiving node. Implicit terminal anchor of every path."""
    node_hash: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        self.node_hash = normalize_hash(self.node_hash)

    @property
    def prefix(self) -> str:
        return get_prefix(self.node_hash)

    @property
    def location(self) -> Optional[LatLon]:
        if has_valid_coordinates(self.latitude, self.longitude):
            return (self.latitude, self.longitude)
        return None


@dataclass(frozen=True)
class IndexedCandidate:
    """A candidate tagged with its age-filter status for one reference time."""
    candidate: NodeCandidate
    eligible: bool
    age_hours: float


@dataclass
class CollisionStats:
    """Prefix collision statistics."""
    total_prefixes: int = 0
    unambiguous_prefixes: int = 0
    collision_prefixes: int = 0
    collision_rate: float = 0.0
    high_collision_prefixes: List[dict] = field(default_factory=list)
    aged_out_candidates: int = 0
    total_candidates: int = 0
    rejected_contacts: int = 0
    repeaters_only: bool = False

    def to_dict(self) -> dict:
        return {
            "totalPrefixes": self.total_prefixes,
            "unambiguousPrefixes": self.unambiguous_prefixes,
            "collisionPrefixes": self.collision_prefixes,
            "collisionRate": round(self.collision_rate, 1),
            "highCollisionPrefixes": self.high_collision_prefixes,
            "agedOutCandidates": self.aged_out_candidates,
            "totalCandidates": self.total_candidates,
            "rejectedContacts": self.rejected_contacts,
            "repeatersOnly": self.repeaters_only,
        }


ContactSource = Union[Mapping[str, Mapping], Iterable[Union[Mapping, NodeCandidate]]]


def _iter_contacts(contacts: Optional[ContactSource]):
    """Yield (hash, info) from a hash-keyed mapping or a list of records."""
    if not contacts:
        return
    if isinstance(contacts, Mapping):
        for node_hash, info in contacts.items():
            yield node_hash, info or {}
        return
    for item in contacts:
        if isinstance(item, NodeCandidate):
            yield item.node_hash, item.to_dict()
        elif isinstance(item, Mapping):
            yield item.get("hash") or item.get("node_hash") or item.get("pubkey"), item
        else:
            yield None, {"_raw": item}


class CandidateIndex:
    """
    Prefix -> candidate lookup with position and co-occurrence statistics.

    Built once per analysis pass. Reads are safe from several decoder
    threads; touch() may be called concurrently and only invalidates
    the cached per-prefix views.
    """

    def __init__(
        self,
        local_node: Optional[LocalNode] = None,
        reference_time: Optional[float] = None,
        candidate_config: Optional[CandidateConfig] = None,
    ):
        self.config = candidate_config or Config.CANDIDATE
        self.local_node = local_node
        self.reference_time = reference_time if reference_time is not None else time.time()
        self.data_quality = DataQualityReport(max_samples=Config.INGEST.MAX_REJECTED_SAMPLES)

        self._nodes: Dict[str, NodeCandidate] = {}
        self._position_counts: Dict[str, List[int]] = defaultdict(
            lambda: [0] * self.config.MAX_POSITIONS
        )
        self._adjacent_counts: Dict[str, Counter] = defaultdict(Counter)

        self._lock = threading.Lock()
        self._views: Optional[Dict[str, Tuple[IndexedCandidate, ...]]] = None

    # ─── Construction ────────────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        contacts: Optional[ContactSource],
        observations: Sequence[Observation] = (),
        local_node: Optional[LocalNode] = None,
        reference_time: Optional[float] = None,
        candidate_config: Optional[CandidateConfig] = None,
    ) -> "CandidateIndex":
        """
        Build the index from the contact registry and an observation snapshot.

        Args:
            contacts: Hash-keyed dict of contact info, or a list of contact
                dicts (with "hash") / NodeCandidate objects
            observations: Snapshot used for position / co-occurrence stats
            local_node: Receiving node (never indexed as a candidate)
            reference_time: "Now" for the age filter (defaults to time.time())
        """
        index = cls(local_node, reference_time, candidate_config)

        for node_hash, info in _iter_contacts(contacts):
            index.add_contact(node_hash, info)

        for obs in observations:
            index.record_path(obs.path)
            if obs.src_hash:
                # Hearing a node originate traffic refreshes its last_seen
                index.touch(obs.src_hash, obs.timestamp)

        if index.data_quality.has_defects:
            logger.warning(
                f"Dropped {index.data_quality.rejected} invalid contacts "
                f"({dict(index.data_quality.by_code)})"
            )
        logger.debug(
            f"Candidate index built: {len(index._nodes)} candidates, "
            f"{len(index._position_counts)} prefixes with path history"
        )
        return index

    def add_contact(self, node_hash, info: Mapping) -> Optional[NodeCandidate]:
        """
        Validate and index one contact.

        Invalid contacts are recorded in data_quality and skipped.

        Returns:
            The indexed (possibly merged) candidate, or None if skipped
        """
        try:
            normalized = validate_hash_param(node_hash, "hash", required=True)
            if not isinstance(info, Mapping):
                raise ValidationError(
                    "contact", f"must be a mapping, got {type(info).__name__}",
                    info, ErrorCode.INVALID_PARAMETER,
                )
            lat, lon = validate_coordinates(
                info.get("latitude", info.get("lat")),
                info.get("longitude", info.get("lon")),
            )
            raw_seen = info.get("last_seen", info.get("lastSeen"))
            last_seen = validate_timestamp(raw_seen, "last_seen") if raw_seen not in (None, "") else 0.0
        except ValidationError as e:
            self.data_quality.record_rejection(e)
            return None

        if self.local_node and normalized == self.local_node.node_hash:
            return None

        if self.config.REPEATERS_ONLY and not is_repeater(info):
            return None

        self.data_quality.accepted += 1
        name = info.get("name") or info.get("node_name")
        contact_type = info.get("contact_type") or info.get("contactType")

        with self._lock:
            existing = self._nodes.get(normalized)
            if existing is None:
                candidate = NodeCandidate(
                    node_hash=normalized,
                    latitude=lat,
                    longitude=lon,
                    last_seen=last_seen,
                    name=name,
                    contact_type=contact_type,
                )
                self._nodes[normalized] = candidate
            else:
                candidate = existing
                newer = last_seen >= existing.last_seen
                if lat is not None and (newer or not existing.has_location):
                    existing.latitude, existing.longitude = lat, lon
                existing.name = existing.name or name
                existing.contact_type = existing.contact_type or contact_type
                existing.touch(last_seen)
            self._views = None

        return candidate

    def record_path(self, path: Sequence[str]) -> None:
        """Add one path to the position and co-occurrence statistics."""
        path_length = len(path)
        max_pos = self.config.MAX_POSITIONS

        for i, prefix in enumerate(path):
            position = min(get_position_from_index(i, path_length), max_pos)
            self._position_counts[prefix][position - 1] += 1

            if i > 0:
                self._adjacent_counts[prefix][path[i - 1]] += 1
            if i < path_length - 1:
                self._adjacent_counts[prefix][path[i + 1]] += 1

    def touch(self, node_hash: str, timestamp: float) -> bool:
        """
        Attribute activity to a node.

        Returns:
            True if the node's last_seen advanced
        """
        normalized = normalize_hash(node_hash)
        with self._lock:
            node = self._nodes.get(normalized)
            if node is None:
                return False
            advanced = node.touch(timestamp)
            if advanced:
                self._views = None
        return advanced

    # ─── Lookup ──────────────────────────────────────────────────────────────

    def _get_views(self) -> Dict[str, Tuple[IndexedCandidate, ...]]:
        views = self._views
        if views is not None:
            return views

        with self._lock:
            if self._views is not None:
                return self._views

            by_prefix: Dict[str, List[IndexedCandidate]] = defaultdict(list)
            for node in self._nodes.values():
                age = node.age_hours(self.reference_time)
                eligible = node.last_seen > 0 and age <= self.config.MAX_AGE_HOURS
                by_prefix[node.prefix].append(IndexedCandidate(node, eligible, age))

            views = {}
            for prefix, items in by_prefix.items():
                items.sort(key=lambda ic: (-ic.candidate.last_seen, ic.candidate.node_hash))
                views[prefix] = tuple(items)

            self._views = views
            return views

    def get(self, node_hash: str) -> Optional[NodeCandidate]:
        return self._nodes.get(normalize_hash(node_hash))

    def prefixes(self) -> List[str]:
        return sorted(self._get_views().keys())

    def candidates(self, prefix: str) -> Tuple[IndexedCandidate, ...]:
        """All candidates for a prefix, most recent first, then by node hash."""
        return self._get_views().get(prefix.upper(), ())

    def eligible(self, prefix: str) -> List[NodeCandidate]:
        """Candidates inside the age window, most recent first."""
        return [ic.candidate for ic in self.candidates(prefix) if ic.eligible]

    def best_anchor(self, prefix: Optional[str]) -> Optional[NodeCandidate]:
        """Most recently seen eligible candidate with a location."""
        if not prefix:
            return None
        for node in self.eligible(prefix):
            if node.has_location:
                return node
        return None

    # ─── Statistics ──────────────────────────────────────────────────────────

    def appearances(self, prefix: str) -> int:
        counts = self._position_counts.get(prefix.upper())
        return sum(counts) if counts else 0

    def position_frequency(self, prefix: str, position: int) -> float:
        """
        Share of the prefix's path appearances at this position.

        Args:
            prefix: 2-char prefix
            position: 1 = direct forwarder; clamped to MAX_POSITIONS

        Returns:
            0-1 frequency, or the neutral factor if the prefix has no history
        """
        counts = self._position_counts.get(prefix.upper())
        total = sum(counts) if counts else 0
        if total == 0:
            return Config.SCORING.NEUTRAL_FACTOR

        position = max(1, min(position, self.config.MAX_POSITIONS))
        return counts[position - 1] / total

    def cooccurrence_frequency(self, prefix: str, neighbours: Iterable[Optional[str]]) -> float:
        """
        Share of the prefix's adjacency observations involving the given neighbours.

        Returns:
            0-1 frequency, or the neutral factor with no history or no neighbours
        """
        wanted = {n.upper() for n in neighbours if n}
        adjacent = self._adjacent_counts.get(prefix.upper())
        if not wanted or not adjacent:
            return Config.SCORING.NEUTRAL_FACTOR

        total = sum(adjacent.values())
        if total == 0:
            return Config.SCORING.NEUTRAL_FACTOR

        hits = sum(adjacent.get(n, 0) for n in wanted)
        return min(1.0, hits / total)

    def get_stats(self) -> CollisionStats:
        """Collision statistics over eligible candidates."""
        views = self._get_views()

        total = 0
        unambiguous = 0
        aged_out = 0
        total_candidates = 0
        high_collision = []

        for prefix, items in views.items():
            eligible = [ic.candidate for ic in items if ic.eligible]
            aged_out += len(items) - len(eligible)
            if not eligible:
                continue

            total += 1
            total_candidates += len(eligible)
            if len(eligible) == 1:
                unambiguous += 1
            elif len(eligible) >= HIGH_COLLISION_COUNT:
                high_collision.append({
                    "prefix": prefix,
                    "candidateCount": len(eligible),
                    "candidateHashes": [c.node_hash for c in eligible],
                })

        high_collision.sort(key=lambda x: (-x["candidateCount"], x["prefix"]))
        collisions = total - unambiguous

        return CollisionStats(
            total_prefixes=total,
            unambiguous_prefixes=unambiguous,
            collision_prefixes=collisions,
            collision_rate=(collisions / total * 100) if total > 0 else 0.0,
            high_collision_prefixes=high_collision[:5],
            aged_out_candidates=aged_out,
            total_candidates=total_candidates,
            rejected_contacts=self.data_quality.rejected,
            repeaters_only=self.config.REPEATERS_ONLY,
        )

    def __len__(self) -> int:
        return len(self._nodes)
