"""
Edge Builder - Aggregate decoded paths into topology edges
==========================================================

Consecutive hops of a decoded path are an observed RF link. This module
counts those links across every decoded packet of a pass and decides
which are solid enough to export.

Key Concepts
------------
    Edge Key:
        Directed: "0xAB12->0xCD34". A decoded path records forwarding
        direction, so A->B and B->A are separate edges. An unresolved
        endpoint uses its ghost id, e.g. "0xAB12->ghost:C2". Two ghost
        endpoints never form an edge.

    Certain Decoding:
        One observation of an edge is certain when:
        - terminal: its destination is the direct forwarder into the
          local node (the one hop the local radio heard itself)
        - high: both endpoints decoded with confidence >= 0.6
        - very_high: the destination decoded with confidence >= 0.9

    Edge Confidence:
        Recency-weighted fraction of certain decodings. Each decoding
        is weighted by exp(-age_hours / 48), age taken relative to the
        pass reference time.

    Inclusion:
        An edge is exported (certain = True) once its confidence is at
        least 0.4 and it has at least 5 certain observations. Edges
        below either threshold are kept so later decodings can lift
        them.

Parallel Aggregation
--------------------
Each decode worker fills its own EdgeAggregator. merge() folds one into
another; the pass merges them in chunk order so float sums (and thus
results) are the same on every run.

Example
-------
    >>> agg = EdgeAggregator(reference_time=now)
    >>> agg.add_decoded_path(decoder.decode(obs))
    >>> [e.key for e in agg.included_edges()]
    []
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .config import Config, DecoderConfig, EdgeConfig
from .path_decoder import DecodedHop, DecodedPath
from .utils import is_ghost_id, make_edge_key

logger = logging.getLogger("Topology.EdgeBuilder")

REASON_TERMINAL = "terminal"
REASON_HIGH = "high"
REASON_VERY_HIGH = "very_high"


def classify_certainty(
    from_confidence: float,
    to_confidence: float,
    is_terminal: bool,
    edge_config: Optional[EdgeConfig] = None,
) -> Optional[str]:
    """
    Decide whether one decoding of an edge is certain.

    Returns:
        The reason ("terminal", "high", "very_high"), or None if uncertain
    """
    cfg = edge_config or Config.EDGE
    if is_terminal:
        return REASON_TERMINAL
    if from_confidence >= cfg.HIGH_CONFIDENCE and to_confidence >= cfg.HIGH_CONFIDENCE:
        return REASON_HIGH
    if to_confidence >= cfg.VERY_HIGH_CONFIDENCE:
        return REASON_VERY_HIGH
    return None


@dataclass(frozen=True)
class EdgeObservation:
    """Single decoding of an edge in one packet."""
    from_id: str
    to_id: str
    from_confidence: float
    to_confidence: float
    reason: Optional[str]
    timestamp: float
    hop_distance: int  # Position of the destination (1 = direct forwarder)

    @property
    def edge_key(self) -> str:
        return make_edge_key(self.from_id, self.to_id)

    @property
    def is_certain(self) -> bool:
        return self.reason is not None


@dataclass
class Edge:
    """Aggregated directed edge."""
    from_id: str
    to_id: str
    observation_count: int = 0
    certain_count: int = 0
    weighted_certain: float = 0.0
    weighted_total: float = 0.0
    first_seen: Optional[float] = None
    last_seen: Optional[float] = None
    reasons: Counter = field(default_factory=Counter)
    certain: bool = False

    @property
    def key(self) -> str:
        return make_edge_key(self.from_id, self.to_id)

    @property
    def confidence(self) -> float:
        if self.weighted_total <= 0:
            return 0.0
        return self.weighted_certain / self.weighted_total

    @property
    def has_ghost(self) -> bool:
        return is_ghost_id(self.from_id) or is_ghost_id(self.to_id)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "from": self.from_id,
            "to": self.to_id,
            "observationCount": self.observation_count,
            "certainCount": self.certain_count,
            "confidence": round(self.confidence, 3),
            "certain": self.certain,
            "hasGhost": self.has_ghost,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "reasons": dict(self.reasons),
        }


def extract_edge_observations(
    decoded: DecodedPath,
    edge_config: Optional[EdgeConfig] = None,
) -> List[EdgeObservation]:
    """
    Edge observations for consecutive hops of one decoded path.

    Ghost-to-ghost pairs are skipped. The pair ending at the last path
    position is the terminal hop.
    """
    hops: Tuple[DecodedHop, ...] = decoded.hops
    last = len(hops) - 1
    timestamp = decoded.observation.timestamp

    result = []
    for i in range(last):
        src, dst = hops[i], hops[i + 1]
        if src.is_ghost and dst.is_ghost:
            continue

        reason = classify_certainty(
            src.confidence, dst.confidence, is_terminal=(i + 1 == last), edge_config=edge_config,
        )
        result.append(EdgeObservation(
            from_id=src.node_id,
            to_id=dst.node_id,
            from_confidence=src.confidence,
            to_confidence=dst.confidence,
            reason=reason,
            timestamp=timestamp,
            hop_distance=dst.position,
        ))
    return result


class EdgeAggregator:
    """
    Accumulates edge observations for one analysis pass.

    Not thread-safe: give each worker its own aggregator and merge().
    """

    def __init__(self, reference_time: float, edge_config: Optional[EdgeConfig] = None):
        self.reference_time = reference_time
        self.config = edge_config or Config.EDGE
        self._edges: Dict[Tuple[str, str], Edge] = {}
        self.paths_seen = 0

    def _weight(self, timestamp: float) -> float:
        age_hours = max(0.0, (self.reference_time - timestamp) / 3600)
        return math.exp(-age_hours / self.config.RECENCY_DECAY_HOURS)

    def _refresh(self, edge: Edge) -> None:
        edge.certain = (
            edge.confidence >= self.config.MEDIUM_CONFIDENCE and
            edge.certain_count >= self.config.MIN_CERTAIN_OBSERVATIONS
        )

    def record(self, obs: EdgeObservation) -> Edge:
        """Add one edge observation and update that edge's confidence."""
        if is_ghost_id(obs.from_id) and is_ghost_id(obs.to_id):
            raise ValueError(f"Edge between two ghosts: {obs.edge_key}")

        pair = (obs.from_id, obs.to_id)
        edge = self._edges.get(pair)
        if edge is None:
            edge = Edge(obs.from_id, obs.to_id)
            self._edges[pair] = edge

        weight = self._weight(obs.timestamp)
        edge.observation_count += 1
        edge.weighted_total += weight
        if obs.is_certain:
            edge.certain_count += 1
            edge.weighted_certain += weight
            edge.reasons[obs.reason] += 1

        if edge.first_seen is None or obs.timestamp < edge.first_seen:
            edge.first_seen = obs.timestamp
        if edge.last_seen is None or obs.timestamp > edge.last_seen:
            edge.last_seen = obs.timestamp

        self._refresh(edge)
        return edge

    def add_decoded_path(self, decoded: DecodedPath) -> List[EdgeObservation]:
        observations = extract_edge_observations(decoded, self.config)
        for obs in observations:
            self.record(obs)
        self.paths_seen += 1
        return observations

    def merge(self, other: "EdgeAggregator") -> None:
        """Fold another aggregator's counts into this one."""
        for pair, theirs in other._edges.items():
            edge = self._edges.get(pair)
            if edge is None:
                edge = Edge(theirs.from_id, theirs.to_id)
                self._edges[pair] = edge

            edge.observation_count += theirs.observation_count
            edge.certain_count += theirs.certain_count
            edge.weighted_certain += theirs.weighted_certain
            edge.weighted_total += theirs.weighted_total
            edge.reasons.update(theirs.reasons)

            if theirs.first_seen is not None and (edge.first_seen is None or theirs.first_seen < edge.first_seen):
                edge.first_seen = theirs.first_seen
            if theirs.last_seen is not None and (edge.last_seen is None or theirs.last_seen > edge.last_seen):
                edge.last_seen = theirs.last_seen

            self._refresh(edge)

        self.paths_seen += other.paths_seen

    def get(self, from_id: str, to_id: str) -> Optional[Edge]:
        return self._edges.get((from_id, to_id))

    def edges(self) -> List[Edge]:
        """All edges, sorted by key."""
        return sorted(self._edges.values(), key=lambda e: e.key)

    def included_edges(self) -> List[Edge]:
        return [e for e in self.edges() if e.certain]

    def validated_pairs(self, decoder_config: Optional[DecoderConfig] = None) -> Set[Tuple[str, str]]:
        """
        Concrete node pairs strong enough to override the radio model.

        Confidence >= DECODER.OVERRIDE_MIN_CONFIDENCE and
        certain_count >= DECODER.OVERRIDE_MIN_CERTAIN; ghost edges never qualify.
        """
        cfg = decoder_config or Config.DECODER
        return {
            (e.from_id, e.to_id)
            for e in self._edges.values()
            if not e.has_ghost
            and e.confidence >= cfg.OVERRIDE_MIN_CONFIDENCE
            and e.certain_count >= cfg.OVERRIDE_MIN_CERTAIN
        }

    def __len__(self) -> int:
        return len(self._edges)

    def stats(self) -> dict:
        edges = list(self._edges.values())
        return {
            "pathsSeen": self.paths_seen,
            "totalEdges": len(edges),
            "includedEdges": sum(1 for e in edges if e.certain),
            "ghostEdges": sum(1 for e in edges if e.has_ghost),
            "totalObservations": sum(e.observation_count for e in edges),
            "certainObservations": sum(e.certain_count for e in edges),
        }
