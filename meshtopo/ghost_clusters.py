"""
Ghost Clusters - Locating nodes nobody has a contact for
========================================================

A hop that decodes to Ghost is a relay the local node has no usable
contact for. One such hop says little; the same prefix turning up as
Ghost between the same neighbours again and again says there is a
repeater out there. This module estimates where.

Sampling
--------
Each Ghost hop gives one pseudo-location sample:

    both neighbours located -> midpoint of previous and next anchor (weight 1.0)
    one neighbour located   -> that anchor's position              (weight 0.5)
    none                    -> counted as unlocated, no sample

The previous anchor of the oldest hop is the packet's origin (when its
prefix resolves to a located candidate). The next anchor of the direct
forwarder is the local node.

Clustering
----------
Samples of one prefix are linked when within GHOST.CLUSTER_RADIUS_KM of
each other; clusters are the connected components of that proximity
graph (single linkage). Components with fewer than GHOST.MIN_MEMBERS
observations are noise. Identical sample locations are merged first,
since most ghost hops sit between the same two anchors.

Confidence
----------
    count   = 1 - exp(-member_weight / 5)
    anchors = 0.5 + 0.5 (1 - exp(-distinct_neighbours / 2))
    spread  = 1 / (1 + (rms_km / 0.5)^2)
    purity  = member_weight / located sample weight of the prefix

    confidence = count * anchors * spread * purity

More corroborating observations raise it; scattered samples or
observations of the same prefix elsewhere lower it. Members count by
sample weight, so a single-anchor sample corroborates half as much. Next to a
tight group, a sample a few hundred metres off-centre costs more in
spread than it adds in count.
"""

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx

from .candidate_index import CandidateIndex
from .config import Config, GhostConfig
from .geo_utils import LatLon, distance_km, midpoint, weighted_centroid
from .path_decoder import DecodedPath

logger = logging.getLogger("Topology.GhostClusters")

# Sample locations are merged at this precision (~1 m)
LOCATION_PRECISION = 5


@dataclass(frozen=True)
class GhostSample:
    """Pseudo-location of one Ghost hop."""
    prefix: str
    location: LatLon
    weight: float
    anchor_ids: Tuple[str, ...] = ()
    timestamp: Optional[float] = None


@dataclass
class GhostCluster:
    """Inferred unknown node."""
    cluster_id: str
    prefix: str
    latitude: float
    longitude: float
    confidence: float
    member_count: int
    adjacent_node_ids: List[str] = field(default_factory=list)
    spread_km: float = 0.0
    first_seen: Optional[float] = None
    last_seen: Optional[float] = None

    @property
    def location(self) -> LatLon:
        return (self.latitude, self.longitude)

    def to_dict(self) -> dict:
        return {
            "id": self.cluster_id,
            "prefix": self.prefix,
            "latitude": round(self.latitude, 6),
            "longitude": round(self.longitude, 6),
            "confidence": round(self.confidence, 3),
            "memberCount": self.member_count,
            "adjacentNodeIds": self.adjacent_node_ids,
            "spreadKm": round(self.spread_km, 3),
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
        }


def collect_ghost_samples(
    decoded_paths: Iterable[DecodedPath],
    index: CandidateIndex,
) -> Tuple[List[GhostSample], Counter]:
    """
    One sample per located Ghost hop.

    Returns:
        (samples, unlocated ghost hops per prefix)
    """
    samples: List[GhostSample] = []
    unlocated: Counter = Counter()
    local = index.local_node

    for decoded in decoded_paths:
        hops = decoded.hops
        last = len(hops) - 1

        for i, hop in enumerate(hops):
            if not hop.is_ghost:
                continue

            anchors: List[Tuple[str, LatLon]] = []

            if i > 0:
                prev = hops[i - 1]
                if not prev.is_ghost and prev.location is not None:
                    anchors.append((prev.node_id, prev.location))
            else:
                origin = index.best_anchor(decoded.observation.origin_prefix)
                if origin is not None:
                    anchors.append((origin.node_hash, origin.location))

            if i < last:
                nxt = hops[i + 1]
                if not nxt.is_ghost and nxt.location is not None:
                    anchors.append((nxt.node_id, nxt.location))
            elif local is not None and local.location is not None:
                anchors.append((local.node_hash, local.location))

            if not anchors:
                unlocated[hop.prefix] += 1
                continue

            if len(anchors) == 2:
                location, weight = midpoint(anchors[0][1], anchors[1][1]), 1.0
            else:
                location, weight = anchors[0][1], 0.5

            samples.append(GhostSample(
                prefix=hop.prefix,
                location=location,
                weight=weight,
                anchor_ids=tuple(a[0] for a in anchors),
                timestamp=decoded.observation.timestamp,
            ))

    return samples, unlocated


def _cluster_confidence(
    member_weight: float,
    anchor_count: int,
    rms_km: float,
    purity: float,
    cfg: GhostConfig,
) -> float:
    count_term = 1 - math.exp(-member_weight / cfg.COUNT_SCALE)
    anchor_term = 0.5 + 0.5 * (1 - math.exp(-anchor_count / cfg.NEIGHBOR_SCALE))
    spread_term = 1 / (1 + (rms_km / cfg.SPREAD_REFERENCE_KM) ** 2)
    return max(0.0, min(1.0, count_term * anchor_term * spread_term * purity))


def cluster_samples(
    prefix: str,
    samples: Sequence[GhostSample],
    ghost_config: Optional[GhostConfig] = None,
) -> List[GhostCluster]:
    """
    Single-linkage clusters of one prefix's samples.

    Returns:
        Clusters ordered by member count (largest first), ids
        "ghost:{prefix}:{k}"
    """
    cfg = ghost_config or Config.GHOST
    if not samples:
        return []

    # Merge identical locations
    groups: Dict[LatLon, List[GhostSample]] = defaultdict(list)
    for s in samples:
        key = (round(s.location[0], LOCATION_PRECISION), round(s.location[1], LOCATION_PRECISION))
        groups[key].append(s)
    points = sorted(groups)

    proximity = nx.Graph()
    proximity.add_nodes_from(range(len(points)))
    for a in range(len(points)):
        for b in range(a + 1, len(points)):
            if distance_km(points[a], points[b]) <= cfg.CLUSTER_RADIUS_KM:
                proximity.add_edge(a, b)

    total_weight = sum(s.weight for s in samples)
    components = []
    for component in nx.connected_components(proximity):
        members = [s for p in sorted(component) for s in groups[points[p]]]
        if len(members) >= cfg.MIN_MEMBERS:
            components.append(members)

    components.sort(key=lambda m: (-len(m), m[0].location))

    clusters = []
    for k, members in enumerate(components):
        centroid = weighted_centroid([m.location for m in members], [m.weight for m in members])

        total_w = sum(m.weight for m in members)
        rms_km = math.sqrt(
            sum(m.weight * distance_km(m.location, centroid) ** 2 for m in members) / total_w
        )
        anchors = sorted({a for m in members for a in m.anchor_ids})
        timestamps = [m.timestamp for m in members if m.timestamp is not None]

        clusters.append(GhostCluster(
            cluster_id=f"ghost:{prefix}:{k}",
            prefix=prefix,
            latitude=centroid[0],
            longitude=centroid[1],
            confidence=_cluster_confidence(
                total_w, len(anchors), rms_km, total_w / total_weight, cfg,
            ),
            member_count=len(members),
            adjacent_node_ids=anchors,
            spread_km=rms_km,
            first_seen=min(timestamps) if timestamps else None,
            last_seen=max(timestamps) if timestamps else None,
        ))

    return clusters


def build_ghost_clusters(
    decoded_paths: Iterable[DecodedPath],
    index: CandidateIndex,
    ghost_config: Optional[GhostConfig] = None,
) -> List[GhostCluster]:
    """Ghost clusters for every prefix that decoded to Ghost in this pass."""
    samples, unlocated = collect_ghost_samples(decoded_paths, index)

    by_prefix: Dict[str, List[GhostSample]] = defaultdict(list)
    for s in samples:
        by_prefix[s.prefix].append(s)

    clusters: List[GhostCluster] = []
    for prefix in sorted(by_prefix):
        clusters.extend(cluster_samples(prefix, by_prefix[prefix], ghost_config))

    logger.debug(
        f"Ghost clusters: {len(clusters)} from {len(samples)} located samples "
        f"({sum(unlocated.values())} unlocated) across {len(by_prefix)} prefixes"
    )
    return clusters
