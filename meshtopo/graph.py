"""
Graph View - NetworkX view of an analysis result
================================================

Wraps the included edges and ghost clusters of an AnalysisResult in a
networkx DiGraph so callers can ask graph questions of the inferred
topology without re-running the decoder.

    AnalysisResult (edges, ghost clusters) --> MeshGraph (nx.DiGraph)

Nodes
-----
    Concrete nodes are keyed by full hash and carry latitude, longitude
    and name from the candidate index when known. Ghost endpoints are
    keyed by their ghost id ("ghost:C2") and carry the location of the
    largest ghost cluster of that prefix, if one was found.

Edges
-----
    Directed, as decoded. Attributes: observation_count, certain_count,
    confidence and cost (-log confidence, for weighted path queries).

Example
-------
    >>> mesh = MeshGraph.from_result(result)
    >>> mesh.neighbors("0x2403")
    ['0x1904', '0x7902']
    >>> mesh.shortest_path("0xFA01", "0x1904").hop_count
    3
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import networkx as nx

from .candidate_index import CandidateIndex
from .edge_builder import Edge
from .ghost_clusters import GhostCluster
from .utils import ghost_node_id, is_ghost_id, make_edge_key

logger = logging.getLogger("Topology.Graph")

# Floor inside -log(confidence) for the cost attribute
MIN_EDGE_CONFIDENCE = 1e-6


@dataclass
class PathResult:
    """Result of a path query."""
    source: str
    target: str
    path: List[str]
    hop_count: int
    total_weight: float = 0.0
    edge_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "target": self.target,
            "path": self.path,
            "hopCount": self.hop_count,
            "totalWeight": round(self.total_weight, 3),
            "edgeKeys": self.edge_keys,
        }


@dataclass
class ComponentResult:
    """Result of connected components analysis."""
    total_nodes: int
    total_components: int
    largest_component_size: int
    components: List[List[str]]
    isolated_nodes: List[str]

    def to_dict(self) -> dict:
        return {
            "totalNodes": self.total_nodes,
            "totalComponents": self.total_components,
            "largestComponentSize": self.largest_component_size,
            "components": self.components,
            "isolatedNodes": self.isolated_nodes,
        }


class MeshGraph:
    """
    NetworkX-backed view of the inferred topology.

    Attributes:
        graph: Underlying NetworkX DiGraph
        local_hash: Local node's hash (optional)
        built_at: Timestamp when graph was constructed
    """

    def __init__(self, local_hash: Optional[str] = None):
        self.graph: nx.DiGraph = nx.DiGraph()
        self.local_hash = local_hash
        self.built_at = time.time()

    @classmethod
    def from_edges(
        cls,
        edges: Iterable[Edge],
        ghost_clusters: Iterable[GhostCluster] = (),
        index: Optional[CandidateIndex] = None,
    ) -> "MeshGraph":
        local = index.local_node if index is not None else None
        mesh = cls(local_hash=local.node_hash if local else None)

        # Largest cluster per prefix locates that prefix's ghost node
        ghost_locations: Dict[str, GhostCluster] = {}
        for cluster in ghost_clusters:
            best = ghost_locations.get(cluster.prefix)
            if best is None or cluster.member_count > best.member_count:
                ghost_locations[cluster.prefix] = cluster
            mesh.add_node(
                ghost_node_id(cluster.prefix),
                is_ghost=True,
                prefix=cluster.prefix,
            )

        for prefix, cluster in ghost_locations.items():
            mesh.graph.nodes[ghost_node_id(prefix)].update(
                latitude=cluster.latitude,
                longitude=cluster.longitude,
                cluster_id=cluster.cluster_id,
            )

        for edge in edges:
            for node_id in (edge.from_id, edge.to_id):
                if not mesh.has_node(node_id):
                    mesh.add_node(node_id, **mesh._node_attrs(node_id, index))
            mesh.add_edge(
                edge.from_id,
                edge.to_id,
                observation_count=edge.observation_count,
                certain_count=edge.certain_count,
                confidence=edge.confidence,
            )

        logger.debug(f"Built graph with {mesh.node_count} nodes, {mesh.edge_count} edges")
        return mesh

    @classmethod
    def from_result(cls, result) -> "MeshGraph":
        """Graph of an AnalysisResult's included edges and ghost clusters."""
        return cls.from_edges(result.edges, result.ghost_clusters, result.index)

    @staticmethod
    def _node_attrs(node_id: str, index: Optional[CandidateIndex]) -> dict:
        if is_ghost_id(node_id):
            return {"is_ghost": True, "prefix": node_id.split(":", 1)[1]}

        attrs = {"is_ghost": False}
        node = index.get(node_id) if index is not None else None
        if node is not None:
            attrs.update(prefix=node.prefix, name=node.name)
            if node.location is not None:
                attrs.update(latitude=node.latitude, longitude=node.longitude)
        return attrs

    @property
    def node_count(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self.graph.number_of_edges()

    def add_node(self, node_id: str, **attrs) -> None:
        self.graph.add_node(node_id, **attrs)

    def add_edge(self, from_id: str, to_id: str, confidence: float = 1.0, **attrs) -> None:
        """Add a directed edge; cost is derived from confidence."""
        cost = -math.log(max(confidence, MIN_EDGE_CONFIDENCE))
        self.graph.add_edge(from_id, to_id, confidence=confidence, cost=cost, **attrs)

    def has_node(self, node_id: str) -> bool:
        return self.graph.has_node(node_id)

    def has_edge(self, from_id: str, to_id: str) -> bool:
        return self.graph.has_edge(from_id, to_id)

    def neighbors(self, node_id: str) -> List[str]:
        """All neighbours of a node (both directions), sorted."""
        if not self.has_node(node_id):
            return []
        preds = set(self.graph.predecessors(node_id))
        succs = set(self.graph.successors(node_id))
        return sorted(preds | succs)

    def degree(self, node_id: str) -> int:
        return len(self.neighbors(node_id))

    def ghost_nodes(self) -> List[str]:
        return sorted(n for n, d in self.graph.nodes(data=True) if d.get("is_ghost"))

    def shortest_path(
        self,
        source: str,
        target: str,
        weight: Optional[str] = None,
    ) -> Optional[PathResult]:
        """
        Shortest forwarding path between two nodes.

        Args:
            weight: Edge attribute to minimise ("cost" prefers confident
                links); None counts hops

        Returns:
            PathResult or None if no path exists
        """
        if not self.has_node(source) or not self.has_node(target):
            return None

        try:
            if weight:
                path = nx.dijkstra_path(self.graph, source, target, weight=weight)
                length = nx.dijkstra_path_length(self.graph, source, target, weight=weight)
            else:
                path = nx.shortest_path(self.graph, source, target)
                length = len(path) - 1
        except nx.NetworkXNoPath:
            return None

        return PathResult(
            source=source,
            target=target,
            path=path,
            hop_count=len(path) - 1,
            total_weight=length if weight else 0.0,
            edge_keys=[make_edge_key(path[i], path[i + 1]) for i in range(len(path) - 1)],
        )

    def connected_components(self) -> ComponentResult:
        """Weakly connected components, largest first."""
        components = [sorted(c) for c in nx.weakly_connected_components(self.graph)]
        components.sort(key=lambda c: (-len(c), c[0]))

        return ComponentResult(
            total_nodes=self.node_count,
            total_components=len(components),
            largest_component_size=len(components[0]) if components else 0,
            components=components,
            isolated_nodes=[c[0] for c in components if len(c) == 1],
        )

    def is_connected(self) -> bool:
        if self.node_count == 0:
            return True
        return nx.is_weakly_connected(self.graph)

    def betweenness_centrality(self) -> Dict[str, float]:
        """Relay importance of each node."""
        if self.node_count == 0:
            return {}
        return nx.betweenness_centrality(self.graph, normalized=True)

    def to_dict(self) -> dict:
        nodes = []
        for node_id, data in sorted(self.graph.nodes(data=True)):
            nodes.append({
                "id": node_id,
                "isGhost": bool(data.get("is_ghost")),
                "latitude": data.get("latitude"),
                "longitude": data.get("longitude"),
                "name": data.get("name"),
                "degree": self.degree(node_id),
            })

        edges = []
        for u, v, data in sorted(self.graph.edges(data=True), key=lambda e: (e[0], e[1])):
            edges.append({
                "key": make_edge_key(u, v),
                "from": u,
                "to": v,
                "observationCount": data.get("observation_count", 0),
                "confidence": round(data.get("confidence", 0.0), 3),
            })

        return {
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "builtAt": self.built_at,
            "localHash": self.local_hash,
            "isConnected": self.is_connected(),
            "nodes": nodes,
            "edges": edges,
        }
