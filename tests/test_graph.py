"""
Graph View Tests
================
"""

import pytest

from meshtopo.edge_builder import Edge
from meshtopo.ghost_clusters import GhostCluster
from meshtopo.graph import MeshGraph
from meshtopo.worker import DeepAnalysis


@pytest.fixture
def chain_result(make_index, make_observations, chain_contacts, chain_path, radio):
    observations = make_observations([chain_path] * 5)
    index = make_index(chain_contacts, observations)
    return DeepAnalysis(radio, max_workers=1).run(observations, index)


def _edge(from_id, to_id, confidence=1.0):
    return Edge(from_id, to_id, observation_count=5, certain_count=5,
                weighted_certain=5 * confidence, weighted_total=5.0, certain=True)


class TestFromResult:

    def test_nodes_and_edges(self, chain_result):
        mesh = chain_result.graph()

        assert mesh.node_count == 4
        assert mesh.edge_count == 3
        assert mesh.has_edge("0xFA000001", "0x79000001")
        assert not mesh.has_edge("0x79000001", "0xFA000001")
        assert mesh.graph.nodes["0x24000001"]["latitude"] == 0.05

    def test_neighbors_both_directions(self, chain_result):
        mesh = MeshGraph.from_result(chain_result)

        assert mesh.neighbors("0x24000001") == ["0x19000001", "0x79000001"]
        assert mesh.degree("0xFA000001") == 1
        assert mesh.neighbors("0xDEADBEEF") == []

    def test_shortest_path(self, chain_result):
        mesh = chain_result.graph()

        path = mesh.shortest_path("0xFA000001", "0x19000001")
        assert path.hop_count == 3
        assert path.edge_keys[0] == "0xFA000001->0x79000001"

        # Edges are directed as forwarded
        assert mesh.shortest_path("0x19000001", "0xFA000001") is None

    def test_components(self, chain_result):
        mesh = chain_result.graph()
        components = mesh.connected_components()

        assert mesh.is_connected()
        assert components.total_components == 1
        assert components.largest_component_size == 4
        assert components.isolated_nodes == []

    def test_middle_relays_most_central(self, chain_result):
        centrality = chain_result.graph().betweenness_centrality()

        assert centrality["0x79000001"] > centrality["0xFA000001"]
        assert centrality["0x24000001"] > centrality["0x19000001"]

    def test_local_hash(self, chain_result, local_node):
        assert chain_result.graph().to_dict()["localHash"] == local_node.node_hash


class TestGhostNodes:

    def test_ghost_node_takes_largest_cluster_location(self):
        clusters = [
            GhostCluster("ghost:C2:0", "C2", 0.05, 0.0, 0.8, member_count=10),
            GhostCluster("ghost:C2:1", "C2", 0.50, 0.5, 0.2, member_count=3),
        ]
        mesh = MeshGraph.from_edges([_edge("ghost:C2", "0x19000001")], clusters)

        assert mesh.ghost_nodes() == ["ghost:C2"]
        attrs = mesh.graph.nodes["ghost:C2"]
        assert (attrs["latitude"], attrs["longitude"]) == (0.05, 0.0)
        assert attrs["cluster_id"] == "ghost:C2:0"

    def test_ghost_without_cluster(self):
        mesh = MeshGraph.from_edges([_edge("0xAA000001", "ghost:D3")])

        assert mesh.ghost_nodes() == ["ghost:D3"]
        assert mesh.graph.nodes["ghost:D3"]["prefix"] == "D3"

    def test_weighted_path_prefers_confident_links(self):
        mesh = MeshGraph.from_edges([
            _edge("0xAA000001", "0xBB000001", confidence=0.5),
            _edge("0xBB000001", "0xDD000001", confidence=0.5),
            _edge("0xAA000001", "0xCC000001", confidence=1.0),
            _edge("0xCC000001", "0xEE000001", confidence=1.0),
            _edge("0xEE000001", "0xDD000001", confidence=1.0),
        ])

        assert mesh.shortest_path("0xAA000001", "0xDD000001").hop_count == 2
        weighted = mesh.shortest_path("0xAA000001", "0xDD000001", weight="cost")
        assert weighted.path == ["0xAA000001", "0xCC000001", "0xEE000001", "0xDD000001"]
        assert weighted.total_weight == pytest.approx(0.0)
