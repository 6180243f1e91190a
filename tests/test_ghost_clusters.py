"""
Ghost Cluster Tests
===================

Pseudo-location sampling and proximity clustering of unresolved hops.
"""

from dataclasses import replace

import pytest

from meshtopo.config import GhostConfig
from meshtopo.disambiguation import FourFactorScorer
from meshtopo.ghost_clusters import (
    GhostSample,
    build_ghost_clusters,
    cluster_samples,
    collect_ghost_samples,
)
from meshtopo.path_decoder import PathDecoder

ANCHOR_PAIRS = [
    ("0xAA000001", "0xBB000001"),
    ("0xCC000001", "0xDD000001"),
]


def _samples(count, center=(0.05, 0.05)):
    """`count` tightly grouped C2 samples with alternating anchor pairs."""
    return [
        GhostSample(
            prefix="C2",
            location=(center[0] + (i % 5) * 1e-4, center[1] - (i % 5) * 1e-4),
            weight=1.0,
            anchor_ids=ANCHOR_PAIRS[i % 2],
            timestamp=1000.0 + i,
        )
        for i in range(count)
    ]


@pytest.fixture
def ghost_index(make_index, reference_time):
    """Two located relays with an unknown "C2" repeater between them."""
    return make_index({
        "0xAA000001": {"latitude": 0.06, "longitude": 0.0, "last_seen": reference_time},
        "0xCC000001": {"latitude": 0.02, "longitude": 0.0, "last_seen": reference_time},
    })


class TestClusterSamples:

    def test_tight_group_forms_one_cluster(self):
        clusters = cluster_samples("C2", _samples(10))

        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.cluster_id == "ghost:C2:0"
        assert cluster.member_count == 10
        assert cluster.latitude == pytest.approx(0.0502, abs=1e-6)
        assert cluster.longitude == pytest.approx(0.0498, abs=1e-6)
        assert cluster.adjacent_node_ids == sorted(a for pair in ANCHOR_PAIRS for a in pair)
        assert cluster.first_seen == 1000.0
        assert cluster.last_seen == 1009.0
        assert 0.0 < cluster.confidence <= 1.0

    def test_more_observations_raise_confidence(self):
        ten = cluster_samples("C2", _samples(10))[0]
        twenty = cluster_samples("C2", _samples(20))[0]
        assert twenty.confidence > ten.confidence

    def test_outlier_lowers_confidence_not_membership(self):
        baseline = cluster_samples("C2", _samples(10))[0]

        outlier = GhostSample(prefix="C2", location=(1.0, 1.0), weight=1.0, anchor_ids=("0xEE000001",))
        clusters = cluster_samples("C2", _samples(10) + [outlier])

        assert len(clusters) == 1
        assert clusters[0].member_count == 10
        assert clusters[0].confidence < baseline.confidence

    def test_near_outlier_inside_radius_lowers_confidence(self):
        baseline = cluster_samples("C2", _samples(10))[0]

        # ~1 km north of the group, well inside the linkage radius
        near = GhostSample(prefix="C2", location=(0.059, 0.05), weight=1.0,
                           anchor_ids=("0xEE000001", "0xBB000001"))
        clusters = cluster_samples("C2", _samples(10) + [near])

        assert len(clusters) == 1
        assert clusters[0].member_count == 11
        assert clusters[0].spread_km > baseline.spread_km
        assert clusters[0].confidence < baseline.confidence

    def test_single_anchor_samples_count_half(self):
        paired = _samples(6)
        single = [replace(s, weight=0.5, anchor_ids=s.anchor_ids[:1]) for s in paired]

        assert cluster_samples("C2", single)[0].confidence < cluster_samples("C2", paired)[0].confidence

    def test_too_few_members_is_noise(self):
        assert cluster_samples("C2", _samples(2)) == []
        assert cluster_samples("C2", []) == []

    def test_separate_groups_get_separate_ids(self):
        samples = _samples(6) + _samples(3, center=(0.5, 0.5))
        clusters = cluster_samples("C2", samples)

        assert [c.cluster_id for c in clusters] == ["ghost:C2:0", "ghost:C2:1"]
        assert [c.member_count for c in clusters] == [6, 3]

    def test_radius_is_configurable(self):
        # Two groups ~5.6 km apart
        samples = _samples(3) + _samples(3, center=(0.10, 0.05))

        assert len(cluster_samples("C2", samples, GhostConfig(CLUSTER_RADIUS_KM=5.0))) == 2
        assert len(cluster_samples("C2", samples, GhostConfig(CLUSTER_RADIUS_KM=10.0))) == 1


class TestCollectSamples:

    def test_midpoint_between_located_neighbours(self, ghost_index, make_observations, radio):
        decoder = PathDecoder(FourFactorScorer(ghost_index, radio))
        decoded = [decoder.decode(o) for o in make_observations([("AA", "C2", "CC")])]

        samples, unlocated = collect_ghost_samples(decoded, ghost_index)

        assert len(samples) == 1
        assert samples[0].location == pytest.approx((0.04, 0.0))
        assert samples[0].weight == 1.0
        assert samples[0].anchor_ids == ("0xAA000001", "0xCC000001")
        assert not unlocated

    def test_direct_forwarder_anchors_on_local_node(self, ghost_index, make_observations, radio, local_node):
        decoder = PathDecoder(FourFactorScorer(ghost_index, radio))
        decoded = [decoder.decode(o) for o in make_observations([("AA", "C2")])]

        samples, _ = collect_ghost_samples(decoded, ghost_index)

        assert samples[0].anchor_ids == ("0xAA000001", local_node.node_hash)
        assert samples[0].location == pytest.approx((0.03, 0.00005))

    def test_single_anchor_halves_weight(self, ghost_index, make_observations, radio):
        decoder = PathDecoder(FourFactorScorer(ghost_index, radio))
        decoded = [decoder.decode(o) for o in make_observations([("C2", "CC")])]

        samples, _ = collect_ghost_samples(decoded, ghost_index)

        assert samples[0].location == (0.02, 0.0)
        assert samples[0].weight == 0.5

    def test_unlocated_counted(self, make_index, make_observations, radio, reference_time):
        index = make_index({}, local=None)
        decoder = PathDecoder(FourFactorScorer(index, radio))
        decoded = [decoder.decode(o) for o in make_observations([("C2",), ("C2",)])]

        samples, unlocated = collect_ghost_samples(decoded, index)

        assert samples == []
        assert unlocated == {"C2": 2}


class TestBuildGhostClusters:

    def test_repeated_ghost_hop_becomes_cluster(self, ghost_index, make_observations, radio):
        decoder = PathDecoder(FourFactorScorer(ghost_index, radio))
        decoded = [decoder.decode(o) for o in make_observations([("AA", "C2", "CC")] * 4)]

        clusters = build_ghost_clusters(decoded, ghost_index)

        assert len(clusters) == 1
        assert clusters[0].cluster_id == "ghost:C2:0"
        assert clusters[0].location == pytest.approx((0.04, 0.0))
        assert clusters[0].to_dict()["memberCount"] == 4
