"""
Edge Builder Tests
==================
"""

import math

import pytest

from meshtopo.disambiguation import FourFactorScorer
from meshtopo.edge_builder import (
    REASON_HIGH,
    REASON_TERMINAL,
    REASON_VERY_HIGH,
    EdgeAggregator,
    EdgeObservation,
    classify_certainty,
)
from meshtopo.path_decoder import PathDecoder

HOUR = 3600


@pytest.fixture
def make_obs(reference_time):
    def _make(from_id="0xAA000001", to_id="0xBB000001", certain=True, timestamp=None):
        return EdgeObservation(
            from_id=from_id,
            to_id=to_id,
            from_confidence=1.0 if certain else 0.3,
            to_confidence=1.0 if certain else 0.3,
            reason=REASON_HIGH if certain else None,
            timestamp=reference_time if timestamp is None else timestamp,
            hop_distance=2,
        )
    return _make


class TestCertainty:

    def test_terminal_wins_regardless_of_confidence(self):
        assert classify_certainty(0.1, 0.1, is_terminal=True) == REASON_TERMINAL

    def test_high_needs_both_endpoints(self):
        assert classify_certainty(0.6, 0.6, is_terminal=False) == REASON_HIGH
        assert classify_certainty(0.59, 0.7, is_terminal=False) is None

    def test_very_high_destination(self):
        assert classify_certainty(0.1, 0.9, is_terminal=False) == REASON_VERY_HIGH


class TestInclusion:
    """An edge needs confidence >= 0.4 and five certain observations."""

    def test_four_certain_is_not_enough(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        for _ in range(4):
            agg.record(make_obs(certain=True))
            agg.record(make_obs(certain=False))

        edge = agg.get("0xAA000001", "0xBB000001")
        assert edge.confidence == pytest.approx(0.5)
        assert edge.certain_count == 4
        assert not edge.certain
        assert agg.included_edges() == []

    def test_fifth_certain_includes(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        for _ in range(4):
            agg.record(make_obs(certain=True))
            agg.record(make_obs(certain=False))
        agg.record(make_obs(certain=True))

        edge = agg.get("0xAA000001", "0xBB000001")
        assert edge.certain_count == 5
        assert edge.confidence == pytest.approx(5 / 9)
        assert [e.key for e in agg.included_edges()] == ["0xAA000001->0xBB000001"]

    def test_low_confidence_excluded_despite_count(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        for _ in range(5):
            agg.record(make_obs(certain=True))
        for _ in range(10):
            agg.record(make_obs(certain=False))

        assert agg.get("0xAA000001", "0xBB000001").confidence == pytest.approx(1 / 3)
        assert agg.included_edges() == []

    def test_recency_weighting(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        agg.record(make_obs(certain=True))
        agg.record(make_obs(certain=False, timestamp=reference_time - 48 * HOUR))

        edge = agg.get("0xAA000001", "0xBB000001")
        assert edge.confidence == pytest.approx(1 / (1 + math.exp(-1)))
        assert edge.first_seen == reference_time - 48 * HOUR
        assert edge.last_seen == reference_time


class TestAggregation:

    def test_edges_are_directed(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        agg.record(make_obs("0xAA000001", "0xBB000001"))
        agg.record(make_obs("0xBB000001", "0xAA000001"))

        assert len(agg) == 2
        assert [e.key for e in agg.edges()] == ["0xAA000001->0xBB000001", "0xBB000001->0xAA000001"]

    def test_ghost_to_ghost_rejected(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        with pytest.raises(ValueError):
            agg.record(make_obs("ghost:AA", "ghost:BB"))

    def test_merge(self, make_obs, reference_time):
        left = EdgeAggregator(reference_time)
        right = EdgeAggregator(reference_time)
        for _ in range(3):
            left.record(make_obs())
            right.record(make_obs())

        assert left.included_edges() == []
        left.merge(right)

        edge = left.get("0xAA000001", "0xBB000001")
        assert edge.certain_count == 6
        assert edge.certain
        assert edge.reasons == {REASON_HIGH: 6}

    def test_validated_pairs_skip_ghosts(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        for _ in range(5):
            agg.record(make_obs("0xAA000001", "0xBB000001"))
            agg.record(make_obs("0xAA000001", "ghost:C2"))

        assert {e.key for e in agg.included_edges()} == {"0xAA000001->0xBB000001", "0xAA000001->ghost:C2"}
        assert agg.validated_pairs() == {("0xAA000001", "0xBB000001")}

    def test_included_edge_below_override_confidence(self, make_obs, reference_time):
        agg = EdgeAggregator(reference_time)
        for _ in range(5):
            agg.record(make_obs())
        agg.record(make_obs(certain=False))
        agg.record(make_obs(certain=False))

        edge = agg.get("0xAA000001", "0xBB000001")
        assert edge.confidence == pytest.approx(5 / 7)
        assert edge.certain
        assert agg.validated_pairs() == set()

        # 9 of 11 certain clears 0.8
        for _ in range(4):
            agg.record(make_obs())
        assert agg.validated_pairs() == {("0xAA000001", "0xBB000001")}


class TestFromDecodedPaths:

    def test_chain_edges(self, make_index, make_observations, radio, chain_contacts, chain_path, reference_time):
        observations = make_observations([chain_path] * 5)
        index = make_index(chain_contacts, observations)
        decoder = PathDecoder(FourFactorScorer(index, radio))

        agg = EdgeAggregator(reference_time)
        for obs in observations:
            agg.add_decoded_path(decoder.decode(obs))

        edges = agg.included_edges()
        assert [e.key for e in edges] == [
            "0x24000001->0x19000001",
            "0x79000001->0x24000001",
            "0xFA000001->0x79000001",
        ]
        assert agg.get("0x24000001", "0x19000001").reasons == {REASON_TERMINAL: 5}
        assert agg.get("0xFA000001", "0x79000001").reasons == {REASON_HIGH: 5}
        assert agg.stats()["pathsSeen"] == 5

    def test_ghost_pairs_skipped(self, make_index, make_observations, radio, reference_time):
        index = make_index({"0xAA000001": {"latitude": 0.02, "longitude": 0.0, "last_seen": reference_time}})
        decoder = PathDecoder(FourFactorScorer(index, radio))
        obs = make_observations([("C2", "D3", "AA")])[0]

        agg = EdgeAggregator(reference_time)
        recorded = agg.add_decoded_path(decoder.decode(obs))

        assert [o.edge_key for o in recorded] == ["ghost:D3->0xAA000001"]
        assert recorded[0].reason == REASON_TERMINAL
