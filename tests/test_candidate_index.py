"""
Candidate Index Tests
=====================

Contact ingestion, the age filter, and per-prefix statistics.
"""

import pytest

from meshtopo.candidate_index import CandidateIndex, NodeCandidate, is_repeater
from meshtopo.config import CandidateConfig


HOUR = 3600


class TestNodeCandidate:

    def test_prefix_derived_from_hash(self):
        node = NodeCandidate("abcd1234")
        assert node.node_hash == "0xABCD1234"
        assert node.prefix == "AB"

    def test_last_seen_is_monotonic(self):
        node = NodeCandidate("0xAB01", last_seen=1000.0)

        assert node.touch(2000.0) is True
        assert node.touch(1500.0) is False
        assert node.last_seen == 2000.0

    def test_unset_location(self):
        assert NodeCandidate("0xAB01", latitude=0.0, longitude=0.0).location is None
        assert NodeCandidate("0xAB01", latitude=0.1, longitude=0.0).location == (0.1, 0.0)


class TestBuild:

    def test_contacts_mapping_and_list(self, make_index, reference_time):
        as_mapping = make_index({"0xAB01": {"latitude": 0.1, "longitude": 0.1, "last_seen": reference_time}})
        as_list = make_index([{"hash": "0xAB01", "lat": 0.1, "lon": 0.1, "lastSeen": reference_time}])

        assert [c.node_hash for c in as_mapping.eligible("AB")] == ["0xAB01"]
        assert [c.node_hash for c in as_list.eligible("AB")] == ["0xAB01"]

    def test_local_node_never_a_candidate(self, make_index, local_node, reference_time):
        index = make_index({local_node.node_hash: {"last_seen": reference_time}})
        assert index.eligible(local_node.prefix) == []
        assert len(index) == 0

    def test_invalid_contacts_dropped_and_reported(self, make_index, reference_time):
        index = make_index({
            "0xAB01": {"last_seen": reference_time},
            "nothex": {"last_seen": reference_time},
            "0xCD01": {"latitude": 123.0, "longitude": 0.0, "last_seen": reference_time},
            "0xEF01": {"last_seen": "recently"},
        })

        assert len(index) == 1
        assert index.data_quality.rejected == 3
        assert index.data_quality.by_code == {
            "INVALID_HASH": 1,
            "INVALID_COORDINATES": 1,
            "INVALID_TIMESTAMP": 1,
        }

    def test_non_mapping_contact_rejected(self, make_index, reference_time):
        index = make_index({
            "0xAB01": "junk",
            "0xCD01": {"last_seen": reference_time},
            "0xEF01": 42,
        })

        assert len(index) == 1
        assert index.get("0xCD01") is not None
        assert index.data_quality.by_code == {"INVALID_PARAMETER": 2}

    def test_duplicate_hashes_merge_with_max_last_seen(self, make_index, reference_time):
        index = make_index([
            {"hash": "0xAB01", "last_seen": reference_time, "latitude": 0.1, "longitude": 0.1},
            {"hash": "ab01", "last_seen": reference_time - HOUR, "latitude": 0.5, "longitude": 0.5},
        ])

        node = index.get("0xAB01")
        assert node.last_seen == reference_time
        assert node.location == (0.1, 0.1)

    def test_repeaters_only_filter(self, make_index, reference_time):
        contacts = {
            "0xAB01": {"last_seen": reference_time, "contact_type": "Repeater"},
            "0xAB02": {"last_seen": reference_time, "contact_type": "companion"},
            "0xAB03": {"last_seen": reference_time, "contact_type": "room server"},
        }

        everyone = make_index(contacts)
        repeaters = make_index(contacts, candidate_config=CandidateConfig(REPEATERS_ONLY=True))

        assert len(everyone.eligible("AB")) == 3
        assert [c.node_hash for c in repeaters.eligible("AB")] == ["0xAB01"]

    def test_is_repeater(self):
        assert is_repeater({"contact_type": "rep"})
        assert is_repeater({"is_repeater": True})
        assert not is_repeater({"contact_type": "client"})
        assert not is_repeater({})


class TestAgeFilter:
    """Candidates older than 14 days are excluded entirely."""

    def test_fourteen_days_plus_one_hour_excluded(self, make_index, reference_time):
        index = make_index({
            "0xAB01": {"last_seen": reference_time - (336 + 1) * HOUR},
            "0xAB02": {"last_seen": reference_time - 335 * HOUR},
        })

        assert [c.node_hash for c in index.eligible("AB")] == ["0xAB02"]

        tagged = {ic.candidate.node_hash: ic.eligible for ic in index.candidates("AB")}
        assert tagged == {"0xAB01": False, "0xAB02": True}

    def test_unknown_last_seen_not_eligible(self, make_index):
        index = make_index({"0xAB01": {}})
        assert index.eligible("AB") == []

    def test_touch_brings_candidate_back(self, make_index, reference_time):
        index = make_index({"0xAB01": {"last_seen": reference_time - 400 * HOUR}})
        assert index.eligible("AB") == []

        assert index.touch("0xab01", reference_time - HOUR) is True
        assert [c.node_hash for c in index.eligible("AB")] == ["0xAB01"]

        # Older activity never moves last_seen back
        assert index.touch("0xAB01", reference_time - 2 * HOUR) is False

    def test_originated_traffic_refreshes_stale_contact(self, make_index, make_observations, reference_time):
        contacts = {"0xAB000001": {"last_seen": reference_time - 15 * 24 * HOUR}}
        assert make_index(contacts).eligible("AB") == []

        heard = make_observations(
            [("24", "19")] * 3, timestamp=reference_time - HOUR, src_hash="0xab000001",
        )
        index = make_index(contacts, heard)

        assert [c.node_hash for c in index.eligible("AB")] == ["0xAB000001"]
        assert index.get("0xAB000001").last_seen == reference_time - HOUR

    def test_traffic_from_unknown_origin_ignored(self, make_index, make_observations, reference_time):
        heard = make_observations([("19",)], src_hash="0xCD000001")
        index = make_index({"0xAB000001": {"last_seen": reference_time}}, heard)

        assert index.get("0xCD000001") is None
        assert len(index) == 1


class TestOrderingAndAnchors:

    def test_candidates_most_recent_first_then_hash(self, make_index, reference_time):
        index = make_index({
            "0xAB03": {"last_seen": reference_time - HOUR},
            "0xAB02": {"last_seen": reference_time},
            "0xAB01": {"last_seen": reference_time},
        })
        assert [c.node_hash for c in index.eligible("AB")] == ["0xAB01", "0xAB02", "0xAB03"]

    def test_best_anchor_skips_unlocated(self, make_index, reference_time):
        index = make_index({
            "0xAB01": {"last_seen": reference_time},
            "0xAB02": {"last_seen": reference_time - HOUR, "latitude": 0.1, "longitude": 0.1},
        })

        assert index.best_anchor("AB").node_hash == "0xAB02"
        assert index.best_anchor("CD") is None
        assert index.best_anchor(None) is None


class TestStatistics:

    def test_position_frequency(self, make_index, make_observations):
        observations = make_observations([
            ("AB", "CD"),
            ("CD", "AB"),
            ("EF", "AB"),
        ])
        index = make_index({}, observations)

        # "AB" was the direct forwarder twice, second hop once
        assert index.position_frequency("AB", 1) == pytest.approx(2 / 3)
        assert index.position_frequency("AB", 2) == pytest.approx(1 / 3)
        assert index.position_frequency("AB", 3) == 0.0
        assert index.position_frequency("99", 1) == 0.5

    def test_positions_clamped(self, make_index, make_observations):
        index = make_index({}, make_observations([("AA", "B1", "B2", "B3", "B4", "B5", "B6")]))

        # Index 0 of seven hops is position 7, clamped to 5
        assert index.position_frequency("AA", 5) == 1.0
        assert index.position_frequency("AA", 9) == 1.0

    def test_cooccurrence_frequency(self, make_index, make_observations):
        observations = make_observations([
            ("AB", "CD"),
            ("AB", "CD"),
            ("EF", "AB"),
        ])
        index = make_index({}, observations)

        assert index.cooccurrence_frequency("AB", ["CD"]) == pytest.approx(2 / 3)
        assert index.cooccurrence_frequency("AB", ["CD", "EF"]) == pytest.approx(1.0)
        assert index.cooccurrence_frequency("AB", []) == 0.5
        assert index.cooccurrence_frequency("99", ["AB"]) == 0.5

    def test_collision_stats(self, make_index, reference_time):
        index = make_index({
            "0xAB01": {"last_seen": reference_time},
            "0xAB02": {"last_seen": reference_time},
            "0xAB03": {"last_seen": reference_time},
            "0xCD01": {"last_seen": reference_time},
            "0xEF01": {"last_seen": reference_time - 500 * HOUR},
        })

        stats = index.get_stats()
        assert stats.total_prefixes == 2
        assert stats.unambiguous_prefixes == 1
        assert stats.collision_prefixes == 1
        assert stats.collision_rate == pytest.approx(50.0)
        assert stats.aged_out_candidates == 1
        assert stats.total_candidates == 4
        assert stats.high_collision_prefixes[0]["prefix"] == "AB"
        assert stats.to_dict()["collisionRate"] == 50.0

    def test_build_is_classmethod(self, reference_time):
        index = CandidateIndex.build(None, reference_time=reference_time)
        assert index.prefixes() == []
