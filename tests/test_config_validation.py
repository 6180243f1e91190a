"""
Config, Validation and Utility Tests
====================================
"""

import pytest

from meshtopo.config import Config, reload_config
from meshtopo.errors import AnalysisCancelled, ErrorCode, TopologyError
from meshtopo.utils import (
    get_position_from_index,
    get_prefix,
    ghost_node_id,
    is_ghost_id,
    make_edge_key,
    normalize_hash,
    parse_edge_key,
    parse_path,
)
from meshtopo.validation import (
    ValidationError,
    validate_coordinates,
    validate_hash_param,
    validate_path,
    validate_positive_int,
    validate_prefix_param,
)


@pytest.fixture
def env_override(monkeypatch):
    """Set MESHTOPO_* variables and reload; restores defaults afterwards."""
    def _set(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, value)
        reload_config()
    yield _set
    monkeypatch.undo()
    reload_config()


class TestConfig:
    """Defaults and environment overrides."""

    def test_defaults(self):
        assert Config.INGEST.CAPACITY == 75000
        assert Config.CANDIDATE.MAX_AGE_HOURS == 336.0
        assert Config.SCORING.weights == {
            "position": 0.15,
            "co_occurrence": 0.15,
            "geographic": 0.35,
            "recency": 0.35,
        }
        assert Config.EDGE.MIN_CERTAIN_OBSERVATIONS == 5
        assert Config.DECODER.GHOST_EMISSION == 0.1

    def test_weights_sum_to_one(self):
        assert sum(Config.SCORING.weights.values()) == pytest.approx(1.0)

    def test_env_override_and_version_bump(self, env_override):
        before = Config.get_version()
        env_override(
            MESHTOPO_EDGE_MIN_CERTAIN_OBSERVATIONS="8",
            MESHTOPO_CANDIDATE_REPEATERS_ONLY="yes",
        )

        assert Config.EDGE.MIN_CERTAIN_OBSERVATIONS == 8
        assert Config.CANDIDATE.REPEATERS_ONLY is True
        assert Config.get_version() == before + 1

    def test_invalid_env_value_falls_back(self, env_override):
        env_override(MESHTOPO_INGEST_CAPACITY="lots")
        assert Config.INGEST.CAPACITY == 75000

    def test_to_dict(self):
        exported = Config.to_dict()
        assert set(exported) >= {"ingest", "candidate", "scoring", "radio", "decoder", "edge", "ghost", "worker"}
        assert exported["radio"]["SPREADING_FACTOR"] == 8


class TestValidation:

    def test_prefix(self):
        assert validate_prefix_param("ab") == "AB"
        with pytest.raises(ValidationError) as exc:
            validate_prefix_param("0xAB")
        assert exc.value.error_code is ErrorCode.INVALID_PREFIX

    def test_path_rejects_any_bad_hop(self):
        assert validate_path(["ab", 0xCD]) == ("AB", "CD")
        assert validate_path([]) == ()
        with pytest.raises(ValidationError):
            validate_path(["AB", "CDE"])

    def test_coordinates(self):
        assert validate_coordinates(51.5, -0.1) == (51.5, -0.1)
        assert validate_coordinates(None, 2.0) == (None, None)
        assert validate_coordinates(0, 0) == (None, None)
        with pytest.raises(ValidationError) as exc:
            validate_coordinates(91.0, 0.0)
        assert exc.value.error_code is ErrorCode.INVALID_COORDINATES

    def test_hash(self):
        assert validate_hash_param("abcd1234") == "0xABCD1234"
        assert validate_hash_param("", required=False) is None
        with pytest.raises(ValidationError):
            validate_hash_param("not-a-hash")

    def test_positive_int(self):
        assert validate_positive_int("5", "chunk_size") == 5
        assert validate_positive_int(None, "chunk_size", default=3) == 3
        with pytest.raises(ValidationError):
            validate_positive_int(0, "chunk_size")

    def test_error_entry_format(self):
        err = ValidationError("path", "bad hop", ["ZZ"], ErrorCode.INVALID_PATH)
        entry = err.to_dict()
        assert entry["code"] == "INVALID_PATH"
        assert entry["details"]["parameter"] == "path"


class TestErrors:

    def test_topology_error_to_dict(self):
        err = TopologyError(ErrorCode.INVALID_PARAMETER, "chunk_size must be positive")
        assert err.to_dict() == {"code": "INVALID_PARAMETER", "message": "chunk_size must be positive"}
        assert "INVALID_PARAMETER" in str(err)

    def test_analysis_cancelled(self):
        err = AnalysisCancelled()
        assert isinstance(err, TopologyError)
        assert err.error_code is ErrorCode.ANALYSIS_CANCELLED


class TestUtils:

    def test_hash_helpers(self):
        assert normalize_hash("abcd1234") == "0xABCD1234"
        assert get_prefix("0xabcd1234") == "AB"

    def test_ghost_ids(self):
        assert ghost_node_id("c2") == "ghost:C2"
        assert is_ghost_id("ghost:C2")
        assert not is_ghost_id("0xC2000001")

    def test_edge_keys_are_directed(self):
        assert make_edge_key("0xAA", "0xBB") != make_edge_key("0xBB", "0xAA")
        assert parse_edge_key("0xAA->ghost:C2") == ("0xAA", "ghost:C2")
        with pytest.raises(ValueError):
            parse_edge_key("0xAA:0xBB")

    def test_parse_path(self):
        assert parse_path(None) is None
        assert parse_path("") == []
        assert parse_path('{"a": 1}') is None
        assert parse_path([0x0A, "bc"]) == ["0A", "BC"]

    def test_position_from_index(self):
        # Last element is the direct forwarder
        assert get_position_from_index(3, 4) == 1
        assert get_position_from_index(0, 4) == 4
