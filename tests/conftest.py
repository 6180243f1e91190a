"""
Test Configuration
==================

Pytest fixtures shared by the meshtopo tests.

Geometry used throughout: the local node sits just east of (0, 0), since
an exact (0, 0) reads as unset. Relays are placed along the meridian;
0.01 deg of latitude is ~1.11 km.
"""

import pytest

from meshtopo.candidate_index import CandidateIndex, LocalNode
from meshtopo.geo_utils import RadioModel
from meshtopo.observation_store import Observation
from meshtopo.utils import get_prefix

# 2024-01-01T00:00:00Z
REFERENCE_TIME = 1704067200.0

LOCAL_HASH = "0xFF000000"


@pytest.fixture
def reference_time():
    """Fixed 'now' for every pass."""
    return REFERENCE_TIME


@pytest.fixture
def local_node():
    """Receiving node next to the origin."""
    return LocalNode(LOCAL_HASH, 0.0, 0.0001)


@pytest.fixture
def radio():
    """Default radio model (SF8 / 62.5 kHz, ~7.6 km range)."""
    return RadioModel()


@pytest.fixture
def chain_contacts():
    """Four well-located unique relays in a line north of the local node."""
    return {
        "0x19000001": {"latitude": 0.02, "longitude": 0.0, "last_seen": REFERENCE_TIME, "contact_type": "repeater"},
        "0x24000001": {"latitude": 0.05, "longitude": 0.0, "last_seen": REFERENCE_TIME, "contact_type": "repeater"},
        "0x79000001": {"latitude": 0.08, "longitude": 0.0, "last_seen": REFERENCE_TIME, "contact_type": "repeater"},
        "0xFA000001": {"latitude": 0.11, "longitude": 0.0, "last_seen": REFERENCE_TIME, "contact_type": "repeater"},
    }


@pytest.fixture
def chain_path():
    """Path from the far end of the chain, oldest hop first."""
    return ("FA", "79", "24", "19")


@pytest.fixture
def make_observations(reference_time):
    """Factory: one Observation per path, all stamped at the reference time."""
    def _make(paths, timestamp=None, origin_prefix=None, src_hash=None):
        ts = reference_time if timestamp is None else timestamp
        if src_hash and origin_prefix is None:
            origin_prefix = get_prefix(src_hash)
        return tuple(
            Observation(path=tuple(p), timestamp=ts, origin_prefix=origin_prefix, src_hash=src_hash)
            for p in paths
        )
    return _make


@pytest.fixture
def make_index(local_node, reference_time):
    """Factory: CandidateIndex from contacts and observations."""
    def _make(contacts, observations=(), local=local_node, candidate_config=None):
        return CandidateIndex.build(
            contacts,
            observations,
            local_node=local,
            reference_time=reference_time,
            candidate_config=candidate_config,
        )
    return _make


@pytest.fixture
def packet_record(reference_time):
    """A well-formed backend packet row."""
    return {
        "original_path": ["FA", "79", "24", "19"],
        "src_hash": "0xAB12CD34",
        "timestamp": reference_time,
        "rssi": -92,
        "snr": 7.5,
        "type": 4,
        "route": 1,
        "packet_hash": "8F3A2B",
    }
