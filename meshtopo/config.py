"""
Engine Thresholds
=================

Every tunable number of the inference pipeline lives in one frozen
dataclass group per stage:

    INGEST     observation store capacity and window
    CANDIDATE  age filter, tracked positions, repeaters-only
    SCORING    four-factor weights and recency decay
    RADIO      LoRa link-budget model
    DECODER    Viterbi emission and transition costs
    EDGE       certainty and inclusion thresholds
    GHOST      ghost clustering
    WORKER     thread pool and chunking

    >>> Config.CANDIDATE.MAX_AGE_HOURS
    336.0

Environment
-----------
Any field can be set as MESHTOPO_{GROUP}_{NAME}, e.g.
MESHTOPO_RADIO_SPREADING_FACTOR=11. Unparseable values log a warning
and keep the default. reload_config() re-reads the environment and
swaps all groups under a lock; an analysis pass holds on to the groups
it started with.
"""

import logging
import os
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Any

logger = logging.getLogger("Topology.Config")

_config_lock = threading.RLock()

_TRUE_VALUES = ("true", "1", "yes", "on")


def _env_number(key: str, default, cast):
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring {key}={raw!r}, not a valid {cast.__name__}; keeping {default}")
        return default


def _env_int(key: str, default: int) -> int:
    return _env_number(key, default, int)


def _env_float(key: str, default: float) -> float:
    return _env_number(key, default, float)


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    return default if raw is None else raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class IngestConfig:
    """Observation store limits."""

    # Maximum observations retained (oldest evicted first)
    CAPACITY: int = 75000

    # Observations older than this are evicted from snapshots
    WINDOW_HOURS: float = 72.0

    # Number of rejected samples kept in a data-quality report
    MAX_REJECTED_SAMPLES: int = 20

    @classmethod
    def from_env(cls) -> "IngestConfig":
        return cls(
            CAPACITY=_env_int("MESHTOPO_INGEST_CAPACITY", 75000),
            WINDOW_HOURS=_env_float("MESHTOPO_INGEST_WINDOW_HOURS", 72.0),
            MAX_REJECTED_SAMPLES=_env_int("MESHTOPO_INGEST_MAX_REJECTED_SAMPLES", 20),
        )


@dataclass(frozen=True)
class CandidateConfig:
    """Candidate index configuration."""

    # Candidates not seen for this long are excluded entirely (14 days)
    MAX_AGE_HOURS: float = 336.0

    # Hop positions tracked from the local end (position 1 = direct forwarder)
    MAX_POSITIONS: int = 5

    # Exclude companions / room servers, which never relay packets
    REPEATERS_ONLY: bool = False

    @classmethod
    def from_env(cls) -> "CandidateConfig":
        return cls(
            MAX_AGE_HOURS=_env_float("MESHTOPO_CANDIDATE_MAX_AGE_HOURS", 336.0),
            MAX_POSITIONS=_env_int("MESHTOPO_CANDIDATE_MAX_POSITIONS", 5),
            REPEATERS_ONLY=_env_bool("MESHTOPO_CANDIDATE_REPEATERS_ONLY", False),
        )


@dataclass(frozen=True)
class ScoringConfig:
    """Four-factor scorer weights and constants."""

    # Score weights (must sum to 1.0)
    POSITION_WEIGHT: float = 0.15
    COOCCURRENCE_WEIGHT: float = 0.15
    GEOGRAPHIC_WEIGHT: float = 0.35
    RECENCY_WEIGHT: float = 0.35

    # exp(-hours / RECENCY_DECAY_HOURS)
    RECENCY_DECAY_HOURS: float = 12.0

    # Factor value used when there is no evidence either way
    NEUTRAL_FACTOR: float = 0.5

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        # Weights are fixed; only the decay and neutral value are tunable
        return cls(
            RECENCY_DECAY_HOURS=_env_float("MESHTOPO_SCORING_RECENCY_DECAY_HOURS", 12.0),
            NEUTRAL_FACTOR=_env_float("MESHTOPO_SCORING_NEUTRAL_FACTOR", 0.5),
        )

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "position": self.POSITION_WEIGHT,
            "co_occurrence": self.COOCCURRENCE_WEIGHT,
            "geographic": self.GEOGRAPHIC_WEIGHT,
            "recency": self.RECENCY_WEIGHT,
        }


@dataclass(frozen=True)
class RadioConfig:
    """LoRa link-budget model used for distance plausibility."""

    SPREADING_FACTOR: int = 8
    BANDWIDTH_KHZ: float = 62.5

    # Expected range at SF7 / 125 kHz
    BASE_RANGE_KM: float = 5.0

    # Log-distance path loss exponent
    PATH_LOSS_EXPONENT: float = 3.0

    # Steepness of 1 / (1 + (d/R)^k)
    FALLOFF_STEEPNESS: float = 4.0

    @classmethod
    def from_env(cls) -> "RadioConfig":
        return cls(
            SPREADING_FACTOR=_env_int("MESHTOPO_RADIO_SPREADING_FACTOR", 8),
            BANDWIDTH_KHZ=_env_float("MESHTOPO_RADIO_BANDWIDTH_KHZ", 62.5),
            BASE_RANGE_KM=_env_float("MESHTOPO_RADIO_BASE_RANGE_KM", 5.0),
            PATH_LOSS_EXPONENT=_env_float("MESHTOPO_RADIO_PATH_LOSS_EXPONENT", 3.0),
            FALLOFF_STEEPNESS=_env_float("MESHTOPO_RADIO_FALLOFF_STEEPNESS", 4.0),
        )


@dataclass(frozen=True)
class DecoderConfig:
    """Viterbi path decoder costs."""

    # Emission prior of the Ghost state
    GHOST_EMISSION: float = 0.1

    # Fixed cost for entering or leaving Ghost
    GHOST_TRANSITION_COST: float = 1.0

    # Cost of a transition backed by a validated edge
    MIN_TRANSITION_COST: float = 0.0

    # Floor for distance plausibility before taking -log
    PLAUSIBILITY_FLOOR: float = 0.01

    # Emission scaled by n ** -COMPETITOR_EXPONENT for n candidates
    COMPETITOR_EXPONENT: float = 0.5

    # Validated edges (observation beats theory)
    OVERRIDE_MIN_CONFIDENCE: float = 0.8
    OVERRIDE_MIN_CERTAIN: int = 5

    @classmethod
    def from_env(cls) -> "DecoderConfig":
        return cls(
            GHOST_EMISSION=_env_float("MESHTOPO_DECODER_GHOST_EMISSION", 0.1),
            GHOST_TRANSITION_COST=_env_float("MESHTOPO_DECODER_GHOST_TRANSITION_COST", 1.0),
            MIN_TRANSITION_COST=_env_float("MESHTOPO_DECODER_MIN_TRANSITION_COST", 0.0),
            PLAUSIBILITY_FLOOR=_env_float("MESHTOPO_DECODER_PLAUSIBILITY_FLOOR", 0.01),
            COMPETITOR_EXPONENT=_env_float("MESHTOPO_DECODER_COMPETITOR_EXPONENT", 0.5),
            OVERRIDE_MIN_CONFIDENCE=_env_float("MESHTOPO_DECODER_OVERRIDE_MIN_CONFIDENCE", 0.8),
            OVERRIDE_MIN_CERTAIN=_env_int("MESHTOPO_DECODER_OVERRIDE_MIN_CERTAIN", 5),
        )


@dataclass(frozen=True)
class EdgeConfig:
    """Edge aggregation thresholds."""

    # Both endpoints at or above this -> certain decoding
    HIGH_CONFIDENCE: float = 0.6

    # Destination at or above this -> certain decoding
    VERY_HIGH_CONFIDENCE: float = 0.9

    # Aggregated confidence needed for export
    MEDIUM_CONFIDENCE: float = 0.4

    # Certain observations needed for export
    MIN_CERTAIN_OBSERVATIONS: int = 5

    # Recency weighting of decodings, exp(-age_hours / DECAY)
    RECENCY_DECAY_HOURS: float = 48.0

    @classmethod
    def from_env(cls) -> "EdgeConfig":
        return cls(
            HIGH_CONFIDENCE=_env_float("MESHTOPO_EDGE_HIGH_CONFIDENCE", 0.6),
            VERY_HIGH_CONFIDENCE=_env_float("MESHTOPO_EDGE_VERY_HIGH_CONFIDENCE", 0.9),
            MEDIUM_CONFIDENCE=_env_float("MESHTOPO_EDGE_MEDIUM_CONFIDENCE", 0.4),
            MIN_CERTAIN_OBSERVATIONS=_env_int("MESHTOPO_EDGE_MIN_CERTAIN_OBSERVATIONS", 5),
            RECENCY_DECAY_HOURS=_env_float("MESHTOPO_EDGE_RECENCY_DECAY_HOURS", 48.0),
        )


@dataclass(frozen=True)
class GhostConfig:
    """Ghost cluster builder configuration."""

    # Single-linkage radius for midpoint samples
    CLUSTER_RADIUS_KM: float = 5.0

    # Components smaller than this are treated as noise
    MIN_MEMBERS: int = 3

    # Count term: 1 - exp(-member_weight / COUNT_SCALE)
    COUNT_SCALE: float = 5.0

    # Neighbour term: 1 - exp(-anchors / NEIGHBOR_SCALE)
    NEIGHBOR_SCALE: float = 2.0

    # Spread term: 1 / (1 + (rms_km / SPREAD_REFERENCE_KM)^2)
    SPREAD_REFERENCE_KM: float = 0.5

    @classmethod
    def from_env(cls) -> "GhostConfig":
        return cls(
            CLUSTER_RADIUS_KM=_env_float("MESHTOPO_GHOST_CLUSTER_RADIUS_KM", 5.0),
            MIN_MEMBERS=_env_int("MESHTOPO_GHOST_MIN_MEMBERS", 3),
            COUNT_SCALE=_env_float("MESHTOPO_GHOST_COUNT_SCALE", 5.0),
            NEIGHBOR_SCALE=_env_float("MESHTOPO_GHOST_NEIGHBOR_SCALE", 2.0),
            SPREAD_REFERENCE_KM=_env_float("MESHTOPO_GHOST_SPREAD_REFERENCE_KM", 0.5),
        )


@dataclass(frozen=True)
class WorkerConfig:
    """Deep analysis worker configuration."""

    # Threads used to decode packet chunks
    MAX_WORKERS: int = 4

    # Packets per decode chunk (cancellation is checked between chunks)
    CHUNK_SIZE: int = 2000

    # Seconds to wait for a cancelled pass to exit on stop()
    STOP_TIMEOUT_SECONDS: float = 5.0

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            MAX_WORKERS=_env_int("MESHTOPO_WORKER_MAX_WORKERS", 4),
            CHUNK_SIZE=_env_int("MESHTOPO_WORKER_CHUNK_SIZE", 2000),
            STOP_TIMEOUT_SECONDS=_env_float("MESHTOPO_WORKER_STOP_TIMEOUT_SECONDS", 5.0),
        )


class Config:
    """Current groups, read as Config.GROUP.NAME; replaced wholesale by reload_config()."""

    INGEST = IngestConfig.from_env()
    CANDIDATE = CandidateConfig.from_env()
    SCORING = ScoringConfig.from_env()
    RADIO = RadioConfig.from_env()
    DECODER = DecoderConfig.from_env()
    EDGE = EdgeConfig.from_env()
    GHOST = GhostConfig.from_env()
    WORKER = WorkerConfig.from_env()

    # Version counter, bumped on every reload
    _version: int = 0

    @classmethod
    def to_dict(cls) -> Dict[str, Dict[str, Any]]:
        return {
            "ingest": asdict(cls.INGEST),
            "candidate": asdict(cls.CANDIDATE),
            "scoring": asdict(cls.SCORING),
            "radio": asdict(cls.RADIO),
            "decoder": asdict(cls.DECODER),
            "edge": asdict(cls.EDGE),
            "ghost": asdict(cls.GHOST),
            "worker": asdict(cls.WORKER),
            "_version": cls._version,
        }

    @classmethod
    def get_version(cls) -> int:
        return cls._version


def reload_config() -> None:
    """Rebuild every group from the environment and bump the version."""
    with _config_lock:
        Config.INGEST = IngestConfig.from_env()
        Config.CANDIDATE = CandidateConfig.from_env()
        Config.SCORING = ScoringConfig.from_env()
        Config.RADIO = RadioConfig.from_env()
        Config.DECODER = DecoderConfig.from_env()
        Config.EDGE = EdgeConfig.from_env()
        Config.GHOST = GhostConfig.from_env()
        Config.WORKER = WorkerConfig.from_env()
        Config._version += 1

        logger.info(f"Configuration reloaded (version {Config._version})")
