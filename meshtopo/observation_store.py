"""
Observation Store - Bounded window of received packets
======================================================

Holds the most recent packet observations that an analysis pass reads.
Packets arrive from the backend as loosely structured dicts; this is
the boundary where they become typed, validated Observation records.

Key Concepts
------------
    Observation:
        Immutable record of one received packet: origin prefix, ordered
        hop prefixes (oldest to newest, ending at the local node's direct
        forwarder), timestamp, RSSI/SNR, packet and route type.

    Capacity:
        At most INGEST.CAPACITY (75,000) observations are kept; the
        oldest are evicted first. At typical repeater traffic that is a
        multi-day window.

    Age Window:
        Observations older than INGEST.WINDOW_HOURS (72) relative to
        the reference time are dropped from snapshots and evicted.

    Data Quality:
        A record with a malformed path, timestamp, hash or signal value
        is rejected before it reaches the decoder. It is not stored and
        not counted; the defect is tallied in a DataQualityReport.

Thread Safety
-------------
    Packet ingest and an analysis pass run concurrently. Writers append
    under a lock; a pass calls snapshot(), which copies the buffer under
    the same lock into an immutable tuple. The pass never iterates the
    live buffer.

Example
-------
    >>> store = ObservationStore()
    >>> report = store.add_many([
    ...     {"original_path": ["AB", "CD"], "timestamp": 1704067200},
    ...     {"original_path": ["XY"], "timestamp": 1704067260},
    ... ])
    >>> report.accepted, report.rejected
    (1, 1)
    >>> len(store.snapshot(reference_time=1704067300))
    1
"""

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from .config import Config, IngestConfig
from .utils import get_prefix
from .validation import (
    ValidationError,
    validate_hash_param,
    validate_path,
    validate_signal,
    validate_timestamp,
)

logger = logging.getLogger("Topology.ObservationStore")


@dataclass(frozen=True)
class Observation:
    """One received packet, validated."""
    path: Tuple[str, ...]
    timestamp: float
    origin_prefix: Optional[str] = None
    rssi: Optional[float] = None
    snr: Optional[float] = None
    packet_type: Optional[int] = None
    route_type: Optional[int] = None
    packet_hash: Optional[str] = None
    src_hash: Optional[str] = None  # Full origin hash, when the record carried one

    @property
    def hop_count(self) -> int:
        return len(self.path)

    def to_dict(self) -> dict:
        return {
            "path": list(self.path),
            "timestamp": self.timestamp,
            "originPrefix": self.origin_prefix,
            "rssi": self.rssi,
            "snr": self.snr,
            "packetType": self.packet_type,
            "routeType": self.route_type,
            "packetHash": self.packet_hash,
            "srcHash": self.src_hash,
        }


@dataclass
class DataQualityReport:
    """Tally of accepted and rejected records for one ingest call (or the store lifetime)."""
    accepted: int = 0
    rejected: int = 0
    by_code: Counter = field(default_factory=Counter)
    samples: List[dict] = field(default_factory=list)
    max_samples: int = 20

    def record_rejection(self, error: ValidationError) -> None:
        self.rejected += 1
        self.by_code[error.error_code.code] += 1
        if len(self.samples) < self.max_samples:
            self.samples.append(error.to_dict())

    def merge(self, other: "DataQualityReport") -> None:
        self.accepted += other.accepted
        self.rejected += other.rejected
        self.by_code.update(other.by_code)
        room = self.max_samples - len(self.samples)
        if room > 0:
            self.samples.extend(other.samples[:room])

    @property
    def has_defects(self) -> bool:
        return self.rejected > 0

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "byCode": dict(self.by_code),
            "samples": list(self.samples),
        }


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationError(name, f"must be an integer, got '{value}'", value)


def observation_from_record(record: dict) -> Observation:
    """
    Build an Observation from a backend packet record.

    Path lookup prefers an explicit "path", then "forwarded_path", then
    "original_path" (same precedence the repeater's packet table uses).

    Raises:
        ValidationError: If any field is malformed
    """
    if not isinstance(record, dict):
        raise ValidationError("record", "must be a dict", type(record).__name__)

    if "path" in record:
        raw_path = record.get("path")
    else:
        raw_path = record.get("forwarded_path") or record.get("original_path")
    if raw_path is None:
        raw_path = []

    path = validate_path(raw_path)
    timestamp = validate_timestamp(record.get("timestamp"))

    src_hash = validate_hash_param(record.get("src_hash"), "src_hash", required=False)
    origin_prefix = get_prefix(src_hash) if src_hash else None

    return Observation(
        path=path,
        timestamp=timestamp,
        origin_prefix=origin_prefix,
        rssi=validate_signal(record.get("rssi"), "rssi"),
        snr=validate_signal(record.get("snr"), "snr"),
        packet_type=_optional_int(record.get("type", record.get("payload_type")), "type"),
        route_type=_optional_int(record.get("route", record.get("route_type")), "route"),
        packet_hash=record.get("packet_hash"),
        src_hash=src_hash,
    )


class ObservationStore:
    """
    Bounded, time-ordered buffer of validated observations.

    Attributes:
        capacity: Maximum observations retained
        window_hours: Age window applied on snapshot / eviction
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        window_hours: Optional[float] = None,
        ingest_config: Optional[IngestConfig] = None,
    ):
        cfg = ingest_config or Config.INGEST
        self.capacity = capacity if capacity is not None else cfg.CAPACITY
        self.window_hours = window_hours if window_hours is not None else cfg.WINDOW_HOURS
        self._max_samples = cfg.MAX_REJECTED_SAMPLES

        if self.capacity <= 0:
            raise ValueError(f"capacity must be positive, got {self.capacity}")

        # Kept sorted by timestamp, so the left end is always the oldest
        self._buffer: Deque[Observation] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()
        self._lifetime_quality = DataQualityReport(max_samples=self._max_samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _append(self, obs: Observation) -> None:
        # Caller holds the lock
        buf = self._buffer
        if not buf or obs.timestamp >= buf[-1].timestamp:
            buf.append(obs)
            return

        # Late arrival: insert in timestamp order, after equal timestamps
        full = len(buf) == self.capacity
        if full and obs.timestamp < buf[0].timestamp:
            return  # Older than everything kept; it would be evicted first

        i = len(buf)
        while i > 0 and buf[i - 1].timestamp > obs.timestamp:
            i -= 1
        if full:
            buf.popleft()
            i -= 1
        buf.insert(i, obs)

    def add(self, record: dict) -> Tuple[Optional[Observation], DataQualityReport]:
        """
        Validate and store one packet record.

        Returns:
            Tuple of (Observation or None if rejected, report for this record)
        """
        report = DataQualityReport(max_samples=self._max_samples)
        try:
            obs = observation_from_record(record)
        except ValidationError as e:
            logger.warning(f"Dropped malformed packet: {e}")
            report.record_rejection(e)
            obs = None
        else:
            report.accepted += 1
            with self._lock:
                self._append(obs)

        with self._lock:
            self._lifetime_quality.merge(report)
        return obs, report

    def add_many(self, records: Iterable[dict]) -> DataQualityReport:
        """
        Validate and store a batch of packet records.

        Returns:
            DataQualityReport for the batch
        """
        report = DataQualityReport(max_samples=self._max_samples)
        accepted: List[Observation] = []

        for record in records:
            try:
                accepted.append(observation_from_record(record))
            except ValidationError as e:
                report.record_rejection(e)

        report.accepted = len(accepted)

        with self._lock:
            for obs in accepted:
                self._append(obs)
            self._lifetime_quality.merge(report)

        if report.has_defects:
            logger.warning(
                f"Dropped {report.rejected} malformed packets "
                f"({dict(report.by_code)}), accepted {report.accepted}"
            )
        return report

    def add_observation(self, obs: Observation) -> None:
        """Store an already-validated Observation."""
        with self._lock:
            self._append(obs)

    def _cutoff(self, reference_time: float) -> float:
        return reference_time - self.window_hours * 3600

    def snapshot(self, reference_time: Optional[float] = None) -> Tuple[Observation, ...]:
        """
        Immutable, time-ordered copy of observations inside the age window.

        Args:
            reference_time: Window end (defaults to time.time())
        """
        reference_time = reference_time if reference_time is not None else time.time()
        cutoff = self._cutoff(reference_time)

        with self._lock:
            return tuple(o for o in self._buffer if o.timestamp >= cutoff)

    def evict_expired(self, reference_time: Optional[float] = None) -> int:
        """
        Drop observations older than the age window.

        Returns:
            Number of observations evicted
        """
        reference_time = reference_time if reference_time is not None else time.time()
        cutoff = self._cutoff(reference_time)

        with self._lock:
            before = len(self._buffer)
            while self._buffer and self._buffer[0].timestamp < cutoff:
                self._buffer.popleft()
            evicted = before - len(self._buffer)

        if evicted:
            logger.info(f"Evicted {evicted} observations older than {self.window_hours}h")
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    @property
    def data_quality(self) -> DataQualityReport:
        """Lifetime data-quality tally (copy)."""
        with self._lock:
            copy = DataQualityReport(max_samples=self._max_samples)
            copy.merge(self._lifetime_quality)
            return copy

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            count = len(self._buffer)
            oldest = self._buffer[0].timestamp if self._buffer else None
            newest = self._buffer[-1].timestamp if self._buffer else None
            quality = self._lifetime_quality.to_dict()

        return {
            "count": count,
            "capacity": self.capacity,
            "windowHours": self.window_hours,
            "oldest": oldest,
            "newest": newest,
            "dataQuality": quality,
        }
