"""
Geographic Utilities - Distance and plausibility calculations
=============================================================

Shared geographic functions for topology inference. Provides Haversine
distance, midpoints and centroids, and a LoRa link-budget model that
turns a distance into a 0-1 plausibility that two nodes can hear each
other directly.

Range Model
-----------
Expected range grows with receiver sensitivity. Each spreading factor
step buys about 2.5 dB of SNR margin, and halving the bandwidth buys
about 3 dB. Under a log-distance path loss model with exponent n, a
gain of G dB stretches range by 10^(G / (10 n)):

    R = BASE_RANGE_KM * 10^((2.5 (SF - 7) + 10 log10(125 / BW)) / (10 n))

With the defaults (5 km at SF7/125 kHz, n = 3) a SF8 / 62.5 kHz
MeshCore radio gets R of about 7.6 km.

Plausibility Falloff
--------------------
    plausibility(d) = 1 / (1 + (d / R)^k)

    d = 0.5 R  -> 0.94
    d = R      -> 0.50
    d = 2 R    -> 0.06   (k = 4)
    d = 3 R    -> 0.01

Public Functions
----------------
    calculate_distance(lat1, lon1, lat2, lon2)
        Haversine distance in meters between two coordinates.

    has_valid_coordinates(lat, lon)
        Check if coordinates are intentionally set (not 0,0).

    midpoint(a, b) / weighted_centroid(points, weights)
        Pseudo-location helpers for ghost clustering.

Public Classes
--------------
    RadioModel
        Expected range and distance plausibility for one radio setting.
"""

import logging
import math
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import yaml

from .config import Config, RadioConfig

logger = logging.getLogger("Topology.Geo")

# Earth's radius in meters
EARTH_RADIUS_M = 6371000

# SNR demodulation margin gained per spreading factor step (dB)
SNR_GAIN_PER_SF_DB = 2.5

# Reference bandwidth for BASE_RANGE_KM
REFERENCE_BANDWIDTH_KHZ = 125.0

LatLon = Tuple[float, float]


def calculate_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """
    Calculate distance between two coordinates using Haversine formula.

    Args:
        lat1: Latitude of first point (degrees)
        lon1: Longitude of first point (degrees)
        lat2: Latitude of second point (degrees)
        lon2: Longitude of second point (degrees)

    Returns:
        Distance in meters
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2 +
        math.cos(math.radians(lat1)) *
        math.cos(math.radians(lat2)) *
        math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_km(a: LatLon, b: LatLon) -> float:
    return calculate_distance(a[0], a[1], b[0], b[1]) / 1000.0


def has_valid_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    """
    Check if coordinates are valid (non-zero or intentionally set).

    Filters out unset/default coordinates which are often (0, 0).
    """
    if lat is None or lon is None:
        return False
    return lat != 0 or lon != 0


def midpoint(a: LatLon, b: LatLon) -> LatLon:
    """
    Midpoint of two coordinates.

    A plain mean of lat/lon is accurate to well under a metre at LoRa
    hop distances, and it keeps centroids of midpoints consistent.
    """
    return ((a[0] + b[0]) / 2.0, (a[1] + b[1]) / 2.0)


def weighted_centroid(points: Sequence[LatLon], weights: Sequence[float]) -> LatLon:
    """
    Weighted mean of coordinates.

    Raises:
        ValueError: If there are no points or the weights sum to zero
    """
    total_w = sum(weights)
    if not points or total_w <= 0:
        raise ValueError("weighted_centroid needs at least one positively weighted point")

    lat = sum(w * p[0] for p, w in zip(points, weights)) / total_w
    lon = sum(w * p[1] for p, w in zip(points, weights)) / total_w
    return (lat, lon)


def expected_range_km(
    spreading_factor: int,
    bandwidth_khz: float,
    base_range_km: float,
    path_loss_exponent: float,
) -> float:
    """Expected LoRa range for a radio setting (see module docstring)."""
    snr_gain_db = SNR_GAIN_PER_SF_DB * (spreading_factor - 7)
    bw_gain_db = 10 * math.log10(REFERENCE_BANDWIDTH_KHZ / bandwidth_khz)
    return base_range_km * 10 ** ((snr_gain_db + bw_gain_db) / (10 * path_loss_exponent))


class RadioModel:
    """
    Distance plausibility for one radio configuration.

    Attributes:
        spreading_factor: LoRa SF (7-12)
        bandwidth_khz: Channel bandwidth in kHz
        range_km: Expected direct-link range
        steepness: Falloff exponent k

    Example:
        >>> radio = RadioModel(range_km=10.0)
        >>> round(radio.plausibility_km(10.0), 2)
        0.5
    """

    def __init__(
        self,
        spreading_factor: Optional[int] = None,
        bandwidth_khz: Optional[float] = None,
        range_km: Optional[float] = None,
        radio_config: Optional[RadioConfig] = None,
    ):
        cfg = radio_config or Config.RADIO
        self.spreading_factor = spreading_factor if spreading_factor is not None else cfg.SPREADING_FACTOR
        self.bandwidth_khz = bandwidth_khz if bandwidth_khz is not None else cfg.BANDWIDTH_KHZ
        self.steepness = cfg.FALLOFF_STEEPNESS

        if not 5 <= self.spreading_factor <= 12:
            raise ValueError(f"spreading_factor must be 5-12, got {self.spreading_factor}")
        if self.bandwidth_khz <= 0:
            raise ValueError(f"bandwidth_khz must be positive, got {self.bandwidth_khz}")

        if range_km is not None:
            if range_km <= 0:
                raise ValueError(f"range_km must be positive, got {range_km}")
            self.range_km = float(range_km)
        else:
            self.range_km = expected_range_km(
                self.spreading_factor,
                self.bandwidth_khz,
                cfg.BASE_RANGE_KM,
                cfg.PATH_LOSS_EXPONENT,
            )

    @classmethod
    def from_repeater_config(cls, config_path: Union[str, Path]) -> "RadioModel":
        """
        Build a model from a pyMC repeater config.yaml.

        Reads radio.spreading_factor and radio.bandwidth (Hz). Missing
        keys fall back to Config.RADIO.
        """
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        radio = data.get("radio") or {}
        sf = radio.get("spreading_factor")
        bw_hz = radio.get("bandwidth")

        bandwidth_khz = float(bw_hz) / 1000.0 if bw_hz else None
        model = cls(
            spreading_factor=int(sf) if sf is not None else None,
            bandwidth_khz=bandwidth_khz,
        )
        logger.info(
            f"Radio model from {config_path}: SF{model.spreading_factor} "
            f"BW{model.bandwidth_khz}kHz -> range {model.range_km:.1f}km"
        )
        return model

    def plausibility_km(self, dist_km: float) -> float:
        """Plausibility (0-1) that two nodes dist_km apart share a direct link."""
        if dist_km <= 0:
            return 1.0
        return 1.0 / (1.0 + (dist_km / self.range_km) ** self.steepness)

    def plausibility(self, a: LatLon, b: LatLon) -> float:
        return self.plausibility_km(distance_km(a, b))

    def __repr__(self) -> str:
        return (
            f"RadioModel(sf={self.spreading_factor}, bw={self.bandwidth_khz}kHz, "
            f"range={self.range_km:.2f}km)"
        )
