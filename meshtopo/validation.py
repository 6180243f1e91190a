"""
Input Validation at the Ingestion Boundary
==========================================

Validation helpers for packet records and contacts coming from the
backend service. Everything handed to the decoder has passed through
here, so scoring code never sees a malformed prefix.

Usage
-----
    from meshtopo.validation import ValidationError, validate_path

    try:
        path = validate_path(record.get("original_path"))
    except ValidationError as e:
        report.record(e)

Validation Functions
-------------------
    validate_prefix_param(value, name)
    validate_path(value, name="path")
    validate_timestamp(value, name="timestamp")
    validate_coordinates(lat, lon)
    validate_signal(value, name)
    validate_hash_param(value, name)
    validate_positive_int(value, name, ...)
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import ErrorCode, error_entry
from .utils import normalize_hash, parse_path, validate_hash, validate_prefix


@dataclass
class ValidationError(Exception):
    """
    Validation error with details for data-quality reporting.

    Uses the same entry format as errors.error_entry() for consistency.
    """

    parameter: str
    message: str
    value: Any = None
    error_code: ErrorCode = ErrorCode.INVALID_PARAMETER

    def to_dict(self) -> Dict[str, Any]:
        return error_entry(
            self.error_code,
            str(self),
            details={
                "parameter": self.parameter,
                "value": str(self.value) if self.value is not None else None,
            },
        )

    def __str__(self) -> str:
        return f"Invalid '{self.parameter}': {self.message}"


def validate_prefix_param(value: Any, name: str = "prefix") -> str:
    """
    Validate a 2-character hex prefix and return it uppercased.

    Raises:
        ValidationError: If value is not exactly two hex characters
    """
    if not isinstance(value, str):
        raise ValidationError(
            name, f"must be a 2-char hex string, got {type(value).__name__}",
            value, ErrorCode.INVALID_PREFIX,
        )
    if not validate_prefix(value):
        raise ValidationError(
            name, f"must be exactly 2 hex characters, got '{value}'",
            value, ErrorCode.INVALID_PREFIX,
        )
    return value.strip().upper()


def validate_path(value: Any, name: str = "path") -> Tuple[str, ...]:
    """
    Validate a packet path and return it as a tuple of uppercase prefixes.

    An empty path is valid (zero-hop packet). Any hop that is not a
    2-char hex prefix rejects the whole path - a partially understood
    path would shift every later position.

    Raises:
        ValidationError: If the container or any hop is malformed
    """
    path = parse_path(value)
    if path is None:
        raise ValidationError(
            name, "must be a list of 2-char hex prefixes",
            value, ErrorCode.INVALID_PATH,
        )

    hops = []
    for i, hop in enumerate(path):
        if not isinstance(hop, str) or not validate_prefix(hop):
            raise ValidationError(
                name, f"hop {i} is not a 2-char hex prefix: {hop!r}",
                value, ErrorCode.INVALID_PATH,
            )
        hops.append(hop.upper())

    return tuple(hops)


def validate_timestamp(value: Any, name: str = "timestamp") -> float:
    """Validate a Unix timestamp (seconds)."""
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(name, "is required", value, ErrorCode.INVALID_TIMESTAMP)

    try:
        ts = float(value)
    except (ValueError, TypeError):
        raise ValidationError(
            name, f"must be a number, got '{value}'", value, ErrorCode.INVALID_TIMESTAMP
        )

    if not math.isfinite(ts) or ts < 0:
        raise ValidationError(
            name, f"must be a non-negative finite number, got {ts}",
            value, ErrorCode.INVALID_TIMESTAMP,
        )

    return ts


def validate_coordinates(
    lat: Any,
    lon: Any,
) -> Tuple[Optional[float], Optional[float]]:
    """
    Validate an optional latitude/longitude pair.

    Missing coordinates (either side None) are valid and returned as
    (None, None). Unset (0, 0) placeholders are also treated as missing.

    Raises:
        ValidationError: If coordinates are present but not in range
    """
    if lat is None or lon is None or lat == "" or lon == "":
        return None, None

    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (ValueError, TypeError):
        raise ValidationError(
            "coordinates", f"must be numbers, got ({lat!r}, {lon!r})",
            (lat, lon), ErrorCode.INVALID_COORDINATES,
        )

    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        raise ValidationError(
            "coordinates", "must be finite", (lat, lon), ErrorCode.INVALID_COORDINATES
        )
    if not -90.0 <= lat_f <= 90.0 or not -180.0 <= lon_f <= 180.0:
        raise ValidationError(
            "coordinates", f"out of range: ({lat_f}, {lon_f})",
            (lat, lon), ErrorCode.INVALID_COORDINATES,
        )

    if lat_f == 0 and lon_f == 0:
        return None, None

    return lat_f, lon_f


def validate_signal(value: Any, name: str) -> Optional[float]:
    """Validate an optional RSSI/SNR value."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(name, "must be a number", value, ErrorCode.INVALID_SIGNAL)
    try:
        val = float(value)
    except (ValueError, TypeError):
        raise ValidationError(
            name, f"must be a number, got '{value}'", value, ErrorCode.INVALID_SIGNAL
        )
    if not math.isfinite(val):
        raise ValidationError(name, "must be finite", value, ErrorCode.INVALID_SIGNAL)
    return val


def validate_hash_param(
    value: Any,
    name: str = "hash",
    required: bool = True,
) -> Optional[str]:
    """
    Validate and normalize a node hash.

    Returns:
        Normalized hash string (0xUPPERCASE format), or None if not
        required and empty

    Raises:
        ValidationError: If hash is invalid
    """
    if value is None or value == "":
        if required:
            raise ValidationError(name, f"'{name}' is required", value, ErrorCode.INVALID_HASH)
        return None

    str_value = str(value).strip()
    if not validate_hash(str_value):
        raise ValidationError(
            name,
            f"must be a valid hex hash (e.g., '0xABCD1234' or 'ABCD1234'), got '{value}'",
            value,
            ErrorCode.INVALID_HASH,
        )

    return normalize_hash(str_value)


def validate_positive_int(
    value: Any,
    name: str,
    default: Optional[int] = None,
    min_value: int = 1,
    max_value: Optional[int] = None,
) -> int:
    """
    Validate and convert value to positive integer.

    Raises:
        ValidationError: If value is invalid
    """
    if value is None or value == "":
        if default is not None:
            return default
        raise ValidationError(name, f"'{name}' is required", value)

    try:
        int_val = int(value)
    except (ValueError, TypeError):
        raise ValidationError(name, f"must be an integer, got '{value}'", value)

    if int_val < min_value:
        raise ValidationError(name, f"must be at least {min_value}, got {int_val}", value)

    if max_value is not None and int_val > max_value:
        raise ValidationError(name, f"must be at most {max_value}, got {int_val}", value)

    return int_val
