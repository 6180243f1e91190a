"""
Error Handling for the Topology Engine
======================================

Standardized error codes so that rejected input and failed passes are
reported the same way everywhere.

Error Codes
-----------
    INVALID_PATH: Packet path missing, non-hex, or wrong prefix length
    INVALID_PREFIX: Prefix is not exactly two hex characters
    INVALID_HASH: Node hash is not hex
    INVALID_TIMESTAMP: Timestamp missing, negative, or not a number
    INVALID_COORDINATES: Latitude / longitude out of range
    INVALID_SIGNAL: RSSI / SNR is not a number
    INVALID_PARAMETER: Bad argument to a public function
    ANALYSIS_CANCELLED: Pass superseded by a newer request
    INTERNAL_ERROR: Unexpected internal error

Usage
-----
    from meshtopo.errors import ErrorCode, TopologyError

    raise TopologyError(
        ErrorCode.INVALID_PARAMETER,
        f"chunk_size must be positive, got {chunk_size}",
    )
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Standard error codes for data-quality and pass failures."""

    # Input defects (surfaced as data-quality signals)
    INVALID_PATH = ("INVALID_PATH", "Packet path is malformed")
    INVALID_PREFIX = ("INVALID_PREFIX", "Prefix must be two hex characters")
    INVALID_HASH = ("INVALID_HASH", "Node hash must be hex")
    INVALID_TIMESTAMP = ("INVALID_TIMESTAMP", "Timestamp is missing or invalid")
    INVALID_COORDINATES = ("INVALID_COORDINATES", "Coordinates are out of range")
    INVALID_SIGNAL = ("INVALID_SIGNAL", "Signal metric is not a number")
    INVALID_PARAMETER = ("INVALID_PARAMETER", "Invalid or malformed parameter")

    # Pass lifecycle
    ANALYSIS_CANCELLED = ("ANALYSIS_CANCELLED", "Analysis pass was cancelled")
    INTERNAL_ERROR = ("INTERNAL_ERROR", "An internal error occurred")

    def __init__(self, code: str, default_message: str):
        self.code = code
        self.default_message = default_message


@dataclass
class TopologyError(Exception):
    """Exception carrying an error code."""

    error_code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"[{self.error_code.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.error_code.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class AnalysisCancelled(TopologyError):
    """Raised inside a pass once its cancel event is set."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            ErrorCode.ANALYSIS_CANCELLED,
            message or ErrorCode.ANALYSIS_CANCELLED.default_message,
        )


def error_entry(
    error_code: ErrorCode,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build a plain error dict (used for data-quality samples).

    Args:
        error_code: The ErrorCode enum value
        message: Custom error message (uses default if not provided)
        details: Additional error details

    Returns:
        Dict with code, message and optional details
    """
    result = {
        "code": error_code.code,
        "message": message or error_code.default_message,
    }
    if details:
        result["details"] = details
    return result
