"""
Access Control Utility Functions
================================
Common utility functions used throughout the access-control layer.
"""

import hashlib
import json
import logging
import secrets
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Union

import structlog


# =============================================================================
# Clock
# =============================================================================


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
) -> structlog.BoundLogger:
    """
    Configure structured logging for the access-control layer.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format (json, console).
        log_file: Optional file path for log output.

    Returns:
        Configured logger instance.
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure standard logging
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        handlers=[
            logging.StreamHandler(),
            *(
                [logging.FileHandler(log_file)]
                if log_file
                else []
            ),
        ],
    )

    return structlog.get_logger()


def mask_id(identifier: Optional[str], visible: int = 8) -> str:
    """Truncate an identifier for log output."""
    if not identifier:
        return "unknown"
    if len(identifier) <= visible:
        return identifier
    return identifier[:visible] + "..."


# =============================================================================
# Hashing and Integrity
# =============================================================================


def compute_hash(data: Union[str, bytes, Dict], algorithm: str = "sha256") -> str:
    """
    Compute cryptographic hash of data.

    Args:
        data: Data to hash (string, bytes, or dictionary).
        algorithm: Hash algorithm (sha256, sha512).

    Returns:
        Hexadecimal hash string.
    """
    if isinstance(data, dict):
        data = json.dumps(data, sort_keys=True, default=str)
    if isinstance(data, str):
        data = data.encode("utf-8")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def verify_hash(data: Union[str, bytes, Dict], expected_hash: str, algorithm: str = "sha256") -> bool:
    """Verify data integrity against expected hash."""
    return compute_hash(data, algorithm) == expected_hash


# =============================================================================
# ID Generation
# =============================================================================


def generate_id(prefix: str = "", length: int = 16) -> str:
    """
    Generate a unique identifier.

    Args:
        prefix: Optional prefix for the ID.
        length: Length of the random portion.

    Returns:
        Unique identifier string.
    """
    random_part = secrets.token_hex(length // 2)
    timestamp = utc_now().strftime("%Y%m%d%H%M%S")

    if prefix:
        return f"{prefix}-{timestamp}-{random_part}"
    return f"{timestamp}-{random_part}"


# =============================================================================
# Locking
# =============================================================================


class KeyedLocks:
    """
    Fixed pool of locks selected by key.

    Distinct keys may share a lock; the pool never grows with the number of
    keys seen.
    """

    def __init__(self, size: int = 64):
        self._locks = [threading.Lock() for _ in range(size)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._locks)
