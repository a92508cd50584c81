"""Name, size and message helpers shared by providers and the engine."""

from __future__ import annotations

import re
from typing import Iterable, Optional

# Kubernetes object names (DNS-1123 labels) are limited to 63 characters
MAX_NAME_LENGTH = 63

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_EDGE_CHARS = re.compile(r"^[^a-z0-9]+|[^a-z0-9]+$")

_BINARY_UNITS = [
    ("Ti", 1024 ** 4),
    ("Gi", 1024 ** 3),
    ("Mi", 1024 ** 2),
    ("Ki", 1024),
]


def normalize_name(name: str) -> str:
    """Turn an arbitrary hypervisor name into a valid DNS-1123 label.

    Raises:
        ValueError: If nothing usable remains after normalization
    """
    normalized = _INVALID_CHARS.sub("-", name.lower())
    normalized = normalized[:MAX_NAME_LENGTH]
    normalized = _EDGE_CHARS.sub("", normalized)
    if not normalized:
        raise ValueError(f"Name '{name}' cannot be normalized to a valid object name")
    return normalized


def format_bytes(size: int) -> str:
    """Format a byte count as a Kubernetes quantity (e.g. ``10Gi``).

    Uses the largest binary unit that divides the size evenly.
    """
    if size < 0:
        raise ValueError(f"Negative size: {size}")
    for suffix, factor in _BINARY_UNITS:
        if size and size % factor == 0:
            return f"{size // factor}{suffix}"
    return str(size)


def loggable_name(name: str, namespace: Optional[str] = None) -> str:
    if namespace:
        return f"{namespace}/{name}"
    return name


def fold_errors(errors: Iterable[Exception | str], subject: str) -> str:
    """Fold several independent failures into one message."""
    message = "; ".join(str(e) for e in errors)
    return f"clean-up for {subject} failed: {message}"
