"""Error taxonomy for Vaultlink.

Configuration and offline failures are distinct so callers can decide whether
to surface them or degrade quietly.
"""

from __future__ import annotations

import httpx
import openai

_NETWORK_MESSAGE_PATTERNS = (
    "Failed to fetch",
    "ERR_INTERNET_DISCONNECTED",
    "Network request failed",
    "Connection error",
)

_TRANSPORT_ERRORS = (ConnectionError, httpx.TransportError, openai.APIConnectionError)


class ConfigurationError(ValueError):
    """Missing credentials or endpoint for an embedding provider."""


class OfflineError(ConnectionError):
    """The embedding backend could not be reached."""

    def __init__(self, message: str = "Network connection unavailable"):
        super().__init__(message)


class EmbeddingError(RuntimeError):
    """Any other failure while generating embeddings."""


class DimensionMismatchError(ValueError):
    """Two vectors of different dimensionality were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimension mismatch: {left} vs {right}")
        self.left = left
        self.right = right


def is_network_error(error: object) -> bool:
    """Return True when ``error`` looks like the network being unavailable."""
    if isinstance(error, _TRANSPORT_ERRORS):
        return True

    message = error if isinstance(error, str) else str(error or "")
    return any(pattern in message for pattern in _NETWORK_MESSAGE_PATTERNS)
