"""Exception hierarchy shared by every Recall component."""

from __future__ import annotations


class RecallError(Exception):
    """Base class for all errors raised by Recall."""


class ConfigError(RecallError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


class InvalidSearchOptions(RecallError, ValueError):
    """Raised synchronously when search options are malformed.

    Raised before any I/O, so callers can treat it as a programming error.
    """


class EmbeddingError(RecallError):
    """Raised when an embedding provider call fails after all retries."""

    def __init__(self, message: str, *, provider: str = "", model: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model


class IndexNotInitialized(RecallError, RuntimeError):
    """Raised when the memory manager is used before ``initialize()``."""


class OperationCancelled(RecallError):
    """Raised when a search stops because its cancel event was set."""
