"""Error taxonomy for reconciliation passes.

Every error carries the identifying ``key`` of the item it concerns (a
package name, ``runtime``, or a service name) so failures are attributable
from the report alone.
"""
from __future__ import annotations

from .config import ConfigError


class ReconcileError(RuntimeError):
    """Base class for errors raised while probing or applying a manifest."""

    def __init__(self, key: str, message: str) -> None:
        """Record the identifying *key* alongside *message*."""
        super().__init__(message)
        self.key = key
        self.message = message

    def __str__(self) -> str:
        return f"[{self.key}] {self.message}"


class ProbeError(ReconcileError):
    """A single fact could not be observed; the item degrades to unknown."""

    def __init__(self, key: str, message: str, *, retryable: bool = False) -> None:
        """Record whether the probe may succeed when repeated."""
        super().__init__(key, message)
        self.retryable = retryable


class ActionError(ReconcileError):
    """Base class for action failures."""

    retryable: bool = False


class RetryableActionError(ActionError):
    """Transient failure (lock contention, timeout, daemon not reachable)."""

    retryable = True


class FatalActionError(ActionError):
    """Failure that cannot succeed on retry; aborts the remaining plan."""


__all__ = [
    "ActionError",
    "ConfigError",
    "FatalActionError",
    "ProbeError",
    "ReconcileError",
    "RetryableActionError",
]
