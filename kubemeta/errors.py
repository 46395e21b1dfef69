"""Exceptions raised by kubemeta."""

from __future__ import annotations


class KubeMetaError(Exception):
    """Base class for kubemeta errors."""


class CacheSyncTimeoutError(KubeMetaError):
    """Raised when the pod watch does not reach its initial sync in time.

    The cache keeps running and stays usable; it may simply answer
    "not found" for pods that have not been listed yet.
    """

    def __init__(self, timeout: float) -> None:
        super().__init__(f"failed to wait for caches to sync within {timeout:g}s")
        self.timeout = timeout
