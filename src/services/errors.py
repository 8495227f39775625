"""Errors raised by external collaborator clients."""

from __future__ import annotations


class CollaboratorError(Exception):
    """Raised when an external collaborator call fails.

    ``retryable`` distinguishes transient transport faults (timeouts, 5xx) from
    permanent rejections (4xx, missing configuration) so callers can decide
    whether spending another attempt is worthwhile.
    """

    def __init__(self, service: str, message: str, *, retryable: bool = True) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.retryable = retryable


def is_retryable_status(status_code: int) -> bool:
    """Return whether an HTTP status code represents a transient failure."""
    return status_code == 429 or status_code >= 500
