"""
Error taxonomy for the digest core.

- TransientIOError: store or transport unavailable; retried by the caller with backoff
- ContractViolationError: summarizer output failed the schema (after repair)
- RetryExhaustedError: channel delivery retry budget spent
- InvalidTransitionError: a state machine was asked to move backwards
- EventConflictError: an event id was reused for different content (permanent)

Lost conditional writes (conflicts) are reported as return values, never raised.
"""

from __future__ import annotations


class DigestQError(Exception):
    """Base class for all DigestQ errors."""


class TransientIOError(DigestQError):
    """I/O against a collaborator failed in a way that may succeed on retry."""


class StoreUnavailableError(TransientIOError):
    """The durable store could not be reached or stayed locked."""


class TransportError(TransientIOError):
    """A channel transport or the summarizer failed at the transport level."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.status_code = status_code
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        return bool(self.status_code == 429 or 500 <= self.status_code < 600)


class ContractViolationError(DigestQError):
    """Summarizer output does not satisfy the summary schema."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class RetryExhaustedError(DigestQError):
    """All attempts of a bounded retry budget failed."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(DigestQError):
    """Requested state change would regress or skip the state machine."""


class EventConflictError(DigestQError):
    """An event id is already stored with different content; retrying cannot help."""

    def __init__(self, message: str, event_id: str):
        super().__init__(message)
        self.event_id = event_id
