# mergeeats-dispatch/mergedispatch/errors.py
"""
Error taxonomy of the consolidation engine.

- ValidationError: bad input, rejected synchronously, never retried.
- StateConflict: expected contention (lost claim, stale version, invalid
  transition). Callers retry from a fresh read.
- AssignmentExhausted: no partner accepted within the retry budget. The
  scheduler handles it by disbanding and dispatching members alone.
- DirectoryUnavailable: a collaborator could not be reached. Retryable.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class ValidationError(DispatchError):
    """Malformed input or unknown id."""


class StateConflict(DispatchError):
    """
    The entity changed under the caller, or the requested transition is not
    allowed from its current state.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current_status: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.current_status = current_status


class AssignmentExhausted(DispatchError):
    """Every offer attempt for a dispatch unit failed."""

    def __init__(self, dispatch_id: str, attempts: int) -> None:
        super().__init__(f"No partner accepted {dispatch_id} after {attempts} attempts")
        self.dispatch_id = dispatch_id
        self.attempts = attempts


class DirectoryUnavailable(DispatchError):
    """A restaurant/partner/notification collaborator is unreachable."""

    retryable = True
