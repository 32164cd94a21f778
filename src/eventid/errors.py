"""Error taxonomy for the ingest / storage / workflow pipeline.

Kinds (used as metric labels and dead-letter reasons):

  transient_storage       connection or timeout talking to the database
  immutability_violation  an update/delete was attempted on a stored event
  malformed_envelope      payload could not be decoded into an EventEnvelope
  action_failure          a workflow action errored
  action_timeout          a workflow action exceeded its timeout
  cancelled               a workflow run was cancelled externally
  interrupted             an open workflow run was abandoned by its executor
  invalid_rule            a subscription filter or rule document is invalid
  no_handler              a recognized event type has no registered handler
  unexpected              anything else
"""

from __future__ import annotations

import asyncio


class EventIDError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "unexpected"
    retryable: bool = False


class TransientStorageError(EventIDError):
    kind = "transient_storage"
    retryable = True


class ImmutableEventError(EventIDError):
    """Raised for any attempt to modify or remove a stored event."""

    kind = "immutability_violation"

    def __init__(self, message: str = "Events are immutable and cannot be modified or deleted") -> None:
        super().__init__(message)


class MalformedEnvelopeError(EventIDError):
    kind = "malformed_envelope"

    def __init__(self, message: str, raw: bytes | str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class InvalidRuleError(EventIDError):
    kind = "invalid_rule"


class ActionError(EventIDError):
    kind = "action_failure"
    retryable = True


class ActionTimeoutError(ActionError):
    kind = "action_timeout"

    def __init__(self, action_name: str, timeout_s: float) -> None:
        super().__init__(f"Action '{action_name}' timed out after {timeout_s:g}s")
        self.action_name = action_name
        self.timeout_s = timeout_s


class EmitDepthExceededError(ActionError):
    kind = "emit_depth_exceeded"
    retryable = False


class PlatformNotConfiguredError(ActionError):
    """The workspace has no usable integration for the target platform."""

    retryable = False


class WorkflowCancelledError(EventIDError):
    kind = "cancelled"


class WorkflowInterruptedError(EventIDError):
    """An open run was found with nothing executing it."""

    kind = "interrupted"


def classify_error(exc: BaseException) -> str:
    """Map an exception onto its error-kind label."""
    if isinstance(exc, EventIDError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    return "unexpected"


def is_retryable(exc: BaseException) -> bool:
    """True when re-running the same work may succeed."""
    if isinstance(exc, EventIDError):
        return exc.retryable
    # Unknown failures are bounded by the caller's retry budget.
    return True
