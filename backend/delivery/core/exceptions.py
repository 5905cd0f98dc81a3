"""
Error taxonomy for the delivery lifecycle.

Every failure raised by the store, the claim coordinator, the state machine
and delivery verification derives from DeliveryError. Each error carries a
kind that tells callers how to react:

- precondition: expected and recoverable, the caller refreshes and retries
  by user action (lost claim race, wrong code, stale state)
- transport: the store or an external collaborator failed, safe to retry
  with backoff for idempotent operations
- logic: a caller bug or corrupted row, never retried

user_message is the plain-language text shown to end users; raw storage
errors only ever appear in context and logs.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """How a caller should treat a delivery error."""

    PRECONDITION = "precondition"
    TRANSPORT = "transport"
    LOGIC = "logic"


class DeliveryError(Exception):
    """Base exception for delivery lifecycle errors."""

    kind: ErrorKind = ErrorKind.LOGIC
    default_user_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.context = context

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSPORT


class PreconditionFailed(DeliveryError):
    """Base for expected, recoverable failures."""

    kind = ErrorKind.PRECONDITION


class InvalidTransition(PreconditionFailed):
    """Raised when a transition is not permitted for the state and actor."""

    default_user_message = "This order can no longer be updated that way."

    def __init__(
        self,
        current_state: Any,
        target_state: Any,
        actor_role: Any,
        user_message: Optional[str] = None,
        **context: Any,
    ):
        current = getattr(current_state, "value", current_state)
        target = getattr(target_state, "value", target_state)
        role = getattr(actor_role, "value", actor_role)
        super().__init__(
            f"Invalid transition from {current} to {target} for {role}",
            user_message=user_message,
            current_state=current,
            target_state=target,
            actor_role=role,
            **context,
        )
        self.current_state = current_state
        self.target_state = target_state
        self.actor_role = actor_role


class AlreadyTaken(PreconditionFailed):
    """Raised when a claim loses the race for an order."""

    default_user_message = (
        "Another courier already accepted this order. "
        "Refresh the list to see available orders."
    )


class CodeMismatch(PreconditionFailed):
    """Raised when the entered delivery code does not match the order."""

    default_user_message = (
        "The delivery code is incorrect. Ask the customer for the "
        "5-digit code and try again."
    )


class NotAuthorized(PreconditionFailed):
    """Raised when an actor acts on an order it does not own."""

    default_user_message = "You are not allowed to change this order."


class OrderNotFound(PreconditionFailed):
    """Raised when the referenced order does not exist."""

    default_user_message = "This order could not be found."


class EvidenceRequired(PreconditionFailed):
    """Raised when completion is attempted without a delivery photo."""

    default_user_message = "Take a photo of the delivery before completing it."


class StoreUnavailable(DeliveryError):
    """Raised when the order store cannot be reached or fails."""

    kind = ErrorKind.TRANSPORT
    default_user_message = (
        "We could not reach the server. Check your connection and try again."
    )


class OperationTimeout(StoreUnavailable):
    """Raised when a client-side operation timeout elapses."""

    default_user_message = "The request took too long. Please try again."


class BlobStoreError(DeliveryError):
    """Raised when the evidence photo cannot be stored."""

    kind = ErrorKind.TRANSPORT
    default_user_message = "The delivery photo could not be uploaded. Try again."


class FeedUnavailable(DeliveryError):
    """Raised when the real-time change feed cannot publish or subscribe."""

    kind = ErrorKind.TRANSPORT
    default_user_message = "Live updates are temporarily unavailable."


class InconsistentOrderState(DeliveryError):
    """Raised when a stored order row violates lifecycle invariants."""

    kind = ErrorKind.LOGIC
