"""Service request workflow rules.

The happy path runs::

    pending → diagnosing → pending_approval → approved → waiting_parts
            → resolved → shipped → completed

Staff may jump to any status (repair work often skips steps), so only three
rules are enforced here:

- nothing leaves a terminal status (``completed``, ``rejected``);
- ``rejected`` needs a non-blank reason and is reachable from any
  non-terminal status;
- the customer's cost approval is only possible while ``pending_approval``
  and only once.
"""

from __future__ import annotations

from typing import Optional

from src.common.exceptions import InvalidTransition, ValidationError
from src.common.models import NotificationType, RequestStatus, ServiceRequest

WORKFLOW_ORDER: tuple[RequestStatus, ...] = (
    RequestStatus.PENDING,
    RequestStatus.DIAGNOSING,
    RequestStatus.PENDING_APPROVAL,
    RequestStatus.APPROVED,
    RequestStatus.WAITING_PARTS,
    RequestStatus.RESOLVED,
    RequestStatus.SHIPPED,
    RequestStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.REJECTED})

STATUS_LABELS: dict[RequestStatus, str] = {
    RequestStatus.PENDING: "Pending",
    RequestStatus.DIAGNOSING: "Diagnosing",
    RequestStatus.PENDING_APPROVAL: "Awaiting approval",
    RequestStatus.APPROVED: "In progress",
    RequestStatus.WAITING_PARTS: "Waiting for parts",
    RequestStatus.RESOLVED: "Repaired",
    RequestStatus.SHIPPED: "Shipped",
    RequestStatus.COMPLETED: "Delivered",
    RequestStatus.REJECTED: "Cancelled / Rejected",
}

# Feed severity used when telling the other party about a status change.
STATUS_NOTIFICATION_TYPES: dict[RequestStatus, NotificationType] = {
    RequestStatus.PENDING_APPROVAL: NotificationType.WARNING,
    RequestStatus.RESOLVED: NotificationType.SUCCESS,
    RequestStatus.SHIPPED: NotificationType.SUCCESS,
    RequestStatus.COMPLETED: NotificationType.SUCCESS,
    RequestStatus.REJECTED: NotificationType.ERROR,
}


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_forward(current: RequestStatus, target: RequestStatus) -> bool:
    """True when ``target`` lies later on the happy path than ``current``."""
    if current not in WORKFLOW_ORDER or target not in WORKFLOW_ORDER:
        return False
    return WORKFLOW_ORDER.index(target) > WORKFLOW_ORDER.index(current)


def validate_transition(
    current: RequestStatus,
    target: RequestStatus,
    rejection_reason: Optional[str] = None,
) -> None:
    """Raise if ``current → target`` breaks a workflow rule."""
    if is_terminal(current):
        raise InvalidTransition(current.value, target.value, "request is closed")
    if target is RequestStatus.REJECTED and not (rejection_reason or "").strip():
        raise ValidationError("A rejection reason is required")


def validate_rejection(request: ServiceRequest, reason: str) -> None:
    if not (reason or "").strip():
        raise ValidationError("A rejection reason is required")
    if request.status is RequestStatus.REJECTED:
        raise InvalidTransition(request.status.value, RequestStatus.REJECTED.value, "already rejected")
    validate_transition(request.status, RequestStatus.REJECTED, reason)


def validate_approval(request: ServiceRequest) -> None:
    """Cost approval: only from pending_approval, only once."""
    if request.approved_by_customer:
        raise InvalidTransition(request.status.value, RequestStatus.APPROVED.value, "cost already approved")
    if request.status is not RequestStatus.PENDING_APPROVAL:
        raise InvalidTransition(
            request.status.value, RequestStatus.APPROVED.value, "no cost quote awaiting approval"
        )


def label(status: RequestStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def describe_change(
    old: RequestStatus,
    new: RequestStatus,
    estimated_cost: Optional[float] = None,
    currency: Optional[str] = None,
) -> str:
    """Text of the system note recorded for a status change."""
    text = f"Status changed: {label(old)} → {label(new)}"
    if new is RequestStatus.PENDING_APPROVAL and estimated_cost is not None:
        quote = f"{estimated_cost:g} {currency}" if currency else f"{estimated_cost:g}"
        text += f" (quote: {quote})"
    return text
