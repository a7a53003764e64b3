"""
compensation/lifecycle.py

Batch lifecycle state machine.

    DRAFT -> PREVIEW -> RECONCILE -> OFFICIAL -> PENDING_APPROVAL
          -> {APPROVED | REJECTED} -> POSTED -> CLOSED -> PAID -> PUBLISHED

PREVIEW may skip straight to OFFICIAL. OFFICIAL -> SUPERSEDED is the
terminal branch used when a newer batch replaces an official one.
REJECTED -> OFFICIAL is the only way back in after a rejection.

Pure computation: validation returns a list of errors (empty = OK).
Persistence and the audit trail belong to the lifecycle service.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from compensation.errors import LifecycleTransitionError


class LifecycleState(str, Enum):
    DRAFT = "DRAFT"
    PREVIEW = "PREVIEW"
    RECONCILE = "RECONCILE"
    OFFICIAL = "OFFICIAL"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    POSTED = "POSTED"
    CLOSED = "CLOSED"
    PAID = "PAID"
    PUBLISHED = "PUBLISHED"
    SUPERSEDED = "SUPERSEDED"


class Capability:
    MANAGE_RULE_SETS = "manage_rule_sets"
    APPROVE_OUTCOMES = "approve_outcomes"
    MANAGE_TENANTS = "manage_tenants"
    VIEW_RESULTS = "view_results"


S = LifecycleState

# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    S.DRAFT: frozenset({S.PREVIEW}),
    S.PREVIEW: frozenset({S.DRAFT, S.RECONCILE, S.OFFICIAL}),
    S.RECONCILE: frozenset({S.PREVIEW, S.OFFICIAL}),
    S.OFFICIAL: frozenset({S.PREVIEW, S.PENDING_APPROVAL, S.SUPERSEDED}),
    S.PENDING_APPROVAL: frozenset({S.OFFICIAL, S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.OFFICIAL, S.POSTED}),
    S.REJECTED: frozenset({S.OFFICIAL}),
    S.POSTED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset({S.PAID}),
    S.PAID: frozenset({S.PUBLISHED}),
    # Terminal states
    S.PUBLISHED: frozenset(),
    S.SUPERSEDED: frozenset(),
}

# A re-run may not replace a batch in any of these states.
LOCKED_STATES: frozenset[LifecycleState] = frozenset(
    {S.PENDING_APPROVAL, S.APPROVED, S.POSTED, S.CLOSED, S.PAID, S.PUBLISHED}
)

_APPROVAL_TRANSITIONS: frozenset[tuple[LifecycleState, LifecycleState]] = frozenset(
    {(S.PENDING_APPROVAL, S.APPROVED), (S.PENDING_APPROVAL, S.REJECTED)}
)

# Results are visible to plain viewers only once released.
_RELEASED_STATES: frozenset[LifecycleState] = frozenset({S.PUBLISHED})


def coerce_state(value: LifecycleState | str) -> LifecycleState:
    if isinstance(value, LifecycleState):
        return value
    try:
        return LifecycleState(str(value).strip().upper())
    except ValueError as exc:
        raise LifecycleTransitionError([f"Unknown lifecycle state: {value!r}"]) from exc


def valid_transitions(state: LifecycleState) -> frozenset[LifecycleState]:
    return _TRANSITIONS.get(state, frozenset())


def is_terminal(state: LifecycleState) -> bool:
    return not _TRANSITIONS.get(state)


def required_capability(current: LifecycleState, target: LifecycleState) -> str:
    if (current, target) in _APPROVAL_TRANSITIONS:
        return Capability.APPROVE_OUTCOMES
    return Capability.MANAGE_RULE_SETS


def validate_transition(
    current: LifecycleState,
    target: LifecycleState,
    *,
    actor_id: str,
    capabilities: Iterable[str],
    submitted_by: str | None = None,
    reason: str | None = None,
) -> list[str]:
    """
    Check a transition request. Returns errors (empty = OK).

    Checks, in order: the edge exists, the actor holds the capability the
    edge needs (``manage_tenants`` satisfies any), the approver is not the
    submitter, and a rejection carries a reason.
    """

    allowed = valid_transitions(current)
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
        return [
            f"Invalid lifecycle transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: [{allowed_str}]"
        ]

    errors: list[str] = []
    held = set(capabilities)
    needed = required_capability(current, target)
    if needed not in held and Capability.MANAGE_TENANTS not in held:
        errors.append(f"Transition {current.value} -> {target.value} requires capability {needed!r}")

    if (current, target) in _APPROVAL_TRANSITIONS and submitted_by and submitted_by == actor_id:
        errors.append("The submitter of a batch cannot approve or reject it")

    if target is S.REJECTED and not (reason and reason.strip()):
        errors.append("A rejection requires a reason")

    return errors


def require_transition(
    current: LifecycleState,
    target: LifecycleState,
    *,
    actor_id: str,
    capabilities: Iterable[str],
    submitted_by: str | None = None,
    reason: str | None = None,
) -> None:
    errors = validate_transition(
        current,
        target,
        actor_id=actor_id,
        capabilities=capabilities,
        submitted_by=submitted_by,
        reason=reason,
    )
    if errors:
        raise LifecycleTransitionError(errors)


def transition_stamps(
    target: LifecycleState,
    *,
    actor_id: str,
    at: datetime,
    reason: str | None = None,
    payment_reference: str | None = None,
) -> dict[str, Any]:
    """Summary fields recorded on the batch when it enters *target*."""

    stamp = at.isoformat()
    if target is S.PENDING_APPROVAL:
        return {"submitted_by": actor_id, "submitted_at": stamp}
    if target is S.APPROVED:
        return {"approved_by": actor_id, "approved_at": stamp}
    if target is S.REJECTED:
        return {"rejected_by": actor_id, "rejected_at": stamp, "rejection_reason": reason}
    if target is S.POSTED:
        return {"posted_at": stamp}
    if target is S.CLOSED:
        return {"closed_at": stamp}
    if target is S.PAID:
        return {"paid_at": stamp, "payment_reference": payment_reference}
    if target is S.PUBLISHED:
        return {"published_at": stamp}
    if target is S.SUPERSEDED:
        return {"superseded_at": stamp}
    return {}


def can_view_results(state: LifecycleState, capabilities: Iterable[str]) -> bool:
    """
    Administrators see every state; plain viewers only released results.
    """

    held = set(capabilities)
    if held & {Capability.MANAGE_RULE_SETS, Capability.APPROVE_OUTCOMES, Capability.MANAGE_TENANTS}:
        return True
    return Capability.VIEW_RESULTS in held and state in _RELEASED_STATES
