"""Lifecycle state machine of a declared role.

Everything here is pure: plan() decides what a reconcile pass should do,
transition() maps an action outcome onto the next lifecycle state, and
next_status() derives the full status to persist plus an optional requeue
delay. The reconciler performs the side effects.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from ..core.errors import OwnershipConflictError, is_retryable
from .declaration import (
    LifecycleState,
    RoleDeclaration,
    RoleStatus,
    format_timestamp,
    parse_timestamp,
)


BACKOFF_BASE_SECONDS = 30


class Trigger(Enum):
    """Why a reconcile pass runs."""

    NOTIFICATION = "notification"
    RETRY = "retry"
    RESYNC = "resync"


class Action(Enum):
    """What a reconcile pass does."""

    NONE = "none"
    ADD_FINALIZER = "add-finalizer"
    CREATE = "create"
    UPDATE = "update"
    CHECK_DRIFT = "check-drift"
    DELETE = "delete"


class Outcome(Enum):
    """Result of an action, or its start."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# None keeps the current state
_TRANSITIONS: Dict[Tuple[Action, Outcome], Optional[LifecycleState]] = {
    (Action.NONE, Outcome.STARTED): None,
    (Action.NONE, Outcome.SUCCEEDED): None,
    (Action.NONE, Outcome.FAILED): None,
    (Action.ADD_FINALIZER, Outcome.STARTED): None,
    (Action.ADD_FINALIZER, Outcome.SUCCEEDED): None,
    (Action.ADD_FINALIZER, Outcome.FAILED): None,
    (Action.CREATE, Outcome.STARTED): LifecycleState.CREATE_IN_PROGRESS,
    (Action.CREATE, Outcome.SUCCEEDED): LifecycleState.READY,
    (Action.CREATE, Outcome.FAILED): LifecycleState.CREATE_ERROR,
    (Action.UPDATE, Outcome.STARTED): LifecycleState.UPDATE_IN_PROGRESS,
    (Action.UPDATE, Outcome.SUCCEEDED): LifecycleState.READY,
    (Action.UPDATE, Outcome.FAILED): LifecycleState.UPDATE_ERROR,
    (Action.CHECK_DRIFT, Outcome.STARTED): LifecycleState.READY,
    (Action.CHECK_DRIFT, Outcome.SUCCEEDED): LifecycleState.READY,
    (Action.CHECK_DRIFT, Outcome.FAILED): LifecycleState.UPDATE_ERROR,
    (Action.DELETE, Outcome.STARTED): LifecycleState.DELETE_IN_PROGRESS,
    (Action.DELETE, Outcome.SUCCEEDED): LifecycleState.DELETE_IN_PROGRESS,
    (Action.DELETE, Outcome.FAILED): LifecycleState.DELETE_IN_PROGRESS,
}

# States an action keeps a record in while it is being attempted
_ACTION_STATES = {
    Action.CREATE: (LifecycleState.CREATE_IN_PROGRESS, LifecycleState.CREATE_ERROR),
    Action.UPDATE: (LifecycleState.UPDATE_IN_PROGRESS, LifecycleState.UPDATE_ERROR),
    Action.DELETE: (LifecycleState.DELETE_IN_PROGRESS,),
}


def plan(declaration: RoleDeclaration, trigger: Trigger, now: Optional[datetime] = None) -> Action:
    """Decide the action for one reconcile pass.

    A failed record is re-attempted once the retry time stored in its
    status has passed, whatever triggered the pass, or right away when its
    spec changed. Status-write echoes arriving before that time are no-ops.
    Failures that are not retried store no retry time and wait for a change.

    Args:
        declaration: Current record
        trigger: Why the pass runs
        now: Current time, defaults to the wall clock

    Returns:
        The single action to perform
    """
    status = declaration.status
    state = status.state
    now = now or datetime.now(timezone.utc)

    if declaration.is_deleting:
        if not declaration.has_finalizer:
            return Action.NONE
        if (
            state == LifecycleState.DELETE_IN_PROGRESS
            and status.next_retry_timestamp
            and not status.retry_due(now)
        ):
            return Action.NONE
        return Action.DELETE

    if not declaration.has_finalizer:
        return Action.ADD_FINALIZER

    retry_or_changed = declaration.spec_changed or status.retry_due(now)

    if state in (LifecycleState.NEW, LifecycleState.CREATE_IN_PROGRESS):
        return Action.CREATE
    if state == LifecycleState.CREATE_ERROR:
        return Action.CREATE if retry_or_changed else Action.NONE
    if state == LifecycleState.READY:
        if declaration.spec_changed:
            return Action.UPDATE
        if trigger == Trigger.RESYNC:
            return Action.CHECK_DRIFT
        return Action.NONE
    if state == LifecycleState.UPDATE_IN_PROGRESS:
        return Action.UPDATE
    if state == LifecycleState.UPDATE_ERROR:
        return Action.UPDATE if retry_or_changed else Action.NONE
    # DeleteInProgress without a deletion marker: the delete was abandoned
    return Action.UPDATE


def transition(current: LifecycleState, action: Action, outcome: Outcome) -> LifecycleState:
    """Return the lifecycle state after ``action`` reaches ``outcome``."""
    target = _TRANSITIONS[(action, outcome)]
    return current if target is None else target


def backoff_delay(retry_count: int) -> int:
    """Linear backoff in seconds for the given retry count."""
    return BACKOFF_BASE_SECONDS * retry_count


def next_status(
    declaration: RoleDeclaration,
    action: Action,
    outcome: Outcome,
    role_name: str,
    timestamp: str,
    role_arn: str = "",
    role_id: str = "",
    error: Optional[Exception] = None,
) -> Tuple[RoleStatus, Optional[int]]:
    """Derive the status to persist and the requeue delay.

    Args:
        declaration: Record the action ran against
        action: Action performed
        outcome: How the action ended, or STARTED before it runs
        role_name: Computed IAM role name
        timestamp: ISO-8601 time of the write
        role_arn: Role ARN reported by the orchestrator
        role_id: Role id reported by the orchestrator
        error: Failure cause when outcome is FAILED

    Returns:
        Tuple of new status and delay in seconds, None when no requeue
    """
    current = declaration.status
    state = transition(current.state, action, outcome)
    retry_count = current.retry_count
    error_description = current.error_description
    next_retry = ""
    delay: Optional[int] = None

    if outcome == Outcome.STARTED:
        if current.state not in _ACTION_STATES.get(action, ()):
            retry_count = 0
    elif outcome == Outcome.SUCCEEDED:
        retry_count = 0
        error_description = ""
    else:
        retry_count += 1
        error_description = str(error) if error else ""
        if error is None or is_retryable(error):
            delay = backoff_delay(retry_count)
            written_at = parse_timestamp(timestamp) or datetime.now(timezone.utc)
            next_retry = format_timestamp(written_at + timedelta(seconds=delay))
        if action == Action.CREATE and isinstance(error, OwnershipConflictError):
            # The name is taken by another owner; no role exists for this record
            role_name = ""

    status = RoleStatus(
        role_name=role_name,
        role_arn=role_arn or current.role_arn,
        role_id=role_id or current.role_id,
        state=state,
        retry_count=retry_count,
        error_description=error_description,
        last_updated_timestamp=timestamp,
        next_retry_timestamp=next_retry,
        observed_generation=declaration.generation,
    )
    return status, delay
