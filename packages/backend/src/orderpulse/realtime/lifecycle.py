"""Order and upload lifecycles — the state machines every producer obeys.

Learn: Every status change is validated here BEFORE anything is written:
1. Is the target a state of this lifecycle?
2. Is the transition allowed from the current state (no skips, no repeats)?
3. Is the actor the one allowed to make it (restaurant vs driver)?

The cache records whatever passes validation; it never second-guesses.

  order:   confirmed → preparing → ready → picked_up → delivered
           (cancelled from confirmed / preparing / ready)
  upload:  uploading → processing → completed | failed
"""

from datetime import datetime, timedelta
from typing import Optional


# ═══════════════════════════════════════════════════════════
# Order lifecycle
# ═══════════════════════════════════════════════════════════

ORDER_STATES = ("confirmed", "preparing", "ready", "picked_up", "delivered", "cancelled")

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "confirmed": {"preparing", "cancelled"},
    "preparing": {"ready", "cancelled"},
    "ready": {"picked_up", "cancelled"},
    "picked_up": {"delivered"},
    "delivered": set(),  # terminal state
    "cancelled": set(),  # terminal state
}

# Which actor role may move an order INTO each state.
ORDER_TRANSITION_ROLES: dict[str, str] = {
    "preparing": "restaurant",
    "ready": "restaurant",
    "cancelled": "restaurant",
    "picked_up": "driver",
    "delivered": "driver",
}

# Minutes after order creation, per state.
_DELIVERY_ESTIMATE_MINUTES = {
    "confirmed": 45,
    "preparing": 40,
    "ready": 25,
    "picked_up": 15,
}

ORDER_STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and sent to the restaurant.",
    "preparing": "The restaurant is preparing your order.",
    "ready": "Your order is ready for pickup! A driver will collect it soon.",
    "picked_up": "Your order has been picked up and is on the way!",
    "delivered": "Your order has been delivered. Enjoy your meal!",
    "cancelled": "Your order has been cancelled. You will be refunded.",
}


# ═══════════════════════════════════════════════════════════
# Upload lifecycle
# ═══════════════════════════════════════════════════════════

UPLOAD_STATES = ("uploading", "processing", "completed", "failed")

UPLOAD_TRANSITIONS: dict[str, set[str]] = {
    "uploading": {"processing", "failed"},
    "processing": {"processing", "completed", "failed"},
    "completed": set(),
    "failed": set(),
}

TERMINAL_STATES = frozenset({"delivered", "cancelled", "completed", "failed"})


class InvalidTransitionError(Exception):
    """Raised when a status transition is not allowed."""


def is_terminal(state: Optional[str]) -> bool:
    return state in TERMINAL_STATES


def lifecycle_for(resource_id: str) -> Optional[dict[str, set[str]]]:
    """Pick the state machine from a namespaced resource id (order:42, upload:7)."""
    kind = resource_id.split(":", 1)[0]
    if kind == "order":
        return ORDER_TRANSITIONS
    if kind == "upload":
        return UPLOAD_TRANSITIONS
    return None


def validate_state(resource_id: str, state: str, progress: Optional[int] = None) -> None:
    """Check a snapshot on its own: a state of its resource's lifecycle and
    progress within 0-100. Holds for every report, including the first.

    Raises:
        InvalidTransitionError: unknown resource kind, unknown state or
            out-of-range progress
    """
    transitions = lifecycle_for(resource_id)
    if transitions is None:
        raise InvalidTransitionError(f"No lifecycle for resource '{resource_id}'")
    if state not in transitions:
        raise InvalidTransitionError(
            f"Unknown state '{state}'. Valid states: {sorted(transitions)}"
        )
    if progress is not None and not 0 <= progress <= 100:
        raise InvalidTransitionError(f"Progress must be within 0-100, got {progress}")


def validate_transition(
    transitions: dict[str, set[str]],
    current: str,
    new: str,
) -> None:
    """Check `current → new` against a transition table.

    Raises:
        InvalidTransitionError: if `new` is unknown or not reachable from `current`
    """
    if new not in transitions:
        raise InvalidTransitionError(
            f"Unknown state '{new}'. Valid states: {sorted(transitions)}"
        )
    allowed = transitions.get(current, set())
    if new not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from '{current}' to '{new}'. "
            f"Allowed: {sorted(allowed) or 'none (terminal state)'}"
        )


def validate_order_transition(
    current: str,
    new: str,
    actor_role: Optional[str] = None,
    actor_assigned: bool = True,
) -> None:
    """Validate an order status change, including who is making it.

    Learn: Role gating is part of the state machine, not the route. A
    restaurant can never mark an order delivered, and a driver can never
    cancel one, whichever endpoint the request came through.
    `actor_role=None` skips the role gate (system-originated changes).
    """
    validate_transition(ORDER_TRANSITIONS, current, new)
    if actor_role is None:
        return

    required = ORDER_TRANSITION_ROLES[new]
    if actor_role != required:
        raise InvalidTransitionError(
            f"Only the assigned {required} can set status to '{new}' "
            f"(actor role: '{actor_role}')"
        )
    if not actor_assigned:
        raise InvalidTransitionError(
            f"Actor is not the assigned {required} for this order"
        )


def validate_upload_transition(
    current: str,
    new: str,
    current_progress: Optional[int] = None,
    new_progress: Optional[int] = None,
) -> None:
    """Validate an upload status change.

    Progress must stay within 0–100 and may not go backwards while the
    upload keeps processing. Terminal states may carry any progress
    (failed uploads report 0).
    """
    validate_transition(UPLOAD_TRANSITIONS, current, new)
    if new_progress is None:
        return
    if not 0 <= new_progress <= 100:
        raise InvalidTransitionError(f"Progress must be within 0-100, got {new_progress}")
    if (
        current == "processing"
        and new == "processing"
        and current_progress is not None
        and new_progress < current_progress
    ):
        raise InvalidTransitionError(
            f"Progress cannot decrease while processing ({current_progress} → {new_progress})"
        )


def is_order_actor_assigned(
    actor_role: str,
    actor_id: int,
    new_state: str,
    restaurant_user_id: Optional[int],
    driver_id: Optional[int],
) -> bool:
    """Whether the actor is the restaurant/driver assigned to the order.

    A driver may claim an unassigned order by picking it up.
    """
    if actor_role == "restaurant":
        return restaurant_user_id == actor_id
    if actor_role == "driver":
        if driver_id is None:
            return new_state == "picked_up"
        return driver_id == actor_id
    return False


def estimated_delivery(
    state: str,
    created_at: Optional[datetime],
    updated_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """Rough delivery estimate for an order in `state`."""
    if state == "delivered":
        return updated_at
    minutes = _DELIVERY_ESTIMATE_MINUTES.get(state)
    if minutes is None or created_at is None:
        return None
    return created_at + timedelta(minutes=minutes)
