"""Booking and payment state graphs enforced at every status write."""

from fundiconnect.common.errors import InvalidTransition

BOOKING_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"accepted", "rejected", "expired", "cancelled"},
    "accepted": {"completed", "cancelled"},
    "rejected": set(),
    "expired": set(),
    "cancelled": set(),
    "completed": set(),
}

# `processing -> pending` is the release after an initiation call returns;
# `failed -> paid` covers a success webhook from an earlier attempt.
PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "paid", "failed"},
    "processing": {"pending", "paid", "failed"},
    "failed": {"processing", "paid"},
    "paid": {"refunded"},
    "refunded": set(),
}


def validate_transition(current: str, new: str, graph: dict[str, set[str]] = BOOKING_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state graph."""

    if new not in graph.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return not BOOKING_TRANSITIONS.get(status)
