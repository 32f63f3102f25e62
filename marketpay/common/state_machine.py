"""Order lifecycle transitions enforced at every write site."""

from marketpay.common.errors import StateConflict

PENDING_PAYMENT = "PENDING_PAYMENT"
PAID = "PAID"
COMPLETED = "COMPLETED"
EXPIRED = "EXPIRED"
CANCELLED = "CANCELLED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING_PAYMENT: {PAID, EXPIRED, CANCELLED},
    PAID: {COMPLETED},
    COMPLETED: set(),
    EXPIRED: set(),
    CANCELLED: set(),
}

# A mark-paid that finds one of these has lost the race and is a no-op.
PAID_OR_LATER: frozenset[str] = frozenset({PAID, COMPLETED})


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise StateConflict(f"Invalid transition: {current} -> {new}")
