"""Charge and payment-attempt state machines enforced by the billing service."""

from enum import Enum


class ChargeStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"


class AttemptStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    IN_PROCESS = "InProcess"
    REJECTED = "Rejected"


# Transitions driven by confirmed gateway data. Paid is terminal; Rejected only upgrades to Paid.
ALLOWED_ATTEMPT_TRANSITIONS: dict[str, set[str]] = {
    "Pending": {"Paid", "InProcess", "Rejected"},
    "InProcess": {"Paid", "Rejected", "Pending"},
    "Rejected": {"Paid"},
    "Paid": set(),
}

# Transitions applied by the service itself (lazy expiry, reconciliation).
ALLOWED_CHARGE_TRANSITIONS: dict[str, set[str]] = {
    "Pending": {"Overdue", "Paid"},
    "Overdue": {"Paid"},
    "Paid": set(),
    "Cancelled": set(),
}

# Transitions an administrator may request explicitly.
ADMIN_CHARGE_TRANSITIONS: dict[str, set[str]] = {
    "Pending": {"Paid", "Cancelled", "Overdue"},
    "Overdue": {"Paid", "Cancelled"},
    "Paid": set(),
    "Cancelled": set(),
}

# Charge states that still accept payment attempts and public links.
PAYABLE_CHARGE_STATES = frozenset(s for s, targets in ALLOWED_CHARGE_TRANSITIONS.items() if "Paid" in targets)

GATEWAY_STATUS_MAP: dict[str, str] = {
    "approved": "Paid",
    "pending": "Pending",
    "in_process": "InProcess",
    "rejected": "Rejected",
    "cancelled": "Rejected",
}


def map_gateway_status(gateway_status: str | None) -> str:
    """Translate a gateway payment status to the internal attempt status."""

    return GATEWAY_STATUS_MAP.get((gateway_status or "").lower(), AttemptStatus.PENDING.value)


def validate_transition(current: str, new: str, table: dict[str, set[str]] = ALLOWED_ATTEMPT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in table.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
