# order_lifecycle.py - Order / Payment / Rental State Definitions
"""
Static lifecycle definitions shared by the order and payment managers.

- Role, order, payment and rental enums (stored as their string values).
- The order status transition table. It is the single source of truth for
  which status changes a user may request.
- Named privileged transitions (agent assignment, installation scheduling)
  that force a status outside the table, each with its own allowed sources.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union


class UserRole(str, Enum):
    ADMIN = "admin"
    FRANCHISE_OWNER = "franchise_owner"
    SERVICE_AGENT = "service_agent"
    CUSTOMER = "customer"


class OrderType(str, Enum):
    PURCHASE = "purchase"
    RENTAL = "rental"


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    ASSIGNED = "assigned"
    INSTALLATION_PENDING = "installation_pending"
    INSTALLED = "installed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentType(str, Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"


class RentalStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"


VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_PENDING: frozenset({OrderStatus.PAYMENT_COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_COMPLETED: frozenset({OrderStatus.ASSIGNED, OrderStatus.INSTALLATION_PENDING}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.INSTALLATION_PENDING, OrderStatus.INSTALLED}),
    OrderStatus.INSTALLATION_PENDING: frozenset({OrderStatus.INSTALLED, OrderStatus.ASSIGNED}),
    OrderStatus.INSTALLED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.CANCELLED: frozenset(),  # terminal
    OrderStatus.COMPLETED: frozenset(),  # terminal
}

TERMINAL_STATUSES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)

# Statuses a customer sees in their order history when no filter is given
MEANINGFUL_CUSTOMER_STATUSES: Tuple[OrderStatus, ...] = (
    OrderStatus.PAYMENT_COMPLETED,
    OrderStatus.ASSIGNED,
    OrderStatus.INSTALLATION_PENDING,
    OrderStatus.INSTALLED,
    OrderStatus.COMPLETED,
)

# Statuses from which a payment may be initiated
PAYABLE_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.PAYMENT_PENDING})


class PrivilegedTransition(str, Enum):
    """Status changes performed by dedicated operations rather than by request."""
    ASSIGN_AGENT = "assign_agent"
    SCHEDULE_INSTALLATION = "schedule_installation"


_SERVICEABLE = frozenset({
    OrderStatus.PAYMENT_COMPLETED,
    OrderStatus.ASSIGNED,
    OrderStatus.INSTALLATION_PENDING,
})

PRIVILEGED_TRANSITIONS: Dict[PrivilegedTransition, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    PrivilegedTransition.ASSIGN_AGENT: (_SERVICEABLE, OrderStatus.ASSIGNED),
    PrivilegedTransition.SCHEDULE_INSTALLATION: (_SERVICEABLE, OrderStatus.INSTALLATION_PENDING),
}


def coerce_status(value: Union[str, OrderStatus]) -> Optional[OrderStatus]:
    """Return the OrderStatus for a raw value, or None if it is not a known status."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).lower())
    except ValueError:
        return None


def is_valid_status_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> bool:
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if current_status is None or target_status is None:
        return False
    return target_status in VALID_TRANSITIONS.get(current_status, frozenset())


def allowed_next_statuses(current: Union[str, OrderStatus]) -> FrozenSet[OrderStatus]:
    current_status = coerce_status(current)
    if current_status is None:
        return frozenset()
    return VALID_TRANSITIONS.get(current_status, frozenset())


def privileged_target(transition: PrivilegedTransition) -> OrderStatus:
    return PRIVILEGED_TRANSITIONS[transition][1]


def can_apply_privileged(transition: PrivilegedTransition, current: Union[str, OrderStatus]) -> bool:
    """True when `transition` may be applied to an order currently in `current`."""
    sources, _ = PRIVILEGED_TRANSITIONS[transition]
    return coerce_status(current) in sources
