"""
Parent order status derivation

The parent status is a pure function of its sub-order statuses (plus the
current parent status for terminal and courier-owned states). Rules are
evaluated in priority order; the first match wins.
"""
from typing import Dict, FrozenSet, Iterable

from marketplace_orders.models.order import ParentOrderStatus, SubOrderStatus

TERMINAL_STATUSES: FrozenSet[ParentOrderStatus] = frozenset({
    ParentOrderStatus.DELIVERED,
    ParentOrderStatus.CANCELLED,
    ParentOrderStatus.PARTIALLY_CANCELLED,
})

# Allowed shop-side transitions. Shops stop at READY_FOR_PICKUP; DELIVERED is
# written only by the courier delivery cascade. DELIVERED and CANCELLED are final
SUBORDER_TRANSITIONS: Dict[SubOrderStatus, FrozenSet[SubOrderStatus]] = {
    SubOrderStatus.PLACED: frozenset({SubOrderStatus.CONFIRMED, SubOrderStatus.CANCELLED}),
    SubOrderStatus.CONFIRMED: frozenset({SubOrderStatus.PREPARING, SubOrderStatus.CANCELLED}),
    SubOrderStatus.PREPARING: frozenset({SubOrderStatus.READY_FOR_PICKUP, SubOrderStatus.CANCELLED}),
    SubOrderStatus.READY_FOR_PICKUP: frozenset({SubOrderStatus.CANCELLED}),
    SubOrderStatus.DELIVERED: frozenset(),
    SubOrderStatus.CANCELLED: frozenset(),
}


def is_terminal(status: ParentOrderStatus) -> bool:
    """Terminal parents never change again"""
    return ParentOrderStatus(status) in TERMINAL_STATUSES


def can_transition(current: SubOrderStatus, new: SubOrderStatus) -> bool:
    """Check a shop-side sub-order transition"""
    return SubOrderStatus(new) in SUBORDER_TRANSITIONS[SubOrderStatus(current)]


def derive_parent_status(
    sub_statuses: Iterable[SubOrderStatus],
    current: ParentOrderStatus = ParentOrderStatus.PLACED
) -> ParentOrderStatus:
    """
    Derive the parent status from its sub-order statuses

    Args:
        sub_statuses: Statuses of every sub-order of the parent (order irrelevant)
        current: The parent's stored status

    Returns:
        The status the parent should have. Terminal parents are returned
        unchanged, as is a parent with no sub-orders.
    """
    current = ParentOrderStatus(current)
    statuses = [SubOrderStatus(s) for s in sub_statuses]

    # Rule 8: closed orders stay closed
    if current in TERMINAL_STATUSES or not statuses:
        return current

    active = [s for s in statuses if s != SubOrderStatus.CANCELLED]
    cancelled = len(statuses) - len(active)

    # Rule 1
    if not active:
        derived = ParentOrderStatus.CANCELLED
    # Rule 2
    elif cancelled and all(s == SubOrderStatus.DELIVERED for s in active):
        derived = ParentOrderStatus.PARTIALLY_CANCELLED
    # Rule 3
    elif all(s == SubOrderStatus.DELIVERED for s in active):
        derived = ParentOrderStatus.DELIVERED
    # Rule 4
    elif all(s == SubOrderStatus.READY_FOR_PICKUP for s in active):
        derived = ParentOrderStatus.READY_FOR_PICKUP
    # Rule 5
    elif any(s == SubOrderStatus.READY_FOR_PICKUP for s in active):
        derived = ParentOrderStatus.PARTIALLY_READY
    # Rule 6
    elif any(s in (SubOrderStatus.PREPARING, SubOrderStatus.CONFIRMED) for s in active):
        derived = ParentOrderStatus.PROCESSING
    # Rule 7
    elif all(s == SubOrderStatus.PLACED for s in active):
        derived = ParentOrderStatus.PLACED
    else:
        # PLACED mixed with DELIVERED: work has started somewhere
        derived = ParentOrderStatus.PROCESSING

    # The courier owns OUT_FOR_DELIVERY; shop-side pickup states must not pull it back
    if current == ParentOrderStatus.OUT_FOR_DELIVERY and derived in (
        ParentOrderStatus.READY_FOR_PICKUP,
        ParentOrderStatus.PARTIALLY_READY,
    ):
        return current

    return derived
