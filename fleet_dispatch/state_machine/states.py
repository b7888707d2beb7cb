"""
Order state transitions
"""
from fleet_dispatch.core.exceptions import AlreadyTerminalError, InvalidStateTransitionError
from fleet_dispatch.domain.models import Order, OrderStatus

# State transitions mapping
ORDER_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.DISPATCHING, OrderStatus.CANCELLED],

    # Self-transition advances the offer to the next candidate;
    # PENDING is the pool-exhausted fallback
    OrderStatus.DISPATCHING: [
        OrderStatus.DISPATCHING,
        OrderStatus.ASSIGNED,
        OrderStatus.PENDING,
        OrderStatus.CANCELLED,
    ],

    # A driver may start the trip without announcing pickup first
    OrderStatus.ASSIGNED: [
        OrderStatus.PICKING_UP,
        OrderStatus.IN_TRANSIT,
        OrderStatus.CANCELLED,
    ],

    # Self-transition marks arrival (waiting sub-state)
    OrderStatus.PICKING_UP: [
        OrderStatus.PICKING_UP,
        OrderStatus.IN_TRANSIT,
        OrderStatus.CANCELLED,
    ],

    OrderStatus.IN_TRANSIT: [OrderStatus.COMPLETED, OrderStatus.CANCELLED],

    OrderStatus.COMPLETED: [],
    OrderStatus.CANCELLED: [],
}


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, [])


def ensure_transition(order: Order, target: OrderStatus) -> None:
    """Raise the matching error when ``order`` cannot move to ``target``"""
    if order.status.is_terminal:
        raise AlreadyTerminalError(order.id, order.status.value)
    if not is_valid_transition(order.status, target):
        raise InvalidStateTransitionError(order.id, order.status.value, target.value)
