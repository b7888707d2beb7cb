"""
Order State Machine and per-order dispatch scheduler
"""
from fleet_dispatch.state_machine.states import ORDER_TRANSITIONS, ensure_transition, is_valid_transition
from fleet_dispatch.state_machine.scheduler import DispatchScheduler, OfferReservations, SchedulerContext

__all__ = [
    "ORDER_TRANSITIONS",
    "ensure_transition",
    "is_valid_transition",
    "DispatchScheduler",
    "OfferReservations",
    "SchedulerContext",
]
