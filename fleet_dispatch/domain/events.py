"""
State-change notifications for UIs and external listeners.

Subscribers get every event; a failing subscriber is logged and skipped so
it can never stall an order's dispatch.
"""
from __future__ import annotations

import enum
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from fleet_dispatch.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, enum.Enum):
    ORDER_CREATED = "ORDER_CREATED"
    OFFER_SENT = "OFFER_SENT"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    ACCEPTANCE_REJECTED = "ACCEPTANCE_REJECTED"
    ORDER_ASSIGNED = "ORDER_ASSIGNED"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"
    PICKUP_STARTED = "PICKUP_STARTED"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    TRIP_STARTED = "TRIP_STARTED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    DRIVER_SUSPENDED = "DRIVER_SUSPENDED"
    DRIVER_DELINQUENT = "DRIVER_DELINQUENT"


@dataclass(frozen=True)
class DispatchEvent:
    type: EventType
    order_id: Optional[str]
    occurred_at: datetime
    vehicle_id: Optional[str] = None
    status: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[DispatchEvent], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a sync or async handler; returns the unsubscribe callable"""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: DispatchEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    extra_data={
                        "event_type": event.type.value,
                        "order_id": event.order_id,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e),
                    },
                    exc_info=True,
                )
