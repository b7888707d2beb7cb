"""
Driver / group notifications.

The dispatch core hands every send to ``NotificationOutbox``, which runs it
in a background task against a ``Notifier``. ``LoggingNotifier`` is the
default transport; ``WebhookNotifier`` POSTs to a chat gateway with retry and
exponential backoff on transient failures.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import httpx

from fleet_dispatch.core.exceptions import NotificationError
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.domain.models import Order

logger = get_logger(__name__)


@dataclass(frozen=True)
class OrderSummary:
    """What a driver needs to decide on an offer"""
    order_id: str
    reference: str
    display_id: str
    pickup: str
    destination: Optional[str]
    price: int

    @classmethod
    def from_order(cls, order: Order) -> OrderSummary:
        pickup = order.pickup.address or f"{order.pickup.lat:.5f},{order.pickup.lng:.5f}"
        destination = None
        if order.destination is not None:
            destination = order.destination.address or (
                f"{order.destination.lat:.5f},{order.destination.lng:.5f}"
            )
        return cls(
            order_id=order.id,
            reference=order.reference,
            display_id=order.display_id,
            pickup=pickup,
            destination=destination,
            price=order.price,
        )


# ── message texts ──

def _local_time(moment: datetime, utc_offset_hours: int) -> str:
    return moment.astimezone(timezone(timedelta(hours=utc_offset_hours))).strftime("%H:%M:%S")


def format_offer(summary: OrderSummary, offer_expires_at: datetime, utc_offset_hours: int = 8) -> str:
    return (
        "📢 任務通知！\n"
        f"📍 上車：{summary.pickup}\n"
        f"🏁 下車：{summary.destination or '未定'}\n"
        f"💰 金額：${summary.price}\n"
        f"⏱ 請於 {_local_time(offer_expires_at, utc_offset_hours)} 前回覆\n\n"
        f"請回覆「{summary.reference}」接單。"
    )


def format_assigned(driver_name: str, reference: str) -> str:
    return f"✅ 司機 {driver_name} 已成功承接 {reference}！"


def format_insufficient_funds(driver_name: str, balance: int, required: int) -> str:
    return f"⚠️ 司機 {driver_name} 儲值金不足 (${balance}，需 ${required})，接單失敗！請儲值後再接單。"


def format_pool_exhausted(reference: str) -> str:
    return f"🚨 訂單 {reference} 無司機可接，需人工派單。"


def format_delinquent(driver_name: str, reference: str, commission: int) -> str:
    return f"❗ 司機 {driver_name} 結案扣款失敗 ({reference}，抽成 ${commission})，已標記待催收。"


def format_cancelled(reference: str, reason: Optional[str]) -> str:
    suffix = f"：{reason}" if reason else ""
    return f"❌ 訂單 {reference} 已取消{suffix}"


class Notifier(ABC):
    """Outbound broadcast channel"""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short name used in logs"""

    @abstractmethod
    async def notify_driver(
        self,
        driver_id: str,
        summary: OrderSummary,
        offer_expires_at: datetime,
    ) -> None:
        """
        Send a single-target offer.

        Raises:
            NotificationError: delivery failed.
        """

    @abstractmethod
    async def notify_group(self, message: str) -> None:
        """Post a message to the drivers' group"""

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes every notification to the log instead of a chat transport"""

    def __init__(self, utc_offset_hours: int = 8) -> None:
        self._utc_offset_hours = utc_offset_hours

    @property
    def provider_name(self) -> str:
        return "logging"

    async def notify_driver(
        self,
        driver_id: str,
        summary: OrderSummary,
        offer_expires_at: datetime,
    ) -> None:
        logger.info(
            "Offer notification",
            extra_data={
                "driver_id": driver_id,
                "reference": summary.reference,
                "text": format_offer(summary, offer_expires_at, self._utc_offset_hours),
            },
        )

    async def notify_group(self, message: str) -> None:
        logger.info("Group notification", extra_data={"text": message})


class WebhookNotifier(Notifier):
    """
    Chat gateway over HTTP.

    - POST {url}/driver  {driver_id, order_id, reference, text, offer_expires_at}
    - POST {url}/group   {group_id, text}
    """

    def __init__(
        self,
        url: str,
        group_id: str,
        max_retries: int = 3,
        transient_status_codes: Iterable[int] = (502, 503, 504, 429),
        timeout_seconds: float = 10.0,
        utc_offset_hours: int = 8,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._group_id = group_id
        self._max_retries = max_retries
        self._transient_status_codes = set(transient_status_codes)
        self._timeout = timeout_seconds
        self._utc_offset_hours = utc_offset_hours
        self._client = client
        self._owns_client = client is None

    @property
    def provider_name(self) -> str:
        return "webhook"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(2 ** attempt)

    async def _request_with_retry(self, endpoint: str, payload: dict, operation_name: str) -> None:
        """POST with retry and exponential backoff; NotificationError once attempts run out"""
        client = self._get_client()
        for attempt in range(self._max_retries):
            is_last = attempt >= self._max_retries - 1
            try:
                response = await client.post(f"{self._url}/{endpoint}", json=payload)
                if 200 <= response.status_code < 300:
                    return

                if response.status_code in self._transient_status_codes and not is_last:
                    logger.warning(
                        f"Transient error on {operation_name}, retrying",
                        extra_data={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": 2 ** attempt,
                        },
                    )
                    await self._backoff(attempt)
                    continue

                raise NotificationError.from_response(endpoint, response)
            except httpx.TimeoutException as e:
                if not is_last:
                    logger.warning(
                        f"{operation_name} timeout, retrying",
                        extra_data={"attempt": attempt + 1, "backoff_seconds": 2 ** attempt},
                    )
                    await self._backoff(attempt)
                    continue
                raise NotificationError(
                    f"{endpoint} timeout after retries",
                    details={"timeout": True, "attempts": self._max_retries},
                ) from e
            except httpx.RequestError as e:
                if not is_last:
                    logger.warning(
                        f"Network error on {operation_name}, retrying",
                        extra_data={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "backoff_seconds": 2 ** attempt,
                        },
                    )
                    await self._backoff(attempt)
                    continue
                raise NotificationError(
                    f"{endpoint} unreachable after retries",
                    details={"error": str(e), "attempts": self._max_retries},
                ) from e

    async def notify_driver(
        self,
        driver_id: str,
        summary: OrderSummary,
        offer_expires_at: datetime,
    ) -> None:
        payload = {
            "driver_id": driver_id,
            "order_id": summary.order_id,
            "reference": summary.reference,
            "text": format_offer(summary, offer_expires_at, self._utc_offset_hours),
            "offer_expires_at": offer_expires_at.isoformat(),
        }
        await self._request_with_retry("driver", payload, "driver offer")

    async def notify_group(self, message: str) -> None:
        await self._request_with_retry(
            "group", {"group_id": self._group_id, "text": message}, "group message"
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class NotificationOutbox:
    """
    Delivers notifications off the order tasks.

    A notifier may retry and back off for several seconds; each send runs as
    its own task so an order's inbox keeps moving and the offer window is
    spent by the driver, not by the transport. Failed sends are logged and
    dropped.
    """

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def offer(self, driver_id: str, summary: OrderSummary, offer_expires_at: datetime) -> None:
        self._spawn(
            self.notifier.notify_driver(driver_id, summary, offer_expires_at),
            "Offer notification failed",
            {"driver_id": driver_id, "reference": summary.reference},
        )

    def broadcast(self, message: str) -> None:
        self._spawn(self.notifier.notify_group(message), "Group notification failed", {})

    def _spawn(self, send, failure_message: str, context: dict) -> None:
        task = asyncio.create_task(self._deliver(send, failure_message, context))
        self._tasks.add(task)
        task.add_done_callback(self._forget)

    async def _deliver(self, send, failure_message: str, context: dict) -> None:
        try:
            await send
        except NotificationError as e:
            # an unreachable driver simply lets the offer window run out
            logger.error(
                failure_message,
                extra_data={**context, "error": e.message, "details": e.details},
            )

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Notification delivery crashed",
                extra_data={"error": str(error)},
                exc_info=error,
            )

    async def drain(self) -> None:
        """Wait for every send queued so far, including ones queued meanwhile"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.notifier.close()
