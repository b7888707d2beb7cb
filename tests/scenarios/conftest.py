"""
Fixtures and helpers for end-to-end scenarios.

Scenarios run the full engine on the SQLite store (the ``repository``
fixture is overridden here) and drive it through the HTTP API the way
the chat bridge and the back office do.

Provides:
- Short senders for driver replies and order actions
- Assertions on order status, wallet balance and ledger entries
"""
from typing import Optional

import pytest
from httpx import AsyncClient

from fleet_dispatch.db.database import build_session_factory
from fleet_dispatch.db.repository import SqlAlchemyRepository
from fleet_dispatch.domain.models import LedgerEntryType, OrderStatus
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine


@pytest.fixture
async def repository(async_engine) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(build_session_factory(async_engine))


# ============================================================================
# Senders
# ============================================================================

async def send_reply(client: AsyncClient, driver_id: str, text: str) -> dict:
    """Post a chat message as the bridge would and return the outcome"""
    response = await client.post("/api/webhooks/replies", json={"driver_id": driver_id, "text": text})
    assert response.status_code == 200, response.text
    return response.json()


async def order_action(client: AsyncClient, order_id: str, action: str, **body) -> dict:
    response = await client.post(f"/api/orders/{order_id}/{action}", json=body or None)
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# Assertions
# ============================================================================

async def assert_order_status(engine: DispatchEngine, order_id: str, expected: OrderStatus):
    order = await engine.get_order(order_id)
    assert order.status == expected, f"order {order.reference} is {order.status}, expected {expected}"
    return order


async def assert_wallet_balance(engine: DispatchEngine, driver_id: str, expected: int) -> None:
    balance = await engine.balance_of(driver_id)
    assert balance == expected, f"balance {balance}, expected {expected}"
    reconciliation = await engine.reconcile(driver_id)
    assert reconciliation.consistent


async def ledger_entries(
    engine: DispatchEngine,
    driver_id: str,
    entry_type: Optional[LedgerEntryType] = None,
) -> list:
    """Ledger entries oldest first, optionally of one type"""
    entries = list(reversed(await engine.wallet_history(driver_id, limit=200)))
    if entry_type is not None:
        entries = [entry for entry in entries if entry.entry_type == entry_type]
    return entries
