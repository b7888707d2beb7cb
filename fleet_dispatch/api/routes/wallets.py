"""
Wallet API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fleet_dispatch.api.dependencies.engine import get_engine
from fleet_dispatch.domain.models import LedgerEntryType
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine

router = APIRouter()


class WalletResponse(BaseModel):
    driver_id: str
    balance: int
    delinquent: bool


class LedgerEntryResponse(BaseModel):
    id: int | None
    entry_type: LedgerEntryType
    amount: int
    balance_after: int
    order_id: str | None
    description: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class TopUpRequest(BaseModel):
    amount: int = Field(gt=0)
    entry_type: LedgerEntryType = LedgerEntryType.TOPUP
    description: str | None = Field(default=None, max_length=200)


class ReconciliationResponse(BaseModel):
    driver_id: str
    cached_balance: int
    ledger_sum: int
    consistent: bool


class DelinquentDriverResponse(BaseModel):
    driver_id: str
    driver_name: str
    balance: int


@router.get(
    "/delinquent",
    response_model=List[DelinquentDriverResponse],
    summary="Drivers whose commission could not be settled",
)
async def list_delinquent(engine: DispatchEngine = Depends(get_engine)):
    vehicles = await engine.list_delinquent()
    return [
        DelinquentDriverResponse(
            driver_id=vehicle.id,
            driver_name=vehicle.driver_name,
            balance=vehicle.wallet_balance,
        )
        for vehicle in vehicles
    ]


@router.get("/{driver_id}", response_model=WalletResponse, summary="Get a driver's wallet")
async def get_wallet(
    driver_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    vehicle = await engine.get_vehicle(driver_id)
    return WalletResponse(
        driver_id=vehicle.id,
        balance=vehicle.wallet_balance,
        delinquent=vehicle.delinquent,
    )


@router.get(
    "/{driver_id}/history",
    response_model=List[LedgerEntryResponse],
    summary="Ledger entries, newest first",
)
async def get_history(
    driver_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    engine: DispatchEngine = Depends(get_engine),
):
    return await engine.wallet_history(driver_id, limit=limit)


@router.post(
    "/{driver_id}/top-up",
    response_model=LedgerEntryResponse,
    summary="Credit a driver's wallet",
    description="TOPUP, KICKBACK or REFUND. A top-up does not clear delinquency.",
)
async def top_up(
    driver_id: str,
    body: TopUpRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    return await engine.top_up(
        driver_id,
        body.amount,
        entry_type=body.entry_type,
        description=body.description,
    )


@router.get(
    "/{driver_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Re-sum the ledger against the cached balance",
)
async def reconcile(
    driver_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    result = await engine.reconcile(driver_id)
    return ReconciliationResponse(
        driver_id=result.driver_id,
        cached_balance=result.cached_balance,
        ledger_sum=result.ledger_sum,
        consistent=result.consistent,
    )
