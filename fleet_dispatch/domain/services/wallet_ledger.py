"""
Wallet Ledger - the only writer of driver balances

Each mutation appends exactly one WalletLogEntry and moves the cached balance
in the same repository call. Mutations for one driver are serialized by a
per-driver lock so check-then-apply can never double-spend.
"""
from dataclasses import dataclass
from typing import Optional

from fleet_dispatch.core.clock import Clock
from fleet_dispatch.core.exceptions import InsufficientFundsError, InvalidAmountError, ValidationException
from fleet_dispatch.core.locks import KeyedLocks
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.db.repository import Repository
from fleet_dispatch.domain.models import LedgerEntryType, WalletLogEntry

logger = get_logger(__name__)

CREDIT_TYPES = frozenset({LedgerEntryType.TOPUP, LedgerEntryType.KICKBACK, LedgerEntryType.REFUND})


@dataclass(frozen=True)
class LedgerReconciliation:
    driver_id: str
    cached_balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_sum


class WalletLedger:
    """Service for driver wallet balances"""

    def __init__(self, repository: Repository, clock: Clock):
        self.repository = repository
        self.clock = clock
        self._locks = KeyedLocks()

    async def balance_of(self, driver_id: str) -> int:
        """Current balance, reflecting every committed mutation"""
        vehicle = await self.repository.get_vehicle(driver_id)
        return vehicle.wallet_balance

    async def deduct(
        self,
        driver_id: str,
        amount: int,
        entry_type: LedgerEntryType = LedgerEntryType.COMMISSION,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        """
        Take ``amount`` out of the wallet.

        Rejected as a whole when the balance cannot cover it; nothing is
        clamped and no entry is written.

        Raises:
            InsufficientFundsError: amount exceeds the current balance.
            InvalidAmountError: amount is negative.
        """
        if amount < 0:
            raise InvalidAmountError(driver_id, amount)

        async with self._locks(driver_id):
            balance = await self.balance_of(driver_id)
            if amount > balance:
                logger.warning(
                    "Deduction rejected: insufficient funds",
                    extra_data={
                        "driver_id": driver_id,
                        "balance": balance,
                        "required": amount,
                        "order_id": order_id,
                    },
                )
                raise InsufficientFundsError(driver_id, balance, amount)

            entry = await self.repository.append_wallet_entry(
                vehicle_id=driver_id,
                amount=-amount,
                entry_type=entry_type,
                created_at=self.clock.now(),
                order_id=order_id,
                description=description or self._describe(entry_type, order_id),
            )

        logger.info(
            "Wallet debited",
            extra_data={
                "driver_id": driver_id,
                "amount": amount,
                "entry_type": entry_type.value,
                "order_id": order_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def credit(
        self,
        driver_id: str,
        amount: int,
        entry_type: LedgerEntryType = LedgerEntryType.TOPUP,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        """Add a non-negative amount; always succeeds for a known driver"""
        if amount < 0:
            raise InvalidAmountError(driver_id, amount)
        if entry_type not in CREDIT_TYPES:
            raise ValidationException(
                f"{entry_type.value} entries cannot credit a wallet",
                field="entry_type",
            )

        async with self._locks(driver_id):
            entry = await self.repository.append_wallet_entry(
                vehicle_id=driver_id,
                amount=amount,
                entry_type=entry_type,
                created_at=self.clock.now(),
                order_id=order_id,
                description=description or self._describe(entry_type, order_id),
            )

        logger.info(
            "Wallet credited",
            extra_data={
                "driver_id": driver_id,
                "amount": amount,
                "entry_type": entry_type.value,
                "order_id": order_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def history(self, driver_id: str, limit: int = 20) -> list[WalletLogEntry]:
        """Ledger entries, newest first"""
        return await self.repository.list_wallet_entries(driver_id, limit=limit)

    async def reconcile(self, driver_id: str) -> LedgerReconciliation:
        async with self._locks(driver_id):
            cached = await self.balance_of(driver_id)
            total = await self.repository.ledger_sum(driver_id)
        result = LedgerReconciliation(driver_id=driver_id, cached_balance=cached, ledger_sum=total)
        if not result.consistent:
            logger.error(
                "Wallet balance does not match ledger",
                extra_data={"driver_id": driver_id, "cached_balance": cached, "ledger_sum": total},
            )
        return result

    @staticmethod
    def _describe(entry_type: LedgerEntryType, order_id: Optional[str]) -> str:
        if order_id:
            return f"{entry_type.value.lower()} for order {order_id}"
        return entry_type.value.lower()
