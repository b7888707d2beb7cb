"""
Wallet Log Model - Immutable Transaction History
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from fleet_dispatch.db.database import Base


class WalletLogRecord(Base):
    """Append-only ledger row preventing double charges"""

    __tablename__ = "wallet_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    order_id = Column(String(36), nullable=True, index=True)

    entry_type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)  # Positive for credit, negative for deduction
    balance_after = Column(Integer, nullable=False)

    description = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    # One commission per order per driver
    __table_args__ = (
        UniqueConstraint("vehicle_id", "order_id", "entry_type", name="uq_vehicle_order_type"),
    )
