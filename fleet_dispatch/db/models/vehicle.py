"""
Vehicle Model - Dispatchable Driver Units
"""
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String

from fleet_dispatch.db.database import Base


class VehicleRecord(Base):
    """Driver unit with its cached wallet balance"""

    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True)
    driver_name = Column(String(100), nullable=False)
    driver_phone = Column(String(20), nullable=False)
    plate_number = Column(String(20), nullable=False)

    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    priority = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)

    # Cached projection of wallet_logs; written only together with a ledger row
    wallet_balance = Column(Integer, nullable=False, default=0)

    missed_count = Column(Integer, nullable=False, default=0)
    suspended_until = Column(DateTime(timezone=True), nullable=True)
    delinquent = Column(Boolean, nullable=False, default=False, index=True)
    last_update = Column(DateTime(timezone=True), nullable=True)
