"""
Order Model - Ride Requests
"""
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text

from fleet_dispatch.db.database import Base


class OrderRecord(Base):
    """Ride request row; status and tier are stored as plain strings"""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    reference = Column(String(16), unique=True, nullable=False, index=True)
    display_id = Column(String(16), nullable=False)  # cosmetic, not unique

    # Pickup / destination
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(500), nullable=True)
    destination_lat = Column(Float, nullable=True)
    destination_lng = Column(Float, nullable=True)
    destination_address = Column(String(500), nullable=True)

    status = Column(String(20), nullable=False, index=True)
    plan_id = Column(String(50), nullable=False)

    # Fare
    price = Column(Integer, nullable=False, default=0)
    base_fare = Column(Integer, nullable=False, default=0)
    distance_fare = Column(Integer, nullable=False, default=0)
    time_fare = Column(Integer, nullable=False, default=0)
    night_surcharge = Column(Integer, nullable=False, default=0)
    waiting_fee = Column(Integer, nullable=False, default=0)
    distance_km = Column(Float, nullable=True)
    duration_min = Column(Float, nullable=True)
    commission = Column(Integer, nullable=True)
    commission_settled = Column(Boolean, nullable=True)

    vehicle_id = Column(String(36), nullable=True, index=True)

    # Dispatch round
    offered_vehicle_id = Column(String(36), nullable=True)
    offer_expires_at = Column(DateTime(timezone=True), nullable=True)
    dispatch_countdown = Column(Integer, nullable=False, default=0)
    current_driver_index = Column(Integer, nullable=False, default=0)
    priority_tier = Column(String(20), nullable=False)
    excluded_vehicle_ids = Column(JSON, nullable=False, default=list)
    needs_manual_dispatch = Column(Boolean, nullable=False, default=False)

    # Client
    client_name = Column(String(100), nullable=True)
    client_phone = Column(String(20), nullable=True)
    note = Column(Text, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    waiting_started_at = Column(DateTime(timezone=True), nullable=True)
    trip_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
