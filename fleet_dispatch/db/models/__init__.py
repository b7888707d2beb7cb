"""
Database Models
"""
from fleet_dispatch.db.models.order import OrderRecord
from fleet_dispatch.db.models.vehicle import VehicleRecord
from fleet_dispatch.db.models.wallet_log import WalletLogRecord

__all__ = [
    "OrderRecord",
    "VehicleRecord",
    "WalletLogRecord",
]
