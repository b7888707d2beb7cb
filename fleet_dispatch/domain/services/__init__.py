"""
Domain Services
"""
from fleet_dispatch.domain.services.candidate_selector import CandidateSelector
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.fare_engine import NightWindow, PlanCatalog
from fleet_dispatch.domain.services.penalty_tracker import PenaltyTracker
from fleet_dispatch.domain.services.wallet_ledger import WalletLedger

__all__ = [
    "CandidateSelector",
    "DispatchPolicy",
    "NightWindow",
    "PlanCatalog",
    "PenaltyTracker",
    "WalletLedger",
]
