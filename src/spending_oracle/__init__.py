"""
Spending oracle: bounded spending authority for delegated sub-accounts.

Replays each sub-account's activity from scratch:
Events → FIFO acquired balances + rolling-window spend → minimal on-chain update.
"""

__version__ = "0.1.0"

from .events import Operation, OperationType, OrderKey, Transfer, event_from_dict, parse_events
from .fifo import AcquiredEntry, AcquiredQueue
from .deposits import DepositLedger, DepositRecord
from .state import ClaimPolicy, SubAccountState, build_state
from .allowance import AllowanceLimits, calculate_allowance
from .publish import BatchUpdate, PublishedState, compute_update
from .config import OracleConfig
from .engine import Outcome, ReconcileResult, ReconciliationEngine
from .runner import OracleRunner
from .local_ledger import LocalLedger
from .audit import AuditTrail, EventType

__all__ = [
    "Operation", "OperationType", "OrderKey", "Transfer", "event_from_dict", "parse_events",
    "AcquiredEntry", "AcquiredQueue", "DepositLedger", "DepositRecord",
    "ClaimPolicy", "SubAccountState", "build_state",
    "AllowanceLimits", "calculate_allowance",
    "BatchUpdate", "PublishedState", "compute_update",
    "OracleConfig", "Outcome", "ReconcileResult", "ReconciliationEngine", "OracleRunner",
    "LocalLedger", "AuditTrail", "EventType",
]
