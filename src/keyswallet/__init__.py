"""keyswallet: account ledger and atomic money movements for the family wallet."""

from .allowances import AllowanceManager, split_allowance
from .api import ApiExporter, WebhookDispatcher
from .exceptions import (
    AccountsNotFoundError,
    AuthenticationError,
    ConcurrencyError,
    CurrencyMismatchError,
    IdempotencyKeyConflictError,
    InsufficientFundsError,
    InvalidAccountsError,
    RecordNotFoundError,
    StorageError,
    WalletError,
)
from .ledger import LedgerStore
from .locks import AccountLockRegistry
from .models import (
    AllowancePayout,
    AllowanceSplit,
    Frequency,
    MovementKind,
    PostingResult,
    Principal,
    TransactionStatus,
    TransactionType,
    TransferResult,
)
from .ops import HealthMonitor, StructuredLogger
from .persistence import build_engine, create_db_and_tables
from .scheduling import ScheduledRun, TransferScheduler
from .security import AuthManager
from .service import WalletService

__all__ = [
    "AccountLockRegistry",
    "AccountsNotFoundError",
    "AllowanceManager",
    "AllowancePayout",
    "AllowanceSplit",
    "ApiExporter",
    "AuthManager",
    "AuthenticationError",
    "ConcurrencyError",
    "CurrencyMismatchError",
    "Frequency",
    "HealthMonitor",
    "IdempotencyKeyConflictError",
    "InsufficientFundsError",
    "InvalidAccountsError",
    "LedgerStore",
    "MovementKind",
    "PostingResult",
    "Principal",
    "RecordNotFoundError",
    "ScheduledRun",
    "StorageError",
    "StructuredLogger",
    "TransactionStatus",
    "TransactionType",
    "TransferResult",
    "TransferScheduler",
    "WalletError",
    "WalletService",
    "WebhookDispatcher",
    "build_engine",
    "create_db_and_tables",
    "split_allowance",
]
