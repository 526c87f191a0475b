"""Domain value types used by the keyswallet package."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from .money import to_decimal


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Return ``moment`` as an aware UTC datetime; naive values are taken to be UTC."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class TransactionType(str, Enum):
    """Enumerates the ledger entry types written by the wallet."""

    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BILL_PAYMENT = "bill_payment"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class MovementKind(str, Enum):
    """The operation that produced a committed money movement."""

    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BILL_PAYMENT = "bill_payment"
    ALLOWANCE = "allowance"


class Frequency(str, Enum):
    """Recurrence used by scheduled transfers, recurring bills and allowances."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def advance(self, day: date) -> Optional[date]:
        """Return the occurrence after ``day`` (``None`` for one-off schedules)."""

        if self is Frequency.ONCE:
            return None
        if self is Frequency.DAILY:
            return day + timedelta(days=1)
        if self is Frequency.WEEKLY:
            return day + timedelta(weeks=1)
        year, month = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
        last_day = calendar.monthrange(year, month)[1]
        return date(year, month, min(day.day, last_day))


@dataclass(frozen=True, slots=True)
class Principal:
    """The authenticated caller of a wallet operation."""

    user_id: str


@dataclass(slots=True)
class TransferResult:
    """Outcome of a successful (or replayed) account-to-account transfer."""

    transfer_id: str
    amount: Decimal
    from_account: str
    to_account: str
    idempotency_key: Optional[str] = None
    replayed: bool = False
    success: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))


@dataclass(slots=True)
class PostingResult:
    """Outcome of a single-account movement such as a deposit or bill payment."""

    movement_id: str
    account_number: str
    amount: Decimal
    balance_after: Decimal
    replayed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "balance_after", to_decimal(self.balance_after))


@dataclass(slots=True)
class AllowanceSplit:
    """Spend/save/give breakdown of one allowance payment."""

    spend: Decimal
    save: Decimal
    give: Decimal

    @property
    def total(self) -> Decimal:
        return self.spend + self.save + self.give


@dataclass(slots=True)
class AllowancePayout:
    allowance_id: str
    transfer_id: str
    split: AllowanceSplit
    paid_for: date
    replayed: bool = False


__all__ = [
    "as_utc",
    "utc_now",
    "AllowancePayout",
    "AllowanceSplit",
    "Frequency",
    "MovementKind",
    "PostingResult",
    "Principal",
    "TransactionStatus",
    "TransactionType",
    "TransferResult",
]
