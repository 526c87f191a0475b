"""Persistence and SQLModel definitions for keyswallet."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, SQLModel, create_engine

from .config import DATABASE_URL, DEFAULT_CURRENCY, SQLITE_BUSY_TIMEOUT
from .models import utc_now


# Execution option for read-only connections; SQLite opens them with a deferred BEGIN.
READ_ONLY_OPTION = "keyswallet_read_only"


def _new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Account(SQLModel, table=True):
    __tablename__ = "accounts"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    account_number: str = Field(unique=True)
    account_type: str = "checking"
    balance_cents: int = 0
    currency: str = DEFAULT_CURRENCY
    is_active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "transactions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    account_id: str = Field(index=True, foreign_key="accounts.id")
    movement_id: str = Field(index=True, foreign_key="movements.id")
    transaction_type: str
    amount_cents: int
    balance_after_cents: int
    currency: str = DEFAULT_CURRENCY
    description: str = ""
    category: Optional[str] = None
    recipient: Optional[str] = None
    status: str = "completed"
    created_at: datetime = Field(default_factory=utc_now)


class Movement(SQLModel, table=True):
    __tablename__ = "movements"

    id: str = Field(default_factory=_new_id, primary_key=True)
    kind: str
    idempotency_key: Optional[str] = Field(default=None, unique=True)
    user_id: str
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    amount_cents: int
    currency: str = DEFAULT_CURRENCY
    created_at: datetime = Field(default_factory=utc_now)


BILL_STATUS_PENDING = "pending"
BILL_STATUS_PAID = "paid"


class Bill(SQLModel, table=True):
    __tablename__ = "bills"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    payee_name: str
    payee_account: str
    amount_cents: Optional[int] = None
    due_date: Optional[date] = None
    category: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    account_id: Optional[str] = None
    status: str = BILL_STATUS_PENDING
    paid_at: Optional[datetime] = None
    last_movement_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class ScheduledTransfer(SQLModel, table=True):
    __tablename__ = "scheduled_transfers"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    from_account_id: str
    to_account_id: str
    amount_cents: int
    frequency: str
    next_execution: date
    end_date: Optional[date] = None
    description: Optional[str] = None
    is_active: bool = True
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


ALLOWANCE_STATUS_ACTIVE = "active"
ALLOWANCE_STATUS_PAUSED = "paused"


class Allowance(SQLModel, table=True):
    __tablename__ = "allowances"

    id: str = Field(default_factory=_new_id, primary_key=True)
    parent_user_id: str = Field(index=True)
    funding_account_id: str
    spend_account_id: str
    save_account_id: Optional[str] = None
    give_account_id: Optional[str] = None
    amount_cents: int
    frequency: str = "weekly"
    split_spend: int = 100
    split_save: int = 0
    split_give: int = 0
    auto_pay: bool = True
    status: str = ALLOWANCE_STATUS_ACTIVE
    next_payment: date
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Engine construction
# ---------------------------------------------------------------------------
def build_engine(url: str | None = None, *, echo: bool = False) -> Engine:
    """Create the engine for ``url`` (defaults to ``KEYSWALLET_DATABASE_URL``).

    SQLite connections are shared across threads and every write transaction
    is opened with ``BEGIN IMMEDIATE`` so that concurrent writers queue on the
    database lock instead of failing on lock upgrade. Connections carrying
    ``READ_ONLY_OPTION`` use a plain deferred ``BEGIN``.
    """

    database_url = url or DATABASE_URL
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs: dict[str, Any] = {
        "echo": echo,
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
    }
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(connection) -> None:
        if connection.get_execution_options().get(READ_ONLY_OPTION):
            connection.exec_driver_sql("BEGIN")
        else:
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


__all__ = [
    "READ_ONLY_OPTION",
    "Account",
    "LedgerEntry",
    "Movement",
    "Bill",
    "BILL_STATUS_PENDING",
    "BILL_STATUS_PAID",
    "ScheduledTransfer",
    "Allowance",
    "ALLOWANCE_STATUS_ACTIVE",
    "ALLOWANCE_STATUS_PAUSED",
    "build_engine",
    "create_db_and_tables",
]
