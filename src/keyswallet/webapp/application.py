"""FastAPI JSON API for keyswallet.

The dashboard's transfer, quick-transfer and bill-payment dialogs call these
endpoints. Every money-moving request accepts an ``Idempotency-Key`` header so
a client retry after a dropped response can't move money twice.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from ..allowances import AllowanceManager
from ..api import ApiExporter
from ..config import DEFAULT_CURRENCY, LOG_PATH, TRANSACTIONS_PAGE_SIZE
from ..exceptions import (
    AccountsNotFoundError,
    AuthenticationError,
    ConcurrencyError,
    IdempotencyKeyConflictError,
    InsufficientFundsError,
    InvalidAccountsError,
    RecordNotFoundError,
    StorageError,
    WalletError,
)
from ..ledger import LedgerStore
from ..models import Principal
from ..ops import HealthMonitor, StructuredLogger
from ..persistence import build_engine, create_db_and_tables
from ..scheduling import TransferScheduler
from ..security import AuthManager
from ..service import WalletService

_STATUS_CODES: Tuple[Tuple[type, int], ...] = (
    (AuthenticationError, 401),
    (AccountsNotFoundError, 404),
    (RecordNotFoundError, 404),
    (InvalidAccountsError, 400),
    (InsufficientFundsError, 409),
    (IdempotencyKeyConflictError, 409),
    (ConcurrencyError, 503),
    (StorageError, 503),
)


def status_for(exc: Exception) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class AccountIn(SQLModel):
    account_type: str = "checking"
    currency: str = DEFAULT_CURRENCY
    starting_balance: Decimal = Decimal("0")


class TransferIn(SQLModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    description: Optional[str] = None
    recipient: Optional[str] = None


class DepositIn(SQLModel):
    account_id: str
    amount: Decimal
    description: str = "Deposit"


class BillIn(SQLModel):
    payee_name: str
    payee_account: str
    amount: Optional[Decimal] = None
    due_date: Optional[date] = None
    category: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None
    account_id: Optional[str] = None


class BillPaymentIn(SQLModel):
    account_id: Optional[str] = None
    amount: Optional[Decimal] = None


class ScheduleIn(SQLModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    frequency: str
    first_run: date
    end_date: Optional[date] = None
    description: Optional[str] = None


class AllowanceIn(SQLModel):
    funding_account_id: str
    spend_account_id: str
    amount: Decimal
    frequency: str = "weekly"
    split_spend: int = 100
    split_save: int = 0
    split_give: int = 0
    save_account_id: Optional[str] = None
    give_account_id: Optional[str] = None
    auto_pay: bool = True
    first_payment: Optional[date] = None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def default_service() -> WalletService:
    engine = build_engine()
    create_db_and_tables(engine)
    return WalletService(LedgerStore(engine), logger=StructuredLogger(path=LOG_PATH))


def create_app(service: WalletService | None = None, *, auth: AuthManager | None = None) -> FastAPI:
    wallet = service or default_service()
    sessions = auth or AuthManager()
    scheduler = TransferScheduler(wallet)
    allowances = AllowanceManager(wallet)
    exporter = ApiExporter()
    health = HealthMonitor(wallet.store)

    app = FastAPI(title="KeysWallet")
    app.state.service = wallet
    app.state.auth = sessions
    app.state.scheduler = scheduler
    app.state.allowances = allowances

    @app.exception_handler(WalletError)
    def wallet_error(_request: Request, exc: WalletError) -> JSONResponse:
        return JSONResponse({"error": exc.message}, status_code=status_for(exc))

    @app.exception_handler(ValueError)
    def value_error(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=400)

    def current_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
        token = None
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[len("bearer ") :].strip()
        return sessions.resolve(token)

    @app.get("/health")
    def health_status() -> JSONResponse:
        payload = health.status()
        return JSONResponse(payload, status_code=200 if payload["database"] == "ok" else 503)

    @app.get("/accounts")
    def list_accounts(principal: Principal = Depends(current_principal)) -> List[dict]:
        return [exporter.account(account) for account in wallet.list_accounts(principal)]

    @app.post("/accounts", status_code=201)
    def open_account(body: AccountIn, principal: Principal = Depends(current_principal)) -> dict:
        account = wallet.open_account(
            principal,
            body.account_type,
            currency=body.currency,
            starting_balance=body.starting_balance,
        )
        return exporter.account(account)

    @app.post("/transfers")
    def transfer(
        body: TransferIn,
        principal: Principal = Depends(current_principal),
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ) -> dict:
        result = wallet.transfer(
            principal,
            body.from_account_id,
            body.to_account_id,
            body.amount,
            body.description,
            body.recipient,
            idempotency_key=idempotency_key,
        )
        return exporter.result(result)

    @app.post("/deposits")
    def deposit(
        body: DepositIn,
        principal: Principal = Depends(current_principal),
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ) -> dict:
        result = wallet.deposit(
            principal,
            body.account_id,
            body.amount,
            body.description,
            idempotency_key=idempotency_key,
        )
        return exporter.result(result)

    @app.get("/transactions")
    def transactions(
        principal: Principal = Depends(current_principal),
        account_id: Optional[str] = Query(default=None),
        limit: int = Query(default=TRANSACTIONS_PAGE_SIZE),
    ) -> List[dict]:
        entries = wallet.transactions(principal, account_id, limit=limit)
        return [exporter.entry(entry) for entry in entries]

    @app.get("/bills")
    def list_bills(principal: Principal = Depends(current_principal)) -> List[dict]:
        return [exporter.bill(bill) for bill in wallet.list_bills(principal)]

    @app.post("/bills", status_code=201)
    def create_bill(body: BillIn, principal: Principal = Depends(current_principal)) -> dict:
        bill = wallet.create_bill(
            principal,
            body.payee_name,
            body.payee_account,
            amount=body.amount,
            due_date=body.due_date,
            category=body.category,
            is_recurring=body.is_recurring,
            recurring_frequency=body.recurring_frequency,
            account_id=body.account_id,
        )
        return exporter.bill(bill)

    @app.post("/bills/{bill_id}/pay")
    def pay_bill(
        bill_id: str,
        body: BillPaymentIn,
        principal: Principal = Depends(current_principal),
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ) -> dict:
        result = wallet.pay_bill(
            principal,
            bill_id,
            account_id=body.account_id,
            amount=body.amount,
            idempotency_key=idempotency_key,
        )
        return exporter.result(result)

    @app.get("/scheduled-transfers")
    def list_schedules(principal: Principal = Depends(current_principal)) -> List[dict]:
        return [exporter.schedule(schedule) for schedule in scheduler.list_schedules(principal)]

    @app.post("/scheduled-transfers", status_code=201)
    def create_schedule(body: ScheduleIn, principal: Principal = Depends(current_principal)) -> dict:
        schedule = scheduler.schedule(
            principal,
            body.from_account_id,
            body.to_account_id,
            body.amount,
            body.frequency,
            body.first_run,
            end_date=body.end_date,
            description=body.description,
        )
        return exporter.schedule(schedule)

    @app.post("/allowances", status_code=201)
    def create_allowance(body: AllowanceIn, principal: Principal = Depends(current_principal)) -> dict:
        allowance = allowances.create(
            principal,
            body.funding_account_id,
            body.spend_account_id,
            body.amount,
            frequency=body.frequency,
            split=(body.split_spend, body.split_save, body.split_give),
            save_account_id=body.save_account_id,
            give_account_id=body.give_account_id,
            auto_pay=body.auto_pay,
            first_payment=body.first_payment,
        )
        return exporter.allowance(allowance)

    @app.post("/allowances/{allowance_id}/pay")
    def pay_allowance(allowance_id: str, principal: Principal = Depends(current_principal)) -> dict:
        return exporter.result(allowances.pay(principal, allowance_id))

    return app


__all__ = ["create_app", "default_service", "status_for"]
