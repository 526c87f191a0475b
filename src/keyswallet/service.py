"""High level service coordinating accounts, transfers and bill payments."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from .api import WebhookDispatcher
from .config import (
    ACCOUNT_LOCK_TIMEOUT,
    DEFAULT_BILL_CATEGORY,
    DEFAULT_CURRENCY,
    DEFAULT_DEPOSIT_CATEGORY,
    DEFAULT_TRANSFER_CATEGORY,
    TRANSACTIONS_PAGE_SIZE,
    TRANSFER_MAX_ATTEMPTS,
)
from .exceptions import (
    AccountsNotFoundError,
    AuthenticationError,
    ConcurrencyError,
    CurrencyMismatchError,
    IdempotencyKeyConflictError,
    InsufficientFundsError,
    InvalidAccountsError,
    RecordNotFoundError,
    StaleAccountError,
    WalletError,
)
from .ledger import LedgerStore
from .locks import AccountLockRegistry
from .models import (
    Frequency,
    MovementKind,
    PostingResult,
    Principal,
    TransactionStatus,
    TransactionType,
    TransferResult,
    as_utc,
    utc_now,
)
from .money import MAX_CENTS, AmountLike, from_cents, require_positive, to_cents, to_decimal
from .ops import StructuredLogger
from .persistence import BILL_STATUS_PAID, BILL_STATUS_PENDING, Account, Bill, LedgerEntry, Movement


@dataclass(slots=True)
class Leg:
    """One account's side of a money movement (negative amounts are debits)."""

    account_id: str
    amount_cents: int
    transaction_type: TransactionType
    description: str
    recipient: str
    category: str


@dataclass(slots=True)
class Posting:
    """A committed (or replayed) movement with its ledger rows and accounts."""

    movement: Movement
    entries: List[LedgerEntry]
    accounts: Dict[str, Account]
    replayed: bool = False

    def entry_for(self, account_id: str) -> LedgerEntry:
        for entry in self.entries:
            if entry.account_id == account_id:
                return entry
        raise KeyError(account_id)


AfterPost = Callable[[Session, Movement], None]


def require_principal(principal: Optional[Principal]) -> Principal:
    if principal is None or not principal.user_id:
        raise AuthenticationError()
    return principal


class WalletService:
    """Move money between accounts with all-or-nothing, idempotent postings.

    Every balance change goes through :meth:`post`, which

    * holds the in-process lock of every account involved,
    * re-reads the balances inside one unit of work and re-checks funds there,
    * writes each balance with a compare-and-swap on the account version, and
    * inserts the movement row and its ledger rows in the same unit of work.

    A compare-and-swap miss (another process wrote first) retries the whole
    unit of work; a repeated idempotency key returns the original outcome.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        locks: AccountLockRegistry | None = None,
        logger: StructuredLogger | None = None,
        webhooks: WebhookDispatcher | None = None,
        max_attempts: int = TRANSFER_MAX_ATTEMPTS,
        lock_timeout: float = ACCOUNT_LOCK_TIMEOUT,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._locks = locks or AccountLockRegistry()
        self._logger = logger or StructuredLogger()
        self._webhooks = webhooks or WebhookDispatcher()
        self._max_attempts = max_attempts
        self._lock_timeout = lock_timeout

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def webhooks(self) -> WebhookDispatcher:
        return self._webhooks

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def open_account(
        self,
        principal: Optional[Principal],
        account_type: str = "checking",
        *,
        currency: str = DEFAULT_CURRENCY,
        starting_balance: AmountLike = 0,
    ) -> Account:
        user = require_principal(principal)
        code = (currency or "").strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"Invalid currency code: {currency!r}")
        opening = to_decimal(starting_balance)
        require_positive(opening, allow_zero=True)
        opening_cents = to_cents(opening)

        with self._store.unit_of_work() as session:
            account = self._store.add_account(
                session,
                Account(
                    user_id=user.user_id,
                    account_number=self._new_account_number(),
                    account_type=account_type,
                    balance_cents=opening_cents,
                    currency=code,
                ),
            )
            if opening_cents > 0:
                movement = self._store.record_movement(
                    session,
                    Movement(
                        kind=MovementKind.DEPOSIT.value,
                        user_id=user.user_id,
                        destination_account_id=account.id,
                        amount_cents=opening_cents,
                        currency=code,
                    ),
                )
                self._store.insert_entries(
                    session,
                    [
                        LedgerEntry(
                            account_id=account.id,
                            movement_id=movement.id,
                            transaction_type=TransactionType.DEPOSIT.value,
                            amount_cents=opening_cents,
                            balance_after_cents=opening_cents,
                            currency=code,
                            description="Starting balance",
                            category=DEFAULT_DEPOSIT_CATEGORY,
                            recipient="Self",
                            status=TransactionStatus.COMPLETED.value,
                        )
                    ],
                )
        self._logger.log(
            "account_opened",
            user=user.user_id,
            account=account.account_number,
            currency=code,
            balance=float(opening),
        )
        return account

    def list_accounts(self, principal: Optional[Principal]) -> List[Account]:
        user = require_principal(principal)
        return self._store.list_accounts(user.user_id)

    def get_account(self, principal: Optional[Principal], account_id: str) -> Account:
        user = require_principal(principal)
        account = self._store.get_account(account_id)
        if account is None or account.user_id != user.user_id or not account.is_active:
            raise AccountsNotFoundError()
        return account

    def transactions(
        self,
        principal: Optional[Principal],
        account_id: str | None = None,
        *,
        limit: int = TRANSACTIONS_PAGE_SIZE,
    ) -> List[LedgerEntry]:
        user = require_principal(principal)
        if limit <= 0:
            raise ValueError("limit must be greater than zero")
        if account_id is not None:
            self.get_account(user, account_id)
        return self._store.list_entries(user.user_id, account_id=account_id, limit=limit)

    # ------------------------------------------------------------------
    # Money movements
    # ------------------------------------------------------------------
    def transfer(
        self,
        principal: Optional[Principal],
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: str | None = None,
        recipient: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> TransferResult:
        """Move ``amount`` from one account to another as a single atomic posting."""

        try:
            user = require_principal(principal)
            value = to_decimal(amount)
            require_positive(value)
            if from_account_id == to_account_id:
                raise InvalidAccountsError()
            cents = to_cents(value)
            legs = [
                Leg(
                    account_id=from_account_id,
                    amount_cents=-cents,
                    transaction_type=TransactionType.TRANSFER_OUT,
                    description=description or f"Transfer to {recipient or 'recipient'}",
                    recipient=recipient or "Unknown",
                    category=DEFAULT_TRANSFER_CATEGORY,
                ),
                Leg(
                    account_id=to_account_id,
                    amount_cents=cents,
                    transaction_type=TransactionType.TRANSFER_IN,
                    description=description or "Transfer received",
                    recipient="Self",
                    category=DEFAULT_TRANSFER_CATEGORY,
                ),
            ]
            posting = self.post(
                user,
                MovementKind.TRANSFER,
                legs,
                source_account_id=from_account_id,
                destination_account_id=to_account_id,
                owned_account_ids=(from_account_id,),
                idempotency_key=idempotency_key,
            )
        except (WalletError, ValueError) as exc:
            self._logger.log(
                "transfer_rejected",
                source=from_account_id,
                destination=to_account_id,
                error=type(exc).__name__,
                message=str(exc),
            )
            raise

        movement = posting.movement
        return TransferResult(
            transfer_id=movement.id,
            amount=from_cents(movement.amount_cents),
            from_account=posting.accounts[from_account_id].account_number,
            to_account=posting.accounts[to_account_id].account_number,
            idempotency_key=movement.idempotency_key,
            replayed=posting.replayed,
            created_at=movement.created_at,
        )

    def deposit(
        self,
        principal: Optional[Principal],
        account_id: str,
        amount: AmountLike,
        description: str = "Deposit",
        *,
        idempotency_key: str | None = None,
    ) -> PostingResult:
        user = require_principal(principal)
        value = to_decimal(amount)
        require_positive(value)
        leg = Leg(
            account_id=account_id,
            amount_cents=to_cents(value),
            transaction_type=TransactionType.DEPOSIT,
            description=description,
            recipient="Self",
            category=DEFAULT_DEPOSIT_CATEGORY,
        )
        posting = self.post(
            user,
            MovementKind.DEPOSIT,
            [leg],
            destination_account_id=account_id,
            owned_account_ids=(account_id,),
            idempotency_key=idempotency_key,
        )
        return self._posting_result(posting, account_id)

    def withdraw(
        self,
        principal: Optional[Principal],
        account_id: str,
        amount: AmountLike,
        description: str = "Withdrawal",
        *,
        idempotency_key: str | None = None,
    ) -> PostingResult:
        user = require_principal(principal)
        value = to_decimal(amount)
        require_positive(value)
        leg = Leg(
            account_id=account_id,
            amount_cents=-to_cents(value),
            transaction_type=TransactionType.WITHDRAWAL,
            description=description,
            recipient="Self",
            category="Other",
        )
        posting = self.post(
            user,
            MovementKind.WITHDRAWAL,
            [leg],
            source_account_id=account_id,
            owned_account_ids=(account_id,),
            idempotency_key=idempotency_key,
        )
        return self._posting_result(posting, account_id)

    # ------------------------------------------------------------------
    # Bills
    # ------------------------------------------------------------------
    def create_bill(
        self,
        principal: Optional[Principal],
        payee_name: str,
        payee_account: str,
        *,
        amount: AmountLike | None = None,
        due_date: date | None = None,
        category: str | None = None,
        is_recurring: bool = False,
        recurring_frequency: str | None = None,
        account_id: str | None = None,
    ) -> Bill:
        user = require_principal(principal)
        if not payee_name.strip():
            raise ValueError("Payee name is required")
        amount_cents = None
        if amount is not None:
            amount_cents = to_cents(require_positive(to_decimal(amount)))
        frequency = None
        if is_recurring:
            frequency = Frequency(recurring_frequency or Frequency.MONTHLY.value)
            if frequency is Frequency.ONCE:
                raise ValueError("Recurring bills need a repeating frequency")
            if due_date is None:
                raise ValueError("Recurring bills need a due date")
        if account_id is not None:
            self.get_account(user, account_id)
        bill = Bill(
            user_id=user.user_id,
            payee_name=payee_name.strip(),
            payee_account=payee_account.strip(),
            amount_cents=amount_cents,
            due_date=due_date,
            category=category,
            is_recurring=is_recurring,
            recurring_frequency=frequency.value if frequency else None,
            account_id=account_id,
        )
        with self._store.unit_of_work() as session:
            session.add(bill)
        return bill

    def list_bills(self, principal: Optional[Principal]) -> List[Bill]:
        user = require_principal(principal)
        with self._store.reading() as session:
            bills = list(session.exec(select(Bill).where(Bill.user_id == user.user_id)).all())
        return sorted(bills, key=lambda bill: (bill.due_date is None, bill.due_date or date.max, bill.created_at))

    def pay_bill(
        self,
        principal: Optional[Principal],
        bill_id: str,
        *,
        account_id: str | None = None,
        amount: AmountLike | None = None,
        idempotency_key: str | None = None,
    ) -> PostingResult:
        user = require_principal(principal)
        with self._store.reading() as session:
            bill = session.get(Bill, bill_id)
        if bill is None or bill.user_id != user.user_id:
            raise RecordNotFoundError("Bill not found")

        source_id = account_id or bill.account_id
        if not source_id:
            raise ValueError("Choose an account to pay the bill from")
        if amount is not None:
            cents = to_cents(require_positive(to_decimal(amount)))
        elif bill.amount_cents is not None:
            cents = bill.amount_cents
        else:
            raise ValueError("Enter an amount for this bill")
        key = idempotency_key
        if key is None and bill.due_date is not None:
            key = f"bill:{bill.id}:{bill.due_date.isoformat()}"

        def settle(session: Session, movement: Movement) -> None:
            current = session.get(Bill, bill_id)
            if current is None:
                raise RecordNotFoundError("Bill not found")
            if current.status == BILL_STATUS_PAID:
                raise ValueError("Bill is already paid")
            current.paid_at = utc_now()
            current.last_movement_id = movement.id
            if current.is_recurring and current.recurring_frequency and current.due_date:
                current.due_date = Frequency(current.recurring_frequency).advance(current.due_date)
                current.status = BILL_STATUS_PENDING
            else:
                current.status = BILL_STATUS_PAID
            session.add(current)

        leg = Leg(
            account_id=source_id,
            amount_cents=-cents,
            transaction_type=TransactionType.BILL_PAYMENT,
            description=f"Bill payment to {bill.payee_name}",
            recipient=bill.payee_name,
            category=bill.category or DEFAULT_BILL_CATEGORY,
        )
        posting = self.post(
            user,
            MovementKind.BILL_PAYMENT,
            [leg],
            source_account_id=source_id,
            owned_account_ids=(source_id,),
            idempotency_key=key,
            after_post=settle,
        )
        return self._posting_result(posting, source_id)

    # ------------------------------------------------------------------
    # Posting core
    # ------------------------------------------------------------------
    def post(
        self,
        principal: Principal,
        kind: MovementKind,
        legs: Sequence[Leg],
        *,
        source_account_id: str | None = None,
        destination_account_id: str | None = None,
        owned_account_ids: Sequence[str] = (),
        idempotency_key: str | None = None,
        after_post: AfterPost | None = None,
    ) -> Posting:
        """Apply ``legs`` atomically, retrying on concurrent account changes."""

        user = require_principal(principal)
        account_ids = [leg.account_id for leg in legs]
        if not legs or len(set(account_ids)) != len(account_ids):
            raise InvalidAccountsError()
        amount_cents = sum(-leg.amount_cents for leg in legs if leg.amount_cents < 0)
        if amount_cents == 0:
            amount_cents = sum(leg.amount_cents for leg in legs)

        attempt = 0
        while True:
            attempt += 1
            try:
                with self._locks.hold(*account_ids, timeout=self._lock_timeout):
                    posting = self._apply(
                        user,
                        kind,
                        legs,
                        source_account_id=source_account_id,
                        destination_account_id=destination_account_id,
                        owned_account_ids=owned_account_ids,
                        amount_cents=amount_cents,
                        idempotency_key=idempotency_key,
                        after_post=after_post,
                    )
            except StaleAccountError as exc:
                self._logger.log(
                    f"{kind.value}_retry",
                    attempt=attempt,
                    accounts=sorted(account_ids),
                    reason=str(exc),
                )
                if attempt >= self._max_attempts:
                    raise ConcurrencyError(
                        f"Could not apply {kind.value} after {attempt} attempts"
                    ) from exc
                continue
            break

        self._after_posting(kind, posting)
        return posting

    def _apply(
        self,
        user: Principal,
        kind: MovementKind,
        legs: Sequence[Leg],
        *,
        source_account_id: str | None,
        destination_account_id: str | None,
        owned_account_ids: Sequence[str],
        amount_cents: int,
        idempotency_key: str | None,
        after_post: AfterPost | None,
    ) -> Posting:
        with self._store.unit_of_work() as session:
            if idempotency_key is not None:
                existing = self._store.find_movement(session, idempotency_key)
                if existing is not None:
                    if (
                        existing.kind != kind.value
                        or existing.user_id != user.user_id
                        or existing.source_account_id != source_account_id
                        or existing.destination_account_id != destination_account_id
                        or existing.amount_cents != amount_cents
                    ):
                        raise IdempotencyKeyConflictError()
                    entries = self._store.entries_for_movement(session, existing.id)
                    involved = [entry.account_id for entry in entries]
                    involved += [
                        account_id
                        for account_id in (existing.source_account_id, existing.destination_account_id)
                        if account_id is not None
                    ]
                    accounts = self._store.fetch_accounts(session, involved)
                    return Posting(existing, entries, {account.id: account for account in accounts}, True)

            account_ids = [leg.account_id for leg in legs]
            fetched = self._store.fetch_accounts(session, account_ids, for_update=True)
            if len(fetched) != len(account_ids):
                raise AccountsNotFoundError()
            accounts = {account.id: account for account in fetched}
            if any(account_id not in accounts for account_id in account_ids):
                raise InvalidAccountsError()
            if any(not account.is_active for account in fetched):
                raise InvalidAccountsError()
            if any(accounts[account_id].user_id != user.user_id for account_id in owned_account_ids):
                raise InvalidAccountsError()
            currencies = {account.currency for account in fetched}
            if len(currencies) != 1:
                raise CurrencyMismatchError()
            currency = currencies.pop()

            new_balances: Dict[str, int] = {}
            for leg in legs:
                balance = accounts[leg.account_id].balance_cents + leg.amount_cents
                if balance < 0:
                    raise InsufficientFundsError()
                if balance > MAX_CENTS:
                    raise ValueError("Balance would exceed the account limit")
                new_balances[leg.account_id] = balance

            for leg in legs:
                self._store.swap_balance(session, accounts[leg.account_id], new_balances[leg.account_id])

            movement = self._store.record_movement(
                session,
                Movement(
                    kind=kind.value,
                    idempotency_key=idempotency_key,
                    user_id=user.user_id,
                    source_account_id=source_account_id,
                    destination_account_id=destination_account_id,
                    amount_cents=amount_cents,
                    currency=currency,
                ),
            )
            entries = [
                LedgerEntry(
                    account_id=leg.account_id,
                    movement_id=movement.id,
                    transaction_type=leg.transaction_type.value,
                    amount_cents=leg.amount_cents,
                    balance_after_cents=new_balances[leg.account_id],
                    currency=currency,
                    description=leg.description,
                    category=leg.category,
                    recipient=leg.recipient,
                    status=TransactionStatus.COMPLETED.value,
                    created_at=movement.created_at,
                )
                for leg in legs
            ]
            self._store.insert_entries(session, entries)
            if after_post is not None:
                after_post(session, movement)
        return Posting(movement, entries, accounts, False)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _after_posting(self, kind: MovementKind, posting: Posting) -> None:
        movement = posting.movement
        if posting.replayed:
            self._logger.log(
                f"{kind.value}_replayed",
                movement=movement.id,
                idempotency_key=movement.idempotency_key,
            )
            return
        self._logger.log(
            f"{kind.value}_committed",
            movement=movement.id,
            user=movement.user_id,
            source=movement.source_account_id,
            destination=movement.destination_account_id,
            amount=float(from_cents(movement.amount_cents)),
            currency=movement.currency,
        )
        failures = self._webhooks.dispatch(
            {
                "event": kind.value,
                "movement_id": movement.id,
                "amount": float(from_cents(movement.amount_cents)),
                "currency": movement.currency,
                "entries": [
                    {
                        "account_id": entry.account_id,
                        "type": entry.transaction_type,
                        "amount": float(from_cents(entry.amount_cents)),
                    }
                    for entry in posting.entries
                ],
                "timestamp": as_utc(movement.created_at).isoformat(),
            }
        )
        # The movement is committed by now; listener errors are only logged.
        for exc in failures:
            self._logger.log(
                "webhook_failed",
                movement=movement.id,
                event=kind.value,
                error=type(exc).__name__,
                message=str(exc),
            )

    def _posting_result(self, posting: Posting, account_id: str) -> PostingResult:
        entry = posting.entry_for(account_id)
        return PostingResult(
            movement_id=posting.movement.id,
            account_number=posting.accounts[account_id].account_number,
            amount=from_cents(entry.amount_cents),
            balance_after=from_cents(entry.balance_after_cents),
            replayed=posting.replayed,
        )

    @staticmethod
    def _new_account_number() -> str:
        return f"ACC{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


__all__ = ["Leg", "Posting", "WalletService", "require_principal"]
