"""Storage gateway around the SQLModel tables.

``LedgerStore`` is the only place that talks SQL. Every balance write goes
through :meth:`LedgerStore.swap_balance`, a compare-and-swap on the account's
``version`` column, so a write computed from a stale read never lands.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, col, desc, select

from .exceptions import StaleAccountError, StorageError
from .models import utc_now
from .persistence import READ_ONLY_OPTION, Account, LedgerEntry, Movement


def _storage_message(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original) if original is not None else str(exc)


class LedgerStore:
    """Account/ledger persistence with all-or-nothing units of work."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.reader = engine.execution_options(**{READ_ONLY_OPTION: True})

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on any error."""

        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(_storage_message(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def reading(self) -> Iterator[Session]:
        """Yield a session for queries only; nothing it holds is committed."""

        session = Session(self.reader, expire_on_commit=False)
        try:
            yield session
        except SQLAlchemyError as exc:
            raise StorageError(_storage_message(exc)) from exc
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def fetch_accounts(
        self, session: Session, account_ids: Iterable[str], *, for_update: bool = False
    ) -> List[Account]:
        statement = select(Account).where(col(Account.id).in_(sorted(set(account_ids))))
        if for_update:
            statement = statement.with_for_update()
        return list(session.exec(statement).all())

    def swap_balance(self, session: Session, account: Account, new_balance_cents: int) -> None:
        """Write ``new_balance_cents`` only if the account still has the version we read."""

        table = Account.__table__
        now = utc_now()
        result = session.connection().execute(
            update(table)
            .where(table.c.id == account.id, table.c.version == account.version)
            .values(balance_cents=new_balance_cents, version=account.version + 1, updated_at=now)
        )
        if result.rowcount != 1:
            raise StaleAccountError(f"Account {account.account_number} changed concurrently")
        set_committed_value(account, "balance_cents", new_balance_cents)
        set_committed_value(account, "version", account.version + 1)
        set_committed_value(account, "updated_at", now)

    def add_account(self, session: Session, account: Account) -> Account:
        session.add(account)
        session.flush()
        return account

    def list_accounts(self, user_id: str) -> List[Account]:
        with self.reading() as session:
            statement = (
                select(Account)
                .where(Account.user_id == user_id, Account.is_active == True)  # noqa: E712
                .order_by(desc(Account.created_at))
            )
            return list(session.exec(statement).all())

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.reading() as session:
            return session.get(Account, account_id)

    # ------------------------------------------------------------------
    # Movements and ledger rows
    # ------------------------------------------------------------------
    def find_movement(self, session: Session, idempotency_key: str) -> Optional[Movement]:
        statement = select(Movement).where(Movement.idempotency_key == idempotency_key)
        return session.exec(statement).first()

    def record_movement(self, session: Session, movement: Movement) -> Movement:
        session.add(movement)
        try:
            session.flush()
        except IntegrityError as exc:
            if movement.idempotency_key is None:
                raise
            # Another writer committed the same key first; retrying replays it.
            raise StaleAccountError(f"Idempotency key {movement.idempotency_key!r} committed concurrently") from exc
        return movement

    def insert_entries(self, session: Session, entries: Sequence[LedgerEntry]) -> None:
        session.add_all(list(entries))
        session.flush()

    def entries_for_movement(self, session: Session, movement_id: str) -> List[LedgerEntry]:
        statement = (
            select(LedgerEntry)
            .where(LedgerEntry.movement_id == movement_id)
            .order_by(LedgerEntry.amount_cents)
        )
        return list(session.exec(statement).all())

    def list_entries(
        self, user_id: str, *, account_id: str | None = None, limit: int = 20
    ) -> List[LedgerEntry]:
        with self.reading() as session:
            statement = (
                select(LedgerEntry)
                .join(Account, col(LedgerEntry.account_id) == col(Account.id))
                .where(Account.user_id == user_id)
            )
            if account_id is not None:
                statement = statement.where(LedgerEntry.account_id == account_id)
            statement = statement.order_by(desc(LedgerEntry.created_at)).limit(limit)
            return list(session.exec(statement).all())

    def latest_movement_at(self) -> Optional[datetime]:
        with self.reading() as session:
            statement = select(Movement.created_at).order_by(desc(Movement.created_at)).limit(1)
            return session.exec(statement).first()

    def ping(self) -> bool:
        try:
            with self.reader.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True


__all__ = ["LedgerStore"]
