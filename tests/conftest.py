from decimal import Decimal
from typing import List

import pytest
from sqlmodel import Session, select

from keyswallet.ledger import LedgerStore
from keyswallet.models import Principal
from keyswallet.money import from_cents
from keyswallet.ops import StructuredLogger
from keyswallet.persistence import LedgerEntry, Movement, build_engine, create_db_and_tables
from keyswallet.service import WalletService


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'wallet.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> LedgerStore:
    return LedgerStore(engine)


@pytest.fixture
def service(store) -> WalletService:
    return WalletService(store, logger=StructuredLogger(), lock_timeout=5.0)


@pytest.fixture
def alice() -> Principal:
    return Principal("alice")


@pytest.fixture
def bob() -> Principal:
    return Principal("bob")


def balance_of(service: WalletService, account_id: str) -> Decimal:
    account = service.store.get_account(account_id)
    assert account is not None
    return from_cents(account.balance_cents)


def movement_rows(engine, movement_id: str) -> List[LedgerEntry]:
    with Session(engine) as session:
        statement = select(LedgerEntry).where(LedgerEntry.movement_id == movement_id)
        return list(session.exec(statement).all())


def rows_of_type(engine, transaction_type: str) -> List[LedgerEntry]:
    with Session(engine) as session:
        statement = select(LedgerEntry).where(LedgerEntry.transaction_type == transaction_type)
        return list(session.exec(statement).all())


def movement_count(engine) -> int:
    with Session(engine) as session:
        return len(session.exec(select(Movement)).all())
