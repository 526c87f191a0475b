from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event

from conftest import balance_of, movement_rows
from keyswallet.exceptions import (
    AccountsNotFoundError,
    AuthenticationError,
    InsufficientFundsError,
    RecordNotFoundError,
)
from keyswallet.models import as_utc, utc_now
from keyswallet.persistence import BILL_STATUS_PAID, BILL_STATUS_PENDING


def test_open_account_records_starting_balance(service, engine, alice) -> None:
    account = service.open_account(alice, "savings", starting_balance="12.50")

    assert account.account_number.startswith("ACC")
    assert account.account_type == "savings"
    assert account.currency == "USD"
    assert account.version == 1
    entries = service.transactions(alice, account.id)
    assert len(entries) == 1
    assert entries[0].transaction_type == "deposit"
    assert entries[0].description == "Starting balance"
    assert entries[0].balance_after_cents == 1250
    assert service.logger.events("account_opened")[0]["account"] == account.account_number


def test_open_account_validation(service, alice) -> None:
    with pytest.raises(AuthenticationError):
        service.open_account(None)
    with pytest.raises(ValueError):
        service.open_account(alice, currency="dollars")
    with pytest.raises(ValueError):
        service.open_account(alice, starting_balance="-1")


def test_account_numbers_are_unique(service, alice) -> None:
    numbers = {service.open_account(alice).account_number for _ in range(5)}
    assert len(numbers) == 5


def test_list_and_get_accounts_are_scoped_to_owner(service, alice, bob) -> None:
    first = service.open_account(alice)
    second = service.open_account(alice, "savings")
    theirs = service.open_account(bob)

    listed = service.list_accounts(alice)

    assert {account.id for account in listed} == {first.id, second.id}
    assert service.get_account(alice, first.id).id == first.id
    with pytest.raises(AccountsNotFoundError):
        service.get_account(alice, theirs.id)


def test_deposit_and_withdraw(service, alice) -> None:
    account = service.open_account(alice)

    deposit = service.deposit(alice, account.id, "20.00", "Birthday money")
    withdrawal = service.withdraw(alice, account.id, "7.25")

    assert deposit.amount == Decimal("20.00")
    assert deposit.balance_after == Decimal("20.00")
    assert withdrawal.amount == Decimal("-7.25")
    assert withdrawal.balance_after == Decimal("12.75")
    assert balance_of(service, account.id) == Decimal("12.75")


def test_withdraw_cannot_overdraw(service, alice) -> None:
    account = service.open_account(alice, starting_balance=5)

    with pytest.raises(InsufficientFundsError):
        service.withdraw(alice, account.id, "5.01")

    assert balance_of(service, account.id) == Decimal("5.00")


def test_deposit_with_key_is_applied_once(service, alice) -> None:
    account = service.open_account(alice)

    service.deposit(alice, account.id, 10, idempotency_key="payday")
    replay = service.deposit(alice, account.id, 10, idempotency_key="payday")

    assert replay.replayed
    assert replay.balance_after == Decimal("10.00")
    assert balance_of(service, account.id) == Decimal("10.00")


def test_transactions_are_newest_first_and_limited(service, alice, bob) -> None:
    account = service.open_account(alice)
    for amount in (1, 2, 3):
        service.deposit(alice, account.id, amount)
    service.open_account(bob, starting_balance=99)

    entries = service.transactions(alice, limit=2)

    assert [entry.amount_cents for entry in entries] == [300, 200]
    assert len(service.transactions(alice)) == 3


def test_transactions_reject_foreign_account_and_bad_limit(service, alice, bob) -> None:
    theirs = service.open_account(bob)

    with pytest.raises(AccountsNotFoundError):
        service.transactions(alice, theirs.id)
    with pytest.raises(ValueError):
        service.transactions(alice, limit=0)


def test_pay_bill_debits_account_and_marks_paid(service, engine, alice) -> None:
    account = service.open_account(alice, starting_balance=100)
    bill = service.create_bill(
        alice, "City Water", "WTR-42", amount="35.20", due_date=date(2026, 3, 1), account_id=account.id
    )

    result = service.pay_bill(alice, bill.id)

    assert result.amount == Decimal("-35.20")
    assert balance_of(service, account.id) == Decimal("64.80")
    (row,) = movement_rows(engine, result.movement_id)
    assert row.transaction_type == "bill_payment"
    assert row.recipient == "City Water"
    assert row.category == "Bills & Utilities"
    assert service.list_bills(alice)[0].status == BILL_STATUS_PAID


def test_pay_bill_twice_for_same_due_date_replays(service, alice) -> None:
    account = service.open_account(alice, starting_balance=100)
    bill = service.create_bill(alice, "Power", "PWR-1", amount=40, due_date=date(2026, 3, 1))

    first = service.pay_bill(alice, bill.id, account_id=account.id)
    second = service.pay_bill(alice, bill.id, account_id=account.id)

    assert second.replayed
    assert second.movement_id == first.movement_id
    assert balance_of(service, account.id) == Decimal("60.00")


def test_paying_a_paid_bill_without_due_date_is_rejected(service, alice) -> None:
    account = service.open_account(alice, starting_balance=100)
    bill = service.create_bill(alice, "Gym", "GYM-7", amount=15, account_id=account.id)
    service.pay_bill(alice, bill.id)

    with pytest.raises(ValueError, match="already paid"):
        service.pay_bill(alice, bill.id)

    assert balance_of(service, account.id) == Decimal("85.00")


def test_recurring_bill_advances_due_date(service, alice) -> None:
    account = service.open_account(alice, starting_balance=100)
    bill = service.create_bill(
        alice,
        "Internet",
        "NET-9",
        amount=30,
        due_date=date(2026, 1, 31),
        is_recurring=True,
        account_id=account.id,
    )

    service.pay_bill(alice, bill.id)
    service.pay_bill(alice, bill.id)

    (current,) = service.list_bills(alice)
    assert current.recurring_frequency == "monthly"
    assert current.status == BILL_STATUS_PENDING
    assert current.due_date == date(2026, 3, 28)
    assert balance_of(service, account.id) == Decimal("40.00")


def test_bill_validation(service, alice, bob) -> None:
    account = service.open_account(alice, starting_balance=10)
    with pytest.raises(ValueError):
        service.create_bill(alice, " ", "X")
    with pytest.raises(ValueError):
        service.create_bill(alice, "Rent", "R-1", is_recurring=True, recurring_frequency="once")

    open_amount = service.create_bill(alice, "Doctor", "DOC-1")
    with pytest.raises(ValueError, match="amount"):
        service.pay_bill(alice, open_amount.id, account_id=account.id)
    with pytest.raises(ValueError, match="account"):
        service.pay_bill(alice, open_amount.id, amount=5)
    with pytest.raises(RecordNotFoundError):
        service.pay_bill(bob, open_amount.id, account_id=account.id, amount=5)

    result = service.pay_bill(alice, open_amount.id, account_id=account.id, amount="2.50")
    assert result.balance_after == Decimal("7.50")


def test_list_bills_puts_undated_bills_last(service, alice) -> None:
    service.create_bill(alice, "Someday", "S-1")
    service.create_bill(alice, "Later", "L-1", due_date=date(2026, 6, 1))
    service.create_bill(alice, "Soon", "N-1", due_date=date(2026, 2, 1))

    assert [bill.payee_name for bill in service.list_bills(alice)] == ["Soon", "Later", "Someday"]


def test_recurring_bill_needs_a_due_date(service, alice) -> None:
    with pytest.raises(ValueError, match="due date"):
        service.create_bill(alice, "Rent", "R-1", is_recurring=True)

    assert service.list_bills(alice) == []


def test_timestamps_are_stored_in_utc(service, alice) -> None:
    before = utc_now() - timedelta(seconds=1)
    account = service.open_account(alice, starting_balance=5)
    other = service.open_account(alice)
    result = service.transfer(alice, account.id, other.id, 1)

    assert account.created_at.tzinfo is not None
    assert result.created_at.tzinfo is not None
    stored = service.store.get_account(account.id)
    (latest, _) = service.transactions(alice, account.id)
    for moment in (stored.created_at, stored.updated_at, latest.created_at):
        assert before <= as_utc(moment) <= utc_now()


def test_reads_do_not_take_the_write_lock(service, engine, alice) -> None:
    account = service.open_account(alice, starting_balance=5)
    statements = []

    def capture(_conn, _cursor, statement, *_args) -> None:
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        service.list_accounts(alice)
        service.transactions(alice, account.id)
        service.list_bills(alice)
        assert service.store.ping()
        assert "BEGIN" in statements
        assert "BEGIN IMMEDIATE" not in statements

        service.deposit(alice, account.id, 1)
        assert "BEGIN IMMEDIATE" in statements
    finally:
        event.remove(engine, "before_cursor_execute", capture)
