"""Serialization helpers and post-commit webhooks for keyswallet."""

from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List

from .money import from_cents
from .persistence import Account, Allowance, Bill, LedgerEntry, ScheduledTransfer


class ApiExporter:
    """Convert keyswallet records to JSON friendly dictionaries."""

    def account(self, account: Account) -> Dict[str, object]:
        return {
            "id": account.id,
            "account_number": account.account_number,
            "account_type": account.account_type,
            "balance": float(from_cents(account.balance_cents)),
            "currency": account.currency,
            "is_active": account.is_active,
            "created_at": account.created_at.isoformat(),
        }

    def entry(self, entry: LedgerEntry) -> Dict[str, object]:
        return {
            "id": entry.id,
            "account_id": entry.account_id,
            "movement_id": entry.movement_id,
            "transaction_type": entry.transaction_type,
            "amount": float(from_cents(entry.amount_cents)),
            "balance_after": float(from_cents(entry.balance_after_cents)),
            "currency": entry.currency,
            "description": entry.description,
            "category": entry.category,
            "recipient": entry.recipient,
            "status": entry.status,
            "created_at": entry.created_at.isoformat(),
        }

    def bill(self, bill: Bill) -> Dict[str, object]:
        return {
            "id": bill.id,
            "payee_name": bill.payee_name,
            "payee_account": bill.payee_account,
            "amount": float(from_cents(bill.amount_cents)) if bill.amount_cents is not None else None,
            "due_date": bill.due_date.isoformat() if bill.due_date else None,
            "category": bill.category,
            "is_recurring": bill.is_recurring,
            "recurring_frequency": bill.recurring_frequency,
            "account_id": bill.account_id,
            "status": bill.status,
        }

    def schedule(self, schedule: ScheduledTransfer) -> Dict[str, object]:
        return {
            "id": schedule.id,
            "from_account_id": schedule.from_account_id,
            "to_account_id": schedule.to_account_id,
            "amount": float(from_cents(schedule.amount_cents)),
            "frequency": schedule.frequency,
            "next_execution": schedule.next_execution.isoformat(),
            "end_date": schedule.end_date.isoformat() if schedule.end_date else None,
            "description": schedule.description,
            "is_active": schedule.is_active,
            "last_error": schedule.last_error,
        }

    def allowance(self, allowance: Allowance) -> Dict[str, object]:
        return {
            "id": allowance.id,
            "funding_account_id": allowance.funding_account_id,
            "spend_account_id": allowance.spend_account_id,
            "save_account_id": allowance.save_account_id,
            "give_account_id": allowance.give_account_id,
            "amount": float(from_cents(allowance.amount_cents)),
            "frequency": allowance.frequency,
            "split": {
                "spend": allowance.split_spend,
                "save": allowance.split_save,
                "give": allowance.split_give,
            },
            "auto_pay": allowance.auto_pay,
            "status": allowance.status,
            "next_payment": allowance.next_payment.isoformat(),
        }

    def result(self, result: Any) -> Dict[str, object]:
        """Serialise one of the result dataclasses from :mod:`keyswallet.models`."""

        if not is_dataclass(result):
            raise TypeError(f"Unsupported result type: {type(result)!r}")
        return {key: self._plain(value) for key, value in asdict(result).items()}

    def to_json(self, payload: Dict[str, object]) -> str:
        return json.dumps(payload, sort_keys=True)

    def _plain(self, value: Any) -> Any:
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {key: self._plain(item) for key, item in value.items()}
        return value


class WebhookDispatcher:
    """Simple synchronous broadcaster for committed money movements."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[Dict[str, object]], None]] = []

    def register(self, listener: Callable[[Dict[str, object]], None]) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: Callable[[Dict[str, object]], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def dispatch(self, event: Dict[str, object]) -> List[Exception]:
        """Call every listener and return the errors raised by those that failed."""

        failures: List[Exception] = []
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                failures.append(exc)
        return failures


__all__ = ["ApiExporter", "WebhookDispatcher"]
