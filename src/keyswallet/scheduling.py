"""Recurring and future-dated transfers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sqlmodel import select

from .exceptions import AccountsNotFoundError, InvalidAccountsError, RecordNotFoundError, WalletError
from .models import Frequency, Principal, TransferResult, utc_now
from .money import AmountLike, from_cents, require_positive, to_cents, to_decimal
from .ops import StructuredLogger
from .persistence import ScheduledTransfer
from .service import WalletService, require_principal


@dataclass(slots=True)
class ScheduledRun:
    """Outcome of one scheduled occurrence."""

    schedule_id: str
    occurrence: date
    result: Optional[TransferResult] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class TransferScheduler:
    """Store transfer schedules and execute the occurrences that are due.

    Each occurrence runs through :meth:`WalletService.transfer` with the key
    ``schedule:<id>:<occurrence>``; re-running an occurrence whose transfer
    already committed replays it instead of moving money twice.
    """

    def __init__(self, service: WalletService, *, logger: StructuredLogger | None = None) -> None:
        self._service = service
        self._store = service.store
        self._logger = logger or service.logger

    def schedule(
        self,
        principal: Optional[Principal],
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        frequency: Frequency | str,
        first_run: date,
        *,
        end_date: date | None = None,
        description: str | None = None,
    ) -> ScheduledTransfer:
        user = require_principal(principal)
        cents = to_cents(require_positive(to_decimal(amount)))
        cadence = Frequency(frequency)
        if from_account_id == to_account_id:
            raise InvalidAccountsError()
        if end_date is not None and end_date < first_run:
            raise ValueError("End date must be on or after the first run")
        self._service.get_account(user, from_account_id)
        if self._store.get_account(to_account_id) is None:
            raise AccountsNotFoundError()

        schedule = ScheduledTransfer(
            user_id=user.user_id,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount_cents=cents,
            frequency=cadence.value,
            next_execution=first_run,
            end_date=end_date,
            description=description,
        )
        with self._store.unit_of_work() as session:
            session.add(schedule)
        self._logger.log(
            "schedule_created",
            schedule=schedule.id,
            user=user.user_id,
            frequency=cadence.value,
            first_run=first_run.isoformat(),
        )
        return schedule

    def list_schedules(self, principal: Optional[Principal]) -> List[ScheduledTransfer]:
        user = require_principal(principal)
        with self._store.reading() as session:
            statement = (
                select(ScheduledTransfer)
                .where(ScheduledTransfer.user_id == user.user_id)
                .order_by(ScheduledTransfer.next_execution)
            )
            return list(session.exec(statement).all())

    def cancel(self, principal: Optional[Principal], schedule_id: str) -> ScheduledTransfer:
        user = require_principal(principal)
        with self._store.unit_of_work() as session:
            schedule = session.get(ScheduledTransfer, schedule_id)
            if schedule is None or schedule.user_id != user.user_id:
                raise RecordNotFoundError("Scheduled transfer not found")
            schedule.is_active = False
            session.add(schedule)
        self._logger.log("schedule_cancelled", schedule=schedule_id)
        return schedule

    def due(self, at: date) -> List[ScheduledTransfer]:
        with self._store.reading() as session:
            statement = (
                select(ScheduledTransfer)
                .where(ScheduledTransfer.is_active == True)  # noqa: E712
                .where(ScheduledTransfer.next_execution <= at)
                .order_by(ScheduledTransfer.next_execution)
            )
            return list(session.exec(statement).all())

    def run_due(self, at: date | None = None) -> List[ScheduledRun]:
        """Execute every due occurrence up to and including ``at``."""

        moment = at or date.today()
        runs: List[ScheduledRun] = []
        for schedule in self.due(moment):
            runs.extend(self._run_schedule(schedule, moment))
        return runs

    def _run_schedule(self, schedule: ScheduledTransfer, moment: date) -> List[ScheduledRun]:
        runs: List[ScheduledRun] = []
        cadence = Frequency(schedule.frequency)
        occurrence: Optional[date] = schedule.next_execution
        while occurrence is not None and occurrence <= moment:
            run = ScheduledRun(schedule_id=schedule.id, occurrence=occurrence)
            try:
                run.result = self._service.transfer(
                    Principal(schedule.user_id),
                    schedule.from_account_id,
                    schedule.to_account_id,
                    from_cents(schedule.amount_cents),
                    description=schedule.description,
                    idempotency_key=f"schedule:{schedule.id}:{occurrence.isoformat()}",
                )
            except WalletError as exc:
                run.error = str(exc)
                self._logger.log(
                    "schedule_failed",
                    schedule=schedule.id,
                    occurrence=occurrence.isoformat(),
                    error=type(exc).__name__,
                    message=str(exc),
                )
            runs.append(run)

            following = cadence.advance(occurrence)
            with self._store.unit_of_work() as session:
                current = session.get(ScheduledTransfer, schedule.id)
                if current is None:
                    break
                current.last_run_at = utc_now()
                current.last_error = run.error
                if following is None or (current.end_date is not None and following > current.end_date):
                    current.is_active = False
                else:
                    current.next_execution = following
                session.add(current)
            schedule = current
            occurrence = following if schedule.is_active else None
        return runs


__all__ = ["ScheduledRun", "TransferScheduler"]
