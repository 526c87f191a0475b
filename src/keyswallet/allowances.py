"""Family allowances with spend/save/give splits."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from .config import ALLOWANCE_CATEGORY
from .exceptions import AccountsNotFoundError, InvalidAccountsError, RecordNotFoundError, WalletError
from .models import AllowancePayout, AllowanceSplit, Frequency, MovementKind, Principal, TransactionType
from .money import AmountLike, from_cents, require_positive, to_cents, to_decimal
from .ops import StructuredLogger
from .persistence import ALLOWANCE_STATUS_ACTIVE, ALLOWANCE_STATUS_PAUSED, Allowance, Movement
from .service import Leg, WalletService, require_principal

ALLOWANCE_FREQUENCIES = (Frequency.WEEKLY, Frequency.MONTHLY)


def split_allowance(amount: AmountLike, spend: int, save: int, give: int) -> AllowanceSplit:
    """Split ``amount`` by whole percentages.

    ``save`` and ``give`` round down to the cent and ``spend`` takes the
    remainder, so the three parts always add back up to ``amount``.
    """

    value = to_decimal(amount)
    require_positive(value)
    shares = (spend, save, give)
    if any(isinstance(share, bool) or not isinstance(share, int) or share < 0 for share in shares):
        raise ValueError("Allowance split percentages must be whole, non-negative numbers")
    if sum(shares) != 100:
        raise ValueError("Allowance split percentages must add up to 100")
    cents = to_cents(value)
    save_cents = cents * save // 100
    give_cents = cents * give // 100
    spend_cents = cents - save_cents - give_cents
    return AllowanceSplit(
        spend=from_cents(spend_cents),
        save=from_cents(save_cents),
        give=from_cents(give_cents),
    )


@dataclass(slots=True)
class AllowanceRun:
    allowance_id: str
    period: date
    payout: Optional[AllowancePayout] = None
    error: Optional[str] = None


class AllowanceManager:
    """Create allowances and pay them out as single multi-leg postings."""

    def __init__(self, service: WalletService, *, logger: StructuredLogger | None = None) -> None:
        self._service = service
        self._store = service.store
        self._logger = logger or service.logger

    def create(
        self,
        principal: Optional[Principal],
        funding_account_id: str,
        spend_account_id: str,
        amount: AmountLike,
        *,
        frequency: Frequency | str = Frequency.WEEKLY,
        split: Tuple[int, int, int] = (100, 0, 0),
        save_account_id: str | None = None,
        give_account_id: str | None = None,
        auto_pay: bool = True,
        first_payment: date | None = None,
    ) -> Allowance:
        user = require_principal(principal)
        cadence = Frequency(frequency)
        if cadence not in ALLOWANCE_FREQUENCIES:
            raise ValueError("Allowances are paid weekly or monthly")
        spend, save, give = split
        split_allowance(amount, spend, save, give)

        self._service.get_account(user, funding_account_id)
        targets = [spend_account_id, save_account_id, give_account_id]
        for account_id in targets:
            if account_id is None:
                continue
            if account_id == funding_account_id:
                raise InvalidAccountsError()
            if self._store.get_account(account_id) is None:
                raise AccountsNotFoundError()

        allowance = Allowance(
            parent_user_id=user.user_id,
            funding_account_id=funding_account_id,
            spend_account_id=spend_account_id,
            save_account_id=save_account_id,
            give_account_id=give_account_id,
            amount_cents=to_cents(amount),
            frequency=cadence.value,
            split_spend=spend,
            split_save=save,
            split_give=give,
            auto_pay=auto_pay,
            next_payment=first_payment or date.today(),
        )
        with self._store.unit_of_work() as session:
            session.add(allowance)
        self._logger.log(
            "allowance_created",
            allowance=allowance.id,
            user=user.user_id,
            amount=float(from_cents(allowance.amount_cents)),
            frequency=cadence.value,
        )
        return allowance

    def get(self, principal: Optional[Principal], allowance_id: str) -> Allowance:
        user = require_principal(principal)
        with self._store.reading() as session:
            allowance = session.get(Allowance, allowance_id)
        if allowance is None or allowance.parent_user_id != user.user_id:
            raise RecordNotFoundError("Allowance not found")
        return allowance

    def list_allowances(self, principal: Optional[Principal]) -> List[Allowance]:
        user = require_principal(principal)
        with self._store.reading() as session:
            statement = select(Allowance).where(Allowance.parent_user_id == user.user_id)
            return list(session.exec(statement).all())

    def pause(self, principal: Optional[Principal], allowance_id: str) -> Allowance:
        return self._set_status(principal, allowance_id, ALLOWANCE_STATUS_PAUSED)

    def resume(self, principal: Optional[Principal], allowance_id: str) -> Allowance:
        return self._set_status(principal, allowance_id, ALLOWANCE_STATUS_ACTIVE)

    def pay(self, principal: Optional[Principal], allowance_id: str) -> AllowancePayout:
        """Pay the allowance period that is currently due."""

        user = require_principal(principal)
        allowance = self.get(user, allowance_id)
        if allowance.status != ALLOWANCE_STATUS_ACTIVE:
            raise ValueError("Allowance is paused")
        period = allowance.next_payment
        split = split_allowance(
            from_cents(allowance.amount_cents),
            allowance.split_spend,
            allowance.split_save,
            allowance.split_give,
        )

        def advance(session: Session, _movement: Movement) -> None:
            current = session.get(Allowance, allowance_id)
            if current is None:
                raise RecordNotFoundError("Allowance not found")
            current.next_payment = Frequency(current.frequency).advance(period) or period
            session.add(current)

        posting = self._service.post(
            user,
            MovementKind.ALLOWANCE,
            self._legs(allowance, split),
            source_account_id=allowance.funding_account_id,
            destination_account_id=allowance.spend_account_id,
            owned_account_ids=(allowance.funding_account_id,),
            idempotency_key=f"allowance:{allowance.id}:{period.isoformat()}",
            after_post=advance,
        )
        return AllowancePayout(
            allowance_id=allowance.id,
            transfer_id=posting.movement.id,
            split=split,
            paid_for=period,
            replayed=posting.replayed,
        )

    def run_due(self, at: date | None = None) -> List[AllowanceRun]:
        """Pay every auto-pay allowance due on or before ``at``.

        A failed payment stops that allowance's catch-up; the period stays due
        and is tried again on the next run.
        """

        moment = at or date.today()
        with self._store.reading() as session:
            statement = (
                select(Allowance)
                .where(Allowance.status == ALLOWANCE_STATUS_ACTIVE)
                .where(Allowance.auto_pay == True)  # noqa: E712
                .where(Allowance.next_payment <= moment)
            )
            due = list(session.exec(statement).all())

        runs: List[AllowanceRun] = []
        for allowance in due:
            principal = Principal(allowance.parent_user_id)
            period = allowance.next_payment
            while period <= moment:
                run = AllowanceRun(allowance_id=allowance.id, period=period)
                runs.append(run)
                try:
                    run.payout = self.pay(principal, allowance.id)
                except (WalletError, ValueError) as exc:
                    run.error = str(exc)
                    self._logger.log(
                        "allowance_failed",
                        allowance=allowance.id,
                        period=period.isoformat(),
                        error=type(exc).__name__,
                        message=str(exc),
                    )
                    break
                following = self.get(principal, allowance.id).next_payment
                if following <= period:
                    break
                period = following
        return runs

    def _legs(self, allowance: Allowance, split: AllowanceSplit) -> Sequence[Leg]:
        buckets: "OrderedDict[str, list[tuple[str, int]]]" = OrderedDict()
        for name, account_id, amount in (
            ("spend", allowance.spend_account_id, split.spend),
            ("save", allowance.save_account_id or allowance.spend_account_id, split.save),
            ("give", allowance.give_account_id or allowance.spend_account_id, split.give),
        ):
            cents = to_cents(amount)
            if cents > 0:
                buckets.setdefault(account_id, []).append((name, cents))

        legs = [
            Leg(
                account_id=allowance.funding_account_id,
                amount_cents=-allowance.amount_cents,
                transaction_type=TransactionType.TRANSFER_OUT,
                description=f"{allowance.frequency.capitalize()} allowance",
                recipient="Allowance",
                category=ALLOWANCE_CATEGORY,
            )
        ]
        for account_id, parts in buckets.items():
            legs.append(
                Leg(
                    account_id=account_id,
                    amount_cents=sum(cents for _, cents in parts),
                    transaction_type=TransactionType.TRANSFER_IN,
                    description="Allowance (" + ", ".join(name for name, _ in parts) + ")",
                    recipient="Self",
                    category=ALLOWANCE_CATEGORY,
                )
            )
        return legs

    def _set_status(self, principal: Optional[Principal], allowance_id: str, status: str) -> Allowance:
        user = require_principal(principal)
        with self._store.unit_of_work() as session:
            allowance = session.get(Allowance, allowance_id)
            if allowance is None or allowance.parent_user_id != user.user_id:
                raise RecordNotFoundError("Allowance not found")
            allowance.status = status
            session.add(allowance)
        self._logger.log("allowance_status", allowance=allowance_id, status=status)
        return allowance


__all__ = ["AllowanceManager", "AllowanceRun", "split_allowance"]
