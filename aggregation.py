import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Iterator, Optional

from models import Direction
from periods import Period, resolve_period
from recurrence import local_today
from schemas import Summary, TransactionInstance
from store import Subscription


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def _effective_date(instance: TransactionInstance) -> Optional[date]:
    return instance.date or instance.payment_date


def in_period(instance: TransactionInstance, period: Period) -> bool:
    if period.slug == "this_month":
        return (
            instance.month == period.start.month
            and instance.year == period.start.year
        )
    when = _effective_date(instance)
    return when is not None and period.contains(when)


def filter_period(
    instances: Iterable[TransactionInstance],
    period: Optional[Period] = None,
    *,
    today: Optional[date] = None,
) -> list[TransactionInstance]:
    if period is None:
        period = resolve_period("this_month", None, None, today=today or local_today())
    return [instance for instance in instances if in_period(instance, period)]


def summarize(
    instances: Iterable[TransactionInstance],
    period: Optional[Period] = None,
    *,
    today: Optional[date] = None,
) -> Summary:
    """Income, expense, balance and savings rate for one period.

    Without a period the current calendar month is used, matched on each
    instance's stored month/year. Other periods test the instance's date,
    falling back to its payment date, against the inclusive range.
    Amounts are summed in integer cents.
    """
    selected = filter_period(instances, period, today=today)
    income = sum(i.amount_cents for i in selected if i.direction == Direction.income)
    expense = sum(
        i.amount_cents for i in selected if i.direction == Direction.expense
    )
    balance = income - expense
    if income > 0:
        savings_rate = (Decimal(balance) * 100 / Decimal(income)).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
    else:
        savings_rate = Decimal("0.00")
    return Summary(
        total_income=cents_to_decimal(income),
        total_expense=cents_to_decimal(expense),
        balance=cents_to_decimal(balance),
        savings_rate=savings_rate,
        count=len(selected),
    )


class LiveSummary:
    """Re-derives a Summary from every snapshot a subscription delivers."""

    def __init__(
        self,
        subscription: Subscription,
        period: Optional[Period] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.subscription = subscription
        self.period = period
        self.today = today
        self.latest: Optional[Summary] = None

    def _derive(self, snapshot: list[dict]) -> Summary:
        instances = [TransactionInstance.model_validate(r) for r in snapshot]
        self.latest = summarize(instances, self.period, today=self.today)
        return self.latest

    def __iter__(self) -> Iterator[Summary]:
        for snapshot in self.subscription:
            yield self._derive(snapshot)

    def refresh(self) -> Optional[Summary]:
        """Apply every snapshot queued so far without blocking."""
        for snapshot in self.subscription.drain():
            self._derive(snapshot)
        return self.latest

    def close(self) -> None:
        self.subscription.unsubscribe()
        logger.debug("live_summary_closed")

    def __enter__(self) -> "LiveSummary":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
