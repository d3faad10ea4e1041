from datetime import date, datetime, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from config import get_settings
from models import EndCondition, Frequency
from schemas import RecurrenceRule, TransactionInstance, TransactionTemplate


HARD_CAP = 60
NEVER_CAP = 12


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's last day."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance(rule: RecurrenceRule, anchor: date, steps: int) -> date:
    """Date of the occurrence ``steps`` units after ``anchor``.

    Month and year steps are always measured from the anchor, so a series
    anchored on Jan 31 runs Feb 29 (or 28), Mar 31, Apr 30, ... instead of
    drifting to the 29th after February.
    """
    if rule.frequency == Frequency.daily:
        return anchor + timedelta(days=steps)
    if rule.frequency == Frequency.weekly:
        return anchor + timedelta(weeks=steps)
    if rule.frequency == Frequency.monthly:
        return _add_months(anchor, steps)
    return _add_months(anchor, 12 * steps)


def effective_limit(rule: RecurrenceRule) -> int:
    if rule.end_condition == EndCondition.after_occurrences:
        return min(HARD_CAP, rule.occurrences or 0)
    if rule.end_condition == EndCondition.never:
        return NEVER_CAP
    return HARD_CAP


def _past_end(rule: RecurrenceRule, current: date) -> bool:
    return (
        rule.end_condition == EndCondition.on_date
        and rule.end_date is not None
        and current > rule.end_date
    )


def _instance_for(
    template: TransactionTemplate,
    rule: RecurrenceRule,
    current: date,
    index: int,
) -> TransactionInstance:
    return TransactionInstance(
        amount_cents=template.amount_cents,
        description=template.description,
        direction=template.direction,
        type_id=template.type_id,
        due_date=current,
        payment_date=template.payment_date if index == 0 else None,
        date=current,
        month=current.month,
        year=current.year,
        is_repeating=True,
        frequency=rule.frequency,
        end_condition=rule.end_condition,
        occurrences=rule.occurrences,
        end_date=rule.end_date,
        recurring_index=index,
    )


def expand(
    template: TransactionTemplate,
    rule: RecurrenceRule,
    anchor_due_date: date,
) -> list[TransactionInstance]:
    limit = effective_limit(rule)
    instances: list[TransactionInstance] = []
    current = anchor_due_date
    count = 0
    while count < limit:
        if _past_end(rule, current):
            break
        instances.append(_instance_for(template, rule, current, count))
        count += 1
        current = advance(rule, anchor_due_date, count)
        if rule.end_condition == EndCondition.never and count >= NEVER_CAP:
            break
        if _past_end(rule, current):
            break
    return instances


def link_instances(
    instances: Sequence[TransactionInstance],
    recurring_id: int,
    *,
    type_name: Optional[str] = None,
) -> list[TransactionInstance]:
    """Stamp series linkage on freshly expanded instances.

    The element at index 0 becomes the master; every element, the master
    included, carries ``recurring_id``.
    """
    linked = []
    for instance in instances:
        update: dict[str, object] = {
            "is_master": instance.recurring_index == 0,
            "recurring_id": recurring_id,
        }
        if type_name is not None:
            update["type_name"] = type_name
        linked.append(instance.model_copy(update=update))
    return linked
