"""
Recurrence rule evaluation.

`is_due_on(rule, day, anchor)` decides whether an obligation is due on a
calendar date. It is pure: no I/O, no clock reads. `anchor` is the local
date the schedule counts from (the source entity's creation day).

Each frequency has one evaluator registered with `@evaluator(...)`;
registering a different function for an existing frequency replaces the
extension point for monthly/custom logic without touching callers.
"""

import logging
from datetime import date
from typing import Callable, Dict, Optional

from errors import RuleValidationError
from local_time import sunday_based_weekday
from models import Frequency, RecurrenceRule

logger = logging.getLogger(__name__)

EvaluatorFn = Callable[[RecurrenceRule, date, date], bool]

_evaluators: Dict[Frequency, EvaluatorFn] = {}


def evaluator(frequency: Frequency) -> Callable[[EvaluatorFn], EvaluatorFn]:
    """Register the due-date function for `frequency`."""

    def decorator(fn: EvaluatorFn) -> EvaluatorFn:
        if frequency in _evaluators:
            logger.info("Replacing recurrence evaluator for %s", frequency.value)
        _evaluators[frequency] = fn
        return fn

    return decorator


def is_due_on(rule: Optional[RecurrenceRule], day: date, anchor: date) -> bool:
    """Return True when an obligation governed by `rule` falls on `day`.

    A missing rule means "every day", matching how entities without an
    explicit schedule were always treated.
    """

    if rule is None:
        return True
    if rule.end_date is not None and day > rule.end_date:
        return False

    fn = _evaluators.get(rule.frequency)
    if fn is None:
        raise RuleValidationError(f"No evaluator registered for frequency {rule.frequency.value}")
    return fn(rule, day, anchor)


def _every_n_days(interval: int, day: date, anchor: date) -> bool:
    diff = (day - anchor).days
    return diff >= 0 and diff % interval == 0


@evaluator(Frequency.DAILY)
def _daily(rule: RecurrenceRule, day: date, anchor: date) -> bool:
    if rule.interval <= 1:
        return True
    return _every_n_days(rule.interval, day, anchor)


@evaluator(Frequency.WEEKLY)
def _weekly(rule: RecurrenceRule, day: date, anchor: date) -> bool:
    if not rule.days_of_week:
        # the model refuses this shape; guard rules built with model_construct()
        raise RuleValidationError("Weekly rule without days_of_week")
    if sunday_based_weekday(day) not in rule.days_of_week:
        return False
    if rule.interval <= 1:
        return True

    # weeks start on Sunday, matching the day numbering
    week_start = day.toordinal() - sunday_based_weekday(day)
    anchor_week_start = anchor.toordinal() - sunday_based_weekday(anchor)
    weeks = (week_start - anchor_week_start) // 7
    return weeks >= 0 and weeks % rule.interval == 0


@evaluator(Frequency.MONTHLY)
def _monthly(rule: RecurrenceRule, day: date, anchor: date) -> bool:
    return day >= anchor and day.day == anchor.day


@evaluator(Frequency.CUSTOM)
def _custom(rule: RecurrenceRule, day: date, anchor: date) -> bool:
    return _every_n_days(rule.interval, day, anchor)
