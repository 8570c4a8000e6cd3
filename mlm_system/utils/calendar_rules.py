# mlm_system/utils/calendar_rules.py
"""
Payment calendar rules.

Due dates are a pure function of (commissionType, referenceDate, rule):
    CVD  - 15th of month N+1 (N = installation month)
    CCA  - 22nd of month N+1 (N = acquisition month)
    CAE  - Friday of the week following the qualifying month-end

Rules can be overridden per commission type through PAYMENT_CALENDAR, e.g.
    {"CVD": {"rule": "day_of_next_month", "day": 10}}
"""
import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Optional

logger = logging.getLogger(__name__)

RULE_DAY_OF_NEXT_MONTH = "day_of_next_month"
RULE_FRIDAY_OF_FOLLOWING_WEEK = "friday_of_following_week"

DEFAULT_CALENDAR = {
    "CVD": {"rule": RULE_DAY_OF_NEXT_MONTH, "day": 15},
    "CCA": {"rule": RULE_DAY_OF_NEXT_MONTH, "day": 22},
    "CAE": {"rule": RULE_FRIDAY_OF_FOLLOWING_WEEK},
}


def parse_month_key(monthKey: str) -> date:
    """'2027-01' -> date(2027, 1, 1)"""
    year, month = monthKey.split("-")
    return date(int(year), int(month), 1)


def as_business_date(value) -> Optional[date]:
    """date, datetime or ISO string (date or timestamp) -> date; None or '' -> None"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def month_end(anyDay: date) -> date:
    """Last day of the month containing anyDay."""
    return anyDay.replace(day=calendar.monthrange(anyDay.year, anyDay.month)[1])


def day_of_next_month(referenceDate: date, day: int) -> date:
    """Given day of month N+1, clamped to the month length."""
    year = referenceDate.year + (1 if referenceDate.month == 12 else 0)
    month = 1 if referenceDate.month == 12 else referenceDate.month + 1
    lastDay = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, lastDay))


def friday_of_following_week(referenceDate: date) -> date:
    """Friday of the Monday-based week after the one containing referenceDate."""
    weekStart = referenceDate - timedelta(days=referenceDate.weekday())
    return weekStart + timedelta(days=7 + calendar.FRIDAY)


class PaymentCalendar:
    """Resolves due dates per commission type."""

    def __init__(self, overrides: Optional[Dict[str, Dict]] = None):
        self.rules: Dict[str, Dict] = {key: dict(value) for key, value in DEFAULT_CALENDAR.items()}
        for commissionType, rule in (overrides or {}).items():
            self.rules[commissionType] = dict(rule)
            logger.info(f"Payment calendar override for {commissionType}: {rule}")

    @classmethod
    def fromConfig(cls) -> "PaymentCalendar":
        from config import Config
        return cls(Config.get(Config.PAYMENT_CALENDAR) or {})

    def dueDate(self, commissionType: str, referenceDate: date) -> date:
        """
        Due date for a line item.

        Raises:
            ValueError: Unknown commission type or rule
        """
        rule = self.rules.get(commissionType)
        if rule is None:
            raise ValueError(f"No payment calendar rule for {commissionType}")

        ruleName = rule.get("rule")
        if ruleName == RULE_DAY_OF_NEXT_MONTH:
            return day_of_next_month(referenceDate, int(rule.get("day", 1)))
        if ruleName == RULE_FRIDAY_OF_FOLLOWING_WEEK:
            return friday_of_following_week(referenceDate)

        raise ValueError(f"Unknown payment calendar rule '{ruleName}' for {commissionType}")


def add_years(anyDay: date, years: int) -> date:
    """Same calendar day `years` later, Feb 29 falls back to Feb 28."""
    try:
        return anyDay.replace(year=anyDay.year + years)
    except ValueError:
        return anyDay.replace(year=anyDay.year + years, day=28)
