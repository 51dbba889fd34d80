"""
Late Fee Calculator

A late fee accrues at a daily rate of the scheduled amount and stops growing
after a fixed number of days.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Optional, Union

from .currency import Money, to_decimal
from .exceptions import ValidationError

DEFAULT_DAILY_RATE = Decimal('0.02')
DEFAULT_MAX_DAYS = 30


class LateFeeCalculator:
    """fee = round_half_up(base * daily_rate * min(days_late, max_days))"""

    def __init__(self, daily_rate: Union[Decimal, str] = DEFAULT_DAILY_RATE,
                 max_days: int = DEFAULT_MAX_DAYS):
        daily_rate = to_decimal(daily_rate)
        if daily_rate < 0:
            raise ValidationError(f"Daily late fee rate must not be negative, got {daily_rate}")
        if max_days < 0:
            raise ValidationError(f"Late fee day cap must not be negative, got {max_days}")
        self.daily_rate = daily_rate
        self.max_days = max_days

    @classmethod
    def from_config(cls, config) -> 'LateFeeCalculator':
        return cls(daily_rate=config.late_fee_daily_rate, max_days=config.late_fee_max_days)

    def late_fee(self, base_amount: Money, days_late: int) -> Money:
        """Fee for paying ``base_amount`` ``days_late`` days after it fell due"""
        if base_amount.is_negative():
            raise ValidationError(f"Late fee base must not be negative, got {base_amount}")
        if days_late <= 0:
            return Money.zero()
        return base_amount * (self.daily_rate * min(days_late, self.max_days))

    @staticmethod
    def days_late(due_date: date, paid_on: Union[date, datetime, None]) -> int:
        """Whole days between due date and payment date; negative when early"""
        if paid_on is None:
            return 0
        if isinstance(paid_on, datetime):
            paid_on = paid_on.date()
        return (paid_on - due_date).days


def late_fee(base_amount: Money, days_late: int,
             calculator: Optional[LateFeeCalculator] = None) -> Money:
    """Late fee under the default (or given) policy"""
    return (calculator or LateFeeCalculator()).late_fee(base_amount, days_late)
