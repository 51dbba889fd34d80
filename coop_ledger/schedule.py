"""
Amortization Schedule Module

Derives the monthly installment plan of a loan from its terms. Principal is
retired in fixed monthly slices, interest is charged on the balance still
outstanding at the start of each month, and a flat penalty is added to every
installment.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, List, Optional
import calendar

from .currency import Money, to_decimal, sum_money
from .exceptions import ValidationError

MAX_SCHEDULE_MONTHS = 360  # 30 years
_HUNDRED = Decimal('100')


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms supplied at application time"""
    principal_amount: Money
    interest_rate: Decimal              # monthly percentage, e.g. 1 for 1%
    monthly_principal_payment: Money
    penalty_amount: Money = Money.zero()  # flat penalty added to every installment

    def __post_init__(self):
        # Also rejects NaN and infinite Decimals
        object.__setattr__(self, 'interest_rate', to_decimal(self.interest_rate))

    def validate(self) -> None:
        """
        Raises:
            ValidationError: when any term is out of range
        """
        if not self.principal_amount.is_positive():
            raise ValidationError(f"Principal amount must be positive, got {self.principal_amount}")
        if not self.monthly_principal_payment.is_positive():
            raise ValidationError(
                f"Monthly principal payment must be positive, got {self.monthly_principal_payment}"
            )
        if not self.interest_rate.is_finite() or self.interest_rate < 0 or self.interest_rate > _HUNDRED:
            raise ValidationError(f"Interest rate must be between 0 and 100, got {self.interest_rate}")
        if self.penalty_amount.is_negative():
            raise ValidationError(f"Penalty amount must not be negative, got {self.penalty_amount}")

    @property
    def monthly_rate(self) -> Decimal:
        """Interest rate as a fraction"""
        return self.interest_rate / _HUNDRED

    def to_dict(self) -> Dict[str, str]:
        return {
            'principal_amount': self.principal_amount.to_string(),
            'interest_rate': str(self.interest_rate),
            'monthly_principal_payment': self.monthly_principal_payment.to_string(),
            'penalty_amount': self.penalty_amount.to_string(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'LoanTerms':
        return cls(
            principal_amount=Money.of(data['principal_amount']),
            interest_rate=Decimal(data['interest_rate']),
            monthly_principal_payment=Money.of(data['monthly_principal_payment']),
            penalty_amount=Money.of(data.get('penalty_amount', '0')),
        )


@dataclass(frozen=True)
class ScheduleEntry:
    """Single month of an amortization schedule"""
    sequence_number: int
    due_date: date
    opening_balance: Money
    principal_due: Money
    interest_due: Money
    penalty_due: Money

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due + self.penalty_due

    @property
    def closing_balance(self) -> Money:
        return self.opening_balance - self.principal_due


@dataclass(frozen=True)
class ScheduleSummary:
    total_principal: Money
    total_interest: Money
    total_penalty: Money

    @property
    def total_amount(self) -> Money:
        return self.total_principal + self.total_interest + self.total_penalty


def add_months(start_date: date, months: int) -> date:
    """Add calendar months to a date, clamping to the last day of short months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class ScheduleGenerator:
    """Pure schedule derivation; holds no state beyond the month cap"""

    def __init__(self, max_months: int = MAX_SCHEDULE_MONTHS):
        self.max_months = max_months

    def loan_term(self, terms: LoanTerms) -> int:
        """
        Number of monthly installments: ceil(principal / monthly principal),
        kept within 1..max_months
        """
        terms.validate()
        principal = terms.principal_amount.minor_units
        slice_ = terms.monthly_principal_payment.minor_units
        months = -(-principal // slice_)
        return max(1, min(months, self.max_months))

    def generate(self, terms: LoanTerms, start_date: date) -> List[ScheduleEntry]:
        """
        Build the installment plan. Installment ``n`` falls due ``n`` calendar
        months after ``start_date``.

        The loop stops at ``max_months`` even when principal remains, so
        extreme terms yield a schedule that does not retire the whole balance.
        """
        terms.validate()
        schedule = []
        remaining = terms.principal_amount
        month = 1

        while remaining.is_positive() and month <= self.max_months:
            interest_due = remaining * terms.monthly_rate
            principal_due = min(terms.monthly_principal_payment, remaining)
            schedule.append(ScheduleEntry(
                sequence_number=month,
                due_date=add_months(start_date, month),
                opening_balance=remaining,
                principal_due=principal_due,
                interest_due=interest_due,
                penalty_due=terms.penalty_amount,
            ))
            remaining = remaining - principal_due
            month += 1

        return schedule

    @staticmethod
    def summarize(schedule: List[ScheduleEntry]) -> ScheduleSummary:
        return ScheduleSummary(
            total_principal=sum_money(entry.principal_due for entry in schedule),
            total_interest=sum_money(entry.interest_due for entry in schedule),
            total_penalty=sum_money(entry.penalty_due for entry in schedule),
        )


def generate_schedule(terms: LoanTerms, start_date: date,
                      max_months: Optional[int] = None) -> List[ScheduleEntry]:
    """Module-level shortcut for ScheduleGenerator.generate"""
    generator = ScheduleGenerator(max_months or MAX_SCHEDULE_MONTHS)
    return generator.generate(terms, start_date)
