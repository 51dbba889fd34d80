"""
Test suite for amortization schedule generation
"""

import pytest
from datetime import date
from decimal import Decimal

from coop_ledger.currency import Money, sum_money
from coop_ledger.exceptions import ValidationError
from coop_ledger.schedule import (
    LoanTerms, ScheduleGenerator, add_months, generate_schedule, MAX_SCHEDULE_MONTHS
)


def make_terms(principal="1200.00", rate="1", monthly="100.00", penalty="0"):
    return LoanTerms(
        principal_amount=Money.of(principal),
        interest_rate=Decimal(rate),
        monthly_principal_payment=Money.of(monthly),
        penalty_amount=Money.of(penalty),
    )


class TestLoanTerms:
    """Test loan terms validation"""

    def test_valid_terms(self):
        terms = make_terms()
        terms.validate()
        assert terms.monthly_rate == Decimal("0.01")

    def test_rate_given_as_string_is_converted(self):
        terms = LoanTerms(Money.of("100"), "1.5", Money.of("10"))
        assert terms.interest_rate == Decimal("1.5")

    @pytest.mark.parametrize("kwargs", [
        {"principal": "0"},
        {"principal": "-10.00"},
        {"monthly": "0"},
        {"rate": "-1"},
        {"rate": "100.01"},
        {"penalty": "-0.01"},
        {"rate": "NaN"},
        {"rate": "Infinity"},
        {"rate": "-Infinity"},
    ])
    def test_invalid_terms(self, kwargs):
        """Test every out-of-range term is rejected"""
        with pytest.raises(ValidationError):
            make_terms(**kwargs).validate()

    def test_non_finite_decimal_rate_rejected(self):
        """Test a NaN rate is a validation failure, not a decimal signal"""
        with pytest.raises(ValidationError):
            LoanTerms(Money.of("100.00"), Decimal("NaN"), Money.of("10.00")).validate()
        with pytest.raises(ValidationError):
            LoanTerms(Money.of("100.00"), Decimal("Infinity"), Money.of("10.00"))

    def test_dict_round_trip_keeps_rate_exact(self):
        terms = make_terms(rate="1.25", penalty="2.50")
        assert LoanTerms.from_dict(terms.to_dict()) == terms


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple_months(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 15), 2) == date(2025, 1, 15)
        assert add_months(date(2024, 1, 15), 12) == date(2025, 1, 15)

    def test_month_end_clamping(self):
        """Test that the 31st clamps to the last day of shorter months"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)
        assert add_months(date(2024, 1, 31), 2) == date(2024, 3, 31)


class TestScheduleGenerator:
    """Test schedule derivation from loan terms"""

    def setup_method(self):
        self.generator = ScheduleGenerator()
        self.start = date(2024, 1, 15)

    def test_even_schedule(self):
        """Test 1200.00 at 1% monthly with 100.00 principal per month"""
        schedule = self.generator.generate(make_terms(), self.start)

        assert len(schedule) == 12
        first = schedule[0]
        assert first.sequence_number == 1
        assert first.due_date == date(2024, 2, 15)
        assert first.opening_balance == Money.of("1200.00")
        assert first.principal_due == Money.of("100.00")
        assert first.interest_due == Money.of("12.00")
        assert first.total_due == Money.of("112.00")
        assert first.closing_balance == Money.of("1100.00")

        last = schedule[-1]
        assert last.sequence_number == 12
        assert last.due_date == date(2025, 1, 15)
        assert last.interest_due == Money.of("1.00")
        assert last.closing_balance == Money.zero()

    def test_interest_declines_with_balance(self):
        schedule = self.generator.generate(make_terms(), self.start)
        interest = [entry.interest_due for entry in schedule]
        assert interest == [Money.of(str(n)) for n in range(12, 0, -1)]

        summary = self.generator.summarize(schedule)
        assert summary.total_principal == Money.of("1200.00")
        assert summary.total_interest == Money.of("78.00")
        assert summary.total_amount == Money.of("1278.00")

    def test_final_installment_takes_remainder(self):
        """Test an uneven principal leaves a smaller final slice"""
        schedule = self.generator.generate(
            make_terms(principal="1000.00", rate="1.5", monthly="300.00"), self.start
        )
        assert [e.principal_due for e in schedule] == [
            Money.of("300.00"), Money.of("300.00"), Money.of("300.00"), Money.of("100.00")
        ]
        assert [e.interest_due for e in schedule] == [
            Money.of("15.00"), Money.of("10.50"), Money.of("6.00"), Money.of("1.50")
        ]

    def test_interest_rounds_half_up_per_installment(self):
        schedule = self.generator.generate(
            make_terms(principal="333.33", rate="1", monthly="333.33"), self.start
        )
        assert len(schedule) == 1
        assert schedule[0].interest_due == Money.of("3.33")

    def test_penalty_added_to_every_installment(self):
        schedule = self.generator.generate(make_terms(penalty="5.00"), self.start)
        assert all(entry.penalty_due == Money.of("5.00") for entry in schedule)
        assert schedule[0].total_due == Money.of("117.00")
        assert self.generator.summarize(schedule).total_penalty == Money.of("60.00")

    def test_zero_interest(self):
        schedule = self.generator.generate(make_terms(rate="0"), self.start)
        assert all(entry.interest_due.is_zero() for entry in schedule)

    def test_monthly_payment_larger_than_principal(self):
        """Test a single installment retires the whole principal"""
        schedule = self.generator.generate(
            make_terms(principal="50.00", monthly="100.00"), self.start
        )
        assert len(schedule) == 1
        assert schedule[0].principal_due == Money.of("50.00")
        assert self.generator.loan_term(make_terms(principal="50.00", monthly="100.00")) == 1

    def test_due_dates_strictly_increase_from_month_end(self):
        schedule = self.generator.generate(make_terms(), date(2024, 1, 31))
        assert schedule[0].due_date == date(2024, 2, 29)
        assert schedule[1].due_date == date(2024, 3, 31)
        assert schedule[2].due_date == date(2024, 4, 30)
        for earlier, later in zip(schedule, schedule[1:]):
            assert later.due_date > earlier.due_date

    @pytest.mark.parametrize("principal,monthly", [
        ("1200.00", "100.00"),
        ("1000.00", "300.00"),
        ("999.99", "100.00"),
        ("0.01", "0.01"),
        ("25000.00", "1234.56"),
    ])
    def test_principal_sums_to_loan_amount(self, principal, monthly):
        """Test schedules below the month cap retire exactly the principal"""
        terms = make_terms(principal=principal, monthly=monthly, rate="2.5")
        schedule = self.generator.generate(terms, self.start)
        assert sum_money(e.principal_due for e in schedule) == Money.of(principal)
        assert len(schedule) == self.generator.loan_term(terms)
        assert [e.sequence_number for e in schedule] == list(range(1, len(schedule) + 1))

    def test_schedule_capped_at_max_months(self):
        """Test extreme terms stop at the cap with principal left over"""
        terms = make_terms(principal="1000.00", monthly="1.00", rate="0")
        schedule = self.generator.generate(terms, self.start)

        assert len(schedule) == MAX_SCHEDULE_MONTHS
        assert self.generator.loan_term(terms) == MAX_SCHEDULE_MONTHS
        assert sum_money(e.principal_due for e in schedule) == Money.of("360.00")

    def test_custom_cap(self):
        schedule = generate_schedule(make_terms(), self.start, max_months=6)
        assert len(schedule) == 6

    def test_invalid_terms_rejected(self):
        with pytest.raises(ValidationError):
            self.generator.generate(make_terms(monthly="0"), self.start)
