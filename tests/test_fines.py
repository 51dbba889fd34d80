"""
Test suite for fines module
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from coop_ledger.audit import AuditTrail, AuditEventType
from coop_ledger.clock import FixedClock
from coop_ledger.config import LedgerConfig
from coop_ledger.currency import Money
from coop_ledger.exceptions import (
    ValidationError, NotFoundError, InvalidStateError,
    AlreadyPaidError, CannotPayWaivedError, CannotWaivePaidError
)
from coop_ledger.fines import FineLedger, FineType, FineStatus
from coop_ledger.loans import PaymentMethod
from coop_ledger.storage import InMemoryStorage


class TestFineLedger:
    """Test fine creation and its pay / waive / dispute transitions"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock.on(date(2024, 3, 1))
        self.audit = AuditTrail(self.storage, clock=self.clock)
        self.fines = FineLedger(self.storage, audit_trail=self.audit, clock=self.clock,
                                config=LedgerConfig())

    def create(self, **kwargs):
        params = {
            "member_id": "MEM001",
            "fine_type": FineType.MISSED_MEETING,
            "amount": Money.of("5.00"),
            "description": "Missed March meeting",
        }
        params.update(kwargs)
        return self.fines.create_fine(**params)

    def test_create_fine(self):
        fine = self.create()

        assert fine.fine_number == "FIN0001"
        assert fine.status == FineStatus.PENDING
        assert fine.date == date(2024, 3, 1)
        assert fine.due_date == date(2024, 3, 31)
        assert fine.loan_id is None
        assert self.fines.get_fine(fine.id).to_dict() == fine.to_dict()

    def test_fine_numbers_increase(self):
        self.create()
        assert self.create(fine_type="violation").fine_number == "FIN0002"

    def test_explicit_due_date_and_loan(self):
        fine = self.create(fine_type=FineType.LATE_PAYMENT, loan_id="loan-1",
                           due_date=date(2024, 3, 10))
        assert fine.due_date == date(2024, 3, 10)
        assert fine.loan_id == "loan-1"

    @pytest.mark.parametrize("kwargs", [
        {"member_id": ""},
        {"description": "   "},
        {"fine_type": "parking"},
        {"amount": Money.zero()},
        {"amount": Money.of("-1.00")},
        {"amount": Decimal("5.00")},
    ])
    def test_invalid_fines(self, kwargs):
        with pytest.raises(ValidationError):
            self.create(**kwargs)
        assert self.storage.count("fines") == 0

    def test_pay_fine(self):
        fine = self.create()
        self.clock.advance(days=3)

        paid = self.fines.pay_fine(fine.id, "cash", transaction_id="RCPT-9")
        assert paid.status == FineStatus.PAID
        assert paid.payment_date == date(2024, 3, 4)
        assert paid.payment_method == PaymentMethod.CASH
        assert paid.transaction_id == "RCPT-9"
        assert paid.is_settled

    def test_pay_twice(self):
        fine = self.create()
        self.fines.pay_fine(fine.id, "cash")
        with pytest.raises(AlreadyPaidError):
            self.fines.pay_fine(fine.id, "cash")

    def test_cannot_pay_waived_fine(self):
        fine = self.create()
        self.fines.waive_fine(fine.id, "First offence", waived_by="chair")
        with pytest.raises(CannotPayWaivedError):
            self.fines.pay_fine(fine.id, "cash")

    def test_waive_fine(self):
        fine = self.create()
        waived = self.fines.waive_fine(fine.id, "Medical emergency", waived_by="chair")

        assert waived.status == FineStatus.WAIVED
        assert waived.waived_by == "chair"
        assert waived.waive_reason == "Medical emergency"
        event = self.audit.get_events_by_type(AuditEventType.FINE_WAIVED)[0]
        assert event.user_id == "chair"

    def test_cannot_waive_paid_fine(self):
        fine = self.create()
        self.fines.pay_fine(fine.id, "cash")
        with pytest.raises(CannotWaivePaidError):
            self.fines.waive_fine(fine.id, "Too late", waived_by="chair")
        assert self.fines.get_fine(fine.id).status == FineStatus.PAID

    def test_waive_twice(self):
        fine = self.create()
        self.fines.waive_fine(fine.id, "Reason", waived_by="chair")
        with pytest.raises(InvalidStateError):
            self.fines.waive_fine(fine.id, "Reason", waived_by="chair")

    def test_waive_requires_reason_and_approver(self):
        fine = self.create()
        with pytest.raises(ValidationError):
            self.fines.waive_fine(fine.id, "", waived_by="chair")
        with pytest.raises(ValidationError):
            self.fines.waive_fine(fine.id, "Reason", waived_by="")

    def test_dispute_then_settle(self):
        fine = self.create()
        disputed = self.fines.dispute_fine(fine.id, remarks="Was present")
        assert disputed.status == FineStatus.DISPUTED
        assert disputed.remarks == "Was present"

        with pytest.raises(InvalidStateError):
            self.fines.dispute_fine(fine.id)

        assert self.fines.pay_fine(fine.id, "online").status == FineStatus.PAID

    def test_update_fine(self):
        fine = self.create()
        updated = self.fines.update_fine(fine.id, description="Missed April meeting",
                                         due_date=date(2024, 4, 30))
        assert updated.description == "Missed April meeting"
        assert self.fines.get_fine(fine.id).due_date == date(2024, 4, 30)

    def test_amount_and_status_not_editable(self):
        fine = self.create()
        with pytest.raises(ValidationError):
            self.fines.update_fine(fine.id, amount=Money.of("1.00"))
        with pytest.raises(ValidationError):
            self.fines.update_fine(fine.id, status=FineStatus.PAID)

    def test_update_due_date_from_iso_string(self):
        fine = self.create()
        updated = self.fines.update_fine(fine.id, due_date="2024-04-15")
        assert updated.due_date == date(2024, 4, 15)
        assert self.fines.get_fine(fine.id).due_date == date(2024, 4, 15)

    @pytest.mark.parametrize("changes", [
        {"due_date": "15/04/2024"},
        {"due_date": None},
        {"due_date": 20240415},
        {"description": None},
        {"description": 42},
        {"remarks": 3.5},
    ])
    def test_update_rejects_bad_values(self, changes):
        """Test malformed edits raise ValidationError and change nothing"""
        fine = self.create()
        before = self.fines.get_fine(fine.id).to_dict()

        with pytest.raises(ValidationError):
            self.fines.update_fine(fine.id, **changes)
        assert self.fines.get_fine(fine.id).to_dict() == before

    def test_remarks_can_be_cleared(self):
        fine = self.create(remarks="note")
        assert self.fines.update_fine(fine.id, remarks=None).remarks is None

    def test_settled_fine_not_editable(self):
        fine = self.create()
        self.fines.pay_fine(fine.id, "cash")
        with pytest.raises(InvalidStateError):
            self.fines.update_fine(fine.id, remarks="late note")

    def test_unknown_fine(self):
        with pytest.raises(NotFoundError):
            self.fines.pay_fine("missing", "cash")

    def test_is_overdue(self):
        fine = self.create()
        assert not fine.is_overdue(date(2024, 3, 31))
        assert fine.is_overdue(date(2024, 3, 31) + timedelta(days=1))

    def test_find_fines(self):
        first = self.create(loan_id="loan-1", fine_type=FineType.LATE_PAYMENT)
        self.create(member_id="MEM002")
        self.fines.pay_fine(first.id, "cash")

        assert [f.id for f in self.fines.find_fines(loan_id="loan-1")] == [first.id]
        assert len(self.fines.find_fines(member_id="MEM002")) == 1
        assert self.fines.find_fines(loan_id="loan-1", status=FineStatus.PENDING) == []
        assert len(self.fines.find_fines(fine_type="missed_meeting")) == 1
        assert len(self.fines.find_fines(status="paid")) == 1

    def test_find_fines_unknown_filters(self):
        with pytest.raises(ValidationError):
            self.fines.find_fines(status="cancelled")
        with pytest.raises(ValidationError):
            self.fines.find_fines(fine_type="parking")

    def test_explicit_fine_date(self):
        fine = self.create(fine_date=date(2024, 2, 1))
        assert fine.date == date(2024, 2, 1)
        assert fine.due_date == date(2024, 3, 2)

    def test_statistics(self):
        paid = self.create(amount=Money.of("10.00"))
        self.create(amount=Money.of("2.50"))
        waived = self.create(fine_type=FineType.VIOLATION, amount=Money.of("7.00"))
        self.fines.pay_fine(paid.id, "cash")
        self.fines.waive_fine(waived.id, "Board decision", waived_by="chair")

        stats = self.fines.statistics()
        assert stats["total_fines"] == 3
        assert stats["pending_fines"] == 1
        assert stats["paid_fines"] == 1
        assert stats["waived_fines"] == 1
        assert stats["total_amount"] == Decimal("19.50")
        assert stats["paid_amount"] == Decimal("10.00")
        assert stats["pending_amount"] == Decimal("2.50")
        assert stats["fines_by_type"] == [
            {"type": "missed_meeting", "count": 2, "total": Decimal("12.50")},
            {"type": "violation", "count": 1, "total": Decimal("7.00")},
        ]

    def test_every_change_audited(self):
        fine = self.create()
        self.fines.dispute_fine(fine.id)
        self.fines.pay_fine(fine.id, "cash")

        types = [e.event_type for e in self.audit.get_events_for_entity("fine", fine.id)]
        assert types == [AuditEventType.FINE_CREATED, AuditEventType.FINE_DISPUTED, AuditEventType.FINE_PAID]
        assert self.audit.verify_integrity()["valid"]
