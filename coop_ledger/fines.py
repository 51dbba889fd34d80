"""
Fines Module

Standalone fines charged to members: late payment, missed meetings and rule
violations. A fine is created pending and ends either paid or waived; both
are terminal.
"""

from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .currency import Money, sum_money
from .exceptions import (
    ValidationError, NotFoundError, InvalidStateError,
    AlreadyPaidError, CannotPayWaivedError, CannotWaivePaidError
)
from .loans import PaymentMethod, coerce_payment_method
from .logging_config import log_action
from .sequences import SequenceGenerator
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("coop_ledger.fines")


class FineType(Enum):
    LATE_PAYMENT = "late_payment"
    MISSED_MEETING = "missed_meeting"
    VIOLATION = "violation"
    OTHER = "other"


class FineStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"
    DISPUTED = "disputed"


TERMINAL_FINE_STATUSES = {FineStatus.PAID, FineStatus.WAIVED}

# Fields the surrounding CRUD layer may edit before a fine is settled
EDITABLE_FINE_FIELDS = {"description", "due_date", "remarks"}


@dataclass
class Fine(StorageRecord):
    """Penalty record, optionally linked to a loan"""
    fine_number: str
    member_id: str
    fine_type: FineType
    amount: Money
    description: str
    date: date
    due_date: date
    loan_id: Optional[str] = None
    status: FineStatus = FineStatus.PENDING
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    waived_by: Optional[str] = None
    waive_reason: Optional[str] = None
    remarks: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status in TERMINAL_FINE_STATUSES

    def is_overdue(self, today: date) -> bool:
        return not self.is_settled and self.due_date < today

    def to_dict(self) -> Dict:
        result = self._base_dict()
        result.update({
            'fine_number': self.fine_number,
            'member_id': self.member_id,
            'loan_id': self.loan_id,
            'fine_type': self.fine_type.value,
            'amount': self.amount.to_string(),
            'description': self.description,
            'date': self.date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'payment_method': self.payment_method.value if self.payment_method else None,
            'transaction_id': self.transaction_id,
            'waived_by': self.waived_by,
            'waive_reason': self.waive_reason,
            'remarks': self.remarks,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Fine':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            fine_number=data['fine_number'],
            member_id=data['member_id'],
            loan_id=data.get('loan_id'),
            fine_type=FineType(data['fine_type']),
            amount=Money.of(data['amount']),
            description=data['description'],
            date=date.fromisoformat(data['date']),
            due_date=date.fromisoformat(data['due_date']),
            status=FineStatus(data['status']),
            payment_date=date.fromisoformat(data['payment_date']) if data.get('payment_date') else None,
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            transaction_id=data.get('transaction_id'),
            waived_by=data.get('waived_by'),
            waive_reason=data.get('waive_reason'),
            remarks=data.get('remarks'),
        )


class FineLedger:
    """
    Creates fines and guards their pay / waive / dispute transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        sequences: Optional[SequenceGenerator] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail or AuditTrail(
            storage, clock=self.clock, enabled=self.config.enable_audit_logging
        )
        self.sequences = sequences or SequenceGenerator(storage)
        self.fines_table = "fines"

    def create_fine(
        self,
        member_id: str,
        fine_type: Union[str, FineType],
        amount: Money,
        description: str,
        loan_id: Optional[str] = None,
        due_date: Optional[date] = None,
        remarks: Optional[str] = None,
        fine_date: Optional[date] = None
    ) -> Fine:
        """
        Create a pending fine dated ``fine_date`` (default today). The due
        date defaults to ``fine_due_days`` after that date.

        Raises:
            ValidationError: for a missing member or description, an unknown
                type, or a non-positive amount
        """
        if not member_id:
            raise ValidationError("member_id is required")
        if not description or not description.strip():
            raise ValidationError("Fine description is required")
        fine_type = self._coerce_type(fine_type)
        if not isinstance(amount, Money):
            raise ValidationError(f"Fine amount must be Money, got {type(amount).__name__}")
        if not amount.is_positive():
            raise ValidationError(f"Fine amount must be positive, got {amount}")

        now = self.clock.now()
        fine_date = fine_date or now.date()
        with self.storage.atomic():
            fine = Fine(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                fine_number=self.sequences.next_display_number(
                    "fine_number", self.config.fine_number_prefix, self.config.display_number_width
                ),
                member_id=member_id,
                loan_id=loan_id,
                fine_type=fine_type,
                amount=amount,
                description=description,
                date=fine_date,
                due_date=due_date or fine_date + timedelta(days=self.config.fine_due_days),
                remarks=remarks
            )
            self._save_fine(fine)
            self.audit_trail.log_event(
                AuditEventType.FINE_CREATED, "fine", fine.id,
                metadata={
                    "fine_number": fine.fine_number,
                    "member_id": member_id,
                    "loan_id": loan_id,
                    "fine_type": fine_type,
                    "amount": amount
                }
            )

        log_action(logger, "info", f"New fine created: {fine.fine_number}",
                   action="fine.create", resource=fine.id,
                   extra={"fine_type": fine_type.value, "amount": amount.to_string()})
        return fine

    def pay_fine(self, fine_id: str, method: Union[str, PaymentMethod],
                 transaction_id: Optional[str] = None) -> Fine:
        """
        Raises:
            AlreadyPaidError: the fine is already paid
            CannotPayWaivedError: the fine was waived
        """
        method = coerce_payment_method(method)
        with self.storage.atomic():
            fine = self.get_fine(fine_id)
            if fine.status == FineStatus.PAID:
                raise AlreadyPaidError(f"Fine {fine.fine_number} already paid")
            if fine.status == FineStatus.WAIVED:
                raise CannotPayWaivedError(f"Cannot pay waived fine {fine.fine_number}")

            now = self.clock.now()
            fine.status = FineStatus.PAID
            fine.payment_date = now.date()
            fine.payment_method = method
            fine.transaction_id = transaction_id
            fine.touch(now)
            self._save_fine(fine)
            self.audit_trail.log_event(
                AuditEventType.FINE_PAID, "fine", fine.id,
                metadata={"fine_number": fine.fine_number, "amount": fine.amount,
                          "payment_method": method, "transaction_id": transaction_id}
            )

        log_action(logger, "info", f"Fine paid: {fine.fine_number}",
                   action="fine.pay", resource=fine.id)
        return fine

    def waive_fine(self, fine_id: str, reason: str, waived_by: str) -> Fine:
        """
        Raises:
            CannotWaivePaidError: the fine is already paid
            InvalidStateError: the fine is already waived
            ValidationError: no reason or approver given
        """
        if not reason:
            raise ValidationError("A waive reason is required")
        if not waived_by:
            raise ValidationError("waived_by is required")

        with self.storage.atomic():
            fine = self.get_fine(fine_id)
            if fine.status == FineStatus.PAID:
                raise CannotWaivePaidError(f"Cannot waive paid fine {fine.fine_number}")
            if fine.status == FineStatus.WAIVED:
                raise InvalidStateError(f"Fine {fine.fine_number} already waived")

            fine.status = FineStatus.WAIVED
            fine.waived_by = waived_by
            fine.waive_reason = reason
            fine.touch(self.clock.now())
            self._save_fine(fine)
            self.audit_trail.log_event(
                AuditEventType.FINE_WAIVED, "fine", fine.id,
                metadata={"fine_number": fine.fine_number, "reason": reason},
                user_id=waived_by
            )

        log_action(logger, "info", f"Fine waived: {fine.fine_number} by user {waived_by}",
                   user_id=waived_by, action="fine.waive", resource=fine.id)
        return fine

    def dispute_fine(self, fine_id: str, remarks: Optional[str] = None) -> Fine:
        """pending -> disputed; a disputed fine can still be paid or waived"""
        with self.storage.atomic():
            fine = self.get_fine(fine_id)
            if fine.status != FineStatus.PENDING:
                raise InvalidStateError(
                    f"Only pending fines can be disputed, {fine.fine_number} is {fine.status.value}"
                )
            fine.status = FineStatus.DISPUTED
            if remarks:
                fine.remarks = remarks
            fine.touch(self.clock.now())
            self._save_fine(fine)
            self.audit_trail.log_event(
                AuditEventType.FINE_DISPUTED, "fine", fine.id,
                metadata={"fine_number": fine.fine_number, "remarks": remarks}
            )

        logger.info(f"Fine disputed: {fine.fine_number}")
        return fine

    def update_fine(self, fine_id: str, **changes) -> Fine:
        """
        Edit descriptive fields of an unsettled fine.

        Raises:
            ValidationError: for fields outside EDITABLE_FINE_FIELDS (amount
                and status are never editable here) and for malformed values;
                ``due_date`` may be a date or an ISO ``YYYY-MM-DD`` string
            InvalidStateError: the fine is paid or waived
        """
        unknown = set(changes) - EDITABLE_FINE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "description" in changes:
            description = changes["description"]
            if not isinstance(description, str) or not description.strip():
                raise ValidationError("Fine description is required")
        if "remarks" in changes and not isinstance(changes["remarks"], (str, type(None))):
            raise ValidationError(f"Remarks must be text, got {type(changes['remarks']).__name__}")
        if "due_date" in changes:
            changes["due_date"] = self._coerce_date(changes["due_date"])

        with self.storage.atomic():
            fine = self.get_fine(fine_id)
            if fine.is_settled:
                raise InvalidStateError(f"Fine {fine.fine_number} is {fine.status.value} and cannot be edited")
            for name, value in changes.items():
                setattr(fine, name, value)
            fine.touch(self.clock.now())
            self._save_fine(fine)
            self.audit_trail.log_event(
                AuditEventType.FINE_UPDATED, "fine", fine.id,
                metadata={"fine_number": fine.fine_number, "fields": sorted(changes)}
            )

        logger.info(f"Fine updated: {fine.fine_number}")
        return fine

    def get_fine(self, fine_id: str) -> Fine:
        """
        Raises:
            NotFoundError: if the fine does not exist
        """
        data = self.storage.load(self.fines_table, fine_id)
        if not data:
            raise NotFoundError(f"Fine {fine_id} not found")
        return Fine.from_dict(data)

    def find_fines(
        self,
        member_id: Optional[str] = None,
        loan_id: Optional[str] = None,
        fine_type: Union[str, FineType, None] = None,
        status: Union[str, FineStatus, None] = None
    ) -> List[Fine]:
        filters = {}
        if member_id is not None:
            filters["member_id"] = member_id
        if loan_id is not None:
            filters["loan_id"] = loan_id
        if fine_type is not None:
            filters["fine_type"] = self._coerce_type(fine_type).value
        if status is not None:
            filters["status"] = self._coerce_status(status).value
        fines = [Fine.from_dict(data) for data in self.storage.find(self.fines_table, filters)]
        fines.sort(key=lambda fine: fine.fine_number)
        return fines

    def statistics(self) -> Dict:
        fines = [Fine.from_dict(data) for data in self.storage.load_all(self.fines_table)]
        by_status = {status: [f for f in fines if f.status == status] for status in FineStatus}

        by_type = []
        for fine_type in FineType:
            of_type = [f for f in fines if f.fine_type == fine_type]
            if of_type:
                by_type.append({
                    "type": fine_type.value,
                    "count": len(of_type),
                    "total": sum_money(f.amount for f in of_type).amount,
                })

        return {
            "total_fines": len(fines),
            "pending_fines": len(by_status[FineStatus.PENDING]),
            "paid_fines": len(by_status[FineStatus.PAID]),
            "waived_fines": len(by_status[FineStatus.WAIVED]),
            "disputed_fines": len(by_status[FineStatus.DISPUTED]),
            "total_amount": sum_money(f.amount for f in fines).amount,
            "paid_amount": sum_money(f.amount for f in by_status[FineStatus.PAID]).amount,
            "pending_amount": sum_money(f.amount for f in by_status[FineStatus.PENDING]).amount,
            "fines_by_type": by_type,
        }

    @staticmethod
    def _coerce_type(fine_type: Union[str, FineType]) -> FineType:
        if isinstance(fine_type, FineType):
            return fine_type
        try:
            return FineType(fine_type)
        except ValueError:
            allowed = ", ".join(t.value for t in FineType)
            raise ValidationError(f"Unknown fine type '{fine_type}', expected one of: {allowed}")

    @staticmethod
    def _coerce_status(status: Union[str, FineStatus]) -> FineStatus:
        if isinstance(status, FineStatus):
            return status
        try:
            return FineStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in FineStatus)
            raise ValidationError(f"Unknown fine status '{status}', expected one of: {allowed}")

    @staticmethod
    def _coerce_date(value: Union[str, date]) -> date:
        """Accept a date or an ISO ``YYYY-MM-DD`` string"""
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value)
            except ValueError:
                raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD")
        raise ValidationError(f"Due date must be a date, got {type(value).__name__}")

    def _save_fine(self, fine: Fine) -> None:
        self.storage.save(self.fines_table, fine.id, fine.to_dict())
