"""
Loan Module

Handles loan applications, approval, disbursement, installment repayment and
the loan lifecycle. The loan aggregate owns its installments and its running
balances; every payment updates both inside one atomic scope.
"""

from datetime import datetime, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable, Union
from enum import Enum
from contextlib import contextmanager
import logging
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .currency import Money, sum_money
from .exceptions import (
    LedgerError, ValidationError, NotFoundError, InvalidStateError,
    AlreadyPaidError, ConsistencyError
)
from .fees import LateFeeCalculator
from .logging_config import log_action
from .schedule import LoanTerms, ScheduleGenerator, ScheduleEntry, add_months
from .sequences import SequenceGenerator
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("coop_ledger.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"          # Application received
    APPROVED = "approved"        # Approved, awaiting disbursement
    REJECTED = "rejected"        # Application turned down
    DISBURSED = "disbursed"      # Funds released to the member
    ACTIVE = "active"            # At least one installment repaid
    COMPLETED = "completed"      # Principal fully repaid
    DEFAULTED = "defaulted"      # Declared in default by policy


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    ONLINE = "online"


# Monotonic lifecycle: a loan only ever moves along these edges
LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED},
    LoanStatus.DISBURSED: {LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.DEFAULTED: {LoanStatus.COMPLETED},
    LoanStatus.REJECTED: set(),
    LoanStatus.COMPLETED: set(),
}

PAYABLE_LOAN_STATUSES = {LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DEFAULTED}
RUNNING_LOAN_STATUSES = {LoanStatus.DISBURSED, LoanStatus.ACTIVE}
FUNDED_LOAN_STATUSES = {LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.COMPLETED}


def coerce_payment_method(method: Union[str, PaymentMethod]) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(f"Unknown payment method '{method}', expected one of: {allowed}")


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Installment(StorageRecord):
    """One scheduled monthly obligation of a loan"""
    loan_id: str
    member_id: str
    sequence_number: int
    due_date: date
    opening_balance: Money
    principal_due: Money
    interest_due: Money
    penalty_due: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    late_fee_charged: Money = Money.zero()
    remarks: Optional[str] = None

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due + self.penalty_due

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def amount_collected(self) -> Money:
        """What the member actually paid for this installment"""
        if not self.is_paid:
            return Money.zero()
        return self.total_due + self.late_fee_charged

    def effective_status(self, today: date) -> InstallmentStatus:
        """Status as seen on ``today``: unpaid and past due reads as overdue"""
        if not self.is_paid and self.due_date < today:
            return InstallmentStatus.OVERDUE
        return self.status

    def to_dict(self) -> Dict:
        result = self._base_dict()
        result.update({
            'loan_id': self.loan_id,
            'member_id': self.member_id,
            'sequence_number': self.sequence_number,
            'due_date': self.due_date.isoformat(),
            'opening_balance': self.opening_balance.to_string(),
            'principal_due': self.principal_due.to_string(),
            'interest_due': self.interest_due.to_string(),
            'penalty_due': self.penalty_due.to_string(),
            'total_due': self.total_due.to_string(),
            'status': self.status.value,
            'payment_date': _iso(self.payment_date),
            'payment_method': self.payment_method.value if self.payment_method else None,
            'transaction_id': self.transaction_id,
            'late_fee_charged': self.late_fee_charged.to_string(),
            'remarks': self.remarks,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            member_id=data['member_id'],
            sequence_number=data['sequence_number'],
            due_date=date.fromisoformat(data['due_date']),
            opening_balance=Money.of(data['opening_balance']),
            principal_due=Money.of(data['principal_due']),
            interest_due=Money.of(data['interest_due']),
            penalty_due=Money.of(data['penalty_due']),
            status=InstallmentStatus(data['status']),
            payment_date=_date_or_none(data.get('payment_date')),
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            transaction_id=data.get('transaction_id'),
            late_fee_charged=Money.of(data.get('late_fee_charged') or '0'),
            remarks=data.get('remarks'),
        )


@dataclass
class Loan(StorageRecord):
    """Loan aggregate with terms, running balances and lifecycle dates"""
    loan_number: str
    member_id: str
    terms: LoanTerms
    loan_term: int
    total_interest_amount: Money
    total_penalty_amount: Money
    total_amount: Money
    status: LoanStatus = LoanStatus.PENDING

    # Running balances
    remaining_principal: Optional[Money] = None
    amount_paid: Money = Money.zero()
    principal_paid: Money = Money.zero()
    interest_paid: Money = Money.zero()
    payment_count: int = 0
    late_payment_count: int = 0

    # Dates
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    maturity_date: Optional[date] = None

    # Application details
    purpose: Optional[str] = None
    collateral: Optional[str] = None
    guarantor: Optional[str] = None
    rejection_reason: Optional[str] = None

    def __post_init__(self):
        if self.remaining_principal is None:
            self.remaining_principal = self.terms.principal_amount

    @property
    def principal_amount(self) -> Money:
        return self.terms.principal_amount

    @property
    def is_running(self) -> bool:
        """Disbursed and still being repaid"""
        return self.status in RUNNING_LOAN_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    def can_transition_to(self, new_status: LoanStatus) -> bool:
        return new_status in LOAN_TRANSITIONS[self.status]

    def transition_to(self, new_status: LoanStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidStateError(
                f"Loan {self.loan_number} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def to_dict(self) -> Dict:
        result = self._base_dict()
        result.update({
            'loan_number': self.loan_number,
            'member_id': self.member_id,
            'terms': self.terms.to_dict(),
            'loan_term': self.loan_term,
            'total_interest_amount': self.total_interest_amount.to_string(),
            'total_penalty_amount': self.total_penalty_amount.to_string(),
            'total_amount': self.total_amount.to_string(),
            'status': self.status.value,
            'remaining_principal': self.remaining_principal.to_string(),
            'amount_paid': self.amount_paid.to_string(),
            'principal_paid': self.principal_paid.to_string(),
            'interest_paid': self.interest_paid.to_string(),
            'payment_count': self.payment_count,
            'late_payment_count': self.late_payment_count,
            'application_date': _iso(self.application_date),
            'approval_date': _iso(self.approval_date),
            'disbursement_date': _iso(self.disbursement_date),
            'next_payment_date': _iso(self.next_payment_date),
            'maturity_date': _iso(self.maturity_date),
            'purpose': self.purpose,
            'collateral': self.collateral,
            'guarantor': self.guarantor,
            'rejection_reason': self.rejection_reason,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            member_id=data['member_id'],
            terms=LoanTerms.from_dict(data['terms']),
            loan_term=data['loan_term'],
            total_interest_amount=Money.of(data['total_interest_amount']),
            total_penalty_amount=Money.of(data['total_penalty_amount']),
            total_amount=Money.of(data['total_amount']),
            status=LoanStatus(data['status']),
            remaining_principal=Money.of(data['remaining_principal']),
            amount_paid=Money.of(data['amount_paid']),
            principal_paid=Money.of(data['principal_paid']),
            interest_paid=Money.of(data['interest_paid']),
            payment_count=data['payment_count'],
            late_payment_count=data['late_payment_count'],
            application_date=_datetime_or_none(data.get('application_date')),
            approval_date=_datetime_or_none(data.get('approval_date')),
            disbursement_date=_date_or_none(data.get('disbursement_date')),
            next_payment_date=_date_or_none(data.get('next_payment_date')),
            maturity_date=_date_or_none(data.get('maturity_date')),
            purpose=data.get('purpose'),
            collateral=data.get('collateral'),
            guarantor=data.get('guarantor'),
            rejection_reason=data.get('rejection_reason'),
        )


@dataclass
class PaymentResult:
    """Outcome of applying a payment to an installment"""
    installment: Installment
    loan: Loan
    late_fee: Money
    days_late: int

    @property
    def amount_collected(self) -> Money:
        return self.installment.total_due + self.late_fee

    def to_dict(self) -> Dict:
        return {
            'installment': self.installment.to_dict(),
            'loan': self.loan.to_dict(),
            'late_fee': self.late_fee.to_string(),
            'days_late': self.days_late,
        }


class _LoanLock:
    """Per-loan lock with a count of the scopes using it"""

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LoanLedger:
    """
    Manages loans from application through completion.

    Mutations of one loan are serialized through a per-loan lock and run
    inside ``storage.atomic()``; the ledger invariants are checked before the
    scope commits.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        sequences: Optional[SequenceGenerator] = None,
        fee_calculator: Optional[LateFeeCalculator] = None,
        schedule_generator: Optional[ScheduleGenerator] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail or AuditTrail(
            storage, clock=self.clock, enabled=self.config.enable_audit_logging
        )
        self.sequences = sequences or SequenceGenerator(storage)
        self.fee_calculator = fee_calculator or LateFeeCalculator.from_config(self.config)
        self.schedule_generator = schedule_generator or ScheduleGenerator(self.config.max_schedule_months)

        self.loans_table = "loans"
        self.installments_table = "installments"

        self._loan_locks: Dict[str, _LoanLock] = {}
        self._loan_locks_guard = threading.Lock()

    @contextmanager
    def loan_scope(self, loan_id: str):
        """Exclusive scope for mutations of a single loan"""
        with self._loan_locks_guard:
            entry = self._loan_locks.get(loan_id)
            if entry is None:
                entry = self._loan_locks[loan_id] = _LoanLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            # Drop the lock once nobody holds or waits for it
            with self._loan_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._loan_locks[loan_id]

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def create_loan(
        self,
        terms: LoanTerms,
        member_id: str,
        start_date: Optional[date] = None,
        purpose: Optional[str] = None,
        collateral: Optional[str] = None,
        guarantor: Optional[str] = None
    ) -> Loan:
        """
        Register a loan application and its full installment schedule

        Args:
            terms: Loan terms
            member_id: Borrowing member
            start_date: Date the schedule counts from (defaults to today);
                installment n falls due n months later

        Returns:
            Created Loan in pending status

        Raises:
            ValidationError: if the terms or member are invalid
        """
        if not member_id:
            raise ValidationError("member_id is required")
        terms.validate()

        now = self.clock.now()
        start_date = start_date or now.date()
        loan_term = self.schedule_generator.loan_term(terms)
        schedule = self.schedule_generator.generate(terms, start_date)
        summary = self.schedule_generator.summarize(schedule)

        loan_id = str(uuid.uuid4())
        with self.storage.atomic():
            loan = Loan(
                id=loan_id,
                created_at=now,
                updated_at=now,
                loan_number=self.sequences.next_display_number(
                    "loan_number", self.config.loan_number_prefix, self.config.display_number_width
                ),
                member_id=member_id,
                terms=terms,
                loan_term=loan_term,
                total_interest_amount=summary.total_interest,
                total_penalty_amount=summary.total_penalty,
                total_amount=terms.principal_amount + summary.total_interest + summary.total_penalty,
                status=LoanStatus.PENDING,
                application_date=now,
                next_payment_date=schedule[0].due_date if schedule else None,
                maturity_date=add_months(start_date, loan_term),
                purpose=purpose,
                collateral=collateral,
                guarantor=guarantor
            )

            for entry in schedule:
                self._save_installment(self._installment_from_entry(loan, entry, now))
            self._check_invariants(loan)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "member_id": member_id,
                    "principal_amount": terms.principal_amount,
                    "interest_rate": terms.interest_rate,
                    "loan_term": loan_term,
                    "total_amount": loan.total_amount
                }
            )

        log_action(logger, "info", f"New loan application created: {loan.loan_number}",
                   action="loan.create", resource=loan.id,
                   extra={"member_id": member_id, "loan_term": loan_term})
        return loan

    def approve(self, loan_id: str) -> Loan:
        """pending -> approved"""
        return self._transition(
            loan_id, LoanStatus.APPROVED, AuditEventType.LOAN_APPROVED,
            required=LoanStatus.PENDING,
            mutate=lambda loan, now: setattr(loan, 'approval_date', now)
        )

    def reject(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """pending -> rejected"""
        return self._transition(
            loan_id, LoanStatus.REJECTED, AuditEventType.LOAN_REJECTED,
            required=LoanStatus.PENDING,
            mutate=lambda loan, now: setattr(loan, 'rejection_reason', reason),
            metadata={"reason": reason}
        )

    def disburse(self, loan_id: str, disbursement_date: Union[date, datetime, None] = None) -> Loan:
        """approved -> disbursed; the next payment falls due one month later"""
        if isinstance(disbursement_date, datetime):
            disbursement_date = disbursement_date.date()

        def mutate(loan: Loan, now: datetime) -> None:
            loan.disbursement_date = disbursement_date or now.date()
            loan.next_payment_date = add_months(loan.disbursement_date, 1)

        return self._transition(
            loan_id, LoanStatus.DISBURSED, AuditEventType.LOAN_DISBURSED,
            required=LoanStatus.APPROVED, mutate=mutate
        )

    def mark_defaulted(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """disbursed/active -> defaulted, applied by collection policy"""
        loan = self._transition(
            loan_id, LoanStatus.DEFAULTED, AuditEventType.LOAN_DEFAULTED,
            metadata={"reason": reason}
        )
        logger.warning(f"Loan {loan.loan_number} marked as defaulted: {reason}")
        return loan

    def _transition(self, loan_id: str, new_status: LoanStatus, event_type: AuditEventType,
                    required: Optional[LoanStatus] = None, mutate=None,
                    metadata: Optional[Dict] = None) -> Loan:
        with self.loan_scope(loan_id), self.storage.atomic():
            loan = self.get_loan(loan_id)
            if required is not None and loan.status != required:
                raise InvalidStateError(
                    f"Loan {loan.loan_number} can only move to {new_status.value} "
                    f"from {required.value} status, it is {loan.status.value}"
                )
            previous = loan.status
            loan.transition_to(new_status)
            now = self.clock.now()
            if mutate:
                mutate(loan, now)
            loan.touch(now)
            self._save_loan(loan)

            event_metadata = {"loan_number": loan.loan_number, "from_status": previous.value}
            event_metadata.update(metadata or {})
            self.audit_trail.log_event(event_type, "loan", loan.id, metadata=event_metadata)

        log_action(logger, "info", f"Loan {new_status.value}: {loan.loan_number}",
                   action=f"loan.{new_status.value}", resource=loan.id)
        return loan

    def apply_payment(
        self,
        installment_id: str,
        method: Union[str, PaymentMethod],
        transaction_id: Optional[str] = None,
        paid_on: Union[date, datetime, None] = None,
        remarks: Optional[str] = None
    ) -> PaymentResult:
        """
        Pay one installment in full and roll the payment into the loan balances

        The late fee is charged on the installment's full scheduled amount.

        Raises:
            NotFoundError: unknown installment
            AlreadyPaidError: the installment is already paid
            InvalidStateError: the loan is not in a repayable status
            ConsistencyError: the update would break a ledger invariant
        """
        method = coerce_payment_method(method)
        loan_id = self.get_installment(installment_id).loan_id

        try:
            with self.loan_scope(loan_id), self.storage.atomic():
                installment = self.get_installment(installment_id)
                loan = self.get_loan(loan_id)

                if installment.is_paid:
                    raise AlreadyPaidError(
                        f"Installment #{installment.sequence_number} of loan {loan.loan_number} is already paid"
                    )
                if loan.is_completed:
                    raise InvalidStateError(f"Loan {loan.loan_number} is already completed")
                if loan.status not in PAYABLE_LOAN_STATUSES:
                    raise InvalidStateError(
                        f"Loan {loan.loan_number} is {loan.status.value} and cannot accept payments"
                    )

                now = self.clock.now()
                paid_at = paid_on or now
                paid_day = paid_at.date() if isinstance(paid_at, datetime) else paid_at
                days_late = self.fee_calculator.days_late(installment.due_date, paid_day)
                late_fee = self.fee_calculator.late_fee(installment.total_due, days_late)

                installment.status = InstallmentStatus.PAID
                installment.payment_date = paid_day
                installment.payment_method = method
                installment.transaction_id = transaction_id
                installment.late_fee_charged = late_fee
                if remarks is not None:
                    installment.remarks = remarks
                installment.touch(now)
                self._save_installment(installment)

                loan.amount_paid = loan.amount_paid + installment.total_due + late_fee
                loan.principal_paid = loan.principal_paid + installment.principal_due
                loan.interest_paid = (loan.interest_paid + installment.interest_due
                                      + installment.penalty_due + late_fee)
                loan.remaining_principal = loan.remaining_principal - installment.principal_due
                loan.payment_count += 1
                if days_late > 0:
                    loan.late_payment_count += 1

                completed = not loan.remaining_principal.is_positive()
                if completed:
                    loan.transition_to(LoanStatus.COMPLETED)
                    loan.next_payment_date = None
                else:
                    if loan.status == LoanStatus.DISBURSED:
                        loan.transition_to(LoanStatus.ACTIVE)
                    next_installment = self._first_unpaid(loan.id)
                    if next_installment:
                        loan.next_payment_date = next_installment.due_date
                loan.touch(now)

                self._check_invariants(loan)
                self._save_loan(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAYMENT_APPLIED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "installment_id": installment.id,
                        "sequence_number": installment.sequence_number,
                        "payment_method": method,
                        "transaction_id": transaction_id,
                        "amount": installment.total_due,
                        "late_fee": late_fee,
                        "days_late": days_late,
                        "remaining_principal": loan.remaining_principal
                    }
                )
                if completed:
                    self.audit_trail.log_event(
                        AuditEventType.LOAN_COMPLETED, "loan", loan.id,
                        metadata={"loan_number": loan.loan_number, "amount_paid": loan.amount_paid}
                    )
        except LedgerError as e:
            logger.warning(f"Payment for installment {installment_id} rejected: {e}")
            raise

        log_action(logger, "info",
                   f"Repayment made for loan {loan.loan_number}: {installment.total_due}",
                   action="loan.payment", resource=loan.id,
                   extra={"installment": installment.sequence_number,
                          "late_fee": late_fee.to_string(), "days_late": days_late})
        return PaymentResult(installment=installment, loan=loan, late_fee=late_fee, days_late=days_late)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: if the loan does not exist
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def get_loan_by_number(self, loan_number: str) -> Loan:
        found = self.storage.find(self.loans_table, {"loan_number": loan_number})
        if not found:
            raise NotFoundError(f"Loan {loan_number} not found")
        return Loan.from_dict(found[0])

    def get_installment(self, installment_id: str) -> Installment:
        """
        Raises:
            NotFoundError: if the installment does not exist
        """
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise NotFoundError(f"Installment {installment_id} not found")
        return Installment.from_dict(data)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by sequence number"""
        installments = [
            Installment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda i: i.sequence_number)
        return installments

    def list_loans(self, status: Optional[LoanStatus] = None,
                   member_id: Optional[str] = None) -> List[Loan]:
        filters = {}
        if status is not None:
            filters["status"] = status.value
        if member_id is not None:
            filters["member_id"] = member_id
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.loan_number)
        return loans

    def get_member_loans(self, member_id: str) -> List[Loan]:
        return self.list_loans(member_id=member_id)

    def get_overdue_installments(
        self,
        as_of: Optional[date] = None,
        loan_statuses: Optional[Iterable[LoanStatus]] = None
    ) -> List[Installment]:
        """
        Unpaid installments whose due date is before ``as_of`` (default
        today), oldest first
        """
        as_of = as_of or self.clock.today()
        loan_filter = None
        if loan_statuses is not None:
            loan_filter = {
                data['id'] for data in self.storage.find(
                    self.loans_table, {"status": [s.value for s in loan_statuses]}
                )
            }

        overdue = []
        for data in self.storage.find(self.installments_table, {}):
            installment = Installment.from_dict(data)
            if installment.is_paid or installment.due_date >= as_of:
                continue
            if loan_filter is not None and installment.loan_id not in loan_filter:
                continue
            overdue.append(installment)
        overdue.sort(key=lambda i: (i.due_date, i.loan_id, i.sequence_number))
        return overdue

    def mark_overdue(self, installment_id: str, as_of: Optional[date] = None) -> Installment:
        """Persist the overdue view of a pending installment that is past due"""
        as_of = as_of or self.clock.today()
        installment = self.get_installment(installment_id)
        with self.loan_scope(installment.loan_id), self.storage.atomic():
            installment = self.get_installment(installment_id)
            if installment.status == InstallmentStatus.PENDING and installment.due_date < as_of:
                installment.status = InstallmentStatus.OVERDUE
                installment.touch(self.clock.now())
                self._save_installment(installment)
        return installment

    def check_invariants(self, loan_id: str) -> None:
        """
        Raises:
            ConsistencyError: if the stored loan and installments disagree
        """
        self._check_invariants(self.get_loan(loan_id))

    def statistics(self) -> Dict:
        """Loan counts by status and portfolio totals"""
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        stats = {"total_loans": len(loans)}
        for status in LoanStatus:
            stats[f"{status.value}_loans"] = sum(1 for loan in loans if loan.status == status)

        funded = [loan for loan in loans if loan.status in FUNDED_LOAN_STATUSES]
        running = [loan for loan in loans if loan.status in RUNNING_LOAN_STATUSES]
        stats["total_disbursed"] = sum_money(loan.principal_amount for loan in funded).amount
        stats["total_recovered"] = sum_money(loan.amount_paid for loan in funded).amount
        stats["outstanding_amount"] = sum_money(loan.remaining_principal for loan in running).amount
        return stats

    def installment_statistics(self, as_of: Optional[date] = None) -> Dict:
        """Installment counts and amounts, with the current month's collections"""
        as_of = as_of or self.clock.today()
        installments = [Installment.from_dict(data)
                        for data in self.storage.load_all(self.installments_table)]
        paid = [i for i in installments if i.is_paid]
        unpaid = [i for i in installments if not i.is_paid]
        overdue = [i for i in unpaid if i.due_date < as_of]
        this_month = [
            i for i in paid
            if i.payment_date and (i.payment_date.year, i.payment_date.month) == (as_of.year, as_of.month)
        ]

        return {
            "total": len(installments),
            "paid": len(paid),
            "pending": len(unpaid),
            "overdue": len(overdue),
            "total_amount": sum_money(i.total_due for i in installments).amount,
            "paid_amount": sum_money(i.total_due for i in paid).amount,
            "pending_amount": sum_money(i.total_due for i in unpaid).amount,
            "late_fees_collected": sum_money(i.late_fee_charged for i in paid).amount,
            "this_month": {
                "count": len(this_month),
                "total": sum_money(i.amount_collected for i in this_month).amount,
            },
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _installment_from_entry(self, loan: Loan, entry: ScheduleEntry, now: datetime) -> Installment:
        return Installment(
            id=f"{loan.id}_{entry.sequence_number}",
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            member_id=loan.member_id,
            sequence_number=entry.sequence_number,
            due_date=entry.due_date,
            opening_balance=entry.opening_balance,
            principal_due=entry.principal_due,
            interest_due=entry.interest_due,
            penalty_due=entry.penalty_due,
        )

    def _first_unpaid(self, loan_id: str) -> Optional[Installment]:
        for installment in self.get_installments(loan_id):
            if not installment.is_paid:
                return installment
        return None

    def _save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def _save_loan(self, loan: Loan) -> None:
        """Persist a loan, refusing any status change that is not a forward edge"""
        existing = self.storage.load(self.loans_table, loan.id)
        if existing:
            stored_status = LoanStatus(existing['status'])
            if stored_status != loan.status and loan.status not in LOAN_TRANSITIONS[stored_status]:
                raise ConsistencyError(
                    f"Loan {loan.loan_number} cannot regress from {stored_status.value} to {loan.status.value}"
                )
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _check_invariants(self, loan: Loan) -> None:
        installments = self.get_installments(loan.id)
        problems = []

        expected_remaining = loan.principal_amount - loan.principal_paid
        if loan.remaining_principal != expected_remaining:
            problems.append(
                f"remaining principal {loan.remaining_principal} != principal - principal paid {expected_remaining}"
            )
        if loan.remaining_principal.is_negative():
            problems.append(f"remaining principal {loan.remaining_principal} is negative")

        collected = sum_money(i.amount_collected for i in installments)
        if loan.amount_paid != collected:
            problems.append(f"amount paid {loan.amount_paid} != collected on paid installments {collected}")

        paid_count = sum(1 for i in installments if i.is_paid)
        if loan.payment_count != paid_count:
            problems.append(f"payment count {loan.payment_count} != paid installments {paid_count}")

        numbers = [i.sequence_number for i in installments]
        if numbers != list(range(1, len(installments) + 1)):
            problems.append(f"installment sequence numbers are not 1..{len(installments)}")
        if len(installments) != loan.loan_term:
            problems.append(f"{len(installments)} installments for a {loan.loan_term} month term")
        for earlier, later in zip(installments, installments[1:]):
            if later.due_date <= earlier.due_date:
                problems.append(f"installment #{later.sequence_number} is not due after #{earlier.sequence_number}")
                break

        if loan.is_completed != (not loan.remaining_principal.is_positive()):
            problems.append(
                f"status {loan.status.value} disagrees with remaining principal {loan.remaining_principal}"
            )

        if problems:
            logger.error(f"Ledger invariants violated for loan {loan.loan_number}: {problems}")
            raise ConsistencyError(f"Loan {loan.loan_number}: " + "; ".join(problems))
