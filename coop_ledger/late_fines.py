"""
Late Payment Fine Scan

Batch job that walks overdue installments of running loans and raises a
late-payment fine for each loan that does not already carry a pending one.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from .audit import AuditEventType
from .clock import Clock
from .fees import LateFeeCalculator
from .fines import FineLedger, FineType, FineStatus, Fine
from .loans import LoanLedger, InstallmentStatus, RUNNING_LOAN_STATUSES
from .logging_config import log_action

logger = logging.getLogger("coop_ledger.late_fines")


@dataclass
class ScanReport:
    """What one scan saw and did"""
    as_of: date
    installments_examined: int = 0
    marked_overdue: int = 0
    skipped_zero_fee: int = 0
    skipped_existing_fine: int = 0
    fines_created: List[Fine] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "as_of": self.as_of.isoformat(),
            "installments_examined": self.installments_examined,
            "marked_overdue": self.marked_overdue,
            "skipped_zero_fee": self.skipped_zero_fee,
            "skipped_existing_fine": self.skipped_existing_fine,
            "fines_created": [fine.fine_number for fine in self.fines_created],
        }


class LateFineScanner:
    """
    Creates late-payment fines from overdue installments.

    At most one pending late-payment fine exists per loan: while one is
    outstanding, further overdue installments on that loan raise nothing.
    """

    def __init__(
        self,
        loan_ledger: LoanLedger,
        fine_ledger: FineLedger,
        fee_calculator: Optional[LateFeeCalculator] = None,
        clock: Optional[Clock] = None
    ):
        self.loan_ledger = loan_ledger
        self.fine_ledger = fine_ledger
        self.fee_calculator = fee_calculator or loan_ledger.fee_calculator
        self.clock = clock or loan_ledger.clock

    def run_once(self) -> int:
        """Run one scan and return the number of fines created"""
        return len(self.scan().fines_created)

    def scan(self, as_of: Optional[date] = None) -> ScanReport:
        as_of = as_of or self.clock.today()
        report = ScanReport(as_of=as_of)

        overdue = self.loan_ledger.get_overdue_installments(
            as_of=as_of, loan_statuses=RUNNING_LOAN_STATUSES
        )
        for installment in overdue:
            report.installments_examined += 1
            with self.loan_ledger.loan_scope(installment.loan_id):
                # Re-read under the loan lock; a payment may have landed meanwhile
                installment = self.loan_ledger.get_installment(installment.id)
                if installment.is_paid:
                    continue
                if installment.status == InstallmentStatus.PENDING:
                    self.loan_ledger.mark_overdue(installment.id, as_of=as_of)
                    report.marked_overdue += 1

                days_late = self.fee_calculator.days_late(installment.due_date, as_of)
                fee = self.fee_calculator.late_fee(installment.total_due, days_late)
                if not fee.is_positive():
                    report.skipped_zero_fee += 1
                    continue

                with self.fine_ledger.storage.atomic():
                    existing = self.fine_ledger.find_fines(
                        loan_id=installment.loan_id,
                        fine_type=FineType.LATE_PAYMENT,
                        status=FineStatus.PENDING
                    )
                    if existing:
                        report.skipped_existing_fine += 1
                        continue

                    fine = self.fine_ledger.create_fine(
                        member_id=installment.member_id,
                        loan_id=installment.loan_id,
                        fine_type=FineType.LATE_PAYMENT,
                        amount=fee,
                        fine_date=as_of,
                        description=(
                            f"Late payment fine for installment #{installment.sequence_number}. "
                            f"{days_late} days late."
                        )
                    )
                report.fines_created.append(fine)

        self.loan_ledger.audit_trail.log_event(
            AuditEventType.LATE_FINE_SCAN_COMPLETED, "scan", as_of.isoformat(),
            metadata=report.to_dict()
        )
        log_action(logger, "info",
                   f"Late payment fines calculated: {len(report.fines_created)} fines created",
                   action="late_fines.scan", extra=report.to_dict())
        return report
