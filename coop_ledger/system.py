"""
Ledger System Assembly

Wires storage, clock, audit trail, sequences and the ledgers together from
configuration, for the service layer that exposes them.
"""

from typing import Optional

from .audit import AuditTrail
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .fees import LateFeeCalculator
from .fines import FineLedger
from .late_fines import LateFineScanner
from .loans import LoanLedger
from .logging_config import setup_logging_from_config
from .schedule import ScheduleGenerator
from .sequences import SequenceGenerator
from .storage import StorageInterface, create_storage


class CooperativeLedger:
    """Loan ledger system with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 clock: Optional[Clock] = None,
                 config: Optional[LedgerConfig] = None,
                 configure_logging: bool = False):
        self.config = config or get_config()
        if configure_logging:
            setup_logging_from_config(self.config)

        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or SystemClock()
        self.audit_trail = AuditTrail(
            self.storage, clock=self.clock, enabled=self.config.enable_audit_logging
        )
        self.sequences = SequenceGenerator(self.storage)
        self.fee_calculator = LateFeeCalculator.from_config(self.config)

        self.loan_ledger = LoanLedger(
            self.storage,
            audit_trail=self.audit_trail,
            clock=self.clock,
            sequences=self.sequences,
            fee_calculator=self.fee_calculator,
            schedule_generator=ScheduleGenerator(self.config.max_schedule_months),
            config=self.config
        )
        self.fine_ledger = FineLedger(
            self.storage,
            audit_trail=self.audit_trail,
            clock=self.clock,
            sequences=self.sequences,
            config=self.config
        )
        self.late_fine_scanner = LateFineScanner(
            self.loan_ledger, self.fine_ledger,
            fee_calculator=self.fee_calculator, clock=self.clock
        )

    def run_late_fine_scan(self) -> int:
        return self.late_fine_scanner.run_once()

    def close(self) -> None:
        self.storage.close()
