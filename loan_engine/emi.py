"""
EMI Ledger Module

One record per scheduled installment. Tracks payments, lateness, penalties
and waivers, and owns the installment state machine. Status moves only
through EMI.transition_to; the overdue transition is applied lazily by
materialize_due_state rather than by a timer.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import math
import uuid

from .amortization import ScheduleEntry
from .exceptions import (
    AlreadyPaidError, InvalidArgumentError, InvalidStatusError,
    NoPenaltyError, WaiverExceedsPenaltyError
)
from .money import ZERO, Number, to_decimal, round_money
from .storage import StorageRecord


class EMIStatus(Enum):
    """Installment states"""
    PENDING = "pending"
    OVERDUE = "overdue"
    PARTIAL = "partial"
    PAID = "paid"
    WAIVED = "waived"


class PaymentMode(Enum):
    """Accepted payment channels"""
    CASH = "cash"
    CHEQUE = "cheque"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CARD = "card"
    AUTO_DEBIT = "auto_debit"
    ONLINE = "online"


EMI_TRANSITIONS = {
    EMIStatus.PENDING: {EMIStatus.OVERDUE, EMIStatus.PARTIAL, EMIStatus.PAID, EMIStatus.WAIVED},
    EMIStatus.OVERDUE: {EMIStatus.PARTIAL, EMIStatus.PAID, EMIStatus.WAIVED},
    EMIStatus.PARTIAL: {EMIStatus.PAID, EMIStatus.WAIVED},
    EMIStatus.PAID: set(),
    EMIStatus.WAIVED: set(),
}

# Statuses that still expect money
OPEN_STATUSES = (EMIStatus.PENDING, EMIStatus.OVERDUE, EMIStatus.PARTIAL)
SETTLED_STATUSES = (EMIStatus.PAID, EMIStatus.WAIVED)


def parse_payment_mode(mode: Union[PaymentMode, str]) -> PaymentMode:
    if isinstance(mode, PaymentMode):
        return mode
    try:
        return PaymentMode(mode)
    except ValueError:
        raise InvalidArgumentError(f"Unknown payment mode: {mode!r}")


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def calculate_days_late(due_date: date, payment_date: Union[date, datetime]) -> int:
    """
    Whole days between the end of the due date and the payment instant,
    rounded up. Anything on or before the due date is 0.
    """
    if isinstance(payment_date, datetime):
        end_of_due = datetime.combine(due_date, time.max, tzinfo=payment_date.tzinfo)
        if payment_date <= end_of_due:
            return 0
        return math.ceil((payment_date - end_of_due).total_seconds() / 86400)

    return max(0, (payment_date - due_date).days)


@dataclass
class PaymentRecord:
    """A single payment applied to an EMI"""
    amount: Decimal
    payment_date: date
    mode: PaymentMode
    reference: Optional[str] = None
    remarks: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'payment_date': self.payment_date.isoformat(),
            'mode': self.mode.value,
            'reference': self.reference,
            'remarks': self.remarks,
            'recorded_by': self.recorded_by,
            'recorded_at': self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            amount=Decimal(data['amount']),
            payment_date=date.fromisoformat(data['payment_date']),
            mode=PaymentMode(data['mode']),
            reference=data.get('reference'),
            remarks=data.get('remarks'),
            recorded_by=data.get('recorded_by'),
            recorded_at=datetime.fromisoformat(data['recorded_at'])
        )


@dataclass
class PaymentResult:
    """Outcome of applying a payment to an EMI"""
    emi_id: str
    sequence: int
    status: EMIStatus
    paid_amount: Decimal
    balance_due: Decimal
    days_late: int
    penalty_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emi_id': self.emi_id,
            'sequence': self.sequence,
            'status': self.status.value,
            'paid_amount': str(self.paid_amount),
            'balance_due': str(self.balance_due),
            'days_late': self.days_late,
            'penalty_amount': str(self.penalty_amount),
        }


@dataclass
class EMI(StorageRecord):
    """Scheduled installment and its payment state"""
    loan_id: str
    sequence: int
    due_date: date
    amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    opening_balance: Decimal = ZERO
    closing_balance: Decimal = ZERO
    status: EMIStatus = EMIStatus.PENDING

    paid_amount: Decimal = ZERO
    paid_date: Optional[date] = None
    payment_mode: Optional[PaymentMode] = None
    payment_reference: Optional[str] = None
    days_late: int = 0

    penalty_amount: Decimal = ZERO
    penalty_paid: Decimal = ZERO
    penalty_waived: Decimal = ZERO
    waiver_amount: Decimal = ZERO
    waiver_reason: Optional[str] = None
    waived_by: Optional[str] = None

    remarks: Optional[str] = None
    payments: List[PaymentRecord] = field(default_factory=list)

    @classmethod
    def from_schedule_entry(cls, loan_id: str, entry: ScheduleEntry,
                            now: Optional[datetime] = None) -> 'EMI':
        """Create a pending EMI from an amortization schedule entry"""
        now = now or datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            sequence=entry.sequence,
            due_date=entry.due_date,
            amount=entry.emi_amount,
            principal_component=entry.principal_component,
            interest_component=entry.interest_component,
            opening_balance=entry.opening_balance,
            closing_balance=entry.closing_balance
        )

    @property
    def net_penalty(self) -> Decimal:
        return max(ZERO, self.penalty_amount - self.penalty_waived)

    @property
    def total_due(self) -> Decimal:
        """amount + penalty - penalty waived - waiver"""
        return round_money(self.amount + self.penalty_amount - self.penalty_waived - self.waiver_amount)

    @property
    def balance_due(self) -> Decimal:
        if self.status == EMIStatus.WAIVED:
            return ZERO
        return max(ZERO, round_money(self.total_due - self.paid_amount))

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def can_transition_to(self, new_status: EMIStatus) -> bool:
        return new_status == self.status or new_status in EMI_TRANSITIONS[self.status]

    def transition_to(self, new_status: EMIStatus) -> None:
        """Move to a new status, rejecting moves the state machine does not allow"""
        if new_status == self.status:
            return
        if new_status not in EMI_TRANSITIONS[self.status]:
            raise InvalidStatusError(
                f"EMI {self.sequence} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = datetime.now(timezone.utc)

    def materialize_due_state(self, as_of: date) -> bool:
        """Mark a pending, unpaid EMI overdue once its due date has passed"""
        as_of = _as_date(as_of)
        if self.status == EMIStatus.PENDING and as_of > self.due_date and self.paid_amount == 0:
            self.transition_to(EMIStatus.OVERDUE)
            return True
        return False

    def days_overdue(self, as_of: date) -> int:
        """Days past due as of a date (0 when settled or not yet due)"""
        if self.is_settled:
            return 0
        return max(0, (_as_date(as_of) - self.due_date).days)

    def calculate_days_late(self, payment_date: Union[date, datetime]) -> int:
        return calculate_days_late(self.due_date, payment_date)

    def levy_penalty(self, penalty_amount: Number) -> None:
        """Set the late penalty; zero leaves any existing penalty untouched"""
        try:
            penalty = round_money(to_decimal(penalty_amount))
        except ValueError:
            raise InvalidArgumentError(f"Invalid penalty amount: {penalty_amount!r}")
        if penalty < 0:
            raise InvalidArgumentError("Penalty amount cannot be negative")
        if penalty > 0:
            self.penalty_amount = penalty

    def _refresh_penalty_paid(self) -> None:
        # The installment amount is settled before its penalty
        beyond_installment = max(ZERO, self.paid_amount - self.amount)
        self.penalty_paid = round_money(min(self.net_penalty, beyond_installment))

    def record_payment(
        self,
        amount: Number,
        payment_date: Union[date, datetime],
        mode: Union[PaymentMode, str],
        reference: Optional[str] = None,
        penalty_amount: Optional[Number] = None,
        remarks: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> PaymentResult:
        """
        Apply a payment to this installment.

        Args:
            amount: Amount received, must be positive
            payment_date: Date (or instant) the money was received
            mode: Payment channel
            reference: External reference (cheque/UTR number)
            penalty_amount: Late penalty to levy; overwrites the stored penalty when > 0
            remarks: Free text
            recorded_by: Operator recording the payment

        Returns:
            PaymentResult

        Raises:
            AlreadyPaidError: The EMI is already paid
            InvalidStatusError: The EMI was waived
            InvalidArgumentError: Non-positive amount or unknown mode
        """
        if self.status == EMIStatus.PAID:
            raise AlreadyPaidError(f"EMI {self.sequence} is already paid")
        if self.status == EMIStatus.WAIVED:
            raise InvalidStatusError(f"EMI {self.sequence} has been waived")

        try:
            amount = round_money(to_decimal(amount))
        except ValueError:
            raise InvalidArgumentError(f"Invalid payment amount: {amount!r}")
        if amount <= 0:
            raise InvalidArgumentError(f"Payment amount must be positive, got {amount}")
        mode = parse_payment_mode(mode)

        if penalty_amount is not None:
            self.levy_penalty(penalty_amount)

        self.days_late = self.calculate_days_late(payment_date)
        paid_on = _as_date(payment_date)

        self.payments.append(PaymentRecord(
            amount=amount,
            payment_date=paid_on,
            mode=mode,
            reference=reference,
            remarks=remarks,
            recorded_by=recorded_by
        ))
        self.paid_amount = round_money(self.paid_amount + amount)
        self.paid_date = paid_on
        self.payment_mode = mode
        self.payment_reference = reference
        self._refresh_penalty_paid()

        if self.paid_amount >= self.total_due:
            self.transition_to(EMIStatus.PAID)
        else:
            self.transition_to(EMIStatus.PARTIAL)
        self.updated_at = datetime.now(timezone.utc)

        return PaymentResult(
            emi_id=self.id,
            sequence=self.sequence,
            status=self.status,
            paid_amount=self.paid_amount,
            balance_due=self.balance_due,
            days_late=self.days_late,
            penalty_amount=self.penalty_amount
        )

    def waive_penalty(self, reason: str, amount: Optional[Number] = None,
                      waived_by: Optional[str] = None) -> Decimal:
        """
        Waive all or part of the late penalty.

        Returns:
            The amount waived
        """
        if not reason or not reason.strip():
            raise InvalidArgumentError("A reason is required to waive a penalty")
        if self.penalty_amount <= 0:
            raise NoPenaltyError(f"EMI {self.sequence} has no penalty to waive")

        remaining = round_money(self.penalty_amount - self.penalty_waived)
        if remaining <= 0:
            raise NoPenaltyError(f"Penalty on EMI {self.sequence} is already fully waived")

        if amount is None:
            waive_amount = remaining
        else:
            try:
                waive_amount = round_money(to_decimal(amount))
            except ValueError:
                raise InvalidArgumentError(f"Invalid waiver amount: {amount!r}")
            if waive_amount <= 0:
                raise InvalidArgumentError(f"Waiver amount must be positive, got {waive_amount}")
            if waive_amount > remaining:
                raise WaiverExceedsPenaltyError(
                    f"Waiver {waive_amount} exceeds unwaived penalty {remaining}"
                )

        self.penalty_waived = round_money(self.penalty_waived + waive_amount)
        self.waiver_reason = reason
        self.waived_by = waived_by
        self._refresh_penalty_paid()

        if self.is_open and self.paid_amount > 0 and self.paid_amount >= self.total_due:
            self.transition_to(EMIStatus.PAID)
        self.updated_at = datetime.now(timezone.utc)

        return waive_amount

    def waive(self, reason: str, waived_by: Optional[str] = None) -> Decimal:
        """Administratively write off the remaining balance of this installment"""
        if not reason or not reason.strip():
            raise InvalidArgumentError("A reason is required to waive an EMI")
        if not self.can_transition_to(EMIStatus.WAIVED) or self.status == EMIStatus.WAIVED:
            raise InvalidStatusError(f"EMI {self.sequence} is {self.status.value} and cannot be waived")

        waived = self.balance_due
        self.waiver_amount = round_money(self.waiver_amount + waived)
        self.waiver_reason = reason
        self.waived_by = waived_by
        self.transition_to(EMIStatus.WAIVED)
        return waived

    def settle_by_foreclosure(self, payment_date: date, mode: Union[PaymentMode, str],
                              reference: Optional[str] = None) -> None:
        """Close this installment as part of a loan foreclosure"""
        if not self.is_open:
            raise InvalidStatusError(f"EMI {self.sequence} is {self.status.value}")
        self.paid_date = _as_date(payment_date)
        self.payment_mode = parse_payment_mode(mode)
        self.payment_reference = reference
        self.remarks = "Foreclosure payment"
        self.transition_to(EMIStatus.PAID)

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'principal_component': str(self.principal_component),
            'interest_component': str(self.interest_component),
            'opening_balance': str(self.opening_balance),
            'closing_balance': str(self.closing_balance),
            'status': self.status.value,
            'paid_amount': str(self.paid_amount),
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'payment_mode': self.payment_mode.value if self.payment_mode else None,
            'payment_reference': self.payment_reference,
            'days_late': self.days_late,
            'penalty_amount': str(self.penalty_amount),
            'penalty_paid': str(self.penalty_paid),
            'penalty_waived': str(self.penalty_waived),
            'waiver_amount': str(self.waiver_amount),
            'waiver_reason': self.waiver_reason,
            'waived_by': self.waived_by,
            'remarks': self.remarks,
            'payments': [p.to_dict() for p in self.payments],
            'total_due': str(self.total_due),
            'balance_due': str(self.balance_due),
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EMI':
        return cls(
            **cls._base_kwargs(data),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Decimal(data['amount']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            opening_balance=Decimal(data['opening_balance']),
            closing_balance=Decimal(data['closing_balance']),
            status=EMIStatus(data['status']),
            paid_amount=Decimal(data['paid_amount']),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            payment_mode=PaymentMode(data['payment_mode']) if data.get('payment_mode') else None,
            payment_reference=data.get('payment_reference'),
            days_late=data.get('days_late', 0),
            penalty_amount=Decimal(data['penalty_amount']),
            penalty_paid=Decimal(data['penalty_paid']),
            penalty_waived=Decimal(data['penalty_waived']),
            waiver_amount=Decimal(data['waiver_amount']),
            waiver_reason=data.get('waiver_reason'),
            waived_by=data.get('waived_by'),
            remarks=data.get('remarks'),
            payments=[PaymentRecord.from_dict(p) for p in data.get('payments', [])]
        )
