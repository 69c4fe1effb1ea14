"""
Loan Account Module

The loan account aggregate: lifecycle state machine, payment rollups derived
from the EMI ledger, closure, and origination from a product template.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import uuid

from .amortization import (
    InterestType, PenaltyRule, PenaltyType, add_months, coerce_amount,
    generate_amortization_schedule
)
from .emi import EMI, EMIStatus, PaymentMode, parse_payment_mode
from .exceptions import (
    AmountMismatchError, InvalidArgumentError, InvalidStatusError, NotEligibleError
)
from .money import ZERO, HUNDRED, Number, round_money
from .products import Customer, LoanProduct
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"          # Application awaiting approval
    APPROVED = "approved"        # Approved, awaiting disbursement
    DISBURSED = "disbursed"      # Funds released
    ACTIVE = "active"            # Repaying on schedule
    OVERDUE = "overdue"          # At least one EMI past due
    NPA = "npa"                  # Oldest overdue EMI 90+ days past due
    CLOSED = "closed"            # Fully repaid or settled
    FORECLOSED = "foreclosed"    # Prepaid in full before maturity
    DEFAULTED = "defaulted"      # Written off
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ClosureType(Enum):
    REGULAR = "regular"
    FORECLOSURE = "foreclosure"
    SETTLEMENT = "settlement"
    WRITE_OFF = "write_off"


class RiskCategory(Enum):
    """Risk bands shared by loan scoring, customer scoring and display"""
    LOW = ("low", "Excellent", "green")
    MEDIUM = ("medium", "Good", "yellow")
    HIGH = ("high", "Fair", "orange")
    CRITICAL = ("critical", "Poor", "red")

    def __init__(self, code: str, label: str, color: str):
        self.code = code
        self.label = label
        self.color = color

    @classmethod
    def from_score(cls, score: int) -> 'RiskCategory':
        if score >= 75:
            return cls.LOW
        if score >= 50:
            return cls.MEDIUM
        if score >= 25:
            return cls.HIGH
        return cls.CRITICAL

    @classmethod
    def from_code(cls, code: str) -> 'RiskCategory':
        for category in cls:
            if category.code == code:
                return category
        raise ValueError(f"Unknown risk category: {code}")


LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.CANCELLED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.CANCELLED},
    LoanStatus.DISBURSED: {LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.NPA, LoanStatus.CLOSED,
                           LoanStatus.FORECLOSED, LoanStatus.DEFAULTED},
    LoanStatus.ACTIVE: {LoanStatus.OVERDUE, LoanStatus.NPA, LoanStatus.CLOSED,
                        LoanStatus.FORECLOSED, LoanStatus.DEFAULTED},
    LoanStatus.OVERDUE: {LoanStatus.ACTIVE, LoanStatus.NPA, LoanStatus.CLOSED,
                         LoanStatus.FORECLOSED, LoanStatus.DEFAULTED},
    LoanStatus.NPA: {LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.CLOSED,
                     LoanStatus.FORECLOSED, LoanStatus.DEFAULTED},
    LoanStatus.CLOSED: set(),
    LoanStatus.FORECLOSED: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.REJECTED: set(),
    LoanStatus.CANCELLED: set(),
}

# Statuses in which EMIs are being collected and status is derived from the ledger
SERVICING_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.NPA)
FORECLOSABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.DISBURSED)


def generate_account_number(sequence: int, on: date, prefix: str = "LS") -> str:
    """Account number: prefix + YYMM + 6-digit sequence, e.g. LS2403000042"""
    return f"{prefix}{on:%y%m}{sequence:06d}"


@dataclass
class Disbursement:
    """Release of loan funds to the borrower"""
    amount: Decimal
    disbursement_date: date
    mode: PaymentMode
    reference: Optional[str] = None
    bank_account: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'disbursement_date': self.disbursement_date.isoformat(),
            'mode': self.mode.value,
            'reference': self.reference,
            'bank_account': self.bank_account,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Disbursement':
        return cls(
            amount=Decimal(data['amount']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            mode=PaymentMode(data['mode']),
            reference=data.get('reference'),
            bank_account=data.get('bank_account')
        )


@dataclass
class RestructureRecord:
    """Audit entry for one restructuring of a loan"""
    restructure_date: date
    old_tenure: int
    new_tenure: int
    old_rate: Decimal
    new_rate: Decimal
    old_emi: Decimal
    new_emi: Decimal
    outstanding_principal: Decimal
    reason: str
    processed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'restructure_date': self.restructure_date.isoformat(),
            'old_tenure': self.old_tenure,
            'new_tenure': self.new_tenure,
            'old_rate': str(self.old_rate),
            'new_rate': str(self.new_rate),
            'old_emi': str(self.old_emi),
            'new_emi': str(self.new_emi),
            'outstanding_principal': str(self.outstanding_principal),
            'reason': self.reason,
            'processed_by': self.processed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RestructureRecord':
        return cls(
            restructure_date=date.fromisoformat(data['restructure_date']),
            old_tenure=data['old_tenure'],
            new_tenure=data['new_tenure'],
            old_rate=Decimal(data['old_rate']),
            new_rate=Decimal(data['new_rate']),
            old_emi=Decimal(data['old_emi']),
            new_emi=Decimal(data['new_emi']),
            outstanding_principal=Decimal(data['outstanding_principal']),
            reason=data['reason'],
            processed_by=data.get('processed_by')
        )


@dataclass
class LoanAccount(StorageRecord):
    """Loan account aggregate"""
    customer_id: str
    product_id: str
    account_number: str

    # Terms copied from the product at origination
    principal: Decimal
    interest_rate: Decimal
    interest_type: InterestType
    tenure_months: int
    emi_amount: Decimal
    total_emis: int
    start_date: date
    first_emi_date: date
    end_date: date
    total_interest: Decimal
    total_payable: Decimal
    processing_fee: Decimal = ZERO
    disbursed_amount: Decimal = ZERO
    penalty_rule: PenaltyRule = field(default_factory=PenaltyRule)
    prepayment_allowed: bool = True
    prepayment_penalty_rate: Decimal = ZERO

    status: LoanStatus = LoanStatus.PENDING

    # Lifecycle
    application_date: Optional[date] = None
    approval_date: Optional[date] = None
    approved_by: Optional[str] = None
    approval_remarks: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    disbursement: Optional[Disbursement] = None

    # Rollups derived from the EMI ledger
    paid_emis: int = 0
    unpaid_emis: int = 0
    overdue_emis: int = 0
    max_days_overdue: int = 0
    total_paid: Decimal = ZERO
    total_penalty: Decimal = ZERO
    outstanding_principal: Decimal = ZERO
    outstanding_interest: Decimal = ZERO
    outstanding_amount: Decimal = ZERO
    next_due_date: Optional[date] = None
    next_emi_amount: Optional[Decimal] = None
    next_emi_sequence: Optional[int] = None

    # Risk
    risk_score: int = 50
    risk_category: RiskCategory = RiskCategory.MEDIUM
    risk_calculated_at: Optional[datetime] = None

    # Closure
    closure_date: Optional[date] = None
    closure_type: Optional[ClosureType] = None
    closure_remarks: Optional[str] = None
    settlement_amount: Decimal = ZERO

    restructured: bool = False
    archived_paid_amount: Decimal = ZERO  # paid on EMIs replaced by restructuring
    restructure_history: List[RestructureRecord] = field(default_factory=list)
    is_deleted: bool = False

    @property
    def is_servicing(self) -> bool:
        return self.status in SERVICING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not LOAN_TRANSITIONS[self.status]

    @property
    def completion_percentage(self) -> Decimal:
        if self.total_emis <= 0:
            return ZERO
        return round_money(Decimal(self.paid_emis) * HUNDRED / Decimal(self.total_emis))

    def can_transition_to(self, new_status: LoanStatus) -> bool:
        return new_status == self.status or new_status in LOAN_TRANSITIONS[self.status]

    def transition_to(self, new_status: LoanStatus) -> None:
        """Single entry point for status changes"""
        if new_status == self.status:
            return
        if new_status not in LOAN_TRANSITIONS[self.status]:
            raise InvalidStatusError(
                f"Loan {self.account_number} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = datetime.now(timezone.utc)

    def can_foreclose(self) -> bool:
        return self.status in FORECLOSABLE_STATUSES

    def approve(self, approved_by: Optional[str] = None, remarks: Optional[str] = None,
                on: Optional[date] = None) -> None:
        if self.status != LoanStatus.PENDING:
            raise InvalidStatusError(f"Only pending loans can be approved, loan is {self.status.value}")
        self.transition_to(LoanStatus.APPROVED)
        self.approval_date = on or date.today()
        self.approved_by = approved_by
        self.approval_remarks = remarks

    def reject(self, reason: str) -> None:
        if self.status != LoanStatus.PENDING:
            raise InvalidStatusError(f"Only pending loans can be rejected, loan is {self.status.value}")
        if not reason or not reason.strip():
            raise InvalidArgumentError("A rejection reason is required")
        self.transition_to(LoanStatus.REJECTED)
        self.rejection_reason = reason

    def cancel(self, reason: str) -> None:
        if self.status not in (LoanStatus.PENDING, LoanStatus.APPROVED):
            raise InvalidStatusError(f"Loan cannot be cancelled once {self.status.value}")
        if not reason or not reason.strip():
            raise InvalidArgumentError("A cancellation reason is required")
        self.transition_to(LoanStatus.CANCELLED)
        self.cancellation_reason = reason

    def disburse(self, amount: Number, mode: Union[PaymentMode, str], reference: Optional[str] = None,
                 on: Optional[date] = None, tolerance: Decimal = Decimal('0.01'),
                 bank_account: Optional[str] = None) -> Disbursement:
        """
        Release funds. The amount must match the net disbursal amount
        (principal less processing fee) within the tolerance.
        """
        if self.status != LoanStatus.APPROVED:
            raise InvalidStatusError(f"Only approved loans can be disbursed, loan is {self.status.value}")

        amount = round_money(coerce_amount(amount, "disbursement amount"))
        if abs(amount - self.disbursed_amount) > tolerance:
            raise AmountMismatchError(
                f"Disbursement amount {amount} does not match expected {self.disbursed_amount}",
                {'expected': str(self.disbursed_amount), 'received': str(amount)}
            )

        self.disbursement = Disbursement(
            amount=amount,
            disbursement_date=on or date.today(),
            mode=parse_payment_mode(mode),
            reference=reference,
            bank_account=bank_account
        )
        self.transition_to(LoanStatus.ACTIVE)
        return self.disbursement

    def update_payment_stats(self, emis: Sequence[EMI], as_of: date,
                             npa_threshold_days: int = 90) -> None:
        """
        Recompute every rollup from the EMI ledger and, while the loan is
        being serviced, derive its status: all settled -> closed, oldest
        overdue EMI at or past the NPA threshold -> npa, any overdue ->
        overdue, otherwise active.
        """
        for emi in emis:
            if emi.loan_id != self.id:
                raise InvalidArgumentError(f"EMI {emi.id} does not belong to loan {self.id}")
            emi.materialize_due_state(as_of)

        settled = [e for e in emis if e.is_settled]
        unsettled = [e for e in emis if not e.is_settled]
        overdue = [e for e in emis if e.status == EMIStatus.OVERDUE]

        self.total_emis = len(emis)
        self.paid_emis = sum(1 for e in emis if e.status == EMIStatus.PAID)
        self.unpaid_emis = len(unsettled)
        self.overdue_emis = len(overdue)
        self.total_paid = round_money(sum((e.paid_amount for e in emis), ZERO)
                                      + self.settlement_amount + self.archived_paid_amount)
        self.total_penalty = round_money(sum((e.penalty_amount for e in emis), ZERO))

        self.outstanding_principal = round_money(sum((e.principal_component for e in unsettled), ZERO))
        self.outstanding_interest = round_money(sum((e.interest_component for e in unsettled), ZERO))
        self.outstanding_amount = round_money(self.outstanding_principal + self.outstanding_interest)

        upcoming = sorted(
            (e for e in emis if e.status in (EMIStatus.PENDING, EMIStatus.OVERDUE)),
            key=lambda e: e.sequence
        )
        if upcoming:
            self.next_due_date = upcoming[0].due_date
            self.next_emi_amount = upcoming[0].total_due
            self.next_emi_sequence = upcoming[0].sequence
        else:
            self.next_due_date = None
            self.next_emi_amount = None
            self.next_emi_sequence = None

        self.max_days_overdue = max((e.days_overdue(as_of) for e in overdue), default=0)
        self.updated_at = datetime.now(timezone.utc)

        if not self.is_servicing or not emis:
            return

        if not unsettled:
            self.transition_to(LoanStatus.CLOSED)
            self.closure_type = ClosureType.REGULAR
            self.closure_date = as_of
        elif overdue:
            if self.max_days_overdue >= npa_threshold_days:
                self.transition_to(LoanStatus.NPA)
            else:
                self.transition_to(LoanStatus.OVERDUE)
        else:
            self.transition_to(LoanStatus.ACTIVE)

    def close(self, closure_type: Union[ClosureType, str] = ClosureType.REGULAR,
              remarks: Optional[str] = None, on: Optional[date] = None) -> None:
        """Close the account; a write-off marks the loan defaulted"""
        if not isinstance(closure_type, ClosureType):
            try:
                closure_type = ClosureType(closure_type)
            except ValueError:
                raise InvalidArgumentError(f"Unknown closure type: {closure_type!r}")

        if closure_type != ClosureType.WRITE_OFF and not self.can_foreclose():
            raise InvalidStatusError(f"Loan cannot be closed while {self.status.value}")

        if closure_type == ClosureType.WRITE_OFF:
            self.transition_to(LoanStatus.DEFAULTED)
        else:
            self.transition_to(LoanStatus.CLOSED)
        self.closure_type = closure_type
        self.closure_date = on or date.today()
        self.closure_remarks = remarks

    def mark_foreclosed(self, amount: Decimal, on: date, remarks: Optional[str] = None) -> None:
        if not self.can_foreclose():
            raise InvalidStatusError(f"Loan cannot be foreclosed while {self.status.value}")
        self.transition_to(LoanStatus.FORECLOSED)
        self.settlement_amount = round_money(self.settlement_amount + amount)
        self.closure_type = ClosureType.FORECLOSURE
        self.closure_date = on
        self.closure_remarks = remarks
        self.outstanding_principal = ZERO
        self.outstanding_interest = ZERO
        self.outstanding_amount = ZERO
        self.next_due_date = None
        self.next_emi_amount = None
        self.next_emi_sequence = None

    def apply_risk_score(self, score: int, calculated_at: Optional[datetime] = None) -> None:
        if not 0 <= score <= 100:
            raise InvalidArgumentError(f"Risk score must be between 0 and 100, got {score}")
        self.risk_score = score
        self.risk_category = RiskCategory.from_score(score)
        self.risk_calculated_at = calculated_at or datetime.now(timezone.utc)

    def soft_delete(self) -> None:
        self.is_deleted = True
        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        def _d(value):
            return value.isoformat() if value else None

        result = self._base_dict()
        result.update({
            'customer_id': self.customer_id,
            'product_id': self.product_id,
            'account_number': self.account_number,
            'principal': str(self.principal),
            'interest_rate': str(self.interest_rate),
            'interest_type': self.interest_type.value,
            'tenure_months': self.tenure_months,
            'emi_amount': str(self.emi_amount),
            'total_emis': self.total_emis,
            'start_date': self.start_date.isoformat(),
            'first_emi_date': self.first_emi_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'total_interest': str(self.total_interest),
            'total_payable': str(self.total_payable),
            'processing_fee': str(self.processing_fee),
            'disbursed_amount': str(self.disbursed_amount),
            'penalty_rule': {
                'penalty_type': self.penalty_rule.penalty_type.value,
                'rate': str(self.penalty_rule.rate),
                'grace_period_days': self.penalty_rule.grace_period_days,
                'max_penalty': str(self.penalty_rule.max_penalty)
                if self.penalty_rule.max_penalty is not None else None,
            },
            'prepayment_allowed': self.prepayment_allowed,
            'prepayment_penalty_rate': str(self.prepayment_penalty_rate),
            'status': self.status.value,
            'application_date': _d(self.application_date),
            'approval_date': _d(self.approval_date),
            'approved_by': self.approved_by,
            'approval_remarks': self.approval_remarks,
            'rejection_reason': self.rejection_reason,
            'cancellation_reason': self.cancellation_reason,
            'disbursement': self.disbursement.to_dict() if self.disbursement else None,
            'paid_emis': self.paid_emis,
            'unpaid_emis': self.unpaid_emis,
            'overdue_emis': self.overdue_emis,
            'max_days_overdue': self.max_days_overdue,
            'total_paid': str(self.total_paid),
            'total_penalty': str(self.total_penalty),
            'outstanding_principal': str(self.outstanding_principal),
            'outstanding_interest': str(self.outstanding_interest),
            'outstanding_amount': str(self.outstanding_amount),
            'next_due_date': _d(self.next_due_date),
            'next_emi_amount': str(self.next_emi_amount) if self.next_emi_amount is not None else None,
            'next_emi_sequence': self.next_emi_sequence,
            'risk_score': self.risk_score,
            'risk_category': self.risk_category.code,
            'risk_calculated_at': _d(self.risk_calculated_at),
            'closure_date': _d(self.closure_date),
            'closure_type': self.closure_type.value if self.closure_type else None,
            'closure_remarks': self.closure_remarks,
            'settlement_amount': str(self.settlement_amount),
            'restructured': self.restructured,
            'archived_paid_amount': str(self.archived_paid_amount),
            'restructure_history': [r.to_dict() for r in self.restructure_history],
            'is_deleted': self.is_deleted,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanAccount':
        def _d(value):
            return date.fromisoformat(value) if value else None

        rule = data.get('penalty_rule') or {}
        return cls(
            **cls._base_kwargs(data),
            customer_id=data['customer_id'],
            product_id=data['product_id'],
            account_number=data['account_number'],
            principal=Decimal(data['principal']),
            interest_rate=Decimal(data['interest_rate']),
            interest_type=InterestType(data['interest_type']),
            tenure_months=data['tenure_months'],
            emi_amount=Decimal(data['emi_amount']),
            total_emis=data['total_emis'],
            start_date=date.fromisoformat(data['start_date']),
            first_emi_date=date.fromisoformat(data['first_emi_date']),
            end_date=date.fromisoformat(data['end_date']),
            total_interest=Decimal(data['total_interest']),
            total_payable=Decimal(data['total_payable']),
            processing_fee=Decimal(data['processing_fee']),
            disbursed_amount=Decimal(data['disbursed_amount']),
            penalty_rule=PenaltyRule(
                penalty_type=PenaltyType(rule.get('penalty_type', 'percentage')),
                rate=Decimal(rule.get('rate', '2')),
                grace_period_days=rule.get('grace_period_days', 0),
                max_penalty=Decimal(rule['max_penalty']) if rule.get('max_penalty') else None
            ),
            prepayment_allowed=data.get('prepayment_allowed', True),
            prepayment_penalty_rate=Decimal(data.get('prepayment_penalty_rate', '0')),
            status=LoanStatus(data['status']),
            application_date=_d(data.get('application_date')),
            approval_date=_d(data.get('approval_date')),
            approved_by=data.get('approved_by'),
            approval_remarks=data.get('approval_remarks'),
            rejection_reason=data.get('rejection_reason'),
            cancellation_reason=data.get('cancellation_reason'),
            disbursement=Disbursement.from_dict(data['disbursement']) if data.get('disbursement') else None,
            paid_emis=data.get('paid_emis', 0),
            unpaid_emis=data.get('unpaid_emis', 0),
            overdue_emis=data.get('overdue_emis', 0),
            max_days_overdue=data.get('max_days_overdue', 0),
            total_paid=Decimal(data.get('total_paid', '0')),
            total_penalty=Decimal(data.get('total_penalty', '0')),
            outstanding_principal=Decimal(data.get('outstanding_principal', '0')),
            outstanding_interest=Decimal(data.get('outstanding_interest', '0')),
            outstanding_amount=Decimal(data.get('outstanding_amount', '0')),
            next_due_date=_d(data.get('next_due_date')),
            next_emi_amount=Decimal(data['next_emi_amount']) if data.get('next_emi_amount') else None,
            next_emi_sequence=data.get('next_emi_sequence'),
            risk_score=data.get('risk_score', 50),
            risk_category=RiskCategory.from_code(data.get('risk_category', 'medium')),
            risk_calculated_at=datetime.fromisoformat(data['risk_calculated_at'])
            if data.get('risk_calculated_at') else None,
            closure_date=_d(data.get('closure_date')),
            closure_type=ClosureType(data['closure_type']) if data.get('closure_type') else None,
            closure_remarks=data.get('closure_remarks'),
            settlement_amount=Decimal(data.get('settlement_amount', '0')),
            restructured=data.get('restructured', False),
            archived_paid_amount=Decimal(data.get('archived_paid_amount', '0')),
            restructure_history=[RestructureRecord.from_dict(r) for r in data.get('restructure_history', [])],
            is_deleted=data.get('is_deleted', False)
        )


def originate_loan(
    product: LoanProduct,
    customer: Customer,
    principal: Number,
    tenure_months: int,
    start_date: date,
    account_number: str,
    auto_approve: bool = False,
    approved_by: Optional[str] = None,
    now: Optional[datetime] = None
) -> Tuple[LoanAccount, List[EMI]]:
    """
    Create a loan application and its EMI schedule from a product.

    Args:
        product: Product template supplying rate, bounds, fees and rules
        customer: Borrower snapshot checked against the product criteria
        principal: Requested amount
        tenure_months: Requested tenure
        start_date: Schedule start; EMI i falls due i months later
        account_number: Pre-allocated account number
        auto_approve: Create the loan already approved

    Returns:
        (LoanAccount, EMIs ordered by sequence)

    Raises:
        InvalidStatusError: Product is inactive
        InvalidArgumentError: Amount or tenure outside product bounds
        NotEligibleError: Customer fails one or more eligibility rules
    """
    if not product.is_active:
        raise InvalidStatusError(f"Product {product.code} is not active")

    principal, tenure = product.validate_terms(principal, tenure_months)

    eligibility = product.check_eligibility(customer)
    if not eligibility.eligible:
        raise NotEligibleError("Customer is not eligible for this product", eligibility.reasons)

    schedule = generate_amortization_schedule(
        principal, product.interest_rate, tenure, start_date, product.interest_type
    )
    summary = schedule.summary
    processing_fee = product.calculate_processing_fee(principal)
    now = now or datetime.now(timezone.utc)

    loan = LoanAccount(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        customer_id=customer.id,
        product_id=product.id,
        account_number=account_number,
        principal=summary.principal,
        interest_rate=product.interest_rate,
        interest_type=product.interest_type,
        tenure_months=tenure,
        emi_amount=summary.emi_amount,
        total_emis=tenure,
        start_date=start_date,
        first_emi_date=add_months(start_date, 1),
        end_date=summary.end_date,
        total_interest=summary.total_interest,
        total_payable=summary.total_payable,
        processing_fee=processing_fee,
        disbursed_amount=round_money(summary.principal - processing_fee),
        penalty_rule=product.penalty_rule(),
        prepayment_allowed=product.prepayment_allowed,
        prepayment_penalty_rate=product.prepayment_penalty_rate,
        application_date=start_date
    )

    emis = [EMI.from_schedule_entry(loan.id, entry, now) for entry in schedule.entries]
    loan.update_payment_stats(emis, as_of=start_date)

    if auto_approve:
        loan.approve(approved_by=approved_by or "system", remarks="Auto-approved", on=start_date)

    return loan, emis
