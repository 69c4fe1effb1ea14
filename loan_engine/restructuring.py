"""
Restructuring Engine Module

Replaces a loan's unpaid installments with a fresh reducing-balance
schedule at a new tenure and/or rate. preview_restructure only computes;
restructure_loan mutates the aggregate and returns the new ledger for the
caller to persist.

Partial payments are applied to interest before principal when working
out the principal still owed.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .amortization import (
    InterestType, calculate_emi, coerce_amount, coerce_months,
    generate_amortization_schedule
)
from .emi import EMI, OPEN_STATUSES
from .exceptions import InvalidArgumentError, InvalidStatusError, NoPendingEMIsError
from .loans import LoanAccount, LoanStatus, RestructureRecord
from .money import ZERO, HUNDRED, Number, round_money

RESTRUCTURABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


@dataclass
class CurrentTerms:
    emi_amount: Decimal
    remaining_emis: int
    interest_rate: Decimal
    outstanding_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emi_amount': str(self.emi_amount),
            'remaining_emis': self.remaining_emis,
            'interest_rate': str(self.interest_rate),
            'outstanding_amount': str(self.outstanding_amount),
        }


@dataclass
class ProposedTerms:
    emi_amount: Decimal
    tenure: int
    interest_rate: Decimal
    outstanding_principal: Decimal
    total_payable: Decimal
    total_interest: Decimal
    emi_reduction: Decimal
    emi_reduction_percent: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emi_amount': str(self.emi_amount),
            'tenure': self.tenure,
            'interest_rate': str(self.interest_rate),
            'outstanding_principal': str(self.outstanding_principal),
            'total_payable': str(self.total_payable),
            'total_interest': str(self.total_interest),
            'emi_reduction': str(self.emi_reduction),
            'emi_reduction_percent': str(self.emi_reduction_percent),
        }


@dataclass
class RestructurePreview:
    current: CurrentTerms
    proposed: ProposedTerms

    def to_dict(self) -> Dict[str, Any]:
        return {'current': self.current.to_dict(), 'proposed': self.proposed.to_dict()}


@dataclass
class RestructureResult:
    loan: LoanAccount
    emis: List[EMI]            # full ledger after restructuring, by sequence
    new_emis: List[EMI]
    removed_emis: List[EMI]
    record: RestructureRecord


@dataclass
class _RestructureTerms:
    pending: List[EMI]
    outstanding_principal: Decimal
    tenure: int
    rate: Decimal
    emi_amount: Decimal


def outstanding_principal_of(pending: Sequence[EMI]) -> Decimal:
    """Principal still owed on open EMIs, with payments applied to interest first"""
    total = ZERO
    for emi in pending:
        principal_paid = max(ZERO, emi.paid_amount - emi.interest_component)
        total += max(ZERO, emi.principal_component - principal_paid)
    return round_money(total)


def _compute_terms(loan: LoanAccount, emis: Sequence[EMI],
                   new_tenure: Optional[int], new_rate: Optional[Number]) -> _RestructureTerms:
    if new_tenure is None and new_rate is None:
        raise InvalidArgumentError("Either a new tenure or a new interest rate is required")

    if new_tenure is not None:
        new_tenure = coerce_months(new_tenure, "New tenure")
        if new_tenure <= 0:
            raise InvalidArgumentError(f"New tenure must be positive, got {new_tenure}")
    if new_rate is not None:
        new_rate = coerce_amount(new_rate, "new interest rate")
        if new_rate < 0:
            raise InvalidArgumentError(f"New interest rate cannot be negative, got {new_rate}")

    pending = sorted((e for e in emis if e.status in OPEN_STATUSES), key=lambda e: e.sequence)
    if not pending:
        raise NoPendingEMIsError(f"Loan {loan.account_number} has no pending EMIs to restructure")

    outstanding = outstanding_principal_of(pending)
    if outstanding <= 0:
        raise NoPendingEMIsError(f"Loan {loan.account_number} has no principal left to restructure")

    tenure = new_tenure if new_tenure is not None else len(pending)
    rate = new_rate if new_rate is not None else loan.interest_rate
    emi_amount = calculate_emi(outstanding, rate, tenure, InterestType.REDUCING)

    return _RestructureTerms(
        pending=pending,
        outstanding_principal=outstanding,
        tenure=tenure,
        rate=rate,
        emi_amount=emi_amount
    )


def preview_restructure(loan: LoanAccount, emis: Sequence[EMI],
                        new_tenure: Optional[int] = None,
                        new_rate: Optional[Number] = None) -> RestructurePreview:
    """Compare current terms with the proposed restructure. Mutates nothing."""
    terms = _compute_terms(loan, emis, new_tenure, new_rate)

    total_payable = round_money(terms.emi_amount * Decimal(terms.tenure))
    emi_reduction = round_money(loan.emi_amount - terms.emi_amount)
    if loan.emi_amount > 0:
        reduction_percent = round_money(emi_reduction * HUNDRED / loan.emi_amount)
    else:
        reduction_percent = ZERO

    return RestructurePreview(
        current=CurrentTerms(
            emi_amount=loan.emi_amount,
            remaining_emis=len(terms.pending),
            interest_rate=loan.interest_rate,
            outstanding_amount=loan.outstanding_amount
        ),
        proposed=ProposedTerms(
            emi_amount=terms.emi_amount,
            tenure=terms.tenure,
            interest_rate=terms.rate,
            outstanding_principal=terms.outstanding_principal,
            total_payable=total_payable,
            total_interest=round_money(total_payable - terms.outstanding_principal),
            emi_reduction=emi_reduction,
            emi_reduction_percent=reduction_percent
        )
    )


def restructure_loan(
    loan: LoanAccount,
    emis: Sequence[EMI],
    reason: str,
    new_tenure: Optional[int] = None,
    new_rate: Optional[Number] = None,
    start_from_next: bool = True,
    today: Optional[date] = None,
    processed_by: Optional[str] = None,
    npa_threshold_days: int = 90
) -> RestructureResult:
    """
    Replace the open installments with a new reducing-balance schedule.

    Args:
        loan: Loan to restructure (active or overdue)
        emis: The loan's full EMI ledger
        reason: Mandatory justification recorded in the history
        new_tenure: Installments in the new schedule (defaults to the open count)
        new_rate: New annual rate in percent (defaults to the current rate)
        start_from_next: Schedule from today; otherwise from the disbursement date
        today: Restructuring date
        processed_by: Operator recording the change

    Returns:
        RestructureResult with the full new ledger and the removed EMIs

    Raises:
        InvalidArgumentError: No new terms, or no reason
        InvalidStatusError: Loan is not active or overdue
        NoPendingEMIsError: Nothing left to restructure
    """
    if not reason or not reason.strip():
        raise InvalidArgumentError("A reason is required to restructure a loan")
    if loan.status not in RESTRUCTURABLE_STATUSES:
        raise InvalidStatusError(f"Only active or overdue loans can be restructured, loan is {loan.status.value}")

    today = today or date.today()
    terms = _compute_terms(loan, emis, new_tenure, new_rate)

    if start_from_next:
        schedule_start = today
    elif loan.disbursement is not None:
        schedule_start = loan.disbursement.disbursement_date
    else:
        schedule_start = loan.start_date

    schedule = generate_amortization_schedule(
        terms.outstanding_principal, terms.rate, terms.tenure, schedule_start, InterestType.REDUCING
    )

    removed_ids = {e.id for e in terms.pending}
    retained = sorted((e for e in emis if e.id not in removed_ids), key=lambda e: e.sequence)
    base_sequence = max((e.sequence for e in retained), default=0)

    new_emis = []
    for entry in schedule.entries:
        emi = EMI.from_schedule_entry(loan.id, entry)
        emi.sequence = base_sequence + entry.sequence
        new_emis.append(emi)

    record = RestructureRecord(
        restructure_date=today,
        old_tenure=loan.tenure_months,
        new_tenure=terms.tenure,
        old_rate=loan.interest_rate,
        new_rate=terms.rate,
        old_emi=loan.emi_amount,
        new_emi=terms.emi_amount,
        outstanding_principal=terms.outstanding_principal,
        reason=reason,
        processed_by=processed_by
    )

    ledger = retained + new_emis
    loan.restructure_history.append(record)
    loan.restructured = True
    loan.archived_paid_amount = round_money(
        loan.archived_paid_amount + sum((e.paid_amount for e in terms.pending), ZERO)
    )
    loan.interest_rate = terms.rate
    loan.interest_type = InterestType.REDUCING
    loan.emi_amount = terms.emi_amount
    loan.tenure_months = base_sequence + terms.tenure
    loan.end_date = schedule.summary.end_date
    loan.total_payable = round_money(sum((e.amount for e in ledger), ZERO) + loan.archived_paid_amount)
    loan.total_interest = round_money(loan.total_payable - loan.principal)

    if loan.status == LoanStatus.OVERDUE:
        loan.transition_to(LoanStatus.ACTIVE)
    loan.update_payment_stats(ledger, as_of=today, npa_threshold_days=npa_threshold_days)

    return RestructureResult(
        loan=loan,
        emis=ledger,
        new_emis=new_emis,
        removed_emis=list(terms.pending),
        record=record
    )
