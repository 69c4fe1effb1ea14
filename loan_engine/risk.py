"""
Risk Scoring Module

Heuristic 0-100 credit score for a loan from its repayment behaviour, and a
principal-weighted score across a customer's loans. Higher is better.

Factors and weights:
    payment_history      40  on-time share of paid EMIs, less severe lateness
    outstanding_dues     25  size and count of overdue EMIs
    credit_utilization   15  principal against annual income
    account_age          10  months since the loan started
    payment_consistency  10  average distance between due and paid dates
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .emi import EMI, EMIStatus
from .loans import LoanAccount, LoanStatus, RiskCategory
from .money import ZERO, HUNDRED, round_money, round_whole
from .products import Customer

FACTOR_WEIGHTS = {
    'payment_history': 40,
    'outstanding_dues': 25,
    'credit_utilization': 15,
    'account_age': 10,
    'payment_consistency': 10,
}

DEFAULT_SCORE = 50
SEVERE_LATE_DAYS = 30
EXCLUDED_STATUSES = (LoanStatus.REJECTED, LoanStatus.CANCELLED)


@dataclass
class FactorScore:
    score: int
    weight: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'score': self.score, 'weight': self.weight, 'details': self.details}


@dataclass
class RiskScoreResult:
    score: int
    category: RiskCategory
    breakdown: Dict[str, FactorScore]
    recommendations: List[str]
    calculated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'category': {
                'label': self.category.label,
                'risk': self.category.code,
                'color': self.category.color,
            },
            'breakdown': {name: factor.to_dict() for name, factor in self.breakdown.items()},
            'recommendations': list(self.recommendations),
            'calculated_at': self.calculated_at.isoformat(),
        }


@dataclass
class LoanScore:
    loan_id: str
    account_number: str
    score: int
    principal: Decimal


@dataclass
class CustomerCreditScore:
    score: int
    category: RiskCategory
    loans_analyzed: int
    loan_scores: List[LoanScore] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'score': self.score,
            'category': {
                'label': self.category.label,
                'risk': self.category.code,
                'color': self.category.color,
            },
            'loans_analyzed': self.loans_analyzed,
            'loan_scores': [
                {'loan_id': s.loan_id, 'account_number': s.account_number,
                 'score': s.score, 'principal': str(s.principal)}
                for s in self.loan_scores
            ],
        }
        if self.message:
            result['message'] = self.message
        return result


def _clamp(value: Decimal) -> int:
    return round_whole(min(HUNDRED, max(ZERO, value)))


def _payment_history(emis: Sequence[EMI]) -> Tuple[int, Dict[str, Any]]:
    paid = [e for e in emis if e.status == EMIStatus.PAID]
    if not paid:
        return DEFAULT_SCORE, {'message': 'No payment history yet'}

    on_time = sum(1 for e in paid if e.days_late <= 0)
    severe = sum(1 for e in paid if e.days_late >= SEVERE_LATE_DAYS)
    on_time_pct = Decimal(on_time) * HUNDRED / Decimal(len(paid))
    score = on_time_pct - Decimal(severe * 5)

    return _clamp(score), {
        'total_paid': len(paid),
        'on_time': on_time,
        'late': len(paid) - on_time,
        'severe_late': severe,
        'on_time_percentage': str(round_money(on_time_pct)),
    }


def _outstanding_dues(loan: LoanAccount, emis: Sequence[EMI]) -> Tuple[int, Dict[str, Any]]:
    overdue = [e for e in emis if e.status == EMIStatus.OVERDUE]
    total_overdue = round_money(sum((e.amount + e.penalty_amount for e in overdue), ZERO))
    if loan.principal > 0:
        overdue_pct = total_overdue * HUNDRED / loan.principal
    else:
        overdue_pct = ZERO

    score = HUNDRED
    if overdue:
        score = HUNDRED - overdue_pct * 2 - Decimal(len(overdue) * 5)
        if overdue_pct > 25:
            score -= 20

    return _clamp(score), {
        'overdue_count': len(overdue),
        'total_overdue': str(total_overdue),
        'overdue_percentage': str(round_money(overdue_pct)),
    }


def _credit_utilization(loan: LoanAccount, customer: Optional[Customer]) -> Tuple[int, Dict[str, Any]]:
    income = customer.monthly_income if customer else None
    if not income:
        return 70, {'message': 'Income data not available'}

    ratio = loan.principal * HUNDRED / (income * 12)
    if ratio <= 30:
        score = HUNDRED
    elif ratio <= 50:
        score = HUNDRED - (ratio - 30)
    elif ratio <= 80:
        score = Decimal('70') - (ratio - 50) * Decimal('0.5')
    else:
        score = Decimal('55') - (ratio - 80) * Decimal('0.5')

    return _clamp(score), {
        'loan_to_annual_income': str(round_money(ratio)),
        'monthly_income': str(income),
    }


def _account_age(loan: LoanAccount, as_of: date) -> Tuple[int, Dict[str, Any]]:
    days = (as_of - loan.start_date).days
    months = max(0, days // 30)
    m = Decimal(months)

    if months <= 3:
        score = 40 + m * Decimal('6.67')
    elif months <= 6:
        score = 60 + (m - 3) * Decimal('3.33')
    elif months <= 12:
        score = 70 + (m - 6) * Decimal('2.5')
    else:
        score = 85 + min(Decimal('15'), (m - 12) * Decimal('0.5'))

    return _clamp(score), {'months_active': months}


def _payment_consistency(emis: Sequence[EMI]) -> Tuple[int, Dict[str, Any]]:
    paid = [e for e in emis if e.status == EMIStatus.PAID and e.paid_date is not None]
    if len(paid) < 2:
        return 70, {'message': 'Insufficient payment data'}

    deviations = [abs((e.paid_date - e.due_date).days) for e in paid]
    avg = Decimal(sum(deviations)) / Decimal(len(deviations))

    if avg <= 0:
        score = HUNDRED
    elif avg <= 3:
        score = Decimal('90')
    elif avg <= 7:
        score = Decimal('75')
    elif avg <= 15:
        score = Decimal('60')
    else:
        score = max(Decimal('30'), Decimal('60') - (avg - 15))

    return _clamp(score), {'average_deviation_days': str(round_money(avg))}


def _recommendations(score: int, breakdown: Dict[str, FactorScore]) -> List[str]:
    recommendations = []
    if breakdown['payment_history'].score < 70:
        recommendations.append("Focus on making payments on or before due dates")
    if breakdown['outstanding_dues'].score < 60:
        recommendations.append("Clear overdue EMIs to improve credit standing")
    if breakdown['credit_utilization'].score < 60:
        recommendations.append("Consider reducing loan burden relative to income")
    if breakdown['payment_consistency'].score < 70:
        recommendations.append("Maintain consistent payment timing each month")
    if score >= 75 and not recommendations:
        recommendations.append("Excellent credit behavior! Keep it up.")
    return recommendations


def calculate_loan_risk_score(
    loan: LoanAccount,
    emis: Sequence[EMI],
    customer: Optional[Customer] = None,
    as_of: Optional[date] = None,
    calculated_at: Optional[datetime] = None
) -> RiskScoreResult:
    """
    Score a single loan from its EMI ledger.

    Args:
        loan: Loan account
        emis: The loan's EMIs (status should already be materialized for as_of)
        customer: Borrower snapshot; income drives the utilization factor
        as_of: Reference date for account age
        calculated_at: Timestamp recorded on the result

    Returns:
        RiskScoreResult with an integer score in [0, 100]
    """
    as_of = as_of or date.today()
    factors = {
        'payment_history': _payment_history(emis),
        'outstanding_dues': _outstanding_dues(loan, emis),
        'credit_utilization': _credit_utilization(loan, customer),
        'account_age': _account_age(loan, as_of),
        'payment_consistency': _payment_consistency(emis),
    }

    breakdown = {
        name: FactorScore(score=score, weight=FACTOR_WEIGHTS[name], details=details)
        for name, (score, details) in factors.items()
    }
    weighted = sum(Decimal(f.score * f.weight) for f in breakdown.values()) / HUNDRED
    score = _clamp(weighted)

    return RiskScoreResult(
        score=score,
        category=RiskCategory.from_score(score),
        breakdown=breakdown,
        recommendations=_recommendations(score, breakdown),
        calculated_at=calculated_at or datetime.now(timezone.utc)
    )


def calculate_customer_credit_score(
    loans: Sequence[Tuple[LoanAccount, Sequence[EMI]]],
    customer: Optional[Customer] = None,
    as_of: Optional[date] = None
) -> CustomerCreditScore:
    """
    Principal-weighted mean of loan scores. Rejected, cancelled and
    deleted loans are ignored; no history scores 50.
    """
    if not loans:
        return CustomerCreditScore(
            score=DEFAULT_SCORE,
            category=RiskCategory.from_score(DEFAULT_SCORE),
            loans_analyzed=0,
            message='No loan history available'
        )

    loan_scores = []
    weighted_total = ZERO
    total_weight = ZERO
    for loan, emis in loans:
        if loan.status in EXCLUDED_STATUSES or loan.is_deleted:
            continue
        result = calculate_loan_risk_score(loan, emis, customer, as_of)
        loan_scores.append(LoanScore(
            loan_id=loan.id,
            account_number=loan.account_number,
            score=result.score,
            principal=loan.principal
        ))
        weighted_total += Decimal(result.score) * loan.principal
        total_weight += loan.principal

    if total_weight > 0:
        score = _clamp(weighted_total / total_weight)
    else:
        score = DEFAULT_SCORE

    return CustomerCreditScore(
        score=score,
        category=RiskCategory.from_score(score),
        loans_analyzed=len(loan_scores),
        loan_scores=loan_scores,
        message=None if loan_scores else 'No loan history available'
    )
