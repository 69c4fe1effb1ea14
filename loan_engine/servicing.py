"""
Loan Servicing Module

LoanServicingManager is the transactional caller around the pure engine.
Every mutation of a loan runs under that loan's lock and inside
storage.atomic(), so the EMI change, the loan rollup and the derived status
commit together or not at all, and two writers never interleave on the
same loan. Events are published only after the transaction commits.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
from contextlib import contextmanager
import logging
import threading
import weakref

from .amortization import (
    EligibilityResult, ForeclosureQuote, calculate_foreclosure_amount,
    calculate_late_penalty, calculate_loan_eligibility
)
from .config import LoanEngineConfig, get_config
from .emi import EMI, EMIStatus, OPEN_STATUSES, PaymentMode, PaymentResult, parse_payment_mode
from .events import EventDispatcher, EventPayload, LoanEvent
from .exceptions import (
    AlreadyPaidError, AmountMismatchError, EMINotFoundError, InvalidArgumentError,
    InvalidStatusError, LoanEngineError, LoanNotFoundError, NoPendingEMIsError,
    ProductNotFoundError
)
from .loans import (
    ClosureType, LoanAccount, LoanStatus,
    generate_account_number, originate_loan
)
from .logging_config import log_action, setup_logging_from_config
from .money import ZERO, Number, round_money, to_decimal
from .products import Customer, LoanProduct
from .restructuring import (
    RestructurePreview, RestructureResult, outstanding_principal_of,
    preview_restructure, restructure_loan
)
from .risk import (
    CustomerCreditScore, RiskScoreResult, calculate_customer_credit_score,
    calculate_loan_risk_score
)
from .storage import StorageInterface

logger = logging.getLogger(__name__)


@dataclass
class BulkAllocation:
    emi_id: str
    sequence: int
    amount: Decimal
    status: EMIStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emi_id': self.emi_id,
            'sequence': self.sequence,
            'amount': str(self.amount),
            'status': self.status.value,
        }


@dataclass
class BulkPaymentResult:
    """How a lump-sum payment was spread across open EMIs"""
    loan_id: str
    paid_emis: List[BulkAllocation] = field(default_factory=list)
    excess_amount: Decimal = ZERO

    @property
    def total_applied(self) -> Decimal:
        return round_money(sum((a.amount for a in self.paid_emis), ZERO))

    @property
    def fully_paid_count(self) -> int:
        return sum(1 for a in self.paid_emis if a.status == EMIStatus.PAID)

    @property
    def partially_paid_count(self) -> int:
        return sum(1 for a in self.paid_emis if a.status == EMIStatus.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'paid_emis': [a.to_dict() for a in self.paid_emis],
            'excess_amount': str(self.excess_amount),
            'total_applied': str(self.total_applied),
            'fully_paid_count': self.fully_paid_count,
            'partially_paid_count': self.partially_paid_count,
        }


class LoanServicingManager:
    """
    Services loans end to end: origination, approval, disbursement,
    payments, waivers, restructuring, foreclosure, overdue marking and
    risk scoring.
    """

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LoanEngineConfig] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.clock = clock

        if self.config.configure_logging:
            setup_logging_from_config(self.config)

        self.loans_table = "loan_accounts"
        self.emis_table = "emis"
        self.products_table = "loan_products"

        # Entries disappear once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # Locking and persistence

    def _lock_for(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def _loan_transaction(self, loan_id: str, action: str) -> Iterator[None]:
        """Serialize writers on one loan and make their writes atomic"""
        with self._lock_for(loan_id):
            try:
                with self.storage.atomic():
                    yield
            except LoanEngineError as e:
                logger.warning(f"{action} failed for loan {loan_id}: {e.code} {e.message}")
                raise

    def _save_loan(self, loan: LoanAccount) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_emi(self, emi: EMI) -> None:
        self.storage.save(self.emis_table, emi.id, emi.to_dict())

    def _publish(self, event_type: LoanEvent, entity_type: str, entity_id: str,
                 data: Dict[str, Any]) -> None:
        if not self.config.enable_events:
            return
        self.dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))

    def _publish_status_change(self, loan: LoanAccount, previous: LoanStatus) -> None:
        if loan.status == previous:
            return
        data = {'from': previous.value, 'to': loan.status.value, 'account_number': loan.account_number}
        self._publish(LoanEvent.LOAN_STATUS_CHANGED, "loan", loan.id, data)
        if loan.status == LoanStatus.NPA:
            self._publish(LoanEvent.LOAN_NPA, "loan", loan.id, data)
        elif loan.status == LoanStatus.CLOSED:
            self._publish(LoanEvent.LOAN_CLOSED, "loan", loan.id, data)

    def _rollup(self, loan: LoanAccount, emis: List[EMI]) -> None:
        loan.update_payment_stats(emis, as_of=self.clock(),
                                  npa_threshold_days=self.config.npa_threshold_days)

    # Products

    def save_product(self, product: LoanProduct) -> LoanProduct:
        self.storage.save(self.products_table, product.id, product.to_dict())
        return product

    def get_product(self, product_id: str) -> LoanProduct:
        data = self.storage.load(self.products_table, product_id)
        if not data:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return LoanProduct.from_dict(data)

    # Reads

    def get_loan(self, loan_id: str) -> Optional[LoanAccount]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return LoanAccount.from_dict(data)
        return None

    def _require_loan(self, loan_id: str) -> LoanAccount:
        loan = self.get_loan(loan_id)
        if loan is None or loan.is_deleted:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_emis(self, loan_id: str, as_of: Optional[date] = None) -> List[EMI]:
        """EMIs for a loan by sequence, with overdue status materialized for as_of"""
        as_of = as_of or self.clock()
        emis = [EMI.from_dict(d) for d in self.storage.find(self.emis_table, {'loan_id': loan_id})]
        emis.sort(key=lambda e: e.sequence)
        for emi in emis:
            emi.materialize_due_state(as_of)
        return emis

    def get_emi(self, emi_id: str) -> Optional[EMI]:
        data = self.storage.load(self.emis_table, emi_id)
        if data:
            emi = EMI.from_dict(data)
            emi.materialize_due_state(self.clock())
            return emi
        return None

    def _require_emi(self, emi_id: str) -> EMI:
        emi = self.get_emi(emi_id)
        if emi is None:
            raise EMINotFoundError(f"EMI {emi_id} not found")
        return emi

    def _find_emi(self, emis: List[EMI], emi_id: str) -> EMI:
        # The EMI may have been replaced by a restructure since it was first read
        emi = next((e for e in emis if e.id == emi_id), None)
        if emi is None:
            raise EMINotFoundError(f"EMI {emi_id} not found")
        return emi

    def get_customer_loans(self, customer_id: str) -> List[LoanAccount]:
        """Get all non-deleted loans for a customer"""
        loans = [LoanAccount.from_dict(d) for d in self.storage.find(self.loans_table, {'customer_id': customer_id})]
        return [loan for loan in loans if not loan.is_deleted]

    def get_overdue_emis(self, as_of: Optional[date] = None) -> List[EMI]:
        """Open EMIs across all servicing loans whose due date has passed"""
        as_of = as_of or self.clock()
        result = []
        for loan in self._servicing_loans():
            result.extend(e for e in self.get_emis(loan.id, as_of)
                          if e.is_open and e.due_date < as_of)
        return sorted(result, key=lambda e: e.due_date)

    def get_upcoming_emis(self, days: int = 7, as_of: Optional[date] = None) -> List[EMI]:
        """Pending EMIs falling due within the next `days` days"""
        as_of = as_of or self.clock()
        horizon = as_of + timedelta(days=days)
        result = []
        for loan in self._servicing_loans():
            result.extend(e for e in self.get_emis(loan.id, as_of)
                          if e.status == EMIStatus.PENDING and as_of <= e.due_date <= horizon)
        return sorted(result, key=lambda e: e.due_date)

    def _servicing_loans(self) -> List[LoanAccount]:
        loans = [LoanAccount.from_dict(d) for d in self.storage.load_all(self.loans_table)]
        return [loan for loan in loans if loan.is_servicing and not loan.is_deleted]

    # Origination and lifecycle

    def check_affordability(self, customer: Customer, product_id: str,
                            tenure_months: int) -> EligibilityResult:
        """Largest principal the customer's income supports on this product"""
        product = self.get_product(product_id)
        if customer.monthly_income is None:
            raise InvalidArgumentError("Monthly income is required to check affordability")
        return calculate_loan_eligibility(
            customer.monthly_income, customer.existing_emis, product.interest_rate,
            tenure_months, self.config.max_emi_ratio
        )

    def originate_loan(
        self,
        customer: Customer,
        product_id: str,
        principal: Number,
        tenure_months: int,
        start_date: Optional[date] = None,
        auto_approve: bool = False,
        approved_by: Optional[str] = None
    ) -> LoanAccount:
        """
        Create a loan application with its EMI schedule.

        Raises:
            ProductNotFoundError: Unknown product
            InvalidArgumentError: Amount or tenure outside product bounds
            NotEligibleError: Customer fails eligibility
        """
        product = self.get_product(product_id)
        start_date = start_date or self.clock()

        with self.storage.atomic():
            account_number = generate_account_number(
                self.storage.count(self.loans_table) + 1, start_date, self.config.account_number_prefix
            )
            loan, emis = originate_loan(
                product, customer, principal, tenure_months, start_date, account_number,
                auto_approve=auto_approve, approved_by=approved_by
            )
            self._save_loan(loan)
            for emi in emis:
                self._save_emi(emi)

        log_action(logger, "info", f"Originated loan {loan.account_number}",
                   action="loan.originated", loan_id=loan.id,
                   extra={'principal': str(loan.principal), 'tenure_months': loan.tenure_months})
        self._publish(LoanEvent.LOAN_ORIGINATED, "loan", loan.id, {
            'account_number': loan.account_number,
            'customer_id': loan.customer_id,
            'principal': str(loan.principal),
            'emi_amount': str(loan.emi_amount),
            'status': loan.status.value,
        })
        if loan.status == LoanStatus.APPROVED:
            self._publish(LoanEvent.LOAN_APPROVED, "loan", loan.id, {'account_number': loan.account_number})
        return loan

    def approve_loan(self, loan_id: str, approved_by: Optional[str] = None,
                     remarks: Optional[str] = None) -> LoanAccount:
        with self._loan_transaction(loan_id, "approve"):
            loan = self._require_loan(loan_id)
            loan.approve(approved_by=approved_by, remarks=remarks, on=self.clock())
            self._save_loan(loan)

        logger.info(f"Loan {loan.account_number} approved by {approved_by}")
        self._publish(LoanEvent.LOAN_APPROVED, "loan", loan.id,
                      {'account_number': loan.account_number, 'approved_by': approved_by})
        return loan

    def reject_loan(self, loan_id: str, reason: str) -> LoanAccount:
        with self._loan_transaction(loan_id, "reject"):
            loan = self._require_loan(loan_id)
            loan.reject(reason)
            self._save_loan(loan)

        logger.info(f"Loan {loan.account_number} rejected: {reason}")
        self._publish(LoanEvent.LOAN_REJECTED, "loan", loan.id,
                      {'account_number': loan.account_number, 'reason': reason})
        return loan

    def cancel_loan(self, loan_id: str, reason: str) -> LoanAccount:
        with self._loan_transaction(loan_id, "cancel"):
            loan = self._require_loan(loan_id)
            loan.cancel(reason)
            self._save_loan(loan)

        logger.info(f"Loan {loan.account_number} cancelled: {reason}")
        self._publish(LoanEvent.LOAN_CANCELLED, "loan", loan.id,
                      {'account_number': loan.account_number, 'reason': reason})
        return loan

    def disburse_loan(self, loan_id: str, amount: Number,
                      mode: Union[PaymentMode, str] = PaymentMode.BANK_TRANSFER,
                      reference: Optional[str] = None,
                      bank_account: Optional[str] = None) -> LoanAccount:
        with self._loan_transaction(loan_id, "disburse"):
            loan = self._require_loan(loan_id)
            loan.disburse(amount, mode, reference, on=self.clock(),
                          tolerance=self.config.disbursement_tolerance_amount,
                          bank_account=bank_account)
            emis = self.get_emis(loan_id)
            self._rollup(loan, emis)
            for emi in emis:
                self._save_emi(emi)
            self._save_loan(loan)

        log_action(logger, "info", f"Disbursed {loan.disbursement.amount} on loan {loan.account_number}",
                   action="loan.disbursed", loan_id=loan.id)
        self._publish(LoanEvent.LOAN_DISBURSED, "loan", loan.id, {
            'account_number': loan.account_number,
            'amount': str(loan.disbursement.amount),
            'mode': loan.disbursement.mode.value,
        })
        return loan

    # Payments

    def _late_penalty(self, loan: LoanAccount, emi: EMI, payment_date: date) -> Decimal:
        # Levied once, on the first late payment against the installment
        if emi.penalty_amount > 0:
            return ZERO
        days_late = emi.calculate_days_late(payment_date)
        if days_late <= 0:
            return ZERO
        return calculate_late_penalty(emi.amount, days_late, loan.penalty_rule)

    def _require_servicing(self, loan: LoanAccount) -> None:
        if not loan.is_servicing:
            raise InvalidStatusError(f"Loan {loan.account_number} is {loan.status.value} and not accepting payments")

    def record_payment(
        self,
        emi_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        mode: Union[PaymentMode, str] = PaymentMode.CASH,
        reference: Optional[str] = None,
        waive_penalty: bool = False,
        remarks: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a payment against one EMI.

        The EMI is re-read under the loan lock, so a concurrent payment that
        already settled it surfaces as AlreadyPaidError here.

        Raises:
            EMINotFoundError, LoanNotFoundError
            AlreadyPaidError: The EMI is already paid
            InvalidStatusError: Loan not in servicing
            InvalidArgumentError: Bad amount or mode
        """
        loan_id = self._require_emi(emi_id).loan_id
        payment_date = payment_date or self.clock()

        with self._loan_transaction(loan_id, "payment"):
            loan = self._require_loan(loan_id)
            self._require_servicing(loan)
            emis = self.get_emis(loan_id)
            emi = self._find_emi(emis, emi_id)
            if emi.status == EMIStatus.PAID:
                raise AlreadyPaidError(f"EMI {emi.sequence} is already paid")

            penalty = ZERO if waive_penalty else self._late_penalty(loan, emi, payment_date)
            result = emi.record_payment(
                amount, payment_date, mode, reference,
                penalty_amount=penalty, remarks=remarks, recorded_by=recorded_by
            )
            previous = loan.status
            self._rollup(loan, emis)
            for e in emis:
                self._save_emi(e)
            self._save_loan(loan)

        log_action(logger, "info", f"Payment of {result.paid_amount} recorded on EMI {result.sequence}",
                   action="emi.payment_recorded", loan_id=loan_id, emi_id=emi_id,
                   user_id=recorded_by, extra={'status': result.status.value, 'days_late': result.days_late})
        self._publish(LoanEvent.EMI_PAYMENT_RECORDED, "emi", emi_id, result.to_dict())
        self._publish_status_change(loan, previous)
        return result

    def record_bulk_payment(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        mode: Union[PaymentMode, str] = PaymentMode.CASH,
        reference: Optional[str] = None,
        waive_penalty: bool = False,
        recorded_by: Optional[str] = None
    ) -> BulkPaymentResult:
        """
        Spread a lump sum across open EMIs oldest first. Each EMI receives
        at most its balance due; whatever is left is reported as excess.

        Inputs are validated before any EMI is touched. If an individual EMI
        rejects its share, allocation stops there and the EMIs already paid
        stay paid.
        """
        try:
            total = round_money(to_decimal(amount))
        except ValueError:
            raise InvalidArgumentError(f"Invalid payment amount: {amount!r}")
        if total <= 0:
            raise InvalidArgumentError(f"Payment amount must be positive, got {total}")
        mode = parse_payment_mode(mode)
        payment_date = payment_date or self.clock()

        with self._loan_transaction(loan_id, "bulk payment"):
            loan = self._require_loan(loan_id)
            self._require_servicing(loan)
            emis = self.get_emis(loan_id)
            open_emis = [e for e in emis if e.status in OPEN_STATUSES]
            if not open_emis:
                raise NoPendingEMIsError(f"Loan {loan.account_number} has no pending EMIs")

            result = BulkPaymentResult(loan_id=loan_id)
            remaining = total
            for emi in open_emis:
                if remaining <= 0:
                    break
                if not waive_penalty:
                    emi.levy_penalty(self._late_penalty(loan, emi, payment_date))
                share = min(remaining, emi.balance_due)
                if share <= 0:
                    continue
                try:
                    payment = emi.record_payment(share, payment_date, mode, reference,
                                                 recorded_by=recorded_by,
                                                 remarks="Bulk payment")
                except LoanEngineError as e:
                    logger.warning(f"Bulk payment stopped at EMI {emi.sequence} of loan {loan_id}: {e.message}")
                    break
                result.paid_emis.append(BulkAllocation(
                    emi_id=emi.id, sequence=emi.sequence, amount=share, status=payment.status
                ))
                remaining = round_money(remaining - share)

            result.excess_amount = remaining
            previous = loan.status
            self._rollup(loan, emis)
            for e in emis:
                self._save_emi(e)
            self._save_loan(loan)

        log_action(logger, "info", f"Bulk payment of {total} applied to {len(result.paid_emis)} EMIs",
                   action="emi.bulk_payment_recorded", loan_id=loan_id, user_id=recorded_by,
                   extra={'excess_amount': str(result.excess_amount)})
        self._publish(LoanEvent.EMI_BULK_PAYMENT_RECORDED, "loan", loan_id, result.to_dict())
        self._publish_status_change(loan, previous)
        return result

    def waive_penalty(self, emi_id: str, reason: str, amount: Optional[Number] = None,
                      waived_by: Optional[str] = None) -> Decimal:
        """Waive all or part of an EMI's late penalty. Returns the amount waived."""
        loan_id = self._require_emi(emi_id).loan_id

        with self._loan_transaction(loan_id, "penalty waiver"):
            loan = self._require_loan(loan_id)
            emis = self.get_emis(loan_id)
            emi = self._find_emi(emis, emi_id)
            waived = emi.waive_penalty(reason, amount, waived_by)
            previous = loan.status
            self._rollup(loan, emis)
            for e in emis:
                self._save_emi(e)
            self._save_loan(loan)

        log_action(logger, "info", f"Waived penalty {waived} on EMI {emi.sequence}",
                   action="emi.penalty_waived", loan_id=loan_id, emi_id=emi_id, user_id=waived_by,
                   extra={'reason': reason})
        self._publish(LoanEvent.EMI_PENALTY_WAIVED, "emi", emi_id,
                      {'amount': str(waived), 'reason': reason, 'waived_by': waived_by})
        self._publish_status_change(loan, previous)
        return waived

    def waive_emi(self, emi_id: str, reason: str, waived_by: Optional[str] = None) -> EMI:
        """Administratively waive the remaining balance of an EMI"""
        loan_id = self._require_emi(emi_id).loan_id

        with self._loan_transaction(loan_id, "EMI waiver"):
            loan = self._require_loan(loan_id)
            self._require_servicing(loan)
            emis = self.get_emis(loan_id)
            emi = self._find_emi(emis, emi_id)
            emi.waive(reason, waived_by)
            previous = loan.status
            self._rollup(loan, emis)
            for e in emis:
                self._save_emi(e)
            self._save_loan(loan)

        logger.info(f"EMI {emi.sequence} of loan {loan.account_number} waived: {reason}")
        self._publish_status_change(loan, previous)
        return emi

    # Restructuring

    def preview_restructure(self, loan_id: str, new_tenure: Optional[int] = None,
                            new_rate: Optional[Number] = None) -> RestructurePreview:
        loan = self._require_loan(loan_id)
        return preview_restructure(loan, self.get_emis(loan_id), new_tenure, new_rate)

    def restructure_loan(
        self,
        loan_id: str,
        reason: str,
        new_tenure: Optional[int] = None,
        new_rate: Optional[Number] = None,
        start_from_next: bool = True,
        processed_by: Optional[str] = None
    ) -> RestructureResult:
        with self._loan_transaction(loan_id, "restructure"):
            loan = self._require_loan(loan_id)
            previous = loan.status
            result = restructure_loan(
                loan, self.get_emis(loan_id), reason,
                new_tenure=new_tenure, new_rate=new_rate,
                start_from_next=start_from_next, today=self.clock(),
                processed_by=processed_by, npa_threshold_days=self.config.npa_threshold_days
            )
            for emi in result.removed_emis:
                self.storage.delete(self.emis_table, emi.id)
            for emi in result.emis:
                self._save_emi(emi)
            self._save_loan(loan)

        log_action(logger, "info", f"Restructured loan {loan.account_number}",
                   action="loan.restructured", loan_id=loan_id, user_id=processed_by,
                   extra=result.record.to_dict())
        self._publish(LoanEvent.LOAN_RESTRUCTURED, "loan", loan_id, result.record.to_dict())
        self._publish_status_change(loan, previous)
        return result

    # Foreclosure and closure

    def _build_foreclosure_quote(self, loan: LoanAccount, emis: List[EMI]) -> ForeclosureQuote:
        if not loan.can_foreclose():
            raise InvalidStatusError(f"Loan {loan.account_number} cannot be foreclosed while {loan.status.value}")
        open_emis = [e for e in emis if e.status in OPEN_STATUSES]
        if not open_emis:
            raise NoPendingEMIsError(f"Loan {loan.account_number} has nothing outstanding")

        principal = outstanding_principal_of(open_emis)
        remaining_interest = round_money(sum(
            (e.interest_component - min(e.paid_amount, e.interest_component) for e in open_emis), ZERO
        ))
        rebate = round_money(remaining_interest * self.config.interest_rebate)
        pending_penalty = round_money(sum(
            (max(ZERO, e.penalty_amount - e.penalty_paid - e.penalty_waived) for e in open_emis), ZERO
        ))
        rate = loan.prepayment_penalty_rate if loan.prepayment_allowed else ZERO

        quote = calculate_foreclosure_amount(principal, remaining_interest - rebate, rate, pending_penalty)
        quote.interest_rebate = rebate
        quote.pending_emis = len(open_emis)
        return quote

    def get_foreclosure_quote(self, loan_id: str) -> ForeclosureQuote:
        loan = self._require_loan(loan_id)
        return self._build_foreclosure_quote(loan, self.get_emis(loan_id))

    def foreclose_loan(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        mode: Union[PaymentMode, str] = PaymentMode.BANK_TRANSFER,
        reference: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> ForeclosureQuote:
        """
        Settle the loan in full. The amount must cover the foreclosure quote.

        Raises:
            InvalidStatusError: Loan not active, overdue or disbursed
            NoPendingEMIsError: Nothing outstanding
            AmountMismatchError: Amount short of the quote
        """
        try:
            amount = round_money(to_decimal(amount))
        except ValueError:
            raise InvalidArgumentError(f"Invalid foreclosure amount: {amount!r}")
        payment_date = payment_date or self.clock()

        with self._loan_transaction(loan_id, "foreclosure"):
            loan = self._require_loan(loan_id)
            emis = self.get_emis(loan_id)
            quote = self._build_foreclosure_quote(loan, emis)
            shortfall = quote.total_foreclosure_amount - amount
            if shortfall > self.config.disbursement_tolerance_amount:
                raise AmountMismatchError(
                    f"Foreclosure amount {amount} is short of {quote.total_foreclosure_amount}",
                    {'expected': str(quote.total_foreclosure_amount), 'received': str(amount)}
                )

            for emi in emis:
                if emi.status in OPEN_STATUSES:
                    emi.settle_by_foreclosure(payment_date, mode, reference)
            loan.mark_foreclosed(amount, payment_date, remarks)
            self._rollup(loan, emis)
            for emi in emis:
                self._save_emi(emi)
            self._save_loan(loan)

        log_action(logger, "info", f"Loan {loan.account_number} foreclosed for {amount}",
                   action="loan.foreclosed", loan_id=loan_id, extra=quote.to_dict())
        self._publish(LoanEvent.LOAN_FORECLOSED, "loan", loan_id,
                      {'amount': str(amount), 'quote': quote.to_dict()})
        return quote

    def close_loan(self, loan_id: str, closure_type: Union[ClosureType, str] = ClosureType.REGULAR,
                   remarks: Optional[str] = None) -> LoanAccount:
        with self._loan_transaction(loan_id, "close"):
            loan = self._require_loan(loan_id)
            previous = loan.status
            loan.close(closure_type, remarks, on=self.clock())
            self._save_loan(loan)

        logger.info(f"Loan {loan.account_number} closed ({loan.closure_type.value})")
        self._publish(LoanEvent.LOAN_CLOSED, "loan", loan_id, {
            'from': previous.value,
            'to': loan.status.value,
            'closure_type': loan.closure_type.value,
        })
        return loan

    def delete_loan(self, loan_id: str) -> LoanAccount:
        """Soft delete; the record stays in storage"""
        with self._loan_transaction(loan_id, "delete"):
            loan = self._require_loan(loan_id)
            loan.soft_delete()
            self._save_loan(loan)
        logger.info(f"Loan {loan.account_number} soft-deleted")
        return loan

    # Batch jobs

    def mark_overdue(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Materialize overdue EMIs and re-derive status for every servicing loan.
        A failure on one loan is logged and the job continues with the next.
        """
        as_of = as_of or self.clock()
        results = {"loans_processed": 0, "emis_marked_overdue": 0, "loans_npa": 0, "errors": 0}

        for candidate in self._servicing_loans():
            try:
                with self._loan_transaction(candidate.id, "mark overdue"):
                    loan = self._require_loan(candidate.id)
                    if not loan.is_servicing:
                        continue
                    emis = [EMI.from_dict(d) for d in
                            self.storage.find(self.emis_table, {'loan_id': loan.id})]
                    newly_overdue = [e for e in emis if e.materialize_due_state(as_of)]
                    previous = loan.status
                    loan.update_payment_stats(emis, as_of=as_of,
                                              npa_threshold_days=self.config.npa_threshold_days)
                    for emi in newly_overdue:
                        self._save_emi(emi)
                    self._save_loan(loan)
            except LoanEngineError:
                logger.exception(f"Overdue processing failed for loan {candidate.id}")
                results["errors"] += 1
                continue

            results["loans_processed"] += 1
            results["emis_marked_overdue"] += len(newly_overdue)
            if loan.status == LoanStatus.NPA:
                results["loans_npa"] += 1
            for emi in newly_overdue:
                self._publish(LoanEvent.EMI_OVERDUE, "emi", emi.id,
                              {'loan_id': loan.id, 'sequence': emi.sequence,
                               'due_date': emi.due_date.isoformat()})
            self._publish_status_change(loan, previous)

        logger.info(f"Overdue processing complete: {results}")
        return results

    # Risk

    def score_loan(self, loan_id: str, customer: Optional[Customer] = None) -> RiskScoreResult:
        """Score a loan and store the score and category on the account"""
        with self._loan_transaction(loan_id, "risk scoring"):
            loan = self._require_loan(loan_id)
            result = calculate_loan_risk_score(loan, self.get_emis(loan_id), customer, as_of=self.clock())
            loan.apply_risk_score(result.score, result.calculated_at)
            self._save_loan(loan)

        logger.info(f"Loan {loan.account_number} scored {result.score} ({result.category.code})")
        self._publish(LoanEvent.RISK_SCORED, "loan", loan_id,
                      {'score': result.score, 'category': result.category.code})
        return result

    def score_customer(self, customer: Customer) -> CustomerCreditScore:
        loans: List[Tuple[LoanAccount, List[EMI]]] = [
            (loan, self.get_emis(loan.id)) for loan in self.get_customer_loans(customer.id)
        ]
        return calculate_customer_credit_score(loans, customer, as_of=self.clock())
