from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from payportal.logging import get_logger
from payportal.service.auth import AuthContext
from payportal.service.errors import (
    InsufficientFunds,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from payportal.service.ledger import BalanceEngine
from payportal.service.store import BankStore
from payportal.storage.common import summarize_payments
from payportal.storage.errors import InsufficientBalance, StaleStatus
from payportal.storage.models import (
    OPEN_PAYMENT_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_PENDING,
    TERMINAL_PAYMENT_STATUSES,
    Payment,
    StatusChange,
    User,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_REASON = "No reason provided"


def normalize_decision(decision: Optional[str]) -> str:
    value = (decision or "").strip().lower()
    if value not in TERMINAL_PAYMENT_STATUSES:
        raise ValidationError(
            "Invalid status. Must be one of: completed, failed, cancelled",
            detail=[{"field": "status", "message": "Must be one of: completed, failed, cancelled"}],
        )
    return value


class ApprovalWorkflow:
    """Staff decisions on customer payments.

    A decision moves an open payment to a terminal status exactly once. An
    approval debits the customer in the same store transaction that flips the
    status, so the money and the status never disagree.
    """

    def __init__(self, store: BankStore, ledger: BalanceEngine) -> None:
        self.store = store
        self.ledger = ledger

    def _load(self, payment_ref: str) -> Payment:
        payment = self.store.get_payment(payment_ref)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    def decide(
        self,
        payment_ref: str,
        decision: Optional[str],
        reason: Optional[str],
        actor: AuthContext,
    ) -> Payment:
        to_status = normalize_decision(decision)
        payment = self._load(payment_ref)
        if payment.status not in OPEN_PAYMENT_STATUSES:
            raise InvalidStateTransition(
                f"Cannot update payment with status: {payment.status}",
                detail={"status": payment.status},
            )

        now = utcnow()
        change = StatusChange(
            from_status=payment.status,
            to_status=to_status,
            updated_by=actor.user_id,
            updated_by_username=actor.username,
            reason=(reason or "").strip() or DEFAULT_REASON,
            timestamp=now,
        )
        entry = None
        if to_status == PAYMENT_COMPLETED:
            customer = self.store.get_user(payment.user_id)
            if not customer:
                raise NotFoundError("Customer not found")
            # Funds are checked under the store lock, after the status check
            entry = self.ledger.prepare_entry(
                customer,
                -payment.amount,
                type="payment",
                category="other",
                description=f"Payment to {payment.recipient_name} - {payment.payment_reference}",
                payment_id=payment.payment_id,
                related_party={
                    "name": payment.recipient_name,
                    "accountNumber": payment.recipient_account,
                },
                metadata={
                    "paymentId": payment.payment_id,
                    "recipient": payment.recipient_name,
                    "swiftCode": payment.swift_code,
                    "approvedBy": actor.username,
                    "approvedAt": now.isoformat(),
                },
            )

        try:
            result = self.store.transition_payment(
                payment.id, to_status=to_status, change=change, ledger_entry=entry
            )
        except StaleStatus as exc:
            current = exc.detail.get("status", "unknown")
            logger.warning(
                "payment_transition_conflict",
                payment_id=payment.payment_id,
                status=current,
                actor=actor.username,
            )
            raise InvalidStateTransition(
                f"Cannot update payment with status: {current}", detail={"status": current}
            ) from exc
        except InsufficientBalance as exc:
            raise self._insufficient(payment, exc.detail.get("balance")) from exc
        if result is None:
            raise NotFoundError("Payment not found")
        updated, applied = result

        logger.info(
            "payment_status_changed",
            payment_id=updated.payment_id,
            from_status=change.from_status,
            to_status=to_status,
            actor=actor.username,
            actor_role=actor.role,
            amount=str(updated.amount),
            transaction_id=applied.id if applied else None,
            balance_after=str(applied.balance_after) if applied else None,
        )
        if applied is not None:
            self._mark_beneficiary_used(updated)
        return updated

    @staticmethod
    def _insufficient(payment: Payment, balance: Any) -> InsufficientFunds:
        logger.warning(
            "payment_approval_insufficient_funds",
            payment_id=payment.payment_id,
            balance=str(balance),
            amount=str(payment.amount),
        )
        return InsufficientFunds(
            f"Insufficient balance. Customer has {balance}, payment requires {payment.amount}",
            detail={"balance": str(balance), "required": str(payment.amount)},
        )

    def _mark_beneficiary_used(self, payment: Payment) -> None:
        try:
            beneficiary = self.store.find_beneficiary(
                payment.user_id, payment.recipient_account
            )
            if beneficiary:
                self.store.mark_beneficiary_used(beneficiary.id)
        except Exception as exc:
            logger.warning(
                "beneficiary_usage_update_failed",
                payment_id=payment.payment_id,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_pending(self, *, page: int = 1, limit: int = 10) -> Tuple[List[Payment], int]:
        payments = self.store.list_payments(
            statuses=[PAYMENT_PENDING], order_by="created_at"
        )
        start = (page - 1) * limit
        return payments[start : start + limit], len(payments)

    def history(
        self, *, status: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> Tuple[List[Payment], int]:
        status = (status or "").lower()
        if status in TERMINAL_PAYMENT_STATUSES:
            statuses = [status]
        else:
            statuses = list(TERMINAL_PAYMENT_STATUSES)
        payments = self.store.list_payments(statuses=statuses, order_by="updated_at")
        start = (page - 1) * limit
        return payments[start : start + limit], len(payments)

    def stats(self) -> Dict[str, Any]:
        return summarize_payments(self.store.list_payments())

    def details(self, payment_ref: str) -> Tuple[Payment, Optional[User]]:
        payment = self._load(payment_ref)
        return payment, self.store.get_user(payment.user_id)

    def customers_for(self, payments: Iterable[Payment]) -> Dict[str, User]:
        customers: Dict[str, User] = {}
        for payment in payments:
            if payment.user_id in customers:
                continue
            user = self.store.get_user(payment.user_id)
            if user:
                customers[user.id] = user
        return customers
