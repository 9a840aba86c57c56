from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from payportal.logging import get_logger
from payportal.service.errors import (
    BadRequestError,
    InsufficientFunds,
    NotFoundError,
    ValidationError,
)
from payportal.service.store import BankStore
from payportal.storage.common import month_bounds, spending_by_category, to_money
from payportal.storage.errors import InsufficientBalance
from payportal.storage.models import (
    TRANSACTION_CATEGORIES,
    TRANSACTION_TYPES,
    Transaction,
    User,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MIN_DEPOSIT = Decimal("0.01")
MAX_DEPOSIT = Decimal("1000000")
# Largest value a NUMERIC(14, 2) column holds.
MAX_SALARY = Decimal("999999999999.99")
MAX_TRANSACTION_PAGE = 50


class BalanceEngine:
    """Sole writer of ``User.balance``.

    Every mutation goes through the store's atomic ledger primitives, so a
    balance change and its transaction row land together or not at all.
    """

    def __init__(self, store: BankStore) -> None:
        self.store = store

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def prepare_entry(
        self,
        user: User,
        signed_amount: Any,
        *,
        type: str,
        category: str = "other",
        description: Optional[str] = None,
        payment_id: Optional[str] = None,
        related_party: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Build an unapplied ledger row.

        The store fills in ``balance_after`` and the timestamps once it holds
        the owner's balance lock.
        """
        if type not in TRANSACTION_TYPES:
            raise ValidationError(f"unsupported transaction type: {type}")
        if category not in TRANSACTION_CATEGORIES:
            raise ValidationError(f"unsupported transaction category: {category}")
        return Transaction(
            id=new_id(),
            user_id=user.id,
            type=type,
            amount=to_money(signed_amount),
            currency=user.currency,
            category=category,
            description=description,
            payment_id=payment_id,
            related_party=related_party,
            metadata=metadata,
        )

    def apply_ledger_entry(
        self, user_id: str, signed_amount: Any, **context: Any
    ) -> Tuple[Decimal, Transaction]:
        """Add ``signed_amount`` to the balance and append the matching row.

        Debits that would take the balance below zero raise InsufficientFunds
        and leave both the balance and the history untouched.
        """
        user = self._require_user(user_id)
        entry = self.prepare_entry(user, signed_amount, **context)
        try:
            stored = self.store.append_transaction(entry)
        except InsufficientBalance as exc:
            logger.warning(
                "ledger_entry_rejected",
                user_id=user_id,
                amount=str(entry.amount),
                balance=exc.detail.get("balance"),
            )
            raise InsufficientFunds("Insufficient funds", detail=exc.detail) from exc
        logger.info(
            "ledger_entry_applied",
            user_id=user_id,
            transaction_id=stored.id,
            type=stored.type,
            amount=str(stored.amount),
            balance_after=str(stored.balance_after),
        )
        return stored.balance_after, stored

    def deposit(
        self,
        user_id: str,
        amount: Any,
        *,
        description: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Decimal, Transaction]:
        try:
            if amount is None or isinstance(amount, bool):
                raise ValueError("missing amount")
            value = to_money(amount)
        except ValueError as exc:
            raise BadRequestError("Amount must be greater than 0") from exc
        if value < MIN_DEPOSIT:
            raise BadRequestError("Amount must be greater than 0")
        if value > MAX_DEPOSIT:
            raise BadRequestError("Amount must not exceed 1,000,000")
        return self.apply_ledger_entry(
            user_id,
            value,
            type="deposit",
            category="salary",
            description=(description or "").strip() or "Deposit",
            metadata={"ip": ip or "unknown", "userAgent": user_agent or "Unknown"},
        )

    def recalculate(self, user_id: str) -> Dict[str, Any]:
        """Replay completed transactions from zero and repair drift."""
        result = self.store.recalculate_balance(user_id)
        if result is None:
            raise NotFoundError("User not found")
        logger.info(
            "balance_recalculated",
            user_id=user_id,
            old_balance=str(result["oldBalance"]),
            new_balance=str(result["newBalance"]),
            transactions_processed=result["transactionsProcessed"],
            transactions_updated=result["transactionsUpdated"],
        )
        return result

    def balance_summary(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        now = utcnow()
        month_start, _ = month_bounds(now.year, now.month)
        completed = self.store.list_transactions(user_id)
        this_month = [t for t in completed if t.transaction_date >= month_start]
        spent = sum((abs(t.amount) for t in this_month if t.is_debit), Decimal("0"))
        return {
            "balance": user.balance,
            "currency": user.currency,
            "accountNumber": user.account_number,
            "accountType": user.account_type,
            "accountHolder": user.full_name,
            "monthlySalary": user.monthly_salary,
            "monthlySpending": to_money(spent),
            "transactionCount": len(completed),
        }

    def list_transactions(
        self,
        user_id: str,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 20,
    ) -> List[Transaction]:
        limit = max(1, min(MAX_TRANSACTION_PAGE, limit))
        return self.store.list_transactions(
            user_id, type=type or None, category=category or None, limit=limit
        )

    def spending(
        self, user_id: str, *, month: Optional[int] = None, year: Optional[int] = None
    ) -> Dict[str, Any]:
        now = utcnow()
        month = month or now.month
        year = year or now.year
        if not 1 <= month <= 12:
            raise BadRequestError("Month must be between 1 and 12")
        start, end = month_bounds(year, month)
        rows = self.store.list_transactions(user_id, since=start, until=end)
        return {"month": month, "year": year, "spending": spending_by_category(rows)}

    def update_monthly_salary(self, user_id: str, salary: Any) -> Decimal:
        try:
            if salary is None or isinstance(salary, bool):
                raise ValueError("missing salary")
            value = to_money(salary)
        except ValueError as exc:
            raise BadRequestError("Monthly salary must be 0 or greater") from exc
        if value < 0:
            raise BadRequestError("Monthly salary must be 0 or greater")
        if value > MAX_SALARY:
            raise BadRequestError("Monthly salary is too large")
        user = self.store.update_monthly_salary(user_id, value)
        if not user:
            raise NotFoundError("User not found")
        logger.info("monthly_salary_updated", user_id=user_id)
        return user.monthly_salary

