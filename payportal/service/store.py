from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from payportal.storage.models import (
    Beneficiary,
    Payment,
    StatusChange,
    Transaction,
    User,
)


class BankStore(Protocol):
    """Method set shared by MemoryStore and PostgresStore."""

    def create_user(
        self,
        *,
        firstname: str,
        lastname: str,
        id_number: str,
        account_number: str,
        username: str,
        role: str = ...,
        currency: str = ...,
        account_type: str = ...,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def find_user_by_credentials(
        self, username: str, account_number: str
    ) -> Optional[User]: ...

    def list_users(
        self,
        roles: Optional[Sequence[str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]: ...

    def count_users_by_role(self) -> Dict[str, int]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def update_monthly_salary(self, user_id: str, salary: Decimal) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_mfa_secret(self, user_id: str, secret: str) -> User: ...

    def enable_mfa(self, user_id: str, backup_codes: Sequence[str]) -> User: ...

    def disable_mfa(self, user_id: str) -> Optional[User]: ...

    def consume_backup_code(self, user_id: str, code: str) -> Optional[int]: ...

    def create_payment(self, payment: Payment) -> Payment: ...

    def get_payment(self, payment_ref: str) -> Optional[Payment]: ...

    def list_payments(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> List[Payment]: ...

    def transition_payment(
        self,
        payment_ref: str,
        *,
        to_status: str,
        change: StatusChange,
        ledger_entry: Optional[Transaction] = None,
    ) -> Optional[Tuple[Payment, Optional[Transaction]]]: ...

    def append_transaction(self, entry: Transaction) -> Transaction: ...

    def list_transactions(
        self,
        user_id: str,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = "completed",
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]: ...

    def recalculate_balance(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    def create_beneficiary(self, beneficiary: Beneficiary) -> Beneficiary: ...

    def find_beneficiary(
        self, user_id: str, account_number: str, *, active_only: bool = True
    ) -> Optional[Beneficiary]: ...

    def mark_beneficiary_used(self, beneficiary_id: str) -> Optional[Beneficiary]: ...
