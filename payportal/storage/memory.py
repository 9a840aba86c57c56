from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from payportal.logging import get_logger
from payportal.storage.common import (
    MFASecretCipher,
    ledger_order,
    replay_balances,
    status_change_from_dict,
    status_change_to_dict,
    to_money,
)
from payportal.storage.errors import (
    ConstraintViolation,
    InsufficientBalance,
    StaleStatus,
)
from payportal.storage.models import (
    OPEN_PAYMENT_STATUSES,
    ROLE_CUSTOMER,
    Beneficiary,
    Payment,
    StatusChange,
    Transaction,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store with JSON snapshots for local runs and tests."""

    def __init__(
        self, fs_root: str = "/tmp/payportal", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.payments: Dict[str, Payment] = {}
        self.transactions: Dict[str, List[Transaction]] = {}
        self.beneficiaries: Dict[str, Beneficiary] = {}
        # RLock so ledger helpers can nest inside payment transitions
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = MFASecretCipher(mfa_encryption_key, self.fs_root)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        firstname: str,
        lastname: str,
        id_number: str,
        account_number: str,
        username: str,
        role: str = ROLE_CUSTOMER,
        currency: str = "ZAR",
        account_type: str = "Savings",
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.account_number == account_number:
                    raise ConstraintViolation(
                        "account number already exists", {"field": "accountNumber"}
                    )
                if existing.id_number == id_number:
                    raise ConstraintViolation(
                        "id number already exists", {"field": "idNumber"}
                    )
            user = User(
                id=new_id(),
                firstname=firstname,
                lastname=lastname,
                id_number=id_number,
                account_number=account_number,
                username=username,
                role=role,
                currency=currency,
                account_type=account_type,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return copy.deepcopy(user) if user else None

    def find_user_by_credentials(
        self, username: str, account_number: str
    ) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.username == username and u.account_number == account_number
                ),
                None,
            )
            return copy.deepcopy(user) if user else None

    def list_users(
        self,
        roles: Optional[Sequence[str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if not roles or u.role in roles]
            ordered = sorted(results, key=lambda u: u.created_at, reverse=True)
            ordered = ordered[offset : offset + limit]
            return [copy.deepcopy(u) for u in ordered]

    def count_users_by_role(self) -> Dict[str, int]:
        with self._data_lock:
            counts: Dict[str, int] = {}
            for user in self.users.values():
                counts[user.role] = counts.get(user.role, 0) + 1
            return counts

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def update_monthly_salary(self, user_id: str, salary: Decimal) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.monthly_salary = to_money(salary)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user with its credentials, ledger and beneficiaries.

        Payments are kept as an audit trail, so an owner of any payment raises
        ConstraintViolation.
        """
        with self._data_lock:
            if user_id not in self.users:
                return False
            if any(p.user_id == user_id for p in self.payments.values()):
                raise ConstraintViolation("user owns payments", {"user_id": user_id})
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.transactions.pop(user_id, None)
            self.beneficiaries = {
                key: b for key, b in self.beneficiaries.items() if b.user_id != user_id
            }
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    def set_mfa_secret(self, user_id: str, secret: str) -> User:
        """Store an unconfirmed TOTP seed, resetting any previous MFA state."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.mfa_secret = secret
            user.mfa_enabled = False
            user.mfa_setup_complete = False
            user.mfa_backup_codes = []
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def enable_mfa(self, user_id: str, backup_codes: Sequence[str]) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            if not user.mfa_secret:
                raise ConstraintViolation("mfa secret missing", {"user_id": user_id})
            user.mfa_enabled = True
            user.mfa_setup_complete = True
            user.mfa_backup_codes = list(backup_codes)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def disable_mfa(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.mfa_secret = None
            user.mfa_enabled = False
            user.mfa_setup_complete = False
            user.mfa_backup_codes = []
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def consume_backup_code(self, user_id: str, code: str) -> Optional[int]:
        """Remove ``code`` if present; returns the number of codes left or None."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code not in user.mfa_backup_codes:
                return None
            user.mfa_backup_codes = [c for c in user.mfa_backup_codes if c != code]
            user.updated_at = utcnow()
            self._persist_state()
            return len(user.mfa_backup_codes)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(self, payment: Payment) -> Payment:
        with self._data_lock:
            if payment.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": payment.user_id})
            if any(p.payment_id == payment.payment_id for p in self.payments.values()):
                raise ConstraintViolation(
                    "payment id already exists", {"field": "paymentId"}
                )
            stored = copy.deepcopy(payment)
            self.payments[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def _find_payment(self, payment_ref: str) -> Optional[Payment]:
        payment = self.payments.get(payment_ref)
        if payment:
            return payment
        return next(
            (p for p in self.payments.values() if p.payment_id == payment_ref), None
        )

    def get_payment(self, payment_ref: str) -> Optional[Payment]:
        """Look up by internal id or by the human-readable paymentId."""
        with self._data_lock:
            payment = self._find_payment(payment_ref)
            return copy.deepcopy(payment) if payment else None

    def list_payments(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> List[Payment]:
        with self._data_lock:
            results = [
                p
                for p in self.payments.values()
                if (not user_id or p.user_id == user_id)
                and (not statuses or p.status in statuses)
            ]
            results.sort(key=lambda p: getattr(p, order_by), reverse=True)
            if limit is not None:
                results = results[:limit]
            return [copy.deepcopy(p) for p in results]

    def transition_payment(
        self,
        payment_ref: str,
        *,
        to_status: str,
        change: StatusChange,
        ledger_entry: Optional[Transaction] = None,
    ) -> Optional[Tuple[Payment, Optional[Transaction]]]:
        """Move an open payment to ``to_status`` as one atomic step.

        When ``ledger_entry`` is given it is applied against the owner's
        balance under the same lock; an insufficient balance aborts the whole
        transition. Raises StaleStatus if the payment is no longer open.
        """
        with self._data_lock:
            payment = self._find_payment(payment_ref)
            if not payment:
                return None
            if payment.status not in OPEN_PAYMENT_STATUSES:
                raise StaleStatus(
                    "payment has already been processed",
                    {"status": payment.status, "paymentId": payment.payment_id},
                )
            applied: Optional[Transaction] = None
            if ledger_entry is not None:
                applied = self._apply_entry_locked(ledger_entry)
            payment.status = to_status
            payment.status_history.append(change)
            payment.updated_at = change.timestamp
            self._persist_state()
            return copy.deepcopy(payment), copy.deepcopy(applied)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _apply_entry_locked(self, entry: Transaction) -> Transaction:
        user = self.users.get(entry.user_id)
        if not user:
            raise ConstraintViolation("user does not exist", {"user_id": entry.user_id})
        amount = to_money(entry.amount)
        new_balance = to_money(user.balance + amount)
        if amount < 0 and new_balance < 0:
            raise InsufficientBalance(
                "insufficient funds",
                {"balance": str(user.balance), "amount": str(amount)},
            )
        stored = copy.deepcopy(entry)
        stored.amount = amount
        stored.balance_after = new_balance
        # Stamped under the lock so creation order matches the balance chain.
        history = self.transactions.setdefault(user.id, [])
        now = utcnow()
        if history and now <= history[-1].created_at:
            now = history[-1].created_at + timedelta(microseconds=1)
        stored.transaction_date = now
        stored.created_at = now
        user.balance = new_balance
        user.updated_at = now
        history.append(stored)
        return stored

    def append_transaction(self, entry: Transaction) -> Transaction:
        """Apply a signed amount to the owner's balance and record it."""
        with self._data_lock:
            stored = self._apply_entry_locked(entry)
            self._persist_state()
            return copy.deepcopy(stored)

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
    ) -> List[Transaction]:
        """Transactions for a user, newest first."""
        with self._data_lock:
            results = [
                t
                for t in self.transactions.get(user_id, [])
                if (not type or t.type == type)
                and (not category or t.category == category)
                and (not status or t.status == status)
                and (since is None or t.transaction_date >= since)
                and (until is None or t.transaction_date < until)
            ]
            results = sorted(results, key=ledger_order, reverse=True)
            if limit is not None:
                results = results[:limit]
            return [copy.deepcopy(t) for t in results]

    def recalculate_balance(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            history = self.transactions.get(user_id, [])
            new_balance, updates = replay_balances(history)
            patches = {u["transactionId"]: u["newBalanceAfter"] for u in updates}
            for txn in history:
                if txn.id in patches:
                    txn.balance_after = patches[txn.id]
            old_balance = user.balance
            user.balance = new_balance
            user.updated_at = utcnow()
            self._persist_state()
            return {
                "oldBalance": old_balance,
                "newBalance": new_balance,
                "transactionsProcessed": sum(1 for t in history if t.status == "completed"),
                "transactionsUpdated": len(updates),
                "updates": updates,
            }

    # ------------------------------------------------------------------
    # Beneficiaries
    # ------------------------------------------------------------------

    def create_beneficiary(self, beneficiary: Beneficiary) -> Beneficiary:
        with self._data_lock:
            for existing in self.beneficiaries.values():
                if (
                    existing.user_id == beneficiary.user_id
                    and existing.account_number == beneficiary.account_number
                ):
                    raise ConstraintViolation(
                        "beneficiary already exists", {"field": "accountNumber"}
                    )
            stored = copy.deepcopy(beneficiary)
            self.beneficiaries[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def find_beneficiary(
        self, user_id: str, account_number: str, *, active_only: bool = True
    ) -> Optional[Beneficiary]:
        with self._data_lock:
            match = next(
                (
                    b
                    for b in self.beneficiaries.values()
                    if b.user_id == user_id
                    and b.account_number == account_number
                    and (b.is_active or not active_only)
                ),
                None,
            )
            return copy.deepcopy(match) if match else None

    def mark_beneficiary_used(self, beneficiary_id: str) -> Optional[Beneficiary]:
        with self._data_lock:
            beneficiary = self.beneficiaries.get(beneficiary_id)
            if not beneficiary:
                return None
            beneficiary.usage_count += 1
            beneficiary.last_used = utcnow()
            self._persist_state()
            return copy.deepcopy(beneficiary)

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "payments": [self._serialize_payment(p) for p in self.payments.values()],
            "transactions": [
                self._serialize_transaction(t)
                for txns in self.transactions.values()
                for t in txns
            ],
            "beneficiaries": [
                self._serialize_beneficiary(b) for b in self.beneficiaries.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_unreadable", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.payments = {
            p["id"]: self._deserialize_payment(p) for p in data.get("payments", [])
        }
        self.transactions = {}
        for txn_data in data.get("transactions", []):
            txn = self._deserialize_transaction(txn_data)
            self.transactions.setdefault(txn.user_id, []).append(txn)
        self.beneficiaries = {
            b["id"]: self._deserialize_beneficiary(b)
            for b in data.get("beneficiaries", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "firstname": user.firstname,
            "lastname": user.lastname,
            "id_number": user.id_number,
            "account_number": user.account_number,
            "username": user.username,
            "role": user.role,
            "balance": str(user.balance),
            "currency": user.currency,
            "account_type": user.account_type,
            "monthly_salary": str(user.monthly_salary),
            "mfa_enabled": user.mfa_enabled,
            "mfa_setup_complete": user.mfa_setup_complete,
            "mfa_secret": self._mfa_cipher.encrypt(user.mfa_secret),
            "mfa_backup_codes": list(user.mfa_backup_codes),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            firstname=data["firstname"],
            lastname=data["lastname"],
            id_number=data["id_number"],
            account_number=data["account_number"],
            username=data["username"],
            role=data.get("role", ROLE_CUSTOMER),
            balance=to_money(data.get("balance", "0")),
            currency=data.get("currency", "ZAR"),
            account_type=data.get("account_type", "Savings"),
            monthly_salary=to_money(data.get("monthly_salary", "0")),
            mfa_enabled=data.get("mfa_enabled", False),
            mfa_setup_complete=data.get("mfa_setup_complete", False),
            mfa_secret=self._mfa_cipher.decrypt(data.get("mfa_secret")),
            mfa_backup_codes=list(data.get("mfa_backup_codes") or []),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_payment(self, payment: Payment) -> dict:
        return {
            "id": payment.id,
            "payment_id": payment.payment_id,
            "user_id": payment.user_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "recipient_name": payment.recipient_name,
            "recipient_bank": payment.recipient_bank,
            "recipient_account": payment.recipient_account,
            "swift_code": payment.swift_code,
            "provider": payment.provider,
            "payment_reference": payment.payment_reference,
            "status": payment.status,
            "status_history": [status_change_to_dict(c) for c in payment.status_history],
            "created_ip": payment.created_ip,
            "user_agent": payment.user_agent,
            "created_at": self._serialize_datetime(payment.created_at),
            "updated_at": self._serialize_datetime(payment.updated_at),
        }

    def _deserialize_payment(self, data: dict) -> Payment:
        return Payment(
            id=data["id"],
            payment_id=data["payment_id"],
            user_id=data["user_id"],
            amount=to_money(data["amount"]),
            currency=data["currency"],
            recipient_name=data["recipient_name"],
            recipient_bank=data["recipient_bank"],
            recipient_account=data["recipient_account"],
            swift_code=data["swift_code"],
            provider=data["provider"],
            payment_reference=data["payment_reference"],
            status=data.get("status", "pending"),
            status_history=[
                status_change_from_dict(c) for c in data.get("status_history", [])
            ],
            created_ip=data.get("created_ip"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_transaction(self, txn: Transaction) -> dict:
        return {
            "id": txn.id,
            "user_id": txn.user_id,
            "type": txn.type,
            "amount": str(txn.amount),
            "currency": txn.currency,
            "category": txn.category,
            "description": txn.description,
            "balance_after": str(txn.balance_after),
            "status": txn.status,
            "payment_id": txn.payment_id,
            "related_party": txn.related_party,
            "metadata": txn.metadata,
            "transaction_date": self._serialize_datetime(txn.transaction_date),
            "created_at": self._serialize_datetime(txn.created_at),
        }

    def _deserialize_transaction(self, data: dict) -> Transaction:
        return Transaction(
            id=data["id"],
            user_id=data["user_id"],
            type=data["type"],
            amount=to_money(data["amount"]),
            currency=data["currency"],
            category=data.get("category", "other"),
            description=data.get("description"),
            balance_after=to_money(data.get("balance_after", "0")),
            status=data.get("status", "completed"),
            payment_id=data.get("payment_id"),
            related_party=data.get("related_party"),
            metadata=data.get("metadata"),
            transaction_date=self._deserialize_datetime(data["transaction_date"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_beneficiary(self, beneficiary: Beneficiary) -> dict:
        return {
            "id": beneficiary.id,
            "user_id": beneficiary.user_id,
            "name": beneficiary.name,
            "account_number": beneficiary.account_number,
            "bank_name": beneficiary.bank_name,
            "swift_code": beneficiary.swift_code,
            "provider": beneficiary.provider,
            "currency": beneficiary.currency,
            "nickname": beneficiary.nickname,
            "is_active": beneficiary.is_active,
            "is_favorite": beneficiary.is_favorite,
            "usage_count": beneficiary.usage_count,
            "last_used": self._serialize_datetime(beneficiary.last_used),
            "created_at": self._serialize_datetime(beneficiary.created_at),
        }

    def _deserialize_beneficiary(self, data: dict) -> Beneficiary:
        return Beneficiary(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            account_number=data["account_number"],
            bank_name=data["bank_name"],
            swift_code=data.get("swift_code"),
            provider=data.get("provider", "SWIFT"),
            currency=data.get("currency", "ZAR"),
            nickname=data.get("nickname"),
            is_active=data.get("is_active", True),
            is_favorite=data.get("is_favorite", False),
            usage_count=int(data.get("usage_count", 0)),
            last_used=self._deserialize_datetime(data.get("last_used")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
