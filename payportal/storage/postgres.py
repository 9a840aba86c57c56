from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from payportal.logging import get_logger
from payportal.storage.common import (
    MFASecretCipher,
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS bank_user (
        id TEXT PRIMARY KEY,
        firstname TEXT NOT NULL,
        lastname TEXT NOT NULL,
        id_number TEXT NOT NULL UNIQUE,
        account_number TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'Customer',
        balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'ZAR',
        account_type TEXT NOT NULL DEFAULT 'Savings',
        monthly_salary NUMERIC(14, 2) NOT NULL DEFAULT 0,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_setup_complete BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        mfa_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT bank_user_balance_non_negative CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES bank_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment (
        id TEXT PRIMARY KEY,
        payment_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES bank_user(id),
        amount NUMERIC(14, 2) NOT NULL,
        currency TEXT NOT NULL,
        recipient_name TEXT NOT NULL,
        recipient_bank TEXT NOT NULL,
        recipient_account TEXT NOT NULL,
        swift_code TEXT NOT NULL,
        provider TEXT NOT NULL,
        payment_reference TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        status_history JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS payment_user_created_idx ON payment (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS payment_status_idx ON payment (status)",
    """
    CREATE TABLE IF NOT EXISTS ledger_transaction (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES bank_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        currency TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'other',
        description TEXT,
        balance_after NUMERIC(14, 2) NOT NULL,
        status TEXT NOT NULL DEFAULT 'completed',
        payment_id TEXT,
        related_party JSONB,
        metadata JSONB,
        transaction_date TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ledger_user_date_idx ON ledger_transaction (user_id, transaction_date DESC)",
    """
    CREATE TABLE IF NOT EXISTS beneficiary (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES bank_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        account_number TEXT NOT NULL,
        bank_name TEXT NOT NULL,
        swift_code TEXT,
        provider TEXT NOT NULL DEFAULT 'SWIFT',
        currency TEXT NOT NULL DEFAULT 'ZAR',
        nickname TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_favorite BOOLEAN NOT NULL DEFAULT FALSE,
        usage_count INTEGER NOT NULL DEFAULT 0,
        last_used TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, account_number)
    )
    """,
)

_USER_UNIQUE_FIELDS = {
    "bank_user_username_key": ("username already exists", "username"),
    "bank_user_account_number_key": ("account number already exists", "accountNumber"),
    "bank_user_id_number_key": ("id number already exists", "idNumber"),
}


class PostgresStore:
    """Postgres-backed store for users, payments and the transaction ledger."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._mfa_cipher = MFASecretCipher(mfa_encryption_key, self.fs_root)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the portal tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            firstname=row["firstname"],
            lastname=row["lastname"],
            id_number=row["id_number"],
            account_number=row["account_number"],
            username=row["username"],
            role=row.get("role", ROLE_CUSTOMER),
            balance=to_money(row.get("balance", 0)),
            currency=row.get("currency", "ZAR"),
            account_type=row.get("account_type", "Savings"),
            monthly_salary=to_money(row.get("monthly_salary", 0)),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_setup_complete=bool(row.get("mfa_setup_complete", False)),
            mfa_secret=self._mfa_cipher.decrypt(row.get("mfa_secret")),
            mfa_backup_codes=list(row.get("mfa_backup_codes") or []),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _payment_from_row(row: Dict[str, Any]) -> Payment:
        history = row.get("status_history") or []
        if isinstance(history, str):
            history = json.loads(history)
        return Payment(
            id=str(row["id"]),
            payment_id=row["payment_id"],
            user_id=str(row["user_id"]),
            amount=to_money(row["amount"]),
            currency=row["currency"],
            recipient_name=row["recipient_name"],
            recipient_bank=row["recipient_bank"],
            recipient_account=row["recipient_account"],
            swift_code=row["swift_code"],
            provider=row["provider"],
            payment_reference=row["payment_reference"],
            status=row.get("status", "pending"),
            status_history=[status_change_from_dict(c) for c in history],
            created_ip=row.get("created_ip"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _transaction_from_row(row: Dict[str, Any]) -> Transaction:
        return Transaction(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row["type"],
            amount=to_money(row["amount"]),
            currency=row["currency"],
            category=row.get("category", "other"),
            description=row.get("description"),
            balance_after=to_money(row.get("balance_after", 0)),
            status=row.get("status", "completed"),
            payment_id=row.get("payment_id"),
            related_party=row.get("related_party"),
            metadata=row.get("metadata"),
            transaction_date=row.get("transaction_date") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _beneficiary_from_row(row: Dict[str, Any]) -> Beneficiary:
        return Beneficiary(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            account_number=row["account_number"],
            bank_name=row["bank_name"],
            swift_code=row.get("swift_code"),
            provider=row.get("provider", "SWIFT"),
            currency=row.get("currency", "ZAR"),
            nickname=row.get("nickname"),
            is_active=bool(row.get("is_active", True)),
            is_favorite=bool(row.get("is_favorite", False)),
            usage_count=int(row.get("usage_count", 0)),
            last_used=row.get("last_used"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO bank_user (id, firstname, lastname, id_number, account_number, username, role, currency, account_type)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        firstname,
                        lastname,
                        id_number,
                        account_number,
                        username,
                        role,
                        currency,
                        account_type,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            message, field = _USER_UNIQUE_FIELDS.get(
                constraint, ("user already exists", "username")
            )
            raise ConstraintViolation(message, {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bank_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bank_user WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_credentials(
        self, username: str, account_number: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bank_user WHERE username = %s AND account_number = %s",
                (username, account_number),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        roles: Optional[Sequence[str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        with self._connect() as conn:
            if roles:
                rows = conn.execute(
                    "SELECT * FROM bank_user WHERE role = ANY(%s) ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (list(roles), limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM bank_user ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def count_users_by_role(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role, COUNT(*) AS c FROM bank_user GROUP BY role"
            ).fetchall()
        return {row["role"]: int(row["c"]) for row in rows}

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE bank_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_monthly_salary(self, user_id: str, salary: Decimal) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE bank_user SET monthly_salary = %s, updated_at = now() WHERE id = %s RETURNING *",
                (to_money(salary), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM bank_user WHERE id = %s", (user_id,))
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user owns payments", {"user_id": user_id})
        return bool(result.rowcount)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    def set_mfa_secret(self, user_id: str, secret: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bank_user
                SET mfa_secret = %s, mfa_enabled = FALSE, mfa_setup_complete = FALSE,
                    mfa_backup_codes = '{}', updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (self._mfa_cipher.encrypt(secret), user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return self._user_from_row(row)

    def enable_mfa(self, user_id: str, backup_codes: Sequence[str]) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bank_user
                SET mfa_enabled = TRUE, mfa_setup_complete = TRUE,
                    mfa_backup_codes = %s, updated_at = now()
                WHERE id = %s AND mfa_secret IS NOT NULL
                RETURNING *
                """,
                (list(backup_codes), user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("mfa secret missing", {"user_id": user_id})
        return self._user_from_row(row)

    def disable_mfa(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bank_user
                SET mfa_secret = NULL, mfa_enabled = FALSE, mfa_setup_complete = FALSE,
                    mfa_backup_codes = '{}', updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def consume_backup_code(self, user_id: str, code: str) -> Optional[int]:
        # Conditional update so two concurrent logins cannot spend one code twice
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bank_user
                SET mfa_backup_codes = array_remove(mfa_backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(mfa_backup_codes)
                RETURNING cardinality(mfa_backup_codes) AS remaining
                """,
                (code, user_id, code),
            ).fetchone()
        return int(row["remaining"]) if row else None

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(self, payment: Payment) -> Payment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO payment (
                        id, payment_id, user_id, amount, currency, recipient_name, recipient_bank,
                        recipient_account, swift_code, provider, payment_reference, status,
                        status_history, created_ip, user_agent, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        payment.id,
                        payment.payment_id,
                        payment.user_id,
                        to_money(payment.amount),
                        payment.currency,
                        payment.recipient_name,
                        payment.recipient_bank,
                        payment.recipient_account,
                        payment.swift_code,
                        payment.provider,
                        payment.payment_reference,
                        payment.status,
                        json.dumps(
                            [status_change_to_dict(c) for c in payment.status_history]
                        ),
                        payment.created_ip,
                        payment.user_agent,
                        payment.created_at,
                        payment.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("payment id already exists", {"field": "paymentId"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": payment.user_id})
        return self._payment_from_row(row)

    def get_payment(self, payment_ref: str) -> Optional[Payment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payment WHERE id = %s OR payment_id = %s",
                (payment_ref, payment_ref),
            ).fetchone()
        return self._payment_from_row(row) if row else None

    def list_payments(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> List[Payment]:
        if order_by not in {"created_at", "updated_at"}:
            raise ValueError(f"unsupported ordering: {order_by}")
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        query = "SELECT * FROM payment"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY {order_by} DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._payment_from_row(row) for row in rows]

    def transition_payment(
        self,
        payment_ref: str,
        *,
        to_status: str,
        change: StatusChange,
        ledger_entry: Optional[Transaction] = None,
    ) -> Optional[Tuple[Payment, Optional[Transaction]]]:
        """Row-lock the payment, check it is still open, then apply the change.

        The optional ledger entry is written inside the same transaction, so a
        failed balance check rolls the whole decision back.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM payment WHERE id = %s OR payment_id = %s FOR UPDATE",
                    (payment_ref, payment_ref),
                ).fetchone()
                if not row:
                    return None
                if row["status"] not in OPEN_PAYMENT_STATUSES:
                    raise StaleStatus(
                        "payment has already been processed",
                        {"status": row["status"], "paymentId": row["payment_id"]},
                    )
                applied = None
                if ledger_entry is not None:
                    applied = self._apply_entry(conn, ledger_entry)
                updated = conn.execute(
                    """
                    UPDATE payment
                    SET status = %s, status_history = status_history || %s::jsonb, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        to_status,
                        json.dumps([status_change_to_dict(change)]),
                        change.timestamp,
                        row["id"],
                    ),
                ).fetchone()
        return self._payment_from_row(updated), applied

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _apply_entry(self, conn, entry: Transaction) -> Transaction:
        user_row = conn.execute(
            "SELECT balance FROM bank_user WHERE id = %s FOR UPDATE", (entry.user_id,)
        ).fetchone()
        if not user_row:
            raise ConstraintViolation("user does not exist", {"user_id": entry.user_id})
        balance = to_money(user_row["balance"])
        amount = to_money(entry.amount)
        new_balance = to_money(balance + amount)
        if amount < 0 and new_balance < 0:
            raise InsufficientBalance(
                "insufficient funds", {"balance": str(balance), "amount": str(amount)}
            )
        conn.execute(
            "UPDATE bank_user SET balance = %s, updated_at = now() WHERE id = %s",
            (new_balance, entry.user_id),
        )
        row = conn.execute(
            """
            INSERT INTO ledger_transaction (
                id, user_id, type, amount, currency, category, description, balance_after,
                status, payment_id, related_party, metadata, transaction_date, created_at
            )
            VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                clock_timestamp(), clock_timestamp()
            )
            RETURNING *
            """,
            (
                entry.id,
                entry.user_id,
                entry.type,
                amount,
                entry.currency,
                entry.category,
                entry.description,
                new_balance,
                entry.status,
                entry.payment_id,
                json.dumps(entry.related_party) if entry.related_party else None,
                json.dumps(entry.metadata) if entry.metadata else None,
            ),
        ).fetchone()
        return self._transaction_from_row(row)

    def append_transaction(self, entry: Transaction) -> Transaction:
        with self._connect() as conn:
            with conn.transaction():
                return self._apply_entry(conn, entry)

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
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        for column, value in (("type", type), ("category", category), ("status", status)):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if since is not None:
            clauses.append("transaction_date >= %s")
            params.append(since)
        if until is not None:
            clauses.append("transaction_date < %s")
            params.append(until)
        query = (
            "SELECT * FROM ledger_transaction WHERE "
            + " AND ".join(clauses)
            + " ORDER BY transaction_date DESC, created_at DESC"
        )
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._transaction_from_row(row) for row in rows]

    def recalculate_balance(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            with conn.transaction():
                user_row = conn.execute(
                    "SELECT balance FROM bank_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not user_row:
                    return None
                rows = conn.execute(
                    "SELECT * FROM ledger_transaction WHERE user_id = %s AND status = 'completed'",
                    (user_id,),
                ).fetchall()
                history = [self._transaction_from_row(row) for row in rows]
                new_balance, updates = replay_balances(history)
                for update in updates:
                    conn.execute(
                        "UPDATE ledger_transaction SET balance_after = %s WHERE id = %s",
                        (update["newBalanceAfter"], update["transactionId"]),
                    )
                conn.execute(
                    "UPDATE bank_user SET balance = %s, updated_at = now() WHERE id = %s",
                    (new_balance, user_id),
                )
        return {
            "oldBalance": to_money(user_row["balance"]),
            "newBalance": new_balance,
            "transactionsProcessed": len(history),
            "transactionsUpdated": len(updates),
            "updates": updates,
        }

    # ------------------------------------------------------------------
    # Beneficiaries
    # ------------------------------------------------------------------

    def create_beneficiary(self, beneficiary: Beneficiary) -> Beneficiary:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO beneficiary (
                        id, user_id, name, account_number, bank_name, swift_code, provider,
                        currency, nickname, is_active, is_favorite, usage_count, last_used, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        beneficiary.id,
                        beneficiary.user_id,
                        beneficiary.name,
                        beneficiary.account_number,
                        beneficiary.bank_name,
                        beneficiary.swift_code,
                        beneficiary.provider,
                        beneficiary.currency,
                        beneficiary.nickname,
                        beneficiary.is_active,
                        beneficiary.is_favorite,
                        beneficiary.usage_count,
                        beneficiary.last_used,
                        beneficiary.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "beneficiary already exists", {"field": "accountNumber"}
            )
        return self._beneficiary_from_row(row)

    def find_beneficiary(
        self, user_id: str, account_number: str, *, active_only: bool = True
    ) -> Optional[Beneficiary]:
        query = "SELECT * FROM beneficiary WHERE user_id = %s AND account_number = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            row = conn.execute(query, (user_id, account_number)).fetchone()
        return self._beneficiary_from_row(row) if row else None

    def mark_beneficiary_used(self, beneficiary_id: str) -> Optional[Beneficiary]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE beneficiary
                SET usage_count = usage_count + 1, last_used = now()
                WHERE id = %s
                RETURNING *
                """,
                (beneficiary_id,),
            ).fetchone()
        return self._beneficiary_from_row(row) if row else None
