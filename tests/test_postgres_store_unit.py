import json
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from psycopg import errors

from payportal.storage.common import MFASecretCipher
from payportal.storage.errors import ConstraintViolation, InsufficientBalance, StaleStatus
from payportal.storage.models import StatusChange, Transaction
from payportal.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class ScriptedConnection:
    """Answers each execute() with the next scripted row and records the SQL."""

    def __init__(self, rows):
        self.rows = list(rows)
        self.statements = []
        self.params = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        self.params.append(params)
        return FakeCursor(self.rows.pop(0) if self.rows else None)

    @contextmanager
    def transaction(self):
        yield self


class ScriptedPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _bare_store(tmp_path: Path, pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store.fs_root = tmp_path
    store._mfa_cipher = MFASecretCipher("unit-test-key", tmp_path)
    return store


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _payment_row(status="pending"):
    return {
        "id": "p-1",
        "payment_id": "PAYABC123",
        "user_id": "u-1",
        "amount": Decimal("40.00"),
        "currency": "ZAR",
        "recipient_name": "Grace Hopper",
        "recipient_bank": "First Bank",
        "recipient_account": "ACC900001",
        "swift_code": "FIRBZAJJ",
        "provider": "SWIFT",
        "payment_reference": "REF-1",
        "status": status,
        "status_history": [],
        "created_ip": "10.0.0.1",
        "user_agent": "pytest",
        "created_at": NOW,
        "updated_at": NOW,
    }


def _debit():
    return Transaction(
        id="t-1", user_id="u-1", type="payment", amount=Decimal("-40.00"), currency="ZAR"
    )


def _change():
    return StatusChange(from_status="pending", to_status="completed", updated_by="emp")


def test_user_row_decrypts_mfa_secret(tmp_path: Path):
    store = _bare_store(tmp_path)
    row = {
        "id": "u-1",
        "firstname": "Ada",
        "lastname": "Lovelace",
        "id_number": "ID1",
        "account_number": "ACC1",
        "username": "ada",
        "role": "Employee",
        "balance": Decimal("12.5"),
        "monthly_salary": 100,
        "mfa_enabled": True,
        "mfa_setup_complete": True,
        "mfa_secret": store._mfa_cipher.encrypt("JBSWY3DPEHPK3PXP"),
        "mfa_backup_codes": ["AAAA1111"],
        "created_at": NOW,
        "updated_at": NOW,
    }
    user = store._user_from_row(row)
    assert user.role == "Employee"
    assert user.balance == Decimal("12.50")
    assert user.monthly_salary == Decimal("100.00")
    assert user.mfa_secret == "JBSWY3DPEHPK3PXP"
    assert user.mfa_backup_codes == ["AAAA1111"]


def test_payment_row_parses_history_from_text(tmp_path: Path):
    row = _payment_row(status="failed")
    row["status_history"] = json.dumps(
        [
            {
                "from": "pending",
                "to": "failed",
                "updatedBy": "emp",
                "updatedByUsername": "clerk",
                "reason": "",
                "timestamp": NOW.isoformat(),
            }
        ]
    )
    payment = PostgresStore._payment_from_row(row)
    assert payment.status == "failed"
    change = payment.status_history[0]
    assert change.updated_by_username == "clerk"
    assert change.reason == "No reason provided"
    assert change.timestamp == NOW


def test_transaction_and_beneficiary_rows(tmp_path: Path):
    txn = PostgresStore._transaction_from_row(
        {
            "id": "t-1",
            "user_id": "u-1",
            "type": "payment",
            "amount": Decimal("-40"),
            "currency": "ZAR",
            "balance_after": Decimal("10"),
            "related_party": {"name": "Grace Hopper"},
            "transaction_date": NOW,
            "created_at": NOW,
        }
    )
    assert txn.amount == Decimal("-40.00")
    assert txn.is_debit
    assert txn.category == "other"
    beneficiary = PostgresStore._beneficiary_from_row(
        {
            "id": "b-1",
            "user_id": "u-1",
            "name": "Grace Hopper",
            "account_number": "ACC900001",
            "bank_name": "First Bank",
            "usage_count": 3,
            "created_at": NOW,
        }
    )
    assert beneficiary.usage_count == 3
    assert beneficiary.is_active is True


def test_transition_rejects_closed_payment_before_touching_balance(tmp_path: Path):
    conn = ScriptedConnection([_payment_row(status="completed")])
    store = _bare_store(tmp_path, ScriptedPool(conn))
    with pytest.raises(StaleStatus) as exc_info:
        store.transition_payment(
            "PAYABC123", to_status="completed", change=_change(), ledger_entry=_debit()
        )
    assert exc_info.value.detail["status"] == "completed"
    assert len(conn.statements) == 1
    assert "FOR UPDATE" in conn.statements[0]


def test_transition_aborts_on_insufficient_balance(tmp_path: Path):
    conn = ScriptedConnection([_payment_row(), {"balance": Decimal("39.99")}])
    store = _bare_store(tmp_path, ScriptedPool(conn))
    with pytest.raises(InsufficientBalance) as exc_info:
        store.transition_payment(
            "PAYABC123", to_status="completed", change=_change(), ledger_entry=_debit()
        )
    assert exc_info.value.detail["balance"] == "39.99"
    assert not any(s.startswith("UPDATE") or s.startswith("INSERT") for s in conn.statements)


def test_transition_missing_payment_returns_none(tmp_path: Path):
    conn = ScriptedConnection([None])
    store = _bare_store(tmp_path, ScriptedPool(conn))
    assert store.transition_payment("nope", to_status="failed", change=_change()) is None


def test_ledger_row_is_stamped_under_the_row_lock(tmp_path: Path):
    inserted = {
        "id": "t-1",
        "user_id": "u-1",
        "type": "payment",
        "amount": Decimal("-40.00"),
        "currency": "ZAR",
        "balance_after": Decimal("60.00"),
        "transaction_date": NOW,
        "created_at": NOW,
    }
    conn = ScriptedConnection([{"balance": Decimal("100.00")}, None, inserted])
    store = _bare_store(tmp_path, ScriptedPool(conn))
    stored = store.append_transaction(_debit())

    assert stored.balance_after == Decimal("60.00")
    assert "FOR UPDATE" in conn.statements[0]
    insert = conn.statements[2]
    assert insert.startswith("INSERT INTO ledger_transaction")
    assert "clock_timestamp(), clock_timestamp()" in insert
    # The caller's timestamps are not sent; the database clock decides the order
    assert len(conn.params[2]) == 12
    assert not any(isinstance(value, datetime) for value in conn.params[2])


class RejectingConnection:
    def execute(self, sql, params=None):
        raise errors.ForeignKeyViolation("payment_user_id_fkey")


def test_delete_of_payment_owner_is_a_constraint(tmp_path: Path):
    store = _bare_store(tmp_path, ScriptedPool(RejectingConnection()))
    with pytest.raises(ConstraintViolation):
        store.delete_user("u-1")
