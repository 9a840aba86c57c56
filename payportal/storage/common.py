"""Storage helpers shared between the memory and postgres backends.

Both backends delegate the bookkeeping arithmetic here so the running-balance
rules and the status aggregates cannot drift apart between them.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from collections import defaultdict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from payportal.logging import get_logger
from payportal.storage.models import (
    PAYMENT_STATUSES,
    Payment,
    StatusChange,
    Transaction,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` to a cent-quantized Decimal.

    Floats go through ``str`` first so 0.1 stays 0.10 rather than its binary
    expansion.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, AttributeError) as exc:
            raise ValueError(f"invalid monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid monetary amount: {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        # More digits than the decimal context can hold.
        raise ValueError(f"monetary amount out of range: {value!r}") from exc


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Return [start, end) UTC datetimes for a calendar month."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def ledger_order(txn: Transaction) -> Tuple[datetime, datetime]:
    return (txn.transaction_date, txn.created_at)


def replay_balances(
    transactions: Iterable[Transaction],
) -> Tuple[Decimal, List[Dict[str, Any]]]:
    """Replay completed transactions from a zero balance.

    Returns the final running balance and one patch entry for every
    transaction whose stored ``balance_after`` disagrees with the replay.
    Callers apply the patches and the final balance in the same atomic unit.
    """
    running = ZERO
    updates: List[Dict[str, Any]] = []
    completed = [t for t in transactions if t.status == "completed"]
    for txn in sorted(completed, key=ledger_order):
        running = to_money(running + txn.amount)
        if to_money(txn.balance_after) != running:
            updates.append(
                {
                    "transactionId": txn.id,
                    "oldBalanceAfter": to_money(txn.balance_after),
                    "newBalanceAfter": running,
                }
            )
    return running, updates


def summarize_payments(payments: Sequence[Payment]) -> Dict[str, Any]:
    """Counts and amounts grouped by status for the staff dashboard."""
    counts: Dict[str, int] = {status: 0 for status in PAYMENT_STATUSES}
    amounts: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    total = ZERO
    for payment in payments:
        counts[payment.status] = counts.get(payment.status, 0) + 1
        amounts[payment.status] += payment.amount
        total += payment.amount
    return {
        "totalPayments": len(payments),
        "totalAmount": to_money(total),
        "pendingCount": counts["pending"],
        "processingCount": counts["processing"],
        "completedCount": counts["completed"],
        "failedCount": counts["failed"],
        "cancelledCount": counts["cancelled"],
        "pendingAmount": to_money(amounts["pending"]),
        "completedAmount": to_money(amounts["completed"]),
    }


def summarize_user_payments(payments: Sequence[Payment]) -> Dict[str, Any]:
    stats = summarize_payments(payments)
    return {
        "totalPayments": stats["totalPayments"],
        "totalAmount": stats["totalAmount"],
        "pendingPayments": stats["pendingCount"],
        "completedPayments": stats["completedCount"],
        "failedPayments": stats["failedCount"],
    }


def spending_by_category(transactions: Iterable[Transaction]) -> List[Dict[str, Any]]:
    """Completed debits grouped by category, largest total first."""
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[str, int] = defaultdict(int)
    for txn in transactions:
        if txn.status != "completed" or not txn.is_debit:
            continue
        totals[txn.category] += abs(txn.amount)
        counts[txn.category] += 1
    rows = [
        {"category": category, "total": to_money(total), "count": counts[category]}
        for category, total in totals.items()
    ]
    return sorted(rows, key=lambda row: row["total"], reverse=True)


def status_change_to_dict(change: StatusChange) -> Dict[str, Any]:
    return {
        "from": change.from_status,
        "to": change.to_status,
        "updatedBy": change.updated_by,
        "updatedByUsername": change.updated_by_username,
        "reason": change.reason,
        "timestamp": change.timestamp.isoformat(),
    }


def status_change_from_dict(data: Dict[str, Any]) -> StatusChange:
    raw_ts: Optional[str] = data.get("timestamp")
    kwargs: Dict[str, Any] = {}
    if raw_ts:
        kwargs["timestamp"] = datetime.fromisoformat(raw_ts)
    return StatusChange(
        from_status=data["from"],
        to_status=data["to"],
        updated_by=data["updatedBy"],
        updated_by_username=data.get("updatedByUsername"),
        reason=data.get("reason") or "No reason provided",
        **kwargs,
    )


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class MFASecretCipher:
    """Fernet wrapper encrypting TOTP seeds before they reach disk or a table.

    Key material comes from the caller, then MFA_SECRET_KEY, then JWT_SECRET,
    and finally a random key persisted under ``fs_root/.mfa_key``.
    """

    def __init__(self, key_material: Optional[str], fs_root: Path) -> None:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            key_path = fs_root / ".mfa_key"
            try:
                if key_path.exists():
                    material = key_path.read_text().strip()
                if not material:
                    material = secrets.token_urlsafe(64)
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
        self._fernet = Fernet(_derive_cipher_key(material))

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None
