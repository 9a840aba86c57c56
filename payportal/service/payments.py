from __future__ import annotations

import re
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from payportal.logging import get_logger
from payportal.service.errors import NotFoundError, ServerError, ValidationError
from payportal.service.store import BankStore
from payportal.storage.common import summarize_user_payments, to_money
from payportal.storage.errors import ConstraintViolation
from payportal.storage.models import (
    CURRENCIES,
    PAYMENT_PENDING,
    PAYMENT_STATUSES,
    PROVIDERS,
    Payment,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("1000000")

SWIFT_PATTERN = re.compile(r"^[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?$")
_RECIPIENT_NAME = re.compile(r"^[A-Za-z\s\-'.]{2,100}$")
_RECIPIENT_BANK = re.compile(r"^[A-Za-z0-9\s\-'.&]{2,100}$")
_RECIPIENT_ACCOUNT = re.compile(r"^[A-Za-z0-9\-]{5,34}$")
_REFERENCE = re.compile(r"^[A-Za-z0-9\s\-_./]{3,50}$")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_PAYMENT_ID_ATTEMPTS = 3


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_payment_id(now_ms: Optional[int] = None) -> str:
    """``PAY`` + base36 creation time in ms + 6 random base36 characters."""
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"PAY{_to_base36(stamp)}{suffix}"


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def validate_payment_input(data: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[Dict[str, str]]]:
    """Normalize a payment request; returns (cleaned fields, per-field errors)."""
    errors: List[Dict[str, str]] = []
    cleaned: Dict[str, Any] = {}

    raw_amount = data.get("amount")
    try:
        if raw_amount is None or isinstance(raw_amount, bool):
            raise ValueError("missing amount")
        amount = to_money(raw_amount)
    except ValueError:
        errors.append({"field": "amount", "message": "Valid amount is required"})
    else:
        if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
            errors.append(
                {"field": "amount", "message": "Amount must be between 0.01 and 1,000,000"}
            )
        cleaned["amount"] = amount

    currency = _text(data, "currency").upper()
    if currency not in CURRENCIES:
        errors.append(
            {
                "field": "currency",
                "message": f"Currency must be one of: {', '.join(CURRENCIES)}",
            }
        )
    cleaned["currency"] = currency

    recipient_name = _text(data, "recipientName")
    if not _RECIPIENT_NAME.match(recipient_name):
        errors.append(
            {
                "field": "recipientName",
                "message": "Recipient name must be 2-100 characters (letters, spaces, hyphens, apostrophes, dots only)",
            }
        )
    cleaned["recipient_name"] = recipient_name

    recipient_bank = _text(data, "recipientBank")
    if not _RECIPIENT_BANK.match(recipient_bank):
        errors.append(
            {"field": "recipientBank", "message": "Recipient bank must be 2-100 characters"}
        )
    cleaned["recipient_bank"] = recipient_bank

    recipient_account = _text(data, "recipientAccount")
    if not _RECIPIENT_ACCOUNT.match(recipient_account):
        errors.append(
            {
                "field": "recipientAccount",
                "message": "Recipient account must be 5-34 alphanumeric characters (hyphens allowed)",
            }
        )
    cleaned["recipient_account"] = recipient_account

    swift_code = _text(data, "swiftCode").upper()
    if not SWIFT_PATTERN.match(swift_code):
        errors.append(
            {
                "field": "swiftCode",
                "message": "SWIFT code must be 8 or 11 characters (format: AAAAAABB or AAAAAABBCCC)",
            }
        )
    cleaned["swift_code"] = swift_code

    provider = _text(data, "provider").upper()
    if provider not in PROVIDERS:
        errors.append(
            {
                "field": "provider",
                "message": f"Provider must be one of: {', '.join(PROVIDERS)}",
            }
        )
    cleaned["provider"] = provider

    reference = _text(data, "paymentReference")
    if not _REFERENCE.match(reference):
        errors.append(
            {
                "field": "paymentReference",
                "message": "Payment reference must be 3-50 characters (alphanumeric, spaces, hyphens, underscores, dots, slashes)",
            }
        )
    cleaned["payment_reference"] = reference

    return cleaned, errors


class PaymentService:
    """Customer-side payment creation and reads. Creation never touches balances."""

    def __init__(self, store: BankStore) -> None:
        self.store = store

    def create(
        self,
        user_id: str,
        data: Mapping[str, Any],
        *,
        created_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Payment:
        cleaned, errors = validate_payment_input(data)
        if errors:
            raise ValidationError("Validation failed", detail=errors)
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        for _ in range(_PAYMENT_ID_ATTEMPTS):
            now = utcnow()
            payment = Payment(
                id=new_id(),
                payment_id=generate_payment_id(int(now.timestamp() * 1000)),
                user_id=user.id,
                status=PAYMENT_PENDING,
                created_ip=created_ip or "unknown",
                user_agent=user_agent or "unknown",
                created_at=now,
                updated_at=now,
                **cleaned,
            )
            try:
                created = self.store.create_payment(payment)
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "paymentId":
                    raise
                logger.warning("payment_id_collision", payment_id=payment.payment_id)
                continue
            logger.info(
                "payment_created",
                user_id=user.id,
                payment_id=created.payment_id,
                amount=str(created.amount),
                currency=created.currency,
            )
            return created
        raise ServerError("Payment processing error. Please try again.")

    def list_for_user(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Payment], int]:
        status = (status or "").lower()
        statuses = [status] if status in PAYMENT_STATUSES else None
        payments = self.store.list_payments(user_id=user_id, statuses=statuses)
        start = (page - 1) * limit
        return payments[start : start + limit], len(payments)

    def get_for_user(self, user_id: str, payment_ref: str) -> Payment:
        payment = self.store.get_payment(payment_ref)
        # Someone else's payment reads as missing
        if not payment or payment.user_id != user_id:
            raise NotFoundError("Payment not found")
        return payment

    def stats_for_user(self, user_id: str) -> Dict[str, Any]:
        return summarize_user_payments(self.store.list_payments(user_id=user_id))
