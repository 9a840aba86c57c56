from __future__ import annotations

import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from payportal.storage.common import status_change_to_dict
from payportal.storage.models import Payment, Transaction, User


class Envelope(BaseModel):
    """Response envelope shared by every endpoint.

    ``code`` and ``errors`` are only populated on failures.
    """

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    code: Optional[str] = None
    errors: Optional[Any] = None


def to_jsonable(value: Any) -> Any:
    """Money as strings, datetimes as ISO-8601, containers recursively."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def ok(data: Any = None, message: Optional[str] = None) -> Envelope:
    return Envelope(success=True, message=message, data=to_jsonable(data))


# ----------------------------------------------------------------------
# Field rules
# ----------------------------------------------------------------------

_NAME = re.compile(r"^[A-Za-z\s\-']{2,50}$")
_ID_NUMBER = re.compile(r"^[A-Za-z0-9]{5,20}$")
_ACCOUNT_NUMBER = re.compile(r"^[A-Za-z0-9]{5,20}$")
_USERNAME = re.compile(r"^[A-Za-z0-9_]{3,30}$")
_PASSWORD_CHARS = re.compile(r"^[A-Za-z\d@$!%*?&#]{8,128}$")
_TOTP = re.compile(r"^[0-9]{6}$")


def _validate_name(value: str) -> str:
    value = (value or "").strip()
    if not _NAME.match(value):
        raise ValueError(
            "must be 2-50 characters (letters, spaces, hyphens, apostrophes only)"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if not _PASSWORD_CHARS.match(value or ""):
        raise ValueError(
            "must be 8-128 characters using letters, digits and @$!%*?&# only"
        )
    if not (
        re.search(r"[a-z]", value)
        and re.search(r"[A-Z]", value)
        and re.search(r"\d", value)
        and re.search(r"[@$!%*?&#]", value)
    ):
        raise ValueError(
            "must contain an uppercase letter, a lowercase letter, a digit and one of @$!%*?&#"
        )
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(_CamelModel):
    firstname: str
    lastname: str
    id_number: str = Field(..., alias="idNumber")
    account_number: str = Field(..., alias="accountNumber")
    username: str
    password: str = Field(..., max_length=128)

    @field_validator("firstname", "lastname")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("id_number")
    @classmethod
    def _validate_id_number(cls, value: str) -> str:
        if not _ID_NUMBER.match(value):
            raise ValueError("must be 5-20 alphanumeric characters")
        return value

    @field_validator("account_number")
    @classmethod
    def _validate_account_number(cls, value: str) -> str:
        if not _ACCOUNT_NUMBER.match(value):
            raise ValueError("must be 5-20 alphanumeric characters")
        return value

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME.match(value):
            raise ValueError("must be 3-30 characters (letters, numbers, underscores only)")
        return value.lower()

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class StaffCreateRequest(RegisterRequest):
    role: str


class LoginRequest(_CamelModel):
    username: str = Field(..., min_length=1, max_length=30)
    account_number: str = Field(..., alias="accountNumber", min_length=1, max_length=20)
    password: str = Field(..., min_length=1, max_length=128)


class MFALoginRequest(LoginRequest):
    token: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, alias="backupCode", max_length=16)


class MFAVerifyRequest(_CamelModel):
    username: str = Field(..., min_length=1, max_length=30)
    token: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, alias="backupCode", max_length=16)


class MFASetupVerifyRequest(_CamelModel):
    token: str

    @field_validator("token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        if not _TOTP.match(value):
            raise ValueError("must be a 6-digit code")
        return value


class MFADisableRequest(_CamelModel):
    password: str = Field(..., min_length=1, max_length=128)


class PaymentRequest(_CamelModel):
    """Loosely typed on purpose: per-field rules live in the payment service."""

    amount: Optional[Any] = None
    currency: Optional[str] = None
    recipient_name: Optional[str] = Field(default=None, alias="recipientName")
    recipient_bank: Optional[str] = Field(default=None, alias="recipientBank")
    recipient_account: Optional[str] = Field(default=None, alias="recipientAccount")
    swift_code: Optional[str] = Field(default=None, alias="swiftCode")
    provider: Optional[str] = None
    payment_reference: Optional[str] = Field(default=None, alias="paymentReference")


class DepositRequest(_CamelModel):
    amount: Optional[Any] = None
    description: Optional[str] = Field(default=None, max_length=200)


class SalaryRequest(_CamelModel):
    monthly_salary: Optional[Any] = Field(default=None, alias="monthlySalary")


class PaymentStatusRequest(_CamelModel):
    status: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class RoleUpdateRequest(_CamelModel):
    role: str


# ----------------------------------------------------------------------
# Response shapes
# ----------------------------------------------------------------------


def user_to_response(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "firstname": user.firstname,
        "lastname": user.lastname,
        "username": user.username,
        "accountNumber": user.account_number,
        "role": user.role,
        "balance": user.balance,
        "currency": user.currency,
        "accountType": user.account_type,
        "mfaEnabled": user.mfa_enabled,
        "mfaSetupComplete": user.mfa_setup_complete,
        "createdAt": user.created_at,
    }


def customer_summary(
    user: Optional[User], *, include_id_number: bool = False
) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    summary = {
        "id": user.id,
        "firstname": user.firstname,
        "lastname": user.lastname,
        "username": user.username,
        "accountNumber": user.account_number,
    }
    if include_id_number:
        summary["idNumber"] = user.id_number
    return summary


def payment_to_response(
    payment: Payment,
    *,
    customer: Optional[Dict[str, Any]] = None,
    include_client_info: bool = False,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "id": payment.id,
        "paymentId": payment.payment_id,
        "userId": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "recipientName": payment.recipient_name,
        "recipientBank": payment.recipient_bank,
        "recipientAccount": payment.recipient_account,
        "swiftCode": payment.swift_code,
        "provider": payment.provider,
        "paymentReference": payment.payment_reference,
        "status": payment.status,
        "statusHistory": [status_change_to_dict(c) for c in payment.status_history],
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
    }
    if customer is not None:
        body["customer"] = customer
    if include_client_info:
        body["createdIP"] = payment.created_ip
        body["userAgent"] = payment.user_agent
    return body


def transaction_to_response(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "type": txn.type,
        "amount": txn.amount,
        "currency": txn.currency,
        "category": txn.category,
        "description": txn.description,
        "balanceAfter": txn.balance_after,
        "status": txn.status,
        "paymentId": txn.payment_id,
        "relatedParty": txn.related_party,
        "metadata": txn.metadata,
        "transactionDate": txn.transaction_date,
        "createdAt": txn.created_at,
    }


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalCount": total,
        "limit": limit,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


def validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten pydantic error dicts into ``[{field, message}]``."""
    flattened: List[Dict[str, str]] = []
    for error in errors:
        loc = [
            str(part)
            for part in error.get("loc", ())
            if part not in ("body", "query", "path")
        ]
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        flattened.append({"field": ".".join(loc) or "body", "message": message})
    return flattened
