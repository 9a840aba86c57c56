from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

ROLE_CUSTOMER = "Customer"
ROLE_EMPLOYEE = "Employee"
ROLE_ADMIN = "Admin"
ROLES = (ROLE_CUSTOMER, ROLE_EMPLOYEE, ROLE_ADMIN)
STAFF_ROLES = (ROLE_EMPLOYEE, ROLE_ADMIN)

CURRENCIES = ("USD", "EUR", "GBP", "ZAR", "JPY", "CAD", "AUD", "CHF")
PROVIDERS = ("SWIFT", "SEPA", "ACH", "WIRE", "PAYPAL", "WISE")

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
)
OPEN_PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PROCESSING)
TERMINAL_PAYMENT_STATUSES = (PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED)

TRANSACTION_TYPES = ("deposit", "withdrawal", "payment", "transfer", "salary", "refund")
TRANSACTION_CATEGORIES = (
    "salary",
    "groceries",
    "rent",
    "utilities",
    "entertainment",
    "transport",
    "healthcare",
    "shopping",
    "dining",
    "education",
    "other",
)
TRANSACTION_STATUSES = ("pending", "completed", "failed", "reversed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    firstname: str
    lastname: str
    id_number: str
    account_number: str
    username: str
    role: str = ROLE_CUSTOMER
    balance: Decimal = Decimal("0.00")
    currency: str = "ZAR"
    account_type: str = "Savings"
    monthly_salary: Decimal = Decimal("0.00")
    mfa_enabled: bool = False
    mfa_setup_complete: bool = False
    mfa_secret: Optional[str] = None
    mfa_backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}"


@dataclass
class StatusChange:
    from_status: str
    to_status: str
    updated_by: str
    updated_by_username: Optional[str] = None
    reason: str = "No reason provided"
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Payment:
    id: str
    payment_id: str
    user_id: str
    amount: Decimal
    currency: str
    recipient_name: str
    recipient_bank: str
    recipient_account: str
    swift_code: str
    provider: str
    payment_reference: str
    status: str = PAYMENT_PENDING
    status_history: List[StatusChange] = field(default_factory=list)
    created_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Transaction:
    id: str
    user_id: str
    type: str
    amount: Decimal
    currency: str
    category: str = "other"
    description: Optional[str] = None
    balance_after: Decimal = Decimal("0.00")
    status: str = "completed"
    payment_id: Optional[str] = None
    related_party: Dict | None = None
    metadata: Dict | None = None
    transaction_date: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0


@dataclass
class Beneficiary:
    id: str
    user_id: str
    name: str
    account_number: str
    bank_name: str
    swift_code: Optional[str] = None
    provider: str = "SWIFT"
    currency: str = "ZAR"
    nickname: Optional[str] = None
    is_active: bool = True
    is_favorite: bool = False
    usage_count: int = 0
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
