from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from payportal.api.schemas import (
    DepositRequest,
    Envelope,
    LoginRequest,
    MFADisableRequest,
    MFALoginRequest,
    MFASetupVerifyRequest,
    MFAVerifyRequest,
    PaymentRequest,
    PaymentStatusRequest,
    RegisterRequest,
    RoleUpdateRequest,
    SalaryRequest,
    StaffCreateRequest,
    customer_summary,
    ok,
    pagination,
    payment_to_response,
    transaction_to_response,
    user_to_response,
)
from payportal.service.auth import BACKUP_CODES_WARNING, AuthContext, LoginResult
from payportal.service.runtime import get_runtime
from payportal.storage.models import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_EMPLOYEE, utcnow

router = APIRouter(prefix="/v1")


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _require_roles(*roles: str):
    async def dependency(
        request: Request, principal: AuthContext = Depends(get_user)
    ) -> AuthContext:
        return get_runtime().roles.require(
            principal, roles, method=request.method, path=request.url.path
        )

    return dependency


get_customer = _require_roles(ROLE_CUSTOMER)
get_staff_user = _require_roles(ROLE_EMPLOYEE, ROLE_ADMIN)
get_admin_user = _require_roles(ROLE_ADMIN)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _signed_in(result: LoginResult, message: str) -> Envelope:
    return ok({"token": result.token, "user": user_to_response(result.user)}, message)


def _mfa_challenge(result: LoginResult) -> Envelope:
    return ok(
        {"requiresMFA": True, "username": result.user.username},
        "MFA verification required",
    )


# ----------------------------------------------------------------------
# Users and sessions
# ----------------------------------------------------------------------


@router.get("/user/health", response_model=Envelope, tags=["user"])
async def health():
    return ok({"status": "healthy", "timestamp": utcnow()}, "Service is running")


@router.post("/user/register", response_model=Envelope, status_code=201, tags=["user"])
async def register(body: RegisterRequest):
    """Create a Customer account and return a token for it."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        firstname=body.firstname,
        lastname=body.lastname,
        id_number=body.id_number,
        account_number=body.account_number,
        username=body.username,
        password=body.password,
    )
    return _signed_in(result, "User registered successfully")


@router.post("/user/login", response_model=Envelope, tags=["user"])
async def login(body: LoginRequest):
    """Password login.

    Accounts with MFA switched on get a challenge instead of a token and
    must finish through ``/mfa/login``.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.account_number, body.password)
    if result.requires_mfa:
        return _mfa_challenge(result)
    return _signed_in(result, "Login successful")


@router.api_route(
    "/user/logout", methods=["GET", "POST"], response_model=Envelope, tags=["user"]
)
async def logout(principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.logout(principal)
    return ok(message="Logged out successfully")


@router.post("/user/logout-all", response_model=Envelope, tags=["user"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.logout_all(principal)
    return ok(message="Logged out from all sessions")


@router.get("/user/session", response_model=Envelope, tags=["user"])
async def session_info(principal: AuthContext = Depends(get_user)):
    info = await get_runtime().auth.session_info(principal)
    return ok(info)


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def current_user(principal: AuthContext = Depends(get_user)):
    user = get_runtime().auth.get_user(principal.user_id)
    return ok({"user": user_to_response(user)})


# ----------------------------------------------------------------------
# MFA
# ----------------------------------------------------------------------


@router.post("/mfa/setup/generate", response_model=Envelope, tags=["mfa"])
async def mfa_setup_generate(principal: AuthContext = Depends(get_user)):
    setup = get_runtime().auth.start_mfa_setup(principal.user_id)
    return ok(setup, "MFA setup initiated")


@router.post("/mfa/setup/verify", response_model=Envelope, tags=["mfa"])
async def mfa_setup_verify(
    body: MFASetupVerifyRequest, principal: AuthContext = Depends(get_user)
):
    codes = get_runtime().auth.confirm_mfa_setup(principal.user_id, body.token)
    return ok(
        {"backupCodes": codes, "warning": BACKUP_CODES_WARNING},
        "MFA enabled successfully",
    )


@router.post("/mfa/login", response_model=Envelope, tags=["mfa"])
async def mfa_login(body: MFALoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login_with_mfa(
        body.username,
        body.account_number,
        body.password,
        code=body.token,
        backup_code=body.backup_code,
    )
    if result.requires_mfa:
        return _mfa_challenge(result)
    return ok(
        {
            "token": result.token,
            "user": user_to_response(result.user),
            "mfaVerified": result.mfa_verified,
            "usedBackupCode": result.used_backup_code is not None,
            "remainingBackupCodes": result.remaining_backup_codes,
        },
        "Login successful",
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MFAVerifyRequest):
    outcome = await get_runtime().auth.verify_mfa(
        body.username, code=body.token, backup_code=body.backup_code
    )
    outcome["usedBackupCode"] = outcome["usedBackupCode"] is not None
    return ok(outcome, "MFA verification successful")


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MFADisableRequest, principal: AuthContext = Depends(get_user)):
    get_runtime().auth.disable_mfa(principal.user_id, body.password)
    return ok(message="MFA disabled successfully")


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_user)):
    return ok(get_runtime().auth.mfa_status(principal.user_id))


# ----------------------------------------------------------------------
# Customer payments
# ----------------------------------------------------------------------


@router.post("/payments", response_model=Envelope, status_code=201, tags=["payments"])
async def create_payment(
    body: PaymentRequest, request: Request, principal: AuthContext = Depends(get_customer)
):
    payment = get_runtime().payments.create(
        principal.user_id,
        body.model_dump(by_alias=True),
        created_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok({"payment": payment_to_response(payment)}, "Payment created successfully")


@router.get("/payments", response_model=Envelope, tags=["payments"])
async def list_payments(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_customer),
):
    payments, total = get_runtime().payments.list_for_user(
        principal.user_id, status=status, page=page, limit=limit
    )
    return ok(
        {
            "payments": [payment_to_response(p) for p in payments],
            "pagination": pagination(page, limit, total),
        }
    )


@router.get("/payments/stats", response_model=Envelope, tags=["payments"])
async def payment_stats(principal: AuthContext = Depends(get_customer)):
    return ok({"stats": get_runtime().payments.stats_for_user(principal.user_id)})


@router.get("/payments/{payment_id}", response_model=Envelope, tags=["payments"])
async def get_payment(payment_id: str, principal: AuthContext = Depends(get_customer)):
    payment = get_runtime().payments.get_for_user(principal.user_id, payment_id)
    return ok({"payment": payment_to_response(payment)})


# ----------------------------------------------------------------------
# Account
# ----------------------------------------------------------------------


@router.get("/account/balance", response_model=Envelope, tags=["account"])
async def account_balance(principal: AuthContext = Depends(get_customer)):
    return ok(get_runtime().ledger.balance_summary(principal.user_id))


@router.get("/account/transactions", response_model=Envelope, tags=["account"])
async def account_transactions(
    type: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = Query(20, ge=1, le=50),
    principal: AuthContext = Depends(get_customer),
):
    transactions = get_runtime().ledger.list_transactions(
        principal.user_id, type=type, category=category, limit=limit
    )
    return ok({"transactions": [transaction_to_response(t) for t in transactions]})


@router.post("/account/deposit", response_model=Envelope, tags=["account"])
async def account_deposit(
    body: DepositRequest, request: Request, principal: AuthContext = Depends(get_customer)
):
    new_balance, transaction = get_runtime().ledger.deposit(
        principal.user_id,
        body.amount,
        description=body.description,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(
        {"transaction": transaction_to_response(transaction), "newBalance": new_balance},
        "Deposit successful",
    )


@router.patch("/account/salary", response_model=Envelope, tags=["account"])
async def account_salary(body: SalaryRequest, principal: AuthContext = Depends(get_customer)):
    salary = get_runtime().ledger.update_monthly_salary(
        principal.user_id, body.monthly_salary
    )
    return ok({"monthlySalary": salary}, "Monthly salary updated successfully")


@router.get("/account/spending", response_model=Envelope, tags=["account"])
async def account_spending(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=9999),
    principal: AuthContext = Depends(get_customer),
):
    return ok(get_runtime().ledger.spending(principal.user_id, month=month, year=year))


@router.post("/account/recalculate-balance", response_model=Envelope, tags=["account"])
async def account_recalculate(principal: AuthContext = Depends(get_customer)):
    result = get_runtime().ledger.recalculate(principal.user_id)
    return ok(result, "Balance recalculated successfully")


# ----------------------------------------------------------------------
# Employee approvals
# ----------------------------------------------------------------------


@router.get("/employee/payments/pending", response_model=Envelope, tags=["employee"])
async def pending_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_staff_user),
):
    approvals = get_runtime().approvals
    payments, total = approvals.list_pending(page=page, limit=limit)
    customers = approvals.customers_for(payments)
    return ok(
        {
            "payments": [
                payment_to_response(p, customer=customer_summary(customers.get(p.user_id)))
                for p in payments
            ],
            "pagination": pagination(page, limit, total),
        },
        "Pending payments retrieved successfully",
    )


@router.get("/employee/payments/history", response_model=Envelope, tags=["employee"])
async def payment_history(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_staff_user),
):
    approvals = get_runtime().approvals
    payments, total = approvals.history(status=status, page=page, limit=limit)
    customers = approvals.customers_for(payments)
    return ok(
        {
            "payments": [
                payment_to_response(p, customer=customer_summary(customers.get(p.user_id)))
                for p in payments
            ],
            "pagination": pagination(page, limit, total),
        },
        "Payment history retrieved successfully",
    )


@router.get("/employee/payments/{payment_id}", response_model=Envelope, tags=["employee"])
async def payment_details(payment_id: str, principal: AuthContext = Depends(get_staff_user)):
    payment, customer = get_runtime().approvals.details(payment_id)
    return ok(
        {
            "payment": payment_to_response(
                payment,
                customer=customer_summary(customer, include_id_number=True),
                include_client_info=True,
            )
        },
        "Payment details retrieved successfully",
    )


@router.patch(
    "/employee/payments/{payment_id}/status", response_model=Envelope, tags=["employee"]
)
async def update_payment_status(
    payment_id: str,
    body: PaymentStatusRequest,
    principal: AuthContext = Depends(get_staff_user),
):
    payment = get_runtime().approvals.decide(
        payment_id, body.status, body.reason, principal
    )
    return ok(
        {"payment": payment_to_response(payment)},
        f"Payment status updated to {payment.status}",
    )


@router.get("/employee/stats", response_model=Envelope, tags=["employee"])
async def employee_stats(principal: AuthContext = Depends(get_staff_user)):
    return ok(
        {"stats": get_runtime().approvals.stats()},
        "Payment statistics retrieved successfully",
    )


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------


@router.get("/admin/employees", response_model=Envelope, tags=["admin"])
async def admin_list_employees(
    role: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_admin_user),
):
    users, total = get_runtime().auth.list_staff(role=role, page=page, limit=limit)
    return ok(
        {
            "employees": [user_to_response(u) for u in users],
            "pagination": pagination(page, limit, total),
        }
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_admin_user),
):
    users, total = get_runtime().auth.list_users(role=role, page=page, limit=limit)
    return ok(
        {
            "users": [user_to_response(u) for u in users],
            "pagination": pagination(page, limit, total),
        }
    )


@router.post("/admin/staff", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_staff(
    body: StaffCreateRequest, principal: AuthContext = Depends(get_admin_user)
):
    user = get_runtime().auth.create_staff(
        principal,
        firstname=body.firstname,
        lastname=body.lastname,
        id_number=body.id_number,
        account_number=body.account_number,
        username=body.username,
        password=body.password,
        role=body.role,
    )
    return ok({"user": user_to_response(user)}, f"{user.role} created successfully")


@router.delete("/admin/employees/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_staff(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    user = get_runtime().auth.delete_staff(principal, user_id)
    return ok(
        {"deletedUser": {"id": user.id, "username": user.username, "role": user.role}},
        "Employee deleted successfully",
    )


@router.patch("/admin/employees/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    user, old_role = get_runtime().auth.set_user_role(principal, user_id, body.role)
    return ok(
        {"user": user_to_response(user), "oldRole": old_role, "newRole": user.role},
        "User role updated successfully",
    )


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def admin_stats(principal: AuthContext = Depends(get_admin_user)):
    return ok({"stats": get_runtime().auth.user_stats()})
