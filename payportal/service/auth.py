from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from payportal.config import Settings
from payportal.logging import get_logger
from payportal.service.errors import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from payportal.service.mfa import MFAService
from payportal.service.sessions import SessionRegistry
from payportal.service.store import BankStore
from payportal.service.tokens import TokenService
from payportal.storage.errors import ConstraintViolation
from payportal.storage.models import (
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    ROLE_EMPLOYEE,
    ROLES,
    STAFF_ROLES,
    User,
)

logger = get_logger(__name__)

MFA_SETUP_INSTRUCTIONS = (
    "Scan the QR code with your authenticator app (Google Authenticator, Authy, etc.) "
    "or enter the manual key, then verify with a 6-digit code."
)
BACKUP_CODES_WARNING = (
    "Store these backup codes in a safe place. You can use them to access your "
    "account if you lose your authenticator device."
)

_DUPLICATE_MESSAGES = {
    "username": "Username already exists",
    "accountNumber": "Account number already exists",
    "idNumber": "ID number already exists",
}


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip().lower()


@dataclass
class AuthContext:
    user_id: str
    username: str
    account_number: str
    role: Optional[str]
    session_id: Optional[str]
    token: str
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoginResult:
    user: User
    token: Optional[str] = None
    requires_mfa: bool = False
    mfa_verified: bool = False
    used_backup_code: Optional[str] = None
    remaining_backup_codes: Optional[int] = None


class AuthService:
    """Registration, password and MFA login, logout and account administration."""

    def __init__(
        self,
        store: BankStore,
        tokens: TokenService,
        sessions: SessionRegistry,
        mfa: MFAService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.mfa = mfa
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _create_account(
        self,
        *,
        firstname: str,
        lastname: str,
        id_number: str,
        account_number: str,
        username: str,
        password: str,
        role: str,
    ) -> User:
        try:
            user = self.store.create_user(
                firstname=firstname.strip(),
                lastname=lastname.strip(),
                id_number=id_number.strip(),
                account_number=account_number.strip(),
                username=normalize_username(username),
                role=role,
                currency=self.settings.default_currency,
            )
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "username")
            raise ConflictError(
                _DUPLICATE_MESSAGES.get(field_name, "User already exists"),
                detail={"field": field_name},
            ) from exc
        self.save_password(user.id, password)
        return user

    async def _open_session(self, user: User) -> str:
        token, claims = self.tokens.issue(user)
        await self.sessions.create(user.id, claims["sid"])
        return token

    async def register(
        self,
        *,
        firstname: str,
        lastname: str,
        id_number: str,
        account_number: str,
        username: str,
        password: str,
    ) -> LoginResult:
        """Create a Customer and sign them in straight away."""
        if not self.settings.allow_registration:
            raise AuthorizationError("Registration is disabled")
        user = self._create_account(
            firstname=firstname,
            lastname=lastname,
            id_number=id_number,
            account_number=account_number,
            username=username,
            password=password,
            role=ROLE_CUSTOMER,
        )
        token = await self._open_session(user)
        self.logger.info("user_registered", user_id=user.id, username=user.username)
        return LoginResult(user=user, token=token)

    def _check_credentials(
        self, username: str, account_number: str, password: str
    ) -> User:
        user = self.store.find_user_by_credentials(
            normalize_username(username), (account_number or "").strip()
        )
        # One generic failure for unknown user, wrong account and wrong password
        if not user or not self.verify_password(user.id, password or ""):
            self.logger.warning(
                "login_failed", username=normalize_username(username)
            )
            raise AuthenticationError(
                "Invalid credentials", error_code="invalid_credentials"
            )
        return user

    async def login(self, username: str, account_number: str, password: str) -> LoginResult:
        user = self._check_credentials(username, account_number, password)
        if self.mfa.is_setup_complete(user):
            self.logger.info("login_mfa_challenge", user_id=user.id)
            return LoginResult(user=user, requires_mfa=True)
        token = await self._open_session(user)
        self.logger.info("login_succeeded", user_id=user.id, role=user.role)
        return LoginResult(user=user, token=token)

    def _check_second_factor(
        self, user: User, code: Optional[str], backup_code: Optional[str]
    ) -> Tuple[bool, Optional[str], int]:
        """Returns (ok, used backup code, backup codes left)."""
        if code:
            ok = self.mfa.verify_token(code, user.mfa_secret)
            self.logger.info("mfa_totp_checked", user_id=user.id, ok=ok)
            return ok, None, len(user.mfa_backup_codes)
        check = self.mfa.verify_backup_code(backup_code, user.mfa_backup_codes)
        if not check.valid:
            self.logger.info("mfa_backup_code_checked", user_id=user.id, ok=False)
            return False, None, len(user.mfa_backup_codes)
        # The store removes the code atomically; a concurrent use loses here
        remaining = self.store.consume_backup_code(user.id, check.used_code)
        if remaining is None:
            self.logger.warning("mfa_backup_code_race_lost", user_id=user.id)
            return False, None, len(check.remaining_codes)
        self.logger.info(
            "mfa_backup_code_checked", user_id=user.id, ok=True, remaining=remaining
        )
        return True, check.used_code, remaining

    async def login_with_mfa(
        self,
        username: str,
        account_number: str,
        password: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> LoginResult:
        user = self._check_credentials(username, account_number, password)
        if not self.mfa.is_setup_complete(user):
            token = await self._open_session(user)
            self.logger.info("login_succeeded", user_id=user.id, role=user.role)
            return LoginResult(user=user, token=token)
        if not code and not backup_code:
            return LoginResult(user=user, requires_mfa=True)
        ok, used_code, remaining = self._check_second_factor(user, code, backup_code)
        if not ok:
            self.logger.warning("mfa_login_failed", user_id=user.id)
            raise BadRequestError("Invalid verification code", error_code="invalid_mfa_code")
        token = await self._open_session(user)
        self.logger.info(
            "login_succeeded", user_id=user.id, role=user.role, mfa=True
        )
        return LoginResult(
            user=user,
            token=token,
            mfa_verified=True,
            used_backup_code=used_code,
            remaining_backup_codes=remaining,
        )

    async def verify_mfa(
        self,
        username: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Check a second factor for ``username`` without minting a token."""
        user = self.store.get_user_by_username(normalize_username(username))
        if not user or not user.mfa_enabled:
            raise BadRequestError("Invalid request")
        if not code and not backup_code:
            raise BadRequestError("Either token or backup code is required")
        ok, used_code, remaining = self._check_second_factor(user, code, backup_code)
        if not ok:
            raise BadRequestError("Invalid verification code", error_code="invalid_mfa_code")
        return {
            "userId": user.id,
            "username": user.username,
            "usedBackupCode": used_code,
            "remainingBackupCodes": remaining,
        }

    # ------------------------------------------------------------------
    # Token-bound operations
    # ------------------------------------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token, claims = await self.tokens.authenticate(authorization)
        user_id = claims["sub"]
        try:
            await self.sessions.touch_or_recreate(user_id, claims.get("sid"))
        except Exception as exc:
            # Registry is advisory; a cache outage must not block the request
            self.logger.warning("session_touch_failed", user_id=user_id, error=str(exc))
        return AuthContext(
            user_id=user_id,
            username=claims.get("username", ""),
            account_number=claims.get("accountNumber", ""),
            role=claims.get("role"),
            session_id=claims.get("sid"),
            token=token,
            claims=claims,
        )

    async def logout(self, ctx: AuthContext) -> None:
        await self.tokens.invalidate(ctx.token)
        await self.sessions.remove(ctx.user_id)
        self.logger.info("logout", user_id=ctx.user_id)

    async def logout_all(self, ctx: AuthContext) -> None:
        await self.tokens.invalidate(ctx.token)
        await self.sessions.remove_all(ctx.user_id)
        self.logger.info("logout_all", user_id=ctx.user_id)

    async def session_info(self, ctx: AuthContext) -> Dict[str, Any]:
        info = await self.sessions.info(ctx.user_id)
        if info is None:
            raise NotFoundError("No active session")
        return info

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # ------------------------------------------------------------------
    # MFA lifecycle
    # ------------------------------------------------------------------

    def start_mfa_setup(self, user_id: str) -> Dict[str, str]:
        user = self.get_user(user_id)
        if user.mfa_enabled and user.mfa_setup_complete:
            raise BadRequestError("MFA is already enabled for this account")
        generated = self.mfa.generate_secret(user.username)
        qr_code = self.mfa.generate_qr_code(generated["otpauthUrl"])
        self.store.set_mfa_secret(user.id, generated["secret"])
        self.logger.info("mfa_setup_started", user_id=user.id)
        return {
            "qrCode": qr_code,
            "manualEntryKey": generated["secret"],
            "otpauthUrl": generated["otpauthUrl"],
            "instructions": MFA_SETUP_INSTRUCTIONS,
        }

    def confirm_mfa_setup(self, user_id: str, code: str) -> List[str]:
        user = self.get_user(user_id)
        if not user.mfa_secret:
            raise BadRequestError("MFA setup not initiated. Please generate setup first.")
        if not self.mfa.verify_token(code, user.mfa_secret):
            self.logger.warning("mfa_setup_verify_failed", user_id=user.id)
            raise BadRequestError(
                "Invalid verification code. Please try again.",
                error_code="invalid_mfa_code",
            )
        backup_codes = self.mfa.generate_backup_codes()
        self.store.enable_mfa(user.id, backup_codes)
        self.logger.info("mfa_enabled", user_id=user.id)
        return backup_codes

    def disable_mfa(self, user_id: str, password: str) -> None:
        user = self.get_user(user_id)
        if not self.verify_password(user.id, password or ""):
            self.logger.warning("mfa_disable_rejected", user_id=user.id)
            raise BadRequestError("Invalid password")
        self.store.disable_mfa(user.id)
        self.logger.info("mfa_disabled", user_id=user.id)

    def mfa_status(self, user_id: str) -> Dict[str, Any]:
        user = self.get_user(user_id)
        return {
            "mfaEnabled": user.mfa_enabled,
            "mfaSetupComplete": user.mfa_setup_complete,
            "backupCodesRemaining": len(user.mfa_backup_codes),
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _page(self, roles: Tuple[str, ...], page: int, limit: int) -> Tuple[List[User], int]:
        counts = self.store.count_users_by_role()
        total = sum(counts.get(role, 0) for role in roles)
        users = self.store.list_users(roles=roles, limit=limit, offset=(page - 1) * limit)
        return users, total

    def list_staff(
        self, *, role: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> Tuple[List[User], int]:
        roles = (role,) if role in STAFF_ROLES else STAFF_ROLES
        return self._page(tuple(roles), page, limit)

    def list_users(
        self, *, role: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> Tuple[List[User], int]:
        roles = (role,) if role in ROLES else ROLES
        return self._page(tuple(roles), page, limit)

    def create_staff(
        self,
        actor: AuthContext,
        *,
        firstname: str,
        lastname: str,
        id_number: str,
        account_number: str,
        username: str,
        password: str,
        role: str,
    ) -> User:
        if role not in STAFF_ROLES:
            raise BadRequestError("Role must be either Employee or Admin")
        user = self._create_account(
            firstname=firstname,
            lastname=lastname,
            id_number=id_number,
            account_number=account_number,
            username=username,
            password=password,
            role=role,
        )
        self.logger.info(
            "staff_created", actor=actor.user_id, user_id=user.id, role=role
        )
        return user

    def delete_staff(self, actor: AuthContext, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("Employee not found")
        if user.role == ROLE_CUSTOMER:
            raise BadRequestError("Cannot delete customers through this endpoint")
        if user.id == actor.user_id:
            raise BadRequestError("You cannot delete your own account")
        try:
            self.store.delete_user(user.id)
        except ConstraintViolation as exc:
            raise BadRequestError(
                "Cannot delete a user who has made payments"
            ) from exc
        self.logger.info("staff_deleted", actor=actor.user_id, user_id=user.id, role=user.role)
        return user

    def set_user_role(self, actor: AuthContext, user_id: str, role: str) -> Tuple[User, str]:
        """Change a user's role; returns the updated user and the previous role."""
        if role not in ROLES:
            raise BadRequestError("Invalid role. Must be Customer, Employee, or Admin")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("Employee not found")
        if user.id == actor.user_id:
            raise BadRequestError("You cannot change your own role")
        old_role = user.role
        updated = self.store.update_user_role(user.id, role)
        if not updated:
            raise NotFoundError("Employee not found")
        self.logger.info(
            "user_role_changed",
            actor=actor.user_id,
            user_id=user.id,
            old_role=old_role,
            new_role=role,
        )
        return updated, old_role

    def user_stats(self) -> Dict[str, int]:
        counts = self.store.count_users_by_role()
        return {
            "totalUsers": sum(counts.values()),
            "customers": counts.get(ROLE_CUSTOMER, 0),
            "employees": counts.get(ROLE_EMPLOYEE, 0),
            "admins": counts.get(ROLE_ADMIN, 0),
        }
