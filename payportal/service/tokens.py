from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from payportal.config import Settings
from payportal.logging import get_logger
from payportal.service.errors import AuthenticationError
from payportal.storage.models import User
from payportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Revoked ids kept by the in-process fallback before pruning
_REVOCATION_RETENTION = timedelta(hours=24)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenService:
    """Signs and verifies HS256 bearer tokens and tracks explicit revocations.

    Tokens are self-describing: the role is embedded so authorization checks
    need no store lookup. Revocation is keyed by the token's ``jti`` and kept
    in Redis until the token would have expired anyway; without a cache the
    revocations live in process memory.
    """

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None) -> None:
        self.settings = settings
        self.cache = cache
        self._revoked: dict[str, datetime] = {}
        self._lock = threading.Lock()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, check_expiry: bool = True) -> Optional[dict[str, Any]]:
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if check_expiry and exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue(self, user: User, session_id: Optional[str] = None) -> Tuple[str, dict[str, Any]]:
        """Mint a token for ``user``; returns the token and its claims."""
        now = self._now()
        claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "accountNumber": user.account_number,
            "role": user.role,
            "sid": session_id or str(uuid.uuid4()),
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
        }
        return self._encode_jwt(claims), claims

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        """Signature, issuer, audience and expiry check. Revocation is separate."""
        return self._decode_jwt(token)

    def _prune_revoked(self) -> None:
        cutoff = self._now() - _REVOCATION_RETENTION
        for jti, revoked_at in list(self._revoked.items()):
            if revoked_at < cutoff:
                self._revoked.pop(jti, None)

    async def invalidate(self, token: str) -> bool:
        """Revoke ``token`` until its natural expiry. Returns False for garbage input."""
        claims = self._decode_jwt(token, check_expiry=False)
        if not claims or not claims.get("jti"):
            return False
        jti = claims["jti"]
        with self._lock:
            self._prune_revoked()
            self._revoked[jti] = self._now()
        if self.cache:
            ttl = max(int(float(claims["exp"]) - time.time()), 0)
            ttl += int(self._clock_skew_leeway.total_seconds())
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except Exception as exc:
                logger.warning("token_denylist_write_failed", jti=jti, error=str(exc))
        logger.info("token_revoked", user_id=claims.get("sub"), jti=jti)
        return True

    async def is_revoked(self, token_or_claims: str | dict[str, Any]) -> bool:
        if isinstance(token_or_claims, dict):
            claims: Optional[dict[str, Any]] = token_or_claims
        else:
            claims = self._decode_jwt(token_or_claims, check_expiry=False)
        jti = claims.get("jti") if claims else None
        if not jti:
            return False
        with self._lock:
            if jti in self._revoked:
                return True
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except Exception as exc:
                # Fail closed: an unreachable denylist must not resurrect a logged-out token
                logger.warning(
                    "denylist_check_failed_defaulting_to_revoked", jti=jti, error=str(exc)
                )
                return True
        return False

    async def authenticate(self, authorization: Optional[str]) -> Tuple[str, dict[str, Any]]:
        """Resolve an Authorization header to (token, claims) or raise AuthenticationError."""
        token = extract_bearer(authorization)
        if not token:
            logger.info("auth_rejected", reason="no_token")
            raise AuthenticationError(
                "Access denied. No token provided.", error_code="no_token"
            )
        claims = self.verify(token)
        if not claims:
            logger.info("auth_rejected", reason="invalid_token")
            raise AuthenticationError(
                "Invalid token. Access denied.", error_code="invalid_token"
            )
        if await self.is_revoked(claims):
            logger.info("auth_rejected", reason="revoked", user_id=claims.get("sub"))
            raise AuthenticationError(
                "Token has been invalidated. Please login again.",
                error_code="invalidated_token",
            )
        return token, claims
