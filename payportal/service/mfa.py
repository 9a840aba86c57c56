from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote, urlencode

import qrcode

from payportal.logging import get_logger
from payportal.storage.models import User

logger = get_logger(__name__)

_TOTP_PATTERN = re.compile(r"^[0-9]{6}$")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class BackupCodeCheck:
    valid: bool
    remaining_codes: List[str] = field(default_factory=list)
    used_code: Optional[str] = None


class MFAService:
    """TOTP seeds, code checks and single-use backup codes.

    Codes follow RFC 6238 with HMAC-SHA1, 30 second steps and 6 digits so any
    authenticator app can enroll from the otpauth URL.
    """

    def __init__(
        self,
        *,
        issuer: str = "Payment Portal",
        valid_window: int = 2,
        backup_code_count: int = 8,
        interval: int = 30,
        digits: int = 6,
    ) -> None:
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.interval = interval
        self.digits = digits

    def generate_secret(self, username: str, issuer: Optional[str] = None) -> Dict[str, str]:
        issuer = issuer or self.issuer
        # 32 random bytes, base32 without padding
        secret = base64.b32encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")
        label = quote(f"{issuer}:{username}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return {"secret": secret, "otpauthUrl": f"otpauth://totp/{label}?{query}"}

    def generate_qr_code(self, otpauth_url: str) -> str:
        """Render ``otpauth_url`` as a PNG data URL."""
        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(otpauth_url)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def generate_totp(self, secret: str, timestamp: float) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded.upper(), casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_token(
        self, code: Optional[str], secret: Optional[str], *, at: Optional[float] = None
    ) -> bool:
        """Check ``code`` against the steps within the drift window around ``at``."""
        if not code or not secret:
            return False
        cleaned = _WHITESPACE.sub("", str(code))
        if not _TOTP_PATTERN.match(cleaned):
            return False
        now = time.time() if at is None else at
        for offset in range(-self.valid_window, self.valid_window + 1):
            generated = self.generate_totp(secret, now + offset * self.interval)
            if generated and hmac.compare_digest(generated, cleaned):
                return True
        return False

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        return [
            secrets.token_hex(4).upper()
            for _ in range(count or self.backup_code_count)
        ]

    @staticmethod
    def normalize_backup_code(code: Optional[str]) -> str:
        return _WHITESPACE.sub("", str(code or "")).upper()

    def verify_backup_code(
        self, code: Optional[str], known_codes: Sequence[str]
    ) -> BackupCodeCheck:
        """Pure membership check; the caller persists ``remaining_codes``."""
        cleaned = self.normalize_backup_code(code)
        codes = list(known_codes or [])
        if not cleaned or cleaned not in codes:
            return BackupCodeCheck(valid=False, remaining_codes=codes)
        return BackupCodeCheck(
            valid=True,
            remaining_codes=[c for c in codes if c != cleaned],
            used_code=cleaned,
        )

    @staticmethod
    def is_setup_complete(user: User) -> bool:
        return bool(user.mfa_enabled and user.mfa_setup_complete and user.mfa_secret)
