"""TOTP and backup code behaviour."""

import base64
import re

import pytest

from payportal.service.mfa import MFAService
from payportal.storage.models import User

# RFC 6238 appendix B seed for SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode("ascii")


@pytest.fixture
def mfa():
    return MFAService()


class TestTotp:
    """Code generation and the drift window."""

    def test_matches_rfc_vectors(self, mfa):
        # The RFC vectors are 8 digits; the last six are what a 6 digit app shows
        assert mfa.generate_totp(RFC_SECRET, 59) == "287082"
        assert mfa.generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_current_code_verifies(self, mfa):
        secret = mfa.generate_secret("ada")["secret"]
        now = 1_700_000_000.0
        assert mfa.verify_token(mfa.generate_totp(secret, now), secret, at=now)

    @pytest.mark.parametrize("steps", [-2, -1, 1, 2])
    def test_two_steps_of_drift_are_accepted(self, mfa, steps):
        secret = mfa.generate_secret("ada")["secret"]
        now = 1_700_000_010.0
        code = mfa.generate_totp(secret, now + steps * 30)
        assert mfa.verify_token(code, secret, at=now)

    @pytest.mark.parametrize("steps", [-3, 3])
    def test_three_steps_of_drift_are_rejected(self, mfa, steps):
        now = 1_700_000_010.0
        code = mfa.generate_totp(RFC_SECRET, now + steps * 30)
        window = {mfa.generate_totp(RFC_SECRET, now + k * 30) for k in range(-2, 3)}
        if code in window:
            pytest.skip("code collides with one inside the window")
        assert not mfa.verify_token(code, RFC_SECRET, at=now)

    def test_whitespace_is_ignored(self, mfa):
        now = 1_700_000_000.0
        code = mfa.generate_totp(RFC_SECRET, now)
        assert mfa.verify_token(f"{code[:3]} {code[3:]}", RFC_SECRET, at=now)

    @pytest.mark.parametrize(
        "code",
        [
            None,
            "",
            "12345",
            "1234567",
            "abcdef",
            # Arabic-Indic and fullwidth digits
            "\u0661\u0662\u0663\u0664\u0665\u0666",
            "\uff11\uff12\uff13\uff14\uff15\uff16",
        ],
    )
    def test_malformed_codes_fail(self, mfa, code):
        assert not mfa.verify_token(code, RFC_SECRET)

    def test_missing_secret_fails(self, mfa):
        assert not mfa.verify_token("123456", None)

    def test_invalid_secret_produces_no_code(self, mfa):
        assert mfa.generate_totp("!!!not-base32!!!", 0) == ""


class TestEnrollment:
    """Secrets, otpauth URLs and QR rendering."""

    def test_secret_is_unpadded_base32_of_32_bytes(self, mfa):
        secret = mfa.generate_secret("ada")["secret"]
        assert "=" not in secret
        assert re.fullmatch(r"[A-Z2-7]+", secret)
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        assert len(base64.b32decode(padded)) == 32

    def test_otpauth_url_names_issuer_and_user(self, mfa):
        result = mfa.generate_secret("ada", issuer="Payment Portal")
        url = result["otpauthUrl"]
        assert url.startswith("otpauth://totp/Payment%20Portal%3Aada?")
        assert f"secret={result['secret']}" in url
        assert "issuer=Payment+Portal" in url

    def test_qr_code_is_png_data_url(self, mfa):
        url = mfa.generate_secret("ada")["otpauthUrl"]
        data_url = mfa.generate_qr_code(url)
        assert data_url.startswith("data:image/png;base64,")
        png = base64.b64decode(data_url.split(",", 1)[1])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"

    def test_setup_complete_requires_all_flags(self):
        user = User(
            id="u",
            firstname="Ada",
            lastname="Lovelace",
            id_number="12345",
            account_number="ACC12345",
            username="ada",
        )
        assert not MFAService.is_setup_complete(user)
        user.mfa_secret = RFC_SECRET
        user.mfa_enabled = True
        assert not MFAService.is_setup_complete(user)
        user.mfa_setup_complete = True
        assert MFAService.is_setup_complete(user)


class TestBackupCodes:
    """Single-use recovery codes."""

    def test_codes_are_eight_uppercase_hex(self, mfa):
        codes = mfa.generate_backup_codes()
        assert len(codes) == 8
        assert all(re.fullmatch(r"[0-9A-F]{8}", code) for code in codes)

    def test_count_is_configurable(self):
        assert len(MFAService(backup_code_count=3).generate_backup_codes()) == 3

    def test_valid_code_is_removed_from_remaining(self, mfa):
        codes = ["AAAA1111", "BBBB2222", "CCCC3333"]
        check = mfa.verify_backup_code("bbbb 2222", codes)
        assert check.valid
        assert check.used_code == "BBBB2222"
        assert check.remaining_codes == ["AAAA1111", "CCCC3333"]

    def test_code_cannot_be_used_twice(self, mfa):
        first = mfa.verify_backup_code("AAAA1111", ["AAAA1111", "BBBB2222"])
        second = mfa.verify_backup_code("AAAA1111", first.remaining_codes)
        assert not second.valid
        assert second.remaining_codes == ["BBBB2222"]

    def test_unknown_code_leaves_codes_untouched(self, mfa):
        check = mfa.verify_backup_code("DEADBEEF", ["AAAA1111"])
        assert not check.valid
        assert check.remaining_codes == ["AAAA1111"]
