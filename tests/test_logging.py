"""Log redaction and request id binding."""

from payportal.logging import (
    _redact_sensitive,
    bind_request_id,
    get_request_id,
    sanitize_error_message,
)


class TestRedaction:
    """Sensitive keys never reach the renderer intact."""

    def test_credentials_are_replaced(self):
        event = _redact_sensitive(
            None,
            "info",
            {
                "event": "login",
                "password": "Passw0rd!",
                "backup_code": "AAAA1111",
                "mfa_secret": "JBSW",
            },
        )
        assert event["password"] == "[redacted]"
        assert event["backup_code"] == "[redacted]"
        assert event["mfa_secret"] == "[redacted]"
        assert event["event"] == "login"

    def test_account_identifiers_keep_last_four(self):
        event = _redact_sensitive(
            None, "info", {"account_number": "ACC100001", "id_number": "ID1"}
        )
        assert event["account_number"] == "*****0001"
        assert event["id_number"] == "ID1"

    def test_other_fields_pass_through(self):
        event = _redact_sensitive(None, "info", {"user_id": "u-1", "amount": "10.00"})
        assert event == {"user_id": "u-1", "amount": "10.00"}


class TestRequestId:
    def test_caller_id_is_kept(self):
        assert bind_request_id("req-1") == "req-1"
        assert get_request_id() == "req-1"

    def test_blank_id_is_replaced(self):
        rid = bind_request_id("   ")
        assert len(rid) == 36
        assert get_request_id() == rid


class TestSanitizeErrorMessage:
    def test_dsn_credentials_are_stripped(self):
        message = sanitize_error_message(
            "connection to postgresql://bank:hunter2@db:5432/portal failed"
        )
        assert "hunter2" not in message
        assert "postgresql://[redacted]@db:5432/portal" in message

    def test_sql_is_stripped(self):
        message = sanitize_error_message("syntax error near SELECT * FROM bank_user")
        assert message == "syntax error near [query]"

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"
