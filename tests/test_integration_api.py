"""Integration tests for the HTTP surface.

Covers registration and login, MFA challenge and completion, logout
revocation, role enforcement, and the full payment approval flow.
"""

import time

import pytest
from fastapi.testclient import TestClient

from payportal import app as app_module
from payportal.service.runtime import get_runtime

PASSWORD = "Passw0rd!Secure"

PAYMENT = {
    "amount": 40,
    "currency": "ZAR",
    "recipientName": "Grace Hopper",
    "recipientBank": "First Bank",
    "recipientAccount": "GB29NWBK6016",
    "swiftCode": "NWBKGB2L",
    "provider": "SWIFT",
    "paymentReference": "INV-2024-001",
}


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, username="ada_l", account="ACC100001", id_number="ID100001"):
    response = client.post(
        "/v1/user/register",
        json={
            "firstname": "Ada",
            "lastname": "Lovelace",
            "idNumber": id_number,
            "accountNumber": account,
            "username": username,
            "password": PASSWORD,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _staff_token(client, role="Employee", username="clerk", account="EMP100001"):
    runtime = get_runtime()
    user = runtime.store.create_user(
        firstname="Grace",
        lastname="Hopper",
        id_number=f"ID{account}",
        account_number=account,
        username=username,
        role=role,
    )
    runtime.auth.save_password(user.id, PASSWORD)
    response = client.post(
        "/v1/user/login",
        json={"username": username, "accountNumber": account, "password": PASSWORD},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


class TestRegisterAndLogin:
    """Account creation and password login."""

    def test_register_returns_token_and_user(self, client):
        data = _register(client, username="Ada_L")
        assert data["token"]
        assert data["user"]["username"] == "ada_l"
        assert data["user"]["role"] == "Customer"
        assert data["user"]["balance"] == "0.00"
        assert "password" not in data["user"]

    def test_duplicate_username_conflicts(self, client):
        _register(client)
        response = client.post(
            "/v1/user/register",
            json={
                "firstname": "Ada",
                "lastname": "Other",
                "idNumber": "ID999999",
                "accountNumber": "ACC999999",
                "username": "ADA_L",
                "password": PASSWORD,
            },
        )
        assert response.status_code == 409
        body = response.json()
        assert body["message"] == "Username already exists"
        assert body["errors"] == {"field": "username"}

    def test_login_and_me(self, client):
        _register(client)
        response = client.post(
            "/v1/user/login",
            json={"username": "ada_l", "accountNumber": "ACC100001", "password": PASSWORD},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Login successful"
        me = client.get("/v1/user/me", headers=_auth(body["data"]["token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["accountNumber"] == "ACC100001"

    def test_bad_password_is_generic_401(self, client):
        _register(client)
        response = client.post(
            "/v1/user/login",
            json={"username": "ada_l", "accountNumber": "ACC100001", "password": "Nope!Pass1"},
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"

    def test_session_info(self, client):
        token = _register(client)["token"]
        data = client.get("/v1/user/session", headers=_auth(token)).json()["data"]
        assert data["isExpired"] is False
        assert data["timeRemaining"] > 0


class TestLogout:
    """Revoked tokens stop working immediately."""

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_logout_invalidates_token(self, client, method):
        token = _register(client)["token"]
        response = getattr(client, method)("/v1/user/logout", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"
        again = client.get("/v1/user/me", headers=_auth(token))
        assert again.status_code == 401
        assert again.json()["code"] == "invalidated_token"

    def test_garbage_token_is_401(self, client):
        response = client.get("/v1/user/me", headers=_auth("not.a.token"))
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"

    def test_non_ascii_token_is_401(self, client):
        header = "Bearer eyJhbGciOiJIUzI1NiJ9.e30.\u00e9".encode("utf-8")
        response = client.get("/v1/user/me", headers={"Authorization": header})
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"


class TestMfaFlow:
    """Enrollment, challenge and second-factor login."""

    def test_enroll_then_login_requires_second_factor(self, client):
        token = _register(client)["token"]
        setup = client.post("/v1/mfa/setup/generate", headers=_auth(token)).json()["data"]
        assert setup["qrCode"].startswith("data:image/png;base64,")
        secret = setup["manualEntryKey"]
        code = get_runtime().mfa.generate_totp(secret, time.time())

        enabled = client.post(
            "/v1/mfa/setup/verify", json={"token": code}, headers=_auth(token)
        )
        assert enabled.status_code == 200
        backup_codes = enabled.json()["data"]["backupCodes"]
        assert len(backup_codes) == 8

        credentials = {"username": "ada_l", "accountNumber": "ACC100001", "password": PASSWORD}
        challenge = client.post("/v1/user/login", json=credentials).json()
        assert challenge["data"] == {"requiresMFA": True, "username": "ada_l"}

        login = client.post(
            "/v1/mfa/login", json={**credentials, "backupCode": backup_codes[0]}
        )
        assert login.status_code == 200
        data = login.json()["data"]
        assert data["mfaVerified"] is True
        assert data["usedBackupCode"] is True
        assert data["remainingBackupCodes"] == 7

        reused = client.post(
            "/v1/mfa/login", json={**credentials, "backupCode": backup_codes[0]}
        )
        assert reused.status_code == 400

        status = client.get("/v1/mfa/status", headers=_auth(data["token"])).json()["data"]
        assert status["backupCodesRemaining"] == 7

    def test_setup_verify_rejects_non_numeric_code(self, client):
        token = _register(client)["token"]
        client.post("/v1/mfa/setup/generate", headers=_auth(token))
        response = client.post(
            "/v1/mfa/setup/verify", json={"token": "12ab56"}, headers=_auth(token)
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "token"

    @pytest.mark.parametrize(
        "code", ["\u0661\u0662\u0663\u0664\u0665\u0666", "\uff11\uff12\uff13\uff14\uff15\uff16"]
    )
    def test_setup_verify_rejects_non_ascii_digits(self, client, code):
        token = _register(client)["token"]
        client.post("/v1/mfa/setup/generate", headers=_auth(token))
        response = client.post(
            "/v1/mfa/setup/verify", json={"token": code}, headers=_auth(token)
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "token"


class TestRoleEnforcement:
    """Role claims gate each route family."""

    def test_customer_cannot_reach_employee_routes(self, client):
        token = _register(client)["token"]
        response = client.get("/v1/employee/payments/pending", headers=_auth(token))
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "insufficient_permissions"
        assert body["errors"]["required"] == ["Employee", "Admin"]
        assert body["errors"]["current"] == "Customer"

    def test_employee_cannot_create_payments_or_manage_staff(self, client):
        token = _staff_token(client)
        assert client.post("/v1/payments", json=PAYMENT, headers=_auth(token)).status_code == 403
        assert client.get("/v1/admin/users", headers=_auth(token)).status_code == 403

    def test_admin_manages_staff(self, client):
        admin = _staff_token(client, role="Admin", username="boss", account="ADM100001")
        created = client.post(
            "/v1/admin/staff",
            json={
                "firstname": "Alan",
                "lastname": "Turing",
                "idNumber": "ID777777",
                "accountNumber": "EMP777777",
                "username": "alan",
                "password": PASSWORD,
                "role": "Employee",
            },
            headers=_auth(admin),
        )
        assert created.status_code == 201
        user_id = created.json()["data"]["user"]["id"]

        promoted = client.patch(
            f"/v1/admin/employees/{user_id}/role", json={"role": "Admin"}, headers=_auth(admin)
        ).json()["data"]
        assert (promoted["oldRole"], promoted["newRole"]) == ("Employee", "Admin")

        stats = client.get("/v1/admin/stats", headers=_auth(admin)).json()["data"]["stats"]
        assert stats["admins"] == 2

        deleted = client.delete(f"/v1/admin/employees/{user_id}", headers=_auth(admin))
        assert deleted.status_code == 200
        assert deleted.json()["data"]["deletedUser"]["username"] == "alan"


class TestPaymentApprovalFlow:
    """Customer pays, employee decides, balance follows."""

    def test_full_flow(self, client):
        customer = _register(client)["token"]
        deposit = client.post(
            "/v1/account/deposit", json={"amount": 50}, headers=_auth(customer)
        )
        assert deposit.status_code == 200
        assert deposit.json()["data"]["newBalance"] == "50.00"

        created = client.post("/v1/payments", json=PAYMENT, headers=_auth(customer))
        assert created.status_code == 201
        payment = created.json()["data"]["payment"]
        assert payment["status"] == "pending"
        assert payment["paymentId"].startswith("PAY")

        employee = _staff_token(client)
        pending = client.get(
            "/v1/employee/payments/pending", headers=_auth(employee)
        ).json()["data"]
        assert pending["pagination"]["totalCount"] == 1
        assert pending["payments"][0]["customer"]["username"] == "ada_l"

        details = client.get(
            f"/v1/employee/payments/{payment['paymentId']}", headers=_auth(employee)
        ).json()["data"]["payment"]
        assert details["customer"]["idNumber"] == "ID100001"
        assert "createdIP" in details

        approved = client.patch(
            f"/v1/employee/payments/{payment['paymentId']}/status",
            json={"status": "completed", "reason": "Verified"},
            headers=_auth(employee),
        )
        assert approved.status_code == 200
        assert approved.json()["message"] == "Payment status updated to completed"
        history = approved.json()["data"]["payment"]["statusHistory"]
        assert history[-1]["updatedByUsername"] == "clerk"

        balance = client.get("/v1/account/balance", headers=_auth(customer)).json()["data"]
        assert balance["balance"] == "10.00"

        transactions = client.get(
            "/v1/account/transactions?type=payment", headers=_auth(customer)
        ).json()["data"]["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["amount"] == "-40.00"
        assert transactions[0]["balanceAfter"] == "10.00"

        again = client.patch(
            f"/v1/employee/payments/{payment['paymentId']}/status",
            json={"status": "failed"},
            headers=_auth(employee),
        )
        assert again.status_code == 400
        assert again.json()["code"] == "invalid_state_transition"

    def test_approval_without_funds_is_rejected(self, client):
        customer = _register(client)["token"]
        payment = client.post(
            "/v1/payments", json=PAYMENT, headers=_auth(customer)
        ).json()["data"]["payment"]
        employee = _staff_token(client)
        response = client.patch(
            f"/v1/employee/payments/{payment['id']}/status",
            json={"status": "completed"},
            headers=_auth(employee),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "insufficient_funds"
        assert body["errors"] == {"balance": "0.00", "required": "40.00"}
        balance = client.get("/v1/account/balance", headers=_auth(customer)).json()["data"]
        assert balance["balance"] == "0.00"

    def test_invalid_decision_is_validation_error(self, client):
        customer = _register(client)["token"]
        payment = client.post(
            "/v1/payments", json=PAYMENT, headers=_auth(customer)
        ).json()["data"]["payment"]
        employee = _staff_token(client)
        response = client.patch(
            f"/v1/employee/payments/{payment['id']}/status",
            json={"status": "approved"},
            headers=_auth(employee),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_payment_validation_lists_fields(self, client):
        customer = _register(client)["token"]
        response = client.post(
            "/v1/payments",
            json={**PAYMENT, "amount": 0, "swiftCode": "BAD"},
            headers=_auth(customer),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation failed"
        assert {e["field"] for e in body["errors"]} == {"amount", "swiftCode"}

    def test_oversized_amount_is_validation_error(self, client):
        customer = _register(client)["token"]
        response = client.post(
            "/v1/payments", json={**PAYMENT, "amount": 1e30}, headers=_auth(customer)
        )
        assert response.status_code == 400
        assert [e["field"] for e in response.json()["errors"]] == ["amount"]

    def test_customers_only_see_their_own_payments(self, client):
        first = _register(client)["token"]
        second = _register(client, username="alan", account="ACC200002", id_number="ID200002")["token"]
        payment = client.post(
            "/v1/payments", json=PAYMENT, headers=_auth(first)
        ).json()["data"]["payment"]
        response = client.get(f"/v1/payments/{payment['paymentId']}", headers=_auth(second))
        assert response.status_code == 404
        listed = client.get("/v1/payments", headers=_auth(second)).json()["data"]
        assert listed["payments"] == []
