"""Memory store constraints and JSON snapshot persistence."""

import json
from decimal import Decimal

import pytest

from payportal.storage.errors import ConstraintViolation, InsufficientBalance, StaleStatus
from payportal.storage.memory import MemoryStore
from payportal.storage.models import Payment, StatusChange, Transaction, new_id


def _user(store, **overrides):
    fields = {
        "firstname": "Ada",
        "lastname": "Lovelace",
        "id_number": "ID500001",
        "account_number": "ACC500001",
        "username": "ada",
    }
    fields.update(overrides)
    return store.create_user(**fields)


def _payment(user_id, amount="25.00"):
    return Payment(
        id=new_id(),
        payment_id=f"PAY{new_id()[:8].upper()}",
        user_id=user_id,
        amount=Decimal(amount),
        currency="ZAR",
        recipient_name="Grace Hopper",
        recipient_bank="First Bank",
        recipient_account="ACC900001",
        swift_code="FIRBZAJJ",
        provider="SWIFT",
        payment_reference="REF-1",
    )


def _entry(user_id, amount, type="deposit"):
    return Transaction(id=new_id(), user_id=user_id, type=type, amount=Decimal(amount), currency="ZAR")


class TestUserConstraints:
    """Unique fields report which field collided."""

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"id_number": "X1", "account_number": "X1"}, "username"),
            ({"username": "other", "id_number": "X1"}, "accountNumber"),
            ({"username": "other", "account_number": "X1"}, "idNumber"),
        ],
    )
    def test_duplicate_field_is_named(self, memory_store, overrides, field):
        _user(memory_store)
        with pytest.raises(ConstraintViolation) as exc_info:
            _user(memory_store, **overrides)
        assert exc_info.value.detail == {"field": field}

    def test_returned_users_are_copies(self, memory_store):
        user = _user(memory_store)
        user.balance = Decimal("1000000.00")
        assert memory_store.get_user(user.id).balance == Decimal("0.00")

    def test_password_requires_existing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash", "argon2id")

    def test_delete_drops_credentials(self, memory_store):
        user = _user(memory_store)
        memory_store.save_password(user.id, "hash", "argon2id")
        assert memory_store.delete_user(user.id) is True
        assert memory_store.get_password_record(user.id) is None
        assert memory_store.delete_user(user.id) is False

    def test_delete_refuses_payment_owner(self, memory_store):
        user = _user(memory_store)
        memory_store.create_payment(_payment(user.id))
        with pytest.raises(ConstraintViolation):
            memory_store.delete_user(user.id)
        assert memory_store.get_user(user.id) is not None

    def test_delete_drops_ledger_history(self, memory_store):
        user = _user(memory_store)
        memory_store.append_transaction(_entry(user.id, "5"))
        assert memory_store.delete_user(user.id) is True
        assert memory_store.list_transactions(user.id) == []


class TestMfaState:
    """Seeds and backup codes."""

    def test_enable_requires_secret(self, memory_store):
        user = _user(memory_store)
        with pytest.raises(ConstraintViolation):
            memory_store.enable_mfa(user.id, ["AAAA1111"])

    def test_consume_backup_code_is_single_use(self, memory_store):
        user = _user(memory_store)
        memory_store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
        memory_store.enable_mfa(user.id, ["AAAA1111", "BBBB2222"])
        assert memory_store.consume_backup_code(user.id, "AAAA1111") == 1
        assert memory_store.consume_backup_code(user.id, "AAAA1111") is None
        assert memory_store.get_user(user.id).mfa_backup_codes == ["BBBB2222"]

    def test_new_setup_resets_previous_state(self, memory_store):
        user = _user(memory_store)
        memory_store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
        memory_store.enable_mfa(user.id, ["AAAA1111"])
        reset = memory_store.set_mfa_secret(user.id, "KRSXG5CTMVRXEZLU")
        assert reset.mfa_enabled is False
        assert reset.mfa_backup_codes == []


class TestLedgerPrimitives:
    """Atomic balance updates."""

    def test_append_tracks_running_balance(self, memory_store):
        user = _user(memory_store)
        memory_store.append_transaction(_entry(user.id, "80"))
        stored = memory_store.append_transaction(_entry(user.id, "-30", type="withdrawal"))
        assert stored.balance_after == Decimal("50.00")
        assert memory_store.get_user(user.id).balance == Decimal("50.00")

    def test_overdraft_raises_and_changes_nothing(self, memory_store):
        user = _user(memory_store)
        memory_store.append_transaction(_entry(user.id, "10"))
        with pytest.raises(InsufficientBalance) as exc_info:
            memory_store.append_transaction(_entry(user.id, "-10.01", type="withdrawal"))
        assert exc_info.value.detail["balance"] == "10.00"
        assert len(memory_store.transactions[user.id]) == 1

    def test_transition_with_failed_debit_keeps_payment_open(self, memory_store):
        user = _user(memory_store)
        payment = memory_store.create_payment(_payment(user.id))
        change = StatusChange(from_status="pending", to_status="completed", updated_by="emp")
        with pytest.raises(InsufficientBalance):
            memory_store.transition_payment(
                payment.id,
                to_status="completed",
                change=change,
                ledger_entry=_entry(user.id, "-25.00", type="payment"),
            )
        reloaded = memory_store.get_payment(payment.payment_id)
        assert reloaded.status == "pending"
        assert reloaded.status_history == []

    def test_transition_of_closed_payment_is_stale(self, memory_store):
        user = _user(memory_store)
        payment = memory_store.create_payment(_payment(user.id))
        change = StatusChange(from_status="pending", to_status="failed", updated_by="emp")
        memory_store.transition_payment(payment.id, to_status="failed", change=change)
        with pytest.raises(StaleStatus) as exc_info:
            memory_store.transition_payment(payment.id, to_status="cancelled", change=change)
        assert exc_info.value.detail["status"] == "failed"

    def test_unknown_payment_transition_returns_none(self, memory_store):
        change = StatusChange(from_status="pending", to_status="failed", updated_by="emp")
        assert memory_store.transition_payment("nope", to_status="failed", change=change) is None

    def test_duplicate_payment_id_is_a_constraint(self, memory_store):
        user = _user(memory_store)
        payment = memory_store.create_payment(_payment(user.id))
        clone = _payment(user.id)
        clone.payment_id = payment.payment_id
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_payment(clone)
        assert exc_info.value.detail == {"field": "paymentId"}


class TestPersistence:
    """State survives a reload from the JSON snapshot."""

    def test_reload_restores_everything(self, tmp_path):
        root = str(tmp_path / "persist")
        store = MemoryStore(fs_root=root, mfa_encryption_key="persist-key")
        user = _user(store)
        store.save_password(user.id, "hash", "argon2id")
        store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
        store.enable_mfa(user.id, ["AAAA1111"])
        store.append_transaction(_entry(user.id, "42.10"))
        payment = store.create_payment(_payment(user.id, amount="12.00"))
        store.transition_payment(
            payment.id,
            to_status="completed",
            change=StatusChange(
                from_status="pending", to_status="completed", updated_by="emp", reason="ok"
            ),
            ledger_entry=_entry(user.id, "-12.00", type="payment"),
        )

        reloaded = MemoryStore(fs_root=root, mfa_encryption_key="persist-key")
        restored = reloaded.get_user(user.id)
        assert restored.balance == Decimal("30.10")
        assert restored.mfa_secret == "JBSWY3DPEHPK3PXP"
        assert restored.mfa_backup_codes == ["AAAA1111"]
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        restored_payment = reloaded.get_payment(payment.payment_id)
        assert restored_payment.status == "completed"
        assert restored_payment.status_history[0].reason == "ok"
        amounts = [t.amount for t in reloaded.list_transactions(user.id)]
        assert sorted(amounts) == [Decimal("-12.00"), Decimal("42.10")]

    def test_mfa_secret_is_encrypted_on_disk(self, tmp_path):
        root = tmp_path / "enc"
        store = MemoryStore(fs_root=str(root), mfa_encryption_key="persist-key")
        user = _user(store)
        store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
        raw = (root / "state" / "memory_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw
        on_disk = json.loads(raw)["users"][0]["mfa_secret"]
        assert on_disk

    def test_wrong_key_drops_secret_instead_of_failing(self, tmp_path):
        root = str(tmp_path / "rekey")
        store = MemoryStore(fs_root=root, mfa_encryption_key="first-key")
        user = _user(store)
        store.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP")
        reloaded = MemoryStore(fs_root=root, mfa_encryption_key="second-key")
        assert reloaded.get_user(user.id).mfa_secret is None

    def test_corrupt_snapshot_starts_empty(self, tmp_path):
        root = tmp_path / "corrupt"
        (root / "state").mkdir(parents=True)
        (root / "state" / "memory_store.json").write_text("{not json")
        store = MemoryStore(fs_root=str(root), mfa_encryption_key="k")
        assert store.users == {}
