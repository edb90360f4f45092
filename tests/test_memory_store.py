"""Tests for the JSON-backed in-process account directory."""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import AccountStatus, AuthProvider


def _future(minutes: int = 60) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def pending(store):
    return store.create_account(
        "Pending@Example.com",
        "pending",
        "hash",
        token="activation-token",
        token_expires_at=_future(),
    )


class TestCreateAccount:
    def test_email_is_normalized(self, pending):
        assert pending.email == "pending@example.com"
        assert pending.status == AccountStatus.PENDING
        assert pending.provider == AuthProvider.LOCAL

    def test_duplicate_email_rejected_case_insensitively(self, store, pending):
        with pytest.raises(ConstraintViolation):
            store.create_account("PENDING@example.com", "other", "hash")

    def test_federated_account_never_stores_password_hash(self, store):
        account = store.create_account(
            "fed@example.com",
            "fed",
            "should-be-dropped",
            AuthProvider.GOOGLE,
            status=AccountStatus.ACTIVE,
            subject_id="sub-1",
        )
        assert account.password_hash is None

    def test_returned_accounts_are_copies(self, store, pending):
        fetched = store.get_account(pending.id)
        fetched.status = AccountStatus.ACTIVE
        assert store.get_account(pending.id).status == AccountStatus.PENDING


class TestTokenSlot:
    def test_find_by_activation_token(self, store, pending):
        found = store.find_by_activation_token("activation-token")
        assert found is not None and found.id == pending.id
        assert store.find_by_activation_token("other-token") is None

    def test_expired_token_not_found(self, store, pending):
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert store.find_by_activation_token("activation-token", later) is None

    def test_activation_token_ignores_active_accounts(self, store, pending):
        store.activate_account(pending.id)
        store.set_reset_token(pending.id, "reset-token", _future())
        assert store.find_by_activation_token("reset-token") is None
        assert store.find_by_reset_token("reset-token").id == pending.id

    def test_activate_consumes_token_once(self, store, pending):
        activated = store.activate_account(pending.id, "activation-token")
        assert activated.status == AccountStatus.ACTIVE
        assert activated.token is None
        assert store.activate_account(pending.id, "activation-token") is None

    def test_new_token_replaces_previous(self, store, pending):
        store.set_activation_token(pending.id, "second-token", _future())
        assert store.find_by_activation_token("activation-token") is None
        assert store.find_by_activation_token("second-token").id == pending.id

    def test_password_update_is_conditional_on_token(self, store, pending):
        store.activate_account(pending.id)
        store.set_reset_token(pending.id, "reset-token", _future())
        assert store.set_password_and_clear_token(pending.id, "new-hash", "wrong-token") is None
        updated = store.set_password_and_clear_token(pending.id, "new-hash", "reset-token")
        assert updated.password_hash == "new-hash"
        assert updated.token is None

    def test_hash_upgrade_keeps_pending_token(self, store, pending):
        updated = store.update_password_hash(pending.id, "upgraded-hash")
        assert updated.password_hash == "upgraded-hash"
        assert store.find_by_activation_token("activation-token").id == pending.id
        assert store.update_password_hash("missing", "upgraded-hash") is None

    def test_set_token_for_unknown_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.set_reset_token("missing", "token", _future())


class TestFederated:
    def test_creates_active_account(self, store):
        account = store.find_or_create_federated("new@example.com", "New User", "sub-1")
        assert account.status == AccountStatus.ACTIVE
        assert account.provider == AuthProvider.GOOGLE
        assert account.subject_id == "sub-1"

    def test_same_subject_returns_same_account(self, store):
        first = store.find_or_create_federated("new@example.com", "New User", "sub-1")
        again = store.find_or_create_federated("renamed@example.com", "New User", "sub-1")
        assert again.id == first.id

    def test_local_account_is_adopted(self, store, pending):
        adopted = store.find_or_create_federated("pending@example.com", "Pending", "sub-9")
        assert adopted.id == pending.id
        assert adopted.provider == AuthProvider.GOOGLE
        assert adopted.status == AccountStatus.ACTIVE
        assert adopted.password_hash is None
        assert adopted.token is None
        assert adopted.subject_id == "sub-9"


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        created = store.create_account(
            "persist@example.com", "persist", "hash", token="tok", token_expires_at=_future()
        )
        store.activate_account(created.id, "tok")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        account = reloaded.get_account_by_email("persist@example.com")
        assert account is not None
        assert account.id == created.id
        assert account.status == AccountStatus.ACTIVE
        assert account.password_hash == "hash"

    def test_persist_disabled_writes_nothing(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "nowhere"), persist=False)
        store.create_account("a@example.com", "a", "hash")
        assert not (tmp_path / "nowhere").exists()
