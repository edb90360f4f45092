"""Unit tests for the auth service.

Tests for:
- Registration and activation
- Login outcomes and their ordering
- Refresh, rotation and logout
- Password reset
- Federated login
- Storage and notification failures
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from authcore.service.auth import AuthService
from authcore.service.errors import (
    AccountNotActivated,
    AuthenticationError,
    DuplicateAccount,
    FederatedAccountConflict,
    FederatedLoginFailed,
    InvalidActivationToken,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidResetToken,
    NotificationFailure,
    PersistenceFailure,
    UnknownAccount,
    ValidationError,
)
from authcore.service.passwords import PasswordHasher
from authcore.service.signer import CredentialSigner
from authcore.storage.errors import StorageUnavailable
from authcore.storage.memory import MemoryStore
from authcore.storage.memory_cache import MemoryCache
from authcore.storage.models import AccountStatus, AuthProvider, FederatedIdentity

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Password"


class RecordingNotifier:
    """Captures the tokens that would have been mailed."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.activations = []
        self.resets = []
        self.lifetimes = []

    def send_activation(self, to_email: str, token: str, *, expires_in: timedelta) -> bool:
        self.activations.append((to_email, token))
        self.lifetimes.append(expires_in)
        return self.deliver

    def send_password_reset(self, to_email: str, token: str, *, expires_in: timedelta) -> bool:
        self.resets.append((to_email, token))
        self.lifetimes.append(expires_in)
        return self.deliver

    def last_activation_token(self) -> str:
        return self.activations[-1][1]

    def last_reset_token(self) -> str:
        return self.resets[-1][1]


class FakeIdentity:
    provider = AuthProvider.GOOGLE

    def __init__(self, identities: Optional[dict] = None):
        self.identities = identities or {}

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/consent?state={state}"

    async def exchange_identity(self, assertion: str) -> Optional[FederatedIdentity]:
        return self.identities.get(assertion)


class UnavailableCache(MemoryCache):
    async def get_refresh(self, refresh_token: str):
        raise StorageUnavailable("redis", "get_refresh failed")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def signer():
    return CredentialSigner(
        "unit-test-access-secret-0123456789abcdef",
        "unit-test-refresh-secret-fedcba9876543210",
        issuer="authcore",
        audience="authcore-clients",
    )


@pytest.fixture
def identity():
    return FakeIdentity(
        {
            "good-code": FederatedIdentity(
                email="alice@example.com", display_name="Alice", subject_id="google-1"
            ),
            "other-code": FederatedIdentity(
                email="carol@example.com", display_name="Carol", subject_id="google-2"
            ),
        }
    )


def _service(store, cache, notifier, signer, identity=None, **kwargs) -> AuthService:
    return AuthService(
        store,
        cache,
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1),
        signer,
        notifier,
        identity=identity,
        **kwargs,
    )


@pytest.fixture
def auth(store, cache, notifier, signer, identity):
    return _service(store, cache, notifier, signer, identity)


async def _active_account(auth, notifier, email="alice@example.com", password=PASSWORD):
    account = await auth.register(email, "alice", password, password)
    await auth.activate(notifier.last_activation_token())
    return account


class TestRegistration:
    async def test_register_creates_pending_account_and_mails_token(self, auth, store, notifier):
        account = await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)

        assert account.status == AccountStatus.PENDING
        assert account.password_hash and account.password_hash != PASSWORD
        assert notifier.activations[0][0] == "alice@example.com"
        stored = store.get_account(account.id)
        assert stored.token == notifier.last_activation_token()
        assert stored.token_expires_at > datetime.now(timezone.utc) + timedelta(hours=23)
        assert notifier.lifetimes == [auth.activation_ttl]

    async def test_duplicate_email_rejected(self, auth):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(DuplicateAccount):
            await auth.register("alice@example.com", "alice2", PASSWORD, PASSWORD)

    async def test_mismatched_confirmation_rejected(self, auth, store):
        with pytest.raises(ValidationError):
            await auth.register("alice@example.com", "alice", PASSWORD, "Different!1")
        assert store.get_account_by_email("alice@example.com") is None

    async def test_failed_mail_keeps_account(self, store, cache, signer):
        notifier = RecordingNotifier(deliver=False)
        auth = _service(store, cache, notifier, signer)
        with pytest.raises(NotificationFailure):
            await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        assert store.get_account_by_email("alice@example.com").status == AccountStatus.PENDING

    async def test_notifier_exception_becomes_notification_failure(self, store, cache, signer):
        class ExplodingNotifier(RecordingNotifier):
            def send_activation(self, to_email, token, *, expires_in):
                raise OSError("smtp down")

        auth = _service(store, cache, ExplodingNotifier(), signer)
        with pytest.raises(NotificationFailure):
            await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)


class TestActivation:
    async def test_activation_consumes_token(self, auth, store, notifier):
        account = await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        token = notifier.last_activation_token()

        activated = await auth.activate(token)
        assert activated.id == account.id
        assert activated.status == AccountStatus.ACTIVE
        assert store.get_account(account.id).token is None

        with pytest.raises(InvalidActivationToken):
            await auth.activate(token)

    async def test_unknown_token_rejected(self, auth):
        with pytest.raises(InvalidActivationToken):
            await auth.activate("f" * 64)

    async def test_missing_token_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.activate(None)

    async def test_expired_token_rejected(self, store, cache, notifier, signer):
        auth = _service(store, cache, notifier, signer, activation_ttl=timedelta(seconds=-1))
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(InvalidActivationToken):
            await auth.activate(notifier.last_activation_token())

    async def test_concurrent_activation_succeeds_once(self, auth, notifier):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        token = notifier.last_activation_token()
        results = await asyncio.gather(
            *(auth.activate(token) for _ in range(5)), return_exceptions=True
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(r, InvalidActivationToken) for r in results if r not in successes)

    async def test_resend_replaces_token(self, auth, notifier):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        first = notifier.last_activation_token()
        await auth.resend_activation("alice@example.com")
        second = notifier.last_activation_token()
        assert first != second

        with pytest.raises(InvalidActivationToken):
            await auth.activate(first)
        assert (await auth.activate(second)).is_active

    async def test_resend_for_unknown_email(self, auth):
        with pytest.raises(UnknownAccount):
            await auth.resend_activation("nobody@example.com")

    async def test_resend_for_active_account_sends_nothing(self, auth, notifier):
        await _active_account(auth, notifier)
        sent = len(notifier.activations)
        assert await auth.resend_activation("alice@example.com") is None
        assert len(notifier.activations) == sent


class TestLogin:
    async def test_login_before_activation_rejected(self, auth):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(AccountNotActivated):
            await auth.login("alice@example.com", PASSWORD)

    async def test_wrong_password_on_pending_account_is_invalid_credentials(self, auth):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(InvalidCredentials):
            await auth.login("alice@example.com", "Wrong!Pass1")

    async def test_unknown_email_and_wrong_password_look_alike(self, auth, notifier):
        await _active_account(auth, notifier)
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login("alice@example.com", "Wrong!Pass1")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    async def test_login_issues_verifiable_credentials(self, auth, notifier, signer, cache):
        account = await _active_account(auth, notifier)
        result = await auth.login("alice@example.com", PASSWORD)

        assert signer.verify(result.access_token, "access") == account.id
        assert signer.verify(result.refresh_token, "refresh") == account.id
        assert await cache.get_refresh(result.refresh_token) == account.id
        assert result.access_expires_at < result.refresh_expires_at
        assert result.account.id == account.id

    async def test_federated_account_cannot_use_password(self, auth, store):
        store.find_or_create_federated("fed@example.com", "Fed", "google-9")
        with pytest.raises(FederatedAccountConflict):
            await auth.login("fed@example.com", PASSWORD)

    async def test_federated_rejection_costs_a_password_check(self, auth, store, monkeypatch):
        store.find_or_create_federated("fed@example.com", "Fed", "google-9")
        verified = []
        real_verify = auth.hasher.verify

        def counting_verify(plaintext, password_hash):
            verified.append(plaintext)
            return real_verify(plaintext, password_hash)

        monkeypatch.setattr(auth.hasher, "verify", counting_verify)
        with pytest.raises(FederatedAccountConflict):
            await auth.login("fed@example.com", "Wrong!Pass1")
        assert verified == ["Wrong!Pass1"]

    async def test_login_upgrades_outdated_password_hash(self, auth, store, notifier):
        account = await _active_account(auth, notifier)
        old_hash = store.get_account(account.id).password_hash
        stronger = PasswordHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert stronger.needs_rehash(old_hash)
        auth.hasher = stronger

        result = await auth.login("alice@example.com", PASSWORD)

        new_hash = store.get_account(account.id).password_hash
        assert new_hash != old_hash
        assert result.account.password_hash == new_hash
        assert not stronger.needs_rehash(new_hash)
        assert stronger.verify(PASSWORD, new_hash)
        assert (await auth.login("alice@example.com", PASSWORD)).access_token

    async def test_current_password_hash_is_left_alone(self, auth, store, notifier):
        account = await _active_account(auth, notifier)
        old_hash = store.get_account(account.id).password_hash
        await auth.login("alice@example.com", PASSWORD)
        assert store.get_account(account.id).password_hash == old_hash


class TestRefreshAndLogout:
    async def test_refresh_returns_new_access_credential(self, auth, notifier, signer):
        account = await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        refreshed = await auth.refresh(session.refresh_token)
        assert signer.verify(refreshed.access_token, "access") == account.id
        assert refreshed.refresh_token is None

    async def test_refresh_rejects_access_credential(self, auth, notifier):
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidRefreshToken):
            await auth.refresh(session.access_token)

    async def test_refresh_without_token(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.refresh(None)

    async def test_refresh_rejects_token_without_record(self, auth, signer):
        forged = signer.issue_refresh("some-account").token
        with pytest.raises(InvalidRefreshToken):
            await auth.refresh(forged)

    async def test_logout_revokes_refresh(self, auth, notifier):
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        assert await auth.logout(session.refresh_token) is True
        with pytest.raises(InvalidRefreshToken):
            await auth.refresh(session.refresh_token)

    async def test_logout_twice_is_harmless(self, auth, notifier):
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        await auth.logout(session.refresh_token)
        assert await auth.logout(session.refresh_token) is False
        assert await auth.logout(None) is False

    async def test_sessions_are_independent(self, auth, notifier):
        await _active_account(auth, notifier)
        first = await auth.login("alice@example.com", PASSWORD)
        second = await auth.login("alice@example.com", PASSWORD)
        await auth.logout(first.refresh_token)
        assert (await auth.refresh(second.refresh_token)).access_token

    async def test_rotation_revokes_presented_credential(self, store, cache, notifier, signer):
        auth = _service(store, cache, notifier, signer, rotate_refresh_tokens=True)
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)

        rotated = await auth.refresh(session.refresh_token)
        assert rotated.refresh_token and rotated.refresh_token != session.refresh_token
        with pytest.raises(InvalidRefreshToken):
            await auth.refresh(session.refresh_token)
        assert (await auth.refresh(rotated.refresh_token)).refresh_token

    async def test_revocation_store_outage_is_persistence_failure(self, store, notifier, signer):
        auth = _service(store, UnavailableCache(), notifier, signer)
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(PersistenceFailure):
            await auth.refresh(session.refresh_token)


class TestAuthenticate:
    async def test_access_credential_resolves_account(self, auth, notifier):
        account = await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        assert (await auth.authenticate(session.access_token)).id == account.id

    async def test_refresh_credential_is_not_an_access_credential(self, auth, notifier):
        await _active_account(auth, notifier)
        session = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await auth.authenticate(session.refresh_token)


class TestPasswordReset:
    async def test_full_reset_flow(self, auth, notifier):
        await _active_account(auth, notifier)
        await auth.request_password_reset("alice@example.com")
        token = notifier.last_reset_token()

        await auth.reset_password(token, NEW_PASSWORD, NEW_PASSWORD)

        with pytest.raises(InvalidCredentials):
            await auth.login("alice@example.com", PASSWORD)
        assert (await auth.login("alice@example.com", NEW_PASSWORD)).access_token

    async def test_reset_mail_carries_reset_lifetime(self, auth, notifier):
        await _active_account(auth, notifier)
        await auth.request_password_reset("alice@example.com")
        assert notifier.lifetimes[-1] == auth.reset_ttl

    async def test_second_request_invalidates_first_token(self, auth, notifier):
        await _active_account(auth, notifier)
        await auth.request_password_reset("alice@example.com")
        first = notifier.last_reset_token()
        await auth.request_password_reset("alice@example.com")
        second = notifier.last_reset_token()
        assert first != second

        with pytest.raises(InvalidResetToken):
            await auth.reset_password(first, NEW_PASSWORD, NEW_PASSWORD)
        await auth.reset_password(second, NEW_PASSWORD, NEW_PASSWORD)
        assert (await auth.login("alice@example.com", NEW_PASSWORD)).access_token

    async def test_reset_token_is_single_use(self, auth, notifier):
        await _active_account(auth, notifier)
        await auth.request_password_reset("alice@example.com")
        token = notifier.last_reset_token()
        await auth.reset_password(token, NEW_PASSWORD, NEW_PASSWORD)
        with pytest.raises(InvalidResetToken):
            await auth.reset_password(token, "An0ther!Pass", "An0ther!Pass")

    async def test_expired_reset_token_rejected(self, store, cache, notifier, signer):
        auth = _service(store, cache, notifier, signer, reset_ttl=timedelta(seconds=-1))
        await _active_account(auth, notifier)
        await auth.request_password_reset("alice@example.com")
        with pytest.raises(InvalidResetToken):
            await auth.reset_password(notifier.last_reset_token(), NEW_PASSWORD, NEW_PASSWORD)

    async def test_reset_for_unknown_email(self, auth):
        with pytest.raises(UnknownAccount):
            await auth.request_password_reset("nobody@example.com")

    async def test_reset_for_pending_account(self, auth):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(AccountNotActivated):
            await auth.request_password_reset("alice@example.com")

    async def test_reset_for_federated_account(self, auth, store):
        store.find_or_create_federated("fed@example.com", "Fed", "google-9")
        with pytest.raises(FederatedAccountConflict):
            await auth.request_password_reset("fed@example.com")

    async def test_activation_token_cannot_reset_password(self, auth, notifier):
        await auth.register("alice@example.com", "alice", PASSWORD, PASSWORD)
        with pytest.raises(AccountNotActivated):
            await auth.reset_password(notifier.last_activation_token(), NEW_PASSWORD, NEW_PASSWORD)

    async def test_mismatched_confirmation(self, auth):
        with pytest.raises(ValidationError):
            await auth.reset_password("token", NEW_PASSWORD, "Other!Pass1")


class TestFederatedLogin:
    async def test_new_identity_creates_active_account(self, auth, store):
        result = await auth.federated_login("other-code")
        account = store.get_account(result.account.id)
        assert account.email == "carol@example.com"
        assert account.status == AccountStatus.ACTIVE
        assert account.provider == AuthProvider.GOOGLE

    async def test_existing_local_account_is_adopted(self, auth, notifier, store):
        local = await _active_account(auth, notifier)
        result = await auth.federated_login("good-code")
        assert result.account.id == local.id
        adopted = store.get_account(local.id)
        assert adopted.provider == AuthProvider.GOOGLE
        assert adopted.password_hash is None
        with pytest.raises(FederatedAccountConflict):
            await auth.login("alice@example.com", PASSWORD)

    async def test_rejected_assertion(self, auth):
        with pytest.raises(FederatedLoginFailed):
            await auth.federated_login("forged-code")

    async def test_not_configured(self, store, cache, notifier, signer):
        auth = _service(store, cache, notifier, signer)
        with pytest.raises(FederatedLoginFailed):
            await auth.start_federated_login()

    async def test_state_round_trip(self, auth):
        url = await auth.start_federated_login()
        state = url.split("state=")[1]
        result = await auth.complete_federated_login("good-code", state)
        assert result.account.email == "alice@example.com"

        with pytest.raises(FederatedLoginFailed):
            await auth.complete_federated_login("good-code", state)

    async def test_unknown_state_rejected(self, auth):
        with pytest.raises(FederatedLoginFailed):
            await auth.complete_federated_login("good-code", "made-up-state")


class TestStorageFailures:
    async def test_directory_outage_is_persistence_failure(self, auth, store, monkeypatch):
        def _down(*args, **kwargs):
            raise StorageUnavailable("postgres", "account directory unreachable")

        monkeypatch.setattr(store, "get_account_by_email", _down)
        with pytest.raises(PersistenceFailure) as excinfo:
            await auth.login("alice@example.com", PASSWORD)
        assert excinfo.value.status_code == 503
