from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from authcore.logging import email_fingerprint, get_logger
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
from authcore.service.federation import IdentityExchange
from authcore.service.passwords import PasswordHasher
from authcore.service.signer import ACCESS, REFRESH, CredentialError, CredentialSigner
from authcore.service.tokens import generate_token, token_prefix
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import (
    Account,
    AccountStatus,
    AuthProvider,
    LoginResult,
    RefreshResult,
)

logger = get_logger(__name__)

T = TypeVar("T")

# argon2 is slow on purpose; the dummy verify keeps unknown-email and
# federated-account logins as expensive as wrong-password ones
_DUMMY_PASSWORD = "authcore-timing-equalizer"


class AccountDirectory(Protocol):
    def create_account(
        self,
        email: str,
        username: str,
        password_hash: Optional[str],
        provider: AuthProvider = AuthProvider.LOCAL,
        *,
        status: AccountStatus = AccountStatus.PENDING,
        subject_id: Optional[str] = None,
        token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_activation_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]: ...

    def find_by_reset_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]: ...

    def find_or_create_federated(
        self,
        email: str,
        username: str,
        subject_id: str,
        provider: AuthProvider = AuthProvider.GOOGLE,
    ) -> Account: ...

    def set_activation_token(self, account_id: str, token: str, expires_at: datetime) -> None: ...

    def activate_account(self, account_id: str, token: Optional[str] = None) -> Optional[Account]: ...

    def set_reset_token(self, account_id: str, token: str, expires_at: datetime) -> None: ...

    def set_password_and_clear_token(
        self, account_id: str, password_hash: str, token: Optional[str] = None
    ) -> Optional[Account]: ...

    def update_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]: ...


class RevocationStore(Protocol):
    async def put_refresh(self, refresh_token: str, account_id: str, ttl_seconds: int) -> None: ...

    async def get_refresh(self, refresh_token: str) -> Optional[str]: ...

    async def delete_refresh(self, refresh_token: str) -> bool: ...

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[str]: ...


class Notifier(Protocol):
    def send_activation(self, to_email: str, token: str, *, expires_in: timedelta) -> bool: ...

    def send_password_reset(self, to_email: str, token: str, *, expires_in: timedelta) -> bool: ...


class AuthService:
    """Registration, activation, login, refresh, logout and password reset.

    Collaborators are injected; the service itself holds no per-account state.
    Directory calls, hashing and mail delivery are blocking and run on worker
    threads, so no lock or connection is held across an ``await``.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        revocations: RevocationStore,
        hasher: PasswordHasher,
        signer: CredentialSigner,
        notifier: Notifier,
        *,
        identity: Optional[IdentityExchange] = None,
        activation_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        oauth_state_ttl: timedelta = timedelta(minutes=10),
        rotate_refresh_tokens: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.directory = directory
        self.revocations = revocations
        self.hasher = hasher
        self.signer = signer
        self.notifier = notifier
        self.identity = identity
        self.activation_ttl = activation_ttl
        self.reset_ttl = reset_ttl
        self.oauth_state_ttl = oauth_state_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self._clock = clock
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _directory(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except StorageUnavailable as exc:
            self.logger.error("account_directory_unavailable", backend=exc.backend)
            raise PersistenceFailure() from exc

    async def _revocation(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except StorageUnavailable as exc:
            self.logger.error("revocation_store_unavailable", backend=exc.backend)
            raise PersistenceFailure() from exc

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, password_hash)

    async def _burn_password_check(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password(_DUMMY_PASSWORD)
        await self._verify_password(password, self._dummy_hash)

    async def _rehash_password(self, account: Account, password: str) -> Account:
        new_hash = await self._hash_password(password)
        updated = await self._directory(
            self.directory.update_password_hash, account.id, new_hash
        )
        if not updated:
            return account
        self.logger.info("password_rehashed", account_id=account.id)
        return updated

    async def _notify(
        self, send: Callable[..., bool], email: str, token: str, expires_in: timedelta
    ) -> None:
        try:
            delivered = await asyncio.to_thread(send, email, token, expires_in=expires_in)
        except Exception as exc:
            self.logger.error(
                "notification_dispatch_error",
                email_hash=email_fingerprint(email),
                error_type=type(exc).__name__,
            )
            raise NotificationFailure() from exc
        if not delivered:
            self.logger.error("notification_not_delivered", email_hash=email_fingerprint(email))
            raise NotificationFailure()

    async def _issue_session(self, account: Account) -> LoginResult:
        access = self.signer.issue_access(account.id)
        refresh = self.signer.issue_refresh(account.id)
        await self._revocation(
            self.revocations.put_refresh(
                refresh.token, account.id, int(self.signer.refresh_ttl.total_seconds())
            )
        )
        return LoginResult(
            account=account,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
        )

    # registration and activation
    async def register(
        self, email: str, username: str, password: str, confirm_password: str
    ) -> Account:
        """Create a pending local account and mail its activation token.

        The account stays committed when mail delivery fails; the caller gets
        ``NotificationFailure`` and the account can be re-sent its link.
        """
        if password != confirm_password:
            raise ValidationError("passwords do not match")
        existing = await self._directory(self.directory.get_account_by_email, email)
        if existing:
            raise DuplicateAccount()
        password_hash = await self._hash_password(password)
        token = generate_token()
        try:
            account = await self._directory(
                self.directory.create_account,
                email,
                username,
                password_hash,
                AuthProvider.LOCAL,
                status=AccountStatus.PENDING,
                token=token,
                token_expires_at=self._now() + self.activation_ttl,
            )
        except ConstraintViolation as exc:
            raise DuplicateAccount() from exc
        self.logger.info("account_registered", account_id=account.id, email_hash=email_fingerprint(email))
        await self._notify(
            self.notifier.send_activation, account.email, token, self.activation_ttl
        )
        return account

    async def activate(self, token: Optional[str]) -> Account:
        if not token:
            raise ValidationError("activation token is required")
        account = await self._directory(self.directory.find_by_activation_token, token, self._now())
        if not account:
            self.logger.warning("activation_token_rejected", token_prefix=token_prefix(token))
            raise InvalidActivationToken()
        activated = await self._directory(self.directory.activate_account, account.id, token)
        if not activated:
            # consumed by a concurrent request between lookup and update
            raise InvalidActivationToken()
        self.logger.info("account_activated", account_id=activated.id)
        return activated

    async def resend_activation(self, email: str) -> Optional[Account]:
        """Issue a fresh activation token, replacing any outstanding one.

        Returns None without sending when the account is already active.
        """
        account = await self._directory(self.directory.get_account_by_email, email)
        if not account:
            raise UnknownAccount()
        if account.is_federated:
            raise FederatedAccountConflict()
        if account.is_active:
            self.logger.info("activation_resend_skipped", account_id=account.id)
            return None
        token = generate_token()
        await self._directory(
            self.directory.set_activation_token, account.id, token, self._now() + self.activation_ttl
        )
        self.logger.info("activation_token_reissued", account_id=account.id)
        await self._notify(
            self.notifier.send_activation, account.email, token, self.activation_ttl
        )
        return account

    # login, refresh, logout
    async def login(self, email: str, password: str) -> LoginResult:
        account = await self._directory(self.directory.get_account_by_email, email)
        if not account:
            await self._burn_password_check(password)
            self.logger.info("login_failed", email_hash=email_fingerprint(email))
            raise InvalidCredentials()
        if account.is_federated:
            # costs one argon2 verify, like every other rejection
            await self._burn_password_check(password)
            self.logger.info("login_rejected_federated", account_id=account.id)
            raise FederatedAccountConflict()
        if not await self._verify_password(password, account.password_hash):
            self.logger.info("login_failed", email_hash=email_fingerprint(email))
            raise InvalidCredentials()
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActivated()
        if self.hasher.needs_rehash(account.password_hash):
            account = await self._rehash_password(account, password)
        result = await self._issue_session(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return result

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise AuthenticationError("refresh token missing")
        try:
            account_id = self.signer.verify(refresh_token, REFRESH)
        except CredentialError as exc:
            self.logger.info(
                "refresh_rejected",
                reason=type(exc).__name__,
                token_prefix=token_prefix(refresh_token),
            )
            raise InvalidRefreshToken() from exc
        owner = await self._revocation(self.revocations.get_refresh(refresh_token))
        if owner is None or owner != account_id:
            self.logger.info("refresh_rejected", reason="revoked", account_id=account_id)
            raise InvalidRefreshToken()

        access = self.signer.issue_access(account_id)
        result = RefreshResult(
            account_id=account_id,
            access_token=access.token,
            access_expires_at=access.expires_at,
        )
        if self.rotate_refresh_tokens:
            removed = await self._revocation(self.revocations.delete_refresh(refresh_token))
            if not removed:
                # a concurrent refresh or logout already consumed the record
                raise InvalidRefreshToken()
            rotated = self.signer.issue_refresh(account_id)
            await self._revocation(
                self.revocations.put_refresh(
                    rotated.token, account_id, int(self.signer.refresh_ttl.total_seconds())
                )
            )
            result.refresh_token = rotated.token
            result.refresh_expires_at = rotated.expires_at
        return result

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the refresh record; True when a record was removed."""
        if not refresh_token:
            return False
        removed = await self._revocation(self.revocations.delete_refresh(refresh_token))
        self.logger.info("logout", revoked=removed, token_prefix=token_prefix(refresh_token))
        return removed

    async def authenticate(self, access_token: Optional[str]) -> Account:
        """Resolve the account behind an access credential."""
        if not access_token:
            raise AuthenticationError("access token missing")
        try:
            account_id = self.signer.verify(access_token, ACCESS)
        except CredentialError as exc:
            raise AuthenticationError("invalid or expired access token") from exc
        account = await self._directory(self.directory.get_account, account_id)
        if not account:
            raise AuthenticationError("invalid or expired access token")
        return account

    # password reset
    async def request_password_reset(self, email: str) -> Account:
        account = await self._directory(self.directory.get_account_by_email, email)
        if not account:
            self.logger.info("password_reset_unknown_email", email_hash=email_fingerprint(email))
            raise UnknownAccount()
        if account.is_federated:
            raise FederatedAccountConflict()
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActivated()
        token = generate_token()
        await self._directory(
            self.directory.set_reset_token, account.id, token, self._now() + self.reset_ttl
        )
        self.logger.info("password_reset_requested", account_id=account.id)
        await self._notify(
            self.notifier.send_password_reset, account.email, token, self.reset_ttl
        )
        return account

    async def reset_password(self, token: str, password: str, confirm_password: str) -> Account:
        if not token or not password:
            raise ValidationError("token and password are required")
        if password != confirm_password:
            raise ValidationError("passwords do not match")
        account = await self._directory(self.directory.find_by_reset_token, token, self._now())
        if not account:
            self.logger.warning("password_reset_invalid_token", token_prefix=token_prefix(token))
            raise InvalidResetToken()
        if account.is_federated:
            raise FederatedAccountConflict()
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActivated()
        password_hash = await self._hash_password(password)
        updated = await self._directory(
            self.directory.set_password_and_clear_token, account.id, password_hash, token
        )
        if not updated:
            raise InvalidResetToken()
        self.logger.info("password_reset_completed", account_id=updated.id)
        return updated

    # federated login
    def _require_identity(self) -> IdentityExchange:
        if self.identity is None:
            raise FederatedLoginFailed("federated login is not configured")
        return self.identity

    async def start_federated_login(self) -> str:
        """Store a fresh CSRF state and return the provider consent URL."""
        identity = self._require_identity()
        state = generate_token()
        await self._revocation(
            self.revocations.set_oauth_state(
                state, identity.provider.value, int(self.oauth_state_ttl.total_seconds())
            )
        )
        return identity.authorization_url(state)

    async def complete_federated_login(self, code: Optional[str], state: Optional[str]) -> LoginResult:
        identity = self._require_identity()
        if not code or not state:
            raise FederatedLoginFailed("missing authorization code or state")
        provider = await self._revocation(self.revocations.pop_oauth_state(state))
        if provider != identity.provider.value:
            self.logger.warning("oauth_state_rejected", token_prefix=token_prefix(state))
            raise FederatedLoginFailed("invalid or expired OAuth state")
        return await self.federated_login(code)

    async def federated_login(self, assertion: str) -> LoginResult:
        """Exchange a provider assertion and sign the matching account in.

        An existing local account with the same email is adopted as federated.
        """
        identity = self._require_identity()
        federated = await identity.exchange_identity(assertion)
        if federated is None:
            raise FederatedLoginFailed()
        try:
            account = await self._directory(
                self.directory.find_or_create_federated,
                federated.email,
                federated.display_name,
                federated.subject_id,
                federated.provider,
            )
        except ConstraintViolation as exc:
            self.logger.error("federated_account_unresolved", email_hash=email_fingerprint(federated.email))
            raise FederatedLoginFailed() from exc
        result = await self._issue_session(account)
        self.logger.info("federated_login_succeeded", account_id=account.id, provider=federated.provider.value)
        return result
