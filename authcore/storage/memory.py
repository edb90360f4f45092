from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, AccountStatus, AuthProvider


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process account directory persisted as JSON under ``fs_root``.

    Every public method takes ``_data_lock`` for its whole body, which makes
    each call atomic for the record it touches. Returned accounts are copies;
    callers never mutate stored state directly.
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can re-enter from locked public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # accounts
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
    ) -> Account:
        normalized = _normalize_email(email)
        with self._data_lock:
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if subject_id and self._find_by_subject(provider, subject_id):
                raise ConstraintViolation("federated identity already linked", {"field": "subject_id"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                # a federated account never carries a usable password hash
                password_hash=None if provider != AuthProvider.LOCAL else password_hash,
                status=status,
                provider=provider,
                subject_id=subject_id,
                token=token,
                token_expires_at=token_expires_at,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(_normalize_email(email))
            return replace(account) if account else None

    def find_by_activation_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]:
        now = now or _now()
        with self._data_lock:
            for account in self.accounts.values():
                if account.status == AccountStatus.PENDING and account.token_valid(token, now):
                    return replace(account)
            return None

    def find_by_reset_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]:
        now = now or _now()
        with self._data_lock:
            for account in self.accounts.values():
                if account.token_valid(token, now):
                    return replace(account)
            return None

    def find_or_create_federated(
        self,
        email: str,
        username: str,
        subject_id: str,
        provider: AuthProvider = AuthProvider.GOOGLE,
    ) -> Account:
        """Return the account for a federated identity, adopting or creating it.

        Lookup order is provider subject id, then email. A matching local
        account is converted to a federated one: activated, password hash and
        token slot cleared, subject id linked.
        """
        normalized = _normalize_email(email)
        with self._data_lock:
            account = self._find_by_subject(provider, subject_id) or self._find_by_email(normalized)
            if account is None:
                account = Account(
                    id=str(uuid.uuid4()),
                    email=normalized,
                    username=username,
                    password_hash=None,
                    status=AccountStatus.ACTIVE,
                    provider=provider,
                    subject_id=subject_id,
                )
                self.accounts[account.id] = account
                self.logger.info("federated_account_created", account_id=account.id)
            elif account.provider == AuthProvider.LOCAL:
                account.provider = provider
                account.subject_id = subject_id
                account.status = AccountStatus.ACTIVE
                account.password_hash = None
                account.token = None
                account.token_expires_at = None
                account.updated_at = _now()
                self.logger.info("local_account_adopted_as_federated", account_id=account.id)
            elif account.subject_id is None:
                account.subject_id = subject_id
                account.updated_at = _now()
            self._persist_state()
            return replace(account)

    def set_activation_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        self._set_token(account_id, token, expires_at)

    def set_reset_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        self._set_token(account_id, token, expires_at)

    def activate_account(self, account_id: str, token: Optional[str] = None) -> Optional[Account]:
        """Activate and clear the token slot.

        With ``token`` given the update only applies while the slot still holds
        that token, so a token can be consumed once.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if token is not None and account.token != token:
                return None
            account.status = AccountStatus.ACTIVE
            account.token = None
            account.token_expires_at = None
            account.updated_at = _now()
            self._persist_state()
            return replace(account)

    def set_password_and_clear_token(
        self, account_id: str, password_hash: str, token: Optional[str] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if token is not None and account.token != token:
                return None
            account.password_hash = password_hash
            account.token = None
            account.token_expires_at = None
            account.updated_at = _now()
            self._persist_state()
            return replace(account)

    def update_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        """Swap the stored hash without touching the token slot."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.updated_at = _now()
            self._persist_state()
            return replace(account)

    def verify_connection(self) -> None:
        """Memory store is always reachable."""
        return None

    def _set_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            account.token = token
            account.token_expires_at = expires_at
            account.updated_at = _now()
            self._persist_state()

    def _find_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def _find_by_subject(self, provider: AuthProvider, subject_id: str) -> Optional[Account]:
        return next(
            (
                a
                for a in self.accounts.values()
                if a.provider == provider and a.subject_id == subject_id
            ),
            None,
        )

    # persistence
    @staticmethod
    def _serialize_account(account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "username": account.username,
            "password_hash": account.password_hash,
            "status": account.status.value,
            "provider": account.provider.value,
            "subject_id": account.subject_id,
            "token": account.token,
            "token_expires_at": account.token_expires_at.isoformat()
            if account.token_expires_at
            else None,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat() if account.updated_at else None,
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return Account(
            id=data["id"],
            email=data["email"],
            username=data.get("username") or data["email"].split("@")[0],
            password_hash=data.get("password_hash"),
            status=AccountStatus(data.get("status", AccountStatus.PENDING.value)),
            provider=AuthProvider(data.get("provider", AuthProvider.LOCAL.value)),
            subject_id=data.get("subject_id"),
            token=data.get("token"),
            token_expires_at=_dt(data.get("token_expires_at")),
            created_at=_dt(data.get("created_at")) or _now(),
            updated_at=_dt(data.get("updated_at")),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
