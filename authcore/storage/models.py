from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class AuthProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


@dataclass
class Account:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING
    provider: AuthProvider = AuthProvider.LOCAL
    subject_id: Optional[str] = None
    # single-purpose slot shared by activation and password reset
    token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_federated(self) -> bool:
        return self.provider != AuthProvider.LOCAL

    def token_valid(self, token: str, now: datetime) -> bool:
        return (
            self.token is not None
            and self.token == token
            and self.token_expires_at is not None
            and self.token_expires_at > now
        )

    def profile(self) -> dict:
        """Fields that are safe to hand back to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "provider": self.provider.value,
            "status": self.status.value,
        }


@dataclass
class FederatedIdentity:
    email: str
    display_name: str
    subject_id: str
    provider: AuthProvider = AuthProvider.GOOGLE


@dataclass
class LoginResult:
    account: Account
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class RefreshResult:
    account_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"
