from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import Account, AccountStatus, AuthProvider

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    username TEXT NOT NULL,
    password_hash TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    provider TEXT NOT NULL DEFAULT 'local',
    subject_id TEXT,
    token TEXT,
    token_expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ,
    UNIQUE (provider, subject_id)
);
CREATE INDEX IF NOT EXISTS account_token_idx ON account (token) WHERE token IS NOT NULL;
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class PostgresStore:
    """Postgres-backed account directory.

    Every method runs in a single pooled connection whose transaction commits
    when the ``with`` block exits, so each call is atomic for its record.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("postgres", "account directory unreachable") from exc

    def _ensure_schema(self) -> None:
        """Create the ``account`` table if it is missing."""
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Mapping[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash"),
            status=AccountStatus(row.get("status") or AccountStatus.PENDING.value),
            provider=AuthProvider(row.get("provider") or AuthProvider.LOCAL.value),
            subject_id=row.get("subject_id"),
            token=row.get("token"),
            token_expires_at=row.get("token_expires_at"),
            created_at=row.get("created_at") or _now(),
            updated_at=row.get("updated_at"),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_account(row) if row else None

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
        account_id = str(uuid.uuid4())
        if provider != AuthProvider.LOCAL:
            password_hash = None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, username, password_hash, status, provider,
                                         subject_id, token, token_expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        _normalize_email(email),
                        username,
                        password_hash,
                        status.value,
                        provider.value,
                        subject_id,
                        token,
                        token_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"}) from None
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE email = %s", (_normalize_email(email),)
        )

    def find_by_activation_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]:
        return self._fetch_one(
            """
            SELECT * FROM account
            WHERE token = %s AND token_expires_at > %s AND status = %s
            """,
            (token, now or _now(), AccountStatus.PENDING.value),
        )

    def find_by_reset_token(self, token: str, now: Optional[datetime] = None) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE token = %s AND token_expires_at > %s",
            (token, now or _now()),
        )

    def find_or_create_federated(
        self,
        email: str,
        username: str,
        subject_id: str,
        provider: AuthProvider = AuthProvider.GOOGLE,
    ) -> Account:
        """Return the account for a federated identity, adopting or creating it.

        Lookup order is provider subject id, then email; the matched row is
        locked for the rest of the transaction. A local account is converted in
        place.
        """
        normalized = _normalize_email(email)
        for _attempt in range(2):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM account
                    WHERE (provider = %s AND subject_id = %s) OR email = %s
                    ORDER BY (provider = %s AND subject_id = %s) DESC, created_at
                    LIMIT 1
                    FOR UPDATE
                    """,
                    (provider.value, subject_id, normalized, provider.value, subject_id),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        """
                        INSERT INTO account (id, email, username, password_hash, status,
                                             provider, subject_id)
                        VALUES (%s, %s, %s, NULL, %s, %s, %s)
                        ON CONFLICT DO NOTHING
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()),
                            normalized,
                            username,
                            AccountStatus.ACTIVE.value,
                            provider.value,
                            subject_id,
                        ),
                    ).fetchone()
                    if row is None:
                        # lost a concurrent insert; the winner's row is visible on retry
                        continue
                    self.logger.info("federated_account_created", account_id=str(row["id"]))
                    return self._row_to_account(row)
                if row["provider"] == AuthProvider.LOCAL.value:
                    row = conn.execute(
                        """
                        UPDATE account
                        SET provider = %s, subject_id = %s, status = %s, password_hash = NULL,
                            token = NULL, token_expires_at = NULL, updated_at = now()
                        WHERE id = %s
                        RETURNING *
                        """,
                        (provider.value, subject_id, AccountStatus.ACTIVE.value, row["id"]),
                    ).fetchone()
                    self.logger.info("local_account_adopted_as_federated", account_id=str(row["id"]))
                elif row.get("subject_id") is None:
                    row = conn.execute(
                        "UPDATE account SET subject_id = %s, updated_at = now() WHERE id = %s RETURNING *",
                        (subject_id, row["id"]),
                    ).fetchone()
                return self._row_to_account(row)
        raise ConstraintViolation("federated account could not be resolved", {"field": "email"})

    def _set_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET token = %s, token_expires_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (token, expires_at, account_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("account not found", {"account_id": account_id})

    def set_activation_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        self._set_token(account_id, token, expires_at)

    def set_reset_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        self._set_token(account_id, token, expires_at)

    def activate_account(self, account_id: str, token: Optional[str] = None) -> Optional[Account]:
        """Activate and clear the token slot, only while it still holds ``token`` when given."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET status = %s, token = NULL, token_expires_at = NULL, updated_at = now()
                WHERE id = %s AND (%s::text IS NULL OR token = %s)
                RETURNING *
                """,
                (AccountStatus.ACTIVE.value, account_id, token, token),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def set_password_and_clear_token(
        self, account_id: str, password_hash: str, token: Optional[str] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s, token = NULL, token_expires_at = NULL, updated_at = now()
                WHERE id = %s AND (%s::text IS NULL OR token = %s)
                RETURNING *
                """,
                (password_hash, account_id, token, token),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None
