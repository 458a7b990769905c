from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantauth.logging import get_logger
from tenantauth.storage.common import (
    check_deadline,
    ensure_aware,
    normalize_email,
    safe_row_value,
)
from tenantauth.storage.errors import ConstraintViolation, StoreError, StoreTimeout
from tenantauth.storage.models import Client, Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_client (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        secret_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        client_id TEXT NOT NULL REFERENCES auth_client (id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (client_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        user_id TEXT NOT NULL REFERENCES auth_user (id) ON DELETE CASCADE,
        client_id TEXT NOT NULL REFERENCES auth_client (id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, client_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)",
)


class PostgresStore:
    """Thin Postgres-backed credential store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        """Check out a connection bounded by the active operation deadline.

        The transaction commits when the block exits cleanly and rolls back
        otherwise. Driver errors are mapped onto the storage error types.
        """
        remaining = check_deadline(operation)
        try:
            with self.pool.connection(timeout=remaining) as conn:
                if remaining is not None:
                    # Equivalent to SET LOCAL; SET itself cannot take parameters
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(max(1, int(remaining * 1000))),),
                    )
                yield conn
        except (PoolTimeout, errors.QueryCanceled) as exc:
            self.logger.warning("store_deadline_exceeded", operation=operation)
            raise StoreTimeout("store deadline exceeded", {"operation": operation}) from exc
        except errors.IntegrityError as exc:
            raise ConstraintViolation(
                "constraint violated",
                {"operation": operation, "constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("store_query_failed", operation=operation, error=str(exc))
            raise StoreError("store query failed", {"operation": operation}) from exc

    def ensure_schema(self) -> None:
        """Create the client, user and session tables if they are missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def ping(self) -> bool:
        with self._connect("ping") as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and safe_row_value(row, "ok") == 1)

    # row mapping
    @staticmethod
    def _row_to_client(row: Any) -> Client:
        return Client(
            id=str(row["id"]),
            name=row["name"],
            secret_hash=row["secret_hash"],
            created_at=ensure_aware(safe_row_value(row, "created_at", utcnow())),
            updated_at=ensure_aware(safe_row_value(row, "updated_at", utcnow())),
        )

    @staticmethod
    def _row_to_user(row: Any) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            client_id=str(row["client_id"]),
            created_at=ensure_aware(safe_row_value(row, "created_at", utcnow())),
            updated_at=ensure_aware(safe_row_value(row, "updated_at", utcnow())),
        )

    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            user_id=str(row["user_id"]),
            client_id=str(row["client_id"]),
            refresh_token=row["refresh_token"],
            user_agent=safe_row_value(row, "user_agent"),
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(safe_row_value(row, "created_at", utcnow())),
            updated_at=ensure_aware(safe_row_value(row, "updated_at", utcnow())),
        )

    # clients
    def create_client(self, client: Client) -> Client:
        with self._connect("create_client") as conn:
            conn.execute(
                """
                INSERT INTO auth_client (id, name, secret_hash, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    client.id,
                    client.name,
                    client.secret_hash,
                    client.created_at,
                    client.updated_at,
                ),
            )
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._connect("get_client") as conn:
            row = conn.execute(
                "SELECT * FROM auth_client WHERE id = %s", (client_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_client(row)

    def client_exists(self, client_id: str) -> bool:
        with self._connect("client_exists") as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM auth_client WHERE id = %s) AS present",
                (client_id,),
            ).fetchone()
        return bool(row and safe_row_value(row, "present"))

    def delete_client(self, client_id: str) -> bool:
        with self._connect("delete_client") as conn:
            result = conn.execute("DELETE FROM auth_client WHERE id = %s", (client_id,))
            return result.rowcount > 0

    # users
    def create_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        with self._connect("create_user") as conn:
            conn.execute(
                """
                INSERT INTO auth_user (id, username, email, password_hash, client_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.username,
                    user.email,
                    user.password_hash,
                    user.client_id,
                    user.created_at,
                    user.updated_at,
                ),
            )
        return user

    def get_user_by_email(self, email: str, client_id: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE email = %s AND client_id = %s",
                (normalize_email(email), client_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def email_exists(self, email: str, client_id: str) -> bool:
        with self._connect("email_exists") as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM auth_user WHERE email = %s AND client_id = %s) AS present",
                (normalize_email(email), client_id),
            ).fetchone()
        return bool(row and safe_row_value(row, "present"))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_user(self, user: User) -> Optional[User]:
        with self._connect("update_user") as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET username = %s, email = %s, password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user.username, normalize_email(user.email), user.password_hash, user.id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect("delete_user") as conn:
            result = conn.execute("DELETE FROM auth_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def upsert_session(self, session: Session) -> Session:
        with self._connect("upsert_session") as conn:
            row = conn.execute(
                """
                INSERT INTO auth_session (user_id, client_id, refresh_token, user_agent, expires_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, now(), now())
                ON CONFLICT (user_id, client_id) DO UPDATE
                SET refresh_token = EXCLUDED.refresh_token,
                    user_agent = EXCLUDED.user_agent,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = now()
                RETURNING *
                """,
                (
                    session.user_id,
                    session.client_id,
                    session.refresh_token,
                    session.user_agent,
                    session.expires_at,
                ),
            ).fetchone()
        if not row:
            return session
        return self._row_to_session(row)

    def get_session_for_user(self, user_id: str, client_id: str) -> Optional[Session]:
        with self._connect("get_session_for_user") as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND client_id = %s AND expires_at > now()
                """,
                (user_id, client_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect("get_session_by_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s AND expires_at > now()",
                (refresh_token,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def rotate_session(
        self, old_refresh_token: str, new_refresh_token: str, expires_at: datetime
    ) -> Optional[Session]:
        """Swap the refresh value only if ``old_refresh_token`` is still current."""
        with self._connect("rotate_session") as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token = %s, expires_at = %s, updated_at = now()
                WHERE refresh_token = %s AND expires_at > now()
                RETURNING *
                """,
                (new_refresh_token, expires_at, old_refresh_token),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def delete_session_by_refresh_token(self, refresh_token: str) -> bool:
        with self._connect("delete_session_by_refresh_token") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect("delete_user_sessions") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return max(result.rowcount, 0)

    def delete_expired_sessions(self) -> int:
        with self._connect("delete_expired_sessions") as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= now()")
            return max(result.rowcount, 0)
