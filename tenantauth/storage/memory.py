from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.common import check_deadline, normalize_email
from tenantauth.storage.errors import ConstraintViolation, StoreError, StoreTimeout
from tenantauth.storage.models import Client, Session, User, utcnow

SessionKey = Tuple[str, str]


class MemoryStore:
    """In-process credential store for tests, demos and single-node setups.

    State lives in dictionaries guarded by one RLock. When ``fs_root`` is
    given, every mutation is snapshotted to ``<fs_root>/state/memory_store.json``
    and the snapshot is reloaded on construction. A mutation whose snapshot
    write fails is rolled back, so memory never runs ahead of disk.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.clients: Dict[str, Client] = {}
        self.users: Dict[str, User] = {}
        self.sessions: Dict[SessionKey, Session] = {}
        # refresh value -> session key; mirrors the unique index in Postgres
        self._refresh_index: Dict[str, SessionKey] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        remaining = check_deadline(operation)
        timeout = -1 if remaining is None else remaining
        if not self._data_lock.acquire(timeout=timeout):
            raise StoreTimeout("store lock wait exceeded deadline", {"operation": operation})
        try:
            yield
        finally:
            self._data_lock.release()

    @contextmanager
    def _mutation(self, operation: str) -> Iterator[None]:
        """Lock, run the block, then persist; restore prior state on any failure."""
        with self._locked(operation):
            if self.fs_root is None:
                yield
                return
            saved = (
                dict(self.clients),
                dict(self.users),
                {key: copy.copy(sess) for key, sess in self.sessions.items()},
            )
            try:
                yield
                self._persist_state()
            except BaseException:
                self.clients, self.users, self.sessions = saved
                self._reindex_sessions()
                raise

    def ping(self) -> bool:
        with self._locked("ping"):
            return True

    # clients
    def create_client(self, client: Client) -> Client:
        with self._mutation("create_client"):
            if client.id in self.clients:
                raise ConstraintViolation("client already exists", {"client_id": client.id})
            self.clients[client.id] = client
            return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._locked("get_client"):
            return self.clients.get(client_id)

    def client_exists(self, client_id: str) -> bool:
        with self._locked("client_exists"):
            return client_id in self.clients

    def delete_client(self, client_id: str) -> bool:
        with self._mutation("delete_client"):
            if self.clients.pop(client_id, None) is None:
                return False
            for user_id, user in list(self.users.items()):
                if user.client_id == client_id:
                    self.users.pop(user_id, None)
            for key in [k for k in self.sessions if k[1] == client_id]:
                self._drop_session(key)
            return True

    # users
    def create_user(self, user: User) -> User:
        with self._mutation("create_user"):
            if user.client_id not in self.clients:
                raise ConstraintViolation(
                    "client does not exist", {"client_id": user.client_id}
                )
            user.email = normalize_email(user.email)
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"user_id": user.id})
            if self._find_user_by_email(user.email, user.client_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            return user

    def _find_user_by_email(self, email: str, client_id: str) -> Optional[User]:
        for user in self.users.values():
            if user.email == email and user.client_id == client_id:
                return user
        return None

    def get_user_by_email(self, email: str, client_id: str) -> Optional[User]:
        with self._locked("get_user_by_email"):
            return self._find_user_by_email(normalize_email(email), client_id)

    def email_exists(self, email: str, client_id: str) -> bool:
        with self._locked("email_exists"):
            return self._find_user_by_email(normalize_email(email), client_id) is not None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked("get_user"):
            return self.users.get(user_id)

    def update_user(self, user: User) -> Optional[User]:
        with self._mutation("update_user"):
            existing = self.users.get(user.id)
            if existing is None:
                return None
            user.email = normalize_email(user.email)
            clash = self._find_user_by_email(user.email, user.client_id)
            if clash is not None and clash.id != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.created_at = existing.created_at
            user.updated_at = utcnow()
            self.users[user.id] = user
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._mutation("delete_user"):
            if self.users.pop(user_id, None) is None:
                return False
            for key in [k for k in self.sessions if k[0] == user_id]:
                self._drop_session(key)
            return True

    # sessions
    def _reindex_sessions(self) -> None:
        self._refresh_index = {
            sess.refresh_token: key for key, sess in self.sessions.items()
        }

    def _find_session_by_refresh(self, refresh_token: str) -> Optional[Session]:
        key = self._refresh_index.get(refresh_token)
        if key is None:
            return None
        return self.sessions.get(key)

    def _drop_session(self, key: SessionKey) -> Optional[Session]:
        sess = self.sessions.pop(key, None)
        if sess is not None:
            self._refresh_index.pop(sess.refresh_token, None)
        return sess

    def upsert_session(self, session: Session) -> Session:
        key = (session.user_id, session.client_id)
        with self._mutation("upsert_session"):
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.client_id not in self.clients:
                raise ConstraintViolation(
                    "session client missing", {"client_id": session.client_id}
                )
            holder = self._refresh_index.get(session.refresh_token)
            if holder is not None and holder != key:
                raise ConstraintViolation("refresh token already exists", {"field": "refresh_token"})
            existing = self._drop_session(key)
            if existing is not None:
                session.created_at = existing.created_at
            session.updated_at = utcnow()
            self.sessions[key] = session
            self._refresh_index[session.refresh_token] = key
            return session

    def get_session_for_user(self, user_id: str, client_id: str) -> Optional[Session]:
        with self._locked("get_session_for_user"):
            sess = self.sessions.get((user_id, client_id))
            if sess is None or sess.is_expired():
                return None
            return sess

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._locked("get_session_by_refresh_token"):
            sess = self._find_session_by_refresh(refresh_token)
            if sess is None or sess.is_expired():
                return None
            return sess

    def rotate_session(
        self, old_refresh_token: str, new_refresh_token: str, expires_at: datetime
    ) -> Optional[Session]:
        """Swap the refresh value only if ``old_refresh_token`` is still current."""
        with self._mutation("rotate_session"):
            sess = self._find_session_by_refresh(old_refresh_token)
            if sess is None or sess.is_expired():
                return None
            if new_refresh_token in self._refresh_index:
                raise ConstraintViolation("refresh token already exists", {"field": "refresh_token"})
            key = self._refresh_index.pop(old_refresh_token)
            sess.refresh_token = new_refresh_token
            sess.expires_at = expires_at
            sess.updated_at = utcnow()
            self._refresh_index[new_refresh_token] = key
            return sess

    def delete_session_by_refresh_token(self, refresh_token: str) -> bool:
        with self._mutation("delete_session_by_refresh_token"):
            key = self._refresh_index.get(refresh_token)
            if key is None:
                return False
            self._drop_session(key)
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._mutation("delete_user_sessions"):
            stale = [key for key in self.sessions if key[0] == user_id]
            for key in stale:
                self._drop_session(key)
            return len(stale)

    def delete_expired_sessions(self) -> int:
        with self._mutation("delete_expired_sessions"):
            now = utcnow()
            stale = [key for key, sess in self.sessions.items() if sess.is_expired(now)]
            for key in stale:
                self._drop_session(key)
            return len(stale)

    # snapshot
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_client(self, client: Client) -> dict:
        return {
            "id": client.id,
            "name": client.name,
            "secret_hash": client.secret_hash,
            "created_at": self._serialize_datetime(client.created_at),
            "updated_at": self._serialize_datetime(client.updated_at),
        }

    def _deserialize_client(self, data: dict) -> Client:
        return Client(
            id=data["id"],
            name=data["name"],
            secret_hash=data["secret_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "client_id": user.client_id,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            client_id=data["client_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "user_id": session.user_id,
            "client_id": session.client_id,
            "refresh_token": session.refresh_token,
            "user_agent": session.user_agent,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            user_id=data["user_id"],
            client_id=data["client_id"],
            refresh_token=data["refresh_token"],
            user_agent=data.get("user_agent"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "clients": [self._serialize_client(c) for c in self.clients.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError("failed to persist in-memory state", {"error": str(exc)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.clients = {
            c["id"]: self._deserialize_client(c) for c in data.get("clients", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {}
        for raw in data.get("sessions", []):
            sess = self._deserialize_session(raw)
            self.sessions[(sess.user_id, sess.client_id)] = sess
        self._reindex_sessions()
        self.logger.info(
            "memory_store_state_loaded",
            clients=len(self.clients),
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
