"""Persisted session state for the client.

Three interchangeable stores back the session: an in-memory dict, a JSON file
and a SQL table. ``SessionState`` wraps whichever store the client owns and is
the only place the credential keys are spelled out.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.config import ClientSettings
from ..core.errors import SessionStoreError
from ..crud import session_entries
from ..db.session import create_session_factory

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_TYPE_KEY = "userType"
USER_ID_KEY = "userId"
CACHED_USER_KEY = "cachedUserData"
CACHED_ADMIN_KEY = "cachedAdminData"

# Keys removed by a soft logout. The refresh token is intentionally kept.
LOGOUT_KEYS = (ACCESS_TOKEN_KEY, USER_TYPE_KEY, CACHED_USER_KEY, CACHED_ADMIN_KEY, USER_ID_KEY)


class SessionStore(ABC):
    """Process-wide key-value store of string values."""

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def keys(self) -> list[str]: ...


class MemorySessionStore(SessionStore):
    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileSessionStore(SessionStore):
    """Durable store kept in a single JSON object on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise SessionStoreError(f"Could not read session file {self.path}") from exc
        if not isinstance(raw, dict):
            raise SessionStoreError(f"Session file {self.path} does not hold a JSON object")
        return {str(key): str(value) for key, value in raw.items() if value is not None}

    def _save(self, payload: Dict[str, str]) -> None:
        # Written beside the target and swapped in, so readers never see a partial file.
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise SessionStoreError(f"Could not write session file {self.path}") from exc

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)

    def clear(self) -> None:
        self._save({})

    def keys(self) -> list[str]:
        return sorted(self._load())


class SqlSessionStore(SessionStore):
    """Durable store in the ``session_entries`` table of any SQLAlchemy database."""

    def __init__(self, factory: sessionmaker) -> None:
        self._factory = factory

    @classmethod
    def from_url(cls, db_url: str) -> "SqlSessionStore":
        return cls(create_session_factory(db_url))

    def _run(self, operation, *args):
        db = self._factory()
        try:
            return operation(db, *args)
        except SQLAlchemyError as exc:
            db.rollback()
            raise SessionStoreError("Session database operation failed") from exc
        finally:
            db.close()

    def get(self, key: str) -> str | None:
        return self._run(session_entries.get_value, key)

    def set(self, key: str, value: str) -> None:
        self._run(session_entries.set_value, key, value)

    def delete(self, key: str) -> None:
        self._run(session_entries.delete_value, key)

    def clear(self) -> None:
        self._run(session_entries.clear_entries)

    def keys(self) -> list[str]:
        return self._run(session_entries.list_keys)


def build_store(settings: ClientSettings) -> SessionStore:
    """Pick the store configured in ``settings``; SQL wins over the JSON file."""

    if settings.SESSION_DB_URL:
        return SqlSessionStore.from_url(settings.SESSION_DB_URL)
    if settings.SESSION_FILE:
        return JsonFileSessionStore(settings.SESSION_FILE)
    return MemorySessionStore()


class SessionState:
    """Credentials and session keys owned by one client."""

    def __init__(self, store: SessionStore | None = None) -> None:
        self.store = store if store is not None else MemorySessionStore()

    @property
    def access_token(self) -> str | None:
        return self.store.get(ACCESS_TOKEN_KEY) or None

    @property
    def refresh_token(self) -> str | None:
        return self.store.get(REFRESH_TOKEN_KEY) or None

    @property
    def user_type(self) -> str | None:
        return self.store.get(USER_TYPE_KEY)

    def set_access_token(self, token: str) -> None:
        self.store.set(ACCESS_TOKEN_KEY, token)

    def set_tokens(self, access_token: str, refresh_token: str | None = None) -> None:
        self.set_access_token(access_token)
        if refresh_token:
            self.store.set(REFRESH_TOKEN_KEY, refresh_token)

    def remember_profile(self, user_type: str, profile: Dict[str, Any]) -> None:
        self.store.set(USER_TYPE_KEY, user_type)
        cache_key = CACHED_ADMIN_KEY if user_type == "admin" else CACHED_USER_KEY
        self.store.set(cache_key, json.dumps(profile, separators=(",", ":"), default=str))
        profile_id = profile.get("_id")
        if profile_id:
            self.store.set(USER_ID_KEY, str(profile_id))

    def cached_profile(self) -> Dict[str, Any] | None:
        cache_key = CACHED_ADMIN_KEY if self.user_type == "admin" else CACHED_USER_KEY
        raw = self.store.get(cache_key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable cached profile under %s", cache_key)
            return None
        return data if isinstance(data, dict) else None

    def logout(self) -> None:
        for key in LOGOUT_KEYS:
            self.store.delete(key)

    def clear(self) -> None:
        self.store.clear()
