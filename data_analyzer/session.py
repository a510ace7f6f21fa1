from __future__ import annotations

import json
import logging
import time
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from data_analyzer.errors import RequestFailure
from data_analyzer.models import Session, UserIdentity

try:
    import redis  # type: ignore
except Exception:  # pragma: no cover
    redis = None

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "data_analyzer_session"


class SessionStore:
    """Persists session documents in Redis when reachable, else as JSON files."""

    def __init__(self, directory: Path, redis_url: str | None = None) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._redis = None
        if redis and redis_url:
            try:
                self._redis = redis.Redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except Exception as exc:
                logger.warning("Redis unavailable at %s, using file sessions: %s", redis_url, exc)
                self._redis = None

    def _file_path(self, key: str) -> Path:
        safe = sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        if self._redis:
            value = self._redis.get(key)
            if value:
                return json.loads(value)
        path = self._file_path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable session file %s", path.name)
            path.unlink(missing_ok=True)
            return None

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        if self._redis:
            self._redis.setex(key, ttl_seconds, payload)
        path = self._file_path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        if self._redis:
            self._redis.delete(key)
        self._file_path(key).unlink(missing_ok=True)


class SessionContext:
    """The logged-in user for one client, loaded from and saved to a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        key: str = "default",
        expiry_hours: float = 24,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.key = f"{SESSION_KEY_PREFIX}:{key}"
        self.expiry_hours = expiry_hours
        self._clock = clock
        self.session: Session | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def _ttl_seconds(self) -> int:
        return max(1, int(self.expiry_hours * 3600))

    def _persist(self) -> None:
        if self.session is not None:
            self.store.set(self.key, self.session.model_dump(mode="json"), self._ttl_seconds)

    def init(self) -> Session | None:
        """Load the persisted session, dropping it when corrupt or expired."""
        raw = self.store.get(self.key)
        if raw is None:
            self.session = None
            return None
        try:
            session = Session.model_validate(raw)
        except ValidationError:
            logger.warning("Dropping malformed stored session")
            self.store.delete(self.key)
            self.session = None
            return None
        if self._now_ms() - session.login_time > self.expiry_hours * 3600 * 1000:
            logger.info("Stored session expired")
            self.store.delete(self.key)
            self.session = None
            return None
        self.session = session
        return session

    def login(self, email: str, model: str = "", profile: str | None = None) -> Session:
        self.session = Session(email=email, ai_model=model, login_time=self._now_ms(), profile=profile)
        self._persist()
        return self.session

    def logout(self) -> None:
        self.session = None
        self.store.delete(self.key)

    def set_ai_model(self, model: str) -> Session | None:
        if self.session is None:
            return None
        self.session = self.session.model_copy(update={"ai_model": model})
        self._persist()
        return self.session

    def validate(self, store: Any) -> bool:
        """Re-check the user against the data store.

        A user the store no longer knows is logged out. Store failures keep
        the session so that a network blip does not sign anyone out.
        """
        if self.session is None:
            return False
        try:
            profile = store.get_user_profile(self.session.email)
        except RequestFailure as exc:
            logger.warning("Session validation skipped: %s", exc)
            return True
        if profile is None:
            logger.info("User no longer exists, clearing session")
            self.logout()
            return False
        if profile.profile and profile.profile != self.session.profile:
            self.session = self.session.model_copy(update={"profile": profile.profile})
            self._persist()
        return True

    @property
    def identity(self) -> UserIdentity | None:
        return self.session.identity() if self.session else None
