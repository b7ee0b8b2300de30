"""
Client Storage Backends for Mandi Authz.

Durable client state (browser session ID, cached UI config, bearer token)
and per-session state (the step-up session token) live behind a small
key/value protocol. Supports in-memory (single process) and Redis
(shared across workers) backends.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from mandi_authz.core.models import AdminIdentity, StepUpSession

logger = logging.getLogger(__name__)

STEPUP_SESSION_KEY = "cm_stepup_session_id"
BROWSER_SESSION_KEY = "cm_browser_session_id"
BEARER_TOKEN_KEY = "cd_token"
STORED_USER_KEY = "cd_user"


@runtime_checkable
class SessionStore(Protocol):
    """
    Protocol for client storage backends.

    All operations must be thread-safe.
    """

    def get(self, key: str) -> str | None:
        """Return the stored value or None."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        ...

    def delete(self, key: str) -> bool:
        """
        Remove a value.

        Returns:
            True if a value was removed
        """
        ...


class InMemorySessionStore:
    """
    In-memory store for single-process use and tests.

    Thread-safe implementation using a lock and dict.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._values.pop(key, None) is not None

    @property
    def size(self) -> int:
        """Number of stored values."""
        with self._lock:
            return len(self._values)


class RedisSessionStore:
    """
    Redis-backed store for deployments with several worker processes.

    Requires:
        pip install mandi-authz[redis]

    Usage:
        import redis
        from mandi_authz.storage import RedisSessionStore

        client = redis.Redis(host="localhost", port=6379, db=0, decode_responses=True)
        durable = RedisSessionStore(client, key_prefix="authz:alice:")
    """

    def __init__(
        self,
        redis_client: Any,  # redis.Redis - type hint avoided for optional dependency
        key_prefix: str = "mandi_authz:",
        ttl_seconds: int | None = None,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            redis_client: Redis client instance
            key_prefix: Prefix applied to every key
            ttl_seconds: Expiry for written values (None = no expiry)
        """
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def get(self, key: str) -> str | None:
        value = self._redis.get(self._key(key))
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def set(self, key: str, value: str) -> None:
        self._redis.set(self._key(key), value, ex=self._ttl)

    def delete(self, key: str) -> bool:
        return bool(self._redis.delete(self._key(key)))


class ClientSessionState:
    """
    Typed access to the values the authz engine keeps in client storage.

    `durable` survives reloads and browser restarts; `session` is cleared
    with the browser session. The step-up token belongs in `session`; older
    builds wrote it to `durable`, and such a value is migrated on first read.
    """

    def __init__(self, durable: SessionStore, session: SessionStore | None = None) -> None:
        """
        Initialize client state.

        Args:
            durable: Long-lived store
            session: Session-scoped store (defaults to a fresh in-memory store)
        """
        self.durable = durable
        self.session = session if session is not None else InMemorySessionStore()

    # Step-up session token

    def get_stepup_session(self) -> StepUpSession | None:
        """
        Read the held step-up session, migrating a legacy durable value.

        Returns:
            StepUpSession or None if none is held
        """
        raw = self.session.get(STEPUP_SESSION_KEY)
        if raw is None:
            legacy = self.durable.get(STEPUP_SESSION_KEY)
            if legacy is None:
                return None
            self.session.set(STEPUP_SESSION_KEY, legacy)
            self.durable.delete(STEPUP_SESSION_KEY)
            raw = legacy
        return self._parse_stepup_session(raw)

    def get_stepup_token(self) -> str | None:
        """Token of the held step-up session, if any."""
        stepup = self.get_stepup_session()
        return stepup.token if stepup else None

    def store_stepup_session(self, stepup: StepUpSession) -> None:
        """Persist a verified step-up session."""
        self.session.set(STEPUP_SESSION_KEY, stepup.model_dump_json())
        self.durable.delete(STEPUP_SESSION_KEY)

    def clear_stepup_session(self) -> None:
        """Forget the step-up session (logout or server-side expiry)."""
        self.session.delete(STEPUP_SESSION_KEY)
        self.durable.delete(STEPUP_SESSION_KEY)

    @staticmethod
    def _parse_stepup_session(raw: str) -> StepUpSession | None:
        if not raw:
            return None
        if raw.lstrip().startswith("{"):
            try:
                return StepUpSession.model_validate_json(raw)
            except ValidationError:
                logger.warning("Discarding unreadable step-up session record")
                return None
        # Legacy builds stored the bare token string.
        return StepUpSession(token=raw)

    # Browser session ID

    def get_browser_session_id(self) -> str:
        """
        Return the browser session ID, creating it on first use.

        A legacy value held in the session store is moved to durable storage.

        Returns:
            Browser session ID
        """
        existing = self.durable.get(BROWSER_SESSION_KEY)
        if existing:
            return existing

        legacy = self.session.get(BROWSER_SESSION_KEY)
        if legacy:
            self.durable.set(BROWSER_SESSION_KEY, legacy)
            self.session.delete(BROWSER_SESSION_KEY)
            return legacy

        created = str(uuid.uuid4())
        self.durable.set(BROWSER_SESSION_KEY, created)
        return created

    def clear_browser_session_id(self) -> None:
        self.durable.delete(BROWSER_SESSION_KEY)
        self.session.delete(BROWSER_SESSION_KEY)

    # Login state

    def get_bearer_token(self) -> str | None:
        return self.durable.get(BEARER_TOKEN_KEY)

    def get_stored_identity(self) -> AdminIdentity | None:
        """
        Read the logged-in admin user.

        Returns:
            AdminIdentity, or None if absent or unreadable
        """
        raw = self.durable.get(STORED_USER_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored admin user is not valid JSON")
            return None
        if not isinstance(data, dict) or not data.get("username"):
            return None
        return AdminIdentity(
            username=str(data["username"]),
            language=str(data.get("language") or "en"),
            country=str(data.get("country") or data.get("country_code") or "IN"),
            bearer_token=self.get_bearer_token(),
        )

    def store_identity(self, identity: AdminIdentity) -> None:
        """Persist the logged-in admin user and bearer token."""
        self.durable.set(
            STORED_USER_KEY,
            json.dumps(
                {
                    "username": identity.username,
                    "language": identity.language,
                    "country": identity.country,
                }
            ),
        )
        if identity.bearer_token:
            self.durable.set(BEARER_TOKEN_KEY, identity.bearer_token)

    def clear(self) -> None:
        """Remove everything this engine owns (logout)."""
        self.clear_stepup_session()
        self.clear_browser_session_id()
        self.durable.delete(BEARER_TOKEN_KEY)
        self.durable.delete(STORED_USER_KEY)
