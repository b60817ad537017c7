"""Server-side session storage held in process memory.

Sessions bind an opaque session id to a GitHub access token. Records expire
after a sliding TTL and are swept periodically by SessionSweeper. The store
is the only structure shared across concurrent requests, so every access goes
through a single lock.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import suppress
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import jwt
from pydantic import BaseModel, Field, SecretStr, ValidationError

from uploader.core.types.api import TokenData
from uploader.core.utils.encryption import DEFAULT_KDF_ITERATIONS, CredentialEncryption

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


class SessionEncryptionError(Exception):
    """Raised when a stored access token cannot be decrypted"""
    pass


class Session(BaseModel):
    """Authenticated actor bound to an upstream access credential."""

    session_id: str
    user_id: str
    login: str
    access_token: SecretStr = Field(exclude=True, repr=False)
    created_at: float
    last_access_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class SessionStore:
    """
    In-memory session table with TTL expiry and JWT sealing.

    Args:
        secret: Key used both to sign JWTs and to derive the token cipher
        max_age_seconds: Sliding session lifetime
        clock: Time source returning epoch seconds (injectable for tests)
        kdf_iterations: PBKDF2 iterations for the token cipher
    """

    def __init__(
        self,
        secret: str,
        max_age_seconds: float,
        clock: Callable[[], float] = time.time,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ):
        if max_age_seconds <= 0:
            raise ValueError("Session max age must be positive")
        self._secret = secret
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._encryption = CredentialEncryption(secret, kdf_iterations=kdf_iterations)
        self._sessions: Dict[str, Session] = {}
        self._lock = Lock()

    def create_session(
        self,
        user_id: Any,
        login: str,
        access_token: str,
        ttl_seconds: Optional[float] = None,
    ) -> str:
        """
        Create a new session for an authenticated GitHub user.

        Args:
            user_id: GitHub numeric user id
            login: GitHub login name
            access_token: OAuth access token; stored encrypted
            ttl_seconds: Override for the configured lifetime

        Returns:
            The new session id
        """
        ttl = self.max_age_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("Session TTL must be positive")

        session_id = str(uuid.uuid4())
        now = self._clock()
        session = Session(
            session_id=session_id,
            user_id=str(user_id),
            login=login,
            access_token=SecretStr(self._encryption.encrypt_value(access_token)),
            created_at=now,
            last_access_at=now,
            expires_at=now + ttl,
        )

        with self._lock:
            self._sessions[session_id] = session

        logger.info(f"Session created for user {login}", extra={"user_login": login})
        return session_id

    def get_session(self, session_id: str) -> Optional[Session]:
        """
        Look up a live session.

        An expired record is evicted and reported as missing. The returned
        copy carries the decrypted access token.
        """
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[session_id]
                logger.info("Expired session removed")
                return None

        token = self._encryption.decrypt_value(session.access_token.get_secret_value())
        if token is None:
            raise SessionEncryptionError("Stored access token could not be decrypted")
        return session.model_copy(update={"access_token": SecretStr(token)})

    def refresh_session(self, session_id: str) -> bool:
        """Extend a live session's expiry by the full TTL (sliding window)."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_expired(now):
                return False
            session.expires_at = now + self.max_age_seconds
            session.last_access_at = now
        logger.debug("Session refreshed")
        return True

    def destroy_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info(f"Session destroyed for user {removed.login}")
            return True
        return False

    def cleanup_expired_sessions(self) -> int:
        """Remove every expired record. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def get_active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_user_sessions(self, user_id: str) -> List[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == str(user_id)]

    def destroy_user_sessions(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.user_id == str(user_id)]
            for sid in doomed:
                del self._sessions[sid]

        if doomed:
            logger.info(f"Destroyed {len(doomed)} sessions for user {user_id}")
        return len(doomed)

    def get_session_stats(self) -> Dict[str, Any]:
        """Counts of live/expired records and the mean age of live ones (seconds)."""
        now = self._clock()
        with self._lock:
            sessions = list(self._sessions.values())

        active = [s for s in sessions if not s.is_expired(now)]
        average_age = sum(now - s.created_at for s in active) / len(active) if active else 0
        return {
            "total": len(sessions),
            "active": len(active),
            "expired": len(sessions) - len(active),
            "average_age": round(average_age),
        }

    def generate_jwt(self, session_id: str) -> str:
        """Seal a session id into a signed HS256 token."""
        now = int(self._clock())
        payload = {
            "sub": session_id,
            "iat": now,
            "exp": now + int(self.max_age_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify_jwt(self, token: str) -> Optional[str]:
        """
        Verify a token produced by generate_jwt.

        Returns:
            The session id, or None for a bad signature, expired or malformed token
        """
        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
            return TokenData(**decoded).sub
        except (jwt.PyJWTError, ValidationError) as e:
            logger.warning(f"JWT verification failed: {type(e).__name__}")
            return None


class SessionSweeper:
    """Background task that evicts expired sessions on a fixed interval."""

    def __init__(self, store: SessionStore, interval_seconds: float = 60.0):
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Session sweeper started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug("Session sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.store.cleanup_expired_sessions()
            except Exception as e:
                logger.error(
                    f"Session sweep failed: {e}",
                    extra={"error_type": type(e).__name__, "operation": "session_sweep"},
                )
