"""Key sessions for field encryption.

A ``KeySession`` holds one user's derived key in memory for as long as the
session is unlocked. Sessions are passed explicitly to everything that
encrypts or decrypts; ``SessionManager`` is only a registry for callers that
want one session per user.

``SaltCache`` is the local copy of each user's main salt. It is consulted
before the remote copy when unlocking.
"""

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from .config import get_vault_config
from .crypto import ValueCipher, b64decode, b64encode
from .exceptions import ConcurrentOperationError, SessionExpiredError, VaultLockedError


@dataclass
class KeySession:
    """Active key session for one user."""

    user_id: str
    key: Optional[bytes] = None  # Raw 32-byte AES key, never persisted
    salt: Optional[bytes] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_access: datetime = field(default_factory=datetime.now)
    timeout_minutes: int = 0  # 0 = no timeout
    operation: Optional[str] = None  # Exclusive operation in progress

    @property
    def is_unlocked(self) -> bool:
        return self.key is not None and not self.is_expired()

    def is_expired(self) -> bool:
        """Check if session has timed out due to inactivity."""
        if self.timeout_minutes == 0:
            return False
        elapsed = datetime.now() - self.last_access
        return elapsed > timedelta(minutes=self.timeout_minutes)

    def touch(self) -> None:
        """Update last access time to prevent timeout."""
        self.last_access = datetime.now()

    def install(self, key: bytes, salt: Optional[bytes] = None) -> None:
        """Populate the session with a verified key."""
        self.key = key
        self.salt = salt
        self.touch()

    def revoke(self) -> tuple[Optional[bytes], Optional[bytes]]:
        """
        Drop the key from the session.

        Returns:
            The previous (key, salt), for callers that may need to restore it
        """
        previous = (self.key, self.salt)
        self.key = None
        self.salt = None
        return previous

    def require_key(self) -> bytes:
        """
        Get the key or raise if locked/expired.

        Raises:
            VaultLockedError: If no key is held
            SessionExpiredError: If the session has expired
        """
        if self.key is None:
            raise VaultLockedError()
        if self.is_expired():
            self.revoke()
            raise SessionExpiredError()
        self.touch()
        return self.key

    def self_test(self) -> bool:
        """Round-trip a known value through the held key."""
        if self.key is None:
            return False
        return ValueCipher(self.key).self_test()

    @contextmanager
    def exclusive(self, operation: str) -> Iterator[None]:
        """
        Mark an operation as running for the duration of the block.

        Raises:
            ConcurrentOperationError: If another operation is already running
        """
        if self.operation is not None:
            raise ConcurrentOperationError(running=self.operation, requested=operation)
        self.operation = operation
        try:
            yield
        finally:
            self.operation = None


class SessionManager:
    """
    Thread-safe registry of key sessions, one per user.

    Supports several signed-in accounts side by side.
    """

    _instance: Optional["SessionManager"] = None
    _lock = threading.Lock()

    def __init__(self):
        """Initialize session manager (use get_instance() for singleton)."""
        self._sessions: dict[str, KeySession] = {}
        self._session_lock = threading.RLock()

    @classmethod
    def get_instance(cls) -> "SessionManager":
        """Get singleton session manager instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.lock_all()
            cls._instance = None

    def session_for(self, user_id: str) -> KeySession:
        """Get the session for a user, creating a locked one if needed."""
        with self._session_lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = KeySession(
                    user_id=user_id,
                    timeout_minutes=get_vault_config().session_timeout_minutes,
                )
                self._sessions[user_id] = session
            return session

    def get_session(self, user_id: str) -> Optional[KeySession]:
        """
        Get an unlocked session for a user.

        Returns:
            KeySession if unlocked and not expired, None otherwise
        """
        with self._session_lock:
            session = self._sessions.get(user_id)
            if session is None or not session.is_unlocked:
                return None
            session.touch()
            return session

    def lock(self, user_id: str) -> bool:
        """
        Lock a user's session by dropping its key.

        Returns:
            True if a key was dropped
        """
        with self._session_lock:
            session = self._sessions.get(user_id)
            if session is None or session.key is None:
                return False
            session.revoke()
            return True

    def lock_all(self) -> int:
        """
        Lock every session (e.g. on logout).

        Returns:
            Number of sessions that held a key
        """
        with self._session_lock:
            count = 0
            for session in self._sessions.values():
                if session.key is not None:
                    session.revoke()
                    count += 1
            self._sessions.clear()
            return count

    def is_unlocked(self, user_id: str) -> bool:
        return self.get_session(user_id) is not None


class SaltCache:
    """
    Local cache of main salts, keyed by user.

    In memory by default; with a ``file_path`` the cache survives restarts.
    """

    def __init__(self, file_path: Optional[Path] = None):
        self.file_path = Path(file_path) if file_path else None
        self._salts: dict[str, str] = {}
        if self.file_path and self.file_path.exists():
            try:
                self._salts = json.loads(self.file_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                # An unreadable cache is treated as empty; the remote salt still works
                self._salts = {}

    def get(self, user_id: str) -> Optional[bytes]:
        value = self._salts.get(user_id)
        if not value:
            return None
        try:
            return b64decode(value)
        except ValueError:
            return None

    def set(self, user_id: str, salt: bytes) -> None:
        self._salts[user_id] = b64encode(salt)
        self._save()

    def clear(self, user_id: str) -> None:
        if self._salts.pop(user_id, None) is not None:
            self._save()

    def _save(self) -> None:
        if self.file_path is None:
            return
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.file_path.write_text(json.dumps(self._salts, indent=2), encoding="utf-8")


# Module-level convenience functions


def get_session_manager() -> SessionManager:
    """Get the global session manager instance."""
    return SessionManager.get_instance()


def get_key_session(user_id: str) -> KeySession:
    """Get (or create) the session for a user."""
    return get_session_manager().session_for(user_id)


def is_unlocked(user_id: str) -> bool:
    """Check if a user's session is unlocked."""
    return get_session_manager().is_unlocked(user_id)


def lock_session(user_id: str) -> bool:
    """Lock a user's session."""
    return get_session_manager().lock(user_id)


def lock_all_sessions() -> int:
    """Lock all sessions."""
    return get_session_manager().lock_all()
