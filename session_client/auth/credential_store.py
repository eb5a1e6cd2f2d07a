"""
Credential stores shared by session handles.

The store holds the one logical session of the process. Every handle reads
and writes through it; writes are last-writer-wins and are pushed to
subscribers after the lock is released.
"""

import logging
import threading
from typing import Callable, List, Optional

from session_shared.interfaces import ICredentialStore
from session_shared.models import Session
from session_shared.exceptions import CredentialStoreError, ErrorCode

from .token_storage import SecureTokenStorage

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]


class InMemoryCredentialStore(ICredentialStore):
    """Process-wide credential store without durable backing."""

    def __init__(self, initial: Optional[Session] = None):
        self._lock = threading.RLock()
        self._session = initial or Session()
        self._listeners: List[SessionListener] = []

    def get(self) -> Session:
        with self._lock:
            return self._session

    def put(self, session: Session) -> None:
        with self._lock:
            self._write(session)
            self._session = session
            listeners = list(self._listeners)

        logger.debug(f"Session stored (state: {session.auth_state.value})")
        self._notify(listeners, session)

    def _write(self, session: Session) -> None:
        """Hook for durable backends; called under the store lock."""

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, listeners: List[SessionListener], session: Session) -> None:
        for listener in listeners:
            try:
                listener(session)
            except Exception as e:
                logger.error(f"Error in credential store listener: {e}")


class PersistentCredentialStore(InMemoryCredentialStore):
    """
    Credential store with an in-memory cache in front of secure storage.

    `get()` serves the cache; `reload()` re-reads durable storage so that
    sessions written by other processes become visible.
    """

    def __init__(self, storage: SecureTokenStorage, namespace: str = "default"):
        self.storage = storage
        self.namespace = namespace
        super().__init__(self._load().settled())

    def _load(self) -> Session:
        data = self.storage.get_session(self.namespace)
        if not data:
            return Session()

        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialStoreError(
                f"Stored session for namespace '{self.namespace}' is corrupted: {e}",
                error_code=ErrorCode.STORE_CORRUPTED,
                context={'namespace': self.namespace},
                cause=e
            )

    def _write(self, session: Session) -> None:
        self.storage.store_session(self.namespace, session.to_dict())

    def reload(self) -> Session:
        with self._lock:
            self._session = self._load()
            return self._session

    def clear(self) -> None:
        """Drop the durable record and reset the cache to an empty session."""
        with self._lock:
            self.storage.remove_session(self.namespace)
            self._session = Session()
            listeners = list(self._listeners)

        self._notify(listeners, self._session)
