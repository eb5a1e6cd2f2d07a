"""
Core interfaces for the Session Sync Client.

This module defines the abstract interfaces that collaborators must implement:
the shared credential store, the external interactive auth flow, the claim
source read by revalidation, the listener notified by the router, and the
timer service driving schedulers.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from .models import GrantType, Session, UserProfile


class ICredentialStore(ABC):
    """Process-wide holder of the current session, shared by all handles."""

    @abstractmethod
    def get(self) -> Session:
        """Return the current session."""
        pass

    @abstractmethod
    def put(self, session: Session) -> None:
        """Replace the current session (last writer wins)."""
        pass

    @abstractmethod
    def on_change(self, listener: Callable[[Session], None]) -> Callable[[], None]:
        """Subscribe to pushes; returns a callable that unsubscribes."""
        pass

    def reload(self) -> Session:
        """Re-read the session from durable storage, bypassing caches."""
        return self.get()


class IFlowCompletion(ABC):
    """Handed to the auth flow; exactly one outcome is delivered per flow."""

    @abstractmethod
    def new_token(self, token: str, refresh_token: Optional[str] = None,
                  id_token: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def logged_out(self) -> None:
        pass

    @abstractmethod
    def failed(self, error: Exception) -> None:
        pass


class IAuthFlow(ABC):
    """External interactive login/logout flow."""

    @abstractmethod
    def login(self, grant_type: GrantType, completion: IFlowCompletion) -> None:
        """Begin an interactive login; report the outcome through completion."""
        pass

    @abstractmethod
    def logout(self, completion: IFlowCompletion) -> None:
        """Begin an interactive logout; report the outcome through completion."""
        pass

    @abstractmethod
    async def fetch_user_profile(self, access_token: str) -> UserProfile:
        """Fetch the profile of the user owning the access token."""
        pass


class IClaimSource(ABC):
    """Read access to the current token and its claims."""

    @abstractmethod
    def get_access_token(self) -> Optional[str]:
        pass

    @abstractmethod
    def get_claims(self) -> Dict[str, Any]:
        pass


class ISessionListener(ABC):
    """Callbacks delivered to the handle that initiated a flow."""

    @abstractmethod
    def on_new_token(self, token: str, refresh_token: Optional[str] = None,
                     id_token: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def on_logout(self) -> None:
        pass

    @abstractmethod
    def on_exception(self, exception: Exception) -> None:
        pass


class ITimerHandle(ABC):

    @abstractmethod
    def cancel(self) -> None:
        pass


class ITimerService(ABC):
    """One-shot timers and a monotonic clock in seconds."""

    @abstractmethod
    def time(self) -> float:
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> ITimerHandle:
        pass
