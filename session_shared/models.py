"""
Core data models for the Session Sync Client.

This module defines the session record shared through the credential store,
the typed claim and expiry values derived from it, user profiles returned by
revalidation, and the events published to consumers of a session handle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union
from enum import Enum


class AuthState(Enum):
    """Authentication state of the logical session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    LOGGING_OUT = "logging_out"

    @property
    def in_flight(self) -> bool:
        return self in (AuthState.AUTHENTICATING, AuthState.LOGGING_OUT)


class GrantType(Enum):
    """Grant types understood by the interactive login flow."""
    PKCE = "pkce"
    NONE = "none"


@dataclass
class Session:
    """The logical authentication session as mirrored into the credential store."""
    access_token: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    auth_state: AuthState = AuthState.UNAUTHENTICATED
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_authenticated(self) -> bool:
        return self.auth_state == AuthState.AUTHENTICATED

    def with_state(self, auth_state: AuthState) -> 'Session':
        """Copy of this session in another state."""
        return Session(
            access_token=self.access_token,
            claims=dict(self.claims),
            auth_state=auth_state,
            refresh_token=self.refresh_token,
            id_token=self.id_token,
        )

    def settled(self) -> 'Session':
        """
        Map an in-flight state back to the terminal state it came from.

        A flow cannot survive a process restart, so a session loaded from
        durable storage in AUTHENTICATING or LOGGING_OUT is settled on the
        presence of an access token.
        """
        if not self.auth_state.in_flight:
            return self
        state = AuthState.AUTHENTICATED if self.access_token else AuthState.UNAUTHENTICATED
        settled = self.with_state(state)
        settled.updated_at = self.updated_at
        return settled

    def to_dict(self) -> Dict[str, Any]:
        return {
            'access_token': self.access_token,
            'claims': self.claims,
            'auth_state': self.auth_state.value,
            'refresh_token': self.refresh_token,
            'id_token': self.id_token,
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        updated_at = data.get('updated_at')
        return cls(
            access_token=data.get('access_token'),
            claims=dict(data.get('claims') or {}),
            auth_state=AuthState(data.get('auth_state', AuthState.UNAUTHENTICATED.value)),
            refresh_token=data.get('refresh_token'),
            id_token=data.get('id_token'),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else datetime.now(),
        )


ClaimValue = Union[int, str, bool, list]


@dataclass(frozen=True)
class Claim:
    """A named, typed attribute of the current access token."""
    name: str
    value: ClaimValue


@dataclass(frozen=True)
class ExpiryInfo:
    """Token freshness derived from the `exp` claim."""
    expires_at_millis: int
    remaining_seconds: int
    is_near_expiry: bool


@dataclass
class RevalidationSchedule:
    """State of one handle's repeating revalidation timer."""
    interval_ms: int = 60_000
    next_fire_at: Optional[float] = None
    armed: bool = False


@dataclass(frozen=True)
class UserProfile:
    """User profile returned by the identity provider."""
    id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    preferred_email: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "N/A"

    @property
    def email(self) -> str:
        return self.preferred_email or "N/A"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'UserProfile':
        return cls(
            id=data.get('id'),
            first_name=data.get('first_name') or data.get('given_name'),
            last_name=data.get('last_name') or data.get('family_name'),
            preferred_email=data.get('preferred_email') or data.get('email'),
        )


# Events published by a session handle


@dataclass(frozen=True)
class SessionEvent:
    """Base class for everything published on a handle's event channel."""
    owner_id: str
    timestamp: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class NewToken(SessionEvent):
    token: str = ""


@dataclass(frozen=True)
class LoggedOut(SessionEvent):
    pass


@dataclass(frozen=True)
class Error(SessionEvent):
    cause: Optional[Exception] = None
    message: str = ""


@dataclass(frozen=True)
class CountdownTick(SessionEvent):
    remaining_seconds: int = 0


@dataclass(frozen=True)
class CountdownDue(SessionEvent):
    """The countdown reached zero; the revalidation tick is about to fire."""


@dataclass(frozen=True)
class CountdownHidden(SessionEvent):
    """The countdown stopped because authentication was lost."""


@dataclass(frozen=True)
class ExpiryWarning(SessionEvent):
    remaining_seconds: int = 0


@dataclass(frozen=True)
class TokenInfo(SessionEvent):
    expiry: Optional[ExpiryInfo] = None
    report: str = ""


@dataclass(frozen=True)
class RevalidationSucceeded(SessionEvent):
    token_tail: str = ""
    display_name: str = "N/A"
    email: str = "N/A"


@dataclass(frozen=True)
class RevalidationFailed(SessionEvent):
    cause: Optional[Exception] = None
    message: str = ""
