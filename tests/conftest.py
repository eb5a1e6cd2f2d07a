"""
Shared fixtures for the Session Sync Client tests.

FakeTimers drives schedulers in virtual time: callbacks due at the same
instant run together, then pending tasks on the loop are drained, the way an
asyncio loop runs ready timers before the tasks they scheduled.
"""

import asyncio
import time
from typing import Callable, List, Optional

import pytest
from jose import jwt

from session_shared.interfaces import IAuthFlow, IFlowCompletion, ITimerHandle, ITimerService
from session_shared.models import GrantType, UserProfile
from session_client.auth.credential_store import InMemoryCredentialStore
from session_client.notifications import NotificationRouter


class FakeTimerHandle(ITimerHandle):

    def __init__(self, due: float, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers(ITimerService):

    def __init__(self):
        self.now = 0.0
        self._seq = 0
        self._pending: List[FakeTimerHandle] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.now + delay, self._seq, callback)
        self._seq += 1
        self._pending.append(handle)
        return handle

    @property
    def pending(self) -> List[FakeTimerHandle]:
        return [h for h in self._pending if not h.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            live = [h for h in self.pending if h.due <= target + 1e-9]
            if not live:
                break
            due = min(h.due for h in live)
            batch = sorted((h for h in live if h.due == due), key=lambda h: h.seq)
            self.now = max(self.now, due)
            for handle in batch:
                self._pending.remove(handle)
                if not handle.cancelled:
                    handle.callback()
            await drain()
        self.now = target
        await drain()


async def drain(rounds: int = 20) -> None:
    """Let callbacks and tasks queued on the running loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeAuthFlow(IAuthFlow):
    """Auth flow whose outcomes are reported by the test through the completions."""

    def __init__(self):
        self.login_calls: List[GrantType] = []
        self.completions: List[IFlowCompletion] = []
        self.logout_completions: List[IFlowCompletion] = []
        self.profile = UserProfile(id="kp_1", first_name="Ada", last_name="Lovelace",
                                   preferred_email="ada@example.com")
        self.profile_errors: List[Exception] = []
        self.profile_calls: List[str] = []

    def login(self, grant_type: GrantType, completion: IFlowCompletion) -> None:
        self.login_calls.append(grant_type)
        self.completions.append(completion)

    def logout(self, completion: IFlowCompletion) -> None:
        self.logout_completions.append(completion)

    async def fetch_user_profile(self, access_token: str) -> UserProfile:
        self.profile_calls.append(access_token)
        if self.profile_errors:
            raise self.profile_errors.pop(0)
        return self.profile


def make_token(expires_in: Optional[int] = 3600, **claims) -> str:
    """Signed JWT with an `exp` claim relative to the wall clock."""
    payload = {'sub': 'kp_1234567890', 'email': 'ada@example.com'}
    if expires_in is not None:
        payload['exp'] = int(time.time()) + expires_in
    payload.update(claims)
    return jwt.encode(payload, 'test-secret', algorithm='HS256')


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def router():
    return NotificationRouter()


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def auth_flow():
    return FakeAuthFlow()


@pytest.fixture
def make_handle(store, auth_flow, router, timers):
    """Factory for handles sharing one store, flow, router and clock."""
    from session_client.session_handle import SessionHandle

    handles = []

    def factory(owner_id: str, **kwargs):
        kwargs.setdefault('store', store)
        kwargs.setdefault('auth_flow', auth_flow)
        kwargs.setdefault('router', router)
        kwargs.setdefault('timers', timers)
        handle = SessionHandle(owner_id, **kwargs)
        handles.append(handle)
        return handle

    yield factory

    for handle in handles:
        handle.close()
