"""
Notification routing for the Session Sync Client.

The router delivers the outcome of every login, logout or token refresh to
the listener of the handle that initiated it, exactly once, on that handle's
event loop. The event channel carries the resulting session events to
whatever presentation layer consumes a handle.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional

from session_shared.exceptions import RouteConflictError
from session_shared.interfaces import IFlowCompletion, ISessionListener
from session_shared.models import SessionEvent

logger = logging.getLogger(__name__)


class SessionListener(ISessionListener):
    """Listener with no-op callbacks; override the ones you need."""

    def on_new_token(self, token: str, refresh_token: Optional[str] = None,
                     id_token: Optional[str] = None) -> None:
        pass

    def on_logout(self) -> None:
        pass

    def on_exception(self, exception: Exception) -> None:
        pass


@dataclass
class _Route:
    listener: ISessionListener
    loop: asyncio.AbstractEventLoop


class NotificationRouter:
    """
    Routes flow outcomes to attached listeners.

    Delivery is marshalled with `loop.call_soon_threadsafe`, so collaborators
    may complete flows from worker threads. A listener that was detached
    receives nothing, including deliveries already queued on its loop.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._routes: Dict[str, _Route] = {}

    def attach(self, owner_id: str, listener: ISessionListener,
               loop: asyncio.AbstractEventLoop) -> None:
        """
        Route outcomes for `owner_id` to `listener` on `loop`.

        Raises:
            RouteConflictError: If `owner_id` is attached to another listener
        """
        with self._lock:
            route = self._routes.get(owner_id)
            if route is not None and route.listener is not listener:
                raise RouteConflictError(
                    f"Owner id {owner_id} is already attached to another listener",
                    owner_id=owner_id
                )
            self._routes[owner_id] = _Route(listener, loop)
        logger.debug(f"Listener attached for {owner_id}")

    def detach(self, owner_id: str, listener: Optional[ISessionListener] = None) -> None:
        """Remove the route of `owner_id`; with `listener`, only if it is that listener's."""
        with self._lock:
            route = self._routes.get(owner_id)
            if route is None or (listener is not None and route.listener is not listener):
                return
            del self._routes[owner_id]
        logger.debug(f"Listener detached for {owner_id}")

    def is_attached(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._routes

    def begin(self, owner_id: str, kind: str) -> 'FlowCompletion':
        """Open a completion for one login or logout flow of `owner_id`."""
        return FlowCompletion(self, owner_id, kind)

    def deliver_new_token(self, owner_id: str, token: str,
                          refresh_token: Optional[str] = None,
                          id_token: Optional[str] = None) -> bool:
        """Deliver a token refreshed by the collaborator outside any login flow."""
        return self._dispatch(owner_id, 'on_new_token', token,
                              refresh_token=refresh_token, id_token=id_token)

    def deliver_logout(self, owner_id: str) -> bool:
        return self._dispatch(owner_id, 'on_logout')

    def deliver_exception(self, owner_id: str, exception: Exception) -> bool:
        return self._dispatch(owner_id, 'on_exception', exception)

    def _dispatch(self, owner_id: str, method: str, *args, **kwargs) -> bool:
        with self._lock:
            route = self._routes.get(owner_id)

        if route is None:
            logger.warning(f"Dropped {method} for {owner_id}: no listener attached")
            return False

        try:
            route.loop.call_soon_threadsafe(self._invoke, owner_id, route, method, args, kwargs)
        except RuntimeError as e:
            logger.warning(f"Dropped {method} for {owner_id}: {e}")
            return False
        return True

    def _invoke(self, owner_id: str, route: _Route, method: str, args, kwargs) -> None:
        with self._lock:
            if self._routes.get(owner_id) is not route:
                logger.debug(f"Discarded queued {method} for detached {owner_id}")
                return

        try:
            getattr(route.listener, method)(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in {method} listener for {owner_id}: {e}")


class FlowCompletion(IFlowCompletion):
    """
    Outcome slot of a single interactive flow.

    The first outcome reported wins; later reports are logged and dropped.
    """

    def __init__(self, router: NotificationRouter, owner_id: str, kind: str):
        self._router = router
        self.owner_id = owner_id
        self.kind = kind
        self._lock = threading.Lock()
        self._outcome: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> Optional[str]:
        return self._outcome

    def _claim(self, outcome: str) -> bool:
        with self._lock:
            if self._outcome is not None:
                logger.warning(
                    f"Ignoring {outcome} for {self.kind} flow of {self.owner_id}: "
                    f"already completed with {self._outcome}"
                )
                return False
            self._outcome = outcome
            return True

    def new_token(self, token: str, refresh_token: Optional[str] = None,
                  id_token: Optional[str] = None) -> None:
        if self._claim('new_token'):
            self._router.deliver_new_token(self.owner_id, token, refresh_token, id_token)

    def logged_out(self) -> None:
        if self._claim('logged_out'):
            self._router.deliver_logout(self.owner_id)

    def failed(self, error: Exception) -> None:
        if self._claim('failed'):
            self._router.deliver_exception(self.owner_id, error)


EventCallback = Callable[[SessionEvent], None]

_STREAM_END = object()


class EventChannel:
    """
    Ordered event channel of one handle.

    Subscribers are plain callbacks or `stream()` async iterators; a failing
    callback is logged and does not affect the others.
    """

    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self._queues: List[asyncio.Queue] = []
        self._closed = False
        self.history: List[SessionEvent] = []
        self.history_limit = 200

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        if self._closed:
            logger.debug(f"Dropped {event.kind} published after close")
            return

        self.history.append(event)
        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_limit:]

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.kind}: {e}")

        for queue in list(self._queues):
            queue.put_nowait(event)

    async def stream(self) -> AsyncIterator[SessionEvent]:
        """Yield events published from now on until the channel is closed."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is _STREAM_END:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def close(self) -> None:
        self._closed = True
        self._callbacks.clear()
        for queue in list(self._queues):
            queue.put_nowait(_STREAM_END)
