"""
Tests for notification routing and the per-handle event channel.
"""

import asyncio
from unittest.mock import Mock

import pytest

from session_client.notifications import EventChannel, NotificationRouter, SessionListener
from session_shared.exceptions import ErrorCode, RouteConflictError
from session_shared.models import CountdownTick, LoggedOut, NewToken
from conftest import drain


class TestNotificationRouter:
    """Test exactly-once delivery onto the listener's loop."""

    @pytest.mark.asyncio
    async def test_delivery_is_marshalled_onto_loop(self, router):
        listener = Mock(spec=SessionListener)
        router.attach("screen-1", listener, asyncio.get_running_loop())

        completion = router.begin("screen-1", "login")
        completion.new_token("token-1")

        listener.on_new_token.assert_not_called()
        await drain()
        listener.on_new_token.assert_called_once_with("token-1", refresh_token=None, id_token=None)

    @pytest.mark.asyncio
    async def test_first_outcome_wins(self, router):
        listener = Mock(spec=SessionListener)
        router.attach("screen-1", listener, asyncio.get_running_loop())

        completion = router.begin("screen-1", "logout")
        completion.logged_out()
        completion.failed(RuntimeError("late"))
        completion.logged_out()
        await drain()

        assert completion.completed
        assert completion.outcome == 'logged_out'
        listener.on_logout.assert_called_once_with()
        listener.on_exception.assert_not_called()

    @pytest.mark.asyncio
    async def test_completion_from_worker_thread(self, router):
        listener = Mock(spec=SessionListener)
        loop = asyncio.get_running_loop()
        router.attach("screen-1", listener, loop)

        completion = router.begin("screen-1", "login")
        await loop.run_in_executor(None, completion.new_token, "token-from-thread")
        await drain()

        listener.on_new_token.assert_called_once()

    @pytest.mark.asyncio
    async def test_routes_only_to_initiating_listener(self, router):
        loop = asyncio.get_running_loop()
        first = Mock(spec=SessionListener)
        second = Mock(spec=SessionListener)
        router.attach("screen-a", first, loop)
        router.attach("screen-b", second, loop)

        router.begin("screen-b", "login").failed(RuntimeError("denied"))
        await drain()

        first.on_exception.assert_not_called()
        second.on_exception.assert_called_once()

    @pytest.mark.asyncio
    async def test_detached_listener_gets_nothing(self, router):
        listener = Mock(spec=SessionListener)
        router.attach("screen-1", listener, asyncio.get_running_loop())

        queued = router.begin("screen-1", "login")
        queued.new_token("queued-token")
        router.detach("screen-1")
        await drain()

        assert router.deliver_new_token("screen-1", "after-detach") is False
        await drain()
        listener.on_new_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, router):
        listener = Mock(spec=SessionListener)
        listener.on_logout.side_effect = RuntimeError("listener bug")
        router.attach("screen-1", listener, asyncio.get_running_loop())

        router.deliver_logout("screen-1")
        await drain()

        listener.on_logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_owner_id_conflict_is_rejected(self, router):
        loop = asyncio.get_running_loop()
        first = Mock(spec=SessionListener)
        second = Mock(spec=SessionListener)
        router.attach("screen-1", first, loop)

        with pytest.raises(RouteConflictError) as exc_info:
            router.attach("screen-1", second, loop)

        assert exc_info.value.error_code == ErrorCode.HANDLE_OWNER_IN_USE
        assert exc_info.value.context['owner_id'] == "screen-1"

        router.deliver_logout("screen-1")
        await drain()
        first.on_logout.assert_called_once_with()
        second.on_logout.assert_not_called()

    @pytest.mark.asyncio
    async def test_reattaching_same_listener(self, router):
        listener = Mock(spec=SessionListener)
        router.attach("screen-1", listener, asyncio.get_running_loop())
        router.attach("screen-1", listener, asyncio.get_running_loop())

        router.deliver_logout("screen-1")
        await drain()
        listener.on_logout.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_detach_keeps_route_of_other_listener(self, router):
        listener = Mock(spec=SessionListener)
        router.attach("screen-1", listener, asyncio.get_running_loop())

        router.detach("screen-1", Mock(spec=SessionListener))
        assert router.is_attached("screen-1")

        router.detach("screen-1", listener)
        assert not router.is_attached("screen-1")

    def test_unknown_owner(self):
        router = NotificationRouter()
        assert router.deliver_exception("nobody", RuntimeError("x")) is False
        assert not router.is_attached("nobody")


class TestEventChannel:
    """Test ordered publishing to callbacks and streams."""

    def test_callbacks_receive_events_in_order(self):
        channel = EventChannel()
        received = []
        channel.subscribe(received.append)

        events = [CountdownTick(owner_id="s", remaining_seconds=n) for n in (3, 2, 1)]
        for event in events:
            channel.publish(event)

        assert received == events
        assert channel.history == events

    def test_failing_callback_does_not_block_others(self):
        channel = EventChannel()
        received = []
        channel.subscribe(Mock(side_effect=RuntimeError("boom")))
        channel.subscribe(received.append)

        channel.publish(LoggedOut(owner_id="s"))

        assert len(received) == 1

    def test_unsubscribe(self):
        channel = EventChannel()
        received = []
        unsubscribe = channel.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        channel.publish(LoggedOut(owner_id="s"))

        assert received == []

    def test_history_is_bounded(self):
        channel = EventChannel()
        channel.history_limit = 5

        for n in range(20):
            channel.publish(CountdownTick(owner_id="s", remaining_seconds=n))

        assert [e.remaining_seconds for e in channel.history] == [15, 16, 17, 18, 19]

    @pytest.mark.asyncio
    async def test_stream(self):
        channel = EventChannel()
        received = []

        async def consume():
            async for event in channel.stream():
                received.append(event)

        consumer = asyncio.ensure_future(consume())
        await drain()

        channel.publish(NewToken(owner_id="s", token="t"))
        channel.publish(LoggedOut(owner_id="s"))
        channel.close()
        await asyncio.wait_for(consumer, 1)

        assert [e.kind for e in received] == ["NewToken", "LoggedOut"]

    def test_publish_after_close_is_dropped(self):
        channel = EventChannel()
        received = []
        channel.subscribe(received.append)

        channel.close()
        channel.publish(LoggedOut(owner_id="s"))

        assert received == []
