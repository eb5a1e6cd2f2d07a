"""
Revalidation scheduling for the Session Sync Client.

Each session handle owns one RevalidationScheduler. While the session is
authenticated it runs the revalidation action once per interval and publishes
a countdown to the next run once per second. Both timers are one-shot timers
that re-arm themselves, so stopping is a single synchronous cancel.
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Callable, Optional

from session_shared.interfaces import ITimerHandle, ITimerService
from session_shared.models import (
    CountdownDue, CountdownHidden, CountdownTick, RevalidationFailed,
    RevalidationSchedule, SessionEvent
)
from session_shared.exceptions import (
    ErrorCode, SchedulerStateError, SessionSyncError, handle_exception
)
from session_shared.logging_config import OperationLogger, log_structured_error

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 60_000
DEFAULT_COUNTDOWN_MS = 1_000


def _is_async(action: Callable[..., Any]) -> bool:
    return (inspect.iscoroutinefunction(action)
            or inspect.iscoroutinefunction(getattr(action, '__call__', None)))


class AsyncioTimerService(ITimerService):
    """Timer service backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)


class RevalidationScheduler:
    """
    Repeating, cancellable revalidation loop with a per-second countdown.

    The action is a zero-argument callable. Coroutine functions run as tasks
    on the loop, plain callables run in the loop's default executor. The
    action may return a SessionEvent, which is published on success.
    """

    def __init__(
        self,
        owner_id: str,
        action: Callable[[], Any],
        is_authenticated: Callable[[], bool],
        publish: Callable[[SessionEvent], None],
        timers: Optional[ITimerService] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        countdown_ms: int = DEFAULT_COUNTDOWN_MS,
        error_handler=None
    ):
        if interval_ms <= 0 or countdown_ms <= 0:
            raise ValueError("interval_ms and countdown_ms must be positive")

        self.owner_id = owner_id
        self.action = action
        self.is_authenticated = is_authenticated
        self.publish = publish
        self.loop = loop or asyncio.get_running_loop()
        self.timers = timers or AsyncioTimerService(self.loop)
        self.countdown_ms = countdown_ms
        self.error_handler = error_handler

        self.schedule = RevalidationSchedule(interval_ms=interval_ms)
        self.tick_count = 0
        self.failure_count = 0

        self._tick_timer: Optional[ITimerHandle] = None
        self._countdown_timer: Optional[ITimerHandle] = None
        self._in_flight: Optional[asyncio.Future] = None
        # Bumped on every start/stop; callbacks from an older generation are stale.
        self._generation = 0

        self._operation_logger = OperationLogger()

    @property
    def armed(self) -> bool:
        return self.schedule.armed

    @property
    def interval_ms(self) -> int:
        return self.schedule.interval_ms

    def _now_ms(self) -> float:
        return self.timers.time() * 1000

    def start(self) -> None:
        """Arm the schedule; an existing schedule is cancelled and restarted."""
        if self.schedule.armed:
            logger.debug(str(SchedulerStateError(
                f"Scheduler for {self.owner_id} already running, restarting",
                error_code=ErrorCode.SCHEDULER_ALREADY_RUNNING
            )))
        self._cancel()
        self._arm()
        logger.info(f"Revalidation started for {self.owner_id} "
                    f"(interval: {self.schedule.interval_ms}ms)")

    def stop(self) -> None:
        """Cancel both timers and any in-flight action. Safe to call repeatedly."""
        if not self.schedule.armed and self._in_flight is None:
            logger.debug(str(SchedulerStateError(
                f"Scheduler for {self.owner_id} is not running"
            )))
        was_armed = self.schedule.armed
        self._cancel()
        if was_armed:
            logger.info(f"Revalidation stopped for {self.owner_id}")

    def _cancel(self) -> None:
        self._generation += 1

        if self._tick_timer is not None:
            self._tick_timer.cancel()
            self._tick_timer = None
        if self._countdown_timer is not None:
            self._countdown_timer.cancel()
            self._countdown_timer = None
        if self._in_flight is not None:
            self._in_flight.cancel()
            self._in_flight = None

        self.schedule.armed = False
        self.schedule.next_fire_at = None

    def _arm(self) -> None:
        generation = self._generation
        interval = self.schedule.interval_ms

        self.schedule.next_fire_at = self._now_ms() + interval
        self.schedule.armed = True

        self._tick_timer = self.timers.call_later(
            interval / 1000, lambda: self._on_tick(generation))
        self._arm_countdown(generation)

    def _arm_countdown(self, generation: int) -> None:
        self._countdown_timer = self.timers.call_later(
            self.countdown_ms / 1000, lambda: self._on_countdown(generation))

    def _on_countdown(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._countdown_timer = None

        if not self.is_authenticated():
            self.publish(CountdownHidden(owner_id=self.owner_id))
            self.stop()
            return

        remaining = round((self.schedule.next_fire_at - self._now_ms()) / 1000)
        if remaining > 0:
            self.publish(CountdownTick(owner_id=self.owner_id, remaining_seconds=remaining))
            self._arm_countdown(generation)
        else:
            # The tick timer restarts the countdown once the action finishes.
            self.publish(CountdownDue(owner_id=self.owner_id))

    def _on_tick(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._tick_timer = None

        if not self.is_authenticated():
            logger.info(f"Revalidation for {self.owner_id} stopped: not authenticated")
            self.publish(CountdownHidden(owner_id=self.owner_id))
            self.stop()
            return

        self.tick_count += 1
        self._in_flight = self.loop.create_task(self._run_action(generation))

    async def _run_action(self, generation: int) -> None:
        operation_id = str(uuid.uuid4())
        self._operation_logger.log_operation_start(
            'revalidation', operation_id, owner_id=self.owner_id,
            context={'tick': self.tick_count}
        )
        started = time.monotonic()

        try:
            if _is_async(self.action):
                result = await self.action()
            else:
                result = await self.loop.run_in_executor(None, self.action)
        except asyncio.CancelledError:
            logger.debug(f"Revalidation action for {self.owner_id} cancelled")
            raise
        except Exception as e:
            self.failure_count += 1
            self._operation_logger.log_operation_complete(
                operation_id, success=False, duration_seconds=time.monotonic() - started,
                result_summary=str(e) or type(e).__name__
            )
            if generation == self._generation:
                self._report_failure(e)
        else:
            self._operation_logger.log_operation_complete(
                operation_id, success=True, duration_seconds=time.monotonic() - started
            )
            if isinstance(result, SessionEvent) and generation == self._generation:
                self.publish(result)

        if generation != self._generation:
            return
        self._in_flight = None

        if self.is_authenticated():
            self._cancel()
            self._arm()
        else:
            logger.info(f"Revalidation for {self.owner_id} not re-armed: authentication lost")
            self.publish(CountdownHidden(owner_id=self.owner_id))
            self._cancel()

    def _report_failure(self, exception: Exception) -> SessionSyncError:
        context = {'owner_id': self.owner_id, 'tick': self.tick_count}
        if self.error_handler is not None:
            error = self.error_handler.handle_error(
                exception, context, default_error_code=ErrorCode.REVALIDATION_FAILED,
                owner_id=self.owner_id, level=logging.WARNING
            )
        else:
            error = handle_exception(exception, context, ErrorCode.REVALIDATION_FAILED)
            log_structured_error(logger, error, owner_id=self.owner_id, level=logging.WARNING)

        self.publish(RevalidationFailed(
            owner_id=self.owner_id, cause=error, message=error.user_message
        ))
        return error
