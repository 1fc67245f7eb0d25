"""
Activity monitor - decide WHEN to ask for a notification decision.

Watches per-conversation message arrival and fires a trigger once a
conversation goes quiet for `pause_threshold_seconds`. Each new message
replaces the pending trigger (replace, not queue), so a burst produces one
trigger after it ends. Triggers are suppressed for the conversation the user
is viewing and for conversations analyzed within the debounce window.

All deadlines live in one heap owned by a single scheduler task. A
per-conversation generation counter invalidates superseded heap entries, so
cancelling a trigger is O(1) and no timer exists per conversation.

Two paths leave a burst without a decision. Sustained chat that never pauses
postpones the trigger indefinitely, and a trigger that falls inside the
debounce window is dropped, not deferred, so nothing fires until another
message arrives.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from notifyq.config import (
    MONITOR_DEBOUNCE_WINDOW_SECONDS,
    MONITOR_MESSAGE_THRESHOLD_COUNT,
    MONITOR_PAUSE_THRESHOLD_SECONDS,
    MONITOR_THRESHOLD_WINDOW_SECONDS,
)
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

if TYPE_CHECKING:
    from notifyq.notifications.engine import DecisionEngine
    from notifyq.notifications.models import NotificationDecision, UserPreferences

logger = get_logger(__name__)

TriggerCallback = Callable[[str], Awaitable[object]]


class ActivityState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    THRESHOLD_EXCEEDED = "threshold_exceeded"


@dataclass(frozen=True)
class MonitorConfig:
    pause_threshold_seconds: float = MONITOR_PAUSE_THRESHOLD_SECONDS
    message_threshold_count: int = MONITOR_MESSAGE_THRESHOLD_COUNT
    threshold_window_seconds: float = MONITOR_THRESHOLD_WINDOW_SECONDS
    debounce_window_seconds: float = MONITOR_DEBOUNCE_WINDOW_SECONDS

    @classmethod
    def from_preferences(cls, preferences: UserPreferences) -> MonitorConfig:
        return cls(
            pause_threshold_seconds=float(preferences.pause_threshold_seconds),
            message_threshold_count=preferences.active_conversation_threshold,
        )


@dataclass
class ConversationActivity:
    """Transient per-conversation timing state."""

    last_message_time: float
    window: deque[float] = field(default_factory=deque)
    generation: int = 0
    deadline: float | None = None
    last_analysis_time: float | None = None
    threshold_exceeded: bool = False


class ActivityMonitor:
    """
    Per-user monitor over all of the user's conversations.

    Args:
        on_trigger: Async callback invoked with the conversation id when a
            decision should be requested
        config: Timing thresholds
        clock: Monotonic seconds source (injectable for tests). Every time
            the monitor sees, including on_new_message timestamps, is in this
            clock's domain
    """

    def __init__(
        self,
        on_trigger: TriggerCallback,
        config: MonitorConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_trigger = on_trigger
        self.config = config or MonitorConfig()
        self.clock = clock

        self._states: dict[str, ConversationActivity] = {}
        self._heap: list[tuple[float, int, str, int]] = []
        self._seq = itertools.count()
        self._active_conversation: str | None = None
        self._wakeup = asyncio.Event()
        self._scheduler: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def active_conversation(self) -> str | None:
        return self._active_conversation

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._scheduler = asyncio.create_task(self._run(), name="notifyq-activity-monitor")
        logger.info("Activity monitor started (pause=%.0fs)", self.config.pause_threshold_seconds)

    async def stop(self) -> None:
        """Cancel the scheduler and in-flight triggers, and drop all state."""
        tasks = [t for t in (self._scheduler, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._scheduler = None
        self._inflight.clear()
        self._states.clear()
        self._heap.clear()
        self._active_conversation = None
        logger.info("Activity monitor stopped")

    def on_new_message(self, conversation_id: str, timestamp: float | None = None) -> None:
        """
        Record an arrival and (re)schedule the pause trigger.

        Args:
            timestamp: Arrival time read from this monitor's `clock` (monotonic
                seconds by default). Deadlines are compared against `clock()`,
                so wall-clock epoch values or message created_at times must not
                be passed here. Defaults to `clock()`.
        """
        now = self.clock() if timestamp is None else timestamp
        state = self._states.get(conversation_id)
        if state is None:
            state = self._states[conversation_id] = ConversationActivity(last_message_time=now)

        state.last_message_time = now
        state.window.append(now)
        cutoff = now - self.config.threshold_window_seconds
        while state.window and state.window[0] < cutoff:
            state.window.popleft()

        if not state.threshold_exceeded and len(state.window) >= self.config.message_threshold_count:
            state.threshold_exceeded = True
            counter("notifications.monitor.threshold_exceeded")
            logger.debug("Conversation %s exceeded %d messages", conversation_id, self.config.message_threshold_count)

        self._cancel(state)
        if conversation_id == self._active_conversation:
            return
        self._schedule(conversation_id, state, now + self.config.pause_threshold_seconds)

    def set_active_conversation(self, conversation_id: str | None) -> None:
        """Mark the conversation the user is viewing (None when leaving)."""
        self._active_conversation = conversation_id
        if conversation_id is not None and conversation_id in self._states:
            self._cancel(self._states[conversation_id])
            logger.debug("Conversation %s active, pending trigger canceled", conversation_id)

    def reset_conversation(self, conversation_id: str) -> None:
        state = self._states.pop(conversation_id, None)
        if state is not None:
            self._cancel(state)

    def get_state(self, conversation_id: str) -> ActivityState | None:
        state = self._states.get(conversation_id)
        if state is None:
            return None
        if self.clock() - state.last_message_time >= self.config.pause_threshold_seconds:
            return ActivityState.PAUSED
        if state.threshold_exceeded:
            return ActivityState.THRESHOLD_EXCEEDED
        return ActivityState.ACTIVE

    def pending_count(self) -> int:
        return sum(1 for s in self._states.values() if s.deadline is not None)

    async def run_pending(self) -> int:
        """
        Fire every due trigger now and wait for the callbacks.

        Returns:
            Number of triggers fired
        """
        tasks = self._fire_due()
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def drain(self) -> None:
        """Wait for in-flight trigger callbacks."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight))

    def _schedule(self, conversation_id: str, state: ConversationActivity, deadline: float) -> None:
        state.deadline = deadline
        heapq.heappush(self._heap, (deadline, next(self._seq), conversation_id, state.generation))
        # Scheduler recomputes its sleep from the new heap head
        self._wakeup.set()

    @staticmethod
    def _cancel(state: ConversationActivity) -> None:
        state.generation += 1
        state.deadline = None

    def _fire_due(self) -> list[asyncio.Task]:
        now = self.clock()
        tasks: list[asyncio.Task] = []

        while self._heap and self._heap[0][0] <= now:
            _, _, conversation_id, generation = heapq.heappop(self._heap)
            state = self._states.get(conversation_id)
            if state is None or state.generation != generation:
                continue  # superseded

            state.deadline = None

            quiet_until = state.last_message_time + self.config.pause_threshold_seconds
            if now < quiet_until:
                self._schedule(conversation_id, state, quiet_until)
                continue
            if conversation_id == self._active_conversation:
                counter("notifications.monitor.suppressed_active")
                continue
            if (
                state.last_analysis_time is not None
                and now - state.last_analysis_time < self.config.debounce_window_seconds
            ):
                # Dropped, not deferred
                counter("notifications.monitor.debounced")
                logger.debug("Trigger for %s debounced", conversation_id)
                continue

            state.last_analysis_time = now
            state.threshold_exceeded = False
            counter("notifications.monitor.triggered")

            task = asyncio.create_task(self._invoke(conversation_id))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)

        return tasks

    async def _invoke(self, conversation_id: str) -> None:
        try:
            await self.on_trigger(conversation_id)
        except Exception as e:
            counter("notifications.monitor.trigger_error")
            logger.error("Trigger callback failed for %s: %s", conversation_id, e, exc_info=True)

    async def _run(self) -> None:
        while True:
            self._fire_due()
            self._wakeup.clear()
            timeout = max(0.0, self._heap[0][0] - self.clock()) if self._heap else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass


def engine_trigger(
    engine: DecisionEngine,
    user_id: str,
    on_decision: Callable[[NotificationDecision], Awaitable[object]] | None = None,
) -> TriggerCallback:
    """
    Trigger callback that runs DecisionEngine.decide off the event loop.

    `on_decision` receives every decision (e.g. a push-delivery layer).
    """

    async def trigger(conversation_id: str) -> NotificationDecision:
        decision = await asyncio.to_thread(engine.decide, user_id, conversation_id)
        if on_decision is not None:
            await on_decision(decision)
        return decision

    return trigger
