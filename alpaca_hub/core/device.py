"""
Device: one controlled instrument and its tick.

The tick is the only writer of the snapshot. Request handlers read the
current snapshot reference without locking and enqueue commands; they never
perform backend I/O themselves.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from alpaca_hub.backends.interface import Adapter, BackendInfo, BackendSession
from alpaca_hub.config.models import DeviceConfig
from alpaca_hub.core.command_queue import CommandQueue, DrainResult
from alpaca_hub.core.events import EventCategory, EventSink
from alpaca_hub.core.lifecycle import ConnectionManager
from alpaca_hub.core.state import (
    Command,
    CommandClass,
    CommandOutcome,
    CommandState,
    ConnectionAttempt,
    ConnectionState,
    PropertyDelta,
    PropertySnapshot,
)
from alpaca_hub.drivers.base import DeviceProfile
from alpaca_hub.utils.exceptions import HardwareBusyError, NotConnectedError


logger = logging.getLogger(__name__)

ATTEMPT_HISTORY = 20

# Tick delay while a reply is pending
REPLY_POLL_DELAY = 0.02


class Device:
    """
    One instrument instance.

    Args:
        device_number: Alpaca device number within its device type.
        config: Device configuration.
        profile: Polling/command profile for the backend kind.
        adapter: Backend adapter (shared with other devices for SDK backends).
        lifecycle: Connection manager.
        events: Event sink.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        device_number: int,
        config: DeviceConfig,
        profile: DeviceProfile,
        adapter: Adapter,
        lifecycle: ConnectionManager,
        events: EventSink,
        clock: Callable[[], float] = time.monotonic,
        max_pending: int = 64,
    ):
        self.device_number = device_number
        self.name = config.name
        self.config = config
        self.profile = profile
        self.adapter = adapter
        self.clock = clock

        self._lifecycle = lifecycle
        self._events = events
        self._tick_lock = threading.Lock()

        # Owned by the lifecycle manager
        self.state = ConnectionState.CLOSED
        self.enabled = config.auto_connect
        self.session: Optional[BackendSession] = None
        self.backend_info: Optional[BackendInfo] = None
        self.open_failures = 0
        self.attempts: Deque[ConnectionAttempt] = deque(maxlen=ATTEMPT_HISTORY)

        self.match_key = config.match or config.port

        self.snapshot = PropertySnapshot(
            min_position=config.min_position,
            max_position=config.max_position,
        )
        self.last_poll: Dict[str, float] = {}
        self._staged: List[PropertyDelta] = []
        self._last_motion = 0.0

        self.queue = CommandQueue(
            device_name=self.name,
            backend_kind=profile.backend_kind,
            max_pending=max_pending,
            max_consecutive_timeouts=config.timing.max_consecutive_timeouts,
            quiet_while_moving=profile.quiet_while_moving,
        )
        for poll in profile.periodic():
            self.queue.add_periodic(poll.command, poll.interval, poll.moving_interval)

    # --- identity ----------------------------------------------------

    @property
    def device_type(self) -> str:
        return self.profile.device_type.value

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.OPEN

    def describe(self) -> dict:
        info = self.backend_info
        return {
            "DeviceName": self.name,
            "DeviceType": self.device_type.capitalize(),
            "DeviceNumber": self.device_number,
            "UniqueID": f"{self.profile.backend_kind}-{self.match_key or self.config.index}",
            "Manufacturer": self.profile.manufacturer,
            "Model": self.snapshot.model_name or self.profile.model,
            "BackendId": None if info is None else str(info.backend_id),
            "State": self.state.value,
            "Enabled": self.enabled,
            **self.profile.capabilities(),
        }

    # --- tick --------------------------------------------------------

    def stage(self, delta: PropertyDelta) -> None:
        """Queue a delta for the next atomic snapshot commit. Tick thread only."""
        if delta:
            self._staged.append(delta)

    def _commit(self, now: float) -> None:
        if not self._staged:
            return
        merged: PropertyDelta = {}
        for delta in self._staged:
            merged.update(delta)
        self._staged = []
        if merged.get("is_moving"):
            self._last_motion = now
        snapshot = self.snapshot.apply(merged, now)
        if (
            self.profile.target_follows_position
            and not snapshot.is_moving
            and snapshot.position is not None
            and snapshot.target_position != snapshot.position
        ):
            # A halt or stall leaves the device short of its target
            snapshot = snapshot.apply({"target_position": snapshot.position})
        self.snapshot = snapshot

    def _moving(self) -> bool:
        moving = self.snapshot.is_moving
        for delta in self._staged:
            moving = delta.get("is_moving", moving)
        return moving

    def tick(self) -> float:
        """
        Run one bounded, non-blocking step.

        Returns:
            Recommended delay in seconds before the next tick.
        """
        with self._tick_lock:
            now = self.clock()

            if not self._lifecycle.ensure_open(self):
                self._commit(now)
                return self.config.timing.retry_delay_sec

            result = self.queue.drain_due(self.session, now, self._moving())
            self._absorb(result, now)

            if result.fatal or result.escalate:
                reason = "fatal backend error" if result.fatal else "too many consecutive timeouts"
                self._lifecycle.invalidate(self, reason, result.last_code)
                self._commit(now)
                return self.config.timing.retry_delay_sec

            if result.dispatched is None and self._is_idle():
                if self._poll_opportunistic(now):
                    self._commit(now)
                    return self.config.timing.retry_delay_sec

            self._check_stall(now)
            self._commit(now)
            return self._next_delay()

    def _absorb(self, result: DrainResult, now: float) -> None:
        for delta in result.deltas:
            self.stage(delta)
        for command in result.resolved:
            if command.succeeded and command.poll_class:
                self.last_poll[command.poll_class] = now
            elif not command.succeeded and command.command_class == CommandClass.ONE_SHOT:
                self._events.notify(
                    self.name,
                    EventCategory.COMMAND_FAILED,
                    command.result_code,
                    f"{command.name}: {command.outcome.value} {command.error or ''}".strip(),
                )

    def _is_idle(self) -> bool:
        return (
            self.queue.state == CommandState.IDLE
            and self.queue.pending_count == 0
            and not self._moving()
        )

    def _poll_opportunistic(self, now: float) -> bool:
        """Dispatch at most one due opportunistic poll. Returns True if the connection was lost."""
        for poll in self.profile.opportunistic():
            last = self.last_poll.get(poll.poll_class)
            if last is not None and now - last < poll.interval:
                continue
            # Straight to the queue's dispatcher: this is the tick's only dispatch
            command = poll.build()
            if not self.queue.enqueue(command):
                return False
            result = self.queue.drain_due(self.session, now, False)
            self._absorb(result, now)
            if result.fatal:
                self._lifecycle.invalidate(self, "fatal backend error", result.last_code)
            return result.fatal
        return False

    def _check_stall(self, now: float) -> None:
        stall = self.profile.stall_timeout
        if not stall or self.queue.state == CommandState.SENT or not self._moving():
            return
        if now - self._last_motion >= stall:
            logger.warning(f"{self.name}: movement stall detected (no motion data for {stall:.0f}s)")
            self.stage({"is_moving": False})

    def _next_delay(self) -> float:
        if self.queue.state == CommandState.SENT:
            return REPLY_POLL_DELAY
        if self.queue.pending_count:
            return 0.0
        if self._moving():
            return self.profile.moving_interval
        return self.profile.idle_interval

    # --- property-serving layer ----------------------------------------

    def get_snapshot(self) -> PropertySnapshot:
        return self.snapshot

    def _require_open(self) -> None:
        if self.state != ConnectionState.OPEN:
            raise NotConnectedError(f"{self.name} is not connected ({self.state.value})")

    def _submit(self, commands: List[Command], distance: Optional[float] = None) -> Command:
        if len(commands) == 1:
            accepted = self.queue.enqueue(commands[0], distance)
        else:
            accepted = self.queue.enqueue_group(commands, distance)
        if not accepted:
            raise HardwareBusyError(f"{self.name}: command queue is full")
        return commands[-1]

    def request_move(self, target: Any) -> Command:
        """
        Validate and queue a move.

        Raises:
            NotConnectedError: Device is not open.
            InvalidValueError: Target rejected before any wire traffic.
        """
        self._require_open()
        snapshot = self.snapshot
        target = self.profile.validate_move(target, snapshot)
        commands = self.profile.build_move(target, snapshot)
        return self._submit(commands, self.profile.distance(target, snapshot))

    def request_halt(self) -> Command:
        self._require_open()
        return self._submit([self.profile.build_halt()])

    def request_write(self, key: str, value: Any) -> Command:
        self._require_open()
        return self._submit(self.profile.build_write(key, value, self.snapshot))

    def set_enabled(self, enabled: bool) -> None:
        with self._tick_lock:
            self._lifecycle.set_enabled(self, enabled)

    def wait_for(self, command: Command, timeout: Optional[float] = None) -> CommandOutcome:
        """Block the calling request thread until a command resolves."""
        if not command.wait(command.timeout + 1.0 if timeout is None else timeout):
            return CommandOutcome.TIMEOUT
        return command.outcome

    def __repr__(self) -> str:
        return f"Device({self.name}, {self.profile.backend_kind}, {self.state.value})"
