"""
Command queue and correlation engine.

Serializes outbound commands for one device over a half-duplex channel.
At most one command is in flight; while it waits for its reply nothing else
is dispatched. Each drain performs at most one dispatch, and only
non-blocking receives, so a tick never blocks on the wire.

Dispatch order: priority one-shots (halt), then one-shots in FIFO order,
then periodic commands that are due.
"""

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from alpaca_hub.backends.interface import BackendSession
from alpaca_hub.core import parser
from alpaca_hub.core.classifier import classify
from alpaca_hub.core.state import (
    Command,
    CommandKind,
    CommandOutcome,
    CommandState,
    PropertyDelta,
)
from alpaca_hub.utils.exceptions import BackendError, HardwareBusyError, ParseError


logger = logging.getLogger(__name__)

_group_ids = itertools.count(1)

# Motion characters stream in one per step; drain them in bulk while idle
MAX_UNSOLICITED_FRAMES = 512


@dataclass
class PeriodicSlot:
    """A periodic command template and its re-arm schedule."""

    template: Command
    interval: float
    moving_interval: Optional[float] = None
    next_due: float = 0.0

    def interval_for(self, moving: bool) -> float:
        if moving and self.moving_interval is not None:
            return self.moving_interval
        return self.interval


@dataclass
class DrainResult:
    """What one drain_due() call did."""

    resolved: List[Command] = field(default_factory=list)
    deltas: List[PropertyDelta] = field(default_factory=list)
    dispatched: Optional[Command] = None
    fatal: bool = False
    escalate: bool = False
    last_code: Optional[int] = None


class CommandQueue:
    """
    Per-device command queue with single in-flight discipline.

    Enqueue is thread-safe (request handlers call it); drain_due() is only
    called by the tick that owns the device.

    Args:
        device_name: Used in log messages.
        backend_kind: Backend family, selects parser and classification table.
        max_pending: Queued one-shots beyond this are refused.
        max_consecutive_timeouts: Ask for invalidation after this many
            timeouts in a row. 0 disables escalation.
        quiet_while_moving: Hold periodic commands while the device moves
            (hardware that stops on any serial activity).
    """

    def __init__(
        self,
        device_name: str,
        backend_kind: str,
        max_pending: int = 64,
        max_consecutive_timeouts: int = 0,
        quiet_while_moving: bool = False,
        parse: Callable[..., PropertyDelta] = parser.parse,
    ):
        self.device_name = device_name
        self.backend_kind = getattr(backend_kind, "value", backend_kind)
        self.max_pending = max_pending
        self.max_consecutive_timeouts = max_consecutive_timeouts
        self.quiet_while_moving = quiet_while_moving
        self._parse = parse

        self._lock = threading.Lock()
        self._priority: Deque[Command] = deque()
        self._pending: Deque[Command] = deque()
        self._periodic: List[PeriodicSlot] = []
        self._in_flight: Optional[Command] = None
        self._last_code: Optional[int] = None
        self._consecutive_timeouts = 0
        # Set by a timeout: the late reply may still arrive
        self._stale_input = False

    # --- state -------------------------------------------------------

    @property
    def state(self) -> CommandState:
        return CommandState.SENT if self._in_flight is not None else CommandState.IDLE

    @property
    def in_flight(self) -> Optional[Command]:
        return self._in_flight

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._priority) + len(self._pending)

    @property
    def consecutive_timeouts(self) -> int:
        return self._consecutive_timeouts

    # --- enqueue -----------------------------------------------------

    def enqueue(self, command: Command, distance: Optional[float] = None) -> bool:
        """
        Queue a one-shot command.

        Args:
            command: Command to queue.
            distance: Distance between the command's target and the current
                position; a move within the command's tolerance resolves
                SUCCESS immediately without wire traffic.

        Returns:
            False if the queue is full (the command stays unresolved).
        """
        if self._within_tolerance(command, distance):
            logger.debug(
                f"{self.device_name}: {command.name} to {command.target} within tolerance, no move"
            )
            command.resolve(CommandOutcome.SUCCESS)
            return True

        with self._lock:
            if len(self._priority) + len(self._pending) >= self.max_pending:
                logger.warning(f"{self.device_name}: queue full, refusing {command.name}")
                return False
            if command.priority:
                self._priority.append(command)
            else:
                self._pending.append(command)
        return True

    def enqueue_group(self, commands: Sequence[Command], distance: Optional[float] = None) -> bool:
        """
        Queue a multi-frame operation that succeeds or fails as a unit.

        The tolerance check uses the first command carrying a tolerance.
        """
        if not commands:
            return True

        tolerance_cmd = next((c for c in commands if c.tolerance is not None), None)
        if tolerance_cmd is not None and self._within_tolerance(tolerance_cmd, distance):
            logger.debug(f"{self.device_name}: {tolerance_cmd.name} within tolerance, no move")
            for command in commands:
                command.resolve(CommandOutcome.SUCCESS)
            return True

        group = next(_group_ids)
        with self._lock:
            if len(self._priority) + len(self._pending) + len(commands) > self.max_pending:
                logger.warning(f"{self.device_name}: queue full, refusing group {commands[0].name}")
                return False
            for command in commands:
                command.group = group
                self._pending.append(command)
        return True

    def add_periodic(
        self,
        template: Command,
        interval: float,
        moving_interval: Optional[float] = None,
    ) -> None:
        """Register a periodic command; it is due immediately."""
        with self._lock:
            self._periodic.append(PeriodicSlot(template, interval, moving_interval))

    @staticmethod
    def _within_tolerance(command: Command, distance: Optional[float]) -> bool:
        return (
            command.tolerance is not None
            and distance is not None
            and abs(distance) <= command.tolerance
        )

    # --- drain -------------------------------------------------------

    def drain_due(self, session: BackendSession, now: float, moving: bool = False) -> DrainResult:
        """
        Make one step of progress.

        While a command is in flight: exactly one non-blocking receive, then
        the timeout check. Otherwise: collect buffered unsolicited frames,
        then dispatch at most one due command.
        """
        result = DrainResult()

        command = self._in_flight
        if command is not None:
            self._poll_reply(session, command, now, result)
            result.last_code = self._last_code
            return result

        for _ in range(MAX_UNSOLICITED_FRAMES):
            frame = self._receive(session, None, result)
            if result.fatal:
                return result
            if frame is None:
                break
            delta = self._unsolicited(frame)
            if delta:
                result.deltas.append(delta)
                moving = delta.get("is_moving", moving)

        command = self._next_due(now, moving)
        if command is not None:
            result.dispatched = command
            self._dispatch(session, command, now, result)

        result.last_code = self._last_code
        return result

    def _next_due(self, now: float, moving: bool) -> Optional[Command]:
        with self._lock:
            if self._priority:
                return self._priority.popleft()
            if self._pending:
                return self._pending.popleft()
            if self.quiet_while_moving and moving:
                return None
            due = [slot for slot in self._periodic if slot.next_due <= now]
            if not due:
                return None
            slot = min(due, key=lambda s: s.next_due)
            slot.next_due = now + slot.interval_for(moving)
            return slot.template.spawn()

    def _dispatch(self, session: BackendSession, command: Command, now: float, result: DrainResult) -> None:
        command.issued_at = now
        logger.debug(f"{self.device_name}: dispatch {command!r}")

        try:
            if command.kind == CommandKind.EXCHANGE:
                if self._stale_input:
                    session.discard_input()
                    self._stale_input = False
                session.send(command.payload)
                self._in_flight = command
                return

            if command.kind == CommandKind.SEND:
                session.send(command.payload)
                delta: PropertyDelta = {}

            elif command.kind == CommandKind.READ:
                values = {key: session.read_property(key) for key in command.keys}
                delta = self._decode(self._read_payload(values), command.shape)

            elif command.kind == CommandKind.WRITE:
                key = command.keys[0] if command.keys else command.name
                reply = session.write_property(key, command.payload)
                delta = self._decode(reply, command.shape) if command.shape else {}

            else:
                raise ValueError(f"Unknown command kind {command.kind}")

        except BackendError as e:
            self._backend_failure(command, e, result)
            return
        except HardwareBusyError as e:
            self._fail(command, CommandOutcome.HARDWARE_BUSY, str(e), None, result)
            return
        except ParseError as e:
            self._fail(command, CommandOutcome.PROTOCOL_VIOLATION, str(e), None, result)
            return

        self._succeed(command, delta, result)

    def _poll_reply(self, session: BackendSession, command: Command, now: float, result: DrainResult) -> None:
        frame = self._receive(session, command.reply_size, result, command)
        if result.fatal:
            return

        if frame is not None:
            if command.matches(frame):
                self._correlate(session, command, frame, now, result)
                return
            delta = self._unsolicited(frame)
            if delta:
                result.deltas.append(delta)

        elapsed = now - (command.issued_at if command.issued_at is not None else now)
        if elapsed <= command.timeout:
            return

        self._in_flight = None
        code = self._last_code
        self._stale_input = True
        if code is not None and classify(self.backend_kind, code).is_fatal:
            self._fail(command, CommandOutcome.CONNECTION_LOST, f"code {code}", code, result)
            result.fatal = True
            return

        logger.warning(
            f"{self.device_name}: {command.name} timed out after {elapsed:.1f}s"
            + (f" (last code {code})" if code is not None else "")
        )
        self._fail(command, CommandOutcome.TIMEOUT, f"no reply within {command.timeout}s", code, result)

        self._consecutive_timeouts += 1
        if (
            self.max_consecutive_timeouts > 0
            and self._consecutive_timeouts >= self.max_consecutive_timeouts
        ):
            logger.warning(
                f"{self.device_name}: {self._consecutive_timeouts} consecutive timeouts, closing connection"
            )
            result.escalate = True
            self._consecutive_timeouts = 0

    def _correlate(
        self,
        session: BackendSession,
        command: Command,
        frame: bytes,
        now: float,
        result: DrainResult,
    ) -> None:
        command.reply = frame
        try:
            delta = self._decode(frame, command.shape)
        except HardwareBusyError as e:
            self._in_flight = None
            self._fail(command, CommandOutcome.HARDWARE_BUSY, str(e), None, result)
            return
        except ParseError as e:
            if command.retries > 0:
                command.retries -= 1
                logger.warning(f"{self.device_name}: {command.name} bad reply ({e}), resending")
                try:
                    session.send(command.payload)
                except BackendError as send_error:
                    self._in_flight = None
                    self._backend_failure(command, send_error, result)
                    return
                command.issued_at = now
                return
            self._in_flight = None
            self._fail(command, CommandOutcome.PROTOCOL_VIOLATION, str(e), None, result)
            return

        self._in_flight = None
        self._succeed(command, delta, result)

    def _receive(
        self,
        session: BackendSession,
        size: Optional[int],
        result: DrainResult,
        command: Optional[Command] = None,
    ) -> Optional[bytes]:
        try:
            return session.receive(size)
        except BackendError as e:
            self._last_code = e.code
            classification = classify(self.backend_kind, e.code)
            if classification.is_fatal:
                logger.warning(f"{self.device_name}: receive failed: {e}")
                if command is not None:
                    self._in_flight = None
                    self._fail(command, CommandOutcome.CONNECTION_LOST, str(e), e.code, result)
                result.fatal = True
            else:
                logger.debug(f"{self.device_name}: transient receive error: {e}")
            return None

    def _unsolicited(self, frame: bytes) -> PropertyDelta:
        try:
            return self._decode(frame, None)
        except (ParseError, HardwareBusyError) as e:
            logger.warning(f"{self.device_name}: dropping unsolicited frame {frame!r}: {e}")
            return {}

    def _decode(self, payload: Any, shape: Optional[str]) -> PropertyDelta:
        return self._parse(self.backend_kind, payload, shape)

    @staticmethod
    def _read_payload(values: Dict[str, Any]) -> Any:
        # Line backends answer a read with one raw frame
        if len(values) == 1:
            (value,) = values.values()
            if isinstance(value, (bytes, bytearray)):
                return bytes(value)
        return values

    # --- resolution --------------------------------------------------

    def _succeed(self, command: Command, delta: PropertyDelta, result: DrainResult) -> None:
        merged = {**command.on_success, **delta}
        if merged:
            result.deltas.append(merged)
        self._consecutive_timeouts = 0
        self._last_code = None
        if command.resolve(CommandOutcome.SUCCESS):
            result.resolved.append(command)

    def _backend_failure(self, command: Command, error: BackendError, result: DrainResult) -> None:
        self._last_code = error.code
        classification = classify(self.backend_kind, error.code)
        if classification.is_fatal:
            logger.warning(f"{self.device_name}: {command.name} failed: {error}")
            self._fail(command, CommandOutcome.CONNECTION_LOST, str(error), error.code, result)
            result.fatal = True
            return
        logger.info(f"{self.device_name}: {command.name} failed: {error}")
        self._fail(command, classification.outcome, str(error), error.code, result)

    def _fail(
        self,
        command: Command,
        outcome: CommandOutcome,
        error: Optional[str],
        code: Optional[int],
        result: DrainResult,
    ) -> None:
        if command.resolve(outcome, error, code):
            result.resolved.append(command)
        if command.group is not None:
            result.resolved.extend(self._purge_group(command.group, outcome, error, code))

    def _purge_group(
        self,
        group: int,
        outcome: CommandOutcome,
        error: Optional[str],
        code: Optional[int],
    ) -> List[Command]:
        with self._lock:
            siblings = [c for c in self._pending if c.group == group]
            self._pending = deque(c for c in self._pending if c.group != group)

        purged = []
        for sibling in siblings:
            if sibling.resolve(outcome, error, code):
                purged.append(sibling)
        return purged

    def fail_all(self, outcome: CommandOutcome, error: Optional[str] = None) -> List[Command]:
        """Resolve the in-flight command and every queued one-shot."""
        with self._lock:
            victims = list(self._priority) + list(self._pending)
            self._priority.clear()
            self._pending.clear()
            if self._in_flight is not None:
                victims.insert(0, self._in_flight)
                self._in_flight = None

        resolved = [c for c in victims if c.resolve(outcome, error)]
        if resolved:
            logger.info(f"{self.device_name}: {len(resolved)} command(s) resolved {outcome.value}")
        return resolved

    def clear_in_flight(self) -> None:
        """Forget correlation state after a reopen and make periodic polls due now."""
        stale = self._in_flight
        self._in_flight = None
        if stale is not None:
            stale.resolve(CommandOutcome.CONNECTION_LOST, "connection reopened")
        self._last_code = None
        self._consecutive_timeouts = 0
        self._stale_input = False
        with self._lock:
            for slot in self._periodic:
                slot.next_due = 0.0
