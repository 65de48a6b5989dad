"""
Core data model: connection/command state machines, commands and snapshots.
"""

import itertools
import threading
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Optional, Pattern, Tuple


# Property name -> new value, produced by the parser and applied by the tick
PropertyDelta = Dict[str, Any]


class ConnectionState(Enum):
    """Connection state owned by the lifecycle manager."""
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    DEGRADED = "degraded"   # last open attempt failed, retrying on each tick


class CommandState(Enum):
    """Per-device command queue state."""
    IDLE = "idle"
    SENT = "sent"


class CommandClass(Enum):
    ONE_SHOT = "one_shot"
    PERIODIC = "periodic"


class CommandKind(Enum):
    """How a command is carried by the backend."""
    EXCHANGE = "exchange"   # send a frame, then wait for a matching reply frame
    SEND = "send"           # send a frame, no reply expected
    READ = "read"           # read_property() for each key
    WRITE = "write"         # write_property(key, payload)


class CommandOutcome(Enum):
    """Definite result of a command, as seen by the caller."""
    SUCCESS = "success"
    CONNECTION_LOST = "connection_lost"
    PROTOCOL_VIOLATION = "protocol_violation"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    HARDWARE_BUSY = "hardware_busy"


_command_ids = itertools.count(1)


@dataclass(eq=False)
class Command:
    """
    One outbound protocol operation.

    The command is resolved exactly once; callers may block on wait() or
    poll the outcome attribute.
    """

    name: str
    kind: CommandKind
    payload: Any = None
    keys: Tuple[str, ...] = ()
    expect: Optional[Pattern[bytes]] = None
    shape: Optional[str] = None
    reply_size: Optional[int] = None
    timeout: float = 2.0
    command_class: CommandClass = CommandClass.ONE_SHOT
    priority: bool = False
    target: Any = None
    tolerance: Optional[float] = None
    on_success: PropertyDelta = field(default_factory=dict)
    poll_class: Optional[str] = None
    group: Optional[int] = None
    retries: int = 0
    command_id: int = field(default_factory=lambda: next(_command_ids))
    issued_at: Optional[float] = None
    outcome: Optional[CommandOutcome] = None
    error: Optional[str] = None
    result_code: Optional[int] = None
    reply: Any = None

    def __post_init__(self):
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def succeeded(self) -> bool:
        return self.outcome == CommandOutcome.SUCCESS

    def matches(self, frame: bytes) -> bool:
        """Check whether a received frame is the reply to this command."""
        if self.expect is None:
            return True
        return self.expect.match(frame) is not None

    def resolve(
        self,
        outcome: CommandOutcome,
        error: Optional[str] = None,
        code: Optional[int] = None,
    ) -> bool:
        """
        Record the outcome. Returns False if the command was already resolved.
        """
        if self._done.is_set():
            return False
        self.outcome = outcome
        self.error = error
        self.result_code = code
        self._done.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until resolved. Returns True if resolved within timeout."""
        return self._done.wait(timeout)

    def spawn(self) -> "Command":
        """Fresh, unresolved copy of a periodic template."""
        return replace(
            self,
            command_id=next(_command_ids),
            issued_at=None,
            outcome=None,
            error=None,
            result_code=None,
            reply=None,
            on_success=dict(self.on_success),
        )

    def __repr__(self) -> str:
        state = self.outcome.value if self.outcome else ("sent" if self.issued_at is not None else "queued")
        return f"Command(#{self.command_id} {self.name} {self.command_class.value} {state})"


@dataclass(frozen=True)
class PropertySnapshot:
    """
    Last-committed property values for one device.

    Immutable: the tick builds a new snapshot and swaps the reference, so
    readers see either the old or the new one, never a mix.
    """

    position: Optional[float] = None
    mechanical_position: Optional[float] = None
    target_position: Optional[float] = None
    is_moving: bool = False
    hand_control: bool = False
    temperature: Optional[float] = None
    max_step: Optional[int] = None
    min_position: Optional[float] = None
    max_position: Optional[float] = None
    backlash: Optional[int] = None
    reverse: Optional[bool] = None
    right_ascension: Optional[float] = None
    declination: Optional[float] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    tracking: Optional[bool] = None
    slewing: bool = False
    at_park: Optional[bool] = None
    at_home: Optional[bool] = None
    side_of_pier: Optional[int] = None
    firmware_version: Optional[str] = None
    model_name: Optional[str] = None
    updated_at: Optional[float] = None

    def apply(self, delta: PropertyDelta, now: Optional[float] = None) -> "PropertySnapshot":
        """
        Return a new snapshot with delta applied.

        Raises:
            ValueError: If delta names an unknown property.
        """
        unknown = set(delta) - snapshot_fields()
        if unknown:
            raise ValueError(f"Unknown snapshot properties: {sorted(unknown)}")
        if now is not None:
            delta = {**delta, "updated_at": now}
        return replace(self, **delta)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_SNAPSHOT_FIELDS = frozenset(f.name for f in fields(PropertySnapshot))


def snapshot_fields() -> frozenset:
    return _SNAPSHOT_FIELDS


@dataclass(frozen=True)
class ConnectionAttempt:
    """Ephemeral record of one open/retry cycle."""

    backend_id: Any
    result_code: int
    timestamp: float
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0
