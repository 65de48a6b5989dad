from collections import deque
from typing import Any, Dict, List, Optional

import pytest

from alpaca_hub.backends.codes import EafCode, SerialCode
from alpaca_hub.backends.interface import Adapter
from alpaca_hub.backends.serial_line import SerialLineBackend
from alpaca_hub.core.command_queue import CommandQueue
from alpaca_hub.core.state import (
    Command,
    CommandClass,
    CommandKind,
    CommandOutcome,
    CommandState,
)
from alpaca_hub.drivers.ioptron import ACK, GEP_REPLY
from alpaca_hub.drivers.robofocus import FD_REPLY
from alpaca_hub.protocol import ioptron
from alpaca_hub.protocol.ioptron import IoptronFraming
from alpaca_hub.protocol.robofocus import encode_command
from alpaca_hub.simulator.serial_port import IoptronMountModel, SimulatedPortRegistry
from alpaca_hub.utils.exceptions import BackendError


class ScriptedSession:
    """Backend session stub: frames and failures are scripted by the test."""

    def __init__(self, kind: str = "ioptron") -> None:
        self.kind = kind
        self.sent: List[bytes] = []
        self.inbox: deque = deque()
        self.reads: Dict[str, Any] = {}
        self.writes: List[tuple] = []
        self.write_error: Optional[BackendError] = None
        self.discards = 0

    def send(self, payload: bytes) -> None:
        self.sent.append(payload)

    def receive(self, size: Optional[int] = None) -> Optional[bytes]:
        if not self.inbox:
            return None
        item = self.inbox.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def discard_input(self) -> None:
        self.discards += 1
        self.inbox.clear()

    def read_property(self, key: str) -> Any:
        value = self.reads[key]
        if isinstance(value, Exception):
            raise value
        return value

    def write_property(self, key: str, value: Any = None) -> Any:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((key, value))
        return None


def ack(name: str, **kwargs) -> Command:
    return Command(
        name=name,
        kind=CommandKind.EXCHANGE,
        payload=name.encode("ascii"),
        shape="ack",
        expect=ACK,
        reply_size=1,
        timeout=kwargs.pop("timeout", 2.0),
        **kwargs,
    )


def test_single_command_in_flight() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    first, second = ack(":ST1#"), ack(":ST0#")
    queue.enqueue(first)
    queue.enqueue(second)

    result = queue.drain_due(session, now=0.0)
    assert result.dispatched is first
    assert queue.state == CommandState.SENT
    assert queue.in_flight is first

    # Still waiting: nothing else goes on the wire
    queue.drain_due(session, now=0.1)
    assert session.sent == [b":ST1#"]

    session.inbox.append(b"1")
    result = queue.drain_due(session, now=0.2)
    assert result.resolved == [first]
    assert first.outcome == CommandOutcome.SUCCESS
    assert queue.state == CommandState.IDLE

    result = queue.drain_due(session, now=0.3)
    assert result.dispatched is second
    assert session.sent == [b":ST1#", b":ST0#"]
    assert session.discards == 0


def test_move_within_tolerance_is_a_no_op() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    move = Command(name="move", kind=CommandKind.WRITE, keys=("move",), payload=100, tolerance=5)
    assert queue.enqueue(move, distance=3)
    assert move.outcome == CommandOutcome.SUCCESS
    assert queue.pending_count == 0


def test_timeout_is_not_fatal_and_next_command_dispatches() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    first, second = ack(":ST1#"), ack(":ST0#")
    queue.enqueue(first)
    queue.enqueue(second)

    queue.drain_due(session, now=0.0)
    result = queue.drain_due(session, now=2.5)
    assert first.outcome == CommandOutcome.TIMEOUT
    assert not result.fatal
    assert not result.escalate
    assert queue.consecutive_timeouts == 1

    result = queue.drain_due(session, now=2.6)
    assert result.dispatched is second
    assert session.discards == 1


def test_late_reply_after_timeout_is_not_taken_for_the_next_reply(clock) -> None:
    registry = SimulatedPortRegistry()
    mount = registry.add("COM9", IoptronMountModel(clock=clock))
    backend = SerialLineBackend(
        "ioptron",
        IoptronFraming(),
        port_factory=registry.open_port,
        port_lister=registry.list_ports,
        clock=clock,
        sleep=clock.sleep,
    )
    session = Adapter(backend).open("COM9")
    queue = CommandQueue("mount", "ioptron")

    position = Command(
        name=":GEP#",
        kind=CommandKind.EXCHANGE,
        payload=b":GEP#",
        shape="gep",
        expect=GEP_REPLY,
        timeout=2.0,
    )
    queue.enqueue(position)
    mount.silent = True
    queue.drain_due(session, now=clock())
    clock.advance(2.5)
    queue.drain_due(session, now=clock())
    assert position.outcome == CommandOutcome.TIMEOUT

    # First half of the position reply turns up after the command gave up
    mount.silent = False
    mount.outbox.extend(ioptron.encode_gep(5.5, 5.0)[:12])

    tracking = ack(":ST1#")
    queue.enqueue(tracking)
    result = queue.drain_due(session, now=clock())
    assert result.dispatched is tracking

    result = queue.drain_due(session, now=clock())
    assert result.resolved == [tracking]
    assert tracking.outcome == CommandOutcome.SUCCESS
    assert tracking.reply == b"1"
    assert session.handle.buffer == bytearray()


def test_consecutive_timeouts_escalate_when_configured() -> None:
    queue = CommandQueue("mount", "ioptron", max_consecutive_timeouts=2)
    session = ScriptedSession()
    for name in (":ST1#", ":ST0#"):
        queue.enqueue(ack(name))

    queue.drain_due(session, now=0.0)
    assert not queue.drain_due(session, now=3.0).escalate
    queue.drain_due(session, now=3.1)
    assert queue.drain_due(session, now=6.0).escalate


def test_successful_reply_resets_timeout_count() -> None:
    queue = CommandQueue("mount", "ioptron", max_consecutive_timeouts=2)
    session = ScriptedSession()
    for name in (":ST1#", ":ST0#", ":Q#"):
        queue.enqueue(ack(name))

    queue.drain_due(session, now=0.0)
    queue.drain_due(session, now=3.0)
    queue.drain_due(session, now=3.1)
    session.inbox.append(b"1")
    queue.drain_due(session, now=3.2)
    assert queue.consecutive_timeouts == 0


def test_bad_reply_is_resent_while_retries_remain() -> None:
    queue = CommandQueue("focuser", "robofocus")
    session = ScriptedSession("robofocus")
    query = Command(
        name="FG",
        kind=CommandKind.EXCHANGE,
        payload=encode_command("FG", 0),
        expect=FD_REPLY,
        retries=1,
    )
    queue.enqueue(query)
    queue.drain_due(session, now=0.0)

    good = encode_command("FD", 2500)
    session.inbox.append(good[:8] + bytes([(good[8] + 1) % 256]))
    queue.drain_due(session, now=0.1)
    assert not query.done
    assert len(session.sent) == 2

    session.inbox.append(good)
    result = queue.drain_due(session, now=0.2)
    assert query.outcome == CommandOutcome.SUCCESS
    assert {"position": 2500, "is_moving": False} in result.deltas


def test_bad_reply_without_retries_is_a_protocol_violation() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    command = ack(":ST1#")
    queue.enqueue(command)
    queue.drain_due(session, now=0.0)
    session.inbox.append(b"1")
    # Matches the expect pattern, then fails decoding as GEP
    command.shape = "gep"
    queue.drain_due(session, now=0.1)
    assert command.outcome == CommandOutcome.PROTOCOL_VIOLATION


def test_group_fails_as_a_unit() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    group = [ack(":SRA000000000#"), ack(":Sd+00000000#"), ack(":MS1#")]
    assert queue.enqueue_group(group)

    queue.drain_due(session, now=0.0)
    session.inbox.append(b"0")
    queue.drain_due(session, now=0.1)

    assert [c.outcome for c in group] == [CommandOutcome.HARDWARE_BUSY] * 3
    assert queue.pending_count == 0
    assert session.sent == [b":SRA000000000#"]


def test_group_within_tolerance_resolves_every_member() -> None:
    queue = CommandQueue("mount", "ioptron")
    group = [ack(":SRA000000000#"), ack(":Sd+00000000#"), ack(":MS1#", tolerance=0.01)]
    queue.enqueue_group(group, distance=0.001)
    assert all(c.outcome == CommandOutcome.SUCCESS for c in group)
    assert queue.pending_count == 0


def test_priority_command_jumps_the_queue() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    queue.enqueue(ack(":ST1#"))
    halt = ack(":Q#", priority=True)
    queue.enqueue(halt)

    assert queue.drain_due(session, now=0.0).dispatched is halt


def test_periodic_commands_rearm() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    session = ScriptedSession("zwo_eaf")
    session.reads["position"] = 100
    template = Command(
        name="status",
        kind=CommandKind.READ,
        keys=("position",),
        command_class=CommandClass.PERIODIC,
    )
    queue.add_periodic(template, interval=1.0, moving_interval=0.25)

    result = queue.drain_due(session, now=0.0)
    assert result.dispatched is not template
    assert result.dispatched.outcome == CommandOutcome.SUCCESS
    assert result.deltas == [{"position": 100}]
    assert template.outcome is None

    assert queue.drain_due(session, now=0.5).dispatched is None
    # Re-armed with the moving interval
    assert queue.drain_due(session, now=1.0, moving=True).dispatched is not None
    assert queue.drain_due(session, now=1.2, moving=True).dispatched is None
    assert queue.drain_due(session, now=1.25, moving=True).dispatched is not None


def test_one_shots_take_precedence_over_periodic() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    session = ScriptedSession("zwo_eaf")
    session.reads["position"] = 100
    queue.add_periodic(
        Command(name="status", kind=CommandKind.READ, keys=("position",), command_class=CommandClass.PERIODIC),
        interval=1.0,
    )
    move = Command(name="move", kind=CommandKind.WRITE, keys=("move",), payload=500)
    queue.enqueue(move)

    assert queue.drain_due(session, now=0.0).dispatched is move
    assert session.writes == [("move", 500)]


def test_periodic_held_while_moving_on_quiet_hardware() -> None:
    queue = CommandQueue("focuser", "robofocus", quiet_while_moving=True)
    session = ScriptedSession("robofocus")
    queue.add_periodic(
        Command(name="FG", kind=CommandKind.EXCHANGE, payload=encode_command("FG", 0),
                expect=FD_REPLY, command_class=CommandClass.PERIODIC),
        interval=1.0,
    )
    assert queue.drain_due(session, now=0.0, moving=True).dispatched is None

    halt = Command(name="halt", kind=CommandKind.SEND, payload=encode_command("FQ", 0), priority=True)
    queue.enqueue(halt)
    assert queue.drain_due(session, now=0.0, moving=True).dispatched is halt
    assert halt.outcome == CommandOutcome.SUCCESS


def test_unsolicited_frames_are_drained_while_idle() -> None:
    queue = CommandQueue("focuser", "robofocus")
    session = ScriptedSession("robofocus")
    session.inbox.extend([b"O", b"O", encode_command("FD", 1200)])

    result = queue.drain_due(session, now=0.0)
    assert result.deltas == [
        {"is_moving": True},
        {"is_moving": True},
        {"position": 1200, "is_moving": False},
    ]


def test_fatal_receive_error_loses_the_command() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    command = ack(":ST1#")
    queue.enqueue(command)
    queue.drain_due(session, now=0.0)

    session.inbox.append(BackendError(SerialCode.IO_ERROR, "device disconnected"))
    result = queue.drain_due(session, now=0.1)
    assert result.fatal
    assert command.outcome == CommandOutcome.CONNECTION_LOST
    assert queue.state == CommandState.IDLE


def test_transient_write_error_keeps_the_connection() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    session = ScriptedSession("zwo_eaf")
    session.write_error = BackendError(EafCode.MOVING)
    move = Command(name="move", kind=CommandKind.WRITE, keys=("move",), payload=500)
    queue.enqueue(move)

    result = queue.drain_due(session, now=0.0)
    assert not result.fatal
    assert move.outcome == CommandOutcome.HARDWARE_BUSY
    assert move.result_code == EafCode.MOVING


def test_fatal_write_error() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    session = ScriptedSession("zwo_eaf")
    session.write_error = BackendError(EafCode.REMOVED)
    move = Command(name="move", kind=CommandKind.WRITE, keys=("move",), payload=500)
    queue.enqueue(move)

    result = queue.drain_due(session, now=0.0)
    assert result.fatal
    assert move.outcome == CommandOutcome.CONNECTION_LOST


def test_on_success_values_are_merged_into_the_delta() -> None:
    queue = CommandQueue("focuser", "zwo_eaf")
    session = ScriptedSession("zwo_eaf")
    move = Command(
        name="move", kind=CommandKind.WRITE, keys=("move",), payload=500,
        on_success={"target_position": 500, "is_moving": True},
    )
    queue.enqueue(move)
    result = queue.drain_due(session, now=0.0)
    assert result.deltas == [{"target_position": 500, "is_moving": True}]


def test_fail_all() -> None:
    queue = CommandQueue("mount", "ioptron")
    session = ScriptedSession()
    commands = [ack(":ST1#"), ack(":ST0#"), ack(":Q#", priority=True)]
    for command in commands:
        queue.enqueue(command)
    queue.drain_due(session, now=0.0)

    resolved = queue.fail_all(CommandOutcome.CONNECTION_LOST, "unplugged")
    assert len(resolved) == 3
    assert all(c.outcome == CommandOutcome.CONNECTION_LOST for c in commands)
    assert queue.state == CommandState.IDLE
    assert queue.pending_count == 0


def test_queue_full() -> None:
    queue = CommandQueue("mount", "ioptron", max_pending=1)
    assert queue.enqueue(ack(":ST1#"))
    refused = ack(":ST0#")
    assert not queue.enqueue(refused)
    assert not refused.done


def test_command_wait_and_resolve_once() -> None:
    command = ack(":ST1#")
    assert not command.wait(0.01)
    assert command.resolve(CommandOutcome.SUCCESS)
    assert not command.resolve(CommandOutcome.TIMEOUT)
    assert command.wait(0)
    assert command.outcome == CommandOutcome.SUCCESS


@pytest.mark.parametrize("moving,expected", [(False, 1.0), (True, 0.25)])
def test_periodic_slot_interval(moving, expected) -> None:
    from alpaca_hub.core.command_queue import PeriodicSlot

    slot = PeriodicSlot(Command(name="x", kind=CommandKind.READ), interval=1.0, moving_interval=0.25)
    assert slot.interval_for(moving) == expected
