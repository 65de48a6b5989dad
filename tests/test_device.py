import threading
import time

import pytest

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.core.lifecycle import NO_CODE
from alpaca_hub.core.state import CommandOutcome, CommandState, ConnectionState
from alpaca_hub.protocol import ioptron
from alpaca_hub.utils.exceptions import HardwareBusyError, InvalidValueError, NotConnectedError

from conftest import run_until, simulated


def _settle(device, ticks: int = 4) -> None:
    for _ in range(ticks):
        device.tick()
    assert device.queue.state == CommandState.IDLE


# --- Robofocus -------------------------------------------------------------

@pytest.fixture
def robofocus(make_hub):
    hub = make_hub(simulated("rf", "focuser", "robofocus", port="SIM-RF"))
    return hub.device("rf"), hub.simulated_ports.model("SIM-RF")


def test_robofocus_hydration(robofocus) -> None:
    device, model = robofocus
    device.tick()

    assert device.connected
    snapshot = device.get_snapshot()
    assert snapshot.position == 30000
    assert snapshot.firmware_version == "003200"
    assert snapshot.max_step == 60000
    assert snapshot.backlash == 20
    assert snapshot.temperature == pytest.approx(12.5)


def test_robofocus_bad_handshake_fails_the_open(robofocus) -> None:
    device, model = robofocus
    model.corrupt_next = 1

    device.tick()
    assert device.state == ConnectionState.DEGRADED
    assert device.attempts[-1].result_code == NO_CODE

    device.tick()
    assert device.connected


def test_robofocus_move_reports_motion_and_final_position(robofocus, clock) -> None:
    device, model = robofocus
    _settle(device)

    command = device.request_move(31000)
    device.tick()
    assert command.outcome == CommandOutcome.SUCCESS
    assert device.get_snapshot().is_moving

    clock.advance(1.0)
    device.tick()
    snapshot = device.get_snapshot()
    assert snapshot.is_moving
    # Nothing may be sent while the motor runs
    assert device.queue.state == CommandState.IDLE

    run_until(device, lambda: not device.get_snapshot().is_moving, clock, step=0.25)
    assert device.get_snapshot().position == 31000
    assert model.position == 31000


def test_robofocus_rejects_move_while_moving(robofocus) -> None:
    device, model = robofocus
    _settle(device)
    device.request_move(35000)
    device.tick()

    with pytest.raises(HardwareBusyError):
        device.request_move(36000)
    with pytest.raises(HardwareBusyError):
        device.request_write("backlash", 10)


def test_robofocus_halt(robofocus, clock) -> None:
    device, model = robofocus
    _settle(device)
    device.request_move(40000)
    device.tick()

    clock.advance(0.5)
    halt = device.request_halt()
    device.tick()
    assert halt.outcome == CommandOutcome.SUCCESS

    run_until(device, lambda: not device.get_snapshot().is_moving, clock)
    assert not model.is_moving
    assert device.get_snapshot().position == model.position == 30250


def test_robofocus_stall_detection(robofocus, clock) -> None:
    device, model = robofocus
    _settle(device)
    device.request_move(40000)
    device.tick()

    model.silent = True
    clock.advance(3.5)
    device.tick()
    assert not device.get_snapshot().is_moving


def test_robofocus_hand_control_motion_is_tracked(robofocus, clock) -> None:
    device, model = robofocus
    _settle(device)

    model.press_hand_control(30500)
    clock.advance(0.1)
    device.tick()
    assert device.get_snapshot().is_moving

    run_until(device, lambda: not device.get_snapshot().is_moving, clock, step=0.25)
    assert device.get_snapshot().position == 30500


def test_robofocus_backlash_write(robofocus) -> None:
    device, model = robofocus
    _settle(device)

    command = device.request_write("backlash", -40)
    run_until(device, lambda: command.done)
    assert command.outcome == CommandOutcome.SUCCESS
    assert model.backlash == 200040
    assert device.get_snapshot().backlash == -40

    with pytest.raises(InvalidValueError):
        device.request_write("backlash", 300)


def test_robofocus_move_validation(robofocus) -> None:
    device, model = robofocus
    _settle(device)
    for target in (0, 70000, 1.5, "abc", None):
        with pytest.raises(InvalidValueError):
            device.request_move(target)


def test_robofocus_unplug_and_replug(robofocus) -> None:
    device, model = robofocus
    _settle(device)

    model.plugged = False
    device.tick()
    assert device.state == ConnectionState.CLOSED

    device.tick()
    assert device.state == ConnectionState.DEGRADED
    assert device.attempts[-1].result_code == SerialCode.PORT_NOT_FOUND

    model.plugged = True
    device.tick()
    assert device.connected


def test_requests_need_an_open_device(robofocus) -> None:
    device, model = robofocus
    with pytest.raises(NotConnectedError):
        device.request_move(100)
    with pytest.raises(NotConnectedError):
        device.request_halt()


# --- iOptron ---------------------------------------------------------------

@pytest.fixture
def mount(make_hub):
    hub = make_hub(simulated("mount", "telescope", "ioptron"))
    return hub.device("mount"), hub.simulated_ports.model("SIM-mount")


def test_ioptron_hydration(mount) -> None:
    device, model = mount
    device.tick()

    snapshot = device.get_snapshot()
    assert device.connected
    assert snapshot.model_name == "CEM40"
    assert snapshot.firmware_version == "210105/210105"
    assert snapshot.at_home is True
    assert snapshot.at_park is False
    assert snapshot.declination == pytest.approx(90.0)
    assert snapshot.latitude == pytest.approx(45.46)


def test_ioptron_slew(mount, clock) -> None:
    device, model = mount
    device.tick()

    command = device.request_move((6.0, 30.0))
    run_until(device, lambda: command.done, clock)
    assert command.outcome == CommandOutcome.SUCCESS
    assert device.get_snapshot().slewing

    def arrived():
        snapshot = device.get_snapshot()
        return not snapshot.slewing and snapshot.right_ascension == pytest.approx(6.0)

    run_until(device, arrived, clock, step=0.25)
    snapshot = device.get_snapshot()
    assert snapshot.right_ascension == pytest.approx(6.0)
    assert snapshot.declination == pytest.approx(30.0)
    assert snapshot.tracking is True
    assert snapshot.side_of_pier == 1


def test_ioptron_abort_slew(mount, clock) -> None:
    device, model = mount
    device.tick()
    slew = device.request_move((6.0, 30.0))
    run_until(device, lambda: slew.done, clock)

    halt = device.request_halt()
    run_until(device, lambda: halt.done, clock)
    assert halt.outcome == CommandOutcome.SUCCESS
    assert model.status == ioptron.STATUS_STOPPED
    assert not device.get_snapshot().slewing


def test_ioptron_park_blocks_slews(mount, clock) -> None:
    device, model = mount
    device.tick()

    park = device.request_write("park", True)
    run_until(device, lambda: park.done, clock)
    run_until(device, lambda: device.get_snapshot().at_park is True, clock, step=0.25)

    with pytest.raises(InvalidValueError):
        device.request_move((1.0, 10.0))

    unpark = device.request_write("park", False)
    run_until(device, lambda: unpark.done, clock)
    assert unpark.outcome == CommandOutcome.SUCCESS
    assert device.get_snapshot().at_park is False


def test_ioptron_refusal_is_hardware_busy(mount, clock) -> None:
    device, model = mount
    device.tick()
    model.refuse_motion = True

    command = device.request_write("home", True)
    run_until(device, lambda: command.done, clock)
    assert command.outcome == CommandOutcome.HARDWARE_BUSY
    assert device.connected


def test_ioptron_slew_target_validation(mount) -> None:
    device, model = mount
    device.tick()
    for target in ((24.0, 0.0), (1.0, 91.0), (1.0,), "north"):
        with pytest.raises(InvalidValueError):
            device.request_move(target)


def test_ioptron_silent_mount_times_out_without_closing(mount, clock) -> None:
    device, model = mount
    device.tick()
    model.silent = True

    command = device.request_write("tracking", True)
    run_until(device, lambda: command.done, clock, step=0.5)
    assert command.outcome == CommandOutcome.TIMEOUT
    assert device.connected


def test_consecutive_timeouts_close_when_configured(make_hub, clock) -> None:
    hub = make_hub(simulated("mount", "telescope", "ioptron", timing={"max_consecutive_timeouts": 2}))
    device = hub.device("mount")
    device.tick()
    hub.simulated_ports.model("SIM-mount").silent = True

    run_until(device, lambda: device.state == ConnectionState.CLOSED, clock, step=0.5)


def test_concurrent_requests_keep_one_command_on_the_wire(mount, clock, monkeypatch) -> None:
    device, model = mount
    device.tick()

    backend = device.adapter.backend
    send = backend.send
    sent = []
    overlaps = []

    def checked_send(handle, payload):
        in_flight = device.queue.in_flight
        if in_flight is not None:
            overlaps.append((payload, in_flight.name))
        sent.append(payload)
        send(handle, payload)

    monkeypatch.setattr(backend, "send", checked_send)

    commands = []
    commands_lock = threading.Lock()
    stop = threading.Event()

    def requester(enabled: bool) -> None:
        for _ in range(25):
            while True:
                try:
                    command = device.request_write("tracking", enabled)
                    break
                except HardwareBusyError:
                    time.sleep(0.001)
            with commands_lock:
                commands.append(command)

    def ticker() -> None:
        while not stop.is_set():
            device.tick()
            clock.advance(0.01)

    requesters = [threading.Thread(target=requester, args=(i % 2 == 0,)) for i in range(4)]
    tickers = [threading.Thread(target=ticker) for _ in range(2)]
    for thread in tickers + requesters:
        thread.start()
    for thread in requesters:
        thread.join(timeout=10)

    deadline = time.monotonic() + 10
    while not all(c.done for c in commands) and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    for thread in tickers:
        thread.join(timeout=10)

    assert len(commands) == 100
    assert overlaps == []
    assert all(c.outcome == CommandOutcome.SUCCESS for c in commands)
    # Each request went on the wire once and resolved once
    assert len([p for p in sent if p in (b":ST1#", b":ST0#")]) == 100
    assert not any(c.resolve(CommandOutcome.TIMEOUT) for c in commands)
    assert device.connected


# --- ZWO CAA ---------------------------------------------------------------

def test_rotator_halt_resets_the_target(make_hub, clock) -> None:
    hub = make_hub(simulated("rot", "rotator", "zwo_caa"))
    device = hub.device("rot")
    device.tick()

    move = device.request_move(90)
    run_until(device, lambda: move.done, clock)
    assert device.get_snapshot().target_position == 90

    clock.advance(2.0)
    halt = device.request_halt()
    run_until(device, lambda: halt.done, clock)
    run_until(device, lambda: not device.get_snapshot().is_moving, clock)

    snapshot = device.get_snapshot()
    assert 0 < snapshot.position < 90
    assert snapshot.target_position == snapshot.position

    # Idle polls keep the two in step
    clock.advance(5.0)
    device.tick()
    assert device.get_snapshot().target_position == device.get_snapshot().position
