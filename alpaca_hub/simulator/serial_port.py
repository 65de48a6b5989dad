"""
Simulated serial hardware.

SimulatedSerialPort mimics the subset of the pyserial Serial object the
serial line backend uses. Each port is bound to a device model whose state
outlives the port, so closing and reopening behaves like reconnecting a
cable. Models are clock-driven: motion advances whenever the port is polled.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from serial import SerialException

from alpaca_hub.backends.serial_ports import PortInfo
from alpaca_hub.protocol import ioptron as lx
from alpaca_hub.protocol.robofocus import (
    PACKET_LENGTH,
    decode_packet,
    encode_command,
    temperature_to_raw,
)
from alpaca_hub.utils.exceptions import ParseError


logger = logging.getLogger(__name__)


class SerialDeviceModel:
    """Base class for a simulated device behind a serial port."""

    description = "Simulated serial device"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.outbox = bytearray()
        self.plugged = True
        # Swallow commands without replying
        self.silent = False

    def receive(self, data: bytes) -> None:
        raise NotImplementedError

    def advance(self) -> None:
        """Bring time-dependent state up to date."""

    def reply(self, data: bytes) -> None:
        if not self.silent:
            self.outbox.extend(data)


class SimulatedSerialPort:
    """
    In-memory stand-in for serial.Serial.

    Args:
        model: Device model answering on this port.
        port: Port name.
    """

    def __init__(self, model: SerialDeviceModel, port: str = "SIM", **settings):
        if not model.plugged:
            raise SerialException(f"could not open port {port}: FileNotFoundError")
        self.model = model
        self.port = port
        self.settings = settings
        self.is_open = True

    def _check(self) -> None:
        if not self.is_open:
            raise SerialException("Attempting to use a port that is not open")
        if not self.model.plugged:
            raise SerialException(f"device on {self.port} disconnected")

    @property
    def in_waiting(self) -> int:
        self._check()
        self.model.advance()
        return len(self.model.outbox)

    def read(self, size: int = 1) -> bytes:
        self._check()
        self.model.advance()
        data = bytes(self.model.outbox[:size])
        del self.model.outbox[:size]
        return data

    def write(self, data: bytes) -> int:
        self._check()
        self.model.advance()
        self.model.receive(bytes(data))
        return len(data)

    def flush(self) -> None:
        self._check()

    def reset_input_buffer(self) -> None:
        self._check()
        self.model.advance()
        self.model.outbox.clear()

    def reset_output_buffer(self) -> None:
        self._check()

    def close(self) -> None:
        self.is_open = False


class SimulatedPortRegistry:
    """
    Port lister and port factory over a set of simulated devices.

    Pass `list_ports` and `open_port` to SerialLineBackend.
    """

    def __init__(self):
        self._models: Dict[str, SerialDeviceModel] = {}

    def add(self, port_name: str, model: SerialDeviceModel) -> SerialDeviceModel:
        self._models[port_name] = model
        return model

    def model(self, port_name: str) -> SerialDeviceModel:
        return self._models[port_name]

    def list_ports(self) -> List[PortInfo]:
        return [
            PortInfo(
                name=name,
                description=model.description,
                hardware_id=f"SIM SER={name}",
            )
            for name, model in sorted(self._models.items())
            if model.plugged
        ]

    def open_port(self, port: str, **settings) -> SimulatedSerialPort:
        model = self._models.get(port)
        if model is None:
            raise SerialException(f"could not open port {port}: FileNotFoundError")
        return SimulatedSerialPort(model, port, **settings)


class RobofocusModel(SerialDeviceModel):
    """
    Robofocus firmware 3.x.

    A move (FG with a value) is acknowledged only by the stream of 'I'/'O'
    characters and a final FD packet. Any byte received while moving stops
    the motor, as on the real hardware.
    """

    description = "Simulated Robofocus"

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        position: int = 30000,
        max_limit: int = 60000,
        speed: float = 500.0,
        firmware: int = 3200,
        temperature: float = 12.5,
    ):
        super().__init__(clock)
        self.position = position
        self.max_limit = max_limit
        self.speed = speed
        self.firmware = firmware
        self.temperature = temperature
        self.backlash = 3 * 100000 + 20
        self.corrupt_next = 0

        self._inbox = bytearray()
        self._moving = False
        self._start_position = position
        self._target = position
        self._start_time = 0.0
        self._reported = position

    @property
    def is_moving(self) -> bool:
        self.advance()
        return self._moving

    def _send_packet(self, cmd: str, value: int) -> None:
        packet = encode_command(cmd, value)
        if self.corrupt_next:
            self.corrupt_next -= 1
            logger.warning("[SIMULATOR] Injected checksum error for testing")
            packet = packet[:8] + bytes([(packet[8] + 1) % 256])
        self.reply(packet)

    def receive(self, data: bytes) -> None:
        if self._moving:
            logger.info(f"[SIMULATOR] Serial activity during move, halting at {self.position}")
            self._halt()
        self._inbox.extend(data)
        while len(self._inbox) >= PACKET_LENGTH:
            if self._inbox[0] != ord("F"):
                del self._inbox[:1]
                continue
            packet = bytes(self._inbox[:PACKET_LENGTH])
            del self._inbox[:PACKET_LENGTH]
            try:
                decoded = decode_packet(packet)
            except ParseError as e:
                logger.warning(f"[SIMULATOR] Ignoring bad packet {packet!r}: {e}")
                continue
            self._handle(decoded.cmd, int(decoded.value))

    def _handle(self, cmd: str, value: int) -> None:
        if cmd == "FV":
            self._send_packet("FV", self.firmware)
        elif cmd == "FG":
            if value == 0:
                self._send_packet("FD", self.position)
            else:
                self._start_move(min(value, self.max_limit))
        elif cmd == "FQ":
            # Halting already happened on receipt; report where we stopped
            self._send_packet("FD", self.position)
        elif cmd == "FT":
            self._send_packet("FT", temperature_to_raw(self.temperature))
        elif cmd == "FB":
            if value:
                self.backlash = value
            self._send_packet("FB", self.backlash)
        elif cmd == "FL":
            if value:
                self.max_limit = value
            self._send_packet("FL", self.max_limit)
        else:
            logger.warning(f"[SIMULATOR] Unknown command: {cmd}")

    def _start_move(self, target: int) -> None:
        if target == self.position:
            self._send_packet("FD", self.position)
            return
        self._moving = True
        self._start_position = self.position
        self._reported = self.position
        self._target = target
        self._start_time = self.clock()
        logger.info(f"[SIMULATOR] Movement started: {self.position} -> {target}")

    def _halt(self) -> None:
        self._moving = False
        self._target = self.position

    def advance(self) -> None:
        if not self._moving:
            return
        distance = self._target - self._start_position
        travelled = min(abs(distance), int(self.speed * (self.clock() - self._start_time)))
        direction = 1 if distance > 0 else -1
        self.position = self._start_position + direction * travelled

        steps = abs(self.position - self._reported)
        if steps:
            self.reply((b"O" if direction > 0 else b"I") * min(steps, 64))
            self._reported = self.position

        if self.position == self._target:
            self._moving = False
            self._send_packet("FD", self.position)
            logger.info(f"[SIMULATOR] Movement completed at position: {self.position}")

    def press_hand_control(self, target: int) -> None:
        """Start a move from the hand controller (no command on the wire)."""
        self._start_move(target)


class IoptronMountModel(SerialDeviceModel):
    """iOptron mount speaking the RS-232 command language V3."""

    description = "Simulated iOptron"

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        ra_hours: float = 0.0,
        dec_degrees: float = 90.0,
        longitude: float = 9.19,
        latitude: float = 45.46,
        slew_seconds: float = 2.0,
        model_code: str = "0040",
    ):
        super().__init__(clock)
        self.ra = ra_hours
        self.dec = dec_degrees
        self.longitude = longitude
        self.latitude = latitude
        self.slew_seconds = slew_seconds
        self.model_code = model_code
        self.status = lx.STATUS_HOME
        # Answer '0' to every motion command
        self.refuse_motion = False

        self._inbox = bytearray()
        self._target_ra = ra_hours
        self._target_dec = dec_degrees
        self._slew_end: Optional[float] = None
        self._after_slew = lx.STATUS_TRACKING

    def receive(self, data: bytes) -> None:
        self._inbox.extend(data)
        while True:
            idx = self._inbox.find(b"#")
            if idx < 0:
                return
            command = bytes(self._inbox[: idx + 1]).decode("ascii", errors="replace")
            del self._inbox[: idx + 1]
            self._handle(command)

    def _ack(self, accepted: bool = True) -> None:
        self.reply(b"1" if accepted else b"0")

    def _slew(self, ra: float, dec: float, after: int) -> None:
        if self.refuse_motion:
            self._ack(False)
            return
        self._target_ra, self._target_dec = ra, dec
        self._slew_end = self.clock() + self.slew_seconds
        self._after_slew = after
        self.status = lx.STATUS_SLEWING
        self._ack()

    def _handle(self, command: str) -> None:
        self.advance()
        if command == ":GEP#":
            pier = 1 if self.dec < 90.0 else 0
            self.reply(lx.encode_gep(self.ra, self.dec, pier=pier))
        elif command == ":GLS#":
            self.reply(lx.encode_gls(self.longitude, self.latitude, self.status))
        elif command == ":MountInfo#":
            self.reply(self.model_code.encode("ascii") + b"#")
        elif command == ":FW1#":
            self.reply(b"210105210105#")
        elif command == ":GR#":
            self.reply(lx.format_hms(self.ra))
        elif command == ":GD#":
            self.reply(lx.format_dms(self.dec))
        elif command.startswith(":SRA"):
            self._target_ra = int(command[4:-1]) / lx.UNITS_PER_HOUR
            self._ack()
        elif command.startswith(":Sd"):
            sign = -1 if command[3] == "-" else 1
            self._target_dec = sign * int(command[4:-1]) / lx.UNITS_PER_DEGREE
            self._ack()
        elif command == ":MS1#":
            if self.status == lx.STATUS_PARKED:
                self._ack(False)
            else:
                self._slew(self._target_ra, self._target_dec, lx.STATUS_TRACKING)
        elif command == ":Q#":
            self._slew_end = None
            if self.status == lx.STATUS_SLEWING:
                self.status = lx.STATUS_STOPPED
            self._ack()
        elif command == ":ST1#":
            if self.status in (lx.STATUS_STOPPED, lx.STATUS_HOME):
                self.status = lx.STATUS_TRACKING
            self._ack(self.status != lx.STATUS_PARKED)
        elif command == ":ST0#":
            if self.status == lx.STATUS_TRACKING:
                self.status = lx.STATUS_STOPPED
            self._ack()
        elif command == ":MP1#":
            self._slew(self.ra, 90.0, lx.STATUS_PARKED)
        elif command == ":MP0#":
            if self.status == lx.STATUS_PARKED:
                self.status = lx.STATUS_STOPPED
            self._ack()
        elif command == ":MH#":
            self._slew(self.ra, 90.0, lx.STATUS_HOME)
        else:
            logger.warning(f"[SIMULATOR] Unknown command: {command}")

    def advance(self) -> None:
        if self._slew_end is not None and self.clock() >= self._slew_end:
            self.ra, self.dec = self._target_ra, self._target_dec
            self.status = self._after_slew
            self._slew_end = None
            logger.info(f"[SIMULATOR] Slew finished at RA {self.ra:.4f}h Dec {self.dec:.4f}")
