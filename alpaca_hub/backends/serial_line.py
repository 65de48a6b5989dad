"""
Serial line backend using pyserial.

One backend instance (and therefore one adapter) per device: unrelated
serial ports never share a lock. Reads never block: receive() drains
whatever the driver has buffered and hands complete frames to the framing
strategy. Only the short synchronous property calls used for hydration wait
for a reply, bounded by io_timeout.
"""

import logging
import time
from typing import Any, Callable, List, Optional

import serial
from serial import SerialException, SerialTimeoutException

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.backends.interface import Backend, BackendInfo
from alpaca_hub.backends.serial_ports import PortInfo, list_available_ports
from alpaca_hub.protocol.framing import Framing
from alpaca_hub.utils.exceptions import BackendError


logger = logging.getLogger(__name__)


def _hex(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


class SerialHandle:
    """An open port plus its receive buffer."""

    def __init__(self, port_name: str, port: Any):
        self.port_name = port_name
        self.port = port
        self.buffer = bytearray()

    def __repr__(self) -> str:
        return f"SerialHandle({self.port_name})"


class SerialLineBackend(Backend):
    """
    Backend over a serial port speaking a line-oriented protocol.

    Args:
        kind: Backend family name used for error classification.
        framing: Protocol framing strategy.
        baud: Baud rate.
        io_timeout: Budget for one synchronous exchange and for writes.
        port_factory: Callable with the serial.Serial signature.
        port_lister: Callable returning List[PortInfo].
        clock: Monotonic time source.
        sleep: Sleep function used while waiting for a synchronous reply.
    """

    def __init__(
        self,
        kind: str,
        framing: Framing,
        baud: int = 9600,
        io_timeout: float = 0.5,
        port_factory: Optional[Callable[..., Any]] = None,
        port_lister: Optional[Callable[[], List[PortInfo]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kind = kind
        self._framing = framing
        self._baud = baud
        self._io_timeout = io_timeout
        self._port_factory = port_factory or serial.Serial
        self._port_lister = port_lister or list_available_ports
        self._clock = clock
        self._sleep = sleep

    def enumerate(self) -> List[BackendInfo]:
        try:
            ports = self._port_lister()
        except (SerialException, OSError) as e:
            raise BackendError(SerialCode.IO_ERROR, f"port enumeration failed: {e}", call="enumerate")
        return [
            BackendInfo(p.name, index, p.description, p.serial_number)
            for index, p in enumerate(ports)
        ]

    def open(self, backend_id: Any) -> SerialHandle:
        port_name = str(backend_id)
        logger.info(f"Opening serial port {port_name}")

        try:
            port = self._port_factory(
                port=port_name,
                baudrate=self._baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
                write_timeout=self._io_timeout,
            )
        except SerialException as e:
            error_msg = str(e).lower()
            if "access" in error_msg or "permission" in error_msg or "in use" in error_msg:
                raise BackendError(
                    SerialCode.PORT_IN_USE,
                    f"{port_name} is already in use by another application",
                    call="open",
                )
            raise BackendError(SerialCode.PORT_NOT_FOUND, f"Failed to open {port_name}: {e}", call="open")

        port.reset_input_buffer()
        port.reset_output_buffer()
        return SerialHandle(port_name, port)

    def close(self, handle: SerialHandle) -> None:
        port = handle.port
        handle.buffer.clear()
        if port is None or not port.is_open:
            return
        try:
            port.close()
        except (SerialException, OSError) as e:
            raise BackendError(SerialCode.IO_ERROR, str(e), call="close")
        logger.info(f"Serial port {handle.port_name} closed")

    def _check_open(self, handle: SerialHandle, call: str) -> None:
        if handle.port is None or not handle.port.is_open:
            raise BackendError(SerialCode.PORT_CLOSED, f"{handle.port_name} is not open", call=call)

    def send(self, handle: SerialHandle, payload: bytes) -> None:
        self._check_open(handle, "write")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"{handle.port_name} TX: {_hex(payload)}")

        try:
            handle.port.write(payload)
            handle.port.flush()
        except SerialTimeoutException as e:
            raise BackendError(SerialCode.WRITE_TIMEOUT, str(e), call="write")
        except (SerialException, OSError) as e:
            raise BackendError(SerialCode.IO_ERROR, str(e), call="write")

    def _fill(self, handle: SerialHandle) -> None:
        self._check_open(handle, "read")
        try:
            waiting = handle.port.in_waiting
            if waiting:
                handle.buffer.extend(handle.port.read(waiting))
        except (SerialException, OSError) as e:
            raise BackendError(SerialCode.IO_ERROR, str(e), call="read")

    def receive(self, handle: SerialHandle, size: Optional[int] = None) -> Optional[bytes]:
        self._fill(handle)

        if size is not None:
            if len(handle.buffer) < size:
                return None
            frame = bytes(handle.buffer[:size])
            del handle.buffer[:size]
        else:
            frame = self._framing.split(handle.buffer)

        if frame is not None and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"{handle.port_name} RX: {_hex(frame)}")
        return frame

    def discard_input(self, handle: SerialHandle) -> None:
        self._check_open(handle, "discard")
        if handle.buffer:
            logger.debug(f"{handle.port_name}: discarding {_hex(handle.buffer)}")
        handle.buffer.clear()
        try:
            handle.port.reset_input_buffer()
        except (SerialException, OSError) as e:
            raise BackendError(SerialCode.IO_ERROR, str(e), call="discard")

    def _exchange(self, handle: SerialHandle, key: str, value: Any = None) -> bytes:
        """Send one query and wait up to io_timeout for its reply frame."""
        payload, size = self._framing.encode(key, value)

        # Stale bytes would be taken for the reply
        self.discard_input(handle)

        self.send(handle, payload)
        deadline = self._clock() + self._io_timeout

        while True:
            frame = self.receive(handle, size)
            if frame is not None:
                if self._framing.is_reply(frame):
                    return frame
                logger.debug(f"{handle.port_name}: skipping {frame!r} while waiting for {key}")
                continue
            if self._clock() >= deadline:
                raise BackendError(
                    SerialCode.READ_TIMEOUT,
                    f"no response to {key} within {self._io_timeout}s",
                    call="exchange",
                )
            self._sleep(0.005)

    def read_property(self, handle: SerialHandle, key: str) -> bytes:
        return self._exchange(handle, key)

    def write_property(self, handle: SerialHandle, key: str, value: Any = None) -> bytes:
        return self._exchange(handle, key, value)
