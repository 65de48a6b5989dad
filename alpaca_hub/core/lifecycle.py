"""
Connection lifecycle manager.

Owns every transition of a device's ConnectionState. Opening is driven by
the tick: at most one enumerate+open per tick while the device is not open.
No backend error escapes: a failed open leaves the device DEGRADED and the
tick simply retries later.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional

from alpaca_hub.backends.interface import BackendInfo, BackendSession
from alpaca_hub.core import parser
from alpaca_hub.core.classifier import classify
from alpaca_hub.core.events import EventCategory, EventSink
from alpaca_hub.core.state import (
    CommandClass,
    CommandOutcome,
    ConnectionAttempt,
    ConnectionState,
    PropertyDelta,
)
from alpaca_hub.utils.exceptions import BackendError, HardwareBusyError, ParseError

if TYPE_CHECKING:
    from alpaca_hub.core.device import Device


logger = logging.getLogger(__name__)

# Result code recorded for failures that carry no backend code (bad hydration reply)
NO_CODE = -1


class ConnectionManager:
    """Opens, hydrates and invalidates device connections."""

    def __init__(self, events: EventSink):
        self._events = events

    def ensure_open(self, device: "Device") -> bool:
        """
        Make sure the device is open.

        Returns:
            True if the device is open. While OPEN this performs no backend I/O.
        """
        if device.state == ConnectionState.OPEN:
            return True
        if not device.enabled:
            return False

        previous = device.state
        device.state = ConnectionState.OPENING
        backend_id: Any = None

        try:
            info = self._resolve(device, device.adapter.enumerate())
            backend_id = info.backend_id
            session = device.adapter.open(backend_id)
        except BackendError as e:
            self._open_failed(device, previous, backend_id, e.code, str(e))
            return False

        try:
            delta = self._hydrate(device, session)
        except BackendError as e:
            self._close_quietly(device, session)
            self._open_failed(device, previous, backend_id, e.code, f"hydration failed: {e}")
            return False
        except (ParseError, HardwareBusyError) as e:
            self._close_quietly(device, session)
            self._open_failed(device, previous, backend_id, NO_CODE, f"hydration failed: {e}")
            return False

        device.session = session
        device.backend_info = info
        device.queue.clear_in_flight()
        device.stage(delta)
        device.state = ConnectionState.OPEN
        device.open_failures = 0
        device.attempts.append(ConnectionAttempt(backend_id, 0, device.clock(), "opened"))

        self._events.notify(
            device.name,
            EventCategory.CONNECTED,
            0,
            f"{device.adapter.kind} id {backend_id} ({info.label or 'unnamed'})",
        )
        return True

    def _resolve(self, device: "Device", infos: list) -> BackendInfo:
        """
        Pick the backend handle for a device.

        A configured match key must be found; without one the enumeration
        index is used.
        """
        if device.match_key:
            for info in infos:
                if info.matches(device.match_key):
                    return info
            raise BackendError(
                device.profile.not_found_code,
                f"{device.match_key} not found among {len(infos)} device(s)",
                call="enumerate",
            )

        index = device.config.index
        for info in infos:
            if info.index == index:
                return info
        raise BackendError(
            device.profile.not_found_code,
            f"no device at index {index} ({len(infos)} enumerated)",
            call="enumerate",
        )

    def _hydrate(self, device: "Device", session: BackendSession) -> PropertyDelta:
        delta: PropertyDelta = {}
        kind = session.kind
        for read in device.profile.hydration():
            try:
                value = session.read_property(read.key)
                payload = value if isinstance(value, (bytes, bytearray)) else {read.key: value}
                delta.update(parser.parse(kind, payload, read.shape))
            except BackendError as e:
                if read.required or classify(kind, e.code).is_fatal:
                    raise
                logger.info(f"{device.name}: optional read {read.key} failed: {e}")
            except (ParseError, HardwareBusyError) as e:
                if read.required:
                    raise
                logger.info(f"{device.name}: optional read {read.key} unreadable: {e}")
        logger.debug(f"{device.name}: hydrated {sorted(delta)}")
        return delta

    def _open_failed(
        self,
        device: "Device",
        previous: ConnectionState,
        backend_id: Any,
        code: int,
        message: str,
    ) -> None:
        device.state = ConnectionState.DEGRADED
        device.open_failures += 1
        device.attempts.append(ConnectionAttempt(backend_id, code, device.clock(), message))

        if device.open_failures == 1:
            self._events.notify(device.name, EventCategory.OPEN_FAILED, code, message)
        else:
            logger.debug(
                f"{device.name}: open attempt {device.open_failures} failed (code {code}): {message}"
            )

    def _close_quietly(self, device: "Device", session: Optional[BackendSession]) -> None:
        if session is None:
            return
        try:
            session.close()
        except BackendError as e:
            logger.debug(f"{device.name}: close failed: {e}")

    def invalidate(self, device: "Device", reason: str = "connection lost", code: Optional[int] = None) -> None:
        """
        Drop the connection after a fatal result.

        The snapshot is left untouched; queued and in-flight commands resolve
        CONNECTION_LOST.
        """
        session = device.session
        device.session = None
        self._close_quietly(device, session)

        was_open = device.state == ConnectionState.OPEN
        device.state = ConnectionState.CLOSED
        lost = device.queue.fail_all(CommandOutcome.CONNECTION_LOST, reason)

        if was_open:
            self._events.notify(device.name, EventCategory.DISCONNECTED, code, reason)
        for command in lost:
            if command.command_class == CommandClass.ONE_SHOT:
                self._events.notify(
                    device.name,
                    EventCategory.COMMAND_FAILED,
                    code,
                    f"{command.name}: {command.outcome.value} {reason}",
                )

    def set_enabled(self, device: "Device", enabled: bool) -> None:
        """Enable (reopen on next tick) or disable (close, never reopen) a device."""
        if enabled == device.enabled:
            return
        device.enabled = enabled
        if enabled:
            device.open_failures = 0
            self._events.notify(device.name, EventCategory.ENABLED, None, "connection requested")
        else:
            self.invalidate(device, "disconnected by client")
            self._events.notify(device.name, EventCategory.DISABLED, None, "disconnected by client")
