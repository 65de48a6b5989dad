"""
Simulated ZWO SDK bindings (EAF focuser, CAA rotator).

The simulators expose the same C-named entry points as a real binding and
keep a process-wide handle table, like the vendor libraries. They support
hot-plug (unplug/replug reassigns device ids), error injection, and record
overlapping calls so tests can prove the adapter lock serializes access.
Motion is computed from an injectable clock, never from threads or sleeps.
"""

import functools
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from alpaca_hub.backends.codes import CaaCode, EafCode


logger = logging.getLogger(__name__)


@dataclass
class SimulatedUnit:
    """Virtual hardware state of one ZWO device."""

    serial: str
    name: str
    position: float
    maximum: float
    speed: float
    backlash: int = 0
    reverse: bool = False
    temperature: float = 18.5
    plugged: bool = True
    is_open: bool = False
    start_position: float = 0.0
    target: float = 0.0
    start_time: float = 0.0
    hand_control: bool = False

    def current(self, now: float) -> float:
        distance = self.target - self.start_position
        travelled = self.speed * max(0.0, now - self.start_time)
        if travelled >= abs(distance):
            return self.target
        return self.start_position + (travelled if distance > 0 else -travelled)

    def moving(self, now: float) -> bool:
        return self.current(now) != self.target

    def settle(self, now: float) -> None:
        self.position = self.current(now)
        self.start_position = self.position
        self.target = self.position
        self.start_time = now

    def move(self, target: float, now: float) -> None:
        self.settle(now)
        self.target = target


def sdk_call(method):
    """Wrap an entry point: overlap detection, latency and injected failures."""

    @functools.wraps(method)
    def wrapper(self, *args):
        with self._guard:
            self._active += 1
            self.calls += 1
            if self._active > 1:
                self.overlaps += 1
        try:
            if self.call_latency:
                time.sleep(self.call_latency)
            injected = self._take_injected(method.__name__)
            if injected is not None:
                return (injected,)
            return method(self, *args)
        finally:
            with self._guard:
                self._active -= 1

    return wrapper


class _SimulatedZwoSdk:
    """Handle table and hot-plug shared by the EAF and CAA simulators."""

    codes = EafCode
    default_name = "ZWO"
    default_maximum = 10000.0
    default_speed = 1000.0

    def __init__(self, clock: Callable[[], float] = time.monotonic, call_latency: float = 0.0):
        self._clock = clock
        self.call_latency = call_latency
        self._units: Dict[int, SimulatedUnit] = {}
        self._unplugged: Dict[str, SimulatedUnit] = {}
        self._next_id = 0
        self._guard = threading.Lock()
        self._active = 0
        self._injected: Dict[str, Deque[int]] = defaultdict(deque)
        self.calls = 0
        self.overlaps = 0

    # --- test controls -----------------------------------------------

    def add_device(
        self,
        serial: str,
        name: Optional[str] = None,
        position: float = 0.0,
        maximum: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> int:
        """Plug in a new unit; returns its device id."""
        unit = SimulatedUnit(
            serial=serial,
            name=name or self.default_name,
            position=position,
            maximum=self.default_maximum if maximum is None else maximum,
            speed=self.default_speed if speed is None else speed,
            start_position=position,
            target=position,
        )
        return self._plug(unit)

    def _plug(self, unit: SimulatedUnit) -> int:
        device_id = self._next_id
        self._next_id += 1
        unit.plugged = True
        unit.is_open = False
        self._units[device_id] = unit
        logger.info(f"[SIMULATOR] {unit.name} {unit.serial} plugged in as id {device_id}")
        return device_id

    def unit(self, serial: str) -> SimulatedUnit:
        for unit in self._units.values():
            if unit.serial == serial:
                return unit
        raise KeyError(serial)

    def unplug(self, serial: str) -> None:
        """Remove a unit; its id becomes invalid."""
        for device_id, unit in list(self._units.items()):
            if unit.serial == serial:
                unit.settle(self._clock())
                del self._units[device_id]
                unit.plugged = False
                logger.info(f"[SIMULATOR] {unit.name} {serial} unplugged")
                self._unplugged[serial] = unit
                return
        raise KeyError(serial)

    def replug(self, serial: str) -> int:
        """Plug a previously removed unit back in under a new id."""
        unit = self._unplugged.pop(serial)
        return self._plug(unit)

    def fail_next(self, call: str, code: int, times: int = 1) -> None:
        """Make the next `times` calls of an entry point return `code`."""
        self._injected[call].extend([int(code)] * times)

    def _take_injected(self, call: str) -> Optional[int]:
        with self._guard:
            queue = self._injected.get(call)
            if queue:
                return queue.popleft()
        return None

    # --- shared behaviour --------------------------------------------

    def _lookup(self, device_id: int, need_open: bool = True) -> Tuple[int, Optional[SimulatedUnit]]:
        unit = self._units.get(device_id)
        if unit is None:
            return self.codes.REMOVED, None
        if need_open and not unit.is_open:
            return self.codes.CLOSED, None
        return self.codes.SUCCESS, unit

    def _get_num(self):
        return (self.codes.SUCCESS, len(self._units))

    def _get_id(self, index: int):
        ids = sorted(self._units)
        if index < 0 or index >= len(ids):
            return (self.codes.INVALID_INDEX,)
        return (self.codes.SUCCESS, ids[index])

    def _get_property(self, device_id: int):
        code, unit = self._lookup(device_id, need_open=False)
        if unit is None:
            return (code,)
        return (code, {"ID": device_id, "Name": unit.name, "MaxStep": int(unit.maximum)})

    def _get_serial(self, device_id: int):
        code, unit = self._lookup(device_id, need_open=False)
        if unit is None:
            return (code,)
        return (code, unit.serial)

    def _open(self, device_id: int):
        code, unit = self._lookup(device_id, need_open=False)
        if unit is not None:
            unit.is_open = True
        return code

    def _close(self, device_id: int):
        code, unit = self._lookup(device_id, need_open=False)
        if unit is not None:
            unit.is_open = False
        return code

    def _position(self, device_id: int):
        code, unit = self._lookup(device_id)
        if unit is None:
            return (code,)
        return (code, unit.current(self._clock()))

    def _is_moving(self, device_id: int):
        code, unit = self._lookup(device_id)
        if unit is None:
            return (code,)
        return (code, unit.moving(self._clock()), unit.hand_control)

    def _stop(self, device_id: int):
        code, unit = self._lookup(device_id)
        if unit is not None:
            unit.settle(self._clock())
        return code

    def _temperature(self, device_id: int):
        code, unit = self._lookup(device_id)
        if unit is None:
            return (code,)
        return (code, unit.temperature)

    def _get_attr(self, device_id: int, attr: str):
        code, unit = self._lookup(device_id)
        if unit is None:
            return (code,)
        return (code, getattr(unit, attr))

    def _set_attr(self, device_id: int, attr: str, value):
        code, unit = self._lookup(device_id)
        if unit is not None:
            setattr(unit, attr, value)
        return code

    def _firmware(self, device_id: int):
        code, unit = self._lookup(device_id)
        if unit is None:
            return (code,)
        return (code, 1, 2, 0)


class SimulatedEafSdk(_SimulatedZwoSdk):
    """EAF entry points."""

    codes = EafCode
    default_name = "EAF"
    default_maximum = 60000.0

    @sdk_call
    def EAFGetNum(self):
        return self._get_num()

    @sdk_call
    def EAFGetID(self, index):
        return self._get_id(index)

    @sdk_call
    def EAFGetProperty(self, device_id):
        return self._get_property(device_id)

    @sdk_call
    def EAFGetSerialNumber(self, device_id):
        return self._get_serial(device_id)

    @sdk_call
    def EAFOpen(self, device_id):
        return self._open(device_id)

    @sdk_call
    def EAFClose(self, device_id):
        return self._close(device_id)

    @sdk_call
    def EAFGetPosition(self, device_id):
        code, *values = self._position(device_id)
        return (code, *[int(round(v)) for v in values])

    @sdk_call
    def EAFMove(self, device_id, step):
        code, unit = self._lookup(device_id)
        if unit is None:
            return code
        now = self._clock()
        if unit.moving(now):
            return EafCode.MOVING
        if step < 0 or step > unit.maximum:
            return EafCode.INVALID_VALUE
        unit.move(float(step), now)
        return EafCode.SUCCESS

    @sdk_call
    def EAFStop(self, device_id):
        return self._stop(device_id)

    @sdk_call
    def EAFIsMoving(self, device_id):
        return self._is_moving(device_id)

    @sdk_call
    def EAFGetTemp(self, device_id):
        return self._temperature(device_id)

    @sdk_call
    def EAFGetMaxStep(self, device_id):
        code, *values = self._get_attr(device_id, "maximum")
        return (code, *[int(v) for v in values])

    @sdk_call
    def EAFSetMaxStep(self, device_id, value):
        return self._set_attr(device_id, "maximum", float(value))

    @sdk_call
    def EAFGetBacklash(self, device_id):
        return self._get_attr(device_id, "backlash")

    @sdk_call
    def EAFSetBacklash(self, device_id, value):
        if not 0 <= value <= 255:
            return EafCode.INVALID_VALUE
        return self._set_attr(device_id, "backlash", int(value))

    @sdk_call
    def EAFGetReverse(self, device_id):
        return self._get_attr(device_id, "reverse")

    @sdk_call
    def EAFSetReverse(self, device_id, value):
        return self._set_attr(device_id, "reverse", bool(value))

    @sdk_call
    def EAFGetFirmwareVersion(self, device_id):
        return self._firmware(device_id)


class SimulatedCaaSdk(_SimulatedZwoSdk):
    """CAA entry points. Positions are degrees."""

    codes = CaaCode
    default_name = "CAA"
    default_maximum = 360.0
    default_speed = 10.0

    @sdk_call
    def CAAGetNum(self):
        return self._get_num()

    @sdk_call
    def CAAGetID(self, index):
        return self._get_id(index)

    @sdk_call
    def CAAGetProperty(self, device_id):
        return self._get_property(device_id)

    @sdk_call
    def CAAGetSerialNumber(self, device_id):
        return self._get_serial(device_id)

    @sdk_call
    def CAAOpen(self, device_id):
        return self._open(device_id)

    @sdk_call
    def CAAClose(self, device_id):
        return self._close(device_id)

    @sdk_call
    def CAAGetDegree(self, device_id):
        return self._position(device_id)

    @sdk_call
    def CAAMoveTo(self, device_id, degrees):
        code, unit = self._lookup(device_id)
        if unit is None:
            return code
        now = self._clock()
        if unit.moving(now):
            return CaaCode.MOVING
        if degrees < 0 or degrees > 360:
            return CaaCode.OUT_RANGE
        if degrees > unit.maximum:
            return CaaCode.OVER_LIMIT
        unit.move(float(degrees), now)
        return CaaCode.SUCCESS

    @sdk_call
    def CAAStop(self, device_id):
        return self._stop(device_id)

    @sdk_call
    def CAAIsMoving(self, device_id):
        return self._is_moving(device_id)

    @sdk_call
    def CAAGetTemp(self, device_id):
        return self._temperature(device_id)

    @sdk_call
    def CAAGetMaxDegree(self, device_id):
        return self._get_attr(device_id, "maximum")

    @sdk_call
    def CAASetMaxDegree(self, device_id, value):
        if not 0 < value <= 360:
            return CaaCode.OUT_RANGE
        return self._set_attr(device_id, "maximum", float(value))

    @sdk_call
    def CAAGetReverse(self, device_id):
        return self._get_attr(device_id, "reverse")

    @sdk_call
    def CAASetReverse(self, device_id, value):
        return self._set_attr(device_id, "reverse", bool(value))

    @sdk_call
    def CAAGetFirmwareVersion(self, device_id):
        return self._firmware(device_id)
