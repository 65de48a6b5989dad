"""
ZWO EAF focuser and CAA rotator profiles (vendor SDK backends).
"""

from typing import Any, List, Optional

from alpaca_hub.backends.codes import CaaCode, EafCode
from alpaca_hub.config.models import DeviceType
from alpaca_hub.core.state import Command, CommandKind, PropertySnapshot
from alpaca_hub.drivers.base import (
    DeviceProfile,
    HydrationRead,
    OpportunisticPoll,
    PeriodicPoll,
    as_bool,
    as_number,
)
from alpaca_hub.utils.exceptions import InvalidValueError, NotImplementedByDeviceError


STATUS_KEYS = ("position", "is_moving")


class _ZwoProfile(DeviceProfile):
    """Shared polling for the two ZWO SDKs."""

    default_manufacturer = "ZWO"
    has_temperature = True
    can_reverse = True

    def periodic(self) -> List[PeriodicPoll]:
        status = self.poll_command("status", kind=CommandKind.READ, keys=STATUS_KEYS)
        return [PeriodicPoll(status, self.idle_interval, self.moving_interval)]

    def opportunistic(self) -> List[OpportunisticPoll]:
        return [
            OpportunisticPoll(
                poll_class="temperature",
                interval=self.timing.temperature_interval_sec,
                build=lambda: self.poll_command(
                    "temperature",
                    kind=CommandKind.READ,
                    keys=("temperature",),
                    poll_class="temperature",
                ),
            )
        ]

    def build_halt(self) -> Command:
        return Command(
            name="halt",
            kind=CommandKind.WRITE,
            keys=("stop",),
            priority=True,
            timeout=self.timing.command_timeout_sec,
        )

    def _write(self, key: str, value: Any, **on_success) -> List[Command]:
        return [
            Command(
                name=f"set_{key}",
                kind=CommandKind.WRITE,
                keys=(key,),
                payload=value,
                timeout=self.timing.command_timeout_sec,
                on_success=on_success or {key: value},
            )
        ]


class EafProfile(_ZwoProfile):
    """ZWO EAF electronic focuser."""

    backend_kind = "zwo_eaf"
    device_type = DeviceType.FOCUSER
    default_model = "EAF"
    not_found_code = EafCode.REMOVED

    def hydration(self) -> List[HydrationRead]:
        return [
            HydrationRead("info"),
            HydrationRead("position"),
            HydrationRead("max_step", required=False),
            HydrationRead("backlash", required=False),
            HydrationRead("reverse", required=False),
            HydrationRead("temperature", required=False),
            HydrationRead("firmware_version", required=False),
        ]

    def _max_position(self, snapshot: PropertySnapshot) -> Optional[float]:
        if self.config.max_position is not None:
            return self.config.max_position
        return snapshot.max_step

    def validate_move(self, target: Any, snapshot: PropertySnapshot) -> int:
        value = as_number(target, "Position")
        if value != int(value):
            raise InvalidValueError(f"Position must be an integer, got {target!r}")
        position = int(value)

        minimum = self.config.min_position if self.config.min_position is not None else 0
        maximum = self._max_position(snapshot)
        if position < minimum or (maximum is not None and position > maximum):
            raise InvalidValueError(f"Position {position} outside {minimum}-{maximum}")

        if self.config.max_increment is not None and snapshot.position is not None:
            if abs(position - snapshot.position) > self.config.max_increment:
                raise InvalidValueError(
                    f"Move of {abs(position - snapshot.position)} steps exceeds MaxIncrement {self.config.max_increment}"
                )
        return position

    def build_move(self, target: int, snapshot: PropertySnapshot) -> List[Command]:
        return [
            Command(
                name="move",
                kind=CommandKind.WRITE,
                keys=("move",),
                payload=target,
                target=target,
                tolerance=self.config.position_tolerance or 0,
                timeout=self.timing.command_timeout_sec,
                on_success={"target_position": target, "is_moving": True},
            )
        ]

    def build_write(self, key: str, value: Any, snapshot: PropertySnapshot) -> List[Command]:
        if key == "reverse":
            return self._write("reverse", as_bool(value, "Reverse"))
        if key == "backlash":
            number = as_number(value, "Backlash")
            if number != int(number) or not 0 <= number <= 255:
                raise InvalidValueError(f"Backlash value must be between 0 and 255, got {value!r}")
            return self._write("backlash", int(number))
        if key == "max_step":
            number = as_number(value, "MaxStep")
            if number != int(number) or number < 1:
                raise InvalidValueError(f"MaxStep must be a positive integer, got {value!r}")
            return self._write("max_step", int(number), max_step=int(number), max_position=int(number))
        raise NotImplementedByDeviceError(f"{key} cannot be written on an EAF")


def normalize_angle(degrees: float) -> float:
    """Map any angle onto [0, 360)."""
    angle = degrees % 360.0
    # -1e-12 % 360 rounds to 360.0
    return 0.0 if angle >= 360.0 else angle


def angular_distance(a: float, b: float) -> float:
    """Shortest way round the circle between two angles, in degrees."""
    diff = abs(normalize_angle(a) - normalize_angle(b))
    return min(diff, 360.0 - diff)


class CaaProfile(_ZwoProfile):
    """ZWO CAA camera angle adjuster (rotator)."""

    backend_kind = "zwo_caa"
    device_type = DeviceType.ROTATOR
    default_model = "CAA"
    not_found_code = CaaCode.REMOVED
    target_follows_position = True

    # Targets closer than this are already reached
    DEFAULT_TOLERANCE = 0.1
    STEP_SIZE = 0.1

    def hydration(self) -> List[HydrationRead]:
        return [
            HydrationRead("info"),
            HydrationRead("position"),
            HydrationRead("max_position", required=False),
            HydrationRead("reverse", required=False),
            HydrationRead("temperature", required=False),
            HydrationRead("firmware_version", required=False),
        ]

    def validate_move(self, target: Any, snapshot: PropertySnapshot) -> float:
        angle = normalize_angle(as_number(target, "Position"))
        maximum = self.config.max_position if self.config.max_position is not None else snapshot.max_position
        if maximum is not None and angle > maximum:
            raise InvalidValueError(f"Angle {angle:.2f} exceeds the maximum of {maximum:.2f} degrees")
        return round(angle, 2)

    def distance(self, target: float, snapshot: PropertySnapshot) -> Optional[float]:
        if snapshot.position is None:
            return None
        return angular_distance(target, snapshot.position)

    def build_move(self, target: float, snapshot: PropertySnapshot) -> List[Command]:
        tolerance = self.config.position_tolerance
        return [
            Command(
                name="move",
                kind=CommandKind.WRITE,
                keys=("move",),
                payload=target,
                target=target,
                tolerance=self.DEFAULT_TOLERANCE if tolerance is None else tolerance,
                timeout=self.timing.command_timeout_sec,
                on_success={"target_position": target, "is_moving": True},
            )
        ]

    def build_write(self, key: str, value: Any, snapshot: PropertySnapshot) -> List[Command]:
        if key == "reverse":
            return self._write("reverse", as_bool(value, "Reverse"))
        if key == "max_position":
            number = as_number(value, "MaxDegree")
            if not 0 < number <= 360:
                raise InvalidValueError(f"Maximum angle must be in (0, 360], got {value!r}")
            return self._write("max_position", number)
        raise NotImplementedByDeviceError(f"{key} cannot be written on a CAA")
