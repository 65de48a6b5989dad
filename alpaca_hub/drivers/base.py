"""
Device profile base class.

A profile describes, for one backend kind, how a device is hydrated, polled
and commanded. Profiles build Command objects; they never touch the wire.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from alpaca_hub.config.models import DeviceConfig, DeviceType
from alpaca_hub.core.state import Command, CommandClass, PropertySnapshot
from alpaca_hub.utils.exceptions import InvalidValueError, NotImplementedByDeviceError


@dataclass(frozen=True)
class HydrationRead:
    """One property read performed right after open."""
    key: str
    shape: Optional[str] = None
    required: bool = True


@dataclass(frozen=True)
class PeriodicPoll:
    """A status command re-armed by the queue."""
    command: Command
    interval: float
    moving_interval: Optional[float] = None


@dataclass(frozen=True)
class OpportunisticPoll:
    """A low-frequency poll sent only when the device is idle."""
    poll_class: str
    interval: float
    build: Callable[[], Command]


def as_number(value: Any, name: str = "value") -> float:
    """
    Coerce a request value to a finite number.

    Raises:
        InvalidValueError: Missing, non-numeric, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        raise InvalidValueError(f"{name} is required")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidValueError(f"{name} must be numeric, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise InvalidValueError(f"{name} must be finite, got {value!r}")
    return number


def as_bool(value: Any, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise InvalidValueError(f"{name} must be true or false, got {value!r}")


class DeviceProfile(ABC):
    """Per-backend-kind polling and command description."""

    backend_kind: str = ""
    device_type: DeviceType = DeviceType.FOCUSER
    default_manufacturer: str = ""
    default_model: str = ""

    # Result code reported when the configured device is not enumerated
    not_found_code: int = 0

    # Hardware stops on any serial activity: hold periodic polls while moving
    quiet_while_moving: bool = False
    # Declare motion finished after this long without motion data (0 = never)
    stall_timeout: float = 0.0
    # Target follows the reported position whenever the device is at rest
    target_follows_position: bool = False

    has_temperature: bool = False
    can_reverse: bool = False

    def __init__(self, config: DeviceConfig):
        self.config = config
        self.timing = config.timing

    @property
    def manufacturer(self) -> str:
        return self.config.manufacturer or self.default_manufacturer

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    def capabilities(self) -> dict:
        return {
            "has_temperature": self.has_temperature,
            "can_reverse": self.can_reverse,
        }

    @property
    def moving_interval(self) -> float:
        return self.timing.poll_interval_moving_ms / 1000.0

    @property
    def idle_interval(self) -> float:
        return self.timing.poll_interval_idle_ms / 1000.0

    @abstractmethod
    def hydration(self) -> List[HydrationRead]:
        pass

    @abstractmethod
    def periodic(self) -> List[PeriodicPoll]:
        pass

    def opportunistic(self) -> List[OpportunisticPoll]:
        return []

    @abstractmethod
    def validate_move(self, target: Any, snapshot: PropertySnapshot) -> Any:
        """
        Check and normalise a move target.

        Raises:
            InvalidValueError: Before any wire traffic.
        """
        pass

    @abstractmethod
    def build_move(self, target: Any, snapshot: PropertySnapshot) -> List[Command]:
        pass

    @abstractmethod
    def build_halt(self) -> Command:
        pass

    def build_write(self, key: str, value: Any, snapshot: PropertySnapshot) -> List[Command]:
        raise NotImplementedByDeviceError(f"{key} cannot be written on this device")

    def distance(self, target: Any, snapshot: PropertySnapshot) -> Optional[float]:
        """Distance from the current position, None if the position is unknown."""
        if snapshot.position is None:
            return None
        return target - snapshot.position

    def poll_command(self, name: str, **kwargs) -> Command:
        return Command(
            name=name,
            command_class=CommandClass.PERIODIC,
            timeout=self.timing.command_timeout_sec,
            **kwargs,
        )
