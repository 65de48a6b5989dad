"""
iOptron equatorial mount profile (RS-232, protocol V3).
"""

import math
import re
from typing import Any, List, Optional, Tuple

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.config.models import DeviceType
from alpaca_hub.core.state import Command, CommandKind, PropertySnapshot
from alpaca_hub.drivers.base import DeviceProfile, HydrationRead, PeriodicPoll, as_bool, as_number
from alpaca_hub.protocol import ioptron
from alpaca_hub.utils.exceptions import InvalidValueError, NotImplementedByDeviceError


ACK = re.compile(rb"^[01]$")
GEP_REPLY = re.compile(rb"^[+-]\d{19}#$")
GLS_REPLY = re.compile(rb"^[+-]\d{22}#$")

# One arc-second
DEFAULT_SLEW_TOLERANCE = 1.0 / 3600.0


def separation(ra1: float, dec1: float, ra2: float, dec2: float) -> float:
    """Great-circle separation in degrees between two RA (hours) / Dec (degrees) points."""
    a1, d1 = math.radians(ra1 * 15.0), math.radians(dec1)
    a2, d2 = math.radians(ra2 * 15.0), math.radians(dec2)
    # Haversine keeps precision for tiny separations
    h = (
        math.sin((d2 - d1) / 2) ** 2
        + math.cos(d1) * math.cos(d2) * math.sin((a2 - a1) / 2) ** 2
    )
    return math.degrees(2 * math.asin(min(1.0, math.sqrt(h))))


class IoptronProfile(DeviceProfile):
    """iOptron GEM/CEM mounts."""

    backend_kind = "ioptron"
    device_type = DeviceType.TELESCOPE
    default_manufacturer = "iOptron"
    default_model = "iOptron mount"
    not_found_code = SerialCode.PORT_NOT_FOUND

    def hydration(self) -> List[HydrationRead]:
        return [
            HydrationRead(":MountInfo#", "mount_info", required=False),
            HydrationRead(":FW1#", "firmware", required=False),
            HydrationRead(":GLS#", "gls"),
            HydrationRead(":GEP#", "gep"),
        ]

    def _exchange(self, command: str, shape: str, expect, **kwargs) -> Command:
        return Command(
            name=command,
            kind=CommandKind.EXCHANGE,
            payload=command.encode("ascii"),
            shape=shape,
            expect=expect,
            reply_size=ioptron.reply_size(command),
            timeout=kwargs.pop("timeout", self.timing.command_timeout_sec),
            **kwargs,
        )

    def _ack(self, command: str, **kwargs) -> Command:
        return self._exchange(command, "ack", ACK, **kwargs)

    def periodic(self) -> List[PeriodicPoll]:
        position = self.poll_command(
            ":GEP#",
            kind=CommandKind.EXCHANGE,
            payload=b":GEP#",
            shape="gep",
            expect=GEP_REPLY,
        )
        status = self.poll_command(
            ":GLS#",
            kind=CommandKind.EXCHANGE,
            payload=b":GLS#",
            shape="gls",
            expect=GLS_REPLY,
        )
        return [
            PeriodicPoll(position, self.idle_interval, self.moving_interval),
            PeriodicPoll(status, self.idle_interval, self.moving_interval),
        ]

    def validate_move(self, target: Any, snapshot: PropertySnapshot) -> Tuple[float, float]:
        if not isinstance(target, (tuple, list)) or len(target) != 2:
            raise InvalidValueError(f"Slew target must be (RightAscension, Declination), got {target!r}")
        ra = as_number(target[0], "RightAscension")
        dec = as_number(target[1], "Declination")
        if not 0.0 <= ra < 24.0:
            raise InvalidValueError(f"RightAscension must be 0-24 hours, got {ra}")
        if not -90.0 <= dec <= 90.0:
            raise InvalidValueError(f"Declination must be -90 to +90 degrees, got {dec}")
        if snapshot.at_park:
            raise InvalidValueError("Mount is parked")
        return ra, dec

    def distance(self, target: Tuple[float, float], snapshot: PropertySnapshot) -> Optional[float]:
        if snapshot.right_ascension is None or snapshot.declination is None:
            return None
        return separation(target[0], target[1], snapshot.right_ascension, snapshot.declination)

    def build_move(self, target: Tuple[float, float], snapshot: PropertySnapshot) -> List[Command]:
        ra, dec = target
        tolerance = self.config.position_tolerance
        return [
            self._ack(ioptron.set_ra_command(ra)),
            self._ack(ioptron.set_dec_command(dec)),
            self._ack(
                ":MS1#",
                target=target,
                tolerance=DEFAULT_SLEW_TOLERANCE if tolerance is None else tolerance,
                on_success={"slewing": True, "is_moving": True},
            ),
        ]

    def build_halt(self) -> Command:
        return self._ack(":Q#", priority=True, on_success={"slewing": False, "is_moving": False})

    def build_write(self, key: str, value: Any, snapshot: PropertySnapshot) -> List[Command]:
        if key == "tracking":
            enabled = as_bool(value, "Tracking")
            return [self._ack(":ST1#" if enabled else ":ST0#", on_success={"tracking": enabled})]
        if key == "park":
            if as_bool(value, "Park"):
                return [self._ack(":MP1#", on_success={"slewing": True, "is_moving": True})]
            return [self._ack(":MP0#", on_success={"at_park": False})]
        if key == "home":
            return [self._ack(":MH#", on_success={"slewing": True, "is_moving": True})]
        raise NotImplementedByDeviceError(f"{key} cannot be written on an iOptron mount")
