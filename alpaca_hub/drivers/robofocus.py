"""
Robofocus focuser profile (RS-232, 9-byte checksummed packets).

Architecture aligned with the INDI driver (robofocus.cpp): any serial activity
during movement stops the motor, so nothing is polled while it moves. A move
is fire-and-forget; the motion characters and the final FD packet arrive
unsolicited and drive the moving flag and the position.
"""

import re
from typing import Any, List

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.config.models import DeviceType
from alpaca_hub.core.state import Command, CommandClass, CommandKind, PropertySnapshot
from alpaca_hub.drivers.base import (
    DeviceProfile,
    HydrationRead,
    OpportunisticPoll,
    PeriodicPoll,
    as_number,
)
from alpaca_hub.protocol.robofocus import MAX_VALUE, encode_backlash, encode_command
from alpaca_hub.utils.exceptions import (
    HardwareBusyError,
    InvalidValueError,
    NotImplementedByDeviceError,
)


FD_REPLY = re.compile(rb"^FD")
FT_REPLY = re.compile(rb"^FT")
FB_REPLY = re.compile(rb"^FB")
FL_REPLY = re.compile(rb"^FL")

# Checksum errors are retried, timeouts are not
QUERY_RETRIES = 2

# FL value range accepted by firmware 3.x
MAX_TRAVEL = 65535


class RobofocusProfile(DeviceProfile):
    """Robofocus electronic focuser."""

    backend_kind = "robofocus"
    device_type = DeviceType.FOCUSER
    default_manufacturer = "Technical Innovations"
    default_model = "Robofocus"
    not_found_code = SerialCode.PORT_NOT_FOUND

    quiet_while_moving = True
    # No async chars for 3s while moving
    stall_timeout = 3.0
    has_temperature = True

    def hydration(self) -> List[HydrationRead]:
        # FV doubles as the handshake: a wrong device fails the open
        return [
            HydrationRead("FV"),
            HydrationRead("FG"),
            HydrationRead("FL", required=False),
            HydrationRead("FB", required=False),
            HydrationRead("FT", required=False),
        ]

    def _query(self, cmd: str, expect, value: int = 0, **kwargs) -> Command:
        return Command(
            name=cmd,
            kind=CommandKind.EXCHANGE,
            payload=encode_command(cmd, value),
            expect=expect,
            retries=kwargs.pop("retries", QUERY_RETRIES),
            timeout=self.timing.command_timeout_sec,
            **kwargs,
        )

    def periodic(self) -> List[PeriodicPoll]:
        position = self._query("FG", FD_REPLY, command_class=CommandClass.PERIODIC)
        return [PeriodicPoll(position, self.idle_interval)]

    def opportunistic(self) -> List[OpportunisticPoll]:
        return [
            OpportunisticPoll(
                poll_class="temperature",
                interval=self.timing.temperature_interval_sec,
                build=lambda: self._query(
                    "FT", FT_REPLY, poll_class="temperature", command_class=CommandClass.PERIODIC
                ),
            )
        ]

    def _max_position(self, snapshot: PropertySnapshot) -> float:
        if self.config.max_position is not None:
            return self.config.max_position
        if snapshot.max_step:
            return snapshot.max_step
        return MAX_TRAVEL

    def validate_move(self, target: Any, snapshot: PropertySnapshot) -> int:
        value = as_number(target, "Position")
        if value != int(value):
            raise InvalidValueError(f"Position must be an integer, got {target!r}")
        position = int(value)

        # FG000000 is the position query, so 0 cannot be a target
        minimum = max(1, int(self.config.min_position or 0))
        maximum = self._max_position(snapshot)
        if position < minimum or position > maximum:
            raise InvalidValueError(f"Position {position} outside {minimum}-{int(maximum)}")

        if self.config.max_increment is not None and snapshot.position is not None:
            if abs(position - snapshot.position) > self.config.max_increment:
                raise InvalidValueError(
                    f"Move of {abs(position - snapshot.position)} steps exceeds MaxIncrement {self.config.max_increment}"
                )

        if snapshot.is_moving:
            raise HardwareBusyError("Cannot start a move while the focuser is moving")
        return position

    def build_move(self, target: int, snapshot: PropertySnapshot) -> List[Command]:
        return [
            Command(
                name="move",
                kind=CommandKind.SEND,
                payload=encode_command("FG", target),
                target=target,
                tolerance=self.config.position_tolerance or 0,
                timeout=self.timing.move_timeout_sec,
                on_success={"target_position": target, "is_moving": True},
            )
        ]

    def build_halt(self) -> Command:
        # The final FD packet reports where the motor stopped
        return Command(
            name="halt",
            kind=CommandKind.SEND,
            payload=encode_command("FQ", 0),
            priority=True,
            timeout=self.timing.command_timeout_sec,
        )

    def build_write(self, key: str, value: Any, snapshot: PropertySnapshot) -> List[Command]:
        if snapshot.is_moving:
            raise HardwareBusyError(f"Cannot write {key} while the focuser is moving")

        if key == "backlash":
            number = as_number(value, "Backlash")
            if number != int(number) or not -255 <= number <= 255:
                raise InvalidValueError(f"Backlash must be -255 to +255, got {value!r}")
            return [self._query("FB", FB_REPLY, encode_backlash(int(number)), retries=0)]

        if key == "max_step":
            number = as_number(value, "MaxStep")
            if number != int(number) or not 1 <= number <= min(MAX_TRAVEL, MAX_VALUE):
                raise InvalidValueError(f"MaxStep must be 1-{MAX_TRAVEL}, got {value!r}")
            return [self._query("FL", FL_REPLY, int(number), retries=0)]

        raise NotImplementedByDeviceError(f"{key} cannot be written on a Robofocus")
