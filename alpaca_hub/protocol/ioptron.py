"""
iOptron RS-232 command language (protocol V3).

Queries are ':'-prefixed and '#'-terminated. Get commands answer with a
'#'-terminated frame; set and motion commands answer with a single '1'
(accepted) or '0' (rejected) and no terminator. Angles travel as integers
in units of 0.01 arc-second.
"""

from typing import Any, Optional, Tuple

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.protocol.framing import Framing
from alpaca_hub.utils.exceptions import BackendError


TERMINATOR = b"#"

# 0.01 arc-second units
UNITS_PER_DEGREE = 360000
UNITS_PER_HOUR = UNITS_PER_DEGREE * 15

GEP_LENGTH = 21   # sign + 8 dec + 9 ra + pier + pointing + '#'
GLS_LENGTH = 24   # sign + 8 lon + 8 lat + 6 status digits + '#'

# GLS system status digit
STATUS_STOPPED = 0
STATUS_TRACKING = 1
STATUS_SLEWING = 2
STATUS_GUIDING = 3
STATUS_FLIPPING = 4
STATUS_TRACKING_PEC = 5
STATUS_PARKED = 6
STATUS_HOME = 7

# GEP pier digit -> ASCOM PierSide (pierEast=0, pierWest=1, pierUnknown=-1)
PIER_SIDES = {0: 0, 1: 1, 2: -1}

MOUNT_MODELS = {
    "0010": "Cube II EQ",
    "0011": "SmartEQ Pro+",
    "0025": "CEM25",
    "0026": "CEM25-EC",
    "0028": "GEM28",
    "0029": "GEM28-EC",
    "0030": "iEQ30 Pro",
    "0040": "CEM40",
    "0041": "CEM40-EC",
    "0043": "GEM45",
    "0044": "GEM45-EC",
    "0060": "CEM60",
    "0061": "CEM60-EC",
    "0070": "CEM70",
    "0071": "CEM70-EC",
    "0120": "CEM120",
    "0121": "CEM120-EC",
    "0122": "CEM120-EC2",
}

_TERMINATED_PREFIXES = (":G", ":FW", ":MountInfo", ":V")


def reply_size(command: str) -> Optional[int]:
    """
    Fixed reply size of a command.

    Returns:
        1 for '1'/'0' acknowledged commands, None for '#'-terminated replies.
    """
    if command.startswith(_TERMINATED_PREFIXES):
        return None
    return 1


def set_ra_command(hours: float) -> str:
    """':SRA' + 9 digits, target right ascension in 0.01 arc-second."""
    value = int(round((hours % 24.0) * UNITS_PER_HOUR)) % (24 * UNITS_PER_HOUR)
    return f":SRA{value:09d}#"


def set_dec_command(degrees: float) -> str:
    """':Sd' + sign + 8 digits, target declination in 0.01 arc-second."""
    if degrees < -90.0 or degrees > 90.0:
        raise ValueError(f"Declination must be -90 to +90, got {degrees}")
    sign = "-" if degrees < 0 else "+"
    return f":Sd{sign}{int(round(abs(degrees) * UNITS_PER_DEGREE)):08d}#"


def encode_gep(ra_hours: float, dec_degrees: float, pier: int = 0, pointing: int = 1) -> bytes:
    """Reference encoder for the ':GEP#' reply."""
    sign = "-" if dec_degrees < 0 else "+"
    dec = int(round(abs(dec_degrees) * UNITS_PER_DEGREE))
    ra = int(round((ra_hours % 24.0) * UNITS_PER_HOUR)) % (24 * UNITS_PER_HOUR)
    return f"{sign}{dec:08d}{ra:09d}{pier}{pointing}#".encode("ascii")


def encode_gls(
    longitude: float,
    latitude: float,
    status: int,
    gps: int = 1,
    tracking_rate: int = 0,
    speed: int = 9,
    time_source: int = 1,
    hemisphere: int = 1,
) -> bytes:
    """Reference encoder for the ':GLS#' reply. Latitude travels offset by +90 degrees."""
    sign = "-" if longitude < 0 else "+"
    lon = int(round(abs(longitude) * UNITS_PER_DEGREE))
    lat = int(round((latitude + 90.0) * UNITS_PER_DEGREE))
    return (
        f"{sign}{lon:08d}{lat:08d}"
        f"{gps}{status}{tracking_rate}{speed}{time_source}{hemisphere}#"
    ).encode("ascii")


def format_hms(hours: float) -> bytes:
    """Reference encoder for LX200-style 'HH:MM:SS#'."""
    total = int(round((hours % 24.0) * 3600)) % 86400
    return f"{total // 3600:02d}:{total // 60 % 60:02d}:{total % 60:02d}#".encode("ascii")


def format_dms(degrees: float) -> bytes:
    """Reference encoder for LX200-style 'sDD*MM:SS#'."""
    sign = "-" if degrees < 0 else "+"
    total = int(round(abs(degrees) * 3600))
    return f"{sign}{total // 3600:02d}*{total // 60 % 60:02d}:{total % 60:02d}#".encode("ascii")


class IoptronFraming(Framing):
    """'#'-terminated frames; single-byte acknowledgements use a fixed reply size."""

    def split(self, buffer: bytearray) -> Optional[bytes]:
        idx = buffer.find(TERMINATOR)
        if idx < 0:
            if len(buffer) > self.max_buffer:
                garbage = bytes(buffer)
                buffer.clear()
                raise BackendError(
                    SerialCode.BAD_FRAME,
                    f"no terminator in {len(garbage)} bytes",
                    call="receive",
                )
            return None
        frame = bytes(buffer[: idx + 1])
        del buffer[: idx + 1]
        return frame

    def encode(self, key: str, value: Any = None) -> Tuple[bytes, Optional[int]]:
        if not key.startswith(":") or not key.endswith("#"):
            raise BackendError(SerialCode.UNKNOWN_PROPERTY, f"not an iOptron command: {key!r}")
        return key.encode("ascii"), reply_size(key)
