"""
Response parser.

Decodes backend payloads into property deltas. SDK payloads are dicts of
typed values; serial payloads are raw frames whose layout is selected by the
command's expected shape. The parser never touches a snapshot and never
indexes past the end of a frame: every layout is length-checked first.
"""

import re
from typing import Any, Callable, Dict, Optional

from alpaca_hub.core.state import PropertyDelta
from alpaca_hub.protocol import ioptron, robofocus
from alpaca_hub.utils.exceptions import HardwareBusyError, ParseError


# Readings below this come from the SDK's "no sensor" sentinel (-273)
_NO_SENSOR = -200.0


def _number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"{key}: expected a number, got {value!r}")
    return value


def _parse_sdk(payload: Dict[str, Any], degrees: bool) -> PropertyDelta:
    if not isinstance(payload, dict):
        raise ParseError(f"SDK payload must be a mapping, got {type(payload).__name__}")

    delta: PropertyDelta = {}
    for key, value in payload.items():
        if key == "position":
            position = _number(key, value)
            if degrees:
                delta["position"] = round(float(position), 2)
                delta["mechanical_position"] = delta["position"]
            else:
                delta["position"] = int(position)
        elif key == "is_moving":
            # IsMoving returns (moving, hand_control)
            if isinstance(value, tuple):
                if len(value) != 2:
                    raise ParseError(f"is_moving: expected (moving, hand_control), got {value!r}")
                delta["is_moving"] = bool(value[0])
                delta["hand_control"] = bool(value[1])
            else:
                delta["is_moving"] = bool(value)
        elif key == "temperature":
            temperature = float(_number(key, value))
            if temperature > _NO_SENSOR:
                delta["temperature"] = round(temperature, 1)
        elif key == "max_step":
            delta["max_step"] = int(_number(key, value))
            delta["max_position"] = delta["max_step"]
        elif key == "max_position":
            delta["max_position"] = float(_number(key, value))
        elif key == "backlash":
            delta["backlash"] = int(_number(key, value))
        elif key == "reverse":
            delta["reverse"] = bool(value)
        elif key == "firmware_version":
            delta["firmware_version"] = _sdk_firmware(value)
        elif key == "info":
            if not isinstance(value, dict):
                raise ParseError(f"info: expected a mapping, got {value!r}")
            if "Name" in value:
                delta["model_name"] = str(value["Name"])
            if "MaxStep" in value:
                delta["max_step"] = int(_number("MaxStep", value["MaxStep"]))
        else:
            raise ParseError(f"Unknown SDK property {key!r}")
    return delta


def _sdk_firmware(value: Any) -> str:
    # GetFirmwareVersion returns (major, minor, build)
    if isinstance(value, tuple):
        return ".".join(str(int(v)) for v in value)
    return str(value)


def _ascii(frame: bytes) -> str:
    if not isinstance(frame, (bytes, bytearray)):
        raise ParseError(f"Expected a byte frame, got {type(frame).__name__}")
    try:
        return bytes(frame).decode("ascii")
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid ASCII in frame: {e}") from e


def _terminated(frame: bytes, length: Optional[int] = None) -> str:
    """Validate the '#' terminator and exact length, return the body."""
    text = _ascii(frame)
    if not text.endswith("#"):
        raise ParseError(f"Unterminated frame: {text!r}")
    if length is not None and len(text) != length:
        raise ParseError(f"Expected {length} bytes, got {len(text)}: {text!r}")
    return text[:-1]


def _digits(text: str, start: int, end: int) -> int:
    chunk = text[start:end]
    if len(chunk) != end - start or not chunk.isdigit():
        raise ParseError(f"Expected {end - start} digits at {start}, got {chunk!r}")
    return int(chunk)


def _sign(char: str) -> int:
    if char == "+":
        return 1
    if char == "-":
        return -1
    raise ParseError(f"Expected sign, got {char!r}")


def parse_gep(frame: bytes) -> PropertyDelta:
    """':GEP#' -> sign, 8 dec digits, 9 RA digits (0.01 arc-second), pier, pointing."""
    body = _terminated(frame, ioptron.GEP_LENGTH)
    sign = _sign(body[0])
    dec = _digits(body, 1, 9)
    ra = _digits(body, 9, 18)
    pier = _digits(body, 18, 19)
    pointing = _digits(body, 19, 20)
    if dec > 90 * ioptron.UNITS_PER_DEGREE or ra >= 24 * ioptron.UNITS_PER_HOUR:
        raise ParseError(f"GEP position out of range: {body!r}")
    if pier not in ioptron.PIER_SIDES or pointing not in (0, 1):
        raise ParseError(f"GEP pier/pointing flags out of range: {body!r}")
    return {
        "declination": sign * dec / ioptron.UNITS_PER_DEGREE,
        "right_ascension": ra / ioptron.UNITS_PER_HOUR,
        "side_of_pier": ioptron.PIER_SIDES[pier],
    }


def parse_gls(frame: bytes) -> PropertyDelta:
    """':GLS#' -> longitude, latitude (+90 offset) and the status digits."""
    body = _terminated(frame, ioptron.GLS_LENGTH)
    sign = _sign(body[0])
    lon = _digits(body, 1, 9)
    lat = _digits(body, 9, 17)
    status = _digits(body, 18, 19)
    slewing = status in (ioptron.STATUS_SLEWING, ioptron.STATUS_FLIPPING)
    return {
        "longitude": sign * lon / ioptron.UNITS_PER_DEGREE,
        "latitude": lat / ioptron.UNITS_PER_DEGREE - 90.0,
        "tracking": status in (
            ioptron.STATUS_TRACKING, ioptron.STATUS_GUIDING, ioptron.STATUS_TRACKING_PEC
        ),
        "slewing": slewing,
        "is_moving": slewing,
        "at_park": status == ioptron.STATUS_PARKED,
        "at_home": status == ioptron.STATUS_HOME,
    }


_HMS = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2})|\.(\d))$")
_DMS = re.compile(r"^([+-])(\d{2,3})[*:](\d{2})(?::(\d{2}))?$")


def sexagesimal_hours(frame: bytes) -> float:
    """'HH:MM:SS#' (or low-precision 'HH:MM.T#') -> hours."""
    body = _terminated(frame)
    match = _HMS.match(body)
    if match is None:
        raise ParseError(f"Not an HH:MM:SS value: {body!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if match.group(3) is not None:
        seconds = int(match.group(3))
    else:
        seconds = int(match.group(4)) * 6
    if hours >= 24 or minutes >= 60 or seconds >= 60:
        raise ParseError(f"HH:MM:SS value out of range: {body!r}")
    return hours + minutes / 60.0 + seconds / 3600.0


def sexagesimal_degrees(frame: bytes) -> float:
    """'sDD*MM:SS#' (or low-precision 'sDD*MM#') declination -> degrees."""
    body = _terminated(frame)
    match = _DMS.match(body)
    if match is None:
        raise ParseError(f"Not an sDD*MM:SS value: {body!r}")
    degrees, minutes = int(match.group(2)), int(match.group(3))
    seconds = int(match.group(4) or 0)
    value = degrees + minutes / 60.0 + seconds / 3600.0
    if minutes >= 60 or seconds >= 60 or value > 90.0:
        raise ParseError(f"sDD*MM:SS value out of range: {body!r}")
    return _sign(match.group(1)) * value


def parse_ack(frame: bytes) -> PropertyDelta:
    """'1' accepted, '0' rejected by the mount."""
    text = _ascii(frame)
    if text == "1":
        return {}
    if text == "0":
        raise HardwareBusyError("Mount rejected the command")
    raise ParseError(f"Expected '1' or '0', got {text!r}")


def parse_firmware(frame: bytes) -> PropertyDelta:
    """':FW1#' -> 'YYMMDDYYMMDD#' (mainboard and hand controller dates)."""
    body = _terminated(frame, 13)
    _digits(body, 0, 12)
    return {"firmware_version": f"{body[:6]}/{body[6:]}"}


def parse_mount_info(frame: bytes) -> PropertyDelta:
    body = _terminated(frame, 5)
    _digits(body, 0, 4)
    return {"model_name": ioptron.MOUNT_MODELS.get(body, f"iOptron {body}")}


IOPTRON_SHAPES: Dict[str, Callable[[bytes], PropertyDelta]] = {
    "gep": parse_gep,
    "gls": parse_gls,
    "ack": parse_ack,
    "firmware": parse_firmware,
    "mount_info": parse_mount_info,
    "ra_hms": lambda frame: {"right_ascension": sexagesimal_hours(frame)},
    "dec_dms": lambda frame: {"declination": sexagesimal_degrees(frame)},
}


def parse_robofocus(frame: bytes) -> PropertyDelta:
    """
    Decode one Robofocus frame.

    Single 'I'/'O' characters mean the motor is running. Packets are
    self-describing, so no shape is needed.
    """
    if not isinstance(frame, (bytes, bytearray)) or not frame:
        raise ParseError(f"Empty Robofocus frame: {frame!r}")
    if len(frame) == 1 and frame[0] in robofocus.MOTION_CHARS:
        return {"is_moving": True}

    packet = robofocus.decode_packet(bytes(frame))
    value = packet.value

    if packet.cmd == "FD":
        # Sent as reply to a query and as end-of-motion notification
        return {"position": int(value), "is_moving": False}
    if packet.cmd == "FT":
        return {"temperature": robofocus.temperature_from_raw(int(value))}
    if packet.cmd == "FL":
        max_step = int(value) % 100000
        return {"max_step": max_step, "max_position": max_step}
    if packet.cmd == "FB":
        return {"backlash": robofocus.decode_backlash(int(value))}
    if packet.cmd == "FV":
        if isinstance(value, float):
            return {"firmware_version": str(value)}
        return {"firmware_version": f"{value:06d}"}
    if packet.cmd == "FQ":
        return {}
    raise ParseError(f"Unexpected Robofocus packet {packet.cmd}")


def parse(backend_kind: str, payload: Any, shape: Optional[str] = None) -> PropertyDelta:
    """
    Decode a payload into a property delta.

    Args:
        backend_kind: Backend family name.
        payload: SDK value mapping or raw frame bytes.
        shape: Expected layout for shape-dependent protocols (iOptron).

    Raises:
        ParseError: Malformed, short or unterminated payload.
        HardwareBusyError: The device answered with a rejection.
    """
    kind = getattr(backend_kind, "value", backend_kind)

    if kind == "zwo_eaf":
        return _parse_sdk(payload, degrees=False)
    if kind == "zwo_caa":
        return _parse_sdk(payload, degrees=True)
    if kind == "robofocus":
        return parse_robofocus(payload)
    if kind == "ioptron":
        decoder = IOPTRON_SHAPES.get(shape or "")
        if decoder is None:
            raise ParseError(f"Unknown iOptron reply shape {shape!r}")
        return decoder(payload)

    raise ParseError(f"No parser for backend {kind!r}")
