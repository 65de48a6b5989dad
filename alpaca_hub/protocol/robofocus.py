"""
Robofocus packet codec.

Every exchange is a 9-byte packet: 'F' + command letter + 6 ASCII digits +
checksum byte (sum of the 8 ASCII values modulo 256). While the motor runs the
controller emits single 'I' (inward) / 'O' (outward) characters and finishes
with an FD packet carrying the final position.
"""

import logging
from typing import Any, NamedTuple, Optional, Tuple, Union

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.protocol.framing import Framing
from alpaca_hub.utils.exceptions import BackendError, ChecksumMismatchError, ParseError


logger = logging.getLogger(__name__)


PACKET_LENGTH = 9
MOTION_CHARS = frozenset(b"IO")
MAX_VALUE = 999999


class RobofocusPacket(NamedTuple):
    cmd: str
    value: Union[int, float]
    checksum_valid: bool


def calculate_checksum(message: str) -> int:
    """
    Calculate Robofocus checksum (sum of ASCII values modulo 256).

    Raises:
        ValueError: If message is not exactly 8 characters.

    Example:
        >>> calculate_checksum("FG002500")
        180
    """
    if len(message) != 8:
        raise ValueError(f"Message must be exactly 8 characters, got {len(message)}")
    return sum(message.encode("ascii")) % 256


def encode_command(cmd: str, value: int = 0) -> bytes:
    """
    Encode command as 9-byte packet.

    Args:
        cmd: Two-letter command (e.g., "FG", "FV", "FT").
        value: Integer 0-999999, sent zero-padded to 6 digits.

    Raises:
        ValueError: If cmd is not 2 characters or value is out of range.

    Example:
        >>> encode_command("FG", 2500)
        b'FG002500\\xb4'
    """
    if len(cmd) != 2 or not cmd.startswith("F"):
        raise ValueError(f"Command must be 2 characters starting with 'F', got: {cmd}")
    if value < 0 or value > MAX_VALUE:
        raise ValueError(f"Value must be 0-{MAX_VALUE}, got: {value}")

    message = f"{cmd}{int(value):06d}"
    return message.encode("ascii") + bytes([calculate_checksum(message)])


def decode_packet(packet: bytes, verify: bool = True) -> RobofocusPacket:
    """
    Decode a 9-byte packet.

    Args:
        packet: Raw bytes.
        verify: Raise on checksum mismatch instead of reporting it.

    Raises:
        ParseError: Wrong length, not 'F'-prefixed, non-ASCII or non-numeric.
        ChecksumMismatchError: Checksum invalid and verify is True.
    """
    if len(packet) != PACKET_LENGTH:
        raise ParseError(f"Expected {PACKET_LENGTH} bytes, got {len(packet)}")
    if packet[:1] != b"F":
        raise ParseError(f"Packet does not start with 'F': {packet!r}")

    try:
        message = packet[:8].decode("ascii")
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid ASCII in packet: {e}") from e

    value_str = message[2:8]
    try:
        value: Union[int, float] = int(value_str)
    except ValueError:
        # Some firmware versions answer FV with a float ("003.20")
        try:
            value = float(value_str)
        except ValueError:
            raise ParseError(f"Invalid numeric value in packet: {value_str!r}")

    checksum_valid = packet[8] == calculate_checksum(message)
    if verify and not checksum_valid:
        raise ChecksumMismatchError(
            f"Checksum mismatch for {message[:2]}: expected {calculate_checksum(message)}, got {packet[8]}"
        )

    return RobofocusPacket(cmd=message[:2], value=value, checksum_valid=checksum_valid)


def encode_backlash(signed_amount: int) -> int:
    """
    Encode signed backlash (INDI convention) as the FB value.

    Negative = compensation on IN motion (direction 2), positive = OUT (direction 3).
    """
    if signed_amount < -255 or signed_amount > 255:
        raise ValueError(f"Backlash must be -255 to +255, got {signed_amount}")
    direction = 2 if signed_amount < 0 else 3
    return direction * 100000 + abs(signed_amount)


def decode_backlash(value: int) -> int:
    """Inverse of encode_backlash."""
    direction = value // 100000
    amount = value % 100000
    return -amount if direction == 2 else amount


def temperature_from_raw(raw_adc: int) -> float:
    """
    Convert FT raw ADC reading to Celsius.

    Raises:
        ParseError: Reading outside the range a connected sensor produces.
    """
    if raw_adc < 200 or raw_adc > 1000:
        raise ParseError(f"Temperature sensor not responding (raw ADC {raw_adc})")
    # Empirically calibrated for firmware 3.2
    return (raw_adc - 380) / 10.0


def temperature_to_raw(celsius: float) -> int:
    return int(round(celsius * 10.0 + 380))


class RobofocusFraming(Framing):
    """
    Fixed 9-byte 'F' packets interleaved with single 'I'/'O' motion characters.

    Motion characters are returned as one-byte frames. Any other leading byte
    is line noise and is dropped.
    """

    def split(self, buffer: bytearray) -> Optional[bytes]:
        while buffer:
            first = buffer[0]
            if first in MOTION_CHARS:
                del buffer[:1]
                return bytes([first])
            if first == ord("F"):
                if len(buffer) < PACKET_LENGTH:
                    return None
                frame = bytes(buffer[:PACKET_LENGTH])
                del buffer[:PACKET_LENGTH]
                return frame
            logger.warning(f"Unexpected byte: 0x{first:02X}")
            del buffer[:1]
        return None

    def encode(self, key: str, value: Any = None) -> Tuple[bytes, Optional[int]]:
        try:
            return encode_command(key, int(value or 0)), None
        except ValueError as e:
            raise BackendError(SerialCode.INVALID_VALUE, str(e)) from e

    def is_reply(self, frame: bytes) -> bool:
        return len(frame) == PACKET_LENGTH
