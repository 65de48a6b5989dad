"""
Wire framing for the serial-line instruments.
"""

from alpaca_hub.protocol.framing import Framing
from alpaca_hub.protocol.ioptron import IoptronFraming
from alpaca_hub.protocol.robofocus import (
    RobofocusFraming,
    calculate_checksum,
    decode_packet,
    encode_command,
)

__all__ = [
    "Framing",
    "IoptronFraming",
    "RobofocusFraming",
    "calculate_checksum",
    "decode_packet",
    "encode_command",
]
