"""
Backend result codes.

The ZWO codes mirror the vendor SDK headers (EAF_focuser.h, CAA_API.h).
Serial line backends have no vendor codes, so the hub defines its own small
set for the failures pyserial can report.
"""

from enum import IntEnum


class EafCode(IntEnum):
    SUCCESS = 0
    INVALID_INDEX = 1
    INVALID_ID = 2
    INVALID_VALUE = 3
    REMOVED = 4          # failed to find the focuser, maybe it has been removed
    MOVING = 5
    ERROR_STATE = 6
    GENERAL_ERROR = 7
    NOT_SUPPORTED = 8
    CLOSED = 9


class CaaCode(IntEnum):
    SUCCESS = 0
    INVALID_INDEX = 1
    INVALID_ID = 2
    INVALID_VALUE = 3
    REMOVED = 4
    MOVING = 5
    ERROR_STATE = 6
    GENERAL_ERROR = 7
    NOT_SUPPORTED = 8
    CLOSED = 9
    OUT_RANGE = 10       # outside 0-360
    OVER_LIMIT = 11
    STALL = 12
    TIMEOUT = 13


class SerialCode(IntEnum):
    SUCCESS = 0
    PORT_NOT_FOUND = 1   # port vanished from the enumeration (USB adapter unplugged)
    PORT_CLOSED = 2
    IO_ERROR = 3         # SerialException on read/write
    PORT_IN_USE = 4
    WRITE_TIMEOUT = 5
    READ_TIMEOUT = 6
    BAD_FRAME = 7
    REJECTED = 8         # device answered '0' to a command
    BUSY = 9
    INVALID_VALUE = 10
    UNKNOWN_PROPERTY = 11
