"""
Error classifier.

Maps backend result codes to a three-way class (fatal/transient/benign) that
drives connection state, plus the outcome reported to the caller. Each
backend family contributes one static table; there is no per-driver
branching.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping

from alpaca_hub.backends.codes import CaaCode, EafCode, SerialCode
from alpaca_hub.core.state import CommandOutcome


class ErrorClass(Enum):
    FATAL = "fatal"          # invalidate the connection
    TRANSIENT = "transient"  # keep the connection, surface to caller
    BENIGN = "benign"        # ignore


@dataclass(frozen=True)
class Classification:
    error_class: ErrorClass
    outcome: CommandOutcome

    @property
    def is_fatal(self) -> bool:
        return self.error_class is ErrorClass.FATAL


BENIGN = Classification(ErrorClass.BENIGN, CommandOutcome.SUCCESS)
_FATAL = Classification(ErrorClass.FATAL, CommandOutcome.CONNECTION_LOST)
_BUSY = Classification(ErrorClass.TRANSIENT, CommandOutcome.HARDWARE_BUSY)
_INVALID = Classification(ErrorClass.TRANSIENT, CommandOutcome.INVALID_REQUEST)
_TIMEOUT = Classification(ErrorClass.TRANSIENT, CommandOutcome.TIMEOUT)
_PROTOCOL = Classification(ErrorClass.TRANSIENT, CommandOutcome.PROTOCOL_VIOLATION)

# Unmapped codes never drop a connection
UNKNOWN = _BUSY


EAF_TABLE: Dict[int, Classification] = {
    EafCode.SUCCESS: BENIGN,
    EafCode.INVALID_INDEX: _INVALID,
    EafCode.INVALID_ID: _FATAL,
    EafCode.INVALID_VALUE: _INVALID,
    EafCode.REMOVED: _FATAL,
    EafCode.MOVING: _BUSY,
    EafCode.ERROR_STATE: _BUSY,
    EafCode.GENERAL_ERROR: _BUSY,
    EafCode.NOT_SUPPORTED: _INVALID,
    EafCode.CLOSED: _FATAL,
}

CAA_TABLE: Dict[int, Classification] = {
    CaaCode.SUCCESS: BENIGN,
    CaaCode.INVALID_INDEX: _INVALID,
    CaaCode.INVALID_ID: _FATAL,
    CaaCode.INVALID_VALUE: _INVALID,
    CaaCode.REMOVED: _FATAL,
    CaaCode.MOVING: _BUSY,
    CaaCode.ERROR_STATE: _BUSY,
    CaaCode.GENERAL_ERROR: _BUSY,
    CaaCode.NOT_SUPPORTED: _INVALID,
    CaaCode.CLOSED: _FATAL,
    CaaCode.OUT_RANGE: _INVALID,
    CaaCode.OVER_LIMIT: _INVALID,
    CaaCode.STALL: _BUSY,
    CaaCode.TIMEOUT: _TIMEOUT,
}

SERIAL_TABLE: Dict[int, Classification] = {
    SerialCode.SUCCESS: BENIGN,
    SerialCode.PORT_NOT_FOUND: _FATAL,
    SerialCode.PORT_CLOSED: _FATAL,
    SerialCode.IO_ERROR: _FATAL,
    SerialCode.PORT_IN_USE: _BUSY,
    SerialCode.WRITE_TIMEOUT: _TIMEOUT,
    SerialCode.READ_TIMEOUT: _TIMEOUT,
    SerialCode.BAD_FRAME: _PROTOCOL,
    SerialCode.REJECTED: _BUSY,
    SerialCode.BUSY: _BUSY,
    SerialCode.INVALID_VALUE: _INVALID,
    SerialCode.UNKNOWN_PROPERTY: _INVALID,
}

_TABLES: Dict[str, Mapping[int, Classification]] = {
    "zwo_eaf": EAF_TABLE,
    "zwo_caa": CAA_TABLE,
    "ioptron": SERIAL_TABLE,
    "robofocus": SERIAL_TABLE,
}


def register_table(backend_kind: str, table: Mapping[int, Classification]) -> None:
    """Register the classification table of a new backend family."""
    _TABLES[getattr(backend_kind, "value", backend_kind)] = dict(table)


def classify(backend_kind: str, code: int) -> Classification:
    """
    Classify a backend result code.

    Args:
        backend_kind: Backend family name (e.g. "zwo_eaf").
        code: Numeric result code returned by the backend.

    Returns:
        Classification; unknown kinds and codes are transient.
    """
    table = _TABLES.get(getattr(backend_kind, "value", backend_kind))
    if table is None:
        return BENIGN if code == 0 else UNKNOWN
    return table.get(int(code), UNKNOWN)
