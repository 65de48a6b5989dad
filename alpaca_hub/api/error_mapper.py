"""
Map Python exceptions and command outcomes to ASCOM Alpaca error codes.
"""

from typing import Optional, Tuple

from alpaca_hub.core.state import CommandOutcome
from alpaca_hub.utils.exceptions import (
    AlpacaHubError,
    CommandTimeoutError,
    DriverError,
    HardwareBusyError,
    InvalidValueError,
    NotConnectedError,
    NotImplementedByDeviceError,
    ProtocolError,
)


# ASCOM Alpaca Error Codes
ERROR_NOT_IMPLEMENTED = 0x400  # 1024
ERROR_INVALID_VALUE = 0x402  # 1026
ERROR_NOT_CONNECTED = 0x407  # 1031
ERROR_INVALID_OPERATION = 0x40B  # 1035
ERROR_DRIVER_ERROR = 0x500  # 1280


def map_exception_to_alpaca(exception: Exception) -> Tuple[int, str]:
    """
    Map exception to Alpaca error code and message.

    Args:
        exception: Python exception.

    Returns:
        Tuple of (ErrorNumber, ErrorMessage).
    """
    if isinstance(exception, NotConnectedError):
        return (ERROR_NOT_CONNECTED, str(exception))

    if isinstance(exception, InvalidValueError):
        return (ERROR_INVALID_VALUE, str(exception))

    if isinstance(exception, NotImplementedByDeviceError):
        return (ERROR_NOT_IMPLEMENTED, str(exception))

    if isinstance(exception, HardwareBusyError):
        return (ERROR_INVALID_OPERATION, str(exception))

    if isinstance(exception, (ProtocolError, CommandTimeoutError, DriverError, AlpacaHubError)):
        return (ERROR_DRIVER_ERROR, str(exception))

    # Unknown exception
    return (ERROR_DRIVER_ERROR, f"Internal error: {type(exception).__name__}: {exception}")


def outcome_to_exception(outcome: CommandOutcome, message: Optional[str] = None) -> Optional[Exception]:
    """
    Exception equivalent of a failed command outcome.

    Returns:
        None for SUCCESS.
    """
    text = message or outcome.value
    if outcome == CommandOutcome.SUCCESS:
        return None
    if outcome == CommandOutcome.CONNECTION_LOST:
        return NotConnectedError(f"Connection lost: {text}")
    if outcome == CommandOutcome.INVALID_REQUEST:
        return InvalidValueError(text)
    if outcome == CommandOutcome.HARDWARE_BUSY:
        return HardwareBusyError(f"Device busy: {text}")
    if outcome == CommandOutcome.TIMEOUT:
        return CommandTimeoutError(f"Timeout: {text}")
    return ProtocolError(f"Protocol violation: {text}")
