"""
Custom exception classes for the Alpaca hub.
"""

from typing import Optional


class AlpacaHubError(Exception):
    """Base exception for all hub errors."""
    pass


class NotConnectedError(AlpacaHubError):
    """Raised when an operation requires an open device connection (ConnectionLost)."""
    pass


class InvalidValueError(AlpacaHubError):
    """Caller-supplied value is missing, non-numeric or out of range (InvalidRequest)."""
    pass


class ProtocolError(AlpacaHubError):
    """Malformed or short response frame (ProtocolViolation)."""
    pass


class ParseError(ProtocolError):
    """A payload could not be decoded into property fields."""
    pass


class ChecksumMismatchError(ParseError):
    """Checksum validation failed."""
    pass


class CommandTimeoutError(AlpacaHubError):
    """No reply within the command's timeout budget."""
    pass


class HardwareBusyError(AlpacaHubError):
    """Device cannot comply right now (e.g. already moving)."""
    pass


class DriverError(AlpacaHubError):
    """General driver error (maps to Alpaca ErrorNumber 1280)."""
    pass


class NotImplementedByDeviceError(AlpacaHubError):
    """Property or method not supported by this device."""
    pass


class UnknownDeviceError(AlpacaHubError):
    """No device registered under the requested id."""
    pass


class BackendError(AlpacaHubError):
    """
    Failure reported by a backend call.

    Carries the backend-specific numeric result code; the error classifier
    decides what the code means for the connection.
    """

    def __init__(self, code: int, message: str = "", call: Optional[str] = None):
        self.code = code
        self.call = call
        text = message or f"backend returned code {code}"
        if call:
            text = f"{call}: {text}"
        super().__init__(text)
