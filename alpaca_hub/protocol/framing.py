"""
Framing strategies for line-oriented serial protocols.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple


class Framing(ABC):
    """Splits a receive buffer into protocol frames and encodes queries."""

    # Bytes kept without finding a frame boundary before the buffer is declared garbage
    max_buffer = 256

    @abstractmethod
    def split(self, buffer: bytearray) -> Optional[bytes]:
        """
        Remove and return the first complete frame from buffer.

        Returns:
            Frame bytes, or None if the buffer holds no complete frame.

        Raises:
            BackendError: With SerialCode.BAD_FRAME if the buffer cannot be framed.
        """
        pass

    @abstractmethod
    def encode(self, key: str, value: Any = None) -> Tuple[bytes, Optional[int]]:
        """
        Encode a synchronous property query.

        Returns:
            (payload, fixed reply size or None for self-delimiting replies)
        """
        pass

    def is_reply(self, frame: bytes) -> bool:
        """Whether a frame can answer a query (as opposed to async status)."""
        return True
