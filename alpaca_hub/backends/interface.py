"""
Abstract backend capability.

A backend performs the physical I/O for one family of devices (vendor SDK or
serial line). This interface allows transparent substitution between real
hardware and simulator. Every failure raises BackendError carrying the
backend-specific numeric code; the error classifier decides what it means.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True)
class BackendInfo:
    """One enumerated backend handle."""

    backend_id: Any
    index: int
    label: str = ""
    serial_number: Optional[str] = None

    def matches(self, key: str) -> bool:
        """Check a configured match key against the stable identity strings."""
        return key in (self.serial_number, self.label, str(self.backend_id))


class Backend(ABC):
    """Abstract base class for backend operations."""

    kind: str = ""

    @abstractmethod
    def enumerate(self) -> List[BackendInfo]:
        """
        List the devices currently reachable through this backend.

        Raises:
            BackendError: If enumeration itself fails.
        """
        pass

    @abstractmethod
    def open(self, backend_id: Any) -> Any:
        """
        Open a device.

        Returns:
            Opaque handle passed to every other call.

        Raises:
            BackendError: If the device cannot be opened.
        """
        pass

    @abstractmethod
    def close(self, handle: Any) -> None:
        """Close a handle. Must tolerate an already-closed handle."""
        pass

    @abstractmethod
    def send(self, handle: Any, payload: bytes) -> None:
        """
        Write one frame without waiting for a reply.

        Raises:
            BackendError: On write failure.
        """
        pass

    @abstractmethod
    def receive(self, handle: Any, size: Optional[int] = None) -> Optional[bytes]:
        """
        Non-blocking read of one complete frame.

        Args:
            handle: Open handle.
            size: Expected length of a fixed-size reply, None to use the
                backend's own framing.

        Returns:
            Frame bytes, or None if no complete frame is available yet.

        Raises:
            BackendError: On read failure.
        """
        pass

    def discard_input(self, handle: Any) -> None:
        """Drop unread input so a late reply is never matched to the next command."""
        pass

    @abstractmethod
    def read_property(self, handle: Any, key: str) -> Any:
        """
        Short synchronous property read.

        Raises:
            BackendError: On failure or unknown key.
        """
        pass

    @abstractmethod
    def write_property(self, handle: Any, key: str, value: Any = None) -> Any:
        """
        Short synchronous property write or action.

        Raises:
            BackendError: On failure or unknown key.
        """
        pass


class Adapter:
    """
    One backend instance plus the lock guarding its non-reentrant calls.

    The lock is held for exactly one backend call, never across a tick, so
    devices sharing an adapter interleave call by call.
    """

    def __init__(self, backend: Backend, name: Optional[str] = None):
        self.backend = backend
        self.name = name or backend.kind
        self._lock = threading.RLock()

    @property
    def kind(self) -> str:
        return self.backend.kind

    def call(self, method: str, *args) -> Any:
        with self._lock:
            return getattr(self.backend, method)(*args)

    def enumerate(self) -> List[BackendInfo]:
        return self.call("enumerate")

    def open(self, backend_id: Any) -> "BackendSession":
        handle = self.call("open", backend_id)
        return BackendSession(self, handle)

    def __repr__(self) -> str:
        return f"Adapter({self.name})"


class BackendSession:
    """An open handle bound to its adapter."""

    def __init__(self, adapter: Adapter, handle: Any):
        self.adapter = adapter
        self.handle = handle

    @property
    def kind(self) -> str:
        return self.adapter.kind

    def send(self, payload: bytes) -> None:
        self.adapter.call("send", self.handle, payload)

    def receive(self, size: Optional[int] = None) -> Optional[bytes]:
        return self.adapter.call("receive", self.handle, size)

    def discard_input(self) -> None:
        self.adapter.call("discard_input", self.handle)

    def read_property(self, key: str) -> Any:
        return self.adapter.call("read_property", self.handle, key)

    def write_property(self, key: str, value: Any = None) -> Any:
        return self.adapter.call("write_property", self.handle, key, value)

    def close(self) -> None:
        self.adapter.call("close", self.handle)
