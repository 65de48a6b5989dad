"""
Vendor SDK backend (ZWO EAF focuser, ZWO CAA rotator).

The binding object exposes the SDK entry points under their C names
(EAFGetNum, CAAGetDegree, ...). Every call returns the SDK result code first,
followed by any output values. All devices of one family share the SDK's
process-wide handle table, so the hub creates exactly one adapter per binding.
"""

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from alpaca_hub.backends.codes import EafCode
from alpaca_hub.backends.interface import Backend, BackendInfo
from alpaca_hub.utils.exceptions import BackendError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SdkCallSet:
    """Entry point names of one SDK family."""

    kind: str
    prefix: str
    reads: Dict[str, str]
    writes: Dict[str, str]


EAF_CALLS = SdkCallSet(
    kind="zwo_eaf",
    prefix="EAF",
    reads={
        "info": "GetProperty",
        "position": "GetPosition",
        "is_moving": "IsMoving",
        "temperature": "GetTemp",
        "max_step": "GetMaxStep",
        "backlash": "GetBacklash",
        "reverse": "GetReverse",
        "firmware_version": "GetFirmwareVersion",
    },
    writes={
        "move": "Move",
        "stop": "Stop",
        "max_step": "SetMaxStep",
        "backlash": "SetBacklash",
        "reverse": "SetReverse",
    },
)

CAA_CALLS = SdkCallSet(
    kind="zwo_caa",
    prefix="CAA",
    reads={
        "info": "GetProperty",
        "position": "GetDegree",
        "is_moving": "IsMoving",
        "temperature": "GetTemp",
        "max_position": "GetMaxDegree",
        "reverse": "GetReverse",
        "firmware_version": "GetFirmwareVersion",
    },
    writes={
        "move": "MoveTo",
        "stop": "Stop",
        "max_position": "SetMaxDegree",
        "reverse": "SetReverse",
    },
)

CALL_SETS = {calls.kind: calls for calls in (EAF_CALLS, CAA_CALLS)}


def load_binding(path: str) -> Any:
    """
    Import a vendor binding given as 'module:attribute'.

    A class attribute is instantiated without arguments.

    Raises:
        ImportError: If the module or attribute cannot be found.
    """
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ImportError(f"SDK binding must be 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        binding = getattr(module, attr)
    except AttributeError:
        raise ImportError(f"Module {module_name} has no attribute {attr}")
    if isinstance(binding, type):
        binding = binding()
    return binding


class SdkBackend(Backend):
    """
    Backend over a vendor SDK binding.

    Handles are the SDK device ids. There is no byte stream: commands are
    carried by read_property/write_property, send() is unsupported and
    receive() never has a frame.
    """

    def __init__(self, binding: Any, calls: SdkCallSet):
        self._binding = binding
        self._calls = calls
        self.kind = calls.kind

    def _invoke(self, name: str, *args) -> Tuple[Any, ...]:
        call = f"{self._calls.prefix}{name}"
        try:
            fn = getattr(self._binding, call)
        except AttributeError:
            raise BackendError(EafCode.NOT_SUPPORTED, "entry point missing", call=call)

        result = fn(*args)
        if isinstance(result, tuple):
            code, values = result[0], result[1:]
        else:
            code, values = result, ()

        if code != 0:
            raise BackendError(int(code), call=call)
        return values

    def enumerate(self) -> List[BackendInfo]:
        (count,) = self._invoke("GetNum")
        found = []
        for index in range(count):
            try:
                (backend_id,) = self._invoke("GetID", index)
            except BackendError as e:
                logger.debug(f"{self.kind}: skipping index {index}: {e}")
                continue

            label = ""
            serial_number = None
            try:
                (info,) = self._invoke("GetProperty", backend_id)
                label = info.get("Name", "")
            except BackendError as e:
                logger.debug(f"{self.kind}: no properties for id {backend_id}: {e}")
            try:
                (serial_number,) = self._invoke("GetSerialNumber", backend_id)
            except BackendError as e:
                # Older firmware has no serial number
                logger.debug(f"{self.kind}: no serial number for id {backend_id}: {e}")

            found.append(BackendInfo(backend_id, index, label, serial_number))

        logger.debug(f"{self.kind}: enumerated {len(found)} device(s)")
        return found

    def open(self, backend_id: Any) -> Any:
        self._invoke("Open", backend_id)
        return backend_id

    def close(self, handle: Any) -> None:
        self._invoke("Close", handle)

    def send(self, handle: Any, payload: bytes) -> None:
        raise BackendError(EafCode.NOT_SUPPORTED, "SDK devices have no byte stream", call="send")

    def receive(self, handle: Any, size: Optional[int] = None) -> Optional[bytes]:
        return None

    def read_property(self, handle: Any, key: str) -> Any:
        name = self._calls.reads.get(key)
        if name is None:
            raise BackendError(EafCode.NOT_SUPPORTED, f"unknown property {key!r}")
        values = self._invoke(name, handle)
        if len(values) == 1:
            return values[0]
        return values

    def write_property(self, handle: Any, key: str, value: Any = None) -> Any:
        name = self._calls.writes.get(key)
        if name is None:
            raise BackendError(EafCode.NOT_SUPPORTED, f"unknown property {key!r}")
        if value is None:
            self._invoke(name, handle)
        else:
            self._invoke(name, handle, value)
        return None
