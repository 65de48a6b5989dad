"""
Hub: builds adapters and devices from configuration and serves requests.

SDK-backed devices of the same family share one adapter (the vendor library
has a single global handle table); every serial device owns its adapter.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from alpaca_hub.backends.interface import Adapter
from alpaca_hub.backends.sdk import CALL_SETS, SdkBackend, load_binding
from alpaca_hub.backends.serial_line import SerialLineBackend
from alpaca_hub.config.loader import ConfigurationError
from alpaca_hub.config.models import AppConfig, BackendKind, DeviceConfig
from alpaca_hub.core.device import Device
from alpaca_hub.core.events import EventSink
from alpaca_hub.core.lifecycle import ConnectionManager
from alpaca_hub.core.scheduler import PollScheduler
from alpaca_hub.core.state import Command, PropertySnapshot
from alpaca_hub.drivers.base import DeviceProfile
from alpaca_hub.drivers.ioptron import IoptronProfile
from alpaca_hub.drivers.robofocus import RobofocusProfile
from alpaca_hub.drivers.zwo import CaaProfile, EafProfile
from alpaca_hub.protocol.framing import Framing
from alpaca_hub.protocol.ioptron import IoptronFraming
from alpaca_hub.protocol.robofocus import RobofocusFraming
from alpaca_hub.simulator.sdk import SimulatedCaaSdk, SimulatedEafSdk
from alpaca_hub.simulator.serial_port import (
    IoptronMountModel,
    RobofocusModel,
    SimulatedPortRegistry,
)
from alpaca_hub.utils.exceptions import UnknownDeviceError


logger = logging.getLogger(__name__)


PROFILES: Dict[BackendKind, Type[DeviceProfile]] = {
    BackendKind.ZWO_EAF: EafProfile,
    BackendKind.ZWO_CAA: CaaProfile,
    BackendKind.IOPTRON: IoptronProfile,
    BackendKind.ROBOFOCUS: RobofocusProfile,
}

FRAMINGS: Dict[BackendKind, Type[Framing]] = {
    BackendKind.IOPTRON: IoptronFraming,
    BackendKind.ROBOFOCUS: RobofocusFraming,
}

SIMULATED_SDKS = {
    BackendKind.ZWO_EAF: SimulatedEafSdk,
    BackendKind.ZWO_CAA: SimulatedCaaSdk,
}

SIMULATED_MODELS = {
    BackendKind.IOPTRON: IoptronMountModel,
    BackendKind.ROBOFOCUS: RobofocusModel,
}


class Hub:
    """
    All configured devices plus the machinery driving them.

    Args:
        config: Application configuration.
        clock: Monotonic time source shared by devices and simulators.
    """

    def __init__(self, config: AppConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.events = EventSink(config.scheduler.event_log_size)
        self.lifecycle = ConnectionManager(self.events)

        self._sdk_adapters: Dict[str, Adapter] = {}
        self.simulated_sdks: Dict[BackendKind, Any] = {}
        self.simulated_ports = SimulatedPortRegistry()

        self.devices: List[Device] = []
        self._by_name: Dict[str, Device] = {}
        self._by_number: Dict[Tuple[str, int], Device] = {}

        numbers: Dict[str, int] = {}
        for device_config in config.devices:
            device_type = device_config.device_type.value
            number = numbers.get(device_type, 0)
            numbers[device_type] = number + 1
            self._add(self._build_device(number, device_config))

        self.scheduler = PollScheduler.from_config(self.devices, config.scheduler)

    # --- construction -------------------------------------------------

    def _add(self, device: Device) -> None:
        self.devices.append(device)
        self._by_name[device.name] = device
        self._by_number[(device.device_type, device.device_number)] = device
        logger.info(
            f"Registered {device.device_type} {device.device_number}: {device.name} "
            f"({device.profile.backend_kind}{', simulated' if device.config.simulator else ''})"
        )

    def _build_device(self, number: int, config: DeviceConfig) -> Device:
        profile = PROFILES[config.backend](config)
        if config.backend.value in CALL_SETS:
            adapter, match_key = self._sdk_adapter(config)
        else:
            adapter, match_key = self._serial_adapter(config)

        device = Device(number, config, profile, adapter, self.lifecycle, self.events, clock=self.clock)
        if match_key is not None:
            device.match_key = match_key
        return device

    def _sdk_adapter(self, config: DeviceConfig) -> Tuple[Adapter, Optional[str]]:
        kind = config.backend
        calls = CALL_SETS[kind.value]

        if config.simulator:
            sdk = self.simulated_sdks.get(kind)
            if sdk is None:
                sdk = SIMULATED_SDKS[kind](clock=self.clock)
                self.simulated_sdks[kind] = sdk
            serial = config.match or f"SIM-{config.name}"
            sdk.add_device(serial, name=config.model)
            key = f"simulator:{kind.value}"
            match_key: Optional[str] = serial
            binding: Any = sdk
        else:
            if not config.sdk_binding:
                raise ConfigurationError(
                    f"Device {config.name}: {kind.value} needs 'sdk_binding' or 'simulator': true"
                )
            key = config.sdk_binding
            match_key = None
            binding = None

        adapter = self._sdk_adapters.get(key)
        if adapter is None:
            if binding is None:
                binding = self._load_binding(config)
            adapter = Adapter(SdkBackend(binding, calls), name=key)
            self._sdk_adapters[key] = adapter
        return adapter, match_key

    def _load_binding(self, config: DeviceConfig) -> Any:
        try:
            return load_binding(config.sdk_binding)
        except ImportError as e:
            raise ConfigurationError(f"Device {config.name}: cannot load SDK binding: {e}") from e

    def _serial_adapter(self, config: DeviceConfig) -> Tuple[Adapter, Optional[str]]:
        kind = config.backend
        options: Dict[str, Any] = {}
        match_key: Optional[str] = None

        if config.simulator:
            port_name = config.port or f"SIM-{config.name}"
            self.simulated_ports.add(port_name, SIMULATED_MODELS[kind](clock=self.clock))
            options["port_factory"] = self.simulated_ports.open_port
            options["port_lister"] = self.simulated_ports.list_ports
            match_key = port_name
        elif not (config.port or config.match):
            raise ConfigurationError(f"Device {config.name}: serial devices need 'port' or 'match'")

        backend = SerialLineBackend(
            kind.value,
            FRAMINGS[kind](),
            baud=config.baud,
            io_timeout=config.timing.io_timeout_sec,
            clock=self.clock,
            **options,
        )
        return Adapter(backend, name=f"{kind.value}:{config.name}"), match_key

    # --- lookup ---------------------------------------------------------

    def device(self, name: str) -> Device:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownDeviceError(f"No device named {name!r}")

    def get(self, device_type: str, device_number: int) -> Device:
        try:
            return self._by_number[(device_type.lower(), device_number)]
        except KeyError:
            raise UnknownDeviceError(f"No {device_type} with device number {device_number}")

    def configured_devices(self) -> List[dict]:
        return [device.describe() for device in self.devices]

    # --- property-serving operations -------------------------------------

    def get_snapshot(self, name: str) -> PropertySnapshot:
        return self.device(name).get_snapshot()

    def request_move(self, name: str, target: Any) -> Command:
        device = self.device(name)
        command = device.request_move(target)
        self.scheduler.wake(device)
        return command

    def request_halt(self, name: str) -> Command:
        device = self.device(name)
        command = device.request_halt()
        self.scheduler.wake(device)
        return command

    def request_write(self, name: str, key: str, value: Any) -> Command:
        device = self.device(name)
        command = device.request_write(key, value)
        self.scheduler.wake(device)
        return command

    def set_enabled(self, name: str, enabled: bool) -> None:
        device = self.device(name)
        device.set_enabled(enabled)
        self.scheduler.wake(device)

    # --- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        """Stop ticking and close every open connection."""
        self.scheduler.stop()
        for device in self.devices:
            if device.session is not None:
                self.lifecycle.invalidate(device, "server shutdown")
        logger.info("Hub shut down")
