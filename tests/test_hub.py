import pytest

from alpaca_hub.config.loader import ConfigurationError
from alpaca_hub.config.models import AppConfig, BackendKind, DeviceConfig
from alpaca_hub.core.state import ConnectionState
from alpaca_hub.hub import Hub
from alpaca_hub.utils.exceptions import UnknownDeviceError

from conftest import run_until, simulated


def test_device_numbers_are_per_type(make_hub) -> None:
    hub = make_hub(
        simulated("eaf-a", "focuser", "zwo_eaf"),
        simulated("rot", "rotator", "zwo_caa"),
        simulated("eaf-b", "focuser", "zwo_eaf"),
        simulated("rf", "focuser", "robofocus"),
    )
    assert hub.get("focuser", 0).name == "eaf-a"
    assert hub.get("Focuser", 1).name == "eaf-b"
    assert hub.get("focuser", 2).name == "rf"
    assert hub.get("rotator", 0).name == "rot"

    with pytest.raises(UnknownDeviceError):
        hub.get("telescope", 0)
    with pytest.raises(UnknownDeviceError):
        hub.device("nosuch")


def test_sdk_devices_share_one_adapter(make_hub) -> None:
    hub = make_hub(
        simulated("eaf-a", "focuser", "zwo_eaf"),
        simulated("eaf-b", "focuser", "zwo_eaf"),
        simulated("rf-a", "focuser", "robofocus"),
        simulated("rf-b", "focuser", "robofocus"),
    )
    assert hub.device("eaf-a").adapter is hub.device("eaf-b").adapter
    assert hub.device("rf-a").adapter is not hub.device("rf-b").adapter


def test_two_units_on_one_sdk_are_told_apart(make_hub) -> None:
    hub = make_hub(
        simulated("eaf-a", "focuser", "zwo_eaf"),
        simulated("eaf-b", "focuser", "zwo_eaf", match="EAF-0042"),
    )
    sdk = hub.simulated_sdks[BackendKind.ZWO_EAF]
    unit = sdk.unit("EAF-0042")
    unit.position = unit.start_position = unit.target = 1234

    for device in hub.devices:
        device.tick()

    assert hub.device("eaf-a").get_snapshot().position == 0
    assert hub.device("eaf-b").get_snapshot().position == 1234
    assert hub.device("eaf-b").backend_info.serial_number == "EAF-0042"


def test_requests_by_device_name(make_hub, clock) -> None:
    hub = make_hub(simulated("rot", "rotator", "zwo_caa"))
    device = hub.device("rot")
    device.tick()

    move = hub.request_move("rot", 370)
    assert move.target == 10.0
    run_until(device, lambda: move.done, clock)
    assert hub.get_snapshot("rot").target_position == 10.0

    halt = hub.request_halt("rot")
    run_until(device, lambda: halt.done, clock)
    assert halt.succeeded

    reverse = hub.request_write("rot", "reverse", True)
    run_until(device, lambda: reverse.done, clock)
    assert hub.get_snapshot("rot").reverse is True

    with pytest.raises(UnknownDeviceError):
        hub.get_snapshot("nosuch")


def test_configured_devices(make_hub) -> None:
    hub = make_hub(simulated("mount", "telescope", "ioptron"))
    (entry,) = hub.configured_devices()
    assert entry["DeviceName"] == "mount"
    assert entry["DeviceType"] == "Telescope"
    assert entry["DeviceNumber"] == 0
    assert entry["Manufacturer"] == "iOptron"
    assert entry["State"] == "closed"


def test_sdk_device_without_binding_is_rejected() -> None:
    config = AppConfig(devices=[DeviceConfig(name="eaf", device_type="focuser", backend="zwo_eaf")])
    with pytest.raises(ConfigurationError):
        Hub(config)


def test_unloadable_binding_is_rejected() -> None:
    config = AppConfig(devices=[
        DeviceConfig(name="eaf", device_type="focuser", backend="zwo_eaf", sdk_binding="no_such_module:EAF")
    ])
    with pytest.raises(ConfigurationError):
        Hub(config)


def test_serial_device_without_port_is_rejected() -> None:
    config = AppConfig(devices=[DeviceConfig(name="rf", device_type="focuser", backend="robofocus")])
    with pytest.raises(ConfigurationError):
        Hub(config)


def test_shutdown_closes_open_devices(make_hub) -> None:
    hub = make_hub(simulated("rf", "focuser", "robofocus"))
    device = hub.device("rf")
    device.tick()
    assert device.connected

    hub.shutdown()
    assert device.state == ConnectionState.CLOSED
    assert device.session is None
