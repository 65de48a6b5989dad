import json

import pytest

from alpaca_hub.config.loader import ConfigurationError, load_config
from alpaca_hub.config.models import BackendKind, DeviceType


def _write(tmp_path, data) -> str:
    path = tmp_path / "config.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return str(path)


def test_missing_file_creates_default(tmp_path) -> None:
    path = tmp_path / "config.json"
    config = load_config(str(path))

    assert path.exists()
    assert [d.backend for d in config.devices] == [
        BackendKind.ZWO_EAF, BackendKind.ZWO_CAA, BackendKind.IOPTRON,
    ]
    assert all(d.simulator for d in config.devices)

    # The generated file loads back to the same configuration
    assert load_config(str(path)) == config


def test_comment_keys_are_ignored(tmp_path) -> None:
    path = _write(tmp_path, {
        "_comment": "test rig",
        "server": {"port": 11111},
        "devices": [
            {"name": "rf", "device_type": "focuser", "backend": "robofocus", "port": "COM3",
             "timing": {"max_consecutive_timeouts": 3}},
        ],
    })
    config = load_config(path)
    assert config.server.port == 11111
    (device,) = config.devices
    assert device.device_type == DeviceType.FOCUSER
    assert device.timing.max_consecutive_timeouts == 3
    assert device.timing.poll_interval_idle_ms == 1000


def test_invalid_json(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        load_config(_write(tmp_path, "{ not json"))


@pytest.mark.parametrize(
    "devices",
    [
        [{"name": "x", "device_type": "rotator", "backend": "zwo_eaf"}],
        [{"name": "x", "device_type": "focuser", "backend": "zwo_eaf", "simulator": True},
         {"name": "x", "device_type": "focuser", "backend": "robofocus", "port": "COM3"}],
        [{"name": "x", "device_type": "focuser", "backend": "robofocus", "port": "COM3",
          "min_position": 100, "max_position": 100}],
        [{"name": "x", "device_type": "camera", "backend": "zwo_eaf"}],
    ],
)
def test_invalid_devices(tmp_path, devices) -> None:
    with pytest.raises(ConfigurationError, match="validation failed"):
        load_config(_write(tmp_path, {"devices": devices}))


def test_unknown_top_level_key(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, {"devicez": []}))


def test_log_level_is_normalised(tmp_path) -> None:
    config = load_config(_write(tmp_path, {"logging": {"level": "debug", "file": None}}))
    assert config.logging.level == "DEBUG"
    assert config.logging.file is None

    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, {"logging": {"level": "chatty"}}))
