from typing import Callable, Optional

import pytest

from alpaca_hub.config.models import AppConfig, DeviceConfig, SchedulerConfig, TimingConfig
from alpaca_hub.hub import Hub


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def run_until(device, predicate: Callable[[], bool], clock: Optional[ManualClock] = None,
              step: float = 0.05, limit: int = 400) -> None:
    """Tick a device until predicate() holds, advancing the manual clock between ticks."""
    for _ in range(limit):
        if predicate():
            return
        device.tick()
        if clock is not None:
            clock.advance(step)
    assert predicate(), f"condition not reached after {limit} ticks of {device.name}"


def simulated(name: str, device_type: str, backend: str, **kwargs) -> DeviceConfig:
    return DeviceConfig(name=name, device_type=device_type, backend=backend, simulator=True, **kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_hub(clock):
    """Build a hub over simulated devices driven by the manual clock (scheduler not started)."""
    hubs = []

    def factory(*devices: DeviceConfig, **kwargs) -> Hub:
        config = AppConfig(devices=list(devices), **kwargs)
        hub = Hub(config, clock=clock)
        hubs.append(hub)
        return hub

    yield factory

    for hub in hubs:
        hub.shutdown()


@pytest.fixture
def fast_timing() -> TimingConfig:
    return TimingConfig(poll_interval_moving_ms=20, poll_interval_idle_ms=50, retry_delay_sec=0.05)


@pytest.fixture
def fast_scheduler() -> SchedulerConfig:
    return SchedulerConfig(workers=4, idle_sleep_ms=5, min_delay_ms=1, max_delay_ms=100)
