import threading
import time

from alpaca_hub.config.models import AppConfig, BackendKind
from alpaca_hub.core.scheduler import PollScheduler
from alpaca_hub.hub import Hub

from conftest import simulated


class FakeDevice:
    """Tick target recording concurrency."""

    def __init__(self, name: str, delay: float = 0.01, work: float = 0.0, fail: bool = False) -> None:
        self.name = name
        self.delay = delay
        self.work = work
        self.fail = fail
        self.ticks = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def tick(self) -> float:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.work:
                time.sleep(self.work)
            self.ticks += 1
            if self.fail:
                raise RuntimeError("driver bug")
            return self.delay
        finally:
            with self._lock:
                self.active -= 1


def _wait(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_run_once_without_start_does_nothing() -> None:
    scheduler = PollScheduler([FakeDevice("a")])
    assert scheduler.run_once() == 0
    assert not scheduler.running


def test_ticks_of_one_device_never_overlap() -> None:
    device = FakeDevice("slow", delay=0.0, work=0.02)
    scheduler = PollScheduler([device], workers=4, idle_sleep=0.001, min_delay=0.0)
    scheduler.start()
    try:
        assert _wait(lambda: device.ticks >= 10)
    finally:
        scheduler.stop()
    assert device.max_active == 1
    assert scheduler.tick_counts["slow"] == device.ticks


def test_failing_tick_does_not_stop_other_devices() -> None:
    broken = FakeDevice("broken", fail=True)
    healthy = FakeDevice("healthy")
    scheduler = PollScheduler([broken, healthy], idle_sleep=0.005, min_delay=0.005, max_delay=0.05)
    scheduler.start()
    try:
        assert _wait(lambda: healthy.ticks >= 5 and broken.ticks >= 2)
    finally:
        scheduler.stop()
    assert not scheduler.running


def test_devices_tick_in_parallel() -> None:
    devices = [FakeDevice(f"d{i}", delay=0.0, work=0.05) for i in range(3)]
    overlap = threading.Event()

    def watch(device):
        original = device.tick

        def tick():
            if any(d.active for d in devices):
                overlap.set()
            return original()

        device.tick = tick

    for device in devices:
        watch(device)

    scheduler = PollScheduler(devices, workers=3, idle_sleep=0.001, min_delay=0.0)
    scheduler.start()
    try:
        assert _wait(lambda: all(d.ticks >= 4 for d in devices))
    finally:
        scheduler.stop()
    assert overlap.is_set()


def test_shared_sdk_adapter_serializes_calls(fast_timing, fast_scheduler) -> None:
    config = AppConfig(
        scheduler=fast_scheduler,
        devices=[
            simulated(f"eaf-{i}", "focuser", "zwo_eaf", timing=fast_timing) for i in range(3)
        ],
    )
    hub = Hub(config)
    sdk = hub.simulated_sdks[BackendKind.ZWO_EAF]
    sdk.call_latency = 0.002

    hub.start()
    try:
        assert _wait(lambda: all(d.connected for d in hub.devices))
        assert _wait(lambda: min(hub.scheduler.tick_counts.values()) >= 10)
    finally:
        hub.shutdown()

    assert sdk.calls > 30
    assert sdk.overlaps == 0
