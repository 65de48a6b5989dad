"""
Poll scheduler.

A single scheduler thread decides which devices are due and submits their
ticks to a worker pool. A device is never submitted while its previous tick
is still running, so each device sees strictly sequential ticks while
different devices tick in parallel. Shared adapters serialize the overlapping
backend calls themselves.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Set

from alpaca_hub.config.models import SchedulerConfig
from alpaca_hub.core.device import Device


logger = logging.getLogger(__name__)


class PollScheduler:
    """
    Runs device ticks at the delay each tick asks for.

    Args:
        devices: Devices to drive.
        workers: Size of the worker pool.
        idle_sleep: Scheduler loop sleep between scans (seconds).
        min_delay: Lower clamp for tick delay hints (seconds).
        max_delay: Upper clamp for tick delay hints (seconds).
        clock: Monotonic time source.
    """

    def __init__(
        self,
        devices: Iterable[Device],
        workers: int = 4,
        idle_sleep: float = 0.02,
        min_delay: float = 0.01,
        max_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._devices: List[Device] = list(devices)
        self._workers = workers
        self._idle_sleep = idle_sleep
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._clock = clock

        self._lock = threading.Lock()
        self._due: Dict[str, float] = {d.name: 0.0 for d in self._devices}
        self._running: Set[str] = set()
        self.tick_counts: Dict[str, int] = {d.name: 0 for d in self._devices}

        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, devices: Iterable[Device], config: SchedulerConfig) -> "PollScheduler":
        return cls(
            devices,
            workers=config.workers,
            idle_sleep=config.idle_sleep_ms / 1000.0,
            min_delay=config.min_delay_ms / 1000.0,
            max_delay=config.max_delay_ms / 1000.0,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="tick")
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started ({len(self._devices)} devices, {self._workers} workers)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop scheduling and wait for running ticks to finish."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Scheduler stopped")

    def wake(self, device: Device) -> None:
        """Make a device due now (a request just queued a command)."""
        with self._lock:
            if device.name in self._due:
                self._due[device.name] = 0.0

    def _run(self) -> None:
        logger.debug("Scheduler loop started")
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._idle_sleep)
        logger.debug("Scheduler loop stopped")

    def run_once(self) -> int:
        """
        Submit every due device that is not already ticking.

        Returns:
            Number of ticks submitted.
        """
        executor = self._executor
        if executor is None:
            return 0

        now = self._clock()
        submitted = 0
        with self._lock:
            for device in self._devices:
                name = device.name
                if name in self._running or self._due[name] > now:
                    continue
                self._running.add(name)
                executor.submit(self._tick, device)
                submitted += 1
        return submitted

    def _clamp(self, delay: float) -> float:
        return min(max(delay, self._min_delay), self._max_delay)

    def _tick(self, device: Device) -> None:
        try:
            delay = device.tick()
        except Exception as e:
            # A driver bug must not stop the other devices
            logger.exception(f"{device.name}: tick failed: {e}")
            delay = self._max_delay
        with self._lock:
            self._due[device.name] = self._clock() + self._clamp(delay)
            self.tick_counts[device.name] += 1
            self._running.discard(device.name)
