"""Periodic CPU/memory sampling while workers are active.

Samples are not attributable to a single worker: CPU is host-wide (averaged
across cores) and memory is the resident size of this process plus all of
its descendants.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from parallel_learn.orchestrator.events import EventBus, WorkersProgressEvent
from parallel_learn.orchestrator.models import ResourceSnapshot, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL_SECONDS = 1.0
_BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ProgressCounts:
    """Worker counts at one instant."""

    completed: int
    running: int
    total: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return int(self.completed * 100 / self.total)


@dataclass(frozen=True, slots=True)
class ResourceSample:
    cpu_percent: float
    memory_mb: float


ResourceSampler = Callable[[], ResourceSample]


class PsutilSampler:
    """Host CPU and process-tree resident memory via ``psutil``."""

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()
        # First cpu_percent() call only primes the counters and returns 0.0.
        psutil.cpu_percent(interval=None)

    def __call__(self) -> ResourceSample:
        rss = 0
        try:
            rss = self._process.memory_info().rss
            for child in self._process.children(recursive=True):
                with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                    rss += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            logger.debug("Memory sample unavailable", exc_info=True)
        return ResourceSample(
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_mb=rss / _BYTES_PER_MB,
        )


class ResourceMonitor:
    """Append-only snapshot series with running peaks for one run."""

    def __init__(
        self,
        *,
        bus: EventBus,
        progress: Callable[[], ProgressCounts],
        sampler: ResourceSampler | None = None,
        interval_seconds: float = DEFAULT_SAMPLE_INTERVAL_SECONDS,
    ) -> None:
        self.bus = bus
        self.interval_seconds = interval_seconds
        self._progress = progress
        # Built up front so the first cpu_percent() reading spans a real interval.
        self._sampler = sampler or PsutilSampler()
        self._started = time.monotonic()
        self.snapshots: list[ResourceSnapshot] = []
        self.peak_memory_mb = 0.0
        self.peak_cpu_percent = 0.0

    def sample(self) -> ResourceSnapshot:
        """Take one snapshot, update peaks, and emit ``workers:progress``."""

        measured = self._sampler()
        counts = self._progress()
        snapshot = ResourceSnapshot(
            timestamp=utc_now(),
            cpu_percent=measured.cpu_percent,
            memory_mb=measured.memory_mb,
            active_workers=counts.running,
        )
        self.snapshots.append(snapshot)
        self.peak_memory_mb = max(self.peak_memory_mb, snapshot.memory_mb)
        self.peak_cpu_percent = max(self.peak_cpu_percent, snapshot.cpu_percent)
        self.bus.emit(
            WorkersProgressEvent(
                completed_count=counts.completed,
                running_count=counts.running,
                total_count=counts.total,
                progress_percent=counts.percent,
                elapsed_ms=int((time.monotonic() - self._started) * 1000),
                memory_mb=round(snapshot.memory_mb, 1),
                cpu_percent=round(snapshot.cpu_percent, 1),
            ),
        )
        return snapshot

    async def run(self, stop: asyncio.Event) -> None:
        """Sample every interval while workers are active, until ``stop`` is set."""

        self._started = time.monotonic()
        while not stop.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            if stop.is_set():
                return
            if self._progress().running > 0:
                self.sample()
