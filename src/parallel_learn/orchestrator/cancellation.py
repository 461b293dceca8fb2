"""Global cooperative-then-forceful cancellation of a parallel run."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterable

from parallel_learn.orchestrator.events import (
    EventBus,
    WorkerCancelingEvent,
    WorkersCancelingEvent,
)
from parallel_learn.orchestrator.models import ACTIVE_STATUSES, WorkerRecord, WorkerStatus

logger = logging.getLogger(__name__)

CANCELED_ERROR = "Worker canceled"


class CancellationToken:
    """One-shot signal checked by workers at spawn, retry, and exit checkpoints."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Set the token. Returns ``True`` only for the call that set it."""

        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class CancellationController:
    """Owns the run's cancellation token and the canceling transition.

    ``cancel()`` only flips state and emits events; the worker tasks observe
    the token, stop their processes (terminate, then kill after
    ``grace_seconds``) and mark their own records ``canceled``.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        token: CancellationToken | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.bus = bus
        self.token = token or CancellationToken()
        self.grace_seconds = grace_seconds
        self._records: list[WorkerRecord] = []

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def attach(self, records: Iterable[WorkerRecord]) -> None:
        self._records = list(records)

    def cancel(self) -> bool:
        """Request cancellation. Idempotent; returns ``True`` on the first call."""

        if not self.token.cancel():
            return False

        affected = [record for record in self._records if record.status in ACTIVE_STATUSES]
        logger.warning(
            "Cancellation requested: %d of %d workers active",
            len(affected),
            len(self._records),
        )
        for record in affected:
            record.transition(WorkerStatus.CANCELING)
        self.bus.emit(
            WorkersCancelingEvent(running_count=len(affected), total_count=len(self._records)),
        )
        for record in affected:
            self.bus.emit(WorkerCancelingEvent(worker_id=record.id))
        return True

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop,
        signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
    ) -> list[int]:
        """Route process signals to :meth:`cancel`. Returns the signals installed."""

        installed: list[int] = []
        for signum in signals:
            try:
                loop.add_signal_handler(signum, self.cancel)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows loops and non-main threads do not support this.
                continue
            installed.append(signum)
        return installed

    @staticmethod
    def remove_signal_handlers(loop: asyncio.AbstractEventLoop, signals: list[int]) -> None:
        for signum in signals:
            loop.remove_signal_handler(signum)
