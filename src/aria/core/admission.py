"""Per-caller fixed-window admission control with deferred replay."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

DeferredTask = Callable[[], Awaitable[object]]

DEFAULT_WINDOW_SECONDS = 60.0
# Idle windows are forgotten after this many window lengths.
IDLE_WINDOWS_BEFORE_SWEEP = 5


@dataclass
class AdmissionWindow:
    request_count: int
    window_start: float
    deferred: list[tuple[DeferredTask, float]] = field(default_factory=list)
    timer_pending: bool = False


class AdmissionController:
    """Count requests per identity in fixed windows and replay deferred work.

    Every reset releases at most one deferred task, so replayed requests are
    held to the same rate as fresh ones.
    """

    def __init__(
        self,
        *,
        limit: int,
        restricted_limit: int | None = None,
        restricted_ids: Iterable[str] = (),
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        self._limit = limit
        self._restricted_limit = restricted_limit if restricted_limit is not None else limit // 2
        self._restricted_ids = frozenset(restricted_ids)
        self._window = window_seconds
        self._clock = clock
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
        self._windows: dict[str, AdmissionWindow] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def limit(self) -> int:
        return self._limit

    def start(self) -> None:
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self._window * IDLE_WINDOWS_BEFORE_SWEEP),
            id="admission.sweep",
            replace_existing=True,
        )
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def limit_for(self, identity: str) -> int:
        return self._restricted_limit if identity in self._restricted_ids else self._limit

    def update_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        self._limit = limit
        logger.info("admission.limit.updated limit={}", limit)

    def try_admit(self, identity: str) -> bool:
        now = self._clock()
        window = self._windows.get(identity)
        if window is None:
            self._windows[identity] = AdmissionWindow(request_count=1, window_start=now)
            return True

        if now - window.window_start >= self._window:
            window.request_count = 1
            window.window_start = now
            return True

        if window.request_count >= self.limit_for(identity):
            logger.info(
                "admission.denied identity={} count={} retry_after={:.1f}",
                identity,
                window.request_count,
                self.time_until_reset(identity),
            )
            return False

        window.request_count += 1
        return True

    def time_until_reset(self, identity: str) -> float:
        window = self._windows.get(identity)
        if window is None:
            return 0.0
        elapsed = self._clock() - window.window_start
        return max(0.0, self._window - elapsed)

    def deferred_count(self, identity: str) -> int:
        window = self._windows.get(identity)
        return len(window.deferred) if window is not None else 0

    def defer_until_reset(self, identity: str, task: DeferredTask) -> None:
        """Queue `task` to run once the identity's window resets."""
        now = self._clock()
        window = self._windows.setdefault(identity, AdmissionWindow(request_count=0, window_start=now))
        window.deferred.append((task, now))
        logger.info("admission.deferred identity={} queued={}", identity, len(window.deferred))
        if not window.timer_pending:
            self._schedule_replay(identity, self.time_until_reset(identity))

    def _schedule_replay(self, identity: str, delay: float) -> None:
        window = self._windows[identity]
        window.timer_pending = True
        self._scheduler.add_job(
            self.replay,
            trigger=DateTrigger(run_date=datetime.now(UTC) + timedelta(seconds=delay)),
            args=[identity],
            id=f"admission.replay:{identity}",
            replace_existing=True,
        )

    async def replay(self, identity: str) -> None:
        """Reset the identity's window and run its oldest deferred task."""
        window = self._windows.get(identity)
        if window is None:
            return
        window.timer_pending = False
        if not window.deferred:
            return

        task, enqueued_at = window.deferred.pop(0)
        window.request_count = 1
        window.window_start = self._clock()
        if window.deferred:
            self._schedule_replay(identity, self._window)

        try:
            await task()
        except Exception:
            logger.exception("admission.replay.failed identity={}", identity)
            return
        logger.info(
            "admission.replayed identity={} waited={:.1f} remaining={}",
            identity,
            window.window_start - enqueued_at,
            len(window.deferred),
        )

    def sweep(self) -> int:
        """Forget idle windows that hold no deferred work."""
        now = self._clock()
        horizon = self._window * IDLE_WINDOWS_BEFORE_SWEEP
        expired = [
            identity
            for identity, window in self._windows.items()
            if now - window.window_start > horizon and not window.deferred
        ]
        for identity in expired:
            del self._windows[identity]
        if expired:
            logger.debug("admission.sweep removed={}", len(expired))
        return len(expired)

    def __contains__(self, identity: object) -> bool:
        return identity in self._windows
