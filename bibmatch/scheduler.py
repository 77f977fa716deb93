"""
Debounced, per‑event scheduling of clustering runs.

Each processed photo calls :meth:`ClusteringScheduler.schedule_photo_processed`.
Uploading a hundred photos must not trigger a hundred clustering runs, so
the scheduler waits for a quiet period after the *last* call for an event
before running anything.  Per event it keeps one :class:`EventSchedule`
record:

- ``idle``: no timer armed, no run in progress (the record is dropped).
- ``pending``: a quiet‑period timer is armed.  Scheduling again cancels it
  and arms a new one.
- ``running``: the needs‑clustering check and the clustering run are in
  progress.  At most one run per event exists at any time; a timer that
  fires during a run re‑arms itself instead of starting a second one.

Events are independent of each other.  Timers come from an injectable
factory (``threading.Timer`` by default) so the state machine can be driven
by hand in tests.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PERIOD = 30.0


class ScheduleState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class TimerHandle(Protocol):
    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Default timer factory: a daemon :class:`threading.Timer`."""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


@dataclass
class EventSchedule:
    event_id: str
    timer: Optional[TimerHandle] = None
    running: bool = False

    @property
    def state(self) -> ScheduleState:
        # A run in progress takes precedence over a timer armed during it
        if self.running:
            return ScheduleState.RUNNING
        if self.timer is not None:
            return ScheduleState.PENDING
        return ScheduleState.IDLE


class ClusteringScheduler:
    """Coalesces clustering requests per event.

    Parameters
    ----------
    needs_clustering: callable
        ``needs_clustering(event_id) -> bool``; evaluated when the quiet
        period expires.  A false result ends the cycle without a run.
    run_clustering: callable
        ``run_clustering(event_id)``; performs the clustering run.  Its
        return value is logged.  Exceptions are logged and counted, never
        propagated.
    quiet_period: float
        Seconds without new requests before an event is clustered.
    timer_factory: callable, optional
        ``timer_factory(delay, callback)`` returning an object with
        ``start()`` and ``cancel()``.
    """

    def __init__(self, needs_clustering: Callable[[str], bool], run_clustering: Callable[[str], Any],
                 quiet_period: float = DEFAULT_QUIET_PERIOD,
                 timer_factory: Optional[TimerFactory] = None) -> None:
        self.needs_clustering = needs_clustering
        self.run_clustering = run_clustering
        self.quiet_period = quiet_period
        self.timer_factory = timer_factory or thread_timer
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._schedules: Dict[str, EventSchedule] = {}
        self._closed = False
        self.runs_started = 0
        self.runs_skipped = 0
        self.runs_failed = 0
        self.runs_rearmed = 0

    def schedule_photo_processed(self, event_id: str) -> None:
        """Request a clustering run for ``event_id`` after the quiet period.

        Fire‑and‑forget; calling it again before the timer fires restarts
        the quiet period.
        """
        with self._lock:
            if self._closed:
                logger.debug("Scheduler closed, ignoring request for event %s", event_id)
                return
            schedule = self._schedules.setdefault(event_id, EventSchedule(event_id))
            self._arm(schedule)
        logger.debug("Clustering scheduled for event %s in %.0fs", event_id, self.quiet_period)

    def _arm(self, schedule: EventSchedule) -> None:
        # Caller holds the lock
        if schedule.timer is not None:
            schedule.timer.cancel()
        timer: Optional[TimerHandle] = None

        def fire() -> None:
            self._on_timer(schedule.event_id, timer)

        timer = self.timer_factory(self.quiet_period, fire)
        schedule.timer = timer
        timer.start()

    def _on_timer(self, event_id: str, timer: Optional[TimerHandle]) -> None:
        with self._lock:
            schedule = self._schedules.get(event_id)
            if schedule is None or schedule.timer is not timer:
                # Cancelled or superseded while the callback was already on its way
                return
            schedule.timer = None
            if schedule.running:
                logger.info("Clustering already running for event %s, rescheduling", event_id)
                self.runs_rearmed += 1
                self._arm(schedule)
                return
            schedule.running = True

        try:
            if not self.needs_clustering(event_id):
                logger.info("Event %s: no clustering needed", event_id)
                with self._lock:
                    self.runs_skipped += 1
                return
            with self._lock:
                self.runs_started += 1
            logger.info("Starting automatic clustering for event %s", event_id)
            result = self.run_clustering(event_id)
            logger.info("Automatic clustering for event %s finished: %s", event_id, result)
        except Exception:
            logger.exception("Automatic clustering failed for event %s", event_id)
            with self._lock:
                self.runs_failed += 1
        finally:
            with self._lock:
                schedule.running = False
                if schedule.timer is None:
                    self._schedules.pop(event_id, None)
                self._idle.notify_all()

    def state(self, event_id: str) -> ScheduleState:
        with self._lock:
            schedule = self._schedules.get(event_id)
            return schedule.state if schedule else ScheduleState.IDLE

    def pending_events(self) -> List[str]:
        """Events with an armed timer or a run in progress."""
        with self._lock:
            return sorted(self._schedules)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no event is pending or running.  Returns ``False`` on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._schedules, timeout=timeout)

    def shutdown(self) -> None:
        """Cancel every armed timer and refuse new requests.

        Runs already in progress finish normally.
        """
        with self._lock:
            self._closed = True
            for event_id in list(self._schedules):
                schedule = self._schedules[event_id]
                if schedule.timer is not None:
                    schedule.timer.cancel()
                    schedule.timer = None
                if not schedule.running:
                    del self._schedules[event_id]
            self._idle.notify_all()
