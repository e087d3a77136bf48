"""Interval runner using APScheduler."""

from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

log = structlog.get_logger()

JOB_ID = "control_cycle"


class SchedulerError(Exception):
    """Raised when scheduler configuration fails."""

    pass


class IntervalRunner:
    """APScheduler-based tick source for the control loop.

    Supports:
    - Fixed wall-clock interval ticks (first tick immediately)
    - Stop requests that arrive before the scheduler has started
    - Overrun protection: a slow tick is never run twice at once and missed
      ticks are coalesced into one
    """

    def __init__(
        self,
        timezone: str = "UTC",
        misfire_grace_time: Optional[int] = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            timezone: IANA timezone for the scheduler clock
            misfire_grace_time: Seconds a late tick may still run (defaults to
                the interval)
        """
        self.timezone = timezone
        self.misfire_grace_time = misfire_grace_time
        self._scheduler: Optional[BlockingScheduler] = None
        self._stop_requested = False

    def _create_scheduler(self, interval: float) -> BlockingScheduler:
        """Create configured BlockingScheduler."""
        grace = self.misfire_grace_time
        job_defaults = {
            "coalesce": True,  # Combine missed runs into one
            "misfire_grace_time": int(grace if grace is not None else max(interval, 1)),
            "max_instances": 1,  # Prevent concurrent runs
        }
        return BlockingScheduler(
            timezone=self.timezone,
            job_defaults=job_defaults,
        )

    def run(self, func: Callable[[], None], interval: float) -> None:
        """Start ticking ``func`` every ``interval`` seconds.

        Blocks until shutdown() is called from another thread or a signal
        handler.

        Args:
            func: Function to execute on every tick
            interval: Seconds between tick starts

        Raises:
            SchedulerError: If the interval is not positive
        """
        if interval <= 0:
            raise SchedulerError(f"Interval must be positive, got {interval}")
        if self._stop_requested:
            log.info("scheduler_shutdown", reason="stopped before start")
            return

        self._scheduler = self._create_scheduler(interval)
        trigger = IntervalTrigger(seconds=interval, timezone=self.timezone)
        self._scheduler.add_job(
            func,
            trigger,
            id=JOB_ID,
            next_run_time=datetime.now(self._scheduler.timezone),
        )
        log.info("job_scheduled", schedule_type="interval", interval=interval)

        def on_job_error(event: Any) -> None:
            log.error("job_failed", error=str(event.exception))

        def on_job_missed(event: Any) -> None:
            log.warning("cycle_overrun", scheduled=str(event.scheduled_run_time))

        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)

        log.info("scheduler_starting", interval=interval)
        try:
            self._scheduler.start()
        except KeyboardInterrupt:
            log.info("scheduler_shutdown", reason="keyboard interrupt")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def shutdown(self, wait: bool = False) -> None:
        """Stop the scheduler; safe to call from a signal handler or a tick.

        A call before run() makes the next run() return at once.
        """
        self._stop_requested = True
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            log.info("scheduler_shutdown", reason="explicit shutdown")
