"""Scheduler subsystem driving control cycles."""

from fanpilot.scheduler.runner import IntervalRunner, SchedulerError

__all__ = [
    "IntervalRunner",
    "SchedulerError",
]
