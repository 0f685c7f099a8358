"""
Scheduled Import Package.

Cadence computation, configuration storage and the background scheduler.
"""

from .schedule import compute_next_run
from .scheduler import ImportScheduler
from .store import ScheduleStore

__all__ = ["ImportScheduler", "ScheduleStore", "compute_next_run"]
