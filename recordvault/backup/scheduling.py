"""
Backup Scheduler - decides on each clock tick whether a scheduled backup is due.

A backup is started when both hold:
- the time since the last completed/failed scheduled or manual backup is at
  least the configured interval (daily=24h, weekly=168h, monthly=720h), less
  the window width so the run stays anchored to its slot
- the tick falls inside [schedule_time, schedule_time + window)
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from .errors import Conflict
from .types import BackupConfig, BackupKind, BackupRecord, BackupStatus

logger = logging.getLogger(__name__)


def in_schedule_window(now: datetime, config: BackupConfig, window: timedelta) -> bool:
    """Check whether `now` falls in the configured time-of-day window."""
    hour, minute = config.time_of_day
    scheduled = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    # Window may straddle midnight, so yesterday's slot counts too
    for start in (scheduled, scheduled - timedelta(days=1)):
        if start <= now < start + window:
            return True
    return False


def is_backup_due(
    now: datetime,
    last_backup: Optional[BackupRecord],
    config: BackupConfig,
    tolerance: timedelta = timedelta(0)
) -> bool:
    """
    Check whether the configured interval has passed since `last_backup`.

    `tolerance` is subtracted from the interval so a run started a moment
    after its slot opened does not push the next run past its own slot.
    """
    if last_backup is None:
        return True
    return now - last_backup.started_at >= config.interval - tolerance


class BackupScheduler:
    """
    Tick handler. Ticks are processed one at a time.
    """

    def __init__(self, engine, clock, window_minutes: int = 15):
        """
        Args:
            engine: BackupEngine to trigger
            clock: Clock with now()
            window_minutes: Width of the time-of-day window
        """
        self.engine = engine
        self.clock = clock
        self.window = timedelta(minutes=window_minutes)
        self._tick_lock = threading.Lock()

    def last_backup(self) -> Optional[BackupRecord]:
        """Most recent completed or failed scheduled/manual backup."""
        records = self.engine.registry.list(
            limit=1,
            statuses=[BackupStatus.COMPLETED, BackupStatus.FAILED],
            kinds=[BackupKind.SCHEDULED, BackupKind.MANUAL]
        )
        return records[0] if records else None

    def tick(self, now: Optional[datetime] = None) -> Optional[BackupRecord]:
        """
        Process one clock tick.

        Returns:
            The pending record of the backup started by this tick, or None
        """
        with self._tick_lock:
            config = self.engine.get_backup_config()
            if not config.auto_backup_enabled:
                return None

            now = now or self.clock.now()

            if not in_schedule_window(now, config, self.window):
                return None

            if not is_backup_due(now, self.last_backup(), config, tolerance=self.window):
                return None

            try:
                record = self.engine.create_scheduled_backup(
                    name=f"scheduled-{now.strftime('%Y-%m-%d')}"
                )
            except Conflict as e:
                logger.info(f"Scheduled backup skipped: {e}")
                return None

            logger.info(f"Scheduled backup started: {record.id}")
            return record
