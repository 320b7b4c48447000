"""
Maintenance scheduler for decay, compaction, expired-memory cleanup and embedding backfill.
"""

import threading
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from ..utils.config import SchedulerConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import Clock, utc_now

logger = get_logger(__name__)


class MaintenanceScheduler:
    """
    Runs decay once a day at ``decay_hour``, compaction once a day at ``compaction_hour`` and
    cleanup every ``cleanup_interval_hours``, all in UTC. Embedding backfill runs on the cleanup interval.

    ``run_pending(now)`` does the actual work and can be called directly; ``start()`` polls it
    from a daemon thread until ``stop()``.
    """

    def __init__(self,
                 decay,
                 compaction,
                 cleanup: Optional[Callable[[], int]] = None,
                 backfill: Optional[Callable[[], int]] = None,
                 scheduler_config: Optional[SchedulerConfig] = None,
                 cleanup_interval_hours: Optional[int] = None,
                 clock: Clock = utc_now):
        self.decay = decay
        self.compaction = compaction
        self.cleanup = cleanup
        self.backfill = backfill
        self.config = scheduler_config or config.scheduler
        self.cleanup_interval = timedelta(hours=cleanup_interval_hours or config.memory.cleanup_interval_hours)
        self.clock = clock

        self._last_decay: Optional[date] = None
        self._last_compaction: Optional[date] = None
        self._last_cleanup: Optional[datetime] = None
        self._last_backfill: Optional[datetime] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _due_daily(self, now: datetime, hour: int, last: Optional[date]) -> bool:
        return now.hour >= hour and last != now.date()

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run every job that is due.

        Args:
            now: Time to evaluate schedules against, defaults to the clock

        Returns:
            Names of the jobs that ran
        """
        now = now or self.clock()
        ran = []

        if self._due_daily(now, self.config.decay_hour, self._last_decay):
            self._last_decay = now.date()
            result = self.decay.run_daily_decay()
            logger.info(f'Scheduled decay finished: {result}')
            ran.append('decay')

        if self._due_daily(now, self.config.compaction_hour, self._last_compaction):
            self._last_compaction = now.date()
            results = self.compaction.compact_all()
            logger.info(f'Scheduled compaction finished for {len(results)} users')
            ran.append('compaction')

        if self.cleanup is not None and (self._last_cleanup is None or
                                         now - self._last_cleanup >= self.cleanup_interval):
            self._last_cleanup = now
            try:
                deleted = self.cleanup()
                logger.info(f'Scheduled cleanup removed {deleted} expired memories')
            except OpenSearchError as e:
                logger.error(f'Scheduled cleanup failed: {e}')
            ran.append('cleanup')

        if self.backfill is not None and (self._last_backfill is None or
                                          now - self._last_backfill >= self.cleanup_interval):
            self._last_backfill = now
            try:
                updated = self.backfill()
                logger.info(f'Scheduled backfill embedded {updated} memories')
            except OpenSearchError as e:
                logger.error(f'Scheduled backfill failed: {e}')
            ran.append('backfill')

        return ran

    def _loop(self):
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.config.poll_interval_seconds)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='memlife-maintenance', daemon=True)
        self._thread.start()
        logger.info('Maintenance scheduler started')

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info('Maintenance scheduler stopped')

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
