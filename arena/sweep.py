import logging
import threading
from datetime import datetime
from typing import Optional, Dict

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .lifecycle import TournamentLifecycle

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "tournament_status_sweep"


class TournamentSweeper:
    """
    Periodic task advancing time-driven tournament status.

    Runs once at start and then on the configured cron schedule. At most one
    sweep runs at a time; an invocation that finds another in progress is
    skipped. A failed sweep is logged and retried at the next tick.
    """

    def __init__(self, app, lifecycle: TournamentLifecycle, cron: str = "0 * * * *",
                 timezone: str = "UTC"):
        self.app = app
        self.lifecycle = lifecycle
        self.cron = cron
        self.timezone = timezone
        self._guard = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return

        scheduler = BackgroundScheduler(timezone=self.timezone)
        scheduler.add_job(
            self.run_once,
            CronTrigger.from_crontab(self.cron, timezone=self.timezone),
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        # Immediate first pass
        scheduler.add_job(self.run_once, id=f"{SWEEP_JOB_ID}_startup")
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Tournament sweep scheduled (%s)", self.cron)

    def stop(self, wait: bool = False) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Tournament sweep stopped")

    def run_once(self, now: datetime = None) -> Optional[Dict[str, int]]:
        """Run one sweep; returns its counts, or None when skipped or failed."""
        if not self._guard.acquire(blocking=False):
            logger.info("Tournament sweep already running; skipping this tick")
            return None
        try:
            with self.app.app_context():
                result = self.lifecycle.advance_pending(now)
            logger.info("Tournament sweep at %s: %s", (now or datetime.utcnow()).isoformat(), result)
            return result
        except Exception:
            logger.exception("Tournament sweep failed; will retry at next tick")
            return None
        finally:
            self._guard.release()
