import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from kpi_compliance.audits import scheduler
from kpi_compliance.automation.processor import KPITriggerProcessor
from kpi_compliance.core.config import Settings
from kpi_compliance.core.store import isoformat, utcnow
from kpi_compliance.training import assignments

logger = logging.getLogger(__name__)


class AutomationSweeper:
    """Periodic background pass over pending work."""

    def __init__(self, processor: KPITriggerProcessor, interval_seconds: Optional[float] = None):
        self.processor = processor
        self.interval_seconds = interval_seconds or Settings.AUTOMATION_INTERVAL_SECONDS
        self.last_run: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, Any]] = None
        self._task: Optional[asyncio.Task] = None

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        store = self.processor.store
        dispatcher = self.processor.dispatcher

        kpi = self.processor.process_pending(now=now)
        flagged = assignments.refresh_overdue(store, now=now)
        overdue_audits = scheduler.overdue_audits(store, now=now)
        if overdue_audits:
            logger.warning("Overdue audits: count=%s", len(overdue_audits))
        due = dispatcher.dispatch_due(now=now)
        retried = dispatcher.retry_failed(now=now)

        summary = {
            "ran_at": isoformat(now),
            "kpi": kpi,
            "trainings_flagged_overdue": len(flagged),
            "overdue_audits": len(overdue_audits),
            "scheduled_emails": due.to_dict(),
            "email_retries": retried.to_dict(),
        }
        self.last_run = now
        self.last_summary = summary
        logger.info(
            "Automation sweep: processed=%s failed=%s overdue_trainings=%s overdue_audits=%s",
            kpi["processed"], kpi["failed"], len(flagged), len(overdue_audits),
        )
        return summary

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Automation sweep failed")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Automation sweeper started: interval=%ss", self.interval_seconds)
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Automation sweeper stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run": isoformat(self.last_run),
            "last_summary": self.last_summary,
        }
