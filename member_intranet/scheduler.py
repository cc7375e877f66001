"""Background runner that continues paused mass-mail jobs once their pause is over."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from member_intranet import config
from member_intranet.services import mass_mail_service
from member_intranet.services.mail_service import get_email_gateway

logger = logging.getLogger(__name__)


class MailQueueScheduler:
    def __init__(
        self,
        session_factory: Callable,
        gateway_factory: Callable = get_email_gateway,
        poll_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.poll_seconds = poll_seconds or config.MAIL_QUEUE_POLL_SECONDS
        self.scheduler = BackgroundScheduler()
        self._last_run: datetime | None = None
        self._last_results: list[dict[str, Any]] = []

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.poll_seconds),
            id="mass_mail_queue",
            name="Mass mail queue",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            "Mail queue scheduler started",
            extra={"event": "mail_scheduler_started", "context": {"pollSeconds": self.poll_seconds}},
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
        logger.info("Mail queue scheduler stopped", extra={"event": "mail_scheduler_stopped"})

    def run_once(self) -> list[dict[str, Any]]:
        """One tick: process every job that is due. Errors are logged, the next tick retries."""
        self._last_run = datetime.now()
        db = self.session_factory()
        try:
            results = mass_mail_service.process_due_jobs(db, self.gateway_factory())
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Mail queue tick failed", extra={"event": "mail_scheduler_tick_failed"})
            results = []
        finally:
            db.close()
        self._last_results = results
        return results

    def status(self) -> dict[str, Any]:
        return {
            "running": bool(self.scheduler.running),
            "pollSeconds": self.poll_seconds,
            "lastRun": self._last_run,
            "lastResults": list(self._last_results),
        }
