from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from capadmin.core.config import get_settings
from capadmin.core.container import ServiceHub
from capadmin.core.models import FAMILIES, ItemFamily

logger = logging.getLogger(__name__)


class WorkerScheduler:
    def __init__(self, hub: ServiceHub) -> None:
        self.hub = hub
        self.settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def _poll_family(self, family: ItemFamily) -> None:
        try:
            report = await self.hub.poller.poll(family)
            if report.ok:
                failed = [d.chat_id for d in report.deliveries if not d.ok]
                if failed:
                    logger.warning(
                        "poll_delivery_partial",
                        extra={"event": "poll_delivery_partial", "family": family.value, "count": len(failed)},
                    )
        except Exception as exc:  # noqa: BLE001
            logger.exception("poll_task_failed", extra={"event": "poll_task_failed", "family": family.value, "error": str(exc)})

    def start(self) -> None:
        interval_sec = self.settings.poll_interval_ms / 1000
        for family in FAMILIES:
            self.scheduler.add_job(
                self._poll_family,
                "interval",
                seconds=interval_sec,
                args=[family],
                id=f"poll:{family.value}",
                max_instances=1,
                next_run_time=datetime.now(timezone.utc),
            )
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
