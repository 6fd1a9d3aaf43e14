from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from capadmin.adapters.backend import BackendClient
from capadmin.core.errors import UpstreamError
from capadmin.core.models import FAMILIES, ItemFamily
from capadmin.services.delivery import DeliveryResult
from capadmin.services.item_store import ItemStore
from capadmin.services.lifecycle import LifecycleService

logger = logging.getLogger(__name__)


@dataclass
class PollReport:
    family: ItemFamily
    ok: bool
    new_items: list[str] = field(default_factory=list)
    sales: list[str] = field(default_factory=list)
    deliveries: list[DeliveryResult] = field(default_factory=list)
    error: str | None = None


class PollService:
    """One poll cycle per family in flight at a time; overlapping triggers await the running cycle."""

    def __init__(
        self,
        backend: BackendClient,
        stores: dict[ItemFamily, ItemStore],
        lifecycle: LifecycleService,
    ) -> None:
        self.backend = backend
        self.stores = stores
        self.lifecycle = lifecycle
        self._in_flight: dict[ItemFamily, asyncio.Task] = {}

    def is_running(self, family: ItemFamily) -> bool:
        task = self._in_flight.get(family)
        return task is not None and not task.done()

    async def poll(self, family: ItemFamily) -> PollReport:
        task = self._in_flight.get(family)
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_cycle(family))
            self._in_flight[family] = task
            task.add_done_callback(lambda t, f=family: self._clear(f, t))
        # a cancelled waiter must not cancel the shared cycle
        return await asyncio.shield(task)

    def _clear(self, family: ItemFamily, task: asyncio.Task) -> None:
        if self._in_flight.get(family) is task:
            del self._in_flight[family]

    async def _run_cycle(self, family: ItemFamily) -> PollReport:
        profile = FAMILIES[family]
        store = self.stores[family]
        started = time.perf_counter()
        try:
            payload = await self.backend.poll(profile)
        except UpstreamError as exc:
            logger.warning(
                "poll_failed",
                extra={"event": "poll_failed", "family": family.value, "error": str(exc)},
            )
            return PollReport(family=family, ok=False, error=str(exc))
        if not payload.success:
            logger.info("poll_empty", extra={"event": "poll_empty", "family": family.value})
            return PollReport(family=family, ok=False, error="backend returned no data")

        report = PollReport(family=family, ok=True)
        with store.deferred_save():
            if payload.new_items:
                inserted = store.upsert_new(payload.new_items)
                inserted_keys = {item.external_key for item in inserted}
                store.append_audit(
                    [p for p in payload.new_items if str(p.get("offchainGetgemsAddress") or "").strip() in inserted_keys]
                )
                for item in inserted:
                    report.new_items.append(item.external_key)
                    report.deliveries.extend(await self.lifecycle.broadcast_new(item))

            if profile.actionable:
                for sale in payload.new_sales:
                    key = str(sale.get("offchainGetgemsAddress") or "").strip()
                    # an operator approve or edit of the same item may be awaiting the ledger
                    async with self.lifecycle.item_lock(key):
                        try:
                            item, created = store.merge_sale_update(sale)
                        except ValueError as exc:
                            logger.warning(
                                "sale_payload_skipped",
                                extra={"event": "sale_payload_skipped", "family": family.value, "error": str(exc)},
                            )
                            continue
                        if created:
                            store.append_audit([sale])
                        report.sales.append(item.external_key)
                        report.deliveries.extend(await self.lifecycle.refresh(item))

        logger.info(
            "poll_cycle_done",
            extra={
                "event": "poll_cycle_done",
                "family": family.value,
                "count": len(report.new_items) + len(report.sales),
                "latency_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return report
