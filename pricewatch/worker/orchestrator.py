"""Reconciliation orchestrator: runs every active competitor's adapter in turn."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from pricewatch.adapters.base import AdapterContext
from pricewatch.adapters.registry import AdapterRegistry
from pricewatch.alerts.engine import AlertEngine
from pricewatch.config import settings
from pricewatch.db.store import CatalogStore
from pricewatch.metrics import record_competitor_error

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Aggregated counters of one run."""

    run_id: int
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    no_match: int = 0
    alerts: int = 0
    messages: list[str] = field(default_factory=list)

    def add_message(self, message: str) -> None:
        if len(self.messages) < settings.max_summary_messages:
            self.messages.append(message)

    def joined_message(self) -> str:
        """Messages joined for the Run record ("OK" when there are none)."""
        return " | ".join(self.messages) if self.messages else "OK"


class RunCancelled(Exception):
    """Raised when a run stops early on request; carries the partial summary."""

    def __init__(self, summary: RunSummary):
        super().__init__(f"Run {summary.run_id} cancelled")
        self.summary = summary


class ReconciliationOrchestrator:
    """Drives one run across competitors, isolating failures per competitor."""

    def __init__(
        self,
        store: CatalogStore,
        registry: AdapterRegistry,
        alert_engine: Optional[AlertEngine] = None,
    ):
        self.store = store
        self.registry = registry
        self.alert_engine = alert_engine or AlertEngine(store)

    async def run_reconciliation(
        self,
        run_id: int,
        competitor_id: Optional[int] = None,
        only_new: bool = True,
        batch_size: int = 0,
        cancel_event: Optional[asyncio.Event] = None,
        run_date: Optional[date] = None,
    ) -> RunSummary:
        """
        Reconcile all active competitors (or one).

        Raises:
            RunCancelled: cancellation observed between competitors
        """
        run_date = run_date or datetime.utcnow().date()
        summary = RunSummary(run_id=run_id)
        competitors = await self.store.load_active_competitors(competitor_id)
        logger.info(f"Run {run_id}: {len(competitors)} competitor(s) to process for {run_date}")

        for competitor in competitors:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled(summary)

            if not competitor.adapter_id:
                summary.skipped += 1
                summary.add_message(f"Competitor {competitor.name} has no adapter id.")
                continue

            adapter = self.registry.resolve(competitor.adapter_id)
            if adapter is None:
                summary.errors += 1
                summary.add_message(f"Adapter not found: {competitor.adapter_id}.")
                record_competitor_error(competitor.name, "adapter_not_found")
                continue

            context = AdapterContext(
                competitor_id=competitor.id,
                competitor_name=competitor.name,
                base_url=competitor.base_url,
                run_id=run_id,
                run_date=run_date,
                only_new=only_new,
                batch_size=batch_size,
                cancel_event=cancel_event,
            )

            try:
                result = await adapter.run(context)
            except Exception as e:
                logger.error(
                    f"Run {run_id}: adapter {competitor.adapter_id} failed for {competitor.name}: {e}",
                    exc_info=True,
                    extra={"run_id": run_id, "competitor": competitor.name},
                )
                summary.errors += 1
                summary.add_message(f"Error running {competitor.name}: {e}")
                record_competitor_error(competitor.name, type(e).__name__)
                continue

            summary.processed += result.processed
            summary.created += result.created
            summary.updated += result.updated
            summary.errors += result.errors
            summary.no_match += result.no_match
            if result.message:
                summary.add_message(f"{competitor.name}: {result.message}")

            if result.cancelled or (cancel_event is not None and cancel_event.is_set()):
                raise RunCancelled(summary)

            try:
                summary.alerts += await self.alert_engine.generate_alerts(
                    competitor.id, run_date, competitor.name
                )
            except Exception as e:
                logger.error(
                    f"Run {run_id}: alert generation failed for {competitor.name}: {e}",
                    exc_info=True,
                    extra={"run_id": run_id, "competitor": competitor.name},
                )
                summary.add_message(f"Alert generation failed for {competitor.name}: {e}")

        logger.info(
            f"Run {run_id} summary: processed={summary.processed} created={summary.created} "
            f"updated={summary.updated} errors={summary.errors} skipped={summary.skipped} "
            f"no_match={summary.no_match} alerts={summary.alerts}"
        )
        return summary
