"""Price gap and coverage alert generation."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from pricewatch.db.models import AlertType
from pricewatch.db.store import AlertRuleRow, CatalogStore, NewAlert
from pricewatch.metrics import record_alerts_created

logger = logging.getLogger(__name__)


@dataclass
class GapCheck:
    """One price field checked against a rule threshold."""

    alert_type: AlertType
    label: str
    threshold: Optional[Decimal]

    def check(
        self, observed: Optional[Decimal], baseline: Optional[Decimal]
    ) -> tuple[bool, Optional[Decimal]]:
        """
        Check whether the observed price deviates from the baseline.

        Returns:
            Tuple of (triggered, signed delta percent)
        """
        if self.threshold is None or observed is None or baseline is None or baseline <= 0:
            return False, None

        delta = (Decimal(observed) - Decimal(baseline)) / Decimal(baseline) * 100
        return abs(delta) >= Decimal(self.threshold), delta

    def message(self, description: str, observed: Decimal, baseline: Decimal, delta: Decimal) -> str:
        return (
            f"{self.label} gap {delta:+.2f}% for {description}: "
            f"competitor {observed:.2f} vs ours {baseline:.2f} (threshold {self.threshold}%)"
        )


def day_bounds(run_date: date) -> tuple[datetime, datetime]:
    """[start, end) of a calendar day as naive UTC datetimes."""
    start = datetime.combine(run_date, time.min)
    return start, start + timedelta(days=1)


def stamp_within(run_date: date, now: Optional[datetime] = None) -> datetime:
    """Creation time for an alert of run_date, kept inside that day's window.

    A run that crosses midnight still files its alerts under the run date.
    """
    day_start, day_end = day_bounds(run_date)
    now = now or datetime.utcnow()
    if now < day_start:
        return day_start
    if now >= day_end:
        return day_end - timedelta(microseconds=1)
    return now


class AlertEngine:
    """Creates alerts from a competitor's snapshots and no-match mappings."""

    def __init__(self, store: CatalogStore):
        self.store = store

    async def generate_alerts(
        self, competitor_id: int, run_date: date, competitor_name: str = ""
    ) -> int:
        """
        Create the day's alerts for one competitor.

        Alerts already created the same day for a (product, type) are not
        repeated, so calling this twice for an unchanged day adds nothing.

        Returns:
            Number of alerts created
        """
        day_start, day_end = day_bounds(run_date)
        existing = await self.store.load_todays_alert_keys(competitor_id, day_start, day_end)
        rules = {rule.brand_id: rule for rule in await self.store.load_active_alert_rules()}
        created_at = stamp_within(run_date)
        pending: list[NewAlert] = []

        def emit(product_id: int, alert_type: AlertType, message: str, rule_id: Optional[int] = None):
            key = (product_id, alert_type.value)
            if key in existing:
                return
            existing.add(key)
            pending.append(
                NewAlert(
                    product_id=product_id,
                    competitor_id=competitor_id,
                    type=alert_type.value,
                    message=message,
                    alert_rule_id=rule_id,
                    created_at=created_at,
                )
            )

        if rules:
            snapshots = await self.store.load_snapshots_for_day(competitor_id, run_date)
            for snap in snapshots:
                rule = rules.get(snap.brand_id)
                if rule is None:
                    continue
                for check, observed, baseline in self._checks(rule, snap):
                    triggered, delta = check.check(observed, baseline)
                    if triggered:
                        emit(
                            snap.product_id,
                            check.alert_type,
                            check.message(snap.description, observed, baseline, delta),
                            rule.id,
                        )

        for product_id in await self.store.load_no_match_mappings(competitor_id):
            emit(
                product_id,
                AlertType.NO_MATCH,
                f"No competitor listing found for product {product_id}",
            )

        created = await self.store.insert_alerts(pending)
        for alert_type in AlertType:
            record_alerts_created(
                competitor_name or str(competitor_id),
                alert_type.value,
                sum(1 for a in pending if a.type == alert_type.value),
            )

        if created:
            logger.info(f"Created {created} alerts for competitor {competitor_name or competitor_id}")
        return created

    @staticmethod
    def _checks(rule: AlertRuleRow, snap):
        return [
            (
                GapCheck(AlertType.LIST, "List price", rule.list_threshold),
                snap.list_price,
                snap.baseline_list_price,
            ),
            (
                GapCheck(AlertType.PROMO, "Promo price", rule.promo_threshold),
                snap.promo_price,
                snap.baseline_promo_price,
            ),
        ]
