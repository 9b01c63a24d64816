"""
Reconciliation Sweep and Ledger Health Check
============================================

PURPOSE:
    ReconciliationSweep pages Stripe events over a lookback window, finds the
    ones the ledger does not reflect (webhook lost or failed) and replays them
    through the same FiatEventProcessor the webhook uses. Each replay is its
    own ledger transaction, so one failing event never aborts the sweep. A
    dry run reports the missed events and writes nothing.

    LedgerHealthCheck inspects the ledger itself, independent of the sweep:

        orphan_transactions    rows for missing accounts, or written after
                               the account was closed             critical
        duplicate_keys         an idempotency key or a purchase payment ref
                               used more than once                critical
        balance_drift          account balance != sum of its rows critical
        unprocessed_events     recent checkouts not yet credited  warning

    Critical findings raise a critical alert and are never repaired here.

SCHEDULE:
    CLI (creditledger.scripts.reconcile / ledger_health), cron, or the
    in-process loop enabled by CREDITLEDGER_RECONCILIATION_INTERVAL_S.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from stripe import StripeError

from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.errors import PaymentProviderError
from creditledger.services.fiat_events import (
    CHECKOUT_COMPLETED,
    HANDLED_EVENT_TYPES,
    FiatEventProcessor,
    as_dict,
)
from creditledger.services.ledger import CreditLedger, accounts, transactions

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
APPLIED_OUTCOMES = {"credited", "refunded", "recorded"}


@dataclass
class ReconciliationSummary:
    lookback_hours: int
    dry_run: bool
    events_checked: int = 0
    processed_count: int = 0
    missed_count: int = 0
    replayed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    missed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def list_events(stripe_client, types: List[str], created_gte: int, limit: int = BATCH_SIZE) -> List[Dict[str, Any]]:
    """All events of ``types`` created since ``created_gte``, following pagination."""
    try:
        page = stripe_client.Event.list(limit=limit, created={"gte": created_gte}, types=types)
        return [as_dict(e) for e in page.auto_paging_iter()]
    except StripeError as exc:
        send_alert(
            "Stripe event listing failed",
            str(exc),
            level=AlertLevel.HIGH,
            category=AlertCategory.EXTERNAL_SERVICE,
            fingerprint="external.stripe.error",
        )
        raise PaymentProviderError(detail=f"Event.list failed: {exc}") from exc


class ReconciliationSweep:
    def __init__(self, processor: FiatEventProcessor, stripe_client=None) -> None:
        self.processor = processor
        self.stripe = stripe_client or processor.stripe

    def run(self, lookback_hours: int = 24, dry_run: bool = False, now: Optional[float] = None) -> ReconciliationSummary:
        logger.info(
            "Starting reconciliation (%s), looking back %d hours",
            "DRY RUN" if dry_run else "LIVE", lookback_hours,
        )
        created_gte = int((now if now is not None else time.time()) - lookback_hours * 3600)
        events = list_events(self.stripe, HANDLED_EVENT_TYPES, created_gte)
        # Stripe lists newest first; a refund must replay after its checkout
        events.sort(key=lambda event: event.get("created") or 0)

        summary = ReconciliationSummary(lookback_hours=lookback_hours, dry_run=dry_run, events_checked=len(events))
        missed_events: List[Dict[str, Any]] = []

        for event in events:
            if self.processor.is_applied(event):
                summary.processed_count += 1
                continue
            missed_events.append(event)
            summary.missed.append({"id": event.get("id"), "type": event.get("type"), "created": event.get("created")})
            logger.warning("Missed event: %s (%s)", event.get("id"), event.get("type"))
        summary.missed_count = len(missed_events)

        if dry_run or not missed_events:
            logger.info("reconciliation_summary", extra=summary.to_dict())
            return summary

        for event in missed_events:
            try:
                outcome = self.processor.process(event, source="reconciliation")
            except Exception as exc:
                summary.failed_count += 1
                logger.exception("Failed to replay %s", event.get("id"))
                send_alert(
                    "Reconciliation replay failed",
                    f"{event.get('id')} ({event.get('type')}): {exc}",
                    level=AlertLevel.HIGH,
                    category=AlertCategory.BUSINESS,
                    context={"event_id": event.get("id")},
                    fingerprint="business.reconciliation.replay_failed",
                )
                continue
            if outcome in APPLIED_OUTCOMES:
                summary.replayed_count += 1
            else:
                summary.skipped_count += 1

        logger.info("reconciliation_summary", extra=summary.to_dict())
        return summary


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@dataclass
class CheckResult:
    name: str
    status: str  # ok | warning | critical
    count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class HealthReport:
    checks: List[CheckResult]

    @property
    def critical(self) -> bool:
        return any(c.status == "critical" for c in self.checks)

    @property
    def healthy(self) -> bool:
        return all(c.status == "ok" for c in self.checks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "critical": self.critical,
            "checks": [asdict(c) for c in self.checks],
        }


class LedgerHealthCheck:
    def __init__(self, ledger: CreditLedger, processor: Optional[FiatEventProcessor] = None, stripe_client=None) -> None:
        self.ledger = ledger
        self.processor = processor
        self.stripe = stripe_client or (processor.stripe if processor else None)

    def run(self, window_days: int = 7, include_provider: bool = True, now: Optional[datetime] = None) -> HealthReport:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=window_days)

        checks = [
            self.check_orphans(cutoff),
            self.check_duplicate_keys(cutoff),
            self.check_balance_drift(),
        ]
        if include_provider and self.processor is not None and self.stripe is not None:
            checks.append(self.check_unprocessed_events(now))

        report = HealthReport(checks=checks)
        for check in checks:
            if check.status == "critical":
                send_alert(
                    "Ledger integrity violation",
                    f"{check.name}: {check.count} finding(s)",
                    level=AlertLevel.CRITICAL,
                    category=AlertCategory.DATABASE,
                    context={"check": check.name, "sample": check.details[:5]},
                    fingerprint=f"database.ledger.{check.name}",
                )
        logger.info("ledger_health_report", extra={"critical": report.critical, "healthy": report.healthy})
        return report

    def check_orphans(self, cutoff: datetime) -> CheckResult:
        t, a = transactions, accounts
        stmt = (
            sa.select(t.c.id, t.c.user_id, t.c.type, t.c.amount)
            .select_from(t.outerjoin(a, t.c.user_id == a.c.id))
            .where(
                t.c.created_at > cutoff,
                sa.or_(a.c.id.is_(None), sa.and_(a.c.deleted_at.is_not(None), t.c.created_at > a.c.deleted_at)),
            )
        )
        with self.ledger.engine.connect() as conn:
            rows = [dict(r._mapping) for r in conn.execute(stmt)]
        return CheckResult("orphan_transactions", "critical" if rows else "ok", len(rows), rows)

    def check_duplicate_keys(self, cutoff: datetime) -> CheckResult:
        t = transactions
        by_key = (
            sa.select(t.c.idempotency_key.label("ref"), sa.func.count().label("count"))
            .where(t.c.idempotency_key.is_not(None))
            .group_by(t.c.idempotency_key)
            .having(sa.func.count() > 1)
        )
        by_payment = (
            sa.select(t.c.payment_ref.label("ref"), sa.func.count().label("count"))
            .where(t.c.payment_ref.is_not(None), t.c.payment_ref != "", t.c.type == "purchase", t.c.created_at > cutoff)
            .group_by(t.c.payment_ref)
            .having(sa.func.count() > 1)
        )
        with self.ledger.engine.connect() as conn:
            details = [{"kind": "idempotency_key", **dict(r._mapping)} for r in conn.execute(by_key)]
            details += [{"kind": "payment_ref", **dict(r._mapping)} for r in conn.execute(by_payment)]
        return CheckResult("duplicate_keys", "critical" if details else "ok", len(details), details)

    def check_balance_drift(self) -> CheckResult:
        t, a = transactions, accounts
        total = sa.func.coalesce(sa.func.sum(t.c.amount), 0)
        stmt = (
            sa.select(a.c.id.label("user_id"), a.c.credits, total.label("ledger_sum"))
            .select_from(a.outerjoin(t, t.c.user_id == a.c.id))
            .group_by(a.c.id, a.c.credits)
            .having(a.c.credits != total)
        )
        with self.ledger.engine.connect() as conn:
            rows = [dict(r._mapping) for r in conn.execute(stmt)]
        return CheckResult("balance_drift", "critical" if rows else "ok", len(rows), rows)

    def check_unprocessed_events(self, now: datetime) -> CheckResult:
        created_gte = int((now - timedelta(hours=24)).timestamp())
        try:
            events = list_events(self.stripe, [CHECKOUT_COMPLETED], created_gte, limit=50)
        except PaymentProviderError as exc:
            return CheckResult("unprocessed_events", "warning", 0, [{"error": exc.detail}])
        missing = [
            {"id": e.get("id"), "payment_intent": e.get("data", {}).get("object", {}).get("payment_intent")}
            for e in events
            if not self.processor.is_applied(e)
        ]
        return CheckResult("unprocessed_events", "warning" if missing else "ok", len(missing), missing)
