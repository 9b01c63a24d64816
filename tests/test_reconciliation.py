"""
Reconciliation sweep and ledger health check tests.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa
from stripe import StripeError

from creditledger.core.alerting import alert_tracker
from creditledger.core.database import build_engine
from creditledger.core.errors import PaymentProviderError, StoreUnavailable
from creditledger.services.fiat_events import FiatEventProcessor
from creditledger.services.ledger import CreditLedger, accounts, transactions, user_hash
from creditledger.services.reconciliation import LedgerHealthCheck, ReconciliationSweep

from tests.factories import checkout_event, refund_event

NOW = 1_800_000_000


def _stripe_with_events(events):
    client = MagicMock()
    client.Event.list.return_value.auto_paging_iter.return_value = list(events)
    return client


def _transaction_count(ledger):
    with ledger.engine.connect() as conn:
        return conn.execute(sa.select(sa.func.count()).select_from(transactions)).scalar_one()


@pytest.fixture
def alice(funded):
    return funded("alice", 0)


class TestReconciliationSweep:
    def _setup(self, ledger, events):
        stripe_client = _stripe_with_events(events)
        processor = FiatEventProcessor(ledger, stripe_client)
        return processor, ReconciliationSweep(processor, stripe_client), stripe_client

    def test_queries_handled_types_over_window(self, ledger, alice):
        _, sweep, stripe_client = self._setup(ledger, [])
        sweep.run(lookback_hours=24, now=NOW)
        stripe_client.Event.list.assert_called_once_with(
            limit=100,
            created={"gte": NOW - 24 * 3600},
            types=["checkout.session.completed", "charge.refunded", "charge.dispute.created"],
        )

    def test_dry_run_reports_without_writing(self, ledger, alice):
        events = [checkout_event(pi="pi_1"), checkout_event(event_id="evt_2", pi="pi_2")]
        processor, sweep, _ = self._setup(ledger, events)
        processor.process(events[0])

        rows_before = _transaction_count(ledger)

        summary = sweep.run(dry_run=True, now=NOW)

        assert summary.events_checked == 2
        assert summary.processed_count == 1
        assert summary.missed_count == 1
        assert summary.missed[0]["id"] == "evt_2"
        assert summary.replayed_count == 0
        assert _transaction_count(ledger) == rows_before
        assert ledger.get_balance("alice") == 100

    def test_replays_missed_events(self, ledger, alice):
        events = [
            checkout_event(pi="pi_1", credits="1000"),
            refund_event(pi="pi_1", amount=1000, amount_refunded=500),
        ]
        _, sweep, _ = self._setup(ledger, events)

        summary = sweep.run(now=NOW)

        assert summary.missed_count == 2
        assert summary.replayed_count == 2
        assert ledger.get_balance("alice") == 500
        assert "(reconciled)" in ledger.find_transaction("pi_1")["description"]

        again = sweep.run(now=NOW)
        assert again.processed_count == 2
        assert again.missed_count == 0
        assert ledger.get_balance("alice") == 500

    def test_replays_oldest_first(self, ledger, alice):
        # Event.list order: newest first
        events = [
            refund_event(pi="pi_1", amount=1000, amount_refunded=500, created=NOW - 60),
            checkout_event(pi="pi_1", credits="1000", created=NOW - 300),
        ]
        _, sweep, _ = self._setup(ledger, events)

        summary = sweep.run(now=NOW)

        assert [m["id"] for m in summary.missed] == ["evt_1", "evt_r1"]
        assert summary.replayed_count == 2
        assert summary.skipped_count == 0
        assert ledger.get_balance("alice") == 500
        assert ledger.find_transaction("refund:pi_1")["amount"] == -500

    def test_skipped_replays_counted(self, ledger):
        _, sweep, _ = self._setup(ledger, [checkout_event(user_id="ghost")])
        summary = sweep.run(now=NOW)
        assert summary.missed_count == 1
        assert summary.skipped_count == 1
        assert summary.replayed_count == 0

    def test_failed_replay_does_not_stop_sweep(self, ledger, alice, monkeypatch):
        events = [checkout_event(event_id="evt_bad", pi="pi_bad"), checkout_event(event_id="evt_ok", pi="pi_ok")]
        processor, sweep, _ = self._setup(ledger, events)
        original = processor.process

        def flaky(event, source="webhook"):
            if event["id"] == "evt_bad":
                raise StoreUnavailable(detail="database is locked")
            return original(event, source)

        monkeypatch.setattr(processor, "process", flaky)
        summary = sweep.run(now=NOW)

        assert summary.failed_count == 1
        assert summary.replayed_count == 1
        assert ledger.get_balance("alice") == 100
        assert alert_tracker.count("business.reconciliation.replay_failed") == 1

    def test_listing_failure(self, ledger):
        stripe_client = MagicMock()
        stripe_client.Event.list.side_effect = StripeError("api down")
        sweep = ReconciliationSweep(FiatEventProcessor(ledger, stripe_client), stripe_client)
        with pytest.raises(PaymentProviderError):
            sweep.run(now=NOW)
        assert alert_tracker.count("external.stripe.error") == 1


class TestLedgerHealthCheck:
    def test_clean_ledger_is_healthy(self, ledger, funded):
        user = funded("alice", 100)
        ledger.debit(user, 40, "spend")
        report = LedgerHealthCheck(ledger).run()
        assert report.healthy
        assert not report.critical
        assert [c.name for c in report.checks] == ["orphan_transactions", "duplicate_keys", "balance_drift"]

    def test_orphan_transaction_is_critical(self, ledger, engine):
        with engine.begin() as conn:
            conn.execute(
                transactions.insert().values(
                    id="tx-orphan", user_id="ghost", type="purchase", amount=10, description="",
                    meta="{}", created_at=datetime.now(timezone.utc),
                )
            )
        report = LedgerHealthCheck(ledger).run()
        orphans = report.checks[0]
        assert orphans.status == "critical"
        assert orphans.details[0]["user_id"] == "ghost"
        assert report.critical
        assert alert_tracker.count("database.ledger.orphan_transactions") == 1

    def test_balance_drift_is_critical(self, ledger, engine, funded):
        funded("alice", 100)
        with engine.begin() as conn:
            conn.execute(accounts.update().where(accounts.c.id == "alice").values(credits=130))
        drift = LedgerHealthCheck(ledger).run().checks[2]
        assert drift.status == "critical"
        assert drift.details == [{"user_id": "alice", "credits": 130, "ledger_sum": 100}]

    def test_duplicate_keys_are_critical(self, tmp_path):
        # A store that lost its unique index
        eng = build_engine(f"sqlite:///{tmp_path}/nounique.db")
        accounts.create(eng)
        with eng.begin() as conn:
            conn.execute(sa.text(
                "CREATE TABLE credit_transactions ("
                " id VARCHAR(36) PRIMARY KEY, user_id VARCHAR(128) NOT NULL,"
                " type VARCHAR(16) NOT NULL, amount INTEGER NOT NULL,"
                " description VARCHAR(512) NOT NULL DEFAULT '', idempotency_key VARCHAR(255),"
                " payment_ref VARCHAR(255), avatar_id VARCHAR(128), session_id VARCHAR(36),"
                " meta TEXT, created_at DATETIME NOT NULL)"
            ))
            now = datetime.now(timezone.utc)
            conn.execute(accounts.insert().values(
                id="alice", id_hash=user_hash("alice"), credits=200, created_at=now, updated_at=now,
            ))
            for tx_id in ("tx-1", "tx-2"):
                conn.execute(transactions.insert().values(
                    id=tx_id, user_id="alice", type="purchase", amount=100, description="",
                    idempotency_key="pi_dup", payment_ref="pi_dup", meta="{}", created_at=now,
                ))

        report = LedgerHealthCheck(CreditLedger(engine=eng)).run()
        duplicates = report.checks[1]
        assert duplicates.status == "critical"
        assert {d["kind"] for d in duplicates.details} == {"idempotency_key", "payment_ref"}
        assert all(d["ref"] == "pi_dup" and d["count"] == 2 for d in duplicates.details)
        assert report.checks[2].status == "ok"
        eng.dispose()

    def test_unprocessed_events_warning(self, ledger, alice):
        stripe_client = _stripe_with_events([checkout_event(pi="pi_missing")])
        processor = FiatEventProcessor(ledger, stripe_client)
        report = LedgerHealthCheck(ledger, processor, stripe_client).run(include_provider=True)
        unprocessed = report.checks[3]
        assert unprocessed.status == "warning"
        assert unprocessed.details == [{"id": "evt_1", "payment_intent": "pi_missing"}]
        assert not report.critical
        assert not report.healthy

    def test_provider_check_skipped_when_disabled(self, ledger, alice):
        stripe_client = _stripe_with_events([])
        processor = FiatEventProcessor(ledger, stripe_client)
        report = LedgerHealthCheck(ledger, processor, stripe_client).run(include_provider=False)
        assert len(report.checks) == 3
        stripe_client.Event.list.assert_not_called()
