"""
Stripe Reconciliation Sweep
===========================

Finds Stripe events from the lookback window that the ledger does not
reflect and replays them through the webhook's event processor.

Usage:
    python -m creditledger.scripts.reconcile --hours 24
    python -m creditledger.scripts.reconcile --hours 72 --dry-run --json

Exit codes:
    0  sweep completed, every missed event replayed (or dry run)
    1  sweep completed but some replays failed
    2  sweep could not run (Stripe or the ledger store unavailable)
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from creditledger.config import settings
from creditledger.core.errors import PaymentProviderError, StoreUnavailable
from creditledger.core.structured_logging import setup_logging
from creditledger.services.fiat_events import FiatEventProcessor, configure_stripe
from creditledger.services.ledger import CreditLedger
from creditledger.services.reconciliation import ReconciliationSummary, ReconciliationSweep

logger = logging.getLogger(__name__)


def build_sweep(stripe_client=None, ledger: Optional[CreditLedger] = None) -> ReconciliationSweep:
    stripe_client = stripe_client or configure_stripe(settings.stripe_secret_key, settings.stripe_api_version)
    processor = FiatEventProcessor(
        ledger or CreditLedger(), stripe_client, refund_policy=settings.refund_overdraft_policy
    )
    return ReconciliationSweep(processor, stripe_client)


def print_summary(summary: ReconciliationSummary) -> None:
    mode = "DRY RUN" if summary.dry_run else "LIVE"
    print(f"Reconciliation ({mode}), last {summary.lookback_hours}h")
    print(f"  events checked:  {summary.events_checked}")
    print(f"  already applied: {summary.processed_count}")
    print(f"  missed:          {summary.missed_count}")
    print(f"  replayed:        {summary.replayed_count}")
    print(f"  skipped:         {summary.skipped_count}")
    print(f"  failed:          {summary.failed_count}")
    for event in summary.missed:
        print(f"    - {event.get('id')} {event.get('type')}")


def main(argv: Optional[List[str]] = None, sweep: Optional[ReconciliationSweep] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay Stripe events the credit ledger missed")
    parser.add_argument("--hours", type=int, default=settings.reconciliation_lookback_hours,
                        help="Lookback window in hours (default: %(default)s)")
    parser.add_argument("--dry-run", action="store_true", help="Report missed events without writing")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args(argv)

    if args.hours <= 0:
        parser.error("--hours must be positive")

    sweep = sweep or build_sweep()
    try:
        summary = sweep.run(lookback_hours=args.hours, dry_run=args.dry_run)
    except (PaymentProviderError, StoreUnavailable) as exc:
        logger.error("Reconciliation could not run: %s", exc.detail)
        print(f"Reconciliation failed: {exc.detail}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        print_summary(summary)
    return 1 if summary.failed_count else 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(main())
