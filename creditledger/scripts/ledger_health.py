"""
Ledger Health Check
===================

Usage:
    python -m creditledger.scripts.ledger_health
    python -m creditledger.scripts.ledger_health --days 30 --no-provider --json

Exit codes:
    0  no critical finding (warnings allowed)
    1  at least one critical finding: orphan rows, duplicate keys or drift
    2  the check could not run
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from sqlalchemy.exc import OperationalError

from creditledger.config import settings
from creditledger.core.errors import StoreUnavailable
from creditledger.core.structured_logging import setup_logging
from creditledger.services.fiat_events import FiatEventProcessor, configure_stripe
from creditledger.services.ledger import CreditLedger
from creditledger.services.reconciliation import HealthReport, LedgerHealthCheck

logger = logging.getLogger(__name__)

STATUS_MARK = {"ok": "OK  ", "warning": "WARN", "critical": "CRIT"}


def build_check(include_provider: bool, ledger: Optional[CreditLedger] = None) -> LedgerHealthCheck:
    ledger = ledger or CreditLedger()
    if not include_provider or not settings.stripe_secret_key:
        return LedgerHealthCheck(ledger)
    stripe_client = configure_stripe(settings.stripe_secret_key, settings.stripe_api_version)
    processor = FiatEventProcessor(ledger, stripe_client, refund_policy=settings.refund_overdraft_policy)
    return LedgerHealthCheck(ledger, processor, stripe_client)


def print_report(report: HealthReport) -> None:
    for check in report.checks:
        print(f"[{STATUS_MARK.get(check.status, check.status)}] {check.name}: {check.count}")
        for detail in check.details[:10]:
            print(f"         {detail}")
    print("CRITICAL" if report.critical else ("HEALTHY" if report.healthy else "WARNINGS"))


def main(argv: Optional[List[str]] = None, check: Optional[LedgerHealthCheck] = None) -> int:
    parser = argparse.ArgumentParser(description="Check credit ledger integrity")
    parser.add_argument("--days", type=int, default=settings.health_window_days,
                        help="Window for recent-row checks (default: %(default)s)")
    parser.add_argument("--no-provider", action="store_true", help="Skip the Stripe unprocessed-events check")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    check = check or build_check(include_provider=not args.no_provider)
    try:
        report = check.run(window_days=args.days, include_provider=not args.no_provider)
    except StoreUnavailable as exc:
        print(f"Health check failed: {exc.detail}", file=sys.stderr)
        return 2
    except OperationalError as exc:
        logger.error("Ledger store unavailable: %s", exc)
        print(f"Health check failed: {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_report(report)
    return 1 if report.critical else 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(main())
