"""
Fiat Payment Events
===================

PURPOSE:
    Apply Stripe events to the credit ledger. Shared by the webhook route
    and the reconciliation sweep so both paths run identical logic.

    checkout.session.completed  credit metadata.credits to metadata.userId,
                                keyed by the payment intent
    charge.refunded             debit floor(credits * amount_refunded / amount)
                                keyed refund:<payment_intent>
    charge.dispute.created      alert only; the ledger is not touched

OUTCOMES (process() return value):
    credited, refunded, recorded  event applied (or, for disputes, reported)
    duplicate                     already applied under its idempotency key
    skipped                       data problem, alerted, nothing written
    ignored                       event type or amount with nothing to do

    Data problems never raise out of process(). Infrastructure failures
    (StoreUnavailable, PaymentProviderError) do, so the caller can tell
    Stripe to retry.
"""

import logging
from typing import Any, Dict, Optional

import stripe
from stripe import StripeError

from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.errors import MalformedEvent, PaymentProviderError, UnknownAccount
from creditledger.services.ledger import CreditLedger

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHARGE_REFUNDED = "charge.refunded"
DISPUTE_CREATED = "charge.dispute.created"

HANDLED_EVENT_TYPES = [CHECKOUT_COMPLETED, CHARGE_REFUNDED, DISPUTE_CREATED]


def as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe object or an already-decoded payload."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return obj
    return dict(obj)


def refund_debit_amount(credits_added: int, amount: int, amount_refunded: int) -> int:
    """Credits to take back for a (partial) refund, proportional and rounded down."""
    if amount <= 0:
        return 0
    return (credits_added * amount_refunded) // amount


class FiatEventProcessor:
    """Applies one Stripe event at a time to the ledger."""

    def __init__(self, ledger: CreditLedger, stripe_client=None, refund_policy: str = "cap") -> None:
        self.ledger = ledger
        self.stripe = stripe_client or stripe
        self.refund_policy = refund_policy

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def process(self, event: Dict[str, Any], source: str = "webhook") -> str:
        event = as_dict(event)
        event_id = event.get("id", "?")
        event_type = event.get("type")
        handler = {
            CHECKOUT_COMPLETED: self._checkout_completed,
            CHARGE_REFUNDED: self._charge_refunded,
            DISPUTE_CREATED: self._dispute_created,
        }.get(event_type)

        if handler is None:
            logger.info("Unhandled Stripe event type %s (%s)", event_type, event_id)
            return "ignored"

        try:
            outcome = handler(event, source)
        except MalformedEvent as exc:
            send_alert(
                "Malformed payment event",
                exc.reason,
                level=AlertLevel.HIGH,
                category=AlertCategory.BUSINESS,
                context={"event_id": event_id, "event_type": event_type, "source": source},
                fingerprint="business.payment.malformed_event",
            )
            return "skipped"
        except UnknownAccount as exc:
            send_alert(
                "Payment event for closed account",
                exc.detail,
                level=AlertLevel.HIGH,
                category=AlertCategory.BUSINESS,
                context={"event_id": event_id, "event_type": event_type, "user_id": exc.user_id},
                fingerprint="business.payment.unknown_user",
            )
            return "skipped"

        logger.info(
            "stripe_event_processed",
            extra={"event_id": event_id, "event_type": event_type, "outcome": outcome, "source": source},
        )
        return outcome

    def is_applied(self, event: Dict[str, Any]) -> bool:
        """Whether the ledger already reflects this event."""
        event = as_dict(event)
        obj = event.get("data", {}).get("object", {})
        event_type = event.get("type")

        if event_type == CHECKOUT_COMPLETED:
            pi = obj.get("payment_intent")
            if not pi:
                logger.warning("No payment_intent in checkout session %s", obj.get("id"))
                return True
            return self.ledger.find_transaction(pi) is not None

        if event_type == CHARGE_REFUNDED:
            pi = obj.get("payment_intent")
            if not pi:
                return True
            return self.ledger.find_transaction(f"refund:{pi}") is not None

        # Disputes never write to the ledger
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _checkout_completed(self, event: Dict[str, Any], source: str) -> str:
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        payment_intent = session.get("payment_intent")

        if not user_id or not metadata.get("credits"):
            raise MalformedEvent(event["id"], f"Missing metadata in checkout session: {metadata}")
        if not payment_intent:
            raise MalformedEvent(event["id"], "checkout session has no payment_intent")
        try:
            credits = int(metadata["credits"])
        except (TypeError, ValueError):
            raise MalformedEvent(event["id"], f"credits is not an integer: {metadata['credits']!r}")
        if credits <= 0:
            raise MalformedEvent(event["id"], f"credits must be positive, got {credits}")

        if self.ledger.find_transaction(payment_intent) is not None:
            logger.info("Duplicate payment detected, skipping: %s", payment_intent)
            return "duplicate"

        if not self.ledger.account_exists(user_id):
            send_alert(
                "Payment for unknown user",
                f"Checkout {session.get('id')} credits user {user_id}, who has no active account",
                level=AlertLevel.HIGH,
                category=AlertCategory.BUSINESS,
                context={"event_id": event["id"], "user_id": user_id, "payment_intent": payment_intent},
                fingerprint="business.payment.unknown_user",
            )
            return "skipped"

        amount_paid = (session.get("amount_total") or 0) / 100
        suffix = " (reconciled)" if source == "reconciliation" else ""
        new_balance = self.ledger.credit(
            user_id,
            credits,
            f"Stripe purchase{suffix} - ${amount_paid:.2f} for {credits} credits",
            idempotency_key=payment_intent,
            payment_ref=payment_intent,
            meta={"event_id": event["id"], "checkout_session": session.get("id"), "source": source},
        )
        logger.info("Added %d credits to user %s. New balance: %d", credits, user_id, new_balance)
        return "credited"

    def _charge_refunded(self, event: Dict[str, Any], source: str) -> str:
        charge = event["data"]["object"]
        payment_intent = charge.get("payment_intent")
        if not payment_intent:
            raise MalformedEvent(event["id"], "refunded charge has no payment_intent")

        purchase = self.ledger.find_purchase(payment_intent)
        if purchase is None:
            send_alert(
                "Refund for unknown payment",
                f"No processed purchase found for refund of {payment_intent}",
                level=AlertLevel.MEDIUM,
                category=AlertCategory.BUSINESS,
                context={"event_id": event["id"], "payment_intent": payment_intent},
                fingerprint="business.refund.unknown_payment",
            )
            return "skipped"

        amount = int(charge.get("amount") or 0)
        amount_refunded = int(charge.get("amount_refunded") or 0)
        if amount <= 0:
            raise MalformedEvent(event["id"], f"charge amount must be positive, got {amount}")

        user_id = purchase["user_id"]
        to_deduct = refund_debit_amount(int(purchase["amount"]), amount, amount_refunded)
        if to_deduct <= 0:
            return "ignored"

        key = f"refund:{payment_intent}"
        existing = self.ledger.find_transaction(key)
        if existing is not None:
            if existing["meta"].get("event_id") != event["id"]:
                # Stripe reports cumulative refunds; only the first one is posted
                send_alert(
                    "Additional refund not applied",
                    f"{payment_intent} already has a refund debit; {to_deduct} credits not deducted",
                    level=AlertLevel.MEDIUM,
                    category=AlertCategory.BUSINESS,
                    context={"event_id": event["id"], "user_id": user_id, "requested": to_deduct},
                    fingerprint="business.refund.additional",
                )
            return "duplicate"

        suffix = " (reconciled)" if source == "reconciliation" else ""
        result = self.ledger.post_refund(
            user_id,
            to_deduct,
            f"Stripe refund{suffix} - ${amount_refunded / 100:.2f} refunded",
            key,
            payment_ref=payment_intent,
            policy=self.refund_policy,
            meta={"event_id": event["id"], "charge": charge.get("id"), "source": source},
        )
        if result.duplicate:
            return "duplicate"

        if -result.applied < to_deduct:
            send_alert(
                "Refund exceeded balance",
                f"User {user_id} refund of {to_deduct} credits capped at {-result.applied}",
                level=AlertLevel.HIGH,
                category=AlertCategory.BUSINESS,
                context={"user_id": user_id, "payment_intent": payment_intent, "shortfall": to_deduct + result.applied},
                fingerprint="business.refund.shortfall",
            )
        logger.info("Deducted %d credits from user %s for refund", -result.applied, user_id)
        return "refunded"

    def _dispute_created(self, event: Dict[str, Any], source: str) -> str:
        dispute = event["data"]["object"]
        charge_id = dispute.get("charge")
        if not charge_id:
            raise MalformedEvent(event["id"], "dispute has no charge")

        try:
            charge = as_dict(self.stripe.Charge.retrieve(charge_id))
        except StripeError as exc:
            raise PaymentProviderError(detail=f"Charge.retrieve({charge_id}) failed: {exc}") from exc

        payment_intent = charge.get("payment_intent")
        purchase = self.ledger.find_purchase(payment_intent) if payment_intent else None
        if purchase is None:
            logger.warning("No processed payment found for dispute: %s", payment_intent)
            return "skipped"

        send_alert(
            "Payment dispute opened",
            f"Dispute for user {purchase['user_id']}: ${(dispute.get('amount') or 0) / 100:.2f} "
            f"({purchase['amount']} credits)",
            level=AlertLevel.HIGH,
            category=AlertCategory.BUSINESS,
            context={
                "event_id": event["id"],
                "user_id": purchase["user_id"],
                "payment_intent": payment_intent,
                "credits": purchase["amount"],
                "reason": dispute.get("reason"),
            },
            fingerprint="business.payment.dispute",
        )
        return "recorded"


def configure_stripe(secret_key: Optional[str], api_version: Optional[str] = None):
    """Point the stripe module at our account. Returns the module for injection."""
    stripe.api_key = secret_key
    if api_version:
        stripe.api_version = api_version
    return stripe
