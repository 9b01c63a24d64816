"""
Error code system.

CreditLedgerError is the base exception for all structured errors. Each
subclass carries a registry code; the error middleware turns it into a
structured JSON response with the registry's HTTP status.

Usage:
    from creditledger.core.errors import InsufficientCredits
    raise InsufficientCredits(required=10, available=5)
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^CL-[A-Z]{2,6}-\d{3}$")


class CreditLedgerError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "CL-LED-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    code = "CL-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or type(self).code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class InsufficientCredits(CreditLedgerError):
    """Debit refused: balance below the requested amount."""

    code = "CL-LED-001"

    def __init__(self, required: int, available: int, user_id: str | None = None) -> None:
        self.required = required
        self.available = available
        super().__init__(
            detail=f"Insufficient credits. Required: {required}, Available: {available}",
            context={"user_id": user_id, "required": required, "available": available},
        )


class UnknownAccount(CreditLedgerError):
    code = "CL-LED-002"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(detail=f"No active ledger account for user {user_id}", context={"user_id": user_id})


class IntegrityViolation(CreditLedgerError):
    """Ledger state that must never occur (duplicate keys, drift, orphans)."""

    code = "CL-LED-003"


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------

class MalformedEvent(CreditLedgerError):
    code = "CL-EVT-001"

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(detail=f"{event_id}: {reason}", context={"event_id": event_id})


# ---------------------------------------------------------------------------
# Payment receipts (fatal to the single payment attempt)
# ---------------------------------------------------------------------------

class PaymentRejected(CreditLedgerError):
    """Base for contract-level payment rejections. No state changes on any of these."""

    code = "CL-PAY-000"
    contract_error = ""


class ZeroAddress(PaymentRejected):
    code = "CL-PAY-001"
    contract_error = "ZeroAddress"


class ZeroAmount(PaymentRejected):
    code = "CL-PAY-002"
    contract_error = "ZeroAmount"


class ReceiptExpired(PaymentRejected):
    code = "CL-PAY-003"
    contract_error = "ReceiptExpired"


class InvalidSignature(PaymentRejected):
    code = "CL-PAY-004"
    contract_error = "InvalidSignature"


class EtherTransfersNotAllowed(PaymentRejected):
    code = "CL-PAY-005"
    contract_error = "EtherTransfersNotAllowed"


class PaymentProviderError(CreditLedgerError):
    """Upstream payment provider (Stripe, RPC node, price feed) failed."""

    code = "CL-PAY-006"


# ---------------------------------------------------------------------------
# Infrastructure / configuration
# ---------------------------------------------------------------------------

class StoreUnavailable(CreditLedgerError):
    code = "CL-DB-001"


class PricingConfigError(CreditLedgerError):
    code = "CL-CFG-001"


class SessionNotFound(CreditLedgerError):
    code = "CL-SES-001"

    def __init__(self, session_id: str) -> None:
        super().__init__(detail=f"Unknown or closed session {session_id}", context={"session_id": session_id})


class PurchaseOutOfRange(CreditLedgerError):
    """Requested credit purchase outside the configured min/max."""

    code = "CL-PAY-007"

    def __init__(self, credits: int, minimum: int, maximum: int) -> None:
        super().__init__(
            detail=f"{credits} credits is outside {minimum}..{maximum}",
            context={"credits": credits, "minimum": minimum, "maximum": maximum},
        )


def all_error_classes() -> list[type[CreditLedgerError]]:
    """CreditLedgerError and every subclass, for the registry coverage check."""
    found: list[type[CreditLedgerError]] = []
    pending: list[type[CreditLedgerError]] = [CreditLedgerError]
    while pending:
        cls = pending.pop()
        found.append(cls)
        pending.extend(cls.__subclasses__())
    return found
