"""
Payments Router (fiat rail)
===========================

POST /api/payments/webhook              Stripe webhook receiver
POST /api/payments/checkout-session     start a Stripe Checkout purchase
GET  /api/payments/session-status/{id}  poll a Checkout session after redirect
GET  /api/payments/packages             price per credit, purchase range, packages

Webhook status codes:
    400  signature or payload could not be verified
    200  event handled, duplicate, ignored or skipped (data problems are
         alerted, not retried)
    503  ledger or Stripe unavailable; Stripe redelivers later
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from stripe import SignatureVerificationError, StripeError

from creditledger.auth.bearer_auth import AuthenticatedUser, get_current_user
from creditledger.config import Settings
from creditledger.core.errors import PaymentProviderError, PurchaseOutOfRange, StoreUnavailable
from creditledger.routers.dependencies import get_fiat_processor, get_settings
from creditledger.services.fiat_events import FiatEventProcessor, as_dict

logger = logging.getLogger(__name__)

router = APIRouter()

STANDARD_PACKAGE_SIZES = (100, 500, 1000, 2000)
POPULAR_PACKAGE = 500


class CheckoutRequest(BaseModel):
    credits: int = Field(..., gt=0)


class CheckoutResponse(BaseModel):
    checkout_url: Optional[str] = None
    session_id: str
    price_usd: float


class CreditPackage(BaseModel):
    credits: int
    price: float
    is_popular: bool = False


class PackagesResponse(BaseModel):
    credit_price: float
    min_purchase: int
    max_purchase: int
    standard_packages: List[CreditPackage]
    bonus_packages: List[Dict[str, Any]]


def _stripe(request: Request):
    return request.app.state.stripe


@router.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    processor: FiatEventProcessor = Depends(get_fiat_processor),
    settings: Settings = Depends(get_settings),
):
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook received but no webhook secret is configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhooks not configured")

    payload = await request.body()
    try:
        event = _stripe(request).Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except ValueError:
        logger.warning("Invalid Stripe webhook payload")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event = as_dict(event)
    logger.info("Received Stripe webhook: %s (%s)", event.get("type"), event.get("id"))

    try:
        outcome = await asyncio.to_thread(processor.process, event, "webhook")
    except (StoreUnavailable, PaymentProviderError) as exc:
        logger.error("Stripe webhook deferred: %s", exc.detail, extra={"event_id": event.get("id")})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"received": False, "error": exc.code},
        )
    return {"received": True, "outcome": outcome}


@router.post("/payments/checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    if not (settings.credits_min_purchase <= body.credits <= settings.credits_max_purchase):
        raise PurchaseOutOfRange(body.credits, settings.credits_min_purchase, settings.credits_max_purchase)

    price_usd = round(body.credits * settings.credits_usd_price, 2)
    session_config: Dict[str, Any] = {
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"{body.credits} Credits",
                        "description": f"Purchase {body.credits} credits for avatar conversations",
                    },
                    "unit_amount": int(round(price_usd * 100)),
                },
                "quantity": 1,
            }
        ],
        "mode": "payment",
        "success_url": f"{settings.frontend_url}/purchase/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{settings.frontend_url}/purchase/cancelled",
        "metadata": {"userId": user.user_id, "credits": str(body.credits)},
    }
    if user.email:
        session_config["customer_email"] = user.email

    try:
        session = await asyncio.to_thread(_stripe(request).checkout.Session.create, **session_config)
    except StripeError as exc:
        raise PaymentProviderError(detail=f"checkout.Session.create failed: {exc}") from exc

    session = as_dict(session)
    logger.info(
        "Created checkout session %s for user %s: %d credits for $%.2f",
        session.get("id"), user.user_id, body.credits, price_usd,
    )
    return CheckoutResponse(checkout_url=session.get("url"), session_id=session["id"], price_usd=price_usd)


@router.get("/payments/session-status/{session_id}")
async def get_session_status(
    session_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
):
    try:
        session = as_dict(await asyncio.to_thread(_stripe(request).checkout.Session.retrieve, session_id))
    except StripeError as exc:
        raise PaymentProviderError(detail=f"checkout.Session.retrieve failed: {exc}") from exc

    metadata = session.get("metadata") or {}
    if metadata.get("userId") != user.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return {
        "status": session.get("status"),
        "payment_status": session.get("payment_status"),
        "credits": int(metadata.get("credits") or 0),
    }


@router.get("/payments/packages", response_model=PackagesResponse)
async def get_packages(settings: Settings = Depends(get_settings)):
    standard = [
        CreditPackage(
            credits=size,
            price=round(size * settings.credits_usd_price, 2),
            is_popular=size == POPULAR_PACKAGE,
        )
        for size in STANDARD_PACKAGE_SIZES
    ]
    return PackagesResponse(
        credit_price=settings.credits_usd_price,
        min_purchase=settings.credits_min_purchase,
        max_purchase=settings.credits_max_purchase,
        standard_packages=standard,
        bonus_packages=settings.credits_bonus_packages,
    )
