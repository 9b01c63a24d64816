"""Accessors for the services the composition root hangs on ``app.state``."""

from fastapi import HTTPException, Request, status

from creditledger.config import Settings
from creditledger.services.chain_payments import ChainPaymentService
from creditledger.services.fiat_events import FiatEventProcessor
from creditledger.services.ledger import CreditLedger
from creditledger.services.session_meter import SessionMeterRegistry


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_fiat_processor(request: Request) -> FiatEventProcessor:
    return request.app.state.fiat_processor


def get_meter_registry(request: Request) -> SessionMeterRegistry:
    return request.app.state.meter_registry


def get_chain_service(request: Request) -> ChainPaymentService:
    service = getattr(request.app.state, "chain_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="On-chain payments are not enabled",
        )
    return service
