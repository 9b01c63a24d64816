"""
Crypto Router (on-chain rail)
=============================

POST /api/crypto/quotation               signed payment receipt for a USD amount
GET  /api/crypto/transactions/{tx_hash}  confirm a submitted pay() transaction now

The background chain sync credits every PaymentProcessed event anyway;
the transactions route lets the client see its credit without waiting
for the next sync pass.
"""

import asyncio
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from creditledger.auth.bearer_auth import AuthenticatedUser, get_current_user
from creditledger.routers.dependencies import get_chain_service
from creditledger.services.chain_payments import ChainPaymentService

logger = logging.getLogger(__name__)

router = APIRouter()

TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


class QuotationRequest(BaseModel):
    price_usd: float = Field(..., gt=0)


@router.post("/crypto/quotation")
async def create_quotation(
    body: QuotationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: ChainPaymentService = Depends(get_chain_service),
):
    signed = await service.issue_receipt(user.user_id, body.price_usd)
    return signed.to_dict()


@router.get("/crypto/transactions/{tx_hash}")
async def get_transaction_status(
    tx_hash: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: ChainPaymentService = Depends(get_chain_service),
):
    if not re.match(TX_HASH_PATTERN, tx_hash):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed transaction hash")
    result = await asyncio.to_thread(service.observe_transaction, tx_hash)
    logger.info("Observed transaction %s: %s", tx_hash, result["status"], extra={"user_id": user.user_id})
    return result
