"""
Credits Router
==============

GET  /api/credits/balance    current balance (opens the account on first use)
GET  /api/credits/history    newest-first transaction log, max 100
POST /api/credits/validate   pre-flight check for a spend
POST /api/credits/bonus      daily bonus, at most once per UTC day
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from creditledger.auth.bearer_auth import AuthenticatedUser, get_current_user
from creditledger.config import Settings
from creditledger.routers.dependencies import get_ledger, get_settings
from creditledger.services.ledger import MAX_HISTORY, CreditLedger

logger = logging.getLogger(__name__)

router = APIRouter()


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class HistoryResponse(BaseModel):
    transactions: List[Dict[str, Any]]


class ValidateRequest(BaseModel):
    required: int = Field(..., ge=0)


class ValidateResponse(BaseModel):
    sufficient: bool
    current_balance: int
    required: int
    deficit: int


class BonusRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)


class BonusResponse(BaseModel):
    granted: bool
    amount: int
    new_balance: int


@router.get("/credits/balance", response_model=BalanceResponse)
async def get_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    balance = await asyncio.to_thread(ledger.open_account, user.user_id, settings.signup_bonus_credits)
    return BalanceResponse(user_id=user.user_id, balance=balance)


@router.get("/credits/history", response_model=HistoryResponse)
async def get_history(
    limit: int = Query(50, ge=1, le=MAX_HISTORY),
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    rows = await asyncio.to_thread(ledger.history, user.user_id, limit)
    return HistoryResponse(transactions=rows)


@router.post("/credits/validate", response_model=ValidateResponse)
async def validate_credits(
    body: ValidateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    return await asyncio.to_thread(ledger.validate_sufficient, user.user_id, body.required)


@router.post("/credits/bonus", response_model=BonusResponse)
async def claim_daily_bonus(
    body: BonusRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    amount = body.amount or settings.daily_bonus_max
    if amount > settings.daily_bonus_max:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Daily bonus is limited to {settings.daily_bonus_max} credits",
        )

    result = await asyncio.to_thread(ledger.grant_daily_bonus, user.user_id, amount)
    if result.duplicate:
        logger.info("Daily bonus already claimed", extra={"user_id": user.user_id})
    return BonusResponse(granted=not result.duplicate, amount=result.applied, new_balance=result.new_balance)
