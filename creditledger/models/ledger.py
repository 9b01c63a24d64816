"""
Ledger Models
=============

SQLModel tables for the credit ledger:
- LedgerAccount: one row per user, holds the spendable credit balance.
- CreditTransaction: append-only, one row per balance mutation.
- CallSession: a metered paid session, closed exactly once.
- LedgerSetting: key/value rows (chain sync cursor).

Invariant: for every account, ``credits`` equals the sum of that user's
CreditTransaction amounts. Only services.ledger writes these two tables.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"
    BONUS = "bonus"


class SessionEndReason(str, Enum):
    NORMAL_END = "normal_end"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    TIME_LIMIT_REACHED = "time_limit_reached"
    BILLING_FAILED = "billing_failed"


class LedgerAccount(SQLModel, table=True):
    """Credit balance for one user. ``id_hash`` is keccak256(user id), the on-chain userHash."""

    __tablename__ = "ledger_accounts"

    id: str = Field(primary_key=True, max_length=128)
    id_hash: str = Field(unique=True, index=True, max_length=66)
    credits: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = Field(default=None, nullable=True)


class CreditTransaction(SQLModel, table=True):
    """Immutable ledger entry. ``amount`` is signed: positive credits, negative debits."""

    __tablename__ = "credit_transactions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(index=True, max_length=128)
    type: str = Field(max_length=16)
    amount: int
    description: str = Field(default="", max_length=512)
    idempotency_key: Optional[str] = Field(default=None, unique=True, nullable=True, max_length=255)
    payment_ref: Optional[str] = Field(default=None, index=True, nullable=True, max_length=255)
    avatar_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    session_id: Optional[str] = Field(default=None, index=True, nullable=True, max_length=36)
    meta: str = Field(default="{}", sa_column=Column(Text, default="{}"))
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class CallSession(SQLModel, table=True):
    __tablename__ = "call_sessions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(index=True, max_length=128)
    avatar_id: str = Field(max_length=128)
    per_minute_rate: int
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = Field(default=None, nullable=True)
    credits_spent: int = Field(default=0)
    end_reason: Optional[str] = Field(default=None, nullable=True, max_length=32)


class LedgerSetting(SQLModel, table=True):
    __tablename__ = "ledger_settings"

    key: str = Field(primary_key=True, max_length=128)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow)
