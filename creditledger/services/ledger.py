"""
Credit Ledger
=============

PURPOSE:
    The single writer of credit balances. Every balance change is one
    database transaction that (a) locks the user's account row, (b) applies
    a single arithmetic UPDATE to ``credits`` and (c) appends a
    CreditTransaction row. Both writes commit or neither does.

IDEMPOTENCY:
    A mutation carrying an ``idempotency_key`` is applied at most once. The
    key is checked under the account lock and backed by a UNIQUE index; a
    race that slips past the check surfaces as IntegrityError, the whole
    transaction rolls back and the call degrades to the idempotent no-op.

    Key namespaces used by callers:
        <payment_intent>             Stripe checkout purchase
        refund:<payment_intent>      Stripe refund debit
        chain:<tx_hash>:<log_index>  on-chain PaymentProcessed credit
        bonus:<user>:<YYYY-MM-DD>    daily bonus
        signup:<user>                signup bonus

LOCKING:
    PostgreSQL: SELECT ... FOR UPDATE on the account row.
    SQLite: every transaction starts with BEGIN IMMEDIATE (see
    core.database), which serializes writers database-wide.
    Debits that must not overdraw use ``UPDATE ... WHERE credits >= amount``
    so the balance check and the write are one statement.

NOTIFICATIONS:
    After commit, every mutation that moved the balance (never the no-op or
    a refund capped to zero) is published to the injected BalanceNotifier as
    BalanceChanged.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from web3 import Web3

from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.database import get_engine, is_sqlite, sqlite_retry
from creditledger.core.errors import InsufficientCredits, IntegrityViolation, StoreUnavailable, UnknownAccount
from creditledger.models.ledger import CreditTransaction, LedgerAccount, TransactionType

logger = logging.getLogger(__name__)

MAX_HISTORY = 100

accounts = LedgerAccount.__table__
transactions = CreditTransaction.__table__


def user_hash(user_id: str) -> str:
    """keccak256 of the user id, 0x-prefixed. Matches the contract's bytes32 userHash."""
    return Web3.to_hex(Web3.keccak(text=user_id))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Balance notifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BalanceChanged:
    user_id: str
    delta: int
    new_balance: int
    tx_type: str


class BalanceNotifier:
    """Synchronous fan-out of BalanceChanged to registered callbacks.

    Callbacks run on the thread that committed the mutation; the ledger has
    already committed, so a failing callback is logged and the rest still run.
    """

    def __init__(self) -> None:
        self._subscribers: List[Callable[[BalanceChanged], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[BalanceChanged], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, change: BalanceChanged) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(change)
            except Exception:
                logger.exception("balance_subscriber_failed", extra={"user_id": change.user_id})


@dataclass(frozen=True)
class PostingResult:
    """Outcome of one ledger mutation attempt."""

    new_balance: int
    applied: int
    duplicate: bool = False
    transaction_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class CreditLedger:
    """
    Credit balances and their transaction log, via SQLAlchemy Core.

    Each public method acquires its own connection and transaction.
    """

    def __init__(self, engine: Optional[Engine] = None, notifier: Optional[BalanceNotifier] = None) -> None:
        self._engine = engine
        self.notifier = notifier or BalanceNotifier()

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(self, user_id: str, signup_bonus: int = 0) -> int:
        """Create the account if missing and grant the signup bonus once. Returns the balance."""
        now = _utcnow()

        def _insert() -> None:
            with self.engine.begin() as conn:
                exists = conn.execute(sa.select(accounts.c.id).where(accounts.c.id == user_id)).first()
                if exists is None:
                    conn.execute(
                        accounts.insert().values(
                            id=user_id, id_hash=user_hash(user_id), credits=0,
                            created_at=now, updated_at=now,
                        )
                    )
                    logger.info("ledger_account_opened", extra={"user_id": user_id})

        try:
            self._run(_insert)
        except IntegrityError:
            logger.debug("Concurrent open_account for %s", user_id)

        if signup_bonus > 0:
            return self.credit(
                user_id, signup_bonus, "Signup bonus",
                idempotency_key=f"signup:{user_id}", tx_type=TransactionType.BONUS.value,
            )
        return self.get_balance(user_id)

    def close_account(self, user_id: str) -> None:
        """Soft-delete. The transaction log is kept; further mutations raise UnknownAccount."""
        def _close() -> int:
            with self.engine.begin() as conn:
                return conn.execute(
                    accounts.update()
                    .where(accounts.c.id == user_id, accounts.c.deleted_at.is_(None))
                    .values(deleted_at=_utcnow(), updated_at=_utcnow())
                ).rowcount

        if not self._run(_close):
            raise UnknownAccount(user_id)
        logger.info("ledger_account_closed", extra={"user_id": user_id})

    def get_balance(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            return self._balance(conn, user_id)

    def find_account_by_hash(self, id_hash: str) -> Optional[str]:
        """Resolve an on-chain userHash to an active account id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(accounts.c.id).where(
                    sa.func.lower(accounts.c.id_hash) == id_hash.lower(),
                    accounts.c.deleted_at.is_(None),
                )
            ).first()
        return row.id if row else None

    def account_exists(self, user_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(accounts.c.id).where(accounts.c.id == user_id, accounts.c.deleted_at.is_(None))
            ).first()
        return row is not None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(
        self,
        user_id: str,
        amount: int,
        description: str,
        idempotency_key: Optional[str] = None,
        *,
        tx_type: str = TransactionType.PURCHASE.value,
        payment_ref: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Add ``amount`` credits. Returns the new balance (current balance on a replayed key)."""
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        return self._post(
            user_id, amount, description, idempotency_key,
            tx_type=tx_type, payment_ref=payment_ref, meta=meta,
        ).new_balance

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        idempotency_key: Optional[str] = None,
        allow_overdraft: bool = False,
        *,
        tx_type: str = TransactionType.SPEND.value,
        avatar_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Remove ``amount`` credits. Raises InsufficientCredits unless overdraft is allowed."""
        if amount <= 0:
            raise ValueError(f"debit amount must be positive, got {amount}")
        return self._post(
            user_id, -amount, description, idempotency_key,
            tx_type=tx_type, overdraft="allow" if allow_overdraft else "refuse",
            avatar_id=avatar_id, session_id=session_id, payment_ref=payment_ref, meta=meta,
        ).new_balance

    def post_refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        idempotency_key: str,
        *,
        payment_ref: Optional[str] = None,
        policy: str = "cap",
        meta: Optional[Dict[str, Any]] = None,
    ) -> PostingResult:
        """Debit a refund.

        ``policy="cap"`` takes at most the current balance and records the
        shortfall in the transaction meta; ``policy="allow"`` lets the balance
        go negative. The result's ``applied`` is the (negative) amount posted.
        """
        if amount <= 0:
            raise ValueError(f"refund amount must be positive, got {amount}")
        return self._post(
            user_id, -amount, description, idempotency_key,
            tx_type=TransactionType.REFUND.value, overdraft=policy,
            payment_ref=payment_ref, meta=meta,
        )

    def grant_daily_bonus(
        self,
        user_id: str,
        amount: int,
        description: str = "Daily bonus",
        today: Optional[date] = None,
    ) -> PostingResult:
        """Grant at most one bonus per user per UTC day."""
        if amount <= 0:
            raise ValueError(f"bonus amount must be positive, got {amount}")
        day = (today or _utcnow().date()).isoformat()
        return self._post(
            user_id, amount, description, f"bonus:{user_id}:{day}",
            tx_type=TransactionType.BONUS.value,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_sufficient(self, user_id: str, required: int) -> Dict[str, Any]:
        balance = self.get_balance(user_id)
        return {
            "sufficient": balance >= required,
            "current_balance": balance,
            "required": required,
            "deficit": max(0, required - balance),
        }

    def history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, MAX_HISTORY))
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(transactions)
                .where(transactions.c.user_id == user_id)
                .order_by(transactions.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_dict(r) for r in rows]

    def find_transaction(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(transactions).where(transactions.c.idempotency_key == idempotency_key)
            ).first()
        return _row_to_dict(row) if row else None

    def find_purchase(self, payment_ref: str) -> Optional[Dict[str, Any]]:
        """Original purchase for an external payment id (Stripe payment intent or tx hash)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(transactions)
                .where(
                    transactions.c.payment_ref == payment_ref,
                    transactions.c.type == TransactionType.PURCHASE.value,
                )
                .order_by(transactions.c.created_at.asc())
            ).first()
        return _row_to_dict(row) if row else None

    def sum_of_transactions(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            total = conn.execute(
                sa.select(sa.func.coalesce(sa.func.sum(transactions.c.amount), 0))
                .where(transactions.c.user_id == user_id)
            ).scalar_one()
        return int(total)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def run_guarded(self, fn):
        """Run a write against the ledger store with SQLite retry; outages raise StoreUnavailable."""
        return self._run(fn)

    def _run(self, fn):
        try:
            return sqlite_retry(fn)
        except OperationalError as exc:
            send_alert(
                "Ledger store unavailable",
                str(exc.orig) if exc.orig else str(exc),
                level=AlertLevel.CRITICAL,
                category=AlertCategory.DATABASE,
                fingerprint="database.ledger.unavailable",
            )
            raise StoreUnavailable(detail=str(exc)) from exc

    def _balance(self, conn: Connection, user_id: str, lock: bool = False) -> int:
        stmt = sa.select(accounts.c.credits).where(
            accounts.c.id == user_id, accounts.c.deleted_at.is_(None)
        )
        if lock and not is_sqlite(conn.engine):
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).first()
        if row is None:
            raise UnknownAccount(user_id)
        return int(row.credits)

    def _post(
        self,
        user_id: str,
        delta: int,
        description: str,
        idempotency_key: Optional[str],
        *,
        tx_type: str,
        overdraft: str = "refuse",
        avatar_id: Optional[str] = None,
        session_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> PostingResult:
        meta = dict(meta or {})

        def _apply() -> PostingResult:
            with self.engine.begin() as conn:
                if idempotency_key is not None:
                    existing = conn.execute(
                        sa.select(transactions.c.id).where(transactions.c.idempotency_key == idempotency_key)
                    ).first()
                    if existing is not None:
                        return PostingResult(
                            new_balance=self._balance(conn, user_id), applied=0,
                            duplicate=True, transaction_id=existing.id,
                        )

                balance = self._balance(conn, user_id, lock=True)
                applied = delta
                if delta < 0 and overdraft == "cap" and balance + delta < 0:
                    # May cap to 0; the zero row still claims the key so redeliveries stay duplicates
                    applied = -max(balance, 0)
                    meta["requested"] = -delta
                    meta["shortfall"] = -delta + applied

                now = _utcnow()
                update = accounts.update().where(accounts.c.id == user_id, accounts.c.deleted_at.is_(None))
                if applied < 0 and overdraft == "refuse":
                    update = update.where(accounts.c.credits >= -applied)
                result = conn.execute(
                    update.values(credits=accounts.c.credits + applied, updated_at=now)
                )
                if result.rowcount == 0:
                    raise InsufficientCredits(required=-delta, available=balance, user_id=user_id)

                tx_id = str(uuid.uuid4())
                conn.execute(
                    transactions.insert().values(
                        id=tx_id,
                        user_id=user_id,
                        type=tx_type,
                        amount=applied,
                        description=description,
                        idempotency_key=idempotency_key,
                        payment_ref=payment_ref,
                        avatar_id=avatar_id,
                        session_id=session_id,
                        meta=json.dumps(meta),
                        created_at=now,
                    )
                )
                return PostingResult(
                    new_balance=self._balance(conn, user_id), applied=applied, transaction_id=tx_id,
                )

        try:
            outcome = self._run(_apply)
        except IntegrityError as exc:
            if idempotency_key is None or self.find_transaction(idempotency_key) is None:
                send_alert(
                    "Ledger posting rejected by a constraint",
                    str(exc.orig),
                    level=AlertLevel.CRITICAL,
                    category=AlertCategory.DATABASE,
                    context={"user_id": user_id, "tx_type": tx_type},
                    fingerprint="database.ledger.integrity",
                )
                raise IntegrityViolation(detail=str(exc.orig), context={"user_id": user_id}) from exc
            # Lost the race for this idempotency key: the winner's row stands
            logger.info("Duplicate ledger posting: %s", idempotency_key)
            return PostingResult(new_balance=self.get_balance(user_id), applied=0, duplicate=True)

        if outcome.duplicate:
            logger.info(
                "ledger_posting_replayed",
                extra={"user_id": user_id, "idempotency_key": idempotency_key},
            )
            return outcome

        logger.info(
            "ledger_posting_applied",
            extra={
                "user_id": user_id,
                "tx_type": tx_type,
                "amount": outcome.applied,
                "new_balance": outcome.new_balance,
                "idempotency_key": idempotency_key,
            },
        )
        if outcome.applied != 0:
            self.notifier.publish(
                BalanceChanged(user_id=user_id, delta=outcome.applied, new_balance=outcome.new_balance, tx_type=tx_type)
            )
        return outcome


def _row_to_dict(row) -> Dict[str, Any]:
    data = dict(row._mapping)
    try:
        data["meta"] = json.loads(data.get("meta") or "{}")
    except (TypeError, ValueError):
        data["meta"] = {}
    return data
