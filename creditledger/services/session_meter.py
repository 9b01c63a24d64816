"""
Session Meter
=============

PURPOSE:
    Bills a running paid session against the ledger in whole minutes and
    ends it gracefully when the balance runs out or the time cap is hit.

STATE MACHINE:
    ACTIVE      -> LOW_BALANCE  balance after a charge cannot cover one more interval
    LOW_BALANCE -> ACTIVE       a top-up (BalanceChanged) restores enough for an interval
    ACTIVE | LOW_BALANCE -> TERMINATED
        normal_end            client or server ended the session
        insufficient_credits  a charge was refused by the ledger
        time_limit_reached    max_session_minutes of wall-clock time elapsed
        billing_failed        the meter hit an error it cannot retry (e.g. account closed)

EVENTS (published on the session's SessionChannel):
    credits-updated       {amount, new_balance, total_spent}
    low-balance-warning   {balance, per_minute_rate}
    insufficient-credits  {message, total_spent}
    session-force-ended   {reason}

    Each charge is one ledger debit keyed ``meter:<session>:<minute>``, so
    cancelling a tick mid-flight either charged that minute or did not; it
    never charges it twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session

from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.errors import InsufficientCredits, SessionNotFound, StoreUnavailable
from creditledger.core.structured_logging import meter_session_var
from creditledger.models.ledger import CallSession, SessionEndReason, TransactionType
from creditledger.models.pricing import PersonaPricing, PricingCatalog
from creditledger.services.ledger import BalanceChanged, CreditLedger

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60
CHANNEL_QUEUE_SIZE = 100


class MeterState(str, Enum):
    ACTIVE = "active"
    LOW_BALANCE = "low_balance"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class MeterEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, **self.payload}


class SessionChannel:
    """Per-session fan-out: every subscriber gets its own bounded queue.

    A ``None`` in a queue means the channel is closed.
    """

    def __init__(self, session_id: str, maxsize: int = CHANNEL_QUEUE_SIZE) -> None:
        self.session_id = session_id
        self._maxsize = maxsize
        self._queues: List[asyncio.Queue] = []
        self.closed = False

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        if self.closed:
            queue.put_nowait(None)
        else:
            self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: MeterEvent) -> None:
        if self.closed:
            return
        for queue in self._queues:
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for queue in self._queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        self._queues.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)


class MeteredSession:
    """One paid session. tick() is driven by the registry's timer task."""

    def __init__(
        self,
        ledger: CreditLedger,
        session_id: str,
        user_id: str,
        persona: PersonaPricing,
        channel: Optional[SessionChannel] = None,
        *,
        max_minutes: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.session_id = session_id
        self.user_id = user_id
        self.persona = persona
        self.channel = channel or SessionChannel(session_id)
        self.max_minutes = max_minutes
        self._clock = clock

        self.state = MeterState.ACTIVE
        self.end_reason: Optional[SessionEndReason] = None
        self.credits_spent = 0
        self.billed_minutes = 0
        self._started_at = clock()
        self._last_billed_at = self._started_at
        self._lock = asyncio.Lock()

    @property
    def per_minute_rate(self) -> int:
        return self.persona.per_minute_rate

    @property
    def terminated(self) -> bool:
        return self.state == MeterState.TERMINATED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "avatar_id": self.persona.id,
            "per_minute_rate": self.per_minute_rate,
            "state": self.state.value,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "credits_spent": self.credits_spent,
            "billed_minutes": self.billed_minutes,
        }

    async def tick(self) -> MeterState:
        """Charge for whole minutes elapsed since the last billed instant."""
        async with self._lock:
            if self.terminated:
                return self.state

            token = meter_session_var.set(self.session_id)
            now = self._clock()
            try:
                try:
                    await self._charge(now)
                except StoreUnavailable:
                    # The cap runs on wall-clock time, billed or not
                    if self._past_time_cap(now):
                        await self._terminate(SessionEndReason.TIME_LIMIT_REACHED)
                        return self.state
                    raise
                if not self.terminated and self._past_time_cap(now):
                    await self._terminate(SessionEndReason.TIME_LIMIT_REACHED)
                return self.state
            finally:
                meter_session_var.reset(token)

    def _past_time_cap(self, now: float) -> bool:
        return now - self._started_at >= self.max_minutes * SECONDS_PER_MINUTE

    async def _charge(self, now: float) -> MeterState:
        elapsed = now - self._last_billed_at
        minutes = int(elapsed // SECONDS_PER_MINUTE)
        minutes = min(minutes, self.max_minutes - self.billed_minutes)

        if minutes > 0:
            cost = minutes * self.per_minute_rate
            first_minute = self.billed_minutes + 1
            try:
                new_balance = await asyncio.to_thread(
                    self.ledger.debit,
                    self.user_id,
                    cost,
                    f"{minutes} minute conversation with {self.persona.name or self.persona.id}",
                    f"meter:{self.session_id}:{first_minute}",
                    False,
                    tx_type=TransactionType.SPEND.value,
                    avatar_id=self.persona.id,
                    session_id=self.session_id,
                )
            except InsufficientCredits as exc:
                logger.info(
                    "Per-minute charge refused",
                    extra={"user_id": self.user_id, "required": exc.required, "available": exc.available},
                )
                self.channel.publish(
                    MeterEvent(
                        "insufficient-credits",
                        {"message": "Call ended due to insufficient credits", "total_spent": self.credits_spent},
                    )
                )
                await self._terminate(SessionEndReason.INSUFFICIENT_CREDITS)
                return self.state

            self.credits_spent += cost
            self.billed_minutes += minutes
            self._last_billed_at += minutes * SECONDS_PER_MINUTE
            logger.info(
                "Per-minute charge successful",
                extra={"amount": cost, "new_balance": new_balance, "total_spent": self.credits_spent},
            )
            self.channel.publish(
                MeterEvent(
                    "credits-updated",
                    {"amount": cost, "new_balance": new_balance, "total_spent": self.credits_spent},
                )
            )
            await asyncio.to_thread(self._persist)

            if new_balance < self.per_minute_rate:
                if self.state != MeterState.LOW_BALANCE:
                    self.state = MeterState.LOW_BALANCE
                    self.channel.publish(
                        MeterEvent(
                            "low-balance-warning",
                            {"balance": new_balance, "per_minute_rate": self.per_minute_rate},
                        )
                    )
            else:
                self.state = MeterState.ACTIVE
        return self.state

    async def close(self, reason: SessionEndReason = SessionEndReason.NORMAL_END) -> None:
        """End the session. Idempotent: later calls and racing ticks are no-ops."""
        async with self._lock:
            if self.terminated:
                return
            await self._terminate(reason)

    def on_balance_changed(self, change: BalanceChanged) -> None:
        """Lift LOW_BALANCE once a top-up covers another interval. Runs on the event loop."""
        if self.state == MeterState.LOW_BALANCE and change.delta > 0 and change.new_balance >= self.per_minute_rate:
            self.state = MeterState.ACTIVE
            logger.info(
                "Session balance restored",
                extra={"session_id": self.session_id, "new_balance": change.new_balance},
            )

    async def _terminate(self, reason: SessionEndReason) -> None:
        self.state = MeterState.TERMINATED
        self.end_reason = reason
        if reason != SessionEndReason.NORMAL_END:
            self.channel.publish(MeterEvent("session-force-ended", {"reason": reason.value}))
        try:
            await asyncio.to_thread(self._persist, True)
        except StoreUnavailable:
            logger.error("Could not record end of session %s", self.session_id)
        finally:
            self.channel.close()
        logger.info(
            "Ended CallSession",
            extra={"session_id": self.session_id, "credits_spent": self.credits_spent, "reason": reason.value},
        )

    def _persist(self, ended: bool = False) -> None:
        self.ledger.run_guarded(lambda: self._write_record(ended))

    def _write_record(self, ended: bool) -> None:
        with Session(self.ledger.engine) as db:
            record = db.get(CallSession, self.session_id)
            if record is None:
                return
            record.credits_spent = self.credits_spent
            if ended and record.ended_at is None:
                record.ended_at = datetime.now(timezone.utc)
                record.end_reason = self.end_reason.value if self.end_reason else None
            db.add(record)
            db.commit()


class SessionMeterRegistry:
    """Owns the live sessions and their timer tasks."""

    def __init__(
        self,
        ledger: CreditLedger,
        pricing: PricingCatalog,
        *,
        interval_s: float = 60,
        max_minutes: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.pricing = pricing
        self.interval_s = interval_s
        self.max_minutes = max_minutes
        self._clock = clock
        self._sessions: Dict[str, MeteredSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe = ledger.notifier.subscribe(self._on_balance_changed)

    async def start_session(self, user_id: str, avatar_id: str, autostart: bool = True) -> MeteredSession:
        persona = self.pricing.get(avatar_id)
        check = await asyncio.to_thread(self.ledger.validate_sufficient, user_id, persona.per_minute_rate)
        if not check["sufficient"]:
            raise InsufficientCredits(
                required=persona.per_minute_rate, available=check["current_balance"], user_id=user_id
            )

        record = CallSession(user_id=user_id, avatar_id=avatar_id, per_minute_rate=persona.per_minute_rate)
        await asyncio.to_thread(self.ledger.run_guarded, lambda: self._insert(record))

        session = MeteredSession(
            self.ledger, record.id, user_id, persona,
            max_minutes=self.max_minutes, clock=self._clock,
        )
        self._loop = asyncio.get_running_loop()
        self._sessions[session.session_id] = session
        if autostart:
            self._tasks[session.session_id] = asyncio.create_task(self._run(session))
        logger.info(
            "Starting per-minute credit timer",
            extra={"session_id": session.session_id, "avatar_id": avatar_id, "amount": persona.per_minute_rate},
        )
        return session

    def get(self, session_id: str) -> MeteredSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def active_sessions(self, user_id: Optional[str] = None) -> List[MeteredSession]:
        return [s for s in self._sessions.values() if user_id is None or s.user_id == user_id]

    async def end_session(self, session_id: str, reason: SessionEndReason = SessionEndReason.NORMAL_END) -> MeteredSession:
        session = self.get(session_id)
        await session.close(reason)
        task = self._tasks.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._sessions.pop(session_id, None)
        return session

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.end_session(session_id)
        self._unsubscribe()

    async def _run(self, session: MeteredSession) -> None:
        try:
            while not session.terminated:
                await asyncio.sleep(self.interval_s)
                try:
                    await session.tick()
                except StoreUnavailable:
                    # Unbilled minutes carry over to the next tick
                    logger.warning("Meter tick deferred, ledger unavailable", extra={"session_id": session.session_id})
                except Exception as exc:
                    logger.exception("Meter tick failed", extra={"session_id": session.session_id})
                    send_alert(
                        "Session meter stopped",
                        f"{session.session_id} ({session.user_id}): {exc}",
                        level=AlertLevel.HIGH,
                        category=AlertCategory.BUSINESS,
                        context={"session_id": session.session_id, "user_id": session.user_id},
                        fingerprint="business.meter.tick_failed",
                    )
                    await session.close(SessionEndReason.BILLING_FAILED)
        finally:
            if session.terminated:
                self._tasks.pop(session.session_id, None)
                self._sessions.pop(session.session_id, None)

    def _insert(self, record: CallSession) -> None:
        with Session(self.ledger.engine) as db:
            db.add(record)
            db.commit()
            db.refresh(record)

    def _on_balance_changed(self, change: BalanceChanged) -> None:
        # Called from whichever thread committed the ledger write
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._dispatch_balance_change, change)

    def _dispatch_balance_change(self, change: BalanceChanged) -> None:
        for session in self.active_sessions(change.user_id):
            session.on_balance_changed(change)
