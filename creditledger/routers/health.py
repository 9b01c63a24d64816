"""
Health Router
=============

GET  /api/health               liveness, version, uptime and recent alerts (no auth)
GET  /api/health/ledger        ledger integrity report (internal key)
POST /api/reconciliation/run   trigger a Stripe reconciliation sweep (internal key)

/api/health/ledger answers 200 when no check is critical and 503 otherwise,
so a load balancer or uptime probe can watch it directly.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from creditledger.auth.bearer_auth import require_internal_key
from creditledger.config import Settings
from creditledger.core.alerting import AlertLevel, alert_tracker
from creditledger.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from creditledger.routers.dependencies import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(
    request: Request,
    alert_limit: int = Query(20, ge=0, le=200),
    min_level: Optional[AlertLevel] = Query(None),
):
    state = request.app.state
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "chain_enabled": getattr(state, "chain_service", None) is not None,
        "active_sessions": len(state.meter_registry.active_sessions()),
        "alerts": alert_tracker.recent(limit=alert_limit, min_level=min_level),
    }


@router.get("/health/ledger", dependencies=[Depends(require_internal_key)])
async def ledger_health(
    request: Request,
    window_days: Optional[int] = Query(None, ge=1, le=90),
    include_provider: bool = Query(False),
    settings: Settings = Depends(get_settings),
):
    check = request.app.state.health_check
    report = await asyncio.to_thread(
        check.run, window_days or settings.health_window_days, include_provider
    )
    code = status.HTTP_503_SERVICE_UNAVAILABLE if report.critical else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=report.to_dict())


@router.post("/reconciliation/run", dependencies=[Depends(require_internal_key)])
async def run_reconciliation(
    request: Request,
    hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    dry_run: bool = Query(False),
    settings: Settings = Depends(get_settings),
):
    sweep = request.app.state.reconciliation_sweep
    summary = await asyncio.to_thread(sweep.run, hours or settings.reconciliation_lookback_hours, dry_run)
    return summary.to_dict()
