"""
Sessions Router
===============

POST /api/sessions               start a metered session for a persona
GET  /api/sessions/{id}          current meter snapshot
POST /api/sessions/{id}/end      end it; an ended session is no longer listed (404)
WS   /api/sessions/{id}/events   meter events as JSON frames

The WebSocket closes with 4001 on bad credentials and 4004 for a session
that is unknown or belongs to someone else. After the meter terminates the
socket receives the final events and is closed normally.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from creditledger.auth.bearer_auth import AuthenticatedUser, get_current_user, get_websocket_user
from creditledger.core.errors import SessionNotFound
from creditledger.routers.dependencies import get_meter_registry
from creditledger.services.session_meter import MeteredSession, SessionMeterRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class StartSessionRequest(BaseModel):
    avatar_id: str = Field(..., min_length=1)


def _owned(registry: SessionMeterRegistry, session_id: str, user: AuthenticatedUser) -> MeteredSession:
    session = registry.get(session_id)
    if session.user_id != user.user_id:
        raise SessionNotFound(session_id)
    return session


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session(
    body: StartSessionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    registry: SessionMeterRegistry = Depends(get_meter_registry),
):
    session = await registry.start_session(user.user_id, body.avatar_id)
    return session.snapshot()


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    registry: SessionMeterRegistry = Depends(get_meter_registry),
):
    return _owned(registry, session_id, user).snapshot()


@router.post("/sessions/{session_id}/end")
async def end_session(
    session_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    registry: SessionMeterRegistry = Depends(get_meter_registry),
):
    _owned(registry, session_id, user)
    session = await registry.end_session(session_id)
    return session.snapshot()


@router.websocket("/sessions/{session_id}/events")
async def session_events(websocket: WebSocket, session_id: str):
    user = await get_websocket_user(websocket)
    if user is None:
        await websocket.close(code=4001)
        return

    registry: SessionMeterRegistry = websocket.app.state.meter_registry
    try:
        session = registry.get(session_id)
    except SessionNotFound:
        session = None
    if session is None or session.user_id != user.user_id:
        await websocket.close(code=4004)
        return

    await websocket.accept()
    queue = session.channel.subscribe()
    try:
        await websocket.send_json({"event": "session-state", **session.snapshot()})
        while True:
            event = await queue.get()
            if event is None:
                break
            await websocket.send_json(event.to_dict())
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("Meter event subscriber disconnected", extra={"session_id": session_id})
    finally:
        session.channel.unsubscribe(queue)
