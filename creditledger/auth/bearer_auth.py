"""
Bearer Token Authentication
===========================

Users authenticate with a JWT issued by the product's auth service
(``Authorization: Bearer <token>``, HS256, ``sub`` = user id). Verified
tokens are cached in a TTLCache so the hot path (balance polling, meter
WebSocket reconnects) skips signature checks.

The WebSocket variant reads ``?token=`` because browsers cannot set headers
on a WebSocket handshake.

Service-to-service calls (reconciliation trigger, ledger health) use the
``X-Internal-Key`` header instead.
"""

import hmac
import logging
import time
from typing import Optional

import jwt
from cachetools import TTLCache
from fastapi import Depends, Header, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


class TokenVerifier:
    """Decodes JWTs and remembers the good ones until they expire or the cache TTL lapses."""

    def __init__(self, secret: str, algorithm: str = "HS256", cache: Optional[TTLCache] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.cache = cache if cache is not None else TTLCache(maxsize=1000, ttl=300)

    def verify(self, token: str) -> AuthenticatedUser:
        cached = self.cache.get(token)
        if cached is not None:
            user, exp = cached
            if exp is None or exp > time.time():
                return user
            self.cache.pop(token, None)

        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

        user = AuthenticatedUser(
            user_id=str(user_id),
            email=payload.get("email"),
            is_admin=bool(payload.get("is_admin", False)),
        )
        self.cache[token] = (user, payload.get("exp"))
        return user


def create_token(verifier: TokenVerifier, user_id: str, ttl_s: int = 3600, **claims) -> str:
    """Mint a token the verifier accepts. Used by tests and local tooling."""
    payload = {"sub": user_id, "exp": int(time.time()) + ttl_s, **claims}
    return jwt.encode(payload, verifier.secret, algorithm=verifier.algorithm)


def _verifier(request) -> TokenVerifier:
    return request.app.state.token_verifier


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedUser:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _verifier(request).verify(credentials.credentials)


async def get_websocket_user(websocket: WebSocket) -> Optional[AuthenticatedUser]:
    """Authenticate a WebSocket handshake. Returns None (caller closes 4001) on failure."""
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("authorization", "")
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:]
    if not token:
        return None
    try:
        return _verifier(websocket).verify(token)
    except HTTPException:
        return None


async def require_internal_key(
    request: Request,
    x_internal_key: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.internal_api_key
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Internal API disabled")
    if not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        logger.warning("Rejected internal call from %s", request.client.host if request.client else "?")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid internal key")
