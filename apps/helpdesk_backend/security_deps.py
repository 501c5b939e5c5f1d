from __future__ import annotations

import hmac
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from common_core import rbac
from common_core.config import settings
from common_core.errors import HelpdeskError
from common_core.security import verify_jwt

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


def get_actor(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> Actor:
    if not creds:
        raise HTTPException(status_code=401, detail="AUTH_REQUIRED")
    try:
        claims = verify_jwt(creds.credentials)
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail="AUTH_INVALID") from e
    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="AUTH_INVALID")
    return Actor(id=str(sub), role=rbac.normalize_role(claims.get("role")))


def require_cron(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> None:
    if not creds or not hmac.compare_digest(creds.credentials, settings.cron_secret):
        raise HTTPException(status_code=401, detail="CRON_UNAUTHORIZED")


def http_error(e: HelpdeskError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.message})
