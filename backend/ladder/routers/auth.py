import os
from datetime import datetime, timedelta, timezone
from typing import Any, Tuple

import jwt
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RATE_LIMITS_DISABLED
from ..db import get_session
from ..exceptions import http_problem
from ..models import User
from ..schemas import UserOut


def get_jwt_secret() -> str:
  secret = os.getenv("JWT_SECRET")
  if not secret:
    raise RuntimeError("JWT_SECRET environment variable is required")
  if len(secret) < 32 or secret.lower() in {"secret", "changeme", "default"}:
    raise RuntimeError(
        "JWT_SECRET must be at least 32 characters and not a common default"
    )
  return secret


JWT_ALG = "HS256"
JWT_EXPIRE_SECONDS = 3600


def _get_client_ip(request: Request) -> str:
  forwarded = request.headers.get("X-Forwarded-For")
  if forwarded:
    parts = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
    if parts:
      return parts[-1]
  real_ip = request.headers.get("X-Real-IP")
  if real_ip:
    return real_ip
  return request.client.host if request.client else ""


def recalc_rate_limit() -> str:
  if RATE_LIMITS_DISABLED:
    return "1000/second"
  return "30/minute"


def rate_limit_cost(request: Request) -> int:
  """Authenticated callers are not throttled."""
  auth_header = request.headers.get("Authorization")
  if auth_header and auth_header.strip():
    return 0
  return 1


limiter = Limiter(key_func=_get_client_ip)
router = APIRouter(prefix="/auth", tags=["auth"])


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
  detail = exc.detail if isinstance(exc.detail, str) else ""
  if detail:
    message = f"rate limit exceeded: {detail}"
  else:
    message = "rate limit exceeded: please wait before submitting another request."
  return JSONResponse(
      status_code=429,
      content={
          "title": "Too Many Requests",
          "detail": message,
          "status": 429,
          "code": "rate_limit_exceeded",
      },
      media_type="application/problem+json",
  )


def create_access_token(user: User, *, expires_in: int = JWT_EXPIRE_SECONDS) -> str:
  now = datetime.now(timezone.utc)
  payload = {
      "sub": user.id,
      "username": user.username,
      "is_admin": user.is_admin,
      "exp": now + timedelta(seconds=expires_in),
  }
  return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALG)


def _extract_bearer_token(authorization: str | None) -> str:
  if authorization and authorization.lower().startswith("bearer "):
    return authorization.split(" ", 1)[1]
  raise http_problem(
      status_code=401,
      detail="missing token",
      code="auth_missing_token",
  )


async def _resolve_user_and_payload(
    authorization: str | None, session: AsyncSession
) -> Tuple[User, dict[str, Any]]:
  token = _extract_bearer_token(authorization)
  try:
    payload = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALG])
  except jwt.ExpiredSignatureError:
    raise http_problem(
        status_code=401,
        detail="token expired",
        code="auth_token_expired",
    )
  except jwt.PyJWTError:
    raise http_problem(
        status_code=401,
        detail="invalid token",
        code="auth_invalid_token",
    )
  uid = payload.get("sub")
  user = await session.get(User, uid) if uid else None
  if not user:
    raise http_problem(
        status_code=401,
        detail="user not found",
        code="auth_user_not_found",
    )
  return user, payload


async def get_current_user(
    authorization: str | None = Header(None),
    session: AsyncSession = Depends(get_session),
) -> User:
  user, _ = await _resolve_user_and_payload(authorization, session)
  return user


@router.get("/me", response_model=UserOut)
async def read_me(current: User = Depends(get_current_user)):
  return UserOut(id=current.id, username=current.username, is_admin=current.is_admin)
