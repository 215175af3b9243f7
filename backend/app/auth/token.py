"""
Bearer token → owner identity.

    Authorization: Bearer <RS256 JWT>
          │
          ├─ header.kid ──► issuer key set  (<issuer>/.well-known/jwks.json,
          │                                  kept for an hour, re-read once
          │                                  when the kid is unknown)
          ├─ signature / exp / iss / aud checked by python-jose
          └─ claims ──► OwnerContext(owner_id, sub, email, exp, iss)

owner_id resolution order:
  1. the owner_id claim, when it parses as a UUID
  2. sub, when it parses as a UUID
  3. uuid5 over "issuer|sub", so non-UUID subjects stay stable per issuer

The owner id only scopes catalog and storage calls; nothing else is
enforced at this layer.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)

_KEY_SET_MAX_AGE = 3600
_JWKS_CACHE: dict[str, tuple[dict, float]] = {}


class OwnerContext(BaseModel):
    """Identity attached to every authenticated request."""
    owner_id: UUID
    sub:      str
    email:    str = ""
    exp:      int
    iss:      str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status.HTTP_401_UNAUTHORIZED, detail=detail)


# ---------------------------------------------------------------------------
# Issuer key set
# ---------------------------------------------------------------------------

async def _fetch_jwks(issuer: str) -> dict:
    """Return the issuer's key set, reading it over HTTP when stale."""
    entry = _JWKS_CACHE.get(issuer)
    if entry is not None and time.monotonic() - entry[1] < _KEY_SET_MAX_AGE:
        return entry[0]

    url = issuer.rstrip("/") + "/.well-known/jwks.json"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(url)
            response.raise_for_status()
            key_set = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise ExternalServiceError("auth", f"Could not load issuer keys from {url}: {exc}") from exc

    _JWKS_CACHE[issuer] = (key_set, time.monotonic())
    logger.debug("Issuer keys loaded | issuer=%s keys=%d", issuer, len(key_set.get("keys", [])))
    return key_set


def _find_key(key_set: dict, kid: str | None) -> dict | None:
    return next((k for k in key_set.get("keys", []) if k.get("kid") == kid), None)


async def _key_for(token: str) -> dict:
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized("Malformed token header") from exc

    issuer = settings.auth_issuer
    key = _find_key(await _fetch_jwks(issuer), kid)
    if key is None:
        # Unknown kid: the issuer may have rotated keys since the last read
        _JWKS_CACHE.pop(issuer, None)
        key = _find_key(await _fetch_jwks(issuer), kid)
    if key is None:
        raise _unauthorized(f"No issuer key matches kid={kid}")
    return key


# ---------------------------------------------------------------------------
# Owner id
# ---------------------------------------------------------------------------

def _parse_uuid(value: object) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def extract_owner_id(claims: dict) -> UUID:
    subject = claims.get("sub")
    if not subject:
        raise _unauthorized("Token has no sub claim")

    for candidate in (claims.get("owner_id"), subject):
        parsed = _parse_uuid(candidate)
        if parsed is not None:
            return parsed
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{claims.get('iss', '')}|{subject}")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> OwnerContext:
    key = await _key_for(token)
    check_audience = bool(settings.auth_audience)

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=settings.auth_issuer,
            audience=settings.auth_audience if check_audience else None,
            options={"verify_aud": check_audience},
        )
    except ExpiredSignatureError as exc:
        raise _unauthorized("Token expired") from exc
    except JWTError as exc:
        raise _unauthorized(f"Token rejected: {exc}") from exc

    return OwnerContext(
        owner_id=extract_owner_id(claims),
        sub=claims["sub"],
        email=claims.get("email") or "",
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_owner(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> OwnerContext:
    return await verify_token(credentials.credentials)
