"""
Storage credentials — explicit token store for the file store

The file store never reads process-global credentials. A TokenStore is
built per request around the DB session and handed to S3FileStore, which
asks it for a valid StorageToken every time it opens a client.

  TokenStore.get()
      │
      ├── persisted token still valid?  → return it
      │
      └── missing / expired             → refresher.refresh()
                                          → persist (single row upsert)
                                          → return it

Expiry is checked with a 5 minute buffer; a token without expiry is valid.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConfigurationError, ExternalServiceError
from app.models.documents import StorageCredential

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_MS = 5 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StorageToken:
    access_key_id:     str
    secret_access_key: str
    session_token:     str | None = None
    expires_at:        int | None = None   # epoch milliseconds

    def is_expired(self, now_ms: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = _now_ms() if now_ms is None else now_ms
        return now >= self.expires_at - EXPIRY_BUFFER_MS


class TokenRefresher(Protocol):
    async def refresh(self) -> StorageToken: ...


class StsTokenRefresher:
    """Mints short-lived session credentials from the long-term keys via STS."""

    def __init__(
        self,
        access_key_id:     str | None = None,
        secret_access_key: str | None = None,
        region:            str | None = None,
        ttl_seconds:       int | None = None,
    ) -> None:
        self._access_key_id     = access_key_id or settings.aws_access_key_id
        self._secret_access_key = secret_access_key or settings.aws_secret_access_key
        self._region            = region or settings.aws_region
        # STS rejects durations under 15 minutes
        self._ttl_seconds       = max(900, ttl_seconds or settings.storage_token_ttl_seconds)

    async def refresh(self) -> StorageToken:
        session = aioboto3.Session(
            aws_access_key_id=self._access_key_id or None,
            aws_secret_access_key=self._secret_access_key or None,
        )
        try:
            async with session.client("sts", region_name=self._region) as sts:
                resp = await sts.get_session_token(DurationSeconds=self._ttl_seconds)
        except (ClientError, BotoCoreError) as exc:
            raise ExternalServiceError("sts", f"{type(exc).__name__}: {exc}") from exc

        creds = resp["Credentials"]
        token = StorageToken(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken"),
            expires_at=int(creds["Expiration"].timestamp() * 1000),
        )
        logger.info("Storage token refreshed | expires_at=%d", token.expires_at)
        return token


class TokenStore:
    """Persisted StorageToken with refresh-on-demand."""

    def __init__(self, session: AsyncSession, refresher: TokenRefresher | None = None) -> None:
        self._db        = session
        self._refresher = refresher

    async def load(self) -> StorageToken | None:
        row = await self._row()
        if row is None:
            return None
        return StorageToken(
            access_key_id=row.access_key_id,
            secret_access_key=row.secret_access_key,
            session_token=row.session_token,
            expires_at=row.expires_at,
        )

    async def get(self) -> StorageToken:
        """
        Return a usable token, refreshing and persisting it when needed.

        Raises:
            ConfigurationError: no valid token and no refresher configured.
            ExternalServiceError: the refresher failed.
        """
        token = await self.load()
        if token is not None and not token.is_expired():
            return token

        if self._refresher is None:
            raise ConfigurationError("no valid storage credentials and no refresher configured")

        logger.info("Storage token %s, refreshing", "expired" if token else "missing")
        token = await self._refresher.refresh()
        await self.save(token)
        return token

    async def save(self, token: StorageToken) -> None:
        row = await self._row()
        if row is None:
            row = StorageCredential()
            self._db.add(row)
        row.access_key_id     = token.access_key_id
        row.secret_access_key = token.secret_access_key
        row.session_token     = token.session_token
        row.expires_at        = token.expires_at
        await self._db.flush()

    async def clear(self) -> None:
        await self._db.execute(delete(StorageCredential))
        logger.info("Storage token cleared")

    async def _row(self) -> StorageCredential | None:
        result = await self._db.execute(
            select(StorageCredential).order_by(StorageCredential.id).limit(1)
        )
        return result.scalar_one_or_none()
