"""
S3 File Store — hierarchical folders over a flat bucket

Layout:

    s3://<BUCKET>/<root_prefix>/<folder>/                  ← folder marker (0 bytes)
    s3://<BUCKET>/<root_prefix>/<folder>/<uuid>-<name>     ← stored file

  - A folder id is its key prefix without the trailing slash
    (e.g. "workspace/Facturas"); a file id is its full object key.
  - Folder and file names are sanitized server-side; a client never
    supplies a raw key segment.
  - move() is copy + delete and returns the relocated FileRef.
  - Credentials come from the TokenStore passed in at construction; a new
    client is opened per operation with the current token.

Every botocore ClientError is re-raised as ExternalServiceError("s3", ...).
"""

from __future__ import annotations

import logging
import posixpath
import re
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.errors import ExternalServiceError, ValidationError
from app.storage.tokens import TokenStore

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/x-directory"

_UNSAFE_CHARS = re.compile(r"[\\/\x00-\x1f]+")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FolderRef:
    id:   str     # key prefix, no trailing slash
    name: str
    link: str


@dataclass(frozen=True)
class FileRef:
    id:        str     # full object key
    name:      str
    mime_type: str
    folder_id: str
    link:      str


def sanitize_segment(name: str) -> str:
    """Make a user-supplied name safe to use as one key segment."""
    cleaned = _UNSAFE_CHARS.sub("_", name).replace("..", "_").strip()
    return cleaned or "untitled"


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class FileStore(ABC):

    @abstractmethod
    async def create_folder(self, name: str, parent_id: str | None = None) -> FolderRef: ...

    @abstractmethod
    async def find_folder(self, name: str, parent_id: str | None = None) -> FolderRef | None: ...

    @abstractmethod
    async def get_or_create_folder(self, name: str, parent_id: str | None = None) -> FolderRef: ...

    @abstractmethod
    async def upload(self, data: bytes, name: str, mime_type: str, folder_id: str) -> FileRef: ...

    @abstractmethod
    async def move(self, file_id: str, target_folder_id: str) -> FileRef: ...

    @abstractmethod
    async def delete(self, file_id: str, check_empty: bool = False) -> None: ...

    @abstractmethod
    async def public_url(self, file_id: str) -> str: ...

    @abstractmethod
    async def list(self, folder_id: str) -> list[FileRef]: ...


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3FileStore(FileStore):
    """
    Async S3 operations under one root prefix.

    One instance per request (FastAPI dependency), bound to that request's
    TokenStore.
    """

    def __init__(
        self,
        token_store: TokenStore,
        bucket:      str | None = None,
        root_prefix: str | None = None,
    ) -> None:
        self._tokens  = token_store
        self._bucket  = bucket or settings.s3_bucket
        self._root    = (root_prefix if root_prefix is not None else settings.storage_root_prefix).strip("/")
        self._session = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _client(self):
        """Open an S3 client with the current token; map AWS errors."""
        token = await self._tokens.get()
        try:
            async with self._session.client(
                "s3",
                region_name=settings.aws_region,
                aws_access_key_id=token.access_key_id,
                aws_secret_access_key=token.secret_access_key,
                aws_session_token=token.session_token,
            ) as s3:
                yield s3
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise ExternalServiceError("s3", f"{code}: {exc}") from exc
        except BotoCoreError as exc:
            raise ExternalServiceError("s3", f"{type(exc).__name__}: {exc}") from exc

    def _folder_id(self, name: str, parent_id: str | None) -> str:
        parent = (parent_id or self._root).strip("/")
        segment = sanitize_segment(name)
        return f"{parent}/{segment}" if parent else segment

    def _link(self, key: str) -> str:
        return f"s3://{self._bucket}/{key}"

    def _folder_ref(self, folder_id: str) -> FolderRef:
        return FolderRef(id=folder_id, name=posixpath.basename(folder_id), link=self._link(folder_id + "/"))

    @staticmethod
    def _display_name(key: str) -> str:
        base = posixpath.basename(key)
        prefix, sep, rest = base.partition("-")
        return rest if sep and len(prefix) == 32 else base

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def create_folder(self, name: str, parent_id: str | None = None) -> FolderRef:
        folder_id = self._folder_id(name, parent_id)
        async with self._client() as s3:
            await s3.put_object(Bucket=self._bucket, Key=folder_id + "/", Body=b"")
        logger.info("S3 folder created | folder=%s", folder_id)
        return self._folder_ref(folder_id)

    async def find_folder(self, name: str, parent_id: str | None = None) -> FolderRef | None:
        folder_id = self._folder_id(name, parent_id)
        async with self._client() as s3:
            resp = await s3.list_objects_v2(Bucket=self._bucket, Prefix=folder_id + "/", MaxKeys=1)
        if resp.get("KeyCount", 0) == 0:
            return None
        return self._folder_ref(folder_id)

    async def get_or_create_folder(self, name: str, parent_id: str | None = None) -> FolderRef:
        existing = await self.find_folder(name, parent_id)
        if existing is not None:
            return existing
        return await self.create_folder(name, parent_id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload(self, data: bytes, name: str, mime_type: str, folder_id: str) -> FileRef:
        key = f"{folder_id.strip('/')}/{uuid.uuid4().hex}-{sanitize_segment(name)}"
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
                Metadata={"original-name": sanitize_segment(name)},
            )
        logger.info("S3 upload ok | key=%s size=%d mime=%s", key, len(data), mime_type)
        return FileRef(id=key, name=name, mime_type=mime_type, folder_id=folder_id, link=self._link(key))

    async def move(self, file_id: str, target_folder_id: str) -> FileRef:
        target = target_folder_id.strip("/")
        new_key = f"{target}/{posixpath.basename(file_id)}"
        if new_key == file_id:
            return FileRef(
                id=file_id, name=self._display_name(file_id), mime_type="",
                folder_id=target, link=self._link(file_id),
            )

        async with self._client() as s3:
            head = await s3.head_object(Bucket=self._bucket, Key=file_id)
            await s3.copy_object(
                Bucket=self._bucket,
                Key=new_key,
                CopySource={"Bucket": self._bucket, "Key": file_id},
            )
            await s3.delete_object(Bucket=self._bucket, Key=file_id)

        logger.info("S3 move ok | from=%s to=%s", file_id, new_key)
        return FileRef(
            id=new_key,
            name=self._display_name(new_key),
            mime_type=head.get("ContentType", ""),
            folder_id=target,
            link=self._link(new_key),
        )

    async def delete(self, file_id: str, check_empty: bool = False) -> None:
        """
        Delete one object.

        check_empty=True treats file_id as a folder: the marker is removed
        only when the folder holds nothing else.

        Raises:
            ValidationError: the folder is not empty.
        """
        if check_empty:
            children = await self.list(file_id)
            if children:
                raise ValidationError(
                    f"Folder '{posixpath.basename(file_id)}' is not empty ({len(children)} items)",
                    field="folder_id",
                )
            key = file_id.rstrip("/") + "/"
        else:
            key = file_id

        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=key)
        logger.warning("S3 delete | key=%s", key)

    async def public_url(self, file_id: str) -> str:
        """Short-lived presigned GET URL scoped to the exact key."""
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": file_id},
                ExpiresIn=settings.public_url_ttl_seconds,
            )

    async def list(self, folder_id: str) -> list[FileRef]:
        """Direct children of a folder (files and sub-folders)."""
        prefix = folder_id.strip("/") + "/"
        refs: list[FileRef] = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix, Delimiter="/"):
                for sub in page.get("CommonPrefixes", []):
                    sub_id = sub["Prefix"].rstrip("/")
                    refs.append(FileRef(
                        id=sub_id, name=posixpath.basename(sub_id), mime_type=FOLDER_MIME,
                        folder_id=folder_id, link=self._link(sub["Prefix"]),
                    ))
                for obj in page.get("Contents", []):
                    if obj["Key"] == prefix:
                        continue
                    refs.append(FileRef(
                        id=obj["Key"], name=self._display_name(obj["Key"]), mime_type="",
                        folder_id=folder_id, link=self._link(obj["Key"]),
                    ))
        return refs
