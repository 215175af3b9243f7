"""
Unit Tests — S3FileStore
════════════════════════
The aioboto3 session is replaced by a mock whose client() yields a mocked
S3 client, so every test runs without AWS or LocalStack.

Coverage targets:
  ✅ Every operation opens its client with the TokenStore's current token
  ✅ Folder ids / marker keys under the root prefix; names sanitized
  ✅ find_folder / get_or_create_folder
  ✅ upload key layout and metadata
  ✅ move = head + copy + delete, returns the relocated FileRef
  ✅ delete(check_empty=True) refuses a non-empty folder
  ✅ list: sub-folders and files, marker skipped
  ✅ ClientError → ExternalServiceError("s3")
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from app.core.errors import ExternalServiceError, ValidationError
from app.storage.s3 import FOLDER_MIME, S3FileStore, sanitize_segment
from app.storage.tokens import StorageToken, TokenStore

pytestmark = [pytest.mark.unit, pytest.mark.storage]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _Pages:
    """Async iterator standing in for an aiobotocore paginator result."""

    def __init__(self, pages: list[dict]) -> None:
        self._pages = list(pages)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        if not self._pages:
            raise StopAsyncIteration
        return self._pages.pop(0)


def _client_error(code: str, operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3():
    client = MagicMock()
    client.put_object              = AsyncMock(return_value={})
    client.list_objects_v2         = AsyncMock(return_value={"KeyCount": 0})
    client.head_object             = AsyncMock(return_value={"ContentType": "application/pdf"})
    client.copy_object             = AsyncMock(return_value={})
    client.delete_object           = AsyncMock(return_value={})
    client.generate_presigned_url  = AsyncMock(return_value="https://signed.example/x")
    client.get_paginator           = MagicMock()
    return client


@pytest.fixture
def token_store():
    tokens = MagicMock(spec=TokenStore)
    tokens.get = AsyncMock(return_value=StorageToken(
        access_key_id="ASIATEST", secret_access_key="secret", session_token="session",
    ))
    return tokens


@pytest.fixture
def store(s3, token_store):
    store = S3FileStore(token_store=token_store, bucket="test-bucket", root_prefix="workspace")
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=s3)
    context.__aexit__  = AsyncMock(return_value=False)
    store._session = MagicMock()
    store._session.client = MagicMock(return_value=context)
    return store


# ─────────────────────────────────────────────────────────────────────────────
# Credentials
# ─────────────────────────────────────────────────────────────────────────────

async def test_client_uses_current_token(store, token_store):
    await store.create_folder("Facturas")

    token_store.get.assert_awaited_once()
    kwargs = store._session.client.call_args.kwargs
    assert store._session.client.call_args.args == ("s3",)
    assert kwargs["aws_access_key_id"] == "ASIATEST"
    assert kwargs["aws_session_token"] == "session"


# ─────────────────────────────────────────────────────────────────────────────
# Folders
# ─────────────────────────────────────────────────────────────────────────────

class TestFolders:

    async def test_create_folder_writes_marker(self, store, s3):
        folder = await store.create_folder("Facturas")

        s3.put_object.assert_awaited_once_with(Bucket="test-bucket", Key="workspace/Facturas/", Body=b"")
        assert folder.id == "workspace/Facturas"
        assert folder.name == "Facturas"
        assert folder.link == "s3://test-bucket/workspace/Facturas/"

    async def test_nested_folder_and_sanitized_name(self, store):
        folder = await store.create_folder("../2024/Q1", parent_id="workspace/Facturas")
        assert folder.id == "workspace/Facturas/__2024_Q1"

    async def test_find_folder_missing(self, store, s3):
        assert await store.find_folder("Boletas") is None
        s3.list_objects_v2.assert_awaited_once_with(Bucket="test-bucket", Prefix="workspace/Boletas/", MaxKeys=1)

    async def test_get_or_create_existing(self, store, s3):
        s3.list_objects_v2.return_value = {"KeyCount": 1}
        folder = await store.get_or_create_folder("Boletas")
        assert folder.id == "workspace/Boletas"
        s3.put_object.assert_not_awaited()

    async def test_get_or_create_missing(self, store, s3):
        folder = await store.get_or_create_folder("Boletas")
        assert folder.id == "workspace/Boletas"
        s3.put_object.assert_awaited_once()


def test_sanitize_segment():
    assert sanitize_segment("a/b\\c") == "a_b_c"
    assert sanitize_segment("   ") == "untitled"


# ─────────────────────────────────────────────────────────────────────────────
# Files
# ─────────────────────────────────────────────────────────────────────────────

class TestFiles:

    async def test_upload(self, store, s3, sample_pdf_bytes):
        ref = await store.upload(sample_pdf_bytes, "factura marzo.pdf", "application/pdf", "workspace/Processing")

        kwargs = s3.put_object.await_args.kwargs
        assert kwargs["Key"] == ref.id
        assert kwargs["ContentType"] == "application/pdf"
        assert kwargs["Body"] == sample_pdf_bytes
        folder, _, base = ref.id.rpartition("/")
        assert folder == "workspace/Processing"
        assert base.endswith("-factura marzo.pdf")
        assert len(base.split("-", 1)[0]) == 32
        assert ref.link == f"s3://test-bucket/{ref.id}"

    async def test_move(self, store, s3):
        key = "workspace/Processing/" + "a" * 32 + "-f.pdf"
        moved = await store.move(key, "workspace/Facturas")

        assert moved.id == "workspace/Facturas/" + "a" * 32 + "-f.pdf"
        assert moved.name == "f.pdf"
        assert moved.mime_type == "application/pdf"
        assert moved.folder_id == "workspace/Facturas"
        s3.copy_object.assert_awaited_once_with(
            Bucket="test-bucket",
            Key=moved.id,
            CopySource={"Bucket": "test-bucket", "Key": key},
        )
        s3.delete_object.assert_awaited_once_with(Bucket="test-bucket", Key=key)

    async def test_move_to_same_folder_is_noop(self, store, s3):
        key = "workspace/Facturas/abc-f.pdf"
        moved = await store.move(key, "workspace/Facturas/")
        assert moved.id == key
        s3.copy_object.assert_not_awaited()

    async def test_delete_file(self, store, s3):
        await store.delete("workspace/Facturas/abc-f.pdf")
        s3.delete_object.assert_awaited_once_with(Bucket="test-bucket", Key="workspace/Facturas/abc-f.pdf")

    async def test_delete_non_empty_folder_refused(self, store, s3):
        s3.get_paginator.return_value.paginate = MagicMock(return_value=_Pages([
            {"Contents": [{"Key": "workspace/Facturas/"}, {"Key": "workspace/Facturas/abc-f.pdf"}]},
        ]))
        with pytest.raises(ValidationError):
            await store.delete("workspace/Facturas", check_empty=True)
        s3.delete_object.assert_not_awaited()

    async def test_delete_empty_folder_removes_marker(self, store, s3):
        s3.get_paginator.return_value.paginate = MagicMock(return_value=_Pages([
            {"Contents": [{"Key": "workspace/Vacia/"}]},
        ]))
        await store.delete("workspace/Vacia", check_empty=True)
        s3.delete_object.assert_awaited_once_with(Bucket="test-bucket", Key="workspace/Vacia/")

    async def test_public_url(self, store, s3):
        url = await store.public_url("workspace/Facturas/abc-f.pdf")
        assert url == "https://signed.example/x"
        args = s3.generate_presigned_url.await_args
        assert args.args == ("get_object",)
        assert args.kwargs["Params"] == {"Bucket": "test-bucket", "Key": "workspace/Facturas/abc-f.pdf"}

    async def test_list(self, store, s3):
        s3.get_paginator.return_value.paginate = MagicMock(return_value=_Pages([
            {"CommonPrefixes": [{"Prefix": "workspace/Facturas/2024/"}],
             "Contents": [{"Key": "workspace/Facturas/"}, {"Key": "workspace/Facturas/" + "b" * 32 + "-x.png"}]},
            {"Contents": [{"Key": "workspace/Facturas/suelto.pdf"}]},
        ]))

        refs = await store.list("workspace/Facturas")

        assert [(r.id, r.name) for r in refs] == [
            ("workspace/Facturas/2024", "2024"),
            ("workspace/Facturas/" + "b" * 32 + "-x.png", "x.png"),
            ("workspace/Facturas/suelto.pdf", "suelto.pdf"),
        ]
        assert refs[0].mime_type == FOLDER_MIME


async def test_client_error_is_external_service_error(store, s3):
    s3.put_object.side_effect = _client_error("AccessDenied")
    with pytest.raises(ExternalServiceError) as exc_info:
        await store.create_folder("Facturas")
    assert exc_info.value.service == "s3"
    assert "AccessDenied" in exc_info.value.detail
