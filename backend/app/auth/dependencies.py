"""
Composed FastAPI Dependencies

Combines auth + DB session + external adapters into injectable objects.
Route handlers import from here: never from auth/token, db/session or the
adapters directly.

This is the single wiring point for the request context:

    OwnerContext ─┐
    AsyncSession ─┼─► Catalog, TokenStore ─► S3FileStore
                  └─► services built per request in the routers
    TextExtractor, Classifier are process-wide (stateless clients)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.token import OwnerContext, get_current_owner
from app.classification.classifier import Classifier, LLMClassifier
from app.db.session import get_db
from app.processing.extractor import TextExtractor, build_text_extractor
from app.services.catalog import Catalog
from app.storage.s3 import FileStore, S3FileStore
from app.storage.tokens import StsTokenRefresher, TokenStore


# ---------------------------------------------------------------------------
# 1. Catalog bound to the request session
# ---------------------------------------------------------------------------

def get_catalog(db: Annotated[AsyncSession, Depends(get_db)]) -> Catalog:
    return Catalog(db)


# ---------------------------------------------------------------------------
# 2. File store with an explicit token store
# ---------------------------------------------------------------------------

def get_token_store(db: Annotated[AsyncSession, Depends(get_db)]) -> TokenStore:
    return TokenStore(db, refresher=StsTokenRefresher())


def get_file_store(tokens: Annotated[TokenStore, Depends(get_token_store)]) -> FileStore:
    return S3FileStore(token_store=tokens)


# ---------------------------------------------------------------------------
# 3. Stateless analysis clients
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_text_extractor() -> TextExtractor:
    return build_text_extractor()


@lru_cache(maxsize=1)
def get_classifier() -> Classifier:
    return LLMClassifier()


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentOwner   = Annotated[OwnerContext,  Depends(get_current_owner)]
OwnerCatalog   = Annotated[Catalog,       Depends(get_catalog)]
OwnerFileStore = Annotated[FileStore,     Depends(get_file_store)]
Extractor      = Annotated[TextExtractor, Depends(get_text_extractor)]
DocClassifier  = Annotated[Classifier,    Depends(get_classifier)]
