from app.auth.token import OwnerContext, get_current_owner, verify_token
from app.auth.dependencies import CurrentOwner, DocClassifier, Extractor, OwnerCatalog, OwnerFileStore

__all__ = [
    "OwnerContext", "get_current_owner", "verify_token",
    "CurrentOwner", "OwnerCatalog", "OwnerFileStore", "Extractor", "DocClassifier",
]
