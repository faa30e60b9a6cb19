"""Database package: engine handle and the document store built on it."""

from app.db.base import Base, Database
from app.db.document_store import (
    DocumentNotFoundError,
    DocumentStore,
    DuplicateKeyError,
    SqlDocumentStore,
)

__all__ = [
    "Base",
    "Database",
    "DocumentNotFoundError",
    "DocumentStore",
    "DuplicateKeyError",
    "SqlDocumentStore",
]
