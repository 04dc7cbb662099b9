"""Persistencia: esquema SQL y almacén de documentos."""

from .store import AcceptResult, DocumentStore, SqlDocumentStore, StatusResolver
from .tables import create_schema, metadata

__all__ = [
    "AcceptResult",
    "DocumentStore",
    "SqlDocumentStore",
    "StatusResolver",
    "create_schema",
    "metadata",
]
