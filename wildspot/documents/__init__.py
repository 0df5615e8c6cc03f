from wildspot.documents.base import (
    SERVER_TIMESTAMP,
    Direction,
    DocumentStore,
    Increment,
    Query,
    Snapshot,
)
from wildspot.documents.sql import SqlDocumentStore

__all__ = [
    "SERVER_TIMESTAMP",
    "Direction",
    "DocumentStore",
    "Increment",
    "Query",
    "Snapshot",
    "SqlDocumentStore",
]
