"""
Adapters package for the Document Gateway.

Wraps the MongoDB driver behind a name-addressed async store. The adapter
owns connection pooling and timeouts, renders BSON values as JSON-ready
values, and maps driver errors to shared errors.
"""

from .mongo_store import MongoDocumentStore, parse_object_id, serialize_document

__all__ = [
    "MongoDocumentStore",
    "parse_object_id",
    "serialize_document",
]
