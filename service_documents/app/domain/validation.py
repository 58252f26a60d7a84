"""
Input validation for dynamically addressed databases and collections.
"""

import re
from typing import Any, Iterable, Optional

from bson import ObjectId

from shared.errors import InvalidArgumentError
from ..adapters.mongo_store import parse_object_id


MAX_DATABASE_NAME_LENGTH = 64
MAX_COLLECTION_NAME_LENGTH = 255

_INVALID_DATABASE_CHARS = re.compile(r'[/\\.\s"$*<>:|?]')

# Server-side JavaScript operators never accepted in bodies or filters
DANGEROUS_OPERATORS = ("$where", "$function", "$accumulator", "$emit")


def is_valid_database_name(name: Any) -> bool:
    if not name or not isinstance(name, str):
        return False
    return len(name) <= MAX_DATABASE_NAME_LENGTH and not _INVALID_DATABASE_CHARS.search(name)


def is_valid_collection_name(name: Any) -> bool:
    if not name or not isinstance(name, str):
        return False
    if name.startswith("system.") or "$" in name or "\0" in name:
        return False
    return len(name) <= MAX_COLLECTION_NAME_LENGTH


def validate_namespace(database: str, collection: str, allowed_databases: Optional[Iterable[str]] = None) -> None:
    """Reject database/collection names the datastore must never see."""
    if not is_valid_database_name(database):
        raise InvalidArgumentError("Invalid database name", details={"database": database})
    allowed = list(allowed_databases or [])
    if allowed and database not in allowed:
        raise InvalidArgumentError("Database is not allowed", details={"database": database})
    if not is_valid_collection_name(collection):
        raise InvalidArgumentError("Invalid collection name", details={"collection": collection})


def require_object_id(value: Any, message: str = "Invalid document ID format") -> ObjectId:
    oid = parse_object_id(value)
    if oid is None:
        raise InvalidArgumentError(message, details={"id": value})
    return oid


def sanitize_document(value: Any) -> Any:
    """Recursively drop keys naming server-side JavaScript operators."""
    if isinstance(value, dict):
        return {
            key: sanitize_document(item)
            for key, item in value.items()
            if not any(op in key for op in DANGEROUS_OPERATORS)
        }
    if isinstance(value, list):
        return [sanitize_document(item) for item in value]
    return value
