"""A small in-memory document store with named collections and unique fields."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Union

FieldSpec = tuple[str, type, bool]
Fields = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]


class StoreError(Exception):
    """Raised when a store operation cannot be carried out."""


@dataclass
class Document:
    """A stored record: its internal id and a copy of its data."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


class DocumentStore:
    """Thread-safe collections of documents queried by field equality."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._schemas: dict[str, dict[str, tuple[type, bool]]] = {}
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}

    def new_collection(self, name: str, fields: Iterable[FieldSpec]) -> None:
        """Create a collection from (field name, type, unique) specifications."""
        with self._lock:
            if name in self._schemas:
                raise StoreError(f"collection '{name}' already exists")
            self._schemas[name] = {
                field_name: (field_type, bool(unique)) for field_name, field_type, unique in fields
            }
            self._docs[name] = {}

    def insert_into(self, collection: str, fields: Fields) -> str:
        """Insert a document and return its generated id."""
        data = dict(fields)
        with self._lock:
            schema = self._schema(collection)
            self._check(collection, schema, data, exclude_id=None)
            doc_id = str(uuid.uuid4())
            self._docs[collection][doc_id] = data
            return doc_id

    def query(self, collection: str, **kwargs: Any) -> list[Document]:
        """Return the documents whose fields equal every given value, in insertion order."""
        with self._lock:
            docs = self._docs.get(collection)
            if docs is None:
                return []
            return [
                Document(doc_id, dict(data))
                for doc_id, data in docs.items()
                if all(key in data and data[key] == value for key, value in kwargs.items())
            ]

    def update_document(self, collection: str, doc_id: str, fields: Fields) -> None:
        """Merge the given fields into an existing document."""
        changes = dict(fields)
        with self._lock:
            schema = self._schema(collection)
            current = self._docs[collection].get(doc_id)
            if current is None:
                raise StoreError(f"document '{doc_id}' not found in '{collection}'")
            merged = {**current, **changes}
            self._check(collection, schema, merged, exclude_id=doc_id)
            self._docs[collection][doc_id] = merged

    def _schema(self, collection: str) -> dict[str, tuple[type, bool]]:
        schema = self._schemas.get(collection)
        if schema is None:
            raise StoreError(f"collection '{collection}' does not exist")
        return schema

    def _check(
        self,
        collection: str,
        schema: dict[str, tuple[type, bool]],
        data: Mapping[str, Any],
        exclude_id: str | None,
    ) -> None:
        for name, value in data.items():
            spec = schema.get(name)
            if spec is None or value is None:
                continue
            field_type, unique = spec
            if not isinstance(value, field_type):
                raise StoreError(
                    f"field '{name}' in '{collection}' must be of type {field_type.__name__}"
                )
            if unique and any(
                other.get(name) == value
                for other_id, other in self._docs[collection].items()
                if other_id != exclude_id
            ):
                raise StoreError(f"unique constraint violated on '{collection}.{name}'")


def create_forum_store() -> DocumentStore:
    """Create a store holding every collection the forum uses."""
    store = DocumentStore()
    store.new_collection(
        "users",
        [
            ("handle", str, True),
            ("domain", str, False),
            ("password_hash", str, False),
            ("created_at", str, False),
            ("updated_at", str, False),
        ],
    )
    store.new_collection(
        "groups",
        [
            ("id", str, True),
            ("name", str, False),
            ("description", str, False),
            ("join_policy", str, False),
            ("owner_user_id", str, False),
            ("created_at", str, False),
        ],
    )
    store.new_collection(
        "group_members",
        [
            ("group_id", str, False),
            ("user_id", str, False),
            ("role", str, False),
            ("created_at", str, False),
        ],
    )
    store.new_collection(
        "channels",
        [
            ("id", str, True),
            ("group_id", str, False),
            ("name", str, False),
            ("topic", str, False),
            ("created_at", str, False),
            ("updated_at", str, False),
        ],
    )
    store.new_collection(
        "messages",
        [
            ("id", str, True),
            ("channel_id", str, False),
            ("sender_user_id", str, False),
            ("body", str, False),
            ("created_at", str, False),
        ],
    )
    store.new_collection(
        "idempotency_keys",
        [
            ("user_id", str, False),
            ("key", str, False),
            ("created_at", str, False),
        ],
    )
    store.new_collection(
        "user_joined_groups",
        [
            ("user_id", str, False),
            ("group_id", str, False),
            ("host", str, False),
            ("name", str, False),
            ("joined_at", str, False),
        ],
    )
    store.new_collection(
        "device_keys",
        [
            ("key_id", str, True),
            ("user_handle", str, False),
            ("public_key", str, False),
            ("device_name", str, False),
            ("created_at", str, False),
            ("last_used_at", str, False),
            ("revoked", str, False),
        ],
    )
    return store