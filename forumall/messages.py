"""Posting to and paging through a group channel's message timeline."""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Mapping, Optional

from forumall.models import Content, PageInfo
from forumall.problem import HttpError
from forumall.signature import RequestInfo, SignatureError, verify_ofscp_signature
from forumall.store import Document, DocumentStore, StoreError

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
FORWARD = "forward"
BACKWARD = "backward"


@dataclass
class SendMessageRequest:
    body: str

    def to_dict(self) -> dict[str, Any]:
        return {"body": self.body}

    @classmethod
    def from_dict(cls, data: Any) -> "SendMessageRequest":
        if not isinstance(data, Mapping):
            raise ValueError("expected a JSON object")
        body = data.get("body")
        if not isinstance(body, str):
            raise ValueError("field `body` must be a string")
        return cls(body=body)


@dataclass
class TimelineMessage:
    """A plain-text message as it appears in a channel timeline."""

    id: str
    author: str
    content: Content
    created_at: str
    kind: str = "message"
    attachments: list[Any] = field(default_factory=list)
    metadata: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": {"id": self.author},
            "type": self.kind,
            "content": self.content.to_dict(),
            "attachments": list(self.attachments),
            "createdAt": self.created_at,
            "metadata": list(self.metadata),
        }


@dataclass
class SendMessageResponse:
    item: TimelineMessage

    def to_dict(self) -> dict[str, Any]:
        return {"item": self.item.to_dict()}


@dataclass
class MessagesPage:
    items: list[TimelineMessage]
    page: PageInfo

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "page": self.page.to_dict()}


def encode_cursor(timestamp: str, message_id: str) -> str:
    """Encode a (timestamp, id) position as unpadded URL-safe base64."""
    raw = f"{timestamp}|{message_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Optional[tuple[str, str]]:
    """Decode a cursor made by encode_cursor; None if it is not one."""
    if "=" in cursor:
        return None
    try:
        raw = base64.urlsafe_b64decode(cursor + "=" * (-len(cursor) % 4))
        text = raw.decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != cursor:
        return None
    timestamp, sep, message_id = text.partition("|")
    if not sep:
        return None
    return timestamp, message_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_bytes(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _author_ref(user_id: str) -> str:
    return f"https://localhost/api/users/{user_id}"


def _authenticate(
    store: DocumentStore, request: RequestInfo, body: bytes = b""
) -> tuple[str, str]:
    try:
        return verify_ofscp_signature(store, request.method, request.path, request.headers, body)
    except SignatureError as exc:
        raise HttpError(
            HTTPStatus.UNAUTHORIZED,
            f"Signature error: {json.dumps(str(exc), ensure_ascii=False)}",
        ) from exc


def _require_channel_in_group(store: DocumentStore, group_id: str, channel_id: str) -> None:
    docs = store.query("channels", id=channel_id)
    if not docs:
        raise HttpError(HTTPStatus.NOT_FOUND, "Channel not found")
    if _text(docs[0].data, "group_id") != group_id:
        raise HttpError(HTTPStatus.NOT_FOUND, "Channel not found in group")


def _require_member(store: DocumentStore, group_id: str, user_id: str) -> None:
    if not store.query("group_members", group_id=group_id, user_id=user_id):
        raise HttpError(HTTPStatus.FORBIDDEN, "Not a member of that group")


def _insert(store: DocumentStore, collection: str, fields: Mapping[str, Any]) -> None:
    try:
        store.insert_into(collection, fields)
    except StoreError as exc:
        raise HttpError(HTTPStatus.INTERNAL_SERVER_ERROR, f"Database error: {exc}") from exc


def send_message(
    store: DocumentStore,
    request: RequestInfo,
    group_id: str,
    channel_id: str,
    payload: SendMessageRequest,
) -> SendMessageResponse:
    """Post a message to a channel of a group the signing user belongs to."""
    user_id, key_id = _authenticate(store, request, _json_bytes(payload.to_dict()))

    _require_channel_in_group(store, group_id, channel_id)
    _require_member(store, group_id, user_id)

    message_id = str(uuid.uuid4())
    now = _now()
    _insert(
        store,
        "messages",
        {
            "id": message_id,
            "channel_id": channel_id,
            "sender_user_id": user_id,
            "body": payload.body,
            "created_at": now,
        },
    )
    _insert(store, "idempotency_keys", {"user_id": user_id, "key": key_id, "created_at": now})

    item = TimelineMessage(
        id=message_id,
        author=_author_ref(user_id),
        content=Content(text=payload.body, mime="text/plain"),
        created_at=now,
    )
    return SendMessageResponse(item=item)


def _position(doc: Document) -> tuple[str, str]:
    return _text(doc.data, "created_at"), _text(doc.data, "id")


def list_messages(
    store: DocumentStore,
    request: RequestInfo,
    group_id: str,
    channel_id: str,
    cursor: Optional[str] = None,
    direction: Optional[str] = None,
    limit: Optional[int] = None,
) -> MessagesPage:
    """Return one page of a channel's messages, oldest first within the page."""
    user_id, _ = _authenticate(store, request)

    if limit is None:
        limit = DEFAULT_LIMIT
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise HttpError(HTTPStatus.BAD_REQUEST, "Invalid limit")
    limit = min(limit, MAX_LIMIT)

    direction = BACKWARD if direction is None else direction
    if direction not in (BACKWARD, FORWARD):
        raise HttpError(HTTPStatus.BAD_REQUEST, "Unsupported direction")

    _require_member(store, group_id, user_id)
    _require_channel_in_group(store, group_id, channel_id)

    position = decode_cursor(cursor) if cursor is not None else None
    ordered = sorted(store.query("messages", channel_id=channel_id), key=_position)

    if position is None:
        selected = ordered if direction == FORWARD else ordered[::-1]
    elif direction == FORWARD:
        selected = [doc for doc in ordered if _position(doc) > position]
    else:
        selected = [doc for doc in ordered if _position(doc) < position][::-1]

    items = [
        TimelineMessage(
            id=_text(doc.data, "id"),
            author=_author_ref(_text(doc.data, "sender_user_id")),
            content=Content(text=_text(doc.data, "body"), mime="text/plain"),
            created_at=_text(doc.data, "created_at"),
        )
        for doc in selected[:limit]
    ]
    if direction == BACKWARD:
        items.reverse()

    page = PageInfo(
        next_cursor=encode_cursor(items[0].created_at, items[0].id) if items else None,
        prev_cursor=encode_cursor(items[-1].created_at, items[-1].id) if items else None,
    )
    return MessagesPage(items=items, page=page)