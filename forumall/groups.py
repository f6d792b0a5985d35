"""Groups, their channels and memberships."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from forumall.models import validate_resource_name
from forumall.problem import ServerFnError
from forumall.signature import RequestInfo, SignatureError, verify_ofscp_signature
from forumall.store import DocumentStore, StoreError

DEFAULT_JOIN_POLICY = "open"


def _mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    return data


def _req_str(data: Mapping[str, Any], key: str) -> str:
    if key not in data:
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _opt_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string or null")
    return value


def _text(data: Mapping[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return value if isinstance(value, str) else default


def _maybe_text(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


@dataclass
class Group:
    id: str
    name: str
    owner: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    join_policy: str = DEFAULT_JOIN_POLICY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "join_policy": self.join_policy,
            "owner": self.owner,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Group":
        data = _mapping(data)
        join_policy = data.get("join_policy", DEFAULT_JOIN_POLICY)
        if not isinstance(join_policy, str):
            raise ValueError("field `join_policy` must be a string")
        return cls(
            id=_req_str(data, "id"),
            name=_req_str(data, "name"),
            description=_opt_str(data, "description"),
            join_policy=join_policy,
            owner=_req_str(data, "owner"),
            created_at=_req_str(data, "created_at"),
            updated_at=_req_str(data, "updated_at"),
        )


@dataclass
class Channel:
    id: str
    group_id: str
    name: str
    created_at: str
    updated_at: str
    topic: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "name": self.name,
            "topic": self.topic,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Channel":
        data = _mapping(data)
        return cls(
            id=_req_str(data, "id"),
            group_id=_req_str(data, "group_id"),
            name=_req_str(data, "name"),
            topic=_opt_str(data, "topic"),
            created_at=_req_str(data, "created_at"),
            updated_at=_req_str(data, "updated_at"),
        )


@dataclass
class CreateGroupRequest:
    name: str
    description: Optional[str] = None
    join_policy: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "join_policy": self.join_policy,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CreateGroupRequest":
        data = _mapping(data)
        return cls(
            name=_req_str(data, "name"),
            description=_opt_str(data, "description"),
            join_policy=_opt_str(data, "join_policy"),
        )


@dataclass
class CreateChannelRequest:
    name: str
    topic: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "topic": self.topic}

    @classmethod
    def from_dict(cls, data: Any) -> "CreateChannelRequest":
        data = _mapping(data)
        return cls(name=_req_str(data, "name"), topic=_opt_str(data, "topic"))


@dataclass
class AddMemberRequest:
    handle: str

    def to_dict(self) -> dict[str, Any]:
        return {"handle": self.handle}

    @classmethod
    def from_dict(cls, data: Any) -> "AddMemberRequest":
        return cls(handle=_req_str(_mapping(data), "handle"))


@dataclass
class UpdateGroupSettingsRequest:
    name: Optional[str] = None
    description: Optional[str] = None
    join_policy: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "join_policy": self.join_policy,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UpdateGroupSettingsRequest":
        data = _mapping(data)
        return cls(
            name=_opt_str(data, "name"),
            description=_opt_str(data, "description"),
            join_policy=_opt_str(data, "join_policy"),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_bytes(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _authenticate(store: DocumentStore, request: RequestInfo, body: bytes = b"") -> str:
    try:
        user_id, _ = verify_ofscp_signature(
            store, request.method, request.path, request.headers, body
        )
    except SignatureError as exc:
        raise ServerFnError(
            f"Signature error: {json.dumps(str(exc), ensure_ascii=False)}"
        ) from exc
    return user_id


def _insert(
    store: DocumentStore, collection: str, fields: Mapping[str, Any], context: str
) -> None:
    try:
        store.insert_into(collection, fields)
    except StoreError as exc:
        raise ServerFnError(f"{context}: {exc}") from exc


def _is_member(store: DocumentStore, group_id: str, user_id: str) -> bool:
    return bool(store.query("group_members", group_id=group_id, user_id=user_id))


def _group_from_doc(data: Mapping[str, Any]) -> Group:
    return Group(
        id=_text(data, "id"),
        name=_text(data, "name"),
        description=_maybe_text(data, "description"),
        join_policy=_text(data, "join_policy", DEFAULT_JOIN_POLICY),
        owner=_text(data, "owner"),
        created_at=_text(data, "created_at"),
        updated_at=_text(data, "updated_at"),
    )


def _channel_from_doc(data: Mapping[str, Any]) -> Channel:
    return Channel(
        id=_text(data, "id"),
        group_id=_text(data, "group_id"),
        name=_text(data, "name"),
        topic=_maybe_text(data, "topic"),
        created_at=_text(data, "created_at"),
        updated_at=_text(data, "updated_at"),
    )


def create_group(
    store: DocumentStore, request: RequestInfo, payload: CreateGroupRequest, server_url: str
) -> Group:
    """Create a group named by the payload, with the signing user as its owner."""
    user_id = _authenticate(store, request, _json_bytes(payload.to_dict()))

    group_id = payload.name.strip()
    if not validate_resource_name(group_id):
        raise ServerFnError(
            "Invalid group name. Must be lowercase alphanumeric, periods, underscores, or dashes."
        )

    now = _now()
    if store.query("groups", id=group_id):
        raise ServerFnError("A group with this name already exists")

    group = Group(
        id=group_id,
        name=payload.name,
        description=payload.description,
        join_policy=payload.join_policy if payload.join_policy is not None else DEFAULT_JOIN_POLICY,
        owner=user_id,
        created_at=now,
        updated_at=now,
    )

    _insert(
        store,
        "groups",
        {
            "id": group.id,
            "name": group.name,
            "description": group.description or "",
            "join_policy": group.join_policy,
            "owner": group.owner,
            "created_at": group.created_at,
            "updated_at": group.updated_at,
        },
        "Database error",
    )
    _insert(
        store,
        "group_members",
        {"group_id": group_id, "user_id": user_id, "role": "owner", "created_at": now},
        "Database error",
    )
    _insert(
        store,
        "user_joined_groups",
        {
            "user_id": user_id,
            "group_id": group_id,
            "host": server_url,
            "name": group.name,
            "joined_at": now,
        },
        "Database error",
    )
    return group


def list_groups_for_user(store: DocumentStore, request: RequestInfo) -> list[Group]:
    """List the groups the signing user belongs to, newest first."""
    user_id = _authenticate(store, request)

    group_ids = [
        doc.data["group_id"]
        for doc in store.query("group_members", user_id=user_id)
        if isinstance(doc.data.get("group_id"), str)
    ]
    groups = []
    for group_id in group_ids:
        matches = store.query("groups", id=group_id)
        if matches:
            groups.append(_group_from_doc(matches[0].data))
    return sorted(groups, key=lambda g: g.created_at, reverse=True)


def create_channel(
    store: DocumentStore, request: RequestInfo, group_id: str, payload: CreateChannelRequest
) -> Channel:
    """Create a channel in a group the signing user is a member of."""
    user_id = _authenticate(store, request, _json_bytes(payload.to_dict()))

    if not validate_resource_name(payload.name):
        raise ServerFnError(
            "Invalid channel name. Must be lowercase alphanumeric, periods, underscores, or dashes."
        )

    channel_id = str(uuid.uuid4())
    now = _now()

    if not _is_member(store, group_id, user_id):
        raise ServerFnError("Unauthorized: Not a group member")

    channel = Channel(
        id=channel_id,
        group_id=group_id,
        name=payload.name,
        topic=payload.topic,
        created_at=now,
        updated_at=now,
    )
    _insert(
        store,
        "channels",
        {
            "id": channel.id,
            "group_id": channel.group_id,
            "name": channel.name,
            "topic": channel.topic or "",
            "created_at": channel.created_at,
            "updated_at": channel.updated_at,
        },
        "Database error",
    )
    return channel


def list_channels(store: DocumentStore, request: RequestInfo, group_id: str) -> list[Channel]:
    """List a group's channels, oldest first, for a member of the group."""
    user_id = _authenticate(store, request)

    if not _is_member(store, group_id, user_id):
        raise ServerFnError("Unauthorized")

    channels = [_channel_from_doc(doc.data) for doc in store.query("channels", group_id=group_id)]
    return sorted(channels, key=lambda c: c.created_at)


def add_group_member(
    store: DocumentStore,
    request: RequestInfo,
    group_id: str,
    payload: AddMemberRequest,
    server_url: str,
) -> None:
    """Let a group's owner add a local user to the group."""
    user_id = _authenticate(store, request, _json_bytes(payload.to_dict()))
    now = _now()

    group_docs = store.query("groups", id=group_id, owner=user_id)
    if not group_docs:
        raise ServerFnError("Unauthorized: Only the group owner can add members")

    user_docs = store.query("users", handle=payload.handle)
    if not user_docs:
        raise ServerFnError(f"User '{payload.handle}' not found")
    target_user_id = user_docs[0].data.get("handle")
    if not isinstance(target_user_id, str):
        raise ServerFnError("Invalid user data")

    if _is_member(store, group_id, target_user_id):
        raise ServerFnError(f"User '{payload.handle}' is already a member of this group")

    _insert(
        store,
        "group_members",
        {"group_id": group_id, "user_id": target_user_id, "role": "member", "created_at": now},
        "Database error adding member",
    )

    group_name = _text(group_docs[0].data, "name", "Unknown Group")
    _insert(
        store,
        "user_joined_groups",
        {
            "user_id": target_user_id,
            "group_id": group_id,
            "host": server_url,
            "name": group_name,
            "joined_at": now,
        },
        "Database error updating joined groups",
    )


def update_group_settings(
    store: DocumentStore,
    request: RequestInfo,
    group_id: str,
    payload: UpdateGroupSettingsRequest,
) -> None:
    """Let a group's owner change its name, description or join policy."""
    user_id = _authenticate(store, request, _json_bytes(payload.to_dict()))

    group_docs = store.query("groups", id=group_id, owner=user_id)
    if not group_docs:
        raise ServerFnError("Unauthorized: Only the group owner can update settings")

    changes = {
        key: value
        for key, value in (
            ("name", payload.name),
            ("description", payload.description),
            ("join_policy", payload.join_policy),
        )
        if value is not None
    }
    try:
        store.update_document("groups", group_docs[0].id, changes)
    except StoreError as exc:
        raise ServerFnError(f"Database error updating group: {exc}") from exc


def join_group(
    store: DocumentStore, request: RequestInfo, group_id: str, server_url: str
) -> None:
    """Join an open group; joining a group already joined succeeds again."""
    user_id = _authenticate(store, request)
    now = _now()

    if not _is_member(store, group_id, user_id):
        group_docs = store.query("groups", id=group_id)
        if not group_docs:
            raise ServerFnError("Group not found")
        join_policy = _text(group_docs[0].data, "join_policy", DEFAULT_JOIN_POLICY)
        if join_policy != DEFAULT_JOIN_POLICY:
            raise ServerFnError("Group is not open for joining")
        _insert(
            store,
            "group_members",
            {"group_id": group_id, "user_id": user_id, "role": "member", "created_at": now},
            "Database error adding member",
        )

    group_docs = store.query("groups", id=group_id)
    group_name = _text(group_docs[0].data, "name", "Unknown") if group_docs else "Unknown"
    _insert(
        store,
        "user_joined_groups",
        {
            "user_id": user_id,
            "group_id": group_id,
            "host": server_url,
            "name": group_name,
            "joined_at": now,
        },
        "Database error",
    )