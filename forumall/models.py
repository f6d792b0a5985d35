"""Protocol data types and their JSON wire forms."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar, Union

T = TypeVar("T")

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})\Z"
)


def format_datetime(value: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC with a 'Z' suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    micro = value.microsecond
    if micro == 0:
        fraction = ""
    elif micro % 1000 == 0:
        fraction = f".{micro // 1000:03d}"
    else:
        fraction = f".{micro:06d}"
    return value.strftime("%Y-%m-%dT%H:%M:%S") + fraction + "Z"


def parse_datetime(text: Any) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not isinstance(text, str):
        raise ValueError("timestamp must be a string")
    match = _RFC3339.match(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second = (int(match.group(n)) for n in range(1, 7))
    micro = int((match.group(7) or "")[:6].ljust(6, "0"))
    zone = match.group(8)
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz).astimezone(
        timezone.utc
    )


def _field(data: Any, key: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    if key not in data:
        raise ValueError(f"missing field `{key}`")
    return data[key]


def _str(data: Any, key: str) -> str:
    value = _field(data, key)
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _opt_str(data: Any, key: str) -> Optional[str]:
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string or null")
    return value


def _list(data: Any, key: str, decode: Callable[[Any], T]) -> list[T]:
    value = _field(data, key)
    if not isinstance(value, list):
        raise ValueError(f"field `{key}` must be an array")
    return [decode(item) for item in value]


def _opt(data: Any, key: str, decode: Callable[[Any], T]) -> Optional[T]:
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    value = data.get(key)
    return None if value is None else decode(value)


def _enum(cls: type, value: Any) -> Any:
    try:
        return cls(value)
    except ValueError:
        raise ValueError(f"unknown {cls.__name__} variant: {value!r}") from None


def validate_resource_name(name: str) -> bool:
    """True if the name is non-empty lowercase ASCII letters, digits, '.', '_' or '-'."""
    return bool(name) and all(
        ("a" <= c <= "z") or ("0" <= c <= "9") or c in "._-" for c in name
    )


class Discoverability(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    PUBLIC = "public"
    DISCOVERABLE = "discoverable"


class VisibilityPolicy(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    SHARED_GROUPS = "sharedGroups"
    CONTACTS = "contacts"
    NOBODY = "nobody"


class MessageType(str, Enum):
    MESSAGE = "message"
    MEMO = "memo"
    ARTICLE = "article"


class PublicKeyAlg(str, Enum):
    ED25519 = "Ed25519"


@dataclass
class MetadataItem:
    schema: str
    version: str
    data: Any

    def to_dict(self) -> dict[str, Any]:
        return {"schema": self.schema, "version": self.version, "data": self.data}

    @classmethod
    def from_dict(cls, data: Any) -> "MetadataItem":
        return cls(_str(data, "schema"), _str(data, "version"), _field(data, "data"))


@dataclass
class UserProfile:
    handle: str
    domain: str
    updated_at: datetime
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    metadata: list[MetadataItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "domain": self.domain,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "updatedAt": format_datetime(self.updated_at),
            "metadata": [item.to_dict() for item in self.metadata],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UserProfile":
        return cls(
            handle=_str(data, "handle"),
            domain=_str(data, "domain"),
            display_name=_opt_str(data, "displayName"),
            avatar=_opt_str(data, "avatar"),
            updated_at=parse_datetime(_field(data, "updatedAt")),
            metadata=_list(data, "metadata", MetadataItem.from_dict),
        )


@dataclass
class UserAccount:
    profile: UserProfile
    settings: Any

    def to_dict(self) -> dict[str, Any]:
        return {"profile": self.profile.to_dict(), "settings": self.settings}

    @classmethod
    def from_dict(cls, data: Any) -> "UserAccount":
        return cls(UserProfile.from_dict(_field(data, "profile")), _field(data, "settings"))


@dataclass
class Attachment:
    id: str
    mime: str
    url: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Attachment":
        size = _field(data, "size")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ValueError("field `size` must be a non-negative integer")
        return cls(_str(data, "id"), _str(data, "mime"), _str(data, "url"), size)


@dataclass
class Content:
    text: str
    mime: str

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "mime": self.mime}

    @classmethod
    def from_dict(cls, data: Any) -> "Content":
        return cls(_str(data, "text"), _str(data, "mime"))


@dataclass
class MessageReference:
    kind: str
    id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "id": self.id}

    @classmethod
    def from_dict(cls, data: Any) -> "MessageReference":
        return cls(_str(data, "type"), _str(data, "id"))


@dataclass
class Permissions:
    edit_until: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "editUntil": None if self.edit_until is None else format_datetime(self.edit_until)
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Permissions":
        return cls(_opt(data, "editUntil", parse_datetime))


@dataclass
class BaseMessage:
    id: str
    author: str
    kind: MessageType
    content: Content
    created_at: datetime
    attachments: list[Attachment] = field(default_factory=list)
    reference: Optional[MessageReference] = None
    tags: list[str] = field(default_factory=list)
    permissions: Optional[Permissions] = None
    metadata: list[MetadataItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "type": MessageType(self.kind).value,
            "content": self.content.to_dict(),
            "attachments": [a.to_dict() for a in self.attachments],
            "reference": None if self.reference is None else self.reference.to_dict(),
            "tags": list(self.tags),
            "createdAt": format_datetime(self.created_at),
            "permissions": None if self.permissions is None else self.permissions.to_dict(),
            "metadata": [m.to_dict() for m in self.metadata],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "BaseMessage":
        def tag(value: Any) -> str:
            if not isinstance(value, str):
                raise ValueError("tags must be strings")
            return value

        return cls(
            id=_str(data, "id"),
            author=_str(data, "author"),
            kind=_enum(MessageType, _field(data, "type")),
            content=Content.from_dict(_field(data, "content")),
            attachments=_list(data, "attachments", Attachment.from_dict),
            reference=_opt(data, "reference", MessageReference.from_dict),
            tags=_list(data, "tags", tag),
            created_at=parse_datetime(_field(data, "createdAt")),
            permissions=_opt(data, "permissions", Permissions.from_dict),
            metadata=_list(data, "metadata", MetadataItem.from_dict),
        )


@dataclass
class Reaction:
    id: str
    author: str
    key: str
    reference: MessageReference
    created_at: datetime
    unicode: Optional[str] = None
    image: Optional[str] = None
    metadata: list[MetadataItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "key": self.key,
            "unicode": self.unicode,
            "image": self.image,
            "reference": self.reference.to_dict(),
            "createdAt": format_datetime(self.created_at),
            "metadata": [m.to_dict() for m in self.metadata],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Reaction":
        return cls(
            id=_str(data, "id"),
            author=_str(data, "author"),
            key=_str(data, "key"),
            unicode=_opt_str(data, "unicode"),
            image=_opt_str(data, "image"),
            reference=MessageReference.from_dict(_field(data, "reference")),
            created_at=parse_datetime(_field(data, "createdAt")),
            metadata=_list(data, "metadata", MetadataItem.from_dict),
        )


TimelineItem = Union[BaseMessage, Reaction]


def timeline_item_from_dict(data: Any) -> TimelineItem:
    """Decode a timeline entry, trying a message first and then a reaction."""
    for decode in (BaseMessage.from_dict, Reaction.from_dict):
        try:
            return decode(data)
        except ValueError:
            continue
    raise ValueError("data did not match any variant of TimelineItem")


@dataclass
class PageInfo:
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"nextCursor": self.next_cursor, "prevCursor": self.prev_cursor}

    @classmethod
    def from_dict(cls, data: Any) -> "PageInfo":
        return cls(_opt_str(data, "nextCursor"), _opt_str(data, "prevCursor"))


@dataclass
class PagedResponse(Generic[T]):
    items: list[T]
    page: PageInfo

    def to_dict(self, encode_item: Optional[Callable[[T], Any]] = None) -> dict[str, Any]:
        encode = encode_item or (lambda item: item.to_dict())
        return {"items": [encode(item) for item in self.items], "page": self.page.to_dict()}

    @classmethod
    def from_dict(cls, data: Any, decode_item: Callable[[Any], T]) -> "PagedResponse[T]":
        return cls(_list(data, "items", decode_item), PageInfo.from_dict(_field(data, "page")))


@dataclass
class SoftwareInfo:
    name: str
    version: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version}

    @classmethod
    def from_dict(cls, data: Any) -> "SoftwareInfo":
        return cls(_str(data, "name"), _str(data, "version"))


@dataclass
class AuthenticationEndpoints:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    jwks_uri: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorizationEndpoint": self.authorization_endpoint,
            "tokenEndpoint": self.token_endpoint,
            "userinfoEndpoint": self.userinfo_endpoint,
            "jwksUri": self.jwks_uri,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AuthenticationEndpoints":
        return cls(
            issuer=_str(data, "issuer"),
            authorization_endpoint=_str(data, "authorizationEndpoint"),
            token_endpoint=_str(data, "tokenEndpoint"),
            userinfo_endpoint=_str(data, "userinfoEndpoint"),
            jwks_uri=_opt_str(data, "jwksUri"),
        )


@dataclass
class PublicKey:
    kid: str
    alg: PublicKeyAlg
    public_key: str

    def to_dict(self) -> dict[str, Any]:
        return {"kid": self.kid, "alg": PublicKeyAlg(self.alg).value, "publicKey": self.public_key}

    @classmethod
    def from_dict(cls, data: Any) -> "PublicKey":
        return cls(
            _str(data, "kid"), _enum(PublicKeyAlg, _field(data, "alg")), _str(data, "publicKey")
        )


@dataclass
class ProviderInfo:
    domain: str
    protocol_version: str
    software: SoftwareInfo
    contact: str
    authentication: AuthenticationEndpoints
    public_keys: Optional[list[PublicKey]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "protocolVersion": self.protocol_version,
            "software": self.software.to_dict(),
            "contact": self.contact,
            "authentication": self.authentication.to_dict(),
            "publicKeys": None
            if self.public_keys is None
            else [key.to_dict() for key in self.public_keys],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ProviderInfo":
        public_keys = None
        if _opt(data, "publicKeys", lambda v: v) is not None:
            public_keys = _list(data, "publicKeys", PublicKey.from_dict)
        return cls(
            domain=_str(data, "domain"),
            protocol_version=_str(data, "protocolVersion"),
            software=SoftwareInfo.from_dict(_field(data, "software")),
            contact=_str(data, "contact"),
            authentication=AuthenticationEndpoints.from_dict(_field(data, "authentication")),
            public_keys=public_keys,
        )


@dataclass
class MetadataSchemaInfo:
    id: str
    uri: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "uri": self.uri}

    @classmethod
    def from_dict(cls, data: Any) -> "MetadataSchemaInfo":
        return cls(_str(data, "id"), _str(data, "uri"))


@dataclass
class Capabilities:
    message_types: list[MessageType] = field(default_factory=list)
    discoverability: list[Discoverability] = field(default_factory=list)
    metadata_schemas: list[MetadataSchemaInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageTypes": [MessageType(t).value for t in self.message_types],
            "discoverability": [Discoverability(d).value for d in self.discoverability],
            "metadataSchemas": [s.to_dict() for s in self.metadata_schemas],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Capabilities":
        return cls(
            message_types=_list(data, "messageTypes", lambda v: _enum(MessageType, v)),
            discoverability=_list(data, "discoverability", lambda v: _enum(Discoverability, v)),
            metadata_schemas=_list(data, "metadataSchemas", MetadataSchemaInfo.from_dict),
        )


@dataclass
class Endpoints:
    identity: str
    groups: str
    notifications: str
    tiers: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Endpoints":
        return cls(
            _str(data, "identity"),
            _str(data, "groups"),
            _str(data, "notifications"),
            _str(data, "tiers"),
        )


@dataclass
class DiscoveryDocument:
    provider: ProviderInfo
    capabilities: Capabilities
    endpoints: Endpoints

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.to_dict(),
            "capabilities": self.capabilities.to_dict(),
            "endpoints": self.endpoints.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "DiscoveryDocument":
        return cls(
            ProviderInfo.from_dict(_field(data, "provider")),
            Capabilities.from_dict(_field(data, "capabilities")),
            Endpoints.from_dict(_field(data, "endpoints")),
        )


@dataclass
class SubscribeCommand:
    channel_id: str


@dataclass
class UnsubscribeCommand:
    channel_id: str


@dataclass
class MessageCreateCommand:
    channel_id: str
    body: str
    nonce: str


ClientCommand = Union[SubscribeCommand, UnsubscribeCommand, MessageCreateCommand]


@dataclass
class MessageNewEvent:
    message: BaseMessage


@dataclass
class AckEvent:
    nonce: str
    message_id: str


@dataclass
class ErrorEvent:
    code: str
    message: str
    correlation_id: Optional[str] = None


ServerEvent = Union[MessageNewEvent, AckEvent, ErrorEvent]

_COMMAND_TAGS: dict[type, str] = {
    SubscribeCommand: "subscribe",
    UnsubscribeCommand: "unsubscribe",
    MessageCreateCommand: "message.create",
}


def client_command_to_dict(command: ClientCommand) -> dict[str, Any]:
    """Encode a client command as {"type": ..., "data": {...}}."""
    tag = _COMMAND_TAGS.get(type(command))
    if tag is None:
        raise TypeError(f"not a client command: {command!r}")
    return {"type": tag, "data": asdict(command)}


def client_command_from_dict(data: Any) -> ClientCommand:
    tag = _str(data, "type")
    body = _field(data, "data")
    if tag in ("subscribe", "unsubscribe"):
        channel_id = _str(body, "channel_id")
        return SubscribeCommand(channel_id) if tag == "subscribe" else UnsubscribeCommand(channel_id)
    if tag == "message.create":
        return MessageCreateCommand(
            _str(body, "channel_id"), _str(body, "body"), _str(body, "nonce")
        )
    raise ValueError(f"unknown client command type: {tag!r}")


def server_event_to_dict(event: ServerEvent) -> dict[str, Any]:
    """Encode a server event as {"type": ..., "data": {...}}."""
    if isinstance(event, MessageNewEvent):
        return {"type": "message.new", "data": {"message": event.message.to_dict()}}
    if isinstance(event, AckEvent):
        return {"type": "ack", "data": {"nonce": event.nonce, "message_id": event.message_id}}
    if isinstance(event, ErrorEvent):
        return {
            "type": "error",
            "data": {
                "code": event.code,
                "message": event.message,
                "correlation_id": event.correlation_id,
            },
        }
    raise TypeError(f"not a server event: {event!r}")


def server_event_from_dict(data: Any) -> ServerEvent:
    tag = _str(data, "type")
    body = _field(data, "data")
    if tag == "message.new":
        return MessageNewEvent(BaseMessage.from_dict(_field(body, "message")))
    if tag == "ack":
        return AckEvent(_str(body, "nonce"), _str(body, "message_id"))
    if tag == "error":
        return ErrorEvent(
            _str(body, "code"), _str(body, "message"), _opt_str(body, "correlation_id")
        )
    raise ValueError(f"unknown server event type: {tag!r}")


_ENVELOPE_KEYS = ("id", "ts", "correlationId")


@dataclass
class WsEnvelope(Generic[T]):
    """A WebSocket frame: an id, a timestamp and a payload flattened beside them."""

    id: str
    payload: T
    ts: datetime
    correlation_id: Optional[str] = None

    def to_dict(self, encode_payload: Callable[[T], Mapping[str, Any]]) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        out.update(encode_payload(self.payload))
        out["ts"] = format_datetime(self.ts)
        if self.correlation_id is not None:
            out["correlationId"] = self.correlation_id
        return out

    @classmethod
    def from_dict(cls, data: Any, decode_payload: Callable[[Any], T]) -> "WsEnvelope[T]":
        envelope_id = _str(data, "id")
        ts = parse_datetime(_field(data, "ts"))
        rest = {key: value for key, value in data.items() if key not in _ENVELOPE_KEYS}
        return cls(
            id=envelope_id,
            payload=decode_payload(rest),
            ts=ts,
            correlation_id=_opt_str(data, "correlationId"),
        )


@dataclass
class UserJoinedGroup:
    group_id: str
    name: str
    joined_at: str
    host: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "host": self.host,
            "name": self.name,
            "joinedAt": self.joined_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UserJoinedGroup":
        return cls(
            group_id=_str(data, "groupId"),
            host=_opt_str(data, "host"),
            name=_str(data, "name"),
            joined_at=_str(data, "joinedAt"),
        )