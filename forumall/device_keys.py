"""Device key registration, listing, revocation and public discovery."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from forumall.problem import ServerFnError
from forumall.signature import RequestInfo, SignatureError, verify_ofscp_signature
from forumall.store import DocumentStore, StoreError


@dataclass
class DeviceKey:
    key_id: str
    user_handle: str
    public_key: str
    device_name: str
    created_at: str
    last_used_at: str
    revoked: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RegisterDeviceKeyRequest:
    public_key: str
    device_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"public_key": self.public_key, "device_name": self.device_name}

    @classmethod
    def from_dict(cls, data: Any) -> "RegisterDeviceKeyRequest":
        if not isinstance(data, Mapping):
            raise ValueError("expected a JSON object")
        values = []
        for key in ("public_key", "device_name"):
            value = data.get(key)
            if not isinstance(value, str):
                raise ValueError(f"field `{key}` must be a string")
            values.append(value)
        return cls(*values)


@dataclass
class RegisterDeviceKeyResponse:
    key_id: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiscoveryKey:
    key_id: str
    algorithm: str
    public_key: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PublicKeyDiscoveryResponse:
    actor: str
    keys: list[DiscoveryKey] = field(default_factory=list)
    cache_until: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "keys": [key.to_dict() for key in self.keys],
            "cache_until": self.cache_until,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json_bytes(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


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


def register_device_key(
    store: DocumentStore, request: RequestInfo, payload: RegisterDeviceKeyRequest
) -> RegisterDeviceKeyResponse:
    """Register a new device public key for the signing user."""
    user = _authenticate(store, request, _json_bytes(payload.to_dict()))

    if not payload.public_key.strip():
        raise ServerFnError("Public key is required")
    if not payload.device_name.strip():
        raise ServerFnError("Device name is required")

    key_id = f"dk_{uuid.uuid4().hex}"
    now = _now().isoformat()
    try:
        store.insert_into(
            "device_keys",
            {
                "key_id": key_id,
                "user_handle": user,
                "public_key": payload.public_key,
                "device_name": payload.device_name,
                "created_at": now,
                "last_used_at": now,
                "revoked": "false",
            },
        )
    except StoreError as exc:
        raise ServerFnError(f"Database error: {exc}") from exc
    return RegisterDeviceKeyResponse(key_id=key_id, created_at=now)


def list_device_keys(store: DocumentStore, request: RequestInfo) -> list[DeviceKey]:
    """List every device key of the signing user, revoked ones included."""
    user = _authenticate(store, request)
    return [
        DeviceKey(
            key_id=_text(doc.data, "key_id"),
            user_handle=_text(doc.data, "user_handle"),
            public_key=_text(doc.data, "public_key"),
            device_name=_text(doc.data, "device_name"),
            created_at=_text(doc.data, "created_at"),
            last_used_at=_text(doc.data, "last_used_at"),
            revoked=doc.data.get("revoked") == "true",
        )
        for doc in store.query("device_keys", user_handle=user)
    ]


def revoke_device_key(store: DocumentStore, request: RequestInfo, key_id: str) -> None:
    """Mark one of the signing user's keys as revoked."""
    user = _authenticate(store, request)
    docs = store.query("device_keys", key_id=key_id, user_handle=user)
    if not docs:
        raise ServerFnError("Key not found or unauthorized")
    try:
        store.update_document("device_keys", docs[-1].id, {"revoked": "true"})
    except StoreError as exc:
        raise ServerFnError(f"Database error: {exc}") from exc


def get_public_keys(
    store: DocumentStore, handle: str, server_url: str
) -> PublicKeyDiscoveryResponse:
    """Publish a user's non-revoked keys for other servers to verify against."""
    keys = [
        DiscoveryKey(
            key_id=_text(doc.data, "key_id"),
            algorithm="Ed25519",
            public_key=_text(doc.data, "public_key"),
            created_at=_text(doc.data, "created_at"),
        )
        for doc in store.query("device_keys", user_handle=handle, revoked="false")
    ]
    domain = server_url.rstrip("/").replace("http://", "").replace("https://", "")
    cache_until = (_now() + timedelta(hours=1)).isoformat()
    return PublicKeyDiscoveryResponse(
        actor=f"@{handle}@{domain}", keys=keys, cache_until=cache_until
    )