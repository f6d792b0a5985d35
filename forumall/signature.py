"""Request signatures: header parsing, signature base, key lookup and verification."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Generic, Mapping, Optional, TypeVar, Union
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from forumall.store import DocumentStore

T = TypeVar("T")

Headers = Mapping[str, Union[str, bytes]]

SIGNATURE_HEADER = "X-OFSCP-Signature"
ACTOR_HEADER = "X-OFSCP-Actor"
TIMESTAMP_HEADER = "X-OFSCP-Timestamp"
IDEMPOTENCY_HEADER = "Idempotency-Key"

_LOCAL_DOMAINS = ("localhost", "127.0.0.1")


class SignatureError(Exception):
    """Raised when a request signature is missing, malformed or does not verify."""


class SignatureRejection(Exception):
    """A signed request that must be refused with the given HTTP status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = int(status)
        self.message = message


@dataclass
class RequestInfo:
    """The parts of an incoming request that signature checks look at."""

    method: str
    path: str
    headers: dict[str, Union[str, bytes]] = field(default_factory=dict)


@dataclass
class AuthedUser:
    """Authenticated user identity for request handlers."""

    user_id: str


@dataclass
class OFSCPSignature:
    """The parsed value of an X-OFSCP-Signature header."""

    key_id: str
    signature: str

    @classmethod
    def parse(cls, header: str) -> "OFSCPSignature":
        key_id: Optional[str] = None
        signature: Optional[str] = None
        for part in header.split(","):
            part = part.strip()
            if part.startswith('keyId="'):
                key_id = part[len('keyId="'):].rstrip('"')
            elif part.startswith('signature="'):
                signature = part[len('signature="'):].rstrip('"')
        if key_id is None:
            raise SignatureError("Missing keyId in signature header")
        if signature is None:
            raise SignatureError("Missing signature in signature header")
        return cls(key_id=key_id, signature=signature)


def header_value(headers: Headers, name: str) -> Optional[str]:
    """Look a header up by case-insensitive name.

    Returns None when absent and raises ValueError when the value is not
    visible ASCII text.
    """
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            break
    else:
        return None
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            raise ValueError(f"header {name!r} is not visible ASCII") from None
    if not all(c == "\t" or " " <= c <= "~" for c in value):
        raise ValueError(f"header {name!r} is not visible ASCII")
    return value


def _path_only(path: str) -> str:
    if "://" in path:
        path = urlsplit(path).path
    path = path.split("#", 1)[0].split("?", 1)[0]
    return path or "/"


def reconstruct_signature_base(method: str, path: str, headers: Headers, body: bytes) -> str:
    """Build the text a client signs: method, path, timestamp and body hash."""
    try:
        timestamp = header_value(headers, TIMESTAMP_HEADER) or ""
    except ValueError:
        timestamp = ""
    body_hash = hashlib.sha256(body).hexdigest()
    return f"{method}\n{_path_only(path)}\n{timestamp}\n{body_hash}"


def _actor_segments(actor: str) -> list[str]:
    if actor.startswith("@"):
        return actor.split("@")
    return ["", actor, "localhost"]


def fetch_public_key(store: DocumentStore, actor: str, key_id: str) -> str:
    """Return the base64 public key registered for the actor under key_id."""
    segments = _actor_segments(actor)
    if len(segments) < 3:
        raise SignatureError("Invalid actor format")
    handle, domain = segments[1], segments[2]

    if domain in _LOCAL_DOMAINS:
        docs = store.query("device_keys", key_id=key_id, user_handle=handle, revoked="false")
        if docs:
            public_key = docs[0].data.get("public_key")
            if not isinstance(public_key, str):
                raise SignatureError("Public key not found in record")
            return public_key
        raise SignatureError("Key not found locally")

    raise SignatureError("Remote key fetching not yet implemented")


def _b64decode(text: str, error: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        raise SignatureError(error) from None


def _normalized_actor(actor: str) -> str:
    if actor.startswith("@"):
        segments = actor.split("@")
        if len(segments) >= 3 and segments[2] in _LOCAL_DOMAINS:
            return segments[1]
    return actor


def verify_ofscp_signature(
    store: DocumentStore, method: str, path: str, headers: Headers, body: bytes
) -> tuple[str, str]:
    """Check the request's signature and return (user id, key id)."""
    try:
        sig_value = header_value(headers, SIGNATURE_HEADER)
    except ValueError:
        raise SignatureError("Invalid X-OFSCP-Signature header format") from None
    if sig_value is None:
        raise SignatureError("Missing X-OFSCP-Signature header")

    try:
        sig_header = OFSCPSignature.parse(sig_value)
    except SignatureError as exc:
        raise SignatureError(f"Failed to parse signature header: {exc}") from None

    try:
        actor = header_value(headers, ACTOR_HEADER)
    except ValueError:
        raise SignatureError("Invalid X-OFSCP-Actor header format") from None
    if actor is None:
        raise SignatureError("Missing X-OFSCP-Actor header")

    try:
        public_key_text = fetch_public_key(store, actor, sig_header.key_id)
    except SignatureError as exc:
        raise SignatureError(f"Failed to fetch public key for {actor}: {exc}") from None

    base = reconstruct_signature_base(method, path, headers, body)

    signature = _b64decode(sig_header.signature, "Invalid base64 signature")
    public_bytes = _b64decode(public_key_text, "Invalid base64 public key")

    if len(public_bytes) != 32:
        raise SignatureError("Invalid public key length")
    try:
        public_key = Ed25519PublicKey.from_public_bytes(public_bytes)
    except ValueError:
        raise SignatureError("Invalid public key") from None

    if len(signature) != 64:
        raise SignatureError("Invalid signature length")

    try:
        public_key.verify(signature, base.encode("utf-8"))
    except InvalidSignature:
        raise SignatureError("Signature verification failed: signature error") from None

    return _normalized_actor(actor), sig_header.key_id


@dataclass
class SignedJson(Generic[T]):
    """A JSON body whose request signature has been verified."""

    value: T
    user_id: str
    key_id: str

    @classmethod
    def from_request(
        cls, store: DocumentStore, request: RequestInfo, body: bytes
    ) -> "SignedJson[Any]":
        try:
            user_id, key_id = verify_ofscp_signature(
                store, request.method, request.path, request.headers, body
            )
        except SignatureError as exc:
            raise SignatureRejection(
                HTTPStatus.UNAUTHORIZED,
                f"Signature error: {json.dumps(str(exc), ensure_ascii=False)}",
            ) from exc
        try:
            value = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise SignatureRejection(HTTPStatus.BAD_REQUEST, f"Invalid JSON: {exc}") from exc
        return cls(value=value, user_id=user_id, key_id=key_id)


def idempotency_key(headers: Headers) -> Optional[str]:
    """Read the Idempotency-Key header, trimmed."""
    try:
        value = header_value(headers, IDEMPOTENCY_HEADER)
    except ValueError:
        return None
    return None if value is None else value.strip()