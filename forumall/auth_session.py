"""The signed-in user's session and how API and WebSocket URLs are built from it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from forumall.api_client import ApiClient, Signer

STORAGE_KEY = "ofscp_session"
DOMAIN_KEY = "ofscp_provider_domain"
DEFAULT_PROVIDER_DOMAIN = "localhost"


@dataclass
class AuthSession:
    """A signed-in user and the device keys used to sign requests, if any."""

    user_id: str
    keys: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "keys": self.keys}

    @classmethod
    def from_dict(cls, data: Any) -> "AuthSession":
        if not isinstance(data, Mapping):
            raise ValueError("session must be a JSON object")
        user_id = data.get("user_id")
        if not isinstance(user_id, str):
            raise ValueError("field `user_id` must be a string")
        return cls(user_id=user_id, keys=data.get("keys"))


@dataclass
class AuthContext:
    """Holds the current session and the provider domain the client talks to."""

    session: Optional[AuthSession] = None
    provider_domain: str = DEFAULT_PROVIDER_DOMAIN
    signer: Optional[Signer] = None

    def login(self, user_id: str) -> None:
        self.session = AuthSession(user_id=user_id, keys=None)

    def logout(self) -> None:
        self.session = None

    def client(self) -> ApiClient:
        """An API client that signs as the current user when keys are present."""
        session = self.session
        return ApiClient(
            keys=session.keys if session is not None else None,
            handle=session.user_id if session is not None else None,
            signer=self.signer,
        )

    def is_authenticated(self) -> bool:
        return self.session is not None

    def token(self) -> Optional[str]:
        """Bearer tokens are not used; requests are signed instead."""
        return None

    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session is not None else None

    def set_provider_domain(self, domain: str) -> None:
        self.provider_domain = domain

    def api_url(self, path: str) -> str:
        """Build the provider URL for an API path."""
        domain = self.provider_domain
        if path.startswith(("http://", "https://")):
            return path
        if not domain.strip():
            return path if path.startswith("/") else f"/{path}"

        if "://" in domain:
            base = domain.rstrip("/")
        elif (
            domain == "localhost"
            or domain.startswith("localhost:")
            or domain.startswith("127.0.0.1")
        ):
            base = f"http://{domain.rstrip('/')}"
        else:
            base = f"https://{domain.rstrip('/')}"
        return f"{base.rstrip('/')}/{path.lstrip('/')}"

    def ws_url(self, path: str) -> str:
        """Build the WebSocket URL for a path; relative URLs are returned unchanged."""
        url = self.api_url(path)
        if url.startswith("https://"):
            return url.replace("https://", "wss://", 1)
        if url.startswith("http://"):
            return url.replace("http://", "ws://", 1)
        return url