"""A JSON HTTP client for the provider API with optional request signing."""

from __future__ import annotations

import json
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit

import requests

Signer = Callable[[str, str, bytes, Any, str], Optional[Mapping[str, str]]]
"""Signs (method, path, body, keys, handle) and returns the header values
``actor``, ``timestamp``, ``key_id`` and ``signature``, or None to send unsigned."""


class ApiError(Exception):
    """Base class for failures of an API call."""


class NetworkError(ApiError):
    """The request could not be sent or its response could not be read."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"Network error: {self.message}"


class HttpStatusError(ApiError):
    """The server answered with a status outside the 2xx range."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(status, body)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


class DeserializeError(ApiError):
    """A request body could not be encoded or a response body decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"Deserialization error: {self.message}"


class ApiClient:
    """Sends JSON requests, signing them when keys, a handle and a signer are set."""

    def __init__(
        self,
        base_url: str = "",
        keys: Any = None,
        handle: Optional[str] = None,
        signer: Optional[Signer] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url
        self.keys = keys
        self.handle = handle
        self.signer = signer
        self._session = session or requests.Session()

    def url(self, path: str) -> str:
        """Resolve a path against the base URL; absolute URLs pass through."""
        if path.startswith(("http://", "https://")):
            return path
        if not self.base_url:
            return path if path.startswith("/") else f"/{path}"
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def get_json(self, path: str) -> Any:
        """GET a path and decode its JSON response."""
        text = self._send("GET", path, None)
        return self._decode(text)

    def post_json(self, path: str, body: Any) -> Any:
        """POST a JSON body; an empty response decodes to None."""
        text = self._send("POST", path, self._encode(body))
        return None if text == "" else self._decode(text)

    def put_json(self, path: str, body: Any) -> Any:
        """PUT a JSON body; an empty response decodes to None."""
        text = self._send("PUT", path, self._encode(body))
        return None if text == "" else self._decode(text)

    @staticmethod
    def _encode(body: Any) -> bytes:
        try:
            return json.dumps(
                body, separators=(",", ":"), ensure_ascii=False, allow_nan=False
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise DeserializeError(str(exc)) from exc

    @staticmethod
    def _decode(text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError as exc:
            raise DeserializeError(str(exc)) from exc

    def _path_only(self, url: str, path: str) -> str:
        parts = urlsplit(url)
        if parts.scheme and parts.netloc:
            return parts.path or "/"
        return path.split("?", 1)[0]

    def _signature_headers(self, method: str, url: str, path: str, body: bytes) -> dict[str, str]:
        if self.keys is None or self.handle is None or self.signer is None:
            return {}
        signed = self.signer(method, self._path_only(url, path), body, self.keys, self.handle)
        if signed is None:
            return {}
        return {
            "X-OFSCP-Actor": signed["actor"],
            "X-OFSCP-Timestamp": signed["timestamp"],
            "X-OFSCP-Signature": (
                f'keyId="{signed["key_id"]}", signature="{signed["signature"]}"'
            ),
        }

    def _send(self, method: str, path: str, body: Optional[bytes]) -> str:
        url = self.url(path)
        headers = self._signature_headers(method, url, path, body or b"")
        if body is not None:
            headers["Content-Type"] = "application/json"
        try:
            response = self._session.request(method, url, data=body, headers=headers)
            text = response.text
        except requests.RequestException as exc:
            raise NetworkError(str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise HttpStatusError(response.status_code, text)
        return text