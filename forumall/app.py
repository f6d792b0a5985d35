"""The provider's HTTP interface as a WSGI application, and a command to serve it."""

from __future__ import annotations

import argparse
import json
import re
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qs
from wsgiref.simple_server import make_server

from forumall.device_keys import (
    RegisterDeviceKeyRequest,
    get_public_keys,
    list_device_keys,
    register_device_key,
    revoke_device_key,
)
from forumall.discovery import provider_discovery
from forumall.groups import (
    AddMemberRequest,
    CreateChannelRequest,
    CreateGroupRequest,
    UpdateGroupSettingsRequest,
    add_group_member,
    create_channel,
    create_group,
    join_group,
    list_channels,
    list_groups_for_user,
    update_group_settings,
)
from forumall.messages import SendMessageRequest, list_messages, send_message
from forumall.problem import HttpError, ServerFnError
from forumall.signature import RequestInfo
from forumall.store import DocumentStore, create_forum_store

DEFAULT_SERVER_URL = "http://localhost:8080"

CORS_HEADERS = [
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "*"),
]


@dataclass
class _Call:
    info: RequestInfo
    params: dict[str, str]
    body: bytes
    query: dict[str, list[str]] = field(default_factory=dict)

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise HttpError(HTTPStatus.BAD_REQUEST, f"Invalid JSON: {exc}") from exc

    def arg(self, name: str) -> Optional[str]:
        values = self.query.get(name)
        return values[0] if values else None


Handler = Callable[[_Call], Any]


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def _parse(cls: Any, call: _Call) -> Any:
    try:
        return cls.from_dict(call.json())
    except ValueError as exc:
        raise HttpError(HTTPStatus.BAD_REQUEST, f"Invalid JSON: {exc}") from exc


def _header_name(environ_key: str) -> str:
    return "-".join(part.capitalize() for part in environ_key[5:].split("_"))


class ForumApp:
    """Routes HTTP requests to the provider's API functions."""

    def __init__(self, store: DocumentStore, server_url: str) -> None:
        self.store = store
        self.server_url = server_url
        self._routes: list[tuple[str, re.Pattern[str], Handler]] = []
        seg = r"(?P<{}>[^/]+)"
        for method, pattern, handler in (
            ("GET", "/.well-known/ofscp-provider", self._discovery),
            ("GET", f"/.well-known/ofscp/users/{seg.format('handle')}/keys", self._public_keys),
            ("POST", "/api/auth/device-keys", self._register_key),
            ("GET", "/api/auth/device-keys", self._list_keys),
            ("DELETE", f"/api/auth/device-keys/{seg.format('key_id')}", self._revoke_key),
            ("POST", "/api/groups", self._create_group),
            ("GET", "/api/groups", self._list_groups),
            ("PUT", f"/api/groups/{seg.format('group_id')}", self._update_group),
            ("POST", f"/api/groups/{seg.format('group_id')}/join", self._join_group),
            ("POST", f"/api/groups/{seg.format('group_id')}/members", self._add_member),
            ("POST", f"/api/groups/{seg.format('group_id')}/channels", self._create_channel),
            ("GET", f"/api/groups/{seg.format('group_id')}/channels", self._list_channels),
            (
                "POST",
                f"/api/groups/{seg.format('group_id')}/channels/{seg.format('channel_id')}/messages",
                self._send_message,
            ),
            (
                "GET",
                f"/api/groups/{seg.format('group_id')}/channels/{seg.format('channel_id')}/messages",
                self._list_messages,
            ),
            ("GET", "/api/ws", self._ws),
        ):
            self._routes.append((method, re.compile(f"^{pattern}/?$"), handler))

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "") or "/"

        if method == "OPTIONS":
            return self._respond(start_response, HTTPStatus.OK, b"", "text/plain")

        try:
            status, payload = self._dispatch(method, path, environ)
        except HttpError as exc:
            return self._error(start_response, exc.status, exc.message)
        except ServerFnError as exc:
            return self._error(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, exc.message)

        if payload is None:
            return self._respond(start_response, HTTPStatus.NO_CONTENT, b"", "text/plain")
        body = json.dumps(_jsonable(payload), ensure_ascii=False).encode("utf-8")
        return self._respond(start_response, status, body, "application/json")

    def _dispatch(self, method: str, path: str, environ: dict[str, Any]) -> tuple[int, Any]:
        path_matched = False
        for route_method, pattern, handler in self._routes:
            match = pattern.match(path)
            if match is None:
                continue
            path_matched = True
            if route_method != method:
                continue
            headers = {
                _header_name(key): value
                for key, value in environ.items()
                if key.startswith("HTTP_") and isinstance(value, str)
            }
            call = _Call(
                info=RequestInfo(method=method, path=path, headers=headers),
                params=match.groupdict(),
                body=self._read_body(environ),
                query=parse_qs(environ.get("QUERY_STRING", "")),
            )
            return HTTPStatus.OK, handler(call)
        if path_matched:
            raise HttpError(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
        raise HttpError(HTTPStatus.NOT_FOUND, "Not found")

    @staticmethod
    def _read_body(environ: dict[str, Any]) -> bytes:
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        stream = environ.get("wsgi.input")
        if length <= 0 or stream is None:
            return b""
        return stream.read(length)

    @staticmethod
    def _respond(
        start_response: Callable[..., Any], status: int, body: bytes, content_type: str
    ) -> list[bytes]:
        status = HTTPStatus(status)
        headers = [("Content-Type", content_type), ("Content-Length", str(len(body)))]
        start_response(f"{status.value} {status.phrase}", headers + CORS_HEADERS)
        return [body]

    def _error(self, start_response: Callable[..., Any], status: int, message: str) -> list[bytes]:
        return self._respond(
            start_response, status, message.encode("utf-8"), "text/plain; charset=utf-8"
        )

    def _discovery(self, call: _Call) -> Any:
        return provider_discovery(self.server_url)

    def _public_keys(self, call: _Call) -> Any:
        return get_public_keys(self.store, call.params["handle"], self.server_url)

    def _register_key(self, call: _Call) -> Any:
        payload = _parse(RegisterDeviceKeyRequest, call)
        return register_device_key(self.store, call.info, payload)

    def _list_keys(self, call: _Call) -> Any:
        return list_device_keys(self.store, call.info)

    def _revoke_key(self, call: _Call) -> Any:
        return revoke_device_key(self.store, call.info, call.params["key_id"])

    def _create_group(self, call: _Call) -> Any:
        payload = _parse(CreateGroupRequest, call)
        return create_group(self.store, call.info, payload, self.server_url)

    def _list_groups(self, call: _Call) -> Any:
        return list_groups_for_user(self.store, call.info)

    def _update_group(self, call: _Call) -> Any:
        payload = _parse(UpdateGroupSettingsRequest, call)
        return update_group_settings(self.store, call.info, call.params["group_id"], payload)

    def _join_group(self, call: _Call) -> Any:
        return join_group(self.store, call.info, call.params["group_id"], self.server_url)

    def _add_member(self, call: _Call) -> Any:
        payload = _parse(AddMemberRequest, call)
        return add_group_member(
            self.store, call.info, call.params["group_id"], payload, self.server_url
        )

    def _create_channel(self, call: _Call) -> Any:
        payload = _parse(CreateChannelRequest, call)
        return create_channel(self.store, call.info, call.params["group_id"], payload)

    def _list_channels(self, call: _Call) -> Any:
        return list_channels(self.store, call.info, call.params["group_id"])

    def _send_message(self, call: _Call) -> Any:
        payload = _parse(SendMessageRequest, call)
        return send_message(
            self.store, call.info, call.params["group_id"], call.params["channel_id"], payload
        )

    def _list_messages(self, call: _Call) -> Any:
        raw_limit = call.arg("limit")
        limit: Optional[int] = None
        if raw_limit is not None:
            try:
                limit = int(raw_limit)
            except ValueError:
                raise HttpError(HTTPStatus.BAD_REQUEST, "Invalid limit") from None
        return list_messages(
            self.store,
            call.info,
            call.params["group_id"],
            call.params["channel_id"],
            cursor=call.arg("cursor"),
            direction=call.arg("direction"),
            limit=limit,
        )

    def _ws(self, call: _Call) -> Any:
        raise HttpError(
            HTTPStatus.NOT_IMPLEMENTED, "WebSocket authentication transition in progress"
        )


def create_app(
    store: Optional[DocumentStore] = None, server_url: str = DEFAULT_SERVER_URL
) -> ForumApp:
    """Build the application over a store, a fresh forum store by default."""
    return ForumApp(store if store is not None else create_forum_store(), server_url)


def main(argv: Optional[list[str]] = None) -> int:
    """Serve the provider over HTTP until interrupted."""
    parser = argparse.ArgumentParser(prog="forumall", description="Run the forum provider.")
    parser.add_argument("--host", default="127.0.0.1", help="address to listen on")
    parser.add_argument("--port", type=int, default=8080, help="port to listen on")
    parser.add_argument("--server-url", default=None, help="public base URL of this provider")
    args = parser.parse_args(argv)

    server_url = args.server_url or f"http://{args.host}:{args.port}"
    app = create_app(server_url=server_url)
    with make_server(args.host, args.port, app) as httpd:
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0