"""Problem details (application/problem+json) envelopes and HTTP-level errors."""

from __future__ import annotations

import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Mapping, Optional


class HttpError(Exception):
    """An error that carries the HTTP status code it should be answered with."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = int(status)
        self.message = message


class ServerFnError(Exception):
    """A failure inside a server function, reported to the caller as a message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _require_str(data: Mapping[str, Any], key: str) -> str:
    if key not in data:
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string or null")
    return value


@dataclass(frozen=True)
class ProblemDetails:
    """An RFC 7807 problem description."""

    type_url: str
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None

    @classmethod
    def unauthorized(cls, detail: str) -> "ProblemDetails":
        return cls(
            type_url="https://ofscp.dev/problems/unauthorized",
            title="Unauthorized",
            status=HTTPStatus.UNAUTHORIZED.value,
            detail=str(detail),
        )

    @classmethod
    def forbidden(cls, detail: str) -> "ProblemDetails":
        return cls(
            type_url="https://ofscp.dev/problems/forbidden",
            title="Forbidden",
            status=HTTPStatus.FORBIDDEN.value,
            detail=str(detail),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.type_url,
            "title": self.title,
            "status": self.status,
        }
        if self.detail is not None:
            out["detail"] = self.detail
        if self.instance is not None:
            out["instance"] = self.instance
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> "ProblemDetails":
        if not isinstance(data, Mapping):
            raise ValueError("problem details must be a JSON object")
        if "status" not in data:
            raise ValueError("missing field `status`")
        status = data["status"]
        if isinstance(status, bool) or not isinstance(status, int) or not 0 <= status <= 0xFFFF:
            raise ValueError("field `status` must be an integer between 0 and 65535")
        return cls(
            type_url=_require_str(data, "type"),
            title=_require_str(data, "title"),
            status=status,
            detail=_optional_str(data, "detail"),
            instance=_optional_str(data, "instance"),
        )


def problem_http_error(problem: ProblemDetails, status: int) -> HttpError:
    """Wrap a problem into an HttpError whose message is the problem's JSON."""
    try:
        message = problem.to_json()
    except (TypeError, ValueError):
        message = problem.title
    return HttpError(status, message)


def try_problem_detail(body: str | bytes) -> Optional[str]:
    """Extract a user-facing message from a problem JSON body: detail first, then title."""
    try:
        parsed = ProblemDetails.from_dict(json.loads(body))
    except ValueError:
        return None
    if parsed.detail is not None and parsed.detail.strip():
        return parsed.detail
    if parsed.title.strip():
        return parsed.title
    return None