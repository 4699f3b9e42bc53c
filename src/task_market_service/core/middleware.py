"""ASGI middleware for request validation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


_TASK = r"/tasks/[^/]+"

# (method, path, body may be omitted)
_JSON_ENDPOINTS: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    ("POST", re.compile(r"^/tasks$"), False),
    ("PATCH", re.compile(rf"^{_TASK}$"), False),
    ("POST", re.compile(rf"^{_TASK}/bids$"), False),
    ("POST", re.compile(r"^/accounts/[^/]+/deposits$"), False),
    # Action endpoints carry everything in the path and header.
    ("POST", re.compile(rf"^{_TASK}/cancel$"), True),
    ("POST", re.compile(rf"^{_TASK}/request-completion$"), True),
    ("POST", re.compile(rf"^{_TASK}/settle$"), True),
    ("POST", re.compile(r"^/bids/[^/]+/accept$"), True),
)


def _match_endpoint(method: str, path: str) -> tuple[bool, bool]:
    """Return (expects_json, body_optional) for a request line."""
    for candidate_method, pattern, body_optional in _JSON_ENDPOINTS:
        if candidate_method == method and pattern.match(path) is not None:
            return True, body_optional
    return False, False


class RequestValidationMiddleware:
    """
    ASGI middleware that validates Content-Type and body size.

    Runs before FastAPI routes. JSON endpoints answer 415 for any other
    content type and 413 once the body grows past ``max_body_size``. Action
    endpoints accept an empty request without a content type.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    @staticmethod
    async def _reject(error: ServiceError, scope: Scope, receive: Receive, send: Send) -> None:
        response = JSONResponse(status_code=error.status_code, content=error.to_dict())
        await response(scope, receive, send)

    async def _read_body(self, receive: Receive) -> bytes | None:
        """Buffer the request body. Returns None when it exceeds the limit."""
        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            size += len(chunk)
            if size > self.max_body_size:
                return None
            chunks.append(chunk)
            more_body = bool(message.get("more_body", False))
        return b"".join(chunks)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))
        path = cast("str", scope.get("path", ""))
        expects_json, body_optional = _match_endpoint(method, path)

        # Anything else is left to the router (404/405, GET handlers).
        if not expects_json:
            await self.app(scope, receive, send)
            return

        headers = dict(cast("list[tuple[bytes, bytes]]", scope.get("headers", [])))
        content_type = headers.get(b"content-type", b"").decode().lower()
        content_length = headers.get(b"content-length", b"").decode()

        if body_optional and content_type == "" and content_length in ("", "0"):
            await self.app(scope, receive, send)
            return

        if not content_type.startswith("application/json"):
            await self._reject(
                ServiceError(
                    "UNSUPPORTED_MEDIA_TYPE",
                    "Content-Type must be application/json",
                    415,
                ),
                scope,
                receive,
                send,
            )
            return

        body = await self._read_body(receive)
        if body is None:
            await self._reject(
                ServiceError(
                    "PAYLOAD_TOO_LARGE",
                    "Request body exceeds maximum allowed size",
                    413,
                    {"max_body_size": self.max_body_size},
                ),
                scope,
                receive,
                send,
            )
            return

        body_sent = False

        async def replay_body() -> dict[str, Any]:
            nonlocal body_sent
            if body_sent:
                return {"type": "http.disconnect"}
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay_body, send)
