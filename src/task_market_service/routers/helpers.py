"""Shared router helper functions."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_market_service.services.task_manager import TaskManager
    from task_market_service.services.task_state_machine import Actor

USER_ID_HEADER = "x-user-id"
_MAX_USER_ID_LENGTH = 128


def parse_json_body(body: bytes) -> dict[str, Any]:
    """
    Parse JSON body, raising ServiceError on failure.

    JSON numbers with a fraction are parsed as Decimal, never float.
    """
    try:
        data = json.loads(body, parse_float=Decimal)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def parse_optional_json_body(body: bytes) -> dict[str, Any]:
    """Like parse_json_body, but an empty body is an empty object."""
    if body.strip() == b"":
        return {}
    return parse_json_body(body)


def parse_query_int(raw: str | None, name: str, minimum: int) -> int | None:
    """Parse an optional integer query parameter with a lower bound."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{name} must be an integer",
            400,
            {"field": name},
        ) from exc
    if value < minimum:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{name} must be >= {minimum}",
            400,
            {"field": name},
        )
    return value


def get_task_manager() -> TaskManager:
    """The running service's task manager."""
    return get_app_state().require_task_manager()


def require_actor(request: Request) -> Actor:
    """
    Identify the acting user from the gateway-supplied header.

    Raises:
        ServiceError: UNAUTHENTICATED when the header is missing or blank.
    """
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise ServiceError(
            "UNAUTHENTICATED",
            "Missing X-User-Id header",
            401,
            {},
        )
    if len(user_id) > _MAX_USER_ID_LENGTH:
        raise ServiceError(
            "UNAUTHENTICATED",
            "X-User-Id header is too long",
            401,
            {},
        )
    return get_task_manager().actor_for(user_id)
