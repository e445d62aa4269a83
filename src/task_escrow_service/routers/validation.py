"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.models import SYSTEM_ACTOR

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
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


def validate_body(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """Validate a parsed body against a request model."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
            for error in exc.errors()
        ]
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Request payload failed validation",
            400,
            {"errors": errors},
        ) from exc


async def read_body(request_body: bytes, model: type[ModelT]) -> ModelT:
    data = {} if request_body == b"" else parse_json_body(request_body)
    return validate_body(model, data)


def reject_reserved_actor(actor_id: str) -> None:
    """The system actor is internal; HTTP callers cannot act as it."""
    if actor_id == SYSTEM_ACTOR:
        raise ServiceError(
            "INVALID_ACTOR",
            f"'{SYSTEM_ACTOR}' is reserved for internal use",
            400,
            {},
        )
