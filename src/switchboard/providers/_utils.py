"""Shared utilities for provider implementations."""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
import json
from typing import Any

from switchboard._validation import _thaw_json
from switchboard.errors import InvalidRequestError
from switchboard.types import JSONSchema, ResponseFormat


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict structured-output requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required'
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated: dict[str, Any] = {}
        for key, value in node.items():
            updated[key] = walk(value)

        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                if "required" not in updated:
                    updated["required"] = list(properties.keys())

        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise InvalidRequestError("Invalid response schema: expected object schema")
    return result


def resolve_json_schema(json_schema: JSONSchema) -> dict[str, Any]:
    """Return the schema as a plain dict (Pydantic models are expanded)."""
    schema = json_schema.schema
    if isinstance(schema, type):
        # Imported lazily; plain-dict schemas need no pydantic machinery.
        from pydantic import BaseModel

        if not issubclass(schema, BaseModel):
            raise InvalidRequestError(
                f"json_schema {json_schema.name!r} must be a dict or a pydantic model"
            )
        return schema.model_json_schema()
    if isinstance(schema, Mapping):
        return _thaw_json(schema)
    raise InvalidRequestError(
        f"json_schema {json_schema.name!r} must be a dict or a pydantic model"
    )


def response_format_payload(fmt: ResponseFormat) -> dict[str, Any]:
    """Chat-completion ``response_format`` body for *fmt*."""
    if fmt.type != "json_schema":
        return {"type": fmt.type}
    if fmt.json_schema is None:
        raise InvalidRequestError("response_format json_schema requires a schema")
    schema = resolve_json_schema(fmt.json_schema)
    strict = fmt.json_schema.strict
    body: dict[str, Any] = {
        "name": fmt.json_schema.name,
        "schema": to_strict_schema(schema) if strict else schema,
    }
    if fmt.json_schema.description:
        body["description"] = fmt.json_schema.description
    if strict is not None:
        body["strict"] = strict
    return {"type": "json_schema", "json_schema": body}


def split_data_url(url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<payload>`` into (mime, payload).

    Returns None for anything that is not a base64 data URL.
    """
    if not url.startswith("data:"):
        return None
    header, sep, payload = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    return header[: -len(";base64")] or "application/octet-stream", payload


def parse_tool_arguments(arguments: str, *, provider: str) -> dict[str, Any]:
    """Decode a tool call's JSON argument string into an object."""
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError as e:
        raise InvalidRequestError(
            f"tool call arguments are not valid JSON: {e}", provider=provider
        ) from e
    if not isinstance(parsed, dict):
        raise InvalidRequestError(
            "tool call arguments must be a JSON object", provider=provider
        )
    return parsed
