"""Decode untyped task input payloads into typed handler inputs."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Protocol, get_origin

from pydantic import TypeAdapter


class InputBinder(Protocol):
    """Strategy converting a raw input payload into a value of ``input_type``."""

    def bind(self, input_type: Any, payload: dict[str, Any] | None) -> Any:
        """Return the bound value or raise when the payload shape does not fit."""


class JsonBinder:
    """Bind payloads as if decoded from their JSON form.

    Field names follow pydantic aliases. Values are validated in strict JSON
    mode, so a string never binds to an integer field. Unknown keys are
    ignored. An empty payload binds to the input type's zero value.
    """

    def bind(self, input_type: Any, payload: dict[str, Any] | None) -> Any:
        if not payload:
            return zero_value(input_type)
        document = json.dumps(payload, default=str)
        return _adapter(input_type).validate_json(document, strict=True)


def zero_value(input_type: Any) -> Any:
    """Instance built without arguments, or None when the type requires some."""

    factory = get_origin(input_type) or input_type
    if not callable(factory) or factory is Any:
        return None
    try:
        return factory()
    except (TypeError, ValueError):
        return None


@lru_cache(maxsize=256)
def _adapter(input_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(input_type)
