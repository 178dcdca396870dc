"""
Parse-or-fail boundary for model responses.

Model output has no schema guarantee. Every structured extraction goes
through ``parse_model_response``, which either returns a validated pydantic
model or raises ``ThinkingError``; nothing is defaulted silently.
"""

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from cardsmith.core.domain.errors import ThinkingError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Any:
    """Pull the first JSON object or array out of a model response.

    Strips markdown code fences and surrounding prose.

    Raises:
        ThinkingError: If no valid JSON can be found
    """
    if not text or not text.strip():
        raise ThinkingError("Empty model response")

    fenced = _FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text

    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i != -1]
    if not starts:
        raise ThinkingError(f"No JSON found in model response: {text[:200]}")
    start = min(starts)
    closer = "}" if candidate[start] == "{" else "]"
    end = candidate.rfind(closer)
    if end <= start:
        raise ThinkingError(f"Unterminated JSON in model response: {text[:200]}")

    try:
        return json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as e:
        raise ThinkingError(f"Invalid JSON in model response: {e}") from e


def parse_model_response(text: str, schema: type[ModelT]) -> ModelT:
    """Validate a model response against a pydantic schema.

    Raises:
        ThinkingError: If the response is not JSON or does not fit the schema
    """
    data = extract_json(text)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise ThinkingError(
            f"Model response does not match {schema.__name__}: {e.error_count()} error(s)"
        ) from e
