"""Response parser: extract and validate one action from raw model text.

Extraction order (first match wins):
    1. <final_output> ... </final_output> tags (case-insensitive)
    2. a fenced code block (```json ... ``` or ``` ... ```)
    3. the span from the first '{' to the last '}'
    4. the whole text

Field names are normalized snake_case -> camelCase recursively before the
object is validated against the schema of its declared action kind. The
parser never guesses a default action.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from taskengine.models.actions import ACTION_MODELS, Action

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<final_output>\s*([\s\S]*?)\s*</final_output>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_BRACES_RE = re.compile(r"\{[\s\S]*\}")
_SNAKE_RE = re.compile(r"_([a-z])")

_PREVIEW_CHARS = 500


class ParseError(Exception):
    """Raised when model output cannot be turned into a valid action."""


class MalformedResponseError(ParseError):
    """No decodable JSON could be extracted from the response."""

    def __init__(self, message: str, extracted: str = "") -> None:
        self.extracted = extracted
        super().__init__(f"{message}\n\nExtracted content:\n{extracted[:_PREVIEW_CHARS]}")


class UnknownActionError(ParseError):
    """The ``action`` field is missing or names no known action kind."""

    def __init__(self, action: Any) -> None:
        self.action = action
        if action is None:
            msg = "Response has no 'action' field"
        else:
            msg = f"Unknown action kind: {action!r} (expected one of {', '.join(ACTION_MODELS)})"
        super().__init__(msg)


class ActionValidationError(ParseError):
    """The object does not satisfy the schema of its action kind."""

    def __init__(self, action: str, errors: list[str]) -> None:
        self.action = action
        self.errors = errors
        super().__init__(f"Invalid {action} action: {', '.join(errors)}")


def normalize_field_names(obj: Any) -> Any:
    """Convert every snake_case key to camelCase, through nested dicts and lists."""
    if isinstance(obj, list):
        return [normalize_field_names(item) for item in obj]
    if isinstance(obj, dict):
        return {
            _SNAKE_RE.sub(lambda m: m.group(1).upper(), key) if isinstance(key, str) else key:
                normalize_field_names(value)
            for key, value in obj.items()
        }
    return obj


def extract_json(response: str) -> str:
    """Return the candidate JSON text from a raw model response."""
    match = _TAG_RE.search(response)
    if match and match.group(1):
        return match.group(1).strip()

    match = _FENCE_RE.search(response)
    if match and match.group(1):
        return match.group(1).strip()

    match = _BRACES_RE.search(response)
    if match:
        return match.group(0).strip()

    return response.strip()


def _format_errors(exc: ValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{path}: {err.get('msg', 'invalid')}")
    return out


class ResponseParser:
    """Parses and validates model responses into Action objects.

    Usage:
        parser = ResponseParser()
        action = parser.parse(llm_text)
        if isinstance(action, ToolCallAction):
            ...
    """

    def parse(self, response: str) -> Action:
        """Extract, normalize and validate one action.

        Raises:
            MalformedResponseError: No JSON object could be decoded.
            UnknownActionError: ``action`` missing or unrecognized.
            ActionValidationError: Required fields missing or invalid.
        """
        json_text = extract_json(response)
        try:
            data = json.loads(json_text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Failed to parse JSON from model response: {e}", json_text) from e

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(data).__name__}", json_text,
            )

        return self.validate(normalize_field_names(data))

    def validate(self, data: Any) -> Action:
        """Validate an already-decoded (camelCase) action object."""
        if not isinstance(data, dict):
            raise UnknownActionError(None)

        kind = data.get("action")
        model = ACTION_MODELS.get(kind) if isinstance(kind, str) else None
        if model is None:
            raise UnknownActionError(kind)

        try:
            return model.model_validate(data)
        except ValidationError as e:
            errors = _format_errors(e)
            logger.debug("Rejected %s action: %s", kind, errors)
            raise ActionValidationError(kind, errors) from e

    def has_valid_json(self, response: str) -> bool:
        try:
            json.loads(extract_json(response))
        except json.JSONDecodeError:
            return False
        return True

    def extract_reasoning(self, response: str) -> str | None:
        """Read ``reasoning`` without full validation (logging, telemetry)."""
        return self._peek(response, "reasoning")

    def extract_action_kind(self, response: str) -> str | None:
        """Read ``action`` without full validation."""
        return self._peek(response, "action")

    def _peek(self, response: str, field: str) -> str | None:
        try:
            data = json.loads(extract_json(response))
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        value = data.get(field)
        return value if isinstance(value, str) and value else None
