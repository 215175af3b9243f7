"""
Validating decoder for model output.

The reasoning model is asked for a single JSON object, but replies may wrap
it in prose or markdown fences, or carry small syntax slips. Decoding is:

  1. Take the outermost {...} block of the reply.
  2. json.loads() it.
  3. On failure, retry ONCE on a leniently repaired copy:
       - // line comments and /* block */ comments removed
       - trailing commas before } or ] removed
       - raw newlines inside string literals escaped
  4. Validate the object against the requested pydantic schema.

Any failure along the way is a ParseError carrying the raw reply.
Missing required keys are never filled with defaults.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from app.core.errors import ParseError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_OBJECT_RE         = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BLOCK_COMMENT_RE  = re.compile(r"/\*[\s\S]*?\*/")


def _outermost_object(raw: str) -> str:
    match = _OBJECT_RE.search(raw)
    if not match:
        raise ParseError("no JSON object found in model output", raw=raw)
    return match.group(0)


def _strip_line_comments(text: str) -> str:
    """Remove // comments that sit outside string literals."""
    out: list[str] = []
    in_string = escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
        elif ch == "/" and text[i + 1:i + 2] == "/":
            newline = text.find("\n", i)
            i = len(text) if newline == -1 else newline
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _escape_newlines_in_strings(text: str) -> str:
    out: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def repair_json(text: str) -> str:
    """Lenient repair pass applied before the single retry."""
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _strip_line_comments(text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return _escape_newlines_in_strings(text)


def load_json_object(raw: str) -> dict:
    """Parse the reply into a dict, with one lenient retry."""
    candidate = _outermost_object(raw)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as first_error:
        logger.debug("Decoder | strict parse failed (%s), retrying leniently", first_error)
        try:
            data = json.loads(repair_json(candidate))
        except json.JSONDecodeError as exc:
            raise ParseError(f"model output is not valid JSON: {exc}", raw=raw) from exc

    if not isinstance(data, dict):
        raise ParseError("model output is not a JSON object", raw=raw)
    return data


def decode_model_output(raw: str, schema: type[SchemaT]) -> SchemaT:
    """
    Decode a model reply into *schema*.

    Raises:
        ParseError: no object found, invalid JSON after repair, or the
                    object does not satisfy the schema.
    """
    data = load_json_object(raw)
    try:
        return schema.model_validate(data)
    except SchemaValidationError as exc:
        raise ParseError(
            f"model output does not match {schema.__name__}: {exc.error_count()} error(s)",
            raw=raw,
        ) from exc
