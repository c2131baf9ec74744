"""Recover typed values from loosely formatted model output."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CODE_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", flags=re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_][\w-]*)(\s*:)")
_SINGLE_QUOTED = re.compile(r"'([^'\\]*)'")
_QUOTED_STRING = re.compile(r'"([^"\\]{2,80})"')


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err:
    reason: str


ParseResult = Ok[Any] | Err


def parse_strict(text: str, schema: Any) -> ParseResult:
    """Parse ``text`` as JSON and validate it against ``schema``."""
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        return Err(f"invalid json: {exc.msg}")
    return _validate(data, schema)


def extract_structured(text: str, schema: Any) -> ParseResult:
    """Find a JSON value inside prose or a code fence, cleaning common defects."""
    candidates: list[str] = [match.strip() for match in _CODE_BLOCK.findall(text)]
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])

    reasons: list[str] = []
    for candidate in candidates:
        for attempt in (candidate, _clean(candidate)):
            result = parse_strict(attempt, schema)
            if isinstance(result, Ok):
                return result
            reasons.append(result.reason)
    if not candidates:
        return Err("no json value found")
    return Err("; ".join(dict.fromkeys(reasons)))


def recover(text: str, schema: Any) -> ParseResult:
    result = parse_strict(text, schema)
    if isinstance(result, Ok):
        return result
    return extract_structured(text, schema)


def quoted_strings(text: str) -> list[str]:
    """Every double-quoted fragment, a last resort for list-shaped output."""
    return list(dict.fromkeys(match.strip() for match in _QUOTED_STRING.findall(text) if match.strip()))


class StructuredOutputParser:
    """Strict parse, structural recovery, one repair round-trip, then default.

    ``repair`` receives the original text and returns a new attempt, usually
    by asking a model to re-emit valid JSON. It is called at most once.
    """

    def __init__(self, repair: Callable[[str], Awaitable[str]] | None = None) -> None:
        self.repair = repair

    async def parse(self, text: str, schema: Any, *, default: T) -> T:
        result = recover(text, schema)
        if isinstance(result, Ok):
            return result.value

        if self.repair is not None:
            try:
                repaired = await self.repair(text)
            except Exception as exc:  # repair is best effort
                logger.warning("Structured output repair call failed: %s", exc)
            else:
                result = recover(repaired, schema)
                if isinstance(result, Ok):
                    logger.info("Structured output recovered after repair")
                    return result.value

        logger.warning("Falling back to default after unparseable output (%s): %r", result.reason, text[:120])
        return default


def _validate(data: Any, schema: Any) -> ParseResult:
    try:
        return Ok(TypeAdapter(schema).validate_python(data))
    except ValidationError as exc:
        return Err(f"schema mismatch: {exc.error_count()} errors")


def _clean(candidate: str) -> str:
    cleaned = _TRAILING_COMMA.sub(r"\1", candidate)
    cleaned = _SINGLE_QUOTED.sub(r'"\1"', cleaned)
    return _UNQUOTED_KEY.sub(r'\1"\2"\3', cleaned)
