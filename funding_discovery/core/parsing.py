"""
Parsing of JSON objects out of free-form LLM responses.

Models wrap JSON in code fences, prepend apologies, or return prose. Callers
get a tagged result instead of an exception so that a bad response is a
normal outcome, not a failure of the surrounding batch.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Union


_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")


@dataclass(frozen=True)
class ParseSuccess:
    value: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ParseFailure:
    reason: str

    @property
    def ok(self) -> bool:
        return False


ParseResult = Union[ParseSuccess, ParseFailure]


def parse_llm_json(text: str) -> ParseResult:
    """
    Extract a single JSON object from an LLM response.

    Strips code fences, then parses the span between the first "{" and the
    last "}".

    Examples:
        >>> parse_llm_json('```json\\n{"a": 1}\\n```')
        ParseSuccess(value={'a': 1})
        >>> parse_llm_json("Sorry, I can't help").ok
        False
    """
    if not text or not text.strip():
        return ParseFailure("empty response")

    candidate = text.strip()
    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1)

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        return ParseFailure(f"no JSON object in response: {text[:80]!r}")

    try:
        value = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as e:
        return ParseFailure(f"invalid JSON: {e.msg} at position {e.pos}")

    if not isinstance(value, dict):
        return ParseFailure(f"expected JSON object, got {type(value).__name__}")

    return ParseSuccess(value)


def require_fields(result: ParseResult, fields: Iterable[str]) -> ParseResult:
    """Turn a success missing any of `fields` into a failure."""
    if not result.ok:
        return result

    missing = [f for f in fields if f not in result.value]
    if missing:
        return ParseFailure(f"missing required fields: {', '.join(missing)}")
    return result
