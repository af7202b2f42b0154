"""
Model Output Parsing

Turns the text a chat model returns into a JSON value. Models wrap JSON
in code fences, add a sentence before it, or emit near-JSON (trailing
commas, single quotes, bare keys); each of those is handled here.
"""

import json
import re
from typing import Any, Iterator, Optional

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")


def strip_trailing_commas(text: str) -> str:
    """`{"a": 1,}` -> `{"a": 1}`"""
    return _TRAILING_COMMA.sub(r"\1", text)


def quote_bare_keys(text: str) -> str:
    """`{name: "x"}` -> `{"name": "x"}`"""
    return _BARE_KEY.sub(r'\1"\2"\3', text)


def normalize_quotes(text: str) -> str:
    """Single-quoted JSON -> double-quoted, only when no double quotes are present."""
    if '"' in text:
        return text
    return text.replace("'", '"')


def extract_outermost(text: str) -> Optional[str]:
    """
    The span from the first `{` or `[` to the last matching closer.

    Returns:
        Candidate JSON text, or None if no bracket pair exists
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end <= start:
        return None
    return text[start:end + 1]


def _candidates(text: str) -> Iterator[str]:
    stripped = text.strip()
    yield stripped
    fence = _CODE_FENCE.search(stripped)
    if fence:
        yield fence.group(1)
    outer = extract_outermost(stripped)
    if outer:
        yield outer


def _repairs(candidate: str) -> Iterator[str]:
    yield candidate
    repaired = strip_trailing_commas(candidate)
    yield repaired
    repaired = quote_bare_keys(normalize_quotes(repaired))
    yield repaired


def parse_model_output(text: str) -> Any:
    """
    Parse model text into a JSON value.

    Tries, in order: the raw text, the first code fence, the outermost
    bracketed span; each one as-is and then with repairs applied.

    Raises:
        ValueError: If no candidate parses
    """
    seen = set()
    for candidate in _candidates(text):
        for attempt in _repairs(candidate):
            if attempt in seen:
                continue
            seen.add(attempt)
            try:
                return json.loads(attempt)
            except json.JSONDecodeError:
                continue
    raise ValueError(f"Could not parse JSON from model output: {text[:200]!r}")
