# [Core: Truncation Recovery]
"""
JSON Repair: parse chain and truncation recovery for worker output.

Workers are asked for a single JSON object, but output caps and chatty
models produce fenced, wrapped, sloppy or cut-off text. The parse chain
tries, in order:
  1. direct parse (raw text, then with markdown code fences stripped)
  2. the first balanced ``{...}`` object in the text
  3. heuristic fixups (trailing commas, quote normalisation)
  4. truncation recovery via ``repair()``

and tags the result with the stage that succeeded.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator, List, Optional, Tuple

from brf_extract.models.schemas import ParseStage, RawWorkerOutput
from brf_extract.services.errors import UnparsableResponse

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})

_CLOSER = {"{": "}", "[": "]"}

_INVALID = object()


# ──────────────────────────────────────────────
# Scanning helpers
# ──────────────────────────────────────────────

def _structural(text: str) -> Iterator[Tuple[int, str]]:
    """Yield (index, char) for every character outside string literals, plus quotes."""
    in_string = False
    i = 0
    while i < len(text):
        c = text[i]
        if in_string:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                in_string = False
                yield i, c
        elif c == '"':
            in_string = True
            yield i, c
        else:
            yield i, c
        i += 1


def _ends_in_string(text: str) -> bool:
    quotes = sum(1 for _, c in _structural(text) if c == '"')
    return quotes % 2 == 1


def _last_structural(text: str, chars: str, before: Optional[int] = None) -> int:
    last = -1
    for i, c in _structural(text):
        if before is not None and i >= before:
            break
        if c in chars:
            last = i
    return last


def _open_stack(text: str) -> List[Tuple[int, str]]:
    """Unclosed openers (index, char) in nesting order."""
    stack: List[Tuple[int, str]] = []
    for i, c in _structural(text):
        if c in "{[":
            stack.append((i, c))
        elif c in "}]" and stack:
            stack.pop()
    return stack


def _loads(text: str) -> Any:
    """Parsed value, or ``_INVALID`` when ``text`` is not JSON."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return _INVALID


# ──────────────────────────────────────────────
# Truncation recovery
# ──────────────────────────────────────────────

def _drop_open_string(text: str) -> str:
    """Cut back to the last complete member when ``text`` ends inside a string."""
    quote = _last_structural(text, '"')
    head = text[:quote].rstrip()
    if head.endswith(":"):
        # Unterminated value: drop the whole "key": "val... pair
        colon = len(head) - 1
        enclosing = _open_stack(head)
        floor = enclosing[-1][0] if enclosing else -1
        comma = _last_structural(head, ",", before=colon)
        if comma > floor:
            logger.warning("JSON repair: dropping unterminated value, truncating at comma %d", comma)
            return head[:comma]
        logger.warning("JSON repair: unterminated first member, truncating to enclosing brace")
        return head[: floor + 1] if floor >= 0 else ""
    if head.endswith(","):
        logger.warning("JSON repair: dropping unterminated key or element")
        return head[:-1]
    if head.endswith("{") or head.endswith("["):
        return head
    # Unterminated string somewhere unexpected; fall back to the enclosing brace
    brace = _last_structural(head, "{")
    return head[: brace + 1] if brace >= 0 else ""


def repair(text: str) -> Optional[str]:
    """
    Best-effort repair of brace/bracket-delimited output cut off by an output cap.

    Returns parseable JSON text, or ``None`` when the output cannot be
    salvaged. Valid input is returned unchanged.

    Steps:
      1. If the text ends inside a string, truncate back to the last
         complete member (the comma before the dangling key/value, or the
         enclosing opening brace).
      2. Truncate to the last fully-closed ``}``.
      3. Close every unmatched ``[`` and ``{``, innermost first.
      4. While that still does not parse, drop the trailing incomplete
         member (a bare key, a cut-off ``true`` or number) back to the
         previous comma or opener and close again.
    """
    if not text or not text.strip():
        return None
    if _loads(text) is not _INVALID:
        return text

    s = text.strip()
    start = s.find("{")
    if start == -1:
        return None
    s = s[start:]

    if _ends_in_string(s):
        s = _drop_open_string(s)

    last_brace = _last_structural(s, "}")
    if last_brace > 0:
        s = s[: last_brace + 1]

    s = s.rstrip()
    closed = _close(s)
    while _loads(closed) is _INVALID:
        cut = _last_structural(s, ",{[")
        if cut < 0:
            break
        # Keep an opener unless it is the incomplete tail itself
        trimmed = s[:cut] if s[cut] == "," or cut == len(s) - 1 else s[: cut + 1]
        if not trimmed:
            break
        logger.warning("JSON repair: dropping incomplete member after offset %d", cut)
        s = trimmed.rstrip()
        closed = _close(s)

    if _loads(closed) is _INVALID:
        logger.warning("JSON repair failed: result still unparseable")
        return None
    return closed


def _close(s: str) -> str:
    """Drop a dangling key or trailing comma and append the missing closers."""
    if s.endswith(":"):
        # Dangling key with no value
        key_quote = _last_structural(s[:-1], '"')
        key_start = _last_structural(s[:key_quote], '"') if key_quote > 0 else -1
        s = s[:key_start].rstrip() if key_start > 0 else s[:-1]
    while s.endswith(","):
        s = s[:-1].rstrip()

    closers = "".join(_CLOSER[c] for _, c in reversed(_open_stack(s)))
    if closers:
        logger.warning("JSON repair: appending closers %r", closers)
    return s + closers


# ──────────────────────────────────────────────
# Parse chain
# ──────────────────────────────────────────────

def strip_code_fences(text: str) -> str:
    """Extract the body of a ```json ... ``` (or bare ```) block if present."""
    for fence in ("```json", "```"):
        if fence in text:
            start = text.index(fence) + len(fence)
            end = text.find("```", start)
            # Unclosed block: take everything after the opening tag
            return (text[start:] if end == -1 else text[start:end]).strip()
    return text.strip()


def extract_balanced_object(text: str) -> Optional[str]:
    """Return the first complete ``{...}`` object in ``text``."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i, c in _structural(text[start:]):
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start : start + i + 1]
    return None


def apply_fixups(text: str) -> str:
    """Heuristic cleanup: smart quotes, single quotes, trailing commas."""
    fixed = text.translate(_SMART_QUOTES)
    fixed = _TRAILING_COMMA.sub(r"\1", fixed)
    if _loads(fixed) is _INVALID and "'" in fixed and '"' not in fixed:
        fixed = fixed.replace("'", '"')
    return fixed


def parse_worker_output(text: str, truncated: bool = False) -> RawWorkerOutput:
    """
    Run the parse chain over raw model output.

    Raises:
        UnparsableResponse: every stage failed to produce a JSON object.
    """
    text = text or ""
    # Fences are only stripped when the raw text is not already an object,
    # since string values may contain backticks
    for body in (text, strip_code_fences(text)):
        data = _loads(body)
        if isinstance(data, dict):
            return RawWorkerOutput(stage=ParseStage.DIRECT, data=data, truncated=truncated)

    balanced = extract_balanced_object(body)
    if balanced is not None:
        data = _loads(balanced)
        if isinstance(data, dict):
            return RawWorkerOutput(stage=ParseStage.BALANCED, data=data, truncated=truncated)

    for candidate in filter(None, (balanced, body)):
        data = _loads(apply_fixups(candidate))
        if isinstance(data, dict):
            logger.warning("Worker output needed heuristic fixups")
            return RawWorkerOutput(stage=ParseStage.FIXUP, data=data, truncated=truncated)

    repaired = repair(apply_fixups(body))
    if repaired is not None:
        data = _loads(repaired)
        if isinstance(data, dict):
            logger.warning(f"Worker output recovered by truncation repair ({len(body)} chars)")
            return RawWorkerOutput(stage=ParseStage.REPAIRED, data=data, truncated=truncated)

    raise UnparsableResponse(f"Could not parse worker output as JSON. Raw: {body[:300]}")
