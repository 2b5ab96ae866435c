"""
Turn untrusted model replies into typed records.

The discovery model is asked for a JSON array of prospects through a forced
tool call, but in practice it also answers with prose around a JSON array,
fenced code blocks, trailing commas, or a loose sequence of objects. Each
strategy below is a strict parser that either returns validated records or a
failure with a reason; the first strategy that yields records wins.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Sequence

from pydantic import ValidationError

from ..schemas.discovery import CandidateProspect
from .dossiers import prospect_key

logger = logging.getLogger(__name__)

_ARRAY_SPAN_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_SPAN_RE = re.compile(r"\{[\s\S]*\}")
_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


@dataclass(frozen=True)
class ModelReply:
    """Text content plus the raw argument strings of any tool calls."""

    content: str = ""
    tool_arguments: Sequence[str] = ()


@dataclass(frozen=True)
class ParseSuccess:
    records: Any
    strategy: str


@dataclass(frozen=True)
class ParseFailure:
    strategy: str
    reason: str


ParseResult = ParseSuccess | ParseFailure


def model_reply_from_completion(completion: Any) -> ModelReply:
    """
    Normalise an OpenAI-style chat completion into a ModelReply.

    Missing choices, messages or tool calls yield empty fields.
    """
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ModelReply()
    message = getattr(choices[0], "message", None)
    if message is None:
        return ModelReply()

    arguments: List[str] = []
    for call in getattr(message, "tool_calls", None) or []:
        fn = getattr(call, "function", None)
        args = getattr(fn, "arguments", None) if fn is not None else None
        if isinstance(args, str) and args.strip():
            arguments.append(args)

    return ModelReply(content=getattr(message, "content", None) or "", tool_arguments=tuple(arguments))


# ---------------------------------------------------------------------------
# Record validation
# ---------------------------------------------------------------------------


def _validate_prospects(items: Any, strategy: str) -> ParseResult:
    if isinstance(items, dict):
        items = items.get("prospects", items.get("results"))
    if not isinstance(items, list):
        return ParseFailure(strategy, "expected a JSON array of prospects")

    records: List[CandidateProspect] = []
    dropped = 0
    for item in items:
        if not isinstance(item, dict):
            dropped += 1
            continue
        try:
            records.append(CandidateProspect.model_validate(item))
        except ValidationError:
            dropped += 1

    if not records:
        return ParseFailure(strategy, f"no valid prospects ({dropped} rejected)")
    if dropped:
        logger.debug("Dropped %d invalid prospect items", dropped, extra={"step": strategy})
    return ParseSuccess(records, strategy)


def _loads(text: str) -> Any:
    return json.loads(text)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _from_tool_arguments(reply: ModelReply) -> ParseResult:
    strategy = "tool_call"
    if not reply.tool_arguments:
        return ParseFailure(strategy, "no tool call in reply")
    reason = "tool arguments held no valid prospects"
    for raw in reply.tool_arguments:
        try:
            parsed = _loads(raw)
        except json.JSONDecodeError as e:
            reason = f"invalid tool arguments: {e.msg}"
            continue
        result = _validate_prospects(parsed, strategy)
        if isinstance(result, ParseSuccess):
            return result
        reason = result.reason
    return ParseFailure(strategy, reason)


def _from_array_span(text: str, strategy: str = "array_span") -> ParseResult:
    match = _ARRAY_SPAN_RE.search(text or "")
    if not match:
        return ParseFailure(strategy, "no [ ... ] span in text")
    try:
        parsed = _loads(match.group(0))
    except json.JSONDecodeError as e:
        return ParseFailure(strategy, f"array span is not JSON: {e.msg}")
    return _validate_prospects(parsed, strategy)


def _from_fenced_block(text: str) -> ParseResult:
    strategy = "fenced_block"
    match = _FENCED_BLOCK_RE.search(text or "")
    if not match:
        return ParseFailure(strategy, "no fenced code block")
    try:
        parsed = _loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        return ParseFailure(strategy, f"fenced block is not JSON: {e.msg}")
    return _validate_prospects(parsed, strategy)


def repair_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _from_repaired_span(text: str) -> ParseResult:
    return _from_array_span(repair_trailing_commas(text or ""), strategy="trailing_comma_repair")


def iter_object_spans(text: str):
    """
    Yield every complete top-level ``{...}`` span in ``text``.

    Braces inside JSON string literals (including escaped quotes) do not
    count towards the depth. An opening brace that is never closed (a stray
    ``{`` in prose, or a truncated object) is skipped and the scan resumes
    right after it.
    """
    pos = 0
    while pos < len(text):
        depth = 0
        start = -1
        in_string = False
        escaped = False
        for i in range(pos, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                # Quotes only delimit strings inside an object
                if depth > 0:
                    in_string = True
            elif ch == "{":
                if depth == 0:
                    start = i
                depth += 1
            elif ch == "}" and depth > 0:
                depth -= 1
                if depth == 0 and start >= 0:
                    yield text[start : i + 1]
                    start = -1
        if depth == 0 or start < 0:
            return
        pos = start + 1


def _from_brace_counting(text: str) -> ParseResult:
    strategy = "brace_counting"
    objects: List[dict] = []
    for span in iter_object_spans(text or ""):
        try:
            obj = _loads(repair_trailing_commas(span))
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict) and obj.get("name") and obj.get("state"):
            objects.append(obj)
    if not objects:
        return ParseFailure(strategy, "no complete objects with name and state")
    return _validate_prospects(objects, strategy)


_TEXT_STRATEGIES: Sequence[Callable[[str], ParseResult]] = (
    _from_array_span,
    _from_fenced_block,
    _from_repaired_span,
    _from_brace_counting,
)


def parse_prospects(reply: ModelReply) -> ParseResult:
    """
    Run the strategies in order and return the first success.

    When the tool-call arguments parse, no text strategy runs. The returned
    failure (if any) is the last strategy's.
    """
    result = _from_tool_arguments(reply)
    if isinstance(result, ParseSuccess):
        return result
    failures = [result]
    for strategy in _TEXT_STRATEGIES:
        result = strategy(reply.content)
        if isinstance(result, ParseSuccess):
            return result
        failures.append(result)
    logger.warning(
        "All prospect extraction strategies failed",
        extra={"step": "extract", "reasons": {f.strategy: f.reason for f in failures}},
    )
    return failures[-1]


# ---------------------------------------------------------------------------
# Public entrypoints
# ---------------------------------------------------------------------------


def extract_candidates(reply: ModelReply, territory_states: Sequence[str] = ()) -> List[CandidateProspect]:
    """
    Extract candidate prospects from a model reply. Never raises.

    Candidates outside ``territory_states`` are dropped (case-insensitive;
    the kept record carries the territory's spelling), so an empty territory
    keeps nothing. Duplicate prospect keys keep the first occurrence.
    """
    result = parse_prospects(reply)
    if isinstance(result, ParseFailure):
        return []

    canonical = {s.strip().lower(): s.strip() for s in territory_states if s and s.strip()}
    seen: set[str] = set()
    kept: List[CandidateProspect] = []
    for candidate in result.records:
        state = canonical.get(candidate.state.strip().lower())
        if state is None:
            continue
        if state != candidate.state:
            candidate = candidate.model_copy(update={"state": state})
        key = prospect_key(candidate.name, candidate.state)
        if key in seen:
            continue
        seen.add(key)
        kept.append(candidate)

    logger.info(
        "Extracted %d prospects via %s",
        len(kept),
        result.strategy,
        extra={"step": "extract"},
    )
    return kept


def extract_json(text: str | None) -> ParseResult:
    """
    Pull one JSON object out of free text.

    Tries a direct parse, then the first fenced block, then the widest
    ``{ ... }`` span. Only dict results count as success.
    """
    text = (text or "").strip()
    if not text:
        return ParseFailure("direct", "empty text")

    candidates: list[tuple[str, str]] = [("direct", text)]
    fenced = _FENCED_BLOCK_RE.search(text)
    if fenced:
        candidates.append(("fenced_block", fenced.group(1).strip()))
    span = _OBJECT_SPAN_RE.search(text)
    if span:
        candidates.append(("object_span", span.group(0)))

    last = ParseFailure("direct", "no JSON object found")
    for strategy, raw in candidates:
        try:
            parsed = _loads(raw)
        except json.JSONDecodeError:
            try:
                parsed = _loads(repair_trailing_commas(raw))
            except json.JSONDecodeError as e:
                last = ParseFailure(strategy, f"not JSON: {e.msg}")
                continue
        if isinstance(parsed, dict):
            return ParseSuccess(parsed, strategy)
        last = ParseFailure(strategy, "JSON value is not an object")
    return last
