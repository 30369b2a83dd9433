"""Parse model output into typed results, with one best-effort repair pass.

Strict parse first: strip Markdown fences and any preamble, decode the first
JSON value, validate it into ``RecipeResult`` / ``ProductRecommendationResult``
(field names are case-insensitive). If that fails, the text goes through
``REPAIR_STEPS`` in order and is parsed once more. A second failure raises
``UnparseableOutputError``; nothing here retries further.

The repair steps are heuristics for the mistakes small models tend to make.
They are not a JSON grammar fixer and can still produce unparseable text.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from dualmodel.errors import UnparseableOutputError
from dualmodel.models.contracts import (
    ArtifactKind,
    ParsedResponse,
    PipelineStage,
    ProductRecommendationResult,
    RecipeResult,
)

logger = structlog.get_logger()

# strict=False: literal newlines/tabs inside strings are common in model output
_DECODER = json.JSONDecoder(strict=False)

_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"', re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fence(text: str) -> str:
    """Remove Markdown code fences (```json ... ```) around model output."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = text.removeprefix("```")
    for lang in ("json", "JSON"):
        text = text.removeprefix(lang)
    text = text.lstrip("\n")
    return text.rsplit("```", 1)[0].strip()


def _outside_strings(text: str, transform: Callable[[str], str]) -> str:
    """Apply ``transform`` only to the parts of ``text`` outside "..." literals."""
    out: list[str] = []
    pos = 0
    for match in _STRING_RE.finditer(text):
        out.append(transform(text[pos : match.start()]))
        out.append(match.group(0))
        pos = match.end()
    out.append(transform(text[pos:]))
    return "".join(out)


# === Repair steps (each str -> str, independently testable) ===


def remove_trailing_commas(text: str) -> str:
    """``{"a": 1,}`` -> ``{"a": 1}`` and ``[1, 2, ]`` -> ``[1, 2]``."""
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def close_unbalanced_brackets(text: str) -> str:
    """Append the closers missing at the end of truncated output.

    Brackets inside string literals are ignored. Closers are appended in
    nesting order, so ``{"a":[1,2`` becomes ``{"a":[1,2]}``. An unterminated
    string literal is closed first; a dangling comma is dropped.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
            continue
        if in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]") and stack and stack[-1] == ch:
            stack.pop()

    if not stack and not in_string:
        return text

    repaired = text + '"' if in_string else text.rstrip()
    if stack:
        repaired = repaired.rstrip().removesuffix(",")
    return repaired + "".join(reversed(stack))


def quote_bare_keys(text: str) -> str:
    """``{name: "x"}`` -> ``{"name": "x"}``; text inside strings is untouched."""
    return _outside_strings(text, lambda part: _BARE_KEY_RE.sub(r'\1"\2"\3', part))


def convert_single_quotes(text: str) -> str:
    """Turn single-quoted literals into double-quoted ones.

    Apostrophes inside double-quoted strings are preserved.
    """
    out: list[str] = []
    in_double = False
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
            out.append(ch)
            continue
        if ch == "\\":
            escaped = True
            out.append(ch)
            continue
        if ch == '"':
            in_double = not in_double
            out.append(ch)
        elif ch == "'" and not in_double:
            out.append('"')
        else:
            out.append(ch)
    return "".join(out)


def strip_control_characters(text: str) -> str:
    """Drop control characters other than tab, newline and carriage return."""
    return _CONTROL_CHARS_RE.sub("", text)


REPAIR_STEPS: tuple[Callable[[str], str], ...] = (
    remove_trailing_commas,
    close_unbalanced_brackets,
    quote_bare_keys,
    convert_single_quotes,
    strip_control_characters,
)


def repair_json(text: str) -> str:
    """Run every repair step in order. Best effort; may still be invalid."""
    repaired = text.strip()
    for step in REPAIR_STEPS:
        repaired = step(repaired)
    return repaired


# === Parsing ===


@dataclass
class ParseOutcome:
    result: ParsedResponse
    repaired: bool = False
    notes: list[str] = field(default_factory=list)


def _payload_start(text: str, kind: ArtifactKind) -> int:
    """Index of the first JSON value in ``text`` (skips model preamble)."""
    brace = text.find("{")
    if kind == ArtifactKind.PRODUCT_RECOMMENDATIONS:
        bracket = text.find("[")
        candidates = [i for i in (brace, bracket) if i != -1]
        return min(candidates) if candidates else -1
    return brace


def extract_payload(text: str, kind: ArtifactKind) -> str:
    """Return the text from the first JSON value onwards, fences removed."""
    text = strip_code_fence(text or "")
    start = _payload_start(text, kind)
    return text[start:] if start != -1 else text


def parse_strict(text: str, kind: ArtifactKind) -> ParsedResponse:
    """Decode and validate; raises ValueError on any failure."""
    payload_text = extract_payload(text, kind)
    if not payload_text.strip():
        raise ValueError("empty model output")

    # raw_decode ignores trailing chatter after the first JSON value
    data, _ = _DECODER.raw_decode(payload_text.lstrip())

    if kind == ArtifactKind.RECIPE:
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return RecipeResult.model_validate(data)

    if isinstance(data, list):
        data = {"recommendations": data}
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return ProductRecommendationResult.model_validate(data)


def parse_response(text: str, kind: ArtifactKind) -> ParseOutcome:
    """Strict parse, then one repair pass, then give up."""
    try:
        return ParseOutcome(result=parse_strict(text, kind))
    except ValueError as exc:
        logger.warning("model_output_parse_failed", kind=kind.value, error=str(exc)[:200])

    repaired = repair_json(extract_payload(text, kind))
    try:
        result = parse_strict(repaired, kind)
    except ValueError as exc:
        logger.error(
            "model_output_repair_failed",
            kind=kind.value,
            error=str(exc)[:200],
            length=len(text or ""),
        )
        raise UnparseableOutputError(
            "Unparseable model output: JSON repair did not produce a valid "
            f"{kind.value} structure",
            stage=PipelineStage.PARSING,
        ) from exc

    logger.info("model_output_repaired", kind=kind.value)
    return ParseOutcome(result=result, repaired=True, notes=["JSON repair applied"])
