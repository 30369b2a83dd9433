"""Input normalization — validates and canonicalizes raw item lists.

Runs before any external call. Per item: strip characters outside the
allow-list, collapse whitespace, trim. Any offending item fails the whole
request with one ``ItemRejection`` per offender; duplicates are folded
case-insensitively, keeping the first spelling seen.
"""

from __future__ import annotations

import re

import structlog

from dualmodel.errors import InputValidationError
from dualmodel.models.contracts import ArtifactKind, ItemRejection, NormalizedRequest

logger = structlog.get_logger()

MAX_ITEM_LENGTH = 100

# \w covers accented and locale-specific letters (ç, ğ, ı, ö, ş, ü, é, ...)
# plus digits; underscore is the one \w character we do not allow.
_DISALLOWED_RE = re.compile(r"[^\w\s\-.,()/']|_")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_item(raw: str) -> str:
    """Strip disallowed characters, collapse whitespace and trim."""
    if not raw:
        return ""
    cleaned = _DISALLOWED_RE.sub("", raw)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned)
    return cleaned.strip()


def normalize_items(
    raw_items: list[str] | None,
    *,
    kind: ArtifactKind,
    max_items: int,
    type_hint: str | None = None,
    max_item_length: int = MAX_ITEM_LENGTH,
) -> NormalizedRequest:
    """Return a NormalizedRequest or raise InputValidationError."""
    label = "inventory" if kind == ArtifactKind.RECIPE else "shopping list"

    if not raw_items:
        raise InputValidationError(f"The {label} cannot be empty")

    if len(raw_items) > max_items:
        raise InputValidationError(
            f"The {label} exceeds the maximum of {max_items} items (got {len(raw_items)})"
        )

    rejections: list[ItemRejection] = []
    cleaned: list[str] = []
    for index, raw in enumerate(raw_items):
        raw = raw if isinstance(raw, str) else ""
        if not raw.strip():
            rejections.append(ItemRejection(index=index, value=raw, reason="empty"))
            continue

        item = sanitize_item(raw)
        if not item:
            rejections.append(ItemRejection(index=index, value=raw, reason="invalid_characters"))
            continue

        if len(item) > max_item_length:
            rejections.append(ItemRejection(index=index, value=raw, reason="too_long"))
            continue

        cleaned.append(item)

    if not cleaned:
        raise InputValidationError(
            f"No valid items in the {label} after sanitization", rejections
        )

    if rejections:
        logger.info(
            "input_items_rejected",
            kind=kind.value,
            rejected=len(rejections),
            total=len(raw_items),
        )
        raise InputValidationError(
            f"{len(rejections)} item(s) in the {label} are invalid", rejections
        )

    seen: set[str] = set()
    unique: list[str] = []
    for item in cleaned:
        folded = item.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        unique.append(item)

    hint = sanitize_item(type_hint) if type_hint else ""

    return NormalizedRequest(kind=kind, items=unique, type_hint=hint or None)
