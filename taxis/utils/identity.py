"""Pair identity, numeric coercion and prompt-key hashing.

Everything in this module is pure: no I/O, no logging, no settings access.
"""

import enum
import hashlib
import json
import math
import re
from typing import Any, Iterable, Mapping, MutableMapping, Optional

MAX_SAFE_INTEGER = 2**53 - 1

_STRICT_INT_RE = re.compile(r"^-?\d+$")

ALLOWED_CONCEPT_TYPES = frozenset({"condition", "procedure", "medication", "other"})


class FieldCategory(str, enum.Enum):
    """How an upload column merges into a MasterRecord field."""

    COUNT = "count"  # integer, additive on re-merge
    STAT = "stat"    # decimal, written once on first sighting
    OTHER = "other"  # pass-through, backfilled only while empty

    @classmethod
    def parse(cls, label: Any) -> "FieldCategory":
        """Interpret a free-text category label from the mapping table.

        ``count``/``counts`` map to COUNT, anything starting with ``stat``
        (``Stat``, ``Statistical``) maps to STAT, the rest is OTHER.
        """
        text = str(label or "").strip().lower()
        if text in ("count", "counts"):
            return cls.COUNT
        if text.startswith("stat"):
            return cls.STAT
        return cls.OTHER


# Authoritative fallback categories for MasterRecord fields, keyed lower-case.
# Declared independently of any runtime field mapping.
STATIC_FIELD_CATEGORIES: Mapping[str, FieldCategory] = {
    **{
        name: FieldCategory.COUNT
        for name in (
            "cooc_obs", "cooc_event_count", "a_before_b", "same_day", "b_before_a",
            "n_a", "n_b", "total_persons", "source_count", "relationship_code",
        )
    },
    **{
        name: FieldCategory.STAT
        for name in (
            "expected_obs", "lift", "lift_lower_95", "lift_upper_95", "z_score",
            "ab_h", "a_only_h", "b_only_h", "neither_h",
            "odds_ratio", "or_lower_95", "or_upper_95",
            "directionality_ratio", "dir_prop_a_before_b", "dir_lower_95", "dir_upper_95",
            "confidence_a_to_b", "confidence_b_to_a",
        )
    },
}


def make_pair_id(system_a: Any, code_a: Any, system_b: Any, code_b: Any) -> str:
    """Build the canonical pair id ``SYSTEM_A|CODE_A|SYSTEM_B|CODE_B``.

    Order-sensitive: (A, B) and (B, A) are different pairs.
    """
    parts = (system_a, code_a, system_b, code_b)
    return "|".join(str("" if part is None else part).strip().upper() for part in parts)


def to_int_strict(value: Any) -> Optional[int]:
    """Parse an integer, rejecting anything that is not exactly one.

    ``"12"`` and ``12.0`` parse; ``"12.5"``, ``"I10"``, ``""`` and booleans
    do not. Magnitudes beyond 2**53-1 are rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        number = int(value)
    else:
        text = str(value).strip()
        if not _STRICT_INT_RE.match(text):
            return None
        number = int(text)
    if abs(number) > MAX_SAFE_INTEGER:
        return None
    return number


def to_float_or_none(value: Any) -> Optional[float]:
    """Parse a finite float, or return None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_by_category(value: Any, category: FieldCategory) -> Any:
    """Coerce a raw value according to its field category.

    COUNT yields an int (0 when the value is not a strict integer), STAT a
    float or None, OTHER passes the value through unchanged.
    """
    if category is FieldCategory.COUNT:
        number = to_int_strict(value)
        return 0 if number is None else number
    if category is FieldCategory.STAT:
        return to_float_or_none(value)
    return value


def resolve_category(field: str, mapped: Optional[FieldCategory] = None) -> FieldCategory:
    """Category for a target field: explicit COUNT/STAT from the mapping wins,
    otherwise the static table decides."""
    if mapped in (FieldCategory.COUNT, FieldCategory.STAT):
        return mapped
    return STATIC_FIELD_CATEGORIES.get(field.lower(), FieldCategory.OTHER)


def coerce_fields(
    data: MutableMapping[str, Any],
    categories: Optional[Mapping[str, FieldCategory]] = None,
) -> MutableMapping[str, Any]:
    """Coerce numeric fields in place right before a database write."""
    categories = categories or {}
    for field in list(data.keys()):
        category = resolve_category(field, categories.get(field))
        if category is not FieldCategory.OTHER:
            data[field] = coerce_by_category(data[field], category)
    return data


def normalize_optional_type(value: Any) -> Optional[str]:
    """Normalise an upload concept type to one of the allowed labels."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    return text if text in ALLOWED_CONCEPT_TYPES else "other"


# Field order is part of the key; append new fields at the end and bump the
# prompt version instead of reordering.
PROMPT_KEY_FIELDS: tuple[str, ...] = (
    "model",
    "pair_id",
    "system_a",
    "code_a",
    "system_b",
    "code_b",
    "concept_a_text",
    "concept_b_text",
    "co_occurrence",
    "actual_to_expected",
    "prompt_version",
)


def stable_prompt_key(fields: Mapping[str, Any]) -> str:
    """SHA-256 over the explicitly ordered fields that determine a prompt.

    Missing fields hash as empty strings. Ratios are rounded to the two
    decimals the prompt actually shows.
    """
    payload: list[list[str]] = []
    for name in PROMPT_KEY_FIELDS:
        value = fields.get(name)
        if name == "actual_to_expected" and value is not None:
            number = to_float_or_none(value)
            value = f"{number:.2f}" if number is not None else value
        payload.append([name, "" if value is None else str(value)])
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def unique_in_order(items: Iterable[str]) -> list[str]:
    """De-duplicate while keeping first occurrence order."""
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)
