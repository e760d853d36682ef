"""Per-row identity resolution."""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from taxis.services.concept_resolver import ConceptMeta, ConceptResolver
from taxis.services.row_source import pick_actual_to_expected, pick_co_occurrence
from taxis.utils.identity import make_pair_id, normalize_optional_type


@dataclass
class EnrichedPair:
    """A source row with both sides resolved against the vocabulary."""

    row: Mapping[str, Any]
    pair_id: str
    code_a: str
    code_b: str
    concept_a: str
    concept_b: str
    system_a: str
    system_b: str
    type_a: Optional[str]
    type_b: Optional[str]
    co_occurrence: int
    actual_to_expected: float

    def identity_fields(self) -> Dict[str, Any]:
        return {
            "concept_a": self.concept_a,
            "code_a": self.code_a,
            "system_a": self.system_a,
            "type_a": self.type_a,
            "concept_b": self.concept_b,
            "code_b": self.code_b,
            "system_b": self.system_b,
            "type_b": self.type_b,
        }

    def prompt_fields(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "system_a": self.system_a,
            "code_a": self.code_a,
            "system_b": self.system_b,
            "code_b": self.code_b,
            "concept_a_text": self.concept_a,
            "concept_b_text": self.concept_b,
            "co_occurrence": self.co_occurrence,
            "actual_to_expected": self.actual_to_expected,
        }


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _first(row: Mapping[str, Any], *columns: str) -> Any:
    for column in columns:
        value = row.get(column)
        if value is not None and value != "":
            return value
    return None


def effective_type(meta: Optional[ConceptMeta], upload_type: Any) -> Optional[str]:
    """Vocabulary class when known, else the normalised upload type."""
    if meta is not None and meta.class_id:
        return meta.class_id
    return normalize_optional_type(upload_type)


class RowEnricher:
    """Resolves both concepts of a row and derives its pair identity."""

    def __init__(self, resolver: ConceptResolver):
        self.resolver = resolver

    async def enrich(self, row: Mapping[str, Any]) -> EnrichedPair:
        code_a = _text(_first(row, "code_a", "concept_a"))
        code_b = _text(_first(row, "code_b", "concept_b"))

        meta_a = await self.resolver.resolve(code_a)
        meta_b = await self.resolver.resolve(code_b)

        concept_a = (meta_a.name if meta_a else "") or _text(_first(row, "concept_a")) or code_a
        concept_b = (meta_b.name if meta_b else "") or _text(_first(row, "concept_b")) or code_b
        system_a = (meta_a.vocabulary_system if meta_a else "") or _text(row.get("system_a"))
        system_b = (meta_b.vocabulary_system if meta_b else "") or _text(row.get("system_b"))

        return EnrichedPair(
            row=row,
            pair_id=make_pair_id(system_a, code_a, system_b, code_b),
            code_a=code_a,
            code_b=code_b,
            concept_a=concept_a,
            concept_b=concept_b,
            system_a=system_a,
            system_b=system_b,
            type_a=effective_type(meta_a, row.get("type_a")),
            type_b=effective_type(meta_b, row.get("type_b")),
            co_occurrence=pick_co_occurrence(row),
            actual_to_expected=pick_actual_to_expected(row),
        )
