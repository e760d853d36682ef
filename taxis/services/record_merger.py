"""Create-or-merge of pair aggregate records."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from taxis.core.exceptions import DatabaseError
from taxis.repositories.master_record_repository import MasterRecordRepository
from taxis.services.classification_cache import CachedClassifier
from taxis.services.classifier import DEFAULT_RELATIONSHIP_CODE, RELATIONSHIP_TYPES, ClassificationResult
from taxis.services.field_mapping import FieldMapping
from taxis.services.row_enricher import EnrichedPair
from taxis.utils.identity import coerce_fields
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

RATIONALE_MAX_LENGTH = 1024

# Mapping-driven columns never overwrite these on create.
CREATE_GUARDED_FIELDS = frozenset({
    "pair_id",
    "relationship_type",
    "relationship_code",
    "rationale",
    "llm_name",
    "llm_version",
    "llm_date",
    "source_count",
    "concept_a",
    "concept_b",
    "system_a",
    "system_b",
    "type_a",
    "type_b",
    "code_a",
    "code_b",
})

# Classification and provenance are immutable once the record exists.
UPDATE_GUARDED_FIELDS = frozenset({
    "pair_id",
    "relationship_type",
    "relationship_code",
    "rationale",
    "llm_name",
    "llm_version",
    "llm_date",
    "code_a",
    "code_b",
    "created_at",
})


@dataclass
class MergeResult:
    is_new: bool
    merged_fields: Dict[str, Any]
    classification: ClassificationResult
    prompt_key: Optional[str] = None
    from_cache: bool = False
    usage: Dict[str, int] = field(default_factory=dict)


class RecordMerger:
    """Folds one enriched row into the aggregate table."""

    def __init__(
        self,
        master_records: MasterRecordRepository,
        classifier: CachedClassifier,
        provider_name: str,
    ):
        self.master_records = master_records
        self.classifier = classifier
        self.provider_name = provider_name

    async def merge(self, pair: EnrichedPair, mapping: FieldMapping) -> MergeResult:
        """Create the record on first sighting, otherwise merge into it."""
        existing = await self.master_records.get_by_pair_id(pair.pair_id)
        if existing is None:
            result = await self._create(pair, mapping)
            if result is not None:
                return result
            # Lost the insert race; the other writer's record is authoritative.
            existing = await self.master_records.get_by_pair_id(pair.pair_id)
            if existing is None:
                raise DatabaseError(f"MasterRecord {pair.pair_id} vanished after insert conflict")
        return await self._update(existing, pair, mapping)

    async def _create(self, pair: EnrichedPair, mapping: FieldMapping) -> Optional[MergeResult]:
        cached = await self.classifier.classify(pair.prompt_fields())
        classification = cached.result
        now = datetime.now(timezone.utc)

        base = {
            "pair_id": pair.pair_id,
            **pair.identity_fields(),
            "relationship_type": classification.label,
            "relationship_code": classification.code,
            "rationale": classification.rationale[:RATIONALE_MAX_LENGTH],
            "llm_name": self.provider_name,
            "llm_version": classification.model,
            "llm_date": now,
            "source_count": 1,
            "updated_at": now,
        }
        mapped = {
            name: value
            for name, value in mapping.build_create_fields(pair.row).items()
            if name not in CREATE_GUARDED_FIELDS
        }
        data = coerce_fields({**base, **mapped}, mapping.categories())

        created = await self.master_records.create_if_absent(**data)
        if not created:
            LOGGER.info(f"MasterRecord {pair.pair_id} created concurrently, merging instead")
            return None

        return MergeResult(
            is_new=True,
            merged_fields=data,
            classification=classification,
            prompt_key=cached.prompt_key,
            from_cache=cached.from_cache,
            usage=dict(classification.usage) if not cached.from_cache else {},
        )

    async def _update(self, existing: Any, pair: EnrichedPair, mapping: FieldMapping) -> MergeResult:
        data = {
            name: value
            for name, value in mapping.build_update_fields(existing, pair.row).items()
            if name not in UPDATE_GUARDED_FIELDS
        }
        data["source_count"] = (existing.source_count or 0) + 1

        # Identity refreshes from the resolver, never blanks a known value.
        data["concept_a"] = pair.concept_a or existing.concept_a
        data["concept_b"] = pair.concept_b or existing.concept_b
        data["system_a"] = pair.system_a or existing.system_a
        data["system_b"] = pair.system_b or existing.system_b
        if pair.type_a:
            data["type_a"] = pair.type_a
        if pair.type_b:
            data["type_b"] = pair.type_b
        data["updated_at"] = datetime.now(timezone.utc)

        coerce_fields(data, mapping.categories())
        await self.master_records.update_record(pair.pair_id, **data)

        code = existing.relationship_code or DEFAULT_RELATIONSHIP_CODE
        classification = ClassificationResult(
            code=code,
            label=existing.relationship_type or RELATIONSHIP_TYPES.get(code, RELATIONSHIP_TYPES[DEFAULT_RELATIONSHIP_CODE]),
            rationale=existing.rationale or "",
            model=existing.llm_version or self.classifier.classifier.primary_model,
        )
        return MergeResult(is_new=False, merged_fields=data, classification=classification)
