"""Reference-vocabulary lookups with a per-slice memo."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from taxis.repositories.concept_repository import ConceptRepository
from taxis.utils.identity import to_int_strict
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class ConceptMeta:
    """Vocabulary metadata for one concept id."""

    name: str
    vocabulary_system: str
    class_id: str


class ConceptCache:
    """Memo of lookups, hits and misses alike.

    Created fresh for every processing slice and dropped with it.
    """

    def __init__(self):
        self._entries: Dict[int, Optional[ConceptMeta]] = {}

    def __contains__(self, concept_id: int) -> bool:
        return concept_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, concept_id: int) -> Optional[ConceptMeta]:
        return self._entries.get(concept_id)

    def put(self, concept_id: int, meta: Optional[ConceptMeta]) -> None:
        self._entries[concept_id] = meta


class ConceptResolver:
    """Resolves raw concept ids to vocabulary metadata."""

    def __init__(self, repository: ConceptRepository, cache: Optional[ConceptCache] = None):
        self.repository = repository
        self.cache = cache if cache is not None else ConceptCache()

    async def resolve(self, raw_id: Any) -> Optional[ConceptMeta]:
        """Look up a concept by raw id.

        Non-integer ids resolve to None without a query. Lookup failures
        are logged and memoised as misses so one bad id does not abort the
        row or hammer the store.
        """
        concept_id = to_int_strict(raw_id)
        if concept_id is None:
            return None
        if concept_id in self.cache:
            return self.cache.get(concept_id)

        meta: Optional[ConceptMeta] = None
        try:
            concept = await self.repository.get_by_concept_id(concept_id)
        except SQLAlchemyError as e:
            LOGGER.warning(f"Concept lookup failed for {concept_id}: {e}")
            concept = None

        if concept is not None:
            meta = ConceptMeta(
                name=(concept.concept_name or "").strip(),
                vocabulary_system=(concept.vocabulary_id or "").strip(),
                class_id=(concept.concept_class_id or "").strip(),
            )

        self.cache.put(concept_id, meta)
        return meta
