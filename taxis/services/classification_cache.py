"""Cache gate in front of the relationship classifier."""

import json
from dataclasses import dataclass
from typing import Any, Mapping

from taxis.repositories.llm_cache_repository import LlmCacheRepository
from taxis.services.classifier import ClassificationResult, RelationshipClassifier
from taxis.utils.identity import stable_prompt_key
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class CachedClassification:
    result: ClassificationResult
    prompt_key: str
    from_cache: bool


class CachedClassifier:
    """Checks the classification cache before calling the language model.

    Only successful answers are stored, with insert-if-absent semantics, so
    concurrent writers for one key converge on the first answer.
    """

    def __init__(
        self,
        classifier: RelationshipClassifier,
        cache: LlmCacheRepository,
        prompt_version: str,
    ):
        self.classifier = classifier
        self.cache = cache
        self.prompt_version = prompt_version
        self.calls = 0
        self.hits = 0

    def prompt_key(self, fields: Mapping[str, Any]) -> str:
        return stable_prompt_key(
            {
                **fields,
                "model": self.classifier.primary_model,
                "prompt_version": self.prompt_version,
            }
        )

    async def classify(self, fields: Mapping[str, Any]) -> CachedClassification:
        """Classify the pair described by ``fields``.

        ``fields`` carries the prompt-key inputs: pair id, systems, codes,
        concept texts, co-occurrence and the actual/expected ratio.
        """
        key = self.prompt_key(fields)

        entry = await self.cache.get_by_prompt_key(key)
        if entry is not None:
            try:
                result = ClassificationResult.from_payload(json.loads(entry.result))
            except (ValueError, TypeError, AttributeError):
                LOGGER.warning(f"Unreadable cache entry {key}, reclassifying")
            else:
                self.hits += 1
                return CachedClassification(result=result, prompt_key=key, from_cache=True)

        self.calls += 1
        result = await self.classifier.classify(
            concept_a_text=str(fields.get("concept_a_text") or ""),
            concept_b_text=str(fields.get("concept_b_text") or ""),
            co_occurrence=int(fields.get("co_occurrence") or 0),
            actual_to_expected=float(fields.get("actual_to_expected") or 0.0),
        )

        if result.succeeded:
            inserted = await self.cache.insert_if_absent(
                prompt_key=key,
                result=json.dumps(result.to_payload()),
                tokens_in=result.usage.get("prompt_tokens"),
                tokens_out=result.usage.get("completion_tokens"),
                model=result.model,
            )
            if not inserted:
                LOGGER.info(f"Cache entry {key} already written by another slice")

        return CachedClassification(result=result, prompt_key=key, from_cache=False)
