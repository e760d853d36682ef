"""Unit tests for vocabulary lookups and row enrichment."""

import pytest
from sqlalchemy.exc import OperationalError

from taxis.services.concept_resolver import ConceptCache, ConceptResolver
from taxis.services.row_enricher import RowEnricher
from tests.fakes import FakeConceptRepository


@pytest.fixture
def concepts() -> FakeConceptRepository:
    repo = FakeConceptRepository()
    repo.add(201826, "Type 2 diabetes mellitus", "ICD10CM", "Condition")
    repo.add(4329847, "Myocardial infarction", "SNOMED", "Clinical Finding")
    return repo


class TestConceptResolver:

    @pytest.mark.asyncio
    async def test_hits_and_misses_are_memoised(self, concepts):
        resolver = ConceptResolver(concepts, ConceptCache())

        first = await resolver.resolve("201826")
        second = await resolver.resolve(201826)
        missing = await resolver.resolve("999")
        await resolver.resolve("999")

        assert first.name == "Type 2 diabetes mellitus"
        assert second is first
        assert missing is None
        assert concepts.lookups == [201826, 999]

    @pytest.mark.asyncio
    async def test_non_integer_ids_skip_the_store(self, concepts):
        resolver = ConceptResolver(concepts)

        assert await resolver.resolve("I10") is None
        assert await resolver.resolve("") is None
        assert concepts.lookups == []

    @pytest.mark.asyncio
    async def test_lookup_failure_is_a_miss(self, concepts):
        concepts.error = OperationalError("SELECT", {}, Exception("connection reset"))
        resolver = ConceptResolver(concepts)

        assert await resolver.resolve("201826") is None
        assert await resolver.resolve("201826") is None
        assert concepts.lookups == [201826]


class TestRowEnricher:

    @pytest.mark.asyncio
    async def test_resolved_pair(self, concepts):
        enricher = RowEnricher(ConceptResolver(concepts))

        pair = await enricher.enrich({
            "concept_a": "201826",
            "concept_b": "4329847",
            "cooc_event_count": "4",
            "lift": "2.25",
        })

        assert pair.pair_id == "ICD10CM|201826|SNOMED|4329847"
        assert pair.concept_a == "Type 2 diabetes mellitus"
        assert pair.type_b == "Clinical Finding"
        assert pair.co_occurrence == 4
        assert pair.actual_to_expected == 2.25

    @pytest.mark.asyncio
    async def test_unresolved_side_falls_back_to_row(self, concepts):
        enricher = RowEnricher(ConceptResolver(concepts))

        pair = await enricher.enrich({
            "code_a": "I10",
            "concept_a": "Essential hypertension",
            "system_a": "icd10cm",
            "type_a": "Condition",
            "concept_b": "201826",
        })

        assert pair.code_a == "I10"
        assert pair.concept_a == "Essential hypertension"
        assert pair.type_a == "condition"
        assert pair.pair_id == "ICD10CM|I10|ICD10CM|201826"
        assert pair.prompt_fields()["concept_b_text"] == "Type 2 diabetes mellitus"
