"""Unit tests for the upload-column mapping table."""

from types import SimpleNamespace

import pytest

from taxis.services.field_mapping import (
    FieldMapping,
    FieldMappingEntry,
    FieldMappingLoader,
    mapping_from_rows,
)
from taxis.utils.identity import FieldCategory
from tests.fakes import InMemoryBlobStore


@pytest.fixture
def mapping() -> FieldMapping:
    return FieldMapping(entries=[
        FieldMappingEntry("cooc_obs", "cooc_obs", FieldCategory.COUNT),
        FieldMappingEntry("lift", "lift", FieldCategory.STAT),
        FieldMappingEntry("reviewer", "human_reviewer", FieldCategory.OTHER),
    ])


class TestMergeSemantics:

    def test_create_fields_coerce_and_blank_other(self, mapping):
        fields = mapping.build_create_fields({"cooc_obs": "3", "lift": "2.5", "reviewer": ""})

        assert fields == {"cooc_obs": 3, "lift": 2.5, "human_reviewer": None}

    def test_absent_columns_are_skipped(self, mapping):
        assert mapping.build_create_fields({"cooc_obs": "1"}) == {"cooc_obs": 1}

    def test_counts_add_on_update(self, mapping):
        existing = SimpleNamespace(cooc_obs=3, lift=2.5, human_reviewer=None)

        fields = mapping.build_update_fields(existing, {"cooc_obs": "5", "lift": "9.9"})

        assert fields == {"cooc_obs": 8}

    def test_other_fields_only_backfill(self, mapping):
        empty = SimpleNamespace(cooc_obs=0, human_reviewer="")
        filled = SimpleNamespace(cooc_obs=0, human_reviewer="dr. who")

        assert mapping.build_update_fields(empty, {"reviewer": "jdoe"}) == {"human_reviewer": "jdoe"}
        assert mapping.build_update_fields(filled, {"reviewer": "jdoe"}) == {}

    def test_static_category_wins_over_other(self):
        mapping = FieldMapping(entries=[FieldMappingEntry("nA", "n_a", FieldCategory.OTHER)])
        existing = SimpleNamespace(n_a=10)

        assert mapping.build_update_fields(existing, {"nA": "1"}) == {"n_a": 11}


class TestLegacyMapping:

    def test_renamed_columns(self):
        legacy = FieldMapping.legacy()
        by_target = {entry.target_field: entry for entry in legacy.entries}

        assert by_target["n_a"].upload_column == "nA"
        assert by_target["n_b"].upload_column == "nB"
        assert by_target["total_persons"].upload_column == "total_person"
        assert by_target["lift"].category is FieldCategory.STAT

    def test_excludes_derived_fields(self):
        targets = {entry.target_field for entry in FieldMapping.legacy().entries}

        assert "source_count" not in targets
        assert "relationship_code" not in targets


class TestMappingTable:

    def test_headers_are_found_by_substring(self):
        rows = [
            {"Upload Column": "nA", "MasterRecord Field": "n_a", "Category": "Counts"},
            {"Upload Column": "lift", "MasterRecord Field": "lift", "Category": "Statistic"},
            {"Upload Column": "", "MasterRecord Field": "z_score", "Category": "Stat"},
        ]

        mapping = mapping_from_rows(rows, source="map.csv")

        assert [(e.upload_column, e.target_field, e.category) for e in mapping.entries] == [
            ("nA", "n_a", FieldCategory.COUNT),
            ("lift", "lift", FieldCategory.STAT),
        ]

    def test_unknown_targets_are_dropped(self):
        rows = [
            {"upload": "x", "target": "not_a_field", "category": "count"},
            {"upload": "nB", "target": "n_b", "category": "count"},
        ]

        mapping = mapping_from_rows(rows)

        assert [entry.target_field for entry in mapping.entries] == ["n_b"]

    def test_missing_headers_yield_none(self):
        assert mapping_from_rows([{"foo": "a", "bar": "b"}]) is None
        assert mapping_from_rows([]) is None


class TestLoader:

    @pytest.mark.asyncio
    async def test_first_usable_candidate_wins(self):
        store = InMemoryBlobStore()
        await store.put("config", "broken.csv", b"foo,bar\n1,2\n")
        await store.put("config", "fields.csv", b"Upload Column,MasterRecord Field,Category\nnA,n_a,count\n")

        mapping = await FieldMappingLoader(store, "config", ["missing.csv", "broken.csv", "fields.csv"]).load()

        assert mapping.source == "fields.csv"
        assert len(mapping) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_legacy(self):
        store = InMemoryBlobStore()
        await store.put("config", "fields.xlsx", b"not a workbook")

        mapping = await FieldMappingLoader(store, "config", ["fields.xlsx"]).load()

        assert mapping.source == "legacy"
