"""Unit tests for upload decoding."""

import io
from datetime import date

import openpyxl
import pytest

from taxis.core.exceptions import RowSourceError
from taxis.services.row_source import (
    parse_upload_rows,
    pick_actual_to_expected,
    pick_co_occurrence,
    read_header,
)


def _workbook_bytes(rows):
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestCsv:

    def test_rows_keep_source_order_and_trim_cells(self):
        content = "\ufeffconcept_a , concept_b\n 1 ,2\n3, 4 \n".encode("utf-8")

        rows = parse_upload_rows(content, "pairs.csv")

        assert rows == [
            {"concept_a": "1", "concept_b": "2"},
            {"concept_a": "3", "concept_b": "4"},
        ]

    def test_blank_rows_are_skipped(self):
        content = b"concept_a,concept_b\n1,2\n,\n\n3,4\n"

        rows = parse_upload_rows(content, "pairs.CSV")

        assert [row["concept_a"] for row in rows] == ["1", "3"]

    def test_quoted_commas_survive(self):
        content = b'concept_a,note\n1,"hello, world"\n'

        assert parse_upload_rows(content, "x.csv")[0]["note"] == "hello, world"

    def test_header_only(self):
        assert read_header(b"a, b ,,c\n1,2,3,4\n", "x.csv") == ["a", "b", "c"]

    def test_invalid_utf8_raises(self):
        with pytest.raises(RowSourceError):
            parse_upload_rows(b"a,b\n\xff\xfe,1\n", "x.csv")


class TestXlsx:

    def test_first_sheet_is_decoded(self):
        content = _workbook_bytes([
            ["concept_a", "concept_b", "lift", "seen"],
            [201826, "4329847", 2.5, date(2024, 1, 31)],
            [None, None, None, None],
            [3.0, " 4 ", None, None],
        ])

        rows = parse_upload_rows(content, "pairs.xlsx")

        assert len(rows) == 2
        assert rows[0]["concept_a"] == 201826
        assert rows[0]["concept_b"] == "4329847"
        assert rows[0]["lift"] == 2.5
        assert rows[0]["seen"].startswith("2024-01-31")
        assert rows[1] == {"concept_a": 3, "concept_b": "4", "lift": "", "seen": ""}

    def test_header_of_workbook(self):
        content = _workbook_bytes([["concept_a", None, "nA"], [1, 2, 3]])

        assert read_header(content, "pairs.xlsx") == ["concept_a", "nA"]

    def test_garbage_workbook_raises(self):
        with pytest.raises(RowSourceError):
            parse_upload_rows(b"not a zip file", "pairs.xlsx")


def test_unsupported_extension():
    with pytest.raises(RowSourceError):
        parse_upload_rows(b"a,b\n", "pairs.txt")


class TestStatisticPickers:

    def test_co_occurrence_precedence(self):
        assert pick_co_occurrence({"cooc_event_count": "7", "events_ab": "3", "cooc_obs": "2"}) == 7
        assert pick_co_occurrence({"cooc_event_count": "", "events_ab": "3"}) == 3
        assert pick_co_occurrence({"cooc_obs": "2.5"}) == 0

    def test_ratio_precedence(self):
        assert pick_actual_to_expected({"events_ab_ae": "1.8", "lift": "3"}) == 1.8
        assert pick_actual_to_expected({"lift": "3"}) == 3.0
        assert pick_actual_to_expected({"lift_lower_95": "1", "lift_upper_95": "2"}) == 1.5
        assert pick_actual_to_expected({}) == 1.0
