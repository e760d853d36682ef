"""Decoding of uploaded spreadsheets into ordered row dicts."""

import csv
import io
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Dict, List, Mapping

import openpyxl

from taxis.core.exceptions import RowSourceError
from taxis.utils.identity import to_float_or_none, to_int_strict
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

CSV_EXTENSIONS = {".csv"}
XLSX_EXTENSIONS = {".xlsx", ".xlsm"}

Row = Dict[str, Any]


def parse_upload_rows(content: bytes, filename: str) -> List[Row]:
    """Decode an uploaded file into rows, in source order.

    Args:
        content: Raw file bytes
        filename: Name used to pick the decoder by extension

    Returns:
        One dict per non-blank data row, keyed by the trimmed header names

    Raises:
        RowSourceError: Unsupported extension or undecodable content
    """
    extension = PurePath(filename).suffix.lower()
    if extension in CSV_EXTENSIONS:
        return _parse_csv(content)
    if extension in XLSX_EXTENSIONS:
        return _parse_xlsx(content)
    raise RowSourceError(f"Unsupported upload type: {filename}")


def read_header(content: bytes, filename: str) -> List[str]:
    """Return only the header row of an upload."""
    extension = PurePath(filename).suffix.lower()
    if extension in CSV_EXTENSIONS:
        reader = csv.reader(io.StringIO(_decode(content)))
        first = next(reader, [])
        return [name.strip() for name in first if name and name.strip()]
    if extension in XLSX_EXTENSIONS:
        sheet_rows = _xlsx_rows(content)
        first = next(sheet_rows, ())
        return [str(cell).strip() for cell in first if cell is not None and str(cell).strip()]
    raise RowSourceError(f"Unsupported upload type: {filename}")


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise RowSourceError("Upload is not valid UTF-8 text", original_error=e)


def _parse_csv(content: bytes) -> List[Row]:
    reader = csv.DictReader(io.StringIO(_decode(content)))
    if not reader.fieldnames:
        return []

    rows: List[Row] = []
    try:
        for record in reader:
            row = {
                key.strip(): (value or "").strip()
                for key, value in record.items()
                # extra cells beyond the header land under the None key
                if key is not None and key.strip()
            }
            if any(value != "" for value in row.values()):
                rows.append(row)
    except csv.Error as e:
        raise RowSourceError(f"Malformed CSV at line {reader.line_num}: {e}", original_error=e)
    return rows


def _xlsx_rows(content: bytes):
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise RowSourceError(f"Could not open workbook: {e}", original_error=e)
    sheet = workbook.worksheets[0] if workbook.worksheets else None
    if sheet is None:
        return iter(())
    return sheet.iter_rows(values_only=True)


def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def _parse_xlsx(content: bytes) -> List[Row]:
    sheet_rows = _xlsx_rows(content)
    header_cells = next(sheet_rows, None)
    if not header_cells:
        return []

    header = [
        (index, str(cell).strip())
        for index, cell in enumerate(header_cells)
        if cell is not None and str(cell).strip()
    ]

    rows: List[Row] = []
    for cells in sheet_rows:
        row = {
            name: _cell_value(cells[index] if index < len(cells) else None)
            for index, name in header
        }
        if any(value != "" for value in row.values()):
            rows.append(row)

    LOGGER.debug(f"Decoded workbook with {len(rows)} data rows")
    return rows


def pick_co_occurrence(row: Mapping[str, Any]) -> int:
    """Co-occurrence count shown to the classifier.

    First strict integer among ``cooc_event_count``, ``events_ab`` and
    ``cooc_obs``; 0 when none is present.
    """
    for column in ("cooc_event_count", "events_ab", "cooc_obs"):
        number = to_int_strict(row.get(column))
        if number is not None:
            return number
    return 0


def pick_actual_to_expected(row: Mapping[str, Any]) -> float:
    """Actual/expected co-occurrence ratio.

    A direct ratio (``events_ab_ae``, then ``lift``) wins; otherwise the
    midpoint of the lift confidence bounds; 1.0 when neither is present.
    """
    for column in ("events_ab_ae", "lift"):
        number = to_float_or_none(row.get(column))
        if number is not None:
            return number

    lower = to_float_or_none(row.get("lift_lower_95"))
    upper = to_float_or_none(row.get("lift_upper_95"))
    if lower is not None and upper is not None:
        return (lower + upper) / 2
    return 1.0
