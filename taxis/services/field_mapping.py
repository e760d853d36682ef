"""Upload-column to MasterRecord-field mapping and its merge semantics.

The mapping table is maintained outside the service (a spreadsheet in the
config bucket). Each entry names an upload column, the MasterRecord field it
feeds and a category that decides how the value merges:

* ``count``: integer, added to the existing value on re-merge
* ``stat``: decimal, written on first sighting only
* anything else: copied once, backfilled only while the field is empty
"""

from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Mapping, Optional

from taxis.core.exceptions import RowSourceError, StorageError
from taxis.database.models import MASTER_RECORD_FIELDS
from taxis.services.row_source import parse_upload_rows
from taxis.services.storage_service import BlobStore
from taxis.utils.identity import (
    FieldCategory,
    STATIC_FIELD_CATEGORIES,
    coerce_by_category,
    resolve_category,
)
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

FIELD_MAP_CANDIDATE_KEYS = (
    "MasterRecord Fields.xlsx",
    "MasterRecord Fields.csv",
    "masterrecord_fields.xlsx",
    "masterrecord_fields.csv",
    "MasterRecordFields.xlsx",
    "MasterRecordFields.csv",
)

# Conventional upload column names for the static count/stat fields, used
# when no mapping file is available.
LEGACY_UPLOAD_COLUMNS: Mapping[str, str] = {
    "nA": "n_a",
    "nB": "n_b",
    "total_person": "total_persons",
}

_LEGACY_EXCLUDED = {"source_count", "relationship_code"}


@dataclass(frozen=True)
class FieldMappingEntry:
    """One row of the mapping table."""

    upload_column: str
    target_field: str
    category: FieldCategory = FieldCategory.OTHER


@dataclass
class FieldMapping:
    """Ordered mapping entries plus the interpreter over them."""

    entries: List[FieldMappingEntry] = field(default_factory=list)
    source: Optional[str] = None

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def legacy(cls) -> "FieldMapping":
        """Mapping used when no usable mapping file exists.

        Every static count/stat field is fed from its conventional upload
        column (same name unless listed in ``LEGACY_UPLOAD_COLUMNS``).
        """
        column_for = {target: column for column, target in LEGACY_UPLOAD_COLUMNS.items()}
        entries = [
            FieldMappingEntry(column_for.get(name, name), name, category)
            for name, category in STATIC_FIELD_CATEGORIES.items()
            if name not in _LEGACY_EXCLUDED
        ]
        return cls(entries=entries, source="legacy")

    def category_for(self, target_field: str) -> Optional[FieldCategory]:
        """Category declared in the mapping for a target, if any."""
        for entry in self.entries:
            if entry.target_field == target_field:
                return entry.category
        return None

    def effective_category(self, entry: FieldMappingEntry) -> FieldCategory:
        return resolve_category(entry.target_field, entry.category)

    def categories(self) -> Dict[str, FieldCategory]:
        return {entry.target_field: entry.category for entry in self.entries}

    def build_create_fields(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Fields for a first sighting. Columns absent from the row are skipped."""
        data: Dict[str, Any] = {}
        for entry in self.entries:
            if entry.upload_column not in row:
                continue
            value = row[entry.upload_column]
            category = self.effective_category(entry)
            if category is FieldCategory.OTHER:
                data[entry.target_field] = value if value != "" else None
            else:
                data[entry.target_field] = coerce_by_category(value, category)
        return data

    def build_update_fields(self, existing: Any, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Fields to write when re-merging a row into an existing record.

        Counts add, statistics are left alone, everything else is only
        filled in while the existing value is empty. ``source_count`` is
        handled by the caller.
        """
        data: Dict[str, Any] = {}
        for entry in self.entries:
            if entry.upload_column not in row:
                continue
            value = row[entry.upload_column]
            target = entry.target_field
            category = self.effective_category(entry)

            if category is FieldCategory.COUNT:
                current = data.get(target, getattr(existing, target, None))
                data[target] = (
                    coerce_by_category(current, FieldCategory.COUNT)
                    + coerce_by_category(value, FieldCategory.COUNT)
                )
            elif category is FieldCategory.STAT:
                continue
            else:
                current = data.get(target, getattr(existing, target, None))
                if _is_empty(current) and not _is_empty(value):
                    data[target] = value
        return data


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _find_column(header: Iterable[str], needles: Iterable[str], exclude: Optional[str] = None) -> Optional[str]:
    for name in header:
        if name == exclude:
            continue
        lowered = name.strip().lower()
        if any(needle in lowered for needle in needles):
            return name
    return None


def mapping_from_rows(rows: List[Mapping[str, Any]], source: Optional[str] = None) -> Optional[FieldMapping]:
    """Interpret decoded mapping-table rows.

    Returns None when the expected header columns are missing or no row
    yields a usable entry.
    """
    if not rows:
        return None

    header = list(rows[0].keys())
    upload_col = _find_column(header, ("upload", "spreadsheet"))
    target_col = _find_column(header, ("field", "master", "target"), exclude=upload_col)
    category_col = _find_column(header, ("category",), exclude=upload_col)
    if not upload_col or not target_col:
        LOGGER.warning(
            "Field map is missing expected headers",
            extra={"source": source, "header": header}
        )
        return None

    entries: List[FieldMappingEntry] = []
    for row in rows:
        upload = str(row.get(upload_col) or "").strip()
        target = str(row.get(target_col) or "").strip()
        if not upload or not target:
            continue
        if target not in MASTER_RECORD_FIELDS:
            LOGGER.warning(
                f"Dropping field map entry for unknown MasterRecord field '{target}'",
                extra={"source": source, "upload_column": upload}
            )
            continue
        category = FieldCategory.parse(row.get(category_col) if category_col else "")
        entries.append(FieldMappingEntry(upload, target, category))

    if not entries:
        return None
    return FieldMapping(entries=entries, source=source)


class FieldMappingLoader:
    """Loads the mapping table from the config bucket once per slice."""

    def __init__(
        self,
        blob_store: BlobStore,
        bucket: str,
        candidate_keys: Iterable[str] = FIELD_MAP_CANDIDATE_KEYS,
    ):
        self.blob_store = blob_store
        self.bucket = bucket
        self.candidate_keys = tuple(candidate_keys)

    async def load(self) -> FieldMapping:
        """Return the first usable mapping, or the legacy mapping."""
        for key in self.candidate_keys:
            try:
                content = await self.blob_store.get_bytes(self.bucket, key)
                if not content:
                    continue
                rows = parse_upload_rows(content, PurePath(key).name)
            except (StorageError, RowSourceError) as e:
                LOGGER.warning(f"Failed to load field map {key}: {e}")
                continue

            mapping = mapping_from_rows(rows, source=key)
            if mapping is not None:
                LOGGER.info(f"Loaded {len(mapping)} field mappings from {key}")
                return mapping

        LOGGER.warning("No usable field map found in config store; falling back to legacy mapping")
        return FieldMapping.legacy()
