"""Buffered CSV report and classification-cache export for one slice.

Both blobs are rewritten whole on every flush. Flush frequency trades write
cost against how many rows a crashed slice has to redo.
"""

import csv
import io
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from taxis.services.storage_service import BlobStore
from taxis.utils.identity import unique_in_order
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

CSV_CONTENT_TYPE = "text/csv"

# v1 layout of the cache export; append columns, never reorder.
LLM_CACHE_EXPORT_HEADERS: tuple[str, ...] = (
    "timestamp",
    "jobId",
    "uploadId",
    "userId",
    "rowIndex",
    "pairId",
    "system_a",
    "code_a",
    "system_b",
    "code_b",
    "concept_a_t",
    "concept_b_t",
    "model",
    "relationship_code",
    "relationship_type",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
)

_NEEDS_QUOTING = (",", '"', "\r", "\n")


def csv_escape(value: Any) -> str:
    """Quote a value when it holds a comma, quote or line break."""
    text = "" if value is None else str(value)
    if any(char in text for char in _NEEDS_QUOTING):
        return '"' + text.replace('"', '""') + '"'
    return text


def row_to_csv_line(row: Mapping[str, Any], headers: Sequence[str]) -> str:
    """Render ``row`` in header order; missing keys become empty cells."""
    return ",".join(csv_escape(row.get(name)) for name in headers)


def ensure_header(existing_text: str, sample_headers: Sequence[str]) -> tuple[list[str], str]:
    """Reuse the header of existing CSV text, or start new text with one.

    Returns:
        ``(headers, text)`` where ``text`` always begins with a header line.
    """
    if existing_text:
        first_line = existing_text.splitlines()[0] if existing_text.strip() else ""
        headers = next(csv.reader(io.StringIO(first_line)), [])
        if headers:
            if not existing_text.endswith("\n"):
                existing_text += "\n"
            return headers, existing_text

    headers = unique_in_order(sample_headers)
    return headers, ",".join(csv_escape(name) for name in headers) + "\n"


class OutputAccumulator:
    """In-memory report text plus pending cache-export rows."""

    def __init__(
        self,
        blob_store: BlobStore,
        output_bucket: str,
        output_key: str,
        cache_bucket: str,
        cache_key: str,
        flush_every_rows: int = 50,
        flush_every_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.blob_store = blob_store
        self.output_bucket = output_bucket
        self.output_key = output_key
        self.cache_bucket = cache_bucket
        self.cache_key = cache_key
        self.flush_every_rows = max(1, flush_every_rows)
        self.flush_every_seconds = flush_every_seconds
        self.clock = clock

        self.text = ""
        self.headers: Optional[List[str]] = None
        self.pending_cache_rows: List[Dict[str, Any]] = []
        self.rows_since_flush = 0
        self.rows_appended = 0
        self.flushes = 0
        self._last_flush = clock()
        self._cache_text: Optional[str] = None

    async def open(self) -> None:
        """Load whatever an earlier slice already wrote."""
        self.text = await self.blob_store.get_text(self.output_bucket, self.output_key) or ""
        self._last_flush = self.clock()

    def append_row(self, row: Mapping[str, Any]) -> None:
        """Append one enriched row, fixing the header on the first one."""
        if self.headers is None:
            self.headers, self.text = ensure_header(self.text, list(row.keys()))
        self.text += row_to_csv_line(row, self.headers) + "\n"
        self.rows_since_flush += 1
        self.rows_appended += 1

    def queue_cache_row(self, row: Mapping[str, Any]) -> None:
        self.pending_cache_rows.append(dict(row))

    @property
    def has_unflushed(self) -> bool:
        return self.rows_since_flush > 0 or bool(self.pending_cache_rows)

    def should_flush(self, deadline_reached: bool = False) -> bool:
        if deadline_reached:
            return True
        if self.rows_since_flush >= self.flush_every_rows:
            return True
        return self.clock() - self._last_flush >= self.flush_every_seconds

    async def flush(self) -> None:
        """Rewrite the report blob and append pending rows to the cache blob.

        The caller persists the job checkpoint after this returns.
        """
        if self.text:
            await self.blob_store.put(
                self.output_bucket, self.output_key, self.text, content_type=CSV_CONTENT_TYPE
            )

        if self.pending_cache_rows:
            if self._cache_text is None:
                self._cache_text = await self.blob_store.get_text(self.cache_bucket, self.cache_key) or ""
            headers, cache_text = ensure_header(self._cache_text, LLM_CACHE_EXPORT_HEADERS)
            cache_text += "".join(row_to_csv_line(row, headers) + "\n" for row in self.pending_cache_rows)
            await self.blob_store.put(
                self.cache_bucket, self.cache_key, cache_text, content_type=CSV_CONTENT_TYPE
            )
            self._cache_text = cache_text
            LOGGER.debug(f"Exported {len(self.pending_cache_rows)} cache rows to {self.cache_key}")
            self.pending_cache_rows = []

        self.rows_since_flush = 0
        self.flushes += 1
        self._last_flush = self.clock()
