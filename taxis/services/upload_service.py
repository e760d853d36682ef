"""Registration of uploaded spreadsheets as queued jobs."""

import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Callable, List, Optional

from taxis.core.config import Settings
from taxis.core.exceptions import RowSourceError, ValidationError
from taxis.repositories.job_repository import JobRepository
from taxis.repositories.upload_repository import UploadRepository
from taxis.services.continuation import ContinuationSink
from taxis.services.job_engine import output_key_for
from taxis.services.row_source import CSV_EXTENSIONS, XLSX_EXTENSIONS, read_header
from taxis.services.storage_service import BlobStore
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = (
    "concept_a",
    "concept_b",
    "cooc_obs",
    "cooc_event_count",
    "a_before_b",
    "same_day",
    "b_before_a",
    "nA",
    "nB",
    "total_person",
)


@dataclass
class RegisteredUpload:
    job_id: str
    upload_id: str
    input_blob_key: str
    output_blob_key: str
    continued: bool


def upload_extension(filename: str, content_type: Optional[str] = None) -> str:
    """Extension from the filename, else guessed from the content type."""
    suffix = PurePath(filename or "").suffix.lower()
    if suffix:
        return suffix
    if content_type and any(word in content_type.lower() for word in ("excel", "sheet")):
        return ".xlsx"
    return ".csv"


def missing_required_fields(headers: List[str]) -> List[str]:
    """Required columns absent from ``headers``, compared case-insensitively."""
    present = {header.strip().lower() for header in headers}
    return [name for name in REQUIRED_FIELDS if name.lower() not in present]


class UploadService:
    """Validates an upload, stores it and queues a job for it."""

    def __init__(
        self,
        uploads: UploadRepository,
        jobs: JobRepository,
        blob_store: BlobStore,
        continuation: ContinuationSink,
        settings: Settings,
        stamp: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.uploads = uploads
        self.jobs = jobs
        self.blob_store = blob_store
        self.continuation = continuation
        self.settings = settings
        self.stamp = stamp

    async def register_upload(
        self,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RegisteredUpload:
        """Validate and store an upload, then create its queued job.

        Raises:
            ValidationError: Empty file, unsupported type, no header row or
                missing required columns (listed in ``details``)
        """
        if not content:
            raise ValidationError("No file provided", details={"required_fields": list(REQUIRED_FIELDS)})

        name = PurePath(filename or "upload.csv").name
        extension = upload_extension(name, content_type)
        if extension not in CSV_EXTENSIONS | XLSX_EXTENSIONS:
            raise ValidationError(f"Unsupported file type: {extension}")

        base = PurePath(name).stem or "file"
        try:
            headers = read_header(content, f"{base}{extension}")
        except RowSourceError as e:
            raise ValidationError(f"Could not read the uploaded file: {e}", original_error=e)

        if not headers:
            raise ValidationError(
                "Could not locate a header row in the file.",
                details={"required_fields": list(REQUIRED_FIELDS)},
            )

        missing = missing_required_fields(headers)
        if missing:
            raise ValidationError(
                f"Missing required columns: {', '.join(missing)}",
                details={
                    "missing": missing,
                    "required_fields": list(REQUIRED_FIELDS),
                    "headers_found": headers,
                    "original_name": name,
                },
            )

        owner = user_id or "anonymous"
        blob_key = f"{owner}/{self.stamp()}_{base}{extension}"
        await self.blob_store.put(
            self.settings.storage.uploads_bucket,
            blob_key,
            content,
            content_type=content_type or "application/octet-stream",
        )

        upload = await self.uploads.create_upload(
            blob_key=blob_key,
            original_name=name,
            content_type=content_type,
            size=len(content),
            user_id=user_id,
            store=self.settings.storage.backend,
        )
        output_key = output_key_for(upload.id)
        job = await self.jobs.create_job(upload_id=upload.id, user_id=user_id, output_blob_key=output_key)

        LOGGER.info(
            f"Registered upload {upload.id} as job {job.id}",
            extra={"blob_key": blob_key, "size": len(content)}
        )

        continued = await self.continuation.request_continuation(job.id)
        return RegisteredUpload(
            job_id=str(job.id),
            upload_id=str(upload.id),
            input_blob_key=blob_key,
            output_blob_key=output_key,
            continued=continued,
        )
