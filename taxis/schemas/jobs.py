from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobStatusResponse(BaseModel):
    """Polling view of a job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    upload_id: UUID
    user_id: Optional[str] = None
    status: str
    error: Optional[str] = None
    rows_total: Optional[int] = None
    rows_processed: int = 0
    cursor: int = 0
    output_blob_key: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    last_heartbeat: Optional[datetime] = None
    restarted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobSummaryResponse(BaseModel):
    """One row of a user's job list."""

    id: UUID
    file_name: str
    status: str
    rows_total: Optional[int] = None
    rows_processed: int = 0
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output_url: Optional[str] = Field(None, description="Report download path when the job has an output key")


class SliceSummaryResponse(BaseModel):
    job_id: str
    status: str
    rows_total: Optional[int] = None
    rows_processed: int = 0
    processed_this_slice: int = 0
    continued: bool = False
    classifications: int = 0
    cache_hits: int = 0


class UploadAcceptedResponse(BaseModel):
    job_id: str
    upload_id: str
    input_blob_key: str
    output_blob_key: str


class RequiredFieldsResponse(BaseModel):
    required_fields: List[str] = Field(..., description="Columns every upload must contain")


class WatchdogRunResponse(BaseModel):
    reclaimed: int
    triggered: int
    trigger_failures: int
    job_ids: List[str] = Field(default_factory=list)
