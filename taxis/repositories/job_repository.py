import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxis.database.models import Job, JobStatus, Upload
from taxis.repositories.base_repository import BaseRepository


class JobRepository(BaseRepository[Job]):
    """Repository for processing jobs."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Job)

    async def create_job(
        self,
        upload_id: uuid.UUID,
        user_id: Optional[str] = None,
        output_blob_key: Optional[str] = None,
        job_id: Optional[uuid.UUID] = None,
    ) -> Job:
        """Create a job in the ``queued`` state."""
        return await self.create(
            id=job_id or uuid.uuid4(),
            upload_id=upload_id,
            user_id=user_id,
            status=JobStatus.QUEUED.value,
            rows_processed=0,
            cursor=0,
            output_blob_key=output_blob_key,
        )

    async def find_reclaimable(self, stale_before: datetime, limit: int) -> List[Job]:
        """Jobs the watchdog should restart, oldest first.

        Selects queued jobs, and running jobs whose heartbeat is missing or
        older than ``stale_before``.
        """
        try:
            query = (
                select(Job)
                .where(
                    or_(
                        Job.status == JobStatus.QUEUED.value,
                        (Job.status == JobStatus.RUNNING.value)
                        & (or_(Job.last_heartbeat.is_(None), Job.last_heartbeat < stale_before)),
                    )
                )
                .order_by(Job.created_at.asc())
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error selecting reclaimable jobs: {str(e)}", exc_info=True)
            raise

    async def list_for_user(self, user_id: Optional[str], limit: int = 100) -> List[Tuple[Job, str]]:
        """List a user's jobs, newest first, with the upload's file name.

        A job belongs to the user when either the job or its upload carries
        the id. ``None`` lists jobs that nobody owns.
        """
        if user_id is None:
            owner = Job.user_id.is_(None) & Upload.user_id.is_(None)
        else:
            owner = or_(Job.user_id == user_id, Upload.user_id == user_id)

        try:
            query = (
                select(Job, Upload.original_name)
                .join(Upload, Job.upload_id == Upload.id)
                .where(owner)
                .order_by(Job.created_at.desc())
                .limit(limit)
            )
            result = await self.session.execute(query)
            return [(job, original_name) for job, original_name in result.all()]
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing jobs for user {user_id}: {str(e)}", exc_info=True)
            raise
