import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxis.database.models import Upload
from taxis.repositories.base_repository import BaseRepository


class UploadRepository(BaseRepository[Upload]):
    """Repository for uploaded files. Uploads are never updated."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Upload)

    async def create_upload(
        self,
        blob_key: str,
        original_name: str,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
        user_id: Optional[str] = None,
        store: Optional[str] = None,
    ) -> Upload:
        """Register an uploaded file."""
        return await self.create(
            id=uuid.uuid4(),
            blob_key=blob_key,
            original_name=original_name,
            content_type=content_type,
            size=size,
            user_id=user_id,
            store=store,
        )
