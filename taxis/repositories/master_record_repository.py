from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxis.database.models import MasterRecord
from taxis.repositories.base_repository import BaseRepository


class MasterRecordRepository(BaseRepository[MasterRecord]):
    """Repository for pair aggregate records, keyed by pair id."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, MasterRecord, key="pair_id")

    async def get_by_pair_id(self, pair_id: str) -> Optional[MasterRecord]:
        return await self.get_by_id(pair_id)

    async def create_if_absent(self, **data: Any) -> bool:
        """Insert a new aggregate record unless the pair id already exists.

        Returns:
            True if the record was created, False if another writer got there first.
        """
        stmt = (
            insert(MasterRecord)
            .values(**data)
            .on_conflict_do_nothing(index_elements=[MasterRecord.pair_id])
            .returning(MasterRecord.pair_id)
        )
        try:
            inserted = (await self.session.execute(stmt)).scalar_one_or_none()
            await self.session.commit()
            return inserted is not None
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error creating MasterRecord {data.get('pair_id')}: {str(e)}",
                exc_info=True
            )
            raise

    async def update_record(self, pair_id: str, **data: Any) -> Optional[MasterRecord]:
        return await self.update(pair_id, **data)
