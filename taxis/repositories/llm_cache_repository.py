from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxis.database.models import LlmCacheEntry
from taxis.repositories.base_repository import BaseRepository


class LlmCacheRepository(BaseRepository[LlmCacheEntry]):
    """Repository for the classification cache."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, LlmCacheEntry)

    async def get_by_prompt_key(self, prompt_key: str) -> Optional[LlmCacheEntry]:
        """Get a cache entry by its prompt key."""
        try:
            query = select(LlmCacheEntry).where(LlmCacheEntry.prompt_key == prompt_key)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error reading llm cache entry {prompt_key}: {str(e)}", exc_info=True)
            raise

    async def insert_if_absent(
        self,
        prompt_key: str,
        result: str,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        model: Optional[str] = None,
    ) -> bool:
        """Store a cache entry unless one already exists for the key.

        Returns:
            True if this call inserted the row, False if the key was taken.
        """
        stmt = (
            insert(LlmCacheEntry)
            .values(
                prompt_key=prompt_key,
                result=result,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                model=model,
            )
            .on_conflict_do_nothing(index_elements=[LlmCacheEntry.prompt_key])
            .returning(LlmCacheEntry.id)
        )
        try:
            inserted = (await self.session.execute(stmt)).scalar_one_or_none()
            await self.session.commit()
            return inserted is not None
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error writing llm cache entry {prompt_key}: {str(e)}", exc_info=True)
            raise
