from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxis.database.models import Concept
from taxis.repositories.base_repository import BaseRepository


class ConceptRepository(BaseRepository[Concept]):
    """Read-only access to the reference vocabulary."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Concept, key="concept_id")

    async def get_by_concept_id(self, concept_id: int) -> Optional[Concept]:
        return await self.get_by_id(concept_id)
