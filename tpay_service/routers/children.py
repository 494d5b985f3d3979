from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from ..db import get_session
from ..schemas import CleanupOut
from ..services.cleanup import CHILD_REFERENCES, remove_references
from ..utils import require_service_api_key

router = APIRouter(prefix="/children", tags=["children"])


@router.delete("/{child_id}", response_model=CleanupOut, dependencies=[Depends(require_service_api_key)])
async def delete_child_references(child_id: str, session: AsyncSession = Depends(get_session)):
    """Remove a deleted child's id from users, classes, groups and lessons."""
    updated = await remove_references(session, child_id, CHILD_REFERENCES)
    return CleanupOut(entity_id=child_id, updated=updated)
