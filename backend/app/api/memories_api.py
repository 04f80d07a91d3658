############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# memories_api.py: Per-user memory management endpoints
#
############################################################

"""Memory endpoints. Memories are handed to the user's machine on sync."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.auth import get_current_user_id, get_db
from backend.app.db import crud

router = APIRouter()


class MemoryRequest(BaseModel):
    value: str = Field(..., min_length=1, max_length=10000)


def _memory_dict(memory) -> Dict[str, Any]:
    return {
        "key": memory.key,
        "value": memory.value,
        "updatedAt": memory.updated_at.isoformat() if memory.updated_at else None,
    }


@router.get("")
async def list_memories(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    memories = await crud.get_memories(db, user_id)
    return {"memories": [_memory_dict(m) for m in memories]}


@router.put("/{key}")
async def put_memory(
    body: MemoryRequest,
    key: str = Path(..., min_length=1, max_length=255),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create or overwrite a memory."""
    memory = await crud.upsert_memory(db, user_id, key, body.value)
    await db.commit()
    await db.refresh(memory)
    return _memory_dict(memory)


@router.delete("/{key}")
async def delete_memory(
    key: str = Path(..., min_length=1, max_length=255),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    deleted = await crud.delete_memory(db, user_id, key)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Memory not found")
    await db.commit()
    return {"deleted": True}
