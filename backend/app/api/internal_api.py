############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# internal_api.py: Endpoints called by user machines
#
############################################################

"""Internal endpoints for the agent machines, guarded by the machine secret."""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.auth import get_db, require_machine_secret
from backend.app.db import crud
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_machine_secret)])


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, max_length=64, alias="userId")


@router.post("/sync")
async def sync_machine_state(
    body: SyncRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """State a booting machine pulls for its user."""
    memories = await crud.get_memories(db, body.user_id)
    logger.info("machine_state_synced", user_id=body.user_id, memories=len(memories))
    return {"memories": [{"key": m.key, "value": m.value} for m in memories]}
