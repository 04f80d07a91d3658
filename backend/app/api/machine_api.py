############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# machine_api.py: Machine lifecycle endpoints
#
############################################################

"""Machine lifecycle endpoints for the signed-in user."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from backend.app.api.auth import get_current_user_id, get_services
from backend.app.core.machines import MachineProviderError
from backend.app.logging_config import get_logger
from backend.app.services.container import AppServices

logger = get_logger(__name__)

router = APIRouter()


def _machine_error(operation: str, user_id: str, error: Exception) -> HTTPException:
    logger.error("machine_operation_failed", operation=operation, user_id=user_id, error=str(error))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Failed to {operation} machine",
    )


@router.get("/status")
async def machine_status(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Current machine status, reconciled with the provider."""
    info = await services.controller.status(user_id)
    return info.to_dict()


@router.post("/start")
async def start_machine(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        record = await services.controller.start(user_id)
    except MachineProviderError as e:
        raise _machine_error("start", user_id, e)
    return {"status": record.status.value, "machineId": record.remote_machine_id}


@router.post("/stop")
async def stop_machine(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        record = await services.controller.stop(user_id)
    except MachineProviderError as e:
        raise _machine_error("stop", user_id, e)
    return {"status": record.status.value, "machineId": record.remote_machine_id}


@router.post("/upgrade")
async def upgrade_machine(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Destroy the machine so the next start boots the latest image."""
    try:
        await services.controller.upgrade(user_id)
    except MachineProviderError as e:
        raise _machine_error("upgrade", user_id, e)
    return {
        "upgraded": True,
        "message": "Machine will start with latest version on next use",
    }
