############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# credits_api.py: Credit balance, history and grant endpoints
#
############################################################

"""Credit endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from backend.app.api.auth import get_current_user_id, get_services, require_credit_grant
from backend.app.db.models import TransactionType
from backend.app.logging_config import get_logger
from backend.app.services.container import AppServices

logger = get_logger(__name__)

router = APIRouter()


class AddCreditsRequest(BaseModel):
    """Credit grant from a billing webhook or an admin."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, max_length=64, alias="userId")
    amount: int = Field(..., gt=0)
    type: TransactionType = TransactionType.PURCHASE
    description: Optional[str] = Field(None, max_length=1000)


@router.get("")
async def get_credits(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Balance plus the last 30 days of usage."""
    balance = await services.ledger.get_balance(user_id)
    usage = await services.ledger.usage_stats(user_id, days=30)
    return {
        "balance": balance.balance,
        "totalPurchased": balance.total_purchased,
        "totalUsed": balance.total_used,
        "usage": {
            "totalInputTokens": usage["total_input_tokens"],
            "totalOutputTokens": usage["total_output_tokens"],
            "totalCreditsUsed": usage["total_credits_used"],
            "messageCount": usage["message_count"],
        },
    }


@router.get("/history")
async def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    transactions = await services.ledger.history(user_id, limit=limit)
    return {
        "transactions": [
            {
                "id": t.id,
                "amount": t.amount,
                "type": t.type.value,
                "description": t.description,
                "createdAt": t.created_at.isoformat() if t.created_at else None,
            }
            for t in transactions
        ]
    }


@router.post("/add")
async def add_credits(
    body: AddCreditsRequest,
    granted_by: str = Depends(require_credit_grant),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Add credits to any user's account."""
    if body.type == TransactionType.USAGE:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Usage transactions cannot be added",
        )
    result = await services.ledger.credit(body.user_id, body.amount, body.type, body.description)
    logger.info(
        "credits_granted",
        user_id=body.user_id,
        amount=body.amount,
        type=body.type.value,
        granted_by=granted_by,
    )
    return {"newBalance": result.new_balance}
