"""
services/policy/router.py
Public read of the session rules that apply to mentors and mentees.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.policy.store import PolicyStore
from shared.models.models import PartyRole
from shared.schemas.schemas import ApiResponse

router = APIRouter(prefix="/session-policies", tags=["Policies"])


@router.get("", response_model=ApiResponse[dict])
async def get_session_policies(
    role: Optional[Literal["mentor", "mentee"]] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancellation and reschedule rules for one side of a session.
    Without `role` both views are returned.
    """
    store = PolicyStore(db)
    if role:
        data = await store.for_role(PartyRole(role))
    else:
        data = {
            "mentee": await store.for_role(PartyRole.MENTEE),
            "mentor": await store.for_role(PartyRole.MENTOR),
        }
    return ApiResponse(data=data)
