"""Usage summary for the signed-in user."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from ..errors import Unauthenticated
from ..security.auth import AuthenticatedUser, get_current_user
from .chat import get_usage_recorder

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/usage")
async def get_monthly_usage(
    request: Request,
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    """Return the caller's token usage for the current calendar month.

    Anonymous callers (including every caller when auth is disabled) get 401:
    usage is only recorded for authenticated users.
    """
    if user is None:
        raise Unauthenticated()

    totals = await get_usage_recorder(request).monthly_totals(user.id)
    return totals.to_dict()
