"""Positions API."""

from fastapi import APIRouter, Depends, HTTPException

from rebalancer.api.deps import get_ledger, require_api_token
from rebalancer.services.ledger import Ledger

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(require_api_token)])


@router.get("")
def list_positions(
    user_id: int | None = None,
    active_only: bool = False,
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.list_positions(user_id=user_id, active_only=active_only)


@router.get("/stats/{user_id}")
def position_stats(user_id: int, ledger: Ledger = Depends(get_ledger)):
    """Aggregate fees, PnL and reposition count for one user."""
    if ledger.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    return ledger.position_stats(user_id)
