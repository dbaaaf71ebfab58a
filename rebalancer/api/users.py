"""Users API: automation toggle."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from rebalancer.api.deps import get_ledger, require_api_token
from rebalancer.engine.errors import AccessControlError
from rebalancer.services.ledger import Ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"], dependencies=[Depends(require_api_token)])


class AutomationUpdate(BaseModel):
    enabled: bool


@router.put("/{user_id}/automation")
async def set_automation(user_id: int, body: AutomationUpdate, ledger: Ledger = Depends(get_ledger)):
    """Turn auto-reposition on or off for a user, locally and on the access-control service."""
    from rebalancer.engine.scheduler import get_scanner

    user = ledger.set_monitoring(user_id, body.enabled)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    remote_synced = False
    scanner = get_scanner()
    if scanner is not None:
        executor = scanner.executor
        user_key = str(user.telegram_id)
        try:
            await executor.access.update_automation_settings(
                user_key, {"autoRepositionEnabled": body.enabled}
            )
            remote_synced = True
        except AccessControlError as e:
            logger.warning(f"User {user_id}: automation setting not pushed to access control: {e}")
        executor.gate.invalidate_user(user_key)

    return {"user_id": user_id, "is_monitoring": user.is_monitoring, "remote_synced": remote_synced}
