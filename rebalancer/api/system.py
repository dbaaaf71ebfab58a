"""System API: health check, scheduler status, scan logs, manual scan."""

from fastapi import APIRouter, Depends, HTTPException

from rebalancer.api.deps import get_ledger, require_api_token
from rebalancer.services.ledger import Ledger

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_api_token)])
def scheduler_status():
    """Current scheduler state plus the last scan summary."""
    from rebalancer.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/scan", dependencies=[Depends(require_api_token)])
async def trigger_scan():
    """Run one scan now, outside the schedule."""
    from rebalancer.engine.scheduler import get_scanner

    scanner = get_scanner()
    if scanner is None:
        raise HTTPException(status_code=503, detail="Scanner not running")
    summary = await scanner.run_once()
    if summary is None:
        raise HTTPException(status_code=409, detail="A scan is already in progress")
    return summary.to_dict()


@router.get("/logs", dependencies=[Depends(require_api_token)])
def scan_logs(
    position_address: str | None = None,
    limit: int = 100,
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.recent_scan_logs(limit=limit, position_address=position_address)
