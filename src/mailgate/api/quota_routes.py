# mailgate: Email Quota - REST endpoint for dashboards
#
#   GET /api/email-quota  : today's usage, cap, lock status, ledger history

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..engine import get_engine
from ..errors import StoreUnavailable
from .security import verify_admin_token

router = APIRouter(prefix="/api/email-quota", tags=["email-quota"])


@router.get("", dependencies=[Depends(verify_admin_token)])
async def get_email_quota(history_days: int = Query(30, ge=1, le=365)):
    """Return today's counter, cap, remaining budget, lock and recent ledger rows."""
    engine = get_engine()
    try:
        current = await engine.quota.status()
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        )
    return {
        **current,
        "alert_thresholds": list(engine.settings.alert_thresholds),
        "history": [row.to_dict() for row in engine.ledger.recent(history_days)],
    }
