from datetime import datetime, timezone
from typing import Optional

import logging
from fastapi import APIRouter, HTTPException, Query

from kpi_compliance.api.v1 import audits, automation, emails, employees, groups, kpi, notifications, training
from kpi_compliance.core.config import Settings
from kpi_compliance.core.log_store import get_recent_logs, log_summary

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    """Basic health endpoint for uptime checks and frontend handshake."""
    return {
        "status": "ok",
        "service": Settings.PROJECT_NAME,
        "version": Settings.APP_VERSION,
        "automation_enabled": Settings.AUTOMATION_ENABLED,
        "time": datetime.now(timezone.utc).isoformat(),
    }


# -------------------- Logs --------------------

@router.get("/logs")
def get_logs(
    limit: int = 100,
    level: Optional[str] = None,
    since: Optional[str] = None,
    logger_name: Optional[str] = Query(None, alias="logger"),
    min_level: Optional[str] = None,
    kpi_score_id: Optional[str] = None,
    employee_id: Optional[str] = None,
):
    # Clamp limit for safety
    lim = 1 if limit <= 0 else min(500, limit)
    try:
        items = get_recent_logs(
            limit=lim,
            level=level,
            since=since,
            logger_prefix=logger_name,
            min_level=min_level,
            kpi_score_id=kpi_score_id,
            employee_id=employee_id,
        )
        logger.info(
            "API logs fetch ok: limit=%s level=%s since=%s returned=%s",
            lim, level, since, len(items)
        )
        return {"items": items, "count": len(items)}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception("API logs fetch failed")
        raise HTTPException(status_code=500, detail="Failed to fetch logs") from e


@router.get("/logs/stats")
def get_logs_stats():
    try:
        return log_summary()
    except Exception as e:
        logger.exception("API logs stats failed")
        raise HTTPException(status_code=500, detail="Failed to summarize logs") from e


router.include_router(kpi.router)
router.include_router(audits.router)
router.include_router(training.router)
router.include_router(emails.router)
router.include_router(notifications.router)
router.include_router(groups.router)
router.include_router(employees.router)
router.include_router(automation.router)
