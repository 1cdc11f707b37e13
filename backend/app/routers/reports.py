"""API routes for managerial fleet reports."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.auth import OperatorContext, require_roles
from app.core.logging import logger
from app.models.ledger import FleetReport, ReportWindow
from app.routers.dependencies import get_services
from app.services.wiring import LedgerServices

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/fleet", response_model=FleetReport)
def get_fleet_report(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    days: int = Query(default=30, ge=1, le=366),
    services: LedgerServices = Depends(get_services),
    context: OperatorContext = Depends(require_roles("manager", "admin")),
):
    """Fleet summary for cases that started in ``[start, end]`` (default: the last ``days`` days)."""
    window_end = end or datetime.now(timezone.utc)
    window_start = start or (window_end - timedelta(days=days))
    try:
        window = ReportWindow(start=window_start, end=window_end)
        return services.reporter.build(window)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception as exc:
        logger.error("Failed to build fleet report", error=str(exc), role=context.role)
        raise HTTPException(status_code=400, detail=str(exc))
