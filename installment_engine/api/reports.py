"""
Dashboard and report endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import InstallmentSystem, get_system
from ..reporting import DateRange, jsonable


router = APIRouter()


@router.get("/dashboard")
def get_dashboard(
    as_of: Optional[date] = None,
    system: InstallmentSystem = Depends(get_system)
):
    """Dashboard KPIs, trends and short lists"""
    snapshot = system.reporting_engine.dashboard_snapshot(as_of or system.clock())
    return jsonable(snapshot)


@router.get("/{kind}")
def get_report(
    kind: str,
    from_date: Optional[date] = Query(None, alias="from"),
    to_date: Optional[date] = Query(None, alias="to"),
    as_of: Optional[date] = None,
    system: InstallmentSystem = Depends(get_system)
):
    """Run a named report over an optional date range"""
    result = system.reporting_engine.get_report(
        kind, as_of or system.clock(), DateRange(from_date, to_date)
    )
    return result.to_dict()
