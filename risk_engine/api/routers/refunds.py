from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from risk_engine.api.dependencies import get_case_manager, get_trigger_monitor
from risk_engine.api.deps import require_admin
from risk_engine.domain.schemas import (
    AutoRefundCase,
    CaseDecisionRequest,
    CaseRejectRequest,
    CaseStatus,
    CurrentUser,
    MonitorReport,
)
from risk_engine.services.case_manager import CaseManager
from risk_engine.services.trigger_monitor import TriggerMonitor

router = APIRouter(prefix="/v1/refunds", tags=["Refunds"])


# ── Scheduler ────────────────────────────────────────────────────────

@router.post("/monitor/run", response_model=MonitorReport)
async def run_monitor_pass(
    monitor: TriggerMonitor = Depends(get_trigger_monitor),
    _admin:  CurrentUser = Depends(require_admin),
) -> MonitorReport:
    """One monitoring pass. Safe to call from overlapping scheduler ticks."""
    return await monitor.run_pass()


# ── Cases ────────────────────────────────────────────────────────────

@router.get("/cases", response_model=list[AutoRefundCase])
async def list_cases(
    status:  Optional[CaseStatus] = None,
    limit:   int = Query(50, ge=1, le=500),
    manager: CaseManager = Depends(get_case_manager),
    _admin:  CurrentUser = Depends(require_admin),
) -> list[AutoRefundCase]:
    return await manager.list_cases(status=status, limit=limit)


@router.get("/cases/{case_id}", response_model=AutoRefundCase)
async def get_case(
    case_id: str,
    manager: CaseManager = Depends(get_case_manager),
    _admin:  CurrentUser = Depends(require_admin),
) -> AutoRefundCase:
    return await manager.get_case(case_id)


# ── Manual review ────────────────────────────────────────────────────

@router.post("/cases/{case_id}/approve", response_model=AutoRefundCase)
async def approve_case(
    case_id: str,
    body:    Optional[CaseDecisionRequest] = Body(None),
    manager: CaseManager = Depends(get_case_manager),
    admin:   CurrentUser = Depends(require_admin),
) -> AutoRefundCase:
    return await manager.approve_case(case_id, admin.user_id, body.notes if body else None)


@router.post("/cases/{case_id}/reject", response_model=AutoRefundCase)
async def reject_case(
    case_id: str,
    body:    CaseRejectRequest,
    manager: CaseManager = Depends(get_case_manager),
    admin:   CurrentUser = Depends(require_admin),
) -> AutoRefundCase:
    return await manager.reject_case(case_id, admin.user_id, body.reason)


@router.post("/cases/{case_id}/retry", response_model=AutoRefundCase)
async def retry_case(
    case_id: str,
    manager: CaseManager = Depends(get_case_manager),
    admin:   CurrentUser = Depends(require_admin),
) -> AutoRefundCase:
    return await manager.retry_case(case_id, admin.user_id)
