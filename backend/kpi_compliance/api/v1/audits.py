from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_dispatcher, get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import AuditCancel, AuditComplete, AuditCreate, AuditFollowUp, AuditUpdate
from kpi_compliance.audits import events, scheduler
from kpi_compliance.audits.scheduler import AuditSchedule
from kpi_compliance.core.store import Store, as_utc, paginate, serialize, utcnow
from kpi_compliance.notifications.dispatcher import EmailDispatcher

router = APIRouter(prefix="/audits", tags=["audits"])


def audit_out(audit: AuditSchedule, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    data = serialize(audit)
    data["is_overdue"] = audit.is_overdue(now)
    data["days_until_scheduled"] = audit.days_until_scheduled(now)
    return data


@router.post("", status_code=201)
def audit_create(
    req: AuditCreate,
    store: Store = Depends(get_store_dep),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
):
    try:
        result = events.schedule_manual_audit(
            store,
            dispatcher,
            employee_id=req.employee_id,
            audit_type=req.audit_type,
            scheduled_date=as_utc(req.scheduled_date),
            priority=req.priority,
            scope=req.scope,
            method=req.method,
            assigned_auditor=req.assigned_auditor,
        )
        return {"audit": audit_out(result["audit"]), "email": result["email"]}
    except Exception as e:
        raise http_error(e, "Schedule audit") from e


@router.get("/scheduled")
def audit_scheduled(
    status: Optional[str] = None,
    audit_type: Optional[str] = None,
    priority: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 10,
    store: Store = Depends(get_store_dep),
):
    try:
        items = scheduler.list_audits(
            store,
            status=status,
            audit_type=audit_type,
            priority=priority,
            date_from=as_utc(date_from),
            date_to=as_utc(date_to),
        )
        page_items, pagination = paginate(items, page, limit)
        return {"items": [audit_out(a) for a in page_items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "List audits") from e


@router.get("/overdue")
def audit_overdue(store: Store = Depends(get_store_dep)):
    try:
        items = scheduler.overdue_audits(store)
        return {"items": [audit_out(a) for a in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Overdue audits") from e


@router.get("/upcoming")
def audit_upcoming(days: int = 7, store: Store = Depends(get_store_dep)):
    try:
        items = scheduler.upcoming_audits(store, days=days)
        return {"items": [audit_out(a) for a in items], "count": len(items), "days": days}
    except Exception as e:
        raise http_error(e, "Upcoming audits") from e


@router.get("/stats")
def audit_stats(store: Store = Depends(get_store_dep)):
    try:
        return scheduler.audit_stats(store)
    except Exception as e:
        raise http_error(e, "Audit stats") from e


@router.get("/employee/{employee_id}")
def audit_for_employee(employee_id: str, page: int = 1, limit: int = 10, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        items, pagination = paginate(scheduler.audits_for(store, employee_id), page, limit)
        return {"items": [audit_out(a) for a in items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "Employee audits") from e


@router.get("/{audit_id}")
def audit_get(audit_id: str, store: Store = Depends(get_store_dep)):
    try:
        return audit_out(store.audits.get(audit_id))
    except Exception as e:
        raise http_error(e, "Get audit") from e


@router.put("/{audit_id}")
def audit_update(audit_id: str, req: AuditUpdate, store: Store = Depends(get_store_dep)):
    try:
        changes = req.model_dump(exclude_unset=True)
        if changes.get("scheduled_date") is not None:
            changes["scheduled_date"] = as_utc(changes["scheduled_date"])
        return audit_out(scheduler.update_audit(store, audit_id, changes))
    except Exception as e:
        raise http_error(e, "Update audit") from e


@router.delete("/{audit_id}")
def audit_cancel(audit_id: str, req: Optional[AuditCancel] = None, store: Store = Depends(get_store_dep)):
    try:
        audit = events.cancel(store, audit_id, reason=req.reason if req else None)
        return audit_out(audit)
    except Exception as e:
        raise http_error(e, "Cancel audit") from e


@router.post("/{audit_id}/start")
def audit_start(audit_id: str, store: Store = Depends(get_store_dep)):
    try:
        return audit_out(events.start(store, audit_id))
    except Exception as e:
        raise http_error(e, "Start audit") from e


@router.post("/{audit_id}/complete")
def audit_complete(
    audit_id: str,
    req: AuditComplete,
    store: Store = Depends(get_store_dep),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
):
    try:
        result = events.complete(
            store,
            dispatcher,
            audit_id,
            findings=req.findings,
            recommendations=req.recommendations,
            risk_level=req.risk_level,
            compliance_status=req.compliance_status,
        )
        return {"audit": audit_out(result["audit"]), "email": result["email"]}
    except Exception as e:
        raise http_error(e, "Complete audit") from e


@router.post("/{audit_id}/follow-up")
def audit_follow_up(audit_id: str, req: AuditFollowUp, store: Store = Depends(get_store_dep)):
    try:
        audit = scheduler.set_follow_up(store, audit_id, as_utc(req.follow_up_date), notes=req.notes)
        return audit_out(audit)
    except Exception as e:
        raise http_error(e, "Audit follow-up") from e
