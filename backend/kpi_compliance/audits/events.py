"""Audit operations with their side effects: lifecycle events and update emails.

A failed notification is logged and never undoes the audit transition.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from kpi_compliance.audits import scheduler
from kpi_compliance.audits.scheduler import AuditSchedule
from kpi_compliance.core.store import Store, utcnow
from kpi_compliance.kpi.config_loader import get_active_config
from kpi_compliance.notifications.dispatcher import EmailDispatcher
from kpi_compliance.people import records
from kpi_compliance.people.directory import resolve_recipients

logger = logging.getLogger(__name__)


def _label(audit_type: str) -> str:
    return audit_type.replace("_", " ")


def _notify(store: Store, dispatcher: Optional[EmailDispatcher], audit: AuditSchedule, now: datetime) -> Optional[Dict[str, Any]]:
    if dispatcher is None:
        return None
    employee = store.employees.get(audit.employee_id)
    roles = (get_active_config().get("notifications") or {}).get("audit_update") or ["compliance", "hod"]
    try:
        result = dispatcher.dispatch(
            "audit_update",
            resolve_recipients(store, roles, audit.employee_id),
            {
                "employee_name": employee.name,
                "audit_type": _label(audit.audit_type),
                "audit_status": audit.status.replace("_", " "),
                "scheduled_date": audit.scheduled_date.date().isoformat(),
                "priority": audit.priority,
                "compliance_status": audit.compliance_status.replace("_", " "),
                "findings": audit.findings or "",
            },
            employee_id=audit.employee_id,
            audit_id=audit.id,
            now=now,
        )
    except Exception:
        logger.exception("Audit notification failed: audit=%s status=%s", audit.id, audit.status)
        return None
    return result.to_dict()


def schedule_manual_audit(
    store: Store,
    dispatcher: Optional[EmailDispatcher],
    employee_id: str,
    audit_type: str,
    scheduled_date: datetime,
    priority: str = "medium",
    scope: str = "",
    method: str = "",
    assigned_auditor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    audit = scheduler.schedule_audit(
        store,
        employee_id=employee_id,
        audit_type=audit_type,
        scheduled_date=scheduled_date,
        priority=priority,
        scope=scope,
        method=method,
        scheduled_by="manual",
        assigned_auditor=assigned_auditor,
        now=now,
    )
    records.record_event(
        store,
        employee_id,
        type="audit",
        title=f"{_label(audit_type).title()} scheduled",
        description=f"Manual {_label(audit_type)} audit on {scheduled_date.date().isoformat()}",
        category="neutral",
        metadata={"audit_id": audit.id, "priority": priority},
    )
    return {"audit": audit, "email": _notify(store, dispatcher, audit, now)}


def start(store: Store, audit_id: str, now: Optional[datetime] = None) -> AuditSchedule:
    audit = scheduler.start_audit(store, audit_id, now=now)
    records.record_event(
        store,
        audit.employee_id,
        type="audit",
        title=f"{_label(audit.audit_type).title()} started",
        category="neutral",
        metadata={"audit_id": audit.id},
    )
    return audit


def complete(
    store: Store,
    dispatcher: Optional[EmailDispatcher],
    audit_id: str,
    findings: str,
    recommendations: Optional[str] = None,
    risk_level: Optional[str] = None,
    compliance_status: str = "not_assessed",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    audit = scheduler.complete_audit(
        store,
        audit_id,
        findings=findings,
        recommendations=recommendations,
        risk_level=risk_level,
        compliance_status=compliance_status,
        now=now,
    )
    records.record_event(
        store,
        audit.employee_id,
        type="audit",
        title=f"{_label(audit.audit_type).title()} completed",
        description=audit.findings or "",
        category="positive" if compliance_status == "compliant" else "negative",
        metadata={"audit_id": audit.id, "compliance_status": compliance_status, "risk_level": risk_level},
    )
    return {"audit": audit, "email": _notify(store, dispatcher, audit, now)}


def cancel(store: Store, audit_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> AuditSchedule:
    audit = scheduler.cancel_audit(store, audit_id, reason=reason, now=now)
    records.record_event(
        store,
        audit.employee_id,
        type="audit",
        title=f"{_label(audit.audit_type).title()} cancelled",
        description=reason or "",
        category="neutral",
        metadata={"audit_id": audit.id},
    )
    return audit
