"""Audit scheduling state machine.

    scheduled -> in_progress -> completed
    scheduled -> completed
    scheduled | in_progress -> cancelled

completed and cancelled are terminal. Overdue is derived (scheduled and the
date has passed) and never stored.
"""
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.core.store import Store, new_id, utcnow

logger = logging.getLogger(__name__)

AUDIT_TYPES = ("audit_call", "cross_check", "dummy_audit")
AUDIT_STATUSES = ("scheduled", "in_progress", "completed", "cancelled")
PRIORITIES = ("low", "medium", "high", "critical")
SCHEDULED_BY = ("manual", "system", "kpi_trigger")
RISK_LEVELS = ("low", "medium", "high", "critical")
COMPLIANCE_STATUSES = ("compliant", "non_compliant", "partially_compliant", "not_assessed")

TRANSITIONS = {
    "scheduled": {"in_progress", "completed", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
TERMINAL = ("completed", "cancelled")

FINDINGS_MIN = 10
FINDINGS_MAX = 2000
RECOMMENDATIONS_MAX = 1000
TEXT_MAX = 500


@dataclass
class AuditSchedule:
    employee_id: str
    audit_type: str
    scheduled_date: datetime
    priority: str = "medium"
    scope: str = ""
    method: str = ""
    reason: str = ""
    scheduled_by: str = "manual"
    assigned_auditor: Optional[str] = None
    kpi_score_id: Optional[str] = None
    status: str = "scheduled"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    risk_level: Optional[str] = None
    compliance_status: str = "not_assessed"
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == "scheduled" and self.scheduled_date < now

    def days_until_scheduled(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return math.ceil((self.scheduled_date - now).total_seconds() / 86400)


# -------------------- Validation --------------------

def _check_choice(value: Optional[str], allowed, label: str) -> None:
    if value is not None and value not in allowed:
        raise ValueError(f"Unknown {label}: {value}. Expected one of {', '.join(allowed)}")


def _check_length(value: Optional[str], limit: int, label: str) -> None:
    if value is not None and len(value) > limit:
        raise ValueError(f"{label} cannot exceed {limit} characters")


def _move(audit: AuditSchedule, target: str, now: datetime) -> None:
    if target not in TRANSITIONS.get(audit.status, set()):
        raise StateTransitionError(f"Cannot move audit from {audit.status} to {target}")
    logger.info("Audit %s: %s -> %s", audit.id, audit.status, target)
    audit.status = target
    audit.updated_at = now


# -------------------- Transitions --------------------

def schedule_audit(
    store: Store,
    employee_id: str,
    audit_type: str,
    scheduled_date: datetime,
    priority: str = "medium",
    scope: str = "",
    method: str = "",
    reason: str = "",
    scheduled_by: str = "manual",
    assigned_auditor: Optional[str] = None,
    kpi_score_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditSchedule:
    now = now or utcnow()
    store.employees.get(employee_id)
    _check_choice(audit_type, AUDIT_TYPES, "audit type")
    _check_choice(priority, PRIORITIES, "priority")
    _check_choice(scheduled_by, SCHEDULED_BY, "scheduled_by")
    _check_length(scope, TEXT_MAX, "Scope")
    _check_length(method, TEXT_MAX, "Method")
    if scheduled_by == "manual" and scheduled_date < now:
        raise ValueError("Scheduled date cannot be in the past")

    audit = AuditSchedule(
        employee_id=employee_id,
        audit_type=audit_type,
        scheduled_date=scheduled_date,
        priority=priority,
        scope=scope,
        method=method,
        reason=reason,
        scheduled_by=scheduled_by,
        assigned_auditor=assigned_auditor,
        kpi_score_id=kpi_score_id,
        created_at=now,
        updated_at=now,
    )
    store.audits.add(audit)
    logger.info(
        "Audit scheduled: id=%s employee=%s type=%s priority=%s date=%s by=%s",
        audit.id, employee_id, audit_type, priority, scheduled_date.date(), scheduled_by,
    )
    return audit


def start_audit(store: Store, audit_id: str, now: Optional[datetime] = None) -> AuditSchedule:
    now = now or utcnow()
    audit = store.audits.get(audit_id)
    _move(audit, "in_progress", now)
    audit.started_at = now
    return audit


def complete_audit(
    store: Store,
    audit_id: str,
    findings: str,
    recommendations: Optional[str] = None,
    risk_level: Optional[str] = None,
    compliance_status: str = "not_assessed",
    now: Optional[datetime] = None,
) -> AuditSchedule:
    now = now or utcnow()
    audit = store.audits.get(audit_id)
    if audit.status == "completed":
        raise StateTransitionError("Audit is already completed")
    text = (findings or "").strip()
    if len(text) < FINDINGS_MIN or len(text) > FINDINGS_MAX:
        raise ValueError(f"Findings must be between {FINDINGS_MIN} and {FINDINGS_MAX} characters")
    _check_length(recommendations, RECOMMENDATIONS_MAX, "Recommendations")
    _check_choice(risk_level, RISK_LEVELS, "risk level")
    _check_choice(compliance_status, COMPLIANCE_STATUSES, "compliance status")

    _move(audit, "completed", now)
    audit.completed_at = now
    audit.findings = text
    audit.recommendations = recommendations
    audit.risk_level = risk_level
    audit.compliance_status = compliance_status
    return audit


def cancel_audit(store: Store, audit_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> AuditSchedule:
    now = now or utcnow()
    audit = store.audits.get(audit_id)
    if audit.status == "completed":
        raise StateTransitionError("Completed audits cannot be cancelled")
    _check_length(reason, TEXT_MAX, "Cancel reason")
    _move(audit, "cancelled", now)
    audit.cancel_reason = reason
    audit.is_active = False
    return audit


def update_audit(store: Store, audit_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> AuditSchedule:
    """Edit or reschedule an audit that has not reached a terminal status."""
    now = now or utcnow()
    audit = store.audits.get(audit_id)
    if audit.status in TERMINAL:
        raise StateTransitionError(f"Audit is {audit.status} and cannot be changed")
    allowed = {"scheduled_date", "priority", "scope", "method", "assigned_auditor", "audit_type"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    _check_choice(changes.get("priority"), PRIORITIES, "priority")
    _check_choice(changes.get("audit_type"), AUDIT_TYPES, "audit type")
    _check_length(changes.get("scope"), TEXT_MAX, "Scope")
    _check_length(changes.get("method"), TEXT_MAX, "Method")
    if "scheduled_date" in changes and changes["scheduled_date"] < now:
        raise ValueError("Scheduled date cannot be in the past")
    for key, value in changes.items():
        setattr(audit, key, value)
    audit.updated_at = now
    return audit


def set_follow_up(
    store: Store,
    audit_id: str,
    follow_up_date: datetime,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditSchedule:
    now = now or utcnow()
    audit = store.audits.get(audit_id)
    if audit.status == "cancelled":
        raise StateTransitionError("Cancelled audits cannot be followed up")
    if follow_up_date < now:
        raise ValueError("Follow-up date cannot be in the past")
    _check_length(notes, TEXT_MAX, "Follow-up notes")
    audit.follow_up_date = follow_up_date
    audit.follow_up_notes = notes
    audit.updated_at = now
    return audit


# -------------------- Queries --------------------

def list_audits(
    store: Store,
    status: Optional[str] = None,
    audit_type: Optional[str] = None,
    priority: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[AuditSchedule]:
    def _match(a: AuditSchedule) -> bool:
        if not a.is_active:
            return False
        if status and a.status != status:
            return False
        if audit_type and a.audit_type != audit_type:
            return False
        if priority and a.priority != priority:
            return False
        if date_from and a.scheduled_date < date_from:
            return False
        if date_to and a.scheduled_date > date_to:
            return False
        return True

    return sorted(store.audits.list(_match), key=lambda a: a.scheduled_date)


def overdue_audits(store: Store, now: Optional[datetime] = None) -> List[AuditSchedule]:
    now = now or utcnow()
    return sorted(
        store.audits.list(lambda a: a.is_active and a.is_overdue(now)),
        key=lambda a: a.scheduled_date,
    )


def upcoming_audits(store: Store, days: int = 7, now: Optional[datetime] = None) -> List[AuditSchedule]:
    if days < 1:
        raise ValueError("days must be >= 1")
    now = now or utcnow()
    return list_audits(store, status="scheduled", date_from=now, date_to=now + timedelta(days=days))


def audits_for(store: Store, employee_id: str, include_inactive: bool = False) -> List[AuditSchedule]:
    items = store.audits.list(
        lambda a: a.employee_id == employee_id and (include_inactive or a.is_active)
    )
    return sorted(items, key=lambda a: a.scheduled_date, reverse=True)


def audit_stats(store: Store, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    items = store.audits.list()
    by_status = Counter(a.status for a in items)
    by_priority = Counter(a.priority for a in items if a.is_active)
    type_distribution: Dict[str, Dict[str, int]] = {}
    for a in items:
        bucket = type_distribution.setdefault(a.audit_type, {"count": 0, "completed": 0})
        bucket["count"] += 1
        if a.status == "completed":
            bucket["completed"] += 1
    total = len(items)
    completed = by_status.get("completed", 0)
    return {
        "total": total,
        "by_status": {s: by_status.get(s, 0) for s in AUDIT_STATUSES},
        "type_distribution": type_distribution,
        "priority_distribution": {p: by_priority.get(p, 0) for p in PRIORITIES},
        "completion_rate": round(completed * 100.0 / total, 2) if total else 0.0,
        "overdue": sum(1 for a in items if a.is_active and a.is_overdue(now)),
    }
