import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.core.store import Store, new_id, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = ("kpi", "training", "audit", "warning", "achievement")
EVENT_CATEGORIES = ("positive", "neutral", "negative")
SEVERITIES = ("low", "medium", "high", "critical")
WARNING_STATUSES = ("active", "resolved", "dismissed")


@dataclass
class LifecycleEvent:
    employee_id: str
    type: str
    title: str
    description: str = ""
    category: str = "neutral"
    metadata: Dict[str, Any] = field(default_factory=dict)
    automated: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WarningRecord:
    employee_id: str
    title: str
    description: str
    severity: str = "medium"
    status: str = "active"
    kpi_score_id: Optional[str] = None
    issued_by: str = "system"
    resolution_note: Optional[str] = None
    resolved_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Recognition:
    employee_id: str
    title: str
    reason: str
    period: Optional[str] = None
    kpi_score_id: Optional[str] = None
    granted_by: str = "system"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


# -------------------- Lifecycle --------------------

def record_event(
    store: Store,
    employee_id: str,
    type: str,
    title: str,
    description: str = "",
    category: str = "neutral",
    metadata: Optional[Dict[str, Any]] = None,
    automated: bool = False,
) -> LifecycleEvent:
    if type not in EVENT_TYPES:
        raise ValueError(f"Unknown lifecycle event type: {type}")
    if category not in EVENT_CATEGORIES:
        raise ValueError(f"Unknown lifecycle category: {category}")
    event = LifecycleEvent(
        employee_id=employee_id,
        type=type,
        title=title,
        description=description,
        category=category,
        metadata=dict(metadata or {}),
        automated=automated,
    )
    store.lifecycle_events.add(event)
    return event


def events_for(store: Store, employee_id: str, type: Optional[str] = None, limit: int = 50) -> List[LifecycleEvent]:
    items = store.lifecycle_events.list(
        lambda e: e.employee_id == employee_id and (type is None or e.type == type)
    )
    items.sort(key=lambda e: e.created_at, reverse=True)
    return items[:limit]


def withdraw_event(store: Store, event_id: str) -> LifecycleEvent:
    return store.lifecycle_events.remove(event_id)


def lifecycle_stats(store: Store, employee_id: str) -> Dict[str, Any]:
    items = store.lifecycle_events.list(lambda e: e.employee_id == employee_id)
    return {
        "total": len(items),
        "by_type": dict(Counter(e.type for e in items)),
        "by_category": dict(Counter(e.category for e in items)),
        "automated": sum(1 for e in items if e.automated),
    }


# -------------------- Warnings --------------------

def issue_warning(
    store: Store,
    employee_id: str,
    title: str,
    description: str,
    severity: str = "medium",
    kpi_score_id: Optional[str] = None,
    issued_by: str = "system",
) -> WarningRecord:
    store.employees.get(employee_id)
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown warning severity: {severity}")
    warning = WarningRecord(
        employee_id=employee_id,
        title=title,
        description=description,
        severity=severity,
        kpi_score_id=kpi_score_id,
        issued_by=issued_by,
    )
    store.warnings.add(warning)
    logger.warning("Warning issued: employee=%s severity=%s", employee_id, severity)
    return warning


def close_warning(store: Store, warning_id: str, status: str = "resolved", note: Optional[str] = None) -> WarningRecord:
    if status not in ("resolved", "dismissed"):
        raise ValueError("Warnings can only be resolved or dismissed")
    warning = store.warnings.get(warning_id)
    if warning.status != "active":
        raise StateTransitionError(f"Warning is already {warning.status}")
    warning.status = status
    warning.resolution_note = note
    warning.resolved_at = utcnow()
    return warning


def warnings_for(store: Store, employee_id: str, status: Optional[str] = None) -> List[WarningRecord]:
    items = store.warnings.list(
        lambda w: w.employee_id == employee_id and (status is None or w.status == status)
    )
    return sorted(items, key=lambda w: w.created_at, reverse=True)


# -------------------- Recognitions --------------------

def grant_recognition(
    store: Store,
    employee_id: str,
    title: str,
    reason: str,
    period: Optional[str] = None,
    kpi_score_id: Optional[str] = None,
    granted_by: str = "system",
) -> Recognition:
    store.employees.get(employee_id)
    recognition = Recognition(
        employee_id=employee_id,
        title=title,
        reason=reason,
        period=period,
        kpi_score_id=kpi_score_id,
        granted_by=granted_by,
    )
    store.recognitions.add(recognition)
    logger.info("Recognition granted: employee=%s title=%s", employee_id, title)
    return recognition


def revoke_recognition(store: Store, recognition_id: str) -> Recognition:
    recognition = store.recognitions.remove(recognition_id)
    logger.info("Recognition revoked: id=%s employee=%s", recognition_id, recognition.employee_id)
    return recognition


def recognitions_for(store: Store, employee_id: str) -> List[Recognition]:
    items = store.recognitions.list(lambda r: r.employee_id == employee_id)
    return sorted(items, key=lambda r: r.created_at, reverse=True)
