import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.core.store import Store, new_id, utcnow

logger = logging.getLogger(__name__)

TRAINING_TYPES = ("basic", "negativity_handling", "dos_donts", "app_usage")
TRAINING_STATUSES = ("assigned", "in_progress", "completed", "overdue", "cancelled")
ASSIGNED_BY = ("kpi_trigger", "manual", "scheduled", "system")
PRIORITIES = ("low", "medium", "high", "critical")

TRANSITIONS = {
    "assigned": {"in_progress", "completed", "overdue", "cancelled"},
    "overdue": {"in_progress", "completed", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


@dataclass
class TrainingAssignment:
    employee_id: str
    training_type: str
    title: str
    due_date: datetime
    priority: str = "medium"
    reason: str = ""
    assigned_by: str = "manual"
    status: str = "assigned"
    kpi_score_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_score: Optional[float] = None
    notes: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status in ("assigned", "overdue") and self.due_date < now

    def days_until_due(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return math.ceil((self.due_date - now).total_seconds() / 86400)


def _move(training: TrainingAssignment, target: str, now: datetime) -> None:
    if target not in TRANSITIONS.get(training.status, set()):
        raise StateTransitionError(f"Cannot move training from {training.status} to {target}")
    training.status = target
    training.updated_at = now


def assign_training(
    store: Store,
    employee_id: str,
    training_type: str,
    due_date: datetime,
    title: Optional[str] = None,
    priority: str = "medium",
    reason: str = "",
    assigned_by: str = "manual",
    kpi_score_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrainingAssignment:
    now = now or utcnow()
    store.employees.get(employee_id)
    if training_type not in TRAINING_TYPES:
        raise ValueError(f"Unknown training type: {training_type}")
    if priority not in PRIORITIES:
        raise ValueError(f"Unknown priority: {priority}")
    if assigned_by not in ASSIGNED_BY:
        raise ValueError(f"Unknown assigned_by: {assigned_by}")

    training = TrainingAssignment(
        employee_id=employee_id,
        training_type=training_type,
        title=title or training_type.replace("_", " ").title() + " Training",
        due_date=due_date,
        priority=priority,
        reason=reason,
        assigned_by=assigned_by,
        kpi_score_id=kpi_score_id,
        created_at=now,
        updated_at=now,
    )
    if training.due_date < now:
        training.status = "overdue"
    store.trainings.add(training)
    logger.info(
        "Training assigned: id=%s employee=%s type=%s priority=%s by=%s",
        training.id, employee_id, training_type, priority, assigned_by,
    )
    return training


def start_training(store: Store, training_id: str, now: Optional[datetime] = None) -> TrainingAssignment:
    now = now or utcnow()
    training = store.trainings.get(training_id)
    _move(training, "in_progress", now)
    training.started_at = now
    return training


def complete_training(
    store: Store,
    training_id: str,
    score: Optional[float] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrainingAssignment:
    now = now or utcnow()
    if score is not None and not 0 <= score <= 100:
        raise ValueError("Completion score must be between 0 and 100")
    if notes is not None and len(notes) > 1000:
        raise ValueError("Notes cannot exceed 1000 characters")
    training = store.trainings.get(training_id)
    _move(training, "completed", now)
    training.completed_at = now
    training.completion_score = score
    training.notes = notes
    logger.info("Training completed: id=%s score=%s", training_id, score)
    return training


def update_training(store: Store, training_id: str, changes: Dict[str, Any]) -> TrainingAssignment:
    training = store.trainings.get(training_id)
    if training.status in ("completed", "cancelled"):
        raise StateTransitionError(f"Training is {training.status} and cannot be changed")
    allowed = {"title", "due_date", "priority", "reason", "notes"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if "priority" in changes and changes["priority"] not in PRIORITIES:
        raise ValueError(f"Unknown priority: {changes['priority']}")
    for key, value in changes.items():
        setattr(training, key, value)
    training.updated_at = utcnow()
    return training


def cancel_training(store: Store, training_id: str, now: Optional[datetime] = None) -> TrainingAssignment:
    """Move to the terminal cancelled status and hide the training from queries."""
    now = now or utcnow()
    training = store.trainings.get(training_id)
    _move(training, "cancelled", now)
    training.is_active = False
    logger.info("Training cancelled: id=%s", training_id)
    return training


def refresh_overdue(store: Store, now: Optional[datetime] = None) -> List[TrainingAssignment]:
    """Flag assigned trainings whose due date has passed."""
    now = now or utcnow()
    flagged = []
    for training in store.trainings.list(lambda t: t.is_active and t.status == "assigned" and t.due_date < now):
        _move(training, "overdue", now)
        flagged.append(training)
    if flagged:
        logger.warning("Trainings flagged overdue: count=%s", len(flagged))
    return flagged


# -------------------- Queries --------------------

def pending_trainings(store: Store) -> List[TrainingAssignment]:
    items = store.trainings.list(lambda t: t.is_active and t.status in ("assigned", "overdue"))
    return sorted(items, key=lambda t: t.due_date)


def overdue_trainings(store: Store, now: Optional[datetime] = None) -> List[TrainingAssignment]:
    now = now or utcnow()
    items = store.trainings.list(lambda t: t.is_active and t.is_overdue(now))
    return sorted(items, key=lambda t: t.due_date)


def trainings_for(store: Store, employee_id: str, status: Optional[str] = None) -> List[TrainingAssignment]:
    items = store.trainings.list(
        lambda t: t.is_active and t.employee_id == employee_id and (status is None or t.status == status)
    )
    return sorted(items, key=lambda t: t.created_at, reverse=True)


def training_stats(store: Store) -> Dict[str, Any]:
    items = store.trainings.list(lambda t: t.is_active)
    by_status = Counter(t.status for t in items)
    type_distribution: Dict[str, Dict[str, int]] = {}
    for t in items:
        bucket = type_distribution.setdefault(t.training_type, {"count": 0, "completed": 0})
        bucket["count"] += 1
        if t.status == "completed":
            bucket["completed"] += 1
    total = len(items)
    completed = by_status.get("completed", 0)
    return {
        "total": total,
        "by_status": {s: by_status.get(s, 0) for s in TRAINING_STATUSES},
        "type_distribution": type_distribution,
        "completion_rate": round(completed * 100.0 / total, 2) if total else 0.0,
    }
