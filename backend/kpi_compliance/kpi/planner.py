"""Turn a KPI evaluation into the side effects it calls for.

The plan is derived only from the evaluation's triggered actions and the
action catalogue in the rule config, so what is shown to the user and what
the automation executes cannot drift apart. No records are written here.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from kpi_compliance.kpi.engine import KPIEvaluation, employee_status_for

logger = logging.getLogger(__name__)


@dataclass
class PlannedTraining:
    action: str
    training_type: str
    title: str
    priority: str
    due_in_days: int
    reason: str


@dataclass
class PlannedAudit:
    action: str
    audit_type: str
    priority: str
    offset_days: int
    scope: str
    method: str
    reason: str


@dataclass
class PlannedWarning:
    title: str
    severity: str
    reason: str


@dataclass
class PlannedRecognition:
    title: str
    reason: str


@dataclass
class PlannedEmail:
    template: str
    roles: List[str]


@dataclass
class PlannedEvent:
    type: str
    title: str
    description: str
    category: str


@dataclass
class ActionPlan:
    overall: int
    rating: str
    employee_status: str
    trainings: List[PlannedTraining] = field(default_factory=list)
    audits: List[PlannedAudit] = field(default_factory=list)
    warning: Optional[PlannedWarning] = None
    recognition: Optional[PlannedRecognition] = None
    emails: List[PlannedEmail] = field(default_factory=list)
    events: List[PlannedEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _Context(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _fmt_number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _priority(action_cfg: Dict[str, Any], overall: int) -> str:
    below = action_cfg.get("escalate_below")
    if below is not None and overall < below:
        return action_cfg.get("escalate_to", "high")
    return action_cfg.get("priority", "medium")


def _days(section: Dict[str, Any], priority: str) -> int:
    return int(section.get(priority, section.get("default", 7)))


def build_action_plan(evaluation: KPIEvaluation, config: Dict[str, Any], period: str = "") -> ActionPlan:
    catalogue = config.get("actions") or {}
    scheduling = config.get("scheduling") or {}
    routing = config.get("notifications") or {}
    context = _Context({k: _fmt_number(v) for k, v in evaluation.percentages.items()})
    context.update(overall=evaluation.overall, rating=evaluation.rating, period=period)

    plan = ActionPlan(
        overall=evaluation.overall,
        rating=evaluation.rating,
        employee_status=employee_status_for(evaluation.overall, config),
    )

    for code in evaluation.triggered_actions:
        action_cfg = catalogue.get(code)
        if action_cfg is None:
            raise ValueError(f"Triggered action has no definition: {code}")
        kind = action_cfg["kind"]
        reason = str(action_cfg.get("reason", "")).format_map(context)

        if kind == "training":
            priority = _priority(action_cfg, evaluation.overall)
            plan.trainings.append(PlannedTraining(
                action=code,
                training_type=action_cfg["training_type"],
                title=action_cfg.get("title", code),
                priority=priority,
                due_in_days=_days(scheduling.get("training_due_days") or {}, priority),
                reason=reason,
            ))
        elif kind == "audit":
            priority = _priority(action_cfg, evaluation.overall)
            plan.audits.append(PlannedAudit(
                action=code,
                audit_type=action_cfg["audit_type"],
                priority=priority,
                offset_days=_days(scheduling.get("audit_offset_days") or {}, priority),
                scope=str(action_cfg.get("scope", "")).format_map(context),
                method=action_cfg.get("method", ""),
                reason=reason,
            ))
        elif kind == "warning":
            plan.warning = PlannedWarning(
                title=action_cfg.get("title", "Performance Warning"),
                severity=action_cfg.get("severity", "high"),
                reason=reason,
            )
        elif kind == "recognition":
            plan.recognition = PlannedRecognition(
                title=action_cfg.get("title", "Recognition"),
                reason=reason,
            )

    def _email(template: str) -> None:
        plan.emails.append(PlannedEmail(template=template, roles=list(routing.get(template) or [])))

    _email("kpi_score")
    if plan.trainings:
        _email("training")
        plan.events.append(PlannedEvent(
            type="training",
            title="Training assigned",
            description=", ".join(t.title for t in plan.trainings),
            category="neutral",
        ))
    if plan.audits:
        _email("audit")
        plan.events.append(PlannedEvent(
            type="audit",
            title="Audit scheduled",
            description=", ".join(a.audit_type for a in plan.audits),
            category="negative",
        ))
    if plan.warning is not None:
        _email("warning")
        plan.events.append(PlannedEvent(
            type="warning",
            title=plan.warning.title,
            description=plan.warning.reason,
            category="negative",
        ))
    if plan.recognition is not None:
        _email("recognition")
        plan.events.append(PlannedEvent(
            type="achievement",
            title=plan.recognition.title,
            description=plan.recognition.reason,
            category="positive",
        ))

    logger.debug(
        "Action plan: overall=%s trainings=%s audits=%s warning=%s recognition=%s",
        plan.overall, len(plan.trainings), len(plan.audits),
        plan.warning is not None, plan.recognition is not None,
    )
    return plan
