import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from kpi_compliance.core.errors import ConflictError, NotFoundError, StateTransitionError
from kpi_compliance.core.store import Store, isoformat, new_id, serialize, utcnow
from kpi_compliance.kpi.config_loader import METRIC_KEYS, get_active_config
from kpi_compliance.kpi.engine import KPIEvaluation, employee_status_for, evaluate_kpi
from kpi_compliance.kpi.planner import build_action_plan
from kpi_compliance.people.directory import apply_kpi_result, find_by_code, find_by_email, get_active_employee

logger = logging.getLogger(__name__)

PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2]|Q[1-4])$")
AUTOMATION_STATUSES = ("pending", "processing", "completed", "failed")
UNMATCHED_STATUSES = ("open", "matched", "dismissed")
COMMENTS_MAX = 500
DEFAULT_HISTORY_LIMIT = 6


def empty_links() -> Dict[str, List[str]]:
    return {k: [] for k in ("trainings", "audits", "emails", "warnings", "recognitions", "events")}


@dataclass
class KPIScoreRecord:
    employee_id: str
    period: str
    evaluation: KPIEvaluation
    submitted_by: str = "system"
    comments: Optional[str] = None
    automation_status: str = "pending"
    processed_at: Optional[datetime] = None
    processing_ms: Optional[float] = None
    automation_errors: List[Dict[str, Any]] = field(default_factory=list)
    generated: Dict[str, List[str]] = field(default_factory=empty_links)
    override: Optional[Dict[str, Any]] = None
    audit_trail: List[Dict[str, Any]] = field(default_factory=list)
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def overall(self) -> int:
        if self.override is not None:
            return self.override["score"]
        return self.evaluation.overall

    @property
    def rating(self) -> str:
        if self.override is not None:
            return self.override["rating"]
        return self.evaluation.rating

    def to_dict(self) -> Dict[str, Any]:
        data = serialize(self)
        data.pop("evaluation")
        data.update(self.evaluation.to_dict())
        data["calculated_overall"] = self.evaluation.overall
        data["calculated_rating"] = self.evaluation.rating
        data["overall"] = self.overall
        data["rating"] = self.rating
        return data


@dataclass
class UnmatchedKPI:
    """An imported row whose employee could not be resolved, kept for matching."""

    identifier: str
    period: str
    percentages: Dict[str, Any]
    reason: str
    source: str = "bulk"
    email: Optional[str] = None
    employee_code: Optional[str] = None
    comments: Optional[str] = None
    status: str = "open"
    employee_id: Optional[str] = None
    matched_record_id: Optional[str] = None
    note: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# -------------------- Validation --------------------

def _check_period(period: str) -> str:
    value = (period or "").strip()
    if not PERIOD_RE.match(value):
        raise ValueError("Period must look like YYYY-MM or YYYY-Q1..Q4")
    return value


def _check_comments(comments: Optional[str]) -> Optional[str]:
    if comments is not None and len(comments) > COMMENTS_MAX:
        raise ValueError(f"Comments cannot exceed {COMMENTS_MAX} characters")
    return comments


def _newest_first(items: List[KPIScoreRecord]) -> List[KPIScoreRecord]:
    return list(reversed(sorted(items, key=lambda r: r.created_at)))


# -------------------- Commands --------------------

def submit_kpi(
    store: Store,
    employee_id: str,
    period: str,
    percentages: Mapping[str, Any],
    submitted_by: str = "system",
    comments: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> KPIScoreRecord:
    """Evaluate and store a KPI submission; automation stays pending."""
    cfg = config or get_active_config()
    now = now or utcnow()
    get_active_employee(store, employee_id)
    period = _check_period(period)
    _check_comments(comments)
    duplicate = store.kpi_scores.list(
        lambda r: r.is_active and r.employee_id == employee_id and r.period == period
    )
    if duplicate:
        raise ConflictError(f"KPI score already exists for employee {employee_id} in period {period}")

    evaluation = evaluate_kpi(percentages, cfg)
    record = KPIScoreRecord(
        employee_id=employee_id,
        period=period,
        evaluation=evaluation,
        submitted_by=submitted_by,
        comments=comments,
        created_at=now,
        updated_at=now,
    )
    store.kpi_scores.add(record)
    apply_kpi_result(store, employee_id, evaluation.overall, employee_status_for(evaluation.overall, cfg))
    logger.info(
        "KPI submitted: id=%s employee=%s period=%s overall=%s rating=%s",
        record.id, employee_id, period, evaluation.overall, evaluation.rating,
    )
    return record


def update_kpi(
    store: Store,
    record_id: str,
    percentages: Optional[Mapping[str, Any]] = None,
    comments: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> KPIScoreRecord:
    """Re-evaluate a record; automation is reset to pending so it runs again."""
    cfg = config or get_active_config()
    now = now or utcnow()
    record = get_kpi(store, record_id)
    if percentages is not None and record.automation_status == "processing":
        raise StateTransitionError(f"KPI score {record_id} is being processed; try again shortly")
    if percentages is not None:
        merged = dict(record.evaluation.percentages)
        merged.update({k: v for k, v in percentages.items() if k in METRIC_KEYS})
        if record.override is not None:
            record.audit_trail.append({
                "action": "override_cleared",
                "performed_by": record.override["overridden_by"],
                "details": "Scores re-entered",
                "previous": {"overall": record.overall, "rating": record.rating},
                "at": isoformat(now),
            })
            record.override = None
        record.evaluation = evaluate_kpi(merged, cfg)
        record.automation_status = "pending"
        record.automation_errors = []
        apply_kpi_result(store, record.employee_id, record.overall, employee_status_for(record.overall, cfg))
    if comments is not None:
        record.comments = _check_comments(comments)
    record.updated_at = now
    logger.info("KPI updated: id=%s overall=%s", record.id, record.overall)
    return record


def override_kpi(
    store: Store,
    record_id: str,
    score: int,
    rating: str,
    reason: str,
    overridden_by: str = "manager",
    config: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> KPIScoreRecord:
    """Replace the calculated score and rating with a manager decision.

    The previous values go to the audit trail. Automation is not re-run.
    """
    cfg = config or get_active_config()
    now = now or utcnow()
    record = get_kpi(store, record_id)
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
        raise ValueError("Override score must be a whole number between 0 and 100")
    ratings = [band["rating"] for band in cfg.get("ratings") or []]
    if rating not in ratings:
        raise ValueError(f"Unknown rating: {rating}. Expected one of {', '.join(ratings)}")
    if not reason or not reason.strip():
        raise ValueError("Override reason is required")
    _check_comments(reason)

    record.audit_trail.append({
        "action": "override",
        "performed_by": overridden_by,
        "details": reason.strip(),
        "previous": {"overall": record.overall, "rating": record.rating},
        "at": isoformat(now),
    })
    record.override = {
        "score": score,
        "rating": rating,
        "reason": reason.strip(),
        "overridden_by": overridden_by,
        "overridden_at": isoformat(now),
    }
    record.updated_at = now
    apply_kpi_result(store, record.employee_id, score, employee_status_for(score, cfg))
    logger.warning(
        "KPI overridden: id=%s by=%s score=%s rating=%s",
        record.id, overridden_by, score, rating,
    )
    return record


def deactivate_kpi(store: Store, record_id: str) -> KPIScoreRecord:
    record = get_kpi(store, record_id)
    record.is_active = False
    record.updated_at = utcnow()
    logger.info("KPI deactivated: id=%s", record_id)
    return record


def get_kpi(store: Store, record_id: str) -> KPIScoreRecord:
    record = store.kpi_scores.get(record_id)
    if not record.is_active:
        raise NotFoundError(f"KPI score not found: {record_id}")
    return record


# -------------------- Queries --------------------

def history_for(store: Store, employee_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[KPIScoreRecord]:
    items = store.kpi_scores.list(lambda r: r.is_active and r.employee_id == employee_id)
    return _newest_first(items)[:limit]


def latest_for(store: Store, employee_id: str) -> Optional[KPIScoreRecord]:
    items = history_for(store, employee_id, limit=1)
    return items[0] if items else None


def trends_for(store: Store, employee_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> Dict[str, Any]:
    history = history_for(store, employee_id, limit=limit)
    points = [
        {"period": r.period, "overall": r.overall, "rating": r.rating, "created_at": isoformat(r.created_at)}
        for r in reversed(history)
    ]
    direction = "stable"
    if len(history) >= 2:
        delta = history[0].overall - history[1].overall
        if delta > 0:
            direction = "improving"
        elif delta < 0:
            direction = "declining"
    return {"employee_id": employee_id, "points": points, "direction": direction}


def _latest_per_employee(store: Store) -> List[KPIScoreRecord]:
    latest: Dict[str, KPIScoreRecord] = {}
    for r in sorted(store.kpi_scores.list(lambda r: r.is_active), key=lambda r: r.created_at):
        latest[r.employee_id] = r
    return list(latest.values())


def overview_stats(store: Store, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cfg = config or get_active_config()
    latest = _latest_per_employee(store)
    ratings = [band["rating"] for band in cfg.get("ratings") or []]
    distribution = Counter(r.rating for r in latest)
    action_below = (cfg.get("alerts") or {}).get("require_action_below", 70)
    automation = Counter(r.automation_status for r in store.kpi_scores.list(lambda r: r.is_active))
    return {
        "employees": len(latest),
        "average_score": round(sum(r.overall for r in latest) / len(latest), 2) if latest else 0.0,
        "rating_distribution": {name: distribution.get(name, 0) for name in ratings},
        "automation_status": {s: automation.get(s, 0) for s in AUTOMATION_STATUSES},
        "requiring_action": sum(1 for r in latest if r.overall < action_below),
    }


def low_performers(store: Store, threshold: Optional[float] = None,
                   config: Optional[Dict[str, Any]] = None) -> List[KPIScoreRecord]:
    if threshold is None:
        cfg = config or get_active_config()
        threshold = (cfg.get("alerts") or {}).get("low_performer_threshold", 70)
    items = [r for r in _latest_per_employee(store) if r.overall < threshold]
    return sorted(items, key=lambda r: r.overall)


def pending_automation(store: Store) -> List[KPIScoreRecord]:
    items = store.kpi_scores.list(lambda r: r.is_active and r.automation_status in ("pending", "failed"))
    return sorted(items, key=lambda r: r.created_at)


def preview_kpi(percentages: Mapping[str, Any], period: str = "",
                config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Evaluation plus action plan, nothing stored."""
    cfg = config or get_active_config()
    evaluation = evaluate_kpi(percentages, cfg)
    plan = build_action_plan(evaluation, cfg, period)
    return {"evaluation": evaluation.to_dict(), "plan": plan.to_dict()}


# -------------------- Bulk --------------------

def _resolve_employee_id(store: Store, row: Mapping[str, Any]) -> str:
    if row.get("employee_id"):
        return get_active_employee(store, str(row["employee_id"])).id
    if row.get("email"):
        emp = find_by_email(store, str(row["email"]))
        if emp is None:
            raise NotFoundError(f"Employee not found: {row['email']}")
        return get_active_employee(store, emp.id).id
    if row.get("employee_code"):
        emp = find_by_code(store, str(row["employee_code"]))
        if emp is None:
            raise NotFoundError(f"Employee not found: {row['employee_code']}")
        return get_active_employee(store, emp.id).id
    raise ValueError("Row needs employee_id, email or employee_code")


def _row_percentages(row: Mapping[str, Any]) -> Dict[str, Any]:
    return dict(row.get("percentages") or {k: row.get(k) for k in METRIC_KEYS})


def bulk_submit(
    store: Store,
    rows: List[Mapping[str, Any]],
    submitted_by: str = "system",
    source: str = "bulk",
    config: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Submit many rows; one bad row never aborts the others.

    Rows naming an unknown or inactive employee are parked as unmatched.
    """
    cfg = config or get_active_config()
    results: List[Dict[str, Any]] = []
    for index, row in enumerate(rows):
        try:
            employee_id = _resolve_employee_id(store, row)
        except LookupError as e:
            parked = park_unmatched(store, row, str(e), source=source, now=now)
            results.append({"row": index, "ok": False, "error": str(e), "unmatched_id": parked.id})
            continue
        except ValueError as e:
            results.append({"row": index, "ok": False, "error": str(e)})
            continue
        try:
            record = submit_kpi(
                store,
                employee_id=employee_id,
                period=str(row.get("period") or ""),
                percentages=_row_percentages(row),
                submitted_by=submitted_by,
                comments=row.get("comments"),
                config=cfg,
                now=now,
            )
        except (ValueError, LookupError, ConflictError) as e:
            results.append({"row": index, "ok": False, "error": str(e)})
            continue
        results.append({"row": index, "ok": True, "id": record.id, "overall": record.overall})

    succeeded = sum(1 for r in results if r["ok"])
    unmatched = sum(1 for r in results if "unmatched_id" in r)
    logger.info(
        "KPI bulk submit: rows=%s ok=%s failed=%s unmatched=%s",
        len(rows), succeeded, len(rows) - succeeded, unmatched,
    )
    return {
        "total": len(rows),
        "succeeded": succeeded,
        "failed": len(rows) - succeeded,
        "unmatched": unmatched,
        "results": results,
    }


# -------------------- Unmatched rows --------------------

def park_unmatched(
    store: Store,
    row: Mapping[str, Any],
    reason: str,
    source: str = "bulk",
    now: Optional[datetime] = None,
) -> UnmatchedKPI:
    now = now or utcnow()
    identifier = row.get("employee_id") or row.get("email") or row.get("employee_code")
    item = UnmatchedKPI(
        identifier=str(identifier),
        period=str(row.get("period") or "").strip(),
        percentages=_row_percentages(row),
        reason=reason,
        source=source,
        email=row.get("email"),
        employee_code=row.get("employee_code"),
        comments=row.get("comments"),
        created_at=now,
        updated_at=now,
    )
    store.unmatched_kpis.add(item)
    logger.warning("KPI row parked as unmatched: id=%s identifier=%s source=%s", item.id, item.identifier, source)
    return item


def list_unmatched(store: Store, status: Optional[str] = "open", period: Optional[str] = None) -> List[UnmatchedKPI]:
    if status is not None and status not in UNMATCHED_STATUSES:
        raise ValueError(f"Unknown unmatched status: {status}")
    items = store.unmatched_kpis.list(
        lambda u: (status is None or u.status == status) and (period is None or u.period == period)
    )
    return sorted(items, key=lambda u: u.created_at, reverse=True)


def _open_unmatched(store: Store, unmatched_id: str) -> UnmatchedKPI:
    item = store.unmatched_kpis.get(unmatched_id)
    if item.status != "open":
        raise StateTransitionError(f"Unmatched row is already {item.status}")
    return item


def match_unmatched(
    store: Store,
    unmatched_id: str,
    employee_id: str,
    submitted_by: str = "system",
    config: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> KPIScoreRecord:
    """Submit a parked row for the given employee and close it."""
    now = now or utcnow()
    item = _open_unmatched(store, unmatched_id)
    record = submit_kpi(
        store,
        employee_id=employee_id,
        period=item.period,
        percentages=item.percentages,
        submitted_by=submitted_by,
        comments=item.comments,
        config=config,
        now=now,
    )
    item.status = "matched"
    item.employee_id = employee_id
    item.matched_record_id = record.id
    item.updated_at = now
    logger.info("Unmatched KPI row matched: id=%s employee=%s record=%s", item.id, employee_id, record.id)
    return record


def dismiss_unmatched(store: Store, unmatched_id: str, note: Optional[str] = None) -> UnmatchedKPI:
    item = _open_unmatched(store, unmatched_id)
    item.status = "dismissed"
    item.note = note
    item.updated_at = utcnow()
    return item
