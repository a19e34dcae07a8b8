import logging
import threading
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from kpi_compliance.audits import scheduler
from kpi_compliance.core.errors import NotFoundError, StateTransitionError
from kpi_compliance.core.store import Store, isoformat, utcnow
from kpi_compliance.kpi.config_loader import get_active_config
from kpi_compliance.kpi.engine import employee_status_for
from kpi_compliance.kpi.planner import ActionPlan, build_action_plan
from kpi_compliance.kpi.scores import AUTOMATION_STATUSES, KPIScoreRecord, empty_links, get_kpi, pending_automation
from kpi_compliance.notifications.dispatcher import EmailDispatcher
from kpi_compliance.people import records
from kpi_compliance.people.directory import apply_kpi_result, get_active_employee, resolve_recipients
from kpi_compliance.training import assignments

logger = logging.getLogger(__name__)

# Guards the pending -> processing claim across the sweeper thread and request threads
_claim_lock = threading.Lock()


def _log_context(record: KPIScoreRecord) -> Dict[str, str]:
    return {"kpi_score_id": record.id, "employee_id": record.employee_id}


class KPITriggerProcessor:
    """Executes the action plan of a KPI record: trainings, audits, warnings,
    recognitions, lifecycle events and emails.
    """

    def __init__(self, store: Store, dispatcher: EmailDispatcher, config: Optional[Dict[str, Any]] = None):
        self.store = store
        self.dispatcher = dispatcher
        self._config = config

    @property
    def config(self) -> Dict[str, Any]:
        return self._config if self._config is not None else get_active_config()

    # -------------------- Execution --------------------

    def _email_variables(self, record: KPIScoreRecord, plan: ActionPlan, employee_name: str, now: datetime) -> Dict[str, Any]:
        evaluation = record.evaluation
        variables: Dict[str, Any] = {
            "employee_name": employee_name,
            "period": record.period,
            "overall": evaluation.overall,
            "rating": evaluation.rating,
            "improvement_areas": evaluation.improvement_areas or ["None"],
            "actions": [a.replace("_", " ") for a in evaluation.triggered_actions],
            "trainings": [f"{t.title} ({t.priority})" for t in plan.trainings],
            "audits": [f"{a.method} ({a.priority})" for a in plan.audits],
        }
        if plan.trainings:
            days = min(t.due_in_days for t in plan.trainings)
            variables["due_date"] = (now + timedelta(days=days)).date().isoformat()
        if plan.audits:
            days = min(a.offset_days for a in plan.audits)
            variables["scheduled_date"] = (now + timedelta(days=days)).date().isoformat()
        if plan.warning is not None:
            variables["reason"] = plan.warning.reason
        elif plan.recognition is not None:
            variables["reason"] = plan.recognition.reason
        return variables

    def _execute(self, record: KPIScoreRecord, now: datetime) -> None:
        cfg = self.config
        employee = get_active_employee(self.store, record.employee_id)
        plan = build_action_plan(record.evaluation, cfg, record.period)
        links = record.generated

        for t in plan.trainings:
            training = assignments.assign_training(
                self.store,
                employee_id=employee.id,
                training_type=t.training_type,
                due_date=now + timedelta(days=t.due_in_days),
                title=t.title,
                priority=t.priority,
                reason=t.reason,
                assigned_by="kpi_trigger",
                kpi_score_id=record.id,
                now=now,
            )
            links["trainings"].append(training.id)

        for a in plan.audits:
            audit = scheduler.schedule_audit(
                self.store,
                employee_id=employee.id,
                audit_type=a.audit_type,
                scheduled_date=now + timedelta(days=a.offset_days),
                priority=a.priority,
                scope=a.scope,
                method=a.method,
                reason=a.reason,
                scheduled_by="kpi_trigger",
                kpi_score_id=record.id,
                now=now,
            )
            links["audits"].append(audit.id)

        if plan.warning is not None:
            warning = records.issue_warning(
                self.store,
                employee.id,
                title=plan.warning.title,
                description=plan.warning.reason,
                severity=plan.warning.severity,
                kpi_score_id=record.id,
            )
            links["warnings"].append(warning.id)

        if plan.recognition is not None:
            recognition = records.grant_recognition(
                self.store,
                employee.id,
                title=plan.recognition.title,
                reason=plan.recognition.reason,
                period=record.period,
                kpi_score_id=record.id,
            )
            links["recognitions"].append(recognition.id)

        if record.override is not None:
            apply_kpi_result(self.store, employee.id, record.overall, employee_status_for(record.overall, cfg))
        else:
            apply_kpi_result(self.store, employee.id, plan.overall, plan.employee_status)

        for ev in plan.events:
            event = records.record_event(
                self.store,
                employee.id,
                type=ev.type,
                title=ev.title,
                description=ev.description,
                category=ev.category,
                metadata={"kpi_score_id": record.id, "period": record.period, "overall": plan.overall},
                automated=True,
            )
            links["events"].append(event.id)

        variables = self._email_variables(record, plan, employee.name, now)
        for email in plan.emails:
            result = self.dispatcher.dispatch(
                email.template,
                resolve_recipients(self.store, email.roles, employee.id),
                variables,
                employee_id=employee.id,
                kpi_score_id=record.id,
                training_id=links["trainings"][0] if email.template == "training" and links["trainings"] else None,
                audit_id=links["audits"][0] if email.template == "audit" and links["audits"] else None,
                now=now,
            )
            links["emails"].extend(result.log_ids)

    def _withdraw_previous(self, record: KPIScoreRecord, now: datetime) -> None:
        """Undo what an earlier run of this record left open.

        Open trainings and audits are cancelled, active warnings dismissed,
        recognitions revoked and automated events dropped. Completed work and
        closed warnings stay.
        """
        links = record.generated
        for training_id in links["trainings"]:
            training = self.store.trainings.find(training_id)
            if training is not None and "cancelled" in assignments.TRANSITIONS[training.status]:
                assignments.cancel_training(self.store, training_id, now=now)
        for audit_id in links["audits"]:
            audit = self.store.audits.find(audit_id)
            if audit is not None and audit.status not in scheduler.TERMINAL:
                scheduler.cancel_audit(self.store, audit_id, reason="Superseded by KPI reprocess", now=now)
        for warning_id in links["warnings"]:
            warning = self.store.warnings.find(warning_id)
            if warning is not None and warning.status == "active":
                records.close_warning(self.store, warning_id, "dismissed", note="Superseded by KPI reprocess")
        for recognition_id in links["recognitions"]:
            if self.store.recognitions.find(recognition_id) is not None:
                records.revoke_recognition(self.store, recognition_id)
        for event_id in links["events"]:
            if self.store.lifecycle_events.find(event_id) is not None:
                records.withdraw_event(self.store, event_id)
        record.generated = empty_links()

    def _claim(self, record_id: str, allowed: Tuple[str, ...], now: datetime) -> KPIScoreRecord:
        with _claim_lock:
            record = get_kpi(self.store, record_id)
            if record.automation_status == "processing":
                raise StateTransitionError(f"KPI score {record_id} is already being processed")
            if record.automation_status not in allowed:
                raise StateTransitionError(
                    f"KPI score {record_id} is {record.automation_status}; reprocess it instead"
                )
            record.automation_status = "processing"
            record.updated_at = now
            return record

    def process(self, record_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run the automation for one pending KPI record.

        Any error marks the record failed; it is kept in automation_errors and
        the record can be reprocessed.
        """
        now = now or utcnow()
        record = self._claim(record_id, ("pending",), now)
        return self._run(record, now)

    def _run(self, record: KPIScoreRecord, now: datetime) -> Dict[str, Any]:
        started = time.perf_counter()
        errors: List[Dict[str, Any]] = []
        try:
            self._withdraw_previous(record, now)
            self._execute(record, now)
        except Exception as e:
            error = {"type": type(e).__name__, "message": str(e), "at": isoformat(now)}
            errors.append(error)
            record.automation_errors.append(error)
            record.automation_status = "failed"
            logger.exception("KPI automation failed: id=%s", record.id, extra=_log_context(record))
        else:
            record.automation_status = "completed"
            record.processed_at = now
        record.processing_ms = round((time.perf_counter() - started) * 1000.0, 2)
        record.updated_at = now

        logger.info(
            "KPI automation %s: id=%s trainings=%s audits=%s emails=%s ms=%s",
            record.automation_status, record.id, len(record.generated["trainings"]),
            len(record.generated["audits"]), len(record.generated["emails"]), record.processing_ms,
            extra=_log_context(record),
        )
        return {
            "kpi_score_id": record.id,
            "status": record.automation_status,
            "generated": {k: list(v) for k, v in record.generated.items()},
            "errors": errors,
            "processing_ms": record.processing_ms,
        }

    def process_pending(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        summary: Dict[str, Any] = {"processed": 0, "failed": 0, "errors": []}
        for record in pending_automation(self.store):
            if record.automation_status != "pending":
                continue
            try:
                result = self.process(record.id, now=now)
            except (StateTransitionError, NotFoundError):
                # claimed or removed since the listing
                continue
            if result["status"] == "completed":
                summary["processed"] += 1
            else:
                summary["failed"] += 1
                summary["errors"].append({"kpi_score_id": record.id, "errors": result["errors"]})
        return summary

    def reprocess(self, record_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Withdraw what an earlier run left open, then run again."""
        now = now or utcnow()
        record = self._claim(record_id, AUTOMATION_STATUSES, now)
        logger.info("KPI reprocess requested: id=%s", record_id, extra=_log_context(record))
        return self._run(record, now)

    def automation_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        counts = Counter(r.automation_status for r in self.store.kpi_scores.list(lambda r: r.is_active))
        return {
            "kpi": {s: counts.get(s, 0) for s in AUTOMATION_STATUSES},
            "training": assignments.training_stats(self.store),
            "audits": scheduler.audit_stats(self.store, now=now),
            "emails": self.dispatcher.stats(),
        }
