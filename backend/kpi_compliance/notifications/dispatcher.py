"""Bulk email dispatch with per-recipient logs and bounded retries.

Every recipient gets its own EmailLog. Transport failures never propagate to
the caller: the log is marked failed, the error kept, and retry_count bumped.
A failed log is retried until retry_count reaches max_retries.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from kpi_compliance.core.config import Settings
from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.core.store import Store, new_id, utcnow
from kpi_compliance.notifications import groups, inbox
from kpi_compliance.notifications.templates import get_template, html_to_text, render_text
from kpi_compliance.notifications.transports import OutgoingEmail, transport_from_settings
from kpi_compliance.people.directory import Recipient, list_employees

logger = logging.getLogger(__name__)

EMAIL_STATUSES = ("pending", "sent", "failed")
ERROR_MESSAGE_MAX = 500


@dataclass
class EmailLog:
    recipient_email: str
    recipient_role: str
    template: str
    subject: str
    body: str
    recipient_name: str = ""
    status: str = "pending"
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    message_id: Optional[str] = None
    employee_id: Optional[str] = None
    kpi_score_id: Optional[str] = None
    training_id: Optional[str] = None
    audit_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def can_retry(self) -> bool:
        return self.status == "failed" and self.retry_count < self.max_retries


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    pending: int = 0
    log_ids: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.sent + self.failed + self.pending

    def record(self, log: EmailLog) -> None:
        self.log_ids.append(log.id)
        if log.status == "sent":
            self.sent += 1
        elif log.status == "failed":
            self.failed += 1
        else:
            self.pending += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "pending": self.pending,
            "log_ids": list(self.log_ids),
        }


class EmailDispatcher:
    def __init__(
        self,
        store: Store,
        transport=None,
        max_retries: Optional[int] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ):
        self.store = store
        self.transport = transport if transport is not None else transport_from_settings()
        self.max_retries = Settings.EMAIL_MAX_RETRIES if max_retries is None else max_retries
        self.from_name = Settings.MAIL_FROM_NAME if from_name is None else from_name
        self.from_email = Settings.MAIL_FROM_EMAIL if from_email is None else from_email

    # -------------------- Delivery --------------------

    def _deliver(self, log: EmailLog, now: datetime) -> bool:
        message = OutgoingEmail(
            to=log.recipient_email,
            subject=log.subject,
            html=log.body,
            text=html_to_text(log.body),
            from_name=self.from_name,
            from_email=self.from_email,
        )
        log.updated_at = now
        try:
            message_id = self.transport.send(message)
        except Exception as e:
            log.status = "failed"
            log.retry_count += 1
            log.error_message = str(e)[:ERROR_MESSAGE_MAX]
            logger.warning(
                "Email delivery failed: log=%s template=%s attempt=%s/%s error=%s",
                log.id, log.template, log.retry_count, log.max_retries, log.error_message,
            )
            return False
        log.status = "sent"
        log.sent_at = now
        log.delivered_at = now
        log.message_id = message_id
        log.error_message = None
        return True

    def dispatch(
        self,
        template: str,
        recipients: Iterable[Recipient],
        variables: Mapping[str, Any],
        employee_id: Optional[str] = None,
        kpi_score_id: Optional[str] = None,
        training_id: Optional[str] = None,
        audit_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Render `template` for each unique recipient, log it and deliver it.

        Logs scheduled in the future stay pending for dispatch_due().
        """
        now = now or utcnow()
        tpl = get_template(template)
        result = DispatchResult()
        seen = set()

        for recipient in recipients:
            key = recipient.email.strip().lower()
            if key in seen:
                continue
            seen.add(key)

            values = dict(variables)
            values.setdefault("recipient_name", recipient.name)
            log = EmailLog(
                recipient_email=recipient.email,
                recipient_role=recipient.role,
                recipient_name=recipient.name,
                template=template,
                subject=render_text(tpl.subject, values, template),
                body=render_text(tpl.body, values, template, escape=True),
                max_retries=self.max_retries,
                scheduled_for=scheduled_for,
                employee_id=employee_id,
                kpi_score_id=kpi_score_id,
                training_id=training_id,
                audit_id=audit_id,
                created_at=now,
                updated_at=now,
            )
            self.store.email_logs.add(log)
            if scheduled_for is None or scheduled_for <= now:
                self._deliver(log, now)
            result.record(log)

            if recipient.role == "fe" and recipient.employee_id:
                inbox.notify_from_email(
                    self.store, recipient.employee_id, template, log.subject, log.body, email_log_id=log.id,
                )

        logger.info(
            "Email dispatch: template=%s total=%s sent=%s failed=%s pending=%s",
            template, result.total, result.sent, result.failed, result.pending,
        )
        return result

    def retry_failed(self, now: Optional[datetime] = None) -> DispatchResult:
        now = now or utcnow()
        result = DispatchResult()
        for log in self.store.email_logs.list(lambda l: l.can_retry):
            self._deliver(log, now)
            result.record(log)
        if result.total:
            logger.info("Email retry: attempted=%s sent=%s failed=%s", result.total, result.sent, result.failed)
        return result

    def resend(self, log_id: str, now: Optional[datetime] = None) -> EmailLog:
        """Manual resend of a failed log, regardless of the retry budget."""
        now = now or utcnow()
        log = self.store.email_logs.get(log_id)
        if log.status != "failed":
            raise StateTransitionError(f"Only failed emails can be resent (status={log.status})")
        self._deliver(log, now)
        return log

    def dispatch_due(self, now: Optional[datetime] = None) -> DispatchResult:
        now = now or utcnow()
        result = DispatchResult()
        due = self.store.email_logs.list(
            lambda l: l.status == "pending" and l.scheduled_for is not None and l.scheduled_for <= now
        )
        for log in sorted(due, key=lambda l: l.scheduled_for):
            self._deliver(log, now)
            result.record(log)
        return result

    def bulk_notify(
        self,
        subject: str,
        message: str,
        employee_ids: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
        group_ids: Optional[List[str]] = None,
        scheduled_for: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Generic announcement to explicit employees, whole roles and recipient groups."""
        if not subject or not message:
            raise ValueError("Subject and message are required")
        if not employee_ids and not roles and not group_ids:
            raise ValueError("Provide employee_ids, roles or group_ids")
        recipients: List[Recipient] = []
        for emp_id in employee_ids or []:
            emp = self.store.employees.get(emp_id)
            recipients.append(Recipient(email=emp.email, role=emp.role, name=emp.name, employee_id=emp.id))
        for role in roles or []:
            for emp in list_employees(self.store, role=role):
                recipients.append(Recipient(email=emp.email, role=emp.role, name=emp.name, employee_id=emp.id))
        for group_id in group_ids or []:
            recipients.extend(groups.group_recipients(self.store, group_id))
        result = self.dispatch(
            "notification",
            recipients,
            {"subject": subject, "message": message},
            scheduled_for=scheduled_for,
            now=now,
        )
        for group_id in group_ids or []:
            groups.mark_used(self.store, group_id, now)
        return result

    # -------------------- Queries --------------------

    def list_logs(
        self,
        status: Optional[str] = None,
        template: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> List[EmailLog]:
        items = self.store.email_logs.list(
            lambda l: (status is None or l.status == status)
            and (template is None or l.template == template)
            and (employee_id is None or l.employee_id == employee_id)
        )
        return sorted(items, key=lambda l: l.created_at, reverse=True)

    def stats(self) -> Dict[str, Any]:
        items = self.store.email_logs.list()
        by_status = Counter(l.status for l in items)
        by_template: Dict[str, Dict[str, int]] = {}
        for l in items:
            bucket = by_template.setdefault(l.template, {s: 0 for s in EMAIL_STATUSES})
            bucket[l.status] += 1
        return {
            "total": len(items),
            "by_status": {s: by_status.get(s, 0) for s in EMAIL_STATUSES},
            "by_template": by_template,
            "retryable": sum(1 for l in items if l.can_retry),
        }
