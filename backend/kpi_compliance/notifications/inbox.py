import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from kpi_compliance.core.store import Store, new_id, utcnow
from kpi_compliance.notifications.templates import html_to_text

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("kpi", "performance", "training", "audit", "warning", "achievement", "info")
NOTIFICATION_PRIORITIES = ("normal", "high", "urgent")

# template -> (type, priority, action url)
TEMPLATE_ROUTING = {
    "kpi_score": ("kpi", "normal", "/kpi-scores"),
    "training": ("training", "high", "/training"),
    "audit": ("audit", "high", "/audits"),
    "audit_update": ("audit", "normal", "/audits"),
    "warning": ("warning", "urgent", "/kpi-scores"),
    "recognition": ("achievement", "normal", "/kpi-scores"),
    "notification": ("info", "normal", None),
}

SNIPPET_LENGTH = 200


@dataclass
class Notification:
    employee_id: str
    title: str
    message: str
    type: str = "info"
    priority: str = "normal"
    action_url: Optional[str] = None
    email_log_id: Optional[str] = None
    read_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


def create_notification(
    store: Store,
    employee_id: str,
    title: str,
    message: str,
    type: str = "info",
    priority: str = "normal",
    action_url: Optional[str] = None,
    email_log_id: Optional[str] = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type}")
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValueError(f"Unknown notification priority: {priority}")
    item = Notification(
        employee_id=employee_id,
        title=title,
        message=message,
        type=type,
        priority=priority,
        action_url=action_url,
        email_log_id=email_log_id,
    )
    store.notifications.add(item)
    return item


def notify_from_email(store: Store, employee_id: str, template: str, subject: str, body: str,
                      email_log_id: Optional[str] = None) -> Notification:
    type_, priority, url = TEMPLATE_ROUTING.get(template, ("info", "normal", None))
    return create_notification(
        store,
        employee_id=employee_id,
        title=subject,
        message=html_to_text(body, SNIPPET_LENGTH),
        type=type_,
        priority=priority,
        action_url=url,
        email_log_id=email_log_id,
    )


def list_notifications(store: Store, employee_id: str, unread_only: bool = False,
                       type: Optional[str] = None) -> List[Notification]:
    items = store.notifications.list(
        lambda n: n.employee_id == employee_id
        and (not unread_only or not n.is_read)
        and (type is None or n.type == type)
    )
    return sorted(items, key=lambda n: n.created_at, reverse=True)


def unread_count(store: Store, employee_id: str) -> int:
    return len(list_notifications(store, employee_id, unread_only=True))


def mark_read(store: Store, employee_id: str, ids: Iterable[str], now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    wanted = set(ids)
    changed = 0
    for n in list_notifications(store, employee_id, unread_only=True):
        if n.id in wanted:
            n.read_at = now
            changed += 1
    return changed


def mark_all_read(store: Store, employee_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    items = list_notifications(store, employee_id, unread_only=True)
    for n in items:
        n.read_at = now
    return len(items)


def acknowledge(store: Store, employee_id: str, notification_id: str, now: Optional[datetime] = None) -> Notification:
    now = now or utcnow()
    item = store.notifications.get(notification_id)
    if item.employee_id != employee_id:
        raise ValueError("Notification does not belong to this employee")
    item.acknowledged_at = now
    if item.read_at is None:
        item.read_at = now
    return item
