"""Named recipient lists for announcements.

A group holds explicit members and optional criteria (roles, departments).
auto_populate() rebuilds the member list from the employee directory using
those criteria. Deleting a group is a soft delete.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from kpi_compliance.core.errors import ConflictError, NotFoundError
from kpi_compliance.core.store import Store, new_id, utcnow
from kpi_compliance.people.directory import ROLES, Recipient, find_by_email, list_employees

logger = logging.getLogger(__name__)

MEMBER_ROLES = ROLES + ("admin", "other")
CRITERIA_KEYS = ("roles", "departments")
NAME_MAX = 100


@dataclass
class GroupMember:
    email: str
    name: str = ""
    role: str = "other"
    department: Optional[str] = None
    is_active: bool = True


@dataclass
class RecipientGroup:
    name: str
    description: str = ""
    members: List[GroupMember] = field(default_factory=list)
    criteria: Dict[str, List[str]] = field(default_factory=dict)
    created_by: str = "system"
    usage_count: int = 0
    last_used: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def active_members(self) -> List[GroupMember]:
        return [m for m in self.members if m.is_active]


def _check_name(store: Store, name: str, group_id: Optional[str] = None) -> str:
    value = (name or "").strip()
    if not value:
        raise ValueError("Group name is required")
    if len(value) > NAME_MAX:
        raise ValueError(f"Group name cannot exceed {NAME_MAX} characters")
    clash = store.recipient_groups.list(
        lambda g: g.is_active and g.id != group_id and g.name.lower() == value.lower()
    )
    if clash:
        raise ConflictError(f"Recipient group '{value}' already exists")
    return value


def _check_criteria(criteria: Optional[Mapping[str, Any]]) -> Dict[str, List[str]]:
    criteria = dict(criteria or {})
    unknown = set(criteria) - set(CRITERIA_KEYS)
    if unknown:
        raise ValueError(f"Unknown group criteria: {', '.join(sorted(unknown))}")
    cleaned: Dict[str, List[str]] = {}
    for key in CRITERIA_KEYS:
        values = criteria.get(key) or []
        if not isinstance(values, list):
            raise ValueError(f"Criteria '{key}' must be a list")
        cleaned[key] = [str(v) for v in values]
    bad_roles = [r for r in cleaned["roles"] if r not in ROLES]
    if bad_roles:
        raise ValueError(f"Unknown roles in criteria: {', '.join(bad_roles)}")
    return cleaned


def _member(data: Mapping[str, Any]) -> GroupMember:
    email = str(data.get("email") or "").strip().lower()
    if "@" not in email:
        raise ValueError(f"Invalid member email: {data.get('email')}")
    role = data.get("role") or "other"
    if role not in MEMBER_ROLES:
        raise ValueError(f"Unknown member role: {role}")
    return GroupMember(
        email=email,
        name=str(data.get("name") or ""),
        role=role,
        department=data.get("department"),
        is_active=bool(data.get("is_active", True)),
    )


# -------------------- Commands --------------------

def create_group(
    store: Store,
    name: str,
    description: str = "",
    members: Optional[Iterable[Mapping[str, Any]]] = None,
    criteria: Optional[Mapping[str, Any]] = None,
    created_by: str = "system",
) -> RecipientGroup:
    group = RecipientGroup(
        name=_check_name(store, name),
        description=description or "",
        criteria=_check_criteria(criteria),
        created_by=created_by,
    )
    for data in members or []:
        member = _member(data)
        if any(m.email == member.email for m in group.members):
            raise ConflictError(f"Duplicate member: {member.email}")
        group.members.append(member)
    store.recipient_groups.add(group)
    logger.info("Recipient group created: id=%s name=%s members=%s", group.id, group.name, len(group.members))
    return group


def get_group(store: Store, group_id: str) -> RecipientGroup:
    group = store.recipient_groups.get(group_id)
    if not group.is_active:
        raise NotFoundError(f"Recipient group not found: {group_id}")
    return group


def list_groups(store: Store, include_inactive: bool = False) -> List[RecipientGroup]:
    items = store.recipient_groups.list(lambda g: include_inactive or g.is_active)
    return sorted(items, key=lambda g: g.name.lower())


def update_group(store: Store, group_id: str, changes: Dict[str, Any]) -> RecipientGroup:
    group = get_group(store, group_id)
    unknown = set(changes) - {"name", "description", "criteria"}
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if "name" in changes:
        group.name = _check_name(store, changes["name"], group_id=group.id)
    if "criteria" in changes:
        group.criteria = _check_criteria(changes["criteria"])
    if "description" in changes:
        group.description = changes["description"] or ""
    group.updated_at = utcnow()
    return group


def delete_group(store: Store, group_id: str) -> RecipientGroup:
    group = get_group(store, group_id)
    group.is_active = False
    group.updated_at = utcnow()
    logger.info("Recipient group deleted: id=%s", group_id)
    return group


def add_member(store: Store, group_id: str, data: Mapping[str, Any]) -> RecipientGroup:
    group = get_group(store, group_id)
    member = _member(data)
    if any(m.email == member.email for m in group.members):
        raise ConflictError(f"{member.email} is already in group {group.name}")
    group.members.append(member)
    group.updated_at = utcnow()
    return group


def remove_member(store: Store, group_id: str, email: str) -> RecipientGroup:
    group = get_group(store, group_id)
    needle = (email or "").strip().lower()
    kept = [m for m in group.members if m.email != needle]
    if len(kept) == len(group.members):
        raise NotFoundError(f"{needle} is not a member of group {group.name}")
    group.members = kept
    group.updated_at = utcnow()
    return group


def auto_populate(store: Store, group_id: str) -> RecipientGroup:
    """Replace the members with the active employees matching the criteria."""
    group = get_group(store, group_id)
    roles = group.criteria.get("roles") or []
    departments = group.criteria.get("departments") or []
    if not roles and not departments:
        raise ValueError(f"Group {group.name} has no criteria to populate from")
    matches = [
        e for e in list_employees(store)
        if (not roles or e.role in roles) and (not departments or e.department in departments)
    ]
    group.members = [
        GroupMember(email=e.email, name=e.name, role=e.role, department=e.department) for e in matches
    ]
    group.updated_at = utcnow()
    logger.info("Recipient group populated: id=%s members=%s", group.id, len(group.members))
    return group


# -------------------- Dispatch --------------------

def group_recipients(store: Store, group_id: str) -> List[Recipient]:
    """Active members as dispatch recipients, linked to employees where the email is known."""
    group = get_group(store, group_id)
    recipients = []
    for m in group.active_members():
        emp = find_by_email(store, m.email)
        recipients.append(Recipient(
            email=m.email,
            role=m.role,
            name=m.name or (emp.name if emp else m.email),
            employee_id=emp.id if emp is not None and emp.is_active else None,
        ))
    return recipients


def mark_used(store: Store, group_id: str, now: Optional[datetime] = None) -> RecipientGroup:
    group = get_group(store, group_id)
    group.usage_count += 1
    group.last_used = now or utcnow()
    return group


def group_stats(store: Store) -> Dict[str, Any]:
    groups = list_groups(store)
    total_members = sum(len(g.members) for g in groups)
    return {
        "total_groups": len(groups),
        "total_members": total_members,
        "active_members": sum(len(g.active_members()) for g in groups),
        "average_members": round(total_members / len(groups), 2) if groups else 0.0,
        "total_usage": sum(g.usage_count for g in groups),
        "most_used": max((g.usage_count for g in groups), default=0),
    }
