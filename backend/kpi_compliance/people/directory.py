import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from kpi_compliance.core.errors import ConflictError, NotFoundError
from kpi_compliance.core.store import Store, new_id, utcnow

logger = logging.getLogger(__name__)

ROLES = ("fe", "coordinator", "manager", "hod", "compliance")
EMPLOYEE_STATUSES = ("Active", "Warning", "Audited")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class Employee:
    name: str
    email: str
    role: str = "fe"
    employee_code: Optional[str] = None
    department: Optional[str] = None
    status: str = "Active"
    kpi_score: Optional[int] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Recipient:
    email: str
    role: str
    name: str
    employee_id: Optional[str] = None


def _normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError(f"Invalid email address: {email}")
    return value


def _check_role(role: str) -> str:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}. Expected one of {', '.join(ROLES)}")
    return role


def get_active_employee(store: Store, employee_id: str) -> Employee:
    employee = store.employees.get(employee_id)
    if not employee.is_active:
        raise NotFoundError(f"Employee is inactive: {employee_id}")
    return employee


def find_by_email(store: Store, email: str) -> Optional[Employee]:
    needle = (email or "").strip().lower()
    matches = store.employees.list(lambda e: e.email == needle)
    return matches[0] if matches else None


def find_by_code(store: Store, code: str) -> Optional[Employee]:
    matches = store.employees.list(lambda e: e.employee_code is not None and e.employee_code == code)
    return matches[0] if matches else None


def register_employee(
    store: Store,
    name: str,
    email: str,
    role: str = "fe",
    employee_code: Optional[str] = None,
    department: Optional[str] = None,
) -> Employee:
    if not name or not name.strip():
        raise ValueError("Employee name is required")
    email_norm = _normalize_email(email)
    _check_role(role)
    if find_by_email(store, email_norm) is not None:
        raise ConflictError(f"Employee with email {email_norm} already exists")
    if employee_code and find_by_code(store, employee_code) is not None:
        raise ConflictError(f"Employee with code {employee_code} already exists")

    employee = Employee(
        name=name.strip(),
        email=email_norm,
        role=role,
        employee_code=employee_code,
        department=department,
    )
    store.employees.add(employee)
    logger.info("Employee registered: id=%s role=%s", employee.id, role)
    return employee


def list_employees(
    store: Store,
    role: Optional[str] = None,
    status: Optional[str] = None,
    active_only: bool = True,
) -> List[Employee]:
    def _match(e: Employee) -> bool:
        if active_only and not e.is_active:
            return False
        if role and e.role != role:
            return False
        if status and e.status != status:
            return False
        return True

    return sorted(store.employees.list(_match), key=lambda e: e.name.lower())


def update_employee(store: Store, employee_id: str, changes: Dict[str, Any]) -> Employee:
    employee = store.employees.get(employee_id)
    allowed = {"name", "email", "role", "employee_code", "department", "status"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if changes.get("employee_code"):
        other = find_by_code(store, changes["employee_code"])
        if other is not None and other.id != employee.id:
            raise ConflictError(f"Employee with code {changes['employee_code']} already exists")
    email_norm = None
    if "email" in changes:
        email_norm = _normalize_email(changes["email"])
        other = find_by_email(store, email_norm)
        if other is not None and other.id != employee.id:
            raise ConflictError(f"Employee with email {email_norm} already exists")
    role = _check_role(changes["role"]) if "role" in changes else None
    if "status" in changes and changes["status"] not in EMPLOYEE_STATUSES:
        raise ValueError(f"Unknown employee status: {changes['status']}")

    if email_norm is not None:
        employee.email = email_norm
    if role is not None:
        employee.role = role
    if "status" in changes:
        employee.status = changes["status"]
    for key in ("name", "employee_code", "department"):
        if key in changes:
            setattr(employee, key, changes[key])
    employee.updated_at = utcnow()
    return employee


def deactivate_employee(store: Store, employee_id: str) -> Employee:
    employee = store.employees.get(employee_id)
    employee.is_active = False
    employee.updated_at = utcnow()
    logger.info("Employee deactivated: id=%s", employee_id)
    return employee


def apply_kpi_result(store: Store, employee_id: str, overall: int, status: str) -> Employee:
    employee = store.employees.get(employee_id)
    employee.kpi_score = overall
    employee.status = status
    employee.updated_at = utcnow()
    return employee


def resolve_recipients(store: Store, roles: Iterable[str], employee_id: Optional[str] = None) -> List[Recipient]:
    """Resolve notification roles to unique email recipients.

    `fe` is the employee under evaluation; other roles are all active staff
    holding that role. First role an address resolves under wins.
    """
    seen = set()
    recipients: List[Recipient] = []

    def _push(emp: Employee, role: str) -> None:
        key = emp.email.lower()
        if key in seen:
            return
        seen.add(key)
        recipients.append(Recipient(email=emp.email, role=role, name=emp.name, employee_id=emp.id))

    for role in roles:
        if role == "fe":
            if employee_id:
                emp = store.employees.find(employee_id)
                if emp is not None and emp.is_active:
                    _push(emp, "fe")
            continue
        for emp in list_employees(store, role=role):
            _push(emp, role)
    return recipients
