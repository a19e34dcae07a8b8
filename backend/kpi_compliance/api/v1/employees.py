from typing import Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import (
    EmployeeCreate,
    EmployeeUpdate,
    RecognitionCreate,
    WarningClose,
    WarningCreate,
)
from kpi_compliance.core.store import Store, paginate, serialize
from kpi_compliance.people import directory, records

router = APIRouter(prefix="/employees", tags=["employees"])


@router.post("", status_code=201)
def employee_create(req: EmployeeCreate, store: Store = Depends(get_store_dep)):
    try:
        employee = directory.register_employee(
            store,
            name=req.name,
            email=req.email,
            role=req.role,
            employee_code=req.employee_code,
            department=req.department,
        )
        return serialize(employee)
    except Exception as e:
        raise http_error(e, "Register employee") from e


@router.get("")
def employee_list(
    role: Optional[str] = None,
    status: Optional[str] = None,
    include_inactive: bool = False,
    page: int = 1,
    limit: int = 20,
    store: Store = Depends(get_store_dep),
):
    try:
        items = directory.list_employees(store, role=role, status=status, active_only=not include_inactive)
        page_items, pagination = paginate(items, page, limit)
        return {"items": [serialize(e) for e in page_items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "List employees") from e


# Declared before /{employee_id} routes so "warnings" is not read as an id.
@router.post("/warnings/{warning_id}/resolve")
def warning_close(warning_id: str, req: WarningClose, store: Store = Depends(get_store_dep)):
    try:
        return serialize(records.close_warning(store, warning_id, status=req.status, note=req.note))
    except Exception as e:
        raise http_error(e, "Close warning") from e


@router.get("/{employee_id}")
def employee_get(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(store.employees.get(employee_id))
    except Exception as e:
        raise http_error(e, "Get employee") from e


@router.put("/{employee_id}")
def employee_update(employee_id: str, req: EmployeeUpdate, store: Store = Depends(get_store_dep)):
    try:
        changes = req.model_dump(exclude_unset=True)
        return serialize(directory.update_employee(store, employee_id, changes))
    except Exception as e:
        raise http_error(e, "Update employee") from e


@router.delete("/{employee_id}")
def employee_deactivate(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(directory.deactivate_employee(store, employee_id))
    except Exception as e:
        raise http_error(e, "Deactivate employee") from e


@router.get("/{employee_id}/warnings")
def employee_warnings(employee_id: str, status: Optional[str] = None, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        items = records.warnings_for(store, employee_id, status=status)
        return {"items": [serialize(w) for w in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Employee warnings") from e


@router.post("/{employee_id}/warnings", status_code=201)
def employee_issue_warning(employee_id: str, req: WarningCreate, store: Store = Depends(get_store_dep)):
    try:
        warning = records.issue_warning(
            store,
            employee_id,
            title=req.title,
            description=req.description,
            severity=req.severity,
            issued_by=req.issued_by,
        )
        records.record_event(store, employee_id, type="warning", title=req.title,
                             description=req.description, category="negative")
        return serialize(warning)
    except Exception as e:
        raise http_error(e, "Issue warning") from e


@router.get("/{employee_id}/recognitions")
def employee_recognitions(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        items = records.recognitions_for(store, employee_id)
        return {"items": [serialize(r) for r in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Employee recognitions") from e


@router.post("/{employee_id}/recognitions", status_code=201)
def employee_grant_recognition(employee_id: str, req: RecognitionCreate, store: Store = Depends(get_store_dep)):
    try:
        recognition = records.grant_recognition(
            store,
            employee_id,
            title=req.title,
            reason=req.reason,
            period=req.period,
            granted_by=req.granted_by,
        )
        records.record_event(store, employee_id, type="achievement", title=req.title,
                             description=req.reason, category="positive")
        return serialize(recognition)
    except Exception as e:
        raise http_error(e, "Grant recognition") from e


@router.get("/{employee_id}/lifecycle")
def employee_lifecycle(
    employee_id: str,
    type: Optional[str] = None,
    limit: int = 50,
    store: Store = Depends(get_store_dep),
):
    try:
        store.employees.get(employee_id)
        items = records.events_for(store, employee_id, type=type, limit=1 if limit <= 0 else min(200, limit))
        return {"items": [serialize(e) for e in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Employee lifecycle") from e


@router.get("/{employee_id}/lifecycle/stats")
def employee_lifecycle_stats(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        return records.lifecycle_stats(store, employee_id)
    except Exception as e:
        raise http_error(e, "Lifecycle stats") from e
