from typing import Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import MarkReadRequest
from kpi_compliance.core.store import Store, paginate, serialize
from kpi_compliance.notifications import inbox

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/{employee_id}")
def notifications_list(
    employee_id: str,
    unread_only: bool = False,
    type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    store: Store = Depends(get_store_dep),
):
    try:
        store.employees.get(employee_id)
        items = inbox.list_notifications(store, employee_id, unread_only=unread_only, type=type)
        page_items, pagination = paginate(items, page, limit)
        return {
            "items": [serialize(n) for n in page_items],
            "pagination": pagination,
            "unread": inbox.unread_count(store, employee_id),
        }
    except Exception as e:
        raise http_error(e, "List notifications") from e


@router.get("/{employee_id}/unread-count")
def notifications_unread(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        return {"employee_id": employee_id, "unread": inbox.unread_count(store, employee_id)}
    except Exception as e:
        raise http_error(e, "Unread count") from e


@router.post("/{employee_id}/mark-read")
def notifications_mark_read(employee_id: str, req: MarkReadRequest, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        return {"updated": inbox.mark_read(store, employee_id, req.ids)}
    except Exception as e:
        raise http_error(e, "Mark notifications read") from e


@router.post("/{employee_id}/mark-all-read")
def notifications_mark_all_read(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        return {"updated": inbox.mark_all_read(store, employee_id)}
    except Exception as e:
        raise http_error(e, "Mark all notifications read") from e


@router.post("/{employee_id}/{notification_id}/acknowledge")
def notifications_acknowledge(employee_id: str, notification_id: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(inbox.acknowledge(store, employee_id, notification_id))
    except Exception as e:
        raise http_error(e, "Acknowledge notification") from e
