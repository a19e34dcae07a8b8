import logging

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import GroupMemberIn, RecipientGroupCreate, RecipientGroupUpdate
from kpi_compliance.core.store import Store, serialize
from kpi_compliance.notifications import groups

router = APIRouter(prefix="/recipient-groups", tags=["recipient-groups"])
logger = logging.getLogger(__name__)


@router.get("")
def groups_list(include_inactive: bool = False, store: Store = Depends(get_store_dep)):
    try:
        items = groups.list_groups(store, include_inactive=include_inactive)
        return {"items": [serialize(g) for g in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "List recipient groups") from e


@router.get("/stats")
def groups_stats(store: Store = Depends(get_store_dep)):
    try:
        return groups.group_stats(store)
    except Exception as e:
        raise http_error(e, "Recipient group stats") from e


@router.post("", status_code=201)
def groups_create(req: RecipientGroupCreate, store: Store = Depends(get_store_dep)):
    try:
        group = groups.create_group(
            store,
            req.name,
            description=req.description,
            members=[m.model_dump() for m in req.members],
            criteria=req.criteria,
            created_by=req.created_by,
        )
        logger.info("API groups_create ok: id=%s", group.id)
        return serialize(group)
    except Exception as e:
        raise http_error(e, "Create recipient group") from e


@router.get("/{group_id}")
def groups_get(group_id: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(groups.get_group(store, group_id))
    except Exception as e:
        raise http_error(e, "Get recipient group") from e


@router.put("/{group_id}")
def groups_update(group_id: str, req: RecipientGroupUpdate, store: Store = Depends(get_store_dep)):
    try:
        changes = req.model_dump(exclude_unset=True)
        return serialize(groups.update_group(store, group_id, changes))
    except Exception as e:
        raise http_error(e, "Update recipient group") from e


@router.delete("/{group_id}")
def groups_delete(group_id: str, store: Store = Depends(get_store_dep)):
    try:
        group = groups.delete_group(store, group_id)
        return {"id": group.id, "is_active": group.is_active}
    except Exception as e:
        raise http_error(e, "Delete recipient group") from e


@router.post("/{group_id}/members", status_code=201)
def groups_add_member(group_id: str, req: GroupMemberIn, store: Store = Depends(get_store_dep)):
    try:
        return serialize(groups.add_member(store, group_id, req.model_dump()))
    except Exception as e:
        raise http_error(e, "Add group member") from e


@router.delete("/{group_id}/members/{email}")
def groups_remove_member(group_id: str, email: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(groups.remove_member(store, group_id, email))
    except Exception as e:
        raise http_error(e, "Remove group member") from e


@router.post("/{group_id}/auto-populate")
def groups_auto_populate(group_id: str, store: Store = Depends(get_store_dep)):
    try:
        return serialize(groups.auto_populate(store, group_id))
    except Exception as e:
        raise http_error(e, "Auto-populate recipient group") from e
