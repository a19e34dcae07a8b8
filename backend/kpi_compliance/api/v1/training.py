from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import TrainingComplete, TrainingCreate, TrainingUpdate
from kpi_compliance.core.store import Store, as_utc, paginate, serialize, utcnow
from kpi_compliance.training import assignments
from kpi_compliance.training.assignments import TrainingAssignment

router = APIRouter(prefix="/training", tags=["training"])


def training_out(training: TrainingAssignment) -> Dict[str, Any]:
    now = utcnow()
    data = serialize(training)
    data["is_overdue"] = training.is_overdue(now)
    data["days_until_due"] = training.days_until_due(now)
    return data


@router.post("", status_code=201)
def training_create(req: TrainingCreate, store: Store = Depends(get_store_dep)):
    try:
        training = assignments.assign_training(
            store,
            employee_id=req.employee_id,
            training_type=req.training_type,
            due_date=as_utc(req.due_date),
            title=req.title,
            priority=req.priority,
            reason=req.reason,
            assigned_by="manual",
        )
        return training_out(training)
    except Exception as e:
        raise http_error(e, "Assign training") from e


@router.get("/pending")
def training_pending(page: int = 1, limit: int = 10, store: Store = Depends(get_store_dep)):
    try:
        items, pagination = paginate(assignments.pending_trainings(store), page, limit)
        return {"items": [training_out(t) for t in items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "Pending trainings") from e


@router.get("/overdue")
def training_overdue(store: Store = Depends(get_store_dep)):
    try:
        items = assignments.overdue_trainings(store)
        return {"items": [training_out(t) for t in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Overdue trainings") from e


@router.get("/stats")
def training_stats(store: Store = Depends(get_store_dep)):
    try:
        return assignments.training_stats(store)
    except Exception as e:
        raise http_error(e, "Training stats") from e


@router.get("/employee/{employee_id}")
def training_for_employee(employee_id: str, status: Optional[str] = None, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        items = assignments.trainings_for(store, employee_id, status=status)
        return {"items": [training_out(t) for t in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Employee trainings") from e


@router.get("/{training_id}")
def training_get(training_id: str, store: Store = Depends(get_store_dep)):
    try:
        return training_out(store.trainings.get(training_id))
    except Exception as e:
        raise http_error(e, "Get training") from e


@router.put("/{training_id}")
def training_update(training_id: str, req: TrainingUpdate, store: Store = Depends(get_store_dep)):
    try:
        changes = req.model_dump(exclude_unset=True)
        if changes.get("due_date") is not None:
            changes["due_date"] = as_utc(changes["due_date"])
        return training_out(assignments.update_training(store, training_id, changes))
    except Exception as e:
        raise http_error(e, "Update training") from e


@router.delete("/{training_id}")
def training_cancel(training_id: str, store: Store = Depends(get_store_dep)):
    try:
        return training_out(assignments.cancel_training(store, training_id))
    except Exception as e:
        raise http_error(e, "Cancel training") from e


@router.post("/{training_id}/start")
def training_start(training_id: str, store: Store = Depends(get_store_dep)):
    try:
        return training_out(assignments.start_training(store, training_id))
    except Exception as e:
        raise http_error(e, "Start training") from e


@router.post("/{training_id}/complete")
def training_complete(training_id: str, req: TrainingComplete, store: Store = Depends(get_store_dep)):
    try:
        training = assignments.complete_training(store, training_id, score=req.score, notes=req.notes)
        return training_out(training)
    except Exception as e:
        raise http_error(e, "Complete training") from e
