import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_processor, get_store_dep
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import (
    ConfigSectionUpdate,
    KPIBulkRequest,
    KPIOverrideRequest,
    KPIPreviewRequest,
    KPISubmitRequest,
    KPIUpdateRequest,
    SheetImportRequest,
    UnmatchedDismissRequest,
    UnmatchedMatchRequest,
)
from kpi_compliance.automation.processor import KPITriggerProcessor
from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.core.store import Store, paginate, serialize
from kpi_compliance.integrations.google_sheets import get_config_from_env, read_kpi_rows
from kpi_compliance.kpi import (
    export_config,
    get_active_config,
    public_config,
    reset_config,
    scores,
    update_config_section,
)
from kpi_compliance.kpi.planner import build_action_plan

router = APIRouter(prefix="/kpi", tags=["kpi"])
logger = logging.getLogger(__name__)


def _process_created(processor: KPITriggerProcessor, result: Dict[str, Any]) -> Dict[str, Any]:
    automation = []
    skipped = 0
    for r in result["results"]:
        if not r["ok"]:
            continue
        try:
            automation.append(processor.process(r["id"]))
        except StateTransitionError:
            # the sweeper claimed it first
            skipped += 1
    result["automation"] = {
        "completed": sum(1 for a in automation if a["status"] == "completed"),
        "failed": sum(1 for a in automation if a["status"] == "failed"),
        "skipped": skipped,
    }
    return result


# -------------------- Configuration --------------------

@router.get("/config")
def kpi_get_config():
    try:
        return {"config": public_config(get_active_config())}
    except Exception as e:
        raise http_error(e, "Load KPI config") from e


@router.put("/config/{section}")
def kpi_update_config(section: str, body: ConfigSectionUpdate):
    try:
        cfg = update_config_section(section, body.value, updated_by=body.updated_by)
        return {"config": public_config(cfg)}
    except Exception as e:
        raise http_error(e, "Update KPI config") from e


@router.post("/config/reset")
def kpi_reset_config():
    try:
        return {"config": public_config(reset_config())}
    except Exception as e:
        raise http_error(e, "Reset KPI config") from e


@router.get("/config/export")
def kpi_export_config():
    try:
        return export_config()
    except Exception as e:
        raise http_error(e, "Export KPI config") from e


# -------------------- Scores --------------------

@router.post("/preview")
def kpi_preview(req: KPIPreviewRequest):
    try:
        return scores.preview_kpi(req.metrics.model_dump(), period=req.period)
    except Exception as e:
        raise http_error(e, "KPI preview") from e


@router.post("/scores", status_code=201)
def kpi_submit(
    req: KPISubmitRequest,
    store: Store = Depends(get_store_dep),
    processor: KPITriggerProcessor = Depends(get_processor),
):
    try:
        record = scores.submit_kpi(
            store,
            employee_id=req.employee_id,
            period=req.period,
            percentages=req.metrics.model_dump(),
            submitted_by=req.submitted_by,
            comments=req.comments,
        )
        automation = processor.process(record.id) if req.process_now else None
        logger.info("API kpi_submit ok: id=%s process_now=%s", record.id, req.process_now)
        return {"kpi_score": record.to_dict(), "automation": automation}
    except Exception as e:
        raise http_error(e, "KPI submit") from e


@router.post("/scores/bulk")
def kpi_bulk_submit(
    req: KPIBulkRequest,
    store: Store = Depends(get_store_dep),
    processor: KPITriggerProcessor = Depends(get_processor),
):
    try:
        result = scores.bulk_submit(store, req.rows, submitted_by=req.submitted_by)
        if req.process_now:
            result = _process_created(processor, result)
        return result
    except Exception as e:
        raise http_error(e, "KPI bulk submit") from e


@router.post("/import/google-sheets")
def kpi_import_sheets(
    req: SheetImportRequest,
    store: Store = Depends(get_store_dep),
    processor: KPITriggerProcessor = Depends(get_processor),
):
    try:
        settings = get_config_from_env()
        if req.worksheet:
            settings.worksheet = req.worksheet
        sheet = read_kpi_rows(settings)
        result = scores.bulk_submit(store, sheet["items"], submitted_by="google_sheets", source="google_sheets")
        if req.process_now:
            result = _process_created(processor, result)
        result["meta"] = sheet["meta"]
        result["skipped"] = sheet["skipped"]
        return result
    except Exception as e:
        raise http_error(e, "Google Sheets import") from e


@router.get("/scores/{score_id}")
def kpi_get_score(score_id: str, store: Store = Depends(get_store_dep)):
    try:
        return scores.get_kpi(store, score_id).to_dict()
    except Exception as e:
        raise http_error(e, "Get KPI score") from e


@router.put("/scores/{score_id}")
def kpi_update_score(score_id: str, req: KPIUpdateRequest, store: Store = Depends(get_store_dep)):
    try:
        record = scores.update_kpi(store, score_id, percentages=req.metrics, comments=req.comments)
        return record.to_dict()
    except Exception as e:
        raise http_error(e, "Update KPI score") from e


@router.put("/scores/{score_id}/override")
def kpi_override_score(score_id: str, req: KPIOverrideRequest, store: Store = Depends(get_store_dep)):
    try:
        record = scores.override_kpi(
            store,
            score_id,
            score=req.score,
            rating=req.rating,
            reason=req.reason,
            overridden_by=req.overridden_by,
        )
        return record.to_dict()
    except Exception as e:
        raise http_error(e, "Override KPI score") from e


@router.delete("/scores/{score_id}")
def kpi_delete_score(score_id: str, store: Store = Depends(get_store_dep)):
    try:
        record = scores.deactivate_kpi(store, score_id)
        return {"id": record.id, "is_active": record.is_active}
    except Exception as e:
        raise http_error(e, "Delete KPI score") from e


@router.get("/scores/{score_id}/triggers")
def kpi_score_triggers(score_id: str, store: Store = Depends(get_store_dep)):
    try:
        record = scores.get_kpi(store, score_id)
        plan = build_action_plan(record.evaluation, get_active_config(), record.period)
        return {
            "kpi_score_id": record.id,
            "triggered_actions": record.evaluation.triggered_actions,
            "matched_rules": record.evaluation.matched_rules,
            "plan": plan.to_dict(),
            "generated": record.generated,
        }
    except Exception as e:
        raise http_error(e, "KPI triggers") from e


@router.post("/scores/{score_id}/reprocess")
def kpi_reprocess(score_id: str, processor: KPITriggerProcessor = Depends(get_processor)):
    try:
        return processor.reprocess(score_id)
    except Exception as e:
        raise http_error(e, "KPI reprocess") from e


@router.get("/scores/{score_id}/automation-status")
def kpi_automation_status(score_id: str, store: Store = Depends(get_store_dep)):
    try:
        record = scores.get_kpi(store, score_id)
        return {
            "kpi_score_id": record.id,
            "automation_status": record.automation_status,
            "processed_at": record.to_dict()["processed_at"],
            "processing_ms": record.processing_ms,
            "errors": record.automation_errors,
            "generated": {k: len(v) for k, v in record.generated.items()},
        }
    except Exception as e:
        raise http_error(e, "KPI automation status") from e


@router.get("/pending-automation")
def kpi_pending_automation(page: int = 1, limit: int = 20, store: Store = Depends(get_store_dep)):
    try:
        items, pagination = paginate(scores.pending_automation(store), page, limit)
        return {"items": [r.to_dict() for r in items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "Pending automation") from e


# -------------------- Unmatched rows --------------------

@router.get("/unmatched")
def kpi_unmatched(
    status: Optional[str] = "open",
    period: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    store: Store = Depends(get_store_dep),
):
    try:
        items, pagination = paginate(scores.list_unmatched(store, status=status, period=period), page, limit)
        return {"items": [serialize(u) for u in items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "List unmatched KPI rows") from e


@router.post("/unmatched/{unmatched_id}/match", status_code=201)
def kpi_unmatched_match(
    unmatched_id: str,
    req: UnmatchedMatchRequest,
    store: Store = Depends(get_store_dep),
    processor: KPITriggerProcessor = Depends(get_processor),
):
    try:
        record = scores.match_unmatched(store, unmatched_id, req.employee_id, submitted_by=req.submitted_by)
        automation = processor.process(record.id) if req.process_now else None
        return {"kpi_score": record.to_dict(), "automation": automation}
    except Exception as e:
        raise http_error(e, "Match unmatched KPI row") from e


@router.delete("/unmatched/{unmatched_id}")
def kpi_unmatched_dismiss(
    unmatched_id: str,
    req: Optional[UnmatchedDismissRequest] = None,
    store: Store = Depends(get_store_dep),
):
    try:
        item = scores.dismiss_unmatched(store, unmatched_id, note=req.note if req else None)
        return serialize(item)
    except Exception as e:
        raise http_error(e, "Dismiss unmatched KPI row") from e


# -------------------- Employee views & analytics --------------------

@router.get("/employees/{employee_id}/latest")
def kpi_latest(employee_id: str, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        record = scores.latest_for(store, employee_id)
        return {"kpi_score": record.to_dict() if record else None}
    except Exception as e:
        raise http_error(e, "Latest KPI") from e


@router.get("/employees/{employee_id}/history")
def kpi_history(employee_id: str, limit: int = scores.DEFAULT_HISTORY_LIMIT, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        lim = 1 if limit <= 0 else min(100, limit)
        items = scores.history_for(store, employee_id, limit=lim)
        return {"items": [r.to_dict() for r in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "KPI history") from e


@router.get("/employees/{employee_id}/trends")
def kpi_trends(employee_id: str, limit: int = scores.DEFAULT_HISTORY_LIMIT, store: Store = Depends(get_store_dep)):
    try:
        store.employees.get(employee_id)
        return scores.trends_for(store, employee_id, limit=1 if limit <= 0 else min(24, limit))
    except Exception as e:
        raise http_error(e, "KPI trends") from e


@router.get("/overview/stats")
def kpi_overview(store: Store = Depends(get_store_dep)):
    try:
        return scores.overview_stats(store)
    except Exception as e:
        raise http_error(e, "KPI overview") from e


@router.get("/alerts/low-performers")
def kpi_low_performers(threshold: Optional[float] = None, store: Store = Depends(get_store_dep)):
    try:
        items = scores.low_performers(store, threshold=threshold)
        return {"items": [r.to_dict() for r in items], "count": len(items)}
    except Exception as e:
        raise http_error(e, "Low performers") from e
