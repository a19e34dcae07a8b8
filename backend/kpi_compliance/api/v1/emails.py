from typing import Optional

from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_dispatcher
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.api.v1.schemas import BulkEmailRequest, TemplatePreviewRequest
from kpi_compliance.core.store import as_utc, paginate, serialize
from kpi_compliance.notifications.dispatcher import EmailDispatcher
from kpi_compliance.notifications.templates import load_email_templates, render

router = APIRouter(prefix="/emails", tags=["emails"])


@router.get("/logs")
def email_logs(
    status: Optional[str] = None,
    template: Optional[str] = None,
    employee_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
):
    try:
        logs = dispatcher.list_logs(status=status, template=template, employee_id=employee_id)
        items, pagination = paginate(logs, page, limit)
        return {"items": [serialize(l) for l in items], "pagination": pagination}
    except Exception as e:
        raise http_error(e, "List email logs") from e


@router.get("/logs/{log_id}")
def email_log_get(log_id: str, dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    try:
        log = dispatcher.store.email_logs.get(log_id)
        data = serialize(log)
        data["can_retry"] = log.can_retry
        return data
    except Exception as e:
        raise http_error(e, "Get email log") from e


@router.post("/logs/{log_id}/resend")
def email_resend(log_id: str, dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    try:
        return serialize(dispatcher.resend(log_id))
    except Exception as e:
        raise http_error(e, "Resend email") from e


@router.post("/retry-failed")
def email_retry_failed(dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    try:
        return dispatcher.retry_failed().to_dict()
    except Exception as e:
        raise http_error(e, "Retry failed emails") from e


@router.post("/bulk")
def email_bulk(req: BulkEmailRequest, dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    try:
        result = dispatcher.bulk_notify(
            req.subject,
            req.message,
            employee_ids=req.employee_ids,
            roles=req.roles,
            group_ids=req.group_ids,
            scheduled_for=as_utc(req.scheduled_for),
        )
        return result.to_dict()
    except Exception as e:
        raise http_error(e, "Bulk email") from e


@router.get("/stats")
def email_stats(dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    try:
        return dispatcher.stats()
    except Exception as e:
        raise http_error(e, "Email stats") from e


@router.get("/templates")
def email_templates():
    try:
        templates = load_email_templates()
        return {
            "items": [
                {"key": t.key, "subject": t.subject, "placeholders": t.placeholders()}
                for t in templates.values()
            ]
        }
    except Exception as e:
        raise http_error(e, "List email templates") from e


@router.post("/templates/{key}/preview")
def email_template_preview(key: str, req: TemplatePreviewRequest):
    try:
        subject, body = render(key, req.variables)
        return {"key": key, "subject": subject, "body": body}
    except Exception as e:
        raise http_error(e, "Preview email template") from e
