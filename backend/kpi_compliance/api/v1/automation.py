from fastapi import APIRouter, Depends

from kpi_compliance.api.v1.deps import get_processor, get_sweeper
from kpi_compliance.api.v1.errors import http_error
from kpi_compliance.automation.processor import KPITriggerProcessor
from kpi_compliance.automation.sweeper import AutomationSweeper

router = APIRouter(prefix="/automation", tags=["automation"])


@router.post("/run")
def automation_run(sweeper: AutomationSweeper = Depends(get_sweeper)):
    try:
        return sweeper.run_once()
    except Exception as e:
        raise http_error(e, "Automation run") from e


@router.get("/status")
def automation_status(sweeper: AutomationSweeper = Depends(get_sweeper)):
    return sweeper.status()


@router.get("/stats")
def automation_stats(processor: KPITriggerProcessor = Depends(get_processor)):
    try:
        return processor.automation_stats()
    except Exception as e:
        raise http_error(e, "Automation stats") from e
