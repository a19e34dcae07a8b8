from functools import lru_cache
from typing import Optional

from fastapi import Depends

from kpi_compliance.automation.processor import KPITriggerProcessor
from kpi_compliance.automation.sweeper import AutomationSweeper
from kpi_compliance.core.store import Store, get_store
from kpi_compliance.notifications.dispatcher import EmailDispatcher

_sweeper: Optional[AutomationSweeper] = None


def get_store_dep() -> Store:
    return get_store()


@lru_cache(maxsize=1)
def get_dispatcher() -> EmailDispatcher:
    return EmailDispatcher(get_store())


def get_processor(dispatcher: EmailDispatcher = Depends(get_dispatcher)) -> KPITriggerProcessor:
    return KPITriggerProcessor(get_store(), dispatcher)


def get_sweeper(processor: KPITriggerProcessor = Depends(get_processor)) -> AutomationSweeper:
    global _sweeper
    if _sweeper is None:
        _sweeper = AutomationSweeper(processor)
    return _sweeper


def reset_services() -> None:
    """Drop cached service objects (used after settings or store changes)."""
    global _sweeper
    get_dispatcher.cache_clear()
    _sweeper = None
