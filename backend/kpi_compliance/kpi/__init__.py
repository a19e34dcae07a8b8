"""KPI package: rule config, scoring engine, action planning and score records.

Exports helpers:
- load_kpi_config / get_active_config: YAML rule config (plus runtime overrides)
- evaluate_kpi: score the seven metric percentages and list triggered actions
- build_action_plan: trainings, audits, warnings and emails an evaluation calls for
"""
from .config_loader import (
    export_config,
    get_active_config,
    load_kpi_config,
    public_config,
    reset_config,
    update_config_section,
)
from .engine import KPIEvaluation, evaluate_kpi
from .planner import ActionPlan, build_action_plan
from . import scores
