import copy
import logging
import os
from functools import lru_cache
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Optional

import yaml

from kpi_compliance.core.store import isoformat, utcnow
from kpi_compliance.people.directory import EMPLOYEE_STATUSES, ROLES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_RELATIVE = Path("config") / "kpi_config.yaml"

METRIC_KEYS = (
    "tat",
    "major_negativity",
    "quality",
    "neighbor_check",
    "negativity",
    "app_usage",
    "insufficiency",
)
BAND_OPERATORS = (">=", ">", "<=", "<", "==")
ACTION_KINDS = ("training", "audit", "warning", "recognition")
AUDIT_TYPES = ("audit_call", "cross_check", "dummy_audit")
TRAINING_TYPES = ("basic", "negativity_handling", "dos_donts", "app_usage")
PRIORITIES = ("low", "medium", "high", "critical")
EDITABLE_SECTIONS = ("metrics", "ratings", "employee_status", "rules", "actions", "scheduling", "notifications", "alerts")

_overrides: Dict[str, Any] = {}
_override_meta: Dict[str, Any] = {}
_lock = RLock()


def _resolve_default_config_path() -> Path:
    """
    Resolve path to config/kpi_config.yaml.
    KPI_CONFIG_PATH wins; otherwise look relative to the project root, then the CWD.
    """
    env_path = os.getenv("KPI_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()

    here = Path(__file__).resolve()
    # __file__ => backend/kpi_compliance/kpi/config_loader.py
    candidates = [
        here.parents[3] / DEFAULT_CONFIG_RELATIVE,
        here.parents[2] / DEFAULT_CONFIG_RELATIVE,
        Path.cwd() / DEFAULT_CONFIG_RELATIVE,
    ]
    for c in candidates:
        if c.exists():
            return c
    return candidates[0]


@lru_cache(maxsize=1)
def load_kpi_config() -> Dict[str, Any]:
    """Load, validate and cache the KPI rule config from YAML.

    Raises FileNotFoundError, yaml.YAMLError or ValueError on failure.
    """
    path = _resolve_default_config_path()
    if not path.exists():
        raise FileNotFoundError(f"KPI config not found at: {path}")

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    validate_kpi_config(data)
    logger.info("Loaded KPI config from %s (version=%s)", path, data.get("metadata", {}).get("version"))
    data.setdefault("_source_path", str(path))
    return data


# -------------------- Validation --------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_bands(key: str, metric: Any) -> None:
    if not isinstance(metric, dict):
        raise ValueError(f"Metric '{key}' must be a mapping")
    weight = metric.get("weight")
    if not _is_number(weight) or weight <= 0:
        raise ValueError(f"Metric '{key}' needs a positive weight")
    bands = metric.get("bands") or []
    if not isinstance(bands, list) or not bands:
        raise ValueError(f"Metric '{key}' has no bands")
    for band in bands:
        if not isinstance(band, dict):
            raise ValueError(f"Metric '{key}' bands must be mappings")
        if band.get("op") not in BAND_OPERATORS:
            raise ValueError(f"Metric '{key}' uses unknown operator: {band.get('op')}")
        if not _is_number(band.get("value")):
            raise ValueError(f"Metric '{key}' band value must be numeric")
        score = band.get("score")
        if not _is_number(score) or score < 0 or score > weight:
            raise ValueError(f"Metric '{key}' band score must be between 0 and {weight}")


def _check_score_floor(items: Any, label: str) -> None:
    if not isinstance(items, list) or not items:
        raise ValueError(f"{label} must be a non-empty list")
    for item in items:
        if not isinstance(item, dict) or not _is_number(item.get("min_score")):
            raise ValueError(f"{label} need a numeric min_score")
    if min(item["min_score"] for item in items) > 0:
        raise ValueError(f"{label} must cover a score of 0")


def _check_ratings(ratings: Any) -> None:
    _check_score_floor(ratings, "Rating bands")
    for band in ratings:
        if not isinstance(band.get("rating"), str) or not band["rating"]:
            raise ValueError("Rating bands need a rating name")


def _check_employee_status(section: Any) -> None:
    if not isinstance(section, dict):
        raise ValueError("employee_status must be a mapping")
    if section.get("default", "Active") not in EMPLOYEE_STATUSES:
        raise ValueError(f"Unknown default employee status: {section.get('default')}")
    bands = section.get("bands") or []
    if not isinstance(bands, list):
        raise ValueError("employee_status bands must be a list")
    for band in bands:
        if not isinstance(band, dict) or not _is_number(band.get("below")):
            raise ValueError("employee_status bands need a numeric 'below'")
        if band.get("status") not in EMPLOYEE_STATUSES:
            raise ValueError(f"Unknown employee status: {band.get('status')}")


def _check_scheduling(section: Any) -> None:
    if not isinstance(section, dict):
        raise ValueError("scheduling must be a mapping")
    for key in ("training_due_days", "audit_offset_days"):
        days = section.get(key)
        if days is None:
            continue
        if not isinstance(days, dict):
            raise ValueError(f"scheduling.{key} must map priorities to days")
        for priority, value in days.items():
            if priority != "default" and priority not in PRIORITIES:
                raise ValueError(f"scheduling.{key} has unknown priority: {priority}")
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"scheduling.{key}.{priority} must be a whole number of days")


def _check_notifications(section: Any) -> None:
    if not isinstance(section, dict):
        raise ValueError("notifications must map templates to role lists")
    for template, roles in section.items():
        if not isinstance(roles, list):
            raise ValueError(f"notifications.{template} must be a list of roles")
        unknown = [r for r in roles if r not in ROLES]
        if unknown:
            raise ValueError(f"notifications.{template} has unknown roles: {', '.join(map(str, unknown))}")


def _check_alerts(section: Any) -> None:
    if not isinstance(section, dict):
        raise ValueError("alerts must be a mapping")
    for key in ("low_performer_threshold", "require_action_below"):
        value = section.get(key, 0)
        if not _is_number(value) or not 0 <= value <= 100:
            raise ValueError(f"alerts.{key} must be a number between 0 and 100")


def _check_actions(actions: Any) -> None:
    if not isinstance(actions, dict):
        raise ValueError("actions must be a mapping")
    for code, action in actions.items():
        if not isinstance(action, dict):
            raise ValueError(f"Action '{code}' must be a mapping")
        kind = action.get("kind")
        if kind not in ACTION_KINDS:
            raise ValueError(f"Action '{code}' has unknown kind: {kind}")
        if kind == "audit" and action.get("audit_type") not in AUDIT_TYPES:
            raise ValueError(f"Action '{code}' has unknown audit type: {action.get('audit_type')}")
        if kind == "training" and action.get("training_type") not in TRAINING_TYPES:
            raise ValueError(f"Action '{code}' has unknown training type: {action.get('training_type')}")
        for key in ("priority", "escalate_to"):
            if key in action and action[key] not in PRIORITIES:
                raise ValueError(f"Action '{code}' has unknown {key}: {action[key]}")


def _check_rules(rules: Any, actions: Dict[str, Any]) -> None:
    if not isinstance(rules, dict):
        raise ValueError("rules must be a mapping")
    score_bands = rules.get("score_bands") or []
    _check_score_floor(score_bands, "Score-band rules")
    conditions = rules.get("conditions") or []
    if not isinstance(conditions, list):
        raise ValueError("rules.conditions must be a list")
    fields = set(METRIC_KEYS) | {"overall"}
    for rule in list(score_bands) + list(conditions):
        if not isinstance(rule, dict):
            raise ValueError("Rules must be mappings")
        for code in rule.get("actions") or []:
            if code not in actions:
                raise ValueError(f"Rule '{rule.get('id')}' references unknown action: {code}")
        for clause in rule.get("when") or []:
            if clause.get("field") not in fields:
                raise ValueError(f"Rule '{rule.get('id')}' references unknown metric: {clause.get('field')}")
            if clause.get("op") not in BAND_OPERATORS:
                raise ValueError(f"Rule '{rule.get('id')}' uses unknown operator: {clause.get('op')}")
            if not _is_number(clause.get("value")):
                raise ValueError(f"Rule '{rule.get('id')}' compares against a non-numeric value")


def validate_kpi_config(cfg: Dict[str, Any]) -> None:
    """Raise ValueError when the rule config is inconsistent.

    Every editable section is checked, so a runtime override can never leave
    the engine with a config it cannot evaluate.
    """
    metrics = cfg.get("metrics") or {}
    if not isinstance(metrics, dict):
        raise ValueError("metrics must be a mapping")
    missing = [k for k in METRIC_KEYS if k not in metrics]
    if missing:
        raise ValueError(f"Missing metric definitions: {', '.join(missing)}")
    for key in METRIC_KEYS:
        _check_bands(key, metrics[key])
    total_weight = sum(metrics[k]["weight"] for k in METRIC_KEYS)
    if abs(total_weight - 100) > 1e-9:
        raise ValueError(f"Metric weights must sum to 100 (got {total_weight})")

    _check_ratings(cfg.get("ratings") or [])
    _check_employee_status(cfg.get("employee_status") or {})
    actions = cfg.get("actions") or {}
    _check_actions(actions)
    _check_rules(cfg.get("rules") or {}, actions)
    _check_scheduling(cfg.get("scheduling") or {})
    _check_notifications(cfg.get("notifications") or {})
    _check_alerts(cfg.get("alerts") or {})


# -------------------- Runtime administration --------------------

def get_active_config() -> Dict[str, Any]:
    """File config with the in-memory section overrides applied."""
    base = load_kpi_config()
    with _lock:
        if not _overrides:
            return base
        merged = copy.deepcopy(base)
        merged.update(copy.deepcopy(_overrides))
        merged["_overrides"] = dict(_override_meta)
        return merged


def update_config_section(section: str, value: Any, updated_by: Optional[str] = None) -> Dict[str, Any]:
    if section not in EDITABLE_SECTIONS:
        raise ValueError(f"Unknown config section: {section}")
    with _lock:
        candidate = copy.deepcopy(get_active_config())
        candidate[section] = value
        validate_kpi_config(candidate)
        _overrides[section] = copy.deepcopy(value)
        _override_meta[section] = {"updated_by": updated_by, "updated_at": isoformat(utcnow())}
    logger.info("KPI config section updated: section=%s by=%s", section, updated_by)
    return get_active_config()


def reset_config() -> Dict[str, Any]:
    with _lock:
        _overrides.clear()
        _override_meta.clear()
        load_kpi_config.cache_clear()
    logger.info("KPI config reset to file defaults")
    return load_kpi_config()


def export_config() -> Dict[str, Any]:
    cfg = public_config(get_active_config())
    cfg["exported_at"] = isoformat(utcnow())
    return cfg


def public_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Drop internal keys (leading underscore) before exposing the config."""
    return {k: v for k, v in cfg.items() if not str(k).startswith("_")}
