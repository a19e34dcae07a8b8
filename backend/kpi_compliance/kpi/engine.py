import logging
import math
import operator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from kpi_compliance.kpi.config_loader import METRIC_KEYS

logger = logging.getLogger(__name__)

_OPS = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
}


# -------------------- Helpers --------------------

def _compare(value: float, op: str, threshold: float) -> bool:
    try:
        fn = _OPS[op]
    except KeyError:
        raise ValueError(f"Unknown comparison operator: {op}")
    return fn(value, threshold)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def coerce_percentages(raw: Mapping[str, Any]) -> Dict[str, float]:
    """Validate the seven metric percentages; each must be a number in [0, 100]."""
    out: Dict[str, float] = {}
    for key in METRIC_KEYS:
        if key not in raw or raw[key] is None or raw[key] == "":
            raise ValueError(f"Missing KPI metric: {key}")
        val = raw[key]
        if isinstance(val, bool):
            raise ValueError(f"KPI metric {key} must be numeric")
        try:
            num = float(val)
        except (TypeError, ValueError):
            raise ValueError(f"KPI metric {key} must be numeric")
        if math.isnan(num) or num < 0 or num > 100:
            raise ValueError(f"KPI metric {key} must be between 0 and 100")
        out[key] = num
    return out


# -------------------- Core Engine --------------------

@dataclass
class KPIEvaluation:
    percentages: Dict[str, float]
    metric_scores: Dict[str, float]
    overall: int
    rating: str
    triggered_actions: List[str] = field(default_factory=list)
    matched_rules: List[str] = field(default_factory=list)
    improvement_areas: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentages": dict(self.percentages),
            "metric_scores": dict(self.metric_scores),
            "overall": self.overall,
            "rating": self.rating,
            "triggered_actions": list(self.triggered_actions),
            "matched_rules": list(self.matched_rules),
            "improvement_areas": list(self.improvement_areas),
        }


def score_metric(value: float, metric_cfg: Dict[str, Any]) -> float:
    """Points of the first band whose comparison holds; 0 when none does."""
    for band in metric_cfg.get("bands") or []:
        if _compare(value, band["op"], float(band["value"])):
            return band["score"]
    return 0


def classify_rating(overall: float, config: Dict[str, Any]) -> str:
    for band in sorted(config.get("ratings") or [], key=lambda b: b["min_score"], reverse=True):
        if overall >= band["min_score"]:
            return band["rating"]
    raise ValueError(f"No rating band covers score {overall}")


def employee_status_for(overall: float, config: Dict[str, Any]) -> str:
    section = config.get("employee_status") or {}
    for band in sorted(section.get("bands") or [], key=lambda b: b["below"]):
        if overall < band["below"]:
            return band["status"]
    return section.get("default", "Active")


def evaluate_rules(overall: int, percentages: Dict[str, float], config: Dict[str, Any]):
    """Return (actions, matched rule ids).

    One score band applies (highest min_score not above overall), then every
    condition rule whose clauses all hold. Duplicates keep first position.
    """
    rules = config.get("rules") or {}
    actions: List[str] = []
    matched: List[str] = []

    def _add(rule: Dict[str, Any]) -> None:
        matched.append(rule.get("id", ""))
        for code in rule.get("actions") or []:
            if code not in actions:
                actions.append(code)

    for band in sorted(rules.get("score_bands") or [], key=lambda b: b["min_score"], reverse=True):
        if overall >= band["min_score"]:
            _add(band)
            break

    fields = dict(percentages, overall=overall)
    for rule in rules.get("conditions") or []:
        clauses = rule.get("when") or []
        if clauses and all(_compare(fields[c["field"]], c["op"], float(c["value"])) for c in clauses):
            _add(rule)

    return actions, matched


def improvement_areas(metric_scores: Dict[str, float], config: Dict[str, Any]) -> List[str]:
    areas: List[str] = []
    metrics = config.get("metrics") or {}
    for key in METRIC_KEYS:
        m = metrics[key]
        if metric_scores[key] < m["weight"] / 2:
            areas.append(m.get("improvement_label") or m.get("label") or key)
    return areas


def evaluate_kpi(raw_percentages: Mapping[str, Any], config: Dict[str, Any]) -> KPIEvaluation:
    """
    Score the seven KPI percentages, classify the rating and list triggered actions.

    Pure: no records are written. Raises ValueError for invalid input.
    """
    percentages = coerce_percentages(raw_percentages)
    metrics = config.get("metrics") or {}
    metric_scores = {k: score_metric(percentages[k], metrics[k]) for k in METRIC_KEYS}
    overall = _round_half_up(sum(metric_scores.values()))
    overall = max(0, min(100, overall))
    rating = classify_rating(overall, config)
    actions, matched = evaluate_rules(overall, percentages, config)

    evaluation = KPIEvaluation(
        percentages=percentages,
        metric_scores=metric_scores,
        overall=overall,
        rating=rating,
        triggered_actions=actions,
        matched_rules=matched,
        improvement_areas=improvement_areas(metric_scores, config),
    )

    if rating == "Unsatisfactory":
        logger.error("KPI rating %s: overall=%s actions=%s", rating, overall, ",".join(actions))
    elif rating == "Need Improvement":
        logger.warning("KPI rating %s: overall=%s actions=%s", rating, overall, ",".join(actions))
    return evaluation
