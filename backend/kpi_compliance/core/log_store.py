"""In-memory ring buffer of recent log records for the /logs endpoints.

Records logged with ``extra={"kpi_score_id": ..., "employee_id": ...}`` keep
that context, so the automation trail of one KPI record or one employee can
be pulled back out without shipping logs anywhere.
"""
import logging
from collections import Counter, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Deque, Dict, List, Optional

CONTEXT_FIELDS = ("kpi_score_id", "employee_id")


@dataclass
class LogEntry:
    timestamp: str
    level: str
    levelno: int
    logger: str
    module: str
    funcName: str
    lineNo: int
    thread: str
    message: str
    kpi_score_id: Optional[str] = None
    employee_id: Optional[str] = None

    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))


_entries: Deque[LogEntry] = deque(maxlen=1000)
_lock = RLock()
_handler: Optional["RingBufferHandler"] = None


class RingBufferHandler(logging.Handler):
    """Keeps the most recent records in memory, with any KPI context attached."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            entry = LogEntry(
                timestamp=created.isoformat().replace("+00:00", "Z"),
                level=record.levelname,
                levelno=record.levelno,
                logger=record.name,
                module=record.module,
                funcName=record.funcName,
                lineNo=record.lineno,
                thread=record.threadName,
                message=record.getMessage(),
                **{name: _context(record, name) for name in CONTEXT_FIELDS},
            )
        except Exception:
            self.handleError(record)
            return
        with _lock:
            _entries.append(entry)


def _context(record: logging.LogRecord, name: str) -> Optional[str]:
    value = getattr(record, name, None)
    return str(value) if value is not None else None


def init_logging_buffer(capacity: int = 1000) -> None:
    """Attach the ring buffer handler to the root logger.

    Calling again only resizes the buffer, keeping the newest entries.
    """
    global _entries, _handler
    if capacity <= 0:
        raise ValueError("Log buffer capacity must be positive")
    with _lock:
        _entries = deque(_entries, maxlen=capacity)
        if _handler is None:
            _handler = RingBufferHandler()
            logging.getLogger().addHandler(_handler)


def clear_logs() -> None:
    with _lock:
        _entries.clear()


def _parse_since(since: Optional[str]) -> Optional[datetime]:
    if not since:
        return None
    s = since.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError("Invalid 'since' timestamp. Use ISO8601, e.g. 2025-08-29T12:00:00Z") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_level(name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    value = logging.getLevelName(name.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {name}")
    return value


def get_recent_logs(
    limit: int = 100,
    level: Optional[str] = None,
    since: Optional[str] = None,
    logger_prefix: Optional[str] = None,
    min_level: Optional[str] = None,
    kpi_score_id: Optional[str] = None,
    employee_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Newest-first log entries.

    ``level`` matches one level exactly, ``min_level`` keeps that level and
    above. ``kpi_score_id`` and ``employee_id`` match the logged context.
    """
    if limit <= 0:
        return []
    level_norm = level.upper() if level else None
    floor = _parse_level(min_level)
    ts_since = _parse_since(since)

    with _lock:
        items = list(_entries)

    def _match(entry: LogEntry) -> bool:
        if level_norm and entry.level.upper() != level_norm:
            return False
        if floor is not None and entry.levelno < floor:
            return False
        if logger_prefix and not entry.logger.startswith(logger_prefix):
            return False
        if kpi_score_id and entry.kpi_score_id != kpi_score_id:
            return False
        if employee_id and entry.employee_id != employee_id:
            return False
        if ts_since and entry.created_at() < ts_since:
            return False
        return True

    filtered = [it for it in items if _match(it)]
    result = [asdict(it) for it in filtered[-limit:]]
    result.reverse()
    return result


def log_summary() -> Dict[str, Any]:
    """Counts per level and per top-level package of what the buffer holds."""
    with _lock:
        items = list(_entries)
        capacity = _entries.maxlen
    by_level = Counter(it.level for it in items)
    by_area = Counter(".".join(it.logger.split(".")[:2]) for it in items)
    return {
        "buffered": len(items),
        "capacity": capacity,
        "by_level": dict(by_level),
        "by_logger": dict(by_area.most_common(10)),
        "oldest": items[0].timestamp if items else None,
        "newest": items[-1].timestamp if items else None,
        "with_kpi_context": sum(1 for it in items if it.kpi_score_id),
    }
