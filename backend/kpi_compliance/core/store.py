import math
import uuid
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from kpi_compliance.core.errors import NotFoundError

T = TypeVar("T")

MAX_PAGE_SIZE = 100


# -------------------- Helpers --------------------

def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def serialize(item: Any) -> Dict[str, Any]:
    """Dataclass -> JSON-ready dict (datetimes as ISO8601 with trailing Z)."""
    if is_dataclass(item):
        return _jsonable(asdict(item))
    return _jsonable(dict(item))


# -------------------- Repository --------------------

class Repository(Generic[T]):
    """Thread-safe id -> record map for one entity type."""

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, T] = {}
        self._lock = RLock()

    def add(self, item: T) -> T:
        with self._lock:
            self._items[getattr(item, "id")] = item
        return item

    def find(self, item_id: str) -> Optional[T]:
        with self._lock:
            return self._items.get(item_id)

    def get(self, item_id: str) -> T:
        item = self.find(item_id)
        if item is None:
            raise NotFoundError(f"{self.name} not found: {item_id}")
        return item

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            items = list(self._items.values())
        if predicate is None:
            return items
        return [it for it in items if predicate(it)]

    def remove(self, item_id: str) -> T:
        with self._lock:
            item = self._items.pop(item_id, None)
        if item is None:
            raise NotFoundError(f"{self.name} not found: {item_id}")
        return item

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Store:
    """All repositories of the service, kept in process memory."""

    def __init__(self) -> None:
        self.employees: Repository = Repository("Employee")
        self.kpi_scores: Repository = Repository("KPI score")
        self.trainings: Repository = Repository("Training assignment")
        self.audits: Repository = Repository("Audit schedule")
        self.email_logs: Repository = Repository("Email log")
        self.notifications: Repository = Repository("Notification")
        self.lifecycle_events: Repository = Repository("Lifecycle event")
        self.warnings: Repository = Repository("Warning")
        self.recognitions: Repository = Repository("Recognition")
        self.unmatched_kpis: Repository = Repository("Unmatched KPI row")
        self.recipient_groups: Repository = Repository("Recipient group")

    def repositories(self) -> List[Repository]:
        return [v for v in vars(self).values() if isinstance(v, Repository)]

    def clear(self) -> None:
        for repo in self.repositories():
            repo.clear()


_store = Store()
_store_lock = RLock()


def get_store() -> Store:
    return _store


def reset_store() -> Store:
    with _store_lock:
        _store.clear()
    return _store


# -------------------- Pagination --------------------

def paginate(items: List[T], page: int = 1, limit: int = 10) -> Tuple[List[T], Dict[str, int]]:
    if page < 1:
        raise ValueError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    total = len(items)
    start = (page - 1) * limit
    pagination = {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if total else 0,
        "total_items": total,
        "items_per_page": limit,
    }
    return items[start:start + limit], pagination
