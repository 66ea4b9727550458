from __future__ import annotations
import datetime as dt
import re
import uuid
from dataclasses import MISSING, dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

UTC = dt.timezone.utc
# sorts before every real timestamp; stands in for "never"
MIN_STAMP = dt.datetime.min.replace(tzinfo=UTC)

_FRACTION = re.compile(r"(\.\d{6})\d+")


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> Optional[dt.datetime]:
    """ISO-8601 text (or a datetime) -> aware UTC datetime. Naive input is taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(r"\1", text)
        ts = dt.datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def format_datetime(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_datetime(value).isoformat()


class Priority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2


class ReviewPeriod(str, Enum):
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"
    YEAR = "Year"


def wire(key: str, kind: Optional[str] = None, default: Any = None, factory=None):
    """Dataclass field serialized under the camelCase JSON `key`."""
    meta = {"key": key, "kind": kind}
    if factory is not None:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


def _load(value: Any, kind: Optional[str]) -> Any:
    if value is None:
        return None
    if kind == "datetime":
        return parse_datetime(value)
    if kind == "priority":
        if isinstance(value, str) and not value.isdigit():
            return Priority[value.upper()]
        return Priority(int(value))
    if kind == "period":
        for period in ReviewPeriod:
            if period.value.lower() == str(value).lower():
                return period
        raise ValueError(f"unknown review period: {value!r}")
    return value


def _dump(value: Any, kind: Optional[str]) -> Any:
    if value is None:
        return None
    if kind == "datetime":
        return format_datetime(value)
    if kind == "priority":
        return int(value)
    if kind == "period":
        return ReviewPeriod(value).value
    return value


class Record:
    """JSON (de)serialization shared by every synced entity.

    Keys the model does not know about survive a load/dump cycle in `extra`.
    A record read without an id keeps an empty id; the merge rejects it.
    """
    COLLECTION: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(getattr(self, "extra", {}) or {})
        for f in fields(self):
            key = f.metadata.get("key")
            if key:
                out[key] = _dump(getattr(self, f.name), f.metadata.get("kind"))
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        if not isinstance(data, dict):
            raise TypeError(f"{cls.__name__}: expected an object, got {type(data).__name__}")
        kwargs: Dict[str, Any] = {}
        known = set()
        for f in fields(cls):
            key = f.metadata.get("key")
            if not key:
                continue
            known.add(key)
            if key not in data:
                continue
            value = data[key]
            if value is None and f.default is not MISSING and f.default is not None:
                continue
            kwargs[f.name] = _load(value, f.metadata.get("kind"))
        kwargs["id"] = str(data.get("id") or "")
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs)

    def version_stamp(self) -> dt.datetime:
        return getattr(self, "updated_at", None) or MIN_STAMP


@dataclass
class Task(Record):
    COLLECTION: ClassVar[str] = "tasks"

    id: str = wire("id", factory=new_id)
    title: str = wire("title", default="")
    is_completed: bool = wire("isCompleted", default=False)
    completed_at: Optional[dt.datetime] = wire("completedAt", "datetime")
    priority: Priority = wire("priority", "priority", default=Priority.LOW)
    due_date: Optional[dt.datetime] = wire("dueDate", "datetime")
    due_time: Optional[str] = wire("dueTime")  # "HH:MM"
    note: Optional[str] = wire("note")
    group_id: Optional[str] = wire("groupId")
    parent_id: Optional[str] = wire("parentId")  # set -> sub-task
    original_due_date: Optional[dt.datetime] = wire("originalDueDate", "datetime")  # before postponing
    created_at: dt.datetime = wire("createdAt", "datetime", factory=utcnow)
    updated_at: dt.datetime = wire("updatedAt", "datetime", factory=utcnow)
    sub_task_total: int = wire("subTaskTotal", default=0)
    sub_task_completed: int = wire("subTaskCompleted", default=0)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_subtask(self) -> bool:
        return bool(self.parent_id)

    def version_stamp(self) -> dt.datetime:
        # completing a task is a change even when updatedAt was not bumped
        return max(self.updated_at or MIN_STAMP, self.completed_at or MIN_STAMP)


@dataclass
class Group(Record):
    COLLECTION: ClassVar[str] = "groups"

    id: str = wire("id", factory=new_id)
    name: str = wire("name", default="")
    icon: str = wire("icon", default="📁")
    color: str = wire("color", default="#6366F1")
    order: int = wire("order", default=0)
    created_at: dt.datetime = wire("createdAt", "datetime", factory=utcnow)
    updated_at: Optional[dt.datetime] = wire("updatedAt", "datetime")
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def version_stamp(self) -> dt.datetime:
        return self.updated_at or self.created_at or MIN_STAMP


@dataclass
class Project(Record):
    COLLECTION: ClassVar[str] = "projects"

    id: str = wire("id", factory=new_id)
    name: str = wire("name", default="")
    icon: str = wire("icon", default="📁")
    color: str = wire("color", default="#3B82F6")
    description: Optional[str] = wire("description")
    linked_group_id: Optional[str] = wire("linkedGroupId")
    is_archived: bool = wire("isArchived", default=False)
    created_at: dt.datetime = wire("createdAt", "datetime", factory=utcnow)
    updated_at: dt.datetime = wire("updatedAt", "datetime", factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ReviewNote(Record):
    COLLECTION: ClassVar[str] = "reviews"

    id: str = wire("id", factory=new_id)
    period: ReviewPeriod = wire("period", "period", default=ReviewPeriod.DAY)
    date: Optional[dt.datetime] = wire("date", "datetime")  # anchor day of the period
    title: str = wire("title", default="")
    content: str = wire("content", default="")
    reflection: Optional[str] = wire("reflection")
    next_plan: Optional[str] = wire("nextPlan")
    created_at: dt.datetime = wire("createdAt", "datetime", factory=utcnow)
    updated_at: dt.datetime = wire("updatedAt", "datetime", factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class JournalEntry(Record):
    COLLECTION: ClassVar[str] = "journalEntries"

    id: str = wire("id", factory=new_id)
    content: str = wire("content", default="")
    mood: Optional[str] = wire("mood")
    created_at: dt.datetime = wire("createdAt", "datetime", factory=utcnow)
    updated_at: dt.datetime = wire("updatedAt", "datetime", factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def date_key(self) -> str:
        return self.created_at.date().isoformat()


COLLECTIONS: Tuple[Tuple[str, Type[Record]], ...] = (
    ("tasks", Task),
    ("groups", Group),
    ("projects", Project),
    ("reviews", ReviewNote),
    ("journalEntries", JournalEntry),
)
COLLECTION_NAMES = tuple(name for name, _ in COLLECTIONS)
MODEL_BY_COLLECTION: Dict[str, Type[Record]] = dict(COLLECTIONS)

# wire name -> Snapshot attribute
_SNAPSHOT_ATTR = {
    "tasks": "tasks",
    "groups": "groups",
    "projects": "projects",
    "reviews": "reviews",
    "journalEntries": "journal_entries",
}


@dataclass
class Snapshot:
    """All five collections at one point in time; also the remote wire format."""
    user_id: str = ""
    tasks: List[Task] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    reviews: List[ReviewNote] = field(default_factory=list)
    journal_entries: List[JournalEntry] = field(default_factory=list)
    updated_at: Optional[dt.datetime] = None

    def collection(self, name: str) -> List[Record]:
        return getattr(self, _SNAPSHOT_ATTR[name])

    def with_collection(self, name: str, items: List[Record]) -> "Snapshot":
        return replace(self, **{_SNAPSHOT_ATTR[name]: list(items)})

    def entity_count(self) -> int:
        return sum(len(self.collection(name)) for name in COLLECTION_NAMES)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"userId": self.user_id}
        for name in COLLECTION_NAMES:
            out[name] = [item.to_dict() for item in self.collection(name)]
        out["updatedAt"] = format_datetime(self.updated_at)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        if not isinstance(data, dict):
            raise TypeError(f"Snapshot: expected an object, got {type(data).__name__}")
        kwargs: Dict[str, Any] = {
            "user_id": str(data.get("userId") or ""),
            "updated_at": parse_datetime(data.get("updatedAt")),
        }
        for name, model in COLLECTIONS:
            items = data.get(name) or []
            if not isinstance(items, list):
                raise TypeError(f"Snapshot.{name}: expected a list")
            kwargs[_SNAPSHOT_ATTR[name]] = [model.from_dict(item) for item in items]
        return cls(**kwargs)
