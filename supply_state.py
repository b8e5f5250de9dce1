from __future__ import annotations
import copy
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, List, Optional


class DraftStatus(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    SUCCESS = "success"
    FAILED = "failed"


class SupplyEventType(str, Enum):
    DRAFT_CREATED = "draftCreated"
    DRAFT_VALID = "draftValid"
    DRAFT_EXPIRED = "draftExpired"
    DRAFT_INVALID = "draftInvalid"
    DRAFT_ERROR = "draftError"
    TIMESLOT_MISSING = "timeslotMissing"
    WAREHOUSE_PENDING = "warehousePending"
    WINDOW_EXPIRED = "windowExpired"
    SUPPLY_CREATED = "supplyCreated"
    SUPPLY_STATUS = "supplyStatus"
    NO_CREDENTIALS = "noCredentials"
    ERROR = "error"


class SupplyOrderStatus(str, Enum):
    TASK = "task"
    SUPPLY = "supply"
    FAILED_NO_ORDER_ID = "failed_no_order_id"


class SupplyRunOutcome(str, Enum):
    SUPPLY_CREATED = "supply_created"
    WINDOW_EXPIRED = "window_expired"
    ABORTED = "aborted"
    FAILED = "failed"


class SupplyTaskError(Exception):
    """Ошибка задачи, которую бессмысленно ретраить (валидация, исчерпан бюджет)."""


class TaskWindowExpired(Exception):
    """lastDay задачи прошёл раньше, чем удалось забронировать слот."""


def now_ts() -> int:
    return int(time.time())


def short(uid: Optional[str]) -> str:
    return (uid or "")[:8]


@dataclass
class SupplyItem:
    article: str
    quantity: int
    sku: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupplyItem":
        sku = data.get("sku")
        return cls(
            article=str(data.get("article") or ""),
            quantity=int(data.get("quantity") or 0),
            sku=int(sku) if sku not in (None, "", 0) else None,
        )


@dataclass
class SupplyTask:
    """Снимок задачи, который прогоняется через оркестратор.

    Поля ``draft_*`` принадлежат текущему черновику и сбрасываются при его
    пересоздании. ``warehouse_id`` и ``selected_timeslot`` выбраны
    пользователем и переживают пересоздание черновика.
    """
    task_id: str
    items: List[SupplyItem] = field(default_factory=list)
    city: str = ""
    warehouse_name: str = ""
    last_day: str = ""
    draft_id: int = 0
    draft_operation_id: str = ""
    order_flag: int = 0
    cluster_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    selected_timeslot: Optional[Dict[str, Any]] = None
    ready_in_days: Optional[int] = None
    warehouse_auto_select: bool = False
    warehouse_selection_pending_notified: bool = False
    draft_created_at: Optional[int] = None
    draft_expires_at: Optional[int] = None
    draft_warehouses: List[Dict[str, Any]] = field(default_factory=list)
    draft_timeslots: List[Dict[str, Any]] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)

    def reset_draft(self) -> None:
        self.draft_id = 0
        self.draft_operation_id = ""
        self.draft_created_at = None
        self.draft_expires_at = None
        self.draft_warehouses = []
        self.draft_timeslots = []

    def clone(self) -> "SupplyTask":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupplyTask":
        data = copy.deepcopy(data or {})
        items = [SupplyItem.from_dict(i) for i in data.pop("items", None) or [] if isinstance(i, dict)]
        known = {f for f in cls.__dataclass_fields__}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["task_id"] = str(kwargs.get("task_id") or "")
        return cls(items=items, **kwargs)


def record_event(task: SupplyTask, event: str, extra: Optional[Dict[str, Any]] = None):
    hist = task.history
    item: Dict[str, Any] = {"ts": now_ts(), "event": event}
    if extra:
        item.update(extra)
    hist.append(item)
    if len(hist) > 200:
        del hist[:-200]
