from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from supply_state import DraftStatus, SupplyTask, now_ts, short

logger = logging.getLogger(__name__)


class WizardStage(str, Enum):
    AUTH_WELCOME = "authWelcome"
    AUTH_API_KEY = "authApiKey"
    AUTH_CLIENT_ID = "authClientId"
    AUTH_RESET_CONFIRM = "authResetConfirm"
    LANDING = "landing"
    AWAIT_SPREADSHEET = "awaitSpreadsheet"
    PROCESSING = "processing"
    AWAIT_DROP_OFF_QUERY = "awaitDropOffQuery"
    DROP_OFF_SELECT = "dropOffSelect"
    CLUSTER_PROMPT = "clusterPrompt"
    CLUSTER_SELECT = "clusterSelect"
    WAREHOUSE_SELECT = "warehouseSelect"
    DRAFT_WAREHOUSE_SELECT = "draftWarehouseSelect"
    TIMESLOT_SELECT = "timeslotSelect"
    AWAIT_READY_DAYS = "awaitReadyDays"
    TASKS_LIST = "tasksList"
    TASK_DETAILS = "taskDetails"
    ORDERS_LIST = "ordersList"
    ORDER_DETAILS = "orderDetails"


# общие для WizardState и TaskContext поля выбора и черновика
TASK_FIELDS: Tuple[str, ...] = (
    "selected_cluster_id", "selected_cluster_name",
    "selected_warehouse_id", "selected_warehouse_name",
    "selected_drop_off_id", "selected_drop_off_name",
    "selected_timeslot", "ready_in_days", "auto_warehouse_selection",
    "draft_status", "draft_operation_id", "draft_id", "draft_created_at",
    "draft_expires_at", "draft_error", "draft_warehouses", "draft_timeslots",
)


@dataclass
class TaskContext:
    task_id: str
    task: SupplyTask
    stage: WizardStage = WizardStage.AWAIT_DROP_OFF_QUERY
    summary_items: List[Dict[str, Any]] = field(default_factory=list)
    selected_cluster_id: Optional[int] = None
    selected_cluster_name: Optional[str] = None
    selected_warehouse_id: Optional[int] = None
    selected_warehouse_name: Optional[str] = None
    selected_drop_off_id: Optional[int] = None
    selected_drop_off_name: Optional[str] = None
    selected_timeslot: Optional[Dict[str, Any]] = None
    ready_in_days: Optional[int] = None
    auto_warehouse_selection: bool = False
    draft_status: DraftStatus = DraftStatus.IDLE
    draft_operation_id: Optional[str] = None
    draft_id: Optional[int] = None
    draft_created_at: Optional[int] = None
    draft_expires_at: Optional[int] = None
    draft_error: Optional[str] = None
    draft_warehouses: List[Dict[str, Any]] = field(default_factory=list)
    draft_timeslots: List[Dict[str, Any]] = field(default_factory=list)
    created_at: int = field(default_factory=now_ts)
    updated_at: int = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}
        data["task"] = self.task.to_dict()
        data["stage"] = self.stage.value
        data["draft_status"] = self.draft_status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskContext":
        data = copy.deepcopy(data or {})
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["task"] = SupplyTask.from_dict(data.get("task") or {})
        kwargs["task_id"] = str(data.get("task_id") or kwargs["task"].task_id)
        kwargs["stage"] = _stage(data.get("stage"), WizardStage.AWAIT_DROP_OFF_QUERY)
        kwargs["draft_status"] = _draft_status(data.get("draft_status"))
        return cls(**kwargs)


@dataclass
class WizardState:
    chat_id: str
    stage: WizardStage = WizardStage.LANDING
    selected_cluster_id: Optional[int] = None
    selected_cluster_name: Optional[str] = None
    selected_warehouse_id: Optional[int] = None
    selected_warehouse_name: Optional[str] = None
    selected_drop_off_id: Optional[int] = None
    selected_drop_off_name: Optional[str] = None
    selected_timeslot: Optional[Dict[str, Any]] = None
    ready_in_days: Optional[int] = None
    auto_warehouse_selection: bool = False
    draft_status: DraftStatus = DraftStatus.IDLE
    draft_operation_id: Optional[str] = None
    draft_id: Optional[int] = None
    draft_created_at: Optional[int] = None
    draft_expires_at: Optional[int] = None
    draft_error: Optional[str] = None
    draft_warehouses: List[Dict[str, Any]] = field(default_factory=list)
    draft_timeslots: List[Dict[str, Any]] = field(default_factory=list)
    clusters: List[Dict[str, Any]] = field(default_factory=list)
    warehouses: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    drop_offs: List[Dict[str, Any]] = field(default_factory=list)
    drop_off_query: Optional[str] = None
    orders: List[Dict[str, Any]] = field(default_factory=list)
    pending_tasks: List[Dict[str, Any]] = field(default_factory=list)
    selected_task_id: Optional[str] = None
    selected_order_id: Optional[str] = None
    pending_api_key: Optional[str] = None
    task_contexts: Dict[str, TaskContext] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ts)
    updated_at: int = field(default_factory=now_ts)

    def active_context(self) -> Optional[TaskContext]:
        if not self.selected_task_id:
            return None
        return self.task_contexts.get(self.selected_task_id)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self) if f.name != "task_contexts"}
        data["stage"] = self.stage.value
        data["draft_status"] = self.draft_status.value
        data["task_contexts"] = {k: v.to_dict() for k, v in self.task_contexts.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WizardState":
        data = copy.deepcopy(data or {})
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["chat_id"] = str(data.get("chat_id") or "")
        kwargs["stage"] = _stage(data.get("stage"), WizardStage.LANDING)
        kwargs["draft_status"] = _draft_status(data.get("draft_status"))
        kwargs["task_contexts"] = {
            str(k): TaskContext.from_dict(v) for k, v in (data.get("task_contexts") or {}).items()
            if isinstance(v, dict)
        }
        return cls(**kwargs)


def _stage(value: Any, default: WizardStage) -> WizardStage:
    try:
        return WizardStage(value)
    except ValueError:
        return default


def _draft_status(value: Any) -> DraftStatus:
    try:
        return DraftStatus(value)
    except ValueError:
        return DraftStatus.IDLE


# ------------------- события -------------------

@dataclass(frozen=True)
class GoTo:
    stage: WizardStage


@dataclass(frozen=True)
class ApiKeyEntered:
    api_key: str


@dataclass(frozen=True)
class AuthCompleted:
    pass


@dataclass(frozen=True)
class TaskLoaded:
    task: SupplyTask
    summary_items: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class DropOffsFound:
    query: str
    drop_offs: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class DropOffSelected:
    drop_off_id: int
    name: str


@dataclass(frozen=True)
class ClustersLoaded:
    clusters: Tuple[Dict[str, Any], ...]
    warehouses: Dict[str, List[Dict[str, Any]]]


@dataclass(frozen=True)
class ClusterSelected:
    cluster_id: int
    name: str


@dataclass(frozen=True)
class WarehouseSelected:
    warehouse_id: Optional[int]
    name: Optional[str]
    auto: bool = False


@dataclass(frozen=True)
class DraftStarted:
    pass


@dataclass(frozen=True)
class DraftOperationCreated:
    operation_id: str
    created_at: Optional[int] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class DraftSucceeded:
    operation_id: str
    draft_id: int
    warehouses: Tuple[Dict[str, Any], ...]
    created_at: Optional[int] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class DraftFailed:
    error: str


@dataclass(frozen=True)
class DraftWarehouseSelected:
    warehouse_id: int
    name: str
    timeslots: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class TimeslotSelected:
    timeslot: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class ReadyDaysSet:
    days: int


@dataclass(frozen=True)
class TaskLaunched:
    task_id: str


@dataclass(frozen=True)
class TaskRemoved:
    task_id: str


@dataclass(frozen=True)
class PendingTasksLoaded:
    tasks: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class TaskSelected:
    task_id: str


@dataclass(frozen=True)
class OrdersLoaded:
    orders: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class OrderSelected:
    order_id: str


@dataclass(frozen=True)
class Reset:
    pass


# ------------------- редьюсер -------------------

def _reset_draft(s: WizardState):
    s.draft_status = DraftStatus.IDLE
    s.draft_operation_id = None
    s.draft_id = None
    s.draft_created_at = None
    s.draft_expires_at = None
    s.draft_error = None
    s.draft_warehouses = []
    s.draft_timeslots = []
    s.selected_timeslot = None


def _reset_warehouse(s: WizardState):
    s.selected_warehouse_id = None
    s.selected_warehouse_name = None
    s.auto_warehouse_selection = False
    _reset_draft(s)


def _clear_selection(s: WizardState):
    _reset_warehouse(s)
    s.selected_cluster_id = None
    s.selected_cluster_name = None
    s.selected_drop_off_id = None
    s.selected_drop_off_name = None
    s.ready_in_days = None
    s.drop_offs = []
    s.drop_off_query = None


def _next_after_location(s: WizardState) -> WizardStage:
    if s.selected_cluster_id and s.selected_drop_off_id:
        return WizardStage.WAREHOUSE_SELECT
    if not s.selected_drop_off_id:
        return WizardStage.AWAIT_DROP_OFF_QUERY
    return WizardStage.CLUSTER_PROMPT


def sync_task_context(s: WizardState):
    """Переносит выбор чата в активный TaskContext и в его SupplyTask."""
    ctx = s.active_context()
    if ctx is None:
        return
    for name in TASK_FIELDS:
        setattr(ctx, name, copy.deepcopy(getattr(s, name)))
    ctx.stage = s.stage
    ctx.updated_at = now_ts()
    task = ctx.task
    task.cluster_id = s.selected_cluster_id
    task.warehouse_id = s.selected_warehouse_id
    task.warehouse_name = s.selected_warehouse_name or ""
    task.warehouse_auto_select = bool(s.auto_warehouse_selection)
    task.selected_timeslot = copy.deepcopy(s.selected_timeslot)
    task.ready_in_days = s.ready_in_days
    task.draft_operation_id = s.draft_operation_id or ""
    task.draft_id = s.draft_id or 0
    task.draft_created_at = s.draft_created_at
    task.draft_expires_at = s.draft_expires_at
    task.draft_warehouses = copy.deepcopy(s.draft_warehouses)
    task.draft_timeslots = copy.deepcopy(s.draft_timeslots)


def overlay_task_context(s: WizardState) -> WizardState:
    """Копия состояния, в которой поля активной задачи взяты из её TaskContext."""
    out = copy.deepcopy(s)
    ctx = out.active_context()
    if ctx is None:
        return out
    for name in TASK_FIELDS:
        setattr(out, name, copy.deepcopy(getattr(ctx, name)))
    return out


def _on_goto(s: WizardState, e: GoTo):
    s.stage = e.stage


def _on_api_key(s: WizardState, e: ApiKeyEntered):
    s.pending_api_key = e.api_key
    s.stage = WizardStage.AUTH_CLIENT_ID


def _on_auth_completed(s: WizardState, e: AuthCompleted):
    s.pending_api_key = None
    s.stage = WizardStage.LANDING


def _on_task_loaded(s: WizardState, e: TaskLoaded):
    _clear_selection(s)
    task = e.task.clone()
    s.task_contexts[task.task_id] = TaskContext(
        task_id=task.task_id, task=task, summary_items=list(copy.deepcopy(e.summary_items)),
    )
    s.selected_task_id = task.task_id
    s.stage = WizardStage.AWAIT_DROP_OFF_QUERY


def _on_drop_offs_found(s: WizardState, e: DropOffsFound):
    s.drop_off_query = e.query
    s.drop_offs = [dict(d) for d in e.drop_offs]
    s.stage = WizardStage.DROP_OFF_SELECT


def _on_drop_off_selected(s: WizardState, e: DropOffSelected):
    if s.selected_drop_off_id != e.drop_off_id:
        _reset_warehouse(s)
    s.selected_drop_off_id = e.drop_off_id
    s.selected_drop_off_name = e.name
    s.stage = _next_after_location(s)


def _on_clusters_loaded(s: WizardState, e: ClustersLoaded):
    s.clusters = [dict(c) for c in e.clusters]
    s.warehouses = {str(k): [dict(w) for w in v] for k, v in e.warehouses.items()}
    s.stage = WizardStage.CLUSTER_SELECT


def _on_cluster_selected(s: WizardState, e: ClusterSelected):
    if s.selected_cluster_id != e.cluster_id:
        _reset_warehouse(s)
    s.selected_cluster_id = e.cluster_id
    s.selected_cluster_name = e.name
    s.stage = _next_after_location(s)


def _on_warehouse_selected(s: WizardState, e: WarehouseSelected):
    _reset_draft(s)
    s.selected_warehouse_id = e.warehouse_id
    s.selected_warehouse_name = e.name
    s.auto_warehouse_selection = e.auto
    s.stage = WizardStage.WAREHOUSE_SELECT


def _on_draft_started(s: WizardState, e: DraftStarted):
    _reset_draft(s)
    s.draft_status = DraftStatus.CREATING
    s.stage = WizardStage.PROCESSING


def _on_draft_operation_created(s: WizardState, e: DraftOperationCreated):
    # черновик ещё считается, но operation_id уже можно переиспользовать
    s.draft_operation_id = e.operation_id
    s.draft_created_at = e.created_at
    s.draft_expires_at = e.expires_at


def _on_draft_succeeded(s: WizardState, e: DraftSucceeded):
    s.draft_status = DraftStatus.SUCCESS
    s.draft_operation_id = e.operation_id
    s.draft_id = e.draft_id
    s.draft_created_at = e.created_at
    s.draft_expires_at = e.expires_at
    s.draft_error = None
    s.draft_warehouses = [dict(w) for w in e.warehouses]
    s.stage = WizardStage.DRAFT_WAREHOUSE_SELECT


def _on_draft_failed(s: WizardState, e: DraftFailed):
    _reset_draft(s)
    s.draft_status = DraftStatus.FAILED
    s.draft_error = e.error
    s.stage = WizardStage.WAREHOUSE_SELECT


def _on_draft_warehouse_selected(s: WizardState, e: DraftWarehouseSelected):
    s.selected_warehouse_id = e.warehouse_id
    s.selected_warehouse_name = e.name
    s.draft_timeslots = [dict(t) for t in e.timeslots]
    s.selected_timeslot = next(
        (dict(t) for t in e.timeslots if t.get("from_in_timezone") and t.get("to_in_timezone")), None,
    )
    s.stage = WizardStage.TIMESLOT_SELECT


def _on_timeslot_selected(s: WizardState, e: TimeslotSelected):
    s.selected_timeslot = dict(e.timeslot) if e.timeslot else None
    s.stage = WizardStage.AWAIT_READY_DAYS


def _on_ready_days(s: WizardState, e: ReadyDaysSet):
    s.ready_in_days = e.days


def _on_task_launched(s: WizardState, e: TaskLaunched):
    if s.selected_task_id == e.task_id:
        s.selected_task_id = None
    _clear_selection(s)
    s.stage = WizardStage.LANDING


def _on_task_removed(s: WizardState, e: TaskRemoved):
    s.task_contexts.pop(e.task_id, None)
    s.pending_tasks = [t for t in s.pending_tasks if t.get("taskId") != e.task_id]
    if s.selected_task_id == e.task_id:
        s.selected_task_id = None
        if s.stage == WizardStage.TASK_DETAILS:
            s.stage = WizardStage.TASKS_LIST


def _on_pending_loaded(s: WizardState, e: PendingTasksLoaded):
    s.pending_tasks = [dict(t) for t in e.tasks]
    s.stage = WizardStage.TASKS_LIST


def _on_task_selected(s: WizardState, e: TaskSelected):
    s.selected_task_id = e.task_id
    s.stage = WizardStage.TASK_DETAILS


def _on_orders_loaded(s: WizardState, e: OrdersLoaded):
    s.orders = [dict(o) for o in e.orders]
    s.selected_order_id = None
    s.stage = WizardStage.ORDERS_LIST


def _on_order_selected(s: WizardState, e: OrderSelected):
    s.selected_order_id = e.order_id
    s.stage = WizardStage.ORDER_DETAILS


_REDUCERS: Dict[type, Callable[[WizardState, Any], None]] = {
    GoTo: _on_goto,
    ApiKeyEntered: _on_api_key,
    AuthCompleted: _on_auth_completed,
    TaskLoaded: _on_task_loaded,
    DropOffsFound: _on_drop_offs_found,
    DropOffSelected: _on_drop_off_selected,
    ClustersLoaded: _on_clusters_loaded,
    ClusterSelected: _on_cluster_selected,
    WarehouseSelected: _on_warehouse_selected,
    DraftStarted: _on_draft_started,
    DraftOperationCreated: _on_draft_operation_created,
    DraftSucceeded: _on_draft_succeeded,
    DraftFailed: _on_draft_failed,
    DraftWarehouseSelected: _on_draft_warehouse_selected,
    TimeslotSelected: _on_timeslot_selected,
    ReadyDaysSet: _on_ready_days,
    TaskLaunched: _on_task_launched,
    TaskRemoved: _on_task_removed,
    PendingTasksLoaded: _on_pending_loaded,
    TaskSelected: _on_task_selected,
    OrdersLoaded: _on_orders_loaded,
    OrderSelected: _on_order_selected,
}

# события, которые не относятся к выбору активной задачи
_NO_SYNC = (GoTo, ApiKeyEntered, AuthCompleted, TaskLaunched, TaskRemoved,
            PendingTasksLoaded, TaskSelected, OrdersLoaded, OrderSelected)


def apply_transition(state: WizardState, event: Any) -> Optional[WizardState]:
    """
    Чистая функция: возвращает новое состояние, исходное не меняется.
    None означает, что состояние чата нужно удалить.
    """
    if isinstance(event, Reset):
        return None
    reducer = _REDUCERS.get(type(event))
    if reducer is None:
        raise TypeError(f"unknown wizard event: {type(event).__name__}")
    new = copy.deepcopy(state)
    reducer(new, event)
    if not isinstance(event, _NO_SYNC):
        sync_task_context(new)
    new.updated_at = now_ts()
    return new


class SupplyWizardStore:
    """Состояния мастера в памяти. Наружу отдаются только копии."""

    def __init__(self):
        self._states: Dict[str, WizardState] = {}

    def start(self, chat_id: Any, stage: WizardStage = WizardStage.LANDING) -> WizardState:
        prev = self._states.get(str(chat_id))
        state = WizardState(chat_id=str(chat_id), stage=stage)
        if prev is not None:
            # запущенные задачи переживают новый проход мастера
            state.task_contexts = copy.deepcopy(prev.task_contexts)
        self._states[str(chat_id)] = state
        return copy.deepcopy(state)

    def get(self, chat_id: Any) -> Optional[WizardState]:
        state = self._states.get(str(chat_id))
        return copy.deepcopy(state) if state is not None else None

    def set(self, chat_id: Any, state: WizardState) -> WizardState:
        self._states[str(chat_id)] = copy.deepcopy(replace(state, chat_id=str(chat_id)))
        return copy.deepcopy(state)

    def update(self, chat_id: Any, updater: Callable[[WizardState], Optional[WizardState]]) -> Optional[WizardState]:
        current = self._states.get(str(chat_id)) or WizardState(chat_id=str(chat_id))
        new = updater(copy.deepcopy(current))
        if new is None:
            self.clear(chat_id)
            return None
        self._states[str(chat_id)] = copy.deepcopy(new)
        return copy.deepcopy(new)

    def dispatch(self, chat_id: Any, event: Any) -> Optional[WizardState]:
        return self.update(chat_id, lambda s: apply_transition(s, event))

    def clear(self, chat_id: Any):
        self._states.pop(str(chat_id), None)

    def get_task_context(self, chat_id: Any, task_id: str) -> Optional[TaskContext]:
        state = self._states.get(str(chat_id))
        if state is None:
            return None
        ctx = state.task_contexts.get(task_id)
        return copy.deepcopy(ctx) if ctx is not None else None

    def remove_task_context(self, chat_id: Any, task_id: str) -> bool:
        state = self._states.get(str(chat_id))
        if state is None or task_id not in state.task_contexts:
            return False
        self.dispatch(chat_id, TaskRemoved(task_id))
        logger.info("[%s] task context removed for chat %s", short(task_id), chat_id)
        return True

    def chat_ids(self) -> List[str]:
        return list(self._states.keys())

    def hydrate(self, chat_id: Any, snapshot: Optional[Dict[str, Any]]) -> Optional[WizardState]:
        if not snapshot:
            return None
        state = WizardState.from_dict({**snapshot, "chat_id": str(chat_id)})
        self._states[str(chat_id)] = state
        return copy.deepcopy(state)

    def snapshot(self, chat_id: Any) -> Optional[Dict[str, Any]]:
        state = self._states.get(str(chat_id))
        return state.to_dict() if state is not None else None
