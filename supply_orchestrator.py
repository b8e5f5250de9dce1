from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ozon_api import OzonApi, OzonApiError, OzonCredentials
from supply_draft import DraftLifecycle, check_deadline
from supply_state import (
    SupplyEventType, SupplyRunOutcome, SupplyTask, SupplyTaskError, TaskWindowExpired, record_event, short,
)
from task_abort import AbortController, TaskAborted
from time_utils import (
    add_moscow_days, describe_timeslot, format_moscow_day, parse_iso_date, parse_last_day, to_ozon_iso, utc_now,
)

logger = logging.getLogger(__name__)

TIMESLOTS_KEEP = 50


@dataclass
class SupplyEvent:
    type: SupplyEventType
    task: SupplyTask
    message: Optional[str] = None
    operation_id: Optional[str] = None


@dataclass
class SupplyRunResult:
    outcome: SupplyRunOutcome
    task: SupplyTask
    operation_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[BaseException] = None


OnEvent = Callable[[SupplyEvent], Awaitable[None]]


def _slot_from(ts: Dict[str, Any]) -> Optional[str]:
    return ts.get("from_in_timezone") or ts.get("from")


def _slot_to(ts: Dict[str, Any]) -> Optional[str]:
    return ts.get("to_in_timezone") or ts.get("to")


def flatten_timeslots(data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    drop_off_warehouse_timeslots -> days -> timeslots в один список.
    Слоты без любой из границ отбрасываются.
    """
    out: List[Dict[str, Any]] = []
    seen = set()
    for drop in (data or {}).get("drop_off_warehouse_timeslots") or []:
        tz = (drop or {}).get("warehouse_timezone")
        for day in (drop or {}).get("days") or []:
            for ts in (day or {}).get("timeslots") or []:
                fr, to = _slot_from(ts or {}), _slot_to(ts or {})
                if not fr or not to or (fr, to) in seen:
                    continue
                seen.add((fr, to))
                out.append({
                    "from_in_timezone": fr,
                    "to_in_timezone": to,
                    "drop_off_warehouse_id": (drop or {}).get("drop_off_warehouse_id"),
                    "timezone": tz,
                })
    return out


def same_timeslot(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> bool:
    if not a or not b:
        return False
    return _slot_from(a) == _slot_from(b) and _slot_to(a) == _slot_to(b)


def timeslot_fits(ts: Dict[str, Any], start: datetime, deadline: Optional[datetime]) -> bool:
    """Слот начинается не раньше start и не позже дедлайна. Неразборчивые границы не отсекаются."""
    begin = parse_iso_date(_slot_from(ts))
    if begin is None:
        return True
    if begin < start:
        return False
    return deadline is None or begin <= deadline


def pick_warehouse(task: SupplyTask) -> Optional[Dict[str, Any]]:
    """
    Явный warehouse_id берётся, если он среди кандидатов черновика (или кандидатов нет).
    Иначе первый доступный кандидат: при автоподборе, либо когда склад не выбран вовсе.
    """
    candidates = task.draft_warehouses or []
    available = [c for c in candidates if c.get("is_available", True)]
    if task.warehouse_id:
        if not candidates:
            return {"warehouse_id": task.warehouse_id, "name": task.warehouse_name}
        for c in candidates:
            if c.get("warehouse_id") == task.warehouse_id:
                return c
        if not task.warehouse_auto_select:
            return None
    return available[0] if available else None


class SupplyTaskOrchestrator:
    """
    Один прогон задачи: черновик -> склад -> таймслот -> заявка.
    Ничего не сохраняет сам, прогресс отдаётся через on_event, итог через SupplyRunResult.
    """

    def __init__(self, api: OzonApi, drafts: DraftLifecycle,
                 poll_interval_s: float = 10.0,
                 max_ready_days: int = 28,
                 default_window_days: int = 28):
        self.api = api
        self.drafts = drafts
        self.poll_interval_s = poll_interval_s
        self.max_ready_days = max_ready_days
        self.default_window_days = default_window_days

    def ensure_deadline(self, task: SupplyTask, ready_in_days: int, now: Optional[datetime] = None) -> str:
        """Задача без lastDay получает дедлайн: сегодня + ready_in_days + окно поиска."""
        if task.last_day and parse_last_day(task.last_day) is not None:
            return task.last_day
        now = now or utc_now()
        task.last_day = format_moscow_day(add_moscow_days(now, max(ready_in_days, 0) + self.default_window_days))
        logger.info("[%s] default lastDay %s", short(task.task_id), task.last_day)
        return task.last_day

    def build_window(self, task: SupplyTask, ready_in_days: int, now: Optional[datetime] = None):
        now = now or utc_now()
        start = add_moscow_days(now, ready_in_days)
        deadline = parse_last_day(task.last_day)
        horizon = add_moscow_days(now, max(ready_in_days, 0) + self.default_window_days)
        end = min(deadline, horizon) if deadline is not None else horizon
        if start > end:
            raise TaskWindowExpired(task.last_day)
        return start, end

    async def find_timeslot(self, task: SupplyTask, warehouse_id: int, ready_in_days: int,
                            credentials: OzonCredentials, abort: AbortController) -> Optional[Dict[str, Any]]:
        start, end = self.build_window(task, ready_in_days)
        if end - start < timedelta(minutes=1):
            return None
        data = await self.api.get_draft_timeslots(
            task.draft_id, [warehouse_id], to_ozon_iso(start), to_ozon_iso(end), credentials,
        )
        abort.raise_if_aborted()
        slots = flatten_timeslots(data)
        task.draft_timeslots = slots[:TIMESLOTS_KEEP]
        if task.selected_timeslot:
            for ts in slots:
                if same_timeslot(ts, task.selected_timeslot):
                    return ts
            if not timeslot_fits(task.selected_timeslot, start, parse_last_day(task.last_day)):
                # закреплённый слот уже не попадёт в окно: ловим первый доступный
                logger.warning("[%s] pinned timeslot %s is outside the window, switching to auto",
                               short(task.task_id), describe_timeslot(task.selected_timeslot))
                record_event(task, "timeslotUnpinned", {"timeslot": describe_timeslot(task.selected_timeslot)})
                task.selected_timeslot = None
                return slots[0] if slots else None
            logger.info("[%s] pinned timeslot %s not offered", short(task.task_id),
                        describe_timeslot(task.selected_timeslot))
            return None
        return slots[0] if slots else None

    async def run(self,
                  task: SupplyTask,
                  credentials: Optional[OzonCredentials],
                  ready_in_days: Optional[int],
                  drop_off_warehouse_id: Optional[int],
                  abort: AbortController,
                  on_event: Optional[OnEvent] = None) -> SupplyRunResult:

        async def emit(event_type: SupplyEventType, current: SupplyTask,
                       message: Optional[str] = None, operation_id: Optional[str] = None):
            # после abort события больше не уходят
            if abort.aborted or on_event is None:
                return
            try:
                await on_event(SupplyEvent(event_type, current.clone(), message, operation_id))
            except Exception:
                logger.exception("[%s] on_event handler failed for %s", short(current.task_id), event_type.value)

        tid = short(task.task_id)
        ready = max(0, min(int(ready_in_days or 0), self.max_ready_days))
        task.ready_in_days = ready
        self.ensure_deadline(task, ready)

        if credentials is None or not credentials.is_complete():
            await emit(SupplyEventType.NO_CREDENTIALS, task, "Нет ключей Ozon для этого чата")
            return SupplyRunResult(SupplyRunOutcome.FAILED, task, message="no credentials")
        if not drop_off_warehouse_id:
            msg = "Не выбран пункт сдачи"
            await emit(SupplyEventType.ERROR, task, msg)
            return SupplyRunResult(SupplyRunOutcome.FAILED, task, message=msg)

        draft_checked = False
        try:
            while True:
                abort.raise_if_aborted()
                check_deadline(task)

                if not draft_checked or not task.draft_id or self.drafts.is_stale(task):
                    await self.drafts.ensure_draft(task, credentials, int(drop_off_warehouse_id), abort, emit)
                    draft_checked = True

                warehouse = pick_warehouse(task)
                if warehouse is None:
                    if not task.warehouse_selection_pending_notified:
                        task.warehouse_selection_pending_notified = True
                        await emit(SupplyEventType.WAREHOUSE_PENDING, task,
                                   "Выбранный склад пока недоступен в черновике, ждём")
                    await abort.sleep(self.poll_interval_s)
                    draft_checked = False
                    continue

                warehouse_id = int(warehouse["warehouse_id"])
                if task.warehouse_id != warehouse_id:
                    logger.info("[%s] warehouse picked: %s", tid, warehouse_id)
                task.warehouse_id = warehouse_id
                task.warehouse_name = warehouse.get("name") or task.warehouse_name

                try:
                    slot = await self.find_timeslot(task, warehouse_id, ready, credentials, abort)
                except OzonApiError as e:
                    logger.warning("[%s] timeslot lookup failed: %s", tid, e)
                    draft_checked = False
                    await abort.sleep(self.poll_interval_s)
                    continue

                if slot is None:
                    await emit(SupplyEventType.TIMESLOT_MISSING, task, "Свободных таймслотов пока нет")
                    await abort.sleep(self.poll_interval_s)
                    continue

                abort.raise_if_aborted()
                check_deadline(task)
                try:
                    operation_id = await self.api.create_supply(task.draft_id, warehouse_id, slot, credentials)
                except OzonApiError as e:
                    abort.raise_if_aborted()
                    logger.warning("[%s] create_supply failed: %s", tid, e)
                    await emit(SupplyEventType.ERROR, task, f"Не удалось создать заявку: {e.message or e}")
                    draft_checked = False
                    await abort.sleep(self.poll_interval_s)
                    continue
                abort.raise_if_aborted()
                if not operation_id:
                    await emit(SupplyEventType.ERROR, task, "Ozon не вернул operation_id заявки")
                    await abort.sleep(self.poll_interval_s)
                    continue

                task.selected_timeslot = {"from_in_timezone": slot["from_in_timezone"],
                                          "to_in_timezone": slot["to_in_timezone"]}
                task.order_flag = 1
                record_event(task, SupplyEventType.SUPPLY_CREATED.value, {"operation_id": operation_id})
                await emit(SupplyEventType.SUPPLY_STATUS, task,
                           f"Слот {describe_timeslot(slot)}, склад {task.warehouse_name or warehouse_id}")
                await emit(SupplyEventType.SUPPLY_CREATED, task, f"operation_id={operation_id}", operation_id)
                logger.info("[%s] supply created op=%s", tid, operation_id)
                return SupplyRunResult(SupplyRunOutcome.SUPPLY_CREATED, task, operation_id=operation_id)

        except TaskAborted:
            logger.info("[%s] run aborted", tid)
            return SupplyRunResult(SupplyRunOutcome.ABORTED, task)
        except TaskWindowExpired as e:
            msg = f"Дедлайн {task.last_day or e} прошёл, таймслот не найден"
            record_event(task, SupplyEventType.WINDOW_EXPIRED.value)
            await emit(SupplyEventType.WINDOW_EXPIRED, task, msg)
            return SupplyRunResult(SupplyRunOutcome.WINDOW_EXPIRED, task, message=msg)
        except SupplyTaskError as e:
            await emit(SupplyEventType.ERROR, task, str(e))
            return SupplyRunResult(SupplyRunOutcome.FAILED, task, message=str(e), error=e)
        except Exception as e:
            logger.exception("[%s] run crashed", tid)
            await emit(SupplyEventType.ERROR, task, f"Непредвиденная ошибка: {e}")
            return SupplyRunResult(SupplyRunOutcome.FAILED, task, message=str(e), error=e)
