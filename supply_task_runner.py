from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import Settings
from credentials_store import CredentialsStore
from notifications import NotificationService, WizardEvent
from ozon_api import OzonCredentials
from supply_orchestrator import OnEvent, SupplyEvent, SupplyRunResult, SupplyTaskOrchestrator
from supply_order_store import SupplyOrderStore
from supply_process import FAILURE_NOT_FOUND, SupplyProcess, map_task_items
from supply_state import SupplyEventType, SupplyOrderStatus, SupplyRunOutcome, SupplyTask, now_ts, short
from supply_wizard_view import format_supply_created, format_supply_error
from task_abort import AbortController, SupplyTaskAbortRegistry
from time_utils import describe_timeslot, parse_last_day, utc_now

logger = logging.getLogger(__name__)

FinishedHook = Callable[[str, str, SupplyRunOutcome], Awaitable[None]]


@dataclass
class LaunchParams:
    chat_id: str
    task: SupplyTask
    ready_in_days: int
    drop_off_id: int
    credentials: Optional[OzonCredentials]
    resumed: bool = False
    user: Any = None


class SupplyTaskRunner:
    """
    Единственная точка запуска задач: и из мастера, и при резюме после рестарта.
    Итог прогона разводится здесь, события прогресса уходят в on_event вызывающего.
    """

    def __init__(self,
                 orchestrator: SupplyTaskOrchestrator,
                 process: SupplyProcess,
                 order_store: SupplyOrderStore,
                 credentials: CredentialsStore,
                 notifications: NotificationService,
                 abort_registry: SupplyTaskAbortRegistry,
                 settings: Settings):
        self.orchestrator = orchestrator
        self.process = process
        self.order_store = order_store
        self.credentials = credentials
        self.notifications = notifications
        self.abort_registry = abort_registry
        self.settings = settings
        self._running: Dict[str, asyncio.Task] = {}
        self._finished_hooks: List[FinishedHook] = []
        self._summary_in_flight = False

    def add_finished_hook(self, hook: FinishedHook):
        self._finished_hooks.append(hook)

    def is_running(self, task_id: str) -> bool:
        t = self._running.get(task_id)
        return t is not None and not t.done()

    # ------------------- запуск -------------------

    def start_task(self, params: LaunchParams, on_event: Optional[OnEvent] = None) -> asyncio.Task:
        controller = AbortController()
        self.abort_registry.register(params.chat_id, params.task.task_id, controller)
        job = asyncio.create_task(self._run(params, controller, on_event),
                                  name=f"supply-task-{short(params.task.task_id)}")
        self._running[params.task.task_id] = job
        return job

    async def _run(self, params: LaunchParams, controller: AbortController,
                   on_event: Optional[OnEvent]) -> Optional[SupplyRunResult]:
        task_id = params.task.task_id
        tid = short(task_id)
        outcome = SupplyRunOutcome.FAILED
        try:
            async def observe(event: SupplyEvent):
                await self._on_progress(params, event)
                if on_event is not None:
                    await on_event(event)

            result = await self.orchestrator.run(
                params.task, params.credentials, params.ready_in_days, params.drop_off_id, controller, observe,
            )
            outcome = result.outcome
            logger.info("[%s] run finished: %s", tid, outcome.value)

            if outcome == SupplyRunOutcome.SUPPLY_CREATED:
                await self.handle_supply_created(params, result.task, result.operation_id or "")
            elif outcome == SupplyRunOutcome.WINDOW_EXPIRED:
                await self._handle_window_expired(params, result)
            elif outcome == SupplyRunOutcome.FAILED:
                await self._handle_failed(params, result)
            return result
        except Exception as e:
            logger.exception("[%s] runner crashed", tid)
            await self.notifications.notify_wizard(
                WizardEvent.TASK_RESUME_FAILED if params.resumed else WizardEvent.TASK_FAILED,
                [f"task: {task_id}", f"{type(e).__name__}: {e}"], chat_id=params.chat_id,
            )
            return None
        finally:
            self.abort_registry.clear(task_id, controller)
            if self._running.get(task_id) is asyncio.current_task():
                self._running.pop(task_id, None)
            await self._fire_finished(params.chat_id, task_id, outcome)

    async def _fire_finished(self, chat_id: str, task_id: str, outcome: SupplyRunOutcome):
        for hook in self._finished_hooks:
            try:
                await hook(chat_id, task_id, outcome)
            except Exception:
                logger.exception("[%s] finished hook failed", short(task_id))

    async def _on_progress(self, params: LaunchParams, event: SupplyEvent):
        if event.type in (SupplyEventType.DRAFT_VALID, SupplyEventType.DRAFT_CREATED):
            # снимок с operation_id нужен резюму после рестарта
            try:
                self.order_store.update_task_payload(params.chat_id, event.task)
            except Exception as e:
                logger.warning("[%s] persist task payload failed: %s", short(params.task.task_id), e)
        elif event.type == SupplyEventType.ERROR:
            await self.notifications.notify_wizard(
                WizardEvent.TASK_SUPPLY_ERROR,
                [f"task: {params.task.task_id}", event.message], chat_id=params.chat_id, user=params.user,
            )

    # ------------------- итоги -------------------

    async def handle_supply_created(self, params: LaunchParams, task: SupplyTask,
                                    operation_id: str) -> Optional[Dict[str, Any]]:
        chat_id, task_id = params.chat_id, task.task_id
        existing = self.order_store.find_task(chat_id, task_id)
        if existing and existing.get("status") == SupplyOrderStatus.SUPPLY.value:
            logger.info("[%s] supplyCreated duplicate, already completed", short(task_id))
            return existing

        order_id: Optional[int] = None
        details = None
        if operation_id and params.credentials:
            resolution = await self.process.resolve_order_id_with_retries(
                operation_id, params.credentials,
                attempts=self.settings.order_id_attempts, delay_ms=self.settings.order_id_delay_ms,
            )
            order_id = resolution.order_id
            if order_id:
                details = await self.process.fetch_supply_order_details(order_id, params.credentials)
            else:
                logger.warning("[%s] order_id not resolved for %s: %s", short(task_id), operation_id,
                               resolution.failure_reason)

        record = existing or {}
        slot = task.selected_timeslot or {}
        drop_off_name = (details.drop_off_name if details else None) or record.get("dropOffName")
        warehouse_name = (details.storage_warehouse_name if details else None) or task.warehouse_name or record.get("warehouseName")
        fields = {
            "arrival": (details.timeslot_label if details else None) or describe_timeslot(slot) or record.get("arrival"),
            "warehouse": warehouse_name or drop_off_name,
            "warehouseName": warehouse_name,
            "warehouseId": (details.storage_warehouse_id if details else None) or task.warehouse_id,
            "dropOffName": drop_off_name,
            "dropOffId": (details.drop_off_id if details else None) or params.drop_off_id,
            "clusterId": task.cluster_id,
            "timeslotFrom": (details.timeslot_from if details else None) or slot.get("from_in_timezone"),
            "timeslotTo": (details.timeslot_to if details else None) or slot.get("to_in_timezone"),
            "items": map_task_items(task.items),
        }
        try:
            saved = self.order_store.complete_task(chat_id, task_id, operation_id, order_id, **fields)
        except Exception:
            logger.exception("[%s] complete_task failed", short(task_id))
            saved = {"taskId": task_id, "operationId": operation_id, "orderId": order_id, **fields}

        await self.notifications.notify_user(chat_id, format_supply_created(saved))
        await self.notifications.notify_wizard(
            WizardEvent.TASK_RESUMED_SUPPLY_CREATED if params.resumed else WizardEvent.TASK_SUPPLY_CREATED,
            [f"task: {task_id}", f"operation: {operation_id}",
             f"order_id: {order_id}" if order_id else None, f"chat: {chat_id}"],
            user=params.user,
        )
        return saved

    async def _handle_window_expired(self, params: LaunchParams, result: SupplyRunResult):
        task_id = params.task.task_id
        self.order_store.delete_by_task_id(params.chat_id, task_id)
        await self.notifications.notify_user(
            params.chat_id, f"⌛ Задача {short(task_id)}: дедлайн прошёл, слот не найден. Задача снята.",
        )
        await self.notifications.notify_wizard(
            WizardEvent.TASK_WINDOW_EXPIRED,
            [f"task: {task_id}", f"lastDay: {params.task.last_day or '—'}"], chat_id=params.chat_id,
        )

    async def _handle_failed(self, params: LaunchParams, result: SupplyRunResult):
        task_id = params.task.task_id
        self.order_store.delete_by_task_id(params.chat_id, task_id)
        await self.notifications.notify_user(params.chat_id, format_supply_error(result.message))
        await self.notifications.notify_wizard(
            WizardEvent.TASK_FAILED,
            [f"task: {task_id}", result.message], chat_id=params.chat_id, user=params.user,
        )

    # ------------------- восстановление -------------------

    @staticmethod
    def unresumable_reason(record: Dict[str, Any]) -> Optional[str]:
        if not record.get("taskPayload"):
            return "payload not found"
        if not record.get("dropOffId"):
            return "drop-off warehouse is not stored"
        return None

    def params_from_record(self, record: Dict[str, Any]) -> Optional[LaunchParams]:
        label = record.get("taskId") or record.get("id")
        reason = self.unresumable_reason(record)
        if reason:
            logger.warning("Skip task %s: %s", label, reason)
            return None
        payload = record["taskPayload"]
        chat_id = str(record.get("chatId"))
        credentials = self.credentials.resolve(chat_id)
        if credentials is None:
            logger.warning("Skip task %s: credentials missing for chat %s", label, chat_id)
            return None
        task = SupplyTask.from_dict(payload).clone()
        return LaunchParams(
            chat_id=chat_id,
            task=task,
            ready_in_days=int(record.get("readyInDays") or 0),
            drop_off_id=int(record["dropOffId"]),
            credentials=credentials,
            resumed=True,
        )

    async def resume_pending_tasks(self) -> int:
        try:
            pending = self.order_store.list_tasks(status=SupplyOrderStatus.TASK)
        except Exception:
            logger.exception("Failed to load pending supply tasks")
            return 0
        if not pending:
            logger.debug("No supply tasks waiting for resume")
            return 0
        logger.info("Resuming %s pending supply task(s)", len(pending))
        started = 0
        for record in pending:
            reason = self.unresumable_reason(record)
            if reason:
                await self._drop_unresumable(record, reason)
                continue
            params = self.params_from_record(record)
            if params is None:
                continue
            if self.is_running(params.task.task_id):
                continue
            self.start_task(params)
            started += 1
        return started

    async def _drop_unresumable(self, record: Dict[str, Any], reason: str):
        # запись без payload или пункта сдачи перезапустить нельзя
        chat_id = str(record.get("chatId"))
        task_id = record.get("taskId") or record.get("id")
        self.order_store.delete_by_task_id(chat_id, task_id)
        logger.warning("[%s] pending task dropped on resume: %s", short(task_id), reason)
        await self.notifications.notify_user(
            chat_id, f"⚠️ Задачу {short(task_id)} не удалось восстановить после перезапуска, она снята.",
        )
        await self.notifications.notify_wizard(
            WizardEvent.TASK_RESUME_FAILED, [f"task: {task_id}", reason], chat_id=chat_id,
        )
        await self._fire_finished(chat_id, task_id, SupplyRunOutcome.FAILED)

    async def recover_missing_order_ids(self) -> int:
        """
        supply без orderId: повторный поиск order_id. Записи старше порога с not_found
        получают статус failed_no_order_id, свежие ждут следующего прохода.
        """
        recovered = 0
        stale_after = self.settings.order_id_stale_hours * 3600
        for record in self.order_store.list_tasks(status=SupplyOrderStatus.SUPPLY):
            if record.get("orderId"):
                continue
            chat_id = str(record.get("chatId"))
            operation_id = record.get("operationId")
            key = record.get("taskId") or record.get("id")
            if not operation_id:
                continue
            credentials = self.credentials.resolve(chat_id)
            if credentials is None:
                logger.warning("order_id recovery %s: no credentials for chat %s", operation_id, chat_id)
                continue
            try:
                resolution = await self.process.resolve_order_id_with_retries(
                    operation_id, credentials,
                    attempts=self.settings.order_id_attempts, delay_ms=self.settings.order_id_delay_ms,
                )
            except Exception:
                logger.exception("order_id recovery %s crashed", operation_id)
                continue

            if resolution.ok:
                fields: Dict[str, Any] = {}
                details = await self.process.fetch_supply_order_details(resolution.order_id, credentials)
                if details:
                    fields = {k: v for k, v in {
                        "arrival": details.timeslot_label,
                        "dropOffName": details.drop_off_name,
                        "warehouseName": details.storage_warehouse_name,
                        "warehouse": details.storage_warehouse_name,
                        "timeslotFrom": details.timeslot_from,
                        "timeslotTo": details.timeslot_to,
                    }.items() if v}
                self.order_store.set_order_id(chat_id, key, resolution.order_id, **fields)
                recovered += 1
                await self.notifications.notify_wizard(
                    WizardEvent.TASK_ORDER_ID_RECOVERED,
                    [f"chat: {chat_id}", f"operation: {operation_id}", f"order_id: {resolution.order_id}"],
                )
                continue

            age = now_ts() - int(record.get("completedAt") or record.get("createdAt") or now_ts())
            if resolution.failure_reason == FAILURE_NOT_FOUND and age >= stale_after:
                self.order_store.mark_failed_without_order_id(
                    chat_id, key, resolution.last_status_code, resolution.last_error_message,
                )
                logger.warning("order_id for %s not found after %.1fh, marked failed", operation_id, age / 3600)
                await self.notifications.notify_wizard(
                    WizardEvent.TASK_ORDER_ID_FAILED,
                    [f"chat: {chat_id}", f"operation: {operation_id}",
                     f"status: {resolution.last_status_code}", resolution.last_error_message],
                )
        return recovered

    async def cleanup_expired_pending_tasks(self) -> int:
        now = utc_now()
        removed = 0
        for record in self.order_store.list_tasks(status=SupplyOrderStatus.TASK):
            last_day = (record.get("taskPayload") or {}).get("last_day")
            deadline = parse_last_day(last_day)
            if deadline is None or deadline >= now:
                continue
            chat_id = str(record.get("chatId"))
            task_id = record.get("taskId") or record.get("id")
            running = self.is_running(task_id)
            self.abort_registry.abort(chat_id, task_id)
            self.order_store.delete_by_task_id(chat_id, task_id)
            if not running:
                # у запущенной задачи хуки сработают по выходу из прогона
                await self._fire_finished(chat_id, task_id, SupplyRunOutcome.WINDOW_EXPIRED)
            removed += 1
            logger.info("[%s] pending task expired (lastDay %s), removed", short(task_id), last_day)
            await self.notifications.notify_user(
                chat_id, f"⌛ Задача {short(task_id)}: дедлайн {last_day} прошёл, задача снята.",
            )
            await self.notifications.notify_wizard(
                WizardEvent.TASK_WINDOW_EXPIRED, [f"task: {task_id}", f"lastDay: {last_day}"], chat_id=chat_id,
            )
        return removed

    async def broadcast_pending_summary(self) -> bool:
        if self._summary_in_flight:
            logger.debug("pending summary still in flight, skip")
            return False
        self._summary_in_flight = True
        try:
            pending = self.order_store.list_tasks(status=SupplyOrderStatus.TASK)
            if not pending:
                return False
            by_chat: Dict[str, int] = {}
            for r in pending:
                by_chat[str(r.get("chatId"))] = by_chat.get(str(r.get("chatId")), 0) + 1
            lines = [f"Ожидающих задач: {len(pending)}"]
            for r in pending[:30]:
                payload = r.get("taskPayload") or {}
                running = "▶" if self.is_running(r.get("taskId") or "") else "⏸"
                lines.append(
                    f"{running} {short(r.get('taskId'))} chat={r.get('chatId')} "
                    f"склад={r.get('warehouseName') or ('авто' if r.get('warehouseAutoSelect') else '—')} "
                    f"до={payload.get('last_day') or '—'}"
                )
            if len(pending) > 30:
                lines.append(f"… и ещё {len(pending) - 30}")
            lines.append("Чаты: " + ", ".join(f"{c}×{n}" for c, n in sorted(by_chat.items())))
            await self.notifications.notify_wizard(WizardEvent.TASKS_PENDING_SUMMARY, lines)
            return True
        finally:
            self._summary_in_flight = False

    async def _safe(self, name: str, coro_fn: Callable[[], Awaitable[Any]]):
        try:
            await coro_fn()
        except Exception:
            logger.exception("%s job failed", name)

    def register_jobs(self, scheduler: AsyncIOScheduler):
        opts = dict(coalesce=True, max_instances=1, replace_existing=True)
        scheduler.add_job(self._safe, "interval", args=["order_id_recovery", self.recover_missing_order_ids],
                          seconds=self.settings.order_id_recovery_interval_s, id="order_id_recovery", **opts)
        scheduler.add_job(self._safe, "interval", args=["pending_cleanup", self.cleanup_expired_pending_tasks],
                          seconds=self.settings.pending_cleanup_interval_s, id="pending_cleanup", **opts)
        scheduler.add_job(self._safe, "interval", args=["pending_summary", self.broadcast_pending_summary],
                          seconds=self.settings.pending_summary_interval_s, id="pending_summary", **opts)

    async def shutdown(self):
        for task_id in list(self._running):
            ctrl = self.abort_registry.get(task_id)
            if ctrl:
                ctrl.abort()
        jobs = [t for t in self._running.values() if not t.done()]
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
