from __future__ import annotations
import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiogram import F, Router
from aiogram.filters import Command
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message

import supply_wizard_view as view
from config import Settings
from credentials_store import CredentialsStore
from notifications import NotificationService, WizardEvent, describe_user, esc
from ozon_api import OzonApi, OzonApiError, OzonCredentials, mask_api_key, mask_client_id
from session_store import WizardSessionStore
from supply_draft import DraftLifecycle
from supply_items_parser import parse_supply_items
from supply_orchestrator import SupplyEvent, flatten_timeslots, timeslot_fits
from supply_order_store import SupplyOrderStore
from supply_process import SupplyProcess, describe_cancel_status, is_cancel_successful, map_task_items
from supply_state import (
    DraftStatus, SupplyEventType, SupplyRunOutcome, SupplyTaskError, TaskWindowExpired, now_ts, short,
)
from supply_task_runner import LaunchParams, SupplyTaskRunner
from supply_wizard_store import (
    ApiKeyEntered, AuthCompleted, ClusterSelected, ClustersLoaded, DraftFailed, DraftOperationCreated, DraftStarted,
    DraftSucceeded, DraftWarehouseSelected, DropOffSelected, DropOffsFound, GoTo, OrderSelected, OrdersLoaded,
    PendingTasksLoaded, ReadyDaysSet, SupplyWizardStore, TaskLaunched, TaskLoaded, TaskSelected,
    TimeslotSelected, WarehouseSelected, WizardStage, WizardState, overlay_task_context,
)
from task_abort import AbortController, SupplyTaskAbortRegistry, TaskAborted
from time_utils import describe_timeslot, parse_last_day, to_ozon_iso

logger = logging.getLogger(__name__)

Reply = Callable[..., Awaitable[Any]]

UNKNOWN_ACTION = "Неизвестное действие"
READY_DAYS_RE = re.compile(r"^\s*(\d{1,3})\s*$")


def parse_ready_days(text: str, max_days: int = 28) -> Optional[int]:
    """0 или целое 1..max_days; всё остальное None."""
    m = READY_DAYS_RE.match(text or "")
    if not m:
        return None
    days = int(m.group(1))
    return days if 0 <= days <= max_days else None


def normalize_drop_offs(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    seen = set()
    for it in items:
        try:
            wid = int(it.get("warehouse_id"))
        except (TypeError, ValueError):
            continue
        if wid in seen:
            continue
        seen.add(wid)
        out.append({"warehouse_id": wid, "name": it.get("name") or f"Пункт {wid}", "address": it.get("address")})
    return out


class SupplyWizardHandler:
    """
    Контроллер мастера. Транспорт не знает: на вход chat_id, текст или callback data
    и функция reply(text, keyboard), на выход ответ для callback.answer.
    """

    def __init__(self,
                 api: OzonApi,
                 process: SupplyProcess,
                 drafts: DraftLifecycle,
                 store: SupplyWizardStore,
                 sessions: WizardSessionStore,
                 order_store: SupplyOrderStore,
                 credentials: CredentialsStore,
                 runner: SupplyTaskRunner,
                 abort_registry: SupplyTaskAbortRegistry,
                 notifications: NotificationService,
                 settings: Settings):
        self.api = api
        self.process = process
        self.drafts = drafts
        self.store = store
        self.sessions = sessions
        self.order_store = order_store
        self.credentials = credentials
        self.runner = runner
        self.abort_registry = abort_registry
        self.notifications = notifications
        self.settings = settings
        self._background: Set[asyncio.Task] = set()
        runner.add_finished_hook(self._on_task_finished)
        self._callbacks: Dict[str, Callable[..., Awaitable[Optional[str]]]] = {
            "auth": self._cb_auth,
            "landing": self._cb_landing,
            "upload": self._cb_upload,
            "dropoff": self._cb_drop_off,
            "clusterStart": self._cb_cluster_start,
            "cluster": self._cb_cluster,
            "warehouse": self._cb_warehouse,
            "draft": self._cb_draft,
            "draftWarehouse": self._cb_draft_warehouse,
            "timeslot": self._cb_timeslot,
            "ready": self._cb_ready,
            "tasks": self._cb_tasks,
            "orders": self._cb_orders,
            "cancel": self._cb_cancel,
        }

    # ------------------- состояние -------------------

    def load_state(self, chat_id: str) -> Optional[WizardState]:
        state = self.store.get(chat_id)
        if state is not None:
            return state
        try:
            snapshot = self.sessions.load_chat_state(chat_id)
        except Exception as e:
            logger.warning("load session for chat %s failed: %s", chat_id, e)
            snapshot = None
        return self.store.hydrate(chat_id, snapshot) if snapshot else None

    def _persist(self, chat_id: str):
        try:
            state = self.store.get(chat_id)
            if state is None:
                self.sessions.delete_chat_state(chat_id)
            else:
                self.sessions.save_chat_state(chat_id, state)
        except Exception:
            logger.exception("persist session for chat %s failed", chat_id)

    def _commit(self, chat_id: str, event: Any) -> Optional[WizardState]:
        if self.load_state(chat_id) is None:
            self.store.start(chat_id)
        state = self.store.dispatch(chat_id, event)
        self._persist(chat_id)
        return state

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("background %s failed: %r", name, t.exception())

        task.add_done_callback(_done)
        return task

    async def wait_background(self):
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _on_task_finished(self, chat_id: str, task_id: str, outcome: SupplyRunOutcome):
        # после рестарта состояние чата ещё не в памяти
        self.load_state(chat_id)
        if self.store.remove_task_context(chat_id, task_id):
            self._persist(chat_id)
            return
        try:
            if self.sessions.delete_task_state(chat_id, task_id):
                logger.info("[%s] stale task session removed for chat %s", short(task_id), chat_id)
        except Exception:
            logger.exception("[%s] delete task session failed", short(task_id))

    # ------------------- экраны -------------------

    async def show_landing(self, chat_id: str, reply: Reply):
        self._commit(chat_id, GoTo(WizardStage.LANDING))
        pending = self.order_store.list_task_summaries(chat_id)
        orders = self.order_store.list_orders(chat_id)
        await reply(view.render_landing(self.store.get(chat_id), len(pending), orders[0] if orders else None),
                    view.landing_kb(bool(orders)))

    async def show_auth_welcome(self, chat_id: str, reply: Reply):
        self._commit(chat_id, GoTo(WizardStage.AUTH_WELCOME))
        await reply(view.render_auth_welcome(), view.auth_welcome_kb())

    async def show_tasks(self, chat_id: str, reply: Reply):
        tasks = self.order_store.list_task_summaries(chat_id)
        self._commit(chat_id, PendingTasksLoaded(tuple(tasks)))
        await reply(view.render_tasks_list(tasks), view.tasks_list_kb(tasks))

    async def show_orders(self, chat_id: str, reply: Reply):
        orders = self.order_store.list_orders(chat_id)
        self._commit(chat_id, OrdersLoaded(tuple(orders)))
        await reply(view.render_orders_list(orders), view.orders_list_kb(orders))

    async def _show_drop_off_prompt(self, chat_id: str, state: WizardState, reply: Reply):
        ctx = state.active_context()
        summary = view.format_items_summary(ctx.task.items) if ctx else ""
        await reply(view.render_drop_off_query_prompt(summary), view.drop_off_query_kb())

    async def _show_after_location(self, chat_id: str, state: WizardState, reply: Reply):
        if state.stage == WizardStage.WAREHOUSE_SELECT:
            await reply(view.render_warehouse_selection(state), view.warehouse_kb(state))
        elif state.stage == WizardStage.CLUSTER_PROMPT:
            await reply(view.render_cluster_prompt(state), view.cluster_start_kb())
        else:
            await self._show_drop_off_prompt(chat_id, state, reply)

    # ------------------- команды -------------------

    async def handle_start(self, chat_id: str, reply: Reply, user: Any = None):
        if self.credentials.resolve(chat_id) is None:
            self.store.start(chat_id, WizardStage.AUTH_WELCOME)
            self._persist(chat_id)
            await reply(view.render_auth_welcome(), view.auth_welcome_kb())
            return
        await self.show_landing(chat_id, reply)

    async def start_wizard(self, chat_id: str, reply: Reply, user: Any = None):
        if self.credentials.resolve(chat_id) is None:
            await self.show_auth_welcome(chat_id, reply)
            return
        self.load_state(chat_id)
        self.store.start(chat_id, WizardStage.AWAIT_SPREADSHEET)
        self._persist(chat_id)
        await reply(view.render_upload_prompt(), view.upload_kb())
        await self.notifications.notify_wizard(WizardEvent.WIZARD_START, [], chat_id=chat_id, user=user)

    # ------------------- текст -------------------

    async def handle_text(self, chat_id: str, text: str, reply: Reply, user: Any = None):
        state = self.load_state(chat_id)
        if state is None:
            await self.handle_start(chat_id, reply, user)
            return
        stage = state.stage
        if stage == WizardStage.AUTH_API_KEY:
            await self._on_api_key(chat_id, text, reply)
        elif stage == WizardStage.AUTH_CLIENT_ID:
            await self._on_client_id(chat_id, state, text, reply, user)
        elif stage == WizardStage.AWAIT_SPREADSHEET:
            await self._on_items(chat_id, text, reply, user)
        elif stage in (WizardStage.AWAIT_DROP_OFF_QUERY, WizardStage.DROP_OFF_SELECT):
            await self._on_drop_off_query(chat_id, text, reply)
        elif stage == WizardStage.AWAIT_READY_DAYS:
            days = parse_ready_days(text, self.settings.max_ready_days)
            if days is None:
                await reply(f"Введите целое число от 0 до {self.settings.max_ready_days}.", view.ready_days_kb())
                return
            await self._apply_ready_days(chat_id, days, reply, user)
        elif stage == WizardStage.PROCESSING:
            ctx = state.active_context()
            if ctx is not None and state.draft_status == DraftStatus.CREATING and not self._draft_in_flight(ctx.task_id):
                ack = await self.prepare_draft(chat_id, reply, user)
                if ack:
                    await reply(ack)
                return
            await reply("⏳ Подождите, обрабатываю предыдущий шаг…")
        else:
            await reply("Используйте кнопки под сообщением или /start.")

    async def _on_api_key(self, chat_id: str, text: str, reply: Reply):
        key = (text or "").strip()
        if not key or " " in key or len(key) < 8:
            await reply("API Key выглядит неверно. Отправьте его одним сообщением без пробелов.",
                        view.auth_back_kb("wizard:auth:back:welcome"))
            return
        self._commit(chat_id, ApiKeyEntered(key))
        await reply(view.render_auth_client_id_prompt(mask_api_key(key)), view.auth_back_kb("wizard:auth:back:apiKey"))

    async def _on_client_id(self, chat_id: str, state: WizardState, text: str, reply: Reply, user: Any):
        client_id = (text or "").strip()
        if not state.pending_api_key:
            self._commit(chat_id, GoTo(WizardStage.AUTH_API_KEY))
            await reply(view.render_auth_api_key_prompt(), view.auth_back_kb("wizard:auth:back:welcome"))
            return
        if not client_id.isdigit():
            await reply("Client ID состоит только из цифр. Попробуйте ещё раз.",
                        view.auth_back_kb("wizard:auth:back:apiKey"))
            return
        creds = OzonCredentials(client_id, state.pending_api_key)
        verified_at: Optional[int] = None
        try:
            await self.api.validate_credentials(creds)
            verified_at = now_ts()
        except OzonApiError as e:
            if e.status_code in (401, 403):
                self._commit(chat_id, GoTo(WizardStage.AUTH_API_KEY))
                await reply(f"❌ Ozon не принял ключи: {e.message}\n\nВведите API Key заново.",
                            view.auth_back_kb("wizard:auth:back:welcome"))
                return
            logger.warning("credentials check for chat %s skipped: %s", chat_id, e)
        self.credentials.set(chat_id, creds, verified_at)
        self._commit(chat_id, AuthCompleted())
        await self.notifications.notify_wizard(
            WizardEvent.AUTH_SAVED, [f"client_id: {mask_client_id(client_id)}"], chat_id=chat_id, user=user,
        )
        await reply("✅ Ключи сохранены.")
        await self.show_landing(chat_id, reply)

    async def _on_items(self, chat_id: str, text: str, reply: Reply, user: Any):
        task, errors = parse_supply_items(text)
        if errors:
            shown = "\n".join(f"• {esc(e)}" for e in errors[:10])
            more = f"\n… и ещё {len(errors) - 10}" if len(errors) > 10 else ""
            await reply(f"Не удалось разобрать список:\n{shown}{more}\n\nИсправьте и отправьте заново.",
                        view.upload_kb())
            return
        creds = self.credentials.resolve(chat_id)
        if creds is None:
            await self.show_auth_welcome(chat_id, reply)
            return
        self._commit(chat_id, GoTo(WizardStage.PROCESSING))
        await reply(f"Проверяю {len(task.items)} позиций в Ozon…")
        try:
            await self.process.resolve_skus(task, creds)
        except (SupplyTaskError, OzonApiError) as e:
            self._commit(chat_id, GoTo(WizardStage.AWAIT_SPREADSHEET))
            await reply(f"❌ {esc(e)}", view.upload_kb())
            return
        state = self._commit(chat_id, TaskLoaded(task, tuple(map_task_items(task.items))))
        await self._show_drop_off_prompt(chat_id, state, reply)

    async def _on_drop_off_query(self, chat_id: str, text: str, reply: Reply):
        query = (text or "").strip()
        if len(query) < 2:
            await reply("Введите хотя бы 2 символа названия города или адреса.", view.drop_off_query_kb())
            return
        creds = self.credentials.resolve(chat_id)
        if creds is None:
            await self.show_auth_welcome(chat_id, reply)
            return
        try:
            found = normalize_drop_offs(await self.api.search_fbo_warehouses(query, creds))
        except OzonApiError as e:
            await reply(f"❌ Поиск пунктов сдачи не удался: {esc(e.message)}", view.drop_off_query_kb())
            return
        self._commit(chat_id, DropOffsFound(query, tuple(found)))
        await reply(view.render_drop_off_options(query, found), view.drop_off_kb(found))

    # ------------------- callback -------------------

    async def handle_callback(self, chat_id: str, data: str, reply: Reply, user: Any = None) -> Optional[str]:
        parts = (data or "").split(":")
        if len(parts) < 2 or parts[0] != "wizard":
            return UNKNOWN_ACTION
        action, rest = parts[1], parts[2:]
        handler = self._callbacks.get(action)
        if handler is None:
            return UNKNOWN_ACTION
        if action not in ("auth", "cancel") and self.credentials.resolve(chat_id) is None:
            await self.show_auth_welcome(chat_id, reply)
            return None
        return await handler(chat_id, rest, reply, user)

    async def _cb_auth(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        sub = rest[0] if rest else ""
        arg = rest[1] if len(rest) > 1 else ""
        if sub == "login":
            self._commit(chat_id, GoTo(WizardStage.AUTH_API_KEY))
            await reply(view.render_auth_api_key_prompt(), view.auth_back_kb("wizard:auth:back:welcome"))
        elif sub == "info":
            await reply(view.render_auth_instruction(), view.auth_instruction_kb())
        elif sub == "back" and arg == "welcome":
            await self.show_auth_welcome(chat_id, reply)
        elif sub == "back" and arg == "apiKey":
            self._commit(chat_id, GoTo(WizardStage.AUTH_API_KEY))
            await reply(view.render_auth_api_key_prompt(), view.auth_back_kb("wizard:auth:back:welcome"))
        elif sub == "reset" and not arg:
            self._commit(chat_id, GoTo(WizardStage.AUTH_RESET_CONFIRM))
            await reply(view.render_auth_reset_confirm(), view.auth_reset_kb())
        elif sub == "reset" and arg == "confirm":
            await self._reset_auth(chat_id, reply, user)
        elif sub == "reset" and arg == "cancel":
            await self.show_landing(chat_id, reply)
        else:
            return UNKNOWN_ACTION
        return None

    async def _reset_auth(self, chat_id: str, reply: Reply, user: Any):
        self.abort_registry.abort(chat_id)
        removed = self.order_store.delete_pending_for_chat(chat_id)
        self.credentials.clear(chat_id)
        self.store.clear(chat_id)
        self._persist(chat_id)
        await self.notifications.notify_wizard(
            WizardEvent.AUTH_RESET, [f"pending removed: {removed}"], chat_id=chat_id, user=user,
        )
        await reply("Ключи удалены.")
        await self.handle_start(chat_id, reply, user)

    async def _cb_landing(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        sub = rest[0] if rest else ""
        if sub == "start":
            await self.start_wizard(chat_id, reply, user)
        elif sub == "back":
            await self.show_landing(chat_id, reply)
        else:
            return UNKNOWN_ACTION
        return None

    async def _cb_upload(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        if (rest[0] if rest else "") != "restart":
            return UNKNOWN_ACTION
        state = self.load_state(chat_id)
        ctx = state.active_context() if state else None
        if ctx is not None and not self.runner.is_running(ctx.task_id):
            self.abort_registry.abort(chat_id, ctx.task_id)
            self.store.remove_task_context(chat_id, ctx.task_id)
        await self.start_wizard(chat_id, reply, user)
        return None

    async def _cb_drop_off(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        state = self.load_state(chat_id)
        if state is None or state.active_context() is None:
            await self.show_landing(chat_id, reply)
            return "Мастер устарел, начните заново"
        try:
            drop_off_id = int(rest[0])
        except (IndexError, ValueError):
            return UNKNOWN_ACTION
        option = next((d for d in state.drop_offs if d.get("warehouse_id") == drop_off_id), None)
        if option is None:
            return "Пункт сдачи не найден, выполните поиск заново"
        state = self._commit(chat_id, DropOffSelected(drop_off_id, option.get("name") or str(drop_off_id)))
        await self._show_after_location(chat_id, state, reply)
        return None

    async def _cb_cluster_start(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        creds = self.credentials.resolve(chat_id)
        try:
            clusters, by_cluster = await self.api.list_clusters(creds)
        except OzonApiError as e:
            await reply(f"❌ Не удалось загрузить кластеры: {esc(e.message)}", view.cluster_start_kb())
            return None
        options = [{"id": int(c["id"]), "name": c.get("name") or f"Кластер {c['id']}"}
                   for c in clusters if str(c.get("id", "")).lstrip("-").isdigit()]
        state = self._commit(chat_id, ClustersLoaded(tuple(options), {str(k): v for k, v in by_cluster.items()}))
        await reply("Выберите кластер:" if options else "Ozon не вернул кластеры.", view.cluster_kb(state))
        return None

    async def _cb_cluster(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        state = self.load_state(chat_id)
        if state is None or state.active_context() is None:
            await self.show_landing(chat_id, reply)
            return "Мастер устарел, начните заново"
        try:
            cluster_id = int(rest[0])
        except (IndexError, ValueError):
            return UNKNOWN_ACTION
        option = next((c for c in state.clusters if c.get("id") == cluster_id), None)
        if option is None:
            return "Кластер не найден"
        state = self._commit(chat_id, ClusterSelected(cluster_id, option.get("name") or str(cluster_id)))
        await self._show_after_location(chat_id, state, reply)
        return None

    async def _cb_warehouse(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        sub = rest[0] if rest else ""
        if sub == "backToClusters":
            return await self._cb_cluster_start(chat_id, [], reply, user)
        state = self.load_state(chat_id)
        if state is None or state.active_context() is None:
            await self.show_landing(chat_id, reply)
            return "Мастер устарел, начните заново"
        if sub == "auto":
            self._commit(chat_id, WarehouseSelected(None, None, auto=True))
        else:
            try:
                wid = int(sub)
            except ValueError:
                return UNKNOWN_ACTION
            warehouses = state.warehouses.get(str(state.selected_cluster_id), [])
            option = next((w for w in warehouses if w.get("warehouse_id") == wid), None)
            if option is None:
                return "Склад не найден"
            self._commit(chat_id, WarehouseSelected(wid, option.get("name")))
        return await self.prepare_draft(chat_id, reply, user)

    async def _cb_draft(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        if (rest[0] if rest else "") != "retry":
            return UNKNOWN_ACTION
        return await self.prepare_draft(chat_id, reply, user)

    # ------------------- черновик -------------------

    async def prepare_draft(self, chat_id: str, reply: Reply, user: Any = None) -> Optional[str]:
        state = self.load_state(chat_id)
        ctx = state.active_context() if state else None
        if ctx is None:
            await self.show_landing(chat_id, reply)
            return "Сначала загрузите товары"
        if not state.selected_drop_off_id or not state.selected_cluster_id:
            return "Выберите пункт сдачи и кластер"
        if state.draft_status == DraftStatus.CREATING and self._draft_in_flight(ctx.task_id):
            return "Черновик уже создаётся"
        # создание прервано рестартом или падением: известный operation_id опрашиваем заново
        resume = state if state.draft_status == DraftStatus.CREATING and state.draft_operation_id else None
        creds = self.credentials.resolve(chat_id)
        state = self._commit(chat_id, DraftStarted())
        task = state.active_context().task.clone()
        task.reset_draft()
        if resume is not None:
            logger.info("[%s] resume wizard draft operation %s", short(task.task_id), resume.draft_operation_id)
            self._commit(chat_id, DraftOperationCreated(
                resume.draft_operation_id, resume.draft_created_at, resume.draft_expires_at,
            ))
            task.draft_operation_id = resume.draft_operation_id
            task.draft_created_at = resume.draft_created_at
            task.draft_expires_at = resume.draft_expires_at
        controller = AbortController()
        self.abort_registry.register(chat_id, task.task_id, controller)
        await reply(view.render_draft_creating())
        self._spawn(self._run_draft(chat_id, task, creds, state.selected_drop_off_id, controller, reply, user),
                    name=f"draft-{short(task.task_id)}")
        return None

    async def _run_draft(self, chat_id: str, task, creds: OzonCredentials, drop_off_id: int,
                         controller: AbortController, reply: Reply, user: Any):
        async def emit(event_type: SupplyEventType, current, message: Optional[str] = None, *_):
            logger.info("[%s] wizard draft %s: %s", short(current.task_id), event_type.value, message or "")
            if event_type == SupplyEventType.DRAFT_CREATED and self._draft_still_wanted(chat_id, current.task_id):
                self._commit(chat_id, DraftOperationCreated(
                    current.draft_operation_id, current.draft_created_at, current.draft_expires_at,
                ))

        try:
            await self.drafts.ensure_draft(task, creds, int(drop_off_id), controller, emit)
        except TaskAborted:
            return
        except (SupplyTaskError, TaskWindowExpired, OzonApiError) as e:
            error = str(e) if not isinstance(e, TaskWindowExpired) else f"дедлайн {task.last_day} прошёл"
            await self._draft_failed(chat_id, task.task_id, error, reply, user)
            return
        except Exception as e:
            logger.exception("[%s] wizard draft crashed", short(task.task_id))
            await self._draft_failed(chat_id, task.task_id, f"непредвиденная ошибка: {e}", reply, user)
            return
        finally:
            self.abort_registry.clear(task.task_id, controller)

        if not self._draft_still_wanted(chat_id, task.task_id):
            logger.info("[%s] draft ready but wizard moved on", short(task.task_id))
            return
        state = self._commit(chat_id, DraftSucceeded(
            task.draft_operation_id, task.draft_id, tuple(task.draft_warehouses),
            task.draft_created_at, task.draft_expires_at,
        ))
        shown = overlay_task_context(state)
        await reply(view.render_draft_warehouses(shown), view.draft_warehouse_kb(shown))

    async def _draft_failed(self, chat_id: str, task_id: str, error: str, reply: Reply, user: Any):
        if self._draft_still_wanted(chat_id, task_id):
            state = self._commit(chat_id, DraftFailed(error))
            await reply(view.render_warehouse_selection(state), view.warehouse_kb(state))
        await self.notifications.notify_wizard(
            WizardEvent.WIZARD_DRAFT_FAILED, [f"task: {task_id}", error], chat_id=chat_id, user=user,
        )

    def _draft_in_flight(self, task_id: str) -> bool:
        controller = self.abort_registry.get(task_id)
        return controller is not None and not controller.aborted

    def _draft_still_wanted(self, chat_id: str, task_id: str) -> bool:
        state = self.store.get(chat_id)
        return bool(state and state.selected_task_id == task_id and state.draft_status == DraftStatus.CREATING)

    async def _cb_draft_warehouse(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        state = self.load_state(chat_id)
        if state is None or state.active_context() is None or state.draft_status != DraftStatus.SUCCESS:
            await self.show_landing(chat_id, reply)
            return "Черновик не найден, начните заново"
        try:
            wid = int(rest[0])
        except (IndexError, ValueError):
            return UNKNOWN_ACTION
        if state.draft_expires_at and state.draft_expires_at <= now_ts():
            await reply("Черновик устарел, создаю новый.")
            return await self.prepare_draft(chat_id, reply, user)
        option = next((w for w in state.draft_warehouses if w.get("warehouse_id") == wid), None)
        if option is None and wid != state.selected_warehouse_id:
            return "Склад не найден в черновике"
        name = (option or {}).get("name") or state.selected_warehouse_name or str(wid)
        creds = self.credentials.resolve(chat_id)
        task = state.active_context().task
        try:
            start, end = self.runner.orchestrator.build_window(task, 0)
        except TaskWindowExpired:
            await reply(f"⌛ Дедлайн {esc(task.last_day)} уже прошёл, начните заново.", view.upload_kb())
            return None
        deadline = parse_last_day(task.last_day)
        slots: List[Dict[str, Any]] = []
        try:
            data = await self.api.get_draft_timeslots(state.draft_id, [wid], to_ozon_iso(start), to_ozon_iso(end), creds)
            slots = [ts for ts in flatten_timeslots(data) if timeslot_fits(ts, start, deadline)]
        except OzonApiError as e:
            logger.warning("timeslots for draft %s failed: %s", state.draft_id, e)
        state = self._commit(chat_id, DraftWarehouseSelected(wid, name, tuple(slots[:view.BUTTONS_LIMIT])))
        shown = overlay_task_context(state)
        await reply(view.render_timeslots(shown), view.timeslot_kb(shown))
        return None

    async def _cb_timeslot(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        state = self.load_state(chat_id)
        if state is None or state.stage != WizardStage.TIMESLOT_SELECT:
            return "Этот шаг уже пройден"
        sub = rest[0] if rest else ""
        if sub == "auto":
            slot = None
        else:
            try:
                slot = overlay_task_context(state).draft_timeslots[int(sub)]
            except (ValueError, IndexError):
                return "Слот не найден"
        self._commit(chat_id, TimeslotSelected(slot))
        await reply(view.render_ready_days_prompt(self.settings.max_ready_days), view.ready_days_kb())
        return None

    async def _cb_ready(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        if len(rest) < 2 or rest[0] != "select":
            return UNKNOWN_ACTION
        days = parse_ready_days(rest[1], self.settings.max_ready_days)
        if days is None:
            return f"Допустимо от 0 до {self.settings.max_ready_days}"
        state = self.load_state(chat_id)
        if state is None or state.stage != WizardStage.AWAIT_READY_DAYS:
            return "Этот шаг уже пройден"
        await self._apply_ready_days(chat_id, days, reply, user)
        return None

    # ------------------- запуск задачи -------------------

    async def _apply_ready_days(self, chat_id: str, days: int, reply: Reply, user: Any):
        state = self._commit(chat_id, ReadyDaysSet(days))
        ctx = state.active_context() if state else None
        if ctx is None:
            await self.show_landing(chat_id, reply)
            return
        creds = self.credentials.resolve(chat_id)
        if creds is None:
            await self.show_auth_welcome(chat_id, reply)
            return
        task = ctx.task.clone()
        self.runner.orchestrator.ensure_deadline(task, days)
        auto_slot = task.selected_timeslot is None
        self.order_store.save_task(
            chat_id, task,
            dropOffId=state.selected_drop_off_id,
            dropOffName=state.selected_drop_off_name,
            clusterId=state.selected_cluster_id,
            clusterName=state.selected_cluster_name,
            warehouseId=state.selected_warehouse_id,
            warehouseName=state.selected_warehouse_name,
            warehouse=state.selected_warehouse_name,
            readyInDays=days,
            warehouseAutoSelect=state.auto_warehouse_selection,
            timeslotAutoSelect=auto_slot,
            arrival=None if auto_slot else describe_timeslot(task.selected_timeslot),
        )
        params = LaunchParams(chat_id=chat_id, task=task, ready_in_days=days,
                              drop_off_id=int(state.selected_drop_off_id), credentials=creds,
                              resumed=False, user=describe_user(user))
        self.runner.start_task(params, on_event=self._progress_echo(chat_id, task.task_id, reply))
        self._commit(chat_id, TaskLaunched(task.task_id))
        await self.notifications.notify_wizard(
            WizardEvent.WIZARD_TASK_LAUNCHED,
            [f"task: {task.task_id}", f"items: {len(task.items)}", f"drop-off: {state.selected_drop_off_name}",
             f"warehouse: {state.selected_warehouse_name or 'auto'}", f"ready in days: {days}"],
            chat_id=chat_id, user=user,
        )
        await reply(view.render_task_launched(task.task_id, days))
        await self.show_landing(chat_id, reply)

    def _progress_echo(self, chat_id: str, task_id: str, reply: Reply):
        once: Set[SupplyEventType] = set()
        echo = {SupplyEventType.DRAFT_EXPIRED, SupplyEventType.DRAFT_INVALID, SupplyEventType.DRAFT_ERROR,
                SupplyEventType.TIMESLOT_MISSING, SupplyEventType.WAREHOUSE_PENDING}
        single = {SupplyEventType.TIMESLOT_MISSING, SupplyEventType.WAREHOUSE_PENDING}

        async def on_event(event: SupplyEvent):
            if event.type not in echo:
                return
            if event.type in single:
                if event.type in once:
                    return
                once.add(event.type)
            text = view.format_supply_event(task_id, event.type, event.message)
            if text:
                try:
                    await reply(text)
                except Exception as e:
                    logger.warning("[%s] progress echo failed: %s", short(task_id), e)

        return on_event

    # ------------------- задачи и поставки -------------------

    async def _cb_tasks(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        sub = rest[0] if rest else ""
        arg = rest[1] if len(rest) > 1 else ""
        if sub == "list":
            await self.show_tasks(chat_id, reply)
        elif sub == "back":
            await self.show_landing(chat_id, reply)
        elif sub == "details" and arg:
            record = self.order_store.find_task(chat_id, arg)
            if record is None or record.get("status") != "task":
                return "Задача не найдена"
            self._commit(chat_id, TaskSelected(arg))
            await reply(view.render_task_details(record, self.runner.is_running(arg)), view.task_details_kb(arg))
        elif sub == "cancel" and arg:
            await self.cancel_task(chat_id, arg, reply, user)
        else:
            return UNKNOWN_ACTION
        return None

    async def cancel_task(self, chat_id: str, task_id: str, reply: Reply, user: Any = None):
        self.abort_registry.abort(chat_id, task_id)
        removed = self.order_store.delete_by_task_id(chat_id, task_id)
        self.store.remove_task_context(chat_id, task_id)
        self._persist(chat_id)
        await self.notifications.notify_wizard(
            WizardEvent.TASK_CANCELLED, [f"task: {task_id}", f"records removed: {removed}"],
            chat_id=chat_id, user=user,
        )
        await reply(f"Задача {short(task_id)} отменена.")
        await self.show_tasks(chat_id, reply)

    async def _cb_orders(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        sub = rest[0] if rest else ""
        arg = rest[1] if len(rest) > 1 else ""
        if sub == "list":
            await self.show_orders(chat_id, reply)
        elif sub == "back":
            await self.show_landing(chat_id, reply)
        elif sub == "details" and arg:
            order = self.order_store.find_order(chat_id, arg)
            if order is None:
                return "Поставка не найдена"
            self._commit(chat_id, OrderSelected(str(order.get("id"))))
            await reply(view.render_order_details(order), view.order_details_kb())
        elif sub == "cancel":
            state = self.load_state(chat_id)
            if state is None or not state.selected_order_id:
                return "Сначала выберите поставку"
            self._spawn(self.cancel_order(chat_id, state.selected_order_id, reply, user),
                        name=f"cancel-order-{state.selected_order_id}")
            return "Отменяю поставку…"
        else:
            return UNKNOWN_ACTION
        return None

    async def cancel_order(self, chat_id: str, record_id: str, reply: Reply, user: Any = None) -> bool:
        """
        Разрешить order_id -> запросить отмену -> дождаться подтверждения -> удалить запись.
        Любая неудача оставляет запись как есть.
        """
        record = self.order_store.find_order(chat_id, record_id)
        if record is None:
            await reply("Поставка не найдена.")
            return False
        creds = self.credentials.resolve(chat_id)

        async def fail(reason: str) -> bool:
            await reply(f"❌ Не удалось отменить поставку: {esc(reason)}")
            await self.notifications.notify_wizard(
                WizardEvent.ORDER_CANCEL_FAILED, [f"record: {record_id}", reason], chat_id=chat_id, user=user,
            )
            return False

        order_id = record.get("orderId")
        if not order_id:
            if not record.get("operationId"):
                return await fail("нет ни order_id, ни operation_id")
            res = await self.process.resolve_order_id_with_retries(
                record["operationId"], creds,
                attempts=self.settings.order_id_attempts, delay_ms=self.settings.order_id_delay_ms,
            )
            if not res.ok:
                return await fail(f"order_id не найден ({res.failure_reason}, {res.last_error_message or '—'})")
            order_id = res.order_id
            self.order_store.set_order_id(chat_id, record.get("taskId") or record["id"], order_id)

        try:
            operation_id = await self.api.cancel_supply_order(int(order_id), creds)
        except OzonApiError as e:
            return await fail(e.message or str(e))
        if not operation_id:
            return await fail("Ozon не вернул operation_id отмены")

        status = await self.process.wait_for_cancel_status(
            operation_id, creds,
            max_attempts=self.settings.cancel_poll_attempts, delay_ms=self.settings.cancel_poll_delay_ms,
        )
        if not is_cancel_successful(status):
            return await fail(describe_cancel_status(status))

        current = self.order_store.find_order(chat_id, order_id) or record
        self.order_store.delete_by_id(chat_id, current["id"])
        await self.notifications.notify_wizard(
            WizardEvent.ORDER_CANCELLED, [f"order_id: {order_id}", describe_cancel_status(status)],
            chat_id=chat_id, user=user,
        )
        await reply(f"✅ Поставка №{order_id} отменена.")
        await self.show_orders(chat_id, reply)
        return True

    # ------------------- отмена мастера -------------------

    async def _cb_cancel(self, chat_id: str, rest: List[str], reply: Reply, user: Any) -> Optional[str]:
        await self.cancel_wizard(chat_id, reply, user)
        return "Отменено"

    async def cancel_wizard(self, chat_id: str, reply: Reply, user: Any = None):
        self.abort_registry.abort(chat_id)
        removed = self.order_store.delete_pending_for_chat(chat_id)
        self.store.clear(chat_id)
        self._persist(chat_id)
        await self.notifications.notify_wizard(
            WizardEvent.WIZARD_CANCELLED, [f"pending removed: {removed}"], chat_id=chat_id, user=user,
        )
        await self.handle_start(chat_id, reply, user)

    async def shutdown(self):
        for t in list(self._background):
            t.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)


# ------------------- aiogram -------------------

def _answer(message: Message) -> Reply:
    async def reply(text: str, keyboard: Optional[InlineKeyboardMarkup] = None):
        return await message.answer(text, reply_markup=keyboard, parse_mode="HTML", disable_web_page_preview=True)
    return reply


def build_router(handler: SupplyWizardHandler) -> Router:
    router = Router(name="supply_wizard")

    async def guarded(message: Message, call: Callable[[Reply], Awaitable[Any]]):
        reply = _answer(message)
        try:
            await call(reply)
        except Exception as e:
            logger.exception("wizard handler failed for chat %s", message.chat.id)
            await reply(f"❌ Ошибка: {esc(e)}")

    @router.message(Command("start"))
    async def cmd_start(message: Message):
        await guarded(message, lambda r: handler.handle_start(str(message.chat.id), r, message.from_user))

    @router.message(Command("supply"))
    async def cmd_supply(message: Message):
        await guarded(message, lambda r: handler.start_wizard(str(message.chat.id), r, message.from_user))

    @router.message(Command("tasks"))
    async def cmd_tasks(message: Message):
        await guarded(message, lambda r: handler.show_tasks(str(message.chat.id), r))

    @router.message(Command("orders"))
    async def cmd_orders(message: Message):
        await guarded(message, lambda r: handler.show_orders(str(message.chat.id), r))

    @router.message(Command("cancel"))
    async def cmd_cancel(message: Message):
        await guarded(message, lambda r: handler.cancel_wizard(str(message.chat.id), r, message.from_user))

    @router.callback_query(F.data.startswith("wizard:"))
    async def on_callback(cb: CallbackQuery):
        if cb.message is None:
            await cb.answer(UNKNOWN_ACTION)
            return
        chat_id = str(cb.message.chat.id)
        reply = _answer(cb.message)
        try:
            ack = await handler.handle_callback(chat_id, cb.data or "", reply, cb.from_user)
        except Exception as e:
            logger.exception("wizard callback %s failed for chat %s", cb.data, chat_id)
            await reply(f"❌ Ошибка: {esc(e)}")
            ack = None
        await cb.answer(ack)

    @router.callback_query()
    async def on_unknown_callback(cb: CallbackQuery):
        await cb.answer(UNKNOWN_ACTION)

    @router.message(F.text)
    async def on_text(message: Message):
        await guarded(message, lambda r: handler.handle_text(str(message.chat.id), message.text or "", r,
                                                              message.from_user))

    return router
