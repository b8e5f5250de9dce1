from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from aiogram import BaseMiddleware, Bot, Dispatcher
from aiogram.types import CallbackQuery, Message, TelegramObject
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import Settings, load_settings
from credentials_store import CredentialsStore
from notifications import AdminNotifier, NotificationService
from ozon_api import OzonApi, OzonCredentials
from session_store import WizardSessionStore
from supply_draft import DraftLifecycle, DraftSettings
from supply_orchestrator import SupplyTaskOrchestrator
from supply_order_store import SupplyOrderStore
from supply_process import SupplyProcess
from supply_task_runner import SupplyTaskRunner
from supply_wizard_handler import SupplyWizardHandler, build_router
from supply_wizard_store import SupplyWizardStore
from task_abort import SupplyTaskAbortRegistry

log = logging.getLogger("ozon-supply-bot")


# =================== ACL MIDDLEWARE ===================
class ACLMiddleware(BaseMiddleware):
    def __init__(self,
                 allowed_ids: Set[int],
                 allowed_usernames: Set[str],
                 deny_message: Optional[str] = None) -> None:
        super().__init__()
        self.allowed_ids = allowed_ids or set()
        self.allowed_usernames = {u for u in (allowed_usernames or set()) if u}
        self.deny_message = (deny_message or "").strip() or None

    def is_allowed(self, user) -> bool:
        # пустые списки: пускаем всех
        if not self.allowed_ids and not self.allowed_usernames:
            return True
        try:
            if int(user.id) in self.allowed_ids:
                return True
        except (TypeError, ValueError, AttributeError):
            pass
        uname = (getattr(user, "username", None) or "").strip()
        return bool(uname) and uname.lower().lstrip("@") in self.allowed_usernames

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = data.get("event_from_user")
        if not user:
            return
        if self.is_allowed(user):
            return await handler(event, data)
        log.info("ACL: denied user %s (@%s)", getattr(user, "id", None), getattr(user, "username", None))
        if self.deny_message:
            bot = data.get("bot")
            if bot and isinstance(event, (Message, CallbackQuery)):
                try:
                    await bot.send_message(chat_id=user.id, text=self.deny_message)
                except Exception as e:
                    log.warning("ACL deny message failed: %s", e)
        return
# =================== END ACL MIDDLEWARE ===================


class App:
    """Сборка всех сервисов процесса."""

    def __init__(self, settings: Settings, bot: Bot):
        self.settings = settings
        self.bot = bot
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        self.api = OzonApi(
            base_url=settings.ozon_api_base_url,
            timeout=settings.http_timeout_s,
            max_retries=settings.http_retry_attempts,
            backoff=settings.http_retry_backoff_s,
        )
        self.drafts = DraftLifecycle(self.api, DraftSettings(
            ttl_minutes=settings.draft_ttl_minutes,
            poll_interval_s=settings.draft_poll_interval_s,
            poll_attempts=settings.draft_poll_attempts,
            recreate_attempts=settings.draft_recreate_attempts,
            recreate_delay_s=settings.draft_recreate_delay_s,
        ))
        self.orchestrator = SupplyTaskOrchestrator(
            self.api, self.drafts,
            poll_interval_s=settings.supply_poll_interval_s,
            max_ready_days=settings.max_ready_days,
            default_window_days=settings.default_window_days,
        )
        self.process = SupplyProcess(self.api)
        self.order_store = SupplyOrderStore(settings.orders_file)
        self.sessions = WizardSessionStore(settings.sessions_file)
        self.credentials = CredentialsStore(
            settings.credentials_file,
            default=OzonCredentials(settings.ozon_client_id, settings.ozon_api_key),
        )
        self.wizard_store = SupplyWizardStore()
        self.abort_registry = SupplyTaskAbortRegistry()
        self.notifications = NotificationService(
            bot, AdminNotifier(bot, settings.admin_ids, settings.broadcast_chat_id),
        )
        self.runner = SupplyTaskRunner(
            self.orchestrator, self.process, self.order_store, self.credentials,
            self.notifications, self.abort_registry, settings,
        )
        self.handler = SupplyWizardHandler(
            self.api, self.process, self.drafts, self.wizard_store, self.sessions, self.order_store,
            self.credentials, self.runner, self.abort_registry, self.notifications, settings,
        )
        self.scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.tz_name))

    def setup_dispatcher(self, dp: Dispatcher):
        acl = ACLMiddleware(self.settings.allowed_user_ids, self.settings.allowed_usernames,
                            self.settings.acl_deny_message)
        dp.update.middleware(acl)
        dp.include_router(build_router(self.handler))

    async def on_startup(self):
        self.runner.register_jobs(self.scheduler)
        self.scheduler.start()
        resumed = await self.runner.resume_pending_tasks()
        log.info("Bot started. Resumed %s pending task(s); data dir %s", resumed, self.settings.data_dir)

    async def on_shutdown(self):
        try:
            self.scheduler.shutdown(wait=False)
        except Exception as e:
            log.warning("Scheduler shutdown failed: %s", e)
        await self.handler.shutdown()
        await self.runner.shutdown()
        await self.api.aclose()


async def main():
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s:%(name)s: %(message)s"
    )
    if not settings.telegram_token:
        raise SystemExit("Missing TELEGRAM_BOT_TOKEN")

    bot = Bot(token=settings.telegram_token)
    dp = Dispatcher()
    app = App(settings, bot)
    app.setup_dispatcher(dp)
    dp.startup.register(app.on_startup)
    dp.shutdown.register(app.on_shutdown)
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
