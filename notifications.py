from __future__ import annotations
import asyncio
import html
import logging
from enum import Enum
from typing import Any, Iterable, List, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramForbiddenError, TelegramRetryAfter

logger = logging.getLogger(__name__)


class WizardEvent(str, Enum):
    WIZARD_START = "wizard.start"
    WIZARD_CANCELLED = "wizard.cancelled"
    WIZARD_DRAFT_FAILED = "wizard.draftFailed"
    WIZARD_TASK_LAUNCHED = "wizard.taskLaunched"
    TASK_SUPPLY_CREATED = "task.supplyCreated"
    TASK_RESUMED_SUPPLY_CREATED = "task.resumedSupplyCreated"
    TASK_SUPPLY_ERROR = "task.supplyError"
    TASK_RESUME_FAILED = "task.resumeFailed"
    TASK_WINDOW_EXPIRED = "task.windowExpired"
    TASK_FAILED = "task.failed"
    TASK_ORDER_ID_RECOVERED = "task.orderIdRecovered"
    TASK_ORDER_ID_FAILED = "task.orderIdFailed"
    TASK_CANCELLED = "task.cancelled"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_CANCEL_FAILED = "order.cancelFailed"
    TASKS_PENDING_SUMMARY = "tasks.pendingSummary"
    AUTH_SAVED = "auth.saved"
    AUTH_RESET = "auth.reset"


def describe_user(user: Any) -> Optional[str]:
    if user is None:
        return None
    if isinstance(user, str):
        return user
    uname = getattr(user, "username", None)
    full = getattr(user, "full_name", None)
    uid = getattr(user, "id", None)
    parts = [p for p in (f"@{uname}" if uname else None, full, f"id={uid}" if uid else None) if p]
    return " ".join(parts) or None


def format_admin_message(event: str, lines: Iterable[str],
                         chat_id: Any = None, user: Any = None) -> str:
    meta: List[str] = []
    if chat_id is not None:
        meta.append(f"chat: {chat_id}")
    who = describe_user(user)
    if who:
        meta.append(f"user: {who}")
    body = [str(l) for l in lines if l is not None and str(l).strip()]
    out = [f"#{event}"] + meta
    if body:
        out.append("")
        out.extend(body)
    return "\n".join(out)


class AdminNotifier:
    """Операционный лог в канал и админам. Ошибки отправки только логируются."""

    def __init__(self, bot: Bot, admin_ids: Optional[Iterable[Any]] = None,
                 broadcast_chat_id: Optional[str] = None):
        self.bot = bot
        self.admin_ids = [str(a) for a in (admin_ids or []) if str(a).strip()]
        self.broadcast_chat_id = (str(broadcast_chat_id).strip() if broadcast_chat_id else "") or None

    @property
    def enabled(self) -> bool:
        return bool(self.admin_ids or self.broadcast_chat_id)

    async def _send(self, chat_id: str, text: str):
        try:
            await self.bot.send_message(chat_id, text, disable_web_page_preview=True)
        except TelegramRetryAfter as e:
            await asyncio.sleep(e.retry_after)
            try:
                await self.bot.send_message(chat_id, text, disable_web_page_preview=True)
            except Exception as e2:
                logger.error("admin notify retry to %s failed: %s", chat_id, e2)
        except TelegramForbiddenError as e:
            logger.warning("admin notify to %s forbidden: %s", chat_id, e)
        except Exception as e:
            logger.error("admin notify to %s failed: %s", chat_id, e)

    async def notify_wizard_event(self, event: str, lines: Iterable[str],
                                  chat_id: Any = None, user: Any = None):
        if not self.enabled:
            return
        text = format_admin_message(event, lines, chat_id, user)
        if self.broadcast_chat_id:
            await self._send(self.broadcast_chat_id, text)
        suffix = f"\n\n(Лог продублирован в канале {self.broadcast_chat_id})" if self.broadcast_chat_id else ""
        for admin in self.admin_ids:
            if admin == self.broadcast_chat_id:
                continue
            await self._send(admin, text + suffix)


class NotificationService:
    def __init__(self, bot: Optional[Bot], admin_notifier: Optional[AdminNotifier] = None):
        self.bot = bot
        self.admin_notifier = admin_notifier

    async def notify_wizard(self, event: WizardEvent | str, lines: Iterable[Optional[str]] = (),
                            chat_id: Any = None, user: Any = None):
        if self.admin_notifier is None:
            return
        tag = event.value if isinstance(event, WizardEvent) else str(event)
        clean = [l for l in lines if l and str(l).strip()]
        try:
            await self.admin_notifier.notify_wizard_event(tag, clean, chat_id=chat_id, user=user)
        except Exception:
            logger.exception("notify_wizard %s failed", tag)

    async def notify_user(self, chat_id: Any, text: str, parse_mode: Optional[str] = "HTML",
                          reply_markup: Any = None) -> bool:
        if self.bot is None or not text:
            return False
        try:
            await self.bot.send_message(chat_id, text, parse_mode=parse_mode,
                                        reply_markup=reply_markup, disable_web_page_preview=True)
            return True
        except TelegramRetryAfter as e:
            await asyncio.sleep(e.retry_after)
            try:
                await self.bot.send_message(chat_id, text, parse_mode=parse_mode,
                                            reply_markup=reply_markup, disable_web_page_preview=True)
                return True
            except Exception as e2:
                logger.warning("notify_user retry %s failed: %s", chat_id, e2)
        except TelegramForbiddenError as e:
            logger.warning("notify_user %s forbidden (bot blocked?): %s", chat_id, e)
        except Exception as e:
            logger.warning("notify_user %s failed: %s", chat_id, e)
        return False


def esc(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))
