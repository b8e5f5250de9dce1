from __future__ import annotations
import asyncio
import logging
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TaskAborted(Exception):
    """Прогон задачи остановлен пользователем или новым прогоном того же task_id."""


class AbortController:
    """Кооперативная отмена: проверяется в каждой точке ожидания оркестратора."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self):
        self._event.set()

    def raise_if_aborted(self):
        if self._event.is_set():
            raise TaskAborted()

    async def sleep(self, seconds: float):
        """Пауза, которая прерывается сразу после abort()."""
        self.raise_if_aborted()
        if seconds > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(0)
        self.raise_if_aborted()


class SupplyTaskAbortRegistry:
    def __init__(self):
        self._controllers: Dict[str, Tuple[AbortController, str]] = {}

    def register(self, chat_id: str, task_id: str, controller: AbortController) -> AbortController:
        if not task_id:
            logger.warning("Skip registering abort controller: empty task_id for chat %s", chat_id)
            return controller
        existing = self._controllers.get(task_id)
        if existing:
            existing[0].abort()
        self._controllers[task_id] = (controller, str(chat_id))
        return controller

    def abort(self, chat_id: str, task_id: Optional[str] = None):
        chat_id = str(chat_id)
        if task_id:
            entry = self._controllers.get(task_id)
            if entry and entry[1] == chat_id:
                entry[0].abort()
                del self._controllers[task_id]
            return
        for key, (controller, owner) in list(self._controllers.items()):
            if owner == chat_id:
                controller.abort()
                del self._controllers[key]

    def clear(self, task_id: str, controller: Optional[AbortController] = None):
        """Убирает регистрацию; с controller — только если она всё ещё его."""
        if not task_id:
            return
        entry = self._controllers.get(task_id)
        if entry is None:
            return
        if controller is not None and entry[0] is not controller:
            return
        del self._controllers[task_id]

    def get(self, task_id: str) -> Optional[AbortController]:
        entry = self._controllers.get(task_id)
        return entry[0] if entry else None

    def active_task_ids(self, chat_id: Optional[str] = None):
        return [k for k, (_, owner) in self._controllers.items() if chat_id is None or owner == str(chat_id)]
