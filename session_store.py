from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from json_store import JsonFileStore
from supply_state import now_ts
from supply_wizard_store import TaskContext, WizardState

logger = logging.getLogger(__name__)


def chat_record_id(chat_id: Any) -> str:
    return f"chat::{chat_id}"


def task_record_id(chat_id: Any, task_id: str) -> str:
    return f"{chat_id}::{task_id}"


class WizardSessionStore:
    """
    Снимки мастера на диске: одна запись на чат и по записи на каждый TaskContext.
    """

    def __init__(self, path: Union[str, Path] = "wizard_sessions.json"):
        self.store = JsonFileStore(path, root_key="sessions")

    def _upsert(self, records: List[Dict[str, Any]], record: Dict[str, Any]):
        for i, r in enumerate(records):
            if r.get("id") == record["id"]:
                record["createdAt"] = r.get("createdAt") or record["createdAt"]
                records[i] = record
                return
        records.append(record)

    def save_chat_state(self, chat_id: Any, state: WizardState):
        chat = str(chat_id)
        ts = now_ts()
        payload = state.to_dict()
        contexts = payload.pop("task_contexts", {})
        with self.store.lock:
            records = self.store.read_all()
            self._upsert(records, {
                "id": chat_record_id(chat),
                "chatId": chat,
                "taskId": None,
                "stage": state.stage.value,
                "payload": payload,
                "createdAt": ts,
                "updatedAt": ts,
            })
            for task_id, ctx in contexts.items():
                self._upsert(records, {
                    "id": task_record_id(chat, task_id),
                    "chatId": chat,
                    "taskId": task_id,
                    "stage": ctx.get("stage"),
                    "payload": ctx,
                    "createdAt": ts,
                    "updatedAt": ts,
                })
            records = [r for r in records
                       if r.get("chatId") != chat or not r.get("taskId") or r.get("taskId") in contexts]
            self.store.write_all(records)

    def load_chat_state(self, chat_id: Any) -> Optional[Dict[str, Any]]:
        """Снимок для SupplyWizardStore.hydrate: состояние чата плюс его task_contexts."""
        chat = str(chat_id)
        chat_record = None
        contexts: Dict[str, Any] = {}
        for r in self.store.read_all():
            if r.get("chatId") != chat:
                continue
            if r.get("taskId"):
                contexts[r["taskId"]] = r.get("payload") or {}
            elif r.get("id") == chat_record_id(chat):
                chat_record = r
        if chat_record is None:
            return None
        snapshot = dict(chat_record.get("payload") or {})
        snapshot["task_contexts"] = contexts
        return snapshot

    def delete_chat_state(self, chat_id: Any) -> int:
        chat = str(chat_id)
        with self.store.lock:
            records = self.store.read_all()
            kept = [r for r in records if r.get("chatId") != chat]
            if len(kept) != len(records):
                self.store.write_all(kept)
            return len(records) - len(kept)

    def load_task_state(self, chat_id: Any, task_id: str) -> Optional[TaskContext]:
        rid = task_record_id(chat_id, task_id)
        for r in self.store.read_all():
            if r.get("id") == rid:
                return TaskContext.from_dict(r.get("payload") or {})
        return None

    def delete_task_state(self, chat_id: Any, task_id: str) -> bool:
        rid = task_record_id(chat_id, task_id)
        with self.store.lock:
            records = self.store.read_all()
            kept = [r for r in records if r.get("id") != rid]
            if len(kept) == len(records):
                return False
            self.store.write_all(kept)
            return True

    def chat_ids(self) -> List[str]:
        return sorted({r.get("chatId") for r in self.store.read_all()
                       if r.get("chatId") and r.get("id") == chat_record_id(r.get("chatId"))})
