from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from json_store import JsonFileStore
from supply_state import SupplyOrderStatus, SupplyTask, now_ts, short

logger = logging.getLogger(__name__)

# поля, которые complete_task/save_task принимают из вызывающего кода
DISPLAY_FIELDS = (
    "arrival", "warehouse", "dropOffId", "dropOffName", "clusterId", "clusterName",
    "warehouseId", "warehouseName", "timeslotFrom", "timeslotTo", "readyInDays",
    "warehouseAutoSelect", "timeslotAutoSelect",
)


def _chat(chat_id: Any) -> str:
    return str(chat_id)


def _matches(record: Dict[str, Any], key: Any) -> bool:
    """taskId, id или operationId: у старых записей taskId может не быть."""
    key = str(key)
    return key in (str(record.get("taskId") or ""), str(record.get("id") or ""), str(record.get("operationId") or ""))


class SupplyOrderStore:
    """
    Заявки и ожидающие задачи одного бота.
    status=task пока задача крутится, supply после создания заявки,
    failed_no_order_id если order_id так и не нашёлся.
    """

    def __init__(self, path: Union[str, Path] = "supply_orders.json"):
        self.store = JsonFileStore(path, root_key="records")

    # ------------------- чтение -------------------

    def list(self, chat_id: Any = None) -> List[Dict[str, Any]]:
        records = self.store.read_all()
        if chat_id is None:
            return records
        return [r for r in records if r.get("chatId") == _chat(chat_id)]

    def list_tasks(self, chat_id: Any = None,
                   status: SupplyOrderStatus = SupplyOrderStatus.TASK) -> List[Dict[str, Any]]:
        return [r for r in self.list(chat_id) if r.get("status") == status.value]

    def list_orders(self, chat_id: Any) -> List[Dict[str, Any]]:
        orders = self.list_tasks(chat_id, SupplyOrderStatus.SUPPLY)
        return sorted(orders, key=lambda r: r.get("completedAt") or r.get("createdAt") or 0, reverse=True)

    def find_task(self, chat_id: Any, task_id: str) -> Optional[Dict[str, Any]]:
        for r in self.list(chat_id):
            if r.get("taskId") == task_id:
                return r
        return None

    def find_order(self, chat_id: Any, record_id: Any) -> Optional[Dict[str, Any]]:
        key = str(record_id)
        for r in self.list(chat_id):
            if key in (str(r.get("id")), str(r.get("orderId") or ""), str(r.get("operationId") or "")):
                return r
        return None

    def list_task_summaries(self, chat_id: Any) -> List[Dict[str, Any]]:
        out = []
        for r in self.list_tasks(chat_id):
            items = r.get("items") or []
            out.append({
                "taskId": r.get("taskId"),
                "title": r.get("warehouseName") or r.get("warehouse") or r.get("dropOffName") or short(r.get("taskId")),
                "itemsCount": len(items),
                "totalQuantity": sum(int(i.get("quantity") or 0) for i in items),
                "lastDay": (r.get("taskPayload") or {}).get("last_day") or "",
                "dropOffName": r.get("dropOffName"),
                "readyInDays": r.get("readyInDays"),
                "createdAt": r.get("createdAt"),
            })
        return sorted(out, key=lambda s: s.get("createdAt") or 0)

    # ------------------- запись -------------------

    def _upsert(self, records: List[Dict[str, Any]], record: Dict[str, Any]):
        for i, r in enumerate(records):
            if r.get("chatId") == record["chatId"] and r.get("taskId") == record["taskId"]:
                records[i] = record
                return
        records.append(record)

    def save_task(self, chat_id: Any, task: SupplyTask, **fields) -> Dict[str, Any]:
        """Создаёт/обновляет ожидающую задачу. Запись со статусом supply не трогает."""
        with self.store.lock:
            records = self.store.read_all()
            existing = next((r for r in records
                             if r.get("chatId") == _chat(chat_id) and r.get("taskId") == task.task_id), None)
            if existing and existing.get("status") != SupplyOrderStatus.TASK.value:
                logger.info("[%s] save_task skipped: record already %s", short(task.task_id), existing.get("status"))
                return existing
            ts = now_ts()
            record = dict(existing or {})
            record.update({
                "id": task.task_id,
                "chatId": _chat(chat_id),
                "taskId": task.task_id,
                "operationId": task.draft_operation_id or None,
                "orderId": None,
                "status": SupplyOrderStatus.TASK.value,
                "items": [i.to_dict() for i in task.items],
                "taskPayload": task.to_dict(),
                "createdAt": record.get("createdAt") or ts,
                "updatedAt": ts,
            })
            record.setdefault("completedAt", None)
            record.update({k: v for k, v in fields.items() if k in DISPLAY_FIELDS})
            self._upsert(records, record)
            self.store.write_all(records)
            return record

    def update_task_payload(self, chat_id: Any, task: SupplyTask) -> bool:
        """Свежий снимок задачи (черновик, склад) для резюма после рестарта."""
        with self.store.lock:
            records = self.store.read_all()
            for r in records:
                if (r.get("chatId") == _chat(chat_id) and r.get("taskId") == task.task_id
                        and r.get("status") == SupplyOrderStatus.TASK.value):
                    r["taskPayload"] = task.to_dict()
                    r["operationId"] = task.draft_operation_id or r.get("operationId")
                    r["updatedAt"] = now_ts()
                    self.store.write_all(records)
                    return True
        return False

    def complete_task(self, chat_id: Any, task_id: str, operation_id: str,
                      order_id: Optional[int] = None, **fields) -> Dict[str, Any]:
        """
        Идемпотентно: если по task_id уже есть запись supply, она возвращается как есть.
        """
        with self.store.lock:
            records = self.store.read_all()
            existing = next((r for r in records
                             if r.get("chatId") == _chat(chat_id) and r.get("taskId") == task_id), None)
            if existing and existing.get("status") == SupplyOrderStatus.SUPPLY.value:
                logger.info("[%s] complete_task: already completed, skip", short(task_id))
                return existing
            ts = now_ts()
            record = dict(existing or {"chatId": _chat(chat_id), "taskId": task_id, "createdAt": ts, "items": []})
            record.update({k: v for k, v in fields.items() if k in DISPLAY_FIELDS or k == "items"})
            record.update({
                "id": str(order_id) if order_id else str(operation_id),
                "operationId": operation_id,
                "orderId": order_id,
                "status": SupplyOrderStatus.SUPPLY.value,
                "updatedAt": ts,
                "completedAt": ts,
            })
            self._upsert(records, record)
            self.store.write_all(records)
            return record

    def set_order_id(self, chat_id: Any, key: str, order_id: int, **fields) -> Optional[Dict[str, Any]]:
        with self.store.lock:
            records = self.store.read_all()
            for r in records:
                if r.get("chatId") == _chat(chat_id) and _matches(r, key):
                    r.update({k: v for k, v in fields.items() if k in DISPLAY_FIELDS})
                    r["orderId"] = int(order_id)
                    r["id"] = str(order_id)
                    r["updatedAt"] = now_ts()
                    self.store.write_all(records)
                    return r
        return None

    def mark_failed_without_order_id(self, chat_id: Any, key: str,
                                     status_code: Optional[int] = None,
                                     message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self.store.lock:
            records = self.store.read_all()
            for r in records:
                if r.get("chatId") == _chat(chat_id) and _matches(r, key):
                    r["status"] = SupplyOrderStatus.FAILED_NO_ORDER_ID.value
                    r["orderIdError"] = {"statusCode": status_code, "message": message}
                    r["updatedAt"] = now_ts()
                    self.store.write_all(records)
                    return r
        return None

    def _delete_where(self, predicate) -> int:
        with self.store.lock:
            records = self.store.read_all()
            kept = [r for r in records if not predicate(r)]
            removed = len(records) - len(kept)
            if removed:
                self.store.write_all(kept)
            return removed

    def delete_by_task_id(self, chat_id: Any, task_id: str) -> int:
        return self._delete_where(lambda r: r.get("chatId") == _chat(chat_id) and r.get("taskId") == task_id)

    def delete_by_id(self, chat_id: Any, record_id: Any) -> int:
        return self._delete_where(lambda r: r.get("chatId") == _chat(chat_id) and str(r.get("id")) == str(record_id))

    def delete_by_operation_id(self, chat_id: Any, operation_id: str) -> int:
        return self._delete_where(lambda r: r.get("chatId") == _chat(chat_id) and r.get("operationId") == operation_id)

    def delete_pending_for_chat(self, chat_id: Any) -> int:
        return self._delete_where(lambda r: r.get("chatId") == _chat(chat_id)
                                  and r.get("status") == SupplyOrderStatus.TASK.value)
