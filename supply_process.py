from __future__ import annotations
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ozon_api import OzonApi, OzonApiError, OzonCredentials
from supply_state import SupplyItem, SupplyTask, SupplyTaskError
from time_utils import add_moscow_days, describe_timeslot, format_timeslot_range, to_ozon_iso, utc_now

logger = logging.getLogger(__name__)

MISSING_ARTICLES_LIMIT = 20

FAILURE_FORBIDDEN_ROLE = "forbidden_role"
FAILURE_NOT_FOUND = "not_found"


@dataclass
class OrderIdResolution:
    order_id: Optional[int] = None
    failure_reason: Optional[str] = None
    last_status_code: Optional[int] = None
    last_error_message: Optional[str] = None
    attempts_made: int = 0

    @property
    def ok(self) -> bool:
        return self.order_id is not None


@dataclass
class SupplyOrderDetails:
    drop_off_id: Optional[int] = None
    drop_off_name: Optional[str] = None
    drop_off_address: Optional[str] = None
    storage_warehouse_id: Optional[int] = None
    storage_warehouse_name: Optional[str] = None
    storage_warehouse_address: Optional[str] = None
    timeslot_from: Optional[str] = None
    timeslot_to: Optional[str] = None
    timezone: Optional[str] = None
    timeslot_label: Optional[str] = None


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def extract_order_ids(status: Optional[Dict[str, Any]]) -> List[int]:
    """order_ids из ответа create/status: верхний уровень и result, числа и строки, без дублей."""
    if not status:
        return []
    collected: List[Any] = []
    result = status.get("result")
    if isinstance(result, dict) and isinstance(result.get("order_ids"), list):
        collected.extend(result["order_ids"])
    if isinstance(status.get("order_ids"), list):
        collected.extend(status["order_ids"])
    out: List[int] = []
    for value in collected:
        parsed = _to_int(value)
        if parsed is not None and parsed > 0 and parsed not in out:
            out.append(parsed)
    return out


def is_cancel_successful(status: Optional[Dict[str, Any]]) -> bool:
    if not status:
        return False
    if str(status.get("status") or "").upper() == "SUCCESS":
        return True
    result = status.get("result") or {}
    if result.get("is_order_cancelled"):
        return True
    return any((s or {}).get("is_supply_cancelled") for s in result.get("supplies") or [])


def _describe_reasons(reasons: List[Dict[str, Any]], sep: str) -> str:
    return sep.join(f"{(r or {}).get('code', 'n/a')}:{(r or {}).get('message', '—')}" for r in reasons)


def describe_cancel_status(status: Optional[Dict[str, Any]]) -> str:
    if not status:
        return "Ответ сервиса пустой"
    parts: List[str] = []
    if status.get("status"):
        parts.append(f"status={status['status']}")
    result = status.get("result") or {}
    if isinstance(result.get("is_order_cancelled"), bool):
        parts.append(f"is_order_cancelled={'true' if result['is_order_cancelled'] else 'false'}")
    supplies = result.get("supplies") or []
    if supplies:
        chunks = []
        for entry in supplies:
            entry = entry or {}
            state = "cancelled" if entry.get("is_supply_cancelled") else "active"
            errors = _describe_reasons(entry.get("error_reasons") or [], ",")
            sid = entry.get("supply_id", "n/a")
            chunks.append(f"{sid}:{state}({errors})" if errors else f"{sid}:{state}")
        parts.append(f"supplies={';'.join(chunks)}")
    if status.get("error_reasons"):
        parts.append(f"errors={_describe_reasons(status['error_reasons'], ', ')}")
    return ", ".join(parts) if parts else "Ответ без подробностей"


def build_draft_items(task: SupplyTask) -> List[Dict[str, int]]:
    items: List[Dict[str, int]] = []
    for item in task.items:
        if not item.sku:
            raise SupplyTaskError(f"Для артикула «{item.article}» не найден SKU.")
        if item.quantity is None or item.quantity <= 0:
            raise SupplyTaskError(f"Количество должно быть положительным числом (артикул {item.article}).")
        items.append({"sku": int(round(item.sku)), "quantity": int(round(item.quantity))})
    return items


def map_task_items(items: List[SupplyItem]) -> List[Dict[str, Any]]:
    return [{"article": i.article, "quantity": i.quantity, "sku": i.sku} for i in items]


def compute_timeslot_window(from_days: int, to_days: int, now: Optional[datetime] = None) -> Dict[str, str]:
    now = now or utc_now()
    return {
        "from_iso": to_ozon_iso(add_moscow_days(now, from_days)),
        "to_iso": to_ozon_iso(add_moscow_days(now, to_days)),
    }


class SupplyProcess:
    """Ограниченные ретраи поверх OzonApi: order_id, статус отмены, SKU, детали заявки."""

    def __init__(self, api: OzonApi):
        self.api = api

    async def resolve_skus(self, task: SupplyTask, credentials: OzonCredentials):
        unresolved: List[str] = []
        for item in task.items:
            article = (item.article or "").strip()
            if not article:
                raise SupplyTaskError("Есть строки с пустым артикулом. Исправьте список и отправьте заново.")
            try:
                numeric = float(article)
            except ValueError:
                numeric = 0
            if math.isfinite(numeric) and numeric > 0:
                item.sku = int(round(numeric))
                continue
            if article not in unresolved:
                unresolved.append(article)

        if not unresolved:
            return

        sku_map = await self.api.get_products_by_offer_ids(unresolved, credentials)
        missing = [a for a in unresolved if not sku_map.get(a)]
        for item in task.items:
            sku = sku_map.get((item.article or "").strip())
            if sku:
                item.sku = sku

        if missing:
            sample = ", ".join(missing[:MISSING_ARTICLES_LIMIT])
            suffix = ""
            if len(missing) > MISSING_ARTICLES_LIMIT:
                suffix = f", и ещё {len(missing) - MISSING_ARTICLES_LIMIT} артикулов"
            raise SupplyTaskError(f"Не удалось найти SKU в Ozon для артикулов: {sample}{suffix}")

    async def resolve_order_id_with_retries(self, operation_id: str, credentials: OzonCredentials,
                                            attempts: int = 5, delay_ms: int = 1000) -> OrderIdResolution:
        attempts = max(1, attempts)
        res = OrderIdResolution(failure_reason=FAILURE_NOT_FOUND)
        for attempt in range(attempts):
            res.attempts_made = attempt + 1
            try:
                status = await self.api.get_supply_create_status(operation_id, credentials)
                ids = extract_order_ids(status)
                if ids:
                    return OrderIdResolution(order_id=ids[0], attempts_made=attempt + 1)
            except OzonApiError as e:
                res.last_status_code = e.status_code
                res.last_error_message = e.message
                if e.is_forbidden_role():
                    logger.warning("order_id %s: forbidden role, stop retrying: %s", operation_id, e.message)
                    res.failure_reason = FAILURE_FORBIDDEN_ROLE
                    return res
                logger.warning("order_id %s attempt %s/%s failed: %s", operation_id, attempt + 1, attempts, e)
            if attempt < attempts - 1 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
        return res

    async def wait_for_cancel_status(self, operation_id: str, credentials: OzonCredentials,
                                     max_attempts: int = 10, delay_ms: int = 1500) -> Optional[Dict[str, Any]]:
        last: Optional[Dict[str, Any]] = None
        for attempt in range(max_attempts):
            try:
                last = await self.api.get_supply_cancel_status(operation_id, credentials)
            except OzonApiError as e:
                logger.warning("cancel status %s attempt %s/%s failed: %s", operation_id, attempt + 1, max_attempts, e)
            if is_cancel_successful(last):
                return last
            if attempt < max_attempts - 1 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
        return last

    async def fetch_supply_order_details(self, order_id: int,
                                         credentials: OzonCredentials) -> Optional[SupplyOrderDetails]:
        try:
            orders = await self.api.get_supply_orders([order_id], credentials)
        except Exception as e:
            logger.warning("get_supply_orders failed for %s: %s", order_id, e)
            return None
        if not orders:
            return None
        return map_order_details(orders[0])


def map_order_details(order: Dict[str, Any]) -> SupplyOrderDetails:
    drop = order.get("drop_off_warehouse") or {}
    supplies = order.get("supplies") or []
    storage = (supplies[0] or {}).get("storage_warehouse") or {} if supplies else {}
    ts = order.get("timeslot") or {}
    slot = ts.get("timeslot") or {}
    tz = (ts.get("timezone_info") or {}).get("iana_name")
    t_from = slot.get("from")
    t_to = slot.get("to")
    return SupplyOrderDetails(
        drop_off_id=_to_int(drop.get("warehouse_id")),
        drop_off_name=drop.get("name") or drop.get("address"),
        drop_off_address=drop.get("address"),
        storage_warehouse_id=_to_int(storage.get("warehouse_id")),
        storage_warehouse_name=storage.get("name") or storage.get("address"),
        storage_warehouse_address=storage.get("address"),
        timeslot_from=t_from,
        timeslot_to=t_to,
        timezone=tz,
        timeslot_label=format_timeslot_range(t_from, t_to, tz),
    )


__all__ = [
    "OrderIdResolution",
    "SupplyOrderDetails",
    "SupplyProcess",
    "build_draft_items",
    "compute_timeslot_window",
    "describe_cancel_status",
    "describe_timeslot",
    "extract_order_ids",
    "is_cancel_successful",
    "map_order_details",
    "map_task_items",
]
