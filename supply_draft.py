from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ozon_api import OzonApi, OzonApiError, OzonCredentials
from supply_process import build_draft_items
from supply_state import (
    SupplyEventType, SupplyTask, SupplyTaskError, TaskWindowExpired, now_ts, record_event, short,
)
from task_abort import AbortController, TaskAborted
from time_utils import parse_last_day, utc_now

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "CALCULATION_STATUS_SUCCESS"
STATUS_FAILED = "CALCULATION_STATUS_FAILED"
STATUS_EXPIRED = "CALCULATION_STATUS_EXPIRED"
CODE_INVALID = 1
CODE_EXPIRED = 5

Emit = Callable[[SupplyEventType, SupplyTask, Optional[str]], Awaitable[None]]


class DraftPollOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    ERROR = "error"
    TIMEOUT = "timeout"
    PENDING = "pending"


@dataclass
class DraftPollResult:
    outcome: DraftPollOutcome
    info: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class DraftSettings:
    ttl_minutes: int = 30
    poll_interval_s: float = 10.0
    poll_attempts: int = 1000
    recreate_attempts: int = 1000
    recreate_delay_s: float = 3.0


def classify_draft_info(info: Optional[Dict[str, Any]]) -> DraftPollOutcome:
    if not info:
        return DraftPollOutcome.PENDING
    status = str(info.get("status") or "").upper()
    code = info.get("code")
    if status in (STATUS_SUCCESS, "SUCCESS"):
        return DraftPollOutcome.SUCCESS
    if status in (STATUS_EXPIRED, "EXPIRED") or code == CODE_EXPIRED:
        return DraftPollOutcome.EXPIRED
    if status in (STATUS_FAILED, "FAILED", "CALCULATION_STATUS_ERROR") or code == CODE_INVALID:
        return DraftPollOutcome.FAILED
    return DraftPollOutcome.PENDING


def describe_draft_errors(info: Optional[Dict[str, Any]]) -> str:
    if not info:
        return ""
    parts: List[str] = []
    for err in info.get("errors") or []:
        if not isinstance(err, dict):
            continue
        msg = err.get("error_message") or err.get("message") or ""
        items = err.get("items_validation") or []
        if items:
            reasons = {r for it in items for r in (it or {}).get("reasons") or []}
            msg = f"{msg} ({', '.join(sorted(reasons))})" if reasons else msg
        if msg:
            parts.append(str(msg))
    if not parts and info.get("message"):
        parts.append(str(info["message"]))
    return "; ".join(parts)


def extract_draft_warehouses(info: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Кандидаты-склады в порядке, в котором их вернул Ozon (он и есть приоритет)."""
    out: List[Dict[str, Any]] = []
    seen = set()
    for cluster in (info or {}).get("clusters") or []:
        for wh in (cluster or {}).get("warehouses") or []:
            sw = (wh or {}).get("supply_warehouse") or {}
            try:
                wid = int(sw.get("warehouse_id"))
            except (TypeError, ValueError):
                continue
            if wid in seen:
                continue
            seen.add(wid)
            status = (wh or {}).get("status") or {}
            out.append({
                "warehouse_id": wid,
                "name": sw.get("name") or f"Склад {wid}",
                "address": sw.get("address"),
                "cluster_id": cluster.get("cluster_id"),
                "is_available": bool(status.get("is_available", True)),
                "state": status.get("state"),
                "total_rank": wh.get("total_rank"),
            })
    return out


def check_deadline(task: SupplyTask, now: Optional[datetime] = None):
    deadline = parse_last_day(task.last_day)
    if deadline is not None and (now or utc_now()) > deadline:
        raise TaskWindowExpired(task.last_day)


class DraftLifecycle:
    """
    idle -> creating -> success | failed. Черновик, который истёк или не прошёл
    валидацию, пересоздаётся с нуля в пределах recreate_attempts.
    """

    def __init__(self, api: OzonApi, settings: Optional[DraftSettings] = None):
        self.api = api
        self.settings = settings or DraftSettings()

    async def poll_draft_status(self, operation_id: str, credentials: OzonCredentials,
                                abort: AbortController, task: SupplyTask) -> DraftPollResult:
        attempts = max(1, self.settings.poll_attempts)
        last_error: Optional[str] = None
        for attempt in range(attempts):
            abort.raise_if_aborted()
            check_deadline(task)
            try:
                info = await self.api.get_draft_info(operation_id, credentials)
                last_error = None
            except OzonApiError as e:
                info = None
                last_error = str(e)
                logger.warning("[%s] draft info %s attempt %s/%s failed: %s",
                               short(task.task_id), operation_id, attempt + 1, attempts, e)
                if attempt == attempts - 1:
                    return DraftPollResult(DraftPollOutcome.ERROR, error=last_error)
            abort.raise_if_aborted()
            outcome = classify_draft_info(info)
            if outcome != DraftPollOutcome.PENDING:
                return DraftPollResult(outcome, info=info)
            if attempt < attempts - 1:
                await abort.sleep(self.settings.poll_interval_s)
        return DraftPollResult(DraftPollOutcome.TIMEOUT, error=last_error)

    def is_stale(self, task: SupplyTask) -> bool:
        return bool(task.draft_expires_at and task.draft_expires_at <= now_ts())

    async def _create(self, task: SupplyTask, credentials: OzonCredentials, drop_off_id: int,
                      abort: AbortController, emit: Emit):
        items = build_draft_items(task)
        if not task.cluster_id:
            raise SupplyTaskError("Не удалось определить cluster_id")
        abort.raise_if_aborted()
        check_deadline(task)
        operation_id = await self.api.create_draft([task.cluster_id], drop_off_id, items, credentials)
        abort.raise_if_aborted()
        if not operation_id:
            raise OzonApiError("/v1/draft/create", 200, "Черновик не создан: пустой operation_id")
        created = now_ts()
        task.draft_operation_id = operation_id
        task.draft_id = 0
        task.draft_created_at = created
        task.draft_expires_at = created + self.settings.ttl_minutes * 60
        record_event(task, SupplyEventType.DRAFT_CREATED.value, {"operation_id": operation_id})
        await emit(SupplyEventType.DRAFT_CREATED, task, f"Создан черновик {operation_id}")

    async def ensure_draft(self, task: SupplyTask, credentials: OzonCredentials, drop_off_id: int,
                           abort: AbortController, emit: Emit) -> SupplyTask:
        """
        Возвращает task с draft_id и draft_warehouses. Существующий operation_id
        сначала проверяется, а не пересоздаётся вслепую.
        """
        recreations = 0
        reasons: List[str] = []

        while True:
            abort.raise_if_aborted()
            check_deadline(task)

            if task.draft_operation_id and self.is_stale(task):
                logger.info("[%s] draft %s is older than ttl, recreating", short(task.task_id), task.draft_operation_id)
                task.reset_draft()
                await emit(SupplyEventType.DRAFT_EXPIRED, task, "Черновик устарел, создаём заново")

            if not task.draft_operation_id:
                try:
                    await self._create(task, credentials, drop_off_id, abort, emit)
                except (TaskAborted, TaskWindowExpired, SupplyTaskError):
                    raise
                except OzonApiError as e:
                    recreations += 1
                    reasons.append(e.message or str(e))
                    await emit(SupplyEventType.DRAFT_ERROR, task, f"Ошибка создания черновика: {e.message or e}")
                    if recreations > self.settings.recreate_attempts:
                        raise SupplyTaskError(self._exhausted_text(reasons)) from e
                    await abort.sleep(self.settings.recreate_delay_s)
                    continue
            else:
                logger.info("[%s] reuse draft operation %s", short(task.task_id), task.draft_operation_id)

            result = await self.poll_draft_status(task.draft_operation_id, credentials, abort, task)

            if result.outcome == DraftPollOutcome.SUCCESS:
                info = result.info or {}
                try:
                    task.draft_id = int(info.get("draft_id") or 0)
                except (TypeError, ValueError):
                    task.draft_id = 0
                task.draft_warehouses = extract_draft_warehouses(info)
                if not task.draft_id:
                    raise SupplyTaskError("В ответе черновика нет draft_id")
                record_event(task, SupplyEventType.DRAFT_VALID.value, {"draft_id": task.draft_id})
                await emit(SupplyEventType.DRAFT_VALID, task, f"Черновик {task.draft_id} готов")
                return task

            if result.outcome in (DraftPollOutcome.FAILED, DraftPollOutcome.EXPIRED):
                expired = result.outcome == DraftPollOutcome.EXPIRED
                reason = describe_draft_errors(result.info) or ("черновик устарел" if expired else "черновик невалидный")
                reasons.append(reason)
                recreations += 1
                op = task.draft_operation_id
                task.reset_draft()
                record_event(task, result.outcome.value, {"operation_id": op, "reason": reason})
                if expired:
                    await emit(SupplyEventType.DRAFT_EXPIRED, task, "Черновик устарел, создадим заново")
                else:
                    await emit(SupplyEventType.DRAFT_INVALID, task, f"Черновик невалидный: {reason}")
                if recreations > self.settings.recreate_attempts:
                    raise SupplyTaskError(self._exhausted_text(reasons))
                logger.info("[%s] draft %s %s, recreate %s/%s", short(task.task_id), op,
                            result.outcome.value, recreations, self.settings.recreate_attempts)
                await abort.sleep(self.settings.recreate_delay_s)
                continue

            if result.outcome == DraftPollOutcome.ERROR:
                await emit(SupplyEventType.DRAFT_ERROR, task, f"Ошибка статуса черновика: {result.error}")
                raise SupplyTaskError(f"Не удалось получить статус черновика: {result.error}")

            raise SupplyTaskError(
                f"Черновик {task.draft_operation_id} не рассчитан за {self.settings.poll_attempts} попыток"
            )

    def _exhausted_text(self, reasons: List[str]) -> str:
        tail = "; ".join(dict.fromkeys(r for r in reasons if r))
        return f"Не удалось создать черновик за {self.settings.recreate_attempts} попыток: {tail}"
