from __future__ import annotations
import re
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from supply_state import SupplyItem, SupplyTask
from time_utils import parse_last_day, utc_now

# "до 30.11.2026", "Последний день: 2026-11-30"
DEADLINE_LINE_RE = re.compile(
    r"^\s*(?:последний\s+день|дедлайн|до)\s*[:\-]?\s*(\d{2}\.\d{2}\.\d{4}|\d{4}-\d{2}-\d{2})\s*$",
    re.IGNORECASE,
)

# артикул, затем разделитель: ; : таб тире или пробелы
ITEM_LINE_RE = re.compile(
    r"^\s*(?P<article>[^\s;:—]+?)(?:\s*[;:\t—]\s*|\s+[—\-]\s+|\s+)(?P<rest>.+)$"
)

HEADER_RE = re.compile(r"артикул|article|offer", re.IGNORECASE)
RE_TOTAL_QTY = re.compile(r"(?:кол-во|количество)\s*[:=]?\s*(-?\d+)", re.IGNORECASE)
RE_BOXES = re.compile(r"(\d+)\s*короб", re.IGNORECASE)
RE_PER_BOX = re.compile(r"по\s*(\d+)\s*шт", re.IGNORECASE)
RE_LEADING_INT = re.compile(r"^\s*(-?\d+)(?:\s*шт\.?)?\b")


def parse_quantity(rest: str) -> Optional[int]:
    boxes = RE_BOXES.search(rest)
    per_box = RE_PER_BOX.search(rest)
    if boxes and per_box:
        return int(boxes.group(1)) * int(per_box.group(1))
    total = RE_TOTAL_QTY.search(rest)
    if total:
        return int(total.group(1))
    lead = RE_LEADING_INT.match(rest)
    if lead:
        return int(lead.group(1))
    return None


def parse_item_line(line: str) -> Tuple[Optional[SupplyItem], Optional[str]]:
    m = ITEM_LINE_RE.match(line)
    if not m:
        return None, "не найдено количество"
    article = m.group("article").strip()
    if not article:
        return None, "пустой артикул"
    qty = parse_quantity(m.group("rest"))
    if qty is None:
        return None, f"не удалось разобрать количество для «{article}»"
    if qty <= 0:
        return None, f"количество для «{article}» должно быть больше нуля"
    return SupplyItem(article=article, quantity=qty), None


def parse_supply_items(text: str, now: Optional[datetime] = None) -> Tuple[Optional[SupplyTask], List[str]]:
    """
    Список товаров из сообщения: одна позиция на строку, опциональная строка дедлайна.
    Возвращает (SupplyTask, []) или (None, ошибки по строкам).
    """
    lines = [l.rstrip() for l in (text or "").splitlines()]
    errors: List[str] = []
    merged: Dict[str, SupplyItem] = {}
    last_day = ""

    for no, raw in enumerate(lines, 1):
        if not raw.strip():
            continue
        dl = DEADLINE_LINE_RE.match(raw)
        if dl:
            value = dl.group(1)
            deadline = parse_last_day(value)
            if deadline is None:
                errors.append(f"строка {no}: не удалось разобрать дату «{value}»")
            elif deadline < (now or utc_now()):
                errors.append(f"строка {no}: дедлайн {value} уже прошёл")
            else:
                last_day = value
            continue
        item, err = parse_item_line(raw)
        if err:
            # заголовок таблицы, вставленный вместе с данными
            if no == 1 and HEADER_RE.search(raw):
                continue
            errors.append(f"строка {no}: {err}")
            continue
        if item.article in merged:
            merged[item.article].quantity += item.quantity
        else:
            merged[item.article] = item

    if not merged and not errors:
        errors.append("нет ни одной позиции")
    if errors:
        return None, errors

    task = SupplyTask(task_id=uuid.uuid4().hex, items=list(merged.values()), last_day=last_day)
    return task, []
