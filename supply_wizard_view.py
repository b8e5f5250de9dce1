from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from notifications import esc
from supply_state import SupplyEventType, short
from supply_wizard_store import WizardState
from time_utils import describe_timeslot, format_timeslot_range

LIST_LIMIT = 20
BUTTONS_LIMIT = 24
READY_DAYS_CHOICES = (0, 1, 2, 3, 5, 7, 14, 21, 28)

Rows = List[List[InlineKeyboardButton]]


def _btn(text: str, data: str) -> InlineKeyboardButton:
    return InlineKeyboardButton(text=text, callback_data=data)


def _kb(rows: Rows) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=rows)


def with_cancel(rows: Optional[Rows] = None) -> InlineKeyboardMarkup:
    return _kb(list(rows or []) + [[_btn("Отмена", "wizard:cancel")]])


def with_navigation(rows: Optional[Rows] = None, back: Optional[str] = None) -> InlineKeyboardMarkup:
    nav = []
    if back:
        nav.append(_btn("Назад", back))
    nav.append(_btn("Отмена", "wizard:cancel"))
    return _kb(list(rows or []) + [nav])


def truncate(value: Optional[str], limit: int = 60) -> str:
    value = (value or "").strip()
    return value if len(value) <= limit else value[:limit - 1] + "…"


def plural_days(n: int) -> str:
    if n % 10 == 1 and n % 100 != 11:
        return f"{n} день"
    if 2 <= n % 10 <= 4 and not 12 <= n % 100 <= 14:
        return f"{n} дня"
    return f"{n} дней"


# ------------------- авторизация -------------------

def render_auth_welcome() -> str:
    return "\n".join([
        "<b>Привет! Я помогу поймать слот на склад Ozon и создать поставку.</b>",
        "",
        "Бот работает через официальный Seller API и только с кросс-докингом.",
        "Для начала нужно авторизоваться ключами из кабинета продавца.",
    ])


def auth_welcome_kb() -> InlineKeyboardMarkup:
    return _kb([[_btn("Авторизоваться", "wizard:auth:login")],
                [_btn("Инструкция", "wizard:auth:info")]])


def render_auth_instruction() -> str:
    return "\n".join([
        "🔐 Подготовьте Client ID и API Key: кабинет продавца → Настройки → Seller API.",
        "",
        "Ключу нужны права на раздел поставок. Когда будете готовы, нажмите «Авторизоваться».",
    ])


def auth_instruction_kb() -> InlineKeyboardMarkup:
    return _kb([[_btn("Авторизоваться", "wizard:auth:login")],
                [_btn("Назад", "wizard:auth:back:welcome")]])


def render_auth_api_key_prompt() -> str:
    return "Введите API Key Ozon одним сообщением.\n\nВыглядит так: jhg6tyr7-8j26-5kp9-bb0b-35y32kl46f07"


def render_auth_client_id_prompt(masked_api_key: Optional[str] = None) -> str:
    lines = ["Отлично! Теперь отправьте Client ID."]
    if masked_api_key:
        lines.append(f"API Key: {esc(masked_api_key)}")
    lines += ["", "Client ID выглядит так: 2191549"]
    return "\n".join(lines)


def auth_back_kb(back: str) -> InlineKeyboardMarkup:
    return _kb([[_btn("Назад", back)]])


def render_auth_reset_confirm() -> str:
    return "Удалить сохранённые ключи Ozon? Все задачи этого чата будут остановлены."


def auth_reset_kb() -> InlineKeyboardMarkup:
    return _kb([[_btn("Да, удалить", "wizard:auth:reset:confirm")],
                [_btn("Нет", "wizard:auth:reset:cancel")]])


# ------------------- главное меню -------------------

def render_landing(state: Optional[WizardState], pending_count: int = 0,
                   last_order: Optional[Dict[str, Any]] = None) -> str:
    lines = ["<b>Главное меню.</b>"]
    if pending_count:
        lines += ["", f"В обработке задач: {pending_count}."]
    if last_order:
        oid = last_order.get("orderId") or last_order.get("operationId") or last_order.get("id")
        arrival = last_order.get("arrival")
        lines += ["", f"Последняя поставка: № {esc(oid)}" + (f" — слот {esc(arrival)}" if arrival else "") + ".",
                  "История доступна в разделе «Мои поставки»."]
    else:
        lines += ["", "<b>Нажмите «Новая поставка», чтобы начать поиск слотов.</b>"]
    return "\n".join(lines)


def landing_kb(has_orders: bool = False) -> InlineKeyboardMarkup:
    rows: Rows = [[_btn("Новая поставка", "wizard:landing:start")],
                  [_btn("Мои задачи", "wizard:tasks:list")]]
    if has_orders:
        rows.append([_btn("Мои поставки", "wizard:orders:list")])
    rows.append([_btn("Сбросить ключи", "wizard:auth:reset")])
    return _kb(rows)


# ------------------- товары и пункт сдачи -------------------

def render_upload_prompt() -> str:
    return "\n".join([
        "<b>📦 Пришлите список товаров одним сообщением.</b>",
        "",
        "Одна строка: артикул и количество, например:",
        "<code>ABC-123 40</code>",
        "<code>987654321; 12</code>",
        "<code>XYZ-1 — 3 коробки по 20 шт</code>",
        "",
        "Последней строкой можно указать дедлайн: <code>до 30.11.2026</code>",
    ])


def upload_kb() -> InlineKeyboardMarkup:
    return with_navigation(back="wizard:landing:back")


def format_items_summary(items: Sequence[Any], limit: int = LIST_LIMIT) -> str:
    lines = []
    for item in list(items)[:limit]:
        article = item.article if hasattr(item, "article") else item.get("article")
        qty = item.quantity if hasattr(item, "quantity") else item.get("quantity")
        sku = item.sku if hasattr(item, "sku") else item.get("sku")
        sku_text = f" (SKU {sku})" if sku and str(sku) != str(article) else ""
        lines.append(f"• {esc(article)}{sku_text} × {qty}")
    if len(items) > limit:
        lines.append(f"… и ещё {len(items) - limit} позиций")
    return "\n".join(lines)


def render_drop_off_query_prompt(items_summary: str) -> str:
    return "\n".join([
        "<b>Товары:</b>",
        items_summary,
        "",
        "Введите город или адрес пункта сдачи (кросс-докинг), например «Москва» или «Казань».",
    ])


def drop_off_query_kb() -> InlineKeyboardMarkup:
    return _kb([[_btn("Назад", "wizard:upload:restart")], [_btn("Отмена", "wizard:cancel")]])


def render_drop_off_options(query: str, options: Sequence[Dict[str, Any]]) -> str:
    if not options:
        return f"По запросу «{esc(query)}» пункты сдачи не найдены. Попробуйте другой запрос."
    lines = [f"Пункты сдачи по запросу «{esc(query)}»:"]
    for i, o in enumerate(list(options)[:BUTTONS_LIMIT], 1):
        addr = o.get("address")
        lines.append(f"{i}. {esc(o.get('name'))}" + (f" — {esc(addr)}" if addr else ""))
    return "\n".join(lines)


def drop_off_kb(options: Sequence[Dict[str, Any]]) -> InlineKeyboardMarkup:
    rows = [[_btn(truncate(o.get("name") or str(o.get("warehouse_id"))), f"wizard:dropoff:{o.get('warehouse_id')}")]
            for o in list(options)[:BUTTONS_LIMIT]]
    return with_navigation(rows, back="wizard:upload:restart")


# ------------------- кластер и склад -------------------

def render_cluster_prompt(state: WizardState) -> str:
    lines = []
    if state.selected_drop_off_name:
        lines.append(f"Пункт сдачи: {esc(state.selected_drop_off_name)}")
    lines.append("Теперь выберите кластер, куда поедет поставка.")
    return "\n".join(lines)


def cluster_start_kb() -> InlineKeyboardMarkup:
    return with_cancel([[_btn("Выбрать кластер и склад", "wizard:clusterStart")]])


def cluster_kb(state: WizardState) -> InlineKeyboardMarkup:
    rows = [[_btn(truncate(c.get("name") or str(c.get("id"))), f"wizard:cluster:{c.get('id')}")]
            for c in state.clusters[:BUTTONS_LIMIT * 2]]
    return with_cancel(rows)


def render_warehouse_selection(state: WizardState) -> str:
    lines = [
        f"Пункт сдачи: {esc(state.selected_drop_off_name or '—')}",
        f"Кластер: {esc(state.selected_cluster_name or '—')}",
        "",
        "Выберите склад назначения или «Первый доступный».",
    ]
    if state.draft_error:
        lines += ["", f"❌ Черновик не создан: {esc(state.draft_error)}"]
    return "\n".join(lines)


def warehouse_kb(state: WizardState) -> InlineKeyboardMarkup:
    warehouses = state.warehouses.get(str(state.selected_cluster_id), []) if state.selected_cluster_id else []
    rows: Rows = [[_btn("Первый доступный", "wizard:warehouse:auto")]]
    rows += [[_btn(truncate(w.get("name")), f"wizard:warehouse:{w.get('warehouse_id')}")]
             for w in warehouses[:BUTTONS_LIMIT]]
    if state.draft_error:
        rows.append([_btn("Повторить черновик", "wizard:draft:retry")])
    return with_navigation(rows, back="wizard:warehouse:backToClusters")


def render_draft_creating() -> str:
    return "⏳ Создаю черновик поставки и жду расчёта Ozon…"


def render_draft_warehouses(state: WizardState) -> str:
    lines = [f"Черновик №{state.draft_id} готов.", "", "Склады, доступные в черновике:"]
    for i, w in enumerate(state.draft_warehouses[:LIST_LIMIT], 1):
        mark = "" if w.get("is_available", True) else " (недоступен)"
        lines.append(f"{i}. {esc(w.get('name'))}{mark}")
    if not state.draft_warehouses:
        lines.append("— Ozon не вернул склады, будет использован выбранный.")
    return "\n".join(lines)


def draft_warehouse_kb(state: WizardState) -> InlineKeyboardMarkup:
    rows = [[_btn(truncate(w.get("name")), f"wizard:draftWarehouse:{w.get('warehouse_id')}")]
            for w in state.draft_warehouses[:BUTTONS_LIMIT] if w.get("is_available", True)]
    if not rows and state.selected_warehouse_id:
        rows = [[_btn(truncate(state.selected_warehouse_name or str(state.selected_warehouse_id)),
                      f"wizard:draftWarehouse:{state.selected_warehouse_id}")]]
    return with_cancel(rows)


# ------------------- таймслот и готовность -------------------

def timeslot_label(slot: Dict[str, Any]) -> str:
    return (format_timeslot_range(slot.get("from_in_timezone"), slot.get("to_in_timezone"))
            or describe_timeslot(slot) or "—")


def render_timeslots(state: WizardState) -> str:
    lines = [f"Склад: {esc(state.selected_warehouse_name or state.selected_warehouse_id)}", ""]
    if state.draft_timeslots:
        lines.append("Свободные таймслоты:")
        for i, ts in enumerate(state.draft_timeslots[:LIST_LIMIT], 1):
            lines.append(f"{i}. {esc(timeslot_label(ts))}")
        lines += ["", "Выберите слот или «Ловить первый доступный»."]
    else:
        lines.append("Свободных слотов сейчас нет. Бот будет ловить первый доступный.")
    return "\n".join(lines)


def timeslot_kb(state: WizardState) -> InlineKeyboardMarkup:
    rows: Rows = [[_btn("Ловить первый доступный", "wizard:timeslot:auto")]]
    rows += [[_btn(truncate(timeslot_label(ts), 40), f"wizard:timeslot:{i}")]
             for i, ts in enumerate(state.draft_timeslots[:BUTTONS_LIMIT])]
    return with_cancel(rows)


def render_ready_days_prompt(max_days: int = 28) -> str:
    return "\n".join([
        "<b>Через сколько дней будете готовы к отгрузке?</b>",
        "",
        f"Выберите вариант или введите целое число от 0 до {max_days}.",
        "0 — готов отгрузиться день в день, 1 — бот ловит слот начиная с завтра, и т.д.",
    ])


def ready_days_kb() -> InlineKeyboardMarkup:
    rows: Rows = []
    for i in range(0, len(READY_DAYS_CHOICES), 3):
        rows.append([_btn(plural_days(d), f"wizard:ready:select:{d}") for d in READY_DAYS_CHOICES[i:i + 3]])
    return with_cancel(rows)


def render_task_launched(task_id: str, ready_in_days: int) -> str:
    return "\n".join([
        f"🚀 Задача {short(task_id)} запущена.",
        f"Готовность через: {plural_days(ready_in_days)}.",
        "Как только слот будет пойман, пришлю номер поставки.",
    ])


# ------------------- задачи -------------------

def render_tasks_list(tasks: Sequence[Dict[str, Any]]) -> str:
    if not tasks:
        return "Активных задач нет.\nСоздайте новую поставку, чтобы бот начал искать слот."
    lines = ["Мои задачи:"]
    for i, t in enumerate(tasks, 1):
        lines.append(f"{i}. {short(t.get('taskId'))}: {t.get('totalQuantity', 0)} шт., "
                     f"{t.get('itemsCount', 0)} товаров. {esc(t.get('dropOffName') or '')} → {esc(t.get('title') or '')}")
    lines += ["", "Выберите задачу, чтобы посмотреть детали или отменить её."]
    return "\n".join(lines)


def tasks_list_kb(tasks: Sequence[Dict[str, Any]]) -> InlineKeyboardMarkup:
    rows = [[_btn(f"Задача {short(t.get('taskId'))}", f"wizard:tasks:details:{t.get('taskId')}")]
            for t in list(tasks)[:BUTTONS_LIMIT]]
    rows.append([_btn("Назад", "wizard:tasks:back")])
    return _kb(rows)


def render_task_details(record: Dict[str, Any], running: bool = False) -> str:
    payload = record.get("taskPayload") or {}
    items = record.get("items") or []
    slot = payload.get("selected_timeslot")
    lines = [
        f"Задача {short(record.get('taskId'))}" + (" (в работе)" if running else ""),
        "",
        f"Пункт сдачи: {esc(record.get('dropOffName'))}" if record.get("dropOffName") else None,
        f"Кластер: {esc(record.get('clusterName'))}" if record.get("clusterName") else None,
        f"Склад: {esc(record.get('warehouseName'))}" if record.get("warehouseName") else
        ("Склад: первый доступный" if record.get("warehouseAutoSelect") else None),
        f"Таймслот: {esc(timeslot_label(slot))}" if slot else "Таймслот: первый доступный",
        f"Готовность: {plural_days(int(record.get('readyInDays') or 0))}",
        f"Дедлайн: {esc(payload.get('last_day'))}" if payload.get("last_day") else None,
        "",
        "Товары:",
        format_items_summary(items),
    ]
    return "\n".join(l for l in lines if l is not None)


def task_details_kb(task_id: str) -> InlineKeyboardMarkup:
    return _kb([[_btn("Отменить задачу", f"wizard:tasks:cancel:{task_id}")],
                [_btn("Назад", "wizard:tasks:list")]])


# ------------------- поставки -------------------

def order_title(order: Dict[str, Any]) -> str:
    return str(order.get("orderId") or order.get("operationId") or order.get("id"))


def render_orders_list(orders: Sequence[Dict[str, Any]]) -> str:
    if not orders:
        return "Список поставок пуст. Создайте новую поставку."
    lines = ["Мои поставки:"]
    for i, o in enumerate(orders, 1):
        arrival = f" — {esc(o['arrival'])}" if o.get("arrival") else ""
        lines.append(f"{i}. №{esc(order_title(o))}{arrival}")
    lines += ["", "Выберите поставку, чтобы посмотреть детали."]
    return "\n".join(lines)


def orders_list_kb(orders: Sequence[Dict[str, Any]]) -> InlineKeyboardMarkup:
    rows = [[_btn(truncate(f"№{order_title(o)}" + (f" • {o['arrival']}" if o.get("arrival") else ""), 50),
                  f"wizard:orders:details:{o.get('id')}")]
            for o in list(orders)[:BUTTONS_LIMIT]]
    rows.append([_btn("Создать новую поставку", "wizard:landing:start")])
    rows.append([_btn("Назад", "wizard:orders:back")])
    return _kb(rows)


def render_order_details(order: Dict[str, Any]) -> str:
    lines = [
        f"Поставка №{esc(order_title(order))}",
        f"Кластер: {esc(order.get('clusterName'))}" if order.get("clusterName") else None,
        f"Пункт сдачи: {esc(order.get('dropOffName'))}" if order.get("dropOffName") else None,
        f"Склад: {esc(order.get('warehouse'))}" if order.get("warehouse") else None,
        f"Таймслот: {esc(order.get('arrival'))}" if order.get("arrival") else None,
        "",
        "Товары:",
        format_items_summary(order.get("items") or []),
    ]
    return "\n".join(l for l in lines if l is not None)


def order_details_kb() -> InlineKeyboardMarkup:
    return _kb([[_btn("Отменить поставку", "wizard:orders:cancel")],
                [_btn("Назад", "wizard:orders:list")]])


def format_supply_created(record: Dict[str, Any]) -> str:
    arrival = record.get("arrival") or format_timeslot_range(record.get("timeslotFrom"), record.get("timeslotTo"))
    lines = [
        "<b>Поставка создана ✅</b>",
        f"ID: {esc(record.get('orderId') or record.get('operationId') or record.get('taskId') or '—')}",
        f"Таймслот: {esc(arrival)}" if arrival else None,
        f"Склад: {esc(record.get('warehouse'))}" if record.get("warehouse") else None,
        f"Пункт сдачи: {esc(record.get('dropOffName'))}" if record.get("dropOffName") else None,
    ]
    return "\n".join(l for l in lines if l)


def format_supply_error(message: Optional[str]) -> str:
    lines = ["<b>❌ Ошибка при обработке поставки</b>"]
    if message:
        lines.append(esc(message))
    return "\n".join(lines)


def format_supply_event(task_id: str, event: SupplyEventType, message: Optional[str]) -> Optional[str]:
    """Короткое сообщение пользователю о ходе фоновой задачи; None, если показывать нечего."""
    prefix = f"Задача {short(task_id)}"
    text = esc(message) if message else ""
    if event == SupplyEventType.DRAFT_CREATED:
        return None
    if event == SupplyEventType.DRAFT_EXPIRED:
        return f"♻️ {prefix}: черновик устарел, создаю новый."
    if event == SupplyEventType.DRAFT_INVALID:
        return f"⚠️ {prefix}: черновик невалидный, пересоздаю. {text}".strip()
    if event == SupplyEventType.DRAFT_ERROR:
        return f"⚠️ {prefix}: {text or 'ошибка черновика'}"
    if event == SupplyEventType.TIMESLOT_MISSING:
        return f"🔎 {prefix}: свободных слотов пока нет, продолжаю искать."
    if event == SupplyEventType.WAREHOUSE_PENDING:
        return f"⏳ {prefix}: выбранный склад пока недоступен, жду."
    if event == SupplyEventType.WINDOW_EXPIRED:
        return f"⌛ {prefix}: дедлайн прошёл, слот не найден. Задача остановлена."
    if event == SupplyEventType.NO_CREDENTIALS:
        return f"🔐 {prefix}: нет ключей Ozon, авторизуйтесь заново."
    if event == SupplyEventType.ERROR:
        return f"❌ {prefix}: {text or 'ошибка'}"
    return None
