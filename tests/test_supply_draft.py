import asyncio

import pytest

from fakes import FakeOzonApi, draft_success
from supply_draft import (
    DraftLifecycle, DraftPollOutcome, DraftSettings, classify_draft_info, describe_draft_errors,
    extract_draft_warehouses,
)
from supply_state import SupplyEventType, SupplyItem, SupplyTask, SupplyTaskError, TaskWindowExpired, now_ts
from task_abort import AbortController, TaskAborted

EXPIRED = {"status": "CALCULATION_STATUS_EXPIRED"}


def make_task(**kw):
    kw.setdefault("items", [SupplyItem("A-1", 10, sku=111)])
    kw.setdefault("cluster_id", 1)
    return SupplyTask("task-1", **kw)


def lifecycle(api, **kw):
    kw.setdefault("poll_interval_s", 0)
    kw.setdefault("recreate_delay_s", 0)
    return DraftLifecycle(api, DraftSettings(**kw))


def run(drafts, task, creds, abort=None):
    events = []

    async def emit(event_type, current, message=None, operation_id=None):
        events.append((event_type, current.draft_operation_id, list(current.draft_warehouses)))

    async def scenario():
        return await drafts.ensure_draft(task, creds, 10, abort or AbortController(), emit)

    return asyncio.run(scenario()), events


def test_classify_draft_info():
    assert classify_draft_info(None) == DraftPollOutcome.PENDING
    assert classify_draft_info({"status": "CALCULATION_STATUS_IN_PROGRESS"}) == DraftPollOutcome.PENDING
    assert classify_draft_info({"status": "CALCULATION_STATUS_SUCCESS"}) == DraftPollOutcome.SUCCESS
    assert classify_draft_info({"code": 5}) == DraftPollOutcome.EXPIRED
    assert classify_draft_info({"code": 1}) == DraftPollOutcome.FAILED


def test_extract_warehouses_keeps_order_and_dedupes():
    info = draft_success(warehouses=((2, "B"), (1, "A"), (2, "B")))
    assert [w["warehouse_id"] for w in extract_draft_warehouses(info)] == [2, 1]


def test_describe_errors_with_item_reasons():
    info = {"errors": [{"error_message": "invalid", "items_validation": [{"reasons": ["no_stock", "bad_sku"]}]}]}
    assert describe_draft_errors(info) == "invalid (bad_sku, no_stock)"


def test_expired_twice_then_success_recreates_each_time(creds):
    ops = ["op-1", "op-2", "op-3"]
    api = FakeOzonApi(
        create_draft=lambda *a: ops[api.count("create_draft") - 1],
        get_draft_info=lambda op: draft_success() if op == "op-3" else EXPIRED,
    )
    task, events = run(lifecycle(api), make_task(), creds)

    assert api.count("create_draft") == 3
    assert task.draft_operation_id == "op-3"
    assert task.draft_id == 777
    assert [w["warehouse_id"] for w in task.draft_warehouses] == [501]
    assert [e[0] for e in events] == [
        SupplyEventType.DRAFT_CREATED, SupplyEventType.DRAFT_EXPIRED,
        SupplyEventType.DRAFT_CREATED, SupplyEventType.DRAFT_EXPIRED,
        SupplyEventType.DRAFT_CREATED, SupplyEventType.DRAFT_VALID,
    ]
    # после истечения ids и списки черновика пустые
    assert events[1][1:] == ("", [])
    assert events[3][1:] == ("", [])


def test_fresh_operation_is_reused_not_recreated(creds):
    api = FakeOzonApi()
    task = make_task(draft_operation_id="keep", draft_expires_at=now_ts() + 600)
    task, events = run(lifecycle(api), task, creds)
    assert api.count("create_draft") == 0
    assert api.calls[0] == ("get_draft_info", "keep")
    assert task.draft_id == 777
    assert [e[0] for e in events] == [SupplyEventType.DRAFT_VALID]


def test_stale_operation_is_dropped_before_polling(creds):
    api = FakeOzonApi(create_draft="fresh")
    task = make_task(draft_operation_id="old", draft_expires_at=now_ts() - 1)
    task, events = run(lifecycle(api), task, creds)
    assert ("get_draft_info", "old") not in api.calls
    assert task.draft_operation_id == "fresh"
    assert events[0][0] == SupplyEventType.DRAFT_EXPIRED


def test_invalid_draft_budget_exhausted(creds):
    api = FakeOzonApi(get_draft_info={"status": "CALCULATION_STATUS_FAILED",
                                      "errors": [{"error_message": "bad sku"}]})
    with pytest.raises(SupplyTaskError) as err:
        run(lifecycle(api, recreate_attempts=1), make_task(), creds)
    assert api.count("create_draft") == 2
    assert "bad sku" in str(err.value)


def test_passed_deadline_stops_before_any_call(creds):
    api = FakeOzonApi()
    with pytest.raises(TaskWindowExpired):
        run(lifecycle(api), make_task(last_day="2000-01-01"), creds)
    assert api.calls == []


def test_aborted_controller_raises(creds):
    api = FakeOzonApi()

    async def scenario():
        ctrl = AbortController()
        ctrl.abort()
        async def emit(*a):
            pass
        await lifecycle(api).ensure_draft(make_task(), creds, 10, ctrl, emit)

    with pytest.raises(TaskAborted):
        asyncio.run(scenario())
    assert api.calls == []
