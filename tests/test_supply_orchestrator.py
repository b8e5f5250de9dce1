import asyncio
from datetime import datetime, timezone

import pytest

from fakes import SLOT, FakeOzonApi, draft_success, timeslots
from ozon_api import OzonApiError, OzonCredentials
from supply_draft import DraftLifecycle, DraftSettings
from supply_orchestrator import SupplyTaskOrchestrator, flatten_timeslots, pick_warehouse, timeslot_fits
from supply_state import SupplyEventType, SupplyItem, SupplyRunOutcome, SupplyTask, TaskWindowExpired
from task_abort import AbortController


def make_task(**kw):
    kw.setdefault("items", [SupplyItem("A-1", 10, sku=111)])
    kw.setdefault("cluster_id", 1)
    return SupplyTask("task-1", **kw)


def orchestrator(api):
    return SupplyTaskOrchestrator(api, DraftLifecycle(api, DraftSettings(poll_interval_s=0, recreate_delay_s=0)),
                                  poll_interval_s=0)


def run(api, task, creds, on_abort_hook=None, drop_off=10, ready=0):
    events = []

    async def scenario():
        ctrl = AbortController()

        async def on_event(event):
            events.append(event)
            if on_abort_hook and on_abort_hook(event, api):
                ctrl.abort()

        result = await orchestrator(api).run(task, creds, ready, drop_off, ctrl, on_event)
        return result

    return asyncio.run(scenario()), events


def test_flatten_timeslots_drops_incomplete_and_duplicates():
    data = timeslots(SLOT, SLOT, ("2030-01-06T10:00:00Z", None))
    assert flatten_timeslots(data) == [{
        "from_in_timezone": SLOT[0], "to_in_timezone": SLOT[1],
        "drop_off_warehouse_id": 10, "timezone": "Europe/Moscow",
    }]
    assert flatten_timeslots(None) == []


def test_pick_warehouse_rules():
    cands = [{"warehouse_id": 1, "is_available": False}, {"warehouse_id": 2}, {"warehouse_id": 3}]
    assert pick_warehouse(make_task(draft_warehouses=cands))["warehouse_id"] == 2
    assert pick_warehouse(make_task(draft_warehouses=cands, warehouse_id=3))["warehouse_id"] == 3
    assert pick_warehouse(make_task(draft_warehouses=cands, warehouse_id=9)) is None
    assert pick_warehouse(make_task(draft_warehouses=cands, warehouse_id=9,
                                    warehouse_auto_select=True))["warehouse_id"] == 2
    assert pick_warehouse(make_task(warehouse_id=7))["warehouse_id"] == 7


def test_build_window_is_capped_by_last_day():
    api = FakeOzonApi()
    now = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)
    start, end = orchestrator(api).build_window(make_task(last_day="2030-01-10"), 2, now)
    assert start == datetime(2030, 1, 3, 9, 0, tzinfo=timezone.utc)
    assert end == datetime(2030, 1, 10, 20, 59, 59, tzinfo=timezone.utc)
    with pytest.raises(TaskWindowExpired):
        orchestrator(api).build_window(make_task(last_day="2030-01-02"), 5, now)


def test_timeslot_fits_window():
    start = datetime(2030, 1, 3, tzinfo=timezone.utc)
    deadline = datetime(2030, 1, 10, tzinfo=timezone.utc)
    assert timeslot_fits({"from_in_timezone": "2030-01-05T10:00:00Z"}, start, deadline)
    assert not timeslot_fits({"from_in_timezone": "2030-01-02T10:00:00Z"}, start, deadline)
    assert not timeslot_fits({"from_in_timezone": "2030-01-11T10:00:00Z"}, start, deadline)
    assert timeslot_fits({"from_in_timezone": "2030-01-11T10:00:00Z"}, start, None)
    assert timeslot_fits({"from_in_timezone": "завтра"}, start, deadline)


def test_run_creates_supply(creds):
    api = FakeOzonApi()
    result, events = run(api, make_task(), creds)

    assert result.outcome == SupplyRunOutcome.SUPPLY_CREATED
    assert result.operation_id == "supply-op-1"
    assert result.task.order_flag == 1
    assert result.task.selected_timeslot == {"from_in_timezone": SLOT[0], "to_in_timezone": SLOT[1]}
    assert [e.type for e in events][-2:] == [SupplyEventType.SUPPLY_STATUS, SupplyEventType.SUPPLY_CREATED]
    assert events[-1].operation_id == "supply-op-1"
    name, draft_id, warehouse_id, slot = [c for c in api.calls if c[0] == "create_supply"][0]
    assert (draft_id, warehouse_id) == (777, 501)


def test_events_carry_snapshots(creds):
    api = FakeOzonApi()
    task = make_task()
    result, events = run(api, task, creds)
    events[0].task.items.clear()
    assert result.task.items


def test_no_events_after_abort(creds):
    api = FakeOzonApi(get_draft_timeslots=timeslots())
    result, events = run(api, make_task(), creds,
                         on_abort_hook=lambda e, _: e.type == SupplyEventType.TIMESLOT_MISSING)
    assert result.outcome == SupplyRunOutcome.ABORTED
    assert events[-1].type == SupplyEventType.TIMESLOT_MISSING
    assert api.count("create_supply") == 0


def test_window_expired_outcome(creds):
    api = FakeOzonApi()
    result, events = run(api, make_task(last_day="2000-01-01"), creds)
    assert result.outcome == SupplyRunOutcome.WINDOW_EXPIRED
    assert [e.type for e in events] == [SupplyEventType.WINDOW_EXPIRED]
    assert api.calls == []


def test_warehouse_pending_is_reported_once(creds):
    api = FakeOzonApi()
    # третий опрос черновика прерывает прогон
    result, events = run(api, make_task(warehouse_id=999), creds,
                         on_abort_hook=lambda e, a: a.count("get_draft_info") >= 3)
    assert result.outcome == SupplyRunOutcome.ABORTED
    assert [e.type for e in events].count(SupplyEventType.WAREHOUSE_PENDING) == 1
    assert api.count("create_draft") == 1


def test_create_supply_error_is_retried(creds):
    api = FakeOzonApi(create_supply=[OzonApiError("/v1/draft/supply/create", 400, "slot taken"), "supply-op-2"])
    result, events = run(api, make_task(), creds)
    assert result.outcome == SupplyRunOutcome.SUPPLY_CREATED
    assert result.operation_id == "supply-op-2"
    errors = [e for e in events if e.type == SupplyEventType.ERROR]
    assert len(errors) == 1 and "slot taken" in errors[0].message


def test_pinned_timeslot_not_offered_keeps_waiting(creds):
    pinned = {"from_in_timezone": "2030-02-01T10:00:00Z", "to_in_timezone": "2030-02-01T11:00:00Z"}
    api = FakeOzonApi()
    result, events = run(api, make_task(selected_timeslot=pinned, last_day="2030-03-01"), creds,
                         on_abort_hook=lambda e, _: e.type == SupplyEventType.TIMESLOT_MISSING)
    assert result.outcome == SupplyRunOutcome.ABORTED
    assert api.count("create_supply") == 0


def test_pinned_timeslot_in_the_past_falls_back_to_first_offered(creds):
    pinned = {"from_in_timezone": "2020-01-01T10:00:00Z", "to_in_timezone": "2020-01-01T11:00:00Z"}
    api = FakeOzonApi()

    async def scenario():
        return await asyncio.wait_for(
            orchestrator(api).run(make_task(selected_timeslot=pinned), creds, 5, 10, AbortController()), 5,
        )

    result = asyncio.run(scenario())
    assert result.outcome == SupplyRunOutcome.SUPPLY_CREATED
    assert result.task.selected_timeslot == {"from_in_timezone": SLOT[0], "to_in_timezone": SLOT[1]}
    assert api.count("get_draft_timeslots") == 1
    assert any(h["event"] == "timeslotUnpinned" for h in result.task.history)


def test_task_without_last_day_gets_default_deadline(creds):
    orch = orchestrator(FakeOzonApi())
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    task = make_task()
    assert orch.ensure_deadline(task, 3, now) == "2030-02-01"
    assert task.last_day == "2030-02-01"
    assert orch.ensure_deadline(make_task(last_day="15.01.2030"), 3, now) == "15.01.2030"

    result, _ = run(FakeOzonApi(), make_task(), creds)
    assert result.task.last_day


def test_missing_credentials_fail_fast():
    api = FakeOzonApi()
    result, events = run(api, make_task(), OzonCredentials("", ""))
    assert result.outcome == SupplyRunOutcome.FAILED
    assert [e.type for e in events] == [SupplyEventType.NO_CREDENTIALS]
    assert api.calls == []


def test_handler_errors_do_not_break_run(creds):
    api = FakeOzonApi()

    async def scenario():
        async def broken(event):
            raise RuntimeError("boom")
        return await orchestrator(api).run(make_task(), creds, 0, 10, AbortController(), broken)

    assert asyncio.run(scenario()).outcome == SupplyRunOutcome.SUPPLY_CREATED
