import asyncio
import json

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from credentials_store import CredentialsStore
from fakes import FakeOzonApi, RecordingNotifications
from supply_draft import DraftLifecycle, DraftSettings
from supply_orchestrator import SupplyTaskOrchestrator
from supply_order_store import SupplyOrderStore
from supply_process import SupplyProcess
from supply_state import SupplyItem, SupplyRunOutcome, SupplyTask, now_ts
from supply_task_runner import LaunchParams, SupplyTaskRunner
from task_abort import SupplyTaskAbortRegistry


def make_runner(tmp_path, settings, creds, api=None):
    api = api or FakeOzonApi()
    drafts = DraftLifecycle(api, DraftSettings(poll_interval_s=0, recreate_delay_s=0))
    orchestrator = SupplyTaskOrchestrator(api, drafts, poll_interval_s=0)
    credentials = CredentialsStore(tmp_path / "creds.json")
    credentials.set("1", creds)
    notifications = RecordingNotifications()
    runner = SupplyTaskRunner(orchestrator, SupplyProcess(api), SupplyOrderStore(tmp_path / "orders.json"),
                              credentials, notifications, SupplyTaskAbortRegistry(), settings)
    return runner, api, notifications


def make_task(task_id="t1", sku=111, last_day="2030-01-10"):
    return SupplyTask(task_id, items=[SupplyItem("A", 2, sku=sku)], cluster_id=1, last_day=last_day)


def params(task, creds, **kw):
    return LaunchParams(chat_id="1", task=task, ready_in_days=0, drop_off_id=10, credentials=creds, **kw)


def write_records(tmp_path, records):
    (tmp_path / "orders.json").write_text(json.dumps({"records": records}), encoding="utf-8")


def test_successful_run_completes_record_and_fires_hook(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    finished = []

    async def hook(chat_id, task_id, outcome):
        finished.append((chat_id, task_id, outcome))

    runner.add_finished_hook(hook)
    task = make_task()
    runner.order_store.save_task("1", task, dropOffId=10, dropOffName="ПВЗ")

    async def scenario():
        await runner.start_task(params(task, creds))

    asyncio.run(scenario())
    record = runner.order_store.find_task("1", "t1")
    assert record["status"] == "supply"
    assert record["orderId"] == 9001
    assert record["dropOffName"] == "ПВЗ"
    assert finished == [("1", "t1", SupplyRunOutcome.SUPPLY_CREATED)]
    assert "Поставка создана" in notes.user[0][1]
    assert "task.supplyCreated" in notes.events()
    assert not runner.is_running("t1")
    assert runner.abort_registry.get("t1") is None


def test_duplicate_supply_created_is_ignored(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    task = make_task()
    runner.order_store.save_task("1", task, dropOffId=10)

    async def scenario():
        await runner.handle_supply_created(params(task, creds), task, "supply-op-1")
        await runner.handle_supply_created(params(task, creds), task, "supply-op-1")

    asyncio.run(scenario())
    assert len(notes.user) == 1
    assert api.count("get_supply_create_status") == 1


def test_failed_run_removes_pending_record(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    task = make_task(sku=None)
    runner.order_store.save_task("1", task, dropOffId=10)

    async def scenario():
        await runner.start_task(params(task, creds))

    asyncio.run(scenario())
    assert runner.order_store.find_task("1", "t1") is None
    assert "Ошибка при обработке поставки" in notes.user[0][1]
    assert "task.failed" in notes.events()


def test_stale_cutoff_for_missing_order_ids(tmp_path, settings, creds):
    runner, api, notes = make_runner(
        tmp_path, settings, creds, FakeOzonApi(get_supply_create_status={"status": "IN_PROGRESS"}))
    now = now_ts()
    write_records(tmp_path, [
        {"id": "op-old", "chatId": "1", "taskId": "old", "operationId": "op-old",
         "status": "supply", "orderId": None, "completedAt": now - 3 * 3600},
        {"id": "op-new", "chatId": "1", "taskId": "new", "operationId": "op-new",
         "status": "supply", "orderId": None, "completedAt": now - 600},
    ])

    assert asyncio.run(runner.recover_missing_order_ids()) == 0
    assert runner.order_store.find_task("1", "old")["status"] == "failed_no_order_id"
    assert runner.order_store.find_task("1", "new")["status"] == "supply"
    assert notes.events() == ["task.orderIdFailed"]
    assert notes.user == []


def test_forbidden_role_is_not_marked_failed(tmp_path, settings, creds):
    from ozon_api import OzonApiError
    api = FakeOzonApi(get_supply_create_status=OzonApiError("/x", 403, "missing required role"))
    runner, api, notes = make_runner(tmp_path, settings, creds, api)
    write_records(tmp_path, [{"id": "op", "chatId": "1", "taskId": "t", "operationId": "op",
                              "status": "supply", "orderId": None, "completedAt": now_ts() - 10 * 3600}])
    asyncio.run(runner.recover_missing_order_ids())
    assert runner.order_store.find_task("1", "t")["status"] == "supply"


def test_recovered_order_id_is_stored(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    write_records(tmp_path, [{"id": "op", "chatId": "1", "taskId": "t", "operationId": "op",
                              "status": "supply", "orderId": None, "completedAt": now_ts()}])
    assert asyncio.run(runner.recover_missing_order_ids()) == 1
    record = runner.order_store.find_task("1", "t")
    assert (record["orderId"], record["id"]) == (9001, "9001")
    assert notes.wizard[0][0] == "task.orderIdRecovered"
    assert "order_id: 9001" in notes.wizard[0][1]


def test_cleanup_removes_tasks_past_deadline(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    finished = []

    async def hook(chat_id, task_id, outcome):
        finished.append((chat_id, task_id, outcome))

    runner.add_finished_hook(hook)
    runner.order_store.save_task("1", make_task("old", last_day="2000-01-01"), dropOffId=10)
    runner.order_store.save_task("1", make_task("fresh", last_day="2999-01-01"), dropOffId=10)

    assert asyncio.run(runner.cleanup_expired_pending_tasks()) == 1
    assert runner.order_store.find_task("1", "old") is None
    assert runner.order_store.find_task("1", "fresh") is not None
    assert notes.user[0][0] == "1"
    assert notes.events() == ["task.windowExpired"]
    assert finished == [("1", "old", SupplyRunOutcome.WINDOW_EXPIRED)]


def test_resume_skips_incomplete_records(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    finished = []

    async def hook(chat_id, task_id, outcome):
        finished.append((task_id, outcome))

    runner.add_finished_hook(hook)
    runner.order_store.save_task("1", make_task("ok"), dropOffId=10, readyInDays=1)
    runner.order_store.save_task("1", make_task("no-drop-off"))
    runner.order_store.save_task("2", make_task("no-creds"), dropOffId=10)

    async def scenario():
        started = await runner.resume_pending_tasks()
        await asyncio.gather(*list(runner._running.values()))
        return started

    assert asyncio.run(scenario()) == 1
    assert runner.order_store.find_task("1", "ok")["status"] == "supply"
    assert runner.order_store.find_task("1", "no-drop-off") is None
    assert runner.order_store.find_task("2", "no-creds")["status"] == "task"
    assert "task.resumedSupplyCreated" in notes.events()
    assert "task.resumeFailed" in notes.events()
    assert ("no-drop-off", SupplyRunOutcome.FAILED) in finished
    assert any("не удалось восстановить" in text for _, text in notes.user)


def test_pending_summary_and_jobs(tmp_path, settings, creds):
    runner, api, notes = make_runner(tmp_path, settings, creds)
    assert asyncio.run(runner.broadcast_pending_summary()) is False
    runner.order_store.save_task("1", make_task(), dropOffId=10)
    assert asyncio.run(runner.broadcast_pending_summary()) is True
    assert notes.wizard[-1][0] == "tasks.pendingSummary"

    scheduler = AsyncIOScheduler()
    runner.register_jobs(scheduler)
    assert sorted(j.id for j in scheduler.get_jobs()) == ["order_id_recovery", "pending_cleanup", "pending_summary"]
