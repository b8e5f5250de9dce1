import json

from json_store import JsonFileStore
from supply_order_store import SupplyOrderStore
from supply_state import SupplyItem, SupplyTask


def make_task(task_id="t1", last_day="2030-01-10"):
    return SupplyTask(task_id, items=[SupplyItem("A", 3, sku=1), SupplyItem("B", 2, sku=2)], last_day=last_day)


def test_save_task_and_summary(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.save_task(42, make_task(), dropOffId=10, dropOffName="ПВЗ", readyInDays=2, junk="ignored")

    record = store.find_task("42", "t1")
    assert record["status"] == "task"
    assert record["id"] == "t1"
    assert record["dropOffId"] == 10
    assert "junk" not in record
    assert record["taskPayload"]["last_day"] == "2030-01-10"

    summary = store.list_task_summaries(42)
    assert summary == [{
        "taskId": "t1", "title": "ПВЗ", "itemsCount": 2, "totalQuantity": 5, "lastDay": "2030-01-10",
        "dropOffName": "ПВЗ", "readyInDays": 2, "createdAt": record["createdAt"],
    }]


def test_complete_task_is_idempotent(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.save_task("1", make_task())
    first = store.complete_task("1", "t1", "op-1", 9001, arrival="slot")
    second = store.complete_task("1", "t1", "op-2", 9002, arrival="other")

    assert first["id"] == "9001"
    assert second == first
    assert len(store.list("1")) == 1
    assert store.list_orders("1")[0]["orderId"] == 9001


def test_complete_without_order_id_uses_operation_id(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.save_task("1", make_task())
    record = store.complete_task("1", "t1", "op-1")
    assert record["id"] == "op-1"
    assert record["orderId"] is None
    assert store.find_order("1", "op-1")["taskId"] == "t1"


def test_save_task_does_not_downgrade_supply(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.save_task("1", make_task())
    store.complete_task("1", "t1", "op-1", 5)
    store.save_task("1", make_task())
    assert store.find_task("1", "t1")["status"] == "supply"


def test_set_order_id_and_mark_failed_match_legacy_records(tmp_path):
    path = tmp_path / "orders.json"
    path.write_text(json.dumps({"records": [
        {"id": "op-a", "chatId": "1", "operationId": "op-a", "status": "supply", "orderId": None},
        {"id": "op-b", "chatId": "1", "operationId": "op-b", "status": "supply", "orderId": None},
    ]}), encoding="utf-8")
    store = SupplyOrderStore(path)

    store.set_order_id("1", "op-a", 77)
    store.mark_failed_without_order_id("1", "op-b", 404, "not found")

    a = store.find_order("1", "77")
    assert a["id"] == "77" and a["orderId"] == 77
    b = store.find_order("1", "op-b")
    assert b["status"] == "failed_no_order_id"
    assert b["orderIdError"] == {"statusCode": 404, "message": "not found"}


def test_delete_pending_keeps_orders_and_other_chats(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.save_task("1", make_task("t1"))
    store.save_task("1", make_task("t2"))
    store.save_task("2", make_task("t3"))
    store.complete_task("1", "t2", "op", 3)

    assert store.delete_pending_for_chat("1") == 1
    assert [r["taskId"] for r in store.list()] == ["t2", "t3"]
    assert store.delete_by_id("1", "3") == 1
    assert store.delete_by_task_id("2", "t3") == 1
    assert store.list() == []


def test_list_orders_newest_first(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    path = tmp_path / "orders.json"
    path.write_text(json.dumps({"records": [
        {"id": "1", "chatId": "c", "status": "supply", "completedAt": 100},
        {"id": "2", "chatId": "c", "status": "supply", "completedAt": 300},
        {"id": "3", "chatId": "c", "status": "task", "createdAt": 500},
    ]}), encoding="utf-8")
    assert [r["id"] for r in store.list_orders("c")] == ["2", "1"]


def test_json_store_survives_broken_file(tmp_path):
    path = tmp_path / "nested" / "data.json"
    store = JsonFileStore(path, root_key="items")
    path.write_text("{not json", encoding="utf-8")
    assert store.read_all() == []
    store.write_all([{"a": 1}])
    assert json.loads(path.read_text(encoding="utf-8")) == {"items": [{"a": 1}]}
    assert not (tmp_path / "nested" / "data.json.tmp").exists()


def test_delete_by_operation_id_is_scoped_to_chat(tmp_path):
    store = SupplyOrderStore(tmp_path / "orders.json")
    store.complete_task("1", "t1", "op-1", None)
    store.complete_task("2", "t2", "op-1", None)
    assert store.delete_by_operation_id("1", "op-1") == 1
    assert [r["chatId"] for r in store.list()] == ["2"]
