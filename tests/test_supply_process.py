import asyncio

import pytest

from fakes import FakeOzonApi
from ozon_api import OzonApiError
from supply_process import (
    FAILURE_FORBIDDEN_ROLE, FAILURE_NOT_FOUND, SupplyProcess, build_draft_items, describe_cancel_status,
    extract_order_ids, is_cancel_successful, map_order_details,
)
from supply_state import SupplyItem, SupplyTask, SupplyTaskError


def test_order_ids_from_result_and_top_level():
    status = {
        "result": {"order_ids": [12345, "54321", 12345]},
        "order_ids": ["22222", "bad", None, 0],
    }
    assert extract_order_ids(status) == [12345, 54321, 22222]
    assert extract_order_ids(None) == []
    assert extract_order_ids({"status": "IN_PROGRESS"}) == []


def test_forbidden_role_stops_after_first_call(creds):
    api = FakeOzonApi(get_supply_create_status=OzonApiError(
        "/v1/draft/supply/create/status", 403, "Api-key doesn't have required role"))
    res = asyncio.run(SupplyProcess(api).resolve_order_id_with_retries("op", creds, attempts=5, delay_ms=0))
    assert not res.ok
    assert res.failure_reason == FAILURE_FORBIDDEN_ROLE
    assert res.last_status_code == 403
    assert api.count("get_supply_create_status") == 1


def test_not_found_uses_all_attempts(creds):
    api = FakeOzonApi(get_supply_create_status={"status": "IN_PROGRESS"})
    res = asyncio.run(SupplyProcess(api).resolve_order_id_with_retries("op", creds, attempts=3, delay_ms=0))
    assert res.failure_reason == FAILURE_NOT_FOUND
    assert res.attempts_made == 3
    assert api.count("get_supply_create_status") == 3


def test_order_id_found_on_second_attempt(creds):
    api = FakeOzonApi(get_supply_create_status=[{"status": "IN_PROGRESS"}, {"result": {"order_ids": ["77"]}}])
    res = asyncio.run(SupplyProcess(api).resolve_order_id_with_retries("op", creds, attempts=5, delay_ms=0))
    assert res.order_id == 77
    assert res.attempts_made == 2


def test_cancel_success_predicate():
    assert is_cancel_successful({"status": "success"})
    assert is_cancel_successful({"result": {"is_order_cancelled": True}})
    assert is_cancel_successful({"result": {"supplies": [{"is_supply_cancelled": False}, {"is_supply_cancelled": True}]}})
    assert not is_cancel_successful({"status": "IN_PROGRESS", "result": {"is_order_cancelled": False}})
    assert not is_cancel_successful(None)


def test_describe_cancel_status():
    text = describe_cancel_status({
        "status": "ERROR",
        "result": {"is_order_cancelled": False,
                   "supplies": [{"supply_id": 5, "is_supply_cancelled": False,
                                 "error_reasons": [{"code": "X", "message": "late"}]}]},
    })
    assert text == "status=ERROR, is_order_cancelled=false, supplies=5:active(X:late)"
    assert describe_cancel_status(None) == "Ответ сервиса пустой"


def test_wait_for_cancel_status_returns_last_seen(creds):
    api = FakeOzonApi(get_supply_cancel_status=[{"status": "IN_PROGRESS"}, {"status": "SUCCESS"}])
    status = asyncio.run(SupplyProcess(api).wait_for_cancel_status("c", creds, max_attempts=5, delay_ms=0))
    assert status == {"status": "SUCCESS"}
    assert api.count("get_supply_cancel_status") == 2


def test_resolve_skus_numeric_and_lookup(creds):
    api = FakeOzonApi(get_products_by_offer_ids={"ART-1": 555})
    task = SupplyTask("t", items=[SupplyItem("123", 1), SupplyItem("ART-1", 2)])
    asyncio.run(SupplyProcess(api).resolve_skus(task, creds))
    assert [i.sku for i in task.items] == [123, 555]
    assert api.calls == [("get_products_by_offer_ids", ["ART-1"])]


def test_resolve_skus_reports_missing_articles(creds):
    missing = [f"A{i}" for i in range(23)]
    api = FakeOzonApi(get_products_by_offer_ids={})
    task = SupplyTask("t", items=[SupplyItem(a, 1) for a in missing])
    with pytest.raises(SupplyTaskError) as err:
        asyncio.run(SupplyProcess(api).resolve_skus(task, creds))
    assert "A0, A1" in str(err.value)
    assert str(err.value).endswith(", и ещё 3 артикулов")


def test_draft_items_require_sku():
    with pytest.raises(SupplyTaskError):
        build_draft_items(SupplyTask("t", items=[SupplyItem("A", 1)]))
    assert build_draft_items(SupplyTask("t", items=[SupplyItem("A", 4, sku=9)])) == [{"sku": 9, "quantity": 4}]


def test_map_order_details_minimal():
    details = map_order_details({"drop_off_warehouse": {"warehouse_id": 10, "name": "ПВЗ"}})
    assert details.drop_off_id == 10
    assert details.drop_off_name == "ПВЗ"
