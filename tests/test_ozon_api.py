import asyncio
import json

import httpx
import pytest

from ozon_api import OzonApi, OzonApiError, OzonCredentials

CREDS = OzonCredentials("123", "key")


def make_api(handler, **kw):
    kw.setdefault("backoff", 0)
    return OzonApi(base_url="https://ozon.test", transport=httpx.MockTransport(handler), **kw)


def call(api, coro_fn):
    async def scenario():
        try:
            return await coro_fn(api)
        finally:
            await api.aclose()
    return asyncio.run(scenario())


def test_headers_and_body_are_sent():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"operation_id": "op-1"})

    api = make_api(handler)
    op = call(api, lambda a: a.create_draft([2], 10, [{"sku": 1, "quantity": 3}], CREDS))
    assert op == "op-1"
    assert seen["headers"]["Client-Id"] == "123"
    assert seen["headers"]["Api-Key"] == "key"
    assert seen["body"] == {"cluster_ids": [2], "drop_off_point_warehouse_id": 10,
                            "items": [{"sku": 1, "quantity": 3}], "type": "CREATE_TYPE_CROSSDOCK"}


def test_429_is_retried():
    attempts = []

    def handler(request):
        attempts.append(request.url.path)
        if len(attempts) < 3:
            return httpx.Response(429, json={"message": "rate limit"})
        return httpx.Response(200, json={"status": "SUCCESS"})

    api = make_api(handler, max_retries=3)
    assert call(api, lambda a: a.get_draft_info("op", CREDS)) == {"status": "SUCCESS"}
    assert len(attempts) == 3


def test_draft_create_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(429, json={"message": "rate limit"})

    api = make_api(handler, max_retries=5)
    with pytest.raises(OzonApiError) as err:
        call(api, lambda a: a.create_draft([1], 10, [], CREDS))
    assert err.value.status_code == 429
    assert err.value.message == "rate limit"
    assert len(attempts) == 1


def test_client_error_surfaces_message():
    def handler(request):
        return httpx.Response(403, json={"code": 7, "message": "Api-key doesn't have required role"})

    api = make_api(handler)
    with pytest.raises(OzonApiError) as err:
        call(api, lambda a: a.get_supply_create_status("op", CREDS))
    assert err.value.is_forbidden_role()


def test_list_clusters_groups_warehouses():
    payload = {"clusters": [{"id": 2, "name": "Москва", "logistic_clusters": [
        {"warehouses": [{"warehouse_id": 501, "name": "Склад А"}, {"warehouse_id": 501, "name": "dup"}]},
        {"warehouses": [{"warehouse_id": "502", "name": ""}]},
    ]}]}
    api = make_api(lambda request: httpx.Response(200, json=payload))
    clusters, by_cluster = call(api, lambda a: a.list_clusters(CREDS))
    assert clusters[0]["name"] == "Москва"
    assert [(w["warehouse_id"], w["name"]) for w in by_cluster[2]] == [(501, "Склад А"), (502, "Склад 502")]


def test_products_lookup_maps_offer_to_sku():
    payload = {"items": [{"offer_id": "A", "sku": 11}, {"offer_id": "B", "sku": 0}]}
    api = make_api(lambda request: httpx.Response(200, json=payload))
    assert call(api, lambda a: a.get_products_by_offer_ids(["A", "B"], CREDS)) == {"A": 11}
