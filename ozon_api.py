from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api-seller.ozon.ru"
PRODUCT_INFO_BATCH = 1000


@dataclass(frozen=True)
class OzonCredentials:
    client_id: str
    api_key: str

    def is_complete(self) -> bool:
        return bool((self.client_id or "").strip() and (self.api_key or "").strip())


class OzonApiError(Exception):
    def __init__(self, path: str, status_code: int, message: str, payload: Any = None):
        super().__init__(f"{path} -> HTTP {status_code}: {message}")
        self.path = path
        self.status_code = status_code
        self.message = message
        self.payload = payload

    def is_forbidden_role(self) -> bool:
        return self.status_code == 403 and "required role" in (self.message or "").lower()


def mask_client_id(client_id: str) -> str:
    if len(client_id) <= 4:
        return f"{client_id[:1] or '*'}***"
    return f"{client_id[:3]}***{client_id[-2:]}"


def mask_api_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}***{api_key[-4:]}"


def _error_message(parsed: Any, raw_text: str) -> str:
    if isinstance(parsed, dict):
        msg = parsed.get("message") or parsed.get("error") or ""
        if isinstance(msg, dict):
            msg = msg.get("message") or ""
        if msg:
            return str(msg)
    return (raw_text or "")[:400]


class OzonApi:
    """
    Тонкая обёртка над Seller API. Ключи передаются в каждый вызов,
    один AsyncClient на процесс.
    """

    def __init__(self,
                 base_url: str = DEFAULT_BASE_URL,
                 timeout: float = 25,
                 max_retries: int = 3,
                 backoff: float = 1.7,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self._session = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self):
        await self._session.aclose()

    async def json_request(
        self,
        method: str,
        path: str,
        credentials: OzonCredentials,
        json: Any = None,
    ) -> Dict[str, Any]:
        """
        Ретраит 429/5xx/сетевые ошибки, остальное отдаёт вызывающему как OzonApiError.
        Для /v1/draft/create внутренних ретраев нет: бюджетом пересоздания управляет оркестратор.
        """
        headers = {"Client-Id": credentials.client_id, "Api-Key": credentials.api_key}
        disable_retry = (path == "/v1/draft/create")
        attempt = 0

        while True:
            attempt += 1
            logger.debug("→ %s %s attempt=%s client=%s key=%s", method, path, attempt,
                         mask_client_id(credentials.client_id), mask_api_key(credentials.api_key))
            try:
                resp = await self._session.request(method, path, json=json, headers=headers)
            except httpx.HTTPError as e:
                if disable_retry or attempt >= self.max_retries:
                    raise OzonApiError(path, 0, f"http_error:{e}") from e
                delay = min(self.backoff * attempt, 8.0)
                logger.warning("HTTP network error %s %s -> retry in %.2fs (attempt=%s)", path, e, delay, attempt)
                await asyncio.sleep(delay)
                continue

            status = resp.status_code
            raw_text = resp.text
            parsed: Any = None
            if raw_text:
                try:
                    parsed = resp.json()
                except ValueError:
                    parsed = None

            if status >= 400:
                logger.debug("Ozon %s %s -> %s body=%s", method, path, status, raw_text[:400])

            if not disable_retry and (status == 429 or 500 <= status < 600) and attempt < self.max_retries:
                delay = min(self.backoff * attempt, 10.0 if status == 429 else 8.0)
                logger.warning("Ozon %s %s -> %s, retry in %.2fs (attempt=%s)", method, path, status, delay, attempt)
                await asyncio.sleep(delay)
                continue

            if 200 <= status < 300:
                return parsed if isinstance(parsed, dict) else {}
            raise OzonApiError(path, status, _error_message(parsed, raw_text), parsed)

    async def post(self, path: str, body: Dict[str, Any], credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.json_request("POST", path, credentials, json=body)

    # ------------------- RPC -------------------

    async def validate_credentials(self, credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.post("/v1/seller/info", {}, credentials)

    async def search_fbo_warehouses(self, search: str, credentials: OzonCredentials,
                                    supply_types: Sequence[str] = ("CREATE_TYPE_CROSSDOCK",)) -> List[Dict[str, Any]]:
        data = await self.post("/v1/warehouse/fbo/list", {
            "filter_by_supply_type": list(supply_types),
            "search": search,
        }, credentials)
        items = data.get("search")
        if items is None:
            items = (data.get("result") or {}).get("search") if isinstance(data.get("result"), dict) else None
        return [x for x in (items or []) if isinstance(x, dict)]

    async def list_clusters(self, credentials: OzonCredentials,
                            cluster_ids: Optional[Sequence[int]] = None,
                            cluster_type: str = "CLUSTER_TYPE_OZON",
                            ) -> Tuple[List[Dict[str, Any]], Dict[int, List[Dict[str, Any]]]]:
        data = await self.post("/v1/cluster/list", {
            "cluster_ids": [int(x) for x in (cluster_ids or [])],
            "cluster_type": cluster_type,
        }, credentials)
        clusters = [c for c in (data.get("clusters") or []) if isinstance(c, dict)]
        by_cluster: Dict[int, List[Dict[str, Any]]] = {}
        for cluster in clusters:
            try:
                cid = int(cluster.get("id"))
            except (TypeError, ValueError):
                continue
            seen = set()
            whs: List[Dict[str, Any]] = []
            for logistic in cluster.get("logistic_clusters") or []:
                for wh in (logistic or {}).get("warehouses") or []:
                    try:
                        wid = int(wh.get("warehouse_id"))
                    except (TypeError, ValueError):
                        continue
                    if wid in seen:
                        continue
                    seen.add(wid)
                    whs.append({
                        "warehouse_id": wid,
                        "name": (wh.get("name") or "").strip() or f"Склад {wid}",
                        "type": wh.get("type"),
                    })
            by_cluster[cid] = whs
        return clusters, by_cluster

    async def create_draft(self, cluster_ids: Sequence[int], drop_off_point_warehouse_id: int,
                           items: List[Dict[str, int]], credentials: OzonCredentials,
                           type_: str = "CREATE_TYPE_CROSSDOCK") -> str:
        data = await self.post("/v1/draft/create", {
            "cluster_ids": [int(x) for x in cluster_ids],
            "drop_off_point_warehouse_id": int(drop_off_point_warehouse_id),
            "items": items,
            "type": type_,
        }, credentials)
        return str(data.get("operation_id") or "")

    async def get_draft_info(self, operation_id: str, credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.post("/v1/draft/create/info", {"operation_id": operation_id}, credentials)

    async def get_draft_timeslots(self, draft_id: int, warehouse_ids: Sequence[int],
                                  date_from: str, date_to: str,
                                  credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.post("/v1/draft/timeslot/info", {
            "draft_id": int(draft_id),
            "warehouse_ids": [int(x) for x in warehouse_ids],
            "date_from": date_from,
            "date_to": date_to,
        }, credentials)

    async def create_supply(self, draft_id: int, warehouse_id: int, timeslot: Dict[str, Any],
                            credentials: OzonCredentials) -> str:
        data = await self.post("/v1/draft/supply/create", {
            "draft_id": int(draft_id),
            "warehouse_id": int(warehouse_id),
            "timeslot": {
                "from_in_timezone": timeslot.get("from_in_timezone"),
                "to_in_timezone": timeslot.get("to_in_timezone"),
            },
        }, credentials)
        return str(data.get("operation_id") or "")

    async def get_supply_create_status(self, operation_id: str, credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.post("/v1/draft/supply/create/status", {"operation_id": operation_id}, credentials)

    async def cancel_supply_order(self, order_id: int, credentials: OzonCredentials) -> str:
        data = await self.post("/v1/supply-order/cancel", {"order_id": int(order_id)}, credentials)
        return str(data.get("operation_id") or "")

    async def get_supply_cancel_status(self, operation_id: str, credentials: OzonCredentials) -> Dict[str, Any]:
        return await self.post("/v1/supply-order/cancel/status", {"operation_id": operation_id}, credentials)

    async def get_supply_orders(self, order_ids: Sequence[int], credentials: OzonCredentials) -> List[Dict[str, Any]]:
        data = await self.post("/v2/supply-order/get", {"order_ids": [str(x) for x in order_ids]}, credentials)
        return [o for o in (data.get("orders") or []) if isinstance(o, dict)]

    async def get_products_by_offer_ids(self, offer_ids: Sequence[str],
                                        credentials: OzonCredentials) -> Dict[str, int]:
        result: Dict[str, int] = {}
        offers = [o for o in offer_ids if o]
        for i in range(0, len(offers), PRODUCT_INFO_BATCH):
            chunk = offers[i:i + PRODUCT_INFO_BATCH]
            data = await self.post("/v3/product/info/list", {"offer_id": chunk}, credentials)
            for item in data.get("items") or []:
                offer = str(item.get("offer_id") or "").strip()
                try:
                    sku = int(item.get("sku") or 0)
                except (TypeError, ValueError):
                    sku = 0
                if offer and sku > 0:
                    result[offer] = sku
        return result
