"""
Order Service — Inventory Service クライアント

すべての呼び出しは httpx のタイムアウトで上限を持つ。
タイムアウト・接続失敗・5xx は UpstreamUnavailable (再試行可)、
4xx は業務上の拒否として扱い、両者を混同しない。
"""

import logging

import httpx

from ...common.errors import StockReservationFailed, UpstreamUnavailable, ValidationFailed

logger = logging.getLogger(__name__)


def _reason(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class InventoryClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            return await self.client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Inventory service timed out on {path}") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Inventory service unreachable: {e}") from e

    async def lookup_products(self, product_ids: list[int]) -> dict[int, dict]:
        """商品スナップショットを product_id ごとに返す。"""
        resp = await self._post("/inventory/products/lookup", {"product_ids": product_ids})
        if resp.status_code >= 500:
            raise UpstreamUnavailable(f"Catalog lookup failed: {_reason(resp)}")
        if resp.status_code >= 400:
            raise ValidationFailed(f"Catalog lookup rejected: {_reason(resp)}")
        return {item["id"]: item for item in resp.json()["items"]}

    async def reserve(self, items: list[tuple[int, int]]) -> None:
        """
        在庫引き当てを依頼する。

        2xx かつ reserved=true のみ成功。理由文字列は表示用で、解析しない。
        タイムアウトは失敗した引き当てとして扱う (成功とはみなさない)。
        """
        resp = await self._post(
            "/inventory/stock/reserve",
            {"items": [{"product_id": pid, "quantity": qty} for pid, qty in items]},
        )
        if resp.status_code >= 500:
            raise UpstreamUnavailable(f"Stock reservation errored: {_reason(resp)}")
        if resp.status_code >= 400:
            raise StockReservationFailed(_reason(resp))
        if not resp.json().get("reserved"):
            raise StockReservationFailed(_reason(resp))

    async def release(self, items: list[tuple[int, int]]) -> None:
        resp = await self._post(
            "/inventory/stock/release",
            {"items": [{"product_id": pid, "quantity": qty} for pid, qty in items]},
        )
        resp.raise_for_status()
