"""
Billing Service — Order Service クライアント
"""

import httpx

from ...common.errors import OrderNotFound, UpstreamUnavailable


class OrderClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def get_order(self, order_id: str) -> dict:
        """
        注文スナップショット ({order, items}) を取得する。

        404 は OrderNotFound、タイムアウト・接続失敗・5xx は UpstreamUnavailable。
        """
        try:
            resp = await self.client.get(f"{self.base_url}/orders/{order_id}")
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Order service timed out for {order_id}") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Order service unreachable: {e}") from e

        if resp.status_code == 404:
            raise OrderNotFound(order_id)
        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"Order service returned {resp.status_code} for {order_id}"
            )

        payload = resp.json()
        if not isinstance(payload.get("order"), dict):
            raise UpstreamUnavailable(f"Invalid order payload for {order_id}")
        return payload
