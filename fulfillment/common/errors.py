"""
共通エラー分類

各サービスのドメイン例外。HTTP ステータスと再試行可否を持ち、
FastAPI の例外ハンドラで構造化レスポンスに変換される。

  4xx: クライアント起因 (再試行しても結果は変わらない)
  5xx: システム起因 (UpstreamUnavailable のみ再試行可)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """全ドメイン例外の基底クラス"""

    status_code = 500
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def code(self) -> str:
        return type(self).__name__

    def extra(self) -> dict:
        """レスポンスに含める追加フィールド"""
        return {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.detail,
            "retryable": self.retryable,
            **self.extra(),
        }


class ValidationFailed(FulfillmentError):
    status_code = 400


class AuthenticationFailed(FulfillmentError):
    status_code = 401


class OrderNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id

    def extra(self) -> dict:
        return {"orderId": self.order_id}


class ProductNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id

    def extra(self) -> dict:
        return {"product_id": self.product_id}


class UnknownProduct(ProductNotFound):
    """引き当て対象の在庫行が存在しない"""

    def __init__(self, product_id: int) -> None:
        super().__init__(product_id)
        self.detail = f"No stock row for product_id={product_id}"

    def extra(self) -> dict:
        return {"reserved": False, "product_id": self.product_id}


class InsufficientStock(FulfillmentError):
    status_code = 409

    def __init__(self, product_id: int, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product_id={product_id}. "
            f"available={available}, requested={requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested

    def extra(self) -> dict:
        return {
            "reserved": False,
            "product_id": self.product_id,
            "available": self.available,
            "requested": self.requested,
        }


class StockReservationFailed(FulfillmentError):
    """在庫サービスが引き当てを拒否した (業務上の失敗)"""

    status_code = 409

    def __init__(self, reason: str) -> None:
        super().__init__(f"Stock reservation failed: {reason}")
        self.reason = reason


class UpstreamUnavailable(FulfillmentError):
    """依存サービスへの到達失敗・タイムアウト・5xx (一時的な失敗)"""

    status_code = 503
    retryable = True


class OrderWriteFailed(FulfillmentError):
    """在庫引き当て後に注文の書き込みが失敗した (引き当ては残る)"""

    status_code = 500


def install_exception_handlers(app: FastAPI) -> None:
    """ドメイン例外と入力検証エラーを構造化 JSON に変換するハンドラを登録する。"""

    @app.exception_handler(FulfillmentError)
    async def handle_domain_error(request: Request, exc: FulfillmentError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        err = ValidationFailed("Request validation failed")
        content = err.to_dict()
        content["errors"] = [
            {"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()
        ]
        return JSONResponse(status_code=err.status_code, content=content)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalError",
                "detail": "Internal server error",
                "retryable": False,
            },
        )
