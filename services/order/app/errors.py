"""
Order Service — エラー分類

注文確定パイプラインで発生するエラーはすべて OrderPlacementError の
サブクラス。code と status_code を持ち、HTTP 層はそれをそのまま返す。
"""


class OrderPlacementError(Exception):
    code = "Internal"
    status_code = 500

    def __init__(self, message: str = "", *, order_id: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.order_id = order_id
        # 失敗したときのパイプライン段階 (orchestrator が設定する)
        self.stage = None


class InvalidRequest(OrderPlacementError):
    code = "InvalidRequest"
    status_code = 400


class ProductNotFound(OrderPlacementError):
    code = "ProductNotFound"
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id!r} not found")
        self.product_id = product_id


class DownstreamUnavailable(OrderPlacementError):
    code = "DownstreamUnavailable"
    status_code = 503


class CallNotPermitted(DownstreamUnavailable):
    """サーキットブレーカーが OPEN (または HALF_OPEN で枠切れ)"""

    def __init__(self, breaker_name: str, state: str):
        super().__init__(f"Circuit breaker {breaker_name!r} is {state} and does not permit calls")
        self.breaker_name = breaker_name


class NoInstanceAvailable(DownstreamUnavailable):
    def __init__(self, service_name: str):
        super().__init__(f"No instance available for service {service_name!r}")
        self.service_name = service_name


class RemoteLookupError(DownstreamUnavailable):
    """カタログの通信エラー / 5xx"""


class LookupTimeout(DownstreamUnavailable):
    """カタログ呼び出しのタイムアウト"""


class PersistFailure(OrderPlacementError):
    code = "PersistFailure"
    status_code = 500


class PersistTimeout(PersistFailure):
    code = "PersistTimeout"


class PublishFailed(OrderPlacementError):
    """保存後のイベント発行失敗。注文は保存済み (202 で返す)"""

    code = "PublishFailed"
    status_code = 202


class Internal(OrderPlacementError):
    code = "Internal"
    status_code = 500


class ConfigurationError(ValueError):
    pass
