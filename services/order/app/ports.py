"""
Order Service — ポート (外部コラボレータの抽象)

orchestrator はこの 3 つのインターフェースだけに依存する。
テストでは決定的な振る舞いのダブルを差し込む。
"""

from abc import ABC, abstractmethod

from .aggregate import Order, OrderId, Product
from .events import OrderPlaced


class ProductLookup(ABC):
    """商品 ID → 商品 (リモートカタログ)"""

    @abstractmethod
    async def lookup(self, product_id: str) -> Product:
        """
        Raises:
            ProductNotFound: カタログに存在しない
            RemoteLookupError: 通信エラー / 5xx
            LookupTimeout: 待ち時間の上限を超えた
        """


class OrderRepository(ABC):
    """注文集約の永続化"""

    @abstractmethod
    async def save(self, order: Order) -> OrderId:
        """注文と全明細をアトミックに保存し、コミット後に ID を返す。"""

    @abstractmethod
    async def get(self, order_id: OrderId) -> Order | None:
        ...


class EventPublisher(ABC):
    """ドメインイベントの発行"""

    @abstractmethod
    async def publish_order_placed(self, event: OrderPlaced) -> None:
        """耐久性のある宛先に積んでから返る。失敗時は PublishFailed。"""
