"""
Order Service — 注文集約 (Order Aggregate)

1 リクエストの間だけ orchestrator が所有し、保存時にリポジトリへ渡す。
保存後に境界を越えるのは OrderPlaced イベント (値) だけ。

状態:
    BOOKED  (作成時。以降のライフサイクルはこのサービスの範囲外)
"""

from dataclasses import dataclass, field
from typing import NewType

OrderId = NewType("OrderId", int)

STATUS_BOOKED = "BOOKED"


@dataclass(frozen=True)
class Product:
    """カタログから解決された商品。コアが使うのは ID だけ。"""

    product_id: str


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    count: int


@dataclass
class Order:
    status: str
    items: list[OrderItem] = field(default_factory=list)
    id: OrderId | None = None

    @classmethod
    def book(cls, items: list[OrderItem]) -> "Order":
        """解決済みの明細から BOOKED の注文を組み立てる。"""
        if not items:
            raise ValueError("an order needs at least one item")
        return cls(status=STATUS_BOOKED, items=list(items))
