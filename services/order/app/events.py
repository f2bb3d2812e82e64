"""
Order Service — イベント定義

イベントは過去形で命名し、不変(immutable)として扱う。
OrderPlaced は保存済みの注文の射影で、new_items ストリームに流れる。
"""

from pydantic import BaseModel, ConfigDict, Field

from .aggregate import Order


class OrderPlacedItem(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    product_id: str = Field(alias="productId")
    count: int


class OrderPlaced(BaseModel):
    """注文が保存された (在庫引き当て依頼)"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_id: str = Field(alias="orderId")
    items: list[OrderPlacedItem]

    @classmethod
    def from_order(cls, order: Order) -> "OrderPlaced":
        if order.id is None:
            raise ValueError("OrderPlaced can only be derived from a persisted order")
        return cls(
            order_id=str(order.id),
            items=[
                OrderPlacedItem(product_id=item.product_id, count=item.count)
                for item in order.items
            ],
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
