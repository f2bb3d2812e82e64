"""
Inventory Service — 受信イベント定義

new_items ストリームに流れてくる OrderPlaced の受信側の形。
"""

from pydantic import BaseModel, ConfigDict, Field


class PlacedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    count: int = Field(gt=0)


class OrderPlaced(BaseModel):
    """注文が保存された (在庫引き当て依頼)"""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    items: list[PlacedItem] = Field(min_length=1)
