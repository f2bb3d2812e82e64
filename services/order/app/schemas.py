"""
Order Service — Request / Response モデル

ワイヤ上のフィールド名は camelCase (productId, orderId)。
"""

from pydantic import BaseModel, ConfigDict, Field


class PlaceOrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)
    count: int = Field(gt=0)


class PlaceOrder(BaseModel):
    items: list[PlaceOrderItem] = Field(min_length=1)


class PlaceOrderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    status: str
    warning: str | None = None


class OrderItemView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    count: int


class OrderView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    status: str
    items: list[OrderItemView]


class ErrorDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    order_id: str | None = Field(default=None, alias="orderId")


class ErrorResponse(BaseModel):
    error: ErrorDetail
