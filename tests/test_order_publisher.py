"""Tests for publishing OrderPlaced to the new_items stream."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.order.app.aggregate import Order, OrderId, OrderItem
from services.order.app.errors import PublishFailed
from services.order.app.events import OrderPlaced
from services.order.app.publisher import PLACED_ORDER_STREAM, RedisOrderEventPublisher


def placed_event():
    order = Order(status="BOOKED", items=[OrderItem("A", 1), OrderItem("B", 2)], id=OrderId(42))
    return OrderPlaced.from_order(order)


class TestRedisOrderEventPublisher:
    async def test_xadds_event_to_stream(self):
        redis = AsyncMock()
        redis.xadd.return_value = "1700000000000-0"

        await RedisOrderEventPublisher(redis).publish_order_placed(placed_event())

        stream, fields = redis.xadd.call_args.args
        assert stream == PLACED_ORDER_STREAM == "new_items"
        assert fields["event_type"] == "OrderPlaced"
        assert json.loads(fields["data"]) == {
            "orderId": "42",
            "items": [{"productId": "A", "count": 1}, {"productId": "B", "count": 2}],
        }

    async def test_redis_error_is_publish_failed(self):
        redis = AsyncMock()
        redis.xadd.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(PublishFailed) as exc_info:
            await RedisOrderEventPublisher(redis).publish_order_placed(placed_event())

        assert exc_info.value.order_id == "42"
        assert exc_info.value.status_code == 202


class TestOrderPlaced:
    def test_requires_persisted_order(self):
        with pytest.raises(ValueError):
            OrderPlaced.from_order(Order.book([OrderItem("A", 1)]))

    def test_parses_wire_format(self):
        event = OrderPlaced.model_validate_json(
            '{"orderId":"9","items":[{"productId":"X","count":3}]}'
        )
        assert event.order_id == "9"
        assert event.items[0].product_id == "X"
