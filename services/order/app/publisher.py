"""
Order Service — イベント発行 (Redis Streams)

Pub/Sub は購読者がいないとイベントが消えるため、在庫引き当て依頼は
Redis Streams の new_items に XADD する。AOF を有効にした Redis なら
XADD の応答が返った時点で耐久性のある宛先に積まれている。
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import PublishFailed
from .events import OrderPlaced
from .ports import EventPublisher

logger = logging.getLogger(__name__)

PLACED_ORDER_STREAM = "new_items"


class RedisOrderEventPublisher(EventPublisher):
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str = PLACED_ORDER_STREAM,
        maxlen: int | None = None,
    ):
        self.redis = redis
        self.stream = stream
        self.maxlen = maxlen

    async def publish_order_placed(self, event: OrderPlaced) -> None:
        try:
            entry_id = await self.redis.xadd(
                self.stream,
                {"event_type": "OrderPlaced", "data": event.to_json()},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise PublishFailed(
                f"Failed to publish OrderPlaced for order {event.order_id}: {e}",
                order_id=event.order_id,
            ) from e
        logger.info("Published OrderPlaced for order %s (%s)", event.order_id, entry_id)
