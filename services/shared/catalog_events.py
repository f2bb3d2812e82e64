"""
Shared — 商品カタログイベント (Redis Streams)

Product Management が発行し、Order / Inventory がそれぞれ
自分のコンシューマーグループで購読する。グループごとに全件が届くので、
1 つのイベントが両サービスに配られる。

  ┌────────────────────┐  XADD   ┌─────────────────┐  order-management     ┌───────┐
  │ Product Management │───────▶│ product_catalog │─────────────────────▶│ Order │
  └────────────────────┘         │    (stream)     │  inventory-management ┌───────────┐
                                 │                 │─────────────────────▶│ Inventory │
                                 └─────────────────┘                       └───────────┘
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

CATALOG_STREAM = "product_catalog"
PRODUCT_BLACKLISTED = "ProductBlacklisted"


class ProductBlacklisted(BaseModel):
    """商品がブラックリストに登録された"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


async def ensure_group(redis: aioredis.Redis, stream: str, group: str) -> None:
    """コンシューマーグループを (ストリームごと) 作る。既にあれば何もしない。"""
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
        logger.info("Created consumer group %s on %s", group, stream)
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


async def publish_product_blacklisted(
    redis: aioredis.Redis, product_id: str, stream: str = CATALOG_STREAM
) -> str:
    event = ProductBlacklisted(product_id=product_id)
    entry_id = await redis.xadd(
        stream, {"event_type": PRODUCT_BLACKLISTED, "data": event.to_json()}
    )
    logger.info("Published ProductBlacklisted for %s (%s)", product_id, entry_id)
    return entry_id


def parse_catalog_entry(fields: dict) -> ProductBlacklisted | None:
    if fields.get("event_type") != PRODUCT_BLACKLISTED:
        return None
    try:
        return ProductBlacklisted.model_validate(json.loads(fields.get("data") or ""))
    except (ValueError, ValidationError):
        return None


async def run_catalog_subscriber(
    redis: aioredis.Redis,
    group: str,
    consumer_name: str,
    shutdown_event: asyncio.Event,
    on_blacklisted: Callable[[ProductBlacklisted], Awaitable[None] | None],
    stream: str = CATALOG_STREAM,
    block_ms: int = 1000,
) -> None:
    """
    shutdown_event がセットされるまで新着のカタログイベントを読み、
    ProductBlacklisted を on_blacklisted に渡す。
    読めないエントリーは警告を出して ACK する。
    """
    await ensure_group(redis, stream, group)
    logger.info("Subscribed to %s as %s/%s", stream, group, consumer_name)

    while not shutdown_event.is_set():
        try:
            response = await redis.xreadgroup(
                group, consumer_name, {stream: ">"}, count=10, block=block_ms
            )
        except Exception:
            logger.exception("Failed to read from %s", stream)
            await asyncio.sleep(1.0)
            continue

        for entry_id, fields in response[0][1] if response else []:
            event = parse_catalog_entry(fields)
            if event is None:
                logger.warning("Skipping unknown catalog entry %s: %r", entry_id, fields)
            else:
                try:
                    result = on_blacklisted(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Failed to handle catalog entry %s", entry_id)
                    continue
            await redis.xack(stream, group, entry_id)
