"""
Order Service — カタログイベントのサブスクライバー

product_catalog ストリームをコンシューマーグループ order-management で購読する。
ProductBlacklisted は記録するだけで、注文の受付には影響しない。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from services.shared.catalog_events import ProductBlacklisted, run_catalog_subscriber

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "order-management"


def handle_product_blacklisted(event: ProductBlacklisted) -> None:
    logger.warning("Product %s was blacklisted", event.product_id)


async def run_subscriber(
    redis: aioredis.Redis,
    consumer_name: str,
    shutdown_event: asyncio.Event,
) -> None:
    await run_catalog_subscriber(
        redis, CONSUMER_GROUP, consumer_name, shutdown_event, handle_product_blacklisted
    )
