"""
Inventory Service — Redis Streams コンシューマー

new_items ストリームをコンシューマーグループ inventory-management で読み、
OrderPlaced ごとに在庫を引き当てる。

Pub/Sub と違い、サービスが止まっている間のイベントもストリームに残る。
処理が終わってから XACK するので、途中で落ちたエントリーは
再起動時に自分の保留中エントリー (ID "0" から) として読み直される。
引き当て側は orderId で冪等なので、読み直しても二重にはならない。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from services.shared.catalog_events import ProductBlacklisted, ensure_group

from . import commands
from .events import OrderPlaced

logger = logging.getLogger(__name__)

PLACED_ORDER_STREAM = "new_items"
CONSUMER_GROUP = "inventory-management"


def handle_product_blacklisted(event: ProductBlacklisted) -> None:
    """在庫は変えない。記録だけ残す。"""
    logger.warning("Product %s was blacklisted", event.product_id)


def parse_entry(fields: dict) -> OrderPlaced | None:
    """ストリームのエントリーを OrderPlaced にする。読めなければ None。"""
    if fields.get("event_type") != "OrderPlaced":
        return None
    try:
        return OrderPlaced.model_validate(json.loads(fields.get("data") or ""))
    except (ValueError, ValidationError):
        return None


async def handle_entry(
    async_session_factory: async_sessionmaker,
    entry_id: str,
    fields: dict,
) -> None:
    event = parse_entry(fields)
    if event is None:
        logger.warning("Skipping malformed entry %s: %r", entry_id, fields)
        return
    async with async_session_factory() as session:
        await commands.reserve_for_order(session, event)


async def run_consumer(
    redis: aioredis.Redis,
    async_session_factory: async_sessionmaker,
    shutdown_event: asyncio.Event,
    consumer_name: str,
    stream: str = PLACED_ORDER_STREAM,
    group: str = CONSUMER_GROUP,
    block_ms: int = 1000,
) -> None:
    """
    shutdown_event がセットされるまでストリームを読み続ける。
    最初に自分の保留中エントリーを片付け、その後は新着 (">") を待つ。
    """
    await ensure_group(redis, stream, group)
    logger.info("Consuming %s as %s/%s", stream, group, consumer_name)

    last_id = "0"
    while not shutdown_event.is_set():
        try:
            response = await redis.xreadgroup(
                group, consumer_name, {stream: last_id}, count=10, block=block_ms
            )
        except Exception:
            logger.exception("Failed to read from %s", stream)
            await asyncio.sleep(1.0)
            continue

        entries = response[0][1] if response else []
        if last_id != ">":
            if not entries:
                last_id = ">"
                continue
            last_id = entries[-1][0]

        for entry_id, fields in entries:
            try:
                await handle_entry(async_session_factory, entry_id, fields)
            except Exception:
                # ACK しない。次回の保留中読み直しで再処理する
                logger.exception("Failed to process entry %s", entry_id)
                continue
            await redis.xack(stream, group, entry_id)
