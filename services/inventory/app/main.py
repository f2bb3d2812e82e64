"""
Inventory Service — FastAPI エントリーポイント

在庫管理サービス。new_items ストリームの OrderPlaced を
バックグラウンドで消費し、商品ごとの引き当て数を積み上げる。
product_catalog ストリームの ProductBlacklisted も購読する (記録のみ)。
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.catalog_events import run_catalog_subscriber

from . import commands, queries
from .consumer import CONSUMER_GROUP, handle_product_blacklisted, run_consumer

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("inventory_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(os.environ["DATABASE_URL"], echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app.state.async_session = async_session
    await commands.init_db(engine)

    redis_pool = aioredis.from_url(
        os.environ.get("REDIS_URL", "redis://localhost:6379"), decode_responses=True
    )

    tasks = []
    shutdown_event = asyncio.Event()
    consumer_name = os.environ.get("SERVICE_INSTANCE_ID", socket.gethostname())
    if os.environ.get("INVENTORY_CONSUMER_ENABLED", "true").lower() != "false":
        tasks.append(
            asyncio.create_task(
                run_consumer(redis_pool, async_session, shutdown_event, consumer_name=consumer_name)
            )
        )
        tasks.append(
            asyncio.create_task(
                run_catalog_subscriber(
                    redis_pool,
                    CONSUMER_GROUP,
                    consumer_name,
                    shutdown_event,
                    handle_product_blacklisted,
                )
            )
        )
    yield
    shutdown_event.set()
    for task in tasks:
        await task
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class SetStockRequest(BaseModel):
    quantity: int = Field(ge=0)


# ── Command Endpoints ────────────────────────────


@app.put("/product-inventory/{product_code}")
async def put_stock(product_code: str, req: SetStockRequest, request: Request):
    """手元在庫数の設定"""
    async with request.app.state.async_session() as session:
        await commands.set_stock(session, product_code, req.quantity)
    async with request.app.state.async_session() as session:
        return await queries.get_inventory(session, product_code)


# ── Query Endpoints ──────────────────────────────


@app.get("/product-inventory/{product_code}")
async def get_stock(product_code: str, request: Request):
    async with request.app.state.async_session() as session:
        inventory = await queries.get_inventory(session, product_code)
        if not inventory:
            raise HTTPException(404, "Product not found")
        return inventory


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-management"}
