"""
Product Management Service — FastAPI エントリーポイント

商品カタログ。Order Service からは GET /products/{productCode} で参照される。
起動時に Redis のディスカバリへ自分を登録し、停止時に DOWN にする。
ブラックリスト登録は product_catalog ストリームに ProductBlacklisted として流す。
"""

import logging
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.catalog_events import publish_product_blacklisted
from services.shared.discovery import RedisServiceRegistry, ServiceRegistration

from . import catalog

SERVICE_NAME = "product-management"

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("product_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(os.environ["DATABASE_URL"], echo=False)
    app.state.async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    await catalog.init_db(engine)

    redis_pool = aioredis.from_url(
        os.environ.get("REDIS_URL", "redis://localhost:6379"), decode_responses=True
    )
    app.state.redis = redis_pool
    registration = None
    instance_url = os.environ.get("SERVICE_INSTANCE_URL")
    if instance_url:
        registration = ServiceRegistration(
            RedisServiceRegistry(redis_pool),
            SERVICE_NAME,
            os.environ.get("SERVICE_INSTANCE_ID", socket.gethostname()),
            instance_url,
        )
        await registration.start()
    else:
        logger.info("SERVICE_INSTANCE_URL not set; skipping discovery registration")

    yield

    if registration is not None:
        try:
            await registration.shutdown()
        except Exception:
            logger.exception("Failed to deregister %s", SERVICE_NAME)
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Product Management Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class CreateProduct(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class BlacklistProduct(BaseModel):
    product_id: str = Field(alias="productId", min_length=1)


# ── Command Endpoints ────────────────────────────


@app.post("/products")
async def create_product(req: CreateProduct, request: Request):
    """商品登録"""
    async with request.app.state.async_session() as session:
        product_code = await catalog.register_product(session, req.name, req.description)
    logger.info("Registered product %s (%s)", product_code, req.name)
    return {"productId": product_code}


@app.post("/blacklisted-products")
async def blacklist_product(req: BlacklistProduct, request: Request):
    """ブラックリスト登録 (イベントを流すだけ。カタログの状態は変えない)"""
    try:
        await publish_product_blacklisted(request.app.state.redis, req.product_id)
    except RedisError as e:
        logger.error("Failed to publish ProductBlacklisted for %s: %s", req.product_id, e)
        raise HTTPException(503, "Catalog event stream unavailable") from e
    return {"productId": req.product_id}


# ── Query Endpoints ──────────────────────────────


@app.get("/products")
async def list_products(request: Request):
    async with request.app.state.async_session() as session:
        return await catalog.list_products(session)


@app.get("/products/{product_code}")
async def get_product(product_code: str, request: Request):
    async with request.app.state.async_session() as session:
        product = await catalog.get_product(session, product_code)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}
