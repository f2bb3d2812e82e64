"""
Order Service — FastAPI エントリーポイント

POST /orders で注文を受け付け、商品解決 → 保存 → new_items への発行を行う。

  ┌────────┐     ┌───────────────┐  GET /products/{code}  ┌────────────────────┐
  │ Client │────▶│ Order Service │──────────────────────▶│ Product Management │
  └────────┘     │               │  (LB + CircuitBreaker) └────────────────────┘
                 │               │──▶ PostgreSQL (om_order / om_order_item)
                 │               │──▶ Redis Stream new_items ──▶ Inventory
                 │               │◀── Redis Stream product_catalog (ProductBlacklisted)
                 └───────────────┘
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.discovery import RedisServiceRegistry, StaticServiceRegistry

from .api import install_error_handlers, router
from .circuit_breaker import CircuitBreakerRegistry
from .config import PRODUCT_BREAKER_NAME, PRODUCT_SERVICE_NAME, load_settings
from .load_balancer import LoadBalancerClient
from .orchestrator import OrderPlacementOrchestrator
from .product_client import CircuitBreakingProductLookup, ProductServiceClient
from .publisher import RedisOrderEventPublisher
from .repository import SqlAlchemyOrderRepository, init_db
from .subscriber import run_subscriber

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("order_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)

    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await init_db(engine)

    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(
        limits=httpx.Limits(max_connections=settings.http_max_connections)
    )

    discovery = StaticServiceRegistry.from_env(
        settings.load_balancers_for, os.environ
    ) or RedisServiceRegistry(redis_pool)
    load_balancer = LoadBalancerClient(discovery, settings.load_balancers_for)
    try:
        await load_balancer.refresh()
    except Exception:
        logger.exception("Initial service discovery failed; will retry in background")

    breakers = CircuitBreakerRegistry({PRODUCT_BREAKER_NAME: settings.product_breaker})
    products = CircuitBreakingProductLookup(
        ProductServiceClient(
            http_client, load_balancer, PRODUCT_SERVICE_NAME, timeout=settings.lookup_timeout
        ),
        breakers.get(PRODUCT_BREAKER_NAME),
        fallback_product_id=settings.fallback_product_code,
        timeout=settings.lookup_timeout,
    )
    repository = SqlAlchemyOrderRepository(async_session)

    app.state.repository = repository
    app.state.breakers = breakers
    app.state.orchestrator = OrderPlacementOrchestrator(
        products,
        repository,
        RedisOrderEventPublisher(redis_pool),
        save_timeout=settings.save_timeout,
    )

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(
            load_balancer.run_refresher(settings.discovery_refresh_interval_s, shutdown_event)
        )
    ]
    if settings.catalog_events_enabled:
        tasks.append(
            asyncio.create_task(run_subscriber(redis_pool, settings.instance_id, shutdown_event))
        )
    yield
    shutdown_event.set()
    for task in tasks:
        await task
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Management Service", lifespan=lifespan)
app.include_router(router)
install_error_handlers(app)
