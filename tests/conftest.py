"""Shared test doubles for the order placement pipeline."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.order.app.aggregate import Order, OrderId, Product
from services.order.app.errors import PublishFailed
from services.order.app.events import OrderPlaced
from services.order.app.ports import EventPublisher, OrderRepository, ProductLookup


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProductLookup(ProductLookup):
    """
    responses: product_id -> Product / 例外 / 商品コード文字列
    delays:    product_id -> 応答までの秒数 (完了順を入れ替えるため)
    """

    def __init__(self, responses=None, delays=None):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.completed: list[str] = []
        self.cancelled: list[str] = []

    async def lookup(self, product_id: str) -> Product:
        self.calls.append(product_id)
        try:
            await asyncio.sleep(self.delays.get(product_id, 0))
        except asyncio.CancelledError:
            self.cancelled.append(product_id)
            raise
        self.completed.append(product_id)
        response = self.responses.get(product_id, product_id)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Product):
            return response
        return Product(product_id=response)


class InMemoryOrderRepository(OrderRepository):
    def __init__(self, next_id: int = 1, error: BaseException | None = None, delay: float = 0):
        self.next_id = next_id
        self.error = error
        self.delay = delay
        self.orders: dict[int, Order] = {}
        self.save_calls = 0

    async def save(self, order: Order) -> OrderId:
        self.save_calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        order_id = order.id if order.id is not None else self.next_id
        self.next_id = max(self.next_id, order_id + 1)
        self.orders[order_id] = Order(status=order.status, items=list(order.items), id=OrderId(order_id))
        return OrderId(order_id)

    async def get(self, order_id: OrderId) -> Order | None:
        return self.orders.get(order_id)


class RecordingPublisher(EventPublisher):
    def __init__(self, error: BaseException | None = None):
        self.error = error
        self.events: list[OrderPlaced] = []
        self.attempts = 0

    async def publish_order_placed(self, event: OrderPlaced) -> None:
        self.attempts += 1
        if self.error is not None:
            raise self.error
        self.events.append(event)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def repository():
    return InMemoryOrderRepository()


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def failing_publisher():
    return RecordingPublisher(error=PublishFailed("Redis is down", order_id=None))


@pytest.fixture()
async def sqlite_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    yield engine
    await engine.dispose()


@pytest.fixture()
def sqlite_session_factory(sqlite_engine):
    return async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)
