"""
Order Service — 注文確定オーケストレーター

1 件の PlaceOrder に対して 3 つのポートを順に協調させる。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. 明細ごとに商品を並列に解決 (fan-out)                 │
  │  2. 全件そろうのを待ち、リクエスト順の明細にまとめる (zip)│
  │  3. BOOKED の注文を組み立てる                             │
  │  4. 注文を保存 (コミット完了まで待つ)                     │
  │     └─ 失敗 → ここで終了。イベントは発行しない           │
  │  5. 保存成功時のみ OrderPlaced を発行                     │
  │     └─ 失敗 → 保存は取り消さず、警告付きで応答           │
  └─────────────────────────────────────────────────────────┘

  段階: Received → ResolvingItems → Assembled → Persisted → Published → Responded
        どこかで失敗すれば Failed (例外の stage に失敗した段階が入る)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from .aggregate import Order, OrderId, OrderItem
from .errors import (
    Internal,
    InvalidRequest,
    OrderPlacementError,
    PersistFailure,
    PersistTimeout,
    PublishFailed,
)
from .events import OrderPlaced
from .ports import EventPublisher, OrderRepository, ProductLookup
from .schemas import PlaceOrder, PlaceOrderItem

logger = logging.getLogger(__name__)


class PlacementStage(str, Enum):
    RECEIVED = "Received"
    RESOLVING_ITEMS = "ResolvingItems"
    ASSEMBLED = "Assembled"
    PERSISTED = "Persisted"
    PUBLISHED = "Published"
    RESPONDED = "Responded"
    FAILED = "Failed"


@dataclass(frozen=True)
class PlaceOrderResult:
    order_id: str
    status: str
    warning: str | None = None
    stages: tuple[PlacementStage, ...] = ()

    @property
    def published(self) -> bool:
        return self.warning is None


class OrderPlacementOrchestrator:
    """注文確定のオーケストレーター"""

    def __init__(
        self,
        products: ProductLookup,
        repository: OrderRepository,
        publisher: EventPublisher,
        save_timeout: float = 5.0,
    ):
        self.products = products
        self.repository = repository
        self.publisher = publisher
        self.save_timeout = save_timeout

    async def place_order(self, request: PlaceOrder) -> PlaceOrderResult:
        # 通過した段階を順に積む。最後の要素が現在の段階。
        stages = [PlacementStage.RECEIVED]
        try:
            self._validate(request)

            # ── Step 1-2: 商品を並列に解決して順序どおりにまとめる ──
            stages.append(PlacementStage.RESOLVING_ITEMS)
            items = await self._resolve_items(request.items)

            # ── Step 3: 注文を組み立てる ────────────────
            stages.append(PlacementStage.ASSEMBLED)
            order = Order.book(items)

            # ── Step 4: 保存 ────────────────────────────
            order.id = await self._persist(order)
            stages.append(PlacementStage.PERSISTED)
        except OrderPlacementError as e:
            e.stage = stages[-1]
            logger.warning(
                "Order placement failed at %s -> %s: %s",
                stages[-1].value,
                PlacementStage.FAILED.value,
                e.message,
            )
            raise

        # ── Step 5: 発行 ────────────────────────────────
        # コミット後は呼び出し元がキャンセルしても発行を完了させる
        event = OrderPlaced.from_order(order)
        warning = await asyncio.shield(self._publish(event))
        if warning is None:
            stages.append(PlacementStage.PUBLISHED)

        # ── Step 6: 応答 ────────────────────────────────
        stages.append(PlacementStage.RESPONDED)
        logger.info(
            "Order %s %s with %d item(s): %s",
            order.id,
            order.status,
            len(order.items),
            " -> ".join(stage.value for stage in stages),
        )
        return PlaceOrderResult(
            order_id=str(order.id),
            status=order.status,
            warning=warning,
            stages=tuple(stages),
        )

    def _validate(self, request: PlaceOrder) -> None:
        if not request.items:
            raise InvalidRequest("An order needs at least one item")
        for position, item in enumerate(request.items):
            if not item.product_id or not item.product_id.strip():
                raise InvalidRequest(f"Item {position} has no productId")
            if item.count <= 0:
                raise InvalidRequest(f"Item {position} has a non-positive count ({item.count})")

    async def _resolve_items(self, items: list[PlaceOrderItem]) -> list[OrderItem]:
        """
        明細ごとに lookup をタスクとして同時に投げ、すべて完了するまで待つ。
        最初のエラーをそのまま送出し、残りの lookup はキャンセルする。
        """
        tasks = [asyncio.create_task(self._resolve_item(item)) for item in items]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _resolve_item(self, item: PlaceOrderItem) -> OrderItem:
        try:
            product = await self.products.lookup(item.product_id)
        except OrderPlacementError:
            raise
        except Exception as e:
            raise Internal(f"Failed to resolve product {item.product_id!r}: {e}") from e
        # 解決後の ID を使う (リクエストの ID ではない)
        return OrderItem(product_id=product.product_id, count=item.count)

    async def _persist(self, order: Order) -> OrderId:
        try:
            return await asyncio.wait_for(self.repository.save(order), self.save_timeout)
        except asyncio.TimeoutError as e:
            raise PersistTimeout(
                f"Saving the order did not complete within {self.save_timeout}s"
            ) from e
        except OrderPlacementError:
            raise
        except Exception as e:
            raise PersistFailure(f"Failed to save order: {e}") from e

    async def _publish(self, event: OrderPlaced) -> str | None:
        """発行に失敗したら警告文を返す。再送はしない。"""
        try:
            await self.publisher.publish_order_placed(event)
        except PublishFailed as e:
            logger.error("Order %s saved but not published: %s", event.order_id, e.message)
            return e.message
        except Exception as e:
            logger.exception("Order %s saved but not published", event.order_id)
            return f"Failed to publish OrderPlaced for order {event.order_id}: {e}"
        return None
