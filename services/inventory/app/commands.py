"""
Inventory Service — コマンドハンドラ (Write 側)

OrderPlaced を受けて商品ごとの引き当て数 (reserved) を積み上げる。
同じ注文を二度受け取っても二重に引き当てないよう、
処理済みの orderId を同じトランザクションで記録する。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .events import OrderPlaced

logger = logging.getLogger(__name__)

metadata = MetaData()

Table(
    "product_inventory",
    metadata,
    Column("product_code", String(64), primary_key=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Table(
    "inventory_processed_orders",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def _upsert(session: AsyncSession, product_code: str, set_clause: str, params: dict) -> None:
    result = await session.execute(
        text(f"UPDATE product_inventory SET {set_clause}, updated_at = :now WHERE product_code = :code"),
        {"code": product_code, **params},
    )
    if result.rowcount == 0:
        await session.execute(
            text("""
                INSERT INTO product_inventory (product_code, quantity, reserved, updated_at)
                VALUES (:code, :quantity, :reserved, :now)
            """),
            {
                "code": product_code,
                "quantity": params.get("quantity", 0),
                "reserved": params.get("reserved", 0),
                "now": params["now"],
            },
        )


async def reserve_for_order(session: AsyncSession, event: OrderPlaced) -> bool:
    """
    注文 1 件分の引き当てを 1 トランザクションで行う。

    処理済みの注文なら何もせず False を返す。
    在庫数のチェックはしない (引き当て超過は availableStock が負になる)。
    """
    now = datetime.now(timezone.utc)
    async with session.begin():
        result = await session.execute(
            text("SELECT order_id FROM inventory_processed_orders WHERE order_id = :id"),
            {"id": event.order_id},
        )
        if result.fetchone():
            logger.info("Order %s already reserved; skipping", event.order_id)
            return False

        await session.execute(
            text("""
                INSERT INTO inventory_processed_orders (order_id, processed_at)
                VALUES (:id, :now)
            """),
            {"id": event.order_id, "now": now},
        )

        # 同じ商品が複数明細に出てくる場合はまとめて加算する
        totals: dict[str, int] = {}
        for item in event.items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.count

        for product_code, count in totals.items():
            await _upsert(
                session,
                product_code,
                "reserved = reserved + :reserved",
                {"reserved": count, "now": now},
            )

    logger.info("Reserved %d product(s) for order %s", len(totals), event.order_id)
    return True


async def set_stock(session: AsyncSession, product_code: str, quantity: int) -> None:
    """手元在庫数 (quantity) を上書きする。引き当て数はそのまま。"""
    now = datetime.now(timezone.utc)
    async with session.begin():
        await _upsert(
            session,
            product_code,
            "quantity = :quantity",
            {"quantity": quantity, "now": now},
        )
