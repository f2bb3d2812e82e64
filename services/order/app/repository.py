"""
Order Service — 注文リポジトリ

注文 1 件と全明細を 1 トランザクションで保存する。
コミットが終わってから ID を返し、途中で失敗すれば何も残らない。
明細は position 列でリクエスト順を保持する。
"""

import logging

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .aggregate import Order, OrderId, OrderItem
from .errors import PersistFailure
from .ports import OrderRepository

logger = logging.getLogger(__name__)

metadata = MetaData()

Table(
    "om_order",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("status", String(32), nullable=False),
)

Table(
    "om_order_item",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Integer,
        ForeignKey("om_order.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("count", Integer, nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    """テーブルが無ければ作る。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def _advance_id_sequence(session: AsyncSession) -> None:
    """
    ID 指定で INSERT した後、PostgreSQL の serial シーケンスを MAX(id) まで進める。
    SQLite は INTEGER PRIMARY KEY が MAX(id) + 1 を採番するので何もしない。
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text(
            "SELECT setval(pg_get_serial_sequence('om_order', 'id'), "
            "(SELECT MAX(id) FROM om_order))"
        )
    )


class SqlAlchemyOrderRepository(OrderRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, order: Order) -> OrderId:
        """
        ID 無しの注文は新規採番、ID 付きの注文は upsert
        (ステータス更新 + 明細の置き換え) する。
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    order_id = await self._write(session, order)
        except SQLAlchemyError as e:
            logger.error("Failed to save order: %s", e)
            raise PersistFailure(f"Failed to save order: {e}") from e
        return OrderId(order_id)

    async def _write(self, session: AsyncSession, order: Order) -> int:
        if order.id is None:
            result = await session.execute(
                text("INSERT INTO om_order (status) VALUES (:status) RETURNING id"),
                {"status": order.status},
            )
            order_id = result.scalar_one()
        else:
            order_id = int(order.id)
            result = await session.execute(
                text("UPDATE om_order SET status = :status WHERE id = :id"),
                {"id": order_id, "status": order.status},
            )
            if result.rowcount == 0:
                await session.execute(
                    text("INSERT INTO om_order (id, status) VALUES (:id, :status)"),
                    {"id": order_id, "status": order.status},
                )
                await _advance_id_sequence(session)
            await session.execute(
                text("DELETE FROM om_order_item WHERE order_id = :id"),
                {"id": order_id},
            )

        await session.execute(
            text("""
                INSERT INTO om_order_item (order_id, position, product_id, count)
                VALUES (:order_id, :position, :product_id, :count)
            """),
            [
                {
                    "order_id": order_id,
                    "position": position,
                    "product_id": item.product_id,
                    "count": item.count,
                }
                for position, item in enumerate(order.items)
            ],
        )
        return order_id

    async def get(self, order_id: OrderId) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT id, status FROM om_order WHERE id = :id"),
                {"id": int(order_id)},
            )
            row = result.fetchone()
            if not row:
                return None
            items = await session.execute(
                text("""
                    SELECT product_id, count AS item_count
                    FROM om_order_item
                    WHERE order_id = :id
                    ORDER BY position ASC
                """),
                {"id": int(order_id)},
            )
            return Order(
                id=OrderId(row.id),
                status=row.status,
                items=[OrderItem(product_id=r.product_id, count=r.item_count) for r in items.fetchall()],
            )
