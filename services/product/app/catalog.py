"""
Product Management — 商品カタログ

商品の登録 (Command) と参照 (Query)。
Order Service は GET /products/{productCode} の productCode だけを使う。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, MetaData, String, Table, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

STATUS_ACTIVE = "ACTIVE"

metadata = MetaData()

Table(
    "products",
    metadata,
    Column("product_code", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", String(2000), nullable=False, default=""),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _to_response(row) -> dict:
    return {
        "productCode": row.product_code,
        "name": row.name,
        "description": row.description,
        "status": row.status,
    }


# ── Command ──────────────────────────────────────


async def register_product(session: AsyncSession, name: str, description: str) -> str:
    """新規商品を ACTIVE で登録し、採番した商品コードを返す。"""
    product_code = f"P{uuid4().hex[:10].upper()}"
    await session.execute(
        text("""
            INSERT INTO products (product_code, name, description, status, created_at)
            VALUES (:code, :name, :description, :status, :now)
        """),
        {
            "code": product_code,
            "name": name,
            "description": description,
            "status": STATUS_ACTIVE,
            "now": datetime.now(timezone.utc),
        },
    )
    await session.commit()
    return product_code


# ── Query ────────────────────────────────────────


async def get_product(session: AsyncSession, product_code: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE product_code = :code"),
        {"code": product_code},
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_response(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM products ORDER BY name"),
    )
    return [_to_response(row) for row in result.fetchall()]
