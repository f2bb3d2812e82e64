"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def get_inventory(session: AsyncSession, product_code: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM product_inventory WHERE product_code = :code"),
        {"code": product_code},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "productCode": row.product_code,
        "availableStock": row.quantity - row.reserved,
        "reservedStock": row.reserved,
    }
