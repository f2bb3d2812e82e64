"""
Order Service — Product Management クライアント

  ┌───────────────┐  choose()  ┌──────────────┐
  │ Order Service │──────────▶│ LoadBalancer │
  │               │           └──────────────┘
  │               │  GET /products/{code}   ┌────────────────────┐
  │               │───────────────────────▶│ Product Management │
  └───────────────┘   (CircuitBreaker 経由)  └────────────────────┘

カタログのレスポンスのうち productCode だけを使う。
"""

import asyncio
import logging
from urllib.parse import quote

import httpx

from .aggregate import Product
from .circuit_breaker import CircuitBreaker
from .errors import LookupTimeout, ProductNotFound, RemoteLookupError
from .load_balancer import LoadBalancerClient
from .ports import ProductLookup

logger = logging.getLogger(__name__)


class ProductServiceClient(ProductLookup):
    """ロードバランサーで選んだインスタンスに HTTP で問い合わせる。"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        load_balancer: LoadBalancerClient,
        service_name: str = "product-management",
        timeout: float = 2.0,
    ):
        self.client = client
        self.load_balancer = load_balancer
        self.service_name = service_name
        self.timeout = timeout

    async def lookup(self, product_id: str) -> Product:
        base_url = self.load_balancer.choose(self.service_name)
        # productId は 1 つのパスセグメントとして送る ("?", "#", "/" を含んでもよい)
        url = f"{base_url}/products/{quote(product_id, safe='')}"
        logger.debug("Retrieving product %s from %s", product_id, base_url)

        try:
            resp = await self.client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise LookupTimeout(f"Timed out retrieving product {product_id!r}") from e
        except httpx.HTTPError as e:
            raise RemoteLookupError(f"Product service unreachable: {e}") from e

        if resp.status_code == 404:
            raise ProductNotFound(product_id)
        if resp.status_code >= 400:
            raise RemoteLookupError(
                f"Product service returned {resp.status_code} for {product_id!r}"
            )

        try:
            product_code = resp.json()["productCode"]
        except (ValueError, KeyError, TypeError) as e:
            raise RemoteLookupError(f"Malformed product response for {product_id!r}") from e
        if not product_code:
            raise RemoteLookupError(f"Empty productCode for {product_id!r}")
        return Product(product_id=str(product_code))


class CircuitBreakingProductLookup(ProductLookup):
    """
    任意の ProductLookup をサーキットブレーカーで包む。

    fallback_product_id が設定されていれば、リモート障害・タイムアウト・
    遮断のときにその ID の商品で代替する。ProductNotFound は代替しない。
    """

    def __init__(
        self,
        delegate: ProductLookup,
        breaker: CircuitBreaker,
        fallback_product_id: str | None = None,
        timeout: float | None = None,
    ):
        self.delegate = delegate
        self.breaker = breaker
        self.fallback_product_id = fallback_product_id or None
        self.timeout = timeout

    async def lookup(self, product_id: str) -> Product:
        fallback = self._fallback if self.fallback_product_id else None
        try:
            return await self.breaker.run(
                lambda: self.delegate.lookup(product_id),
                fallback,
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise LookupTimeout(
                f"Product {product_id!r} was not resolved within {self.timeout}s"
            ) from e

    def _fallback(self, error: BaseException) -> Product:
        logger.warning(
            "Product service error (%s: %s); using fallback product %s",
            type(error).__name__,
            error,
            self.fallback_product_id,
        )
        return Product(product_id=self.fallback_product_id)
