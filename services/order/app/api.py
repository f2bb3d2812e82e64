"""
Order Service — HTTP アダプター

業務ロジックは持たない。リクエストを orchestrator に渡し、
結果とエラー分類を HTTP ステータスに写すだけ。

  200  注文確定 + イベント発行済み
  202  注文は保存済みだがイベント発行に失敗 (warning 付き)
  400 / 404 / 500 / 503  errors.py の分類どおり
"""

import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .aggregate import OrderId
from .circuit_breaker import CircuitBreakerRegistry
from .errors import InvalidRequest, OrderPlacementError
from .orchestrator import OrderPlacementOrchestrator
from .ports import OrderRepository
from .schemas import (
    ErrorDetail,
    ErrorResponse,
    OrderItemView,
    OrderView,
    PlaceOrder,
    PlaceOrderResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> OrderPlacementOrchestrator:
    return request.app.state.orchestrator


def get_repository(request: Request) -> OrderRepository:
    return request.app.state.repository


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.breakers


# ── Command Endpoints ────────────────────────────


@router.post(
    "/orders",
    response_model=PlaceOrderResponse,
    response_model_exclude_none=True,
    responses={202: {"model": PlaceOrderResponse}},
)
async def place_order(
    req: PlaceOrder,
    orchestrator: OrderPlacementOrchestrator = Depends(get_orchestrator),
):
    """注文確定"""
    result = await orchestrator.place_order(req)
    body = PlaceOrderResponse(
        order_id=result.order_id, status=result.status, warning=result.warning
    )
    if result.warning:
        return JSONResponse(status_code=202, content=body.model_dump(by_alias=True))
    return body


# ── Query Endpoints ──────────────────────────────


@router.get("/orders/{order_id}", response_model=OrderView)
async def get_order(
    order_id: int,
    repository: OrderRepository = Depends(get_repository),
):
    order = await repository.get(OrderId(order_id))
    if order is None:
        raise HTTPException(404, "Order not found")
    return OrderView(
        order_id=str(order.id),
        status=order.status,
        items=[OrderItemView(product_id=i.product_id, count=i.count) for i in order.items],
    )


@router.get("/circuit-breakers")
async def get_circuit_breakers(breakers: CircuitBreakerRegistry = Depends(get_breakers)):
    """ブレーカーごとの状態と呼び出し件数"""
    return [breaker.metrics() for breaker in breakers.all()]


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-management"}


# ── エラー → HTTP ────────────────────────────────


def _error_response(
    status_code: int, code: str, message: str, order_id: str | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, order_id=order_id))
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


async def _handle_order_error(request: Request, exc: OrderPlacementError) -> JSONResponse:
    return _error_response(exc.status_code, exc.code, exc.message, exc.order_id)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in error['loc'][1:]) or 'body'}: {error['msg']}"
        for error in exc.errors()
    )
    return _error_response(InvalidRequest.status_code, InvalidRequest.code, problems)


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "Internal", "Internal server error")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderPlacementError, _handle_order_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)
