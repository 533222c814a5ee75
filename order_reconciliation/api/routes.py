"""
API routes for order reconciliation.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.core.front_door import FrontDoorResult, ReconciliationFrontDoor, ReturnParams
from order_reconciliation.core.models import GatewayKind, format_money
from order_reconciliation.database.models import BankTransferRequest, Order
from order_reconciliation.database.store import OrderStore, generate_bank_reference
from order_reconciliation.integrations.webhook_handler import WebhookError, WebhookHandler
from order_reconciliation.monitoring.health import HealthCheck

from .dependencies import get_front_door, get_health_check, get_store, get_webhook_handler
from .schemas import (
    BankTransferRequestSchema,
    BankTransferResponse,
    HealthCheckResponse,
    OrderResponse,
    ReconcileRequest,
    ReconcileResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def _totals(order: Order) -> Dict[str, Any]:
    return {
        "total_minor": order.total_minor,
        "currency": order.currency,
        "display": format_money(order.total_minor, order.currency),
    }


def to_reconcile_response(result: FrontDoorResult) -> Dict[str, Any]:
    """Project a front door outcome for the browser."""
    if not result.ok:
        return {
            "ok": False,
            "error": {
                "code": result.failure_reason.value,
                "message": result.message,
            },
        }
    order = result.order
    return {
        "ok": True,
        "order_number": order.order_number,
        "status": order.status,
        "totals": _totals(order),
        "shipping_address": order.shipping_address,
        "line_items": order.line_items,
        "created": result.created,
    }


@order_router.get(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile a payment return",
    description="Confirm a payment from its return URL parameters and return the order",
)
async def reconcile_get(
    gateway: Optional[GatewayKind] = Query(default=None),
    session_id: Optional[str] = Query(default=None),
    payment_intent: Optional[str] = Query(default=None),
    token: Optional[str] = Query(default=None),
    reference: Optional[str] = Query(default=None),
    front_door: ReconciliationFrontDoor = Depends(get_front_door),
) -> Dict[str, Any]:
    """
    Reconcile without a cart snapshot.

    Failures are reported in the body with HTTP 200 so the page can render them.
    """
    params = ReturnParams(
        gateway=gateway,
        session_id=session_id,
        payment_intent=payment_intent,
        token=token,
        reference=reference,
    )
    result = await front_door.run(params)
    return to_reconcile_response(result)


@order_router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile a payment return with the local cart",
)
async def reconcile_post(
    request: ReconcileRequest,
    front_door: ReconciliationFrontDoor = Depends(get_front_door),
) -> Dict[str, Any]:
    params = ReturnParams(
        gateway=request.gateway_kind,
        session_id=request.session_id,
        payment_intent=request.payment_intent,
        token=request.token,
        reference=request.reference,
    )
    result = await front_door.run(
        params,
        cart_snapshot=request.cart,
        customer_id=request.customer_id,
        shipping_address=request.shipping_address,
    )
    return to_reconcile_response(result)


@order_router.post(
    "/bank-transfer",
    response_model=BankTransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order paid by bank transfer",
)
async def create_bank_transfer_order(
    request: BankTransferRequestSchema,
    store: OrderStore = Depends(get_store),
    front_door: ReconciliationFrontDoor = Depends(get_front_door),
) -> Dict[str, Any]:
    """
    Store the awaiting-transfer request and reconcile it into a pending order.
    """
    transfer = BankTransferRequest(
        reference=generate_bank_reference(),
        customer_id=request.customer_id,
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        amount_minor=request.amount_minor,
        currency=request.currency,
        cart=[item.model_dump() for item in request.cart],
        shipping_address=request.shipping_address.model_dump(),
    )
    try:
        await store.save_bank_transfer_request(transfer)
    except SQLAlchemyError as e:
        logger.error("api_bank_transfer_store_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not record the bank transfer request",
        )

    logger.info(
        "api_bank_transfer_requested",
        reference=transfer.reference,
        amount_minor=transfer.amount_minor,
    )
    result = await front_door.run(
        ReturnParams(gateway=GatewayKind.BANK_TRANSFER, reference=transfer.reference),
        customer_id=request.customer_id,
    )
    response = to_reconcile_response(result)
    response["reference"] = transfer.reference
    return response


@order_router.get(
    "/{order_number}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_number: str,
    store: OrderStore = Depends(get_store),
) -> Dict[str, Any]:
    order = await store.get_by_order_number(order_number)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order {order_number} not found",
        )
    return {
        "order_number": order.order_number,
        "status": order.status,
        "gateway_kind": order.gateway_kind,
        "customer_id": order.customer_id,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "totals": _totals(order),
        "line_items": order.line_items,
        "shipping_address": order.shipping_address,
        "source": order.source,
        "created_at": order.created_at.isoformat(),
    }


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Receive Stripe events.

    Bad signatures answer 400; failures to record the order answer 500 so
    Stripe redelivers the event.
    """
    payload = await request.body()
    try:
        event = handler.verify_signature(payload, stripe_signature)
        return await handler.process_event(event)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e), status_code=e.status_code)
        raise HTTPException(status_code=e.status_code, detail=str(e))


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
