"""Payment routes: session initiation, client verification, Zoho webhooks."""

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.api.deps import get_session_service, get_verification_service, get_webhook_service
from storefront.api.schemas.payments import (
    PaymentInfo,
    SessionCreateRequest,
    SessionCreateResponse,
    VerifyRequest,
    VerifyResponse,
    WebhookResponse,
)
from storefront.core.auth import AuthenticatedUser, require_auth
from storefront.core.config import get_settings
from storefront.core.exceptions import (
    GatewayAuthRequired,
    GatewayError,
    InvalidSignature,
    MalformedPayload,
    OrderNotFound,
    OutOfStock,
    PaymentNotFinal,
    PaymentVerificationFailed,
    ProductNotFound,
    ShippingMismatch,
    Unauthorized,
)
from storefront.db.base import get_session_factory
from storefront.notifications.queue import process_pending_notifications
from storefront.services.session_service import CartLine, SessionRequest, SessionService
from storefront.services.verification_service import VerificationService
from storefront.services.webhook_service import WebhookOutcome, WebhookService

logger = structlog.get_logger(__name__)

router = APIRouter()

VERIFICATION_FAILED = "Payment verification failed"
SIGNATURE_HEADER = "x-zoho-signature"


# ── Session initiation ──────────────────────────────────────────────


@router.post("/payments/session", response_model=SessionCreateResponse)
async def create_payment_session(
    body: SessionCreateRequest,
    service: SessionService = Depends(get_session_service),
):
    """Price the cart server-side and open a gateway payment session."""
    request = SessionRequest(
        items=[CartLine(product_id=i.product_id, quantity=i.quantity) for i in body.items],
        shipping_charge=body.shipping_charge,
        state=body.shipping_address.state,
        description=body.description,
        currency=body.currency,
        reference_number=body.reference_number,
        invoice_number=body.invoice_number,
        customer=body.customer.model_dump(exclude_none=True) if body.customer else None,
    )

    try:
        result = await service.create_session(request)
    except ProductNotFound as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OutOfStock as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ShippingMismatch as e:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "shipping_mismatch",
                "message": "Shipping charge does not match. Please refresh and try again.",
                "expected_shipping": float(e.expected),
            },
        )
    except GatewayAuthRequired as e:
        raise HTTPException(
            status_code=401,
            detail={
                "code": "gateway_auth_required",
                "message": "Payment gateway authorization required",
                "auth_url": e.reauth_url,
            },
        )
    except GatewayError:
        raise HTTPException(status_code=502, detail="Failed to create payment session")

    return SessionCreateResponse(
        payments_session_id=result.payments_session_id,
        subtotal=float(result.subtotal),
        shipping=float(result.shipping),
        total=float(result.total),
    )


# ── Client verification ─────────────────────────────────────────────


@router.post("/payments/verify", response_model=VerifyResponse)
async def verify_payment(
    body: VerifyRequest,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_auth),
    service: VerificationService = Depends(get_verification_service),
):
    """Re-verify a widget-reported payment with the gateway and settle the order."""
    try:
        result = await service.verify(
            caller_email=user.email,
            order_id=body.order_id,
            payment_id=body.payment_id,
            payments_session_id=body.payments_session_id,
        )
    except Unauthorized:
        raise HTTPException(status_code=403, detail="Unauthorized")
    except PaymentVerificationFailed:
        raise HTTPException(status_code=400, detail=VERIFICATION_FAILED)
    except (GatewayAuthRequired, GatewayError):
        raise HTTPException(status_code=502, detail=VERIFICATION_FAILED)

    if result.applied and result.is_success:
        background_tasks.add_task(process_pending_notifications)

    payment = None
    if result.payment is not None:
        payment = PaymentInfo(
            id=result.payment.payment_id,
            status=result.payment.status,
            amount=float(result.payment.amount) if result.payment.amount is not None else None,
            session_id=result.payment.session_id,
            reference_number=result.payment.reference_number,
            payment_method=result.payment.payment_method,
        )

    return VerifyResponse(
        order_id=result.order_id,
        is_success=result.is_success,
        is_failed=result.is_failed,
        payment_completed=result.payment_completed,
        order_status=result.status,
        payment_status=result.payment_status,
        payment=payment,
    )


# ── Gateway webhook ─────────────────────────────────────────────────


@router.post("/webhooks/zoho-payment", response_model=WebhookResponse)
async def zoho_payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: WebhookService = Depends(get_webhook_service),
):
    """Handle Zoho Payments webhook deliveries with signature verification."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await service.handle(body, signature)
    except InvalidSignature as e:
        logger.warning("zoho_webhook_rejected", reason=str(e))
        raise HTTPException(status_code=401, detail="Invalid signature")
    except MalformedPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OrderNotFound:
        raise HTTPException(status_code=400, detail="Order not found")
    except PaymentNotFinal:
        raise HTTPException(status_code=400, detail="Payment outcome not final")
    except SQLAlchemyError:
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if result.outcome is WebhookOutcome.APPLIED:
        background_tasks.add_task(process_pending_notifications)

    return WebhookResponse(message=result.message, order_id=result.order_id, status=result.order_status)


@router.get("/webhooks/zoho-payment")
async def zoho_payment_webhook_health():
    """Webhook health: store connectivity, idempotency log table, configuration."""
    settings = get_settings()
    checks: dict = {
        "environment": {
            "has_database_url": bool(settings.database_url),
            "has_webhook_secret": bool(settings.zoho_webhook_secret),
            "has_account_id": bool(settings.zoho_account_id),
            "has_app_url": bool(settings.app_url),
        },
    }
    status = "healthy"

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT id FROM orders LIMIT 1"))
        checks["database"] = {"connected": True}
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("webhook_health_database_failed", error=str(e))
        checks["database"] = {"connected": False}
        status = "unhealthy"

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT id FROM webhook_logs LIMIT 1"))
        checks["webhook_logs_table"] = {"exists": True}
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("webhook_health_log_table_failed", error=str(e))
        checks["webhook_logs_table"] = {"exists": False}
        if status == "healthy":
            status = "degraded"

    return JSONResponse(
        status_code=200 if status == "healthy" else 503,
        content={
            "status": status,
            "endpoint": "zoho-payment-webhook",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": checks,
        },
    )
