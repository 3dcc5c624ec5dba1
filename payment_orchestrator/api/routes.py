"""
API routes for checkout, refunds and gateway webhooks.
"""
from dataclasses import asdict
from typing import Any, Dict, NoReturn, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.config import get_settings
from payment_orchestrator.core import (
    CustomerTokenManager,
    PaymentLedger,
    PendingVerification,
    PurchaseCancelled,
    PurchaseOrchestrator,
    PurchaseRequest,
    RedirectInstruction,
    RefundOrchestrator,
)
from payment_orchestrator.core.checkout_session import find_account_gateway, load_invitation
from payment_orchestrator.database.connection import get_db
from payment_orchestrator.database.models import Payment
from payment_orchestrator.exceptions import (
    AlreadyPaidError,
    DuplicateTransactionError,
    GatewayError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    UnsupportedGatewayError,
)
from payment_orchestrator.monitoring.health import HealthCheck
from payment_orchestrator.types import GatewayType

from .schemas import (
    BankVerificationRequest,
    CheckoutRequest,
    CheckoutResponse,
    HealthCheckResponse,
    RefundRequest,
    RefundResponse,
    TokenLinksResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
complete_router = APIRouter(prefix="/complete", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
ledger = PaymentLedger()
purchase_orchestrator = PurchaseOrchestrator(ledger=ledger)
refund_orchestrator = RefundOrchestrator(ledger=ledger)
health_check = HealthCheck()


def get_purchase_orchestrator() -> PurchaseOrchestrator:
    return purchase_orchestrator


def get_refund_orchestrator() -> RefundOrchestrator:
    return refund_orchestrator


def raise_http_error(error: PaymentError, event: str, **context: Any) -> NoReturn:
    """Translate a payment error into the matching HTTP status."""
    detail: Dict[str, Any] = {"message": str(error)}

    if isinstance(error, PaymentValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
        detail["missing_fields"] = error.missing_fields
    elif isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (DuplicateTransactionError, AlreadyPaidError)):
        status_code = status.HTTP_409_CONFLICT
        detail["code"] = error.code
    elif isinstance(error, UnsupportedGatewayError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, GatewayError):
        status_code = status.HTTP_402_PAYMENT_REQUIRED
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    log_method = logger.error if status_code == status.HTTP_409_CONFLICT else logger.warning
    log_method(event, error=str(error), error_type=type(error).__name__, **context)
    raise HTTPException(status_code=status_code, detail=detail) from error


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.public_id,
        "invoice_id": payment.invoice_id,
        "amount_cents": payment.amount_cents,
        "refunded_cents": payment.refunded_cents,
        "currency": payment.currency_code,
        "status": payment.status,
        "transaction_reference": payment.transaction_reference,
        "payment_type": payment.payment_type,
        "last4": payment.last4,
        "payment_date": payment.payment_date,
    }


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def callback_input(request: Request) -> Dict[str, Any]:
    """Query string plus, for POST callbacks, a JSON or form-encoded body."""
    data: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return data

    body = await request.body()
    if not body:
        return data
    if request.headers.get("content-type", "").startswith("application/json"):
        payload = await request.json()
        if isinstance(payload, dict):
            data.update(payload)
    else:
        data.update(parse_qsl(body.decode()))
    return data


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Refund all or part of a payment, voiding it when a full refund is refused",
)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
) -> Dict[str, Any]:
    """Refund a payment."""
    result = await db.execute(select(Payment).where(Payment.public_id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    logger.info(
        "api_refund_payment_request", payment_id=payment_id, amount_cents=request.amount_cents
    )

    try:
        refunded = await orchestrator.refund(db, payment, request.amount_cents)
    except PaymentError as e:
        raise_http_error(e, "api_refund_payment_error", payment_id=payment_id)

    logger.info("api_refund_payment_completed", payment_id=payment_id, refunded=refunded)
    return {"refunded": refunded, "payment": payment_to_dict(payment)}


@payment_router.get(
    "/{invitation_key}/tokens",
    response_model=TokenLinksResponse,
    summary="Stored payment methods",
    description="Payment methods the client can reuse for this checkout",
)
async def token_links(
    invitation_key: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Dict[str, Any]:
    try:
        invitation = await load_invitation(db, invitation_key)
        account_gateway = await find_account_gateway(db, invitation.account_id)
        adapter = orchestrator.gateway_factory(account_gateway)
        tokens = CustomerTokenManager(adapter, account_gateway)
        links = await tokens.usable_payment_methods(
            db,
            invitation.invoice.client_id,
            base_url=f"{get_settings().app_url}/payments/{invitation_key}",
        )
    except PaymentError as e:
        raise_http_error(e, "api_token_links_error", invitation_key=invitation_key)

    return {"payment_methods": [asdict(link) for link in links]}


@payment_router.post(
    "/{invitation_key}/payment-methods/{public_id}/verify",
    summary="Verify a bank account",
    description="Confirm a bank account with its micro-deposit amounts",
)
async def verify_bank_account(
    invitation_key: str,
    public_id: str,
    request: BankVerificationRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Dict[str, Any]:
    try:
        invitation = await load_invitation(db, invitation_key)
        account_gateway = await find_account_gateway(db, invitation.account_id)
        tokens = CustomerTokenManager(orchestrator.gateway_factory(account_gateway), account_gateway)
        payment_method = await tokens.verify_bank_account(
            db, invitation.invoice.client_id, public_id, request.amount1, request.amount2
        )
    except PaymentError as e:
        raise_http_error(e, "api_verify_bank_account_error", payment_method_id=public_id)

    return {"payment_method_id": payment_method.public_id, "status": payment_method.status}


@payment_router.delete(
    "/{invitation_key}/payment-methods/{public_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a stored payment method",
)
async def remove_payment_method(
    invitation_key: str,
    public_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Response:
    try:
        invitation = await load_invitation(db, invitation_key)
        account_gateway = await find_account_gateway(db, invitation.account_id)
        tokens = CustomerTokenManager(orchestrator.gateway_factory(account_gateway), account_gateway)
        payment_method = await tokens.load_payment_method(
            db, invitation.invoice.client_id, public_id
        )
        await tokens.remove_payment_method(db, payment_method)
    except PaymentError as e:
        raise_http_error(e, "api_remove_payment_method_error", payment_method_id=public_id)

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@payment_router.post(
    "/{invitation_key}/{gateway_type}",
    response_model=CheckoutResponse,
    summary="Start a checkout",
    description="Charge the invoice behind an invitation, or return a redirect for offsite gateways",
)
async def initiate_purchase(
    invitation_key: str,
    gateway_type: GatewayType,
    body: CheckoutRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Dict[str, Any]:
    logger.info(
        "api_checkout_request", invitation_key=invitation_key, gateway_type=gateway_type.value
    )

    try:
        outcome = await orchestrator.initiate_purchase(
            db,
            PurchaseRequest(
                invitation_key=invitation_key,
                gateway_type=gateway_type,
                input=body.input,
                source_id=body.source_id,
                provider=body.provider,
                ip=client_ip(request),
            ),
        )
    except PaymentError as e:
        raise_http_error(e, "api_checkout_error", invitation_key=invitation_key)

    if isinstance(outcome, RedirectInstruction):
        return {
            "status": "redirect",
            "redirect_url": outcome.url,
            "redirect_method": outcome.method,
            "redirect_data": outcome.data,
        }
    if isinstance(outcome, PendingVerification):
        return {
            "status": "pending",
            "payment_method_id": (
                outcome.payment_method.public_id if outcome.payment_method else None
            ),
        }
    return {"status": "paid", "payment": payment_to_dict(outcome)}


@complete_router.api_route(
    "/{invitation_key}/{gateway_type}",
    methods=["GET", "POST"],
    response_model=CheckoutResponse,
    summary="Complete an offsite checkout",
    description="Return URL the gateway sends the payer back to",
)
async def complete_offsite_purchase(
    invitation_key: str,
    gateway_type: GatewayType,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Dict[str, Any]:
    input = await callback_input(request)
    logger.info(
        "api_offsite_completion", invitation_key=invitation_key, gateway_type=gateway_type.value
    )

    try:
        outcome = await orchestrator.complete_offsite_purchase(
            db, invitation_key, input, gateway_type=gateway_type, ip=client_ip(request)
        )
    except PaymentError as e:
        raise_http_error(e, "api_offsite_completion_error", invitation_key=invitation_key)

    if isinstance(outcome, PurchaseCancelled):
        return {"status": "cancelled"}
    return {"status": "paid", "payment": payment_to_dict(outcome)}


@webhook_router.post(
    "/{account_gateway_id}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify and apply a provider callback",
)
async def gateway_webhook(
    account_gateway_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> Dict[str, Any]:
    """
    Handle gateway webhook events.

    A charge that was already settled (usually by the offsite return) is
    acknowledged with 200 so the provider stops redelivering it, as is a
    callback for a gateway that takes no webhooks.
    """
    body = await request.body()

    try:
        payment = await orchestrator.handle_webhook(
            db, account_gateway_id, body, dict(request.headers)
        )
    except (DuplicateTransactionError, AlreadyPaidError) as e:
        logger.warning(
            "api_webhook_already_processed",
            account_gateway_id=account_gateway_id,
            code=e.code,
        )
        return {"status": "already_processed"}
    except UnsupportedGatewayError as e:
        logger.warning(
            "api_webhook_unsupported", account_gateway_id=account_gateway_id, error=str(e)
        )
        return {"status": "unsupported"}
    except GatewayError as e:
        # Failed verification is the sender's problem, not a declined payment
        logger.error("api_webhook_error", account_gateway_id=account_gateway_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentError as e:
        raise_http_error(e, "api_webhook_error", account_gateway_id=account_gateway_id)

    if payment is None:
        return {"status": "ignored"}
    return {"status": "processed", "payment_id": payment.public_id}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
