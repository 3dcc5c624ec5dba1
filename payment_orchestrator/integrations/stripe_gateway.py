"""
Stripe gateway adapters.

StripeGateway drives PaymentIntents for cards, bank debits and stored
payment methods. StripeCheckoutGateway sends the payer to a hosted Checkout
Session and completes the purchase when they return.

Error handling:
- Card declines and invalid requests become unsuccessful GatewayResponses
- Connection/API/rate-limit errors raise GatewayError (transport failures)
- Only PaymentIntent creation is retried, and always with an idempotency key
"""
from datetime import date
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_orchestrator.config import get_settings
from payment_orchestrator.exceptions import GatewayError
from payment_orchestrator.integrations.circuit_breaker import CircuitBreaker
from payment_orchestrator.integrations.gateway import (
    GatewayAdapter,
    GatewayResponse,
    PaymentSource,
    WebhookEvent,
    parse_card_type,
)
from payment_orchestrator.types import GatewayType, PaymentMethodStatus, PaymentType

logger = structlog.get_logger(__name__)

DECLINE_ERRORS = (stripe.CardError, stripe.InvalidRequestError)
TRANSPORT_ERRORS = (
    stripe.APIConnectionError,
    stripe.APIError,
    stripe.RateLimitError,
    stripe.AuthenticationError,
)
SUCCEEDED_INTENT_STATUSES = ("succeeded", "processing")


class StripeGateway(GatewayAdapter):
    """
    Stripe PaymentIntents adapter.

    Config keys: ``api_key`` (required), ``webhook_secret``.
    Bank debits need micro-deposit verification, so bank transfer is a
    two-step gateway type here.
    """

    provider = "stripe"
    gateway_types = (GatewayType.CREDIT_CARD, GatewayType.BANK_TRANSFER, GatewayType.TOKEN)
    two_step_types = frozenset({GatewayType.BANK_TRANSFER})
    tokenize = True
    customer_reference_param = "customer"
    source_reference_param = "payment_method"
    supports_completion = True
    supports_customers = True

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(config)
        if not self.config.get("api_key"):
            raise GatewayError("Stripe gateway is missing its api_key")
        settings = get_settings()
        self.api_key: str = self.config["api_key"]
        self.webhook_secret: Optional[str] = self.config.get("webhook_secret")
        self.api_version = settings.stripe_api_version
        self.circuit_breaker = CircuitBreaker(
            self.provider,
            failure_threshold=settings.gateway_circuit_failure_threshold,
            timeout=settings.gateway_circuit_timeout,
            failure_exceptions=TRANSPORT_ERRORS,
        )

    @property
    def request_options(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "stripe_version": self.api_version}

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Run a Stripe SDK call through the circuit breaker.

        Declines propagate as Stripe exceptions for the caller to translate;
        transport failures are raised as GatewayError.
        """
        try:
            return self.circuit_breaker.call(func, *args, **kwargs)
        except TRANSPORT_ERRORS as e:
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(str(e), code=getattr(e, "code", None)) from e

    @staticmethod
    def _declined(error: stripe.StripeError) -> GatewayResponse:
        message = getattr(error, "user_message", None) or str(error)
        logger.info("stripe_request_declined", error_code=getattr(error, "code", None))
        return GatewayResponse(successful=False, message=message)

    @staticmethod
    def _intent_response(intent: Mapping[str, Any]) -> GatewayResponse:
        status = intent.get("status")
        if status in SUCCEEDED_INTENT_STATUSES:
            return GatewayResponse(
                successful=True, transaction_reference=intent["id"], data=dict(intent)
            )

        next_action = intent.get("next_action") or {}
        if status == "requires_action" and next_action.get("type") == "redirect_to_url":
            return GatewayResponse(
                successful=False,
                redirect_required=True,
                redirect_url=next_action["redirect_to_url"]["url"],
                transaction_reference=intent["id"],
                data=dict(intent),
            )

        if status == "canceled":
            return GatewayResponse(
                successful=False, cancelled=True, transaction_reference=intent["id"]
            )

        last_error = intent.get("last_payment_error") or {}
        return GatewayResponse(
            successful=False,
            transaction_reference=intent["id"],
            message=last_error.get("message"),
            data=dict(intent),
        )

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _create_payment_intent(self, params: Dict[str, Any], idempotency_key: str) -> Any:
        return self.circuit_breaker.call(
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
            **self.request_options,
        )

    async def purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        payment_method = data.get(self.source_reference_param) or data.get("source_token")
        if not payment_method:
            return GatewayResponse(
                successful=False, message="Card details must be tokenized before charging"
            )

        params: Dict[str, Any] = {
            "amount": data["amount_cents"],
            "currency": data["currency"].lower(),
            "description": data.get("description"),
            "payment_method": payment_method,
            "confirm": True,
            "return_url": data.get("return_url"),
            "metadata": {
                "transaction_id": data.get("transaction_id"),
                "invitation_key": data.get("invitation_key"),
                "payment_ref": data.get("idempotency_key"),
            },
        }
        if data.get(self.customer_reference_param):
            params["customer"] = data[self.customer_reference_param]
        if data.get("gateway_type") == GatewayType.BANK_TRANSFER:
            params["payment_method_types"] = ["us_bank_account"]

        logger.info(
            "creating_payment_intent",
            amount_cents=params["amount"],
            currency=params["currency"],
            idempotency_key=data.get("idempotency_key"),
        )

        try:
            intent = self._create_payment_intent(params, data["idempotency_key"])
        except DECLINE_ERRORS as e:
            return self._declined(e)
        except TRANSPORT_ERRORS as e:
            raise GatewayError(str(e), code=getattr(e, "code", None)) from e

        return self._intent_response(intent)

    async def complete_purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        """Re-read the PaymentIntent after a 3-D Secure redirect."""
        reference = data.get("transaction_reference")
        if not reference:
            return GatewayResponse(successful=False, message="Missing payment intent reference")

        try:
            intent = self._call(
                "retrieve_payment_intent",
                stripe.PaymentIntent.retrieve,
                reference,
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)
        return self._intent_response(intent)

    async def refund(self, data: Dict[str, Any]) -> GatewayResponse:
        try:
            refund = self._call(
                "create_refund",
                stripe.Refund.create,
                payment_intent=data["transaction_reference"],
                amount=data["amount_cents"],
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)

        return GatewayResponse(
            successful=refund.get("status") in ("succeeded", "pending"),
            transaction_reference=refund["id"],
            message=refund.get("failure_reason"),
            data=dict(refund),
        )

    async def void(self, data: Dict[str, Any]) -> GatewayResponse:
        try:
            intent = self._call(
                "cancel_payment_intent",
                stripe.PaymentIntent.cancel,
                data["transaction_reference"],
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)

        return GatewayResponse(
            successful=intent.get("status") == "canceled",
            transaction_reference=intent["id"],
            data=dict(intent),
        )

    async def create_customer(self, data: Dict[str, Any]) -> GatewayResponse:
        try:
            customer = self._call(
                "create_customer",
                stripe.Customer.create,
                email=data.get("email"),
                name=data.get("name"),
                metadata={"client_id": data.get("client_id")},
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)
        return GatewayResponse(successful=True, transaction_reference=customer["id"])

    async def check_customer_exists(self, customer_reference: Optional[str]) -> bool:
        if not customer_reference:
            return False
        try:
            customer = self._call(
                "retrieve_customer",
                stripe.Customer.retrieve,
                customer_reference,
                **self.request_options,
            )
        except stripe.InvalidRequestError:
            return False
        return not customer.get("deleted", False)

    async def create_token(self, data: Dict[str, Any]) -> GatewayResponse:
        source_token = data.get("source_token")
        if not source_token:
            return GatewayResponse(successful=False, message="Missing payment method token")

        try:
            method = self._call(
                "attach_payment_method",
                stripe.PaymentMethod.attach,
                source_token,
                customer=data["customer_reference"],
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)

        source = self._payment_source(method)
        return GatewayResponse(
            successful=True, transaction_reference=source.source_reference, source=source
        )

    @staticmethod
    def _payment_source(method: Mapping[str, Any]) -> PaymentSource:
        billing = method.get("billing_details") or {}
        if method.get("type") == "us_bank_account":
            bank = method["us_bank_account"]
            return PaymentSource(
                source_reference=method["id"],
                payment_type=PaymentType.ACH,
                last4=bank.get("last4"),
                routing_number=bank.get("routing_number"),
                bank_name=bank.get("bank_name"),
                email=billing.get("email"),
                status=PaymentMethodStatus.NEW,
            )

        card = method.get("card") or {}
        expiration = None
        if card.get("exp_year") and card.get("exp_month"):
            expiration = date(int(card["exp_year"]), int(card["exp_month"]), 1)
        return PaymentSource(
            source_reference=method["id"],
            payment_type=parse_card_type(card.get("brand")),
            last4=card.get("last4"),
            expiration=expiration,
            email=billing.get("email"),
        )

    async def remove_payment_method(self, source_reference: str) -> None:
        self._call(
            "detach_payment_method",
            stripe.PaymentMethod.detach,
            source_reference,
            **self.request_options,
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if not self.webhook_secret:
            raise GatewayError("Stripe webhook secret is not configured")

        signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise GatewayError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise GatewayError(f"Malformed webhook payload: {e}") from e

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return self._webhook_event(event)

    def _webhook_event(self, event: Mapping[str, Any]) -> WebhookEvent:
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}
        if event["type"] == "payment_intent.succeeded":
            return WebhookEvent(
                event_id=event["id"],
                event_type=event["type"],
                succeeded=True,
                transaction_reference=obj["id"],
                invitation_key=metadata.get("invitation_key"),
                data=dict(obj),
            )
        return WebhookEvent(event_id=event["id"], event_type=event["type"], data=dict(obj))


class StripeCheckoutGateway(StripeGateway):
    """
    Offsite adapter using hosted Stripe Checkout Sessions.

    The Checkout Session id is the pending reference stored across the
    redirect; the PaymentIntent id returned on completion becomes the
    payment's transaction reference.
    """

    provider = "stripe_checkout"
    gateway_types = (GatewayType.CREDIT_CARD, GatewayType.PAYPAL)
    two_step_types = frozenset()
    tokenize = False
    supports_customers = False

    async def purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        return_url = data["return_url"]
        separator = "&" if "?" in return_url else "?"
        try:
            session = self._call(
                "create_checkout_session",
                stripe.checkout.Session.create,
                mode="payment",
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": data["currency"].lower(),
                            "unit_amount": data["amount_cents"],
                            "product_data": {"name": data.get("description") or "Payment"},
                        },
                    }
                ],
                success_url=f"{return_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=data.get("cancel_url"),
                client_reference_id=data.get("transaction_id"),
                customer_email=(data.get("card").email if data.get("card") else None),
                metadata={
                    "invitation_key": data.get("invitation_key"),
                    "payment_ref": data.get("idempotency_key"),
                },
                payment_intent_data={"metadata": {"invitation_key": data.get("invitation_key")}},
                idempotency_key=data.get("idempotency_key"),
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)

        return GatewayResponse(
            successful=False,
            redirect_required=True,
            redirect_url=session["url"],
            transaction_reference=session["id"],
            data=dict(session),
        )

    async def complete_purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        reference = (data.get("callback") or {}).get("session_id") or data.get(
            "transaction_reference"
        )
        if not reference:
            return GatewayResponse(successful=False, message="Missing checkout session reference")

        try:
            session = self._call(
                "retrieve_checkout_session",
                stripe.checkout.Session.retrieve,
                reference,
                **self.request_options,
            )
        except DECLINE_ERRORS as e:
            return self._declined(e)

        if session.get("payment_status") == "paid":
            return GatewayResponse(
                successful=True,
                transaction_reference=session.get("payment_intent") or session["id"],
                data=dict(session),
            )
        if session.get("status") in ("open", "expired"):
            return GatewayResponse(successful=False, cancelled=True, data=dict(session))
        return GatewayResponse(
            successful=False, message="Checkout session was not paid", data=dict(session)
        )

    def _webhook_event(self, event: Mapping[str, Any]) -> WebhookEvent:
        if event["type"] != "checkout.session.completed":
            return super()._webhook_event(event)

        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        return WebhookEvent(
            event_id=event["id"],
            event_type=event["type"],
            succeeded=session.get("payment_status") == "paid",
            transaction_reference=session.get("payment_intent"),
            invitation_key=metadata.get("invitation_key"),
            data=dict(session),
        )
