"""
Payment gateway port (abstract interface).

Every provider adapter implements the same small capability contract so the
orchestrators never branch on provider names:

- purchase / refund / void (required)
- complete_purchase for redirect-based flows (optional, supports_completion)
- create_customer / create_token for stored methods (optional, supports_customers)
- parse_webhook for provider callbacks (optional, unsupported by default)
"""
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import structlog

from payment_orchestrator.exceptions import GatewayError, UnsupportedGatewayError
from payment_orchestrator.monitoring.metrics import metrics
from payment_orchestrator.types import GatewayType, PaymentMethodStatus, PaymentType

logger = structlog.get_logger(__name__)

CARD_TYPES: Dict[str, PaymentType] = {
    "visa": PaymentType.VISA,
    "americanexpress": PaymentType.AMERICAN_EXPRESS,
    "amex": PaymentType.AMERICAN_EXPRESS,
    "mastercard": PaymentType.MASTERCARD,
    "discover": PaymentType.DISCOVER,
    "jcb": PaymentType.JCB,
    "dinersclub": PaymentType.DINERS,
    "diners": PaymentType.DINERS,
    "carteblanche": PaymentType.CARTE_BLANCHE,
    "chinaunionpay": PaymentType.UNIONPAY,
    "unionpay": PaymentType.UNIONPAY,
    "laser": PaymentType.LASER,
    "maestro": PaymentType.MAESTRO,
    "solo": PaymentType.SOLO,
    "switch": PaymentType.SWITCH,
}


def parse_card_type(card_name: Optional[str]) -> PaymentType:
    """
    Map a gateway's card brand name to a PaymentType.

    Some gateways append extra text after the brand ("Visa Debit"), so an
    unknown name falls back to prefix matching before giving up.
    """
    if not card_name:
        return PaymentType.CREDIT_CARD_OTHER

    name = re.sub(r"[\s\-_]", "", card_name).lower()
    if name in CARD_TYPES:
        return CARD_TYPES[name]

    for brand in sorted(CARD_TYPES, key=len, reverse=True):
        if name.startswith(brand):
            return CARD_TYPES[brand]
    return PaymentType.CREDIT_CARD_OTHER


@dataclass(frozen=True)
class PaymentSource:
    """Tokenized card or bank account as reported by the gateway."""

    source_reference: str
    payment_type: PaymentType = PaymentType.CREDIT_CARD_OTHER
    last4: Optional[str] = None
    expiration: Optional[date] = None
    routing_number: Optional[str] = None
    bank_name: Optional[str] = None
    email: Optional[str] = None
    status: PaymentMethodStatus = PaymentMethodStatus.VERIFIED


@dataclass(frozen=True)
class GatewayResponse:
    """Normalized result of any gateway call. Never persisted as-is."""

    successful: bool
    transaction_reference: Optional[str] = None
    message: Optional[str] = None
    redirect_required: bool = False
    redirect_url: Optional[str] = None
    redirect_method: str = "GET"
    redirect_data: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    source: Optional[PaymentSource] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        if self.successful:
            return "success"
        if self.redirect_required:
            return "redirect"
        if self.cancelled:
            return "cancelled"
        return "declined"


@dataclass(frozen=True)
class WebhookEvent:
    """Provider callback reduced to what the ledger needs."""

    event_id: str
    event_type: str
    succeeded: bool = False
    transaction_reference: Optional[str] = None
    invitation_key: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment(self) -> bool:
        return self.succeeded and bool(self.transaction_reference)


class GatewayAdapter(ABC):
    """Abstract payment gateway interface."""

    provider: str = "base"
    gateway_types: Tuple[GatewayType, ...] = (GatewayType.CREDIT_CARD,)
    # Gateway types where funds only move after an out-of-band confirmation
    two_step_types: FrozenSet[GatewayType] = frozenset()
    # Card details are tokenized client-side and never posted to us
    tokenize: bool = False
    # Response field holding the transaction reference, when the generic one is wrong
    reference_field_name: Optional[str] = None
    customer_reference_param: Optional[str] = None
    source_reference_param: str = "token"
    supports_completion: bool = False
    supports_customers: bool = False

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = dict(config or {})

    def handles(self, gateway_type: GatewayType | str) -> bool:
        return GatewayType(gateway_type) in self.gateway_types

    def is_two_step(self, gateway_type: GatewayType | str) -> bool:
        return GatewayType(gateway_type) in self.two_step_types

    def extract_reference(self, response: GatewayResponse) -> Optional[str]:
        """Resolve the transaction reference once, per the adapter's configuration."""
        if self.reference_field_name:
            return response.data.get(self.reference_field_name)
        return response.transaction_reference

    @abstractmethod
    async def purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        """Charge the canonical purchase data."""
        ...

    async def complete_purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        """Confirm a purchase after the user returns from the offsite page."""
        raise UnsupportedGatewayError(f"{self.provider} has no completion step")

    @abstractmethod
    async def refund(self, data: Dict[str, Any]) -> GatewayResponse:
        """Refund a settled charge, fully or partially."""
        ...

    @abstractmethod
    async def void(self, data: Dict[str, Any]) -> GatewayResponse:
        """Cancel an unsettled charge in full."""
        ...

    async def create_customer(self, data: Dict[str, Any]) -> GatewayResponse:
        raise UnsupportedGatewayError(f"{self.provider} does not store customers")

    async def create_token(self, data: Dict[str, Any]) -> GatewayResponse:
        raise UnsupportedGatewayError(f"{self.provider} does not store payment methods")

    async def check_customer_exists(self, customer_reference: Optional[str]) -> bool:
        """Hook to invalidate a cached customer; the default trusts the local record."""
        return True

    async def verify_bank_account(
        self, source_reference: str, amount1: int, amount2: int
    ) -> GatewayResponse:
        raise UnsupportedGatewayError(f"{self.provider} cannot verify bank accounts")

    async def remove_payment_method(self, source_reference: str) -> None:
        return None

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Verify and parse a provider callback."""
        raise UnsupportedGatewayError("Unsupported gateway")


async def call_gateway(
    adapter: GatewayAdapter, operation: str, data: Dict[str, Any]
) -> GatewayResponse:
    """
    Invoke one adapter operation with logging and metrics.

    No retry happens here: a payment call is only safe to repeat when the
    provider honours an idempotency key, which is the adapter's business.
    """
    start_time = time.time()
    logger.info("gateway_call_started", provider=adapter.provider, operation=operation)

    try:
        response: GatewayResponse = await getattr(adapter, operation)(data)
    except GatewayError as e:
        metrics.record_gateway_call(
            adapter.provider, operation, "error", time.time() - start_time
        )
        logger.error(
            "gateway_call_failed",
            provider=adapter.provider,
            operation=operation,
            error=str(e),
        )
        raise

    duration = time.time() - start_time
    metrics.record_gateway_call(adapter.provider, operation, response.outcome, duration)
    logger.info(
        "gateway_call_completed",
        provider=adapter.provider,
        operation=operation,
        outcome=response.outcome,
        transaction_reference=response.transaction_reference,
        duration_seconds=duration,
    )
    return response
