"""Payment gateway adapters."""
from .fake_gateway import FakeGateway
from .gateway import (
    GatewayAdapter,
    GatewayResponse,
    PaymentSource,
    WebhookEvent,
    call_gateway,
    parse_card_type,
)
from .registry import build_gateway, clear_gateway_cache, register_gateway
from .stripe_gateway import StripeCheckoutGateway, StripeGateway

__all__ = [
    "FakeGateway",
    "GatewayAdapter",
    "GatewayResponse",
    "PaymentSource",
    "StripeCheckoutGateway",
    "StripeGateway",
    "WebhookEvent",
    "build_gateway",
    "call_gateway",
    "clear_gateway_cache",
    "parse_card_type",
    "register_gateway",
]
