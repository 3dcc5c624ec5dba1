"""
Gateway registry.

Maps the provider name stored on an AccountGateway to the adapter class
that talks to it. Plug-in providers call ``register_gateway`` at import
time.

Adapters are cached per account gateway, so state such as the circuit
breaker is shared by every request of that merchant. A changed provider or
config builds a fresh adapter.
"""
from typing import Any, Callable, Dict, List, Mapping, Tuple

import structlog

from payment_orchestrator.database.models import AccountGateway
from payment_orchestrator.exceptions import UnsupportedGatewayError
from payment_orchestrator.integrations.fake_gateway import FakeGateway
from payment_orchestrator.integrations.gateway import GatewayAdapter
from payment_orchestrator.integrations.stripe_gateway import StripeCheckoutGateway, StripeGateway

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[[Mapping[str, Any]], GatewayAdapter]

_registry: Dict[str, GatewayFactory] = {
    FakeGateway.provider: FakeGateway,
    StripeGateway.provider: StripeGateway,
    StripeCheckoutGateway.provider: StripeCheckoutGateway,
}

_adapters: Dict[int, Tuple[str, Dict[str, Any], GatewayAdapter]] = {}


def register_gateway(provider: str, factory: GatewayFactory) -> None:
    """Register (or replace) the adapter factory for a provider name."""
    _registry[provider] = factory
    for account_gateway_id, (cached_provider, _, _) in list(_adapters.items()):
        if cached_provider == provider:
            del _adapters[account_gateway_id]
    logger.info("gateway_registered", provider=provider)


def available_providers() -> List[str]:
    return sorted(_registry)


def build_gateway(account_gateway: AccountGateway) -> GatewayAdapter:
    """
    Build the adapter configured for an account gateway.

    Raises:
        UnsupportedGatewayError: If no adapter is registered for the provider
    """
    provider = account_gateway.provider
    config = dict(account_gateway.config or {})
    cached = _adapters.get(account_gateway.id) if account_gateway.id is not None else None
    if cached is not None and cached[0] == provider and cached[1] == config:
        return cached[2]

    factory = _registry.get(provider)
    if factory is None:
        raise UnsupportedGatewayError(f"Unsupported gateway: {provider}")
    adapter = factory(config)
    if account_gateway.id is not None:
        _adapters[account_gateway.id] = (provider, config, adapter)
        logger.info(
            "gateway_adapter_built", account_gateway_id=account_gateway.id, provider=provider
        )
    return adapter


def clear_gateway_cache() -> None:
    """Forget every cached adapter."""
    _adapters.clear()
