"""
Purchase orchestration.

Drives a checkout through the gateway in two phases:

- ``initiate_purchase`` resolves the payment method, charges it and either
  records the payment or hands back a redirect for offsite gateways
- ``complete_offsite_purchase`` runs when the payer comes back from the
  gateway and settles the reference captured in the first phase

Provider webhooks settle through the same balance, dedup and ledger path as
the offsite return, so a callback replayed by the browser and the same charge
reported by the gateway can never both produce a payment.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.config import Settings, get_settings
from payment_orchestrator.core.card_details import (
    build_purchase_data,
    details_from_client,
    details_from_input,
    validate_checkout_input,
)
from payment_orchestrator.core.checkout_session import (
    find_account_gateway,
    load_account_gateway,
    load_context,
    load_invitation,
    mark_context,
    new_payment_ref,
    start_context,
)
from payment_orchestrator.core.customer_tokens import CustomerTokenManager
from payment_orchestrator.core.ledger import PaymentLedger
from payment_orchestrator.database.models import (
    AccountGateway,
    Country,
    Customer,
    Invitation,
    Payment,
    PaymentMethod,
    TransactionContext,
)
from payment_orchestrator.exceptions import (
    AlreadyPaidError,
    GatewayError,
    NotFoundError,
    UnsupportedGatewayError,
)
from payment_orchestrator.integrations.gateway import GatewayAdapter, call_gateway
from payment_orchestrator.integrations.registry import build_gateway
from payment_orchestrator.monitoring.metrics import metrics
from payment_orchestrator.types import ContextStatus, GatewayType, TokenBillingMode

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[[AccountGateway], GatewayAdapter]

ADDRESS_INPUT_FIELDS = ("address1", "address2", "city", "state", "postal_code")


@dataclass
class PurchaseRequest:
    """One checkout submission."""

    invitation_key: str
    gateway_type: GatewayType
    input: Dict[str, Any] = field(default_factory=dict)
    # Public id of a stored payment method, for the token gateway type
    source_id: Optional[str] = None
    provider: Optional[str] = None
    ip: Optional[str] = None


@dataclass(frozen=True)
class RedirectInstruction:
    """Send the payer to the gateway's offsite page."""

    url: str
    method: str = "GET"
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingVerification:
    """Funds move only after an out-of-band confirmation of the payment method."""

    payment_method: PaymentMethod


@dataclass(frozen=True)
class PurchaseCancelled:
    """The payer cancelled on the gateway's page. Not an error."""

    invitation_key: str


InitiateOutcome = Union[Payment, RedirectInstruction, PendingVerification]
CompleteOutcome = Union[Payment, PurchaseCancelled]


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "off", "no")
    return bool(value)


def should_create_token(
    adapter: GatewayAdapter,
    account_gateway: AccountGateway,
    gateway_type: GatewayType,
    input: Mapping[str, Any],
) -> bool:
    """Whether the checkout stores the payment method before charging it."""
    if GatewayType(gateway_type) == GatewayType.BANK_TRANSFER:
        return True
    if not adapter.handles(GatewayType.TOKEN):
        return False
    if account_gateway.token_billing_mode == TokenBillingMode.ALWAYS:
        return True
    return _truthy(input.get("token_billing"))


class PurchaseOrchestrator:
    """
    Purchase state machine.

    Gateway adapters are built per account gateway through
    ``gateway_factory``; tests inject a factory returning a prepared fake.
    """

    def __init__(
        self,
        ledger: Optional[PaymentLedger] = None,
        gateway_factory: GatewayFactory = build_gateway,
        settings: Optional[Settings] = None,
    ) -> None:
        self.ledger = ledger or PaymentLedger()
        self.gateway_factory = gateway_factory
        self.settings = settings or get_settings()

    async def initiate_purchase(self, db: AsyncSession, request: PurchaseRequest) -> InitiateOutcome:
        """
        Start a checkout.

        Returns:
            The Payment when the charge settles immediately, a
            RedirectInstruction for offsite gateways, or PendingVerification
            for two-step gateway types

        Raises:
            PaymentValidationError: If required card fields are missing
            NotFoundError: If the invitation or the stored method is not found
            UnsupportedGatewayError: If the gateway cannot take this gateway type
            AlreadyPaidError: If nothing is owed on the invoice
            GatewayError: If the gateway declines the charge
        """
        gateway_type = GatewayType(request.gateway_type)
        invitation = await load_invitation(db, request.invitation_key)
        invoice = invitation.invoice
        client = invoice.client

        if invoice.requested_amount_cents <= 0:
            raise AlreadyPaidError(invoice.id)

        account_gateway = await find_account_gateway(db, invitation.account_id, request.provider)
        adapter = self.gateway_factory(account_gateway)
        if not adapter.handles(gateway_type):
            raise UnsupportedGatewayError(
                f"{adapter.provider} does not support {gateway_type.value} payments"
            )

        log = logger.bind(
            invitation_id=invitation.id,
            invoice_id=invoice.id,
            provider=adapter.provider,
            gateway_type=gateway_type.value,
        )

        context = await start_context(db, invitation, account_gateway.id, gateway_type)
        input = dict(request.input or {})
        if input:
            validate_checkout_input(
                input, gateway_type, adapter.tokenize, account_gateway.show_address
            )
            await self.update_client(db, account_gateway, gateway_type, invitation, input)

        tokens = CustomerTokenManager(adapter, account_gateway)
        payment_method: Optional[PaymentMethod] = None
        if gateway_type == GatewayType.TOKEN:
            payment_method = await tokens.load_payment_method(db, client.id, request.source_id)
        elif should_create_token(adapter, account_gateway, gateway_type, input):
            card = None
            if input:
                card = details_from_input(
                    input, client.display_name, await self._country_code(db, input)
                )
            payment_method = await tokens.create_token(
                db,
                client,
                invitation.contact,
                gateway_type,
                card=card,
                source_token=input.get("source_token"),
                ip=request.ip,
            )

        if adapter.is_two_step(gateway_type):
            mark_context(context, ContextStatus.PENDING)
            await db.commit()
            log.info(
                "purchase_awaiting_verification",
                payment_method_id=payment_method.id if payment_method else None,
            )
            return PendingVerification(payment_method=payment_method)

        data = await self._purchase_data(
            db, adapter, invitation, context, gateway_type, input, payment_method, request.ip
        )
        response = await call_gateway(adapter, "purchase", data)
        reference = adapter.extract_reference(response)

        if response.successful and reference:
            mark_context(context, ContextStatus.COMPLETED, reference)
            return await self.ledger.persist(
                db, invitation, account_gateway.id, reference, payment_method, request.ip
            )

        if response.redirect_required:
            mark_context(context, ContextStatus.PENDING)
            # Only this attempt's reference may be settled on return
            context.transaction_reference = reference
            await db.commit()
            log.info("purchase_redirect", transaction_reference=reference)
            return RedirectInstruction(
                url=response.redirect_url or "",
                method=response.redirect_method,
                data=dict(response.redirect_data),
            )

        log.warning("purchase_declined", message=response.message)
        raise GatewayError(response.message)

    async def complete_offsite_purchase(
        self,
        db: AsyncSession,
        invitation_key: str,
        input: Optional[Mapping[str, Any]] = None,
        gateway_type: Optional[GatewayType] = None,
        ip: Optional[str] = None,
    ) -> CompleteOutcome:
        """
        Settle a purchase when the payer returns from the gateway.

        The reference comes from the callback (``token`` or ``reference``)
        or else from the checkout context stored when the redirect was
        issued.

        Raises:
            GatewayError: If the gateway reports a failed completion
            AlreadyPaidError: If the invoice has no outstanding balance
            DuplicateTransactionError: If the reference was already recorded
        """
        input = dict(input or {})
        invitation = await load_invitation(db, invitation_key)
        context = await load_context(db, invitation.id)

        if context is not None:
            account_gateway = await load_account_gateway(db, context.account_gateway_id)
        else:
            account_gateway = await find_account_gateway(db, invitation.account_id)
        adapter = self.gateway_factory(account_gateway)

        if gateway_type is None:
            gateway_type = GatewayType(context.gateway_type) if context else GatewayType.CREDIT_CARD
        gateway_type = GatewayType(gateway_type)

        reference = input.get("token") or input.get("reference")
        if not reference and context is not None:
            reference = context.transaction_reference

        log = logger.bind(
            invitation_id=invitation.id,
            invoice_id=invitation.invoice_id,
            provider=adapter.provider,
        )

        if adapter.supports_completion:
            data = await self._purchase_data(
                db, adapter, invitation, context, gateway_type, {}, None, ip
            )
            data["transaction_reference"] = reference
            data["callback"] = input
            response = await call_gateway(adapter, "complete_purchase", data)
            reference = adapter.extract_reference(response) or reference

            if response.cancelled:
                if context is not None:
                    mark_context(context, ContextStatus.CANCELLED)
                    await db.commit()
                log.info("offsite_purchase_cancelled")
                return PurchaseCancelled(invitation_key=invitation_key)
            if not response.successful:
                log.warning("offsite_completion_failed", message=response.message)
                raise GatewayError(response.message)

        if not reference:
            raise GatewayError("The gateway did not return a transaction reference")

        return await self._settle(db, invitation, account_gateway.id, reference, context, ip=ip)

    async def handle_webhook(
        self,
        db: AsyncSession,
        account_gateway_id: int,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[Payment]:
        """
        Apply a provider callback.

        Returns the Payment created for a successful charge event, or None
        when the event does not record a payment.

        Raises:
            UnsupportedGatewayError: If the adapter takes no webhooks
            GatewayError: If the callback fails verification
            AlreadyPaidError / DuplicateTransactionError: If the charge was
                already settled, typically by the offsite return
        """
        account_gateway = await load_account_gateway(db, account_gateway_id)
        adapter = self.gateway_factory(account_gateway)

        try:
            event = adapter.parse_webhook(payload, headers)
        except UnsupportedGatewayError:
            metrics.record_webhook_event(adapter.provider, "unsupported")
            logger.warning("webhook_unsupported", provider=adapter.provider)
            raise
        except GatewayError as e:
            metrics.record_webhook_event(adapter.provider, "failed")
            logger.error("webhook_rejected", provider=adapter.provider, error=str(e))
            raise

        log = logger.bind(provider=adapter.provider, event_id=event.event_id, event_type=event.event_type)
        if not event.is_payment or not event.invitation_key:
            metrics.record_webhook_event(adapter.provider, "ignored")
            log.info("webhook_ignored")
            return None

        invitation = await load_invitation(db, event.invitation_key)
        if invitation.account_id != account_gateway.account_id:
            raise NotFoundError(f"Invitation {event.invitation_key} not found")

        context = await load_context(db, invitation.id)
        payment = await self._settle(
            db, invitation, account_gateway.id, event.transaction_reference, context
        )
        metrics.record_webhook_event(adapter.provider, "processed")
        log.info("webhook_processed", payment_id=payment.id)
        return payment

    async def _settle(
        self,
        db: AsyncSession,
        invitation: Invitation,
        account_gateway_id: int,
        reference: str,
        context: Optional[TransactionContext],
        ip: Optional[str] = None,
    ) -> Payment:
        invoice = invitation.invoice
        if invoice.balance_cents <= 0:
            logger.warning(
                "payment_rejected_no_balance",
                invoice_id=invoice.id,
                transaction_reference=reference,
            )
            raise AlreadyPaidError(invoice.id)

        if context is not None:
            mark_context(context, ContextStatus.COMPLETED, reference)
        return await self.ledger.persist(db, invitation, account_gateway_id, reference, ip=ip)

    async def _purchase_data(
        self,
        db: AsyncSession,
        adapter: GatewayAdapter,
        invitation: Invitation,
        context: Optional[TransactionContext],
        gateway_type: GatewayType,
        input: Mapping[str, Any],
        payment_method: Optional[PaymentMethod],
        ip: Optional[str],
    ) -> Dict[str, Any]:
        """Stored method first, then the submitted card, then the client's profile."""
        invoice = invitation.invoice
        client = invoice.client
        payment_ref = context.payment_ref if context is not None else new_payment_ref(invoice.id)

        card = None
        customer_token = None
        if payment_method is not None:
            customer = await db.get(Customer, payment_method.customer_id)
            customer_token = customer.token if customer else None
        elif input:
            card = details_from_input(input, client.display_name, await self._country_code(db, input))
        else:
            card = details_from_client(client, invitation.contact)

        data = build_purchase_data(
            adapter,
            invitation,
            invoice,
            gateway_type,
            self.settings.app_url,
            payment_ref,
            payment_method=payment_method,
            customer_token=customer_token,
            card=card,
            ip=ip,
        )
        if payment_method is None and input.get("source_token"):
            data["source_token"] = input["source_token"]
        return data

    async def _country_code(self, db: AsyncSession, input: Mapping[str, Any]) -> str:
        try:
            country_id = int(input.get("country_id"))
        except (TypeError, ValueError):
            return ""
        country = await db.get(Country, country_id)
        return country.iso_3166_2 if country else ""

    async def update_client(
        self,
        db: AsyncSession,
        account_gateway: AccountGateway,
        gateway_type: GatewayType,
        invitation: Invitation,
        input: Mapping[str, Any],
    ) -> None:
        """
        Fill in the contact's missing name and email from a card checkout.

        The client's address is overwritten only when the gateway both shows
        and updates addresses.
        """
        if GatewayType(gateway_type) != GatewayType.CREDIT_CARD:
            return

        contact = invitation.contact
        if not contact.full_name:
            contact.first_name = input.get("first_name")
            contact.last_name = input.get("last_name")
        if not contact.email and input.get("email"):
            contact.email = input.get("email")

        if account_gateway.show_address and account_gateway.update_address:
            client = invitation.invoice.client
            for name in ADDRESS_INPUT_FIELDS:
                value = input.get(name)
                setattr(client, name, value.strip() if isinstance(value, str) else value)
            try:
                client.country_id = int(input.get("country_id"))
            except (TypeError, ValueError):
                client.country_id = None
            # Keep the loaded relationship in step with the new id
            client.country = await db.get(Country, client.country_id) if client.country_id else None

        await db.commit()
