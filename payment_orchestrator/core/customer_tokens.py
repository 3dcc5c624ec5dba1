"""
Gateway customers and stored payment methods.

A Customer links a client to the gateway-side customer id, at most once
per (client, gateway). It is committed as soon as it is created; the token
step that follows commits separately, so a failed tokenization leaves a
Customer that the next attempt finds and reuses.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payment_orchestrator.core.card_details import CardDetails
from payment_orchestrator.database.models import (
    AccountGateway,
    Client,
    Contact,
    Customer,
    PaymentMethod,
    utcnow,
)
from payment_orchestrator.exceptions import GatewayError, NotFoundError
from payment_orchestrator.integrations.gateway import GatewayAdapter, call_gateway
from payment_orchestrator.types import GatewayType, PaymentMethodStatus, PaymentType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenLink:
    """A stored payment method the client can pay with again."""

    public_id: str
    label: str
    payment_type: str
    url: str
    is_default: bool = False


def payment_method_label(payment_method: PaymentMethod) -> str:
    if payment_method.payment_type == PaymentType.ACH:
        return payment_method.bank_name or "Bank account on file"
    if payment_method.payment_type == PaymentType.PAYPAL:
        return f"PayPal: {payment_method.email}"
    return "Card on file"


class CustomerTokenManager:
    """Creates and reuses gateway customers and their payment methods for one gateway."""

    def __init__(self, adapter: GatewayAdapter, account_gateway: AccountGateway) -> None:
        self.adapter = adapter
        self.account_gateway = account_gateway

    async def find_customer(self, db: AsyncSession, client_id: int) -> Optional[Customer]:
        """
        The client's customer at this gateway, if the gateway still knows it.

        The adapter's ``check_customer_exists`` can reject a cached customer
        that was deleted on the gateway side.
        """
        result = await db.execute(
            select(Customer).where(
                Customer.client_id == client_id,
                Customer.account_gateway_id == self.account_gateway.id,
            )
        )
        customer = result.scalar_one_or_none()
        if customer is None:
            return None
        if not await self.adapter.check_customer_exists(customer.token):
            logger.info(
                "gateway_customer_invalidated",
                customer_id=customer.id,
                client_id=client_id,
                account_gateway_id=self.account_gateway.id,
            )
            return None
        return customer

    async def get_or_create_customer(
        self, db: AsyncSession, client: Client, contact: Optional[Contact]
    ) -> Customer:
        """
        Raises:
            GatewayError: If the gateway refuses to create the customer
        """
        customer = await self.find_customer(db, client.id)
        if customer is not None:
            return customer

        token = None
        if self.adapter.supports_customers:
            response = await call_gateway(
                self.adapter,
                "create_customer",
                {
                    "client_id": client.id,
                    "name": client.display_name,
                    "email": contact.email if contact else None,
                },
            )
            if not response.successful:
                raise GatewayError(response.message)
            token = response.transaction_reference

        # An invalidated customer keeps its row; only the gateway side is recreated
        result = await db.execute(
            select(Customer).where(
                Customer.client_id == client.id,
                Customer.account_gateway_id == self.account_gateway.id,
            )
        )
        customer = result.scalar_one_or_none()
        if customer is None:
            customer = Customer(
                account_id=client.account_id,
                account_gateway_id=self.account_gateway.id,
                client_id=client.id,
                contact_id=contact.id if contact else None,
            )
            db.add(customer)
        else:
            customer.default_payment_method_id = None
        customer.token = token

        await db.commit()
        logger.info("gateway_customer_created", customer_id=customer.id, client_id=client.id)
        return customer

    async def create_payment_method(
        self,
        db: AsyncSession,
        customer: Customer,
        gateway_type: GatewayType,
        contact_id: Optional[int] = None,
        card: Optional[CardDetails] = None,
        source_token: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> PaymentMethod:
        """
        Tokenize a card or bank account and store it for the customer.

        The first method stored for a customer becomes its default in the
        same commit.

        Raises:
            GatewayError: If the gateway does not return a usable source
        """
        data: Dict[str, Any] = {
            "customer_reference": customer.token,
            "gateway_type": GatewayType(gateway_type),
            "card": card,
            "source_token": source_token,
            "ip": ip,
        }
        response = await call_gateway(self.adapter, "create_token", data)
        if not response.successful or response.source is None:
            raise GatewayError(response.message)

        source = response.source
        payment_method = PaymentMethod(
            account_id=customer.account_id,
            customer_id=customer.id,
            contact_id=contact_id,
            payment_type=PaymentType(source.payment_type).value,
            source_reference=source.source_reference,
            last4=source.last4,
            expiration=source.expiration,
            routing_number=source.routing_number,
            bank_name=source.bank_name,
            email=source.email,
            status=PaymentMethodStatus(source.status).value,
            ip=ip,
        )
        db.add(payment_method)
        await db.flush()

        if customer.default_payment_method_id is None:
            customer.default_payment_method_id = payment_method.id

        await db.commit()
        logger.info(
            "payment_method_created",
            payment_method_id=payment_method.id,
            customer_id=customer.id,
            payment_type=payment_method.payment_type,
            status=payment_method.status,
        )
        return payment_method

    async def create_token(
        self,
        db: AsyncSession,
        client: Client,
        contact: Optional[Contact],
        gateway_type: GatewayType,
        card: Optional[CardDetails] = None,
        source_token: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> PaymentMethod:
        customer = await self.get_or_create_customer(db, client, contact)
        return await self.create_payment_method(
            db,
            customer,
            gateway_type,
            contact_id=contact.id if contact else None,
            card=card,
            source_token=source_token,
            ip=ip,
        )

    async def load_payment_method(
        self, db: AsyncSession, client_id: int, public_id: Optional[str]
    ) -> PaymentMethod:
        """
        Load a stored method by public id, scoped to the client.

        Raises:
            NotFoundError: If the method is absent, removed or owned by another client
        """
        if not public_id:
            raise NotFoundError("No payment method selected")

        result = await db.execute(
            select(PaymentMethod)
            .join(Customer, PaymentMethod.customer_id == Customer.id)
            .where(
                PaymentMethod.public_id == public_id,
                PaymentMethod.deleted_at.is_(None),
                Customer.client_id == client_id,
            )
            .options(selectinload(PaymentMethod.customer))
        )
        payment_method = result.scalar_one_or_none()
        if payment_method is None:
            raise NotFoundError(f"Payment method {public_id} not found")
        return payment_method

    async def usable_payment_methods(
        self, db: AsyncSession, client_id: int, base_url: str
    ) -> List[TokenLink]:
        """Stored methods to offer at checkout; unverified bank accounts are left out."""
        customer = await self.find_customer(db, client_id)
        if customer is None:
            return []

        result = await db.execute(
            select(PaymentMethod)
            .where(
                PaymentMethod.customer_id == customer.id,
                PaymentMethod.deleted_at.is_(None),
            )
            .order_by(PaymentMethod.id)
        )

        links = []
        for payment_method in result.scalars():
            if (
                payment_method.payment_type == PaymentType.ACH
                and payment_method.status != PaymentMethodStatus.VERIFIED
            ):
                continue
            links.append(
                TokenLink(
                    public_id=payment_method.public_id,
                    label=payment_method_label(payment_method),
                    payment_type=payment_method.payment_type,
                    url=f"{base_url}/{GatewayType.TOKEN.value}",
                    is_default=payment_method.id == customer.default_payment_method_id,
                )
            )
        return links

    async def remove_payment_method(self, db: AsyncSession, payment_method: PaymentMethod) -> None:
        """Detach the method at the gateway, then soft-delete it locally."""
        if payment_method.source_reference:
            await self.adapter.remove_payment_method(payment_method.source_reference)

        payment_method.deleted_at = utcnow()
        customer = await db.get(Customer, payment_method.customer_id)
        if customer is not None and customer.default_payment_method_id == payment_method.id:
            customer.default_payment_method_id = None

        await db.commit()
        logger.info("payment_method_removed", payment_method_id=payment_method.id)

    async def verify_bank_account(
        self,
        db: AsyncSession,
        client_id: int,
        public_id: str,
        amount1: int,
        amount2: int,
    ) -> PaymentMethod:
        """
        Confirm a bank account with its two micro-deposit amounts (in cents).

        Raises:
            NotFoundError: If the bank account is not the client's
            UnsupportedGatewayError: If the gateway cannot verify bank accounts
            GatewayError: If the amounts do not match
        """
        payment_method = await self.load_payment_method(db, client_id, public_id)
        if payment_method.payment_type != PaymentType.ACH:
            raise NotFoundError(f"Bank account {public_id} not found")

        response = await self.adapter.verify_bank_account(
            payment_method.source_reference or "", amount1, amount2
        )
        if response.successful:
            payment_method.status = PaymentMethodStatus.VERIFIED.value
        else:
            payment_method.status = PaymentMethodStatus.VERIFICATION_FAILED.value
        await db.commit()

        logger.info(
            "bank_account_verification",
            payment_method_id=payment_method.id,
            status=payment_method.status,
        )
        if not response.successful:
            raise GatewayError(response.message or "Bank account verification failed")
        return payment_method
