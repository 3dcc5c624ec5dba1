"""
Checkout state that has to survive the redirect round trip.

The TransactionContext row keyed by invitation carries the idempotency
marker (``payment_ref``) and the pending gateway reference between the
request that starts a purchase and the request that completes it, which
may be served by a different process.
"""
from typing import Optional
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payment_orchestrator.database.models import (
    AccountGateway,
    Client,
    Invitation,
    Invoice,
    TransactionContext,
)
from payment_orchestrator.exceptions import NotFoundError
from payment_orchestrator.types import ContextStatus, GatewayType

logger = structlog.get_logger(__name__)


def new_payment_ref(invoice_id: int) -> str:
    return f"{invoice_id}_{uuid4().hex[:16]}"


async def load_invitation(db: AsyncSession, invitation_key: str) -> Invitation:
    """
    Load an invitation with everything the orchestrators read from it.

    Raises:
        NotFoundError: If no invitation has this key
    """
    result = await db.execute(
        select(Invitation)
        .where(Invitation.invitation_key == invitation_key)
        .options(
            selectinload(Invitation.contact),
            selectinload(Invitation.invoice)
            .selectinload(Invoice.client)
            .options(selectinload(Client.contacts), selectinload(Client.country)),
        )
    )
    invitation = result.scalar_one_or_none()
    if invitation is None:
        raise NotFoundError(f"Invitation {invitation_key} not found")
    return invitation


async def load_account_gateway(
    db: AsyncSession, account_gateway_id: Optional[int]
) -> AccountGateway:
    account_gateway = None
    if account_gateway_id is not None:
        account_gateway = await db.get(AccountGateway, account_gateway_id)
    if account_gateway is None:
        raise NotFoundError(f"Account gateway {account_gateway_id} not found")
    return account_gateway


async def find_account_gateway(
    db: AsyncSession, account_id: int, provider: Optional[str] = None
) -> AccountGateway:
    """
    The gateway an account checks out with, optionally narrowed by provider.

    Raises:
        NotFoundError: If the account has no matching gateway
    """
    query = select(AccountGateway).where(AccountGateway.account_id == account_id)
    if provider:
        query = query.where(AccountGateway.provider == provider)
    result = await db.execute(query.order_by(AccountGateway.id).limit(1))
    account_gateway = result.scalar_one_or_none()
    if account_gateway is None:
        raise NotFoundError(f"Account {account_id} has no payment gateway configured")
    return account_gateway


async def load_context(db: AsyncSession, invitation_id: int) -> Optional[TransactionContext]:
    result = await db.execute(
        select(TransactionContext).where(TransactionContext.invitation_id == invitation_id)
    )
    return result.scalar_one_or_none()


async def start_context(
    db: AsyncSession,
    invitation: Invitation,
    account_gateway_id: int,
    gateway_type: GatewayType,
) -> TransactionContext:
    """
    Load the checkout's context or create it with a fresh payment_ref.

    A new context is committed right away so the payment_ref stays stable
    even if the purchase attempt that created it fails. A context whose
    checkout already completed or was cancelled starts over with a new
    payment_ref, so the next installment is a distinct charge.
    """
    gateway_type = GatewayType(gateway_type)
    context = await load_context(db, invitation.id)
    if context is not None:
        context.account_gateway_id = account_gateway_id
        context.gateway_type = gateway_type.value
        if context.status in (ContextStatus.COMPLETED, ContextStatus.CANCELLED):
            context.payment_ref = new_payment_ref(invitation.invoice_id)
            context.transaction_reference = None
            context.status = ContextStatus.ACTIVE.value
            await db.commit()
            logger.info(
                "checkout_context_restarted",
                invitation_id=invitation.id,
                payment_ref=context.payment_ref,
            )
        elif context.status != ContextStatus.PENDING:
            context.status = ContextStatus.ACTIVE.value
        return context

    context = TransactionContext(
        invitation_id=invitation.id,
        account_gateway_id=account_gateway_id,
        gateway_type=gateway_type.value,
        payment_ref=new_payment_ref(invitation.invoice_id),
        status=ContextStatus.ACTIVE.value,
    )
    db.add(context)
    try:
        await db.commit()
    except IntegrityError:
        # Another request opened the same checkout first
        await db.rollback()
        context = await load_context(db, invitation.id)
        if context is None:
            raise
        return context

    logger.info(
        "checkout_context_created",
        invitation_id=invitation.id,
        payment_ref=context.payment_ref,
        gateway_type=gateway_type.value,
    )
    return context


def mark_context(
    context: TransactionContext,
    status: ContextStatus,
    transaction_reference: Optional[str] = None,
) -> None:
    """Update the context in the session; the caller's commit persists it."""
    context.status = status.value
    if transaction_reference is not None:
        context.transaction_reference = transaction_reference
