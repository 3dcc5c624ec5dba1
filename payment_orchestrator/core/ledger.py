"""
Local payment ledger.

The only writer of Payment rows. A payment is stored with the payment
method attributes copied onto it, since stored methods can be removed or
re-tokenized after the charge, and is applied to the invoice balance in the
same commit.

Post-commit hooks (``on_payment_created``) are where business policy such
as plan upgrades subscribes; they run after the payment is durable and
cannot roll it back.
"""
import inspect
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.core.dedup import ensure_unique, is_reference_violation
from payment_orchestrator.database.models import (
    Invitation,
    Invoice,
    Payment,
    PaymentEvent,
    PaymentMethod,
)
from payment_orchestrator.exceptions import DuplicateTransactionError
from payment_orchestrator.monitoring.metrics import metrics
from payment_orchestrator.types import PaymentStatus

logger = structlog.get_logger(__name__)

PaymentHook = Callable[[Payment], Union[None, Awaitable[None]]]


def _correlation_id() -> str:
    """Request id bound by the API middleware, or a fresh one outside a request."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return str(request_id or uuid.uuid4())


class PaymentLedger:
    """Persists payments and records refunds and voids against them."""

    def __init__(self, hooks: Optional[List[PaymentHook]] = None) -> None:
        self.hooks: List[PaymentHook] = list(hooks or [])

    def on_payment_created(self, hook: PaymentHook) -> PaymentHook:
        """Subscribe a post-commit hook. Usable as a decorator."""
        self.hooks.append(hook)
        return hook

    async def _shift_balance(
        self,
        db: AsyncSession,
        invoice: Invoice,
        delta_cents: int,
        settle_partial: bool = False,
    ) -> None:
        """
        Move the invoice balance by ``delta_cents`` in a single UPDATE.

        The arithmetic runs in the database so concurrent payments on one
        invoice each apply their own change. With ``settle_partial`` the
        requested deposit is reduced by the same amount, down to zero.
        """
        values: Dict[str, Any] = {"balance_cents": Invoice.balance_cents + delta_cents}
        if settle_partial:
            values["partial_cents"] = case(
                (Invoice.partial_cents > -delta_cents, Invoice.partial_cents + delta_cents),
                else_=0,
            )
        await db.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(invoice, attribute_names=list(values))

    def _record_event(
        self,
        db: AsyncSession,
        payment: Payment,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        db.add(
            PaymentEvent(
                payment_id=payment.id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=_correlation_id(),
            )
        )

    async def persist(
        self,
        db: AsyncSession,
        invitation: Invitation,
        account_gateway_id: Optional[int],
        transaction_reference: Optional[str],
        payment_method: Optional[PaymentMethod] = None,
        ip: Optional[str] = None,
    ) -> Payment:
        """
        Create the Payment for an invitation's invoice and commit it.

        Pending changes already in the session (such as the checkout context
        being marked completed) are committed with it.

        Raises:
            DuplicateTransactionError: If the reference is already on a payment
                of the account, detected either by the pre-insert check or by
                the unique constraint
        """
        invoice: Invoice = invitation.invoice
        account_id = invitation.account_id
        amount_cents = invoice.requested_amount_cents

        await ensure_unique(db, account_id, transaction_reference)

        payment = Payment(
            account_id=account_id,
            account_gateway_id=account_gateway_id,
            invoice_id=invoice.id,
            client_id=invoice.client_id,
            contact_id=invitation.contact_id,
            invitation_id=invitation.id,
            amount_cents=amount_cents,
            currency_code=invoice.currency_code or invoice.client.currency_code,
            status=PaymentStatus.COMPLETED.value,
            transaction_reference=transaction_reference,
            ip=ip,
        )
        if payment_method is not None:
            payment.payment_method_id = payment_method.id
            payment.payment_type = payment_method.payment_type
            payment.last4 = payment_method.last4
            payment.expiration = payment_method.expiration
            payment.routing_number = payment_method.routing_number
            payment.email = payment_method.email
            payment.bank_name = payment_method.bank_name

        try:
            await self._shift_balance(
                db, invoice, -amount_cents, settle_partial=bool(invoice.partial_cents)
            )
            db.add(payment)
            await db.flush()
            self._record_event(
                db,
                payment,
                "payment.created",
                {
                    "amount_cents": amount_cents,
                    "transaction_reference": transaction_reference,
                    "invoice_id": invoice.id,
                    "payment_method_id": payment.payment_method_id,
                },
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if not is_reference_violation(e):
                raise
            metrics.record_duplicate_transaction("constraint")
            logger.warning(
                "duplicate_transaction_rejected",
                account_id=account_id,
                transaction_reference=transaction_reference,
                source="constraint",
            )
            raise DuplicateTransactionError(account_id, transaction_reference or "") from e

        metrics.record_payment_created(payment.currency_code, amount_cents)
        logger.info(
            "payment_created",
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            amount_cents=amount_cents,
            transaction_reference=transaction_reference,
        )

        await self._run_hooks(payment)
        return payment

    async def _run_hooks(self, payment: Payment) -> None:
        for hook in self.hooks:
            try:
                result = hook(payment)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "payment_hook_failed",
                    payment_id=payment.id,
                    hook=getattr(hook, "__name__", repr(hook)),
                    error=str(e),
                )

    async def _load_invoice(self, db: AsyncSession, payment: Payment) -> Invoice:
        invoice = await db.get(Invoice, payment.invoice_id)
        if invoice is None:
            raise LookupError(f"Invoice {payment.invoice_id} of payment {payment.id} is missing")
        return invoice

    async def record_refund(self, db: AsyncSession, payment: Payment, amount_cents: int) -> bool:
        """Add a refund to the payment's tracker and restore the invoice balance."""
        invoice = await self._load_invoice(db, payment)

        payment.refunded_cents += amount_cents
        if payment.refunded_cents >= payment.amount_cents:
            payment.status = PaymentStatus.REFUNDED.value
        else:
            payment.status = PaymentStatus.PARTIALLY_REFUNDED.value
        await self._shift_balance(db, invoice, amount_cents)

        self._record_event(
            db,
            payment,
            "payment.refunded",
            {"amount_cents": amount_cents, "refunded_cents": payment.refunded_cents},
        )
        await db.commit()

        logger.info(
            "payment_refunded",
            payment_id=payment.id,
            amount_cents=amount_cents,
            refunded_cents=payment.refunded_cents,
            status=payment.status,
        )
        return True

    async def mark_voided(self, db: AsyncSession, payment: Payment) -> bool:
        """Void the payment; whatever it still held goes back on the invoice."""
        invoice = await self._load_invoice(db, payment)
        restored_cents = payment.completed_amount_cents

        payment.status = PaymentStatus.VOIDED.value
        await self._shift_balance(db, invoice, restored_cents)

        self._record_event(db, payment, "payment.voided", {"restored_cents": restored_cents})
        await db.commit()

        logger.info("payment_voided", payment_id=payment.id, restored_cents=restored_cents)
        return True
