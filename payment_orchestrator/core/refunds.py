"""
Refunds and voids of recorded payments.

A refund that the gateway declines is not an error: ``refund`` returns
False. Only transport failures (GatewayError) and storage errors raise.
"""
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.core.card_details import format_amount
from payment_orchestrator.core.checkout_session import load_account_gateway
from payment_orchestrator.core.ledger import PaymentLedger
from payment_orchestrator.database.models import AccountGateway, Payment
from payment_orchestrator.integrations.gateway import GatewayAdapter, call_gateway
from payment_orchestrator.integrations.registry import build_gateway
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RefundOrchestrator:
    """Reverses payments, falling back to a void when the gateway refuses a full refund."""

    def __init__(
        self,
        ledger: Optional[PaymentLedger] = None,
        gateway_factory: Callable[[AccountGateway], GatewayAdapter] = build_gateway,
    ) -> None:
        self.ledger = ledger or PaymentLedger()
        self.gateway_factory = gateway_factory

    async def refund(self, db: AsyncSession, payment: Payment, amount_cents: int = 0) -> bool:
        """
        Refund ``amount_cents`` of a payment, or all of what it still holds.

        The amount is clamped to the payment's completed amount. A void is
        only attempted when the refund covers the original payment amount,
        since a partial refund cannot be voided.
        """
        completed_cents = payment.completed_amount_cents
        if amount_cents:
            amount_cents = min(amount_cents, completed_cents)
        else:
            amount_cents = completed_cents

        log = logger.bind(payment_id=payment.id, amount_cents=amount_cents)

        if amount_cents <= 0:
            metrics.record_refund("noop")
            log.info("refund_skipped_nothing_to_refund")
            return False

        if payment.is_credit:
            metrics.record_refund("local")
            log.info("refunding_credit_locally")
            return await self.ledger.record_refund(db, payment, amount_cents)

        account_gateway = await load_account_gateway(db, payment.account_gateway_id)
        adapter = self.gateway_factory(account_gateway)

        response = await call_gateway(adapter, "refund", self._refund_details(payment, amount_cents))
        if response.successful:
            metrics.record_refund("refunded")
            return await self.ledger.record_refund(db, payment, amount_cents)

        log.warning("refund_declined", message=response.message)

        # Compared against the original amount, not what is left after earlier refunds
        if amount_cents == payment.amount_cents:
            response = await call_gateway(
                adapter, "void", {"transaction_reference": payment.transaction_reference}
            )
            if response.successful:
                metrics.record_refund("voided")
                return await self.ledger.mark_voided(db, payment)
            log.warning("void_declined", message=response.message)

        metrics.record_refund("declined")
        return False

    @staticmethod
    def _refund_details(payment: Payment, amount_cents: int) -> Dict[str, Any]:
        return {
            "transaction_reference": payment.transaction_reference,
            "amount": format_amount(amount_cents),
            "amount_cents": amount_cents,
            "currency": payment.currency_code,
        }
