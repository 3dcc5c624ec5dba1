"""
Configurable fake payment gateway for development and testing.

Simulates a provider without any external calls. Behaviour comes from the
account gateway config (so a fake gateway can be configured like a real one)
and can be scripted per call with ``queue``:

    gateway = FakeGateway({"redirect": True})
    gateway.queue("complete_purchase", GatewayResponse(successful=False, cancelled=True))
"""
import json
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from payment_orchestrator.exceptions import GatewayError
from payment_orchestrator.integrations.gateway import (
    GatewayAdapter,
    GatewayResponse,
    PaymentSource,
    WebhookEvent,
)
from payment_orchestrator.types import GatewayType, PaymentMethodStatus, PaymentType

SIGNATURE_HEADER = "x-fake-signature"


class FakeGateway(GatewayAdapter):
    """Configurable fake payment gateway."""

    provider = "fake"
    supports_completion = True
    supports_customers = True

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(config)
        self.should_succeed: bool = self.config.get("should_succeed", True)
        self.failure_reason: str = self.config.get("failure_reason", "Card declined")
        self.redirect: bool = self.config.get("redirect", False)
        self.webhook_secret: str = self.config.get("webhook_secret", "test-signature")
        self.gateway_types = tuple(
            GatewayType(t)
            for t in self.config.get(
                "gateway_types",
                [GatewayType.CREDIT_CARD, GatewayType.BANK_TRANSFER, GatewayType.TOKEN],
            )
        )
        self.two_step_types = frozenset(
            GatewayType(t) for t in self.config.get("two_step_types", [])
        )
        self.reference_field_name = self.config.get("reference_field_name")
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._scripted: Dict[str, Deque[Any]] = defaultdict(deque)

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def queue(self, operation: str, response: Any) -> None:
        """Script the next result of ``operation``; exceptions are raised instead of returned."""
        self._scripted[operation].append(response)

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.calls if name == operation]

    def _respond(self, operation: str, data: Dict[str, Any], default: GatewayResponse) -> GatewayResponse:
        self.calls.append((operation, data))
        if self._scripted[operation]:
            scripted = self._scripted[operation].popleft()
            if isinstance(scripted, Exception):
                raise scripted
            return scripted
        return default

    def _declined(self) -> GatewayResponse:
        return GatewayResponse(successful=False, message=self.failure_reason)

    async def purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        if self.redirect:
            reference = f"fake_pending_{uuid4().hex[:12]}"
            default = GatewayResponse(
                successful=False,
                redirect_required=True,
                redirect_url=f"https://fake-gateway.test/checkout/{reference}",
                transaction_reference=reference,
                data={"id": reference},
            )
        elif self.should_succeed:
            reference = f"fake_txn_{uuid4().hex[:12]}"
            default = GatewayResponse(
                successful=True,
                transaction_reference=reference,
                message="Charge successful",
                data={"id": reference, "status": "succeeded"},
            )
        else:
            default = self._declined()
        return self._respond("purchase", data, default)

    async def complete_purchase(self, data: Dict[str, Any]) -> GatewayResponse:
        if self.should_succeed:
            default = GatewayResponse(
                successful=True,
                transaction_reference=data.get("transaction_reference"),
            )
        else:
            default = self._declined()
        return self._respond("complete_purchase", data, default)

    async def refund(self, data: Dict[str, Any]) -> GatewayResponse:
        if self.should_succeed:
            default = GatewayResponse(
                successful=True, transaction_reference=f"fake_ref_{uuid4().hex[:12]}"
            )
        else:
            default = self._declined()
        return self._respond("refund", data, default)

    async def void(self, data: Dict[str, Any]) -> GatewayResponse:
        if self.should_succeed:
            default = GatewayResponse(
                successful=True, transaction_reference=data.get("transaction_reference")
            )
        else:
            default = self._declined()
        return self._respond("void", data, default)

    async def create_customer(self, data: Dict[str, Any]) -> GatewayResponse:
        default = GatewayResponse(
            successful=True, transaction_reference=f"fake_cus_{uuid4().hex[:12]}"
        )
        return self._respond("create_customer", data, default)

    async def create_token(self, data: Dict[str, Any]) -> GatewayResponse:
        card = data.get("card")
        is_bank = data.get("gateway_type") == GatewayType.BANK_TRANSFER
        source = PaymentSource(
            source_reference=f"fake_src_{uuid4().hex[:12]}",
            payment_type=PaymentType.ACH if is_bank else PaymentType.VISA,
            last4=(card.number[-4:] if card is not None and card.number else "4242"),
            bank_name="Fake Bank" if is_bank else None,
            status=PaymentMethodStatus.NEW if is_bank else PaymentMethodStatus.VERIFIED,
        )
        default = GatewayResponse(
            successful=True,
            transaction_reference=source.source_reference,
            source=source,
        )
        return self._respond("create_token", data, default)

    async def verify_bank_account(
        self, source_reference: str, amount1: int, amount2: int
    ) -> GatewayResponse:
        # Fake micro-deposits are always 32 and 45 cents
        default = GatewayResponse(successful=(amount1, amount2) == (32, 45))
        return self._respond(
            "verify_bank_account",
            {"source_reference": source_reference, "amounts": (amount1, amount2)},
            default,
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if signature != self.webhook_secret:
            raise GatewayError("Invalid webhook signature")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise GatewayError(f"Malformed webhook payload: {e}") from e

        return WebhookEvent(
            event_id=body.get("id") or uuid4().hex,
            event_type=body.get("type", "charge.succeeded"),
            succeeded=bool(body.get("succeeded", True)),
            transaction_reference=body.get("reference"),
            invitation_key=body.get("invitation_key"),
            data=body,
        )
