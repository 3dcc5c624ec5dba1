"""
Tests for purchase initiation.
"""
from typing import Any, Dict

import pytest
from sqlalchemy import select

from payment_orchestrator.core import (
    PendingVerification,
    PurchaseOrchestrator,
    PurchaseRequest,
    RedirectInstruction,
    should_create_token,
)
from payment_orchestrator.database.models import (
    AccountGateway,
    Client,
    Contact,
    Invoice,
    Payment,
    TransactionContext,
)
from payment_orchestrator.exceptions import (
    GENERIC_PAYMENT_ERROR,
    AlreadyPaidError,
    DuplicateTransactionError,
    GatewayError,
    NotFoundError,
    PaymentValidationError,
    UnsupportedGatewayError,
)
from payment_orchestrator.integrations import FakeGateway, GatewayResponse
from payment_orchestrator.types import ContextStatus, GatewayType, PaymentType, TokenBillingMode


async def load_context_row(session_factory: Any, invitation_id: int) -> TransactionContext:
    async with session_factory() as session:
        result = await session.execute(
            select(TransactionContext).where(TransactionContext.invitation_id == invitation_id)
        )
        return result.scalar_one()


class TestShouldCreateToken:
    """Test suite for the tokenize-before-charge decision."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "mode,input,expected",
        [
            (TokenBillingMode.ALWAYS, {}, True),
            (TokenBillingMode.OPT_IN, {}, False),
            (TokenBillingMode.OPT_IN, {"token_billing": "1"}, True),
            (TokenBillingMode.OPT_IN, {"token_billing": True}, True),
            (TokenBillingMode.OPT_IN, {"token_billing": "false"}, False),
            (TokenBillingMode.DISABLED, {"token_billing": "0"}, False),
        ],
    )
    def test_card_checkouts(self, mode: TokenBillingMode, input: Dict[str, Any], expected: bool) -> None:
        """Test card tokenization follows the billing mode and the payer's choice."""
        account_gateway = AccountGateway(token_billing_mode=mode.value)

        assert (
            should_create_token(FakeGateway(), account_gateway, GatewayType.CREDIT_CARD, input)
            is expected
        )

    @pytest.mark.unit
    def test_bank_transfer_always_tokenized(self) -> None:
        """Test bank accounts are stored before any charge."""
        account_gateway = AccountGateway(token_billing_mode=TokenBillingMode.DISABLED.value)

        assert should_create_token(FakeGateway(), account_gateway, GatewayType.BANK_TRANSFER, {})

    @pytest.mark.unit
    def test_gateway_without_token_support(self) -> None:
        """Test nothing is stored when the gateway cannot charge stored methods."""
        adapter = FakeGateway({"gateway_types": ["credit_card"]})
        account_gateway = AccountGateway(token_billing_mode=TokenBillingMode.ALWAYS.value)

        assert not should_create_token(adapter, account_gateway, GatewayType.CREDIT_CARD, {})


class TestInitiatePurchase:
    """Test suite for starting a checkout."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_direct_charge_records_payment_once(
        self,
        db: Any,
        make_checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        session_factory: Any,
        count_payments: Any,
    ) -> None:
        """
        Test a successful charge is recorded, and replaying its reference is not.

        The invoice keeps an open balance after the deposit, so only the
        reference check stands between the replay and a second payment.
        """
        records = await make_checkout(amount_cents=10000, partial_cents=5000)
        fake_gateway.queue("purchase", GatewayResponse(successful=True, transaction_reference="txn_1"))

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD)
        )

        assert isinstance(payment, Payment)
        assert payment.transaction_reference == "txn_1"
        assert payment.amount_cents == 5000
        sent = fake_gateway.calls_to("purchase")[0]
        assert sent["amount"] == "50.00"
        assert sent["currency"] == "USD"
        assert sent["card"].billing_address1 == "1 Main St"

        async with session_factory() as session:
            with pytest.raises(DuplicateTransactionError):
                await orchestrator.complete_offsite_purchase(
                    session, records.invitation_key, {"reference": "txn_1"}
                )

        assert await count_payments(transaction_reference="txn_1") == 1
        context = await load_context_row(session_factory, records.invitation_id)
        assert context.status == ContextStatus.COMPLETED
        assert context.transaction_reference == "txn_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_payment_then_replay_is_already_paid(
        self,
        db: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        session_factory: Any,
        count_payments: Any,
    ) -> None:
        """Test a settled invoice rejects a replayed completion with the no-balance code."""
        fake_gateway.queue("purchase", GatewayResponse(successful=True, transaction_reference="txn_1"))

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
        )
        assert payment.amount_cents == 10000

        async with session_factory() as session:
            with pytest.raises(AlreadyPaidError) as exc_info:
                await orchestrator.complete_offsite_purchase(
                    session, checkout.invitation_key, {"reference": "txn_1"}
                )

        assert exc_info.value.code == "NB"
        assert await count_payments(invoice_id=checkout.invoice_id) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redirect_then_return_completes(
        self,
        db: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        session_factory: Any,
    ) -> None:
        """Test the pending reference survives the redirect and settles on return."""
        fake_gateway.queue(
            "purchase",
            GatewayResponse(
                successful=False,
                redirect_required=True,
                redirect_url="https://gateway.test/pay/pending_77",
                transaction_reference="pending_77",
            ),
        )

        outcome = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
        )

        assert isinstance(outcome, RedirectInstruction)
        assert outcome.url == "https://gateway.test/pay/pending_77"
        assert outcome.method == "GET"
        context = await load_context_row(session_factory, checkout.invitation_id)
        assert context.status == ContextStatus.PENDING
        assert context.transaction_reference == "pending_77"

        async with session_factory() as session:
            payment = await orchestrator.complete_offsite_purchase(session, checkout.invitation_key)

        assert payment.transaction_reference == "pending_77"
        completion = fake_gateway.calls_to("complete_purchase")[0]
        assert completion["transaction_reference"] == "pending_77"
        assert completion["idempotency_key"] == context.payment_ref
        context = await load_context_row(session_factory, checkout.invitation_id)
        assert context.status == ContextStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_ref_stable_across_attempts(
        self,
        session_factory: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test a retried checkout reuses the idempotency key of the first attempt."""
        fake_gateway.queue("purchase", GatewayResponse(successful=False, message="Try again"))
        request = PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)

        async with session_factory() as session:
            with pytest.raises(GatewayError, match="Try again"):
                await orchestrator.initiate_purchase(session, request)
        async with session_factory() as session:
            await orchestrator.initiate_purchase(session, request)

        first, second = fake_gateway.calls_to("purchase")
        assert first["idempotency_key"] == second["idempotency_key"]
        assert first["idempotency_key"].startswith(f"{checkout.invoice_id}_")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_each_installment_gets_new_payment_ref(
        self,
        session_factory: Any,
        make_checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        count_payments: Any,
    ) -> None:
        """Test a deposit and the remainder are charged under different idempotency keys."""
        records = await make_checkout(amount_cents=10000, partial_cents=5000)
        request = PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD)

        async with session_factory() as session:
            deposit = await orchestrator.initiate_purchase(session, request)
        async with session_factory() as session:
            remainder = await orchestrator.initiate_purchase(session, request)

        first, second = fake_gateway.calls_to("purchase")
        assert first["idempotency_key"] != second["idempotency_key"]
        assert second["idempotency_key"].startswith(f"{records.invoice_id}_")
        assert deposit.amount_cents == 5000
        assert remainder.amount_cents == 5000
        assert deposit.transaction_reference != remainder.transaction_reference
        assert await count_payments(invoice_id=records.invoice_id) == 2
        context = await load_context_row(session_factory, records.invitation_id)
        assert context.payment_ref == second["idempotency_key"]
        assert context.transaction_reference == remainder.transaction_reference

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redirect_without_reference_drops_earlier_one(
        self,
        session_factory: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        count_payments: Any,
    ) -> None:
        """Test a return after a reference-less redirect never settles the previous attempt."""
        fake_gateway.queue(
            "purchase",
            GatewayResponse(
                successful=False,
                redirect_required=True,
                redirect_url="https://gateway.test/pay/pending_1",
                transaction_reference="pending_1",
            ),
        )
        fake_gateway.queue(
            "purchase",
            GatewayResponse(
                successful=False,
                redirect_required=True,
                redirect_url="https://gateway.test/pay/again",
            ),
        )
        request = PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)

        async with session_factory() as session:
            await orchestrator.initiate_purchase(session, request)
        async with session_factory() as session:
            await orchestrator.initiate_purchase(session, request)

        context = await load_context_row(session_factory, checkout.invitation_id)
        assert context.status == ContextStatus.PENDING
        assert context.transaction_reference is None

        async with session_factory() as session:
            with pytest.raises(GatewayError, match="did not return a transaction reference"):
                await orchestrator.complete_offsite_purchase(session, checkout.invitation_key)

        assert await count_payments(invoice_id=checkout.invoice_id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stored_method_of_another_client_not_found(
        self,
        db: Any,
        checkout: Any,
        make_checkout: Any,
        add_payment_method: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        count_payments: Any,
    ) -> None:
        """Test a token checkout cannot charge a method owned by a different client."""
        other_client = await make_checkout(account_id=checkout.account_id)
        foreign_method = await add_payment_method(other_client)

        with pytest.raises(NotFoundError):
            await orchestrator.initiate_purchase(
                db,
                PurchaseRequest(
                    checkout.invitation_key, GatewayType.TOKEN, source_id=foreign_method
                ),
            )

        assert fake_gateway.calls_to("purchase") == []
        assert await count_payments() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stored_method_charged_and_snapshotted(
        self,
        db: Any,
        checkout: Any,
        add_payment_method: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test a token checkout sends the stored source and snapshots it on the payment."""
        public_id = await add_payment_method(checkout, payment_type="discover")

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.TOKEN, source_id=public_id)
        )

        sent = fake_gateway.calls_to("purchase")[0]
        assert sent["token"] == "src_stored"
        assert "card" not in sent
        assert payment.payment_type == PaymentType.DISCOVER
        assert payment.last4 == "1111"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_two_step_type_waits_for_verification(
        self,
        db: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        session_factory: Any,
        count_payments: Any,
    ) -> None:
        """Test a bank transfer is tokenized and left pending without a charge."""
        fake_gateway.two_step_types = frozenset({GatewayType.BANK_TRANSFER})

        outcome = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.BANK_TRANSFER)
        )

        assert isinstance(outcome, PendingVerification)
        assert outcome.payment_method.payment_type == PaymentType.ACH
        assert outcome.payment_method.status == "new"
        assert fake_gateway.calls_to("create_customer")
        assert fake_gateway.calls_to("purchase") == []
        assert await count_payments() == 0
        context = await load_context_row(session_factory, checkout.invitation_id)
        assert context.status == ContextStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_charge_raises_gateway_message(
        self,
        db: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        count_payments: Any,
        session_factory: Any,
    ) -> None:
        """Test a decline surfaces the gateway's message and records nothing."""
        fake_gateway.configure(should_succeed=False, failure_reason="Insufficient funds")

        with pytest.raises(GatewayError, match="Insufficient funds"):
            await orchestrator.initiate_purchase(
                db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
            )

        assert await count_payments() == 0
        async with session_factory() as session:
            assert (await session.get(Invoice, checkout.invoice_id)).balance_cents == 10000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_without_message_uses_generic_text(
        self, db: Any, checkout: Any, orchestrator: PurchaseOrchestrator, fake_gateway: FakeGateway
    ) -> None:
        """Test a decline with no gateway message falls back to the generic one."""
        fake_gateway.queue("purchase", GatewayResponse(successful=False))

        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.initiate_purchase(
                db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
            )

        assert str(exc_info.value) == GENERIC_PAYMENT_ERROR

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_without_reference_not_recorded(
        self,
        db: Any,
        checkout: Any,
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
        count_payments: Any,
    ) -> None:
        """Test a success response that carries no reference is treated as a failure."""
        fake_gateway.queue("purchase", GatewayResponse(successful=True))

        with pytest.raises(GatewayError):
            await orchestrator.initiate_purchase(
                db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
            )

        assert await count_payments() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reference_from_configured_field(
        self, db: Any, checkout: Any, orchestrator: PurchaseOrchestrator, fake_gateway: FakeGateway
    ) -> None:
        """Test the adapter's reference field overrides the generic reference."""
        fake_gateway.reference_field_name = "charge_id"
        fake_gateway.queue(
            "purchase",
            GatewayResponse(
                successful=True, transaction_reference="order_1", data={"charge_id": "ch_42"}
            ),
        )

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD)
        )

        assert payment.transaction_reference == "ch_42"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_fields_rejected_before_gateway(
        self, db: Any, checkout: Any, orchestrator: PurchaseOrchestrator, fake_gateway: FakeGateway
    ) -> None:
        """Test incomplete card input is rejected without calling the gateway."""
        with pytest.raises(PaymentValidationError) as exc_info:
            await orchestrator.initiate_purchase(
                db,
                PurchaseRequest(
                    checkout.invitation_key,
                    GatewayType.CREDIT_CARD,
                    input={"first_name": "Jane", "card_number": "4111111111111111"},
                ),
            )

        assert "last_name" in exc_info.value.missing_fields
        assert "cvv" in exc_info.value.missing_fields
        assert fake_gateway.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_input_sent_to_gateway(
        self,
        db: Any,
        checkout: Any,
        card_input: Dict[str, Any],
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test submitted card details are normalized into the purchase data."""
        await orchestrator.initiate_purchase(
            db,
            PurchaseRequest(
                checkout.invitation_key, GatewayType.CREDIT_CARD, input=card_input, ip="10.1.1.1"
            ),
        )

        sent = fake_gateway.calls_to("purchase")[0]
        assert sent["card"].number == "4111111111111111"
        assert sent["card"].billing_city == "Portland"
        assert sent["card"].billing_country == "US"
        assert sent["ip"] == "10.1.1.1"
        assert fake_gateway.calls_to("create_token") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_always_token_billing_stores_card(
        self,
        db: Any,
        make_checkout: Any,
        card_input: Dict[str, Any],
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test the card is stored first and the stored source is charged."""
        records = await make_checkout(token_billing_mode=TokenBillingMode.ALWAYS.value)

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD, input=card_input)
        )

        token_call = fake_gateway.calls_to("create_token")[0]
        assert token_call["card"].number == "4111111111111111"
        assert fake_gateway.calls_to("purchase")[0]["token"].startswith("fake_src_")
        assert payment.payment_method_id is not None
        assert payment.last4 == "1111"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opt_in_token_billing(
        self,
        db: Any,
        checkout: Any,
        card_input: Dict[str, Any],
        orchestrator: PurchaseOrchestrator,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test an opt-in gateway stores the card only when the payer asks."""
        card_input["token_billing"] = "1"

        payment = await orchestrator.initiate_purchase(
            db, PurchaseRequest(checkout.invitation_key, GatewayType.CREDIT_CARD, input=card_input)
        )

        assert len(fake_gateway.calls_to("create_token")) == 1
        assert payment.payment_method_id is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_owed(
        self, db: Any, make_checkout: Any, orchestrator: PurchaseOrchestrator, fake_gateway: FakeGateway
    ) -> None:
        """Test a checkout on a settled invoice is refused up front."""
        records = await make_checkout(balance_cents=0)

        with pytest.raises(AlreadyPaidError):
            await orchestrator.initiate_purchase(
                db, PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD)
            )

        assert fake_gateway.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_gateway_type(
        self, db: Any, checkout: Any, orchestrator: PurchaseOrchestrator
    ) -> None:
        """Test a gateway type the adapter cannot take is refused."""
        with pytest.raises(UnsupportedGatewayError, match="paypal"):
            await orchestrator.initiate_purchase(
                db, PurchaseRequest(checkout.invitation_key, GatewayType.PAYPAL)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_invitation(self, db: Any, orchestrator: PurchaseOrchestrator) -> None:
        """Test an unknown invitation key is not found."""
        with pytest.raises(NotFoundError):
            await orchestrator.initiate_purchase(
                db, PurchaseRequest("missing", GatewayType.CREDIT_CARD)
            )


class TestUpdateClient:
    """Test suite for filling the client profile from a card checkout."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fills_contact_and_overwrites_address(
        self,
        db: Any,
        make_checkout: Any,
        card_input: Dict[str, Any],
        orchestrator: PurchaseOrchestrator,
        session_factory: Any,
    ) -> None:
        """Test a blank contact is named and the address replaced."""
        records = await make_checkout(
            contact_first_name=None, contact_last_name=None, contact_email=None
        )

        await orchestrator.initiate_purchase(
            db, PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD, input=card_input)
        )

        async with session_factory() as session:
            contact = await session.get(Contact, records.contact_id)
            client = await session.get(Client, records.client_id)
        assert contact.first_name == "Jane"
        assert contact.email == "jane@example.com"
        assert client.address1 == "42 Elm St"
        assert client.city == "Portland"
        assert client.country_id == records.country_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_contact_and_locked_address_kept(
        self,
        db: Any,
        make_checkout: Any,
        card_input: Dict[str, Any],
        orchestrator: PurchaseOrchestrator,
        session_factory: Any,
    ) -> None:
        """Test a named contact is kept and the address is untouched when updates are off."""
        records = await make_checkout(
            contact_first_name="Existing", contact_last_name="Name", update_address=False
        )

        await orchestrator.initiate_purchase(
            db, PurchaseRequest(records.invitation_key, GatewayType.CREDIT_CARD, input=card_input)
        )

        async with session_factory() as session:
            contact = await session.get(Contact, records.contact_id)
            client = await session.get(Client, records.client_id)
        assert contact.first_name == "Existing"
        assert client.address1 == "1 Main St"
