"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file. Records are seeded through a
separate session so the code under test loads them the way a request would.
"""
from dataclasses import dataclass
from datetime import date
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payment_orchestrator.config import Settings
from payment_orchestrator.core import PaymentLedger, PurchaseOrchestrator, RefundOrchestrator
from payment_orchestrator.database.connection import build_session_factory
from payment_orchestrator.database.models import (
    Account,
    AccountGateway,
    Base,
    Client,
    Contact,
    Country,
    Customer,
    Invitation,
    Invoice,
    Payment,
    PaymentMethod,
)
from payment_orchestrator.integrations import FakeGateway, clear_gateway_cache


@dataclass
class CheckoutRecords:
    """Ids of a seeded account, client, invoice and invitation."""

    account_id: int
    account_gateway_id: int
    client_id: int
    contact_id: int
    invoice_id: int
    invitation_id: int
    invitation_key: str
    country_id: int


@pytest.fixture(autouse=True)
def fresh_gateway_cache() -> Any:
    """Clear cached gateway adapters around each test."""
    clear_gateway_cache()
    yield
    clear_gateway_cache()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="payment-orchestrator-test",
        app_env="test",
        app_url="http://test",
        database_url="sqlite+aiosqlite://",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a test database with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_checkout(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[CheckoutRecords]]:
    """Factory seeding an account gateway, a client and an invoice behind an invitation."""

    async def _make_checkout(
        amount_cents: int = 10000,
        balance_cents: Optional[int] = None,
        partial_cents: int = 0,
        provider: str = "fake",
        gateway_config: Optional[Dict[str, Any]] = None,
        token_billing_mode: str = "opt_in",
        show_address: bool = True,
        update_address: bool = True,
        account_id: Optional[int] = None,
        contact_first_name: Optional[str] = "Jane",
        contact_last_name: Optional[str] = "Doe",
        contact_email: Optional[str] = "jane@example.com",
    ) -> CheckoutRecords:
        async with session_factory() as session:
            result = await session.execute(select(Country).where(Country.iso_3166_2 == "US"))
            country = result.scalar_one_or_none()
            if country is None:
                country = Country(name="United States", iso_3166_2="US")
                session.add(country)

            if account_id is None:
                account = Account(name="Acme Inc")
                session.add(account)
                await session.flush()
                account_id = account.id
                account_gateway = AccountGateway(
                    account_id=account_id,
                    provider=provider,
                    config=gateway_config or {},
                    show_address=show_address,
                    update_address=update_address,
                    token_billing_mode=token_billing_mode,
                )
                session.add(account_gateway)
                await session.flush()
                account_gateway_id = account_gateway.id
            else:
                result = await session.execute(
                    select(AccountGateway).where(AccountGateway.account_id == account_id)
                )
                account_gateway_id = result.scalars().first().id

            client = Client(
                account_id=account_id,
                name="Globex Corporation",
                address1="1 Main St",
                city="Springfield",
                state="IL",
                postal_code="62701",
                country_id=country.id,
                currency_code="USD",
            )
            session.add(client)
            await session.flush()

            contact = Contact(
                account_id=account_id,
                client_id=client.id,
                first_name=contact_first_name,
                last_name=contact_last_name,
                email=contact_email,
                phone="555-0100",
            )
            invoice = Invoice(
                account_id=account_id,
                client_id=client.id,
                invoice_number=f"INV-{client.id:04d}",
                amount_cents=amount_cents,
                balance_cents=amount_cents if balance_cents is None else balance_cents,
                partial_cents=partial_cents,
                currency_code="USD",
            )
            session.add_all([contact, invoice])
            await session.flush()

            invitation = Invitation(
                account_id=account_id,
                invoice_id=invoice.id,
                contact_id=contact.id,
            )
            session.add(invitation)
            await session.commit()

            return CheckoutRecords(
                account_id=account_id,
                account_gateway_id=account_gateway_id,
                client_id=client.id,
                contact_id=contact.id,
                invoice_id=invoice.id,
                invitation_id=invitation.id,
                invitation_key=invitation.invitation_key,
                country_id=country.id,
            )

    return _make_checkout


@pytest_asyncio.fixture
async def checkout(make_checkout: Callable[..., Awaitable[CheckoutRecords]]) -> CheckoutRecords:
    return await make_checkout()


@pytest.fixture
def add_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Factory inserting a completed payment directly, bypassing the ledger."""

    async def _add_payment(
        records: CheckoutRecords,
        amount_cents: int = 10000,
        refunded_cents: int = 0,
        status: str = "completed",
        transaction_reference: Optional[str] = "txn_existing",
        payment_type: Optional[str] = "visa",
    ) -> int:
        async with session_factory() as session:
            payment = Payment(
                account_id=records.account_id,
                account_gateway_id=records.account_gateway_id,
                invoice_id=records.invoice_id,
                client_id=records.client_id,
                contact_id=records.contact_id,
                invitation_id=records.invitation_id,
                amount_cents=amount_cents,
                refunded_cents=refunded_cents,
                currency_code="USD",
                status=status,
                transaction_reference=transaction_reference,
                payment_type=payment_type,
                payment_date=date(2026, 1, 15),
            )
            session.add(payment)
            await session.commit()
            return payment.id

    return _add_payment


@pytest.fixture
def add_payment_method(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[str]]:
    """Factory storing a customer (if needed) and a payment method for a client."""

    async def _add_payment_method(
        records: CheckoutRecords,
        payment_type: str = "visa",
        status: str = "verified",
        bank_name: Optional[str] = None,
        email: Optional[str] = None,
        source_reference: str = "src_stored",
    ) -> str:
        async with session_factory() as session:
            result = await session.execute(
                select(Customer).where(
                    Customer.client_id == records.client_id,
                    Customer.account_gateway_id == records.account_gateway_id,
                )
            )
            customer = result.scalar_one_or_none()
            if customer is None:
                customer = Customer(
                    account_id=records.account_id,
                    account_gateway_id=records.account_gateway_id,
                    client_id=records.client_id,
                    contact_id=records.contact_id,
                    token="cus_stored",
                )
                session.add(customer)
                await session.flush()

            payment_method = PaymentMethod(
                account_id=records.account_id,
                customer_id=customer.id,
                contact_id=records.contact_id,
                payment_type=payment_type,
                source_reference=source_reference,
                last4="1111",
                expiration=date(2030, 12, 1),
                bank_name=bank_name,
                email=email,
                status=status,
            )
            session.add(payment_method)
            await session.flush()
            if customer.default_payment_method_id is None:
                customer.default_payment_method_id = payment_method.id
            await session.commit()
            return payment_method.public_id

    return _add_payment_method


@pytest.fixture
def count_payments(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Count payments from a fresh session, unaffected by the test session's state."""

    async def _count_payments(**filters: Any) -> int:
        async with session_factory() as session:
            query = select(func.count()).select_from(Payment)
            for name, value in filters.items():
                query = query.where(getattr(Payment, name) == value)
            return (await session.execute(query)).scalar_one()

    return _count_payments


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger() -> PaymentLedger:
    return PaymentLedger()


@pytest.fixture
def orchestrator(
    fake_gateway: FakeGateway, ledger: PaymentLedger, test_settings: Settings
) -> PurchaseOrchestrator:
    """Purchase orchestrator whose every account gateway resolves to ``fake_gateway``."""
    return PurchaseOrchestrator(
        ledger=ledger,
        gateway_factory=lambda account_gateway: fake_gateway,
        settings=test_settings,
    )


@pytest.fixture
def refunds(fake_gateway: FakeGateway, ledger: PaymentLedger) -> RefundOrchestrator:
    return RefundOrchestrator(ledger=ledger, gateway_factory=lambda account_gateway: fake_gateway)


@pytest.fixture
def card_input(checkout: CheckoutRecords) -> Dict[str, Any]:
    """A complete credit card checkout submission."""
    return {
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane@example.com",
        "card_number": "4111111111111111",
        "expiration_month": "12",
        "expiration_year": "2030",
        "cvv": "123",
        "address1": "42 Elm St",
        "address2": "Suite 5",
        "city": "Portland",
        "state": "OR",
        "postal_code": "97201",
        "country_id": str(checkout.country_id),
    }
