"""SQLAlchemy database models for the payment orchestration engine."""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from payment_orchestrator.types import (
    ContextStatus,
    GatewayType,
    PaymentMethodStatus,
    PaymentStatus,
    PaymentType,
    TokenBillingMode,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_public_id() -> str:
    return uuid4().hex[:16]


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Account(Base):
    """Merchant account that owns gateways, clients and payments."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_key: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, default=new_public_id
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, name={self.name})>"


class AccountGateway(Base):
    """
    Gateway configuration for a merchant account.

    Carries the provider name, its credentials and the checkout feature
    flags. Treated as immutable for the duration of a transaction.
    """

    __tablename__ = "account_gateways"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_offsite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    show_address: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    update_address: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    token_billing_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TokenBillingMode.OPT_IN.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    account: Mapped[Account] = relationship()

    def __repr__(self) -> str:
        return f"<AccountGateway(id={self.id}, provider={self.provider})>"


class Country(Base):
    __tablename__ = "countries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    iso_3166_2: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)


class Client(Base):
    """
    Customer of the merchant.

    Holds the single address set on file; there is no separate shipping
    address.
    """

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    country_id: Mapped[Optional[int]] = mapped_column(ForeignKey("countries.id"), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    account: Mapped[Account] = relationship()
    country: Mapped[Optional[Country]] = relationship()
    contacts: Mapped[List["Contact"]] = relationship(
        back_populates="client", order_by="Contact.id"
    )

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.contacts:
            return self.contacts[0].full_name
        return ""


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    client: Mapped[Client] = relationship(back_populates="contacts")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    partial_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency_code: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    is_quote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    client: Mapped[Client] = relationship()

    @property
    def requested_amount_cents(self) -> int:
        """Amount the client is asked to pay now: the partial deposit if set, else the balance."""
        return self.partial_cents if self.partial_cents > 0 else self.balance_cents

    @property
    def entity_type(self) -> str:
        return "quote" if self.is_quote else "invoice"


class Invitation(Base):
    """Link through which a contact views and pays an invoice."""

    __tablename__ = "invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    contact_id: Mapped[int] = mapped_column(ForeignKey("contacts.id"), nullable=False)
    invitation_key: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, default=new_public_id
    )

    invoice: Mapped[Invoice] = relationship()
    contact: Mapped[Contact] = relationship()


class TransactionContext(Base):
    """
    Checkout state that survives the redirect round trip.

    One row per invitation. The payment_ref is generated once per checkout
    and the pending transaction reference is stored here when the gateway
    asks for a redirect.
    """

    __tablename__ = "transaction_contexts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invitation_id: Mapped[int] = mapped_column(
        ForeignKey("invitations.id"), nullable=False, unique=True
    )
    account_gateway_id: Mapped[int] = mapped_column(
        ForeignKey("account_gateways.id"), nullable=False
    )
    gateway_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContextStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionContext(invitation_id={self.invitation_id}, "
            f"payment_ref={self.payment_ref}, status={self.status})>"
        )


class Customer(Base):
    """
    Gateway-side customer record for a client.

    At most one per (client, gateway) pair. default_payment_method_id is a
    plain column to avoid a foreign key cycle with payment_methods.
    """

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    account_gateway_id: Mapped[int] = mapped_column(
        ForeignKey("account_gateways.id"), nullable=False
    )
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"), nullable=True)
    token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("client_id", "account_gateway_id", name="uq_customers_client_gateway"),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, client_id={self.client_id}, token={self.token})>"


class PaymentMethod(Base):
    """Tokenized card or bank account owned by a Customer."""

    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, default=new_public_id
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"), nullable=True)
    payment_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentType.CREDIT_CARD_OTHER.value
    )
    source_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    expiration: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    routing_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentMethodStatus.NEW.value
    )
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    customer: Mapped[Customer] = relationship()

    @property
    def gateway_type(self) -> GatewayType:
        if self.payment_type == PaymentType.ACH:
            return GatewayType.BANK_TRANSFER
        if self.payment_type == PaymentType.PAYPAL:
            return GatewayType.PAYPAL
        return GatewayType.CREDIT_CARD


class Payment(Base):
    """
    Durable record of a completed charge.

    (account_id, transaction_reference) is unique: a gateway reference can
    be applied to a single payment per account. Rows are never deleted;
    refunds and voids are recorded as state.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, default=new_public_id
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    account_gateway_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("account_gateways.id"), nullable=True
    )
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"), nullable=True)
    invitation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invitations.id"), nullable=True
    )
    payment_method_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_methods.id"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentStatus.COMPLETED.value, index=True
    )
    transaction_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Snapshot of the payment method at charge time
    payment_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    expiration: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    routing_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id", "transaction_reference", name="uq_payments_account_reference"
        ),
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint("refunded_cents >= 0", name="non_negative_refund"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'partially_refunded', 'refunded', 'voided')",
            name="valid_status",
        ),
        Index("idx_payments_invoice_status", "invoice_id", "status"),
    )

    @property
    def completed_amount_cents(self) -> int:
        """Amount still held by the merchant: neither refunded nor voided."""
        if self.status in (PaymentStatus.VOIDED, PaymentStatus.PENDING):
            return 0
        return self.amount_cents - self.refunded_cents

    @property
    def is_credit(self) -> bool:
        return self.payment_type == PaymentType.CREDIT

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, amount={self.amount_cents}, "
            f"reference={self.transaction_reference}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every state change of a payment. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
