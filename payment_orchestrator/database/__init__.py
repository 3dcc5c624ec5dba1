"""Database package for the payment orchestrator."""
from .connection import get_db, init_db
from .models import (
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
    PaymentEvent,
    PaymentMethod,
    TransactionContext,
)

__all__ = [
    "Account",
    "AccountGateway",
    "Base",
    "Client",
    "Contact",
    "Country",
    "Customer",
    "Invitation",
    "Invoice",
    "Payment",
    "PaymentEvent",
    "PaymentMethod",
    "TransactionContext",
    "get_db",
    "init_db",
]
