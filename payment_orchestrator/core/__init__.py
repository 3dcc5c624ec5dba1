"""Core payment orchestration logic."""
from .customer_tokens import CustomerTokenManager, TokenLink
from .ledger import PaymentLedger
from .purchase import (
    PendingVerification,
    PurchaseCancelled,
    PurchaseOrchestrator,
    PurchaseRequest,
    RedirectInstruction,
    should_create_token,
)
from .refunds import RefundOrchestrator

__all__ = [
    "CustomerTokenManager",
    "PaymentLedger",
    "PendingVerification",
    "PurchaseCancelled",
    "PurchaseOrchestrator",
    "PurchaseRequest",
    "RedirectInstruction",
    "RefundOrchestrator",
    "TokenLink",
    "should_create_token",
]
