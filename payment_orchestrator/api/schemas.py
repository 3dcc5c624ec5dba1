"""
Pydantic schemas for API request/response models.
"""
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    input: Dict[str, Any] = Field(
        default_factory=dict, description="Submitted checkout fields (card, contact, address)"
    )
    source_id: Optional[str] = Field(
        default=None, description="Public id of a stored payment method (token checkouts)"
    )
    provider: Optional[str] = Field(
        default=None, description="Gateway provider, when the account has several"
    )

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: Optional[str]) -> Optional[str]:
        """Normalize provider name."""
        return v.strip().lower() if v else None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "input": {
                        "first_name": "Ada",
                        "last_name": "Lovelace",
                        "email": "ada@example.com",
                        "card_number": "4242424242424242",
                        "expiration_month": "12",
                        "expiration_year": "2030",
                        "cvv": "123",
                        "token_billing": True,
                    }
                },
                {"source_id": "3f2c9a1b7d0e4c55"},
            ]
        }
    }


class PaymentResponse(BaseModel):
    """A payment recorded in the ledger."""

    id: str = Field(..., description="Payment public id")
    invoice_id: int = Field(..., description="Invoice the payment was applied to")
    amount_cents: int = Field(..., description="Payment amount in cents")
    refunded_cents: int = Field(..., description="Amount refunded so far, in cents")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="Payment status")
    transaction_reference: Optional[str] = Field(
        default=None, description="Gateway transaction reference"
    )
    payment_type: Optional[str] = Field(default=None, description="Payment type at charge time")
    last4: Optional[str] = Field(default=None, description="Last four digits at charge time")
    payment_date: date = Field(..., description="Date the payment was recorded")


class CheckoutResponse(BaseModel):
    """
    Result of a checkout step.

    Exactly one of ``payment`` or ``redirect_url`` is set for ``paid`` and
    ``redirect``; ``pending`` carries the payment method awaiting verification.
    """

    status: str = Field(..., description="paid, redirect, pending or cancelled")
    payment: Optional[PaymentResponse] = None
    redirect_url: Optional[str] = None
    redirect_method: Optional[str] = None
    redirect_data: Dict[str, Any] = Field(default_factory=dict)
    payment_method_id: Optional[str] = None


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount_cents: int = Field(
        default=0, ge=0, description="Refund amount in cents (0 refunds everything left)"
    )

    model_config = {
        "json_schema_extra": {"examples": [{"amount_cents": 2000}, {"amount_cents": 0}]}
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    refunded: bool = Field(..., description="Whether money was returned (refund or void)")
    payment: PaymentResponse


class TokenLinkResponse(BaseModel):
    public_id: str
    label: str
    payment_type: str
    url: str
    is_default: bool = False


class TokenLinksResponse(BaseModel):
    payment_methods: List[TokenLinkResponse]


class BankVerificationRequest(BaseModel):
    """Micro-deposit amounts reported by the payer, in cents."""

    amount1: int = Field(..., gt=0, lt=100)
    amount2: int = Field(..., gt=0, lt=100)


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, ignored, already_processed or unsupported")
    payment_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")

