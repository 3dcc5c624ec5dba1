"""Shared enumerations for gateway types, payment types and record states."""
from enum import Enum


class GatewayType(str, Enum):
    """Payment method category selected for a single checkout."""

    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    TOKEN = "token"


class PaymentType(str, Enum):
    """Classification snapshotted onto payments and payment methods."""

    CREDIT = "credit"
    ACH = "ach"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMERICAN_EXPRESS = "american_express"
    DISCOVER = "discover"
    JCB = "jcb"
    DINERS = "diners"
    CARTE_BLANCHE = "carte_blanche"
    UNIONPAY = "unionpay"
    LASER = "laser"
    MAESTRO = "maestro"
    SOLO = "solo"
    SWITCH = "switch"
    CREDIT_CARD_OTHER = "credit_card_other"


class TokenBillingMode(str, Enum):
    DISABLED = "disabled"
    OPT_IN = "opt_in"
    OPT_OUT = "opt_out"
    ALWAYS = "always"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"


class PaymentMethodStatus(str, Enum):
    NEW = "new"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"


class ContextStatus(str, Enum):
    """Lifecycle of a checkout's TransactionContext."""

    ACTIVE = "active"
    PENDING = "pending"  # waiting for redirect return or out-of-band verification
    COMPLETED = "completed"
    CANCELLED = "cancelled"
