"""Exception hierarchy for payment orchestration."""
from typing import Iterable, Optional

GENERIC_PAYMENT_ERROR = "There was an error processing your payment. Please try again."


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when required checkout fields are missing."""

    def __init__(self, missing_fields: Iterable[str]):
        self.missing_fields = sorted(missing_fields)
        super().__init__(f"Missing required fields: {', '.join(self.missing_fields)}")


class NotFoundError(PaymentError):
    """Raised when a referenced payment method, customer or payment is absent."""

    pass


class GatewayError(PaymentError):
    """Raised when the gateway declines or returns an unusable response."""

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message or GENERIC_PAYMENT_ERROR)
        self.code = code


class DuplicateTransactionError(PaymentError):
    """Raised when a transaction reference was already applied to a payment."""

    code = "DT"

    def __init__(self, account_id: int, transaction_reference: str):
        self.account_id = account_id
        self.transaction_reference = transaction_reference
        super().__init__(
            f"Transaction reference {transaction_reference} was already processed (code {self.code})"
        )


class AlreadyPaidError(PaymentError):
    """Raised when an offsite completion arrives for an invoice with no balance."""

    code = "NB"

    def __init__(self, invoice_id: int):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} has no outstanding balance (code {self.code})")


class UnsupportedGatewayError(PaymentError):
    """Raised when a gateway has no handler for the requested capability."""

    pass
