"""
Card and bank detail normalization.

Turns raw checkout input or the client's stored profile into the canonical
purchase data every gateway adapter receives. These functions do no I/O:
the caller resolves the country code beforehand, and an unresolvable
country degrades to an empty code.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from payment_orchestrator.database.models import Client, Contact, Invitation, Invoice, PaymentMethod
from payment_orchestrator.exceptions import PaymentValidationError
from payment_orchestrator.integrations.gateway import GatewayAdapter
from payment_orchestrator.types import GatewayType

# Some checkout forms post a single space when the CVV field is disabled
CVV_PLACEHOLDERS = ("", " ")

CARD_FIELDS = ("card_number", "expiration_month", "expiration_year", "cvv")
ADDRESS_FIELDS = ("address1", "city", "state", "postal_code", "country_id")


@dataclass
class CardDetails:
    """Identity, card and address fields in gateway-neutral form."""

    company: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    number: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    cvv: Optional[str] = None
    billing_address1: Optional[str] = None
    billing_address2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_postcode: Optional[str] = None
    billing_country: str = ""
    billing_phone: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_address2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_postcode: Optional[str] = None
    shipping_country: str = ""
    shipping_phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _address(
    address1: Optional[str],
    address2: Optional[str],
    city: Optional[str],
    state: Optional[str],
    postcode: Optional[str],
    country: str,
    phone: Optional[str] = None,
) -> Dict[str, Any]:
    """The system keeps one address per client, so billing and shipping are identical."""
    fields: Dict[str, Any] = {}
    for prefix in ("billing", "shipping"):
        fields.update(
            {
                f"{prefix}_address1": address1,
                f"{prefix}_address2": address2,
                f"{prefix}_city": city,
                f"{prefix}_state": state,
                f"{prefix}_postcode": postcode,
                f"{prefix}_country": country or "",
                f"{prefix}_phone": phone,
            }
        )
    return fields


def details_from_input(
    input: Mapping[str, Any], company: str = "", country_code: Optional[str] = None
) -> CardDetails:
    """
    Normalize raw checkout input.

    Args:
        input: Posted checkout fields
        company: Client display name
        country_code: ISO 3166-1 alpha-2 code resolved from ``country_id``
    """
    details = CardDetails(
        company=company,
        first_name=input.get("first_name"),
        last_name=input.get("last_name"),
        email=input.get("email"),
        number=input.get("card_number"),
        expiry_month=_as_str(input.get("expiration_month")),
        expiry_year=_as_str(input.get("expiration_year")),
    )

    cvv = input.get("cvv")
    if cvv is not None and str(cvv) not in CVV_PLACEHOLDERS:
        details.cvv = str(cvv)

    if input.get("address1"):
        address = _address(
            input.get("address1"),
            input.get("address2"),
            input.get("city"),
            input.get("state"),
            input.get("postal_code"),
            country_code or "",
        )
        for key, value in address.items():
            setattr(details, key, value)

    return details


def details_from_client(client: Client, contact: Optional[Contact]) -> CardDetails:
    """Build card details from the profile on file when no input was captured."""
    if contact is None and client.contacts:
        contact = client.contacts[0]

    country_code = client.country.iso_3166_2 if client.country else ""
    details = CardDetails(
        company=client.display_name,
        first_name=contact.first_name if contact else None,
        last_name=contact.last_name if contact else None,
        email=contact.email if contact else None,
    )
    address = _address(
        client.address1,
        client.address2,
        client.city,
        client.state,
        client.postal_code,
        country_code,
        contact.phone if contact else None,
    )
    for key, value in address.items():
        setattr(details, key, value)
    return details


def format_amount(amount_cents: int) -> str:
    """Decimal string form of a minor-unit amount: 10000 -> "100.00"."""
    return str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


def build_purchase_data(
    adapter: GatewayAdapter,
    invitation: Invitation,
    invoice: Invoice,
    gateway_type: GatewayType,
    app_url: str,
    payment_ref: str,
    payment_method: Optional[PaymentMethod] = None,
    customer_token: Optional[str] = None,
    card: Optional[CardDetails] = None,
    ip: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Canonical data passed to ``purchase`` and ``complete_purchase``.

    A stored payment method wins over card details; the caller chooses
    between input and profile details before calling this.
    """
    gateway_type = GatewayType(gateway_type)
    amount_cents = invoice.requested_amount_cents
    currency = invoice.currency_code or invoice.client.currency_code

    data: Dict[str, Any] = {
        "amount": format_amount(amount_cents),
        "amount_cents": amount_cents,
        "currency": currency,
        "return_url": f"{app_url}/complete/{invitation.invitation_key}/{gateway_type.value}",
        "cancel_url": f"{app_url}/view/{invitation.invitation_key}",
        "description": f"{invoice.entity_type.title()} {invoice.invoice_number}",
        "transaction_id": invoice.invoice_number,
        "transaction_type": "Purchase",
        "ip": ip,
        "gateway_type": gateway_type,
        "invitation_key": invitation.invitation_key,
        "idempotency_key": payment_ref,
    }

    if payment_method is not None:
        if adapter.customer_reference_param:
            data[adapter.customer_reference_param] = customer_token
        data[adapter.source_reference_param] = payment_method.source_reference
    elif card is not None:
        data["card"] = card

    return data


def validate_checkout_input(
    input: Mapping[str, Any],
    gateway_type: GatewayType,
    tokenize: bool,
    show_address: bool,
) -> None:
    """
    Check the required fields of a card checkout.

    Raises:
        PaymentValidationError: Listing every missing field
    """
    if GatewayType(gateway_type) != GatewayType.CREDIT_CARD:
        return

    required = ["first_name", "last_name"]
    if not tokenize:
        required.extend(CARD_FIELDS)
    if show_address:
        required.extend(ADDRESS_FIELDS)

    missing = [name for name in required if _is_blank(input.get(name))]
    if missing:
        raise PaymentValidationError(missing)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
