"""
Checkout wizard: Shipping -> Payment -> Review.

The session only moves forward when the current step validates; every
offending field gets its own message. It also builds the payload the
frontend hands to the Paystack inline popup.
"""
import logging
import random
import re
import string
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import EmailStr, TypeAdapter, ValidationError

from cart import CartTotals
from config import Settings
from errors import PaymentInitializationError, ValidationFailed
from schemas import Address

logger = logging.getLogger(__name__)

_EMAIL = TypeAdapter(EmailStr)
INTL_PHONE_RE = re.compile(r"^\+233[0-9]{9}$")
LOCAL_PHONE_RE = re.compile(r"^0[0-9]{9}$")
TAG_RE = re.compile(r"<[^>]*>")

PAYMENT_CHANNELS = ("card", "mobile_money")

MOMO_PROVIDERS: Dict[str, Dict[str, object]] = {
    "mtn": {"name": "MTN Mobile Money", "prefixes": ("024", "025", "053", "054", "055", "059")},
    "vodafone": {"name": "Vodafone Cash", "prefixes": ("020", "050")},
    "airteltigo": {"name": "AirtelTigo Money", "prefixes": ("027", "026", "056", "057")},
    "telecel": {"name": "Telecel Cash", "prefixes": ("023", "028")},
}

SHIPPING_FIELDS = ("first_name", "last_name", "email", "phone", "address", "city", "region")
COUPON_SNAPSHOT_FIELDS = ("code", "type", "value", "min_order")


class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    PAYMENT = "payment"
    REVIEW = "review"


STEP_ORDER = [CheckoutStep.SHIPPING, CheckoutStep.PAYMENT, CheckoutStep.REVIEW]


def sanitize_input(value) -> str:
    """Strip markup and trim. Cosmetic only; storage never relies on it."""
    if not isinstance(value, str):
        return ""
    return TAG_RE.sub("", value.strip())[:255]


def _strip_spaces(value: str) -> str:
    return re.sub(r"\s", "", value or "")


def is_valid_phone(phone: str) -> bool:
    cleaned = _strip_spaces(phone)
    if cleaned.startswith("+233"):
        return bool(INTL_PHONE_RE.match(cleaned))
    return bool(LOCAL_PHONE_RE.match(cleaned))


def is_valid_email(email: str) -> bool:
    try:
        _EMAIL.validate_python(email)
    except ValidationError:
        return False
    return True


def is_valid_momo_number(number: str) -> bool:
    return bool(LOCAL_PHONE_RE.match(_strip_spaces(number)))


def detect_momo_provider(number: str) -> Optional[str]:
    """Carrier whose prefix is the longest match for the number, if any."""
    cleaned = _strip_spaces(number)
    best, best_len = None, 0
    for provider_id, info in MOMO_PROVIDERS.items():
        for prefix in info["prefixes"]:
            if cleaned.startswith(prefix) and len(prefix) > best_len:
                best, best_len = provider_id, len(prefix)
    return best


def _label(field: str) -> str:
    return field.replace("_", " ")


def validate_shipping(address: Address) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for field in SHIPPING_FIELDS:
        if not getattr(address, field).strip():
            errors[field] = f"Please fill in {_label(field)}"

    if "first_name" not in errors and len(address.first_name.strip()) < 2:
        errors["first_name"] = "Must be at least 2 characters"
    if "last_name" not in errors and len(address.last_name.strip()) < 2:
        errors["last_name"] = "Must be at least 2 characters"
    if "email" not in errors and not is_valid_email(address.email.strip()):
        errors["email"] = "Invalid email format"
    if "phone" not in errors and not is_valid_phone(address.phone):
        errors["phone"] = "Invalid phone number (use +233 XX XXX XXXX or 0XX XXX XXXX)"
    if "address" not in errors and len(address.address.strip()) < 5:
        errors["address"] = "Please provide a complete address"
    if "city" not in errors and len(address.city.strip()) < 2:
        errors["city"] = "Please enter a valid city"
    return errors


def validate_payment(channel: Optional[str], provider: Optional[str] = None,
                     momo_number: Optional[str] = None) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not channel:
        errors["payment_method"] = "Please select a payment method"
        return errors
    if channel not in PAYMENT_CHANNELS:
        errors["payment_method"] = "Unsupported payment method"
        return errors
    if channel == "mobile_money":
        if not provider:
            errors["momo_provider"] = "Please select a mobile money provider"
        elif provider not in MOMO_PROVIDERS:
            errors["momo_provider"] = "Unknown mobile money provider"
        if not momo_number:
            errors["momo_number"] = "Please enter your mobile money number"
        elif not is_valid_momo_number(momo_number):
            errors["momo_number"] = "Please enter a valid 10-digit mobile money number"
    return errors


class CheckoutSession:
    def __init__(self, idempotency_key: Optional[str] = None):
        self.step = CheckoutStep.SHIPPING
        self.shipping = Address()
        self._billing = Address()
        self.same_as_shipping = True
        self.payment_channel: Optional[str] = None
        self.momo_provider: Optional[str] = None
        self.momo_number = ""
        self._provider_chosen = False
        self.errors: Dict[str, str] = {}
        self.processing = False
        self.idempotency_key = idempotency_key or uuid.uuid4().hex
        # pinned at initialize; what the customer is charged for
        self.payment_reference: Optional[str] = None
        self.amount_minor: Optional[int] = None
        self.coupon: Optional[Dict[str, object]] = None

    # -- addresses --

    def update_shipping(self, **fields) -> None:
        clean = {k: sanitize_input(v) for k, v in fields.items() if k in Address.model_fields}
        self.shipping = self.shipping.model_copy(update=clean)

    def use_separate_billing(self, address: Optional[Address] = None) -> None:
        self.same_as_shipping = False
        if address is None:
            self._billing = self.shipping.model_copy()
        else:
            self._billing = Address(**{k: sanitize_input(v) for k, v in address.model_dump().items()})

    def use_shipping_for_billing(self) -> None:
        self.same_as_shipping = True
        self._billing = self.shipping.model_copy()

    @property
    def billing(self) -> Address:
        return self.shipping.model_copy() if self.same_as_shipping else self._billing

    # -- payment --

    def select_channel(self, channel: str) -> None:
        self.payment_channel = channel

    def select_provider(self, provider: str) -> None:
        self.momo_provider = provider
        self._provider_chosen = True

    def set_momo_number(self, number: str) -> Optional[str]:
        """Store the number; auto-detect the carrier unless one was picked."""
        self.momo_number = re.sub(r"\D", "", number or "")[:10]
        if self._provider_chosen or len(self.momo_number) < 3:
            return self.momo_provider
        detected = detect_momo_provider(self.momo_number)
        if detected:
            self.momo_provider = detected
            logger.debug("Detected %s for mobile money number", detected)
        return self.momo_provider

    @property
    def payment_method_label(self) -> str:
        if self.payment_channel == "mobile_money":
            return f"Mobile Money ({(self.momo_provider or '').upper()})"
        return "Card Payment"

    # -- navigation --

    def validate_step(self, step: Optional[CheckoutStep] = None) -> Dict[str, str]:
        step = step or self.step
        if step == CheckoutStep.SHIPPING:
            return validate_shipping(self.shipping)
        if step == CheckoutStep.PAYMENT:
            return validate_payment(self.payment_channel, self.momo_provider, self.momo_number)
        errors = validate_shipping(self.shipping)
        errors.update(validate_payment(self.payment_channel, self.momo_provider, self.momo_number))
        return errors

    def advance(self) -> CheckoutStep:
        if self.step == CheckoutStep.REVIEW:
            return self.step
        errors = self.validate_step()
        self.errors = errors
        if errors:
            raise ValidationFailed(errors)
        self.step = STEP_ORDER[STEP_ORDER.index(self.step) + 1]
        return self.step

    def back(self) -> CheckoutStep:
        idx = STEP_ORDER.index(self.step)
        if idx > 0:
            self.step = STEP_ORDER[idx - 1]
        return self.step

    def freeze_payment(self, reference: str, totals: CartTotals,
                       coupon: Optional[Dict[str, object]] = None) -> None:
        self.payment_reference = reference
        self.amount_minor = totals.amount_minor_units
        self.coupon = {k: coupon[k] for k in COUPON_SNAPSHOT_FIELDS if k in coupon} if coupon else None
        self.processing = True

    @property
    def ready_for_payment(self) -> bool:
        return self.step == CheckoutStep.REVIEW and not self.validate_step(CheckoutStep.REVIEW)

    # -- storage --

    def to_document(self) -> Dict[str, object]:
        return {
            "step": self.step.value,
            "shipping": self.shipping.model_dump(),
            "billing": self._billing.model_dump(),
            "same_as_shipping": self.same_as_shipping,
            "payment_channel": self.payment_channel,
            "momo_provider": self.momo_provider,
            "momo_number": self.momo_number,
            "provider_chosen": self._provider_chosen,
            "processing": self.processing,
            "idempotency_key": self.idempotency_key,
            "payment_reference": self.payment_reference,
            "amount_minor": self.amount_minor,
            "coupon": self.coupon,
        }

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, object]]) -> "CheckoutSession":
        session = cls()
        if not doc:
            return session
        session.idempotency_key = doc.get("idempotency_key") or session.idempotency_key
        session.step = CheckoutStep(doc.get("step", CheckoutStep.SHIPPING.value))
        session.shipping = Address.model_validate(doc.get("shipping") or {})
        session._billing = Address.model_validate(doc.get("billing") or {})
        session.same_as_shipping = bool(doc.get("same_as_shipping", True))
        session.payment_channel = doc.get("payment_channel")
        session.momo_provider = doc.get("momo_provider")
        session.momo_number = doc.get("momo_number") or ""
        session._provider_chosen = bool(doc.get("provider_chosen"))
        session.processing = bool(doc.get("processing"))
        session.payment_reference = doc.get("payment_reference")
        amount = doc.get("amount_minor")
        session.amount_minor = int(amount) if amount is not None else None
        session.coupon = doc.get("coupon") or None
        return session

    def summary(self) -> Dict[str, object]:
        return {
            "step": self.step.value,
            "shipping": self.shipping.model_dump(),
            "billing": self.billing.model_dump(),
            "same_as_shipping": self.same_as_shipping,
            "payment_method": self.payment_channel,
            "payment_method_label": self.payment_method_label if self.payment_channel else None,
            "momo_provider": self.momo_provider,
            "momo_number": self.momo_number,
            "errors": self.errors,
            "processing": self.processing,
            "idempotency_key": self.idempotency_key,
            "payment_reference": self.payment_reference,
        }


def new_payment_reference() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"ORDER_{int(time.time() * 1000)}_{suffix}"


def build_transaction_request(session: CheckoutSession, totals: CartTotals, settings: Settings,
                              reference: Optional[str] = None) -> Dict[str, object]:
    key = settings.paystack_public_key
    if not key or "xxxx" in key or len(key) < 20:
        raise PaymentInitializationError()
    if totals.amount_minor_units <= 0:
        raise PaymentInitializationError("Invalid payment amount")
    if not session.ready_for_payment:
        raise ValidationFailed(session.validate_step(CheckoutStep.REVIEW) or {"step": "Complete shipping and payment first"})

    channels: List[str] = [session.payment_channel] if session.payment_channel else list(PAYMENT_CHANNELS)
    ship = session.shipping
    return {
        "key": key,
        "email": ship.email,
        "amount": totals.amount_minor_units,
        "currency": settings.pricing.currency,
        "ref": reference or new_payment_reference(),
        "channels": channels,
        "metadata": {
            "idempotency_key": session.idempotency_key,
            "custom_fields": [
                {"display_name": "Customer Name", "variable_name": "customer_name",
                 "value": f"{ship.first_name} {ship.last_name}"},
                {"display_name": "Phone Number", "variable_name": "phone_number", "value": ship.phone},
                {"display_name": "Mobile Money Number", "variable_name": "momo_number",
                 "value": session.momo_number or "N/A"},
                {"display_name": "Provider", "variable_name": "provider",
                 "value": session.momo_provider or "card"},
            ],
        },
    }
