"""
Payment-to-order reconciliation.

An order is written as paid only after the provider reference has been
verified server side and the verified amount matches the amount pinned when
the payment was initialized, which must still be the cart total. A failure
after the money has moved is raised as OrderRecordingFailed, never as a
declined payment.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from cart import Cart, CartTotals, coupon_discount
from checkout import CheckoutSession, CheckoutStep
from config import Settings
from database import now_utc
from errors import (
    OrderRecordingFailed,
    PaymentReferenceMissing,
    PaymentReferenceReused,
    PaymentVerificationFailed,
    StoreError,
    ValidationFailed,
)
from paystack import VerificationResult
from repositories import new_order_number
from schemas import Order

logger = logging.getLogger(__name__)

REFERENCE_ALIASES = ("reference", "trxref", "transaction", "transaction_reference")


@dataclass(frozen=True)
class ReferenceLookup:
    reference: Optional[str] = None
    alias: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.reference is not None


def extract_reference(response: Any) -> ReferenceLookup:
    """First non-blank value among the known reference field names."""
    if not isinstance(response, Mapping):
        return ReferenceLookup()
    for alias in REFERENCE_ALIASES:
        value = response.get(alias)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            value = str(value).strip()
            if value:
                return ReferenceLookup(reference=value, alias=alias)
    return ReferenceLookup()


class Verifier(Protocol):
    def verify_transaction(self, reference: str) -> VerificationResult: ...


@dataclass
class ReconciliationResult:
    order: Dict[str, Any]
    created: bool
    verification: Optional[VerificationResult] = None


class OrderReconciler:
    def __init__(self, verifier: Verifier, orders, settings: Settings):
        self.verifier = verifier
        self.orders = orders
        self.settings = settings

    def handle_payment_success(self, provider_response: Any, cart: Cart, session: CheckoutSession,
                               user_id: Optional[str] = None,
                               coupon: Optional[Dict[str, Any]] = None) -> ReconciliationResult:
        session.processing = True
        try:
            lookup = extract_reference(provider_response)
            if not lookup.found:
                raise PaymentReferenceMissing()
            reference = lookup.reference

            existing = self.orders.find_by_idempotency_key(session.idempotency_key)
            if existing:
                logger.info("Checkout %s already produced order %s", session.idempotency_key,
                            existing.get("order_number"))
                return ReconciliationResult(order=existing, created=False)

            holder = self.orders.find_by_payment_reference(reference)
            if holder:
                logger.warning("Payment %s replayed on checkout %s; it already pays order %s",
                               reference, session.idempotency_key, holder.get("order_number"))
                raise PaymentReferenceReused()

            if cart.is_empty:
                raise ValidationFailed({"cart": "Your cart is empty"})
            if not session.ready_for_payment:
                raise ValidationFailed(session.validate_step(CheckoutStep.REVIEW)
                                       or {"step": "Complete shipping and payment first"})

            coupon = session.coupon or coupon
            subtotal = cart.get_totals().subtotal
            totals = cart.get_totals(discount=coupon_discount(coupon, subtotal))
            expected = session.amount_minor if session.amount_minor is not None else totals.amount_minor_units

            verification = self.verifier.verify_transaction(reference)
            if not verification.succeeded:
                logger.warning("Payment %s not confirmed: status=%s", reference, verification.status)
                raise PaymentVerificationFailed()
            # money has moved from here on; every refusal is a recording failure
            if verification.amount_minor != expected or totals.amount_minor_units != expected:
                logger.error("Payment %s of %s does not match checkout amount %s (cart now %s)",
                             reference, verification.amount_minor, expected, totals.amount_minor_units)
                raise OrderRecordingFailed(reference)

            try:
                doc = self._build_order(reference, verification, cart, session, totals, user_id, coupon)
                order, created = self.orders.create(doc)
            except PaymentReferenceReused:
                raise
            except (StoreError, PyMongoError, ValidationError, ValueError) as e:
                logger.error("Payment %s verified but order could not be recorded: %s", reference, e)
                raise OrderRecordingFailed(reference) from e

            cart.clear()
            logger.info("Payment %s reconciled to order %s (created=%s)",
                        reference, order.get("order_number"), created)
            return ReconciliationResult(order=order, created=created, verification=verification)
        finally:
            session.processing = False

    def handle_payment_cancel(self, session: CheckoutSession) -> None:
        session.processing = False
        logger.info("Payment cancelled by user, checkout state kept")

    def _build_order(self, reference: str, verification: VerificationResult, cart: Cart,
                     session: CheckoutSession, totals: CartTotals, user_id: Optional[str],
                     coupon: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        items = [
            {
                "product_id": line.product_id,
                "title": line.title,
                "price": float(line.unit_price),
                "quantity": line.quantity,
                "image": line.image,
                "variant": line.variant.model_dump(),
            }
            for line in cart.lines
        ]
        order = Order(
            order_number=new_order_number(),
            user_id=user_id,
            items=items,
            shipping_address=session.shipping,
            billing_address=session.billing,
            payment_method=session.payment_method_label,
            payment_status="paid",
            order_status="processing",
            shipping_cost=float(totals.shipping),
            tax=float(totals.tax),
            discount=float(totals.discount),
            total_amount=float(totals.total),
            payment_result={
                "id": verification.reference or reference,
                "status": verification.status,
                "update_time": now_utc(),
                "email_address": verification.customer.get("email") or session.shipping.email,
            },
            idempotency_key=session.idempotency_key,
            coupon=(coupon or {}).get("code"),
        )
        doc = order.model_dump()
        doc["payment_reference"] = order.payment_result.id
        return doc
