"""
Collection wrappers for users, products, coupons, orders and store settings.

Queries are always built as documents from typed values; free text that
ends up in a $regex is escaped first.
"""
import hmac
import logging
import random
import re
import string
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DocumentTooLarge, DuplicateKeyError, PyMongoError

import auth
from config import PricingConfig, Settings
from database import as_utc, now_utc, serialize
from errors import (
    DuplicateEmail,
    InputTooLarge,
    InvalidIdentifier,
    InvalidStatusTransition,
    NotFound,
    OTPVerificationFailed,
    PaymentReferenceReused,
    RepositoryError,
    TooManyAttempts,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 100


def clamp_pagination(limit: Any = DEFAULT_PAGE_SIZE, offset: Any = 0) -> Tuple[int, int]:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    try:
        offset = int(offset)
    except (TypeError, ValueError):
        offset = 0
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


def to_oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdentifier()


def contains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def raise_validation(field: str, message: str) -> None:
    raise ValidationFailed({field: message}, message)


# ---------------------- Users ----------------------

PUBLIC_USER_FIELDS = (
    "first_name", "last_name", "email", "phone", "address", "city", "state", "zip_code", "country",
    "role", "is_active", "is_email_verified", "profile_picture", "last_login", "created_at", "updated_at",
)
UPDATABLE_USER_FIELDS = (
    "first_name", "last_name", "email", "phone", "address", "city", "state", "zip_code", "country",
    "role", "is_active", "profile_picture",
)


def public_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    out = {"id": str(doc["_id"])}
    out.update({k: doc.get(k) for k in PUBLIC_USER_FIELDS if k in doc})
    out["is_admin"] = doc.get("role") == "admin"
    return out


class UserRepository:
    def __init__(self, db: Database, settings: Settings):
        self.col = db["user"]
        self.settings = settings

    def _hash(self, password: str) -> str:
        return auth.hash_password(password, self.settings.bcrypt_rounds)

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        password = data.get("password")
        if not password or len(password) < 8:
            raise_validation("password", "Password must be at least 8 characters")
        doc = {k: v.strip() if isinstance(v, str) else v for k, v in data.items()
               if k in UPDATABLE_USER_FIELDS and v not in (None, "")}
        doc["email"] = data["email"].strip().lower()
        doc["password_hash"] = self._hash(password)
        doc.setdefault("role", "customer")
        doc.setdefault("is_active", True)
        doc.update({
            "is_email_verified": bool(data.get("is_email_verified", False)),
            "verification_attempts": 0,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        })
        try:
            res = self.col.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateEmail()
        except DocumentTooLarge:
            raise InputTooLarge()
        logger.info("User created: %s", res.inserted_id)
        doc["_id"] = res.inserted_id
        return doc

    def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        return self.col.find_one({"_id": oid})

    def get(self, user_id: str) -> Dict[str, Any]:
        doc = self.col.find_one({"_id": to_oid(user_id)})
        if not doc:
            raise NotFound("User not found")
        return doc

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        return self.col.find_one({"email": email.strip().lower()})

    def find_all(self, role: Optional[str] = None, is_active: Optional[bool] = None,
                 search: Optional[str] = None, limit: Any = DEFAULT_PAGE_SIZE, offset: Any = 0) -> List[Dict[str, Any]]:
        limit, offset = clamp_pagination(limit, offset)
        filt: Dict[str, Any] = {}
        if role:
            filt["role"] = role
        if is_active is not None:
            filt["is_active"] = is_active
        if search:
            filt["$or"] = [{"first_name": contains(search)}, {"last_name": contains(search)},
                           {"email": contains(search)}]
        cur = self.col.find(filt).sort("created_at", DESCENDING).skip(offset).limit(limit)
        return [public_user(d) for d in cur]

    def update(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_oid(user_id)
        changes = {k: v.strip() if isinstance(v, str) else v for k, v in data.items()
                   if k in UPDATABLE_USER_FIELDS and v is not None}
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        if data.get("password"):
            if len(data["password"]) < 8:
                raise_validation("password", "Password must be at least 8 characters")
            changes["password_hash"] = self._hash(data["password"])
        if not changes:
            raise_validation("body", "No valid fields provided for update")
        changes["updated_at"] = now_utc()
        try:
            doc = self.col.find_one_and_update({"_id": oid}, {"$set": changes},
                                               return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            raise DuplicateEmail()
        if not doc:
            raise NotFound("User not found")
        return doc

    def soft_delete(self, user_id: str) -> bool:
        res = self.col.update_one({"_id": to_oid(user_id)},
                                  {"$set": {"is_active": False, "updated_at": now_utc()}})
        return res.matched_count > 0

    def delete(self, user_id: str) -> bool:
        return self.col.delete_one({"_id": to_oid(user_id)}).deleted_count > 0

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        user = self.find_by_email(email)
        if not user or not user.get("is_active", True):
            return None
        return user if auth.verify_password(password, user.get("password_hash")) else None

    def touch_last_login(self, user_id: str) -> None:
        self.col.update_one({"_id": to_oid(user_id)}, {"$set": {"last_login": now_utc()}})

    # -- email verification --

    def set_verification_code(self, user_id: str) -> str:
        code = auth.generate_otp()
        self.col.update_one(
            {"_id": to_oid(user_id)},
            {"$set": {
                "email_verification_code": code,
                "email_verification_expires": auth.otp_expiry(self.settings),
                "verification_attempts": 0,
                "last_verification_attempt": now_utc(),
            }},
        )
        return code

    def verify_email(self, user_id: str, code: str) -> Dict[str, Any]:
        user = self.get(user_id)
        if user.get("is_email_verified"):
            return user
        # the gate and the count are one write; at the limit nothing is counted
        # and only a new code resets it
        claimed = self.col.find_one_and_update(
            {"_id": user["_id"], "$or": [
                {"verification_attempts": {"$lt": self.settings.max_otp_attempts}},
                {"verification_attempts": {"$exists": False}},
            ]},
            {"$inc": {"verification_attempts": 1}, "$set": {"last_verification_attempt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            raise TooManyAttempts("Too many failed attempts. Please request a new code.")
        expires = as_utc(claimed.get("email_verification_expires"))
        stored = claimed.get("email_verification_code")
        ok = (
            stored is not None
            and expires is not None
            and expires > now_utc()
            and hmac.compare_digest(str(stored), str(code))
        )
        if not ok:
            raise OTPVerificationFailed()
        self.col.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_email_verified": True, "verification_attempts": 0, "updated_at": now_utc()},
             "$unset": {"email_verification_code": "", "email_verification_expires": ""}},
        )
        claimed["is_email_verified"] = True
        claimed["verification_attempts"] = 0
        claimed.pop("email_verification_code", None)
        claimed.pop("email_verification_expires", None)
        return claimed

    def verification_status(self, user_id: str) -> Dict[str, Any]:
        user = self.get(user_id)
        attempts = user.get("verification_attempts", 0)
        return {
            "is_email_verified": bool(user.get("is_email_verified")),
            "attempts_remaining": max(0, self.settings.max_otp_attempts - attempts),
        }

    def resend_verification_code(self, user_id: str) -> Tuple[Dict[str, Any], str]:
        user = self.get(user_id)
        if user.get("is_email_verified"):
            raise_validation("email", "Email is already verified")
        return user, self.set_verification_code(user_id)

    # -- password reset --

    def create_password_reset_token(self, user_id: str) -> str:
        token = auth.generate_reset_token()
        expires = now_utc() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.col.update_one(
            {"_id": to_oid(user_id)},
            {"$set": {"reset_password_token": auth.hash_reset_token(self.settings, token),
                      "reset_password_expire": expires, "updated_at": now_utc()}},
        )
        return token

    def find_by_reset_token(self, token: str) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        user = self.col.find_one({"reset_password_token": auth.hash_reset_token(self.settings, token),
                                  "is_active": True})
        if not user:
            return None
        expires = as_utc(user.get("reset_password_expire"))
        if expires is None or expires <= now_utc():
            return None
        return user

    def reset_password(self, user_id: str, new_password: str) -> None:
        if not new_password or len(new_password) < 8:
            raise_validation("password", "Password must be at least 8 characters")
        res = self.col.update_one(
            {"_id": to_oid(user_id)},
            {"$set": {"password_hash": self._hash(new_password), "updated_at": now_utc()},
             "$unset": {"reset_password_token": "", "reset_password_expire": ""}},
        )
        if res.matched_count == 0:
            raise NotFound("User not found")

    def clear_reset_token(self, user_id: str) -> None:
        self.col.update_one({"_id": to_oid(user_id)},
                            {"$unset": {"reset_password_token": "", "reset_password_expire": ""}})

    # -- oauth --

    def find_or_create_oauth_user(self, profile) -> Dict[str, Any]:
        provider_field = f"{profile.provider}_id"
        user = self.col.find_one({provider_field: profile.id})
        if user:
            return user
        email = (profile.email or f"{profile.provider}_{profile.id}@oauth.local").lower()
        user = self.col.find_one_and_update(
            {"email": email},
            {"$set": {provider_field: profile.id, "is_email_verified": True, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if user:
            logger.info("Linked %s login to existing user %s", profile.provider, user["_id"])
            return user
        doc = {
            "first_name": profile.first_name or "User",
            "last_name": profile.last_name or "",
            "email": email,
            provider_field: profile.id,
            "password_hash": None,
            "profile_picture": profile.picture,
            "role": "customer",
            "is_active": True,
            "is_email_verified": True,
            "verification_attempts": 0,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        try:
            doc["_id"] = self.col.insert_one(doc).inserted_id
        except DuplicateKeyError:
            raise DuplicateEmail()
        logger.info("Created user %s via %s", doc["_id"], profile.provider)
        return doc


# ---------------------- Products ----------------------

UPDATABLE_PRODUCT_FIELDS = (
    "title", "description", "price", "original_price", "image", "category", "tag", "sizes", "colors",
    "material", "featured", "rating", "reviews", "stock",
)


class ProductRepository:
    def __init__(self, db: Database):
        self.col = db["product"]

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in data.items() if k in UPDATABLE_PRODUCT_FIELDS}
        doc["title"] = doc["title"].strip()
        doc["created_at"] = doc["updated_at"] = now_utc()
        doc["_id"] = self.col.insert_one(doc).inserted_id
        return doc

    def find_by_id(self, product_id: str) -> Optional[Dict[str, Any]]:
        try:
            oid = ObjectId(product_id)
        except (InvalidId, TypeError):
            return None
        return self.col.find_one({"_id": oid})

    def get(self, product_id: str) -> Dict[str, Any]:
        doc = self.col.find_one({"_id": to_oid(product_id)})
        if not doc:
            raise NotFound("Product not found")
        return doc

    @staticmethod
    def _filter(search=None, category=None, featured=None, min_price=None, max_price=None) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        if category:
            filt["category"] = category
        if featured is not None:
            filt["featured"] = featured
        if search:
            filt["$or"] = [{"title": contains(search)}, {"category": contains(search)}, {"tag": contains(search)}]
        price: Dict[str, float] = {}
        if min_price is not None:
            price["$gte"] = float(min_price)
        if max_price is not None:
            price["$lte"] = float(max_price)
        if price:
            filt["price"] = price
        return filt

    def find_all(self, search=None, category=None, featured=None, min_price=None, max_price=None,
                 limit: Any = DEFAULT_PAGE_SIZE, offset: Any = 0) -> List[Dict[str, Any]]:
        limit, offset = clamp_pagination(limit, offset)
        filt = self._filter(search, category, featured, min_price, max_price)
        cur = self.col.find(filt).sort("_id", DESCENDING).skip(offset).limit(limit)
        return [serialize(p) for p in cur]

    def count(self, search=None, category=None, featured=None, min_price=None, max_price=None) -> int:
        return self.col.count_documents(self._filter(search, category, featured, min_price, max_price))

    def categories(self) -> List[str]:
        return sorted(c for c in self.col.distinct("category") if c)

    def update(self, product_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in data.items() if k in UPDATABLE_PRODUCT_FIELDS and v is not None}
        if not changes:
            raise_validation("body", "No fields to update")
        changes["updated_at"] = now_utc()
        doc = self.col.find_one_and_update({"_id": to_oid(product_id)}, {"$set": changes},
                                           return_document=ReturnDocument.AFTER)
        if not doc:
            raise NotFound("Product not found")
        return doc

    def delete(self, product_id: str) -> bool:
        return self.col.delete_one({"_id": to_oid(product_id)}).deleted_count > 0


# ---------------------- Coupons ----------------------

class CouponRepository:
    def __init__(self, db: Database):
        self.col = db["coupon"]

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {**data, "code": data["code"].strip().upper(), "created_at": now_utc()}
        try:
            doc["_id"] = self.col.insert_one(doc).inserted_id
        except DuplicateKeyError:
            raise_validation("code", "Coupon code already exists")
        return doc

    def find_active(self, code: Optional[str]) -> Optional[Dict[str, Any]]:
        if not code:
            return None
        return self.col.find_one({"code": code.strip().upper(), "active": True})


# ---------------------- Orders ----------------------

ORDER_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "cancelled"),
    "processing": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}
UPDATABLE_ORDER_FIELDS = ("shipping_address", "billing_address", "payment_method", "notes")
ORDER_SORT_FIELDS = ("created_at", "total_amount", "order_status", "order_number")


def new_order_number() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"ORD-{int(now_utc().timestamp() * 1000)}-{suffix}"


class OrderRepository:
    def __init__(self, db: Database):
        self.col = db["order"]
        self.users = db["user"]

    def create(self, order: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Insert an order; a repeated idempotency key returns the first order.

        Returns (order, created).
        """
        doc = dict(order)
        if not doc.get("order_number"):
            doc["order_number"] = new_order_number()
        if not doc.get("idempotency_key"):
            doc["idempotency_key"] = uuid.uuid4().hex
        doc["created_at"] = doc["updated_at"] = now_utc()
        try:
            doc["_id"] = self.col.insert_one(doc).inserted_id
        except DuplicateKeyError as e:
            existing = self.col.find_one({"idempotency_key": doc["idempotency_key"]})
            if existing:
                logger.info("Order for idempotency key %s already exists", doc["idempotency_key"])
                return existing, False
            if doc.get("payment_reference") and self.find_by_payment_reference(doc["payment_reference"]):
                raise PaymentReferenceReused() from e
            raise RepositoryError("Error creating order") from e
        except DocumentTooLarge as e:
            raise InputTooLarge() from e
        except PyMongoError as e:
            raise RepositoryError("Error creating order") from e
        logger.info("Order %s created (%s)", doc["order_number"], doc["_id"])
        return doc, True

    def find_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            oid = ObjectId(order_id)
        except (InvalidId, TypeError):
            return None
        return self.col.find_one({"_id": oid})

    def get(self, order_id: str) -> Dict[str, Any]:
        doc = self.col.find_one({"_id": to_oid(order_id)})
        if not doc:
            raise NotFound("Order not found")
        return doc

    def find_by_idempotency_key(self, key: str) -> Optional[Dict[str, Any]]:
        return self.col.find_one({"idempotency_key": key})

    def find_by_payment_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        return self.col.find_one({"payment_reference": reference})

    def find_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self.col.find({"user_id": user_id}).sort("created_at", DESCENDING))

    def find_all(self, status: Optional[str] = None, payment_status: Optional[str] = None,
                 user_id: Optional[str] = None, search: Optional[str] = None, sort_by: str = "created_at",
                 sort_order: str = "desc", page: Any = 1, limit: Any = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        limit, _ = clamp_pagination(limit)
        try:
            page = max(1, int(page))
        except (TypeError, ValueError):
            page = 1
        filt: Dict[str, Any] = {}
        if status:
            filt["order_status"] = status
        if payment_status:
            filt["payment_status"] = payment_status
        if user_id:
            filt["user_id"] = user_id
        if search:
            clauses: List[Dict[str, Any]] = [{"order_number": contains(search)},
                                             {"shipping_address.email": contains(search)}]
            matching_users = [str(u["_id"]) for u in self.users.find(
                {"$or": [{"first_name": contains(search)}, {"last_name": contains(search)},
                         {"email": contains(search)}]}, {"_id": 1})]
            if matching_users:
                clauses.append({"user_id": {"$in": matching_users}})
            filt["$or"] = clauses
        sort_field = sort_by if sort_by in ORDER_SORT_FIELDS else "created_at"
        direction = ASCENDING if str(sort_order).lower() == "asc" else DESCENDING

        total = self.col.count_documents(filt)
        cur = self.col.find(filt).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
        return {
            "orders": list(cur),
            "pagination": {"page": page, "limit": limit, "total": total,
                           "total_pages": (total + limit - 1) // limit},
        }

    def update(self, order_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in data.items() if k in UPDATABLE_ORDER_FIELDS and v is not None}
        if not changes:
            raise_validation("body", "No valid fields to update")
        return self._set(order_id, changes)

    def _set(self, order_id: str, changes: Dict[str, Any], extra_filter: Optional[Dict[str, Any]] = None):
        changes = {**changes, "updated_at": now_utc()}
        filt = {"_id": to_oid(order_id), **(extra_filter or {})}
        doc = self.col.find_one_and_update(filt, {"$set": changes}, return_document=ReturnDocument.AFTER)
        if not doc:
            raise NotFound("Order not found")
        return doc

    def transition(self, order_id: str, new_status: str) -> Dict[str, Any]:
        order = self.get(order_id)
        current = order.get("order_status", "pending")
        if new_status not in ORDER_TRANSITIONS.get(current, ()):
            raise InvalidStatusTransition(f"Cannot move order from {current} to {new_status}")
        # guard against a concurrent change between read and write
        try:
            return self._set(order_id, {"order_status": new_status}, {"order_status": current})
        except NotFound:
            raise InvalidStatusTransition("Order status changed, please reload")

    def mark_paid(self, order_id: str, payment_result: Dict[str, Any]) -> Dict[str, Any]:
        """Record a verified payment; one provider reference pays one order."""
        order = self.get(order_id)
        reference = str(payment_result["id"])
        holder = self.find_by_payment_reference(reference)
        if holder and holder["_id"] != order["_id"]:
            logger.warning("Payment %s already pays order %s", reference, holder.get("order_number"))
            raise PaymentReferenceReused()
        if order.get("payment_status") == "paid":
            return order
        if order.get("order_status") == "cancelled":
            raise InvalidStatusTransition("Cannot pay for a cancelled order")
        changes: Dict[str, Any] = {"payment_status": "paid", "payment_result": payment_result,
                                   "payment_reference": reference}
        if order.get("order_status") == "pending":
            changes["order_status"] = "processing"
        try:
            return self._set(order_id, changes, {"payment_status": {"$ne": "paid"}})
        except DuplicateKeyError:
            raise PaymentReferenceReused()
        except NotFound:
            return self.get(order_id)

    def delete(self, order_id: str) -> bool:
        res = self.col.delete_one({"_id": to_oid(order_id)})
        if res.deleted_count == 0:
            raise NotFound("Order not found")
        return True

    def statistics(self) -> Dict[str, Any]:
        by_status = {r["_id"]: r for r in self.col.aggregate([
            {"$group": {"_id": "$order_status", "count": {"$sum": 1}, "revenue": {"$sum": "$total_amount"}}},
        ])}
        by_payment = {r["_id"]: r["count"] for r in self.col.aggregate([
            {"$group": {"_id": "$payment_status", "count": {"$sum": 1}}},
        ])}
        total_orders = sum(r["count"] for r in by_status.values())
        total_revenue = round(sum(r["revenue"] or 0 for r in by_status.values()), 2)
        delivered = by_status.get("delivered", {}).get("count", 0)
        return {
            "total_orders": total_orders,
            "total_revenue": total_revenue,
            "avg_order_value": round(total_revenue / total_orders, 2) if total_orders else 0,
            "conversion_rate": round(delivered / total_orders * 100, 2) if total_orders else 0,
            "pending_orders": by_status.get("pending", {}).get("count", 0),
            "processing_orders": by_status.get("processing", {}).get("count", 0),
            "delivered_orders": delivered,
            "cancelled_orders": by_status.get("cancelled", {}).get("count", 0),
            "paid_orders": by_payment.get("paid", 0),
            "unpaid_orders": by_payment.get("pending", 0) + by_payment.get("failed", 0),
        }


# ---------------------- Store settings ----------------------

STORE_SETTINGS_ID = "store"
# stored setting -> PricingConfig field
PRICING_SETTINGS = {
    "tax_rate": "tax_rate",
    "free_shipping_threshold": "free_shipping_threshold",
    "shipping_cost": "flat_shipping_cost",
    "currency": "currency",
}


class StoreSettingsRepository:
    """Admin-edited settings, one document; unset keys defer to the environment."""

    def __init__(self, db: Database):
        self.col = db["setting"]

    def get_all(self) -> Dict[str, Any]:
        doc = self.col.find_one({"_id": STORE_SETTINGS_ID}) or {}
        return {k: v for k, v in doc.items() if k not in ("_id", "updated_at") and v is not None}

    def get(self, key: str) -> Any:
        value = self.get_all().get(key)
        if value is None:
            raise NotFound("Setting not found")
        return value

    def update(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not changes:
            raise_validation("body", "No settings provided")
        self.col.update_one({"_id": STORE_SETTINGS_ID},
                            {"$set": {**changes, "updated_at": now_utc()}}, upsert=True)
        logger.info("Store settings updated: %s", ", ".join(sorted(changes)))
        return self.get_all()

    def delete(self, key: str) -> bool:
        res = self.col.update_one({"_id": STORE_SETTINGS_ID, key: {"$exists": True}}, {"$unset": {key: ""}})
        return res.modified_count > 0

    def pricing(self, defaults: PricingConfig) -> PricingConfig:
        stored = self.get_all()
        overrides: Dict[str, Any] = {}
        for key, field in PRICING_SETTINGS.items():
            if key in stored:
                overrides[field] = stored[key] if field == "currency" else Decimal(str(stored[key]))
        return defaults.model_copy(update=overrides) if overrides else defaults
