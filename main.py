import json
import logging
import os
import secrets
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError
from pymongo.database import Database

import auth
from cart import Cart, CartLine, DocumentCartStorage, compute_totals, coupon_discount
from checkout import MOMO_PROVIDERS, CheckoutSession, CheckoutStep, build_transaction_request, detect_momo_provider
from config import Settings, configure_logging
from database import connect, ensure_indexes, now_utc, serialize
from errors import (
    AuthenticationError,
    InvalidStatusTransition,
    NotFound,
    PaymentReferenceMissing,
    PaymentReferenceReused,
    PaymentVerificationFailed,
    PermissionDenied,
    StoreError,
    ValidationFailed,
)
from mailer import LogMailer
from oauth import PROVIDERS, OAuthClient
from paystack import PaystackClient, to_minor_units
from reconciler import OrderReconciler, extract_reference
from repositories import (
    CouponRepository,
    OrderRepository,
    ProductRepository,
    StoreSettingsRepository,
    UserRepository,
    new_order_number,
    public_user,
)
from schemas import Address, Coupon, Order, OrderItem, Product, ProductUpdate, Role, StoreSettings

logger = logging.getLogger(__name__)

router = APIRouter()

OAUTH_STATE_COOKIE = "oauth_state"
TOTAL_TOLERANCE = Decimal("0.005")

# ---------------------- Dependencies ----------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_db(request: Request) -> Database:
    return request.app.state.db

def users_repo(request: Request) -> UserRepository:
    return UserRepository(request.app.state.db, request.app.state.settings)

def products_repo(request: Request) -> ProductRepository:
    return ProductRepository(request.app.state.db)

def orders_repo(request: Request) -> OrderRepository:
    return OrderRepository(request.app.state.db)

def coupons_repo(request: Request) -> CouponRepository:
    return CouponRepository(request.app.state.db)

def store_settings_repo(request: Request) -> StoreSettingsRepository:
    return StoreSettingsRepository(request.app.state.db)

def store_settings(request: Request) -> Settings:
    """Process settings with the admin's stored pricing applied."""
    base = request.app.state.settings
    pricing = store_settings_repo(request).pricing(base.pricing)
    if pricing is base.pricing:
        return base
    return base.model_copy(update={"pricing": pricing})

def current_user(request: Request) -> Dict[str, Any]:
    settings = request.app.state.settings
    token = request.cookies.get(settings.jwt_cookie_name)
    if not token:
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            token = header[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Not authorized, no token")
    user_id = auth.decode_token(settings, token)
    user = users_repo(request).find_by_id(user_id)
    if not user or not user.get("is_active", True):
        raise AuthenticationError("Not authorized, user not found or inactive")
    return user

def require_admin(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise PermissionDenied("Not authorized as an admin")
    return user

def set_auth_cookie(response: Response, settings: Settings, user_id: str, remember_me: bool = False) -> str:
    token = auth.issue_token(settings, user_id, remember_me)
    days = settings.remember_me_ttl_days if remember_me else settings.token_ttl_days
    response.set_cookie(
        settings.jwt_cookie_name,
        token,
        max_age=days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return token

def user_cart(request: Request, user: Dict[str, Any], settings: Optional[Settings] = None) -> Cart:
    storage = DocumentCartStorage(request.app.state.db["cart"], str(user["_id"]))
    return Cart(storage, (settings or store_settings(request)).pricing)

def load_checkout(db: Database, user_id: str) -> CheckoutSession:
    return CheckoutSession.from_document(db["checkout"].find_one({"user_id": user_id}))

def save_checkout(db: Database, user_id: str, session: CheckoutSession) -> None:
    db["checkout"].update_one(
        {"user_id": user_id},
        {"$set": {**session.to_document(), "updated_at": now_utc()}},
        upsert=True,
    )

def advance_and_save(db: Database, user_id: str, session: CheckoutSession) -> None:
    # a step that fails validation leaves the stored session as it was
    session.advance()
    save_checkout(db, user_id, session)

def active_coupon(coupons: CouponRepository, code: Optional[str]) -> Optional[Dict[str, Any]]:
    if not code:
        return None
    coupon = coupons.find_active(code)
    if not coupon:
        raise NotFound("Invalid coupon")
    return coupon

def owned_order(orders: OrderRepository, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = orders.get(order_id)
    if user.get("role") != "admin" and order.get("user_id") != str(user["_id"]):
        raise PermissionDenied("Not authorized to access this order")
    return order

# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field("", max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8)
    phone: Optional[str] = Field(None, max_length=20)

class LoginBody(BaseModel):
    email: str
    password: str
    remember_me: bool = False

class OTPVerify(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)

class ForgotPasswordBody(BaseModel):
    email: str

class ResetPasswordBody(BaseModel):
    password: str = Field(..., min_length=8)

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    profile_picture: Optional[str] = None
    password: Optional[str] = None

class AdminUserUpdate(ProfileUpdate):
    role: Optional[Role] = None
    is_active: Optional[bool] = None

class CartAddBody(BaseModel):
    product_id: str
    quantity: int = 1
    color: Optional[str] = None
    size: Optional[str] = None

class CartProductBody(BaseModel):
    product_id: str

class CartQuantityBody(BaseModel):
    product_id: str
    quantity: int

class CartVariantBody(BaseModel):
    product_id: str
    color: Optional[str] = None
    size: Optional[str] = None

class ShippingBody(Address):
    same_as_shipping: bool = True
    billing: Optional[Address] = None

class PaymentBody(BaseModel):
    payment_method: Optional[str] = None
    momo_provider: Optional[str] = None
    momo_number: Optional[str] = None

class InitializeBody(BaseModel):
    coupon: Optional[str] = None
    # true: open a hosted Paystack page instead of the inline popup
    redirect: bool = False

class CompleteBody(BaseModel):
    provider_response: Dict[str, Any] = Field(default_factory=dict)
    coupon: Optional[str] = None

class CreateOrderBody(BaseModel):
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str = "paystack"
    coupon: Optional[str] = None
    total_amount: Optional[float] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
    notes: Optional[str] = None

class OrderUpdateBody(BaseModel):
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    order_status: Optional[str] = None

class VerifyPaymentBody(BaseModel):
    reference: str = Field(..., min_length=1)

# ---------------------- Root & Health ----------------------

@router.get("/")
def read_root():
    return {"message": "Storefront API running"}

@router.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"backend": "running", "database": "unavailable", "collections": []}
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "connected"
    except Exception as e:  # report, don't fail the health check
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"error: {str(e)[:80]}"
    return response

# ---------------------- Users ----------------------

@router.post("/users", status_code=201)
def register(body: RegisterBody, request: Request, response: Response, settings: Settings = Depends(get_settings),
             users: UserRepository = Depends(users_repo)):
    user = users.create(body.model_dump())
    user_id = str(user["_id"])
    code = users.set_verification_code(user_id)
    request.app.state.mailer.send_otp(user["email"], user["first_name"], code)
    set_auth_cookie(response, settings, user_id)
    return {
        "user": public_user(user),
        "message": "Registration successful. Please check your email for the verification code.",
    }

@router.post("/users/auth")
def login(body: LoginBody, response: Response, settings: Settings = Depends(get_settings),
          users: UserRepository = Depends(users_repo)):
    user = users.authenticate(body.email, body.password)
    if not user:
        raise AuthenticationError("Invalid email or password")
    user_id = str(user["_id"])
    users.touch_last_login(user_id)
    set_auth_cookie(response, settings, user_id, body.remember_me)
    return {"user": public_user(user)}

@router.post("/users/logout")
def logout(response: Response, settings: Settings = Depends(get_settings)):
    response.delete_cookie(settings.jwt_cookie_name)
    return {"message": "Logged out successfully"}

@router.post("/users/verify-email")
def verify_email(body: OTPVerify, request: Request, user=Depends(current_user),
                 users: UserRepository = Depends(users_repo)):
    already = bool(user.get("is_email_verified"))
    verified = users.verify_email(str(user["_id"]), body.code)
    if not already:
        request.app.state.mailer.send_welcome(verified["email"], verified.get("first_name", ""))
    return {"message": "Email verified successfully", "user": public_user(verified)}

@router.post("/users/resend-otp")
def resend_otp(request: Request, user=Depends(current_user), users: UserRepository = Depends(users_repo)):
    _, code = users.resend_verification_code(str(user["_id"]))
    request.app.state.mailer.send_otp(user["email"], user.get("first_name", ""), code)
    return {"message": "A new verification code has been sent"}

@router.get("/users/verification-status")
def verification_status(user=Depends(current_user), users: UserRepository = Depends(users_repo)):
    return users.verification_status(str(user["_id"]))

@router.post("/users/forgot-password")
def forgot_password(body: ForgotPasswordBody, request: Request, users: UserRepository = Depends(users_repo)):
    user = users.find_by_email(body.email)
    if user and user.get("is_active", True):
        user_id = str(user["_id"])
        token = users.create_password_reset_token(user_id)
        try:
            request.app.state.mailer.send_password_reset(user["email"], user.get("first_name", ""), token)
        except Exception:
            # an undelivered token must not stay usable
            users.clear_reset_token(user_id)
            logger.exception("Password reset mail to user %s failed", user_id)
            raise
    else:
        logger.info("Password reset requested for unknown or inactive account")
    return {"message": "If an account exists for that email, a reset link has been sent"}

@router.get("/users/reset-password/{token}")
def check_reset_token(token: str, users: UserRepository = Depends(users_repo)):
    if not users.find_by_reset_token(token):
        raise ValidationFailed({"token": "Invalid or expired reset token"}, "Invalid or expired reset token")
    return {"valid": True}

@router.post("/users/reset-password/{token}")
def reset_password(token: str, body: ResetPasswordBody, request: Request,
                   users: UserRepository = Depends(users_repo)):
    user = users.find_by_reset_token(token)
    if not user:
        raise ValidationFailed({"token": "Invalid or expired reset token"}, "Invalid or expired reset token")
    users.reset_password(str(user["_id"]), body.password)
    request.app.state.mailer.send_password_reset_confirmation(user["email"], user.get("first_name", ""))
    return {"message": "Password has been reset"}

@router.get("/users/profile")
def get_profile(user=Depends(current_user)):
    return public_user(user)

@router.put("/users/profile")
def update_profile(body: ProfileUpdate, user=Depends(current_user), users: UserRepository = Depends(users_repo)):
    updated = users.update(str(user["_id"]), body.model_dump(exclude_unset=True))
    return public_user(updated)

@router.get("/users")
def list_users(role: Optional[Role] = None, is_active: Optional[bool] = None, search: Optional[str] = None,
               limit: int = 100, offset: int = 0, _=Depends(require_admin),
               users: UserRepository = Depends(users_repo)):
    return users.find_all(role=role, is_active=is_active, search=search, limit=limit, offset=offset)

@router.get("/users/{user_id}")
def get_user(user_id: str, _=Depends(require_admin), users: UserRepository = Depends(users_repo)):
    return public_user(users.get(user_id))

@router.put("/users/{user_id}")
def update_user(user_id: str, body: AdminUserUpdate, _=Depends(require_admin),
                users: UserRepository = Depends(users_repo)):
    return public_user(users.update(user_id, body.model_dump(exclude_unset=True)))

@router.delete("/users/{user_id}")
def delete_user(user_id: str, permanent: bool = False, _=Depends(require_admin),
                users: UserRepository = Depends(users_repo)):
    user = users.get(user_id)
    if user.get("role") == "admin":
        raise PermissionDenied("Cannot delete admin user")
    if permanent:
        users.delete(user_id)
        return {"message": "User removed"}
    users.soft_delete(user_id)
    return {"message": "User deactivated"}

# ---------------------- Products ----------------------

@router.get("/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None, featured: Optional[bool] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  limit: int = 100, offset: int = 0, include_count: bool = False,
                  products: ProductRepository = Depends(products_repo)):
    out: Dict[str, Any] = {
        "products": products.find_all(search, category, featured, min_price, max_price, limit, offset),
    }
    if include_count:
        out["total"] = products.count(search, category, featured, min_price, max_price)
    return out

@router.get("/products/categories")
def list_categories(products: ProductRepository = Depends(products_repo)):
    return products.categories()

@router.get("/products/{pid}")
def get_product(pid: str, products: ProductRepository = Depends(products_repo)):
    return serialize(products.get(pid))

@router.post("/products", status_code=201)
def create_product(body: Product, _=Depends(require_admin), products: ProductRepository = Depends(products_repo)):
    return serialize(products.create(body.model_dump()))

@router.put("/products/{pid}")
def update_product(pid: str, body: ProductUpdate, _=Depends(require_admin),
                   products: ProductRepository = Depends(products_repo)):
    return serialize(products.update(pid, body.model_dump(exclude_unset=True)))

@router.delete("/products/{pid}")
def delete_product(pid: str, _=Depends(require_admin), products: ProductRepository = Depends(products_repo)):
    if not products.delete(pid):
        raise NotFound("Product not found")
    return {"message": "Product removed"}

# ---------------------- Coupons ----------------------

@router.post("/admin/coupons", status_code=201)
def admin_add_coupon(body: Coupon, _=Depends(require_admin), coupons: CouponRepository = Depends(coupons_repo)):
    return serialize(coupons.create(body.model_dump()))

@router.get("/coupons/{code}")
def get_coupon(code: str, coupons: CouponRepository = Depends(coupons_repo)):
    return serialize(active_coupon(coupons, code))

# ---------------------- Store settings ----------------------

def settings_view(request: Request, stored: Dict[str, Any]) -> Dict[str, Any]:
    pricing = store_settings(request).pricing
    return {
        **stored,
        "currency": pricing.currency,
        "tax_rate": float(pricing.tax_rate),
        "free_shipping_threshold": float(pricing.free_shipping_threshold),
        "shipping_cost": float(pricing.flat_shipping_cost),
    }

@router.get("/settings")
def get_store_settings(request: Request, _=Depends(require_admin),
                       store: StoreSettingsRepository = Depends(store_settings_repo)):
    return settings_view(request, store.get_all())

@router.put("/settings")
def update_store_settings(body: StoreSettings, request: Request, _=Depends(require_admin),
                          store: StoreSettingsRepository = Depends(store_settings_repo)):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if "currency" in changes:
        changes["currency"] = changes["currency"].upper()
    stored = store.update(changes)
    return {"message": "Settings updated successfully", "settings": settings_view(request, stored)}

@router.get("/settings/{key}")
def get_store_setting(key: str, _=Depends(require_admin),
                      store: StoreSettingsRepository = Depends(store_settings_repo)):
    if key not in StoreSettings.model_fields:
        raise NotFound("Setting not found")
    return {key: store.get(key)}

@router.delete("/settings/{key}")
def delete_store_setting(key: str, _=Depends(require_admin),
                         store: StoreSettingsRepository = Depends(store_settings_repo)):
    if key not in StoreSettings.model_fields or not store.delete(key):
        raise NotFound("Setting not found")
    return {"message": "Setting deleted successfully"}

# ---------------------- Cart ----------------------

def cart_view(cart: Cart) -> Dict[str, Any]:
    return {
        "items": [line.model_dump(mode="json") for line in cart.lines],
        "item_count": cart.item_count,
        "totals": cart.get_totals().as_dict(),
    }

@router.get("/cart")
def get_cart(request: Request, user=Depends(current_user)):
    return cart_view(user_cart(request, user))

@router.post("/cart/add")
def add_to_cart(body: CartAddBody, request: Request, user=Depends(current_user),
                products: ProductRepository = Depends(products_repo)):
    prod = products.find_by_id(body.product_id)
    if not prod:
        raise NotFound("Product not found")
    cart = user_cart(request, user)
    cart.add_item({
        "product_id": body.product_id,
        "title": prod["title"],
        "unit_price": str(prod["price"]),
        "image": prod.get("image"),
        "variant": {"color": body.color, "size": body.size},
    }, body.quantity)
    return cart_view(cart)

@router.post("/cart/remove")
def remove_from_cart(body: CartProductBody, request: Request, user=Depends(current_user)):
    cart = user_cart(request, user)
    cart.remove_item(body.product_id)
    return cart_view(cart)

@router.post("/cart/quantity")
def update_cart_quantity(body: CartQuantityBody, request: Request, user=Depends(current_user)):
    cart = user_cart(request, user)
    cart.update_quantity(body.product_id, body.quantity)
    return cart_view(cart)

@router.post("/cart/variant")
def update_cart_variant(body: CartVariantBody, request: Request, user=Depends(current_user)):
    cart = user_cart(request, user)
    cart.update_variant(body.product_id, color=body.color, size=body.size)
    return cart_view(cart)

@router.post("/cart/clear")
def clear_cart(request: Request, user=Depends(current_user)):
    cart = user_cart(request, user)
    cart.clear()
    return cart_view(cart)

@router.get("/cart/totals")
def cart_totals(request: Request, coupon: Optional[str] = None, user=Depends(current_user),
                coupons: CouponRepository = Depends(coupons_repo)):
    settings = store_settings(request)
    cart = user_cart(request, user, settings)
    doc = active_coupon(coupons, coupon)
    totals = cart.get_totals(discount=coupon_discount(doc, cart.get_totals().subtotal))
    return {**totals.as_dict(), "currency": settings.pricing.currency,
            "coupon": doc["code"] if doc else None}

# ---------------------- Checkout ----------------------

@router.get("/checkout")
def get_checkout(user=Depends(current_user), db: Database = Depends(get_db)):
    return load_checkout(db, str(user["_id"])).summary()

@router.post("/checkout/shipping")
def checkout_shipping(body: ShippingBody, request: Request, user=Depends(current_user),
                      db: Database = Depends(get_db)):
    user_id = str(user["_id"])
    if user_cart(request, user).is_empty:
        raise ValidationFailed({"cart": "Your cart is empty"})
    session = load_checkout(db, user_id)
    session.step = CheckoutStep.SHIPPING
    session.update_shipping(**body.model_dump(include=set(Address.model_fields)))
    if body.same_as_shipping:
        session.use_shipping_for_billing()
    else:
        session.use_separate_billing(body.billing)
    advance_and_save(db, user_id, session)
    return session.summary()

@router.post("/checkout/payment")
def checkout_payment(body: PaymentBody, user=Depends(current_user), db: Database = Depends(get_db)):
    user_id = str(user["_id"])
    session = load_checkout(db, user_id)
    if session.step == CheckoutStep.SHIPPING:
        raise ValidationFailed({"step": "Please complete your shipping details first"})
    session.step = CheckoutStep.PAYMENT
    if body.payment_method:
        session.select_channel(body.payment_method)
    if body.momo_provider:
        session.select_provider(body.momo_provider)
    if body.momo_number is not None:
        session.set_momo_number(body.momo_number)
    advance_and_save(db, user_id, session)
    return session.summary()

@router.post("/checkout/back")
def checkout_back(user=Depends(current_user), db: Database = Depends(get_db)):
    user_id = str(user["_id"])
    session = load_checkout(db, user_id)
    session.back()
    save_checkout(db, user_id, session)
    return session.summary()

@router.get("/checkout/momo-provider")
def momo_provider(number: str = Query(..., min_length=3)):
    provider = detect_momo_provider(number)
    return {"provider": provider, "name": MOMO_PROVIDERS[provider]["name"] if provider else None}

@router.post("/checkout/initialize")
def checkout_initialize(body: InitializeBody, request: Request, user=Depends(current_user),
                        db: Database = Depends(get_db), coupons: CouponRepository = Depends(coupons_repo)):
    user_id = str(user["_id"])
    settings = store_settings(request)
    cart = user_cart(request, user, settings)
    if cart.is_empty:
        raise ValidationFailed({"cart": "Your cart is empty"})
    session = load_checkout(db, user_id)
    doc = active_coupon(coupons, body.coupon)
    totals = cart.get_totals(discount=coupon_discount(doc, cart.get_totals().subtotal))
    payload = build_transaction_request(session, totals, settings)
    response: Dict[str, Any] = {"paystack": payload, "totals": totals.as_dict()}
    if body.redirect:
        data = request.app.state.paystack.initialize_transaction(
            payload["email"], totals.total, payload["metadata"], reference=payload["ref"],
            currency=settings.pricing.currency)
        response["authorization_url"] = data.get("authorization_url")
        response["access_code"] = data.get("access_code")
    session.freeze_payment(payload["ref"], totals, doc)
    save_checkout(db, user_id, session)
    logger.info("Payment %s initialized for %s minor units", payload["ref"], payload["amount"])
    return response

@router.post("/checkout/complete")
def checkout_complete(body: CompleteBody, request: Request, user=Depends(current_user),
                      db: Database = Depends(get_db), orders: OrderRepository = Depends(orders_repo),
                      coupons: CouponRepository = Depends(coupons_repo)):
    user_id = str(user["_id"])
    settings = store_settings(request)
    session = load_checkout(db, user_id)
    cart = user_cart(request, user, settings)
    # the coupon pinned at initialize wins; a code that lapsed since then is not an error here
    coupon = None if session.coupon else coupons.find_active(body.coupon)
    reconciler = OrderReconciler(request.app.state.paystack, orders, settings)
    try:
        result = reconciler.handle_payment_success(body.provider_response, cart, session, user_id, coupon)
    except StoreError:
        save_checkout(db, user_id, session)
        raise
    db["checkout"].delete_one({"user_id": user_id})
    return {
        "order": serialize(result.order),
        "created": result.created,
        "payment": result.verification.as_dict() if result.verification else None,
    }

@router.post("/checkout/cancel")
def checkout_cancel(request: Request, user=Depends(current_user), db: Database = Depends(get_db),
                    orders: OrderRepository = Depends(orders_repo)):
    user_id = str(user["_id"])
    session = load_checkout(db, user_id)
    OrderReconciler(request.app.state.paystack, orders, request.app.state.settings).handle_payment_cancel(session)
    save_checkout(db, user_id, session)
    return session.summary()

# ---------------------- Orders ----------------------

@router.post("/orders", status_code=201)
def create_order(body: CreateOrderBody, request: Request, user=Depends(current_user),
                 orders: OrderRepository = Depends(orders_repo),
                 products: ProductRepository = Depends(products_repo),
                 coupons: CouponRepository = Depends(coupons_repo)):
    lines: List[CartLine] = []
    items: List[Dict[str, Any]] = []
    for it in body.items:
        prod = products.find_by_id(it.product_id)
        if not prod:
            raise ValidationFailed({"items": f"Product not found: {it.product_id}"})
        line = CartLine(product_id=it.product_id, title=prod["title"], unit_price=Decimal(str(prod["price"])),
                        quantity=it.quantity, variant=it.variant, image=prod.get("image"))
        lines.append(line)
        items.append({**it.model_dump(), "title": line.title, "price": float(line.unit_price),
                      "image": line.image})

    settings = store_settings(request)
    subtotal = compute_totals(lines, settings.pricing).subtotal
    coupon = active_coupon(coupons, body.coupon)
    totals = compute_totals(lines, settings.pricing, discount=coupon_discount(coupon, subtotal))
    if body.total_amount is not None and abs(Decimal(str(body.total_amount)) - totals.total) > TOTAL_TOLERANCE:
        raise ValidationFailed({"total_amount": f"Order total does not match cart contents ({totals.total})"})

    try:
        doc = Order(
            order_number=new_order_number(),
            user_id=str(user["_id"]),
            items=items,
            shipping_address=body.shipping_address,
            billing_address=body.billing_address or body.shipping_address,
            payment_method=body.payment_method,
            shipping_cost=float(totals.shipping),
            tax=float(totals.tax),
            discount=float(totals.discount),
            total_amount=float(totals.total),
            idempotency_key=body.idempotency_key or uuid.uuid4().hex,
            coupon=coupon["code"] if coupon else None,
            notes=body.notes,
        ).model_dump()
    except ValidationError as e:
        raise ValidationFailed({"order": str(e.errors()[0].get("msg", "invalid"))})
    order, created = orders.create(doc)
    return {**serialize(order), "created": created}

@router.get("/orders/myorders")
def my_orders(user=Depends(current_user), orders: OrderRepository = Depends(orders_repo)):
    return [serialize(o) for o in orders.find_by_user(str(user["_id"]))]

@router.get("/orders/statistics")
def order_statistics(_=Depends(require_admin), orders: OrderRepository = Depends(orders_repo)):
    return orders.statistics()

@router.get("/orders")
def list_orders(status: Optional[str] = None, payment_status: Optional[str] = None, user_id: Optional[str] = None,
                search: Optional[str] = None, sort_by: str = "created_at", sort_order: str = "desc",
                page: int = 1, limit: int = 20, _=Depends(require_admin),
                orders: OrderRepository = Depends(orders_repo)):
    result = orders.find_all(status=status, payment_status=payment_status, user_id=user_id, search=search,
                             sort_by=sort_by, sort_order=sort_order, page=page, limit=limit)
    return {"orders": [serialize(o) for o in result["orders"]], "pagination": result["pagination"]}

@router.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(current_user), orders: OrderRepository = Depends(orders_repo)):
    return serialize(owned_order(orders, order_id, user))

@router.put("/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateBody, user=Depends(current_user),
                 orders: OrderRepository = Depends(orders_repo)):
    owned_order(orders, order_id, user)
    data = body.model_dump(exclude_unset=True)
    new_status = data.pop("order_status", None)
    order = None
    if new_status:
        if user.get("role") != "admin":
            raise PermissionDenied("Only admins can change order status")
        order = orders.transition(order_id, new_status)
    if data:
        order = orders.update(order_id, data)
    if order is None:
        raise ValidationFailed({"body": "No valid fields to update"})
    return serialize(order)

@router.delete("/orders/{order_id}")
def delete_order(order_id: str, _=Depends(require_admin), orders: OrderRepository = Depends(orders_repo)):
    orders.delete(order_id)
    return {"message": "Order removed"}

@router.put("/orders/{order_id}/pay")
def pay_order(order_id: str, body: Dict[str, Any], request: Request, user=Depends(current_user),
              orders: OrderRepository = Depends(orders_repo)):
    order = owned_order(orders, order_id, user)
    if order.get("payment_status") == "paid":
        return serialize(order)
    lookup = extract_reference(body)
    if not lookup.found:
        raise PaymentReferenceMissing()
    if orders.find_by_payment_reference(lookup.reference):
        raise PaymentReferenceReused()
    verification = request.app.state.paystack.verify_transaction(lookup.reference)
    if not verification.succeeded:
        raise PaymentVerificationFailed()
    if verification.amount_minor != to_minor_units(order["total_amount"]):
        logger.warning("Payment %s amount %s does not match order %s", lookup.reference,
                       verification.amount_minor, order["order_number"])
        raise PaymentVerificationFailed("Payment amount does not match your order total.")
    paid = orders.mark_paid(order_id, {
        "id": verification.reference,
        "status": verification.status,
        "update_time": now_utc(),
        "email_address": verification.customer.get("email") or user.get("email"),
    })
    logger.info("Order %s paid with reference %s", paid["order_number"], verification.reference)
    return serialize(paid)

@router.put("/orders/{order_id}/deliver")
def deliver_order(order_id: str, _=Depends(require_admin), orders: OrderRepository = Depends(orders_repo)):
    return serialize(orders.transition(order_id, "delivered"))

@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(current_user), orders: OrderRepository = Depends(orders_repo)):
    order = owned_order(orders, order_id, user)
    if user.get("role") != "admin" and order.get("order_status") != "pending":
        raise InvalidStatusTransition("Only pending orders can be cancelled")
    return serialize(orders.transition(order_id, "cancelled"))

# ---------------------- Payments (Paystack) ----------------------

@router.post("/payments/verify-paystack")
def verify_paystack(body: VerifyPaymentBody, request: Request, _=Depends(current_user)):
    verification = request.app.state.paystack.verify_transaction(body.reference)
    if not verification.succeeded:
        raise PaymentVerificationFailed()
    return {"verified": True, "data": verification.as_dict()}

@router.post("/payments/paystack-webhook")
async def paystack_webhook(request: Request):
    raw = await request.body()
    if not request.app.state.paystack.verify_webhook_signature(raw, request.headers.get("x-paystack-signature")):
        raise AuthenticationError("Invalid signature")
    try:
        event = json.loads(raw)
    except ValueError:
        raise ValidationFailed({"body": "Invalid JSON"})
    if event.get("event") != "charge.success":
        return {"received": True}

    data = event.get("data") or {}
    key = (data.get("metadata") or {}).get("idempotency_key")
    orders = OrderRepository(request.app.state.db)
    order = orders.find_by_idempotency_key(key) if key else None
    if not order:
        logger.info("Webhook charge %s has no matching order yet", data.get("reference"))
    elif order.get("payment_status") != "paid" and order.get("order_status") != "cancelled":
        if data.get("amount") == to_minor_units(order["total_amount"]):
            try:
                orders.mark_paid(str(order["_id"]), {
                    "id": str(data.get("reference")),
                    "status": "success",
                    "update_time": now_utc(),
                    "email_address": (data.get("customer") or {}).get("email"),
                })
                logger.info("Order %s marked paid from webhook", order["order_number"])
            except PaymentReferenceReused:
                logger.warning("Webhook charge %s already pays another order, order %s left unpaid",
                               data.get("reference"), order["order_number"])
        else:
            logger.warning("Webhook charge %s amount does not match order %s",
                           data.get("reference"), order["order_number"])
    return {"received": True}

# ---------------------- OAuth ----------------------

@router.get("/auth/status")
def oauth_status(request: Request):
    return {"providers": request.app.state.oauth.configured_providers()}

def oauth_failure(settings: Settings, provider: str) -> RedirectResponse:
    response = RedirectResponse(f"{settings.frontend_url}/login?error={provider}_failed", status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE)
    return response

@router.get("/auth/{provider}")
def oauth_start(provider: str, request: Request, settings: Settings = Depends(get_settings)):
    if provider not in PROVIDERS:
        raise NotFound("Unknown login provider")
    client: OAuthClient = request.app.state.oauth
    if not client.is_configured(provider):
        logger.warning("%s login requested but not configured", provider)
        return oauth_failure(settings, provider)
    state = secrets.token_urlsafe(16)
    response = RedirectResponse(client.authorization_url(provider, state), status_code=302)
    response.set_cookie(OAUTH_STATE_COOKIE, state, max_age=600, httponly=True,
                        secure=settings.cookie_secure, samesite="lax")
    return response

@router.get("/auth/{provider}/callback")
def oauth_callback(provider: str, request: Request, code: Optional[str] = None, state: Optional[str] = None,
                   error: Optional[str] = None, settings: Settings = Depends(get_settings),
                   users: UserRepository = Depends(users_repo)):
    if provider not in PROVIDERS:
        raise NotFound("Unknown login provider")
    expected = request.cookies.get(OAUTH_STATE_COOKIE)
    if error or not code or not state or not expected or not secrets.compare_digest(state, expected):
        logger.warning("%s callback rejected (error=%s)", provider, error)
        return oauth_failure(settings, provider)
    client: OAuthClient = request.app.state.oauth
    try:
        profile = client.fetch_profile(provider, client.exchange_code(provider, code))
        user = users.find_or_create_oauth_user(profile)
    except StoreError as e:
        logger.warning("%s login failed: %s", provider, e)
        return oauth_failure(settings, provider)

    data = public_user(user)
    data["is_email_verified"] = True
    for key in ("created_at", "updated_at", "last_login"):
        data.pop(key, None)
    payload = auth.sign_payload(settings, data)
    response = RedirectResponse(f"{settings.frontend_url}/oauth/callback?success=true&payload={payload}",
                                status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE)
    set_auth_cookie(response, settings, str(user["_id"]), remember_me=True)
    return response

# ---------------------- App ----------------------

def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               paystack: Optional[PaystackClient] = None, oauth: Optional[OAuthClient] = None,
               mailer=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.db is None:
            app.state.db = connect(settings)
        ensure_indexes(app.state.db)
        yield

    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database
    app.state.paystack = paystack or PaystackClient(settings)
    app.state.oauth = oauth or OAuthClient(settings)
    app.state.mailer = mailer or LogMailer()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    return app

# served with `uvicorn main:create_app --factory`; nothing is built at import time
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
