"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
Money is stored as float rounded to cents; it is computed as Decimal.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

Role = Literal["customer", "admin"]
PaymentStatus = Literal["pending", "paid", "failed"]
OrderStatus = Literal["pending", "processing", "delivered", "cancelled"]


class Address(BaseModel):
    """Shipping or billing address as collected by the checkout wizard."""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = "Ghana"


class User(BaseModel):
    first_name: str = Field(..., max_length=50)
    last_name: str = Field("", max_length=50)
    email: EmailStr
    password_hash: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    role: Role = "customer"
    is_active: bool = True
    is_email_verified: bool = False
    verification_attempts: int = 0
    profile_picture: Optional[str] = None
    google_id: Optional[str] = None
    facebook_id: Optional[str] = None


class Product(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    tag: Optional[str] = None
    sizes: List[str] = []
    colors: List[str] = []
    material: Optional[str] = None
    featured: bool = False
    rating: float = 0.0
    reviews: int = 0
    stock: int = Field(0, ge=0)


class ProductUpdate(BaseModel):
    """Partial product edit; fields left out keep their stored value."""
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    tag: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    material: Optional[str] = None
    featured: Optional[bool] = None
    rating: Optional[float] = None
    reviews: Optional[int] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)


class Coupon(BaseModel):
    code: str
    type: Literal["percent", "flat"]
    value: float = Field(..., gt=0)
    min_order: float = 0
    active: bool = True


class Variant(BaseModel):
    color: Optional[str] = None
    size: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    variant: Variant = Field(default_factory=Variant)


class PaymentResult(BaseModel):
    id: str
    status: str
    update_time: datetime
    email_address: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address
    payment_method: str = "pending"
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total_amount: float = Field(..., gt=0)
    payment_result: Optional[PaymentResult] = None
    idempotency_key: str
    coupon: Optional[str] = None
    notes: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    items: List[Dict[str, Any]] = []


class StoreSettings(BaseModel):
    """
    Admin-editable store settings, kept as one document in "setting".
    Pricing fields left unset fall back to the environment's PricingConfig.
    """
    site_name: Optional[str] = Field(None, max_length=100)
    admin_email: Optional[EmailStr] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    tax_rate: Optional[float] = Field(None, ge=0, le=1)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    shipping_cost: Optional[float] = Field(None, ge=0)
    notifications_enabled: Optional[bool] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    theme: Optional[Literal["light", "dark"]] = None
