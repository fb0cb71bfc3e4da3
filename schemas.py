"""
Database Schemas for the Storefront API

Each Pydantic model below describes a MongoDB collection (or a document
embedded in one). Collection name is the lowercase of the class name:
Product -> "product", Order -> "order", User -> "user", Settings -> "settings".

Fields are snake_case in Python and camelCase on the wire and in Mongo.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )


# Enumerations

class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    COD = "cod"
    CARD = "card"
    JAZZ_CASH = "jazz_cash"
    EASYPESA = "easypesa"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    MODERATOR = "moderator"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


class ShippingStatus(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class StockOperation(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class ItemKind(str, Enum):
    CATALOG = "catalog"
    ADHOC = "adhoc"


# Product

class ProductImages(CamelModel):
    main: Optional[str] = None
    gallery: List[str] = Field(default_factory=list)


class ProductSEO(CamelModel):
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    slug: Optional[str] = None


class ProductAnalytics(CamelModel):
    views: int = 0
    orders: int = 0
    rating: float = Field(0, ge=0, le=5)
    review_count: int = 0


class Product(CamelModel):
    name: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = Field(..., min_length=2, max_length=100)
    packaging: str = Field(..., min_length=2, max_length=100)
    currency: str = Field("USD", min_length=3, max_length=3)
    status: ProductStatus = ProductStatus.ACTIVE
    min_order: int = Field(1, ge=1)
    image_url: Optional[str] = None
    images: ProductImages = Field(default_factory=ProductImages)
    specifications: Dict[str, Any] = Field(default_factory=dict)
    benefits: List[str] = Field(default_factory=list)
    applications: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    sku: Optional[str] = Field(None, min_length=3, max_length=50)
    barcode: Optional[str] = Field(None, min_length=8, max_length=20)
    seo: ProductSEO = Field(default_factory=ProductSEO)
    analytics: ProductAnalytics = Field(default_factory=ProductAnalytics)


class ProductUpdate(CamelModel):
    """Editable product fields; anything left unset is not touched."""

    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=2, max_length=100)
    packaging: Optional[str] = Field(None, min_length=2, max_length=100)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    status: Optional[ProductStatus] = None
    min_order: Optional[int] = Field(None, ge=1)
    image_url: Optional[str] = None
    images: Optional[ProductImages] = None
    specifications: Optional[Dict[str, Any]] = None
    benefits: Optional[List[str]] = None
    applications: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    sku: Optional[str] = Field(None, min_length=3, max_length=50)
    barcode: Optional[str] = Field(None, min_length=8, max_length=20)
    seo: Optional[ProductSEO] = None


class StockUpdateRequest(CamelModel):
    quantity: int = Field(..., ge=1)
    operation: StockOperation


# Orders

class CustomerInfo(CamelModel):
    first_name: str = Field(..., min_length=2, max_length=100)
    last_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=10, max_length=20)
    address: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    zip_code: str = Field(..., min_length=3, max_length=20)
    country: str = Field(..., min_length=2, max_length=100)

    @field_validator("first_name", "last_name", "phone", "address", "city", "state", "zip_code", "country",
                     mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()


class OrderItemIn(CamelModel):
    """One requested line: a catalog reference or a client-described item."""

    product_id: Optional[str] = None
    id: Optional[str] = None
    kind: Optional[ItemKind] = None
    quantity: int = Field(..., ge=1)
    price: Optional[float] = Field(None, ge=0)
    name: Optional[str] = None
    currency: Optional[str] = None
    image: Optional[str] = None
    sku: Optional[str] = None
    specifications: Optional[Dict[str, Any]] = None

    @property
    def reference(self) -> Optional[str]:
        return self.product_id or self.id


class PaymentIn(CamelModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None


class ShippingIn(CamelModel):
    method: ShippingMethod = ShippingMethod.STANDARD
    cost: Optional[float] = Field(None, ge=0)


class OrderNotes(CamelModel):
    customer: Optional[str] = None
    internal: Optional[str] = None


class OrderCreateRequest(CamelModel):
    customer_info: CustomerInfo
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment: PaymentIn
    shipping: ShippingIn = Field(default_factory=ShippingIn)
    notes: Optional[OrderNotes] = None
    priority: Priority = Priority.NORMAL


class OrderItem(CamelModel):
    """Immutable snapshot of a line item, taken when the order is placed."""

    product_id: Any
    kind: ItemKind
    name: str
    price: float = Field(..., ge=0)
    currency: str
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    sku: Optional[str] = None
    specifications: Optional[Dict[str, Any]] = None


class ShippingInfo(CamelModel):
    method: ShippingMethod
    cost: float = Field(..., ge=0)
    status: ShippingStatus = ShippingStatus.PENDING
    estimated_delivery: Optional[datetime] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class PaymentInfo(CamelModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    amount: float = Field(..., ge=0)
    currency: str
    transaction_id: Optional[str] = None


class AdminNote(CamelModel):
    note: str
    admin_id: Any
    timestamp: datetime


class Order(CamelModel):
    order_number: str
    customer_id: Any
    customer_info: CustomerInfo
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: ShippingInfo
    payment: PaymentInfo
    total_amount: float = Field(..., ge=0)
    currency: str
    order_status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: Optional[OrderNotes] = None
    tags: List[str] = Field(default_factory=list)
    priority: Priority = Priority.NORMAL
    estimated_delivery: Optional[datetime] = None
    admin_notes: List[AdminNote] = Field(default_factory=list)


class CancelOrderRequest(CamelModel):
    reason: Optional[str] = Field(None, min_length=5, max_length=500)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, v):
        return v.strip() if isinstance(v, str) else v


class OrderStatusUpdate(CamelModel):
    status: OrderStatus
    note: Optional[str] = Field(None, min_length=5, max_length=500)


class PaymentStatusUpdate(CamelModel):
    payment_status: PaymentStatus
    note: Optional[str] = Field(None, min_length=5, max_length=500)


# Users

class PostalAddress(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class UserProfile(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: PostalAddress = Field(default_factory=PostalAddress)


class User(CamelModel):
    email: EmailStr
    password_hash: str
    display_name: str
    profile: UserProfile = Field(default_factory=UserProfile)
    role: UserRole = UserRole.USER
    is_admin: bool = False
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_code: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_code: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None


class ProfileUpdate(CamelModel):
    """Self-service profile edit; only the fields sent are changed."""

    display_name: Optional[str] = Field(None, min_length=2, max_length=100)
    first_name: Optional[str] = Field(None, min_length=2, max_length=100)
    last_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, min_length=10, max_length=20)
    address: Optional[str] = Field(None, min_length=5, max_length=200)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=100)
    zip_code: Optional[str] = Field(None, min_length=3, max_length=20)
    country: Optional[str] = Field(None, min_length=2, max_length=100)

    @field_validator("*", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    def to_update(self) -> Dict[str, Any]:
        """Dotted $set paths for the fields that were sent."""
        paths = {
            "display_name": "displayName",
            "first_name": "profile.firstName",
            "last_name": "profile.lastName",
            "phone": "profile.phone",
            "address": "profile.address.street",
            "city": "profile.address.city",
            "state": "profile.address.state",
            "zip_code": "profile.address.zipCode",
            "country": "profile.address.country",
        }
        return {paths[name]: value for name, value in self.model_dump(exclude_unset=True).items()
                if value is not None}


class PasswordChange(CamelModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class AdminUserUpdate(CamelModel):
    role: Optional[UserRole] = None
    is_admin: Optional[bool] = None
    is_active: Optional[bool] = None


# Settings (singleton)

class DiscountSettings(CamelModel):
    enabled: bool = True
    default_discount_percentage: float = Field(20, ge=0, le=100)
    minimum_discount_amount: float = Field(100, ge=0)
    maximum_discount_amount: float = Field(5000, ge=0)
    discount_currency: str = "PKR"
    show_original_price: bool = True
    show_discount_badge: bool = True
    discount_badge_text: str = "SAVE"


class ShippingZone(CamelModel):
    id: str
    name: str
    countries: List[str] = Field(default_factory=list)
    shipping_charge: float = Field(..., ge=0)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)


class Settings(CamelModel):
    minimum_order_amount: float = Field(10000, ge=0)
    shipping_charge: float = Field(300, ge=0)
    free_shipping_currency: str = "PKR"
    free_shipping_enabled: bool = True
    discount_settings: DiscountSettings = Field(default_factory=DiscountSettings)
    shipping_zones: List[ShippingZone] = Field(default_factory=list)


class SettingsUpdate(CamelModel):
    minimum_order_amount: Optional[float] = Field(None, ge=0)
    shipping_charge: Optional[float] = Field(None, ge=0)
    free_shipping_currency: Optional[str] = None
    free_shipping_enabled: Optional[bool] = None
    discount_settings: Optional[DiscountSettings] = None
    shipping_zones: Optional[List[ShippingZone]] = None
