"""
Database Schemas for LocalLens

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name by convention in this project (Shop -> "shop").

Collections:
- User: customers, retailers and admins, linked to an external auth identity
- Address: saved addresses; at most one default per user
- Shop: retailer storefronts with a location and a verification state
- Product: shop catalogue entries, optionally with variants
- Order: purchases with line items snapshotting product/shop data
- Reservation: pickup holds at a single shop
- Banner: admin-managed home page banners, manually ordered
- Coupon, Review, Notification, Wishlist, Cart, BusinessHours: supporting records

Nested models without a collection of their own (snapshots, status history
entries, payment details) are embedded in their parent document.

References to other documents are stored as string ids.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "retailer", "admin"]
VerificationStatus = Literal["pending", "verified", "rejected"]

OrderStatus = Literal["pending", "processing", "ready_for_pickup", "completed", "canceled", "refunded"]
ReservationStatus = Literal["pending", "confirmed", "ready", "completed", "cancelled", "expired"]

ORDER_STATUSES = get_args(OrderStatus)
RESERVATION_STATUSES = get_args(ReservationStatus)


# ---------- Users ----------
class User(BaseModel):
    firebase_uid: str = Field(..., description="Stable id from the identity provider")
    email: EmailStr = Field(..., description="Email address")
    display_name: str = Field(..., description="Name shown in the app")
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None
    role: Role = Field("customer", description="Role: customer, retailer or admin")
    is_active: bool = Field(True, description="Whether user may sign in")
    primary_address_id: Optional[str] = Field(None, description="Id of the default address")
    address_ids: List[str] = Field(default_factory=list)


class Address(BaseModel):
    user_id: str
    label: Optional[str] = Field(None, description="e.g., Home, Work")
    name: str
    phone_number: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"
    is_default: bool = False


# ---------- Shops ----------
class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")


class ShopAddress(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"


class Shop(BaseModel):
    owner_id: str = Field(..., description="Reference to user _id")
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    logo: Optional[str] = Field(None, description="Logo URL in media storage")
    contact_email: EmailStr
    contact_phone: str
    website: Optional[str] = None
    address: ShopAddress
    location: GeoPoint
    categories: List[str] = Field(default_factory=list)
    registration_number: Optional[str] = None
    gstin: Optional[str] = None
    verification_status: VerificationStatus = "pending"
    is_verified: bool = Field(False, description="Mirror of verification_status == verified")
    verification_date: Optional[datetime] = None
    verification_document: Optional[str] = Field(None, description="Document URL in media storage")
    is_active: bool = True
    avg_rating: float = Field(0, ge=0, le=5)
    total_ratings: int = 0


class DayHours(BaseModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    open: Optional[str] = Field(None, description="HH:MM")
    close: Optional[str] = Field(None, description="HH:MM")
    is_closed: bool = False


class BusinessHours(BaseModel):
    shop_id: str
    days: List[DayHours] = Field(default_factory=list)
    special_closures: List[datetime] = Field(default_factory=list)


# ---------- Products ----------
class ProductImage(BaseModel):
    url: str
    storage_id: Optional[str] = Field(None, description="Media storage id, used for cleanup")
    alt: Optional[str] = None
    is_default: bool = False


class ProductVariant(BaseModel):
    variant_id: str
    attributes: Dict[str, str] = Field(..., description="e.g. {'color': 'red', 'size': 'M'}")
    price: float = Field(..., ge=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    available_quantity: int = Field(0, ge=0)
    sku: Optional[str] = None
    is_active: bool = True


class PreBookConfig(BaseModel):
    lead_time: Optional[int] = Field(None, description="Hours of notice required")
    max_pre_book_quantity: Optional[int] = None
    pre_book_fee: float = 0


class Product(BaseModel):
    shop_id: str
    name: str
    description: str
    short_description: Optional[str] = Field(None, max_length=200)
    category: str
    subcategory: Optional[str] = None
    base_price: float = Field(..., ge=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    tax: float = Field(0, ge=0, description="Tax percentage")
    currency: str = "INR"
    images: List[ProductImage] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    brand: Optional[str] = None
    sku: Optional[str] = None
    available_quantity: int = Field(0, ge=0)
    is_active: bool = True
    is_available: bool = True
    is_pre_bookable: bool = False
    pre_book_config: Optional[PreBookConfig] = None
    is_pre_buyable: bool = False
    pre_buy_config: Optional[PreBookConfig] = None
    has_variants: bool = False
    variants: List[ProductVariant] = Field(default_factory=list)


# ---------- Snapshots ----------
class ProductSnapshot(BaseModel):
    name: str
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None


class VariantSnapshot(BaseModel):
    attributes: Dict[str, str] = Field(default_factory=dict)
    sku: Optional[str] = None


class ShopSnapshot(BaseModel):
    name: str
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    address: Optional[ShopAddress] = None


# ---------- Orders ----------
class StatusUpdate(BaseModel):
    status: str
    timestamp: datetime
    notes: Optional[str] = None
    updated_by: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str = Field(..., description="ID of the product")
    product_snapshot: ProductSnapshot = Field(..., description="Product data at purchase time")
    variant_id: Optional[str] = None
    variant_snapshot: Optional[VariantSnapshot] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Selling price at purchase time")
    total_price: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shop_id: str
    shop_snapshot: ShopSnapshot


class PaymentDetails(BaseModel):
    transaction_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    method: Optional[str] = None
    status: str = Field("pending", description="pending, completed, failed")
    paid_at: Optional[datetime] = None


class ShippingAddress(BaseModel):
    name: str
    phone_number: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"


class Order(BaseModel):
    user_id: str = Field(..., description="ID of the customer")
    order_number: str = Field(..., description="LL-YYYYMMDD-NNNNN")
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: float = Field(0, ge=0)
    taxes: float = Field(0, ge=0)
    shipping_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Literal["cod", "online", "upi", "card"]
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    order_status: OrderStatus = "pending"
    status_updates: List[StatusUpdate] = Field(default_factory=list)
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None


# ---------- Reservations ----------
class PickupTimeSlot(BaseModel):
    start: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM")
    end: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM")


class ContactInfo(BaseModel):
    name: str
    phone_number: str
    email: EmailStr


class ReservationItem(BaseModel):
    product_id: str
    product_snapshot: ProductSnapshot
    variant_id: Optional[str] = None
    variant_snapshot: Optional[VariantSnapshot] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)


class Reservation(BaseModel):
    user_id: str
    shop_id: str
    shop_snapshot: ShopSnapshot
    reservation_number: str = Field(..., description="LLR-YYYYMMDD-NNNNN")
    items: List[ReservationItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    reservation_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    pickup_date: datetime
    pickup_time_slot: PickupTimeSlot
    expiry_date: datetime
    status: ReservationStatus = "pending"
    status_updates: List[StatusUpdate] = Field(default_factory=list)
    payment_status: Literal["unpaid", "partial", "paid"] = "unpaid"
    contact_info: ContactInfo
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None


# ---------- Marketing & engagement ----------
class Banner(BaseModel):
    title: str
    description: Optional[str] = None
    image_url: str
    image_storage_id: Optional[str] = None
    link: Optional[str] = None
    is_active: bool = True
    order: int = Field(0, description="Position in the carousel, ascending")


class Coupon(BaseModel):
    code: str
    discount_type: Literal["percent", "flat"]
    value: float = Field(..., ge=0)
    min_order_value: float = 0
    max_discount: Optional[float] = None
    shop_id: Optional[str] = Field(None, description="Restrict to a shop, platform-wide if empty")
    valid_until: Optional[datetime] = None
    is_active: bool = True


class Review(BaseModel):
    user_id: str
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    approved: bool = Field(False, description="Admin moderated flag")


class Notification(BaseModel):
    user_id: str
    title: str
    message: str
    type: Literal["order", "reservation", "shop", "promotion", "system"] = "system"
    reference_id: Optional[str] = None
    read: bool = False


class Wishlist(BaseModel):
    user_id: str
    name: str = "My Wishlist"
    product_ids: List[str] = Field(default_factory=list)
    is_public: bool = False


class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    shop_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    coupon_code: Optional[str] = None
