from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .roles import AppRole

# ---- Catalog ----

class Product(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = None
    discount: Optional[float] = None
    images: Optional[List[str]] = None
    category: str = ""
    category_id: Optional[str] = None
    rating: Optional[float] = None
    reviews: Optional[int] = None
    stock: Optional[int] = None
    featured: Optional[bool] = False
    trending: Optional[bool] = False
    is_active: Optional[bool] = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ProductInput(BaseModel):
    """Fields accepted when creating a product."""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: List[str] = []
    category: str = Field(..., min_length=1)
    category_id: Optional[str] = None
    stock: int = Field(0, ge=0)
    featured: bool = False
    trending: bool = False
    is_active: bool = True

class ProductUpdate(BaseModel):
    """Partial product update; only fields that were sent are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: Optional[List[str]] = None
    category: Optional[str] = Field(None, min_length=1)
    category_id: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    featured: Optional[bool] = None
    trending: Optional[bool] = None
    is_active: Optional[bool] = None

class Category(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    slug: str
    image: Optional[str] = None
    product_count: Optional[int] = None
    created_at: Optional[datetime] = None

class CategoryInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = None  # Generated from name when omitted
    image: Optional[str] = None

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = None
    image: Optional[str] = None

# ---- Cart ----

class CartItem(BaseModel):
    product: Product
    quantity: int = Field(..., ge=1)

class CartTotals(BaseModel):
    subtotal: float
    delivery_fee: float
    total: float
    free_delivery: bool
    free_delivery_remaining: float  # How much more to spend for free delivery

class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class CartItemUpdate(BaseModel):
    quantity: int  # Values below 1 remove the line

class CartResponse(BaseModel):
    cart_id: str
    items: List[CartItem] = []
    total_items: int = 0
    totals: CartTotals
    message: Optional[str] = None

# ---- Orders ----

OrderStatus = Literal["placed", "packed", "shipped", "delivered", "cancelled"]

class ItemCustomization(BaseModel):
    image: Optional[str] = None
    text: str = ""
    quoted_price: Optional[float] = None

class OrderItem(BaseModel):
    product_id: str
    product_name: str
    product_image: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    customization: Optional[ItemCustomization] = None

class CustomerInfo(BaseModel):
    """Delivery details collected at checkout."""
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    pincode: str = Field(..., pattern=r"^[0-9]{6}$")

class CheckoutRequest(BaseModel):
    customer: CustomerInfo

class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_number: str
    user_id: Optional[str] = None
    items: List[OrderItem]
    total: float
    status: OrderStatus
    customer_name: str
    customer_phone: str
    customer_address: str
    customer_city: str
    customer_state: str
    customer_pincode: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class OrderPriceQuote(BaseModel):
    price: float = Field(..., gt=0)

class CustomizationContact(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=20)

class CustomizationOrderContact(CustomizationContact):
    address: str = Field(..., min_length=1, max_length=500)
    street: str = ""
    pincode: str = Field(..., pattern=r"^[0-9]{6}$")

class CustomizationOrderRequest(BaseModel):
    """Embroidery order placed straight from a product page, priced later."""
    product_id: str
    product_name: str
    image: Optional[str] = None
    text: str = Field(..., min_length=1, max_length=500)
    contact: CustomizationOrderContact

# ---- Customization requests ----

CustomizationStatus = Literal["pending", "reviewed", "approved", "rejected"]

class CustomizationSubmit(BaseModel):
    product_id: str
    product_name: str
    image: Optional[str] = None
    text: str = Field(..., min_length=1, max_length=500)
    contact: CustomizationContact

class CustomizationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    product_id: str
    product_name: str
    image: Optional[str] = None
    text: str
    contact: CustomizationContact
    user_id: Optional[str] = None
    status: CustomizationStatus = "pending"
    admin_notes: Optional[str] = None
    quoted_price: Optional[float] = None
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class CustomizationUpdate(BaseModel):
    status: Optional[CustomizationStatus] = None
    admin_notes: Optional[str] = None
    quoted_price: Optional[float] = Field(None, ge=0)

# ---- Notifications ----

NotificationType = Literal["info", "success", "warning", "error", "price_update"]

class NotificationMetadata(BaseModel):
    order_id: Optional[str] = None
    old_price: Optional[float] = None
    new_price: Optional[float] = None
    product_name: Optional[str] = None

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    title: str
    message: str
    type: NotificationType = "info"
    is_global: bool = False
    read: bool = False
    created_at: Optional[datetime] = None
    metadata: Optional[NotificationMetadata] = None

class NotificationCreate(BaseModel):
    user_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    type: NotificationType = "info"
    is_global: bool = False

class GlobalNotificationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    type: Literal["info", "success", "warning", "error"] = "info"

# ---- Wishlist ----

class WishlistItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    product_id: str
    created_at: Optional[datetime] = None

class WishlistEntry(BaseModel):
    id: str
    product_id: str
    created_at: Optional[datetime] = None
    product: Optional[Product] = None  # None when the product was deleted

# ---- Accounts & roles ----

class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., min_length=1, max_length=100)

class SignInRequest(BaseModel):
    email: EmailStr
    password: str

class UserInfo(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None

class SessionResponse(BaseModel):
    access_token: Optional[str] = None  # Only returned by sign-in
    user: UserInfo
    role: AppRole
    is_admin: bool
    expires_at: Optional[datetime] = None

class StaffProfile(BaseModel):
    email: Optional[str] = None
    full_name: Optional[str] = None

class UserWithRole(BaseModel):
    id: str
    user_id: str
    role: AppRole
    created_at: Optional[datetime] = None
    profile: Optional[StaffProfile] = None

class RoleAssignment(BaseModel):
    email: EmailStr
    role: AppRole

# ---- Admin dashboard ----

class DailyRevenue(BaseModel):
    name: str  # Weekday label (Mon..Sun)
    date: str  # ISO date
    revenue: float
    orders: int

class StatusCount(BaseModel):
    name: str
    value: int

class CategoryCount(BaseModel):
    name: str
    products: int

class AdminStats(BaseModel):
    total_revenue: float
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_products: int
    low_stock_products: int
    total_categories: int
    staff_users: int
    customization_requests: int
    revenue_chart: List[DailyRevenue] = []
    order_status: List[StatusCount] = []
    category_products: List[CategoryCount] = []

# ---- Misc ----

class ResponsiveImage(BaseModel):
    src: str
    srcset: str
    sizes: str

class UploadResult(BaseModel):
    url: str

class DeleteResult(BaseModel):
    deleted: bool
