"""
Database Schemas for the Food Ordering Marketplace

Each stored model maps to a MongoDB collection (lowercased class name)
- Account -> account
- Restaurant -> restaurant
- Product -> product
- Order -> order

API request/response models are exposed in camelCase (totalAmount,
payment.transactionId, ...) while documents keep snake_case field names.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal['customer', 'merchant', 'admin']
OrderStatus = Literal['pending', 'preparing', 'on_the_way', 'delivered', 'cancelled']
PaymentStatus = Literal['pending', 'paid', 'failed', 'refunded', 'cancelled']
PaymentProvider = Literal['stripe', 'cod']


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------- Stored documents ----------------------
class Account(BaseModel):
    """Customer, merchant or admin login
    password_hash is never returned by the API
    """
    name: str = Field(..., min_length=2, max_length=60)
    email: EmailStr
    password_hash: str
    role: Role = 'customer'


class Restaurant(BaseModel):
    name: str = Field(..., max_length=160)
    owner_id: str = Field(..., description="Links to account._id (merchant role)")
    is_approved: bool = False
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    address: str = ''


class Product(BaseModel):
    restaurant_id: str
    name: str = Field(..., max_length=160)
    price: float = Field(..., ge=0)
    category: str = 'general'
    image_url: str = ''
    description: str = ''
    is_available: bool = True


class LineItem(BaseModel):
    """Snapshot of a product taken when the order is placed"""
    product_id: str
    restaurant_id: str
    name: str
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class Payment(BaseModel):
    provider: PaymentProvider = 'stripe'
    status: PaymentStatus = 'pending'
    transaction_id: Optional[str] = None


class Address(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class Order(BaseModel):
    customer_id: str
    items: List[LineItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = 'pending'
    payment: Payment = Field(default_factory=Payment)
    shipping_address: Address = Field(default_factory=Address)
    cancelled_at: Optional[datetime] = None
    version: int = 0


# ---------------------- Identity ----------------------
class CurrentUser(BaseModel):
    id: str
    role: Role
    email: str
    name: str

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'


class RegisterBody(ApiModel):
    name: str = Field(..., min_length=2, max_length=60)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal['customer', 'merchant'] = 'customer'


class LoginBody(ApiModel):
    email: EmailStr
    password: str


class AccountOut(ApiModel):
    id: str
    name: str
    email: str
    role: Role


class AuthOut(ApiModel):
    token: str
    user: AccountOut


# ---------------------- Catalog ----------------------
class RestaurantCreate(ApiModel):
    """Admin-side create; the owner must be a merchant account"""
    name: str = Field(..., min_length=1, max_length=160)
    owner_id: str
    is_approved: bool = False
    address: str = ''
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class RestaurantSelfCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=160)
    address: str = ''
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class RestaurantUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=160)
    address: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class ApproveBody(ApiModel):
    is_approved: bool = True


class OwnerSummary(ApiModel):
    id: str
    name: str
    email: str
    role: Role


class RestaurantOut(ApiModel):
    id: str
    name: str
    owner_id: str
    is_approved: bool
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: str = ''
    owner: Optional[OwnerSummary] = None


class ProductCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=160)
    price: float = Field(..., ge=0)
    category: str = 'general'
    image_url: str = ''
    description: str = ''
    is_available: bool = True
    restaurant_id: Optional[str] = None


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=160)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    is_available: Optional[bool] = None


class ProductOut(ApiModel):
    id: str
    restaurant_id: str
    name: str
    price: float
    category: str
    image_url: str = ''
    description: str = ''
    is_available: bool


class Pagination(ApiModel):
    total: int
    page: int
    pages: int
    limit: int


class ProductPage(ApiModel):
    items: List[ProductOut]
    pagination: Pagination


class PriceRange(ApiModel):
    min: float
    max: float


class ProductMeta(ApiModel):
    categories: List[str]
    price: PriceRange


# ---------------------- Orders & payments ----------------------
class OrderItemIn(ApiModel):
    product_id: str
    qty: int


class OrderCreate(ApiModel):
    items: List[OrderItemIn]
    shipping_address: Address = Field(default_factory=Address)


class StatusBody(ApiModel):
    status: str


class PayBody(ApiModel):
    transaction_id: Optional[str] = None


class LineItemOut(ApiModel):
    product_id: str
    restaurant_id: str
    name: str
    unit_price: float
    quantity: int


class PaymentOut(ApiModel):
    provider: str
    status: PaymentStatus
    transaction_id: Optional[str] = None


class AddressOut(ApiModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class OrderOut(ApiModel):
    id: str
    customer_id: str
    items: List[LineItemOut]
    total_amount: float
    status: OrderStatus
    payment: PaymentOut
    shipping_address: AddressOut = Field(default_factory=AddressOut)
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0


class IntentBody(ApiModel):
    order_id: str


class IntentOut(ApiModel):
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
