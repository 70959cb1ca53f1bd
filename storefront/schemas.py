from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import List, Optional, Literal

OrderStatus = Literal['pending', 'paid', 'shipped', 'delivered', 'cancelled']
AdminOrderStatus = Literal['paid', 'shipped', 'delivered', 'cancelled']
TutorialLevel = Literal['Beginner', 'Intermediate', 'Advanced']


# Collection: products
class Product(BaseModel):
    id: str = Field(..., min_length=3)
    name: str = Field(..., min_length=3)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = None
    description: Optional[str] = None
    stock: int = Field(0, ge=0)
    image: str = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = None
    description: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = Field(None, min_length=1)


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


# Collection: cart (one line per user and product)
class CartItem(BaseModel):
    id: str  # product id
    name: str
    price: float
    image: str
    quantity: int = Field(..., ge=1)


class CartSummary(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    cart_count: int = 0
    cart_subtotal: float = 0
    shipping_cost: float = 0
    cart_total: float = 0


class AddToCartRequest(BaseModel):
    product_id: str


# Collection: addresses
class AddressIn(BaseModel):
    name: str = Field(..., min_length=2)
    phone: str = Field(..., min_length=10)
    address_line1: str = Field(..., min_length=5)
    address_line2: Optional[str] = ''
    city: str = Field(..., min_length=2)
    state: str = Field(..., min_length=2)
    postal_code: str = Field(..., min_length=5)
    country: str = Field(..., min_length=2)


class Address(AddressIn):
    id: str


# Collection: orders / order_items
class ShippingAddress(AddressIn):
    """Copy of an address taken when the order was committed."""


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    name: str
    price: float
    quantity: int
    image: str


class Order(BaseModel):
    id: str
    user_id: str
    created_at: datetime
    total: float
    status: OrderStatus
    payment_id: Optional[str] = None
    shipping_address: ShippingAddress


class OrderStatusUpdate(BaseModel):
    status: AdminOrderStatus


# Payment gateway
class PaymentOrderRequest(BaseModel):
    amount: int = Field(..., gt=0)  # minor units
    currency: str = Field(..., min_length=1)


class CheckoutStartRequest(BaseModel):
    address_id: Optional[str] = None


class CheckoutConfirmRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class CheckoutCancelRequest(BaseModel):
    razorpay_order_id: str


# Collections: tutorial_chapters / tutorials
class ChapterIn(BaseModel):
    title: str = Field(..., min_length=3)
    order: int = Field(0, ge=0)


class TutorialIn(BaseModel):
    title: str = Field(..., min_length=3)
    description: str = Field(..., min_length=10)
    level: TutorialLevel
    duration: str = Field(..., min_length=3)
    image_id: str = Field(..., min_length=1)
    video_id: Optional[str] = ''
    order: int = Field(0, ge=0)
    code: Optional[str] = None
    transcript: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('video_id')
    @classmethod
    def video_is_url(cls, v):
        if v and not v.startswith(('http://', 'https://')):
            raise ValueError('Please enter a valid URL.')
        return v


# Collection: reviews
class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10)


# Collection: contact_messages
class ContactMessageIn(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    message: str = Field(..., min_length=10)


# Auth
class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    display_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenRequest(BaseModel):
    token: str


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


class ProfileUpdate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=80)


class AuthResponse(BaseModel):
    user_id: str
    display_name: str
    email: EmailStr
    token: str
