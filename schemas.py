"""
Database Schemas for the Mobile Shop API

Each stored model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Order -> collection "order"

Request models used by the routes live at the bottom of the file.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

Role = Literal["user", "admin", "super_admin"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]

# Core domain models

class Address(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    zip_code: str
    country: str
    full_name: Optional[str] = None
    phone: Optional[str] = None

class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    role: Role = "user"
    is_active: bool = True

class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str
    images: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_by: Optional[str] = None

class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)

class Order(BaseModel):
    order_number: Optional[str] = None
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    shipping_address: Address
    billing_address: Optional[Address] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None

# Lightweight request models

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class ProductIn(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str
    images: List[str] = Field(default_factory=list)
    is_active: bool = True

class ProductPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None

class OrderCreate(BaseModel):
    # emptiness and a missing address are reported by the order service
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    notes: Optional[str] = None
    payment_method: Optional[str] = "card"

class OrderPatch(BaseModel):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

class UserPatch(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None

class PaymentIntentRequest(BaseModel):
    order_id: Optional[str] = None

class ConfirmPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    payment_intent_id: Optional[str] = None

class RefundRequest(BaseModel):
    order_id: Optional[str] = None
    reason: Optional[str] = None
    amount: Optional[float] = None
