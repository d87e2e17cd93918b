"""
Catering Back-Office Schemas

Each collection model below describes one MongoDB collection. The collection
name is the lowercase of the class name (e.g., Customer -> "customer",
MealOrder -> "meal_order"). The *In models are request bodies.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

PHONE_PATTERN = r"^01\d{9}$"

MealItem = Literal["lunch", "dinner", "lunch&dinner"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
OrderPaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["bank", "bkash", "nagad", "cash"]
OffDay = Literal["sa", "su", "mo", "tu", "we", "th", "fr"]


# ------------------ Collections ------------------

class Customer(BaseModel):
    name: str = Field(..., min_length=3, max_length=50, description="Customer full name")
    phone: str = Field(..., pattern=PHONE_PATTERN, description="Unique phone number")
    address: str = Field(..., max_length=200)
    balance: float = Field(0.0, description="Outstanding amount; negative when overpaid")
    paymentStatus: Literal["paid", "partially_paid", "pending"] = "paid"
    accessKey: Optional[str] = Field(None, description="sha256 of the current access key")
    accessKeyExpiresAt: Optional[datetime] = None
    active: bool = True
    defaultItem: Optional[MealItem] = None
    defaultPrice: Optional[float] = Field(None, gt=0)
    defaultQuantity: Optional[int] = Field(None, ge=1)
    defaultOffDays: List[OffDay] = Field(default_factory=list)
    paymentSystem: Literal["weekly", "monthly"] = "weekly"


class Discount(BaseModel):
    type: Literal["percentage", "flat"]
    value: float = Field(..., ge=0)
    expiresAt: datetime


class ProductUnit(BaseModel):
    unitType: Literal["kg", "piece"] = "piece"
    originalPrice: float = Field(..., gt=0, description="Price before discount")
    costPerItem: Optional[float] = Field(None, ge=0)
    averageWeightPerFruit: Optional[str] = None


class Product(BaseModel):
    slug: str = Field(..., pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$")
    name: str = Field(..., min_length=3)
    title: Optional[str] = None
    category: Optional[str] = None
    media: List[str] = Field(default_factory=list, description="Image URLs from the upload service")
    unit: ProductUnit
    stockQuantity: int = Field(0, ge=0)
    lowStockThreshold: Optional[int] = Field(None, ge=0, description="Defaults to DEFAULT_LOW_STOCK_THRESHOLD")
    status: Literal["inStock", "lowStock", "outOfStock"] = "outOfStock"
    discount: Optional[Discount] = None
    visibility: bool = True
    isPopular: bool = False


class OrderItem(BaseModel):
    product: str = Field(..., description="Product ID")
    name: str = Field(..., description="Product name at time of order")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of order")
    total: float = Field(..., ge=0)


class Order(BaseModel):
    customer: str
    customerName: str
    customerPhone: str
    items: List[OrderItem]
    deliveryCost: float = Field(0.0, ge=0)
    amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    paymentStatus: OrderPaymentStatus = "pending"
    address: str
    stockReleased: bool = False


class MealOrder(BaseModel):
    customer: str
    customerName: str
    customerPhone: str
    item: MealItem
    price: float = Field(..., gt=0)
    quantity: int = Field(..., ge=1)
    total: float
    date: datetime
    note: Optional[str] = None


class TransactionDetails(BaseModel):
    transactionId: Optional[str] = None
    bankName: Optional[str] = None
    bkashNumber: Optional[str] = None
    nagadNumber: Optional[str] = None
    cashReceivedBy: Optional[str] = None


class Payment(BaseModel):
    customer: str
    amount: float = Field(..., gt=0)
    method: PaymentMethod
    transactionDetails: TransactionDetails
    note: Optional[str] = None


# ------------------ Request bodies ------------------

class CustomerIn(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: str = Field(..., max_length=200)
    defaultItem: Optional[MealItem] = None
    defaultPrice: Optional[float] = Field(None, gt=0)
    defaultQuantity: Optional[int] = Field(None, ge=1)
    defaultOffDays: List[OffDay] = Field(default_factory=list)
    paymentSystem: Literal["weekly", "monthly"] = "weekly"


class CustomerUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(None, max_length=200)
    active: Optional[bool] = None
    defaultItem: Optional[MealItem] = None
    defaultPrice: Optional[float] = Field(None, gt=0)
    defaultQuantity: Optional[int] = Field(None, ge=1)
    defaultOffDays: Optional[List[OffDay]] = None
    paymentSystem: Optional[Literal["weekly", "monthly"]] = None


class ProductIn(BaseModel):
    slug: str = Field(..., pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$")
    name: str = Field(..., min_length=3)
    title: Optional[str] = None
    category: Optional[str] = None
    media: List[str] = Field(default_factory=list)
    unit: ProductUnit
    stockQuantity: int = Field(0, ge=0)
    lowStockThreshold: Optional[int] = Field(None, ge=0)
    discount: Optional[Discount] = None
    visibility: bool = True
    isPopular: bool = False


class StockUpdateIn(BaseModel):
    stockQuantity: Optional[int] = Field(None, ge=0)
    lowStockThreshold: Optional[int] = Field(None, ge=0)


class OrderItemIn(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)


class OrderIn(BaseModel):
    items: List[OrderItemIn]
    name: str = Field(..., min_length=3, max_length=50)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: str = Field(..., max_length=200)
    deliveryCost: float = Field(0.0, ge=0)


class OrderUpdateIn(BaseModel):
    status: Optional[OrderStatus] = None
    paymentStatus: Optional[OrderPaymentStatus] = None
    address: Optional[str] = Field(None, max_length=200)
    amount: Optional[float] = Field(None, ge=0)


class OrderItemQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1)


class MealOrderIn(BaseModel):
    customerId: str
    date: str = Field(..., description="yyyy-MM-dd")
    item: Optional[MealItem] = None
    price: Optional[float] = Field(None, gt=0)
    quantity: Optional[int] = Field(None, ge=1)
    note: Optional[str] = None


class MealOrderUpdateIn(BaseModel):
    item: Optional[MealItem] = None
    price: Optional[float] = Field(None, gt=0)
    quantity: Optional[int] = Field(None, ge=1)
    note: Optional[str] = None


class PaymentIn(BaseModel):
    customerId: str
    amount: float = Field(..., gt=0)
    method: PaymentMethod
    transactionId: Optional[str] = None
    bankName: Optional[str] = None
    bkashNumber: Optional[str] = None
    nagadNumber: Optional[str] = None
    cashReceivedBy: Optional[str] = None
    note: Optional[str] = None


class PaymentUpdateIn(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    note: Optional[str] = None
