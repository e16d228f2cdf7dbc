"""
Pydantic schemas for request/response validation in the storefront service.

Each operation has an explicit input model; request bodies are validated here
before they reach the order and payment logic.
"""
from datetime import datetime
from typing import Optional, List, Any, Dict
from decimal import Decimal
from pydantic import BaseModel, Field

from .models import OrderStatus, PaymentStatus, PaymentMethod


class OrderItemCreate(BaseModel):
    """Schema for a requested order line."""
    product_id: int = Field(..., description="Catalog product ID")
    quantity: int = Field(..., gt=0, description="Quantity ordered")


class OrderCreate(BaseModel):
    """
    Schema for creating a new order.

    When ``items`` is omitted the order is built from the user's cart.
    ``total_amount`` is what the client believes the total is; it is only
    compared against the computed total and never stored.
    """
    shipping_address: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    note: Optional[str] = None
    items: Optional[List[OrderItemCreate]] = None
    total_amount: Optional[Decimal] = None


class ProductSummary(BaseModel):
    id: int
    name: str
    slug: str
    images: Optional[str] = None

    class Config:
        from_attributes = True


class CartProduct(ProductSummary):
    price: Decimal
    stock: int


class OrderItem(BaseModel):
    """Schema for an order line in responses."""
    id: int
    product_id: int
    quantity: int
    price: Decimal
    product: Optional[ProductSummary] = None

    class Config:
        from_attributes = True


class Payment(BaseModel):
    id: int
    method: PaymentMethod
    amount: Decimal
    status: PaymentStatus
    transaction_code: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserSummary(BaseModel):
    id: int
    full_name: str
    email: str
    phone: Optional[str] = None

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses, includes lines, payment and owner summary.

    Attributes:
        id (int): Order's unique identifier
        user_id (int): ID of the user who placed the order
        total (Decimal): Total amount of the order
        status (OrderStatus): Order status
        items (List[OrderItem]): Order line items
        created_at (datetime): When the order was created
    """
    id: int
    user_id: int
    total: Decimal
    status: OrderStatus
    shipping_address: str
    note: Optional[str] = None
    created_at: datetime
    items: List[OrderItem] = Field(default_factory=list)
    payment: Optional[Payment] = None
    user: Optional[UserSummary] = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderList(BaseModel):
    orders: List[Order]
    pagination: Pagination


class OrderStatusUpdate(BaseModel):
    """Schema for an admin status overwrite."""
    status: OrderStatus


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (int): Order identifier
        event_type (str): Type of event (created, cancelled, paid, ...)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: int
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    order_id: int


class PaymentInitResponse(BaseModel):
    status: str = "success"
    data: Dict[str, Any]


class MomoCallback(BaseModel):
    """
    IPN payload posted by MoMo once a payment settles.

    Field names follow the provider's JSON keys.
    """
    partnerCode: str
    orderId: str
    requestId: str
    amount: int
    orderInfo: str = ""
    orderType: str = ""
    transId: int
    resultCode: int
    message: str = ""
    payType: str = ""
    responseTime: int
    extraData: str = ""
    signature: str


class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(default=1, gt=0)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0)


class CartItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    product: Optional[CartProduct] = None

    class Config:
        from_attributes = True


class Cart(BaseModel):
    id: int
    user_id: int
    items: List[CartItem] = Field(default_factory=list)

    class Config:
        from_attributes = True
