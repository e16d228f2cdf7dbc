"""
SQLAlchemy ORM models for the storefront service.

Defines the database schema for catalog, cart, order and payment tables.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, Text, Enum,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentMethod(str, enum.Enum):
    MOMO = "MOMO"


class User(Base):
    """
    User model, owned by the user directory; only the fields orders need.

    Attributes:
        id (int): Primary key
        full_name (str): Display name
        email (str): Email address (unique)
        phone (str): Contact phone (optional)
        role (str): "admin" or "user"
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(String, default="user", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """
    Catalog product with its current price and available stock.

    Attributes:
        id (int): Primary key
        name (str): Product name
        slug (str): URL slug
        price (Decimal): Current unit price
        stock (int): Units available for sale
        images (str): Serialized image list (optional)
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    images = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("CartItem", back_populates="cart", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("cart_id", "product_id", name="uq_cart_product"),)

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


class Order(Base):
    """
    Order model representing a customer order.

    Attributes:
        id (int): Primary key
        user_id (int): Owner of the order
        total (Decimal): Sum of captured line prices times quantities
        status (OrderStatus): Lifecycle status, PENDING on creation
        shipping_address (str): Free-form or JSON-serialized address
        note (str): Customer note (optional)
        created_at (datetime): Timestamp when the order was created
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(
        Enum(OrderStatus, native_enum=False, length=20),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    shipping_address = Column(Text, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    user = relationship("User")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    payment = relationship("Payment", back_populates="order", uselist=False)


class OrderItem(Base):
    """
    Order line. Price is captured from the catalog when the order is created
    and never changes afterwards.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Payment(Base):
    """
    Payment attached one-to-one to an order.

    Attributes:
        id (int): Primary key
        order_id (int): Order being paid (unique)
        method (PaymentMethod): Wallet provider
        amount (Decimal): Equal to the order total
        status (PaymentStatus): PENDING until the provider reports back
        transaction_code (str): Provider transaction id, set on success
        paid_at (datetime): Set on success
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    method = Column(Enum(PaymentMethod, native_enum=False, length=20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=20),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    transaction_code = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="payment")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (int): Foreign key to the order
        event_type (str): created, cancelled, paid, payment_failed, status_overridden
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (int): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
