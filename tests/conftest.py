"""
Shared pytest fixtures for the storefront tests.

Provides an in-memory SQLite database, a FastAPI test client wired to it,
a fake MoMo gateway, and factories for users, products, tokens and signed
IPN callbacks.
"""
import json
from decimal import Decimal
from typing import Callable, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool

from storefront import models
from storefront.clients.momo_client import MomoClient
from storefront.config import MomoSettings, Settings
from storefront.database import Database
from storefront.main import create_app
from storefront.signature import CALLBACK_FIELDS, Signer, ordered_fields

JWT_SECRET = "test-jwt-secret"
FIXED_NOW = 1700000000.5  # epoch seconds used by the MoMo client clock

MOMO_SETTINGS = MomoSettings(
    endpoint="https://momo.test/v2/gateway/api/create",
    partner_code="MOMOTEST",
    access_key="test-access-key",
    secret_key="test-momo-secret",
    redirect_url="https://shop.test/payment/result",
    ipn_url="https://shop.test/payments/momo/callback",
)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        jwt_secret_key=JWT_SECRET,
        log_level="DEBUG",
        momo=MOMO_SETTINGS,
    )


@pytest.fixture
def database():
    """Single-connection in-memory SQLite shared by the app and the test."""
    db = Database(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def db_session(database):
    session = database.session()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# MOMO FIXTURES
# ============================================================================


class FakeMomoGateway:
    """httpx MockTransport handler standing in for the MoMo create endpoint."""

    def __init__(self):
        self.requests: List[dict] = []
        self.status_code = 200
        self.error: Optional[Exception] = None
        self.raw_body: Optional[str] = None

    def response_for(self, body: dict) -> dict:
        return {
            "partnerCode": body["partnerCode"],
            "orderId": body["orderId"],
            "requestId": body["requestId"],
            "amount": int(body["amount"]),
            "responseTime": 1700000000500,
            "message": "Successful.",
            "resultCode": 0,
            "payUrl": f"https://test-payment.momo.vn/v2/gateway/pay?t={body['requestId']}",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.error is not None:
            raise self.error
        if self.raw_body is not None:
            return httpx.Response(self.status_code, text=self.raw_body)
        return httpx.Response(self.status_code, json=self.response_for(body))


@pytest.fixture
def momo_gateway() -> FakeMomoGateway:
    return FakeMomoGateway()


@pytest.fixture
def momo_client(momo_gateway) -> MomoClient:
    return MomoClient(
        MOMO_SETTINGS,
        transport=httpx.MockTransport(momo_gateway),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def signer() -> Signer:
    return Signer(MOMO_SETTINGS.secret_key)


@pytest.fixture
def make_callback(signer) -> Callable[..., dict]:
    """Build a correctly signed IPN payload for an order."""

    def _make(order_id: int, amount, result_code: int = 0, trans_id: int = 4088878653, **overrides) -> dict:
        request_id = f"{order_id}-1700000000123"
        payload = {
            "partnerCode": MOMO_SETTINGS.partner_code,
            "orderId": request_id,
            "requestId": request_id,
            "amount": int(amount),
            "orderInfo": f"Pay for Order #{order_id}",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Successful." if result_code == 0 else "Transaction denied by user.",
            "payType": "qr",
            "responseTime": 1700000060000,
            "extraData": "",
        }
        payload.update(overrides)
        values = dict(payload, accessKey=MOMO_SETTINGS.access_key)
        payload["signature"] = signer.sign(ordered_fields(CALLBACK_FIELDS, values))
        return payload

    return _make


# ============================================================================
# APP FIXTURES
# ============================================================================


@pytest.fixture
def client(settings, database, momo_client):
    app = create_app(settings=settings, database=database, momo_client=momo_client)
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# DATA FIXTURES
# ============================================================================


def _add_user(db_session, user_id: int, role: str = "user") -> models.User:
    user = models.User(
        id=user_id,
        full_name=f"User {user_id}",
        email=f"user{user_id}@example.com",
        phone="0900000000",
        role=role,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def customer(db_session) -> models.User:
    return _add_user(db_session, 1)


@pytest.fixture
def other_customer(db_session) -> models.User:
    return _add_user(db_session, 2)


@pytest.fixture
def admin_user(db_session) -> models.User:
    return _add_user(db_session, 99, role="admin")


@pytest.fixture
def make_product(db_session) -> Callable[..., models.Product]:
    counter = {"n": 0}

    def _make(price="50000", stock: int = 100, name: Optional[str] = None) -> models.Product:
        counter["n"] += 1
        product = models.Product(
            name=name or f"Product {counter['n']}",
            slug=f"product-{counter['n']}",
            price=Decimal(price),
            stock=stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_token() -> Callable[[models.User], str]:
    def _make(user: models.User) -> str:
        return jwt.encode(
            {"sub": str(user.id), "email": user.email, "role": user.role},
            JWT_SECRET,
            algorithm="HS256",
        )

    return _make


@pytest.fixture
def auth_headers(make_token) -> Callable[[models.User], dict]:
    def _headers(user: models.User) -> dict:
        return {"Authorization": f"Bearer {make_token(user)}"}

    return _headers


@pytest.fixture
def fill_cart(db_session) -> Callable[..., models.Cart]:
    """Put (product, quantity) pairs into a user's cart."""

    def _fill(user: models.User, *lines) -> models.Cart:
        cart = models.Cart(user_id=user.id)
        db_session.add(cart)
        db_session.flush()
        for product, quantity in lines:
            db_session.add(models.CartItem(cart_id=cart.id, product_id=product.id, quantity=quantity))
        db_session.commit()
        return cart

    return _fill
