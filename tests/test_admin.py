"""Tests for admin order management."""
import pytest

from storefront import crud, models, schemas
from storefront.exceptions import NotFound
from storefront.models import OrderStatus, PaymentStatus


@pytest.fixture
def order(db_session, customer, make_product):
    product = make_product(stock=10)
    return crud.create_order(
        db_session, customer.id, "addr",
        items=[schemas.OrderItemCreate(product_id=product.id, quantity=3)],
    )


def test_admin_routes_require_admin(client, customer, order, auth_headers):
    response = client.get("/admin/orders", headers=auth_headers(customer))

    assert response.status_code == 403
    assert response.json() == {"detail": "Admin privileges required"}


def test_admin_lists_all_orders(client, db_session, admin_user, other_customer, order, make_product, auth_headers):
    product = make_product()
    crud.create_order(
        db_session, other_customer.id, "addr",
        items=[schemas.OrderItemCreate(product_id=product.id, quantity=1)],
    )

    body = client.get("/admin/orders?limit=1", headers=auth_headers(admin_user)).json()

    assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}
    assert body["orders"][0]["user"]["email"] == other_customer.email

    pending = client.get("/admin/orders?status=PAID", headers=auth_headers(admin_user)).json()
    assert pending["pagination"]["total"] == 0

    future = client.get("/admin/orders?from_date=2999-01-01T00:00:00", headers=auth_headers(admin_user)).json()
    assert future["orders"] == []


def test_admin_reads_any_order(client, admin_user, order, auth_headers):
    response = client.get(f"/admin/orders/{order.id}", headers=auth_headers(admin_user))

    assert response.status_code == 200
    assert response.json()["id"] == order.id
    assert client.get("/admin/orders/9999", headers=auth_headers(admin_user)).status_code == 404


def test_override_is_audited_and_syncs_payment(client, db_session, admin_user, order, auth_headers, caplog):
    crud.get_or_create_payment(db_session, db_session.get(models.Order, order.id))
    stock_before = db_session.get(models.Product, order.items[0].product_id).stock

    response = client.patch(
        f"/admin/orders/{order.id}/status", json={"status": "COMPLETED"}, headers=auth_headers(admin_user)
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "COMPLETED"
    assert body["payment"]["status"] == "SUCCESS"
    assert body["payment"]["paid_at"] is not None
    assert "Invalid status transition: PENDING -> COMPLETED" in caplog.text

    events = crud.get_order_events(db_session, order.id)
    assert events[-1].event_type == "status_overridden"
    assert (events[-1].old_value, events[-1].new_value, events[-1].user_id) == ("PENDING", "COMPLETED", admin_user.id)

    db_session.expire_all()
    assert db_session.get(models.Product, order.items[0].product_id).stock == stock_before


def test_override_to_cancelled_fails_payment(db_session, admin_user, order):
    crud.get_or_create_payment(db_session, db_session.get(models.Order, order.id))

    updated = crud.update_order_status(db_session, order.id, OrderStatus.CANCELLED, admin_user.id)

    assert updated.status == OrderStatus.CANCELLED
    assert updated.payment.status == PaymentStatus.FAILED


def test_override_rejects_unknown_status(client, admin_user, order, auth_headers):
    response = client.patch(
        f"/admin/orders/{order.id}/status", json={"status": "LOST"}, headers=auth_headers(admin_user)
    )

    assert response.status_code == 422


def test_delete_order_removes_dependents(client, db_session, admin_user, order, auth_headers):
    order_id = order.id
    crud.get_or_create_payment(db_session, db_session.get(models.Order, order_id))

    response = client.delete(f"/admin/orders/{order_id}", headers=auth_headers(admin_user))

    assert response.status_code == 204
    db_session.expire_all()
    assert db_session.query(models.Order).count() == 0
    assert db_session.query(models.OrderItem).count() == 0
    assert db_session.query(models.Payment).count() == 0
    assert db_session.query(models.OrderEvent).count() == 0

    with pytest.raises(NotFound):
        crud.delete_order(db_session, order_id)
