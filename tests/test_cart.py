"""Tests for cart maintenance and checkout from the cart."""
from decimal import Decimal

from storefront import models


def test_get_cart_creates_empty_cart(client, customer, auth_headers):
    response = client.get("/cart", headers=auth_headers(customer))

    assert response.status_code == 200
    assert response.json()["user_id"] == customer.id
    assert response.json()["items"] == []


def test_add_merges_lines(client, customer, make_product, auth_headers):
    product = make_product(stock=5)
    headers = auth_headers(customer)

    client.post("/cart/items", json={"product_id": product.id, "quantity": 2}, headers=headers)
    body = client.post("/cart/items", json={"product_id": product.id, "quantity": 3}, headers=headers).json()

    assert len(body["items"]) == 1
    assert body["items"][0]["quantity"] == 5
    assert body["items"][0]["product"]["stock"] == 5


def test_add_beyond_stock(client, customer, make_product, auth_headers):
    product = make_product(stock=2)
    headers = auth_headers(customer)
    client.post("/cart/items", json={"product_id": product.id, "quantity": 2}, headers=headers)

    response = client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=headers)

    assert response.status_code == 400
    assert client.get("/cart", headers=headers).json()["items"][0]["quantity"] == 2


def test_add_unknown_product(client, customer, auth_headers):
    response = client.post("/cart/items", json={"product_id": 77, "quantity": 1}, headers=auth_headers(customer))

    assert response.status_code == 404
    assert response.json() == {"detail": "Product 77 not found"}


def test_update_remove_and_clear(client, customer, make_product, auth_headers):
    a = make_product(stock=10)
    b = make_product(stock=10)
    headers = auth_headers(customer)
    client.post("/cart/items", json={"product_id": a.id}, headers=headers)
    client.post("/cart/items", json={"product_id": b.id}, headers=headers)

    updated = client.patch(f"/cart/items/{a.id}", json={"quantity": 4}, headers=headers).json()
    assert {i["product_id"]: i["quantity"] for i in updated["items"]} == {a.id: 4, b.id: 1}

    removed = client.delete(f"/cart/items/{b.id}", headers=headers).json()
    assert [i["product_id"] for i in removed["items"]] == [a.id]

    assert client.delete(f"/cart/items/{b.id}", headers=headers).status_code == 404
    assert client.delete("/cart", headers=headers).json()["items"] == []


def test_checkout_from_cart_over_http(client, db_session, customer, make_product, auth_headers):
    a = make_product(price="20000", stock=10)
    b = make_product(price="15000", stock=10)
    headers = auth_headers(customer)
    client.post("/cart/items", json={"product_id": a.id, "quantity": 2}, headers=headers)
    client.post("/cart/items", json={"product_id": b.id, "quantity": 1}, headers=headers)

    response = client.post("/orders", json={"shipping_address": "5 Nguyen Hue"}, headers=headers)

    assert response.status_code == 201
    assert Decimal(response.json()["total"]) == Decimal("55000")
    assert client.get("/cart", headers=headers).json()["items"] == []

    db_session.expire_all()
    assert db_session.get(models.Product, a.id).stock == 10
