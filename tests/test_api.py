import hashlib
import hmac
import importlib
import json
from urllib.parse import parse_qs, urlparse

import jwt
import pytest

from repositories import ProductRepository


@pytest.fixture
def product(db):
    return ProductRepository(db).create({"title": "Kente Shirt", "price": 30.0, "category": "Shirts",
                                         "image": "shirt.png"})


def fill_checkout(client, headers, product, shipping_fields, add_to_cart=True, **initialize):
    """Cart of 2 x 30.00 (total 66.00) sitting on the review step, payment initialized."""
    if add_to_cart:
        client.post("/cart/add", json={"product_id": str(product["_id"]), "quantity": 2}, headers=headers)
    assert client.post("/checkout/shipping", json=shipping_fields, headers=headers).status_code == 200
    r = client.post("/checkout/payment", json={"payment_method": "mobile_money", "momo_number": "0241234567"},
                    headers=headers)
    assert r.json()["step"] == "review"
    return client.post("/checkout/initialize", json=initialize, headers=headers).json()["paystack"]


def create_order(client, headers, product, shipping_fields, **extra):
    body = {
        "items": [{"product_id": str(product["_id"]), "title": "Kente Shirt", "price": 30.0, "quantity": 2}],
        "shipping_address": shipping_fields,
        **extra,
    }
    return client.post("/orders", json=body, headers=headers)


# ---------------------- Root & Health ----------------------

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["database"] == "connected"


def test_importing_main_builds_no_app(monkeypatch):
    import main

    monkeypatch.setattr(main.Settings, "from_env", classmethod(lambda cls: pytest.fail("env read on import")))
    importlib.reload(main)
    assert not hasattr(main, "app")
    assert callable(main.create_app)


# ---------------------- Users ----------------------

def test_register_verify_and_logout(client, mailer):
    r = client.post("/users", json={"first_name": "Ama", "last_name": "Mensah", "email": "ama@example.com",
                                    "password": "s3cret-pass"})
    assert r.status_code == 201
    assert r.json()["user"]["is_email_verified"] is False
    assert "password_hash" not in r.json()["user"]
    assert "jwt" in r.cookies

    _, email, code = mailer.last("otp")
    assert email == "ama@example.com"
    r = client.post("/users/verify-email", json={"code": code})
    assert r.status_code == 200
    assert r.json()["user"]["is_email_verified"] is True
    assert mailer.last("welcome")[1] == "ama@example.com"

    client.post("/users/logout")
    assert client.get("/users/profile").status_code == 401


def test_duplicate_registration(client):
    body = {"first_name": "Ama", "email": "ama@example.com", "password": "s3cret-pass"}
    client.post("/users", json=body)

    r = client.post("/users", json={**body, "email": "AMA@example.com"})

    assert r.status_code == 400
    assert r.json()["detail"] == "Email already exists"


def test_login(client, make_user):
    make_user(email="kofi@example.com")

    assert client.post("/users/auth", json={"email": "kofi@example.com", "password": "wrong"}).status_code == 401
    r = client.post("/users/auth", json={"email": "KOFI@example.com", "password": "s3cret-pass"})
    assert r.status_code == 200
    assert client.get("/users/profile").json()["email"] == "kofi@example.com"


def test_wrong_otp_and_status(client, make_user, users):
    user, headers = make_user()
    code = users.set_verification_code(str(user["_id"]))
    wrong = "000000" if code != "000000" else "111111"

    r = client.post("/users/verify-email", json={"code": wrong}, headers=headers)

    assert r.status_code == 400
    assert client.get("/users/verification-status", headers=headers).json() == {
        "is_email_verified": False, "attempts_remaining": 4}


def test_resend_otp_issues_new_code(client, make_user, mailer):
    _, headers = make_user()

    assert client.post("/users/resend-otp", headers=headers).status_code == 200
    code = mailer.last("otp")[2]
    assert client.post("/users/verify-email", json={"code": code}, headers=headers).status_code == 200


def test_password_reset_flow(client, make_user, mailer):
    make_user(email="esi@example.com")

    r = client.post("/users/forgot-password", json={"email": "esi@example.com"})
    assert r.status_code == 200
    token = mailer.last("reset")[2]
    assert client.get(f"/users/reset-password/{token}").json() == {"valid": True}

    r = client.post(f"/users/reset-password/{token}", json={"password": "new-pass-123"})
    assert r.status_code == 200
    assert client.get(f"/users/reset-password/{token}").status_code == 422
    assert client.post("/users/auth", json={"email": "esi@example.com", "password": "new-pass-123"}).status_code == 200


def test_forgot_password_does_not_reveal_accounts(client, mailer):
    r = client.post("/users/forgot-password", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert mailer.sent == []


def test_failed_reset_mail_voids_token(client, make_user, mailer, db, monkeypatch):
    make_user(email="esi@example.com")

    def undeliverable(email, first_name, token):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(mailer, "send_password_reset", undeliverable)

    with pytest.raises(RuntimeError):
        client.post("/users/forgot-password", json={"email": "esi@example.com"})
    assert "reset_password_token" not in db["user"].find_one({"email": "esi@example.com"})


def test_profile_update_cannot_escalate_role(client, make_user):
    user, headers = make_user()

    r = client.put("/users/profile", json={"city": "Kumasi", "role": "admin"}, headers=headers)

    assert r.status_code == 200
    assert r.json()["city"] == "Kumasi"
    assert r.json()["role"] == "customer"


def test_admin_user_management(client, make_user):
    customer, customer_headers = make_user()
    admin, admin_headers = make_user(role="admin")

    assert client.get("/users", headers=customer_headers).status_code == 403
    assert len(client.get("/users", params={"limit": 5000}, headers=admin_headers).json()) == 2

    r = client.put(f"/users/{customer['_id']}", json={"role": "admin"}, headers=admin_headers)
    assert r.json()["is_admin"] is True

    assert client.delete(f"/users/{admin['_id']}", headers=admin_headers).status_code == 403


def test_deactivated_user_is_locked_out(client, make_user):
    customer, customer_headers = make_user()
    _, admin_headers = make_user(role="admin")

    assert client.delete(f"/users/{customer['_id']}", headers=admin_headers).status_code == 200
    assert client.get("/users/profile", headers=customer_headers).status_code == 401


def test_permanent_user_delete(client, make_user, db):
    customer, _ = make_user()
    _, admin_headers = make_user(role="admin")

    r = client.delete(f"/users/{customer['_id']}", params={"permanent": True}, headers=admin_headers)

    assert r.json() == {"message": "User removed"}
    assert db["user"].find_one({"_id": customer["_id"]}) is None


# ---------------------- Products & Coupons ----------------------

def test_product_admin_and_catalogue(client, make_user):
    _, customer = make_user()
    _, admin = make_user(role="admin")
    body = {"title": "Kente Cap", "price": 15.0, "category": "Hats"}

    assert client.post("/products", json=body, headers=customer).status_code == 403
    created = client.post("/products", json=body, headers=admin).json()
    client.post("/products", json={"title": "Sandal", "price": 40.0, "category": "Shoes"}, headers=admin)

    r = client.get("/products", params={"search": "kente", "include_count": True})
    assert [p["title"] for p in r.json()["products"]] == ["Kente Cap"]
    assert r.json()["total"] == 1
    assert client.get("/products/categories").json() == ["Hats", "Shoes"]

    r = client.put(f"/products/{created['id']}", json={"price": 12.0}, headers=admin)
    assert r.json()["price"] == 12.0
    assert client.delete(f"/products/{created['id']}", headers=admin).status_code == 200
    assert client.get(f"/products/{created['id']}").status_code == 404


def test_coupons(client, make_user, product):
    _, customer = make_user()
    _, admin = make_user(role="admin")
    coupon = {"code": "save10", "type": "percent", "value": 10}

    assert client.post("/admin/coupons", json=coupon, headers=customer).status_code == 403
    assert client.post("/admin/coupons", json=coupon, headers=admin).status_code == 201
    assert client.get("/coupons/SAVE10").json()["code"] == "SAVE10"
    assert client.get("/coupons/nope").status_code == 404

    client.post("/cart/add", json={"product_id": str(product["_id"]), "quantity": 2}, headers=customer)
    totals = client.get("/cart/totals", params={"coupon": "save10"}, headers=customer).json()
    assert totals["discount"] == 6.0
    assert totals["total"] == 60.0
    assert totals["currency"] == "GHS"


def test_product_update_is_validated(client, make_user, product):
    _, admin = make_user(role="admin")

    r = client.put(f"/products/{product['_id']}", json={"price": -5}, headers=admin)

    assert r.status_code == 422
    assert client.get(f"/products/{product['_id']}").json()["price"] == 30.0
    client.post("/cart/add", json={"product_id": str(product["_id"])}, headers=admin)
    assert client.get("/cart", headers=admin).json()["totals"]["subtotal"] == 30.0


def test_store_settings_drive_cart_pricing(client, make_user, product):
    _, customer = make_user()
    _, admin = make_user(role="admin")
    client.post("/cart/add", json={"product_id": str(product["_id"]), "quantity": 2}, headers=customer)

    assert client.get("/settings", headers=customer).status_code == 403
    assert client.put("/settings", json={"tax_rate": 2}, headers=admin).status_code == 422
    assert client.put("/settings", json={}, headers=admin).status_code == 422

    r = client.put("/settings", json={"tax_rate": 0.2, "currency": "usd", "site_name": "Kente House"},
                   headers=admin)
    assert r.status_code == 200
    assert r.json()["settings"]["tax_rate"] == 0.2
    totals = client.get("/cart/totals", headers=customer).json()
    assert (totals["tax"], totals["total"], totals["currency"]) == (12.0, 72.0, "USD")
    assert client.get("/settings/site_name", headers=admin).json() == {"site_name": "Kente House"}
    assert client.get("/settings/theme", headers=admin).status_code == 404

    assert client.delete("/settings/tax_rate", headers=admin).status_code == 200
    assert client.get("/settings/tax_rate", headers=admin).status_code == 404
    assert client.get("/cart/totals", headers=customer).json()["tax"] == 6.0
    assert client.get("/settings", headers=admin).json()["tax_rate"] == 0.1


# ---------------------- Cart ----------------------

def test_cart_endpoints(client, make_user, product):
    _, headers = make_user()
    pid = str(product["_id"])

    r = client.post("/cart/add", json={"product_id": pid, "quantity": 1, "color": "red"}, headers=headers)
    client.post("/cart/add", json={"product_id": pid, "quantity": 2, "color": "red"}, headers=headers)
    r = client.get("/cart", headers=headers).json()
    assert r["item_count"] == 3
    assert len(r["items"]) == 1
    assert r["totals"] == {"subtotal": 90.0, "tax": 9.0, "shipping": 0.0, "discount": 0.0, "total": 99.0}

    r = client.post("/cart/quantity", json={"product_id": pid, "quantity": 0}, headers=headers).json()
    assert r["item_count"] == 1
    assert r["totals"]["shipping"] == 5.0

    r = client.post("/cart/variant", json={"product_id": pid, "size": "L"}, headers=headers).json()
    assert r["items"][0]["variant"] == {"color": "red", "size": "L"}

    assert client.post("/cart/remove", json={"product_id": pid}, headers=headers).json()["items"] == []
    assert client.post("/cart/add", json={"product_id": "5f0000000000000000000000"},
                       headers=headers).status_code == 404


def test_cart_requires_login(client):
    assert client.get("/cart").status_code == 401


# ---------------------- Checkout ----------------------

def test_checkout_ends_in_paid_order(client, make_user, product, gateway, shipping_fields, db):
    _, headers = make_user()

    r = client.post("/checkout/shipping", json=shipping_fields, headers=headers)
    assert r.status_code == 422
    assert "cart" in r.json()["errors"]

    client.post("/cart/add", json={"product_id": str(product["_id"]), "quantity": 2}, headers=headers)
    r = client.post("/checkout/shipping", json={**shipping_fields, "phone": "12345"}, headers=headers)
    assert r.status_code == 422
    assert list(r.json()["errors"]) == ["phone"]

    payload = fill_checkout(client, headers, product, shipping_fields, add_to_cart=False)
    assert payload["amount"] == 6600
    assert payload["channels"] == ["mobile_money"]
    assert client.get("/checkout", headers=headers).json()["momo_provider"] == "mtn"

    gateway.add(payload["ref"], 6600)
    r = client.post("/checkout/complete",
                    json={"provider_response": {"trxref": payload["ref"], "status": "success"}}, headers=headers)

    assert r.status_code == 200
    body = r.json()
    assert body["created"] is True
    assert body["order"]["payment_status"] == "paid"
    assert body["order"]["order_status"] == "processing"
    assert body["order"]["total_amount"] == 66.0
    assert body["order"]["payment_method"] == "Mobile Money (MTN)"
    assert body["payment"]["amount"] == 66.0
    assert client.get("/cart", headers=headers).json()["items"] == []
    assert len(client.get("/orders/myorders", headers=headers).json()) == 1
    assert db["checkout"].count_documents({}) == 0


def test_payment_step_needs_shipping_first(client, make_user):
    _, headers = make_user()

    r = client.post("/checkout/payment", json={"payment_method": "card"}, headers=headers)

    assert r.status_code == 422
    assert "step" in r.json()["errors"]


def test_complete_without_reference(client, make_user):
    _, headers = make_user()

    r = client.post("/checkout/complete", json={"provider_response": {"status": "success"}}, headers=headers)

    assert r.status_code == 400
    assert r.json()["detail"] == "Payment reference not found"


def test_declined_payment_keeps_cart(client, make_user, product, gateway, shipping_fields, db):
    _, headers = make_user()
    payload = fill_checkout(client, headers, product, shipping_fields)
    gateway.add(payload["ref"], 6600, status="failed")

    r = client.post("/checkout/complete", json={"provider_response": {"reference": payload["ref"]}},
                    headers=headers)

    assert r.status_code == 402
    assert db["order"].count_documents({}) == 0
    assert client.get("/cart", headers=headers).json()["item_count"] == 2
    assert client.get("/checkout", headers=headers).json()["processing"] is False


def test_cancel_and_back(client, make_user, product, shipping_fields):
    _, headers = make_user()
    fill_checkout(client, headers, product, shipping_fields)
    assert client.get("/checkout", headers=headers).json()["processing"] is True

    r = client.post("/checkout/cancel", headers=headers).json()
    assert r["processing"] is False
    assert r["step"] == "review"
    assert client.post("/checkout/back", headers=headers).json()["step"] == "payment"
    assert client.get("/cart", headers=headers).json()["item_count"] == 2


def test_initialize_without_public_key(app, client, make_user, product, shipping_fields):
    _, headers = make_user()
    app.state.settings = app.state.settings.model_copy(update={"paystack_public_key": ""})
    client.post("/cart/add", json={"product_id": str(product["_id"]), "quantity": 2}, headers=headers)
    client.post("/checkout/shipping", json=shipping_fields, headers=headers)
    client.post("/checkout/payment", json={"payment_method": "card"}, headers=headers)

    r = client.post("/checkout/initialize", json={}, headers=headers)

    assert r.status_code == 503


def test_momo_provider_lookup(client):
    assert client.get("/checkout/momo-provider", params={"number": "0201234567"}).json() == {
        "provider": "vodafone", "name": "Vodafone Cash"}


def test_paid_reference_cannot_pay_a_second_checkout(client, make_user, product, gateway, shipping_fields, db):
    _, headers = make_user()
    payload = fill_checkout(client, headers, product, shipping_fields)
    gateway.add(payload["ref"], 6600)
    reference = {"provider_response": {"reference": payload["ref"]}}
    assert client.post("/checkout/complete", json=reference, headers=headers).status_code == 200

    fill_checkout(client, headers, product, shipping_fields)
    r = client.post("/checkout/complete", json=reference, headers=headers)

    assert r.status_code == 409
    assert db["order"].count_documents({"payment_status": "paid"}) == 1
    assert client.get("/cart", headers=headers).json()["item_count"] == 2


def test_cart_changed_after_payment_is_critical(client, make_user, product, gateway, shipping_fields, db):
    _, headers = make_user()
    payload = fill_checkout(client, headers, product, shipping_fields)
    gateway.add(payload["ref"], 6600)
    client.post("/cart/quantity", json={"product_id": str(product["_id"]), "quantity": 3}, headers=headers)

    r = client.post("/checkout/complete", json={"provider_response": {"reference": payload["ref"]}},
                    headers=headers)

    assert r.status_code == 500
    assert r.json()["severity"] == "critical"
    assert r.json()["reference"] == payload["ref"]
    assert db["order"].count_documents({}) == 0


def test_coupon_pinned_at_initialize_survives_deactivation(client, make_user, product, gateway, shipping_fields,
                                                          db):
    _, headers = make_user()
    _, admin = make_user(role="admin")
    client.post("/admin/coupons", json={"code": "save10", "type": "percent", "value": 10}, headers=admin)
    payload = fill_checkout(client, headers, product, shipping_fields, coupon="save10")
    assert payload["amount"] == 6000
    db["coupon"].update_one({"code": "SAVE10"}, {"$set": {"active": False}})
    gateway.add(payload["ref"], 6000)

    r = client.post("/checkout/complete",
                    json={"provider_response": {"reference": payload["ref"]}, "coupon": "save10"}, headers=headers)

    assert r.status_code == 200
    assert r.json()["order"]["discount"] == 6.0
    assert r.json()["order"]["coupon"] == "SAVE10"
    assert r.json()["order"]["total_amount"] == 60.0


def test_invalid_shipping_after_initialize_is_not_kept(client, make_user, product, gateway, shipping_fields):
    _, headers = make_user()
    payload = fill_checkout(client, headers, product, shipping_fields)
    gateway.add(payload["ref"], 6600)

    r = client.post("/checkout/shipping", json={**shipping_fields, "phone": "12345", "city": ""}, headers=headers)
    assert r.status_code == 422

    r = client.post("/checkout/complete", json={"provider_response": {"reference": payload["ref"]}},
                    headers=headers)
    assert r.status_code == 200
    address = r.json()["order"]["shipping_address"]
    assert (address["phone"], address["city"]) == ("0241234567", "Accra")


def test_complete_requires_the_review_step(client, make_user, product, gateway, shipping_fields, db):
    _, headers = make_user()
    payload = fill_checkout(client, headers, product, shipping_fields)
    gateway.add(payload["ref"], 6600)
    client.post("/checkout/back", headers=headers)

    r = client.post("/checkout/complete", json={"provider_response": {"reference": payload["ref"]}},
                    headers=headers)

    assert r.status_code == 422
    assert gateway.requests == []
    assert db["order"].count_documents({}) == 0


def test_initialize_with_redirect_opens_hosted_page(client, make_user, product, gateway, shipping_fields):
    _, headers = make_user()
    fill_checkout(client, headers, product, shipping_fields)

    body = client.post("/checkout/initialize", json={"redirect": True}, headers=headers).json()

    assert body["authorization_url"] == "https://checkout.paystack.com/abc"
    sent = json.loads(gateway.requests[-1].content)
    session = client.get("/checkout", headers=headers).json()
    assert sent["reference"] == body["paystack"]["ref"] == session["payment_reference"]
    assert sent["amount"] == 6600
    assert sent["metadata"]["idempotency_key"] == session["idempotency_key"]


# ---------------------- Orders ----------------------

def test_order_total_is_recomputed(client, make_user, product, shipping_fields):
    _, headers = make_user()

    r = create_order(client, headers, product, shipping_fields, total_amount=2.0)
    assert r.status_code == 422
    assert "total_amount" in r.json()["errors"]

    r = create_order(client, headers, product, shipping_fields, total_amount=66.0)
    assert r.status_code == 201
    order = r.json()
    assert order["payment_status"] == "pending"
    assert order["order_status"] == "pending"
    assert (order["tax"], order["shipping_cost"], order["total_amount"]) == (6.0, 0.0, 66.0)


def test_order_ignores_client_prices(client, make_user, product, shipping_fields):
    _, headers = make_user()
    body = {
        "items": [{"product_id": str(product["_id"]), "title": "Cheap", "price": 0.5, "quantity": 2}],
        "shipping_address": shipping_fields,
    }

    order = client.post("/orders", json=body, headers=headers).json()

    assert order["items"][0]["price"] == 30.0
    assert order["items"][0]["title"] == "Kente Shirt"


def test_order_submission_is_idempotent(client, make_user, product, shipping_fields, db):
    _, headers = make_user()

    first = create_order(client, headers, product, shipping_fields, idempotency_key="attempt-1").json()
    second = create_order(client, headers, product, shipping_fields, idempotency_key="attempt-1").json()

    assert first["created"] is True
    assert second["created"] is False
    assert second["id"] == first["id"]
    assert db["order"].count_documents({}) == 1


def test_pay_deliver_cancel(client, make_user, product, shipping_fields, gateway):
    _, headers = make_user()
    _, stranger = make_user()
    _, admin = make_user(role="admin")
    order_id = create_order(client, headers, product, shipping_fields).json()["id"]

    assert client.get(f"/orders/{order_id}", headers=stranger).status_code == 403
    assert client.put(f"/orders/{order_id}/pay", json={}, headers=headers).status_code == 400

    gateway.add("ref_short", 100)
    assert client.put(f"/orders/{order_id}/pay", json={"reference": "ref_short"}, headers=headers).status_code == 402

    gateway.add("ref_full", 6600)
    r = client.put(f"/orders/{order_id}/pay", json={"reference": "ref_full"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["payment_status"] == "paid"
    assert r.json()["payment_result"]["id"] == "ref_full"

    assert client.put(f"/orders/{order_id}/deliver", headers=headers).status_code == 403
    assert client.put(f"/orders/{order_id}/deliver", headers=admin).json()["order_status"] == "delivered"
    assert client.put(f"/orders/{order_id}/cancel", headers=admin).status_code == 400


def test_customer_cancels_pending_order(client, make_user, product, shipping_fields):
    _, headers = make_user()
    order_id = create_order(client, headers, product, shipping_fields).json()["id"]

    r = client.put(f"/orders/{order_id}/cancel", headers=headers)

    assert r.json()["order_status"] == "cancelled"


def test_order_update_and_admin_views(client, make_user, product, shipping_fields):
    _, headers = make_user()
    _, admin = make_user(role="admin")
    order_id = create_order(client, headers, product, shipping_fields).json()["id"]

    r = client.put(f"/orders/{order_id}", json={"notes": "Call on arrival"}, headers=headers)
    assert r.json()["notes"] == "Call on arrival"
    assert client.put(f"/orders/{order_id}", json={"order_status": "processing"},
                      headers=headers).status_code == 403
    r = client.put(f"/orders/{order_id}", json={"order_status": "processing"}, headers=admin)
    assert r.json()["order_status"] == "processing"

    assert client.get("/orders", headers=headers).status_code == 403
    listing = client.get("/orders", params={"status": "processing"}, headers=admin).json()
    assert [o["id"] for o in listing["orders"]] == [order_id]
    assert listing["pagination"]["total"] == 1

    stats = client.get("/orders/statistics", headers=admin).json()
    assert stats["total_orders"] == 1
    assert stats["processing_orders"] == 1

    assert client.delete(f"/orders/{order_id}", headers=admin).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=admin).status_code == 404


def test_one_payment_cannot_pay_two_orders(client, make_user, product, shipping_fields, gateway, db):
    _, headers = make_user()
    first = create_order(client, headers, product, shipping_fields).json()["id"]
    second = create_order(client, headers, product, shipping_fields).json()["id"]
    gateway.add("REF1", 6600)

    assert client.put(f"/orders/{first}/pay", json={"reference": "REF1"}, headers=headers).status_code == 200
    r = client.put(f"/orders/{second}/pay", json={"reference": "REF1"}, headers=headers)

    assert r.status_code == 409
    assert client.get(f"/orders/{second}", headers=headers).json()["payment_status"] == "pending"
    assert db["order"].count_documents({"payment_status": "paid"}) == 1


def test_malformed_ids_are_bad_requests(client, make_user):
    _, admin = make_user(role="admin")

    r = client.put("/orders/not-an-id/deliver", headers=admin)

    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid ID"
    assert client.get("/products/not-an-id").status_code == 400
    assert client.get("/users/not-an-id", headers=admin).status_code == 400
    assert client.get("/products/5f0000000000000000000000").status_code == 404


# ---------------------- Payments ----------------------

def test_verify_paystack(client, make_user, gateway):
    _, headers = make_user()
    gateway.add("ref_v", 1000)
    gateway.add("ref_x", 1000, status="abandoned")

    r = client.post("/payments/verify-paystack", json={"reference": "ref_v"}, headers=headers)
    assert r.json()["verified"] is True
    assert r.json()["data"]["amount"] == 10.0

    assert client.post("/payments/verify-paystack", json={"reference": "ref_x"},
                       headers=headers).status_code == 402
    assert client.post("/payments/verify-paystack", json={"reference": "missing"},
                       headers=headers).status_code == 502


def test_webhook_marks_order_paid(client, make_user, product, shipping_fields, settings, db):
    _, headers = make_user()
    create_order(client, headers, product, shipping_fields, idempotency_key="hook-1")
    raw = json.dumps({"event": "charge.success", "data": {
        "reference": "ref_hook", "amount": 6600, "metadata": {"idempotency_key": "hook-1"},
        "customer": {"email": "ama@example.com"},
    }}).encode()
    signature = hmac.new(settings.paystack_secret_key.encode(), raw, hashlib.sha512).hexdigest()

    r = client.post("/payments/paystack-webhook", content=raw, headers={"x-paystack-signature": "bad"})
    assert r.status_code == 401
    assert db["order"].find_one({"idempotency_key": "hook-1"})["payment_status"] == "pending"

    r = client.post("/payments/paystack-webhook", content=raw, headers={"x-paystack-signature": signature})
    assert r.json() == {"received": True}
    assert db["order"].find_one({"idempotency_key": "hook-1"})["payment_status"] == "paid"


def test_webhook_does_not_reuse_a_paid_reference(client, make_user, product, shipping_fields, gateway, settings,
                                                 db):
    _, headers = make_user()
    paid = create_order(client, headers, product, shipping_fields).json()["id"]
    create_order(client, headers, product, shipping_fields, idempotency_key="hook-2")
    gateway.add("ref_hook", 6600)
    client.put(f"/orders/{paid}/pay", json={"reference": "ref_hook"}, headers=headers)
    raw = json.dumps({"event": "charge.success", "data": {
        "reference": "ref_hook", "amount": 6600, "metadata": {"idempotency_key": "hook-2"},
    }}).encode()
    signature = hmac.new(settings.paystack_secret_key.encode(), raw, hashlib.sha512).hexdigest()

    r = client.post("/payments/paystack-webhook", content=raw, headers={"x-paystack-signature": signature})

    assert r.json() == {"received": True}
    assert db["order"].find_one({"idempotency_key": "hook-2"})["payment_status"] == "pending"


# ---------------------- OAuth ----------------------

def test_oauth_status(client):
    assert client.get("/auth/status").json() == {"providers": {"google": True, "facebook": False}}


def test_google_login_round_trip(client, db, settings):
    r = client.get("/auth/google", follow_redirects=False)
    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert location.netloc == "accounts.google.com"
    query = parse_qs(location.query)
    assert query["redirect_uri"] == ["http://testserver/auth/google/callback"]

    r = client.get("/auth/google/callback", params={"code": "abc", "state": query["state"][0]},
                   follow_redirects=False)

    assert r.status_code == 302
    target = urlparse(r.headers["location"])
    assert f"{target.scheme}://{target.netloc}{target.path}" == "http://front.test/oauth/callback"
    params = parse_qs(target.query)
    assert params["success"] == ["true"]
    data = jwt.decode(params["payload"][0], settings.jwt_secret, algorithms=["HS256"])["user"]
    assert data["email"] == "kofi@example.com"
    assert data["is_email_verified"] is True
    assert db["user"].find_one({"google_id": "google-123"}) is not None
    assert client.get("/users/profile").json()["first_name"] == "Kofi"


def test_oauth_state_mismatch(client):
    client.get("/auth/google", follow_redirects=False)

    r = client.get("/auth/google/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False)

    assert r.headers["location"] == "http://front.test/login?error=google_failed"


def test_oauth_token_failure(client, oauth_provider):
    oauth_provider.fail_token = True
    state = parse_qs(urlparse(client.get("/auth/google", follow_redirects=False).headers["location"]).query)["state"][0]

    r = client.get("/auth/google/callback", params={"code": "abc", "state": state}, follow_redirects=False)

    assert r.headers["location"] == "http://front.test/login?error=google_failed"


def test_unconfigured_provider_redirects_to_login(client):
    r = client.get("/auth/facebook", follow_redirects=False)
    assert r.headers["location"] == "http://front.test/login?error=facebook_failed"
