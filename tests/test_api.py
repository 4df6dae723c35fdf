from decimal import Decimal

from app.models.order import OrderStatus


async def test_health(client):
    res = await client.get("/health")

    assert res.status_code == 200, res.text
    assert res.json()["status"] == "healthy"
    assert res.json()["checks"]["database"] == "connected"


async def test_requires_token(client):
    res = await client.get("/api/v1/orders")
    assert res.status_code == 401

    res = await client.get("/api/v1/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


async def test_login_refresh_and_me(client, admin_user):
    res = await client.post("/api/v1/auth/login", json={"email": "admin@retailops.pk", "password": "password123"})
    assert res.status_code == 200, res.text
    tokens = res.json()
    assert tokens["token_type"] == "bearer"

    res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert res.status_code == 200
    assert res.json()["email"] == "admin@retailops.pk"
    assert res.json()["roles"] == ["admin"]

    res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert res.status_code == 200
    assert res.json()["access_token"]

    # an access token is not a refresh token
    res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert res.status_code == 401


async def test_login_with_wrong_password(client, admin_user):
    res = await client.post("/api/v1/auth/login", json={"email": "admin@retailops.pk", "password": "wrong-password"})
    assert res.status_code == 401


async def test_only_admins_create_users(client, admin_headers, staff_headers):
    body = {"email": "packer@retailops.pk", "password": "packer-pass", "full_name": "Imran Packer", "roles": ["staff"]}

    res = await client.post("/api/v1/auth/users", json=body, headers=staff_headers)
    assert res.status_code == 403

    res = await client.post("/api/v1/auth/users", json=body, headers=admin_headers)
    assert res.status_code == 201, res.text
    assert res.json()["roles"] == ["staff"]


async def test_admin_replaces_roles_and_deactivates(client, admin_user, admin_headers, staff_user, staff_headers):
    res = await client.patch(
        f"/api/v1/auth/users/{staff_user.id}",
        json={"full_name": "Sana Dispatch", "roles": ["dispatch_manager"]},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["full_name"] == "Sana Dispatch"
    assert res.json()["roles"] == ["dispatch_manager"]

    res = await client.patch(
        f"/api/v1/auth/users/{staff_user.id}", json={"email": "admin@retailops.pk"}, headers=admin_headers
    )
    assert res.status_code == 409
    assert res.json()["error_code"] == "EMAIL_IN_USE"

    res = await client.post(f"/api/v1/auth/users/{admin_user.id}/deactivate", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error_code"] == "SELF_DEACTIVATION"

    res = await client.post(f"/api/v1/auth/users/{staff_user.id}/deactivate", headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json()["is_active"] is False

    res = await client.get("/api/v1/auth/me", headers=staff_headers)
    assert res.status_code == 403


async def test_reset_password(client, admin_headers, staff_user, staff_headers):
    res = await client.post(f"/api/v1/auth/users/{staff_user.id}/reset-password", json={}, headers=staff_headers)
    assert res.status_code == 403

    res = await client.post(
        f"/api/v1/auth/users/{staff_user.id}/reset-password", json={"new_password": "fresh-pass-1"}, headers=admin_headers
    )
    assert res.status_code == 200, res.text
    assert res.json()["password"] == "fresh-pass-1"

    res = await client.post("/api/v1/auth/login", json={"email": staff_user.email, "password": "password123"})
    assert res.status_code == 401
    res = await client.post("/api/v1/auth/login", json={"email": staff_user.email, "password": "fresh-pass-1"})
    assert res.status_code == 200

    res = await client.post(f"/api/v1/auth/users/{staff_user.id}/reset-password", json={}, headers=admin_headers)
    generated = res.json()["password"]
    assert len(generated) >= 8
    res = await client.post("/api/v1/auth/login", json={"email": staff_user.email, "password": generated})
    assert res.status_code == 200


async def test_unknown_user_is_404(client, admin_headers):
    res = await client.post(
        "/api/v1/auth/users/00000000-0000-0000-0000-0000000000aa/deactivate", headers=admin_headers
    )
    assert res.status_code == 404
    assert res.json()["error_code"] == "USER_NOT_FOUND"


async def test_create_and_list_orders(client, staff_headers, product):
    res = await client.post("/api/v1/orders", json={
        "customer_name": "Hamza Ali",
        "customer_phone": "0321-7654321",
        "customer_address": "House 4, Model Town",
        "city": "Lahore",
        "items": [{"product_id": str(product.id), "quantity": 2}],
    }, headers=staff_headers)

    assert res.status_code == 201, res.text
    order = res.json()
    assert order["status"] == "pending"
    assert order["customer_phone"] == "03217654321"
    assert Decimal(order["total_amount"]) == Decimal("3000")

    res = await client.get("/api/v1/orders", params={"status": "pending", "search": "Hamza"}, headers=staff_headers)
    assert res.status_code == 200
    assert res.json()["total"] == 1
    assert res.json()["items"][0]["id"] == order["id"]

    res = await client.get(f"/api/v1/orders/{order['id']}/activity", headers=staff_headers)
    assert [log["action"] for log in res.json()] == ["order_created"]


async def test_unknown_order_is_404(client, staff_headers):
    res = await client.get("/api/v1/orders/00000000-0000-0000-0000-000000000000", headers=staff_headers)

    assert res.status_code == 404
    assert res.json()["error_code"] == "ORDER_NOT_FOUND"


async def test_status_endpoint_force_is_admin_only(client, staff_headers, admin_headers, make_order):
    order = await make_order()
    body = {"status": "delivered", "force": True}

    res = await client.put(f"/api/v1/orders/{order.id}/status", json=body, headers=staff_headers)
    assert res.status_code == 422
    assert res.json()["error_code"] == "INVALID_TRANSITION"

    res = await client.put(f"/api/v1/orders/{order.id}/status", json=body, headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == OrderStatus.DELIVERED.value


async def test_status_counts(client, staff_headers, make_order):
    await make_order()
    await make_order()
    await make_order(status=OrderStatus.BOOKED.value)

    res = await client.get("/api/v1/orders/counts", headers=staff_headers)

    assert res.status_code == 200
    assert res.json()["pending"] == 2
    assert res.json()["booked"] == 1
