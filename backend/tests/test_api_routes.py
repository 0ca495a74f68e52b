"""
HTTP surface: public catalog, signup/login, entitlement reads, limit errors,
coupon preview, payments, admin review and webhook rejection.
"""
from helpers import admin_headers, auth_headers, sign, stripe_event
from models import PlanType, UserRole

STRONG_PASSWORD = "Kwanza2026"


def _signup(client, email="maria@financetracker.ao", plan_type="basic"):
    return client.post("/api/auth/signup", json={
        "email": email,
        "password": STRONG_PASSWORD,
        "first_name": "Maria",
        "last_name": "Santos",
        "plan_type": plan_type,
    })


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200


def test_public_plans(client):
    response = client.get("/api/plans")
    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["plan_type"] for p in plans] == ["basic", "premium", "enterprise"]
    assert plans[0]["price"] == "14500.00"
    assert plans[1]["limits"]["max_accounts"] == -1


def test_public_payment_methods(client):
    response = client.get("/api/payment-methods")
    assert response.status_code == 200
    methods = response.json()["payment_methods"]
    assert methods[0]["name"] == "gateway_card"
    assert methods[0]["family"] == "automated"
    assert {m["family"] for m in methods[1:]} == {"manual"}


def test_signup_then_entitlements(client):
    response = _signup(client)
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["subscription_status"] == "trialing"
    token = body["access_token"]
    subscriber_id = body["user"]["subscriber_id"]

    response = client.get(f"/api/entitlements/{subscriber_id}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "private, max-age=300"
    assert response.headers["X-Entitlement-Version"] == "1"
    data = response.json()
    assert data["access_level"] == "ENABLED"
    assert data["trial_days_left"] == 14
    assert data["usage"]["accounts"] == {
        "current": 0, "limit": 5, "unlimited": False, "percentage": 0.0, "can_create": True, "near_limit": False,
    }


def test_signup_rejects_weak_password_and_duplicate_email(client):
    response = client.post("/api/auth/signup", json={
        "email": "fraco@financetracker.ao", "password": "password1", "first_name": "A", "last_name": "B",
    })
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "WEAK_PASSWORD"

    assert _signup(client).status_code == 201
    response = _signup(client)
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "EMAIL_IN_USE"


def test_login(client):
    _signup(client)
    response = client.post("/api/auth/login", json={"email": "MARIA@financetracker.ao", "password": STRONG_PASSWORD})
    assert response.status_code == 200
    assert response.json()["user"]["plan_type"] == "basic"

    response = client.post("/api/auth/login", json={"email": "maria@financetracker.ao", "password": "Wrong12345"})
    assert response.status_code == 401


def test_entitlements_are_private(client, make_subscriber):
    owner = make_subscriber()
    other = make_subscriber()

    assert client.get(f"/api/entitlements/{owner['subscriber_id']}").status_code == 401
    response = client.get(f"/api/entitlements/{owner['subscriber_id']}", headers=auth_headers(other))
    assert response.status_code == 403
    response = client.get(f"/api/entitlements/{owner['subscriber_id']}", headers=admin_headers())
    assert response.status_code == 200


def test_can_create_endpoint(client, make_subscriber):
    sub = make_subscriber()
    response = client.get(f"/api/entitlements/{sub['subscriber_id']}/can-create/accounts", headers=auth_headers(sub))
    assert response.status_code == 200
    assert response.json()["can_create"] is True
    assert response.json()["limit"] == 5


def test_sixth_account_is_forbidden(client, make_subscriber):
    sub = make_subscriber(PlanType.BASIC)
    headers = auth_headers(sub)
    for i in range(5):
        assert client.post("/api/accounts", json={"name": f"Conta {i}"}, headers=headers).status_code == 201

    response = client.post("/api/accounts", json={"name": "Conta 6"}, headers=headers)
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["error_code"] == "LIMIT_EXCEEDED"
    assert detail["current"] == 5
    assert detail["limit"] == 5
    assert detail["retryable"] is False
    assert len(client.get("/api/accounts", headers=headers).json()["accounts"]) == 5


def test_coupon_preview(client, make_subscriber):
    sub = make_subscriber()
    response = client.post(
        "/api/admin/campaigns",
        json={"name": "Promo", "coupon_code": "save2000", "discount_type": "fixed", "discount_value": "2000"},
        headers=admin_headers(),
    )
    assert response.status_code == 201
    assert response.json()["coupon_code"] == "SAVE2000"

    response = client.post(
        "/api/coupons/validate", json={"coupon_code": "SAVE2000", "plan_type": "basic"}, headers=auth_headers(sub)
    )
    assert response.status_code == 200
    assert response.json()["discount"]["final_price"] == "12500.00"

    response = client.post(
        "/api/coupons/validate", json={"coupon_code": "NOPE", "plan_type": "basic"}, headers=auth_headers(sub)
    )
    assert response.status_code == 200
    assert response.json() == {"valid": False, "reason": "NOT_FOUND", "message": "Coupon code not found"}

    response = client.post(
        "/api/coupons/validate", json={"coupon_code": "a!", "plan_type": "basic"}, headers=auth_headers(sub)
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_COUPON_CODE"


def test_manual_payment_review_flow(client, make_subscriber):
    sub = make_subscriber(PlanType.BASIC)
    headers = auth_headers(sub)

    response = client.post("/api/payments", json={"plan_type": "premium", "payment_method": "bank_transfer"},
                           headers=headers)
    assert response.status_code == 201
    transaction_id = response.json()["transaction_id"]

    response = client.post(f"/api/payments/{transaction_id}/proof", headers=headers, json={
        "proof_description": "Transferencia BAI", "evidence_reference": "receipts/1.pdf",
    })
    assert response.status_code == 200
    assert response.json()["status"] == "under_review"

    # Subscribers cannot reach the admin queue
    assert client.get("/api/admin/payments/pending", headers=headers).status_code == 403

    response = client.get("/api/admin/payments/pending", headers=admin_headers())
    assert response.status_code == 200
    assert response.json()["total"] == 1

    response = client.post(f"/api/admin/payments/{transaction_id}/review", json={"decision": "approve"},
                           headers=admin_headers(UserRole.ROLE_OWNER))
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = client.get("/api/subscription", headers=headers)
    assert response.json()["status"] == "active"
    assert response.json()["plan_type"] == "premium"

    response = client.post(f"/api/admin/payments/{transaction_id}/review", json={"decision": "approve"},
                           headers=admin_headers())
    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "NOT_UNDER_REVIEW"


def test_other_subscribers_payment_is_not_found(client, make_subscriber):
    owner = make_subscriber()
    other = make_subscriber()
    response = client.post("/api/payments", json={"plan_type": "basic", "payment_method": "bank_transfer"},
                           headers=auth_headers(owner))
    transaction_id = response.json()["transaction_id"]

    response = client.get(f"/api/payments/{transaction_id}", headers=auth_headers(other))
    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "PAYMENT_NOT_FOUND"


def test_webhook_rejects_bad_signature(client):
    payload = stripe_event("evt_1", "checkout.session.completed", {"id": "cs_1", "payment_status": "paid"})
    response = client.post(
        "/api/webhook/gateway",
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret="whsec_other"), "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "WEBHOOK_REJECTED"


def test_webhook_accepts_signed_event(client):
    payload = stripe_event("evt_2", "customer.created", {"id": "cus_1"})
    response = client.post(
        "/api/webhook/gateway",
        content=payload,
        headers={"Stripe-Signature": sign(payload), "Content-Type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Ignored"


def test_request_validation_error_shape(client, make_subscriber):
    sub = make_subscriber()
    response = client.post("/api/payments", json={"plan_type": "gold"}, headers=auth_headers(sub))
    assert response.status_code == 422
    assert "request_id" in response.json()
