"""
HTTP tests for the JSON blueprints: auth, storefront, back-office guards
and the public marketing/support/compliance endpoints.
"""
import hashlib
import hmac
import json
import time

import pytest
import stripe

from boxoffice.main import app
from boxoffice.models import EventStatus, OrderStatus, PaymentGateway, PaymentStatus, UserRole
from conftest import create_event, create_order, create_promoter, create_user


@pytest.fixture
def client():
    with app.test_client() as client:
        with client.session_transaction() as sess:
            sess.clear()
        yield client


def _login(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user.userID


def _signed(payload: bytes, secret: str):
    timestamp = int(time.time())
    signed_payload = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}


def _intent_succeeded(payment_intent_id: str) -> bytes:
    return json.dumps(
        {
            "id": "evt_http_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": payment_intent_id,
                    "object": "payment_intent",
                    "status": "succeeded",
                    "metadata": {},
                }
            },
        }
    ).encode()


@pytest.fixture
def stripe_lookups(monkeypatch):
    calls = []

    def _retrieve(payment_intent_id, **params):
        calls.append(payment_intent_id)
        return {"id": payment_intent_id, "status": "processing"}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)
    return calls


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["components"]["database"]["status"] == "UP"


def test_register_login_and_me(client):
    payload = {"username": "fan", "email": "Fan@Example.com", "password": "s3cret"}

    created = client.post("/auth/register", json=payload)
    assert created.status_code == 201
    assert created.get_json()["user"]["role"] == UserRole.CUSTOMER.value

    assert client.post("/auth/register", json=payload).status_code == 409
    assert client.post("/auth/login", json={"username": "fan", "password": "wrong"}).status_code == 401

    logged_in = client.post("/auth/login", json={"username": "fan", "password": "s3cret"})
    assert logged_in.status_code == 200
    assert client.get("/auth/me").get_json()["user"]["username"] == "fan"

    client.post("/auth/logout")
    assert client.get("/auth/me").status_code == 401


def test_privileged_registration_needs_super_admin_token(client):
    payload = {"username": "boss", "email": "boss@example.com", "password": "pw", "role": "admin"}
    assert client.post("/auth/register", json=payload).status_code == 403

    payload["superAdminToken"] = "test-superadmin-token"
    assert client.post("/auth/register", json=payload).status_code == 201


def test_back_office_guards(client, db_session, promoter_user):
    assert client.get("/admin/dashboard").status_code == 401

    _login(client, create_user(db_session, role=UserRole.CUSTOMER.value))
    assert client.get("/admin/dashboard").status_code == 403

    _login(client, promoter_user)
    response = client.get("/admin/dashboard")
    assert response.status_code == 200
    assert response.get_json()["totalOrders"] == 0


def test_storefront_lists_published_events_only(client, db_session, sample_promoter, sample_event):
    create_event(db_session, sample_promoter, name="Secret Show", status=EventStatus.DRAFT)

    response = client.get("/p/rockhouse")

    assert response.status_code == 200
    body = response.get_json()
    assert body["promoter"]["slug"] == "rockhouse"
    assert [event["name"] for event in body["events"]] == ["Test Concert"]
    assert client.get(f"/p/rockhouse/events/{sample_event.eventID}").status_code == 200


def test_storefront_hides_inactive_promoters(client, db_session):
    create_promoter(db_session, slug="closed", active=False)
    assert client.get("/p/closed").status_code == 404
    assert client.get("/p/nobody").status_code == 404


def test_tenant_subdomain_serves_storefront(client, sample_event):
    response = client.get("/", base_url="http://rockhouse.venueviz.com")
    assert response.status_code == 200
    assert response.get_json()["promoter"]["slug"] == "rockhouse"


def test_hold_and_release(client, sample_event):
    response = client.post("/api/holds", json={"eventId": sample_event.eventID, "quantity": 2})
    assert response.status_code == 201
    hold = response.get_json()
    assert hold["quantity"] == 2

    too_many = client.post("/api/holds", json={"eventId": sample_event.eventID, "quantity": 500})
    assert too_many.status_code == 409
    assert too_many.get_json()["error"] == "Only 98 tickets available"

    assert client.delete(f"/api/holds/{hold['holdId']}").status_code == 200
    assert client.post("/api/holds", json={}).status_code == 400


def test_unknown_promo_code_is_rejected(client, sample_promoter):
    response = client.post("/api/promotions/validate", json={"code": "NOPE", "promoterSlug": "rockhouse"})
    assert response.status_code == 400
    assert response.get_json()["valid"] is False


def test_public_data_request(client, sample_promoter):
    response = client.post(
        "/compliance/requests",
        json={"promoterSlug": "rockhouse", "email": "fan@example.com", "type": "access"},
    )
    assert response.status_code == 201
    assert response.get_json()["requestId"]

    unknown = client.post("/compliance/requests", json={"promoterSlug": "ghost", "email": "fan@example.com", "type": "access"})
    assert unknown.status_code == 404

    invalid = client.post("/compliance/requests", json={"promoterSlug": "rockhouse", "email": "nope", "type": "access"})
    assert invalid.status_code == 400


def test_public_support_ticket_requires_email(client, sample_promoter):
    missing = client.post("/support/tickets", json={"promoterSlug": "rockhouse", "subject": "Help"})
    assert missing.status_code == 400

    response = client.post(
        "/support/tickets",
        json={
            "promoterSlug": "rockhouse",
            "subject": "Where are my tickets?",
            "description": "Bought two, got none",
            "customer": {"name": "Fan", "email": "fan@example.com"},
        },
    )
    assert response.status_code == 201
    assert response.get_json()["ticket"]["subject"] == "Where are my tickets?"


def test_experiment_assignment_for_unknown_experiment(client):
    assert client.post("/marketing/experiments/999/assign", json={}).status_code == 400

    response = client.post("/marketing/experiments/999/assign", json={"visitorId": "v-1"})
    assert response.status_code == 404
    assert response.get_json() == {"assigned": False, "error": "Experiment not found"}


def test_tracking_endpoints(client):
    pixel = client.get("/marketing/track/open/999.gif")
    assert pixel.status_code == 200
    assert pixel.mimetype == "image/gif"
    assert pixel.data.startswith(b"GIF89a")

    assert client.get("/marketing/track/click/999?url=javascript:alert(1)").status_code == 400
    redirect = client.get("/marketing/track/click/999?url=https://rockhouse.example.com/shows")
    assert redirect.status_code == 302
    assert redirect.headers["Location"] == "https://rockhouse.example.com/shows"


def test_unsigned_stripe_webhook_is_rejected(client):
    response = client.post("/webhooks/stripe", data=b"{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid signature"


def test_signed_stripe_webhook_confirms_order(client, db_session, sample_order):
    payload = _intent_succeeded(sample_order.payment_intent_id)

    response = client.post("/webhooks/stripe", data=payload, headers=_signed(payload, "whsec_test_secret"))

    assert response.status_code == 200
    assert response.get_json() == {"received": True}
    db_session.expire_all()
    assert sample_order.status == OrderStatus.CONFIRMED
    assert sample_order.payment_status == PaymentStatus.PAID
    assert len(sample_order.tickets) == 2


def test_promoter_webhook_uses_promoter_secret(client, db_session, sample_promoter, sample_order):
    gateway = db_session.query(PaymentGateway).filter_by(promoterID=sample_promoter.promoterID).one()
    gateway.credentials = {**gateway.credentials, "webhookSecret": "whsec_rockhouse"}
    db_session.commit()
    payload = _intent_succeeded(sample_order.payment_intent_id)

    wrong_secret = client.post("/webhooks/stripe/rockhouse", data=payload, headers=_signed(payload, "whsec_test_secret"))
    assert wrong_secret.status_code == 400
    assert wrong_secret.get_json()["error"] == "Invalid signature"

    response = client.post("/webhooks/stripe/rockhouse", data=payload, headers=_signed(payload, "whsec_rockhouse"))
    assert response.status_code == 200
    db_session.expire_all()
    assert sample_order.status == OrderStatus.CONFIRMED


def test_confirmation_is_not_served_by_row_id(client, sample_order, stripe_lookups):
    response = client.get(f"/api/orders/{sample_order.orderID}/confirmation?redirect_status=succeeded")

    assert response.status_code == 404
    assert stripe_lookups == []


def test_redirect_status_alone_does_not_confirm(client, db_session, sample_order, stripe_lookups):
    response = client.get(f"/api/orders/{sample_order.order_number}/confirmation?redirect_status=succeeded")

    assert response.status_code == 200
    body = response.get_json()["order"]
    assert (body["status"], body["paymentStatus"], body["tickets"]) == ("pending", "pending", [])
    assert stripe_lookups == [sample_order.payment_intent_id]

    forged = client.get(
        f"/api/orders/{sample_order.order_number}/confirmation?redirect_status=succeeded&payment_intent=pi_forged"
    )
    assert forged.get_json()["order"]["status"] == "pending"


def test_redirect_with_matching_intent_confirms(client, sample_order, stripe_lookups):
    response = client.get(
        f"/api/orders/{sample_order.order_number}/confirmation"
        f"?redirect_status=succeeded&payment_intent={sample_order.payment_intent_id}"
    )

    assert response.status_code == 200
    body = response.get_json()["order"]
    assert (body["status"], body["paymentStatus"], body["ticketCount"]) == ("confirmed", "paid", 2)
    assert len(body["tickets"]) == 2
    assert stripe_lookups == []

    by_intent = client.get(f"/api/orders/{sample_order.payment_intent_id}/confirmation")
    assert by_intent.get_json()["order"]["orderNumber"] == sample_order.order_number


def test_refund_amount_must_be_finite(client, db_session, admin_user, sample_event):
    order = create_order(db_session, sample_event)
    _login(client, admin_user)

    for amount in ("nan", "inf"):
        response = client.post(f"/admin/orders/{order.order_number}/refund", json={"amount": amount})
        assert response.status_code == 400
        assert response.get_json()["error"] == "amount must be a number"
