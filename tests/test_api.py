from sqlalchemy.exc import SQLAlchemyError

from payflow.errors import ProviderError
from payflow.models import Transaction


def membership_request(**overrides):
    body = {
        "amount": 2999,
        "description": "Basic monthly",
        "payment_type": "membership",
        "user_id": "u1",
        "user_email": "u1@x.com",
        "user_name": "User One",
        "metadata": {"membership_tier": "basic", "billing_period": "monthly"},
    }
    body.update(overrides)
    return body


def test_create_preference_success(client, provider, session_factory):
    response = client.post("/payments/preference", json=membership_request())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "preferenceId": "pref_1",
        "redirectUrl": "https://checkout.test/pref_1",
        "sandboxRedirectUrl": "https://sandbox.checkout.test/pref_1",
    }

    db = session_factory()
    payment = db.query(Transaction).filter_by(external_payment_id="pref_1").first()
    assert payment is not None
    assert payment.status == "pending"
    assert payment.amount == 2999
    assert payment.payer_id == "u1"
    assert payment.completed_at is None
    assert payment.external_reference.startswith("membership_u1_")
    assert payment.meta["membership_tier"] == "basic"
    db.close()


def test_create_preference_builds_provider_payload(client, provider):
    client.post("/payments/preference", json=membership_request(
        amount=89990,
        description="<b>Premium</b> & more",
        user_name="O'Brien",
        metadata={"membership_tier": "premium", "billing_period": "yearly"},
    ))

    payload = provider.preferences[0]
    assert payload.title == "bPremium/b  more"
    assert payload.payer_name == "OBrien"
    assert payload.max_installments == 12
    assert payload.excluded_payment_types == ["ticket"]
    assert payload.success_url == "https://app.test/payment/success"
    assert payload.failure_url == "https://app.test/payment/failure"
    assert payload.pending_url == "https://app.test/payment/pending"
    assert payload.notification_url == "https://api.test/payments/webhook"
    assert payload.metadata["user_id"] == "u1"
    assert payload.metadata["payment_type"] == "membership"


def test_create_preference_keeps_caller_redirect_urls(client, provider):
    client.post("/payments/preference", json=membership_request(
        success_url="https://app.test/membership/success",
    ))

    payload = provider.preferences[0]
    assert payload.success_url == "https://app.test/membership/success"
    assert payload.failure_url == "https://app.test/payment/failure"
    assert payload.max_installments == 6


def test_collaboration_preference_records_fee_split(client, provider, session_factory):
    response = client.post("/payments/preference", json=membership_request(
        amount=10000,
        description="Sponsored reel",
        payment_type="collaboration",
        metadata={"collaboration_id": "col-1", "creator_id": "creator-9", "brand_id": "brand-2"},
    ))
    assert response.status_code == 200

    db = session_factory()
    payment = db.query(Transaction).first()
    assert payment.collaboration_id == "col-1"
    assert payment.payee_id == "creator-9"
    assert payment.meta["creator_amount"] == 8500
    assert payment.meta["platform_fee"] == 1500
    db.close()


def test_create_preference_validation_error_lists_all_violations(client, provider):
    response = client.post("/payments/preference", json=membership_request(
        amount=-5, description="ab", user_email="not-an-email",
    ))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "Invalid payment amount" in body["error"]
    assert "at least 3 characters" in body["error"]
    assert "Invalid email format" in body["error"]
    assert provider.preferences == []


def test_create_preference_missing_membership_details(client, provider):
    response = client.post("/payments/preference", json=membership_request(metadata={}))

    assert response.status_code == 400
    assert "membership_tier is required" in response.json()["error"]


def test_create_preference_rejects_underpriced_membership(client, provider, session_factory):
    response = client.post("/payments/preference", json=membership_request(
        amount=1, description="VIP yearly", metadata={"membership_tier": "vip", "billing_period": "yearly"},
    ))

    assert response.status_code == 400
    assert "vip yearly membership price of 199990" in response.json()["error"]
    assert provider.preferences == []

    db = session_factory()
    assert db.query(Transaction).count() == 0
    db.close()


def test_create_preference_malformed_body_is_400(client):
    response = client.post("/payments/preference", json=membership_request(amount="lots"))

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "amount" in response.json()["error"]


def test_create_preference_for_another_user_is_forbidden(client, provider, session_factory):
    response = client.post("/payments/preference", json=membership_request(user_id="u2"))

    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "Access denied"}
    assert provider.preferences == []

    db = session_factory()
    assert db.query(Transaction).count() == 0
    db.close()


def test_create_preference_provider_failure_hides_detail(client, provider, session_factory):
    provider.create_error = ProviderError("HTTP 500: upstream stack trace with token")

    response = client.post("/payments/preference", json=membership_request())

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Payment preference creation failed"}
    assert "token" not in response.text

    db = session_factory()
    assert db.query(Transaction).count() == 0
    db.close()


def test_create_preference_succeeds_when_local_insert_fails(client, mocker):
    mocker.patch("payflow.service.repository.create_pending_transaction",
                 side_effect=SQLAlchemyError("database is locked"))

    response = client.post("/payments/preference", json=membership_request())

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["redirectUrl"] == "https://checkout.test/pref_1"


def test_payment_status_for_owner(client):
    client.post("/payments/preference", json=membership_request())

    response = client.get("/payments/status", params={"payment_id": "pref_1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "pending"
    assert body["amount"] == 2999
    assert body["externalReference"].startswith("membership_u1_")
    assert body["completedAt"] is None


def test_payment_status_for_non_owner_is_forbidden(client, login):
    client.post("/payments/preference", json=membership_request())
    login("u2")

    response = client.get("/payments/status", params={"payment_id": "pref_1"})

    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "Access denied"}


def test_payment_status_unknown_payment(client):
    response = client.get("/payments/status", params={"payment_id": "pref_missing"})

    assert response.status_code == 404
    assert response.json()["error"] == "Payment not found"


def test_payment_status_requires_payment_id(client):
    response = client.get("/payments/status")

    assert response.status_code == 400
    assert "payment_id" in response.json()["error"]


def test_payment_history_lists_only_own_transactions(client, login):
    client.post("/payments/preference", json=membership_request())
    login("u2")
    client.post("/payments/preference", json=membership_request(user_id="u2"))
    login("u1")

    response = client.get("/payments/history")

    assert response.status_code == 200
    transactions = response.json()["transactions"]
    assert len(transactions) == 1
    assert transactions[0]["amount"] == 2999

    assert client.get("/payments/history", params={"status": "approved"}).json()["transactions"] == []
    assert client.get("/payments/history", params={"status": "bogus"}).status_code == 400


def test_membership_pricing(client):
    response = client.get("/payments/pricing/memberships")

    assert response.status_code == 200
    tiers = {t["tier"]: t for t in response.json()["tiers"]}
    assert tiers["basic"]["prices"] == {"monthly": 2999, "yearly": 29990}
    assert tiers["basic"]["yearlyDiscount"] == 17
    assert tiers["vip"]["installments"]["yearly"] == [1, 3, 6, 9, 12]


def test_missing_token_is_rejected(client):
    from payflow.auth import verify_token
    from payflow.main import app as fastapi_app

    fastapi_app.dependency_overrides.pop(verify_token)

    response = client.get("/payments/status", params={"payment_id": "pref_1"})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid or missing token"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
