import json
from decimal import Decimal

import pytest

from app.models.enums import EnrollmentType
from tests.conftest import ADMIN, GURU, OTHER_GURU, OTHER_STUDENT, STUDENT, auth_headers

DEVICE = {"X-Device-ID": "device-api-0001"}


@pytest.fixture
def purchase(client, gateway):
    """Run initiate + confirm over HTTP; returns the confirm response body."""

    def _purchase(principal, course, enrollment_type="one_time", billing_cycle=None):
        headers = {**auth_headers(principal), **DEVICE}
        payload = {"course_id": course.id, "enrollment_type": enrollment_type}
        if billing_cycle:
            payload["billing_cycle"] = billing_cycle
        response = client.post("/enrollments/initiate", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        order = response.json()["data"]

        payment_id = f"pay_{order['order_id']}"
        response = client.post(
            "/enrollments/confirm",
            json={
                "razorpay_order_id": order["order_id"],
                "razorpay_payment_id": payment_id,
                "razorpay_signature": gateway.sign(order["order_id"], payment_id),
                "transaction_id": order["transaction_id"],
            },
            headers=headers,
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]

    return _purchase


# ==================== Envelope & auth ====================


def test_requests_without_token_get_the_error_envelope(client):
    response = client.get("/enrollments/me")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["errors"][0]["code"] == "UNAUTHENTICATED"


def test_invalid_token_is_rejected(client):
    response = client.get(
        "/enrollments/me", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "healthy"


# ==================== Purchase ====================


def test_initiate_and_confirm(client, course, purchase):
    data = purchase(STUDENT, course)

    enrollment = data["enrollment"]
    assert enrollment["status"] == "active"
    assert enrollment["course_title"] == course.title
    assert Decimal(enrollment["payment"]["guru_share"]) == Decimal("799.20")
    assert Decimal(enrollment["payment"]["platform_share"]) == Decimal("199.80")
    assert enrollment["access"]["active_device_count"] == 1
    assert data["device_id"] == DEVICE["X-Device-ID"]
    assert data["transaction_status"] == "success"

    response = client.get("/enrollments/me", headers=auth_headers(STUDENT))
    body = response.json()
    assert body["success"] is True
    assert body["data"]["pagination"]["total"] == 1
    assert body["data"]["items"][0]["id"] == enrollment["id"]


def test_initiate_returns_checkout_details(client, course, gateway):
    response = client.post(
        "/enrollments/initiate",
        json={"course_id": course.id, "enrollment_type": "one_time"},
        headers=auth_headers(STUDENT),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert Decimal(str(data["amount"])) == Decimal("999.00")
    assert data["amount_minor"] == 99900
    assert data["gateway_key_id"] == gateway.key_id
    assert data["order_id"] == gateway.orders[0].order_id


@pytest.mark.parametrize(
    "payload",
    [
        {"enrollment_type": "lifetime"},
        {"enrollment_type": "subscription", "billing_cycle": "weekly"},
        {"enrollment_type": "one_time", "course_id": 0},
    ],
)
def test_initiate_validation_errors(client, course, payload):
    body = {"course_id": course.id, **payload}
    response = client.post(
        "/enrollments/initiate", json=body, headers=auth_headers(STUDENT)
    )

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert errors and all(e["code"] == "VALIDATION_ERROR" for e in errors)


def test_forged_signature(client, course):
    headers = auth_headers(STUDENT)
    order = client.post(
        "/enrollments/initiate",
        json={"course_id": course.id, "enrollment_type": "one_time"},
        headers=headers,
    ).json()["data"]

    response = client.post(
        "/enrollments/confirm",
        json={
            "transaction_id": order["transaction_id"],
            "order_id": order["order_id"],
            "payment_id": "pay_forged",
            "signature": "f" * 64,
        },
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "PAYMENT_VERIFICATION_FAILED"


def test_second_purchase_conflicts(client, course, purchase):
    enrollment = purchase(STUDENT, course)["enrollment"]

    response = client.post(
        "/enrollments/initiate",
        json={"course_id": course.id, "enrollment_type": "one_time"},
        headers=auth_headers(STUDENT),
    )

    assert response.status_code == 409
    body = response.json()
    assert body["errors"][0]["code"] == "ALREADY_ENROLLED"
    assert body["data"]["enrollment_id"] == enrollment["id"]


def test_open_checkout_is_returned_again(client, course):
    headers = auth_headers(STUDENT)
    body = {"course_id": course.id, "enrollment_type": "one_time"}
    first = client.post("/enrollments/initiate", json=body, headers=headers)
    again = client.post("/enrollments/initiate", json=body, headers=headers)

    assert first.status_code == again.status_code == 201
    assert again.json()["data"]["order_id"] == first.json()["data"]["order_id"]

    response = client.post(
        "/enrollments/initiate",
        json={"course_id": course.id, "enrollment_type": "subscription"},
        headers=headers,
    )
    assert response.status_code == 409
    body = response.json()
    assert body["errors"][0]["code"] == "INVALID_STATE"
    assert body["data"]["transaction_id"] == first.json()["data"]["transaction_id"]


def test_unknown_course(client):
    response = client.post(
        "/enrollments/initiate",
        json={"course_id": 9999, "enrollment_type": "one_time"},
        headers=auth_headers(STUDENT),
    )
    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "COURSE_NOT_AVAILABLE"


# ==================== Access & devices ====================


def test_validate_access_uses_device_header(client, course, purchase):
    enrollment_id = purchase(STUDENT, course)["enrollment"]["id"]
    url = f"/enrollments/{enrollment_id}/validate-access"

    response = client.post(url, headers={**auth_headers(STUDENT), **DEVICE})
    assert response.status_code == 200
    assert response.json()["data"]["valid"] is True

    response = client.post(
        url,
        json={"device_id": "device-unknown-1"},
        headers=auth_headers(STUDENT),
    )
    assert response.status_code == 403
    assert response.json()["errors"][0]["code"] == "DEVICE_NOT_REGISTERED"


def test_device_limit_over_http(client, course, purchase):
    enrollment_id = purchase(STUDENT, course)["enrollment"]["id"]
    url = f"/enrollments/{enrollment_id}/devices"
    headers = auth_headers(STUDENT)

    for device_id in ("device-api-0002", "device-api-0003"):
        response = client.post(url, json={"device_id": device_id}, headers=headers)
        assert response.status_code == 201
        assert response.json()["message"] == "Device registered"

    response = client.post(url, json={"device_id": "device-api-0004"}, headers=headers)
    assert response.status_code == 409
    body = response.json()
    assert body["errors"][0]["code"] == "DEVICE_LIMIT_EXCEEDED"
    assert body["data"] == {"device_limit": 3, "active_devices": 3}

    response = client.delete(f"{url}/device-api-0002", headers=headers)
    assert response.status_code == 200
    response = client.post(url, json={"device_id": "device-api-0004"}, headers=headers)
    assert response.status_code == 201

    listing = client.get(url, headers=headers).json()["data"]
    assert listing["active_count"] == 3
    assert listing["can_add_device"] is False


# ==================== Administration ====================


def test_suspend_requires_admin(client, course, purchase):
    enrollment_id = purchase(STUDENT, course)["enrollment"]["id"]
    url = f"/enrollments/{enrollment_id}/suspend"
    payload = {"reason": "Chargeback filed"}

    response = client.post(url, json=payload, headers=auth_headers(STUDENT))
    assert response.status_code == 403
    assert response.json()["errors"][0]["code"] == "FORBIDDEN"

    response = client.post(url, json=payload, headers=auth_headers(ADMIN))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "suspended"

    response = client.post(
        f"/enrollments/{enrollment_id}/validate-access", headers=auth_headers(STUDENT)
    )
    assert response.status_code == 403
    assert response.json()["errors"][0]["code"] == "NOT_ACTIVE"

    audit = client.get(
        f"/enrollments/{enrollment_id}/audit", headers=auth_headers(GURU)
    ).json()["data"]
    assert audit[-1]["action"] == "suspended"
    assert audit[-1]["reason"] == "Chargeback filed"


def test_other_learner_cannot_read_enrollment(client, course, purchase):
    enrollment_id = purchase(STUDENT, course)["enrollment"]["id"]

    response = client.get(
        f"/enrollments/{enrollment_id}", headers=auth_headers(OTHER_STUDENT)
    )
    assert response.status_code == 403
    assert response.json()["errors"][0]["code"] == "PERMISSION_DENIED"

    response = client.get("/enrollments/424242", headers=auth_headers(STUDENT))
    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "ENROLLMENT_NOT_FOUND"


# ==================== Subscriptions ====================


def test_subscription_endpoints(client, course, purchase):
    enrollment = purchase(STUDENT, course, "subscription", "quarterly")["enrollment"]
    assert enrollment["subscription"]["billing_cycle"] == "quarterly"
    base = f"/subscriptions/{enrollment['id']}"
    headers = auth_headers(STUDENT)

    response = client.post(f"{base}/renew", json={"billing_cycle": "weekly"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "INVALID_BILLING_CYCLE"

    response = client.post(f"{base}/renew", headers=headers)
    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "RENEWAL_NOT_NEEDED"

    response = client.post(f"{base}/pause", json={"duration_days": 14}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["subscription"]["status"] == "paused"

    mine = client.get("/subscriptions/me", headers=headers).json()["data"]
    assert mine["summary"]["paused"] == 1

    response = client.post(f"{base}/resume", headers=headers)
    assert response.json()["data"]["subscription"]["status"] == "active"

    response = client.post(f"{base}/cancel", json={"immediate": True}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    response = client.post(f"{base}/cancel", headers=headers)
    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "ALREADY_CANCELLED"


def test_subscription_action_on_one_time_enrollment(client, course, purchase):
    enrollment_id = purchase(STUDENT, course)["enrollment"]["id"]
    response = client.post(
        f"/subscriptions/{enrollment_id}/pause", headers=auth_headers(STUDENT)
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "NOT_A_SUBSCRIPTION"


# ==================== Payments ====================


def test_transaction_visibility(client, course, purchase):
    transaction_id = purchase(STUDENT, course)["transaction_id"]
    url = f"/payments/{transaction_id}"

    assert client.get(url, headers=auth_headers(STUDENT)).status_code == 200
    assert client.get(url, headers=auth_headers(GURU)).status_code == 200
    assert client.get(url, headers=auth_headers(OTHER_GURU)).status_code == 403
    response = client.get(url, headers=auth_headers(OTHER_STUDENT))
    assert response.status_code == 403
    assert response.json()["errors"][0]["code"] == "PERMISSION_DENIED"


def test_admin_refund_and_distribution(client, course, purchase):
    data = purchase(STUDENT, course)
    transaction_id = data["transaction_id"]
    admin = auth_headers(ADMIN)

    response = client.post(
        f"/payments/{transaction_id}/refund",
        json={"reason": "Goodwill", "amount": "100.00"},
        headers=auth_headers(STUDENT),
    )
    assert response.status_code == 403

    response = client.post(
        f"/payments/{transaction_id}/refund",
        json={"reason": "Goodwill", "amount": "100.00"},
        headers=admin,
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "partially_refunded"

    response = client.post(f"/payments/{transaction_id}/distribute", headers=admin)
    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "NOT_SUCCESSFUL"


def test_webhook_endpoint(client, course, gateway):
    order = client.post(
        "/enrollments/initiate",
        json={"course_id": course.id, "enrollment_type": "one_time"},
        headers=auth_headers(STUDENT),
    ).json()["data"]
    body = json.dumps(
        {
            "event": "payment.captured",
            "payload": {
                "payment": {
                    "entity": {"id": "pay_hook", "order_id": order["order_id"]}
                }
            },
        }
    ).encode()

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={
            "X-Razorpay-Signature": gateway.sign_webhook(body),
            "X-Razorpay-Event-Id": "evt_http_1",
            "Content-Type": "application/json",
        },
    )
    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "activated"

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": "bad", "X-Razorpay-Event-Id": "evt_http_2"},
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "WEBHOOK_SIGNATURE_INVALID"


# ==================== Analytics ====================


def test_analytics_is_scoped_to_the_calling_guru(client, course, make_course, purchase):
    purchase(STUDENT, course)
    purchase(STUDENT, make_course(instructor_id=OTHER_GURU.id))

    mine = client.get("/analytics/enrollments", headers=auth_headers(GURU)).json()
    assert mine["data"]["total_enrollments"] == 1

    # a guru cannot widen the scope to another guru
    forced = client.get(
        f"/analytics/enrollments?guru_id={OTHER_GURU.id}", headers=auth_headers(GURU)
    ).json()
    assert forced["data"]["total_enrollments"] == 1
    assert Decimal(str(forced["data"]["guru_revenue"])) == Decimal("799.20")

    everyone = client.get("/analytics/enrollments", headers=auth_headers(ADMIN)).json()
    assert everyone["data"]["total_enrollments"] == 2

    response = client.get("/analytics/enrollments", headers=auth_headers(STUDENT))
    assert response.status_code == 403


def test_revenue_date_range_is_validated(client):
    response = client.get(
        "/analytics/revenue",
        params={"start_date": "2026-02-01T00:00:00", "end_date": "2026-01-01T00:00:00"},
        headers=auth_headers(ADMIN),
    )
    assert response.status_code == 422


def test_subscription_analytics(client, course, purchase):
    purchase(STUDENT, course, EnrollmentType.SUBSCRIPTION.value, "yearly")

    data = client.get("/analytics/subscriptions", headers=auth_headers(ADMIN)).json()[
        "data"
    ]
    assert data["total_subscriptions"] == 1
    assert data["by_billing_cycle"]["yearly"] == 1
    assert data["churn_rate"] == 0.0
