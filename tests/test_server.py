"""HTTP route tests through FastAPI's TestClient"""

import json

import pytest
from fastapi.testclient import TestClient

from api.server import create_app, dedupe_filenames, error_response_for
from conftest import payment_success_event, signed_webhook
from orders.errors import GatewayError, GatewayTimeout, StorageTimeout


@pytest.fixture
def client(controller, staging_dir):
    app = create_app(controller=controller, staging_dir=staging_dir)
    return TestClient(app)


def documents(*names):
    return [("documents", (name, f"%PDF-1.4 {name}".encode(), "application/pdf")) for name in names]


def submit(client, pay_method="payLater", options=None, price="20", names=("a.pdf",)):
    return client.post(
        "/process",
        files=documents(*names),
        data={
            "payMethod": pay_method,
            "options": json.dumps(options if options is not None else {"copies": 1}),
            "price": price,
        },
    )


class TestProcess:

    def test_pay_later_returns_code(self, client, staging_dir):
        response = submit(client, names=("a.pdf", "a.pdf"))

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"code"}

        order = client.get(f"/orders/{body['code']}").json()
        assert order["status"] == "pending"
        assert order["price"] == 20
        assert [p.rsplit("/", 1)[-1] for p in order["file_paths"]] == ["a.pdf", "a (1).pdf"]
        assert list(staging_dir.iterdir()) == []

    def test_pay_now_returns_session_handle(self, client):
        response = submit(client, pay_method="payNow")

        body = response.json()
        assert response.status_code == 200
        assert body["trackingId"].startswith("cf_")
        assert body["sessionHandle"] == f"session_{body['trackingId']}"

    def test_gateway_outage_is_degraded_not_failed(self, client, gateway):
        gateway.create_error = GatewayError("down", status_code=503)

        response = submit(client, pay_method="prepaid")

        assert response.status_code == 200
        assert response.json()["degraded"] is True

    def test_unknown_pay_method(self, client):
        assert submit(client, pay_method="barter").status_code == 422

    def test_options_must_be_json(self, client):
        response = client.post(
            "/process",
            files=documents("a.pdf"),
            data={"payMethod": "payLater", "options": "{not json", "price": "1"},
        )
        assert response.status_code == 422

    def test_options_are_validated(self, client):
        assert submit(client, options={"copies": 0}).status_code == 422

    def test_negative_price(self, client):
        assert submit(client, price="-1").status_code == 422


class TestVerifyPayment:

    def test_not_paid_is_400(self, client):
        tracking_id = submit(client, pay_method="payNow").json()["trackingId"]

        response = client.get(f"/verify-payment/{tracking_id}")

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_NOT_COMPLETED"
        assert response.json()["remoteStatus"] == "ACTIVE"

    def test_paid_returns_code(self, client, gateway):
        tracking_id = submit(client, pay_method="payNow").json()["trackingId"]
        gateway.mark_paid(tracking_id)

        response = client.get(f"/verify-payment/{tracking_id}")

        assert response.status_code == 200
        code = response.json()["code"]
        assert client.get(f"/orders/{code}").json()["status"] == "paid"
        assert client.get(f"/orders/{tracking_id}").status_code == 404

    def test_unknown_tracking_id_is_404(self, client):
        assert client.get("/verify-payment/cf_nope").status_code == 404

    @pytest.mark.parametrize("error,status_code", [
        (GatewayTimeout("slow"), 504),
        (GatewayError("bad", status_code=500), 502),
    ])
    def test_gateway_failures(self, client, gateway, error, status_code):
        tracking_id = submit(client, pay_method="payNow").json()["trackingId"]
        gateway.status_error = error

        assert client.get(f"/verify-payment/{tracking_id}").status_code == status_code


class TestWebhook:

    def test_valid_delivery_is_accepted(self, client):
        tracking_id = submit(client, pay_method="payNow").json()["trackingId"]
        raw_body, timestamp, signature = signed_webhook(payment_success_event(tracking_id))

        response = client.post(
            "/webhook",
            content=raw_body,
            headers={"x-webhook-timestamp": timestamp, "x-webhook-signature": signature},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["status"] == "paid"

    def test_forged_delivery_is_401(self, client):
        tracking_id = submit(client, pay_method="payNow").json()["trackingId"]
        raw_body, timestamp, _ = signed_webhook(payment_success_event(tracking_id))

        response = client.post(
            "/webhook",
            content=raw_body,
            headers={"x-webhook-timestamp": timestamp, "x-webhook-signature": "Zm9yZ2Vk"},
        )

        assert response.status_code == 401
        assert client.get(f"/orders/{tracking_id}").json()["status"] == "pending"

    def test_unsigned_delivery_is_401(self, client):
        assert client.post("/webhook", content=b"{}").status_code == 401


class TestLookupAndDownload:

    def test_unknown_code_is_404(self, client):
        response = client.get("/orders/000000")
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    def test_list_orders(self, client):
        submit(client)
        submit(client, pay_method="payNow")

        assert client.get("/orders").json()["count"] == 2
        assert client.get("/orders", params={"status": "paid"}).json()["count"] == 0

    def test_download_with_code(self, client):
        code = submit(client, names=("thesis.pdf",)).json()["code"]

        response = client.get("/download/thesis.pdf", params={"otp": code})

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 thesis.pdf"

    def test_download_needs_matching_code(self, client):
        submit(client, names=("thesis.pdf",))

        assert client.get("/download/thesis.pdf", params={"otp": "000000"}).status_code == 404

    def test_download_missing_file(self, client):
        code = submit(client, names=("thesis.pdf",)).json()["code"]

        assert client.get("/download/other.pdf", params={"otp": code}).status_code == 404

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Response-Time-Ms" in response.headers


def test_dedupe_filenames():
    assert dedupe_filenames(["a.pdf", "a.pdf", "dir/a.pdf", "", "b"]) == [
        "a.pdf", "a (1).pdf", "a (2).pdf", "document", "b",
    ]


def test_storage_timeout_maps_to_503():
    assert error_response_for(StorageTimeout("slow")) == (503, "STORAGE_TIMEOUT")
