import base64

import pytest
from fastapi.testclient import TestClient
from solders.transaction import Transaction  # type: ignore

from conftest import native_transfer_tx, new_address
from refpay.config import Settings
from refpay.config.monitor import MonitorSettings
from refpay.errors import LedgerError
from refpay.main import Services, create_app
from refpay.models import PaymentStatus
from refpay.services.payments import PaymentService


@pytest.fixture
def services(payment_store, ledger, validator, confirmer, deriver, builder):
    payments = PaymentService(
        store=payment_store,
        ledger=ledger,
        validator=validator,
        confirmer=confirmer,
        deriver=deriver,
    )
    return Services(payments=payments, builder=builder, ledger=ledger, deriver=deriver)


@pytest.fixture
def client(services):
    settings = Settings(monitor=MonitorSettings(enabled=False))
    app = create_app(settings, services_factory=lambda _: services)
    with TestClient(app) as test_client:
        yield test_client


def test_transaction_request_metadata(client, make_payment):
    payment = make_payment()

    response = client.get(f"/transaction-requests/{payment.reference}")

    assert response.status_code == 200
    assert response.json() == {
        "label": "refpay",
        "icon": "https://solanapay.com/src/img/branding/Solanapay.com.svg",
    }


def test_transaction_request_unknown_reference(client):
    response = client.get(f"/transaction-requests/{new_address()}")
    assert response.status_code == 404
    assert response.json() == {"error": "Transaction request not found"}


def test_create_transaction(client, ledger, make_payment):
    payment = make_payment(memo="order-77")
    payer = new_address()

    response = client.post(
        f"/transaction-requests/{payment.reference}", json={"account": payer}
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"transaction", "message"}
    assert body["message"] == "Pay 5.44500 USD in SOL"
    tx = Transaction.from_bytes(base64.b64decode(body["transaction"]))
    assert str(tx.message.account_keys[0]) == payer
    assert str(tx.message.recent_blockhash) == ledger.blockhash


def test_create_transaction_missing_account(client, make_payment):
    payment = make_payment()
    response = client.post(f"/transaction-requests/{payment.reference}", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing account field"}


def test_create_transaction_without_body(client, make_payment):
    payment = make_payment()
    response = client.post(f"/transaction-requests/{payment.reference}")
    assert response.status_code == 400
    assert "error" in response.json()


def test_create_transaction_invalid_account(client, make_payment):
    payment = make_payment()
    response = client.post(
        f"/transaction-requests/{payment.reference}", json={"account": "nope"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid account: nope"}


def test_create_transaction_for_processed_payment(client, make_payment):
    payment = make_payment(status=PaymentStatus.CONFIRMED)
    response = client.post(
        f"/transaction-requests/{payment.reference}", json={"account": new_address()}
    )
    assert response.status_code == 404
    assert response.json() == {"error": "Transaction request already processed"}


def test_create_transaction_ledger_unavailable(client, ledger, make_payment):
    ledger.blockhash_error = LedgerError("RPC getLatestBlockhash failed")
    payment = make_payment()
    response = client.post(
        f"/transaction-requests/{payment.reference}", json={"account": new_address()}
    )
    assert response.status_code == 503
    assert response.json() == {"error": "RPC getLatestBlockhash failed"}


def test_create_payment(client):
    response = client.post(
        "/payments",
        json={"user_id": "u1", "amount": "5.00", "currency": "SOL", "memo": "order-77"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["fee_amount"] == "0.44500"
    assert body["total_amount_due"] == "5.44500"
    assert body["counter"] == 1
    assert body["payment_url"] == (
        "solana:http%3A%2F%2Ftestserver%2Ftransaction-requests%2F" + body["reference"]
    )


def test_create_payment_rejects_bad_amount(client):
    response = client.post("/payments", json={"user_id": "u1", "amount": "-3"})
    assert response.status_code == 400
    assert response.json() == {"error": "Amount must be positive"}


def test_create_payment_missing_fields(client):
    response = client.post("/payments", json={"amount": "5"})
    assert response.status_code == 400
    assert "user_id" in response.json()["error"]


def test_get_payment(client, make_payment):
    payment = make_payment()
    response = client.get(f"/payments/{payment.reference}")
    assert response.status_code == 200
    assert response.json()["reference"] == payment.reference


def test_get_expired_payment(client, make_payment):
    payment = make_payment(status=PaymentStatus.EXPIRED)
    response = client.get(f"/payments/{payment.reference}")
    assert response.status_code == 410
    assert "expired" in response.json()["error"]


def test_confirm_payment(client, ledger, make_payment):
    payment = make_payment()
    ledger.transactions[payment.reference] = native_transfer_tx(payment, 54_450_000)

    response = client.post(f"/payments/{payment.reference}/confirm")

    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"


def test_user_addresses(client):
    client.post("/payments", json={"user_id": "u1", "amount": "5"})
    client.post("/payments", json={"user_id": "u1", "amount": "7"})

    response = client.get("/users/u1/addresses")

    assert response.status_code == 200
    body = response.json()
    assert body["payment_count"] == 2
    assert [a["counter"] for a in body["addresses"]] == [1, 2]


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


def test_liveness(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readiness(client):
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "dependencies": {"ledger": "ok"}}


def test_readiness_with_ledger_down(client, ledger):
    ledger.blockhash_error = LedgerError("RPC getLatestBlockhash failed")
    response = client.get("/readyz")
    assert response.status_code == 503
    assert response.json() == {"status": "not_ready", "dependencies": {"ledger": "error"}}
