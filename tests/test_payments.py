from datetime import date, timedelta
from decimal import Decimal

from common.models import RoleEnum

TENANT_WALLET = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
OTHER_WALLET = "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB"
SERVICE_HEADERS = {"X-Service-Key": "service-key"}
FIRST_TX = "0x" + "11" * 32
SECOND_TX = "0x" + "22" * 32


def create_booking(client, headers, **overrides) -> dict:
    check_in = date.today() + timedelta(days=10)
    payload = {
        "propertyId": "villa-1",
        "checkInDate": check_in.isoformat(),
        "checkOutDate": (check_in + timedelta(days=5)).isoformat(),
        "numberOfGuests": 2,
        "tenantWalletAddress": TENANT_WALLET,
    }
    payload.update(overrides)
    response = client.post("/bookings", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def confirm(client, booking_id: str, tx_hash: str, confirmations: int = 3):
    return client.post(
        "/payments/confirmations",
        json={"bookingId": booking_id, "txHash": tx_hash, "confirmations": confirmations},
        headers=SERVICE_HEADERS,
    )


def test_intent_is_reused_until_it_expires(bookings_client, payments_client, auth_header):
    tenant = auth_header("tenant-1")
    booking = create_booking(bookings_client, tenant)

    first = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    second = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    assert first.status_code == second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["payerAddress"] == TENANT_WALLET
    assert Decimal(first.json()["conversionRate"]) == Decimal("30000")


def test_intent_requires_wallets(bookings_client, payments_client, auth_header, catalog):
    tenant = auth_header("tenant-1")
    booking = create_booking(bookings_client, tenant, tenantWalletAddress=None)

    missing = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    assert missing.status_code == 422
    assert missing.json()["errorKind"] == "MissingWalletError"

    registered = payments_client.put(
        "/payments/wallet-address", json={"walletAddress": TENANT_WALLET.lower()}, headers=tenant
    )
    assert registered.status_code == 200
    assert registered.json()["walletAddress"] == TENANT_WALLET
    assert registered.json()["updatedBookings"] == [booking["id"]]

    intent = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    assert intent.status_code == 201

    locked = payments_client.put("/payments/wallet-address", json={"walletAddress": OTHER_WALLET}, headers=tenant)
    assert locked.status_code == 409


def test_intent_without_host_wallet(bookings_client, payments_client, auth_header, catalog):
    catalog.add("cabin-1", ownerWalletAddress=None)
    tenant = auth_header("tenant-1")
    booking = create_booking(bookings_client, tenant, propertyId="cabin-1")

    response = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    assert response.status_code == 422
    assert response.json()["errorKind"] == "MissingWalletError"


def test_intent_only_for_pending_payment(bookings_client, payments_client, auth_header):
    tenant = auth_header("tenant-1")
    booking = create_booking(bookings_client, tenant, requestedPrice="2800")

    response = payments_client.post("/payments/intent", json={"bookingId": booking["id"]}, headers=tenant)
    assert response.status_code == 409
    assert response.json()["errorKind"] == "InvalidTransitionError"

    stranger = payments_client.post(
        "/payments/intent", json={"bookingId": booking["id"]}, headers=auth_header("tenant-2")
    )
    assert stranger.status_code == 403


def test_resubmission_supersedes_and_flags_late_confirmation(bookings_client, payments_client, auth_header):
    tenant = auth_header("tenant-1")
    booking_id = create_booking(bookings_client, tenant)["id"]
    payments_client.post("/payments/intent", json={"bookingId": booking_id}, headers=tenant)

    for tx_hash in (FIRST_TX, SECOND_TX):
        submitted = payments_client.put(
            f"/payments/booking/{booking_id}/tx-hash", json={"txHash": tx_hash}, headers=tenant
        )
        assert submitted.status_code == 200

    repeated = payments_client.put(f"/payments/booking/{booking_id}/tx-hash", json={"txHash": SECOND_TX}, headers=tenant)
    assert repeated.status_code == 200

    stale = confirm(payments_client, booking_id, FIRST_TX)
    assert stale.status_code == 200
    assert stale.json()["status"] == "SUPERSEDED"
    assert stale.json()["needsReview"] is True

    final = confirm(payments_client, booking_id, SECOND_TX)
    assert final.json()["status"] == "FINALIZED"

    status = payments_client.get(f"/payments/booking/{booking_id}", headers=tenant).json()
    assert status["bookingStatus"] == "CONFIRMED"
    assert [record["txHash"] for record in status["settlements"]] == [FIRST_TX, SECOND_TX]
    assert status["latestSettlement"]["status"] == "FINALIZED"
    assert status["stale"] is False

    lookup = payments_client.get(f"/payments/tx/{SECOND_TX}", headers=tenant)
    assert lookup.status_code == 200
    assert lookup.json()["bookingId"] == booking_id


def test_submission_must_match_intent(bookings_client, payments_client, auth_header):
    tenant = auth_header("tenant-1")
    booking_id = create_booking(bookings_client, tenant)["id"]

    no_intent = payments_client.put(f"/payments/booking/{booking_id}/tx-hash", json={"txHash": FIRST_TX}, headers=tenant)
    assert no_intent.status_code == 409

    payments_client.post("/payments/intent", json={"bookingId": booking_id}, headers=tenant)
    wrong_chain = payments_client.put(
        f"/payments/booking/{booking_id}/tx-hash", json={"txHash": FIRST_TX, "chainId": 1}, headers=tenant
    )
    assert wrong_chain.status_code == 400
    wrong_sender = payments_client.put(
        f"/payments/booking/{booking_id}/tx-hash",
        json={"txHash": FIRST_TX, "walletAddress": OTHER_WALLET},
        headers=tenant,
    )
    assert wrong_sender.status_code == 400
    malformed = payments_client.put(f"/payments/booking/{booking_id}/tx-hash", json={"txHash": "0x1234"}, headers=tenant)
    assert malformed.status_code == 400


def test_confirmations_require_service_key(payments_client):
    response = payments_client.post(
        "/payments/confirmations", json={"bookingId": "b-1", "txHash": FIRST_TX, "confirmations": 3}
    )
    assert response.status_code == 403


def test_unknown_transaction_is_not_found(bookings_client, payments_client, auth_header):
    booking_id = create_booking(bookings_client, auth_header("tenant-1"))["id"]
    response = confirm(payments_client, booking_id, FIRST_TX)
    assert response.status_code == 404
    assert response.json()["errorKind"] == "NotFoundError"


def test_conversion_rate_is_admin_managed(bookings_client, payments_client, auth_header):
    admin = auth_header("admin-1", RoleEnum.ADMIN)
    tenant = auth_header("tenant-1")

    default = payments_client.get("/payments/conversion-rate", headers=tenant)
    assert default.status_code == 200
    assert default.json()["source"] == "default"

    assert payments_client.post("/payments/conversion-rate", json={"rate": "25000"}, headers=tenant).status_code == 403
    assert payments_client.post("/payments/conversion-rate", json={"rate": "0"}, headers=admin).status_code == 400
    recorded = payments_client.post(
        "/payments/conversion-rate", json={"rate": "25000", "source": "oracle"}, headers=admin
    )
    assert recorded.status_code == 201

    booking_id = create_booking(bookings_client, tenant)["id"]
    intent = payments_client.post("/payments/intent", json={"bookingId": booking_id}, headers=tenant)
    assert intent.json()["amountWei"] == "120000000000000000"


def test_payment_history_covers_both_sides(bookings_client, payments_client, auth_header):
    tenant = auth_header("tenant-1")
    booking_id = create_booking(bookings_client, tenant)["id"]
    payments_client.post("/payments/intent", json={"bookingId": booking_id}, headers=tenant)
    for tx_hash in (FIRST_TX, SECOND_TX):
        payments_client.put(f"/payments/booking/{booking_id}/tx-hash", json={"txHash": tx_hash}, headers=tenant)

    mine = payments_client.get("/payments/history", headers=tenant)
    assert mine.status_code == 200
    assert {record["txHash"] for record in mine.json()} == {FIRST_TX, SECOND_TX}
    hosted = payments_client.get("/payments/history", headers=auth_header("host-1", RoleEnum.HOST)).json()
    assert {record["bookingId"] for record in hosted} == {booking_id}
    assert payments_client.get("/payments/history", headers=auth_header("tenant-2")).json() == []
    assert payments_client.get("/payments/history").status_code == 401
