import asyncio

import pytest
from httpx import AsyncClient

PREFIX = "/api/v1/wallet"
IDEMPOTENCY_KEY = "api-transfer-key-0001"


def _user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _transfer_headers(user_id: str, key: str = IDEMPOTENCY_KEY) -> dict:
    return {"X-User-Id": user_id, "Idempotency-Key": key}


async def _create(client: AsyncClient, user_id: str) -> dict:
    response = await client.post(f"{PREFIX}/create", json={"user_id": user_id})
    assert response.status_code == 201
    return response.json()


class TestServiceAPI:
    """
    Unit tests for service-level endpoints.
    """

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client: AsyncClient):
        """
        Test root endpoint returns correct application information.

        Parameters
        ----------
        client : AsyncClient
            Test client fixture
        """
        response = await client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Wallet API Service"
        assert data["version"] == "1.0.0"
        assert data["endpoints"]["transfer"] == f"{PREFIX}/transfer"

    @pytest.mark.asyncio
    async def test_health_endpoint(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestWalletAPI:
    """
    Unit tests for wallet endpoints over the in-memory ledger.

    These tests verify:
    1. Endpoints return the documented structure and status codes
    2. Input validation rejects malformed requests
    3. Domain errors render through the error envelope
    """

    @pytest.mark.asyncio
    async def test_create_wallet_is_idempotent(self, client: AsyncClient):
        first = await _create(client, "alice")
        second = await _create(client, "alice")

        assert first == second
        assert first["user_id"] == "alice"
        assert first["is_deployed"] is False
        assert first["chain_id"] == 8453

    @pytest.mark.asyncio
    async def test_create_wallet_requires_user_id(self, client: AsyncClient):
        response = await client.post(f"{PREFIX}/create", json={})

        assert response.status_code == 422
        data = response.json()
        assert data["status"] == "error"
        assert data["errors"][0]["field"] == "user_id"

    @pytest.mark.asyncio
    async def test_wallet_overview(self, client: AsyncClient, ledger):
        wallet = await _create(client, "alice")
        ledger.fund(wallet["address"], 10_000_000)

        response = await client.get(f"{PREFIX}/", headers=_user("alice"))

        assert response.status_code == 200
        data = response.json()
        assert data["wallet"]["address"] == wallet["address"]
        assert data["balance"]["raw_amount"] == "10000000"
        assert data["balance"]["formatted_amount"] == "10.00"
        assert data["balance"]["fiat_value"] == 10.0
        assert data["balance"]["fiat_available"] is True

    @pytest.mark.asyncio
    async def test_unknown_wallet_is_not_found(self, client: AsyncClient):
        response = await client.get(f"{PREFIX}/balance", headers=_user("ghost"))

        assert response.status_code == 404
        assert response.json()["message"] == "error.wallet.not_found"

    @pytest.mark.asyncio
    async def test_missing_user_header(self, client: AsyncClient):
        response = await client.get(f"{PREFIX}/balance")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_balance_unavailable(self, client: AsyncClient, ledger):
        await _create(client, "alice")
        ledger.available = False

        response = await client.get(f"{PREFIX}/balance", headers=_user("alice"))

        assert response.status_code == 503
        assert response.json()["message"] == "error.balance.unavailable"

    @pytest.mark.asyncio
    async def test_address_reports_deployment(self, client: AsyncClient, ledger):
        wallet = await _create(client, "alice")
        ledger.deployed.add(wallet["address"].lower())

        response = await client.get(f"{PREFIX}/address", headers=_user("alice"))

        assert response.status_code == 200
        assert response.json()["is_deployed"] is True

    @pytest.mark.asyncio
    async def test_transfer_and_poll_until_settled(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        bob = await _create(client, "bob")
        ledger.fund(alice["address"], 20_000_000)

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "5000000", "memo": "lunch"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "submitted"
        assert data["success"] is True
        assert data["formatted_amount"] == "5.00"
        assert data["recipient_address"] == bob["address"]
        assert "Idempotency-Replayed" not in response.headers

        ledger.settle(data["user_op_hash"])
        for _ in range(50):
            polled = await client.get(f"{PREFIX}/transfers/{data['transaction_id']}", headers=_user("bob"))
            if polled.json()["state"] == "settled":
                break
            await asyncio.sleep(0.01)
        assert polled.status_code == 200
        assert polled.json()["state"] == "settled"
        assert polled.json()["tx_hash"] is not None

        history = await client.get(f"{PREFIX}/transactions", headers=_user("bob"))
        entries = history.json()["transactions"]
        assert entries[0]["type"] == "transfer_in"
        assert entries[0]["counterparty_user_id"] == "alice"
        assert entries[0]["memo"] == "lunch"

    @pytest.mark.asyncio
    async def test_transfer_replay_sets_header(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        await _create(client, "bob")
        ledger.fund(alice["address"], 20_000_000)
        payload = {"to_user_id": "bob", "amount": "1000000"}

        first = await client.post(f"{PREFIX}/transfer", json=payload, headers=_transfer_headers("alice"))
        second = await client.post(f"{PREFIX}/transfer", json=payload, headers=_transfer_headers("alice"))

        assert second.status_code == 201
        assert second.headers["Idempotency-Replayed"] == "true"
        assert second.json()["transaction_id"] == first.json()["transaction_id"]

    @pytest.mark.asyncio
    async def test_transfer_key_conflict(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        await _create(client, "bob")
        ledger.fund(alice["address"], 20_000_000)

        await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "1000000"},
            headers=_transfer_headers("alice"),
        )
        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "2000000"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 409
        assert response.json()["message"] == "error.idempotency.key_conflict"

    @pytest.mark.asyncio
    async def test_transfer_insufficient_funds(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        await _create(client, "bob")
        ledger.fund(alice["address"], 5_000_000)

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "10000000"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 400
        data = response.json()
        assert data["message"] == "error.wallet.insufficient_funds"
        transaction_id = data["details"]["transaction_id"]

        polled = await client.get(f"{PREFIX}/transfers/{transaction_id}", headers=_user("alice"))
        assert polled.json()["state"] == "rejected"

    @pytest.mark.asyncio
    async def test_transfer_submission_failure(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        ledger.fund(alice["address"], 5_000_000)
        ledger.fail_next_submission("bundler unavailable")

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_address": "0x" + "ef" * 20, "amount": "1000000"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 502
        data = response.json()
        assert data["message"] == "error.transfer.submission_failed"
        assert data["details"]["reason"] == "bundler unavailable"

    @pytest.mark.asyncio
    async def test_transfer_ack_timeout(self, client: AsyncClient, ledger, settings):
        alice = await _create(client, "alice")
        ledger.fund(alice["address"], 5_000_000)
        ledger.submission_delay = settings.transfer_ack_timeout + 0.5

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_address": "0x" + "ef" * 20, "amount": "1000000"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 504
        data = response.json()
        assert data["message"] == "error.transfer.settlement_timeout"
        assert "transaction_id" in data["details"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [
        {"X-User-Id": "alice"},
        {"X-User-Id": "alice", "Idempotency-Key": "short"},
        {"X-User-Id": "alice", "Idempotency-Key": "k" * 65},
    ])
    async def test_transfer_requires_valid_idempotency_key(self, client: AsyncClient, headers: dict):
        await _create(client, "alice")

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "1000000"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["message"].startswith("error.idempotency.")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"amount": "1000000"},
        {"to_user_id": "bob", "to_address": "0x" + "ef" * 20, "amount": "1000000"},
        {"to_address": "invalid_address", "amount": "1000000"},
        {"to_address": "0x123", "amount": "1000000"},
        {"to_user_id": "bob", "amount": "1.5"},
        {"to_user_id": "bob", "amount": "-1"},
        {"to_user_id": "bob", "amount": "1", "memo": "m" * 257},
    ])
    async def test_transfer_validation(self, client: AsyncClient, payload: dict):
        response = await client.post(f"{PREFIX}/transfer", json=payload, headers=_transfer_headers("alice"))

        assert response.status_code == 422
        assert response.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_transfer_zero_amount(self, client: AsyncClient):
        await _create(client, "alice")

        response = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "0"},
            headers=_transfer_headers("alice"),
        )

        assert response.status_code == 400
        assert response.json()["message"] == "error.amount.invalid"

    @pytest.mark.asyncio
    async def test_transfer_visible_only_to_parties(self, client: AsyncClient, ledger):
        alice = await _create(client, "alice")
        await _create(client, "bob")
        await _create(client, "eve")
        ledger.fund(alice["address"], 5_000_000)

        sent = await client.post(
            f"{PREFIX}/transfer",
            json={"to_user_id": "bob", "amount": "1000000"},
            headers=_transfer_headers("alice"),
        )
        response = await client.get(f"{PREFIX}/transfers/{sent.json()['transaction_id']}", headers=_user("eve"))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_transfer(self, client: AsyncClient):
        await _create(client, "alice")

        response = await client.get(f"{PREFIX}/transfers/missing", headers=_user("alice"))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_transactions_limit_bounds(self, client: AsyncClient):
        await _create(client, "alice")

        response = await client.get(f"{PREFIX}/transactions", params={"limit": 101}, headers=_user("alice"))

        assert response.status_code == 422


class TestPaymentRequestAPI:
    """
    Unit tests for payment request endpoints.
    """

    @pytest.mark.asyncio
    async def test_request_lifecycle(self, client: AsyncClient, ledger):
        merchant = await _create(client, "merchant")
        customer = await _create(client, "customer")
        ledger.fund(customer["address"], 10_000_000)

        created = await client.post(
            f"{PREFIX}/requests",
            json={"amount": "2500000", "memo": "coffee", "expires_in_minutes": 10},
            headers=_user("merchant"),
        )
        assert created.status_code == 201
        request = created.json()
        assert request["status"] == "pending"
        assert request["formatted_amount"] == "2.50"
        assert request["recipient_address"] == merchant["address"]

        listed = await client.get(f"{PREFIX}/requests", headers=_user("merchant"))
        assert listed.json()["total"] == 1

        scanned = await client.get(f"{PREFIX}/requests/{request['request_id']}")
        assert scanned.json()["qr_data"] == request["qr_data"]

        paid = await client.post(
            f"{PREFIX}/requests/{request['request_id']}/pay",
            headers=_transfer_headers("customer", "api-payment-key-0001"),
        )
        assert paid.status_code == 200
        assert paid.json()["request"]["status"] == "completed"
        assert paid.json()["transfer"]["state"] == "submitted"

        replayed = await client.post(
            f"{PREFIX}/requests/{request['request_id']}/pay",
            headers=_transfer_headers("customer", "api-payment-key-0001"),
        )
        assert replayed.headers["Idempotency-Replayed"] == "true"

        listed = await client.get(f"{PREFIX}/requests", headers=_user("merchant"))
        assert listed.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_cancel_request(self, client: AsyncClient):
        await _create(client, "merchant")
        created = await client.post(f"{PREFIX}/requests", json={"amount": "1000000"}, headers=_user("merchant"))
        request_id = created.json()["request_id"]

        forbidden = await client.delete(f"{PREFIX}/requests/{request_id}", headers=_user("customer"))
        cancelled = await client.delete(f"{PREFIX}/requests/{request_id}", headers=_user("merchant"))
        again = await client.delete(f"{PREFIX}/requests/{request_id}", headers=_user("merchant"))

        assert forbidden.status_code == 403
        assert cancelled.json()["status"] == "cancelled"
        assert again.status_code == 400
        assert again.json()["message"] == "error.payment_request.not_pending"

    @pytest.mark.asyncio
    async def test_pay_unknown_request(self, client: AsyncClient):
        response = await client.post(
            f"{PREFIX}/requests/missing/pay",
            headers=_transfer_headers("customer", "api-payment-key-0001"),
        )

        assert response.status_code == 404
        assert response.json()["message"] == "error.payment_request.not_found"

    @pytest.mark.asyncio
    async def test_request_expiry_bounds(self, client: AsyncClient):
        await _create(client, "merchant")

        response = await client.post(
            f"{PREFIX}/requests",
            json={"amount": "1000000", "expires_in_minutes": 2000},
            headers=_user("merchant"),
        )

        assert response.status_code == 422
