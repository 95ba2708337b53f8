import json
from datetime import timedelta

import pytest
import pytest_asyncio

from core.exceptions import (
    BadRequestException,
    ForbiddenException,
    InvalidAmountError,
    InvalidRecipientError,
    PaymentRequestNotFoundError,
    PaymentRequestNotPendingError,
    SettlementTimeoutError,
)
from wallet.entities import PaymentRequestStatus, TransferState, utcnow

PAY_KEY = "payment-key-00001"


@pytest_asyncio.fixture
async def parties(identity_resolver, ledger):
    merchant = await identity_resolver.resolve("merchant")
    customer = await identity_resolver.resolve("customer")
    ledger.fund(customer.address, 50_000_000)
    return merchant, customer


class TestPaymentRequestService:
    """
    Unit tests for the payment request lifecycle.
    """

    @pytest.mark.asyncio
    async def test_create_builds_qr_payload(self, payment_requests, parties):
        merchant, _ = parties

        request = await payment_requests.create("merchant", 12_500_000, memo="haircut")

        assert request.status == PaymentRequestStatus.PENDING
        assert request.recipient_address == merchant.address
        payload = json.loads(request.qr_data)
        assert payload == {
            "type": "wallet_payment",
            "version": 1,
            "request_id": request.request_id,
            "recipient": merchant.address,
            "amount": "12500000",
            "memo": "haircut",
            "expires_at": request.expires_at.isoformat(),
        }

    @pytest.mark.asyncio
    async def test_default_expiry_is_thirty_minutes(self, payment_requests, parties):
        before = utcnow()
        request = await payment_requests.create("merchant", 1_000_000)

        assert timedelta(minutes=29) < request.expires_at - before <= timedelta(minutes=30, seconds=1)

    @pytest.mark.asyncio
    async def test_invalid_create_arguments(self, payment_requests, parties):
        with pytest.raises(InvalidAmountError):
            await payment_requests.create("merchant", 0)
        with pytest.raises(BadRequestException):
            await payment_requests.create("merchant", 1_000_000, expires_in_minutes=1441)

    @pytest.mark.asyncio
    async def test_fulfill_pays_and_completes(self, payment_requests, parties, ledger):
        merchant, customer = parties
        created = await payment_requests.create("merchant", 10_000_000)

        request, result = await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

        assert result.state == TransferState.SUBMITTED
        assert result.recipient_address == merchant.address
        assert request.status == PaymentRequestStatus.COMPLETED
        assert request.payer_user_id == "customer"
        assert request.transaction_id == result.transaction_id

        ledger.settle(result.user_op_hash)
        assert ledger.balances[merchant.address.lower()] == 10_000_000

    @pytest.mark.asyncio
    async def test_completed_request_cannot_be_paid_again(self, payment_requests, parties, identity_resolver, ledger):
        created = await payment_requests.create("merchant", 1_000_000)
        await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)
        other = await identity_resolver.resolve("other")
        ledger.fund(other.address, 5_000_000)

        with pytest.raises(PaymentRequestNotPendingError):
            await payment_requests.fulfill(created.request_id, "other", "payment-key-00002")

    @pytest.mark.asyncio
    async def test_fulfill_replay_returns_same_transfer(self, payment_requests, parties, ledger):
        created = await payment_requests.create("merchant", 1_000_000)

        _, first = await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)
        request, second = await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

        assert second.transaction_id == first.transaction_id
        assert second.replayed is True
        assert request.status == PaymentRequestStatus.COMPLETED
        assert len(ledger.operations) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_keeps_request_payable(self, payment_requests, parties, ledger):
        _, customer = parties
        created = await payment_requests.create("merchant", 80_000_000)

        request, result = await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

        assert result.state == TransferState.REJECTED
        assert request.status == PaymentRequestStatus.PENDING

        ledger.fund(customer.address, 50_000_000)
        request, result = await payment_requests.fulfill(created.request_id, "customer", "payment-key-00002")

        assert result.state == TransferState.SUBMITTED
        assert request.status == PaymentRequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_in_flight_payment_blocks_other_payers(
        self, payment_requests, parties, identity_resolver, ledger, transfer_executor
    ):
        created = await payment_requests.create("merchant", 1_000_000)
        transfer_executor.ack_timeout = 0.05
        ledger.submission_delay = 0.2

        with pytest.raises(SettlementTimeoutError):
            await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

        other = await identity_resolver.resolve("other")
        ledger.fund(other.address, 5_000_000)
        with pytest.raises(PaymentRequestNotPendingError):
            await payment_requests.fulfill(created.request_id, "other", "payment-key-00002")

        await transfer_executor.drain()
        request, result = await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)
        assert result.replayed is True
        assert result.state == TransferState.SUBMITTED
        assert request.status == PaymentRequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recipient_cannot_pay_own_request(self, payment_requests, parties):
        created = await payment_requests.create("merchant", 1_000_000)

        with pytest.raises(InvalidRecipientError):
            await payment_requests.fulfill(created.request_id, "merchant", PAY_KEY)

    @pytest.mark.asyncio
    async def test_overdue_request_expires(self, payment_requests, parties, repository):
        created = await payment_requests.create("merchant", 1_000_000)
        repository.payment_requests[created.request_id] = created.model_copy(
            update={"expires_at": utcnow() - timedelta(seconds=1)}
        )

        request = await payment_requests.get(created.request_id)
        assert request.status == PaymentRequestStatus.EXPIRED

        with pytest.raises(PaymentRequestNotPendingError):
            await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

    @pytest.mark.asyncio
    async def test_cancel_by_recipient_only(self, payment_requests, parties):
        created = await payment_requests.create("merchant", 1_000_000)

        with pytest.raises(ForbiddenException):
            await payment_requests.cancel(created.request_id, "customer")

        cancelled = await payment_requests.cancel(created.request_id, "merchant")
        assert cancelled.status == PaymentRequestStatus.CANCELLED

        with pytest.raises(PaymentRequestNotPendingError):
            await payment_requests.cancel(created.request_id, "merchant")
        with pytest.raises(PaymentRequestNotPendingError):
            await payment_requests.fulfill(created.request_id, "customer", PAY_KEY)

    @pytest.mark.asyncio
    async def test_list_pending_expires_and_filters(self, payment_requests, parties, repository):
        stale = await payment_requests.create("merchant", 1_000_000)
        repository.payment_requests[stale.request_id] = stale.model_copy(
            update={"expires_at": utcnow() - timedelta(seconds=1)}
        )
        cancelled = await payment_requests.create("merchant", 2_000_000)
        await payment_requests.cancel(cancelled.request_id, "merchant")
        live = await payment_requests.create("merchant", 3_000_000)

        pending = await payment_requests.list_pending("merchant")

        assert [request.request_id for request in pending] == [live.request_id]
        assert repository.payment_requests[stale.request_id].status == PaymentRequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_request(self, payment_requests):
        with pytest.raises(PaymentRequestNotFoundError):
            await payment_requests.get("missing")
