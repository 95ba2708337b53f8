from datetime import timedelta

import pytest

from wallet.entities import (
    PaymentRequest,
    TransferRecord,
    TransferState,
    WalletIdentity,
    utcnow,
)
from wallet.redis_repository import RedisWalletRepository

ALICE = "0xAb5801a7D398351b8bE11C439e05C5B3259aeC9B"
BOB = "0x4bbeEB066eD09B7AEd07bF39EEe0460DFa261520"


class FakeRedis:
    """
    Dict-backed stand-in for the subset of ``redis.asyncio.Redis`` the
    repository uses, with ``decode_responses=True`` semantics.
    """

    def __init__(self):
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.sorted_sets: dict[str, dict[str, float]] = {}
        self.sets: dict[str, set[str]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def mget(self, keys):
        return [self.values.get(key) for key in keys]

    async def zadd(self, key, mapping):
        self.sorted_sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zcard(self, key):
        return len(self.sorted_sets.get(key, {}))

    async def zrevrange(self, key, start, end):
        members = sorted(self.sorted_sets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        ids = [member for member, _ in members]
        return ids[start:] if end == -1 else ids[start:end + 1]

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def srem(self, key, *members):
        self.sets.setdefault(key, set()).difference_update(members)
        return len(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_repository(fake_redis) -> RedisWalletRepository:
    return RedisWalletRepository(redis_client=fake_redis, idempotency_ttl=3600)


def _transfer(amount: int, minutes_ago: int = 0, **changes) -> TransferRecord:
    return TransferRecord(
        sender_address=ALICE,
        recipient_address=BOB,
        amount=amount,
        created_at=utcnow() - timedelta(minutes=minutes_ago),
        **changes,
    )


class TestRedisWalletRepository:
    """
    Unit tests for the Redis key layout and indexes.
    """

    @pytest.mark.asyncio
    async def test_wallet_roundtrip_and_address_lookup(self, redis_repository, fake_redis):
        identity = WalletIdentity(user_id="alice", address=ALICE, chain_id=8453)

        await redis_repository.create_wallet(identity)

        assert await redis_repository.get_wallet_by_user("alice") == identity
        assert await redis_repository.get_wallet_by_address(ALICE.lower()) == identity
        assert fake_redis.values[f"wallet:address:{ALICE.lower()}"] == "alice"

    @pytest.mark.asyncio
    async def test_create_wallet_keeps_existing(self, redis_repository):
        first = WalletIdentity(user_id="alice", address=ALICE, chain_id=8453)
        second = WalletIdentity(user_id="alice", address=BOB, chain_id=8453)

        await redis_repository.create_wallet(first)
        stored = await redis_repository.create_wallet(second)

        assert stored.address == ALICE
        assert await redis_repository.get_wallet_by_address(BOB) is None

    @pytest.mark.asyncio
    async def test_mark_deployed(self, redis_repository):
        await redis_repository.create_wallet(WalletIdentity(user_id="alice", address=ALICE, chain_id=8453))

        updated = await redis_repository.mark_deployed(ALICE)

        assert updated.is_deployed is True
        assert (await redis_repository.get_wallet_by_user("alice")).is_deployed is True
        assert await redis_repository.mark_deployed(BOB) is None

    @pytest.mark.asyncio
    async def test_idempotency_key_binds_first_transfer(self, redis_repository, fake_redis):
        first = _transfer(1_000_000, idempotency_key="redis-key-000001")
        second = _transfer(2_000_000, idempotency_key="redis-key-000001")

        await redis_repository.save_transfer(first)
        await redis_repository.save_transfer(second)

        found = await redis_repository.get_transfer_by_idempotency_key(ALICE, "redis-key-000001")
        assert found.transaction_id == first.transaction_id
        assert fake_redis.expiry[f"transfer:idem:{ALICE.lower()}:redis-key-000001"] == 3600
        assert await redis_repository.get_transfer_by_idempotency_key(BOB, "redis-key-000001") is None

    @pytest.mark.asyncio
    async def test_pending_outflow_follows_state(self, redis_repository):
        requested = _transfer(3_000_000)
        submitted = _transfer(2_000_000).transition(TransferState.SUBMITTED, user_op_hash="0x01")
        rejected = _transfer(9_000_000).transition(TransferState.REJECTED)

        for record in (requested, submitted, rejected):
            await redis_repository.save_transfer(record)
        assert await redis_repository.pending_outflow(ALICE) == 5_000_000
        assert await redis_repository.pending_outflow(BOB) == 0

        await redis_repository.save_transfer(submitted.transition(TransferState.SETTLED, tx_hash="0x02"))
        assert await redis_repository.pending_outflow(ALICE) == 3_000_000

    @pytest.mark.asyncio
    async def test_history_newest_first_for_both_parties(self, redis_repository):
        older = _transfer(1_000_000, minutes_ago=10)
        middle = _transfer(2_000_000, minutes_ago=5)
        newest = _transfer(3_000_000)
        for record in (older, newest, middle):
            await redis_repository.save_transfer(record)

        page = await redis_repository.list_transfers(ALICE, page=1, limit=2)
        received = await redis_repository.list_transfers(BOB, page=2, limit=2)

        assert [record.amount for record in page.transfers] == [3_000_000, 2_000_000]
        assert page.total == 3
        assert page.has_more is True
        assert [record.amount for record in received.transfers] == [1_000_000]
        assert received.has_more is False

    @pytest.mark.asyncio
    async def test_state_updates_do_not_duplicate_history(self, redis_repository):
        record = _transfer(1_000_000)
        await redis_repository.save_transfer(record)
        await redis_repository.save_transfer(record.transition(TransferState.SUBMITTED, user_op_hash="0x01"))

        page = await redis_repository.list_transfers(ALICE, page=1, limit=10)

        assert page.total == 1
        assert page.transfers[0].state == TransferState.SUBMITTED

    @pytest.mark.asyncio
    async def test_payment_requests_by_recipient(self, redis_repository):
        first = PaymentRequest(
            recipient_user_id="alice",
            recipient_address=ALICE,
            amount=1_000_000,
            expires_at=utcnow() + timedelta(minutes=30),
            created_at=utcnow() - timedelta(minutes=1),
        )
        second = PaymentRequest(
            recipient_user_id="alice",
            recipient_address=ALICE,
            amount=2_000_000,
            expires_at=utcnow() + timedelta(minutes=30),
        )
        await redis_repository.save_payment_request(first)
        await redis_repository.save_payment_request(second)

        listed = await redis_repository.list_payment_requests("alice")

        assert [request.request_id for request in listed] == [second.request_id, first.request_id]
        assert await redis_repository.get_payment_request(first.request_id) == first
        assert await redis_repository.list_payment_requests("bob") == []
