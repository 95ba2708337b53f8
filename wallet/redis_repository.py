from redis.asyncio import Redis

from wallet.entities import (
    PaymentRequest,
    TransactionPage,
    TransferRecord,
    WalletIdentity,
)
from wallet.repository import WalletRepository


class RedisWalletRepository(WalletRepository):
    """
    Repository keeping JSON documents and indexes in Redis.

    Key layout
    ----------
    ``wallet:user:{user_id}``
        Wallet identity document
    ``wallet:address:{address}``
        Owning user id of an address
    ``transfer:{transaction_id}``
        Transfer record document
    ``transfer:idem:{sender}:{key}``
        Transaction id bound to an idempotency key (expires)
    ``transfers:wallet:{address}``
        Sorted set of transaction ids by creation time
    ``transfers:pending:{sender}``
        Set of transaction ids still reserving sender funds
    ``payment_request:{request_id}`` / ``payment_requests:{user_id}``
        Payment request document and per-recipient index

    Parameters
    ----------
    redis_client : Redis
        Client created with ``decode_responses=True``
    idempotency_ttl : int
        Seconds an idempotency key stays bound
    """

    def __init__(self, redis_client: Redis, idempotency_ttl: int = 86400):
        self.redis = redis_client
        self.idempotency_ttl = idempotency_ttl

    async def get_wallet_by_user(self, user_id: str) -> WalletIdentity | None:
        raw = await self.redis.get(f"wallet:user:{user_id}")
        return WalletIdentity.model_validate_json(raw) if raw else None

    async def get_wallet_by_address(self, address: str) -> WalletIdentity | None:
        user_id = await self.redis.get(f"wallet:address:{address.lower()}")
        return await self.get_wallet_by_user(user_id) if user_id else None

    async def create_wallet(self, identity: WalletIdentity) -> WalletIdentity:
        created = await self.redis.set(
            f"wallet:user:{identity.user_id}", identity.model_dump_json(), nx=True
        )
        if not created:
            existing = await self.get_wallet_by_user(identity.user_id)
            if existing is not None:
                return existing
        await self.redis.set(f"wallet:address:{identity.address.lower()}", identity.user_id)
        return identity

    async def mark_deployed(self, address: str) -> WalletIdentity | None:
        identity = await self.get_wallet_by_address(address)
        if identity is None:
            return None
        updated = identity.model_copy(update={"is_deployed": True})
        await self.redis.set(f"wallet:user:{updated.user_id}", updated.model_dump_json())
        return updated

    async def get_transfer(self, transaction_id: str) -> TransferRecord | None:
        raw = await self.redis.get(f"transfer:{transaction_id}")
        return TransferRecord.model_validate_json(raw) if raw else None

    async def get_transfer_by_idempotency_key(
        self,
        sender_address: str,
        idempotency_key: str
    ) -> TransferRecord | None:
        transaction_id = await self.redis.get(
            f"transfer:idem:{sender_address.lower()}:{idempotency_key}"
        )
        return await self.get_transfer(transaction_id) if transaction_id else None

    async def save_transfer(self, record: TransferRecord) -> None:
        sender = record.sender_address.lower()
        recipient = record.recipient_address.lower()
        score = record.created_at.timestamp()

        await self.redis.set(f"transfer:{record.transaction_id}", record.model_dump_json())

        if record.idempotency_key:
            await self.redis.set(
                f"transfer:idem:{sender}:{record.idempotency_key}",
                record.transaction_id,
                ex=self.idempotency_ttl,
                nx=True,
            )

        await self.redis.zadd(f"transfers:wallet:{sender}", {record.transaction_id: score})
        if recipient != sender:
            await self.redis.zadd(f"transfers:wallet:{recipient}", {record.transaction_id: score})

        if record.is_pending:
            await self.redis.sadd(f"transfers:pending:{sender}", record.transaction_id)
        else:
            await self.redis.srem(f"transfers:pending:{sender}", record.transaction_id)

    async def pending_transfers(self, address: str) -> list[TransferRecord]:
        transaction_ids = await self.redis.smembers(f"transfers:pending:{address.lower()}")
        records = await self._load_transfers(sorted(transaction_ids))
        return [record for record in records if record.is_pending]

    async def list_transfers(self, address: str, page: int, limit: int) -> TransactionPage:
        key = f"transfers:wallet:{address.lower()}"
        start = (page - 1) * limit

        total = await self.redis.zcard(key)
        transaction_ids = await self.redis.zrevrange(key, start, start + limit - 1)

        return TransactionPage(
            transfers=await self._load_transfers(transaction_ids),
            total=total,
            page=page,
            limit=limit,
        )

    async def _load_transfers(self, transaction_ids: list[str]) -> list[TransferRecord]:
        if not transaction_ids:
            return []
        documents = await self.redis.mget([f"transfer:{tid}" for tid in transaction_ids])
        return [TransferRecord.model_validate_json(doc) for doc in documents if doc]

    async def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        raw = await self.redis.get(f"payment_request:{request_id}")
        return PaymentRequest.model_validate_json(raw) if raw else None

    async def save_payment_request(self, request: PaymentRequest) -> None:
        await self.redis.set(f"payment_request:{request.request_id}", request.model_dump_json())
        await self.redis.zadd(
            f"payment_requests:{request.recipient_user_id}",
            {request.request_id: request.created_at.timestamp()},
        )

    async def list_payment_requests(self, recipient_user_id: str) -> list[PaymentRequest]:
        request_ids = await self.redis.zrevrange(f"payment_requests:{recipient_user_id}", 0, -1)
        if not request_ids:
            return []
        documents = await self.redis.mget([f"payment_request:{rid}" for rid in request_ids])
        return [PaymentRequest.model_validate_json(doc) for doc in documents if doc]
