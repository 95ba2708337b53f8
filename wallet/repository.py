from abc import ABC, abstractmethod

from wallet.entities import (
    PaymentRequest,
    TransactionPage,
    TransferRecord,
    WalletIdentity,
)


class WalletRepository(ABC):
    """
    Storage for wallet identities, transfer records and payment requests.

    Addresses are matched case-insensitively.
    """

    @abstractmethod
    async def get_wallet_by_user(self, user_id: str) -> WalletIdentity | None:
        """Identity owned by a user."""

    @abstractmethod
    async def get_wallet_by_address(self, address: str) -> WalletIdentity | None:
        """Identity stored for an address."""

    @abstractmethod
    async def create_wallet(self, identity: WalletIdentity) -> WalletIdentity:
        """Store an identity; if the user already has one, return that instead."""

    @abstractmethod
    async def mark_deployed(self, address: str) -> WalletIdentity | None:
        """Flag the identity at ``address`` as deployed."""

    @abstractmethod
    async def get_transfer(self, transaction_id: str) -> TransferRecord | None:
        """Transfer record by id."""

    @abstractmethod
    async def get_transfer_by_idempotency_key(
        self,
        sender_address: str,
        idempotency_key: str
    ) -> TransferRecord | None:
        """Transfer a sender created under an idempotency key."""

    @abstractmethod
    async def save_transfer(self, record: TransferRecord) -> None:
        """Insert or replace a transfer record and its indexes."""

    @abstractmethod
    async def pending_transfers(self, address: str) -> list[TransferRecord]:
        """Requested or submitted transfers sent from ``address``."""

    async def pending_outflow(self, address: str) -> int:
        """Sum of amounts of pending transfers sent from ``address``."""
        return sum(record.amount for record in await self.pending_transfers(address))

    @abstractmethod
    async def list_transfers(self, address: str, page: int, limit: int) -> TransactionPage:
        """Transfers sent or received by ``address``, newest first."""

    @abstractmethod
    async def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        """Payment request by id."""

    @abstractmethod
    async def save_payment_request(self, request: PaymentRequest) -> None:
        """Insert or replace a payment request."""

    @abstractmethod
    async def list_payment_requests(self, recipient_user_id: str) -> list[PaymentRequest]:
        """All payment requests addressed to a user, newest first."""


class InMemoryWalletRepository(WalletRepository):
    """
    Dict-backed repository for tests and local development.

    Idempotency keys never expire here.
    """

    def __init__(self):
        self.wallets: dict[str, WalletIdentity] = {}
        self.addresses: dict[str, str] = {}
        self.transfers: dict[str, TransferRecord] = {}
        self.idempotency_keys: dict[tuple[str, str], str] = {}
        self.payment_requests: dict[str, PaymentRequest] = {}

    async def get_wallet_by_user(self, user_id: str) -> WalletIdentity | None:
        return self.wallets.get(user_id)

    async def get_wallet_by_address(self, address: str) -> WalletIdentity | None:
        user_id = self.addresses.get(address.lower())
        return self.wallets.get(user_id) if user_id else None

    async def create_wallet(self, identity: WalletIdentity) -> WalletIdentity:
        existing = self.wallets.get(identity.user_id)
        if existing:
            return existing
        self.wallets[identity.user_id] = identity
        self.addresses[identity.address.lower()] = identity.user_id
        return identity

    async def mark_deployed(self, address: str) -> WalletIdentity | None:
        identity = await self.get_wallet_by_address(address)
        if identity is None:
            return None
        updated = identity.model_copy(update={"is_deployed": True})
        self.wallets[updated.user_id] = updated
        return updated

    async def get_transfer(self, transaction_id: str) -> TransferRecord | None:
        return self.transfers.get(transaction_id)

    async def get_transfer_by_idempotency_key(
        self,
        sender_address: str,
        idempotency_key: str
    ) -> TransferRecord | None:
        transaction_id = self.idempotency_keys.get((sender_address.lower(), idempotency_key))
        return self.transfers.get(transaction_id) if transaction_id else None

    async def save_transfer(self, record: TransferRecord) -> None:
        self.transfers[record.transaction_id] = record
        if record.idempotency_key:
            self.idempotency_keys.setdefault(
                (record.sender_address.lower(), record.idempotency_key),
                record.transaction_id
            )

    async def pending_transfers(self, address: str) -> list[TransferRecord]:
        key = address.lower()
        return [
            record for record in self.transfers.values()
            if record.is_pending and record.sender_address.lower() == key
        ]

    async def list_transfers(self, address: str, page: int, limit: int) -> TransactionPage:
        key = address.lower()
        matching = sorted(
            (
                record for record in self.transfers.values()
                if key in (record.sender_address.lower(), record.recipient_address.lower())
            ),
            key=lambda record: record.created_at,
            reverse=True,
        )
        start = (page - 1) * limit
        return TransactionPage(
            transfers=matching[start:start + limit],
            total=len(matching),
            page=page,
            limit=limit,
        )

    async def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        return self.payment_requests.get(request_id)

    async def save_payment_request(self, request: PaymentRequest) -> None:
        self.payment_requests[request.request_id] = request

    async def list_payment_requests(self, recipient_user_id: str) -> list[PaymentRequest]:
        return sorted(
            (
                request for request in self.payment_requests.values()
                if request.recipient_user_id == recipient_user_id
            ),
            key=lambda request: request.created_at,
            reverse=True,
        )
