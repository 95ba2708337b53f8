import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WalletIdentity(BaseModel):
    """
    Entity representing a user's smart account.

    Attributes
    ----------
    user_id : str | None
        Owning user; None for addresses outside this service
    address : str
        Checksummed account address
    is_deployed : bool
        Whether account code exists on-chain yet
    chain_id : int
        Network the address belongs to
    """
    user_id: str | None = None
    address: str
    is_deployed: bool = False
    chain_id: int

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_external(self) -> bool:
        return self.user_id is None


class BalanceSnapshot(BaseModel):
    """
    Entity representing a balance read at one point in time.

    Attributes
    ----------
    raw_amount : int
        Balance in token base units
    formatted_amount : str
        Human-readable decimal string, exact for ``raw_amount``
    decimals : int
        Token decimal precision
    token : str
        Token symbol
    fiat_currency : str
        Reference fiat currency
    exchange_rate : float | None
        Rate used for conversion, None when pricing failed
    fiat_value : float | None
        Fiat estimate, None when pricing failed
    pending_amount : int
        Outgoing amount reserved by in-flight transfers
    """
    raw_amount: int
    formatted_amount: str
    decimals: int
    token: str
    fiat_currency: str
    exchange_rate: float | None = None
    fiat_value: float | None = None
    pending_amount: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def fiat_available(self) -> bool:
        return self.fiat_value is not None

    @property
    def available_amount(self) -> int:
        return self.raw_amount - self.pending_amount


class TransferState(str, Enum):
    REQUESTED = "requested"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    FAILED = "failed"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.REQUESTED: frozenset({TransferState.SUBMITTED, TransferState.REJECTED}),
    TransferState.SUBMITTED: frozenset({TransferState.SETTLED, TransferState.FAILED}),
    TransferState.SETTLED: frozenset(),
    TransferState.FAILED: frozenset(),
    TransferState.REJECTED: frozenset(),
}

# states that still hold the sender's funds in reserve
PENDING_STATES = frozenset({TransferState.REQUESTED, TransferState.SUBMITTED})


class TransferResult(BaseModel):
    """
    Outcome of a transfer as reported to callers.

    Attributes
    ----------
    success : bool
        True once the bundle was acknowledged (submitted or settled)
    transaction_id : str
        Internal id of the logical transfer
    state : TransferState
        Lifecycle state
    user_op_hash : str | None
        Operation bundle hash, present after submission
    tx_hash : str | None
        Settlement transaction hash, present after settlement
    error : str | None
        Failure reason
    error_kind : str | None
        Error class name for rejected and failed transfers
    replayed : bool
        True when returned for a repeated idempotency key
    """
    success: bool
    transaction_id: str
    state: TransferState
    amount: int
    sender_address: str
    recipient_address: str
    user_op_hash: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    error_kind: str | None = None
    created_at: datetime
    settled_at: datetime | None = None
    replayed: bool = False


class TransferRecord(BaseModel):
    """
    Persisted state of one logical transfer.

    Records only change through ``transition``; terminal records are
    never modified.
    """
    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender_user_id: str | None = None
    sender_address: str
    recipient_user_id: str | None = None
    recipient_address: str
    amount: int
    memo: str | None = None
    state: TransferState = TransferState.REQUESTED
    idempotency_key: str | None = None
    fingerprint: str | None = None
    requires_deployment: bool = False
    user_op_hash: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    error_kind: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    settled_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.state]

    def transition(self, state: TransferState, **changes) -> "TransferRecord":
        """
        Return a copy moved to ``state``.

        Parameters
        ----------
        state : TransferState
            Target state
        **changes
            Field updates applied together with the state change

        Returns
        -------
        TransferRecord
            Updated record

        Raises
        ------
        InvalidTransitionError
            If the lifecycle does not allow the move
        """
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                details={
                    "transaction_id": self.transaction_id,
                    "from": self.state.value,
                    "to": state.value,
                }
            )
        now = utcnow()
        update = {"state": state, "updated_at": now, **changes}
        if state == TransferState.SETTLED:
            update.setdefault("settled_at", now)
        return self.model_copy(update=update)

    def to_result(self, replayed: bool = False) -> TransferResult:
        return TransferResult(
            success=self.state in (TransferState.SUBMITTED, TransferState.SETTLED),
            transaction_id=self.transaction_id,
            state=self.state,
            amount=self.amount,
            sender_address=self.sender_address,
            recipient_address=self.recipient_address,
            user_op_hash=self.user_op_hash,
            tx_hash=self.tx_hash,
            error=self.error,
            error_kind=self.error_kind,
            created_at=self.created_at,
            settled_at=self.settled_at,
            replayed=replayed,
        )


class OperationBundle(BaseModel):
    """
    Intent to move tokens, ready for the settlement layer.

    Attributes
    ----------
    sender : str
        Smart account executing the transfer
    recipient : str
        Receiving address
    amount : int
        Token base units
    requires_deployment : bool
        Whether the bundle carries account init code
    user_operation : dict[str, str] | None
        Signed packed user operation in JSON-RPC form (live ledger only)
    user_op_hash : str | None
        Operation hash known before submission, used to track bundles
        whose acknowledgment was lost
    """
    sender: str
    recipient: str
    amount: int
    requires_deployment: bool = False
    user_operation: dict[str, str] | None = None
    user_op_hash: str | None = None


class SettlementReceipt(BaseModel):
    """
    Entity representing the settled outcome of an operation bundle.
    """
    user_op_hash: str
    tx_hash: str | None = None
    success: bool
    reason: str | None = None


class TransactionDirection(str, Enum):
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"


class TransactionPage(BaseModel):
    """
    One page of a wallet's transfer history, newest first.
    """
    transfers: list[TransferRecord]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + len(self.transfers) < self.total


class PaymentRequestStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentRequest(BaseModel):
    """
    Entity representing a request for payment shared as a QR code.
    """
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient_user_id: str
    recipient_address: str
    amount: int
    memo: str | None = None
    status: PaymentRequestStatus = PaymentRequestStatus.PENDING
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    payer_user_id: str | None = None
    transaction_id: str | None = None
    idempotency_key: str | None = None
    qr_data: str = ""

    model_config = ConfigDict(from_attributes=True)

    def is_overdue(self, now: datetime | None = None) -> bool:
        return (
            self.status == PaymentRequestStatus.PENDING
            and (now or utcnow()) > self.expires_at
        )
