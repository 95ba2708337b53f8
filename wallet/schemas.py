from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wallet.entities import PaymentRequestStatus, TransactionDirection, TransferState

AMOUNT_PATTERN = r"^[0-9]+$"


def _validate_address(v: str) -> str:
    if not v.startswith('0x') or len(v) != 42:
        raise ValueError('Invalid Ethereum address format')
    try:
        int(v[2:], 16)
    except ValueError:
        raise ValueError('Invalid Ethereum address format') from None
    return v.lower()


class CreateWalletRequest(BaseModel):
    """
    Request schema for creating a wallet.

    Attributes
    ----------
    user_id : str
        User the wallet belongs to
    """
    user_id: str = Field(..., min_length=1, max_length=128, description="User identifier")

    model_config = ConfigDict(from_attributes=True)


class WalletResponse(BaseModel):
    """
    Response schema for a wallet identity.

    Attributes
    ----------
    user_id : str | None
        Owning user
    address : str
        Smart account address
    is_deployed : bool
        Whether the account contract exists on-chain
    chain_id : int
        Network id
    """
    user_id: str | None
    address: str
    is_deployed: bool
    chain_id: int

    model_config = ConfigDict(from_attributes=True)


class BalanceResponse(BaseModel):
    """
    Response schema for a balance snapshot.

    Attributes
    ----------
    address : str
        Wallet address
    raw_amount : str
        Balance in token base units
    formatted_amount : str
        Balance as a decimal string
    decimals : int
        Token precision
    token : str
        Token symbol
    fiat_currency : str
        Currency of ``fiat_value``
    exchange_rate : float | None
        Rate used, omitted when pricing failed
    fiat_value : float | None
        Fiat estimate, omitted when pricing failed
    fiat_available : bool
        Whether fiat fields are present
    pending_amount : str
        Base units reserved by in-flight transfers
    available_amount : str
        Base units spendable right now
    """
    address: str
    raw_amount: str
    formatted_amount: str
    decimals: int
    token: str
    fiat_currency: str
    exchange_rate: float | None = None
    fiat_value: float | None = None
    fiat_available: bool
    pending_amount: str
    available_amount: str

    model_config = ConfigDict(from_attributes=True)


class WalletOverviewResponse(BaseModel):
    wallet: WalletResponse
    balance: BalanceResponse


class TransferRequest(BaseModel):
    """
    Request schema for a peer-to-peer transfer.

    Exactly one of ``to_address`` and ``to_user_id`` must be given.

    Attributes
    ----------
    to_address : str | None
        Recipient address
    to_user_id : str | None
        Recipient user
    amount : str
        Token base units as a digit string
    memo : str | None
        Free text stored with the transfer
    """
    to_address: str | None = Field(default=None, description="Recipient address")
    to_user_id: str | None = Field(default=None, min_length=1, max_length=128, description="Recipient user")
    amount: str = Field(..., pattern=AMOUNT_PATTERN, description="Amount in token base units")
    memo: str | None = Field(default=None, max_length=256)

    @field_validator('to_address')
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return None if v is None else _validate_address(v)

    @model_validator(mode='after')
    def validate_recipient(self) -> "TransferRequest":
        if (self.to_address is None) == (self.to_user_id is None):
            raise ValueError('Exactly one of to_address and to_user_id is required')
        return self

    model_config = ConfigDict(from_attributes=True)


class TransferResponse(BaseModel):
    """
    Response schema for a transfer result.

    Attributes
    ----------
    transaction_id : str
        Id to poll the transfer with
    success : bool
        True once submitted or settled
    state : TransferState
        Lifecycle state
    amount : str
        Token base units
    formatted_amount : str
        Amount as a decimal string
    replayed : bool
        Whether the result was returned for a repeated idempotency key
    """
    transaction_id: str
    success: bool
    state: TransferState
    amount: str
    formatted_amount: str
    sender_address: str
    recipient_address: str
    user_op_hash: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    created_at: datetime
    settled_at: datetime | None = None
    replayed: bool = False

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    """
    Response schema for one history entry, typed relative to the wallet.
    """
    transaction_id: str
    type: TransactionDirection
    state: TransferState
    amount: str
    formatted_amount: str
    counterparty_address: str
    counterparty_user_id: str | None = None
    memo: str | None = None
    tx_hash: str | None = None
    created_at: datetime
    settled_at: datetime | None = None


class TransactionsResponse(BaseModel):
    """
    Response schema for a history page.

    Attributes
    ----------
    transactions : list[TransactionResponse]
        Entries, newest first
    total : int
        Number of transfers involving the wallet
    page : int
        Page number
    limit : int
        Page size
    has_more : bool
        Whether later pages exist
    """
    transactions: list[TransactionResponse]
    total: int
    page: int
    limit: int
    has_more: bool


class CreatePaymentRequestRequest(BaseModel):
    """
    Request schema for creating a payment request.

    Attributes
    ----------
    amount : str
        Token base units as a digit string
    memo : str | None
        Text shown to the payer
    expires_in_minutes : int | None
        Lifetime of the request, server default when omitted
    """
    amount: str = Field(..., pattern=AMOUNT_PATTERN, description="Amount in token base units")
    memo: str | None = Field(default=None, max_length=256)
    expires_in_minutes: int | None = Field(default=None, ge=1, le=1440)

    model_config = ConfigDict(from_attributes=True)


class PaymentRequestResponse(BaseModel):
    request_id: str
    recipient_user_id: str
    recipient_address: str
    amount: str
    formatted_amount: str
    memo: str | None = None
    status: PaymentRequestStatus
    expires_at: datetime
    created_at: datetime
    payer_user_id: str | None = None
    transaction_id: str | None = None
    qr_data: str

    model_config = ConfigDict(from_attributes=True)


class PaymentRequestsResponse(BaseModel):
    requests: list[PaymentRequestResponse]
    total: int


class PayPaymentRequestResponse(BaseModel):
    """
    Response schema for paying a request.

    Attributes
    ----------
    request : PaymentRequestResponse
        Updated payment request
    transfer : TransferResponse
        Outcome of the payment transfer
    """
    request: PaymentRequestResponse
    transfer: TransferResponse
