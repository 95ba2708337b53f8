from fastapi import APIRouter, Header, Query, Response
from dishka.integrations.fastapi import inject
from dishka import FromComponent
from typing import Annotated

from core.exceptions import IdempotencyKeyRequiredError, InvalidIdempotencyKeyError
from wallet.schemas import (
    BalanceResponse,
    CreatePaymentRequestRequest,
    CreateWalletRequest,
    PaymentRequestResponse,
    PaymentRequestsResponse,
    PayPaymentRequestResponse,
    TransactionsResponse,
    TransferRequest,
    TransferResponse,
    WalletOverviewResponse,
    WalletResponse,
)
from wallet.usecases import (
    CancelPaymentRequestUseCase,
    CreatePaymentRequestUseCase,
    CreateWalletUseCase,
    GetAddressUseCase,
    GetBalanceUseCase,
    GetPaymentRequestUseCase,
    GetTransferUseCase,
    GetWalletUseCase,
    ListPaymentRequestsUseCase,
    ListTransactionsUseCase,
    PayPaymentRequestUseCase,
    TransferUseCase,
)

IDEMPOTENCY_KEY_MIN_LENGTH = 16
IDEMPOTENCY_KEY_MAX_LENGTH = 64
REPLAY_HEADER = "Idempotency-Replayed"

UserId = Annotated[str, Header(alias="X-User-Id", min_length=1, max_length=128)]
IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key")]

router = APIRouter(tags=["Wallet"])


def require_idempotency_key(idempotency_key: str | None) -> str:
    """
    Validate the ``Idempotency-Key`` header.

    Parameters
    ----------
    idempotency_key : str | None
        Raw header value

    Returns
    -------
    str
        Validated key

    Raises
    ------
    IdempotencyKeyRequiredError
        If the header is missing
    InvalidIdempotencyKeyError
        If the key length is out of bounds
    """
    if not idempotency_key:
        raise IdempotencyKeyRequiredError()
    if not IDEMPOTENCY_KEY_MIN_LENGTH <= len(idempotency_key) <= IDEMPOTENCY_KEY_MAX_LENGTH:
        raise InvalidIdempotencyKeyError(details={
            "min_length": IDEMPOTENCY_KEY_MIN_LENGTH,
            "max_length": IDEMPOTENCY_KEY_MAX_LENGTH,
        })
    return idempotency_key


@router.post("/create", response_model=WalletResponse, status_code=201)
@inject
async def create_wallet(
    request: CreateWalletRequest,
    use_case: Annotated[CreateWalletUseCase, FromComponent("wallet")]
) -> WalletResponse:
    """
    Create the user's wallet, or return the existing one.

    Parameters
    ----------
    request : CreateWalletRequest
        Request with user id
    use_case : CreateWalletUseCase
        Use case for creating wallets

    Returns
    -------
    WalletResponse
        Wallet identity
    """
    return await use_case(user_id=request.user_id)


@router.get("/", response_model=WalletOverviewResponse)
@inject
async def get_wallet(
    user_id: UserId,
    use_case: Annotated[GetWalletUseCase, FromComponent("wallet")]
) -> WalletOverviewResponse:
    """
    Get wallet identity together with its balance.
    """
    return await use_case(user_id=user_id)


@router.get("/address", response_model=WalletResponse)
@inject
async def get_address(
    user_id: UserId,
    use_case: Annotated[GetAddressUseCase, FromComponent("wallet")]
) -> WalletResponse:
    """
    Get the wallet address with its current deployment status.

    Parameters
    ----------
    user_id : str
        Wallet owner from the ``X-User-Id`` header
    use_case : GetAddressUseCase
        Use case for reading the address

    Returns
    -------
    WalletResponse
        Wallet identity
    """
    return await use_case(user_id=user_id)


@router.get("/balance", response_model=BalanceResponse)
@inject
async def get_balance(
    user_id: UserId,
    use_case: Annotated[GetBalanceUseCase, FromComponent("wallet")]
) -> BalanceResponse:
    """
    Get wallet balance with its fiat estimate.

    Parameters
    ----------
    user_id : str
        Wallet owner from the ``X-User-Id`` header
    use_case : GetBalanceUseCase
        Use case for reading balances

    Returns
    -------
    BalanceResponse
        Balance snapshot
    """
    return await use_case(user_id=user_id)


@router.get("/transactions", response_model=TransactionsResponse)
@inject
async def list_transactions(
    user_id: UserId,
    use_case: Annotated[ListTransactionsUseCase, FromComponent("wallet")],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20
) -> TransactionsResponse:
    """
    Get wallet history, newest first.

    Parameters
    ----------
    user_id : str
        Wallet owner from the ``X-User-Id`` header
    use_case : ListTransactionsUseCase
        Use case for history pages
    page : int
        1-based page number
    limit : int
        Page size (max 100)

    Returns
    -------
    TransactionsResponse
        Page of sent and received transfers
    """
    return await use_case(user_id=user_id, page=page, limit=limit)


@router.post("/transfer", response_model=TransferResponse, status_code=201)
@inject
async def transfer(
    request: TransferRequest,
    response: Response,
    user_id: UserId,
    use_case: Annotated[TransferUseCase, FromComponent("wallet")],
    idempotency_key: IdempotencyKey = None
) -> TransferResponse:
    """
    Send a peer-to-peer transfer.

    Parameters
    ----------
    request : TransferRequest
        Recipient, amount and memo
    response : Response
        Outgoing response, used to flag replays
    user_id : str
        Sender from the ``X-User-Id`` header
    use_case : TransferUseCase
        Use case for transfers
    idempotency_key : str | None
        ``Idempotency-Key`` header

    Returns
    -------
    TransferResponse
        Acknowledged transfer
    """
    result = await use_case(
        user_id=user_id,
        amount=int(request.amount),
        idempotency_key=require_idempotency_key(idempotency_key),
        to_address=request.to_address,
        to_user_id=request.to_user_id,
        memo=request.memo
    )
    if result.replayed:
        response.headers[REPLAY_HEADER] = "true"
    return result


@router.get("/transfers/{transaction_id}", response_model=TransferResponse)
@inject
async def get_transfer(
    transaction_id: str,
    user_id: UserId,
    use_case: Annotated[GetTransferUseCase, FromComponent("wallet")]
) -> TransferResponse:
    """
    Get the current state of a transfer.
    """
    return await use_case(user_id=user_id, transaction_id=transaction_id)


@router.post("/requests", response_model=PaymentRequestResponse, status_code=201)
@inject
async def create_payment_request(
    request: CreatePaymentRequestRequest,
    user_id: UserId,
    use_case: Annotated[CreatePaymentRequestUseCase, FromComponent("wallet")]
) -> PaymentRequestResponse:
    """
    Create a payment request payable through its QR code.

    Parameters
    ----------
    request : CreatePaymentRequestRequest
        Amount, memo and lifetime
    user_id : str
        Recipient from the ``X-User-Id`` header
    use_case : CreatePaymentRequestUseCase
        Use case for creating requests

    Returns
    -------
    PaymentRequestResponse
        Pending request
    """
    return await use_case(
        user_id=user_id,
        amount=int(request.amount),
        memo=request.memo,
        expires_in_minutes=request.expires_in_minutes
    )


@router.get("/requests", response_model=PaymentRequestsResponse)
@inject
async def list_payment_requests(
    user_id: UserId,
    use_case: Annotated[ListPaymentRequestsUseCase, FromComponent("wallet")]
) -> PaymentRequestsResponse:
    """
    List the caller's pending payment requests.
    """
    return await use_case(user_id=user_id)


@router.get("/requests/{request_id}", response_model=PaymentRequestResponse)
@inject
async def get_payment_request(
    request_id: str,
    use_case: Annotated[GetPaymentRequestUseCase, FromComponent("wallet")]
) -> PaymentRequestResponse:
    """
    Get a payment request; readable by anyone holding its QR code.
    """
    return await use_case(request_id=request_id)


@router.post("/requests/{request_id}/pay", response_model=PayPaymentRequestResponse)
@inject
async def pay_payment_request(
    request_id: str,
    response: Response,
    user_id: UserId,
    use_case: Annotated[PayPaymentRequestUseCase, FromComponent("wallet")],
    idempotency_key: IdempotencyKey = None
) -> PayPaymentRequestResponse:
    """
    Pay a payment request from the caller's wallet.

    Parameters
    ----------
    request_id : str
        Payment request id
    response : Response
        Outgoing response, used to flag replays
    user_id : str
        Payer from the ``X-User-Id`` header
    use_case : PayPaymentRequestUseCase
        Use case for paying requests
    idempotency_key : str | None
        ``Idempotency-Key`` header

    Returns
    -------
    PayPaymentRequestResponse
        Updated request and transfer outcome
    """
    result = await use_case(
        user_id=user_id,
        request_id=request_id,
        idempotency_key=require_idempotency_key(idempotency_key)
    )
    if result.transfer.replayed:
        response.headers[REPLAY_HEADER] = "true"
    return result


@router.delete("/requests/{request_id}", response_model=PaymentRequestResponse)
@inject
async def cancel_payment_request(
    request_id: str,
    user_id: UserId,
    use_case: Annotated[CancelPaymentRequestUseCase, FromComponent("wallet")]
) -> PaymentRequestResponse:
    """
    Cancel a pending payment request.

    Parameters
    ----------
    request_id : str
        Payment request id
    user_id : str
        Recipient from the ``X-User-Id`` header
    use_case : CancelPaymentRequestUseCase
        Use case for cancelling requests

    Returns
    -------
    PaymentRequestResponse
        Cancelled request
    """
    return await use_case(user_id=user_id, request_id=request_id)
