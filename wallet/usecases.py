from core.exceptions import ForbiddenException, InsufficientFundsError, SubmissionError
from wallet.amounts import format_units
from wallet.entities import (
    BalanceSnapshot,
    PaymentRequest,
    TransactionDirection,
    TransferRecord,
    TransferResult,
    TransferState,
    WalletIdentity,
)
from wallet.payment_requests import PaymentRequestService
from wallet.schemas import (
    BalanceResponse,
    PaymentRequestResponse,
    PaymentRequestsResponse,
    PayPaymentRequestResponse,
    TransactionResponse,
    TransactionsResponse,
    TransferResponse,
    WalletOverviewResponse,
    WalletResponse,
)
from wallet.services import BalanceReader, IdentityResolver, TransferExecutor


def wallet_response(identity: WalletIdentity) -> WalletResponse:
    return WalletResponse(
        user_id=identity.user_id,
        address=identity.address,
        is_deployed=identity.is_deployed,
        chain_id=identity.chain_id
    )


def balance_response(identity: WalletIdentity, snapshot: BalanceSnapshot) -> BalanceResponse:
    return BalanceResponse(
        address=identity.address,
        raw_amount=str(snapshot.raw_amount),
        formatted_amount=snapshot.formatted_amount,
        decimals=snapshot.decimals,
        token=snapshot.token,
        fiat_currency=snapshot.fiat_currency,
        exchange_rate=snapshot.exchange_rate,
        fiat_value=snapshot.fiat_value,
        fiat_available=snapshot.fiat_available,
        pending_amount=str(snapshot.pending_amount),
        available_amount=str(snapshot.available_amount)
    )


def transfer_response(result: TransferResult, decimals: int) -> TransferResponse:
    return TransferResponse(
        transaction_id=result.transaction_id,
        success=result.success,
        state=result.state,
        amount=str(result.amount),
        formatted_amount=format_units(result.amount, decimals),
        sender_address=result.sender_address,
        recipient_address=result.recipient_address,
        user_op_hash=result.user_op_hash,
        tx_hash=result.tx_hash,
        error=result.error,
        created_at=result.created_at,
        settled_at=result.settled_at,
        replayed=result.replayed
    )


def payment_request_response(request: PaymentRequest, decimals: int) -> PaymentRequestResponse:
    return PaymentRequestResponse(
        request_id=request.request_id,
        recipient_user_id=request.recipient_user_id,
        recipient_address=request.recipient_address,
        amount=str(request.amount),
        formatted_amount=format_units(request.amount, decimals),
        memo=request.memo,
        status=request.status,
        expires_at=request.expires_at,
        created_at=request.created_at,
        payer_user_id=request.payer_user_id,
        transaction_id=request.transaction_id,
        qr_data=request.qr_data
    )


def raise_for_outcome(result: TransferResult) -> None:
    """
    Surface terminal unsuccessful transfers as errors.

    Parameters
    ----------
    result : TransferResult
        Transfer outcome

    Raises
    ------
    InsufficientFundsError
        If the transfer was rejected
    SubmissionError
        If the settlement layer refused the transfer
    """
    details = {"transaction_id": result.transaction_id, "reason": result.error}
    if result.state == TransferState.REJECTED:
        raise InsufficientFundsError(details=details)
    if result.state == TransferState.FAILED:
        raise SubmissionError(details=details)


class CreateWalletUseCase:
    """
    Use case for creating (or returning) a user's wallet.

    Parameters
    ----------
    identity_resolver : IdentityResolver
        Identity resolver instance
    """

    def __init__(self, identity_resolver: IdentityResolver):
        self.identity_resolver = identity_resolver

    async def __call__(self, user_id: str) -> WalletResponse:
        identity = await self.identity_resolver.resolve(user_id)
        return wallet_response(identity)


class GetWalletUseCase:
    """
    Use case for the wallet overview: identity plus balance.

    Parameters
    ----------
    identity_resolver : IdentityResolver
        Identity resolver instance
    balance_reader : BalanceReader
        Balance reader instance
    transfer_executor : TransferExecutor
        Transfer executor, used to settle landed transfers before reading
    """

    def __init__(
        self,
        identity_resolver: IdentityResolver,
        balance_reader: BalanceReader,
        transfer_executor: TransferExecutor
    ):
        self.identity_resolver = identity_resolver
        self.balance_reader = balance_reader
        self.transfer_executor = transfer_executor

    async def __call__(self, user_id: str) -> WalletOverviewResponse:
        identity = await self.identity_resolver.get(user_id)
        await self.transfer_executor.reconcile_pending(identity.address)
        snapshot = await self.balance_reader.read(identity)
        return WalletOverviewResponse(
            wallet=wallet_response(identity),
            balance=balance_response(identity, snapshot)
        )


class GetAddressUseCase:
    """
    Use case for the wallet address with a fresh deployment status.
    """

    def __init__(self, identity_resolver: IdentityResolver):
        self.identity_resolver = identity_resolver

    async def __call__(self, user_id: str) -> WalletResponse:
        identity = await self.identity_resolver.get(user_id)
        identity = await self.identity_resolver.refresh_deployment(identity)
        return wallet_response(identity)


class GetBalanceUseCase:
    """
    Use case for reading a wallet balance.

    Parameters
    ----------
    identity_resolver : IdentityResolver
        Identity resolver instance
    balance_reader : BalanceReader
        Balance reader instance
    transfer_executor : TransferExecutor
        Transfer executor, used to settle landed transfers before reading
    """

    def __init__(
        self,
        identity_resolver: IdentityResolver,
        balance_reader: BalanceReader,
        transfer_executor: TransferExecutor
    ):
        self.identity_resolver = identity_resolver
        self.balance_reader = balance_reader
        self.transfer_executor = transfer_executor

    async def __call__(self, user_id: str) -> BalanceResponse:
        """
        Execute use case.

        Parameters
        ----------
        user_id : str
            Wallet owner

        Returns
        -------
        BalanceResponse
            Balance with pending outflow and fiat estimate

        Raises
        ------
        WalletNotFoundError
            If the user has no wallet
        BalanceUnavailableError
            If the ledger cannot be read
        """
        identity = await self.identity_resolver.get(user_id)
        await self.transfer_executor.reconcile_pending(identity.address)
        snapshot = await self.balance_reader.read(identity)
        return balance_response(identity, snapshot)


class ListTransactionsUseCase:
    """
    Use case for a page of wallet history.

    Parameters
    ----------
    identity_resolver : IdentityResolver
        Identity resolver instance
    transfer_executor : TransferExecutor
        Transfer executor instance
    decimals : int
        Token precision used for formatting
    """

    def __init__(
        self,
        identity_resolver: IdentityResolver,
        transfer_executor: TransferExecutor,
        decimals: int
    ):
        self.identity_resolver = identity_resolver
        self.transfer_executor = transfer_executor
        self.decimals = decimals

    async def __call__(self, user_id: str, page: int, limit: int) -> TransactionsResponse:
        """
        Execute use case.

        Parameters
        ----------
        user_id : str
            Wallet owner
        page : int
            1-based page number
        limit : int
            Page size

        Returns
        -------
        TransactionsResponse
            History page
        """
        identity = await self.identity_resolver.get(user_id)
        history = await self.transfer_executor.list_transactions(identity, page, limit)

        return TransactionsResponse(
            transactions=[self._entry(identity, record) for record in history.transfers],
            total=history.total,
            page=history.page,
            limit=history.limit,
            has_more=history.has_more
        )

    def _entry(self, identity: WalletIdentity, record: TransferRecord) -> TransactionResponse:
        outgoing = record.sender_address.lower() == identity.address.lower()
        return TransactionResponse(
            transaction_id=record.transaction_id,
            type=TransactionDirection.TRANSFER_OUT if outgoing else TransactionDirection.TRANSFER_IN,
            state=record.state,
            amount=str(record.amount),
            formatted_amount=format_units(record.amount, self.decimals),
            counterparty_address=record.recipient_address if outgoing else record.sender_address,
            counterparty_user_id=record.recipient_user_id if outgoing else record.sender_user_id,
            memo=record.memo,
            tx_hash=record.tx_hash,
            created_at=record.created_at,
            settled_at=record.settled_at
        )


class TransferUseCase:
    """
    Use case for sending a peer-to-peer transfer.

    Parameters
    ----------
    identity_resolver : IdentityResolver
        Identity resolver instance
    transfer_executor : TransferExecutor
        Transfer executor instance
    decimals : int
        Token precision used for formatting
    """

    def __init__(
        self,
        identity_resolver: IdentityResolver,
        transfer_executor: TransferExecutor,
        decimals: int
    ):
        self.identity_resolver = identity_resolver
        self.transfer_executor = transfer_executor
        self.decimals = decimals

    async def __call__(
        self,
        user_id: str,
        amount: int,
        idempotency_key: str,
        to_address: str | None = None,
        to_user_id: str | None = None,
        memo: str | None = None
    ) -> TransferResponse:
        """
        Execute use case.

        Parameters
        ----------
        user_id : str
            Sending user
        amount : int
            Token base units
        idempotency_key : str
            Client idempotency key
        to_address : str | None
            Recipient address
        to_user_id : str | None
            Recipient user
        memo : str | None
            Free text

        Returns
        -------
        TransferResponse
            Acknowledged transfer
        """
        sender = await self.identity_resolver.get(user_id)
        if to_user_id is not None:
            recipient = await self.identity_resolver.resolve(to_user_id)
        else:
            recipient = await self.identity_resolver.lookup_address(to_address)

        result = await self.transfer_executor.transfer(
            sender=sender,
            recipient=recipient,
            amount=amount,
            idempotency_key=idempotency_key,
            memo=memo
        )
        raise_for_outcome(result)
        return transfer_response(result, self.decimals)


class GetTransferUseCase:
    """
    Use case for polling a transfer; only its sender or recipient may read it.
    """

    def __init__(
        self,
        identity_resolver: IdentityResolver,
        transfer_executor: TransferExecutor,
        decimals: int
    ):
        self.identity_resolver = identity_resolver
        self.transfer_executor = transfer_executor
        self.decimals = decimals

    async def __call__(self, user_id: str, transaction_id: str) -> TransferResponse:
        identity = await self.identity_resolver.get(user_id)
        result = await self.transfer_executor.get_transfer(transaction_id)

        parties = {result.sender_address.lower(), result.recipient_address.lower()}
        if identity.address.lower() not in parties:
            raise ForbiddenException(details={"transaction_id": transaction_id})
        return transfer_response(result, self.decimals)


class CreatePaymentRequestUseCase:
    """
    Use case for creating a payment request.

    Parameters
    ----------
    payment_requests : PaymentRequestService
        Payment request service instance
    decimals : int
        Token precision used for formatting
    """

    def __init__(self, payment_requests: PaymentRequestService, decimals: int):
        self.payment_requests = payment_requests
        self.decimals = decimals

    async def __call__(
        self,
        user_id: str,
        amount: int,
        memo: str | None = None,
        expires_in_minutes: int | None = None
    ) -> PaymentRequestResponse:
        """
        Execute use case.

        Parameters
        ----------
        user_id : str
            Requesting user, who receives the payment
        amount : int
            Requested base units
        memo : str | None
            Note shown to the payer
        expires_in_minutes : int | None
            Lifetime; the service default when omitted

        Returns
        -------
        PaymentRequestResponse
            Pending request with its QR payload
        """
        request = await self.payment_requests.create(
            recipient_user_id=user_id,
            amount=amount,
            memo=memo,
            expires_in_minutes=expires_in_minutes
        )
        return payment_request_response(request, self.decimals)


class ListPaymentRequestsUseCase:
    """
    Use case for the caller's pending payment requests.
    """

    def __init__(self, payment_requests: PaymentRequestService, decimals: int):
        self.payment_requests = payment_requests
        self.decimals = decimals

    async def __call__(self, user_id: str) -> PaymentRequestsResponse:
        requests = await self.payment_requests.list_pending(user_id)
        return PaymentRequestsResponse(
            requests=[payment_request_response(request, self.decimals) for request in requests],
            total=len(requests)
        )


class GetPaymentRequestUseCase:
    """
    Use case for reading a single payment request.
    """

    def __init__(self, payment_requests: PaymentRequestService, decimals: int):
        self.payment_requests = payment_requests
        self.decimals = decimals

    async def __call__(self, request_id: str) -> PaymentRequestResponse:
        request = await self.payment_requests.get(request_id)
        return payment_request_response(request, self.decimals)


class PayPaymentRequestUseCase:
    """
    Use case for paying a payment request.

    Parameters
    ----------
    payment_requests : PaymentRequestService
        Payment request service instance
    decimals : int
        Token precision used for formatting
    """

    def __init__(self, payment_requests: PaymentRequestService, decimals: int):
        self.payment_requests = payment_requests
        self.decimals = decimals

    async def __call__(
        self,
        user_id: str,
        request_id: str,
        idempotency_key: str
    ) -> PayPaymentRequestResponse:
        request, result = await self.payment_requests.fulfill(
            request_id=request_id,
            payer_user_id=user_id,
            idempotency_key=idempotency_key
        )
        raise_for_outcome(result)
        return PayPaymentRequestResponse(
            request=payment_request_response(request, self.decimals),
            transfer=transfer_response(result, self.decimals)
        )


class CancelPaymentRequestUseCase:
    """
    Use case for cancelling a payment request.

    Parameters
    ----------
    payment_requests : PaymentRequestService
        Payment request service instance
    decimals : int
        Token precision used for formatting
    """

    def __init__(self, payment_requests: PaymentRequestService, decimals: int):
        self.payment_requests = payment_requests
        self.decimals = decimals

    async def __call__(self, user_id: str, request_id: str) -> PaymentRequestResponse:
        """
        Execute use case.

        Parameters
        ----------
        user_id : str
            Caller; must be the request's recipient
        request_id : str
            Payment request id

        Returns
        -------
        PaymentRequestResponse
            Cancelled request

        Raises
        ------
        ForbiddenException
            If the caller does not own the request
        PaymentRequestNotPendingError
            If the request is no longer pending or a payment is in flight
        """
        request = await self.payment_requests.cancel(request_id, user_id)
        return payment_request_response(request, self.decimals)
