import json
import logging
from datetime import timedelta

from core.exceptions import (
    BadRequestException,
    ForbiddenException,
    InvalidAmountError,
    InvalidRecipientError,
    PaymentRequestNotFoundError,
    PaymentRequestNotPendingError,
    SettlementTimeoutError,
)
from wallet.entities import (
    PaymentRequest,
    PaymentRequestStatus,
    TransferResult,
    TransferState,
    utcnow,
)
from wallet.locks import WalletLocks
from wallet.repository import WalletRepository
from wallet.services import IdentityResolver, TransferExecutor

QR_PAYLOAD_TYPE = "wallet_payment"
QR_PAYLOAD_VERSION = 1


class PaymentRequestService:
    """
    Payment requests a recipient shares as QR codes and a payer fulfills.

    Parameters
    ----------
    repository : WalletRepository
        Payment request storage
    identity_resolver : IdentityResolver
        Resolves payer and recipient wallets
    transfer_executor : TransferExecutor
        Executes the payment
    locks : WalletLocks
        Serializes fulfillment and cancellation per request
    logger : logging.Logger
        Logger instance
    default_expiry_minutes : int
        Expiry used when the caller does not give one
    max_expiry_minutes : int
        Longest allowed expiry
    """

    def __init__(
        self,
        repository: WalletRepository,
        identity_resolver: IdentityResolver,
        transfer_executor: TransferExecutor,
        locks: WalletLocks,
        logger: logging.Logger,
        default_expiry_minutes: int = 30,
        max_expiry_minutes: int = 1440
    ):
        self.repository = repository
        self.identity_resolver = identity_resolver
        self.transfer_executor = transfer_executor
        self.locks = locks
        self.logger = logger
        self.default_expiry_minutes = default_expiry_minutes
        self.max_expiry_minutes = max_expiry_minutes

    async def create(
        self,
        recipient_user_id: str,
        amount: int,
        memo: str | None = None,
        expires_in_minutes: int | None = None
    ) -> PaymentRequest:
        """
        Create a pending payment request.

        Parameters
        ----------
        recipient_user_id : str
            User who will receive the payment
        amount : int
            Token base units
        memo : str | None
            Text shown to the payer
        expires_in_minutes : int | None
            Lifetime of the request

        Returns
        -------
        PaymentRequest
            Stored request with QR payload
        """
        if amount <= 0:
            raise InvalidAmountError(details={"amount": str(amount)})

        minutes = self.default_expiry_minutes if expires_in_minutes is None else expires_in_minutes
        if not 1 <= minutes <= self.max_expiry_minutes:
            raise BadRequestException(
                "error.payment_request.invalid_expiry",
                details={"max_minutes": self.max_expiry_minutes},
            )

        recipient = await self.identity_resolver.resolve(recipient_user_id)
        request = PaymentRequest(
            recipient_user_id=recipient_user_id,
            recipient_address=recipient.address,
            amount=amount,
            memo=memo,
            expires_at=utcnow() + timedelta(minutes=minutes),
        )
        request = request.model_copy(update={"qr_data": self.build_qr_data(request)})

        await self.repository.save_payment_request(request)
        self.logger.info(f"Payment request {request.request_id} for {amount} created by {recipient_user_id}")
        return request

    @staticmethod
    def build_qr_data(request: PaymentRequest) -> str:
        return json.dumps({
            "type": QR_PAYLOAD_TYPE,
            "version": QR_PAYLOAD_VERSION,
            "request_id": request.request_id,
            "recipient": request.recipient_address,
            "amount": str(request.amount),
            "memo": request.memo,
            "expires_at": request.expires_at.isoformat(),
        })

    async def get(self, request_id: str) -> PaymentRequest:
        """
        Load a request, expiring it when overdue.

        Raises
        ------
        PaymentRequestNotFoundError
            If the id is unknown
        """
        request = await self.repository.get_payment_request(request_id)
        if request is None:
            raise PaymentRequestNotFoundError(details={"request_id": request_id})

        # a request with a payment attached is settled by the transfer outcome
        if request.transaction_id is None and request.is_overdue():
            request = await self._expire(request)
        return request

    async def fulfill(
        self,
        request_id: str,
        payer_user_id: str,
        idempotency_key: str
    ) -> tuple[PaymentRequest, TransferResult]:
        """
        Pay a request from the payer's wallet.

        Parameters
        ----------
        request_id : str
            Request to pay
        payer_user_id : str
            Paying user
        idempotency_key : str
            Key forwarded to the transfer; repeating it replays the payment

        Returns
        -------
        tuple[PaymentRequest, TransferResult]
            Updated request and the transfer outcome

        Raises
        ------
        PaymentRequestNotPendingError
            If the request is not payable
        InvalidRecipientError
            If the payer is the recipient
        SettlementTimeoutError
            If the transfer was not acknowledged in time
        """
        async with self.locks.hold(f"payment_request:{request_id}"):
            request = await self.get(request_id)

            if (
                request.transaction_id
                and request.payer_user_id == payer_user_id
                and request.idempotency_key == idempotency_key
            ):
                result = await self.transfer_executor.get_transfer(request.transaction_id)
                request = await self._record_outcome(request, result)
                return request, result.model_copy(update={"replayed": True})

            if request.status != PaymentRequestStatus.PENDING:
                raise PaymentRequestNotPendingError(details={"status": request.status.value})
            if payer_user_id == request.recipient_user_id:
                raise InvalidRecipientError(details={"request_id": request_id})

            if request.transaction_id:
                attached = await self.transfer_executor.get_transfer(request.transaction_id)
                if attached.state not in (TransferState.FAILED, TransferState.REJECTED):
                    raise PaymentRequestNotPendingError(details={
                        "transaction_id": attached.transaction_id,
                        "state": attached.state.value,
                    })
                if request.is_overdue():
                    request = await self._expire(request)
                    raise PaymentRequestNotPendingError(details={"status": request.status.value})

            payer = await self.identity_resolver.resolve(payer_user_id)
            recipient = await self.identity_resolver.lookup_address(request.recipient_address)

            try:
                result = await self.transfer_executor.transfer(
                    payer, recipient, request.amount, idempotency_key, memo=request.memo
                )
            except SettlementTimeoutError as e:
                await self.repository.save_payment_request(request.model_copy(update={
                    "payer_user_id": payer_user_id,
                    "transaction_id": e.transaction_id,
                    "idempotency_key": idempotency_key,
                }))
                raise

            request = request.model_copy(update={
                "payer_user_id": payer_user_id,
                "transaction_id": result.transaction_id,
                "idempotency_key": idempotency_key,
            })
            request = await self._record_outcome(request, result, force_save=True)
            return request, result

    async def cancel(self, request_id: str, user_id: str) -> PaymentRequest:
        """
        Cancel a pending request; only its recipient may do so.

        Raises
        ------
        ForbiddenException
            If ``user_id`` is not the recipient
        PaymentRequestNotPendingError
            If the request is not pending or a payment is in flight
        """
        async with self.locks.hold(f"payment_request:{request_id}"):
            request = await self.get(request_id)

            if request.recipient_user_id != user_id:
                raise ForbiddenException(details={"request_id": request_id})
            if request.status != PaymentRequestStatus.PENDING:
                raise PaymentRequestNotPendingError(details={"status": request.status.value})

            if request.transaction_id:
                attached = await self.transfer_executor.get_transfer(request.transaction_id)
                if attached.state not in (TransferState.FAILED, TransferState.REJECTED):
                    raise PaymentRequestNotPendingError(details={
                        "transaction_id": attached.transaction_id,
                        "state": attached.state.value,
                    })

            request = request.model_copy(update={"status": PaymentRequestStatus.CANCELLED})
            await self.repository.save_payment_request(request)

        self.logger.info(f"Payment request {request_id} cancelled")
        return request

    async def list_pending(self, user_id: str) -> list[PaymentRequest]:
        pending = []
        for request in await self.repository.list_payment_requests(user_id):
            if request.transaction_id is None and request.is_overdue():
                await self._expire(request)
            elif request.status == PaymentRequestStatus.PENDING:
                pending.append(request)
        return pending

    async def _expire(self, request: PaymentRequest) -> PaymentRequest:
        expired = request.model_copy(update={"status": PaymentRequestStatus.EXPIRED})
        await self.repository.save_payment_request(expired)
        self.logger.info(f"Payment request {request.request_id} expired")
        return expired

    async def _record_outcome(
        self,
        request: PaymentRequest,
        result: TransferResult,
        force_save: bool = False
    ) -> PaymentRequest:
        if result.success and request.status == PaymentRequestStatus.PENDING:
            request = request.model_copy(update={"status": PaymentRequestStatus.COMPLETED})
            force_save = True
            self.logger.info(f"Payment request {request.request_id} paid by transfer {result.transaction_id}")
        if force_save:
            await self.repository.save_payment_request(request)
        return request
