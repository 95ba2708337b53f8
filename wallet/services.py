import asyncio
import hashlib
import logging
from decimal import Decimal

from core.exceptions import (
    BalanceUnavailableError,
    BaseCustomException,
    IdempotencyKeyConflictError,
    InvalidAmountError,
    InvalidRecipientError,
    LedgerError,
    PricingUnavailableError,
    SettlementTimeoutError,
    SubmissionError,
    TransferNotFoundError,
    WalletCreationError,
    WalletNotFoundError,
)
from wallet.amounts import format_units
from wallet.entities import (
    BalanceSnapshot,
    SettlementReceipt,
    TransactionPage,
    TransferRecord,
    TransferResult,
    TransferState,
    WalletIdentity,
)
from wallet.ledger import WalletLedger
from wallet.locks import WalletLocks
from wallet.pricing import PricingSource
from wallet.repository import WalletRepository


class IdentityResolver:
    """
    Maps users to smart account identities.

    Parameters
    ----------
    ledger : WalletLedger
        Settlement layer used for address derivation
    repository : WalletRepository
        Identity storage
    locks : WalletLocks
        Serializes concurrent resolves for one user
    logger : logging.Logger
        Logger instance
    """

    def __init__(
        self,
        ledger: WalletLedger,
        repository: WalletRepository,
        locks: WalletLocks,
        logger: logging.Logger
    ):
        self.ledger = ledger
        self.repository = repository
        self.locks = locks
        self.logger = logger

    async def resolve(self, user_id: str) -> WalletIdentity:
        """
        Return the user's identity, deriving a counterfactual one if needed.

        Parameters
        ----------
        user_id : str
            User identifier

        Returns
        -------
        WalletIdentity
            Stored identity; new identities are not deployed yet

        Raises
        ------
        WalletCreationError
            If the address cannot be derived
        """
        existing = await self.repository.get_wallet_by_user(user_id)
        if existing is not None:
            return existing

        async with self.locks.hold(f"identity:{user_id}"):
            existing = await self.repository.get_wallet_by_user(user_id)
            if existing is not None:
                return existing

            try:
                address = await self.ledger.derive_address(user_id)
            except LedgerError as e:
                raise WalletCreationError(details={"user_id": user_id, **(e.details or {})}) from e

            if not address:
                raise WalletCreationError(details={"user_id": user_id, "reason": "empty address"})

            identity = await self.repository.create_wallet(WalletIdentity(
                user_id=user_id,
                address=address,
                is_deployed=False,
                chain_id=self.ledger.chain_id,
            ))

        self.logger.info(f"Wallet {identity.address} assigned to user {user_id} on chain {identity.chain_id}")
        return identity

    async def get(self, user_id: str) -> WalletIdentity:
        """
        Stored identity of a user.

        Raises
        ------
        WalletNotFoundError
            If the user has no wallet yet
        """
        identity = await self.repository.get_wallet_by_user(user_id)
        if identity is None:
            raise WalletNotFoundError(details={"user_id": user_id})
        return identity

    async def lookup_address(self, address: str) -> WalletIdentity:
        """
        Identity for an arbitrary address.

        Parameters
        ----------
        address : str
            Account address

        Returns
        -------
        WalletIdentity
            Stored identity, or an external one without an owner
        """
        known = await self.repository.get_wallet_by_address(address)
        if known is not None:
            return known
        return WalletIdentity(address=address, chain_id=self.ledger.chain_id)

    async def refresh_deployment(self, identity: WalletIdentity) -> WalletIdentity:
        """
        Pick up a deployment that happened outside this service.

        Parameters
        ----------
        identity : WalletIdentity
            Identity to check

        Returns
        -------
        WalletIdentity
            Identity with an up to date ``is_deployed`` flag
        """
        if identity.is_deployed:
            return identity

        try:
            deployed = await self.ledger.is_deployed(identity.address)
        except LedgerError as e:
            self.logger.warning(f"Deployment check for {identity.address} failed: {e.details}")
            return identity

        if not deployed:
            return identity
        return await self.mark_deployed(identity.address) or identity

    async def mark_deployed(self, address: str) -> WalletIdentity | None:
        identity = await self.repository.mark_deployed(address)
        if identity is not None:
            self.logger.info(f"Wallet {address} is now deployed")
        return identity


class BalanceReader:
    """
    Reads balances and converts them for display.

    Parameters
    ----------
    ledger : WalletLedger
        Canonical balance source
    repository : WalletRepository
        Source of pending outgoing amounts
    pricing : PricingSource
        Exchange rate collaborator
    logger : logging.Logger
        Logger instance
    token_symbol : str
        Token being read
    fiat_currency : str
        Currency of ``fiat_value``
    """

    def __init__(
        self,
        ledger: WalletLedger,
        repository: WalletRepository,
        pricing: PricingSource,
        logger: logging.Logger,
        token_symbol: str = "USDC",
        fiat_currency: str = "USD"
    ):
        self.ledger = ledger
        self.repository = repository
        self.pricing = pricing
        self.logger = logger
        self.token_symbol = token_symbol
        self.fiat_currency = fiat_currency

    async def read(self, identity: WalletIdentity) -> BalanceSnapshot:
        """
        Take a balance snapshot.

        Parameters
        ----------
        identity : WalletIdentity
            Wallet to read

        Returns
        -------
        BalanceSnapshot
            Snapshot; fiat fields are empty when pricing failed

        Raises
        ------
        BalanceUnavailableError
            If the ledger cannot be read
        """
        try:
            raw_amount = await self.ledger.get_balance(identity.address)
        except LedgerError as e:
            raise BalanceUnavailableError(details={"address": identity.address, **(e.details or {})}) from e

        decimals = self.ledger.decimals
        pending_amount = await self.repository.pending_outflow(identity.address)

        exchange_rate = None
        fiat_value = None
        try:
            exchange_rate = await self.pricing.get_exchange_rate(self.token_symbol, self.fiat_currency)
        except PricingUnavailableError as e:
            self.logger.warning(f"No {self.token_symbol}/{self.fiat_currency} rate, omitting fiat value: {e.details}")
        else:
            fiat_value = float(Decimal(raw_amount).scaleb(-decimals) * Decimal(str(exchange_rate)))

        return BalanceSnapshot(
            raw_amount=raw_amount,
            formatted_amount=format_units(raw_amount, decimals),
            decimals=decimals,
            token=self.token_symbol,
            fiat_currency=self.fiat_currency,
            exchange_rate=exchange_rate,
            fiat_value=fiat_value,
            pending_amount=pending_amount,
        )


class TransferExecutor:
    """
    Executes peer-to-peer transfers.

    Validation and the funds reservation run under a per-sender lock;
    a ``requested`` or ``submitted`` record is the reservation. Submission
    runs in a shielded task so that a caller giving up on the
    acknowledgment never cancels an intent already handed over.

    Parameters
    ----------
    ledger : WalletLedger
        Settlement layer
    repository : WalletRepository
        Transfer storage
    locks : WalletLocks
        Per-wallet and per-transfer locks
    identity_resolver : IdentityResolver
        Used to mark senders deployed after their first settlement
    logger : logging.Logger
        Logger instance
    ack_timeout : float
        Seconds a caller waits for submission acknowledgment
    settlement_timeout : float
        Seconds the background watcher waits for a receipt
    poll_interval : float
        Seconds between receipt polls
    """

    MAX_PAGE_SIZE = 100

    def __init__(
        self,
        ledger: WalletLedger,
        repository: WalletRepository,
        locks: WalletLocks,
        identity_resolver: IdentityResolver,
        logger: logging.Logger,
        ack_timeout: float = 30.0,
        settlement_timeout: float = 60.0,
        poll_interval: float = 2.0
    ):
        self.ledger = ledger
        self.repository = repository
        self.locks = locks
        self.identity_resolver = identity_resolver
        self.logger = logger
        self.ack_timeout = ack_timeout
        self.settlement_timeout = settlement_timeout
        self.poll_interval = poll_interval
        self._submissions: dict[str, asyncio.Task] = {}
        self._watchers: set[asyncio.Task] = set()

    @staticmethod
    def fingerprint(recipient_address: str, amount: int, memo: str | None) -> str:
        payload = f"{recipient_address.lower()}:{amount}:{memo or ''}"
        return hashlib.sha256(payload.encode()).hexdigest()

    async def transfer(
        self,
        sender: WalletIdentity,
        recipient: WalletIdentity,
        amount: int,
        idempotency_key: str | None = None,
        memo: str | None = None
    ) -> TransferResult:
        """
        Move ``amount`` base units from sender to recipient.

        Parameters
        ----------
        sender : WalletIdentity
            Paying wallet
        recipient : WalletIdentity
            Receiving wallet (may be external or undeployed)
        amount : int
            Token base units, must be positive
        idempotency_key : str | None
            Client token; a repeated key returns the original result
        memo : str | None
            Free text stored with the transfer

        Returns
        -------
        TransferResult
            ``submitted`` on acknowledgment, ``rejected`` when funds are
            short, ``failed`` when the settlement layer refused the bundle

        Raises
        ------
        InvalidAmountError
            If amount is not positive
        InvalidRecipientError
            If sender and recipient are the same wallet
        IdempotencyKeyConflictError
            If the key was used for a different transfer
        BalanceUnavailableError
            If the sender balance cannot be read
        SettlementTimeoutError
            If acknowledgment takes longer than ``ack_timeout``
        """
        if amount <= 0:
            raise InvalidAmountError(details={"amount": str(amount)})
        if sender.address.lower() == recipient.address.lower():
            raise InvalidRecipientError(details={"address": recipient.address})

        fingerprint = self.fingerprint(recipient.address, amount, memo)
        replay = None

        async with self.locks.hold(f"wallet:{sender.address.lower()}"):
            if idempotency_key:
                replay = await self.repository.get_transfer_by_idempotency_key(sender.address, idempotency_key)
                if replay is not None and replay.fingerprint != fingerprint:
                    raise IdempotencyKeyConflictError(details={"transaction_id": replay.transaction_id})

            if replay is None:
                await self.reconcile_pending(sender.address)
                try:
                    balance = await self.ledger.get_balance(sender.address)
                except LedgerError as e:
                    raise BalanceUnavailableError(details={"address": sender.address, **(e.details or {})}) from e

                available = balance - await self.repository.pending_outflow(sender.address)
                record = TransferRecord(
                    sender_user_id=sender.user_id,
                    sender_address=sender.address,
                    recipient_user_id=recipient.user_id,
                    recipient_address=recipient.address,
                    amount=amount,
                    memo=memo,
                    idempotency_key=idempotency_key,
                    fingerprint=fingerprint,
                    requires_deployment=not sender.is_deployed,
                )

                if available < amount:
                    record = record.transition(
                        TransferState.REJECTED,
                        error=f"Available {available} is below requested {amount}",
                        error_kind="InsufficientFundsError",
                    )
                    await self.repository.save_transfer(record)
                    self.logger.warning(f"Transfer {record.transaction_id} from {sender.address} rejected: insufficient funds")
                    return record.to_result()

                await self.repository.save_transfer(record)
                self.logger.info(
                    f"Transfer {record.transaction_id} requested: {amount} from {sender.address} to {recipient.address}"
                )
                submission = self._start_submission(record, sender, recipient)

        if replay is not None:
            self.logger.info(f"Replaying transfer {replay.transaction_id} for idempotency key {idempotency_key}")
            return await self._replay(replay)

        return await self._await_ack(record.transaction_id, submission)

    async def get_transfer(self, transaction_id: str) -> TransferResult:
        """
        Current result of a transfer, reconciled against the ledger.

        Parameters
        ----------
        transaction_id : str
            Transfer id

        Returns
        -------
        TransferResult
            Latest known result

        Raises
        ------
        TransferNotFoundError
            If the id is unknown
        """
        record = await self.repository.get_transfer(transaction_id)
        if record is None:
            raise TransferNotFoundError(details={"transaction_id": transaction_id})

        record = await self._reconcile(record)
        return record.to_result()

    async def reconcile_pending(self, address: str) -> None:
        """
        Apply receipts that landed for a sender's submitted transfers.

        Settled transfers stop counting as reserved, so the ledger balance
        is not reduced twice.

        Parameters
        ----------
        address : str
            Sender address
        """
        for record in await self.repository.pending_transfers(address):
            await self._reconcile(record)

    async def _reconcile(self, record: TransferRecord) -> TransferRecord:
        if record.state != TransferState.SUBMITTED or not record.user_op_hash:
            return record

        try:
            receipt = await self.ledger.get_operation_receipt(record.user_op_hash)
        except LedgerError as e:
            self.logger.warning(f"Reconciliation of {record.transaction_id} deferred: {e.details}")
            return record

        if receipt is None:
            return record
        return await self._apply_receipt(record.transaction_id, receipt)

    async def list_transactions(
        self,
        identity: WalletIdentity,
        page: int = 1,
        limit: int = 20
    ) -> TransactionPage:
        """
        Transfers sent or received by a wallet, newest first.

        Parameters
        ----------
        identity : WalletIdentity
            Wallet whose history is listed
        page : int
            1-based page number
        limit : int
            Page size, capped at ``MAX_PAGE_SIZE``

        Returns
        -------
        TransactionPage
            Requested page
        """
        page = max(page, 1)
        limit = min(max(limit, 1), self.MAX_PAGE_SIZE)
        return await self.repository.list_transfers(identity.address, page, limit)

    async def drain(self) -> None:
        """Wait until every in-flight submission got its acknowledgment or failure."""
        pending = list(self._submissions.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Finish in-flight submissions and stop settlement watchers."""
        await self.drain()
        watchers = list(self._watchers)
        for task in watchers:
            task.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

    def _start_submission(
        self,
        record: TransferRecord,
        sender: WalletIdentity,
        recipient: WalletIdentity
    ) -> asyncio.Task:
        task = asyncio.create_task(self._submit(record, sender, recipient))
        self._submissions[record.transaction_id] = task

        def _done(finished: asyncio.Task) -> None:
            self._submissions.pop(record.transaction_id, None)
            if not finished.cancelled() and finished.exception() is not None:
                self.logger.error(f"Submission of {record.transaction_id} crashed: {finished.exception()!r}")

        task.add_done_callback(_done)
        return task

    async def _await_ack(self, transaction_id: str, submission: asyncio.Task) -> TransferResult:
        try:
            return await asyncio.wait_for(asyncio.shield(submission), self.ack_timeout)
        except asyncio.TimeoutError as e:
            self.logger.warning(f"Transfer {transaction_id} not acknowledged within {self.ack_timeout}s")
            raise SettlementTimeoutError(transaction_id) from e

    async def _replay(self, record: TransferRecord) -> TransferResult:
        submission = self._submissions.get(record.transaction_id)
        if submission is not None:
            result = await self._await_ack(record.transaction_id, submission)
            return result.model_copy(update={"replayed": True})

        if record.state == TransferState.SUBMITTED:
            result = await self.get_transfer(record.transaction_id)
            return result.model_copy(update={"replayed": True})
        return record.to_result(replayed=True)

    async def _submit(
        self,
        record: TransferRecord,
        sender: WalletIdentity,
        recipient: WalletIdentity
    ) -> TransferResult:
        user_op_hash = None
        try:
            # one submission per sender at a time keeps operation nonces ordered;
            # callers stop waiting after ack_timeout, so this wait is unbounded
            async with self.locks.hold(f"submit:{sender.address.lower()}", wait_forever=True):
                bundle = await self.ledger.build_operation(sender, recipient, record.amount)
                try:
                    user_op_hash = await self.ledger.submit_operation(bundle)
                except SubmissionError:
                    raise
                except LedgerError as e:
                    if not bundle.user_op_hash:
                        raise
                    user_op_hash = bundle.user_op_hash
                    self.logger.warning(
                        f"Submission of {record.transaction_id} unconfirmed, tracking {user_op_hash}: {e.details}"
                    )

                submitted = record.transition(
                    TransferState.SUBMITTED,
                    user_op_hash=user_op_hash,
                    requires_deployment=bundle.requires_deployment,
                )
                await self.repository.save_transfer(submitted)
        except Exception as e:
            if user_op_hash is not None:
                # the bundle may settle; keep the reservation instead of reporting a failure
                self.logger.error(f"Transfer {record.transaction_id} handed off as {user_op_hash} but not recorded: {e!r}")
                raise
            return await self._fail_submission(record, e)

        self.logger.info(f"Transfer {record.transaction_id} submitted as {user_op_hash}")
        self._start_watcher(submitted)
        return submitted.to_result()

    async def _fail_submission(self, record: TransferRecord, error: Exception) -> TransferResult:
        if isinstance(error, BaseCustomException):
            reason = (error.details or {}).get("reason") or error.message
        else:
            reason = str(error) or type(error).__name__

        failed = record.transition(TransferState.SUBMITTED).transition(
            TransferState.FAILED,
            error=reason,
            error_kind="SubmissionError",
        )
        await self.repository.save_transfer(failed)
        self.logger.error(f"Transfer {record.transaction_id} failed at submission: {reason}")
        return failed.to_result()

    def _start_watcher(self, record: TransferRecord) -> None:
        task = asyncio.create_task(self._watch_settlement(record))
        self._watchers.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._watchers.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self.logger.error(f"Settlement watcher for {record.transaction_id} crashed: {finished.exception()!r}")

        task.add_done_callback(_done)

    async def _watch_settlement(self, record: TransferRecord) -> None:
        receipt = await self.ledger.wait_for_settlement(
            record.user_op_hash, self.settlement_timeout, self.poll_interval
        )
        if receipt is None:
            self.logger.info(
                f"Transfer {record.transaction_id} not settled after {self.settlement_timeout}s, "
                f"left for reconciliation"
            )
            return
        await self._apply_receipt(record.transaction_id, receipt)

    async def _apply_receipt(self, transaction_id: str, receipt: SettlementReceipt) -> TransferRecord:
        async with self.locks.hold(f"transfer:{transaction_id}"):
            record = await self.repository.get_transfer(transaction_id)
            if record is None:
                raise TransferNotFoundError(details={"transaction_id": transaction_id})
            if record.state != TransferState.SUBMITTED:
                return record

            if receipt.success:
                record = record.transition(TransferState.SETTLED, tx_hash=receipt.tx_hash)
            else:
                record = record.transition(
                    TransferState.FAILED,
                    tx_hash=receipt.tx_hash,
                    error=receipt.reason or "operation reverted",
                    error_kind="SubmissionError",
                )
            await self.repository.save_transfer(record)

        if record.state == TransferState.SETTLED:
            self.logger.info(f"Transfer {transaction_id} settled in {receipt.tx_hash}")
            if record.requires_deployment:
                await self.identity_resolver.mark_deployed(record.sender_address)
        else:
            self.logger.error(f"Transfer {transaction_id} failed on-chain: {record.error}")
        return record
