from dishka import Provider, Scope, provide, FromComponent
from typing import Annotated, AsyncIterable
from redis.asyncio import Redis
from web3 import AsyncWeb3
import logging

from core.environment.config import Settings
from core.redis.providers import CacheService
from wallet.ledger import WalletLedger
from wallet.live_ledger import LiveLedger
from wallet.locks import LocalWalletLocks, RedisWalletLocks, WalletLocks
from wallet.memory_ledger import InMemoryTestLedger
from wallet.payment_requests import PaymentRequestService
from wallet.pricing import HttpPricingSource, PricingSource, StaticPricingSource
from wallet.redis_repository import RedisWalletRepository
from wallet.repository import InMemoryWalletRepository, WalletRepository
from wallet.services import BalanceReader, IdentityResolver, TransferExecutor
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


class LiveLedgerProvider(Provider):
    """
    Provider for the on-chain ledger with Redis-backed storage and locks.
    """

    component = "ledger"

    @provide(scope=Scope.APP)
    def get_web3_client(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> AsyncWeb3:
        """
        Provide Web3 client for the configured chain.

        Parameters
        ----------
        settings : Settings
            Application settings

        Returns
        -------
        AsyncWeb3
            Web3 client
        """
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))

    @provide(scope=Scope.APP)
    def get_ledger(
        self,
        web3_client: Annotated[AsyncWeb3, FromComponent("ledger")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> WalletLedger:
        """
        Provide the live wallet ledger.

        Parameters
        ----------
        web3_client : AsyncWeb3
            Web3 client
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        WalletLedger
            ERC-4337 ledger instance
        """
        return LiveLedger(web3=web3_client, settings=settings, logger=logger)

    @provide(scope=Scope.APP)
    def get_repository(
        self,
        redis_client: Annotated[Redis, FromComponent("redis")],
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> WalletRepository:
        """
        Provide Redis-backed wallet and transfer storage.

        Parameters
        ----------
        redis_client : Redis
            Redis client instance
        settings : Settings
            Application settings

        Returns
        -------
        WalletRepository
            Redis repository keeping idempotency keys for the configured TTL
        """
        return RedisWalletRepository(
            redis_client=redis_client,
            idempotency_ttl=settings.idempotency_ttl_seconds
        )

    @provide(scope=Scope.APP)
    def get_locks(
        self,
        redis_client: Annotated[Redis, FromComponent("redis")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> WalletLocks:
        """
        Provide cross-process wallet locks.

        Parameters
        ----------
        redis_client : Redis
            Redis client instance
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        WalletLocks
            Redis locks
        """
        return RedisWalletLocks(
            redis_client=redis_client,
            logger=logger,
            wait_timeout=settings.wallet_lock_timeout
        )

    @provide(scope=Scope.APP)
    def get_pricing(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        cache_service: Annotated[CacheService, FromComponent("cache")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> PricingSource:
        """
        Provide exchange rate source.

        Parameters
        ----------
        settings : Settings
            Application settings
        cache_service : CacheService
            Cache for fetched rates
        logger : logging.Logger
            Logger instance

        Returns
        -------
        PricingSource
            HTTP source when ``pricing_url`` is set, the fixed peg otherwise
        """
        if not settings.pricing_url:
            return StaticPricingSource()
        return HttpPricingSource(
            url_template=settings.pricing_url,
            cache_service=cache_service,
            logger=logger,
            cache_ttl=settings.pricing_cache_ttl
        )


class InMemoryLedgerProvider(Provider):
    """
    Provider for the in-process ledger used in tests and local runs.

    Parameters
    ----------
    ledger : InMemoryTestLedger | None
        Ledger to expose; a fresh one is built when omitted
    repository : WalletRepository | None
        Repository to expose; in-memory when omitted
    pricing : PricingSource | None
        Pricing source; fixed peg when omitted
    locks : WalletLocks | None
        Locks; in-process when omitted
    """

    component = "ledger"

    def __init__(
        self,
        ledger: InMemoryTestLedger | None = None,
        repository: WalletRepository | None = None,
        pricing: PricingSource | None = None,
        locks: WalletLocks | None = None
    ):
        super().__init__()
        self.ledger = ledger
        self.repository = repository
        self.pricing = pricing
        self.locks = locks

    @provide(scope=Scope.APP)
    def get_ledger(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> WalletLedger:
        """
        Provide the in-memory wallet ledger.

        Parameters
        ----------
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        WalletLedger
            The injected ledger, or a fresh one for the configured chain
        """
        if self.ledger is not None:
            return self.ledger
        return InMemoryTestLedger(
            chain_id=settings.chain_id,
            decimals=settings.token_decimals,
            logger=logger
        )

    @provide(scope=Scope.APP)
    def get_repository(self) -> WalletRepository:
        """
        Provide in-process storage.

        Returns
        -------
        WalletRepository
            The injected repository, or a fresh in-memory one
        """
        return self.repository or InMemoryWalletRepository()

    @provide(scope=Scope.APP)
    def get_locks(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> WalletLocks:
        """
        Provide in-process wallet locks.

        Parameters
        ----------
        settings : Settings
            Application settings

        Returns
        -------
        WalletLocks
            The injected locks, or asyncio locks with the configured wait
        """
        return self.locks or LocalWalletLocks(wait_timeout=settings.wallet_lock_timeout)

    @provide(scope=Scope.APP)
    def get_pricing(self) -> PricingSource:
        """
        Provide exchange rate source.

        Returns
        -------
        PricingSource
            The injected source, or the fixed peg
        """
        return self.pricing or StaticPricingSource()


class WalletProvider(Provider):
    """
    Provider for wallet services and use cases.
    """

    component = "wallet"

    @provide(scope=Scope.APP)
    def get_identity_resolver(
        self,
        ledger: Annotated[WalletLedger, FromComponent("ledger")],
        repository: Annotated[WalletRepository, FromComponent("ledger")],
        locks: Annotated[WalletLocks, FromComponent("ledger")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> IdentityResolver:
        """
        Provide identity resolver.

        Parameters
        ----------
        ledger : WalletLedger
            Settlement layer
        repository : WalletRepository
            Wallet storage
        locks : WalletLocks
            Wallet locks
        logger : logging.Logger
            Logger instance

        Returns
        -------
        IdentityResolver
            Identity resolver instance
        """
        return IdentityResolver(
            ledger=ledger,
            repository=repository,
            locks=locks,
            logger=logger
        )

    @provide(scope=Scope.APP)
    def get_balance_reader(
        self,
        ledger: Annotated[WalletLedger, FromComponent("ledger")],
        repository: Annotated[WalletRepository, FromComponent("ledger")],
        pricing: Annotated[PricingSource, FromComponent("ledger")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> BalanceReader:
        """
        Provide balance reader.

        Parameters
        ----------
        ledger : WalletLedger
            Settlement layer
        repository : WalletRepository
            Storage holding pending transfers
        pricing : PricingSource
            Exchange rate source
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        BalanceReader
            Balance reader for the configured token and fiat currency
        """
        return BalanceReader(
            ledger=ledger,
            repository=repository,
            pricing=pricing,
            logger=logger,
            token_symbol=settings.token_symbol,
            fiat_currency=settings.fiat_currency
        )

    @provide(scope=Scope.APP)
    async def get_transfer_executor(
        self,
        ledger: Annotated[WalletLedger, FromComponent("ledger")],
        repository: Annotated[WalletRepository, FromComponent("ledger")],
        locks: Annotated[WalletLocks, FromComponent("ledger")],
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> AsyncIterable[TransferExecutor]:
        """
        Provide transfer executor, finishing in-flight work on shutdown.

        Yields
        ------
        TransferExecutor
            Transfer executor instance
        """
        executor = TransferExecutor(
            ledger=ledger,
            repository=repository,
            locks=locks,
            identity_resolver=identity_resolver,
            logger=logger,
            ack_timeout=settings.transfer_ack_timeout,
            settlement_timeout=settings.settlement_timeout,
            poll_interval=settings.settlement_poll_interval
        )
        try:
            yield executor
        finally:
            await executor.aclose()

    @provide(scope=Scope.APP)
    def get_payment_request_service(
        self,
        repository: Annotated[WalletRepository, FromComponent("ledger")],
        locks: Annotated[WalletLocks, FromComponent("ledger")],
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> PaymentRequestService:
        """
        Provide payment request service.

        Parameters
        ----------
        repository : WalletRepository
            Payment request storage
        locks : WalletLocks
            Locks serializing fulfillment
        identity_resolver : IdentityResolver
            Identity resolver instance
        transfer_executor : TransferExecutor
            Executor paying requests
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        PaymentRequestService
            Payment request service instance
        """
        return PaymentRequestService(
            repository=repository,
            identity_resolver=identity_resolver,
            transfer_executor=transfer_executor,
            locks=locks,
            logger=logger,
            default_expiry_minutes=settings.payment_request_default_expiry_minutes
        )

    @provide(scope=Scope.REQUEST)
    def get_create_wallet_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")]
    ) -> CreateWalletUseCase:
        """
        Provide create wallet use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance

        Returns
        -------
        CreateWalletUseCase
            Create wallet use case
        """
        return CreateWalletUseCase(identity_resolver=identity_resolver)

    @provide(scope=Scope.REQUEST)
    def get_wallet_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        balance_reader: Annotated[BalanceReader, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")]
    ) -> GetWalletUseCase:
        """
        Provide wallet overview use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance
        balance_reader : BalanceReader
            Balance reader instance
        transfer_executor : TransferExecutor
            Transfer executor instance

        Returns
        -------
        GetWalletUseCase
            Wallet overview use case
        """
        return GetWalletUseCase(
            identity_resolver=identity_resolver,
            balance_reader=balance_reader,
            transfer_executor=transfer_executor
        )

    @provide(scope=Scope.REQUEST)
    def get_address_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")]
    ) -> GetAddressUseCase:
        """
        Provide wallet address use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance

        Returns
        -------
        GetAddressUseCase
            Wallet address use case
        """
        return GetAddressUseCase(identity_resolver=identity_resolver)

    @provide(scope=Scope.REQUEST)
    def get_balance_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        balance_reader: Annotated[BalanceReader, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")]
    ) -> GetBalanceUseCase:
        """
        Provide balance use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance
        balance_reader : BalanceReader
            Balance reader instance
        transfer_executor : TransferExecutor
            Transfer executor instance

        Returns
        -------
        GetBalanceUseCase
            Balance use case
        """
        return GetBalanceUseCase(
            identity_resolver=identity_resolver,
            balance_reader=balance_reader,
            transfer_executor=transfer_executor
        )

    @provide(scope=Scope.REQUEST)
    def get_list_transactions_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> ListTransactionsUseCase:
        """
        Provide transaction history use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance
        transfer_executor : TransferExecutor
            Transfer executor instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        ListTransactionsUseCase
            Transaction history use case
        """
        return ListTransactionsUseCase(
            identity_resolver=identity_resolver,
            transfer_executor=transfer_executor,
            decimals=ledger.decimals
        )

    @provide(scope=Scope.REQUEST)
    def get_transfer_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> TransferUseCase:
        """
        Provide transfer use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance
        transfer_executor : TransferExecutor
            Transfer executor instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        TransferUseCase
            Transfer use case
        """
        return TransferUseCase(
            identity_resolver=identity_resolver,
            transfer_executor=transfer_executor,
            decimals=ledger.decimals
        )

    @provide(scope=Scope.REQUEST)
    def get_transfer_status_use_case(
        self,
        identity_resolver: Annotated[IdentityResolver, FromComponent("wallet")],
        transfer_executor: Annotated[TransferExecutor, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> GetTransferUseCase:
        """
        Provide transfer status use case.

        Parameters
        ----------
        identity_resolver : IdentityResolver
            Identity resolver instance
        transfer_executor : TransferExecutor
            Transfer executor instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        GetTransferUseCase
            Transfer status use case
        """
        return GetTransferUseCase(
            identity_resolver=identity_resolver,
            transfer_executor=transfer_executor,
            decimals=ledger.decimals
        )

    @provide(scope=Scope.REQUEST)
    def get_create_payment_request_use_case(
        self,
        payment_requests: Annotated[PaymentRequestService, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> CreatePaymentRequestUseCase:
        """
        Provide create payment request use case.

        Parameters
        ----------
        payment_requests : PaymentRequestService
            Payment request service instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        CreatePaymentRequestUseCase
            Create payment request use case
        """
        return CreatePaymentRequestUseCase(payment_requests=payment_requests, decimals=ledger.decimals)

    @provide(scope=Scope.REQUEST)
    def get_list_payment_requests_use_case(
        self,
        payment_requests: Annotated[PaymentRequestService, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> ListPaymentRequestsUseCase:
        """
        Provide pending payment requests use case.

        Parameters
        ----------
        payment_requests : PaymentRequestService
            Payment request service instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        ListPaymentRequestsUseCase
            Pending payment requests use case
        """
        return ListPaymentRequestsUseCase(payment_requests=payment_requests, decimals=ledger.decimals)

    @provide(scope=Scope.REQUEST)
    def get_payment_request_use_case(
        self,
        payment_requests: Annotated[PaymentRequestService, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> GetPaymentRequestUseCase:
        """
        Provide payment request lookup use case.

        Parameters
        ----------
        payment_requests : PaymentRequestService
            Payment request service instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        GetPaymentRequestUseCase
            Payment request lookup use case
        """
        return GetPaymentRequestUseCase(payment_requests=payment_requests, decimals=ledger.decimals)

    @provide(scope=Scope.REQUEST)
    def get_pay_payment_request_use_case(
        self,
        payment_requests: Annotated[PaymentRequestService, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> PayPaymentRequestUseCase:
        """
        Provide pay payment request use case.

        Parameters
        ----------
        payment_requests : PaymentRequestService
            Payment request service instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        PayPaymentRequestUseCase
            Pay payment request use case
        """
        return PayPaymentRequestUseCase(payment_requests=payment_requests, decimals=ledger.decimals)

    @provide(scope=Scope.REQUEST)
    def get_cancel_payment_request_use_case(
        self,
        payment_requests: Annotated[PaymentRequestService, FromComponent("wallet")],
        ledger: Annotated[WalletLedger, FromComponent("ledger")]
    ) -> CancelPaymentRequestUseCase:
        """
        Provide cancel payment request use case.

        Parameters
        ----------
        payment_requests : PaymentRequestService
            Payment request service instance
        ledger : WalletLedger
            Settlement layer, for token precision

        Returns
        -------
        CancelPaymentRequestUseCase
            Cancel payment request use case
        """
        return CancelPaymentRequestUseCase(payment_requests=payment_requests, decimals=ledger.decimals)
