import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
import logging
import os


# Set test environment variables before imports
os.environ['REDIS_HOST'] = 'localhost'
os.environ['REDIS_PORT'] = '6379'
os.environ['REDIS_DB'] = '0'
os.environ['REDIS_PASSWORD'] = ''  # No password for tests
os.environ['LEDGER_BACKEND'] = 'memory'

from core.container import make_container  # noqa: E402
from core.environment.config import Settings  # noqa: E402
from core.logging.providers import LOGGER_NAME  # noqa: E402
from wallet.locks import LocalWalletLocks  # noqa: E402
from wallet.memory_ledger import InMemoryTestLedger  # noqa: E402
from wallet.payment_requests import PaymentRequestService  # noqa: E402
from wallet.pricing import StaticPricingSource  # noqa: E402
from wallet.providers import InMemoryLedgerProvider  # noqa: E402
from wallet.repository import InMemoryWalletRepository  # noqa: E402
from wallet.services import BalanceReader, IdentityResolver, TransferExecutor  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts so that waits stay fast."""
    return Settings(
        ledger_backend="memory",
        chain_id=8453,
        transfer_ack_timeout=1.0,
        settlement_timeout=2.0,
        settlement_poll_interval=0.01,
        wallet_lock_timeout=5.0,
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


@pytest.fixture
def ledger(logger) -> InMemoryTestLedger:
    return InMemoryTestLedger(chain_id=8453, decimals=6, logger=logger)


@pytest.fixture
def repository() -> InMemoryWalletRepository:
    return InMemoryWalletRepository()


@pytest.fixture
def pricing() -> StaticPricingSource:
    return StaticPricingSource()


@pytest.fixture
def locks() -> LocalWalletLocks:
    return LocalWalletLocks(wait_timeout=5.0)


@pytest.fixture
def identity_resolver(ledger, repository, locks, logger) -> IdentityResolver:
    return IdentityResolver(ledger=ledger, repository=repository, locks=locks, logger=logger)


@pytest.fixture
def balance_reader(ledger, repository, pricing, logger) -> BalanceReader:
    return BalanceReader(ledger=ledger, repository=repository, pricing=pricing, logger=logger)


@pytest_asyncio.fixture
async def transfer_executor(ledger, repository, locks, identity_resolver, logger):
    """
    Transfer executor over the in-memory ledger.

    Yields
    ------
    TransferExecutor
        Executor closed after the test
    """
    executor = TransferExecutor(
        ledger=ledger,
        repository=repository,
        locks=locks,
        identity_resolver=identity_resolver,
        logger=logger,
        ack_timeout=1.0,
        settlement_timeout=2.0,
        poll_interval=0.01,
    )
    yield executor
    await executor.aclose()


@pytest.fixture
def payment_requests(repository, identity_resolver, transfer_executor, locks, logger) -> PaymentRequestService:
    return PaymentRequestService(
        repository=repository,
        identity_resolver=identity_resolver,
        transfer_executor=transfer_executor,
        locks=locks,
        logger=logger,
    )


@pytest_asyncio.fixture
async def client(settings, ledger, repository, pricing):
    """
    Fixture for async test client backed by the in-memory ledger.

    Parameters
    ----------
    settings : Settings
        Test settings
    ledger : InMemoryTestLedger
        Ledger shared with the test for funding and settling
    repository : InMemoryWalletRepository
        Repository shared with the test for inspection
    pricing : StaticPricingSource
        Pricing source

    Yields
    ------
    AsyncClient
        Async HTTP client for testing
    """
    from main import create_app

    container = make_container(
        settings,
        InMemoryLedgerProvider(ledger=ledger, repository=repository, pricing=pricing),
    )
    app = create_app(settings, container)

    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        await container.close()
