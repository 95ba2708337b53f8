from dishka import AsyncContainer, Provider, make_async_container
from dishka.integrations.fastapi import FastapiProvider

from core.environment.config import Settings
from core.environment.providers import EnvironmentProvider
from core.redis.providers import RedisProvider, CacheProvider
from core.logging.providers import LoggerProvider
from wallet.providers import InMemoryLedgerProvider, LiveLedgerProvider, WalletProvider


def infrastructure_providers(settings: Settings) -> list[Provider]:
    """
    Providers backing the ``ledger`` component for the configured backend.

    Parameters
    ----------
    settings : Settings
        Application settings

    Returns
    -------
    list[Provider]
        Redis and on-chain providers, or the in-memory ledger
    """
    if settings.ledger_backend == "memory":
        return [InMemoryLedgerProvider()]
    return [RedisProvider(), CacheProvider(), LiveLedgerProvider()]


def make_container(settings: Settings | None = None, *infrastructure: Provider) -> AsyncContainer:
    """
    Build the application container.

    Parameters
    ----------
    settings : Settings | None
        Settings to inject; read from the environment when omitted
    *infrastructure : Provider
        Providers replacing the ones chosen from ``ledger_backend``

    Returns
    -------
    AsyncContainer
        dishka container
    """
    settings = settings or Settings()
    return make_async_container(
        FastapiProvider(),
        EnvironmentProvider(settings),
        LoggerProvider(),
        WalletProvider(),
        *(infrastructure or infrastructure_providers(settings))
    )
