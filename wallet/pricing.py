import asyncio
import logging
from abc import ABC, abstractmethod

import aiohttp

from core.exceptions import PricingUnavailableError
from core.redis.providers import CacheService


class PricingSource(ABC):
    """
    Exchange rate provider used for fiat conversion of balances.
    """

    @abstractmethod
    async def get_exchange_rate(self, base: str, quote: str) -> float:
        """
        Rate converting one ``base`` unit into ``quote``.

        Raises
        ------
        PricingUnavailableError
            If no rate can be obtained
        """


class StaticPricingSource(PricingSource):
    """
    Fixed rates, by default the USDC:USD peg.

    Parameters
    ----------
    rates : dict[tuple[str, str], float] | None
        Rates keyed by ``(base, quote)``
    """

    DEFAULT_RATES = {("USDC", "USD"): 1.0}

    def __init__(self, rates: dict[tuple[str, str], float] | None = None):
        self.rates = dict(self.DEFAULT_RATES if rates is None else rates)

    async def get_exchange_rate(self, base: str, quote: str) -> float:
        if base.upper() == quote.upper():
            return 1.0
        try:
            return self.rates[(base.upper(), quote.upper())]
        except KeyError as e:
            raise PricingUnavailableError(details={"pair": f"{base}/{quote}"}) from e


class HttpPricingSource(PricingSource):
    """
    Exchange rates fetched over HTTP and cached in Redis.

    The endpoint must answer in the Coinbase exchange-rates shape:
    ``{"data": {"rates": {"USD": "1.0001"}}}``.

    Parameters
    ----------
    url_template : str
        URL with a ``{base}`` placeholder
    cache_service : CacheService
        Cache for fetched rates
    logger : logging.Logger
        Logger instance
    cache_ttl : int
        Seconds a rate stays cached
    """

    def __init__(
        self,
        url_template: str,
        cache_service: CacheService,
        logger: logging.Logger,
        cache_ttl: int = 60
    ):
        self.url_template = url_template
        self.cache = cache_service
        self.logger = logger
        self.cache_ttl = cache_ttl

    async def get_exchange_rate(self, base: str, quote: str) -> float:
        """
        Get rate from cache or the pricing endpoint.

        Parameters
        ----------
        base : str
            Currency being priced
        quote : str
            Currency of the result

        Returns
        -------
        float
            Exchange rate
        """
        cache_key = f"rate:{base.upper()}:{quote.upper()}"

        cached = await self.cache.get(cache_key)
        if cached and "rate" in cached:
            return float(cached["rate"])

        rate = await self._fetch(base.upper(), quote.upper())
        await self.cache.set(cache_key, {"rate": rate}, ttl=self.cache_ttl)
        return rate

    async def _fetch(self, base: str, quote: str) -> float:
        url = self.url_template.format(base=base)
        timeout = aiohttp.ClientTimeout(total=5)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise PricingUnavailableError(details={
                            "pair": f"{base}/{quote}",
                            "reason": f"HTTP {response.status}",
                        })
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.warning(f"Pricing request for {base}/{quote} failed: {e}")
            raise PricingUnavailableError(details={"pair": f"{base}/{quote}"}) from e

        try:
            return float(data["data"]["rates"][quote])
        except (KeyError, TypeError, ValueError) as e:
            raise PricingUnavailableError(details={
                "pair": f"{base}/{quote}",
                "reason": "unexpected response shape",
            }) from e
