"""
Conversion Rates

Rate sources used by the CONVERTED stage.

- StaticRateSource: approximated rates from config, inverse pairs supported
- ExchangeRateSource: live last price from a connected exchange venue
"""

from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, TYPE_CHECKING

from loguru import logger

from .errors import ConversionFailed

if TYPE_CHECKING:
    from .order_executor import ExchangeOrderExecutor


class RateSource:
    """Base class for rate sources"""

    async def get_rate(self, base: str, quote: str) -> Decimal:
        """
        Units of `quote` per one unit of `base`

        Raises:
            ConversionFailed: no rate available
        """
        raise NotImplementedError


class StaticRateSource(RateSource):
    """Approximated rates, keyed "BASE/QUOTE" """

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None):
        self.rates = {pair.upper(): Decimal(rate) for pair, rate in (rates or {}).items()}

    async def get_rate(self, base: str, quote: str) -> Decimal:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal('1')

        direct = self.rates.get(f"{base}/{quote}")
        if direct is not None and direct > 0:
            return direct

        inverse = self.rates.get(f"{quote}/{base}")
        if inverse is not None and inverse > 0:
            return Decimal('1') / inverse

        raise ConversionFailed(f"No configured rate for {base}/{quote}")


class ExchangeRateSource(RateSource):
    """
    Live rates from an exchange venue

    Tries the direct pair, then the inverse pair, then a USDT cross rate.
    Falls back to `fallback` (usually a StaticRateSource) when the venue has
    no usable price.
    """

    CROSS_QUOTE = 'USDT'

    def __init__(
        self,
        executor: 'ExchangeOrderExecutor',
        venue: str,
        fallback: Optional[RateSource] = None
    ):
        self.executor = executor
        self.venue = venue
        self.fallback = fallback

    async def _last_price(self, symbol: str) -> Optional[Decimal]:
        price = await self.executor.fetch_last_price(self.venue, symbol)
        if price is None:
            return None
        try:
            value = Decimal(str(price))
        except InvalidOperation:
            return None
        return value if value > 0 else None

    async def get_rate(self, base: str, quote: str) -> Decimal:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal('1')

        direct = await self._last_price(f"{base}/{quote}")
        if direct is not None:
            return direct

        inverse = await self._last_price(f"{quote}/{base}")
        if inverse is not None:
            return Decimal('1') / inverse

        base_cross = await self._last_price(f"{base}/{self.CROSS_QUOTE}")
        quote_cross = await self._last_price(f"{quote}/{self.CROSS_QUOTE}")
        if base_cross is not None and quote_cross is not None:
            return base_cross / quote_cross

        if self.fallback is not None:
            logger.warning(f"No live {base}/{quote} price on {self.venue}, using fallback rate")
            return await self.fallback.get_rate(base, quote)

        raise ConversionFailed(f"No {base}/{quote} price available on {self.venue}")
