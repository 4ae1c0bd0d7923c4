"""
Tests for conversion rate sources.
"""

from decimal import Decimal

import pytest

from transfer_control.conversion import ExchangeRateSource, StaticRateSource
from transfer_control.errors import ConversionFailed


class PriceBook:
    """Executor stand-in answering fetch_last_price from a dict"""

    def __init__(self, prices):
        self.prices = prices

    async def fetch_last_price(self, venue, symbol):
        return self.prices.get(symbol)


class TestStaticRateSource:

    @pytest.mark.asyncio
    async def test_direct_pair(self):
        source = StaticRateSource({"eth/xrp": Decimal("5000")})
        assert await source.get_rate("ETH", "XRP") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_inverse_pair(self):
        source = StaticRateSource({"XRP/USDT": Decimal("0.5")})
        assert await source.get_rate("USDT", "XRP") == Decimal("2")

    @pytest.mark.asyncio
    async def test_same_asset(self):
        assert await StaticRateSource().get_rate("XRP", "xrp") == Decimal("1")

    @pytest.mark.asyncio
    async def test_missing_pair(self):
        with pytest.raises(ConversionFailed):
            await StaticRateSource({"ETH/XRP": Decimal("5000")}).get_rate("BTC", "XRP")


class TestExchangeRateSource:

    @pytest.mark.asyncio
    async def test_direct_price(self):
        source = ExchangeRateSource(PriceBook({"ETH/XRP": 4800}), "binance")
        assert await source.get_rate("ETH", "XRP") == Decimal("4800")

    @pytest.mark.asyncio
    async def test_inverse_price(self):
        source = ExchangeRateSource(PriceBook({"XRP/USDT": 0.5}), "binance")
        assert await source.get_rate("USDT", "XRP") == Decimal("2")

    @pytest.mark.asyncio
    async def test_usdt_cross_rate(self):
        source = ExchangeRateSource(PriceBook({"ETH/USDT": 2600, "XRP/USDT": 0.52}), "binance")
        assert await source.get_rate("ETH", "XRP") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_fallback_when_venue_has_no_price(self):
        fallback = StaticRateSource({"ETH/XRP": Decimal("5000")})
        source = ExchangeRateSource(PriceBook({}), "binance", fallback=fallback)
        assert await source.get_rate("ETH", "XRP") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_no_price_and_no_fallback(self):
        source = ExchangeRateSource(PriceBook({"ETH/USDT": 0}), "binance")
        with pytest.raises(ConversionFailed):
            await source.get_rate("ETH", "XRP")
