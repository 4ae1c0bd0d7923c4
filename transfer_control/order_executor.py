"""
Exchange Order Executor

Places orders on live exchange venues through ccxt.

Only venues whose credentials are configured are connected; a venue is
added to the ready set only after it proves it is in live (non-sandbox)
mode and can fetch its balances.
"""

import asyncio
from dataclasses import dataclass, asdict
from typing import Dict, Optional

import ccxt.async_support as ccxt
from loguru import logger

from .errors import VenueNotConnected


ORDER_TYPES = ('market', 'limit')
ORDER_SIDES = ('buy', 'sell')


@dataclass
class OrderResult:
    """Order outcome; callers must inspect `success`"""
    success: bool
    order_id: Optional[str] = None
    status: Optional[str] = None
    filled: Optional[float] = None
    cost: Optional[float] = None
    fee: Optional[Dict] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class ExchangeOrderExecutor:
    """
    Live order execution across exchange venues

    Features:
    - Credential-gated venue activation
    - Live mode verification (sandbox venues are excluded)
    - Market and limit orders with a non-raising result boundary
    - Last-price lookup for conversion rates
    """

    def __init__(self, venue_credentials: Optional[Dict[str, Dict[str, str]]] = None):
        """
        Initialize executor

        Args:
            venue_credentials: {venue: {apiKey, secret[, password]}}
        """
        self.venue_credentials = venue_credentials or {}
        self.exchanges: Dict[str, ccxt.Exchange] = {}

        logger.info(f"Exchange order executor initialized ({len(self.venue_credentials)} venues with credentials)")

    def _create_exchange(self, venue: str, credentials: Dict) -> ccxt.Exchange:
        exchange_class = getattr(ccxt, venue)
        config = {
            'enableRateLimit': True,
            'apiKey': credentials.get('apiKey'),
            'secret': credentials.get('secret'),
            'options': {'defaultType': 'spot'},
        }

        # Add password for exchanges that need it
        if 'password' in credentials:
            config['password'] = credentials['password']

        return exchange_class(config)

    @staticmethod
    def _is_sandbox(exchange: ccxt.Exchange) -> bool:
        if getattr(exchange, 'isSandboxModeEnabled', False):
            return True
        options = getattr(exchange, 'options', None) or {}
        return bool(options.get('sandboxMode'))

    async def connect_venue(self, venue: str, credentials: Dict) -> bool:
        """
        Connect one venue and verify live mode

        Args:
            venue: ccxt exchange id
            credentials: API key, secret, etc.

        Returns:
            True when the venue joined the ready set
        """
        if venue in self.exchanges:
            return True

        if not hasattr(ccxt, venue):
            logger.error(f"✗ Unknown exchange venue: {venue}")
            return False

        exchange = None
        try:
            exchange = self._create_exchange(venue, credentials)

            if self._is_sandbox(exchange):
                logger.error(f"✗ {venue} is in sandbox mode, excluded from live trading")
                await self._close_exchange_safe(venue, exchange)
                return False

            await exchange.load_markets()
            balance = await exchange.fetch_balance()

            held = [code for code, total in (balance.get('total') or {}).items() if total]
            self.exchanges[venue] = exchange
            logger.info(f"✓ {venue} connected in LIVE mode (holding: {held or 'nothing'})")
            return True

        except Exception as e:
            logger.error(f"✗ {venue} live connection failed: {e}")
            if exchange is not None:
                await self._close_exchange_safe(venue, exchange)
            return False

    async def connect_all(self) -> Dict[str, bool]:
        """
        Connect every venue with credentials

        Returns:
            {venue: connected}
        """
        results = {}
        for venue, credentials in self.venue_credentials.items():
            results[venue] = await self.connect_venue(venue, credentials)

        logger.info(f"{len(self.exchanges)} live exchange venues ready: {sorted(self.exchanges)}")
        return results

    def is_connected(self, venue: str) -> bool:
        return venue in self.exchanges

    def get_exchange(self, venue: str) -> ccxt.Exchange:
        """
        Get a connected venue client

        Raises:
            VenueNotConnected: venue is not in the ready set
        """
        if venue not in self.exchanges:
            raise VenueNotConnected(venue)
        return self.exchanges[venue]

    async def execute_order(
        self,
        venue: str,
        symbol: str,
        side: str,
        amount: float,
        order_type: str = 'market',
        price: Optional[float] = None
    ) -> OrderResult:
        """
        Execute an order on a live venue

        Args:
            venue: Connected venue id
            symbol: Market symbol, e.g. 'XRP/USDT'
            side: 'buy' or 'sell'
            amount: Base-asset amount
            order_type: 'market' or 'limit'
            price: Limit price (mandatory for limit orders)

        Returns:
            OrderResult; never raises
        """
        if venue not in self.exchanges:
            return OrderResult(success=False, error=f"Exchange {venue} not connected")
        if side not in ORDER_SIDES:
            return OrderResult(success=False, error=f"Invalid order side: {side}")
        if order_type not in ORDER_TYPES:
            return OrderResult(success=False, error=f"Invalid order type: {order_type}")
        if order_type == 'limit' and price is None:
            return OrderResult(success=False, error="Limit orders require a price")
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            return OrderResult(success=False, error=f"Invalid order amount: {amount!r}")
        if not amount > 0:
            return OrderResult(success=False, error=f"Invalid order amount: {amount}")
        if price is not None:
            try:
                price = float(price)
            except (TypeError, ValueError):
                return OrderResult(success=False, error=f"Invalid limit price: {price!r}")
            if not price > 0:
                return OrderResult(success=False, error=f"Invalid limit price: {price}")

        exchange = self.exchanges[venue]

        logger.info(f"Executing {order_type} {side} on {venue}: {amount} {symbol}" +
                    (f" @ {price}" if price is not None else ""))

        try:
            if order_type == 'limit':
                order = await exchange.create_limit_order(symbol, side, amount, price)
            else:
                order = await exchange.create_market_order(symbol, side, amount)

        except Exception as e:
            logger.error(f"✗ Order failed on {venue}: {e}")
            return OrderResult(success=False, error=str(e)[:300])

        result = OrderResult(
            success=True,
            order_id=order.get('id'),
            status=order.get('status'),
            filled=order.get('filled'),
            cost=order.get('cost'),
            fee=order.get('fee'),
        )
        logger.info(f"✓ Order {result.order_id} {result.status}: filled {result.filled}, cost {result.cost}")
        return result

    async def get_account_balance(self, venue: str) -> Dict[str, float]:
        """
        Get non-zero balances of a connected venue

        Raises:
            VenueNotConnected: venue is not in the ready set
        """
        exchange = self.get_exchange(venue)

        try:
            balance = await exchange.fetch_balance()
        except Exception as e:
            logger.error(f"✗ Balance fetch failed on {venue}: {e}")
            return {}

        return {
            code: total
            for code, total in (balance.get('total') or {}).items()
            if total
        }

    async def fetch_last_price(self, venue: str, symbol: str) -> Optional[float]:
        """Last traded price, or None when unavailable"""
        exchange = self.exchanges.get(venue)
        if exchange is None:
            return None

        markets = getattr(exchange, 'markets', None)
        if markets and symbol not in markets:
            return None

        try:
            ticker = await exchange.fetch_ticker(symbol)
        except Exception as e:
            logger.debug(f"Ticker {symbol} unavailable on {venue}: {e}")
            return None

        return ticker.get('last') or ticker.get('close')

    async def close(self):
        """Close all venue connections"""
        close_tasks = [
            self._close_exchange_safe(venue, exchange)
            for venue, exchange in list(self.exchanges.items())
        ]

        if close_tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*close_tasks, return_exceptions=True),
                    timeout=15.0
                )
            except asyncio.TimeoutError:
                logger.warning("Some exchanges did not close in time")

        self.exchanges.clear()

    async def _close_exchange_safe(self, venue: str, exchange):
        """Close a single venue connection, ignoring shutdown noise"""
        try:
            await exchange.close()
            logger.debug(f"✓ Closed {venue} connection")
        except (RuntimeError, ConnectionError, OSError) as e:
            logger.debug(f"{venue} connection already closed: {e}")
        except asyncio.CancelledError:
            logger.debug(f"{venue} close was cancelled")
            raise
        except Exception as e:
            logger.debug(f"Unexpected error closing {venue}: {e}")
