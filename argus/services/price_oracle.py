"""
Argus Escrow — Price Oracle
Converts reward currencies into the payout asset.
"""
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from argus.config import Settings, get_settings
from argus.services.denominations import to_decimal

ZEC_QUANTUM = Decimal("0.00000001")


class PriceOracle(ABC):
    """Source of asset prices quoted in a fiat currency."""

    @abstractmethod
    async def get_price(self, asset: str, quote: str = "USD") -> Decimal:
        ...

    async def convert(self, amount, asset: str, quote: str = "USD") -> Decimal:
        """Convert ``amount`` of ``quote`` into ``asset``, truncated to 8 decimals."""
        price = await self.get_price(asset, quote)
        if price <= 0:
            raise ValueError(f"No usable {asset}/{quote} price")
        return (to_decimal(amount) / price).quantize(ZEC_QUANTUM, rounding=ROUND_DOWN)


class FixedPriceOracle(PriceOracle):
    """Operator-configured prices, e.g. ZEC_USD_PRICE from settings."""

    def __init__(self, prices: Optional[dict[tuple[str, str], Decimal]] = None, settings: Optional[Settings] = None):
        if prices is None:
            settings = settings or get_settings()
            prices = {("zec", "USD"): to_decimal(settings.ZEC_USD_PRICE)}
        self._prices = {(asset.lower(), quote.upper()): to_decimal(p) for (asset, quote), p in prices.items()}

    async def get_price(self, asset: str, quote: str = "USD") -> Decimal:
        try:
            return self._prices[(asset.lower(), quote.upper())]
        except KeyError:
            raise ValueError(f"No price configured for {asset}/{quote}") from None
