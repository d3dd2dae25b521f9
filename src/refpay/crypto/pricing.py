"""
USD pricing for crypto payments: platform fees, fiat-to-base-unit conversion
and a cached price oracle.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

import httpx

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# CoinGecko ids per asset symbol
COINGECKO_IDS = {"SOL": "solana", "USDC": "usd-coin"}


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal  # Merchant receives
    fee_amount: Decimal  # Platform fee
    total_amount_due: Decimal  # Payer sends


def calculate_fees(amount: Decimal, fee_rate: Decimal, fixed_fee: Decimal) -> FeeBreakdown:
    """
    Computes ``fee = amount * fee_rate + fixed_fee`` and ``total = amount + fee``.

    Example:
        >>> calculate_fees(Decimal("5.00"), Decimal("0.029"), Decimal("0.30"))
        FeeBreakdown(amount=Decimal('5.00'), fee_amount=Decimal('0.44500'), total_amount_due=Decimal('5.44500'))
    """
    fee_amount = amount * fee_rate + fixed_fee
    return FeeBreakdown(
        amount=amount,
        fee_amount=fee_amount,
        total_amount_due=amount + fee_amount,
    )


def usd_to_lamports(usd_amount: Decimal, sol_price: Decimal) -> int:
    """floor(usd / price * 1e9)"""
    if sol_price <= 0:
        raise ValueError(f"Invalid SOL price: {sol_price}")
    lamports = usd_amount / sol_price * LAMPORTS_PER_SOL
    return int(lamports.to_integral_value(rounding=ROUND_FLOOR))


def to_base_units(amount: Decimal, decimals: int) -> int:
    """floor(amount * 10**decimals)"""
    scaled = amount.scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


class PriceCache:
    """
    Last fetched price with its fetch time and time-to-live.

    Owned by one oracle instance; tests inject their own clock.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.value: Decimal | None = None
        self.fetched_at: float | None = None
        self._clock = clock

    def get(self) -> Decimal | None:
        """Returns the cached price if still fresh."""
        if self.value is None or self.fetched_at is None:
            return None
        if self._clock() - self.fetched_at > self.ttl:
            return None
        return self.value

    def get_stale(self) -> Decimal | None:
        """Returns the cached price regardless of age."""
        return self.value

    def set(self, value: Decimal) -> None:
        self.value = value
        self.fetched_at = self._clock()


class CoinGeckoPriceOracle:
    """
    Fetches USD prices from CoinGecko's simple price endpoint.

    Upstream failures never propagate: a stale cached price is returned if
    one exists, otherwise the static fallback for the asset.
    """

    def __init__(
        self,
        api_url: str,
        fallback_prices: dict[str, Decimal],
        ttl_seconds: float = 60.0,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        cache_factory: Callable[[], PriceCache] | None = None,
    ):
        self.api_url = api_url
        self.fallback_prices = fallback_prices
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._cache_factory = cache_factory or (lambda: PriceCache(ttl_seconds))
        self._caches: dict[str, PriceCache] = {}

    def _cache_for(self, asset: str) -> PriceCache:
        if asset not in self._caches:
            self._caches[asset] = self._cache_factory()
        return self._caches[asset]

    async def get_price(self, asset: str) -> Decimal:
        asset = asset.upper()
        cache = self._cache_for(asset)

        cached = cache.get()
        if cached is not None:
            return cached

        try:
            price = await self._fetch(asset)
        except (httpx.HTTPError, KeyError, ValueError, TypeError, ArithmeticError) as e:
            fallback = cache.get_stale() or self.fallback_prices.get(asset)
            logger.warning(
                "Price fetch failed, using fallback",
                extra={"asset": asset, "error": str(e), "fallback": str(fallback)},
            )
            if fallback is None:
                raise ValueError(f"No price available for {asset}") from e
            return fallback

        cache.set(price)
        logger.info("price_refreshed", extra={"asset": asset, "price": str(price)})
        return price

    async def _fetch(self, asset: str) -> Decimal:
        coin_id = COINGECKO_IDS[asset]
        response = await self.client.get(
            self.api_url, params={"ids": coin_id, "vs_currencies": "usd"}
        )
        response.raise_for_status()
        price = Decimal(str(response.json()[coin_id]["usd"]))
        if price <= 0:
            raise ValueError(f"Non-positive price for {asset}: {price}")
        return price

    async def close(self) -> None:
        await self.client.aclose()
