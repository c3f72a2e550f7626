"""CoinGecko simple-price source.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies=usd
"""
import logging
import ssl

import aiohttp
import certifi

from ..config import SourceConfig

logger = logging.getLogger(__name__)

BASE_URL_FREE = "https://api.coingecko.com/api/v3"

# Symbol → CoinGecko coin id
COIN_IDS = {
    "SUI": "sui",
    "USDC": "usd-coin",
    "WETH": "weth",
    "WBTC": "wrapped-bitcoin",
    "BTC": "bitcoin",
    "ETH": "ethereum",
}


class CoinGeckoSource:
    """Fetch USD prices from CoinGecko."""

    def __init__(self, config: SourceConfig, timeout: float = 10.0) -> None:
        self.source_id = config.id
        self.base_url = (config.endpoint or BASE_URL_FREE).rstrip("/")
        self.api_key = config.options.get("api_key", "")
        self.coin_ids = {**COIN_IDS, **{
            k.upper(): v for k, v in config.options.get("coin_ids", {}).items()
        }}
        self.timeout = timeout

    async def fetch_price(self, symbol: str) -> float | None:
        coin_id = self.coin_ids.get(symbol.upper())
        if not coin_id:
            logger.debug("No CoinGecko id for %s", symbol)
            return None

        url = f"{self.base_url}/simple/price"
        params = {"ids": coin_id, "vs_currencies": "usd"}
        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else {}

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    logger.error(
                        "Error fetching %s from CoinGecko: HTTP %s",
                        symbol,
                        response.status,
                    )
                    return None
                data = await response.json()

        price = data.get(coin_id, {}).get("usd")
        if price is None:
            logger.warning("CoinGecko response missing price for %s", symbol)
            return None
        return float(price)
