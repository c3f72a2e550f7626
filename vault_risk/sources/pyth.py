"""Pyth Network (Hermes) price source."""
import logging
import ssl

import aiohttp
import certifi

from ..config import SourceConfig

logger = logging.getLogger(__name__)

DEFAULT_HERMES_URL = "https://hermes.pyth.network/v2/updates/price/latest"


class PythSource:
    """Fetch prices from the Pyth Network Hermes API."""

    def __init__(self, config: SourceConfig, timeout: float = 10.0) -> None:
        self.source_id = config.id
        self.hermes_url = config.endpoint or DEFAULT_HERMES_URL
        self.price_feeds = {
            k.upper(): v for k, v in config.options.get("feeds", {}).items()
        }
        self.timeout = timeout

    async def fetch_price(self, symbol: str) -> float | None:
        """Fetch the latest price for ``symbol``.

        Returns None when no feed is configured for the symbol or the
        response cannot be used.
        """
        feed_id = self.price_feeds.get(symbol.upper())
        if not feed_id:
            logger.debug("No Pyth feed configured for %s", symbol)
            return None

        url = f"{self.hermes_url}?ids[]={feed_id}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    logger.error(
                        "Error fetching %s from Pyth: HTTP %s", symbol, response.status
                    )
                    return None

                data = await response.json()

        for item in data.get("parsed", []):
            if item.get("id") != feed_id.removeprefix("0x"):
                continue
            price_data = item.get("price", {})
            price_raw = int(price_data.get("price", 0))
            expo = int(price_data.get("expo", 0))
            price = price_raw * (10**expo)
            logger.debug("Pyth %s: $%.4f", symbol, price)
            return price

        logger.warning("Pyth response did not include feed for %s", symbol)
        return None
