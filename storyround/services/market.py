"""Market-buy collaborator.

Buys the pooled reward token with native currency through an ordered list of
swap providers. Each provider is retried with backoff; when one gives up the
next one is tried. Transaction building and signing live behind the provider
endpoints.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List

import httpx

from storyround.errors import ExternalServiceError
from storyround.services.retry import call_with_retries


class HttpMarketProvider:
    def __init__(self, name: str, url: str, client: httpx.AsyncClient, timeout: float = 30):
        self.name = name
        self.url = url
        self.client = client
        self.timeout = timeout

    async def buy(self, amount_in: float) -> int:
        response = await self.client.post(
            self.url, json={"action": "buy", "amount_in": amount_in}, timeout=self.timeout
        )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{self.name} request failed: {response.status_code} - {response.text}"
            )
        data = response.json()
        if "tokens_received" not in data:
            raise ExternalServiceError(f"{self.name} returned no token quantity")
        return int(data["tokens_received"])


class MarketBuyService:
    def __init__(
        self,
        providers: List[HttpMarketProvider],
        max_retries: int = 3,
        backoff_base: float = 2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = providers
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.sleep = sleep

    async def buy(self, amount_in: float) -> int:
        """Buy tokens for ``amount_in`` native units

        Args:
            amount_in (float): Native currency to spend

        Raises:
            ExternalServiceError: Every provider failed, or the purchase yielded nothing

        Returns:
            int: Whole tokens received
        """
        logging.info(f"Buying tokens with {amount_in:.4f}")
        failures = []
        for provider in self.providers:
            try:
                tokens = await call_with_retries(
                    lambda: provider.buy(amount_in),
                    label=f"{provider.name} buy",
                    max_retries=self.max_retries,
                    backoff_base=self.backoff_base,
                    sleep=self.sleep,
                )
            except ExternalServiceError as e:
                failures.append(f"{provider.name}: {e}")
                logging.warning(f"{provider.name} failed, falling back to next provider")
                continue

            # A provider that answered has spent the funds; never buy twice.
            if tokens <= 0:
                raise ExternalServiceError(f"Purchase through {provider.name} returned 0 tokens")
            logging.info(f"{provider.name} purchase complete: {tokens} tokens")
            return tokens

        raise ExternalServiceError(f"All market providers failed. {'; '.join(failures)}")
