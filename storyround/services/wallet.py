import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from storyround.errors import ExternalServiceError
from storyround.services.retry import call_with_retries


class WalletService:
    """Token transfers, native payouts and balance queries.

    The wallet service owns the treasury keys and creates destination
    token accounts when needed; this client only speaks to its HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient,
        timeout: float = 30,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout
        self.max_retries = max_retries
        self.sleep = sleep

    async def _post_ok(self, path: str, payload: dict) -> bool:
        response = await self.client.post(
            f"{self.base_url}{path}", json=payload, timeout=self.timeout
        )
        if response.status_code >= 400:
            logging.error(f"Wallet service {path} failed: {response.status_code} - {response.text}")
            return False
        return bool(response.json().get("ok"))

    async def transfer(self, destination: str, token_amount: int) -> bool:
        """Send tokens from the treasury. Any error counts as a failed transfer."""
        try:
            success = await self._post_ok(
                "/transfer", {"destination": destination, "amount": token_amount}
            )
        except httpx.HTTPError as e:
            logging.error(f"Token transfer failed: {e}")
            return False
        if success:
            logging.info(f"{token_amount} tokens -> {destination[:8]}...")
        return success

    async def send_native(self, destination: str, amount: float) -> bool:
        """Send native currency, used for the transaction fee."""
        if amount <= 0:
            return True
        try:
            return await self._post_ok(
                "/send-native", {"destination": destination, "amount": amount}
            )
        except httpx.HTTPError as e:
            logging.error(f"Native payout failed: {e}")
            return False

    async def balance_of(self, account: str) -> int:
        """Whole-token balance of ``account``

        Raises:
            ExternalServiceError: The balance could not be read after retries
        """

        async def query() -> int:
            response = await self.client.get(
                f"{self.base_url}/balance/{account}", timeout=self.timeout
            )
            if response.status_code >= 400:
                raise ExternalServiceError(f"Balance query failed: {response.status_code}")
            return int(float(response.json().get("balance", 0)))

        return await call_with_retries(
            query, label="Balance query", max_retries=self.max_retries, sleep=self.sleep
        )
