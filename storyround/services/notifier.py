import json
import logging
from typing import List

from redis.asyncio import Redis

from storyround.models.dc_models import TallyEntryModel

TALLY_CHANNEL = "tally"


def user_channel(user_id: str) -> str:
    return f"notify:user:{user_id}"


def announce_channel(channel: str) -> str:
    return f"announce:{channel}"


class Notifier:
    """Outbound messages to the chat front-end, published over redis.

    Delivery is best-effort: a failure is logged and never raised.
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    async def _publish(self, channel: str, payload: dict) -> None:
        try:
            await self.redis.publish(channel, json.dumps(payload))
        except Exception as e:
            logging.error(f"Failed to publish to {channel}: {e}")

    async def notify_user(self, user_id: str, message: str) -> None:
        await self._publish(user_channel(user_id), {"user_id": user_id, "message": message})

    async def announce(self, channel: str, message: str) -> None:
        await self._publish(announce_channel(channel), {"channel": channel, "message": message})

    async def publish_tally(self, tally: List[TallyEntryModel]) -> None:
        await self._publish(TALLY_CHANNEL, {"tally": [entry.model_dump() for entry in tally]})
