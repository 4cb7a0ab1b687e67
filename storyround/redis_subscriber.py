import json
import logging
from typing import AsyncGenerator, List

from redis.asyncio import Redis

from storyround.models.dc_models import TallyEntryModel
from storyround.services.notifier import TALLY_CHANNEL


class RedisSubscriber:
    """Redis subscriber class to stream the live vote tally as SSE events."""

    def __init__(self, initial_tally: List[TallyEntryModel]):
        """Initialize RedisSubscriber with the tally at connection time."""
        self.initial_tally = initial_tally

    async def event_generator(self, redis: Redis, channel: str = TALLY_CHANNEL) -> AsyncGenerator[str, None]:
        """Event generator to handle SSE events.

        Args:
            redis (Redis): Redis connection object.
            channel (str): Channel the round engine publishes tally updates to.
        """
        payload = json.dumps({"tally": [entry.model_dump() for entry in self.initial_tally]})
        yield f"event: tally\ndata: {payload}\n\n"

        pubsub = redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
                if msg and msg["type"] == "message":
                    data = msg["data"]
                    if isinstance(data, bytes):
                        data = data.decode()
                    logging.debug(f"Tally update: {data}")
                    yield f"event: tally_update\ndata: {data}\n\n"
        finally:
            logging.info("Unsubscribing from tally channel")
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
