import logging
from asyncio import Lock
from datetime import datetime, timezone
from typing import Callable

from storyround.errors import PersistenceWarning
from storyround.models.dc_models import RoundState
from storyround.services.snapshot_store import SnapshotStore


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RoundSyncManager:
    """Single writer of the round state.

    Every mutation (payment, vote, phase transition, sweep) runs under
    ``lock`` and ends with ``persist()`` while still holding it. Slow
    external calls happen between two lock sections, never inside one.
    """

    def __init__(
        self,
        store: SnapshotStore,
        state: RoundState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.state = state or RoundState()
        self.clock = clock
        self.lock = Lock()

    async def restore(self) -> bool:
        """Load the persisted state

        Returns:
            bool: True if a snapshot was found
        """
        async with self.lock:
            state = await self.store.load()
            if state is None:
                return False
            self.state = state
            return True

    async def persist(self) -> bool:
        """Save the current state. Call while holding ``lock``.

        Returns:
            bool: False if the save failed; the next successful save repairs it
        """
        try:
            await self.store.save(self.state, self.clock())
            return True
        except PersistenceWarning as e:
            logging.warning(f"{e}; continuing with in-memory state")
            return False
