"""Snapshot store for crash recovery.

- The round state is one JSON document in one row.
- A save is a single transaction, so a crash never leaves a torn snapshot.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from storyround.crud import CreateData, ReadData, UpdateData
from storyround.errors import PersistenceWarning
from storyround.models.dc_models import RoundState


class SnapshotStore:
    def __init__(self, engine: AsyncEngine, Session: async_sessionmaker):
        self.engine = engine
        self.Session = Session

    async def create_table(self) -> None:
        await CreateData.create_table(self.engine)

    async def load(self) -> RoundState | None:
        try:
            async with self.Session() as session:
                state = await ReadData.read_snapshot(session)
        except Exception as e:
            logging.error(f"Failed to load round snapshot: {e}")
            return None
        if state is not None:
            logging.info(
                f"State restored: {len(state.participants)} entrants, phase {state.phase.value}, "
                f"treasury {state.treasury_balance}"
            )
        return state

    async def save(self, state: RoundState, saved_at: datetime | None = None) -> None:
        async with self.Session() as session:
            success = await UpdateData.upsert_snapshot(state, session, saved_at)
        if not success:
            raise PersistenceWarning("Failed to save round snapshot")
