import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from storyround.models.dc_models import RoundState
from storyround.models.schemas import Base, RoundSnapshot

SNAPSHOT_ID = 1


class CreateData:
    @staticmethod
    async def create_table(engine: AsyncEngine) -> None:
        """Create the snapshot table if not exists"""
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except IntegrityError as e:
            logging.warning(f"Table already exists or other integrity error: {e}")


class ReadData:
    @staticmethod
    async def read_snapshot(session: AsyncSession) -> RoundState | None:
        """Read the persisted round state

        Args:
            session (AsyncSession): Open session

        Returns:
            RoundState | None: The last saved state, None if nothing was saved yet
        """
        async with session:
            stmt = select(RoundSnapshot).where(RoundSnapshot.snapshot_id == SNAPSHOT_ID)
            result = await session.execute(stmt)
            result = result.scalars().first()
            if result is None:
                return None
            return RoundState.model_validate_json(result.state_data)


class UpdateData:
    @staticmethod
    async def upsert_snapshot(
        state: RoundState, session: AsyncSession, saved_at: datetime | None = None
    ) -> bool:
        """Replace the persisted round state in one transaction

        Args:
            state (RoundState): State to persist
            session (AsyncSession): Open session
            saved_at (datetime | None): Save time, now in UTC when omitted

        Returns:
            bool: True when the row was committed
        """
        try:
            async with session.begin():
                stmt = select(RoundSnapshot).where(RoundSnapshot.snapshot_id == SNAPSHOT_ID)
                result = await session.execute(stmt)
                row = result.scalars().first()
                if row is None:
                    row = RoundSnapshot(snapshot_id=SNAPSHOT_ID)
                    session.add(row)
                row.phase = state.phase.value
                row.round_number = state.round_number
                row.state_data = state.model_dump_json()
                row.saved_at = saved_at or datetime.now(timezone.utc)
            return True
        except Exception as e:
            logging.error(f"Failed to save round snapshot: {e}")
            return False
