from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storyround.models.dc_models import RoundPhase, RoundState
from storyround.models.schemas import RoundSnapshot
from storyround.round_sync_manager import RoundSyncManager
from storyround.services.snapshot_store import SnapshotStore

from .conftest import T0, MemoryStore, make_participant, make_voter


@pytest.fixture
async def sqlite_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'snap.sqlite3'}")
    Session = async_sessionmaker(autocommit=False, class_=AsyncSession, autoflush=True, bind=engine)
    store = SnapshotStore(engine, Session)
    await store.create_table()
    yield store
    await engine.dispose()


async def test_empty_store_loads_nothing(sqlite_store):
    assert await sqlite_store.load() is None


async def test_snapshot_round_trip(sqlite_store):
    state = RoundState(
        phase=RoundPhase.voting,
        round_number=4,
        cycle_start_time=T0,
        next_phase_time=T0,
        round_pool=1_234,
        treasury_balance=99_000,
        fee_collected=0.012,
        participants=[make_participant("a", votes=2, content_duration=30.5)],
        voters=[make_voter("v1", voted_for="a")],
    )
    await sqlite_store.save(state)

    restored = await sqlite_store.load()

    assert restored == state
    assert restored.next_phase_time == T0


async def test_save_replaces_the_single_row(sqlite_store):
    await sqlite_store.save(RoundState(round_number=1))
    await sqlite_store.save(RoundState(round_number=2, round_pool=10))

    restored = await sqlite_store.load()
    assert restored.round_number == 2
    assert restored.round_pool == 10


async def test_create_table_is_idempotent(sqlite_store):
    await sqlite_store.save(RoundState(round_number=5))
    await sqlite_store.create_table()
    assert (await sqlite_store.load()).round_number == 5


async def test_failed_save_keeps_memory_state(clock):
    store = MemoryStore()
    store.fail = True
    sync = RoundSyncManager(store, clock=clock)
    sync.state.round_pool = 50

    async with sync.lock:
        assert await sync.persist() is False
    assert sync.state.round_pool == 50

    store.fail = False
    async with sync.lock:
        assert await sync.persist() is True
    assert store.last().round_pool == 50
    assert store.saved_at == T0


async def test_restore_replaces_state(clock):
    sync = RoundSyncManager(MemoryStore(RoundState(round_number=9)), clock=clock)
    assert await sync.restore() is True
    assert sync.state.round_number == 9

    empty = RoundSyncManager(MemoryStore(), clock=clock)
    assert await empty.restore() is False
    assert empty.state.round_number == 0


async def read_row(store: SnapshotStore) -> RoundSnapshot:
    async with store.Session() as session:
        result = await session.execute(select(RoundSnapshot))
        return result.scalars().first()


async def test_save_records_given_time(sqlite_store):
    await sqlite_store.save(RoundState(), saved_at=T0)
    row = await read_row(sqlite_store)
    # sqlite keeps the wall time and drops the offset
    assert row.saved_at.replace(tzinfo=timezone.utc) == T0


async def test_save_defaults_to_utc_now(sqlite_store):
    await sqlite_store.save(RoundState())
    row = await read_row(sqlite_store)
    drift = datetime.now(timezone.utc) - row.saved_at.replace(tzinfo=timezone.utc)
    assert abs(drift.total_seconds()) < 60
