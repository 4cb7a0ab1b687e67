import pathlib

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from storyround import load_secrets


def snapshot_database_url() -> str:
    """Postgres when DB_HOST is configured, otherwise a local sqlite file."""
    if load_secrets.host:
        return (
            f"postgresql+asyncpg://{load_secrets.user}:{load_secrets.password}"
            f"@{load_secrets.host}:{load_secrets.port}/{load_secrets.db_name}"
        )
    if load_secrets.sqlite_path:
        file_path = pathlib.Path(load_secrets.sqlite_path)
    else:
        file_path = pathlib.Path(__file__).parents[1] / "storyround_snapshot.sqlite3"
    return f"sqlite+aiosqlite:///{file_path}"


def create_snapshot_engine(url: str) -> AsyncEngine:
    if url.startswith("postgresql"):
        # One writer; a small pool is enough.
        return create_async_engine(url, pool_size=5, max_overflow=5)
    return create_async_engine(url=url, echo=False)


engine = create_snapshot_engine(snapshot_database_url())

Session = async_sessionmaker(
    autocommit=False,
    class_=AsyncSession,
    autoflush=True,
    bind=engine,
)
