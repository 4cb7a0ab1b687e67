from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import Column
from sqlalchemy.types import DateTime, Integer, String, TEXT


class Base(DeclarativeBase):
    pass


class RoundSnapshot(Base):
    """The persisted RoundState. A single row, replaced on every save."""

    __tablename__ = "round_snapshot"
    snapshot_id = Column(Integer, primary_key=True)
    phase = Column(String)
    round_number = Column(Integer)
    state_data = Column(TEXT)
    saved_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
