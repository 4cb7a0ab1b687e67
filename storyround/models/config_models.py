from pydantic import BaseModel, Field, field_validator
from typing import List, Optional


class TierBand(BaseModel):
    """One row of the contribution tier table.

    A band covers amounts from ``min_amount`` up to the next band's
    ``min_amount``. When ``saturation_amount`` is set, retention and
    multiplier grow linearly from the base values at ``min_amount`` to the
    max values at ``saturation_amount``.
    """

    name: str
    badge: str
    min_amount: float
    retention: float
    multiplier: float
    saturation_amount: Optional[float] = None
    max_retention: Optional[float] = None
    max_multiplier: Optional[float] = None


class BonusBand(BaseModel):
    # upper_bound None marks the last, open-ended band
    upper_bound: Optional[int]
    percentage: float


def default_tiers() -> List[TierBand]:
    return [
        TierBand(name="Basic", badge="[B]", min_amount=0.0, retention=0.50, multiplier=1.0),
        TierBand(name="Mid Tier", badge="[M]", min_amount=0.05, retention=0.55, multiplier=1.05),
        TierBand(name="High Tier", badge="[H]", min_amount=0.10, retention=0.60, multiplier=1.10),
        TierBand(
            name="Whale",
            badge="[W]",
            min_amount=0.50,
            retention=0.65,
            multiplier=1.15,
            saturation_amount=5.00,
            max_retention=0.75,
            max_multiplier=1.50,
        ),
    ]


def default_bonus_bands() -> List[BonusBand]:
    return [
        BonusBand(upper_bound=100_000, percentage=0.20),
        BonusBand(upper_bound=500_000, percentage=0.15),
        BonusBand(upper_bound=1_000_000, percentage=0.10),
        BonusBand(upper_bound=5_000_000, percentage=0.05),
        BonusBand(upper_bound=None, percentage=0.02),
    ]


class RoundConfig(BaseModel):
    """Tunable parameters of the round lifecycle. Durations are in seconds."""

    submission_duration: float = 300
    voting_seconds_per_entrant: float = 120
    voting_decision_buffer: float = 60
    cooldown_duration: float = 60
    startup_grace: float = 3

    fee_rate: float = 0.10
    round_pool_share: float = 0.65
    prize_pool_share: float = 0.80
    prize_weights: List[float] = Field(default_factory=lambda: [0.40, 0.25, 0.20, 0.10, 0.05])

    bonus_odds: int = 500
    bonus_bands: List[BonusBand] = Field(default_factory=default_bonus_bands)
    tiers: List[TierBand] = Field(default_factory=default_tiers)

    min_amount: float = 0.001
    max_amount: float = 100
    entry_amount: float = 0.01

    payment_timeout: float = 600
    sweep_interval: float = 120
    status_log_interval: float = 30

    min_story_length: int = 20
    max_story_length: int = 400

    market_max_retries: int = 3
    market_backoff_base: float = 2
    external_timeout: float = 30

    @field_validator("tiers")
    @classmethod
    def sort_tiers(cls, v: List[TierBand]) -> List[TierBand]:
        return sorted(v, key=lambda band: band.min_amount)

    @field_validator("bonus_bands")
    @classmethod
    def sort_bonus_bands(cls, v: List[BonusBand]) -> List[BonusBand]:
        bounded = sorted((b for b in v if b.upper_bound is not None), key=lambda b: b.upper_bound)
        return bounded + [b for b in v if b.upper_bound is None]
