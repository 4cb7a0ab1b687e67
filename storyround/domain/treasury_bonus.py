"""Treasury bonus lottery.

A low-probability extra prize for the first-place entrant, paid out of the
permanent treasury. Bigger treasuries pay a smaller share so the payout
stays bounded.
"""

import math
from typing import List

import numpy as np

from storyround.models.config_models import BonusBand


def bonus_percentage(treasury_balance: int, bands: List[BonusBand]) -> float:
    for band in bands:
        if band.upper_bound is None or treasury_balance < band.upper_bound:
            return band.percentage
    return bands[-1].percentage


def bonus_amount(treasury_balance: int, bands: List[BonusBand]) -> int:
    """Bonus paid on a win. Never larger than the treasury itself."""
    if treasury_balance <= 0:
        return 0
    amount = math.floor(treasury_balance * bonus_percentage(treasury_balance, bands))
    return min(amount, treasury_balance)


def roll_bonus(rng: np.random.Generator, odds: int) -> bool:
    """Draw once; True with probability 1/odds."""
    return int(rng.integers(1, odds + 1)) == 1
