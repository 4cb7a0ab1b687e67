"""Contribution tier classification.

The tier table is an ordered lookup of bands keyed by minimum amount.
The top band interpolates retention and multiplier linearly between its
floor and a saturation amount, so larger contributions are rewarded
smoothly instead of in a step.
"""

from typing import List

from pydantic import BaseModel

from storyround.models.config_models import TierBand


class TierResult(BaseModel):
    name: str
    badge: str
    retention: float
    multiplier: float


def find_band(amount: float, bands: List[TierBand]) -> TierBand:
    """Return the band whose range holds ``amount``. Bands must be sorted ascending."""
    selected = bands[0]
    for band in bands:
        if amount >= band.min_amount:
            selected = band
        else:
            break
    return selected


def interpolate(amount: float, floor: float, saturation: float, low: float, high: float) -> float:
    if amount < floor:
        return low
    if amount >= saturation:
        return high
    return low + (amount - floor) / (saturation - floor) * (high - low)


def get_tier(amount: float, bands: List[TierBand]) -> TierResult:
    """Classify a contribution amount.

    Args:
        amount (float): Contribution in native currency units
        bands (List[TierBand]): Tier table sorted by min_amount

    Returns:
        TierResult: Tier label, badge, effective retention and multiplier
    """
    band = find_band(amount, bands)
    retention = band.retention
    multiplier = band.multiplier
    if band.saturation_amount is not None:
        retention = interpolate(
            amount, band.min_amount, band.saturation_amount, band.retention, band.max_retention
        )
        multiplier = interpolate(
            amount, band.min_amount, band.saturation_amount, band.multiplier, band.max_multiplier
        )
    return TierResult(name=band.name, badge=band.badge, retention=retention, multiplier=multiplier)
