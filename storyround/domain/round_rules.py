"""Pool accounting and prize rules that are independent from HTTP and DB.

Rule of thumb:
- OK: math, splits, ranking, payout computation.
- Not OK: touching the snapshot store, redis, FastAPI, datetime.now(), random state.
"""

import math
from typing import List, Optional, Tuple

from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import (
    Participant,
    RoundResultModel,
    Voter,
    VoterRewardModel,
    WinnerPayoutModel,
)


# ==============================================================================
# ==== Payment splits ==========================================================
# ==============================================================================


def split_payment(amount: float, fee_rate: float) -> Tuple[float, float]:
    """Return (fee, purchase_amount) for a contribution."""
    fee = amount * fee_rate
    return fee, amount - fee


def split_tokens(received: int, retention: float) -> Tuple[int, int]:
    """Return (user_tokens, pool_tokens). The two always add up to ``received``."""
    user_tokens = math.floor(received * retention)
    return user_tokens, received - user_tokens


def split_pool(pool_tokens: int, round_pool_share: float) -> Tuple[int, int]:
    """Return (round_pool_part, treasury_part) of the competition tokens."""
    round_part = math.floor(pool_tokens * round_pool_share)
    return round_part, pool_tokens - round_part


# ==============================================================================
# ==== Voting window ===========================================================
# ==============================================================================


def voting_duration(entrants: List[Participant], config: RoundConfig) -> float:
    """Seconds the voting window stays open.

    When every entrant supplied a positive content duration the window is
    their sum plus a decision buffer; otherwise a fixed time per entrant.
    """
    durations = [p.content_duration for p in entrants]
    if entrants and all(d is not None and d > 0 for d in durations):
        return sum(durations) + config.voting_decision_buffer
    return config.voting_seconds_per_entrant * len(entrants)


# ==============================================================================
# ==== Winners =================================================================
# ==============================================================================


def rank_entrants(entrants: List[Participant]) -> List[Participant]:
    # sorted() is stable, so ties keep submission order
    return sorted(entrants, key=lambda p: p.votes, reverse=True)


def weighted_prizes(
    ranked: List[Participant], prize_pool: int, weights: List[float]
) -> List[int]:
    """Per-rank prize before any bonus.

    Each prize is ``floor(prize_pool * weight * multiplier)``. When the
    multipliers push the total above the prize pool, every prize is scaled
    down by the same factor so the round never pays out more than it holds.
    """
    count = min(len(weights), len(ranked))
    prizes = [
        math.floor(prize_pool * weights[i] * ranked[i].multiplier) for i in range(count)
    ]
    total = sum(prizes)
    if total > prize_pool:
        prizes = [math.floor(prize * prize_pool / total) for prize in prizes]
    return prizes


def voter_rewards(
    voters: List[Voter], winner_id: str, voter_pool: int
) -> List[VoterRewardModel]:
    """Split ``voter_pool`` pro-rata among voters who backed the winner."""
    backers = [v for v in voters if v.voted_for == winner_id]
    total_amount = sum(v.amount for v in backers)
    if not backers or voter_pool <= 0 or total_amount <= 0:
        return []

    rewards = []
    for voter in backers:
        share = math.floor(voter.amount / total_amount * voter_pool)
        if share > 0:
            rewards.append(VoterRewardModel(user_id=voter.user_id, wallet=voter.wallet, amount=share))
    return rewards


def compute_round_result(
    entrants: List[Participant],
    voters: List[Voter],
    round_pool: int,
    config: RoundConfig,
    bonus: Optional[int] = None,
) -> RoundResultModel:
    """Rank the entrants and work out every payout of the round.

    Args:
        entrants (List[Participant]): Paid story entrants in submission order
        voters (List[Voter]): Registered voters of the round
        round_pool (int): Tokens accumulated in the round pool
        config (RoundConfig): Prize weights and pool shares
        bonus (Optional[int]): Treasury bonus for first place, None when the lottery was lost

    Returns:
        RoundResultModel: Winner payouts, voter rewards and pool figures
    """
    prize_pool = math.floor(round_pool * config.prize_pool_share)
    voter_pool = round_pool - prize_pool
    ranked = rank_entrants(entrants)
    prizes = weighted_prizes(ranked, prize_pool, config.prize_weights)

    winners = []
    for i, amount in enumerate(prizes):
        entrant = ranked[i]
        extra = bonus if (i == 0 and bonus) else 0
        winners.append(
            WinnerPayoutModel(
                rank=i + 1,
                user_id=entrant.user_id,
                display_name=entrant.display_name,
                tier_badge=entrant.tier_badge,
                wallet=entrant.wallet,
                votes=entrant.votes,
                amount=amount + extra,
                bonus=extra,
            )
        )

    rewards = voter_rewards(voters, ranked[0].user_id, voter_pool) if ranked else []

    return RoundResultModel(
        round_pool=round_pool,
        prize_pool=prize_pool,
        voter_pool=voter_pool,
        bonus_won=bonus is not None,
        bonus_amount=bonus or 0,
        winners=winners,
        voter_rewards=rewards,
    )
