from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RoundPhase(str, Enum):
    submission = "submission"
    voting = "voting"
    cooldown = "cooldown"


class PaymentChoice(str, Enum):
    story = "story"
    vote = "vote"


class SettledPayment(BaseModel):
    """What a contributor ended up with once the pipeline completed."""

    user_id: str
    wallet: str
    amount: float
    tokens_received: int
    tier: str
    tier_badge: str
    retention: float
    multiplier: float
    settled_at: datetime


class PaymentIntent(BaseModel):
    user_id: str
    choice: PaymentChoice
    reference: str
    created_at: Optional[datetime] = None
    confirmed: bool = False
    paid: bool = False
    story: Optional[str] = None
    user: Optional[str] = None
    content_duration: Optional[float] = None
    user_data: Optional[SettledPayment] = None


class Participant(BaseModel):
    user_id: str
    wallet: str
    display_name: str
    amount: float
    tier: str
    tier_badge: str
    multiplier: float
    tokens_received: int
    story: str
    content_duration: Optional[float] = None
    votes: int = 0
    voter_ids: List[str] = Field(default_factory=list)


class Voter(BaseModel):
    user_id: str
    wallet: str
    display_name: str
    amount: float
    tier: str
    tier_badge: str
    multiplier: float
    tokens_received: int
    voted_for: Optional[str] = None


class RoundState(BaseModel):
    """The single owned aggregate of all mutable round state."""

    phase: RoundPhase = RoundPhase.submission
    round_number: int = 0
    cycle_start_time: Optional[datetime] = None
    next_phase_time: Optional[datetime] = None
    round_pool: int = 0
    treasury_balance: int = 0
    fee_collected: float = 0.0
    pending_payments: List[PaymentIntent] = Field(default_factory=list)
    participants: List[Participant] = Field(default_factory=list)
    voters: List[Voter] = Field(default_factory=list)

    def find_intent(self, reference: str) -> Optional[PaymentIntent]:
        for intent in self.pending_payments:
            if intent.reference == reference:
                return intent
        return None

    def find_participant(self, user_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def find_voter(self, user_id: str) -> Optional[Voter]:
        for voter in self.voters:
            if voter.user_id == user_id:
                return voter
        return None


class IntentRequestModel(BaseModel):
    user_id: str
    choice: PaymentChoice


class StoryRequestModel(BaseModel):
    user_id: str
    display_name: str
    story: str
    content_duration: Optional[float] = None


class ConfirmPaymentModel(BaseModel):
    """Inbound, externally confirmed payment signal."""

    reference: Optional[str] = None
    user_id: Optional[str | int] = None
    amount: Optional[str | float] = None
    sender_wallet: Optional[str] = None
    signature: Optional[str] = None


class VoteRequestModel(BaseModel):
    voter_id: str
    target_id: str


class IntentResponseModel(BaseModel):
    reference: str
    choice: PaymentChoice
    payment_link: Optional[str] = None
    expires_in: float


class PaymentResultModel(BaseModel):
    ok: bool
    message: str = ""
    tokens_received: int = 0
    error: Optional[str] = None


class VoteResultModel(BaseModel):
    ok: bool
    message: str
    votes: int = 0


class TallyEntryModel(BaseModel):
    user_id: str
    display_name: str
    tier_badge: str
    story: str
    votes: int


class WinnerPayoutModel(BaseModel):
    rank: int
    user_id: str
    display_name: str
    tier_badge: str
    wallet: str
    votes: int
    amount: int
    bonus: int = 0


class VoterRewardModel(BaseModel):
    user_id: str
    wallet: str
    amount: int


class RoundResultModel(BaseModel):
    round_pool: int
    prize_pool: int
    voter_pool: int
    bonus_won: bool
    bonus_amount: int
    winners: List[WinnerPayoutModel]
    voter_rewards: List[VoterRewardModel]


class RoundStatusModel(BaseModel):
    phase: RoundPhase
    round_number: int
    entrants: int
    voters: int
    round_pool: int
    treasury_balance: int
    bonus_prize: int
    bonus_percentage: float
    bonus_chance: str
    fee_collected: float
    next_phase_time: Optional[datetime]
    uptime: float
    tally: List[TallyEntryModel]
