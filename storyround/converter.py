from typing import List

from storyround.domain.treasury_bonus import bonus_amount, bonus_percentage
from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import (
    Participant,
    RoundState,
    RoundStatusModel,
    TallyEntryModel,
)


class DataConverter:
    """This class is used to convert the round state into public views."""

    def convert_participants_to_tally(self, participants: List[Participant]) -> List[TallyEntryModel]:
        """Convert the entrants to the vote tally shown to observers

        Args:
            participants (List[Participant]): Entrants in submission order

        Returns:
            List[TallyEntryModel]: One entry per entrant, submission order kept
        """
        return [
            TallyEntryModel(
                user_id=p.user_id,
                display_name=p.display_name,
                tier_badge=p.tier_badge,
                story=p.story,
                votes=p.votes,
            )
            for p in participants
        ]

    def convert_state_to_status(
        self, state: RoundState, config: RoundConfig, uptime: float
    ) -> RoundStatusModel:
        """Convert the RoundState to the status model served to clients

        Args:
            state (RoundState): Current round state
            config (RoundConfig): Bonus table and odds
            uptime (float): Seconds since the process started

        Returns:
            RoundStatusModel: Phase, pools, potential bonus and live tally
        """
        return RoundStatusModel(
            phase=state.phase,
            round_number=state.round_number,
            entrants=len(state.participants),
            voters=len(state.voters),
            round_pool=state.round_pool,
            treasury_balance=state.treasury_balance,
            bonus_prize=bonus_amount(state.treasury_balance, config.bonus_bands),
            bonus_percentage=bonus_percentage(state.treasury_balance, config.bonus_bands),
            bonus_chance=f"1 in {config.bonus_odds}",
            fee_collected=round(state.fee_collected, 6),
            next_phase_time=state.next_phase_time,
            uptime=uptime,
            tally=self.convert_participants_to_tally(state.participants),
        )
