"""Round lifecycle: submission -> voting -> cooldown -> submission.

Each phase is persisted as (phase, absolute deadline). The next transition is
a single APScheduler date job, so a restart recomputes the remaining delay
from the stored deadline instead of replaying full-length timers.
"""

import logging
import time
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

import numpy as np
from apscheduler.schedulers.base import BaseScheduler

from storyround.converter import DataConverter
from storyround.domain.round_rules import compute_round_result, voting_duration
from storyround.domain.treasury_bonus import bonus_amount, roll_bonus
from storyround.errors import ExternalServiceError
from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import (
    Participant,
    RoundPhase,
    RoundResultModel,
    RoundState,
    RoundStatusModel,
    TallyEntryModel,
    VoteResultModel,
)
from storyround.round_sync_manager import RoundSyncManager
from storyround.services.notifier import Notifier
from storyround.services.wallet import WalletService

PHASE_JOB_ID = "round_phase_transition"


class RoundEngine:
    def __init__(
        self,
        sync: RoundSyncManager,
        wallet: WalletService,
        notifier: Notifier,
        config: RoundConfig,
        scheduler: BaseScheduler,
        main_channel: str,
        submissions_channel: str,
        treasury_account: Optional[str] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.sync = sync
        self.wallet = wallet
        self.notifier = notifier
        self.config = config
        self.scheduler = scheduler
        self.main_channel = main_channel
        self.submissions_channel = submissions_channel
        self.treasury_account = treasury_account
        self.rng = rng if rng is not None else np.random.default_rng()
        self.converter = DataConverter()
        self.started_at = time.monotonic()

    # ==========================================================================
    # ==== Timers ==============================================================
    # ==========================================================================

    def _schedule(self, transition: Callable[[], Awaitable[None]], run_at) -> None:
        """Replace the pending phase timer with a one-shot job at ``run_at``."""
        self.scheduler.add_job(
            self._supervised,
            "date",
            run_date=run_at,
            args=[transition],
            id=PHASE_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _supervised(self, transition: Callable[[], Awaitable[None]]) -> None:
        try:
            await transition()
        except Exception as e:
            logging.error(f"Phase transition {transition.__name__} failed: {e}", exc_info=True)

    async def start(self) -> None:
        """Restore the persisted round and resume its timer."""
        restored = await self.sync.restore()
        await self.seed_treasury()

        state = self.sync.state
        now = self.sync.clock()
        if not restored or state.cycle_start_time is None or state.next_phase_time is None:
            logging.info(f"Starting new cycle in {self.config.startup_grace} seconds...")
            self._schedule(
                self.start_new_cycle, now + timedelta(seconds=self.config.startup_grace)
            )
            return

        transition = {
            RoundPhase.submission: self.start_voting,
            RoundPhase.voting: self.announce_winners,
            RoundPhase.cooldown: self.start_new_cycle,
        }[state.phase]
        remaining = (state.next_phase_time - now).total_seconds()
        if remaining <= 0:
            logging.info(f"{state.phase.value} deadline already passed, running {transition.__name__}")
            await self._supervised(transition)
        else:
            logging.info(f"Resuming {state.phase.value} ({remaining:.0f}s left)")
            self._schedule(transition, state.next_phase_time)

    async def seed_treasury(self) -> None:
        """Read the treasury balance from chain when nothing is tracked yet."""
        if self.sync.state.treasury_balance != 0 or not self.treasury_account:
            return
        logging.info("Fetching treasury balance...")
        try:
            balance = await self.wallet.balance_of(self.treasury_account)
        except ExternalServiceError as e:
            logging.warning(f"Could not fetch treasury balance: {e}")
            return
        async with self.sync.lock:
            if self.sync.state.treasury_balance == 0:
                self.sync.state.treasury_balance = balance
                await self.sync.persist()
        logging.info(f"Treasury balance: {balance} tokens")

    # ==========================================================================
    # ==== Transitions =========================================================
    # ==========================================================================

    async def start_new_cycle(self) -> None:
        async with self.sync.lock:
            state = self.sync.state
            now = self.sync.clock()
            deadline = now + timedelta(seconds=self.config.submission_duration)
            state.phase = RoundPhase.submission
            state.round_number += 1
            state.cycle_start_time = now
            state.next_phase_time = deadline
            await self.sync.persist()
            self._schedule(self.start_voting, deadline)
            round_pool = state.round_pool
            bonus = bonus_amount(state.treasury_balance, self.config.bonus_bands)
            round_number = state.round_number

        minutes = round(self.config.submission_duration / 60)
        logging.info(f"New cycle {round_number}: round pool {round_pool}, bonus {bonus}")
        await self.notifier.announce(
            self.main_channel,
            f"NEW ROUND STARTED!\n\nPrize Pool: {round_pool} tokens\n"
            f"Bonus Prize: +{bonus} tokens (1/{self.config.bonus_odds})\n"
            f"{minutes} minutes to join!",
        )

    async def start_voting(self) -> None:
        async with self.sync.lock:
            state = self.sync.state
            if state.phase != RoundPhase.submission:
                logging.warning(f"start_voting fired during {state.phase.value}, ignoring")
                return
            now = self.sync.clock()
            entrants = list(state.participants)

            if not entrants:
                deadline = now + timedelta(seconds=self.config.cooldown_duration)
                state.phase = RoundPhase.cooldown
                state.next_phase_time = deadline
                # Paid voters and the pool carry over; settled intents do not.
                state.pending_payments = [p for p in state.pending_payments if not p.paid]
                await self.sync.persist()
                self._schedule(self.start_new_cycle, deadline)
                round_pool = state.round_pool
            else:
                duration = voting_duration(entrants, self.config)
                deadline = now + timedelta(seconds=duration)
                state.phase = RoundPhase.voting
                state.next_phase_time = deadline
                await self.sync.persist()
                self._schedule(self.announce_winners, deadline)
                round_pool = state.round_pool
                bonus = bonus_amount(state.treasury_balance, self.config.bonus_bands)

        if not entrants:
            logging.info("No stories this round")
            await self.notifier.announce(
                self.main_channel,
                f"No stories submitted this round.\n\n{round_pool} tokens carry over!\n\n"
                f"New round starting soon...",
            )
            return

        logging.info(f"Voting started: {len(entrants)} entrants, {duration:.0f}s")
        await self._announce_voting(entrants, duration, round_pool, bonus)

    async def announce_winners(self) -> None:
        result = None
        async with self.sync.lock:
            state = self.sync.state
            if state.phase != RoundPhase.voting:
                logging.warning(f"announce_winners fired during {state.phase.value}, ignoring")
                return
            deadline = self.sync.clock() + timedelta(seconds=self.config.cooldown_duration)
            state.phase = RoundPhase.cooldown
            state.next_phase_time = deadline
            # The next cycle is booked before any payout can fail.
            self._schedule(self.start_new_cycle, deadline)
            try:
                result = self._settle_round(state)
            finally:
                await self.sync.persist()

        if result is None:
            return
        await self._pay_out(result)

    def _settle_round(self, state: RoundState) -> Optional[RoundResultModel]:
        """Compute payouts and reset the round. Call under the lock."""
        entrants = list(state.participants)
        if not entrants:
            logging.info(f"No entrants at voting end, {state.round_pool} tokens leave the round pool")
            state.round_pool = 0
            state.voters = []
            state.pending_payments = []
            return None

        won = roll_bonus(self.rng, self.config.bonus_odds)
        bonus = bonus_amount(state.treasury_balance, self.config.bonus_bands) if won else None
        if won:
            logging.info(f"BONUS PRIZE HIT! Winner gets +{bonus} tokens")
        result = compute_round_result(entrants, state.voters, state.round_pool, self.config, bonus)
        state.treasury_balance -= result.bonus_amount

        logging.info(f"Distributing {state.round_pool} tokens from round pool")
        state.round_pool = 0
        state.participants = []
        state.voters = []
        state.pending_payments = []
        return result

    # ==========================================================================
    # ==== Votes and views =====================================================
    # ==========================================================================

    async def cast_vote(self, voter_id: str, target_id: str) -> VoteResultModel:
        """Record one vote of ``voter_id`` for the entrant ``target_id``

        Args:
            voter_id (str): Chat user id of the caster
            target_id (str): User id of the entrant voted for

        Returns:
            VoteResultModel: ok with the new vote count, or why the vote was rejected
        """
        voter_id = str(voter_id)
        target_id = str(target_id)
        async with self.sync.lock:
            state = self.sync.state
            if state.phase != RoundPhase.voting:
                return VoteResultModel(ok=False, message="Voting is not open")
            entry = state.find_participant(target_id)
            if entry is None:
                return VoteResultModel(ok=False, message="Not found")
            if voter_id in entry.voter_ids:
                return VoteResultModel(ok=False, message="Already voted", votes=entry.votes)

            entry.votes += 1
            entry.voter_ids.append(voter_id)
            voter = state.find_voter(voter_id)
            if voter is not None:
                voter.voted_for = target_id
            await self.sync.persist()
            votes = entry.votes
            tally = self.converter.convert_participants_to_tally(state.participants)

        await self.notifier.publish_tally(tally)
        return VoteResultModel(ok=True, message="Voted!", votes=votes)

    def tally(self) -> List[TallyEntryModel]:
        return self.converter.convert_participants_to_tally(self.sync.state.participants)

    def status(self) -> RoundStatusModel:
        return self.converter.convert_state_to_status(
            self.sync.state, self.config, time.monotonic() - self.started_at
        )

    def log_status(self) -> None:
        state = self.sync.state
        logging.info(
            f"Phase: {state.phase.value} | Entrants: {len(state.participants)} | "
            f"Voters: {len(state.voters)} | Pool: {state.round_pool} | Treasury: {state.treasury_balance}"
        )

    # ==========================================================================
    # ==== Outbound ============================================================
    # ==========================================================================

    async def _announce_voting(
        self, entrants: List[Participant], duration: float, round_pool: int, bonus: int
    ) -> None:
        minutes = max(1, round(duration / 60))
        await self.notifier.announce(
            self.main_channel,
            f"VOTING STARTED!\n\n{len(entrants)} stor{'ies' if len(entrants) != 1 else 'y'} competing\n"
            f"{minutes} minutes to vote!\n\nPrize Pool: {round_pool} tokens\n"
            f"Bonus Prize: +{bonus} tokens (1/{self.config.bonus_odds})\n\n"
            f"Winners get {self.config.prize_pool_share:.0%} of the prize pool, "
            f"voters who pick the winner share the rest!",
        )
        await self.notifier.announce(
            self.submissions_channel,
            f"VOTING STARTED!\n\nPrize Pool: {round_pool} tokens\n{minutes} minutes to vote!\n\n"
            f"Top {len(self.config.prize_weights)} stories win prizes",
        )
        for entry in entrants:
            await self.notifier.announce(
                self.submissions_channel,
                f"{entry.tier_badge} {entry.display_name}\n\n\"{entry.story}\"\n\nVotes: {entry.votes}",
            )
        await self.notifier.publish_tally(self.converter.convert_participants_to_tally(entrants))

    async def _send_payout(self, wallet: str, amount: int, reason: str) -> bool:
        try:
            success = await self.wallet.transfer(wallet, amount)
        except Exception as e:
            logging.error(f"{reason} failed: {e}")
            return False
        if not success:
            logging.error(f"{reason} failed!")
        return success

    async def _pay_out(self, result: RoundResultModel) -> None:
        """Pay winners and voter rewards. One failed payout never stops the others."""
        lines = [f"Competition Results\nPrize Pool: {result.prize_pool} tokens"]
        if result.bonus_won:
            lines.append(f"BONUS PRIZE HIT! Winner gets +{result.bonus_amount} tokens bonus!")

        for winner in result.winners:
            bonus_tag = f" (+ {winner.bonus} bonus!)" if winner.bonus else ""
            lines.append(
                f"#{winner.rank} {winner.tier_badge} {winner.display_name} - {winner.votes} votes - "
                f"{winner.amount} tokens{bonus_tag}"
            )
            if not winner.wallet or winner.amount <= 0:
                continue
            paid = await self._send_payout(winner.wallet, winner.amount, f"Prize #{winner.rank}")
            if paid:
                await self.notifier.notify_user(
                    winner.user_id, f"You won {winner.amount} tokens!{bonus_tag} Check your wallet!"
                )

        if result.voter_rewards:
            lines.append(f"\nVoter Rewards: {result.voter_pool} tokens")
            for reward in result.voter_rewards:
                paid = await self._send_payout(reward.wallet, reward.amount, "Voter reward")
                if paid:
                    await self.notifier.notify_user(
                        reward.user_id, f"You voted for the winner!\nReward: {reward.amount} tokens"
                    )
            lines.append(f"{len(result.voter_rewards)} voter(s) rewarded!")

        await self.notifier.announce(self.submissions_channel, "\n".join(lines))
        if result.winners:
            top = result.winners[0]
            await self.notifier.announce(
                self.main_channel,
                f"WINNER: {top.tier_badge} {top.display_name}\nWon {top.amount} tokens!\n\n"
                f"Next round starts soon!",
            )
