"""Payment-to-prize pipeline.

validate -> claim the reference under the lock -> fee, market buy and user
transfer outside the lock -> credit pools and register under the lock.
A reference is processed at most once; failures after the claim leave the
intent confirmed but unpaid, with no pool credit.
"""

import logging
import math
from typing import Optional
from urllib.parse import urlencode

import base58
from uuid6 import uuid7

from storyround.domain.round_rules import split_payment, split_pool, split_tokens
from storyround.domain.tiers import TierResult, get_tier
from storyround.errors import DuplicateError, ExternalServiceError, ValidationError
from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import (
    Participant,
    PaymentChoice,
    PaymentIntent,
    PaymentResultModel,
    RoundPhase,
    RoundState,
    SettledPayment,
    Voter,
)
from storyround.round_sync_manager import RoundSyncManager
from storyround.services.market import MarketBuyService
from storyround.services.notifier import Notifier
from storyround.services.wallet import WalletService


def is_valid_address(address: str) -> bool:
    """True for a base58 string that decodes to a 32-byte account key."""
    if not isinstance(address, str) or not address:
        return False
    try:
        raw = base58.b58decode(address)
    except ValueError:
        return False
    return len(raw) == 32


def parse_amount(amount, config: RoundConfig) -> float:
    try:
        amount_num = float(amount)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid amount (must be {config.min_amount}-{config.max_amount})"
        )
    if math.isnan(amount_num) or not config.min_amount <= amount_num <= config.max_amount:
        raise ValidationError(
            f"Invalid amount (must be {config.min_amount}-{config.max_amount})"
        )
    return amount_num


class PaymentPipeline:
    def __init__(
        self,
        sync: RoundSyncManager,
        market: MarketBuyService,
        wallet: WalletService,
        notifier: Notifier,
        config: RoundConfig,
        fee_wallet: str,
        main_channel: str,
        submissions_channel: str,
        treasury_account: Optional[str] = None,
        payment_redirect_url: Optional[str] = None,
    ):
        self.sync = sync
        self.market = market
        self.wallet = wallet
        self.notifier = notifier
        self.config = config
        self.fee_wallet = fee_wallet
        self.main_channel = main_channel
        self.submissions_channel = submissions_channel
        self.treasury_account = treasury_account
        self.payment_redirect_url = payment_redirect_url

    # ==========================================================================
    # ==== Before payment ======================================================
    # ==========================================================================

    def payment_link(self, intent: PaymentIntent) -> Optional[str]:
        if not self.payment_redirect_url:
            return None
        query = urlencode(
            {
                "recipient": self.treasury_account or "",
                "amount": self.config.entry_amount,
                "reference": intent.reference,
                "userId": intent.user_id,
            }
        )
        return f"{self.payment_redirect_url}?{query}"

    async def create_intent(self, user_id: str, choice: PaymentChoice) -> PaymentIntent:
        """Open a payment intent for a user who picked a path

        Args:
            user_id (str): Chat user id
            choice (PaymentChoice): story or vote

        Raises:
            ValidationError: Not in submission, or the user already entered this round

        Returns:
            PaymentIntent: The new unconfirmed intent with a fresh reference
        """
        if not user_id:
            raise ValidationError("Missing user id")
        async with self.sync.lock:
            state = self.sync.state
            if state.phase != RoundPhase.submission:
                raise ValidationError(f"{state.phase.value} phase active. Wait for next round!")
            if any(p.user_id == user_id and p.paid for p in state.pending_payments):
                raise ValidationError("You're already in this round! One entry per round.")
            if choice == PaymentChoice.story and state.find_participant(user_id):
                raise ValidationError("You're already in this round! One entry per round.")

            # An older intent that never saw a payment is replaced.
            state.pending_payments = [
                p for p in state.pending_payments if p.user_id != user_id or p.confirmed
            ]
            intent = PaymentIntent(
                user_id=user_id,
                choice=choice,
                reference=str(uuid7()),
                created_at=self.sync.clock(),
            )
            state.pending_payments.append(intent)
            await self.sync.persist()
        logging.info(f"Intent {intent.reference[:8]}... opened for {user_id} ({choice.value})")
        return intent

    async def submit_story(
        self,
        user_id: str,
        display_name: str,
        text: str,
        content_duration: Optional[float] = None,
    ) -> PaymentIntent:
        """Attach story text to the user's open story intent

        Args:
            user_id (str): Chat user id
            display_name (str): Name shown next to the story
            text (str): The story
            content_duration (Optional[float]): Seconds needed to review the story

        Raises:
            ValidationError: Wrong phase, no story intent, bad length, or already entered

        Returns:
            PaymentIntent: The intent holding the story
        """
        story = (text or "").strip()
        if len(story) > self.config.max_story_length:
            raise ValidationError(
                f"Story too long! {len(story)} characters, maximum {self.config.max_story_length}"
            )
        if len(story) < self.config.min_story_length:
            raise ValidationError(
                f"Story too short! {len(story)} characters, minimum {self.config.min_story_length}"
            )
        if content_duration is not None and content_duration <= 0:
            raise ValidationError("Content duration must be positive")

        async with self.sync.lock:
            state = self.sync.state
            if state.phase != RoundPhase.submission:
                raise ValidationError(f"{state.phase.value} phase active. Wait for next round!")
            intent = next(
                (
                    p
                    for p in reversed(state.pending_payments)
                    if p.user_id == user_id and p.choice == PaymentChoice.story and not p.paid
                ),
                None,
            )
            if intent is None:
                raise ValidationError("Choose the story path first with a new entry")
            if intent.story:
                return intent
            if state.find_participant(user_id):
                raise ValidationError("You're already in this round! One entry per round.")

            intent.story = story
            intent.user = display_name
            intent.content_duration = content_duration
            await self.sync.persist()
        return intent

    # ==========================================================================
    # ==== Confirmed payment ===================================================
    # ==========================================================================

    def validate_payment(self, reference, user_id, amount, sender_wallet) -> float:
        if not user_id or not reference or not sender_wallet:
            raise ValidationError("Missing required fields")
        amount_num = parse_amount(amount, self.config)
        if not is_valid_address(sender_wallet):
            raise ValidationError("Invalid wallet address")
        return amount_num

    async def _claim_reference(self, reference: str, user_id: str) -> PaymentIntent:
        """Mark the reference confirmed, or raise DuplicateError if it already was."""
        async with self.sync.lock:
            state = self.sync.state
            intent = state.find_intent(reference)
            if intent is not None and intent.confirmed:
                raise DuplicateError(reference)
            if intent is None:
                intent = PaymentIntent(
                    user_id=user_id,
                    choice=PaymentChoice.vote,
                    reference=reference,
                    created_at=self.sync.clock(),
                )
                state.pending_payments.append(intent)
            intent.confirmed = True
            await self.sync.persist()
            return intent.model_copy()

    async def process_confirmed_payment(
        self, reference: str, user_id: str, amount, sender_wallet: str
    ) -> PaymentResultModel:
        """Turn an externally confirmed payment into tokens, pool credit and a round entry

        Args:
            reference (str): Correlation id of the payment intent
            user_id (str): Chat user id of the contributor
            amount (str | float): Native amount paid
            sender_wallet (str): Account that paid, receives the user's tokens

        Raises:
            ValidationError: Malformed input. Nothing was mutated.

        Returns:
            PaymentResultModel: ok with the tokens sent, or the failure reason
        """
        amount_num = self.validate_payment(reference, user_id, amount, sender_wallet)
        user_id = str(user_id)
        logging.info(
            f"Payment received: {amount_num} from {user_id}, wallet {sender_wallet[:8]}..., "
            f"reference {reference[:8]}..."
        )

        try:
            intent = await self._claim_reference(reference, user_id)
        except DuplicateError:
            logging.info(f"Payment {reference[:8]}... already processed - returning success")
            return PaymentResultModel(ok=True, message="Already processed")

        tier = get_tier(amount_num, self.config.tiers)
        fee, purchase_amount = split_payment(amount_num, self.config.fee_rate)
        logging.info(
            f"Split: fee {fee:.4f}, buy with {purchase_amount:.4f}, {tier.name} tier, "
            f"retention {tier.retention:.2%}, multiplier {tier.multiplier:.3f}x"
        )

        await self._send_fee(fee)

        try:
            received = await self.market.buy(purchase_amount)
        except ExternalServiceError as e:
            logging.error(f"Token purchase failed: {e}")
            received = 0

        if received <= 0:
            await self.notifier.notify_user(
                user_id,
                f"Purchase failed! We received your {amount_num} payment, but the token "
                f"purchase failed. Please contact support or try again.",
            )
            return PaymentResultModel(ok=False, error="Token purchase failed")

        user_tokens, pool_tokens = split_tokens(received, tier.retention)
        logging.info(f"Bought {received} tokens: user {user_tokens}, competition {pool_tokens}")

        if not await self.wallet.transfer(sender_wallet, user_tokens):
            await self.notifier.notify_user(
                user_id,
                "Transfer failed! The token purchase succeeded but the transfer to your "
                "wallet failed. Please contact support.",
            )
            return PaymentResultModel(ok=False, error="Transfer failed")

        round_part, treasury_part = split_pool(pool_tokens, self.config.round_pool_share)
        settled = SettledPayment(
            user_id=user_id,
            wallet=sender_wallet,
            amount=amount_num,
            tokens_received=user_tokens,
            tier=tier.name,
            tier_badge=tier.badge,
            retention=tier.retention,
            multiplier=tier.multiplier,
            settled_at=self.sync.clock(),
        )

        async with self.sync.lock:
            state = self.sync.state
            state.round_pool += round_part
            state.treasury_balance += treasury_part
            # Story text may have been attached while the purchase was in flight.
            current = state.find_intent(reference)
            if current is None:
                # The round settled meanwhile; keep the reference so it stays deduplicated.
                current = intent
                state.pending_payments.append(current)
            kind = self._register(state, current, settled)
            current.paid = True
            current.user_data = settled
            await self.sync.persist()
            intent = current.model_copy()
            round_pool = state.round_pool
            time_note = self._time_until_voting(state)

        logging.info(
            f"Pools: round +{round_part} -> {round_pool}, treasury +{treasury_part} -> "
            f"{self.sync.state.treasury_balance}"
        )
        await self._announce_registration(intent, settled, tier, kind, round_part, round_pool, time_note)
        return PaymentResultModel(ok=True, message=kind, tokens_received=user_tokens)

    async def _send_fee(self, fee: float) -> None:
        try:
            sent = await self.wallet.send_native(self.fee_wallet, fee)
        except Exception as e:
            logging.error(f"Fee transfer failed: {e}")
            return
        if not sent:
            logging.error("Fee transfer failed")
            return
        async with self.sync.lock:
            self.sync.state.fee_collected += fee
            await self.sync.persist()

    def _register(self, state: RoundState, intent: PaymentIntent, settled: SettledPayment) -> str:
        """Add the contributor to the round. Returns story, story_fallback or vote."""
        display_name = intent.user or settled.user_id
        if intent.choice == PaymentChoice.story:
            if not intent.story:
                logging.warning(f"{settled.user_id} chose story but sent no text - registering as voter")
                self._register_voter(state, settled, display_name)
                return "story_fallback"
            if state.find_participant(settled.user_id):
                logging.warning(f"{settled.user_id} already has an entry - registering as voter")
                self._register_voter(state, settled, display_name)
                return "story_fallback"
            state.participants.append(
                Participant(
                    user_id=settled.user_id,
                    wallet=settled.wallet,
                    display_name=display_name,
                    amount=settled.amount,
                    tier=settled.tier,
                    tier_badge=settled.tier_badge,
                    multiplier=settled.multiplier,
                    tokens_received=settled.tokens_received,
                    story=intent.story,
                    content_duration=intent.content_duration,
                )
            )
            return "story"
        self._register_voter(state, settled, display_name)
        return "vote"

    def _register_voter(self, state: RoundState, settled: SettledPayment, display_name: str) -> None:
        existing = state.find_voter(settled.user_id)
        if existing is not None:
            existing.amount += settled.amount
            existing.tokens_received += settled.tokens_received
            return
        state.voters.append(
            Voter(
                user_id=settled.user_id,
                wallet=settled.wallet,
                display_name=display_name,
                amount=settled.amount,
                tier=settled.tier,
                tier_badge=settled.tier_badge,
                multiplier=settled.multiplier,
                tokens_received=settled.tokens_received,
            )
        )

    def _time_until_voting(self, state: RoundState) -> str:
        if state.phase != RoundPhase.submission or state.next_phase_time is None:
            return ""
        seconds_left = max(0.0, (state.next_phase_time - self.sync.clock()).total_seconds())
        minutes_left = math.ceil(seconds_left / 60)
        return f"\nVoting starts in {minutes_left} minute{'s' if minutes_left != 1 else ''}!"

    async def _announce_registration(
        self,
        intent: PaymentIntent,
        settled: SettledPayment,
        tier: TierResult,
        kind: str,
        round_part: int,
        round_pool: int,
        time_note: str,
    ) -> None:
        header = (
            f"{settled.tokens_received} tokens sent!\n{tier.badge} {tier.name} tier "
            f"({tier.retention:.0%} retention)\n{tier.multiplier:.2f}x prize multiplier"
        )
        if kind == "story":
            await self.notifier.notify_user(
                settled.user_id,
                f"Story entered!\n\n{header}\n\nYour story is in the competition!{time_note}",
            )
            joined = f"{intent.user} shared their story"
        elif kind == "story_fallback":
            await self.notifier.notify_user(
                settled.user_id,
                f"Payment complete!\n\n{header}\n\nNo new story found - registered as voter.",
            )
            joined = "New voter joined"
        else:
            await self.notifier.notify_user(
                settled.user_id,
                f"Registered as voter!\n\n{header}{time_note}\n\nVote during voting phase to earn rewards!",
            )
            joined = "New voter joined"

        await self.notifier.announce(
            self.main_channel,
            f"+{round_part} tokens added to prize pool!\n{joined}\n\nCurrent Pool: {round_pool} tokens",
        )
        await self.notifier.announce(
            self.submissions_channel,
            f"+{round_part} tokens added!\n{joined}\n\nPool: {round_pool} tokens",
        )
