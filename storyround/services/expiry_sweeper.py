import logging
from typing import List

from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import PaymentIntent
from storyround.round_sync_manager import RoundSyncManager
from storyround.services.notifier import Notifier


class ExpirySweeper:
    """Evicts payment intents that were never confirmed within the timeout."""

    def __init__(self, sync: RoundSyncManager, notifier: Notifier, config: RoundConfig):
        self.sync = sync
        self.notifier = notifier
        self.config = config

    def _is_expired(self, intent: PaymentIntent, now) -> bool:
        # A confirmed intent is the dedup record of a claimed reference.
        if intent.paid or intent.confirmed:
            return False
        created = intent.created_at or self.sync.state.cycle_start_time or now
        return (now - created).total_seconds() > self.config.payment_timeout

    async def sweep(self) -> List[PaymentIntent]:
        """Remove expired unpaid intents and tell their owners

        Returns:
            List[PaymentIntent]: The intents that were removed
        """
        async with self.sync.lock:
            state = self.sync.state
            now = self.sync.clock()
            expired = [p for p in state.pending_payments if self._is_expired(p, now)]
            if not expired:
                return []
            state.pending_payments = [
                p for p in state.pending_payments if not self._is_expired(p, now)
            ]
            await self.sync.persist()

        logging.info(f"Cleaned up {len(expired)} expired pending payments")
        for intent in expired:
            await self.notifier.notify_user(
                intent.user_id,
                "Payment timeout\n\nYour payment session expired. "
                "You can start a new entry and try again!",
            )
        return expired
