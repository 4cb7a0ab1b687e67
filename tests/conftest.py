"""
Shared fakes for the round engine tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import base58
import pytest

from storyround.errors import ExternalServiceError, PersistenceWarning
from storyround.models.config_models import RoundConfig
from storyround.models.dc_models import Participant, RoundState, Voter
from storyround.round_engine import RoundEngine
from storyround.round_sync_manager import RoundSyncManager
from storyround.services.expiry_sweeper import ExpirySweeper
from storyround.services.payment_pipeline import PaymentPipeline

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_wallet(seed: int) -> str:
    return base58.b58encode(bytes([seed]) * 32).decode()


def make_participant(user_id: str, votes: int = 0, multiplier: float = 1.0, **kwargs) -> Participant:
    fields = dict(
        user_id=user_id,
        wallet=make_wallet(len(user_id) + votes + 1),
        display_name=f"@{user_id}",
        amount=0.01,
        tier="Basic",
        tier_badge="[B]",
        multiplier=multiplier,
        tokens_received=100,
        story="I need help to fix the roof before winter comes.",
        votes=votes,
    )
    fields.update(kwargs)
    return Participant(**fields)


def make_voter(user_id: str, amount: float = 0.01, voted_for: str | None = None) -> Voter:
    return Voter(
        user_id=user_id,
        wallet=make_wallet(200),
        display_name=f"@{user_id}",
        amount=amount,
        tier="Basic",
        tier_badge="[B]",
        multiplier=1.0,
        tokens_received=100,
        voted_for=voted_for,
    )


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class MemoryStore:
    """Snapshot store keeping the last saved JSON in memory."""

    def __init__(self, state: RoundState | None = None):
        self.saved = state.model_dump_json() if state is not None else None
        self.saves = 0
        self.saved_at = None
        self.fail = False

    async def load(self) -> RoundState | None:
        if self.saved is None:
            return None
        return RoundState.model_validate_json(self.saved)

    async def save(self, state: RoundState, saved_at: datetime | None = None) -> None:
        if self.fail:
            raise PersistenceWarning("disk full")
        self.saves += 1
        self.saved_at = saved_at
        self.saved = state.model_dump_json()

    def last(self) -> RoundState:
        return RoundState.model_validate_json(self.saved)


class FakeMarket:
    def __init__(self, tokens: int = 1000, error: Exception | None = None):
        self.tokens = tokens
        self.error = error
        self.calls = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    def hold(self) -> None:
        """Make the next buys wait until release()."""
        self.gate = asyncio.Event()

    def release(self) -> None:
        self.gate.set()

    async def buy(self, amount_in: float) -> int:
        self.calls.append(amount_in)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.tokens


class FakeWallet:
    def __init__(self, balance: int = 0):
        self.transfers = []
        self.native = []
        self.fail_destinations = set()
        self.transfer_ok = True
        self.native_ok = True
        self.balance = balance
        self.balance_error = False

    async def transfer(self, destination: str, token_amount: int) -> bool:
        self.transfers.append((destination, token_amount))
        return self.transfer_ok and destination not in self.fail_destinations

    async def send_native(self, destination: str, amount: float) -> bool:
        self.native.append((destination, amount))
        return self.native_ok

    async def balance_of(self, account: str) -> int:
        if self.balance_error:
            raise ExternalServiceError("rpc down")
        return self.balance


class FakeNotifier:
    def __init__(self):
        self.user_messages = []
        self.announcements = []
        self.tallies = []

    async def notify_user(self, user_id: str, message: str) -> None:
        self.user_messages.append((user_id, message))

    async def announce(self, channel: str, message: str) -> None:
        self.announcements.append((channel, message))

    async def publish_tally(self, tally) -> None:
        self.tallies.append(tally)

    def messages_for(self, user_id: str):
        return [m for u, m in self.user_messages if u == user_id]


class FakeJob:
    def __init__(self, func, trigger, run_date, args):
        self.func = func
        self.trigger = trigger
        self.run_date = run_date
        self.args = args


class FakeScheduler:
    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger, run_date=None, args=None, id=None, **kwargs):
        self.jobs[id] = FakeJob(func, trigger, run_date, args or [])

    async def fire(self, job_id: str) -> None:
        job = self.jobs.pop(job_id)
        await job.func(*job.args)


class FixedRng:
    """Stands in for numpy's Generator with a fixed draw."""

    def __init__(self, value: int):
        self.value = value

    def integers(self, low, high):
        return self.value


@pytest.fixture
def config():
    return RoundConfig()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sync(store, clock):
    return RoundSyncManager(store, clock=clock)


@pytest.fixture
def market():
    return FakeMarket()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def pipeline(sync, market, wallet, notifier, config):
    return PaymentPipeline(
        sync,
        market,
        wallet,
        notifier,
        config,
        fee_wallet=make_wallet(99),
        main_channel="main",
        submissions_channel="submissions",
        treasury_account=make_wallet(98),
        payment_redirect_url="https://pay.example/pay",
    )


@pytest.fixture
def engine(sync, wallet, notifier, config, scheduler):
    return RoundEngine(
        sync,
        wallet,
        notifier,
        config,
        scheduler,
        main_channel="main",
        submissions_channel="submissions",
        treasury_account=make_wallet(98),
        rng=FixedRng(2),
    )


@pytest.fixture
def sweeper(sync, notifier, config):
    return ExpirySweeper(sync, notifier, config)
