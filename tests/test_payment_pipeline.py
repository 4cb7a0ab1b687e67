from datetime import timedelta

import pytest

from storyround.errors import ExternalServiceError, ValidationError
from storyround.models.dc_models import PaymentChoice, RoundPhase
from storyround.services.payment_pipeline import is_valid_address, parse_amount

from .conftest import T0, make_participant, make_wallet

STORY = "My grandmother needs a new wheelchair before spring."
SENDER = make_wallet(7)


async def open_story_entry(pipeline, user_id="u1", name="@alice", content_duration=None):
    intent = await pipeline.create_intent(user_id, PaymentChoice.story)
    await pipeline.submit_story(user_id, name, STORY, content_duration)
    return intent


# ==============================================================================
# ==== Input checks ============================================================
# ==============================================================================


def test_address_validation():
    assert is_valid_address(make_wallet(1))
    assert is_valid_address("11111111111111111111111111111111")
    assert not is_valid_address("not-a-wallet")
    assert not is_valid_address("abc")
    assert not is_valid_address("")
    assert not is_valid_address(None)


@pytest.mark.parametrize("amount", ["abc", None, "0", "0.0009", "100.5", float("nan")])
def test_parse_amount_rejects(config, amount):
    with pytest.raises(ValidationError) as exc:
        parse_amount(amount, config)
    assert "Invalid amount" in exc.value.detail


def test_parse_amount_accepts_strings(config):
    assert parse_amount("0.02", config) == pytest.approx(0.02)
    assert parse_amount(100, config) == 100


@pytest.mark.parametrize(
    "reference, user_id, amount, sender, detail",
    [
        (None, "u1", "0.02", SENDER, "Missing required fields"),
        ("r1", "", "0.02", SENDER, "Missing required fields"),
        ("r1", "u1", "abc", None, "Missing required fields"),
        ("r1", "u1", "abc", "bad-wallet", "Invalid amount"),
        ("r1", "u1", "0.02", "bad-wallet", "Invalid wallet address"),
    ],
)
async def test_invalid_confirmation_is_rejected_before_any_mutation(
    pipeline, sync, store, market, wallet, reference, user_id, amount, sender, detail
):
    with pytest.raises(ValidationError) as exc:
        await pipeline.process_confirmed_payment(reference, user_id, amount, sender)

    assert exc.value.detail == detail
    assert store.saves == 0
    assert sync.state.pending_payments == []
    assert market.calls == []
    assert wallet.transfers == []


# ==============================================================================
# ==== Intents =================================================================
# ==============================================================================


async def test_create_intent(pipeline, sync, store):
    intent = await pipeline.create_intent("u1", PaymentChoice.vote)

    assert intent.choice == PaymentChoice.vote
    assert intent.created_at == T0
    assert not intent.confirmed
    assert sync.state.find_intent(intent.reference) is not None
    assert store.last().pending_payments[0].reference == intent.reference
    link = pipeline.payment_link(intent)
    assert link.startswith("https://pay.example/pay?")
    assert f"reference={intent.reference}" in link


async def test_new_intent_replaces_unconfirmed_one(pipeline, sync):
    first = await pipeline.create_intent("u1", PaymentChoice.vote)
    second = await pipeline.create_intent("u1", PaymentChoice.story)

    references = [p.reference for p in sync.state.pending_payments]
    assert references == [second.reference]
    assert first.reference != second.reference


async def test_create_intent_outside_submission(pipeline, sync):
    sync.state.phase = RoundPhase.voting
    with pytest.raises(ValidationError) as exc:
        await pipeline.create_intent("u1", PaymentChoice.story)
    assert "voting phase active" in exc.value.detail


async def test_create_story_intent_for_existing_entrant(pipeline, sync):
    sync.state.participants.append(make_participant("u1"))
    with pytest.raises(ValidationError):
        await pipeline.create_intent("u1", PaymentChoice.story)


async def test_submit_story_attaches_text(pipeline, sync):
    intent = await open_story_entry(pipeline, content_duration=30)

    stored = sync.state.find_intent(intent.reference)
    assert stored.story == STORY
    assert stored.user == "@alice"
    assert stored.content_duration == 30


async def test_submit_story_checks_length(pipeline):
    await pipeline.create_intent("u1", PaymentChoice.story)
    with pytest.raises(ValidationError) as exc:
        await pipeline.submit_story("u1", "@alice", "too short")
    assert "too short" in exc.value.detail
    with pytest.raises(ValidationError) as exc:
        await pipeline.submit_story("u1", "@alice", "x" * 401)
    assert "too long" in exc.value.detail


async def test_submit_story_without_intent(pipeline):
    with pytest.raises(ValidationError):
        await pipeline.submit_story("u1", "@alice", STORY)


async def test_submit_story_twice_keeps_first_text(pipeline, sync):
    intent = await open_story_entry(pipeline)
    await pipeline.submit_story("u1", "@alice", "A completely different story text here.")
    assert sync.state.find_intent(intent.reference).story == STORY


# ==============================================================================
# ==== Confirmed payments ======================================================
# ==============================================================================


async def test_basic_story_payment(pipeline, sync, wallet, notifier):
    intent = await open_story_entry(pipeline)
    sync.state.next_phase_time = T0 + timedelta(minutes=4)

    result = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)

    assert result.ok
    assert result.message == "story"
    assert result.tokens_received == 500
    state = sync.state
    assert state.round_pool == 325
    assert state.treasury_balance == 175
    assert wallet.transfers == [(SENDER, 500)]
    assert wallet.native[0][0] == pipeline.fee_wallet
    assert wallet.native[0][1] == pytest.approx(0.002)
    assert state.fee_collected == pytest.approx(0.002)

    entry = state.find_participant("u1")
    assert entry.tier == "Basic"
    assert entry.tier_badge == "[B]"
    assert entry.story == STORY
    assert entry.display_name == "@alice"
    assert entry.wallet == SENDER

    stored = state.find_intent(intent.reference)
    assert stored.confirmed and stored.paid
    assert stored.user_data.tokens_received == 500

    assert any("Story entered!" in m for m in notifier.messages_for("u1"))
    assert any("Voting starts in 4 minutes" in m for m in notifier.messages_for("u1"))
    channels = [channel for channel, _ in notifier.announcements]
    assert channels == ["main", "submissions"]


async def test_duplicate_confirmation_is_a_noop(pipeline, sync, market, wallet):
    intent = await open_story_entry(pipeline)
    await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)
    snapshot = sync.state.model_dump()

    result = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)

    assert result.ok
    assert result.message == "Already processed"
    assert len(market.calls) == 1
    assert len(wallet.transfers) == 1
    assert sync.state.model_dump() == snapshot


async def test_unknown_reference_registers_voter(pipeline, sync):
    result = await pipeline.process_confirmed_payment("ext-ref", 42, 0.2, SENDER)

    assert result.ok
    assert result.message == "vote"
    voter = sync.state.find_voter("42")
    assert voter.tier == "High Tier"
    assert sync.state.find_intent("ext-ref").choice == PaymentChoice.vote
    assert sync.state.participants == []


async def test_story_without_text_falls_back_to_voter(pipeline, sync, notifier):
    intent = await pipeline.create_intent("u1", PaymentChoice.story)

    result = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)

    assert result.message == "story_fallback"
    assert sync.state.participants == []
    assert sync.state.find_voter("u1") is not None
    assert any("registered as voter" in m for m in notifier.messages_for("u1"))


async def test_second_payment_merges_into_voter(pipeline, sync):
    await pipeline.process_confirmed_payment("r1", "u1", "0.02", SENDER)
    await pipeline.process_confirmed_payment("r2", "u1", "0.03", SENDER)

    assert len(sync.state.voters) == 1
    voter = sync.state.voters[0]
    assert voter.amount == pytest.approx(0.05)
    assert voter.tokens_received == 1000
    assert sync.state.round_pool == 650


async def test_purchase_failure_leaves_pools_alone(pipeline, sync, market, wallet, notifier):
    market.error = ExternalServiceError("all providers down")
    intent = await open_story_entry(pipeline)

    result = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)

    assert not result.ok
    assert result.error == "Token purchase failed"
    assert sync.state.round_pool == 0
    assert sync.state.treasury_balance == 0
    assert sync.state.participants == []
    assert wallet.transfers == []
    stored = sync.state.find_intent(intent.reference)
    assert stored.confirmed and not stored.paid
    assert any("Purchase failed!" in m for m in notifier.messages_for("u1"))

    again = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)
    assert again.message == "Already processed"
    assert len(market.calls) == 1


async def test_zero_tokens_counts_as_purchase_failure(pipeline, sync, market):
    market.tokens = 0
    result = await pipeline.process_confirmed_payment("r1", "u1", "0.02", SENDER)
    assert result.error == "Token purchase failed"
    assert sync.state.voters == []


async def test_transfer_failure_credits_no_pool(pipeline, sync, wallet, notifier):
    wallet.transfer_ok = False
    intent = await open_story_entry(pipeline)

    result = await pipeline.process_confirmed_payment(intent.reference, "u1", "0.02", SENDER)

    assert not result.ok
    assert result.error == "Transfer failed"
    assert sync.state.round_pool == 0
    assert sync.state.treasury_balance == 0
    assert sync.state.participants == []
    assert any("Transfer failed!" in m for m in notifier.messages_for("u1"))


async def test_fee_failure_does_not_block_payment(pipeline, sync, wallet):
    wallet.native_ok = False
    result = await pipeline.process_confirmed_payment("r1", "u1", "0.02", SENDER)
    assert result.ok
    assert sync.state.fee_collected == 0
    assert sync.state.round_pool == 325


async def test_whale_payment_keeps_more_tokens(pipeline, sync):
    result = await pipeline.process_confirmed_payment("r1", "u1", "5", SENDER)
    assert result.tokens_received == 750
    voter = sync.state.find_voter("u1")
    assert voter.tier == "Whale"
    assert voter.multiplier == pytest.approx(1.5)
