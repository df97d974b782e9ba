"""
Tests for the transfer readiness evaluator.
"""

from dataclasses import replace

import pytest

from src.leadbridge.intents import IntentPolicy
from src.leadbridge.readiness import ReadinessReason, evaluate_readiness
from src.leadbridge.records import (
    CallRecord,
    DerivedIntent,
    LegRole,
    LegStatus,
    Speaker,
    TranscriptTurn,
)


def _turns(n):
    return tuple(TranscriptTurn(Speaker.CONTACT, f"turn {i}", float(i)) for i in range(n))


@pytest.fixture
def contact():
    return CallRecord(call_id="CAc", role=LegRole.CONTACT, status=LegStatus.IN_PROGRESS, linked_call_id="CAa")


@pytest.fixture
def agent():
    return CallRecord(call_id="CAa", role=LegRole.AGENT, status=LegStatus.IN_PROGRESS, linked_call_id="CAc")


def test_missing_leg(contact):
    assert evaluate_readiness(contact, None).reason == ReadinessReason.MISSING_LEG


def test_insufficient_signal(contact, agent):
    verdict = evaluate_readiness(replace(contact, transcript_turns=_turns(2)), agent)

    assert not verdict
    assert verdict.reason == ReadinessReason.INSUFFICIENT_SIGNAL


def test_turn_count_makes_ready(contact, agent):
    verdict = evaluate_readiness(replace(contact, transcript_turns=_turns(3)), agent)

    assert verdict.ready is True
    assert verdict.reason == ReadinessReason.READY_TURN_COUNT


def test_agent_turns_do_not_count(contact, agent):
    turns = _turns(2) + (TranscriptTurn(Speaker.AGENT, "hi", 9.0),) * 3

    assert not evaluate_readiness(replace(contact, transcript_turns=turns), agent)


def test_custom_min_turns(contact, agent):
    assert evaluate_readiness(replace(contact, transcript_turns=_turns(1)), agent, min_contact_turns=1)


def test_positive_intent_makes_ready(contact, agent):
    verdict = evaluate_readiness(replace(contact, derived_intent=DerivedIntent("service_interest")), agent)

    assert verdict.reason == ReadinessReason.READY_POSITIVE_INTENT


def test_neutral_intent_is_no_signal(contact, agent):
    verdict = evaluate_readiness(replace(contact, derived_intent=DerivedIntent("confused")), agent)

    assert verdict.reason == ReadinessReason.INSUFFICIENT_SIGNAL


def test_negative_latch_blocks_even_with_turns(contact, agent):
    contact = replace(
        contact,
        transcript_turns=_turns(5),
        derived_intent=DerivedIntent("needs_immediate_care", negative_latched=True),
    )

    assert evaluate_readiness(contact, agent).reason == ReadinessReason.NEGATIVE_INTENT


@pytest.mark.parametrize(
    "leg, field, reason",
    [
        ("contact", "answered_by_machine", ReadinessReason.CONTACT_IS_MACHINE),
        ("agent", "answered_by_machine", ReadinessReason.AGENT_IS_MACHINE),
    ],
)
def test_machine_blocks(contact, agent, leg, field, reason):
    contact = replace(contact, derived_intent=DerivedIntent("service_interest"))
    if leg == "contact":
        contact = replace(contact, **{field: True})
    else:
        agent = replace(agent, **{field: True})

    assert evaluate_readiness(contact, agent).reason == reason


def test_legs_must_be_in_progress(contact, agent):
    contact = replace(contact, derived_intent=DerivedIntent("service_interest"))

    assert (
        evaluate_readiness(replace(contact, status=LegStatus.RINGING), agent).reason
        == ReadinessReason.CONTACT_NOT_IN_PROGRESS
    )
    assert (
        evaluate_readiness(contact, replace(agent, status=LegStatus.COMPLETED)).reason
        == ReadinessReason.AGENT_NOT_IN_PROGRESS
    )


def test_attempted_or_settled_bridge_is_not_ready(contact, agent):
    contact = replace(contact, derived_intent=DerivedIntent("service_interest"))

    attempted = evaluate_readiness(replace(contact, bridge_attempt_started_at=1.0), agent)
    failed = evaluate_readiness(contact, replace(agent, bridge_failed=True))

    assert attempted.reason == ReadinessReason.BRIDGE_ALREADY_ATTEMPTED
    assert failed.reason == ReadinessReason.BRIDGE_SETTLED


def test_priority_override_keeps_polarity(contact, agent):
    policy = IntentPolicy(overrides={"service_interest": 0})
    contact = replace(contact, derived_intent=DerivedIntent("service_interest"))

    # Priority changes never change polarity.
    assert evaluate_readiness(contact, agent, policy=policy).ready is True
