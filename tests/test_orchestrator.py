"""
Tests for bridge orchestration.
"""

import asyncio

import pytest

from src.leadbridge import prompts
from src.leadbridge.records import DerivedIntent
from src.leadbridge.telephony import TelephonyError


def _documents(telephony):
    return [(c.args[0], c.args[1]) for c in telephony.update_call.await_args_list]


def _conference_documents(telephony):
    return [(call_id, doc) for call_id, doc in _documents(telephony) if "<Conference" in doc]


@pytest.mark.asyncio
async def test_three_neutral_turns_bridge_both_legs_into_one_room(driver, telephony):
    await driver.start()
    await driver.answer_both()

    first = await driver.say("Hello?")
    second = await driver.say("Yes, this is Jane speaking.")
    third = await driver.say("Okay, I see.")

    assert (first.bridged, second.bridged, third.bridged) == (False, False, True)

    room = f"ConferenceRoom_{driver.agent_id}"
    (contact_call, contact_doc), (agent_call, agent_doc) = _documents(telephony)
    assert contact_call == driver.contact_id
    assert agent_call == driver.agent_id
    assert f">{room}</Conference>" in contact_doc
    assert f">{room}</Conference>" in agent_doc
    assert "waitUrl=" in contact_doc
    assert "Jane Doe" in agent_doc
    assert "mobility support for her mother" in agent_doc
    assert driver.contact().conference_room_id == room
    assert driver.agent().conference_room_id == room
    assert driver.contact().bridge_attempt_started_at == driver.agent().bridge_attempt_started_at


@pytest.mark.asyncio
async def test_concurrent_evaluations_issue_one_command_pair(driver, coordinator, telephony):
    await driver.start()
    await driver.answer_both()
    await coordinator.store.merge(driver.contact_id, derived_intent=DerivedIntent("service_interest"))

    # Hold the contact's lock so every evaluation sees a ready pair and
    # queues on the claim.
    lock = coordinator.store._lock_for(driver.contact_id)
    await lock.acquire()
    tasks = [
        asyncio.create_task(
            coordinator.orchestrator.maybe_bridge(driver.contact_id if i % 2 else driver.agent_id)
        )
        for i in range(20)
    ]
    for _ in range(10):
        await asyncio.sleep(0)
    assert not any(task.done() for task in tasks)
    assert telephony.update_call.await_count == 0

    lock.release()
    results = await asyncio.gather(*tasks)

    assert results.count(True) == 1
    assert telephony.update_call.await_count == 2
    assert coordinator.stats.bridge_attempts == 1


@pytest.mark.asyncio
async def test_positive_intent_bridges_without_turn_count(driver, telephony):
    await driver.start()
    await driver.answer_both()

    outcome = await driver.say("That sounds great, tell me more.")

    assert outcome.bridged is True
    assert len(_conference_documents(telephony)) == 2


@pytest.mark.asyncio
async def test_machine_end_beep_before_agent_answers_blocks_bridge(driver, coordinator, telephony):
    await driver.start()
    await driver.status(driver.contact_id, "in-progress")
    await driver.amd(driver.contact_id, "machine_end_beep")

    await driver.status(driver.agent_id, "in-progress")

    # Agent hears the voicemail notice and is released.
    (call_id, doc), = _documents(telephony)
    assert call_id == driver.agent_id
    assert "leaving a voicemail" in doc
    assert "<Hangup" in doc

    for text in ("Sounds good", "Tell me more", "Yes", "Okay"):
        assert (await driver.say(text)).bridged is False

    assert _conference_documents(telephony) == []
    assert driver.contact().answered_by_machine is True
    assert driver.contact().needs_follow_up is True
    assert coordinator.stats.voicemails == 1


@pytest.mark.asyncio
async def test_machine_result_after_both_answered_notifies_agent(driver, telephony):
    await driver.start()
    await driver.answer_both()

    await driver.amd(driver.contact_id, "machine_end_silence")
    await driver.amd(driver.contact_id, "human")

    assert driver.contact().answered_by_machine is True
    (call_id, doc), = _documents(telephony)
    assert call_id == driver.agent_id
    assert "leaving a voicemail" in doc


@pytest.mark.asyncio
async def test_late_negative_intent_blocks_pending_bridge(driver, telephony):
    await driver.start()
    await driver.status(driver.contact_id, "in-progress")
    await driver.status(driver.agent_id, "ringing")

    await driver.say("Can you tell me more about it?")
    await driver.say("Actually no, I'm not interested.")
    await driver.status(driver.agent_id, "in-progress")
    await driver.say("Okay.")

    assert driver.contact().derived_intent.negative_latched is True
    assert driver.contact().bridge_attempt_started_at is None
    assert _conference_documents(telephony) == []


@pytest.mark.asyncio
async def test_negative_intent_wins_over_turn_count(driver, telephony):
    await driver.start()
    await driver.answer_both()

    await driver.say("Who is this?")
    await driver.say("Please take me off your list.")
    await driver.say("Okay.")
    await driver.say("Bye.")

    assert _conference_documents(telephony) == []


@pytest.mark.asyncio
async def test_agent_machine_blocks_bridge(driver, coordinator, telephony):
    await driver.start()
    await driver.answer_both()

    await driver.amd(driver.agent_id, "machine_start")
    outcome = await driver.say("That sounds great")

    assert outcome.bridged is False
    telephony.hangup.assert_awaited_once_with(driver.agent_id)
    assert driver.contact().agent_unavailable_notice_sent is True
    assert driver.contact().needs_follow_up is True


@pytest.mark.asyncio
async def test_command_failure_is_logged_not_retried(driver, coordinator, telephony):
    await driver.start()
    await driver.answer_both()
    telephony.update_call.side_effect = [TelephonyError("boom", call_id=driver.contact_id), None]

    outcome = await driver.say("That sounds great")
    retry = await coordinator.orchestrator.maybe_bridge(driver.contact_id)

    assert outcome.bridged is True
    assert retry is False
    assert telephony.update_call.await_count == 2
    assert coordinator.stats.command_failures == 1
    assert driver.contact().bridge_attempt_started_at is not None


@pytest.mark.asyncio
async def test_deadline_is_scheduled_once(driver, coordinator):
    await driver.start()
    await driver.answer_both()
    await driver.say("That sounds great")

    coordinator.monitor.schedule_deadline(driver.contact_id, driver.agent_id, driver.deadline())

    assert list(coordinator.monitor._deadline_tasks) == [driver.contact_id]


@pytest.mark.asyncio
async def test_fallback_contact_missing_skips_ended_agent(driver, coordinator, telephony):
    from dataclasses import replace
    from src.leadbridge.records import LegStatus

    await driver.start()
    contact, agent = driver.contact(), replace(driver.agent(), status=LegStatus.COMPLETED)

    await coordinator.orchestrator.fallback_contact_missing(contact, agent)

    telephony.update_call.assert_not_awaited()
    assert driver.contact().needs_follow_up is True


@pytest.mark.asyncio
async def test_abandoned_ringing_leg_is_cancelled(driver, coordinator, telephony):
    await driver.start()
    await driver.status(driver.agent_id, "ringing")

    await coordinator.orchestrator.end_abandoned_leg(driver.agent())

    telephony.hangup.assert_awaited_once_with(driver.agent_id)


@pytest.mark.asyncio
async def test_answered_agent_hears_lead_left_notice(driver, coordinator, telephony):
    await driver.start()
    await driver.answer_both()

    await coordinator.orchestrator.end_abandoned_leg(driver.agent())

    (call_id, doc), = _documents(telephony)
    assert call_id == driver.agent_id
    assert prompts.AGENT_LEAD_LEFT_NOTICE.split(".")[0] in doc
    assert "A member of our team will follow up with you" not in doc
    assert "<Hangup" in doc


@pytest.mark.asyncio
async def test_answered_contact_hears_goodbye(driver, coordinator, telephony):
    await driver.start()
    await driver.answer_both()

    await coordinator.orchestrator.end_abandoned_leg(driver.contact())

    (call_id, doc), = _documents(telephony)
    assert call_id == driver.contact_id
    assert "A member of our team will follow up with you" in doc
