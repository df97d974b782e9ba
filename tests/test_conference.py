"""
Tests for conference join tracking and the join deadline.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.leadbridge.conference import DeadlineOutcome
from src.leadbridge.events import parse_conference_event


async def _bridged(driver):
    await driver.start()
    await driver.answer_both()
    outcome = await driver.say("That sounds great, tell me more.")
    assert outcome.bridged is True


def _fake_session():
    session = MagicMock()
    session.is_live = True
    session.sync_from_record = AsyncMock()
    session.stop = AsyncMock()
    return session


class TestJoins:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", ["contact", "agent"])
    async def test_completes_in_either_order(self, driver, coordinator, first):
        await _bridged(driver)
        order = [driver.contact_id, driver.agent_id]
        if first == "agent":
            order.reverse()

        await driver.conference(order[0], "join")
        assert driver.contact().bridge_complete is False

        await driver.conference(order[1], "join")

        assert driver.contact().bridge_complete is True
        assert driver.agent().bridge_complete is True
        assert coordinator.stats.bridges_completed == 1

    @pytest.mark.asyncio
    async def test_leave_and_rejoin_noise(self, driver):
        await _bridged(driver)

        await driver.conference(driver.contact_id, "join")
        await driver.conference(driver.contact_id, "leave")
        await driver.conference(driver.agent_id, "join")

        assert driver.contact().joined is False
        assert driver.contact().bridge_complete is False

        await driver.conference(driver.contact_id, "join")

        assert driver.contact().bridge_complete is True

    @pytest.mark.asyncio
    async def test_completion_survives_leave(self, driver, coordinator):
        await _bridged(driver)
        await driver.conference(driver.contact_id, "join")
        await driver.conference(driver.agent_id, "join")

        await driver.conference(driver.agent_id, "leave")
        await driver.conference(driver.agent_id, "join")

        assert driver.agent().joined is True
        assert driver.contact().bridge_complete is True
        assert driver.agent().bridge_complete is True
        assert coordinator.stats.bridges_completed == 1

    @pytest.mark.asyncio
    async def test_completion_tears_down_agent_session(self, driver, coordinator):
        await _bridged(driver)
        session = _fake_session()
        coordinator.sessions.register(driver.contact_id, session)

        await driver.conference(driver.contact_id, "join")
        await driver.conference(driver.agent_id, "join")

        record = session.sync_from_record.await_args.args[0]
        assert record.call_id == driver.contact_id
        assert record.bridge_complete is True

    @pytest.mark.asyncio
    async def test_room_mismatch_is_dropped(self, driver):
        await _bridged(driver)

        result = await driver.coordinator.monitor.handle_event(parse_conference_event({
            "CallSid": driver.contact_id,
            "FriendlyName": "ConferenceRoom_somebody_else",
            "StatusCallbackEvent": "participant-join",
        }))

        assert result is None
        assert driver.contact().joined is False

    @pytest.mark.asyncio
    async def test_unknown_call_is_dropped(self, coordinator):
        result = await coordinator.monitor.handle_event(parse_conference_event({
            "CallSid": "CAunknown",
            "FriendlyName": "ConferenceRoom_CA0002",
            "StatusCallbackEvent": "participant-join",
        }))

        assert result is None
        assert coordinator.store.get("CAunknown") is None


class TestDeadline:

    @pytest.mark.asyncio
    async def test_contact_missing_releases_agent(self, driver, coordinator, telephony, clock):
        await _bridged(driver)
        await driver.conference(driver.agent_id, "join")
        telephony.update_call.reset_mock()
        clock.advance(31)

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert outcome == DeadlineOutcome.CONTACT_MISSING
        call_id, doc = telephony.update_call.await_args.args
        assert call_id == driver.agent_id
        assert "customer appears to have disconnected" in doc
        assert "<Hangup" in doc
        assert driver.contact().bridge_failed and driver.agent().bridge_failed
        assert driver.contact().needs_follow_up is True
        assert coordinator.stats.bridges_failed == 1

    @pytest.mark.asyncio
    async def test_agent_missing_reconnects_contact(self, driver, coordinator, telephony, clock):
        await _bridged(driver)
        await driver.conference(driver.contact_id, "join")
        telephony.update_call.reset_mock()
        clock.advance(31)

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert outcome == DeadlineOutcome.AGENT_MISSING
        call_id, doc = telephony.update_call.await_args.args
        assert call_id == driver.contact_id
        assert "<Stream url=\"wss://test.ngrok.io/media-stream\"" in doc
        assert "name=\"reconnect\" value=\"true\"" in doc
        assert driver.agent().needs_follow_up is True
        telephony.hangup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nobody_joined_counts_as_contact_missing(self, driver, coordinator, clock):
        await _bridged(driver)
        clock.advance(60)

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert outcome == DeadlineOutcome.CONTACT_MISSING

    @pytest.mark.asyncio
    async def test_completed_bridge_makes_check_a_no_op(self, driver, coordinator, telephony, clock):
        await _bridged(driver)
        await driver.conference(driver.contact_id, "join")
        await driver.conference(driver.agent_id, "join")
        telephony.update_call.reset_mock()
        clock.advance(31)

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert outcome == DeadlineOutcome.ALREADY_COMPLETE
        telephony.update_call.assert_not_awaited()
        assert driver.contact().bridge_failed is False

    @pytest.mark.asyncio
    async def test_second_check_after_failure_is_a_no_op(self, driver, coordinator, telephony, clock):
        await _bridged(driver)
        clock.advance(31)
        await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())
        count = telephony.update_call.await_count

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert outcome == DeadlineOutcome.ALREADY_FAILED
        assert telephony.update_call.await_count == count

    @pytest.mark.asyncio
    async def test_late_join_after_failure_does_not_complete(self, driver, coordinator, clock):
        await _bridged(driver)
        await driver.conference(driver.contact_id, "join")
        clock.advance(31)
        await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        await driver.conference(driver.agent_id, "join")

        assert driver.contact().bridge_complete is False
        assert driver.contact().bridge_failed is True

    @pytest.mark.asyncio
    async def test_early_wake_waits_for_the_same_deadline(self, driver, coordinator, clock):
        await _bridged(driver)
        sleeps = []

        async def short_sleep(seconds):
            sleeps.append(seconds)
            clock.advance(10)

        coordinator.monitor._sleep = short_sleep

        outcome = await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())

        assert sleeps == [30, 20, 10]
        assert outcome == DeadlineOutcome.CONTACT_MISSING

    @pytest.mark.asyncio
    async def test_no_transfer_after_failed_bridge(self, driver, coordinator, telephony, clock):
        await _bridged(driver)
        await driver.conference(driver.contact_id, "join")
        clock.advance(31)
        await coordinator.monitor.check_deadline(driver.contact_id, driver.agent_id, driver.deadline())
        count = telephony.update_call.await_count

        outcome = await driver.say("I really want to sign up")

        assert outcome.bridged is False
        assert telephony.update_call.await_count == count
