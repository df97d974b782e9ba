"""
Pytest configuration and fixtures.
"""

import asyncio
import itertools
import pytest
import pytest_asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550000001",
        "SALES_TEAM_PHONE_NUMBER": "+15550000002",
        "VALIDATE_TWILIO_SIGNATURE": "false",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "ELEVENLABS_AGENT_ID": "agent_test",
        "JOIN_TIMEOUT_SECONDS": "30",
        "MIN_CONTACT_TURNS": "3",
        "INTENT_PRIORITIES": "",
        "AGENT_PROMPT": "",
        "AGENT_PROMPT_FILE": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.leadbridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def never_wake(seconds: float) -> None:
    """Deadline sleep that only ends by cancellation; tests drive deadlines by hand."""
    await asyncio.Event().wait()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def telephony():
    """Twilio command wrapper double; call sids are CA0001, CA0002, ..."""
    from src.leadbridge.telephony import CreatedCall

    counter = itertools.count(1)

    async def create_call(**kwargs):
        return CreatedCall(call_id=f"CA{next(counter):04d}", status="queued")

    fake = MagicMock()
    fake.create_call = AsyncMock(side_effect=create_call)
    fake.update_call = AsyncMock()
    fake.hangup = AsyncMock()
    return fake


@pytest.fixture
def snapshots():
    return []


@pytest_asyncio.fixture
async def coordinator(telephony, clock, snapshots):
    from src.leadbridge.config import get_config
    from src.leadbridge.coordinator import LeadCoordinator

    async def sink(snapshot):
        snapshots.append(snapshot)

    coord = LeadCoordinator(
        telephony=telephony,
        config=get_config(),
        snapshot_sink=sink,
        clock=clock,
        sleep=never_wake,
    )
    yield coord
    await coord.close()


class LeadDriver:
    """Feeds webhook-shaped events into a coordinator."""

    def __init__(self, coordinator):
        self.coordinator = coordinator
        self.contact_id = ""
        self.agent_id = ""

    async def start(self, lead_info=None):
        from src.leadbridge.records import LeadInfo

        info = lead_info or LeadInfo(lead_name="Jane Doe", care_reason="mobility support", care_needed_for="her mother")
        contact, agent = await self.coordinator.start_lead("+15551112222", info)
        self.contact_id, self.agent_id = contact.call_id, agent.call_id
        return contact, agent

    async def status(self, call_id, status):
        from src.leadbridge.events import parse_status_event

        return await self.coordinator.handle_leg_status(
            parse_status_event({"CallSid": call_id, "CallStatus": status})
        )

    async def answer_both(self):
        await self.status(self.contact_id, "ringing")
        await self.status(self.agent_id, "ringing")
        await self.status(self.contact_id, "in-progress")
        await self.status(self.agent_id, "in-progress")

    async def amd(self, call_id, answered_by):
        from src.leadbridge.events import parse_amd_event

        return await self.coordinator.handle_amd(
            parse_amd_event({"CallSid": call_id, "AnsweredBy": answered_by})
        )

    async def conference(self, call_id, action, room_id=None):
        from src.leadbridge.events import parse_conference_event

        record = self.coordinator.store.get(call_id)
        event = parse_conference_event({
            "CallSid": call_id,
            "FriendlyName": room_id or record.conference_room_id,
            "StatusCallbackEvent": f"participant-{action}",
        })
        return await self.coordinator.handle_event(event)

    async def say(self, text):
        from src.leadbridge.records import Speaker

        return await self.coordinator.record_turn(self.contact_id, Speaker.CONTACT, text)

    def contact(self):
        return self.coordinator.store.get(self.contact_id)

    def agent(self):
        return self.coordinator.store.get(self.agent_id)

    def deadline(self):
        return self.contact().bridge_attempt_started_at + self.coordinator.config.join_timeout_seconds


@pytest.fixture
def driver(coordinator):
    return LeadDriver(coordinator)


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"callSid": "CA789012"},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
