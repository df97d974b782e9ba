"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.leadbridge.twilio_protocol import (
    TWILIO_FRAME_SIZE,
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    StreamState,
    chunk_audio,
    parse_twilio_message,
    create_media_message,
    create_clear_message,
    TwilioProtocolHandler,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        """Test parsing connected event."""
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self, twilio_start_message):
        """Test parsing start event."""
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.account_sid == "AC345678"
        assert event.tracks == ["inbound"]
        assert event.parameter("callSid") == "CA789012"
        assert event.is_reconnect is False

    def test_parse_reconnect_start_event(self):
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ1",
            "start": {
                "callSid": "CA1",
                "accountSid": "AC1",
                "tracks": ["inbound"],
                "customParameters": {"reconnect": "true", "callSid": "CA1"},
            }
        })

        _, event = parse_twilio_message(message)

        assert event.is_reconnect is True

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        """Test parsing media event."""
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123456"
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == sample_ulaw_audio

    def test_parse_mark_event(self):
        """Test parsing mark event."""
        message = json.dumps({
            "event": "mark",
            "streamSid": "MZ123",
            "mark": {
                "name": "mark_1",
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "mark_1"

    def test_parse_stop_event(self, twilio_stop_message):
        """Test parsing stop event."""
        event_type, event = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        """Test parsing invalid JSON raises error."""
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_unknown_event(self):
        """Test parsing unknown event type raises error."""
        message = json.dumps({"event": "unknown_event"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self, sample_ulaw_audio):
        """Test creating media message."""
        message = create_media_message("MZ123", sample_ulaw_audio)

        parsed = json.loads(message)

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == sample_ulaw_audio

    def test_create_clear_message(self):
        """Test creating clear message."""
        parsed = json.loads(create_clear_message("MZ123"))

        assert parsed == {"event": "clear", "streamSid": "MZ123"}

    def test_chunk_audio_pads_last_frame_with_silence(self):
        frames = list(chunk_audio(b"\x00" * (TWILIO_FRAME_SIZE + 10)))

        assert len(frames) == 2
        assert all(len(f) == TWILIO_FRAME_SIZE for f in frames)
        assert frames[1][:10] == b"\x00" * 10
        assert frames[1][10:] == b"\xff" * (TWILIO_FRAME_SIZE - 10)


class TestProtocolHandler:
    """Tests for TwilioProtocolHandler."""

    def _started(self, **params) -> TwilioProtocolHandler:
        handler = TwilioProtocolHandler()
        handler.handle_start(TwilioStartEvent(
            stream_sid="MZ123",
            call_sid="CA456",
            account_sid="AC789",
            tracks=["inbound"],
            custom_parameters=params,
        ))
        return handler

    def test_handler_initial_state(self):
        """Test handler starts inactive."""
        handler = TwilioProtocolHandler()

        assert handler.stream_sid == ""
        assert handler.call_sid == ""
        assert handler.is_active is False

    def test_handler_handle_start(self):
        handler = self._started()

        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"
        assert handler.is_active is True
        assert isinstance(handler.state, StreamState)

    def test_handler_falls_back_to_call_sid_parameter(self):
        handler = TwilioProtocolHandler()
        handler.handle_start(TwilioStartEvent(
            stream_sid="MZ1",
            call_sid="",
            account_sid="AC1",
            tracks=[],
            custom_parameters={"callSid": "CAparam"},
        ))

        assert handler.call_sid == "CAparam"

    def test_handler_handle_stop(self):
        handler = self._started()

        handler.handle_stop()

        assert handler.is_active is False

    def test_handler_create_audio_messages(self):
        """Test creating audio messages with chunking."""
        handler = self._started()

        # 320 bytes = 2 chunks of 160
        messages = handler.create_audio_messages(b"\xff" * 320)

        assert len(messages) == 2
        for msg in messages:
            parsed = json.loads(msg)
            assert parsed["event"] == "media"
            assert parsed["streamSid"] == "MZ123"
        assert handler.state.media_frames_out == 2

    def test_handler_counts_inbound_frames(self):
        handler = self._started()

        handler.count_inbound()
        handler.count_inbound()

        assert handler.state.media_frames_in == 2

    def test_handler_create_clear(self):
        handler = self._started()

        parsed = json.loads(handler.create_clear())

        assert parsed["event"] == "clear"
        assert parsed["streamSid"] == "MZ123"

    def test_handler_no_messages_when_inactive(self):
        """Test that handler returns empty when not active."""
        handler = TwilioProtocolHandler()

        assert handler.create_audio_messages(b"\xff" * 160) == []
        assert handler.create_clear() == ""
