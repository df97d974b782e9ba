"""
Twilio Media Streams WebSocket protocol.

Inbound events:
- connected: initial handshake
- start: stream started, carries streamSid, callSid and our <Parameter> values
- media: base64 mu-law 8kHz audio
- mark: playback marker acknowledgment
- stop: stream stopped

Outbound messages:
- media: agent audio back to the caller
- clear: flush buffered audio (agent was interrupted)
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# 20ms of mu-law at 8kHz
TWILIO_FRAME_SIZE = 160

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}) or {},
        )

    def parameter(self, name: str, default: str = "") -> str:
        value = self.custom_parameters.get(name)
        return str(value) if value is not None else default

    @property
    def is_reconnect(self) -> bool:
        return self.parameter("reconnect").strip().lower() == "true"


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # decoded mu-law

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media", {})
        try:
            payload = base64.b64decode(media.get("payload", ""))
        except Exception:
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=media.get("timestamp", ""),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class StreamState:
    """State for an active media stream."""
    stream_sid: str = ""
    call_sid: str = ""
    is_active: bool = True
    is_reconnect: bool = False
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    media_frames_in: int = 0
    media_frames_out: int = 0


def parse_twilio_message(raw_message: Any) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not an object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    return event_type, message


def chunk_audio(audio: bytes, frame_size: int = TWILIO_FRAME_SIZE) -> Iterator[bytes]:
    """Split audio into fixed-size frames, padding the last one with mu-law silence."""
    for offset in range(0, len(audio), frame_size):
        frame = audio[offset:offset + frame_size]
        if len(frame) < frame_size:
            frame = frame.ljust(frame_size, b"\xff")
        yield frame


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Create a Twilio media message from raw mu-law bytes."""
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": base64.b64encode(audio_payload).decode("utf-8"),
        },
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Create a Twilio clear message (drops audio Twilio has buffered)."""
    message = {
        "event": "clear",
        "streamSid": stream_sid,
    }
    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """Tracks stream state and builds outbound frames for one media stream."""

    def __init__(self):
        self.state: Optional[StreamState] = None

    @property
    def stream_sid(self) -> str:
        return self.state.stream_sid if self.state else ""

    @property
    def call_sid(self) -> str:
        return self.state.call_sid if self.state else ""

    @property
    def is_active(self) -> bool:
        return self.state is not None and self.state.is_active

    def handle_start(self, event: TwilioStartEvent) -> StreamState:
        # The call sid may arrive only as a custom parameter on some setups.
        call_sid = event.call_sid or event.parameter("callSid")
        self.state = StreamState(
            stream_sid=event.stream_sid,
            call_sid=call_sid,
            is_reconnect=event.is_reconnect,
            custom_parameters=dict(event.custom_parameters),
        )
        logger.info(
            "Media stream started",
            stream_sid=event.stream_sid,
            call_sid=call_sid,
            reconnect=event.is_reconnect,
        )
        return self.state

    def handle_stop(self) -> None:
        if self.state:
            self.state.is_active = False
            logger.info(
                "Media stream stopped",
                stream_sid=self.state.stream_sid,
                call_sid=self.state.call_sid,
                frames_in=self.state.media_frames_in,
                frames_out=self.state.media_frames_out,
            )

    def count_inbound(self) -> None:
        if self.state:
            self.state.media_frames_in += 1

    def create_audio_messages(self, audio_bytes: bytes) -> List[str]:
        """Chunk agent audio into 20ms Twilio media frames."""
        if not self.state or not audio_bytes:
            return []
        messages = [create_media_message(self.state.stream_sid, frame) for frame in chunk_audio(audio_bytes)]
        self.state.media_frames_out += len(messages)
        return messages

    def create_clear(self) -> str:
        if not self.state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.state.stream_sid)
        return create_clear_message(self.state.stream_sid)
