"""
Conversational Agent Bridge (ElevenLabs Conversational AI over WebSocket).

Relays one contact leg between Twilio Media Streams and the agent service:

Twilio (mu-law 8kHz) -> user_audio_chunk -> ElevenLabs -> audio -> Twilio

While relaying it records every transcript turn through the coordinator,
injects one-shot `contextual_update` instructions, and stops forwarding audio
the moment the lead's bridge completes.

Interface is compatible with `server/app.py`:
- `start()`
- `stop()`
- `handle_message(raw_message)`
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.leadbridge import prompts
from src.leadbridge.config import Config, get_config
from src.leadbridge.records import CallRecord, LeadInfo, Speaker
from src.leadbridge.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

if TYPE_CHECKING:
    from src.leadbridge.coordinator import LeadCoordinator

logger = structlog.get_logger(__name__)

ELEVENLABS_SIGNED_URL = "https://api.elevenlabs.io/v1/convai/conversation/get_signed_url"

SignedUrlFetcher = Callable[[Config], Awaitable[str]]
Connector = Callable[[str], Awaitable[Any]]


class AgentServiceError(Exception):
    """Raised when the agent service cannot be reached."""
    pass


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPED = "stopped"


async def fetch_signed_url(config: Config) -> str:
    """Ask ElevenLabs for a short-lived signed WebSocket URL for our agent."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                ELEVENLABS_SIGNED_URL,
                params={"agent_id": config.elevenlabs_agent_id},
                headers={"xi-api-key": config.elevenlabs_api_key},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to reach ElevenLabs", error=str(e))
            raise AgentServiceError(f"Failed to reach ElevenLabs: {e}") from e

    if response.status_code != 200:
        logger.error(
            "Failed to get signed URL",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise AgentServiceError(f"Signed URL request failed with status {response.status_code}")

    signed_url = response.json().get("signed_url")
    if not signed_url:
        raise AgentServiceError("Signed URL missing from ElevenLabs response")
    return signed_url


async def _default_connect(url: str) -> Any:
    return await websockets.connect(url, open_timeout=10)


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.debug("Invalid agent audio payload", error=str(e))
        return b""


class AgentStreamBridge:
    """One contact leg's media stream relayed to the conversational agent."""

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        coordinator: "LeadCoordinator",
        *,
        config: Optional[Config] = None,
        signed_url_fetcher: SignedUrlFetcher = fetch_signed_url,
        connect: Connector = _default_connect,
    ):
        self.config = config or get_config()
        self.coordinator = coordinator
        self._send_message = send_message
        self._fetch_signed_url = signed_url_fetcher
        self._connect = connect

        self._protocol = TwilioProtocolHandler()
        self._state = SessionState.IDLE
        self._is_running = False
        self._is_reconnect = False

        self._agent_ws: Optional[Any] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)

        # One-shot notices
        self._voicemail_sent = False
        self._unavailable_sent = False
        self._forwarding_suppressed = False

        self.conversation_id: Optional[str] = None

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    @property
    def is_live(self) -> bool:
        return self._is_running and self._state in (SessionState.CONNECTING, SessionState.ACTIVE)

    async def start(self) -> None:
        self._is_running = True
        self._state = SessionState.IDLE
        logger.info("Agent stream bridge started")

    async def stop(self) -> None:
        if not self._is_running:
            return

        self._is_running = False
        self._state = SessionState.STOPPED

        for task in (self._recv_task, self._send_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()

        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        await asyncio.gather(
            *[
                t
                for t in (self._recv_task, self._send_task)
                if t and t is not asyncio.current_task()
            ],
            return_exceptions=True,
        )

        if self._agent_ws is not None:
            try:
                await self._agent_ws.close()
            except Exception as e:
                logger.debug("Agent websocket close failed", error=str(e))

        self._agent_ws = None
        self._recv_task = None
        self._send_task = None

        if self.call_sid:
            self.coordinator.sessions.unregister(self.call_sid, self)
        logger.info("Agent stream bridge stopped", call_sid=self.call_sid or None)

    # ------------------------------------------------------------------
    # Twilio side
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)
        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
        elif event_type == TwilioEventType.STOP:
            self._protocol.handle_stop()
            await self.stop()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        stream = self._protocol.handle_start(event)
        self._is_reconnect = stream.is_reconnect
        self.coordinator.sessions.register(stream.call_sid, self)

        record = self.coordinator.store.get(stream.call_sid)
        lead_info = record.lead_info if record else LeadInfo()
        is_voicemail = bool(record and record.answered_by_machine is True)

        self._state = SessionState.CONNECTING
        try:
            await self._connect_agent()
        except (AgentServiceError, OSError, WebSocketException) as e:
            logger.error("Agent service connection failed", call_sid=stream.call_sid, error=str(e))
            await self.stop()
            return

        await self._agent_send(
            prompts.build_initiation_message(
                lead_info,
                self.config,
                is_voicemail=is_voicemail,
                is_reconnect=self._is_reconnect,
            )
        )
        self._voicemail_sent = is_voicemail
        # A reconnect prompt already covers the unavailable-agent script.
        self._unavailable_sent = self._is_reconnect
        self._state = SessionState.ACTIVE

        logger.info(
            "Agent session active",
            call_sid=stream.call_sid,
            reconnect=self._is_reconnect,
            voicemail=is_voicemail,
        )

        latest = self.coordinator.store.get(stream.call_sid)
        if latest is not None:
            await self.sync_from_record(latest)

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or not event.payload:
            return
        self._protocol.count_inbound()
        if self._forwarding_suppressed or self._state != SessionState.ACTIVE:
            return
        await self._agent_send({"user_audio_chunk": base64.b64encode(event.payload).decode("utf-8")})

    # ------------------------------------------------------------------
    # Record-driven one-shots
    # ------------------------------------------------------------------

    async def sync_from_record(self, record: CallRecord) -> None:
        """React to coordinator-side changes on this contact's record."""
        if not self._is_running:
            return

        if record.bridge_complete:
            self._forwarding_suppressed = True
            logger.info("Bridge complete; tearing down agent session", call_sid=record.call_id)
            await self.stop()
            return

        if record.answered_by_machine is True and not self._voicemail_sent:
            self._voicemail_sent = True
            await self.send_contextual_update(prompts.voicemail_script(record.lead_info, self.config))
            return

        if (
            record.agent_unavailable_notice_sent
            and not self._unavailable_sent
            and record.answered_by_machine is not True
        ):
            self._unavailable_sent = True
            await self.send_contextual_update(prompts.agent_unavailable_script(record.lead_info))

    async def send_contextual_update(self, text: str) -> None:
        if not text:
            return
        logger.info("Injecting agent instruction", call_sid=self.call_sid, text=text[:120])
        await self._agent_send({"type": "contextual_update", "text": text})

    # ------------------------------------------------------------------
    # Agent service side
    # ------------------------------------------------------------------

    async def _connect_agent(self) -> None:
        if self._agent_ws is not None:
            return
        url = await self._fetch_signed_url(self.config)
        self._agent_ws = await self._connect(url)
        self._send_task = asyncio.create_task(self._agent_send_loop())
        self._recv_task = asyncio.create_task(self._agent_receive_loop())

    async def _agent_send(self, message: Dict[str, Any]) -> None:
        if not self._is_running:
            return
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Agent send queue full; dropping message", type=message.get("type", "audio"))

    async def _agent_send_loop(self) -> None:
        ws = self._agent_ws
        if ws is None:
            return
        try:
            while self._is_running:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(json.dumps(item))
                except Exception as e:
                    logger.error("Agent send failed", error=str(e), type=item.get("type", "audio"))
                    break
        except asyncio.CancelledError:
            pass

    async def _agent_receive_loop(self) -> None:
        ws = self._agent_ws
        if ws is None:
            return
        try:
            async for raw in ws:
                if not self._is_running:
                    break
                try:
                    message = json.loads(raw)
                except ValueError:
                    continue
                await self._handle_agent_message(message)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            logger.info("Agent service closed the connection", call_sid=self.call_sid,
                        code=e.rcvd.code if e.rcvd else None)
        except Exception as e:
            logger.error("Agent receive loop failed", call_sid=self.call_sid, error=str(e))
        if self._is_running:
            logger.info("Agent service disconnected", call_sid=self.call_sid)
            await self.stop()

    async def _handle_agent_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")

        if message_type == "conversation_initiation_metadata":
            meta = message.get("conversation_initiation_metadata_event") or {}
            conversation_id = meta.get("conversation_id")
            if conversation_id:
                self.conversation_id = conversation_id
                await self.coordinator.set_conversation_id(self.call_sid, conversation_id)
                logger.info("Agent conversation started", call_sid=self.call_sid, conversation_id=conversation_id)
            return

        if message_type == "audio":
            if self._forwarding_suppressed or not self.stream_sid:
                return
            audio = (message.get("audio_event") or {}).get("audio_base_64")
            if not audio:
                audio = (message.get("audio") or {}).get("chunk")
            if not audio:
                return
            for frame in self._protocol.create_audio_messages(_b64decode(audio)):
                await self._send_message(frame)
            return

        if message_type == "interruption":
            clear = self._protocol.create_clear()
            if clear:
                await self._send_message(clear)
            return

        if message_type == "ping":
            event_id = (message.get("ping_event") or {}).get("event_id")
            if event_id is not None:
                await self._agent_send({"type": "pong", "event_id": event_id})
            return

        if message_type == "user_transcript":
            text = (message.get("user_transcription_event") or {}).get("user_transcript", "")
            await self._record_contact_turn(text)
            return

        if message_type == "agent_response":
            text = (message.get("agent_response_event") or {}).get("agent_response", "")
            if text:
                await self.coordinator.record_turn(self.call_sid, Speaker.AGENT, text)
            return

    async def _record_contact_turn(self, text: str) -> None:
        if not text or not text.strip():
            return
        outcome = await self.coordinator.record_turn(self.call_sid, Speaker.CONTACT, text)
        for instruction in outcome.instructions:
            await self.send_contextual_update(instruction)

        record = self.coordinator.store.get(self.call_sid)
        if record is not None:
            await self.sync_from_record(record)


class AgentSessionRegistry:
    """Live agent sessions keyed by contact call id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, AgentStreamBridge] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, call_id: str, session: AgentStreamBridge) -> None:
        if not call_id:
            return
        previous = self._sessions.get(call_id)
        if previous is not None and previous is not session:
            logger.info("Replacing agent session", call_id=call_id)
        self._sessions[call_id] = session

    def unregister(self, call_id: str, session: AgentStreamBridge) -> None:
        if self._sessions.get(call_id) is session:
            del self._sessions[call_id]

    def get(self, call_id: str) -> Optional[AgentStreamBridge]:
        return self._sessions.get(call_id)

    def has_live(self, call_id: str) -> bool:
        session = self._sessions.get(call_id)
        return session is not None and session.is_live

    async def notify(self, record: CallRecord) -> None:
        session = self._sessions.get(record.call_id)
        if session is not None:
            await session.sync_from_record(record)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        for session in sessions:
            await session.stop()
        self._sessions.clear()
