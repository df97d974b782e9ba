"""
TwiML documents for both legs of a lead.

Every builder returns a string ready for `calls(sid).update(twiml=...)` or
an HTTP response body.
"""

from __future__ import annotations

from typing import Mapping, Optional

from twilio.twiml.voice_response import Dial, VoiceResponse

CONFERENCE_ROOM_PREFIX = "ConferenceRoom_"
SAY_VOICE = "Polly.Joanna"
MAX_PAUSE_SECONDS = 60


def conference_room_id(agent_call_id: str) -> str:
    return f"{CONFERENCE_ROOM_PREFIX}{agent_call_id}"


def _conference_dial(
    room_id: str,
    *,
    status_callback_url: str,
    wait_url: Optional[str] = None,
    end_conference_on_exit: bool = False,
) -> Dial:
    dial = Dial()
    kwargs = {
        "beep": False,
        "start_conference_on_enter": True,
        "end_conference_on_exit": end_conference_on_exit,
        "status_callback": status_callback_url,
        "status_callback_event": "join leave",
        "status_callback_method": "POST",
    }
    if wait_url:
        kwargs["wait_url"] = wait_url
    dial.conference(room_id, **kwargs)
    return dial


def contact_join_twiml(room_id: str, *, status_callback_url: str, hold_music_url: str) -> str:
    """Contact waits in the room with hold music until the agent arrives."""
    response = VoiceResponse()
    response.append(
        _conference_dial(
            room_id,
            status_callback_url=status_callback_url,
            wait_url=hold_music_url,
        )
    )
    return str(response)


def agent_join_twiml(room_id: str, *, announcement: str, status_callback_url: str) -> str:
    """Agent hears who they are about to speak with, then joins the room."""
    response = VoiceResponse()
    if announcement:
        response.say(announcement, voice=SAY_VOICE)
    response.append(
        _conference_dial(
            room_id,
            status_callback_url=status_callback_url,
            end_conference_on_exit=True,
        )
    )
    return str(response)


def stream_twiml(
    stream_url: str,
    *,
    parameters: Optional[Mapping[str, str]] = None,
    say: Optional[str] = None,
) -> str:
    """Optionally say something, then connect the call to our media stream."""
    response = VoiceResponse()
    if say:
        response.say(say, voice=SAY_VOICE)
    connect = response.connect()
    stream = connect.stream(url=stream_url)
    for name, value in (parameters or {}).items():
        stream.parameter(name=str(name), value=str(value))
    return str(response)


def contact_stream_twiml(stream_url: str, *, call_id: str = "") -> str:
    """Initial contact-leg document: straight into the agent service."""
    return stream_twiml(stream_url, parameters={"callSid": call_id} if call_id else None)


def reconnect_stream_twiml(stream_url: str, *, apology: str, call_id: str) -> str:
    """Send a contact back to the agent service after a failed bridge."""
    return stream_twiml(
        stream_url,
        parameters={"reconnect": "true", "callSid": call_id},
        say=apology,
    )


def agent_hold_twiml(
    message: str,
    *,
    hold_seconds: int,
    audio_url: str = "",
    audio_loops: int = 10,
) -> str:
    """
    Agent leg waits (with a short notice) until the bridge command arrives.

    Twilio ends a call once its TwiML runs out, so the document has to outlast
    the contact's conversation with the voice agent. The update command that
    bridges or releases the agent replaces it.
    """
    response = VoiceResponse()
    if message:
        response.say(message, voice=SAY_VOICE)
    if audio_url:
        response.play(audio_url, loop=audio_loops)
    remaining = max(hold_seconds, 1)
    while remaining > 0:
        chunk = min(remaining, MAX_PAUSE_SECONDS)
        response.pause(length=chunk)
        remaining -= chunk
    return str(response)


def say_then_hangup_twiml(message: str) -> str:
    response = VoiceResponse()
    if message:
        response.say(message, voice=SAY_VOICE)
    response.hangup()
    return str(response)


def hangup_twiml() -> str:
    response = VoiceResponse()
    response.hangup()
    return str(response)
