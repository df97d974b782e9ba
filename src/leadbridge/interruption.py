"""
Interruption and reschedule detection for contact turns.

Two phrase sets are tracked per contact leg:
- "needs a moment" (pause) phrases
- "call me another time" (reschedule) phrases

Each category produces at most one instruction while it is active. A longer
turn without either phrase after a pause resolves the pause and yields a
single "welcome back" instruction.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from src.leadbridge.records import CallbackTime, InterruptionState

RESCHEDULE_PHRASES = (
    "call back",
    "call me back",
    "call later",
    "not a good time",
    "busy right now",
    "in a meeting",
    "driving",
    "can't talk",
    "bad time",
    "another time",
    "tomorrow",
    "next week",
    "later today",
    "later on",
    "in the afternoon",
    "in the morning",
    "schedule",
    "reschedule",
)

PAUSE_PHRASES = (
    "hold on",
    "just a minute",
    "just a moment",
    "one moment",
    "one second",
    "hold please",
    "excuse me",
    "wait a moment",
    "wait a second",
    "give me a second",
    "someone's at the door",
    "someone's calling",
    "need to answer",
    "doorbell",
    "phone's ringing",
)

# Shorter turns after a pause are usually still the interruption ("ok", "yeah").
RESOLVE_MIN_CHARS = 20

PAUSE_INSTRUCTION = "I understand you need a moment. Take your time, I'll wait."
RESUME_INSTRUCTION = "Thanks for coming back. Should we continue where we left off?"

_SPECIFIC_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)", re.IGNORECASE)

# Longest phrases first so "next monday" wins over "monday".
_RELATIVE_TIMES: Tuple[Tuple[str, CallbackTime], ...] = (
    ("this afternoon", CallbackTime(kind="period", value="afternoon")),
    ("this evening", CallbackTime(kind="period", value="evening")),
    ("tonight", CallbackTime(kind="period", value="evening")),
    ("next week", CallbackTime(kind="week", value="next week")),
    ("tomorrow", CallbackTime(kind="day", value="tomorrow")),
) + tuple(
    (f"next {day.lower()}", CallbackTime(kind="weekday", value=f"next {day.lower()}", weekday=i))
    for i, day in enumerate(calendar.day_name)
) + tuple(
    (day.lower(), CallbackTime(kind="weekday", value=day.lower(), weekday=i))
    for i, day in enumerate(calendar.day_name)
) + (
    ("morning", CallbackTime(kind="period", value="morning")),
    ("afternoon", CallbackTime(kind="period", value="afternoon")),
    ("evening", CallbackTime(kind="period", value="evening")),
)


def _normalize(text: str) -> str:
    return (text or "").replace("’", "'").lower().strip()


def extract_callback_time(text: str) -> Optional[CallbackTime]:
    """Pull a best-effort callback time out of free text."""
    normalized = _normalize(text)
    if not normalized:
        return None

    match = _SPECIFIC_TIME_RE.search(normalized)
    if match:
        meridiem = match.group(3).replace(".", "")
        return CallbackTime(
            kind="specific_time",
            value=match.group(0),
            hour=int(match.group(1)),
            minute=int(match.group(2)) if match.group(2) else 0,
            meridiem=meridiem,
        )

    for phrase, callback in _RELATIVE_TIMES:
        if re.search(rf"\b{re.escape(phrase)}\b", normalized):
            return callback
    return None


def describe_callback_time(callback: Optional[CallbackTime]) -> str:
    """Render a callback time as a phrase suffix (" for 3pm", " on Friday")."""
    if callback is None:
        return ""
    if callback.kind == "specific_time":
        return f" for {callback.value}"
    if callback.kind == "period":
        if callback.value == "evening":
            return " this evening"
        if callback.value == "afternoon":
            return " this afternoon"
        return " tomorrow morning"
    if callback.kind == "weekday" and callback.weekday is not None:
        return f" on {calendar.day_name[callback.weekday]}"
    if callback.kind == "day":
        return " tomorrow"
    if callback.kind == "week":
        return " next week"
    return ""


def reschedule_instruction(callback: Optional[CallbackTime]) -> str:
    return (
        "I understand this isn't a good time to talk. "
        f"I'd be happy to reschedule{describe_callback_time(callback)}. Would that work for you?"
    )


@dataclass(frozen=True)
class InterruptionResult:
    state: InterruptionState
    reschedule_detected: bool = False
    pause_detected: bool = False
    pause_resolved: bool = False
    instruction: Optional[str] = None


def process_turn(state: InterruptionState, text: str) -> InterruptionResult:
    """
    Fold one contact turn into the interruption state.

    Returns the new state plus at most one instruction for the agent.
    Reschedule takes precedence over pause, which takes precedence over a
    resolved pause.
    """
    normalized = _normalize(text)
    has_reschedule = any(phrase in normalized for phrase in RESCHEDULE_PHRASES)
    has_pause = any(phrase in normalized for phrase in PAUSE_PHRASES)

    reschedule_detected = False
    pause_detected = False
    pause_resolved = False

    if has_reschedule and not state.reschedule_detected:
        reschedule_detected = True
        callback = extract_callback_time(normalized)
        state = replace(
            state,
            reschedule_detected=True,
            reschedule_count=state.reschedule_count + 1,
            preferred_callback_time=callback or state.preferred_callback_time,
        )

    if has_pause and not state.pause_active:
        pause_detected = True
        state = replace(state, pause_active=True, pause_count=state.pause_count + 1)

    if (
        state.pause_active
        and not pause_detected
        and len(normalized) > RESOLVE_MIN_CHARS
        and not has_pause
        and not has_reschedule
    ):
        pause_resolved = True
        state = replace(state, pause_active=False)

    instruction: Optional[str] = None
    if reschedule_detected and not state.reschedule_instruction_sent:
        state = replace(state, reschedule_instruction_sent=True)
        instruction = reschedule_instruction(state.preferred_callback_time)
    elif pause_detected and not state.pause_instruction_sent:
        state = replace(state, pause_instruction_sent=True)
        instruction = PAUSE_INSTRUCTION
    elif state.pause_instruction_sent and not state.pause_active:
        # Re-arm so a later pause gets its own instruction.
        state = replace(state, pause_instruction_sent=False)
        instruction = RESUME_INSTRUCTION

    return InterruptionResult(
        state=state,
        reschedule_detected=reschedule_detected,
        pause_detected=pause_detected,
        pause_resolved=pause_resolved,
        instruction=instruction,
    )
