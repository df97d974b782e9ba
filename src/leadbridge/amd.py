"""
Answering-machine signals.

Two independent paths feed the same latch on a call record:
- Twilio async AMD results (`AnsweredBy`)
- voicemail phrases heard in the contact's transcript
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class AnsweredBy(str, Enum):
    """Twilio async AMD classifications."""
    HUMAN = "human"
    MACHINE_START = "machine_start"
    MACHINE_END_BEEP = "machine_end_beep"
    MACHINE_END_SILENCE = "machine_end_silence"
    MACHINE_END_OTHER = "machine_end_other"
    FAX = "fax"
    UNKNOWN = "unknown"

    @property
    def is_machine(self) -> bool:
        return self not in (AnsweredBy.HUMAN, AnsweredBy.UNKNOWN)


def apply_amd_latch(current: Optional[bool], answered_by: AnsweredBy) -> Optional[bool]:
    """
    Fold one AMD result into the tri-state `answered_by_machine` flag.

    A machine result latches True forever. `human` only resolves an unknown
    state. `unknown` never changes anything.
    """
    if current is True:
        return True
    if answered_by.is_machine:
        return True
    if answered_by == AnsweredBy.HUMAN and current is None:
        return False
    return current


VOICEMAIL_PHRASES = (
    "leave a message",
    "leave your message",
    "after the beep",
    "after the tone",
    "at the tone",
    "not available to take your call",
    "can't take your call",
    "cannot take your call",
    "unable to take your call",
    "please record your message",
    "voice mailbox",
    "voicemail",
    "voice mail",
    "mailbox is full",
)

_VOICEMAIL_RE = re.compile("|".join(re.escape(p) for p in VOICEMAIL_PHRASES), re.IGNORECASE)


def detect_voicemail_phrase(text: str) -> Optional[str]:
    """Return the matched voicemail phrase, or None."""
    if not text:
        return None
    match = _VOICEMAIL_RE.search(text.replace("’", "'"))
    return match.group(0).lower() if match else None
