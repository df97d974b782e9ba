"""
Call record data model.

One CallRecord exists per telephony leg. Records are immutable values: every
change produces a new record through the store, so readers never observe a
partially applied merge.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class LegRole(str, Enum):
    """Which side of the lead a leg belongs to."""
    CONTACT = "contact"
    AGENT = "agent"


class LegStatus(str, Enum):
    """Telephony status of a single leg."""
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the lifecycle; all terminal states share the last rank."""
        if self.is_terminal:
            return 3
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset(
    {
        LegStatus.COMPLETED,
        LegStatus.BUSY,
        LegStatus.FAILED,
        LegStatus.NO_ANSWER,
        LegStatus.CANCELED,
    }
)

_STATUS_RANK = {
    LegStatus.INITIATED: 0,
    LegStatus.RINGING: 1,
    LegStatus.IN_PROGRESS: 2,
}


class Speaker(str, Enum):
    CONTACT = "contact"
    AGENT = "agent"


@dataclass(frozen=True)
class TranscriptTurn:
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"speaker": self.speaker.value, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True)
class DerivedIntent:
    """Latched conversational signal for a contact leg."""
    primary: str
    supporting: Tuple[str, ...] = ()
    negative_latched: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "supporting": list(self.supporting),
            "negativeLatched": self.negative_latched,
        }


@dataclass(frozen=True)
class CallbackTime:
    """Best-effort callback time pulled out of the contact's speech."""
    kind: str  # "specific_time" | "weekday" | "period" | "day" | "week"
    value: str
    hour: Optional[int] = None
    minute: Optional[int] = None
    meridiem: Optional[str] = None
    weekday: Optional[int] = None  # 0=Monday

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "value": self.value,
            "hour": self.hour,
            "minute": self.minute,
            "meridiem": self.meridiem,
            "weekday": self.weekday,
        }


@dataclass(frozen=True)
class InterruptionState:
    pause_active: bool = False
    pause_count: int = 0
    pause_instruction_sent: bool = False
    reschedule_detected: bool = False
    reschedule_count: int = 0
    reschedule_instruction_sent: bool = False
    preferred_callback_time: Optional[CallbackTime] = None


@dataclass(frozen=True)
class LeadInfo:
    """What we know about the lead before dialing."""
    lead_name: str = ""
    care_reason: str = ""
    care_needed_for: str = ""
    phone: str = ""
    email: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "LeadInfo":
        """Accept both camelCase and CRM-style PascalCase keys."""
        if not data:
            return cls()

        def pick(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if value:
                    return str(value).strip()
            return ""

        known = {
            "leadName", "LeadName", "PoC", "lead_name",
            "careReason", "CareReason", "care_reason",
            "careNeededFor", "CareNeededFor", "care_needed_for",
            "phone", "Phone", "number",
            "email", "Email",
        }
        return cls(
            lead_name=pick("leadName", "LeadName", "lead_name", "PoC"),
            care_reason=pick("careReason", "CareReason", "care_reason"),
            care_needed_for=pick("careNeededFor", "CareNeededFor", "care_needed_for"),
            phone=pick("phone", "Phone", "number"),
            email=pick("email", "Email"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @property
    def is_empty(self) -> bool:
        return not (self.lead_name or self.care_reason or self.care_needed_for)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leadName": self.lead_name,
            "careReason": self.care_reason,
            "careNeededFor": self.care_needed_for,
            "phone": self.phone,
            "email": self.email,
            **self.extra,
        }


@dataclass(frozen=True)
class CallRecord:
    """State of one telephony leg."""
    call_id: str
    role: Optional[LegRole] = None
    status: LegStatus = LegStatus.INITIATED
    linked_call_id: Optional[str] = None
    lead_info: LeadInfo = field(default_factory=LeadInfo)

    # Signals
    answered_by_machine: Optional[bool] = None
    amd_classification: Optional[str] = None
    transcript_turns: Tuple[TranscriptTurn, ...] = ()
    derived_intent: Optional[DerivedIntent] = None
    interruption: InterruptionState = field(default_factory=InterruptionState)
    conversation_id: Optional[str] = None

    # Bridging
    conference_room_id: Optional[str] = None
    joined: bool = False
    bridge_complete: bool = False
    bridge_failed: bool = False
    bridge_attempt_started_at: Optional[float] = None

    # Follow-up
    agent_unavailable_notice_sent: bool = False
    needs_follow_up: bool = False

    created_at: float = field(default_factory=time.time)

    @property
    def is_contact(self) -> bool:
        return self.role == LegRole.CONTACT

    @property
    def is_agent(self) -> bool:
        return self.role == LegRole.AGENT

    @property
    def contact_turn_count(self) -> int:
        return sum(1 for turn in self.transcript_turns if turn.speaker == Speaker.CONTACT)

    @property
    def bridge_settled(self) -> bool:
        """The bridge reached a terminal outcome."""
        return self.bridge_complete or self.bridge_failed

    @property
    def bridge_pending(self) -> bool:
        """Commands were issued and the outcome is still open."""
        return self.bridge_attempt_started_at is not None and not self.bridge_settled
