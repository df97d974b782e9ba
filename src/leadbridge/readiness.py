"""
Transfer readiness evaluation.

A pure function over the two legs of a lead. It never touches the store; the
orchestrator re-runs it under the claim lock before committing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from src.leadbridge.intents import IntentPolicy
from src.leadbridge.records import CallRecord, LegStatus

DEFAULT_MIN_CONTACT_TURNS = 3


class ReadinessReason(str, Enum):
    READY_POSITIVE_INTENT = "ready_positive_intent"
    READY_TURN_COUNT = "ready_turn_count"
    MISSING_LEG = "missing_leg"
    BRIDGE_ALREADY_ATTEMPTED = "bridge_already_attempted"
    BRIDGE_SETTLED = "bridge_settled"
    CONTACT_NOT_IN_PROGRESS = "contact_not_in_progress"
    AGENT_NOT_IN_PROGRESS = "agent_not_in_progress"
    CONTACT_IS_MACHINE = "contact_is_machine"
    AGENT_IS_MACHINE = "agent_is_machine"
    NEGATIVE_INTENT = "negative_intent"
    INSUFFICIENT_SIGNAL = "insufficient_signal"


@dataclass(frozen=True)
class ReadinessVerdict:
    ready: bool
    reason: ReadinessReason

    def __bool__(self) -> bool:
        return self.ready


def _not_ready(reason: ReadinessReason) -> ReadinessVerdict:
    return ReadinessVerdict(ready=False, reason=reason)


def evaluate_readiness(
    contact: Optional[CallRecord],
    agent: Optional[CallRecord],
    *,
    policy: Optional[IntentPolicy] = None,
    min_contact_turns: int = DEFAULT_MIN_CONTACT_TURNS,
) -> ReadinessVerdict:
    """
    Decide whether the lead should be bridged now.

    Ready iff both legs are in progress, neither answered by a machine, no
    negative intent was ever latched, and either a positive intent is latched
    or the contact has spoken at least `min_contact_turns` times. Neutral
    intents count as no signal.
    """
    policy = policy or IntentPolicy()

    if contact is None or agent is None:
        return _not_ready(ReadinessReason.MISSING_LEG)

    if any(r.bridge_complete or r.bridge_failed for r in (contact, agent)):
        return _not_ready(ReadinessReason.BRIDGE_SETTLED)
    if contact.bridge_attempt_started_at is not None or agent.bridge_attempt_started_at is not None:
        return _not_ready(ReadinessReason.BRIDGE_ALREADY_ATTEMPTED)

    if contact.status != LegStatus.IN_PROGRESS:
        return _not_ready(ReadinessReason.CONTACT_NOT_IN_PROGRESS)
    if agent.status != LegStatus.IN_PROGRESS:
        return _not_ready(ReadinessReason.AGENT_NOT_IN_PROGRESS)

    if contact.answered_by_machine is True:
        return _not_ready(ReadinessReason.CONTACT_IS_MACHINE)
    if agent.answered_by_machine is True:
        return _not_ready(ReadinessReason.AGENT_IS_MACHINE)

    intent = contact.derived_intent
    if intent is not None and (intent.negative_latched or policy.is_negative(intent.primary)):
        return _not_ready(ReadinessReason.NEGATIVE_INTENT)

    if intent is not None and policy.is_positive(intent.primary):
        return ReadinessVerdict(ready=True, reason=ReadinessReason.READY_POSITIVE_INTENT)

    if contact.contact_turn_count >= min_contact_turns:
        return ReadinessVerdict(ready=True, reason=ReadinessReason.READY_TURN_COUNT)

    return _not_ready(ReadinessReason.INSUFFICIENT_SIGNAL)
