"""
Bridge Orchestrator.

Issues the bridge command pair at most once per lead, and the corrective
commands when a bridge attempt fails. Provider failures are logged and never
retried; the join deadline drives the lead to a terminal outcome regardless.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from src.leadbridge import prompts, twiml
from src.leadbridge.config import Config, get_config
from src.leadbridge.intents import IntentPolicy
from src.leadbridge.readiness import ReadinessVerdict, evaluate_readiness
from src.leadbridge.records import CallRecord, LegStatus
from src.leadbridge.store import CallRecordStore
from src.leadbridge.telephony import TelephonyClient, TelephonyError

logger = structlog.get_logger(__name__)

# (contact_call_id, agent_call_id, deadline) -> None
DeadlineScheduler = Callable[[str, str, float], None]


@dataclass
class BridgeStats:
    """Counters surfaced on /metrics."""
    leads_started: int = 0
    leads_finished: int = 0
    bridge_attempts: int = 0
    bridges_completed: int = 0
    bridges_failed: int = 0
    command_failures: int = 0
    voicemails: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leads_started": self.leads_started,
            "leads_finished": self.leads_finished,
            "bridge_attempts": self.bridge_attempts,
            "bridges_completed": self.bridges_completed,
            "bridges_failed": self.bridges_failed,
            "command_failures": self.command_failures,
            "voicemails": self.voicemails,
        }


class BridgeOrchestrator:
    def __init__(
        self,
        store: CallRecordStore,
        telephony: TelephonyClient,
        *,
        config: Optional[Config] = None,
        policy: Optional[IntentPolicy] = None,
        stats: Optional[BridgeStats] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.telephony = telephony
        self.config = config or get_config()
        self.policy = policy or IntentPolicy.from_config(self.config)
        self.stats = stats or BridgeStats()
        self.clock = clock
        self.schedule_deadline: Optional[DeadlineScheduler] = None

    def evaluate(self, contact: Optional[CallRecord], agent: Optional[CallRecord]) -> ReadinessVerdict:
        return evaluate_readiness(
            contact,
            agent,
            policy=self.policy,
            min_contact_turns=self.config.min_contact_turns,
        )

    async def maybe_bridge(self, call_id: str) -> bool:
        """
        Bridge the lead owning `call_id` if it is ready.

        Returns True only for the single caller that won the claim and issued
        the command pair.
        """
        contact, agent = self.store.pair(call_id)
        verdict = self.evaluate(contact, agent)
        if not verdict.ready:
            logger.debug("Lead not ready to bridge", call_id=call_id, reason=verdict.reason.value)
            return False

        room_id = twiml.conference_room_id(agent.call_id)
        started_at = self.clock()
        claimed = await self.store.claim_bridge_attempt(
            contact.call_id,
            agent.call_id,
            room_id=room_id,
            predicate=lambda c, a: self.evaluate(c, a).ready,
            started_at=started_at,
        )
        if not claimed:
            logger.debug("Bridge claim lost", call_id=call_id)
            return False

        self.stats.bridge_attempts += 1
        logger.info(
            "Bridging lead",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
            room_id=room_id,
            reason=verdict.reason.value,
        )

        callback_url = self.config.conference_callback_url
        contact_doc = twiml.contact_join_twiml(
            room_id,
            status_callback_url=callback_url,
            hold_music_url=self.config.hold_music_url,
        )
        agent_doc = twiml.agent_join_twiml(
            room_id,
            announcement=prompts.sales_announcement(contact.lead_info),
            status_callback_url=callback_url,
        )
        await self._send(contact.call_id, contact_doc, "bridge_contact")
        await self._send(agent.call_id, agent_doc, "bridge_agent")

        if self.schedule_deadline is not None:
            self.schedule_deadline(
                contact.call_id,
                agent.call_id,
                started_at + self.config.join_timeout_seconds,
            )
        return True

    async def _send(self, call_id: str, document: str, purpose: str) -> bool:
        try:
            await self.telephony.update_call(call_id, document)
            return True
        except TelephonyError as e:
            self.stats.command_failures += 1
            logger.error("Bridge command failed", call_id=call_id, purpose=purpose, error=str(e))
            return False

    async def hangup_leg(self, record: CallRecord, purpose: str) -> bool:
        call_id = record.call_id
        try:
            await self.telephony.hangup(call_id)
            return True
        except TelephonyError as e:
            self.stats.command_failures += 1
            logger.error("Hangup failed", call_id=call_id, purpose=purpose, error=str(e))
            return False

    # ------------------------------------------------------------------
    # Corrective commands
    # ------------------------------------------------------------------

    async def fallback_contact_missing(self, contact: CallRecord, agent: CallRecord) -> None:
        """The contact never made it into the room: release the agent."""
        logger.warning(
            "Contact missing from bridge",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
        )
        await self.store.merge(contact.call_id, needs_follow_up=True)
        if agent.status.is_terminal:
            return
        await self._send(agent.call_id, twiml.say_then_hangup_twiml(prompts.CONTACT_MISSING_NOTICE), "contact_missing")

    async def fallback_agent_missing(self, contact: CallRecord, agent: CallRecord) -> None:
        """The agent never made it: send the contact back to the conversational agent."""
        logger.warning(
            "Agent missing from bridge",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
        )
        await self.store.merge(agent.call_id, needs_follow_up=True)
        if contact.status.is_terminal:
            return
        document = twiml.reconnect_stream_twiml(
            self.config.media_stream_url,
            apology=prompts.AGENT_MISSING_APOLOGY,
            call_id=contact.call_id,
        )
        await self._send(contact.call_id, document, "agent_missing")

    async def end_abandoned_leg(self, record: CallRecord) -> None:
        """
        End a leg whose partner is gone.

        An answered leg hears a short goodbye (the sales agent is told the lead
        left); a leg still ringing is cancelled.
        """
        if record.status.is_terminal:
            return
        logger.info("Ending abandoned leg", call_id=record.call_id, role=record.role, status=record.status.value)
        if record.status == LegStatus.IN_PROGRESS:
            notice = prompts.AGENT_LEAD_LEFT_NOTICE if record.is_agent else prompts.ABANDONED_LEG_NOTICE
            await self._send(record.call_id, twiml.say_then_hangup_twiml(notice), "abandoned_leg")
        else:
            await self.hangup_leg(record, "abandoned_leg")

    async def notify_agent_voicemail(self, agent: CallRecord) -> None:
        """Tell the waiting sales agent the AI is leaving a voicemail, then release them."""
        logger.info("Notifying agent of voicemail", agent_call_id=agent.call_id)
        await self._send(agent.call_id, twiml.say_then_hangup_twiml(prompts.AGENT_VOICEMAIL_NOTICE), "voicemail_notice")
