"""
Lead Coordinator.

Owns one lead's lifecycle end to end: places both calls, folds webhook events
into the Call Record Store, feeds transcript turns through the signal
extractors, asks the orchestrator to bridge whenever a relevant signal moves,
and garbage-collects finished leads into a read-only snapshot.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from src.leadbridge.agent_bridge import AgentSessionRegistry
from src.leadbridge.amd import AnsweredBy, apply_amd_latch, detect_voicemail_phrase
from src.leadbridge.conference import ConferenceJoinMonitor
from src.leadbridge.config import Config, get_config
from src.leadbridge.events import AmdEvent, ConferenceEvent, LegStatusEvent, WebhookEvent
from src.leadbridge.intents import IntentClassifier, IntentPolicy, latch_intent
from src.leadbridge.interruption import process_turn
from src.leadbridge.orchestrator import BridgeOrchestrator, BridgeStats
from src.leadbridge.records import (
    CallRecord,
    LeadInfo,
    LegStatus,
    Speaker,
    TranscriptTurn,
)
from src.leadbridge.store import CallRecordStore
from src.leadbridge.telephony import TelephonyClient, TelephonyError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LeadSnapshot:
    """Read-only view of a lead handed to downstream consumers."""
    contact_call_id: str
    agent_call_id: str
    contact_status: str
    agent_status: str
    is_voicemail: bool
    sales_team_unavailable: bool
    lead_info: LeadInfo
    transcript_turns: Tuple[TranscriptTurn, ...]
    derived_intent: Optional[Dict[str, Any]]
    conversation_id: Optional[str]
    needs_follow_up: bool
    bridge_complete: bool
    bridge_failed: bool
    preferred_callback_time: Optional[Dict[str, Any]]
    amd_classification: Optional[str] = None

    @classmethod
    def from_records(cls, contact: CallRecord, agent: CallRecord) -> "LeadSnapshot":
        callback = contact.interruption.preferred_callback_time
        return cls(
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
            contact_status=contact.status.value,
            agent_status=agent.status.value,
            is_voicemail=contact.answered_by_machine is True,
            sales_team_unavailable=contact.agent_unavailable_notice_sent,
            lead_info=contact.lead_info,
            transcript_turns=contact.transcript_turns,
            derived_intent=contact.derived_intent.to_dict() if contact.derived_intent else None,
            conversation_id=contact.conversation_id,
            needs_follow_up=contact.needs_follow_up or agent.needs_follow_up,
            bridge_complete=contact.bridge_complete,
            bridge_failed=contact.bridge_failed,
            preferred_callback_time=callback.to_dict() if callback else None,
            amd_classification=contact.amd_classification,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contactCallSid": self.contact_call_id,
            "agentCallSid": self.agent_call_id,
            "contactStatus": self.contact_status,
            "agentStatus": self.agent_status,
            "isVoicemail": self.is_voicemail,
            "salesTeamUnavailable": self.sales_team_unavailable,
            "leadInfo": self.lead_info.to_dict(),
            "transcriptTurns": [t.to_dict() for t in self.transcript_turns],
            "derivedIntent": self.derived_intent,
            "conversationId": self.conversation_id,
            "needsFollowUp": self.needs_follow_up,
            "bridgeComplete": self.bridge_complete,
            "bridgeFailed": self.bridge_failed,
            "preferredCallbackTime": self.preferred_callback_time,
            "amdClassification": self.amd_classification,
        }

    @property
    def worth_reporting(self) -> bool:
        """Downstream only cares about voicemails, missed agents and unbridged conversations."""
        return (
            self.sales_team_unavailable
            or self.is_voicemail
            or (bool(self.conversation_id) and not self.bridge_complete)
        )


SnapshotSink = Callable[[LeadSnapshot], Awaitable[None]]


async def log_snapshot_sink(snapshot: LeadSnapshot) -> None:
    logger.info(
        "Lead finished",
        worth_reporting=snapshot.worth_reporting,
        snapshot=snapshot.to_dict(),
    )


@dataclass(frozen=True)
class TurnOutcome:
    instructions: Tuple[str, ...] = ()
    voicemail_detected: bool = False
    bridged: bool = False


class LeadCoordinator:
    def __init__(
        self,
        store: Optional[CallRecordStore] = None,
        telephony: Optional[TelephonyClient] = None,
        *,
        config: Optional[Config] = None,
        policy: Optional[IntentPolicy] = None,
        sessions: Optional[AgentSessionRegistry] = None,
        snapshot_sink: Optional[SnapshotSink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or get_config()
        self.store = store or CallRecordStore()
        self.telephony = telephony or TelephonyClient(self.config)
        self.policy = policy or IntentPolicy.from_config(self.config)
        self.sessions = sessions or AgentSessionRegistry()
        self.snapshot_sink: SnapshotSink = snapshot_sink or log_snapshot_sink
        self.stats = BridgeStats()
        self.clock = clock

        self.classifier = IntentClassifier(self.policy)
        self.orchestrator = BridgeOrchestrator(
            self.store,
            self.telephony,
            config=self.config,
            policy=self.policy,
            stats=self.stats,
            clock=clock,
        )
        self.monitor = ConferenceJoinMonitor(self.store, self.orchestrator, clock=clock, sleep=sleep)
        self.monitor.on_bridge_complete = self._on_bridge_complete
        self.monitor.on_settled = self._on_settled

    # ------------------------------------------------------------------
    # Lead start
    # ------------------------------------------------------------------

    async def start_lead(
        self,
        contact_number: str,
        lead_info: Optional[LeadInfo] = None,
        *,
        agent_number: Optional[str] = None,
    ) -> Tuple[CallRecord, CallRecord]:
        """
        Dial the contact and the sales agent and link their records.

        Raises TelephonyError if either call cannot be placed; a contact call
        that was already placed is cancelled in that case.
        """
        lead_info = lead_info or LeadInfo()
        agent_number = agent_number or self.config.sales_team_phone_number
        if not agent_number:
            raise TelephonyError("No sales team number configured", operation="start_lead")

        base = self.config.base_url
        status_callback = f"{base}/webhooks/status"
        amd_callback = f"{base}/webhooks/amd"

        contact_call = await self.telephony.create_call(
            to=contact_number,
            url=f"{base}/twiml/contact",
            status_callback=status_callback,
            amd_callback=amd_callback,
        )
        try:
            agent_call = await self.telephony.create_call(
                to=agent_number,
                url=f"{base}/twiml/agent",
                status_callback=status_callback,
                amd_callback=amd_callback,
            )
        except TelephonyError:
            logger.error("Agent call failed; cancelling contact call", contact_call_id=contact_call.call_id)
            try:
                await self.telephony.hangup(contact_call.call_id)
            except TelephonyError as e:
                logger.error("Failed to cancel contact call", call_id=contact_call.call_id, error=str(e))
            raise

        contact, agent = await self.store.create_pair(
            contact_call.call_id,
            agent_call.call_id,
            lead_info=lead_info,
        )
        self.stats.leads_started += 1
        logger.info(
            "Lead started",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
            lead_name=lead_info.lead_name or None,
        )
        return contact, agent

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_event(self, event: WebhookEvent) -> None:
        if isinstance(event, LegStatusEvent):
            await self.handle_leg_status(event)
        elif isinstance(event, AmdEvent):
            await self.handle_amd(event)
        elif isinstance(event, ConferenceEvent):
            await self.monitor.handle_event(event)

    async def handle_leg_status(self, event: LegStatusEvent) -> Optional[CallRecord]:
        previous: Optional[LegStatus] = None

        def transition(record: CallRecord) -> CallRecord:
            nonlocal previous
            previous = record.status
            if record.status.is_terminal or event.status.rank <= record.status.rank:
                return record
            return replace(record, status=event.status)

        updated = await self.store.update(event.call_id, transition)
        if updated is None:
            logger.info("Status for unknown call", call_id=event.call_id, status=event.status.value)
            return None
        if updated.status == previous:
            logger.debug(
                "Ignoring stale or duplicate status",
                call_id=event.call_id,
                status=event.status.value,
                current=previous.value if previous else None,
            )
            return updated

        logger.info(
            "Leg status changed",
            call_id=updated.call_id,
            role=updated.role.value if updated.role else None,
            previous=previous.value if previous else None,
            status=updated.status.value,
        )

        if updated.status == LegStatus.IN_PROGRESS:
            await self._on_answered(updated)
        elif updated.status.is_terminal:
            await self._on_terminal(updated)
        return self.store.get(event.call_id)

    async def _on_answered(self, record: CallRecord) -> None:
        other = self.store.linked_record(record.call_id)
        if (
            record.is_agent
            and other is not None
            and other.answered_by_machine is True
            and record.bridge_attempt_started_at is None
        ):
            # Contact already went to voicemail; nobody to bridge the agent to.
            await self.orchestrator.notify_agent_voicemail(record)
            return
        await self.orchestrator.maybe_bridge(record.call_id)

    def _usefully_occupied(self, record: CallRecord) -> bool:
        if record.bridge_pending:
            return True
        return record.is_contact and self.sessions.has_live(record.call_id)

    async def _on_terminal(self, record: CallRecord) -> None:
        other = self.store.linked_record(record.call_id)
        if other is not None and not record.bridge_complete:
            await self.store.merge(other.call_id, needs_follow_up=True)
            if record.is_agent:
                await self.store.merge(other.call_id, agent_unavailable_notice_sent=True)
                logger.info("Sales agent unavailable", contact_call_id=other.call_id, agent_status=record.status.value)

            other = self.store.get(other.call_id)
            if other is not None:
                if other.is_contact:
                    await self.sessions.notify(other)
                    if other.status == LegStatus.IN_PROGRESS and not self._usefully_occupied(other):
                        await self.orchestrator.end_abandoned_leg(other)
                elif not other.status.is_terminal and not self._usefully_occupied(other):
                    await self.orchestrator.end_abandoned_leg(other)

        await self.maybe_collect(record.call_id)

    async def handle_amd(self, event: AmdEvent) -> Optional[CallRecord]:
        previous: Optional[bool] = None

        def latch(record: CallRecord) -> CallRecord:
            nonlocal previous
            previous = record.answered_by_machine
            return replace(
                record,
                answered_by_machine=apply_amd_latch(record.answered_by_machine, event.answered_by),
                amd_classification=event.answered_by.value,
            )

        updated = await self.store.update(event.call_id, latch)
        if updated is None:
            logger.info("AMD result for unknown call", call_id=event.call_id, answered_by=event.answered_by.value)
            return None

        logger.info(
            "AMD result",
            call_id=updated.call_id,
            role=updated.role.value if updated.role else None,
            answered_by=event.answered_by.value,
            answered_by_machine=updated.answered_by_machine,
        )
        if previous is not True and updated.answered_by_machine is True:
            await self._on_machine(updated)
        elif event.answered_by == AnsweredBy.HUMAN:
            await self.orchestrator.maybe_bridge(updated.call_id)
        return self.store.get(event.call_id)

    async def _on_machine(self, record: CallRecord) -> None:
        other = self.store.linked_record(record.call_id)
        if record.is_contact:
            self.stats.voicemails += 1
            contact = await self.store.merge(record.call_id, needs_follow_up=True)
            await self.sessions.notify(contact)
            if (
                other is not None
                and other.status == LegStatus.IN_PROGRESS
                and other.bridge_attempt_started_at is None
            ):
                await self.orchestrator.notify_agent_voicemail(other)
            return

        # The sales line itself went to voicemail: treat the agent as unavailable.
        logger.warning("Sales agent leg answered by machine", agent_call_id=record.call_id)
        if record.bridge_attempt_started_at is None and not record.status.is_terminal:
            await self.orchestrator.hangup_leg(record, "agent_machine")
        if other is not None:
            contact = await self.store.merge(other.call_id, agent_unavailable_notice_sent=True, needs_follow_up=True)
            await self.sessions.notify(contact)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def record_turn(self, call_id: str, speaker: Speaker, text: str) -> TurnOutcome:
        """
        Append a transcript turn and run the signal extractors on contact speech.

        Returns the one-shot instructions the agent service should receive.
        """
        text = (text or "").strip()
        if not text:
            return TurnOutcome()

        if speaker == Speaker.AGENT:
            await self.store.update(
                call_id,
                lambda r: replace(r, transcript_turns=r.transcript_turns + (TranscriptTurn(speaker, text, self.clock()),)),
            )
            return TurnOutcome()

        instructions: List[str] = []
        became_machine = False

        def apply(record: CallRecord) -> CallRecord:
            nonlocal became_machine
            instructions.clear()
            interruption = process_turn(record.interruption, text)
            intent = latch_intent(record.derived_intent, self.classifier.classify(text), self.policy)
            machine = record.answered_by_machine
            phrase = detect_voicemail_phrase(text)
            if phrase and machine is not True:
                became_machine = True
                machine = True
                logger.info("Voicemail phrase detected", call_id=record.call_id, phrase=phrase)
            for instruction in (interruption.instruction, intent.instruction):
                if instruction:
                    instructions.append(instruction)
            return replace(
                record,
                transcript_turns=record.transcript_turns + (TranscriptTurn(speaker, text, self.clock()),),
                interruption=interruption.state,
                derived_intent=intent.intent,
                answered_by_machine=machine,
            )

        updated = await self.store.update(call_id, apply)
        if updated is None:
            logger.info("Transcript for unknown call", call_id=call_id)
            return TurnOutcome()

        if became_machine:
            await self._on_machine(updated)
            return TurnOutcome(voicemail_detected=True)

        bridged = await self.orchestrator.maybe_bridge(call_id)
        return TurnOutcome(instructions=tuple(instructions), bridged=bridged)

    async def set_conversation_id(self, call_id: str, conversation_id: str) -> None:
        if not conversation_id:
            return
        await self.store.update(call_id, lambda r: replace(r, conversation_id=conversation_id))

    # ------------------------------------------------------------------
    # Bridge outcome hooks
    # ------------------------------------------------------------------

    async def _on_bridge_complete(self, contact: CallRecord) -> None:
        await self.sessions.notify(contact)

    async def _on_settled(self, contact: CallRecord) -> None:
        await self.maybe_collect(contact.call_id)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def lead_snapshot(self, call_id: str) -> Optional[LeadSnapshot]:
        contact, agent = self.store.pair(call_id)
        if contact is None or agent is None:
            return None
        return LeadSnapshot.from_records(contact, agent)

    async def maybe_collect(self, call_id: str) -> Optional[LeadSnapshot]:
        """
        Remove a finished lead and emit its snapshot.

        A lead is finished once both legs are terminal and the bridge either
        settled or was never attempted.
        """
        contact, agent = self.store.pair(call_id)
        if contact is None or agent is None:
            return None
        if not (contact.status.is_terminal and agent.status.is_terminal):
            return None
        if contact.bridge_pending or agent.bridge_pending:
            return None

        removed = await self.store.remove(contact.call_id)
        if removed is None:
            return None
        removed_agent = await self.store.remove(agent.call_id) or agent

        snapshot = LeadSnapshot.from_records(removed, removed_agent)
        self.stats.leads_finished += 1
        try:
            await self.snapshot_sink(snapshot)
        except Exception as e:
            logger.error("Snapshot sink failed", contact_call_id=removed.call_id, error=str(e))
        return snapshot

    async def close(self) -> None:
        await self.monitor.close()
        await self.sessions.close_all()
