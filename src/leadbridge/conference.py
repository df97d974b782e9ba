"""
Conference Join Monitor.

Tracks participant join/leave callbacks for the bridge room, declares the
bridge complete once both legs are in, and runs the deadline check that turns
a stalled attempt into an explicit failure with a corrective command.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import structlog

from src.leadbridge.events import ConferenceEvent
from src.leadbridge.orchestrator import BridgeOrchestrator
from src.leadbridge.records import CallRecord
from src.leadbridge.store import CallRecordStore

logger = structlog.get_logger(__name__)

LeadHook = Callable[[CallRecord], Awaitable[None]]


class DeadlineOutcome(str, Enum):
    UNKNOWN_LEAD = "unknown_lead"
    ALREADY_COMPLETE = "already_complete"
    ALREADY_FAILED = "already_failed"
    CONTACT_MISSING = "contact_missing"
    AGENT_MISSING = "agent_missing"


class ConferenceJoinMonitor:
    def __init__(
        self,
        store: CallRecordStore,
        orchestrator: BridgeOrchestrator,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.stats = orchestrator.stats
        self.clock = clock
        self._sleep = sleep
        self._deadline_tasks: Dict[str, asyncio.Task] = {}

        # Called with the contact record once the bridge completes.
        self.on_bridge_complete: Optional[LeadHook] = None
        # Called with the contact record once the bridge completes or fails.
        self.on_settled: Optional[LeadHook] = None

        orchestrator.schedule_deadline = self.schedule_deadline

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------

    async def handle_event(self, event: ConferenceEvent) -> Optional[CallRecord]:
        record = self.store.get(event.call_id)
        if record is None:
            logger.info("Conference event for unknown call", call_id=event.call_id, room_id=event.room_id)
            return None
        if record.conference_room_id != event.room_id:
            logger.warning(
                "Conference event room mismatch",
                call_id=event.call_id,
                room_id=event.room_id,
                expected_room_id=record.conference_room_id,
            )
            return None

        if event.action == "leave":
            updated = await self.store.update(event.call_id, lambda r: replace(r, joined=False))
            logger.info(
                "Participant left",
                call_id=event.call_id,
                room_id=event.room_id,
                bridge_complete=bool(updated and updated.bridge_complete),
            )
            return updated

        await self.store.update(event.call_id, lambda r: replace(r, joined=True))
        logger.info("Participant joined", call_id=event.call_id, room_id=event.room_id)
        await self._try_complete(event.call_id)
        return self.store.get(event.call_id)

    async def _try_complete(self, call_id: str) -> None:
        completed = False

        def complete(contact: CallRecord, agent: CallRecord):
            nonlocal completed
            if not (contact.joined and agent.joined):
                return contact, agent
            if contact.bridge_failed or agent.bridge_failed:
                return contact, agent
            if contact.bridge_complete and agent.bridge_complete:
                return contact, agent
            completed = True
            return replace(contact, bridge_complete=True), replace(agent, bridge_complete=True)

        result = await self.store.update_pair(call_id, complete)
        if not completed or result is None:
            return

        contact, agent = result
        self.stats.bridges_completed += 1
        logger.info(
            "Bridge complete",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
            room_id=contact.conference_room_id,
        )
        if self.on_bridge_complete is not None:
            await self.on_bridge_complete(contact)
        if self.on_settled is not None:
            await self.on_settled(contact)

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    def schedule_deadline(self, contact_call_id: str, agent_call_id: str, deadline: float) -> None:
        """Start the single deadline check for this attempt."""
        if contact_call_id in self._deadline_tasks:
            return
        task = asyncio.create_task(self.check_deadline(contact_call_id, agent_call_id, deadline))
        self._deadline_tasks[contact_call_id] = task
        task.add_done_callback(lambda _: self._deadline_tasks.pop(contact_call_id, None))

    async def check_deadline(self, contact_call_id: str, agent_call_id: str, deadline: float) -> DeadlineOutcome:
        while True:
            contact = self.store.get(contact_call_id)
            agent = self.store.get(agent_call_id)
            if contact is None or agent is None:
                return DeadlineOutcome.UNKNOWN_LEAD
            if contact.bridge_complete or agent.bridge_complete:
                return DeadlineOutcome.ALREADY_COMPLETE
            if contact.bridge_failed or agent.bridge_failed:
                return DeadlineOutcome.ALREADY_FAILED

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            # Woken early: wait out the same deadline, never a fresh window.
            await self._sleep(remaining)

        failed = False

        def fail(c: CallRecord, a: CallRecord):
            nonlocal failed
            if c.bridge_complete or a.bridge_complete or c.bridge_failed or a.bridge_failed:
                return c, a
            failed = True
            return replace(c, bridge_failed=True), replace(a, bridge_failed=True)

        result = await self.store.update_pair(contact_call_id, fail)
        if result is None:
            return DeadlineOutcome.UNKNOWN_LEAD
        contact, agent = result
        if not failed:
            return DeadlineOutcome.ALREADY_COMPLETE if contact.bridge_complete else DeadlineOutcome.ALREADY_FAILED

        self.stats.bridges_failed += 1
        logger.warning(
            "Bridge join deadline passed",
            contact_call_id=contact.call_id,
            agent_call_id=agent.call_id,
            contact_joined=contact.joined,
            agent_joined=agent.joined,
        )

        if not contact.joined:
            await self.orchestrator.fallback_contact_missing(contact, agent)
            outcome = DeadlineOutcome.CONTACT_MISSING
        else:
            await self.orchestrator.fallback_agent_missing(contact, agent)
            outcome = DeadlineOutcome.AGENT_MISSING

        if self.on_settled is not None:
            settled = self.store.get(contact.call_id)
            if settled is not None:
                await self.on_settled(settled)
        return outcome

    async def close(self) -> None:
        tasks = list(self._deadline_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._deadline_tasks.clear()
