"""
Call Record Store.

Single source of truth for per-leg state. Every mutation replaces the stored
record with a new frozen value while holding that call id's lock, so merges
for one leg are serialized and merges for different legs run in parallel.
Operations touching both legs of a lead take both locks in sorted order.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

import structlog

from src.leadbridge.records import CallRecord, LeadInfo, LegRole

logger = structlog.get_logger(__name__)

RecordFn = Callable[[CallRecord], CallRecord]
PairPredicate = Callable[[CallRecord, CallRecord], bool]


class CallRecordStore:
    """In-memory record store with per-key atomic merge."""

    def __init__(self) -> None:
        self._records: Dict[str, CallRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._records

    def _lock_for(self, call_id: str) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    @asynccontextmanager
    async def _locked(self, *call_ids: str) -> AsyncIterator[None]:
        # Sorted acquisition keeps two-key operations deadlock free.
        locks = [self._lock_for(call_id) for call_id in sorted(set(call_ids))]
        for lock in locks:
            await lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, call_id: str) -> Optional[CallRecord]:
        return self._records.get(call_id)

    def linked_record(self, call_id: str) -> Optional[CallRecord]:
        """Return the other leg of the lead, if both are known."""
        record = self._records.get(call_id)
        if record is None or not record.linked_call_id:
            return None
        return self._records.get(record.linked_call_id)

    def pair(self, call_id: str) -> Tuple[Optional[CallRecord], Optional[CallRecord]]:
        """Return (contact, agent) for the lead that owns `call_id`."""
        record = self._records.get(call_id)
        if record is None:
            return None, None
        other = self.linked_record(call_id)
        if record.role == LegRole.AGENT:
            return other, record
        return record, other

    # ------------------------------------------------------------------
    # Single-key writes
    # ------------------------------------------------------------------

    async def merge(self, call_id: str, **fields: Any) -> CallRecord:
        """
        Shallow-merge `fields` into the record, creating it if absent.

        `linked_call_id` is immutable once set; attempts to change it are
        ignored and logged.
        """
        async with self._locked(call_id):
            current = self._records.get(call_id)
            if current is None:
                current = CallRecord(call_id=call_id)
            fields = self._guard_link(current, fields)
            updated = replace(current, **fields) if fields else current
            self._records[call_id] = updated
            return updated

    async def update(self, call_id: str, fn: RecordFn) -> Optional[CallRecord]:
        """
        Atomic read-modify-write.

        `fn` receives the current record and returns the new one. Returns None
        (and does nothing) when the call id is unknown.
        """
        # Late webhooks for finished calls must not leave a lock behind.
        if call_id not in self._records:
            return None
        async with self._locked(call_id):
            current = self._records.get(call_id)
            if current is None:
                return None
            updated = fn(current)
            if updated.linked_call_id != current.linked_call_id and current.linked_call_id:
                logger.warning("Ignoring linked_call_id change", call_id=call_id)
                updated = replace(updated, linked_call_id=current.linked_call_id)
            self._records[call_id] = updated
            return updated

    async def remove(self, call_id: str) -> Optional[CallRecord]:
        async with self._locked(call_id):
            record = self._records.pop(call_id, None)
        self._locks.pop(call_id, None)
        return record

    # ------------------------------------------------------------------
    # Two-key writes
    # ------------------------------------------------------------------

    async def create_pair(
        self,
        contact_call_id: str,
        agent_call_id: str,
        *,
        lead_info: Optional[LeadInfo] = None,
    ) -> Tuple[CallRecord, CallRecord]:
        """Create (or link) both legs of a lead in one step."""
        info = lead_info or LeadInfo()
        async with self._locked(contact_call_id, agent_call_id):
            contact = self._records.get(contact_call_id) or CallRecord(call_id=contact_call_id)
            agent = self._records.get(agent_call_id) or CallRecord(call_id=agent_call_id)
            contact = replace(
                contact,
                role=LegRole.CONTACT,
                linked_call_id=contact.linked_call_id or agent_call_id,
                lead_info=info,
            )
            agent = replace(
                agent,
                role=LegRole.AGENT,
                linked_call_id=agent.linked_call_id or contact_call_id,
                lead_info=info,
            )
            self._records[contact_call_id] = contact
            self._records[agent_call_id] = agent
        logger.info(
            "Lead records created",
            contact_call_id=contact_call_id,
            agent_call_id=agent_call_id,
        )
        return contact, agent

    async def update_pair(
        self,
        call_id: str,
        fn: Callable[[CallRecord, CallRecord], Tuple[CallRecord, CallRecord]],
    ) -> Optional[Tuple[CallRecord, CallRecord]]:
        """
        Atomically mutate both legs of the lead owning `call_id`.

        `fn` receives (contact, agent) and returns the replacements. Returns
        None when either leg is unknown.
        """
        contact, agent = self.pair(call_id)
        if contact is None or agent is None:
            return None
        async with self._locked(contact.call_id, agent.call_id):
            contact = self._records.get(contact.call_id)
            agent = self._records.get(agent.call_id)
            if contact is None or agent is None:
                return None
            new_contact, new_agent = fn(contact, agent)
            self._records[contact.call_id] = new_contact
            self._records[agent.call_id] = new_agent
            return new_contact, new_agent

    async def claim_bridge_attempt(
        self,
        contact_call_id: str,
        agent_call_id: str,
        *,
        room_id: str,
        predicate: Optional[PairPredicate] = None,
        started_at: Optional[float] = None,
    ) -> bool:
        """
        Compare-and-set the bridge attempt marker on both legs.

        Succeeds only if neither leg has `bridge_attempt_started_at` set and
        `predicate(contact, agent)` still holds under both locks.
        """
        if contact_call_id not in self._records or agent_call_id not in self._records:
            return False
        async with self._locked(contact_call_id, agent_call_id):
            contact = self._records.get(contact_call_id)
            agent = self._records.get(agent_call_id)
            if contact is None or agent is None:
                return False
            if contact.bridge_attempt_started_at is not None or agent.bridge_attempt_started_at is not None:
                return False
            if predicate is not None and not predicate(contact, agent):
                return False

            stamp = started_at if started_at is not None else time.time()
            self._records[contact_call_id] = replace(
                contact, bridge_attempt_started_at=stamp, conference_room_id=room_id
            )
            self._records[agent_call_id] = replace(
                agent, bridge_attempt_started_at=stamp, conference_room_id=room_id
            )
            return True

    @staticmethod
    def _guard_link(current: CallRecord, fields: Dict[str, Any]) -> Dict[str, Any]:
        new_link = fields.get("linked_call_id")
        if new_link is not None and current.linked_call_id and new_link != current.linked_call_id:
            logger.warning(
                "Ignoring linked_call_id change",
                call_id=current.call_id,
                linked_call_id=current.linked_call_id,
                attempted=new_link,
            )
            fields = {k: v for k, v in fields.items() if k != "linked_call_id"}
        return fields
