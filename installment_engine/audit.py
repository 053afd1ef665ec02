"""
Audit Trail Module

Append-only record of plan lifecycle, payment and guarantor changes. Each
event carries the SHA-256 digest of its predecessor, so rewriting or removing
a stored event is detectable by walking the chain.
"""

import hashlib
import json
import threading
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """What happened to the audited entity"""
    PLAN_CREATED = "plan_created"
    PLAN_COMPLETED = "plan_completed"
    PLAN_CANCELLED = "plan_cancelled"
    PLAN_DEFAULTED = "plan_defaulted"
    PLAN_AGGREGATES_REPAIRED = "plan_aggregates_repaired"
    INSTALLMENT_PAID = "installment_paid"
    GUARANTOR_ADDED = "guarantor_added"
    GUARANTOR_UPDATED = "guarantor_updated"
    GUARANTOR_REMOVED = "guarantor_removed"


def _plain(value: Any) -> Any:
    """Metadata as JSON types: money and dates become strings"""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, datetime, date)):
        return value.isoformat() if not isinstance(value, Decimal) else str(value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    event_type: AuditEventType
    entity_type: str    # plan, guarantor
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def calculate_hash(self) -> str:
        """Digest of the event content and its link to the previous event"""
        payload = [
            self.id, self.created_at.isoformat(), self.event_type.value,
            self.entity_type, self.entity_id, self.sequence,
            self.previous_hash, self.user_id, self.metadata,
        ]
        canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.calculate_hash() == self.current_hash

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), 'event_type': self.event_type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        fields = dict(data)
        fields['event_type'] = AuditEventType(fields['event_type'])
        return super().from_dict(fields)


class AuditTrail:
    """
    Sequenced, hash-linked audit log kept in one storage table.

    Appends are serialized so sequence numbers stay gapless when several
    threads log at once.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._append_lock = threading.Lock()
        # (sequence, hash, event id) of the last event this trail appended
        self._head: Optional[Tuple[int, str, str]] = None

    def _tail(self) -> Tuple[int, str]:
        if self._head is not None:
            sequence, digest, event_id = self._head
            newest = self.storage.load(self.table_name, event_id)
            # Trust the cached head only while nobody else has written
            if (newest is not None and newest.get('current_hash') == digest
                    and self.storage.count(self.table_name) == sequence):
                return sequence, digest

        stored = self.storage.load_all(self.table_name)
        if not stored:
            return 0, ""
        newest = max(stored, key=lambda e: e.get('sequence', 0))
        return newest.get('sequence', 0), newest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain.

        Args:
            event_type: What happened
            entity_type: ``plan`` or ``guarantor``
            entity_id: ID of the affected record
            metadata: Event details; Decimal and date values are stored as strings
            user_id: Who triggered the change, when known

        Returns:
            The stored event with its sequence and hash filled in
        """
        with self.storage.atomic(), self._append_lock:
            sequence, previous_hash = self._tail()
            stamp = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=stamp,
                updated_at=stamp,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=sequence + 1,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = (event.sequence, event.current_hash, event.id)
        return event

    def _load(self, records: List[Dict[str, Any]]) -> List[AuditEvent]:
        return sorted((AuditEvent.from_dict(r) for r in records), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        return self._load(self.storage.find(self.table_name, {
            'entity_type': entity_type, 'entity_id': entity_id
        }))

    def get_all_events(self) -> List[AuditEvent]:
        return self._load(self.storage.load_all(self.table_name))

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in sequence order.

        Returns:
            ``valid`` plus ``total_events``, ``hash_errors`` (events whose
            content no longer matches their digest) and ``chain_breaks``
            (events not linked to the one before them)
        """
        events = self.get_all_events()
        hash_errors = []
        chain_breaks = []

        link = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id, 'position': position,
                    'expected_hash': recomputed, 'actual_hash': event.current_hash,
                })
            if event.previous_hash != link:
                chain_breaks.append({
                    'event_id': event.id, 'position': position,
                    'expected_previous_hash': link, 'actual_previous_hash': event.previous_hash,
                })
            link = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }
