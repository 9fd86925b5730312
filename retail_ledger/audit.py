"""
Audit trail

Append-only event log where every event carries the SHA-256 digest of its
predecessor. Events are written inside the caller's atomic scope: when the
surrounding operation rolls back, its events and the stored chain head go
with it.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    APPLICATION_SUBMITTED = "application_submitted"
    KYC_APPROVED = "kyc_approved"
    KYC_REJECTED = "kyc_rejected"
    ACCOUNT_OPENED = "account_opened"
    TRANSACTION_POSTED = "transaction_posted"


def _plain(value: Any) -> Any:
    """Reduce a metadata value to something json.dumps accepts"""
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the chain; ``current_hash`` seals every other field"""
    sequence: int
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def calculate_hash(self) -> str:
        payload = json.dumps(
            [
                self.sequence,
                self.id,
                self.created_at.isoformat(),
                self.event_type.value,
                self.entity_type,
                self.entity_id,
                self.metadata,
                self.previous_hash,
            ],
            sort_keys=True, separators=(',', ':')
        )
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.calculate_hash() == self.current_hash

    def to_dict(self) -> Dict[str, Any]:
        document = super().to_dict()
        document['event_type'] = self.event_type.value
        return document

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        fields = dict(data)
        for stamp in ('created_at', 'updated_at'):
            fields[stamp] = datetime.fromisoformat(fields[stamp])
        fields['event_type'] = AuditEventType(fields['event_type'])
        return cls(**fields)


class AuditTrail:
    """
    Tamper-evident log of onboarding and posting events

    The digest of the newest event is kept in ``HEAD_TABLE`` under the
    trail's table name, so appending never has to scan the log.
    """

    HEAD_TABLE = "audit_chain"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                  metadata: Optional[Dict[str, Any]] = None) -> Optional[AuditEvent]:
        """Append an event; returns None when auditing is switched off"""
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self.storage.load(self.HEAD_TABLE, self.table_name)
            stamp = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=stamp,
                updated_at=stamp,
                sequence=self.storage.next_sequence(self.table_name),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=head['hash'] if head is not None else "",
                current_hash="",
                metadata=metadata
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.HEAD_TABLE, self.table_name,
                              {'id': self.table_name, 'hash': event.current_hash})
        return event

    def _ordered(self, documents: List[Dict[str, Any]]) -> List[AuditEvent]:
        return sorted((AuditEvent.from_dict(d) for d in documents), key=lambda e: e.sequence)

    def get_all_events(self) -> List[AuditEvent]:
        return self._ordered(self.storage.load_all(self.table_name))

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        return self._ordered(self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': str(entity_id)}
        ))

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in sequence order

        Reports events whose stored digest no longer matches their content
        (``hash_errors``) and events whose back-link does not point at the
        event before them (``chain_breaks``), for instance after a deletion.
        """
        events = self.get_all_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }
