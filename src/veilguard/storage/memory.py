"""In-memory trust store.

Thread-safe implementation used by tests and single-process deployments.
Every primitive runs under one re-entrant lock and returns copies, so
callers never share mutable state with the store.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from veilguard.core.types import ReviewStatus, Severity, SubjectType
from veilguard.data.schemas import (
    ActionLedger,
    ActionRecord,
    AnomalyScore,
    AuditEvent,
    Device,
    PersonaLink,
    ReviewFlag,
    Session,
)
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


class InMemoryTrustStore(TrustStore):
    """Process-local trust store backed by dictionaries."""
    
    def __init__(self):
        self._lock = threading.RLock()
        self._devices: Dict[str, Device] = {}
        self._persona_links: Dict[str, Dict[str, PersonaLink]] = defaultdict(dict)
        self._request_buckets: Dict[str, Dict[datetime, int]] = defaultdict(dict)
        self._sessions: Dict[str, Session] = {}
        self._events: Dict[Optional[str], List[AuditEvent]] = defaultdict(list)
        self._scores: Dict[str, List[AnomalyScore]] = defaultdict(list)
        self._ledgers: Dict[Tuple[str, str], ActionLedger] = {}
        self._actions: Dict[str, List[ActionRecord]] = defaultdict(list)
        self._flags: Dict[str, ReviewFlag] = {}
        self._open_flags: Dict[Tuple[str, str], str] = {}
        logger.info("InMemoryTrustStore initialized")
    
    # ========== DEVICES ==========
    
    def upsert_device_on_request(
        self,
        device_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> Tuple[Device, Optional[Device]]:
        with self._lock:
            previous = self._devices.get(device_token)
            if previous is None:
                device = Device(
                    device_token=device_token,
                    first_seen_at=now,
                    last_seen_at=now,
                    request_count=1,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    fingerprint=fingerprint,
                )
            else:
                update = {
                    "request_count": previous.request_count + 1,
                    "last_seen_at": max(previous.last_seen_at, now),
                }
                if ip_address is not None:
                    update["ip_address"] = ip_address
                if user_agent is not None:
                    update["user_agent"] = user_agent
                if fingerprint is not None:
                    update["fingerprint"] = fingerprint
                device = previous.model_copy(update=update)
            self._devices[device_token] = device
            return device.model_copy(), previous.model_copy() if previous else None
    
    def get_device(self, device_token: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(device_token)
            return device.model_copy() if device else None
    
    def list_devices_first_seen_since(self, since: datetime) -> List[Device]:
        with self._lock:
            return [
                d.model_copy() for d in self._devices.values()
                if d.first_seen_at >= since
            ]
    
    def increment_failed_auth(self, device_token: str, now: datetime) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None:
                return None
            device = device.model_copy(update={
                "failed_auth_count": device.failed_auth_count + 1,
                "last_failed_auth_at": now,
            })
            self._devices[device_token] = device
            return device.model_copy()
    
    def set_suspicious(self, device_token: str, value: bool) -> bool:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None or device.is_suspicious == value:
                return False
            self._devices[device_token] = device.model_copy(update={"is_suspicious": value})
            return True
    
    def revoke_device(self, device_token: str, reason: str, now: datetime) -> bool:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None or device.is_revoked:
                return False
            self._devices[device_token] = device.model_copy(update={
                "is_revoked": True,
                "revoked_at": now,
                "revoked_reason": reason,
            })
            return True
    
    def unban_device(self, device_token: str) -> bool:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None or not device.is_revoked:
                return False
            self._devices[device_token] = device.model_copy(update={
                "is_revoked": False,
                "revoked_at": None,
                "revoked_reason": None,
            })
            return True
    
    def set_active_persona_if_unset(
        self, device_token: str, persona_id: str
    ) -> Optional[str]:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None:
                return None
            if device.active_persona_id is None:
                self._devices[device_token] = device.model_copy(
                    update={"active_persona_id": persona_id}
                )
                return persona_id
            return device.active_persona_id
    
    def clear_active_persona(self, device_token: str, persona_id: str) -> bool:
        with self._lock:
            device = self._devices.get(device_token)
            if device is None or device.active_persona_id != persona_id:
                return False
            self._devices[device_token] = device.model_copy(
                update={"active_persona_id": None}
            )
            return True
    
    def add_persona_link(self, link: PersonaLink) -> None:
        with self._lock:
            self._persona_links[link.device_token].setdefault(link.persona_id, link.model_copy())
    
    def list_persona_links(self, device_token: str) -> List[PersonaLink]:
        with self._lock:
            links = self._persona_links.get(device_token, {}).values()
            return sorted((l.model_copy() for l in links), key=lambda l: l.linked_at)
    
    # ========== REQUEST COUNTERS ==========
    
    def increment_request_bucket(self, device_token: str, bucket_start: datetime) -> None:
        with self._lock:
            buckets = self._request_buckets[device_token]
            buckets[bucket_start] = buckets.get(bucket_start, 0) + 1
    
    def sum_request_buckets(self, device_token: str, since: datetime) -> int:
        with self._lock:
            buckets = self._request_buckets.get(device_token, {})
            return sum(count for start, count in buckets.items() if start >= since)
    
    def purge_request_buckets(self, before: datetime) -> int:
        removed = 0
        with self._lock:
            for buckets in self._request_buckets.values():
                stale = [start for start in buckets if start < before]
                for start in stale:
                    del buckets[start]
                removed += len(stale)
        return removed
    
    # ========== SESSIONS ==========
    
    def get_session(self, device_token: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(device_token)
            return session.model_copy() if session else None
    
    def create_session(self, session: Session) -> bool:
        with self._lock:
            if session.device_token in self._sessions:
                return False
            self._sessions[session.device_token] = session.model_copy()
            return True
    
    def compare_and_set_session(self, session: Session, expected_version: int) -> bool:
        with self._lock:
            current = self._sessions.get(session.device_token)
            if current is None or current.version != expected_version:
                return False
            self._sessions[session.device_token] = session.model_copy()
            return True
    
    # ========== AUDIT EVENTS ==========
    
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._events[event.device_token].append(event.model_copy())
    
    def list_audit_events(
        self,
        device_token: str,
        since: Optional[datetime] = None,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = [
                e.model_copy() for e in self._events.get(device_token, [])
                if (since is None or e.created_at >= since)
                and (event_types is None or e.event_type in event_types)
            ]
        return events[:limit] if limit is not None else events
    
    def purge_audit_events(self, severity: Severity, before: datetime) -> int:
        removed = 0
        with self._lock:
            for key, events in self._events.items():
                kept = [
                    e for e in events
                    if not (e.severity == severity and e.created_at < before)
                ]
                removed += len(events) - len(kept)
                self._events[key] = kept
        return removed
    
    # ========== ANOMALY SCORES ==========
    
    def put_anomaly_score(self, score: AnomalyScore) -> None:
        with self._lock:
            self._scores[score.device_token].append(score.model_copy())
    
    def get_latest_anomaly_score(self, device_token: str) -> Optional[AnomalyScore]:
        with self._lock:
            scores = self._scores.get(device_token)
            return scores[-1].model_copy() if scores else None
    
    def list_anomaly_scores(self, device_token: str, limit: Optional[int] = None) -> List[AnomalyScore]:
        with self._lock:
            scores = [s.model_copy() for s in reversed(self._scores.get(device_token, []))]
        return scores[:limit] if limit is not None else scores
    
    def purge_anomaly_scores(self, before: datetime) -> int:
        removed = 0
        with self._lock:
            for token, scores in self._scores.items():
                if not scores:
                    continue
                latest = scores[-1]
                kept = [s for s in scores[:-1] if s.created_at >= before] + [latest]
                removed += len(scores) - len(kept)
                self._scores[token] = kept
        return removed
    
    # ========== RATE LIMITING ==========
    
    def get_action_ledger(self, actor_id: str, action_type: str) -> ActionLedger:
        with self._lock:
            ledger = self._ledgers.get((actor_id, action_type))
            if ledger is None:
                return ActionLedger(actor_id=actor_id, action_type=action_type)
            return ledger.model_copy(deep=True)
    
    def compare_and_set_action_ledger(self, ledger: ActionLedger, expected_version: int) -> bool:
        key = (ledger.actor_id, ledger.action_type)
        with self._lock:
            current = self._ledgers.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._ledgers[key] = ledger.model_copy(deep=True)
            return True
    
    def append_action_record(self, record: ActionRecord) -> None:
        with self._lock:
            self._actions[record.actor_id].append(record.model_copy())
    
    def list_action_records(
        self,
        actor_id: str,
        since: datetime,
        action_types: Optional[Sequence[str]] = None,
    ) -> List[ActionRecord]:
        with self._lock:
            records = [
                r.model_copy() for r in self._actions.get(actor_id, [])
                if r.action_timestamp >= since
                and (action_types is None or r.action_type in action_types)
            ]
        return sorted(records, key=lambda r: r.action_timestamp)
    
    def list_actors_with_actions(
        self, since: datetime, action_types: Sequence[str]
    ) -> List[str]:
        with self._lock:
            return sorted(
                actor for actor, records in self._actions.items()
                if any(
                    r.action_timestamp >= since and r.action_type in action_types
                    for r in records
                )
            )
    
    def purge_action_records(self, before: datetime) -> int:
        removed = 0
        with self._lock:
            for actor, records in self._actions.items():
                kept = [r for r in records if r.action_timestamp >= before]
                removed += len(records) - len(kept)
                self._actions[actor] = kept
        return removed
    
    # ========== REVIEW FLAGS ==========
    
    def create_flag_if_no_open(self, flag: ReviewFlag) -> Tuple[ReviewFlag, bool]:
        key = (flag.subject_type.value, flag.subject_id)
        with self._lock:
            existing_id = self._open_flags.get(key)
            if existing_id is not None:
                return self._flags[existing_id].model_copy(), False
            self._flags[flag.flag_id] = flag.model_copy()
            self._open_flags[key] = flag.flag_id
            return flag.model_copy(), True
    
    def get_flag(self, flag_id: str) -> Optional[ReviewFlag]:
        with self._lock:
            flag = self._flags.get(flag_id)
            return flag.model_copy() if flag else None
    
    def get_open_flag(self, subject_type: SubjectType, subject_id: str) -> Optional[ReviewFlag]:
        with self._lock:
            flag_id = self._open_flags.get((subject_type.value, subject_id))
            return self._flags[flag_id].model_copy() if flag_id else None
    
    def close_flag(self, flag: ReviewFlag) -> bool:
        key = (flag.subject_type.value, flag.subject_id)
        with self._lock:
            current = self._flags.get(flag.flag_id)
            if current is None or not current.review_status.is_open:
                return False
            self._flags[flag.flag_id] = flag.model_copy()
            if self._open_flags.get(key) == flag.flag_id:
                del self._open_flags[key]
            return True
    
    def list_flags(
        self, status: ReviewStatus, limit: Optional[int] = None
    ) -> List[ReviewFlag]:
        with self._lock:
            flags = sorted(
                (f.model_copy() for f in self._flags.values() if f.review_status == status),
                key=lambda f: f.flagged_at,
                reverse=True,
            )
        return flags[:limit] if limit is not None else flags
    
    def count_flags_by_status(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in ReviewStatus}
            for flag in self._flags.values():
                counts[flag.review_status.value] += 1
            return counts
    
    def purge_closed_flags(self, before: datetime) -> int:
        with self._lock:
            stale = [
                flag_id for flag_id, f in self._flags.items()
                if not f.review_status.is_open
                and (f.reviewed_at or f.flagged_at) < before
            ]
            for flag_id in stale:
                del self._flags[flag_id]
            return len(stale)
