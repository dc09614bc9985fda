"""Audit event schema - immutable security-relevant record."""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from veilguard.core.types import Severity


class AuditEvent(BaseModel):
    """A single append-only audit record.
    
    ``entry_hash`` is a SHA-256 digest over every other field and lets
    readers detect a record that was modified after it was written.
    """
    event_id: str = Field(
        default_factory=lambda: f"evt_{uuid4().hex[:16]}",
        description="Unique event identifier"
    )
    device_token: Optional[str] = Field(default=None)
    persona_id: Optional[str] = Field(default=None)
    event_type: str = Field(..., description="Event type, see AuditEventType")
    severity: Severity = Field(default=Severity.INFO)
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    created_at: datetime = Field(..., description="When the event happened")
    entry_hash: Optional[str] = Field(default=None, description="SHA-256 of the content")
    
    def compute_hash(self) -> str:
        """Compute the content hash (excluding ``entry_hash`` itself)."""
        content = self.model_dump(mode="json", exclude={"entry_hash"})
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    
    def with_hash(self) -> "AuditEvent":
        return self.model_copy(update={"entry_hash": self.compute_hash()})
    
    def verify(self) -> bool:
        return self.entry_hash is not None and self.entry_hash == self.compute_hash()
