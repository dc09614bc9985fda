"""Rate limiting schemas - action records, ledgers and decisions."""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class ActionRecord(BaseModel):
    """Immutable record of one performed rate-limited action."""
    record_id: str = Field(default_factory=lambda: f"act_{uuid4().hex[:12]}")
    actor_id: str
    target_id: Optional[str] = None
    action_type: str
    action_timestamp: datetime


class LedgerEntry(BaseModel):
    """One action inside an actor's rolling ledger."""
    target_id: Optional[str] = None
    at: datetime


class ActionLedger(BaseModel):
    """Rolling window of recent actions for one (actor, action type).
    
    Updated only by compare-and-set on ``version``; version 0 means
    the ledger has never been written.
    """
    actor_id: str
    action_type: str
    entries: List[LedgerEntry] = Field(default_factory=list)
    version: int = Field(default=0, ge=0)


class RateLimitDecision(BaseModel):
    """Outcome of a rate-limit check. Only the first failing check is reported."""
    allowed: bool
    action_type: str
    reason: Optional[str] = None
    code: Optional[str] = None
    remaining: Optional[int] = Field(default=None, ge=0, description="Further actions allowed by the tightest count limit")
    retry_after_seconds: Optional[float] = None


class ChurnStats(BaseModel):
    """Follow/unfollow churn summary for one actor."""
    actor_id: str
    window_hours: int
    total_actions: int = 0
    unique_targets: int = 0
    churn_targets: List[str] = Field(default_factory=list)
    churn_severity: str = "none"
    
    @property
    def churn_target_count(self) -> int:
        return len(self.churn_targets)
