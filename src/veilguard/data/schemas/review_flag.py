"""Review flag schema - durable request for human disposition."""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from veilguard.core.types import ReviewStatus, RiskLevel, SubjectType


class ReviewFlag(BaseModel):
    """A flagged subject awaiting (or past) review."""
    flag_id: str = Field(default_factory=lambda: f"flag_{uuid4().hex[:12]}")
    subject_id: str = Field(..., description="Device token or persona id")
    subject_type: SubjectType
    severity: RiskLevel
    reason: str = Field(..., description="Why the subject was flagged")
    flagged_at: datetime
    review_status: ReviewStatus = ReviewStatus.PENDING
    stats_snapshot: Dict[str, Any] = Field(default_factory=dict)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
