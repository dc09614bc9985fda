"""Rate-limit policy table.

Every rate-limited feature (follows, device rotation, ownership transfer,
API calls) is described by one RateLimitPolicy: an ordered list of checks
evaluated first to last. The first failing check decides the outcome.
"""

from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, Field, model_validator

from veilguard.common.exceptions import ConfigurationError, ValidationError
from veilguard.core.types import RiskLevel
from veilguard.data.schemas import LedgerEntry, RateLimitDecision


class CheckKind(str, Enum):
    """Kinds of policy check."""
    WINDOW_COUNT = "window_count"   # at most max_count actions per window
    COOLDOWN = "cooldown"           # minimum gap since the most recent action
    ACCOUNT_AGE = "account_age"     # actor must be at least N days old
    OUTSTANDING = "outstanding"     # at most max_count currently held resources


class CheckScope(str, Enum):
    """Which ledger entries a check counts."""
    TUPLE = "tuple"   # same (actor, target, action type)
    ACTOR = "actor"   # same (actor, action type), any target


class PolicyCheck(BaseModel):
    """One check of a policy."""
    code: str = Field(..., description="Machine-checkable code reported on denial")
    kind: CheckKind
    scope: CheckScope = CheckScope.ACTOR
    window_seconds: Optional[int] = Field(default=None, gt=0)
    max_count: Optional[int] = Field(default=None, ge=0)
    cooldown_seconds: Optional[float] = Field(default=None, gt=0)
    min_account_age_days: Optional[int] = Field(default=None, ge=0)
    reason: str = Field(..., description="Human-readable reason; may use {max_count}, {min_account_age_days}, {account_age_days}")
    
    @model_validator(mode="after")
    def _check_required_fields(self) -> "PolicyCheck":
        required = {
            CheckKind.WINDOW_COUNT: ("window_seconds", "max_count"),
            CheckKind.COOLDOWN: ("cooldown_seconds",),
            CheckKind.ACCOUNT_AGE: ("min_account_age_days",),
            CheckKind.OUTSTANDING: ("max_count",),
        }[self.kind]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(f"check '{self.code}' ({self.kind.value}) requires {', '.join(missing)}")
        return self
    
    @property
    def horizon_seconds(self) -> float:
        return float(self.window_seconds or self.cooldown_seconds or 0)


class PolicyContext(BaseModel):
    """Facts about the actor supplied by external collaborators."""
    account_age_days: Optional[float] = None
    outstanding_count: Optional[int] = None
    risk_level: Optional[RiskLevel] = None


class RateLimitPolicy(BaseModel):
    """Ordered checks for one action type."""
    action_type: str
    checks: List[PolicyCheck] = Field(default_factory=list)
    risk_tightening: Dict[RiskLevel, float] = Field(
        default_factory=dict,
        description="Multiplier applied to window counts for actors in a risk band",
    )
    
    @property
    def horizon(self) -> timedelta:
        """Oldest ledger entry any check can still look at."""
        seconds = max((c.horizon_seconds for c in self.checks), default=0.0)
        return timedelta(seconds=seconds)
    
    @property
    def needs_account_age(self) -> bool:
        return any(c.kind == CheckKind.ACCOUNT_AGE for c in self.checks)
    
    @property
    def needs_outstanding(self) -> bool:
        return any(c.kind == CheckKind.OUTSTANDING for c in self.checks)
    
    @classmethod
    def tuple_limit(
        cls,
        action_type: str,
        window_seconds: int,
        max_count: int,
        cooldown_seconds: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> "RateLimitPolicy":
        """Ad hoc per-(actor, target, action type) policy."""
        checks = [PolicyCheck(
            code="churn_detected",
            kind=CheckKind.WINDOW_COUNT,
            scope=CheckScope.TUPLE,
            window_seconds=window_seconds,
            max_count=max_count,
            reason=reason or f"Too many {action_type} actions on this target. Please wait before trying again.",
        )]
        if cooldown_seconds:
            checks.append(PolicyCheck(
                code="cooldown",
                kind=CheckKind.COOLDOWN,
                scope=CheckScope.TUPLE,
                cooldown_seconds=cooldown_seconds,
                reason=f"Please wait before repeating this {action_type} action",
            ))
        return cls(action_type=action_type, checks=checks)
    
    def effective_max(self, check: PolicyCheck, risk_level: Optional[RiskLevel]) -> int:
        factor = self.risk_tightening.get(risk_level) if risk_level else None
        if factor is None or check.max_count == 0:
            return check.max_count
        return max(1, int(check.max_count * factor))
    
    def evaluate(
        self,
        entries: Sequence[LedgerEntry],
        target_id: Optional[str],
        now: datetime,
        context: Optional[PolicyContext] = None,
    ) -> RateLimitDecision:
        """Evaluate checks in order against an actor's ledger.
        
        Args:
            entries: Ledger entries for (actor, action type)
            target_id: Target of the attempted action
            now: Evaluation time
            context: Account age, outstanding count and risk band
            
        Returns:
            Decision carrying the first failing check, or the remaining
            allowance of the tightest count check when allowed
        """
        context = context or PolicyContext()
        remaining: Optional[int] = None
        
        for check in self.checks:
            scoped = [
                e for e in entries
                if check.scope == CheckScope.ACTOR or e.target_id == target_id
            ]
            
            if check.kind == CheckKind.WINDOW_COUNT:
                limit = self.effective_max(check, context.risk_level)
                window_start = now - timedelta(seconds=check.window_seconds)
                in_window = sorted(e.at for e in scoped if e.at > window_start)
                if len(in_window) >= limit:
                    retry_after = None
                    if in_window:
                        index = len(in_window) - limit
                        retry_after = (in_window[index] + timedelta(seconds=check.window_seconds) - now).total_seconds()
                    return self._deny(check, retry_after, max_count=limit)
                left = limit - len(in_window)
                remaining = left if remaining is None else min(remaining, left)
            
            elif check.kind == CheckKind.COOLDOWN:
                if scoped:
                    last = max(e.at for e in scoped)
                    elapsed = (now - last).total_seconds()
                    if elapsed < check.cooldown_seconds:
                        return self._deny(check, check.cooldown_seconds - elapsed)
            
            elif check.kind == CheckKind.ACCOUNT_AGE:
                age = context.account_age_days
                if age is None or age < check.min_account_age_days:
                    return self._deny(check, None, account_age_days=int(age or 0))
            
            elif check.kind == CheckKind.OUTSTANDING:
                held = context.outstanding_count
                if held is None or held >= check.max_count:
                    return self._deny(check, None, max_count=check.max_count)
        
        return RateLimitDecision(allowed=True, action_type=self.action_type, remaining=remaining)
    
    def _deny(self, check: PolicyCheck, retry_after: Optional[float], **values) -> RateLimitDecision:
        fields = {
            "max_count": check.max_count,
            "min_account_age_days": check.min_account_age_days,
            "account_age_days": 0,
        }
        fields.update(values)
        return RateLimitDecision(
            allowed=False,
            action_type=self.action_type,
            reason=check.reason.format(**fields),
            code=check.code,
            remaining=0,
            retry_after_seconds=max(retry_after, 0.0) if retry_after is not None else None,
        )


class RateLimitPolicySet(BaseModel):
    """All policies, keyed by action type."""
    version: str = "1.0.0"
    policies: Dict[str, RateLimitPolicy] = Field(default_factory=dict)
    
    @model_validator(mode="before")
    @classmethod
    def _inject_action_types(cls, data):
        if isinstance(data, dict) and isinstance(data.get("policies"), dict):
            data = dict(data)
            data["policies"] = {
                name: {"action_type": name, **policy} if isinstance(policy, dict) else policy
                for name, policy in data["policies"].items()
            }
        return data
    
    def get(self, action_type: str) -> RateLimitPolicy:
        """Policy for an action type.
        
        Raises:
            ValidationError: If no policy is configured for the action type
        """
        policy = self.policies.get(action_type)
        if policy is None:
            raise ValidationError(
                f"No rate-limit policy for action type '{action_type}'",
                {"action_type": action_type, "known": sorted(self.policies)},
            )
        return policy


def load_policies(path: Union[str, Path]) -> RateLimitPolicySet:
    """Load the policy table from YAML.
    
    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the file does not validate
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")
    
    with open(path, "r") as f:
        raw_config = yaml.safe_load(f) or {}
    
    try:
        return RateLimitPolicySet.model_validate(raw_config)
    except ValueError as e:
        raise ConfigurationError(f"Invalid rate-limit policies in {path}: {e}")
