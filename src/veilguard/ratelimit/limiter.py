"""Action Rate Limiter - table-driven limits on rate-limited actions.

Each (actor, action type) pair owns an ActionLedger holding its recent
actions. Checks read the ledger; check_and_record evaluates the policy
and appends to the ledger in a single compare-and-set, so concurrent
attempts cannot both pass a limit with one slot left.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from veilguard.common.constants import AuditConstants, RateLimitConstants
from veilguard.common.exceptions import PolicyDeniedError, TransientError, ValidationError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, RiskLevel, Severity
from veilguard.data.schemas import ActionLedger, ActionRecord, LedgerEntry, RateLimitDecision
from veilguard.governance.audit.logger import AuditLogger
from veilguard.ratelimit.policies import PolicyContext, RateLimitPolicy, RateLimitPolicySet
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


AccountCreatedProvider = Callable[[str], Optional[datetime]]
OutstandingProvider = Callable[[str, str], Optional[int]]


class ActionRateLimiter:
    """Enforces rate-limit policies against per-actor ledgers."""
    
    def __init__(
        self,
        store: TrustStore,
        audit_logger: AuditLogger,
        policies: Optional[RateLimitPolicySet] = None,
        clock: Optional[Clock] = None,
        account_created_provider: Optional[AccountCreatedProvider] = None,
        outstanding_provider: Optional[OutstandingProvider] = None,
        cas_max_attempts: int = RateLimitConstants.LEDGER_CAS_MAX_ATTEMPTS,
        unpoliced_retention_days: int = AuditConstants.RETENTION_DAYS_ACTION_RECORDS,
    ):
        """Initialize rate limiter.
        
        Args:
            store: Trust store holding ledgers and action history
            audit_logger: Audit logger for denials
            policies: Policy table keyed by action type
            clock: Time source
            account_created_provider: Returns an actor's account creation time
            outstanding_provider: Returns how many resources of an action type
                an actor currently holds
            cas_max_attempts: Ledger write attempts before giving up
            unpoliced_retention_days: Ledger horizon for action types whose
                policy has no time window
        """
        self.store = store
        self.audit_logger = audit_logger
        self.policies = policies or RateLimitPolicySet()
        self.clock = clock or utc_now
        self.account_created_provider = account_created_provider
        self.outstanding_provider = outstanding_provider
        self.cas_max_attempts = cas_max_attempts
        self.unpoliced_horizon = timedelta(days=unpoliced_retention_days)
    
    def get_policy(self, action_type: str) -> RateLimitPolicy:
        return self.policies.get(action_type)
    
    def check(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> RateLimitDecision:
        """Decide whether an action would be allowed now. Does not record it.
        
        Args:
            actor_id: Persona performing the action
            target_id: Target of the action (profile, community)
            action_type: Rate-limited action type
            policy: Ad hoc policy. Defaults to the configured one.
            risk_level: Actor's current risk band, tightens count limits
            
        Returns:
            RateLimitDecision
        """
        self._require_actor(actor_id)
        policy = policy or self.get_policy(action_type)
        now = self.clock()
        ledger = self.store.get_action_ledger(actor_id, action_type)
        decision = policy.evaluate(
            ledger.entries, target_id, now, self._context(actor_id, action_type, policy, risk_level)
        )
        if not decision.allowed:
            self._on_denied(actor_id, target_id, decision)
        return decision
    
    def record(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
    ) -> ActionRecord:
        """Record a performed action without checking limits."""
        self._require_actor(actor_id)
        policy = policy or self.policies.policies.get(action_type)
        now = self.clock()
        self._append_to_ledger(actor_id, target_id, action_type, policy, now, decide=None)
        return self._append_history(actor_id, target_id, action_type, now)
    
    def check_and_record(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> RateLimitDecision:
        """Atomically check a policy and record the action if allowed.
        
        Returns:
            RateLimitDecision; ``remaining`` counts further actions after
            this one
            
        Raises:
            TransientError: If the ledger stays contended past the retry limit
        """
        self._require_actor(actor_id)
        policy = policy or self.get_policy(action_type)
        context = self._context(actor_id, action_type, policy, risk_level)
        now = self.clock()
        
        def decide(ledger: ActionLedger) -> RateLimitDecision:
            return policy.evaluate(ledger.entries, target_id, now, context)
        
        decision = self._append_to_ledger(actor_id, target_id, action_type, policy, now, decide=decide)
        if not decision.allowed:
            self._on_denied(actor_id, target_id, decision)
            return decision
        
        self._append_history(actor_id, target_id, action_type, now)
        if decision.remaining is not None:
            decision = decision.model_copy(update={"remaining": max(decision.remaining - 1, 0)})
        return decision
    
    def enforce(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> RateLimitDecision:
        """check_and_record that raises PolicyDeniedError on denial."""
        decision = self.check_and_record(actor_id, target_id, action_type, policy, risk_level)
        if not decision.allowed:
            raise PolicyDeniedError(
                decision.reason or "Action denied",
                decision.code or "rate_limited",
                {"action_type": action_type, "retry_after_seconds": decision.retry_after_seconds},
            )
        return decision
    
    # ========== INTERNALS ==========
    
    def _append_to_ledger(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy],
        now: datetime,
        decide: Optional[Callable[[ActionLedger], RateLimitDecision]],
    ) -> RateLimitDecision:
        allowed = RateLimitDecision(allowed=True, action_type=action_type)
        
        for attempt in range(1, self.cas_max_attempts + 1):
            ledger = self.store.get_action_ledger(actor_id, action_type)
            decision = decide(ledger) if decide else allowed
            if not decision.allowed:
                return decision
            
            cutoff = now - self._ledger_horizon(policy)
            entries = [e for e in ledger.entries if e.at > cutoff]
            entries.append(LedgerEntry(target_id=target_id, at=now))
            
            updated = ActionLedger(
                actor_id=actor_id,
                action_type=action_type,
                entries=entries,
                version=ledger.version + 1,
            )
            if self.store.compare_and_set_action_ledger(updated, ledger.version):
                return decision
            logger.debug(f"Ledger conflict for {actor_id}/{action_type} (attempt {attempt})")
        
        raise TransientError(
            f"Ledger for {actor_id}/{action_type} is contended",
            operation="check_and_record",
            details={"attempts": self.cas_max_attempts},
        )
    
    def _ledger_horizon(self, policy: Optional[RateLimitPolicy]) -> timedelta:
        if policy is not None and policy.horizon.total_seconds() > 0:
            return policy.horizon
        return self.unpoliced_horizon
    
    def _append_history(
        self, actor_id: str, target_id: Optional[str], action_type: str, now: datetime
    ) -> ActionRecord:
        record = ActionRecord(
            actor_id=actor_id,
            target_id=target_id,
            action_type=action_type,
            action_timestamp=now,
        )
        self.store.append_action_record(record)
        return record
    
    def _context(
        self,
        actor_id: str,
        action_type: str,
        policy: RateLimitPolicy,
        risk_level: Optional[RiskLevel],
    ) -> PolicyContext:
        context = PolicyContext(risk_level=risk_level)
        if policy.needs_account_age and self.account_created_provider is not None:
            created_at = self.account_created_provider(actor_id)
            if created_at is not None:
                age = self.clock() - created_at
                context.account_age_days = age.total_seconds() / 86400
        if policy.needs_outstanding and self.outstanding_provider is not None:
            context.outstanding_count = self.outstanding_provider(actor_id, action_type)
        return context
    
    def _on_denied(self, actor_id: str, target_id: Optional[str], decision: RateLimitDecision) -> None:
        logger.info(f"Rate limit denied {decision.action_type} for {actor_id}: {decision.code}")
        self.audit_logger.log(
            AuditEventType.RATE_LIMIT_DENIED,
            Severity.INFO,
            persona_id=actor_id,
            details={
                "action_type": decision.action_type,
                "target_id": target_id,
                "code": decision.code,
                "reason": decision.reason,
                "retry_after_seconds": decision.retry_after_seconds,
            },
        )
    
    @staticmethod
    def _require_actor(actor_id: str) -> None:
        if not actor_id:
            raise ValidationError("actor_id is required")
