"""Trust Service - single entry point for feature code.

Composes the registry, sessions, anomaly detector, rate limiter, audit
logger and review queue, and runs the per-request control flow:

    resolve device -> validate/refresh session -> opportunistic scoring

Rate-limited features call check_rate_limit / check_and_record before
performing their write.

Every check runs under a time budget. Session and revocation checks
fail closed; anomaly scoring is advisory and fails open.
"""

import atexit
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from veilguard.common.config import Config, get_config
from veilguard.common.constants import DataConstants, PerformanceConstants
from veilguard.common.exceptions import (
    NotFoundError,
    PolicyDeniedError,
    RevokedError,
    TransientError,
)
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, ReviewStatus, RiskLevel, SessionState, Severity
from veilguard.data.schemas import (
    ActionRecord,
    AnomalyScore,
    AuditEvent,
    ChurnStats,
    Device,
    RateLimitDecision,
    ReviewFlag,
    SessionStatus,
)
from veilguard.detection import AnomalyDetector, AnomalyThresholds, load_thresholds
from veilguard.governance.audit import AuditLogger
from veilguard.governance.retention import RetentionSweeper
from veilguard.governance.review import FlagCallback, ReviewQueue
from veilguard.ratelimit import (
    ActionRateLimiter,
    ChurnDetector,
    RateLimitPolicy,
    RateLimitPolicySet,
    load_policies,
)
from veilguard.registry import DeviceRegistry, TokenValidator
from veilguard.service.collaborators import ProfileDirectory
from veilguard.sessions import SessionManager
from veilguard.storage import TrustStore, create_trust_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEVICE_ROTATION = "device_rotation"


# Module-level shared executor for budgeted checks
_shared_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_shared_executor(max_workers: int = PerformanceConstants.EXECUTOR_MAX_WORKERS) -> ThreadPoolExecutor:
    """Get or create the shared thread pool executor."""
    global _shared_executor
    with _executor_lock:
        if _shared_executor is None:
            _shared_executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="veilguard_check_",
            )
            atexit.register(_shutdown_shared_executor)
        return _shared_executor


def _shutdown_shared_executor() -> None:
    global _shared_executor
    if _shared_executor is not None:
        _shared_executor.shutdown(wait=False)
        _shared_executor = None


class RequestOutcome(BaseModel):
    """Result of running an inbound request through the trust layer."""
    device_token: str
    persona_ids: List[str] = Field(default_factory=list)
    request_count: int = 0
    session_valid: bool = False
    session_state: Optional[SessionState] = None
    expires_at: Optional[datetime] = None
    refreshed: bool = False
    is_suspicious: bool = False
    anomaly_score: Optional[AnomalyScore] = None


class TrustService:
    """Facade over the trust layer components."""

    def __init__(
        self,
        store: TrustStore,
        thresholds: Optional[AnomalyThresholds] = None,
        policies: Optional[RateLimitPolicySet] = None,
        profile_directory: Optional[ProfileDirectory] = None,
        on_flag: Optional[FlagCallback] = None,
        clock: Optional[Clock] = None,
        config: Optional[Config] = None,
        check_budget_seconds: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize the service.

        Args:
            store: Trust store shared by all components
            thresholds: Anomaly rule table
            policies: Rate-limit policy table
            profile_directory: Profile lookups (persona, account age, owned resources)
            on_flag: Notification callback for new review flags
            clock: Time source
            config: Configuration. Uses the global config if not provided.
            check_budget_seconds: Per-check time budget. None disables budgets.
            executor: Executor for budgeted checks. Defaults to a shared pool.
        """
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.store = store
        self.profile_directory = profile_directory
        self.check_budget_seconds = check_budget_seconds
        self._executor = executor

        self.audit_logger = AuditLogger(store, clock=self.clock)
        self.registry = DeviceRegistry(
            store,
            self.audit_logger,
            validator=TokenValidator(
                pattern=self.config.token_pattern,
                denylist=self.config.token_denylist,
            ),
            clock=self.clock,
        )
        self.sessions = SessionManager(
            store,
            self.registry,
            self.audit_logger,
            clock=self.clock,
            default_timeout_hours=self.config.session_timeout_hours,
            refresh_ahead_seconds=self.config.refresh_ahead_seconds,
            debounce_seconds=self.config.refresh_debounce_seconds,
        )
        self.review_queue = ReviewQueue(store, self.audit_logger, clock=self.clock, on_flag=on_flag)
        self.detector = AnomalyDetector(
            store,
            self.registry,
            self.audit_logger,
            thresholds=thresholds,
            review_queue=self.review_queue,
            clock=self.clock,
            every_n_requests=self.config.anomaly_every_n_requests,
        )
        self.rate_limiter = ActionRateLimiter(
            store,
            self.audit_logger,
            policies=policies,
            clock=self.clock,
            account_created_provider=profile_directory.account_created_at if profile_directory else None,
            outstanding_provider=profile_directory.owned_count if profile_directory else None,
        )
        self.churn_detector = ChurnDetector(store, self.review_queue, self.audit_logger, clock=self.clock)
        self.retention = RetentionSweeper(store, self.audit_logger, clock=self.clock)

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        store: Optional[TrustStore] = None,
        **kwargs
    ) -> "TrustService":
        """Build a service from configuration and the YAML rule tables."""
        config = config or get_config()
        store = store or create_trust_store(config)

        thresholds = kwargs.pop("thresholds", None)
        if thresholds is None and config.thresholds_file.exists():
            thresholds = load_thresholds(config.thresholds_file)
        elif thresholds is None:
            logger.warning(f"Threshold file {config.thresholds_file} not found, using defaults")

        policies = kwargs.pop("policies", None)
        if policies is None and config.policies_file.exists():
            policies = load_policies(config.policies_file)
        elif policies is None:
            logger.warning(f"Policy file {config.policies_file} not found, no action is rate limited")

        kwargs.setdefault("check_budget_seconds", config.check_budget_seconds)
        return cls(store, thresholds=thresholds, policies=policies, config=config, **kwargs)

    # ========== BUDGETS ==========

    def _run_with_budget(self, fn: Callable[[], T], operation: str) -> T:
        """Run ``fn`` within the check budget.

        Raises:
            TransientError: If the budget is exceeded
        """
        if self.check_budget_seconds is None:
            return fn()

        executor = self._executor or _get_shared_executor()
        future = executor.submit(fn)
        try:
            return future.result(timeout=self.check_budget_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise TransientError(
                f"{operation} exceeded its {self.check_budget_seconds * 1000:.0f}ms budget",
                operation=operation,
            )

    # ========== DEVICES ==========

    def resolve_device(
        self,
        device_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> Tuple[Device, List[str]]:
        """Resolve (or create) a device and its personas.

        A device with no persona yet is linked to the persona the profile
        directory has registered for the token, if any.

        Returns:
            Tuple of (device, persona ids with the write persona first)

        Raises:
            ValidationError: If the token is malformed
            TransientError: If storage is unavailable or too slow
        """
        def resolve() -> Tuple[Device, List[str]]:
            device = self.registry.resolve_or_create(device_token, ip_address, user_agent, fingerprint)
            if device.active_persona_id is None and self.profile_directory is not None:
                persona_id = self.profile_directory.persona_for_device(device_token)
                if persona_id:
                    self.registry.link_persona(device_token, persona_id)
            return device, self.registry.resolve_personas(device_token)

        return self._run_with_budget(resolve, "resolve_device")

    def record_failed_auth(
        self,
        device_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device:
        return self.registry.record_failed_auth(device_token, ip_address, user_agent)

    def revoke_device(self, device_token: str, reason: str, actor_id: Optional[str] = None) -> bool:
        """Revoke a device; idempotent.

        Raises:
            NotFoundError: If the device is unknown
        """
        revoked = self.registry.revoke(device_token, reason, actor_id)
        # Persist the session's REVOKED state right away.
        self.sessions.get_state(device_token)
        return revoked

    def unban_device(self, device_token: str, reason: str, actor_id: str) -> bool:
        """Clear a revocation and issue the device a fresh session."""
        cleared = self.registry.unban(device_token, reason, actor_id)
        if cleared:
            self.sessions.init_session(self.registry.require_device(device_token))
        return cleared

    def clear_suspicious(self, device_token: str, actor_id: Optional[str] = None) -> bool:
        """Administratively clear a device's suspicion flag."""
        self.registry.require_device(device_token)
        return self.registry.clear_suspicious(device_token, "admin_cleared", actor_id)

    def rotate_device(
        self,
        persona_id: str,
        old_token: str,
        new_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device:
        """Move a persona's write binding to a new device token.

        Raises:
            ValidationError: If either token is malformed
            NotFoundError: If the old device is unknown
            RevokedError: If the old device is revoked
            PolicyDeniedError: If the rotation limit is reached or the new
                device already writes as another persona
        """
        self.registry.validate_token_format(new_token)
        old_device = self.registry.require_device(old_token)
        if old_device.is_revoked:
            raise RevokedError(old_token, old_device.revoked_reason)

        existing = self.registry.get_device(new_token)
        if existing is not None and existing.active_persona_id not in (None, persona_id):
            raise PolicyDeniedError(
                "The new device is already linked to another persona",
                "device_linked_elsewhere",
            )

        self.rate_limiter.enforce(persona_id, new_token, DEVICE_ROTATION)

        new_device = self.registry.resolve_or_create(new_token, ip_address, user_agent)
        self.registry.unlink_active_persona(old_token, persona_id)
        self.registry.link_persona(new_token, persona_id)
        self.sessions.init_session(new_device)

        self.audit_logger.log(
            AuditEventType.DEVICE_ROTATED,
            Severity.INFO,
            device_token=new_token,
            persona_id=persona_id,
            details={"previous_device_token": old_token},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return self.registry.require_device(new_token)

    # ========== SESSIONS ==========

    def validate_session(self, device_token: str) -> Tuple[bool, Optional[datetime]]:
        """Check a device's session. Fails closed.

        Returns:
            Tuple of (valid, expires_at). Storage errors and timeouts
            return (False, None).
        """
        try:
            status = self._run_with_budget(lambda: self.sessions.get_status(device_token), "validate_session")
        except TransientError as e:
            logger.error(f"Session validation failed closed for {device_token}: {e.message}")
            return False, None
        return status.valid, status.expires_at

    def session_status(self, device_token: str) -> SessionStatus:
        return self.sessions.get_status(device_token)

    def refresh_session(self, device_token: str) -> datetime:
        """Refresh a session.

        Raises:
            RevokedError: If the device is revoked
            NotFoundError: If the device or session does not exist
        """
        try:
            return self.sessions.refresh(device_token)
        except RevokedError:
            self._log_revoked_access(device_token, "refresh_session")
            raise

    # ========== SCORING ==========

    def score(self, device_token: str, fail_open: bool = True) -> Optional[AnomalyScore]:
        """Score a device.

        Args:
            device_token: Device to score
            fail_open: Return None instead of raising when scoring fails
                for any reason other than an unknown or revoked device,
                such as a storage outage or an exhausted audit write

        Raises:
            NotFoundError: If the device is unknown
            RevokedError: If the device is revoked
        """
        try:
            return self._run_with_budget(lambda: self.detector.score(device_token), "score")
        except (NotFoundError, RevokedError):
            raise
        except Exception as e:
            if not fail_open:
                raise
            logger.error(f"Scoring failed for {device_token}, allowing: {e}")
            return None

    def latest_risk_level(self, device_token: str) -> Optional[RiskLevel]:
        latest = self.detector.latest_score(device_token)
        return latest.risk_level if latest else None

    # ========== RATE LIMITS ==========

    def check_rate_limit(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
        device_token: Optional[str] = None,
        fail_open: bool = False,
    ) -> RateLimitDecision:
        """Check whether an action is allowed without recording it.

        Args:
            actor_id: Persona performing the action
            target_id: Target of the action
            action_type: Rate-limited action type
            policy: Ad hoc policy. Defaults to the configured one.
            device_token: Actor's device; its latest risk band tightens limits
            fail_open: Allow the action when the check is unavailable
        """
        def run_check() -> RateLimitDecision:
            risk_level = self.latest_risk_level(device_token) if device_token else None
            return self.rate_limiter.check(actor_id, target_id, action_type, policy, risk_level)

        try:
            return self._run_with_budget(run_check, "check_rate_limit")
        except TransientError as e:
            logger.error(f"Rate limit check for {actor_id}/{action_type} unavailable: {e.message}")
            if fail_open:
                return RateLimitDecision(allowed=True, action_type=action_type, code="check_unavailable")
            return RateLimitDecision(
                allowed=False,
                action_type=action_type,
                reason="Rate limit check unavailable, please retry",
                code="check_unavailable",
                remaining=0,
            )

    def record_action(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
    ) -> ActionRecord:
        """Record an action that a previous check allowed."""
        return self.rate_limiter.record(actor_id, target_id, action_type, policy)

    def check_and_record(
        self,
        actor_id: str,
        target_id: Optional[str],
        action_type: str,
        policy: Optional[RateLimitPolicy] = None,
        device_token: Optional[str] = None,
        raise_on_deny: bool = False,
    ) -> RateLimitDecision:
        """Atomically check and record an action.

        Raises:
            PolicyDeniedError: If denied and ``raise_on_deny`` is set
            TransientError: If the actor's ledger stays contended or storage
                is unavailable
        """
        risk_level = None
        if device_token:
            risk_level = self._run_with_budget(lambda: self.latest_risk_level(device_token), "latest_risk_level")
        if raise_on_deny:
            return self.rate_limiter.enforce(actor_id, target_id, action_type, policy, risk_level)
        return self.rate_limiter.check_and_record(actor_id, target_id, action_type, policy, risk_level)

    def get_churn_stats(self, actor_id: str, window_hours: Optional[int] = None) -> ChurnStats:
        return self.churn_detector.get_churn_stats(actor_id, window_hours)

    def flag_churn_accounts(self, min_churn_targets: Optional[int] = None) -> List[ReviewFlag]:
        return self.churn_detector.flag_churn_accounts(min_churn_targets)

    # ========== AUDIT & REVIEW ==========

    def log_event(
        self,
        device_token: Optional[str],
        persona_id: Optional[str],
        event_type: str,
        severity: Severity = Severity.INFO,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        return self.audit_logger.log(
            event_type, severity, device_token=device_token, persona_id=persona_id, details=details
        )

    def list_review_flags(
        self, status: ReviewStatus = ReviewStatus.PENDING, limit: int = DataConstants.DEFAULT_QUERY_LIMIT
    ) -> List[ReviewFlag]:
        return self.review_queue.list_flags(status, limit)

    def resolve_review_flag(
        self,
        flag_id: str,
        status: ReviewStatus,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> ReviewFlag:
        return self.review_queue.resolve_flag(flag_id, status, reviewer_id, notes)

    def run_retention_sweep(self) -> Dict[str, int]:
        return self.retention.run()

    # ========== REQUEST FLOW ==========

    def handle_request(
        self,
        device_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> RequestOutcome:
        """Run one inbound request through the trust layer.

        An expired session is not an error: the outcome reports
        ``session_valid=False`` and the caller treats the request as
        anonymous.

        Raises:
            ValidationError: If the token is malformed
            RevokedError: If the device is revoked
            TransientError: If the device or session could not be checked in time
        """
        device, persona_ids = self.resolve_device(device_token, ip_address, user_agent, fingerprint)

        if device.is_revoked:
            self._log_revoked_access(device_token, "request", ip_address, user_agent)
            raise RevokedError(device_token, device.revoked_reason)

        state, expires_at, refreshed = self._run_with_budget(
            lambda: self._ensure_session(device), "validate_session"
        )
        if state == SessionState.REVOKED:
            self._log_revoked_access(device_token, "request", ip_address, user_agent)
            raise RevokedError(device_token, device.revoked_reason)
        if state == SessionState.EXPIRED:
            self.audit_logger.log(
                AuditEventType.EXPIRED_SESSION_ACCESS_ATTEMPT,
                Severity.WARNING,
                device_token=device_token,
                details={"expires_at": expires_at.isoformat() if expires_at else None},
                ip_address=ip_address,
                user_agent=user_agent,
            )

        if device.is_suspicious:
            self.audit_logger.log(
                AuditEventType.SUSPICIOUS_DEVICE_ACCESS,
                Severity.WARNING,
                device_token=device_token,
                ip_address=ip_address,
                user_agent=user_agent,
            )

        anomaly_score = None
        if self.detector.should_score(device):
            anomaly_score = self.score(device_token, fail_open=True)

        is_suspicious = device.is_suspicious
        if anomaly_score is not None:
            current = self.registry.get_device(device_token)
            is_suspicious = bool(current and current.is_suspicious)

        return RequestOutcome(
            device_token=device_token,
            persona_ids=persona_ids,
            request_count=device.request_count,
            session_valid=state == SessionState.ACTIVE,
            session_state=state,
            expires_at=expires_at,
            refreshed=refreshed,
            is_suspicious=is_suspicious,
            anomaly_score=anomaly_score,
        )

    def _ensure_session(self, device: Device) -> Tuple[Optional[SessionState], Optional[datetime], bool]:
        token = device.device_token
        state = self.sessions.get_state(token)
        if state is None:
            self.sessions.init_session(device)
            state = self.sessions.get_state(token)

        refreshed = False
        if state == SessionState.ACTIVE:
            refreshed = self.sessions.maybe_refresh(token) is not None
            self.sessions.touch(token)

        status = self.sessions.get_status(token)
        return status.state, status.expires_at, refreshed

    def _log_revoked_access(
        self,
        device_token: str,
        operation: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        logger.error(f"Revoked device {device_token} attempted {operation}")
        self.audit_logger.log(
            AuditEventType.REVOKED_DEVICE_ACCESS_ATTEMPT,
            Severity.ERROR,
            device_token=device_token,
            details={"operation": operation},
            ip_address=ip_address,
            user_agent=user_agent,
        )
