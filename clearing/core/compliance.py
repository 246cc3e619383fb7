"""
Compliance Gate

Runs after attestation verification and before the ledger. A refusal is a
rejection: the claim never reaches create_transfer.

Checks, in order:
1. Subject blocked                    -> USER_BLOCKED
2. Single claim over the amount cap   -> AMOUNT_LIMIT_EXCEEDED
3. Claims today (UTC) at the cap      -> DAILY_LIMIT_EXCEEDED
4. Value today (UTC) over the cap     -> DAILY_VALUE_EXCEEDED
5. Claims in the last hour at the cap -> VELOCITY_LIMIT_EXCEEDED
6. Subject carries suspicious flags   -> AML_SCREENING_FAILED
7. Amount far outside recent history  -> UNUSUAL_AMOUNT

An admitted claim counts against its subject's limits. Admission is keyed
by claim id, so a replay of an admitted claim passes without counting
twice. A claim the ledger definitely rejected is released; a claim whose
ledger outcome is unknown stays counted.

State is process-local.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Optional

from ..observability import get_logger
from ..schemas import Claim


logger = get_logger(__name__)

MICROS = 1_000_000


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    BLOCKED = "BLOCKED"


class ComplianceCode(str, Enum):
    USER_BLOCKED = "USER_BLOCKED"
    AMOUNT_LIMIT_EXCEEDED = "AMOUNT_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    DAILY_VALUE_EXCEEDED = "DAILY_VALUE_EXCEEDED"
    VELOCITY_LIMIT_EXCEEDED = "VELOCITY_LIMIT_EXCEEDED"
    AML_SCREENING_FAILED = "AML_SCREENING_FAILED"
    UNUSUAL_AMOUNT = "UNUSUAL_AMOUNT"


class ComplianceRejected(Exception):
    """The compliance gate refused the claim; the ledger was not called."""

    def __init__(self, code: ComplianceCode, reason: str, claim_id: str, risk_level: RiskLevel):
        self.code = code
        self.reason = reason
        self.claim_id = claim_id
        self.risk_level = risk_level
        super().__init__(f"Compliance rejected claim {claim_id}: {code.value} ({reason})")


@dataclass(frozen=True)
class ComplianceConfig:
    """Per-subject limits. Amounts are micro-units; None disables a cap."""
    enabled: bool = True
    max_hourly_claims: Optional[int] = 20
    max_daily_claims: Optional[int] = 100
    max_daily_amount: Optional[int] = 50_000 * MICROS
    max_claim_amount: Optional[int] = None
    unusual_amount_factor: int = 3
    unusual_amount_min_history: int = 5
    unusual_amount_window: int = 10
    history_size: int = 100
    max_flags: int = 10


@dataclass
class RiskProfile:
    subject: str
    risk_level: RiskLevel = RiskLevel.LOW
    blocked: bool = False
    blocked_reason: Optional[str] = None
    suspicious_flags: list[str] = field(default_factory=list)
    total_claims: int = 0
    total_amount: int = 0
    last_claim_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "risk_level": self.risk_level.value,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "suspicious_flags": list(self.suspicious_flags),
            "total_claims": self.total_claims,
            "total_amount": self.total_amount,
            "last_claim_at": self.last_claim_at.isoformat() if self.last_claim_at else None,
        }


@dataclass(frozen=True)
class _Admission:
    claim_id: str
    subject: str
    amount: int
    at: datetime


@dataclass(frozen=True)
class ComplianceDecision:
    approved: bool
    risk_level: RiskLevel
    code: Optional[ComplianceCode] = None
    reason: Optional[str] = None
    replayed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ComplianceGate:
    """
    Per-subject limits and screening ahead of the ledger.

    Example:
        gate = ComplianceGate(ComplianceConfig(max_daily_claims=10))
        decision = gate.admit(claim)   # raises ComplianceRejected on refusal
        gate.release(claim.id)         # only after a definite ledger rejection
    """

    def __init__(
        self,
        config: Optional[ComplianceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or ComplianceConfig()
        self._clock = clock or _utcnow
        self._profiles: dict[str, RiskProfile] = {}
        self._admissions: dict[str, _Admission] = {}
        self._recent: dict[str, deque] = {}
        self._lock = Lock()

    @property
    def config(self) -> ComplianceConfig:
        return self._config

    def admit(self, claim: Claim) -> ComplianceDecision:
        """
        Evaluate a claim and, if approved, count it against its subject.

        Raises:
            ComplianceRejected: A check failed
        """
        if not self._config.enabled:
            return ComplianceDecision(approved=True, risk_level=RiskLevel.LOW)

        with self._lock:
            profile = self._profile(claim.subject)
            if claim.id in self._admissions:
                return ComplianceDecision(approved=True, risk_level=profile.risk_level, replayed=True)

            now = self._clock()
            decision = self._evaluate(claim, profile, now)
            if not decision.approved:
                logger.warning(
                    "Compliance rejected claim",
                    claim_id=claim.id,
                    subject=claim.subject,
                    code=decision.code.value,
                    reason=decision.reason,
                )
                raise ComplianceRejected(decision.code, decision.reason, claim.id, decision.risk_level)

            admission = _Admission(claim.id, claim.subject, claim.amount, now)
            self._admissions[claim.id] = admission
            self._recent.setdefault(claim.subject, deque(maxlen=self._config.history_size)).append(admission)
            profile.total_claims += 1
            profile.total_amount += claim.amount
            profile.last_claim_at = now
            return decision

    def release(self, claim_id: str) -> bool:
        """Uncount an admitted claim the ledger refused. False if it was not admitted."""
        with self._lock:
            admission = self._admissions.pop(claim_id, None)
            if admission is None:
                return False
            recent = self._recent.get(admission.subject)
            if recent is not None and admission in recent:
                recent.remove(admission)
            profile = self._profile(admission.subject)
            profile.total_claims -= 1
            profile.total_amount -= admission.amount
            return True

    def _evaluate(self, claim: Claim, profile: RiskProfile, now: datetime) -> ComplianceDecision:
        config = self._config

        if profile.blocked:
            return ComplianceDecision(
                False, RiskLevel.BLOCKED, ComplianceCode.USER_BLOCKED,
                profile.blocked_reason or "subject is blocked",
            )

        if config.max_claim_amount is not None and claim.amount > config.max_claim_amount:
            return ComplianceDecision(
                False, profile.risk_level, ComplianceCode.AMOUNT_LIMIT_EXCEEDED,
                f"amount {claim.amount} over limit {config.max_claim_amount}",
            )

        recent = list(self._recent.get(claim.subject, ()))
        today = [a for a in recent if a.at.date() == now.date()]
        if config.max_daily_claims is not None and len(today) >= config.max_daily_claims:
            return ComplianceDecision(
                False, profile.risk_level, ComplianceCode.DAILY_LIMIT_EXCEEDED,
                f"{len(today)} claims today, limit {config.max_daily_claims}",
            )

        spent_today = sum(a.amount for a in today)
        if config.max_daily_amount is not None and spent_today + claim.amount > config.max_daily_amount:
            return ComplianceDecision(
                False, profile.risk_level, ComplianceCode.DAILY_VALUE_EXCEEDED,
                f"daily value would reach {spent_today + claim.amount}, limit {config.max_daily_amount}",
            )

        hour_ago = now - timedelta(hours=1)
        last_hour = [a for a in recent if a.at > hour_ago]
        if config.max_hourly_claims is not None and len(last_hour) >= config.max_hourly_claims:
            return ComplianceDecision(
                False, profile.risk_level, ComplianceCode.VELOCITY_LIMIT_EXCEEDED,
                f"{len(last_hour)} claims in the last hour, limit {config.max_hourly_claims}",
            )

        if profile.suspicious_flags:
            return ComplianceDecision(
                False, RiskLevel.HIGH, ComplianceCode.AML_SCREENING_FAILED,
                f"suspicious activity: {', '.join(profile.suspicious_flags)}",
            )

        if len(recent) > config.unusual_amount_min_history:
            window = [a.amount for a in recent[-config.unusual_amount_window:]]
            total = sum(window)
            # |amount - avg| / avg > factor, in integers
            if total > 0 and abs(claim.amount * len(window) - total) > config.unusual_amount_factor * total:
                return ComplianceDecision(
                    False, RiskLevel.MEDIUM, ComplianceCode.UNUSUAL_AMOUNT,
                    f"amount {claim.amount} far from recent average {total // len(window)}",
                )

        return ComplianceDecision(True, profile.risk_level)

    # ============================================================
    # PROFILES
    # ============================================================

    def _profile(self, subject: str) -> RiskProfile:
        profile = self._profiles.get(subject)
        if profile is None:
            profile = RiskProfile(subject=subject)
            self._profiles[subject] = profile
        return profile

    def block(self, subject: str, reason: str, risk_level: RiskLevel = RiskLevel.BLOCKED) -> None:
        with self._lock:
            profile = self._profile(subject)
            profile.blocked = True
            profile.blocked_reason = reason
            profile.risk_level = risk_level
        logger.warning("Subject blocked", subject=subject, reason=reason, risk_level=risk_level.value)

    def unblock(self, subject: str, reason: str) -> None:
        with self._lock:
            profile = self._profile(subject)
            profile.blocked = False
            profile.blocked_reason = None
            if profile.risk_level == RiskLevel.BLOCKED:
                profile.risk_level = RiskLevel.LOW
        logger.info("Subject unblocked", subject=subject, reason=reason)

    def flag(self, subject: str, flag: str) -> None:
        with self._lock:
            profile = self._profile(subject)
            profile.suspicious_flags.append(flag)
            del profile.suspicious_flags[: -self._config.max_flags]
        logger.warning("Suspicious flag added", subject=subject, flag=flag)

    def clear_flags(self, subject: str) -> None:
        with self._lock:
            self._profile(subject).suspicious_flags.clear()

    def profile(self, subject: str) -> RiskProfile:
        """Copy of a subject's risk profile."""
        with self._lock:
            current = self._profile(subject)
            return RiskProfile(
                subject=current.subject,
                risk_level=current.risk_level,
                blocked=current.blocked,
                blocked_reason=current.blocked_reason,
                suspicious_flags=list(current.suspicious_flags),
                total_claims=current.total_claims,
                total_amount=current.total_amount,
                last_claim_at=current.last_claim_at,
            )
