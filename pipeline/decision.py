import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import settings
from models import RiskLevel, VerificationStatus
from .schemas import RuleResult

LIVENESS_PASS = "pass"
LIVENESS_FAIL = "fail"
LIVENESS_UNKNOWN = "unknown"

# Flag names, in the order they are reported
FLAG_DOCUMENT_INVALID = "document_validation_failed"
FLAG_DOCUMENT_EXPIRED = "document_expired"
FLAG_SPOOF = "spoof_detected"
FLAG_BEHAVIORAL = "behavioral_fraud"
FLAG_LIVENESS = "liveness_check_failed"
FLAG_FACE_MATCH = "face_match_below_threshold"

# First matching flag decides the failure reason
FAILURE_REASONS = [
    (FLAG_DOCUMENT_EXPIRED, "document_expired"),
    (FLAG_SPOOF, "document_spoof_detected"),
    (FLAG_BEHAVIORAL, "behavioral_fraud_detected"),
    (FLAG_DOCUMENT_INVALID, "document_not_clear"),
    (FLAG_FACE_MATCH, "face_match_too_low"),
    (FLAG_LIVENESS, "liveness_video_not_clear"),
]
DEFAULT_FAILURE_REASON = "match_score_too_low"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class Evidence:
    """
    Everything the decision depends on, gathered by the pipeline.
    document_valid / ocr_match are None when no document image was available;
    face_score is the rounded similarity, None when no comparison ran.
    """
    document_valid: Optional[bool] = None
    ocr_match: Optional[bool] = None
    liveness: Optional[str] = None
    face_score: Optional[float] = None
    face_match_threshold: float = settings.FACE_MATCH_THRESHOLD
    document_expired: bool = False
    spoof_detected: bool = False
    behavioral_fraud: bool = False
    informational: Dict[str, RuleResult] = field(default_factory=dict)

    @property
    def failed_informational_checks(self) -> int:
        return sum(1 for r in self.informational.values() if r.is_failure)


@dataclass
class DecisionOutcome:
    verified: bool
    flags: List[str]
    match_score: int
    risk_level: RiskLevel
    status: VerificationStatus
    failure_reason: Optional[str]

    def risk_signals(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        signals = dict(extra or {})
        signals["verified"] = self.verified
        signals["flags"] = list(self.flags)
        return signals


class DecisionEngine:
    """
    Fuses gathered evidence into the verification outcome.
    Blocking conditions decide verified / flags; informational rule failures
    only lower the score and the risk level.
    """

    def __init__(self, informational_deduction: Optional[int] = None):
        self.informational_deduction = (
            settings.INFORMATIONAL_CHECK_DEDUCTION if informational_deduction is None else informational_deduction
        )

    def is_verified(self, ev: Evidence) -> bool:
        face_ok = (
            ev.face_score is None
            or ev.face_score >= ev.face_match_threshold
            or ev.face_score == 100
        )
        return (
            ev.document_valid is True
            and ev.liveness == LIVENESS_PASS
            and face_ok
            and not ev.document_expired
            and not ev.spoof_detected
            and not ev.behavioral_fraud
        )

    def collect_flags(self, ev: Evidence, verified: bool) -> List[str]:
        if verified:
            return []

        flags = []
        if ev.document_valid is False:
            flags.append(FLAG_DOCUMENT_INVALID)
        if ev.document_expired:
            flags.append(FLAG_DOCUMENT_EXPIRED)
        if ev.spoof_detected:
            flags.append(FLAG_SPOOF)
        if ev.behavioral_fraud:
            flags.append(FLAG_BEHAVIORAL)
        if ev.liveness != LIVENESS_PASS:
            flags.append(FLAG_LIVENESS)
        if ev.face_score is not None and ev.face_score < ev.face_match_threshold:
            flags.append(FLAG_FACE_MATCH)
        return flags

    def weighted_evidence_score(self, ev: Evidence) -> int:
        """40 document + 20 OCR + 20 liveness + up to 20 scaled face similarity"""
        score = 0
        if ev.document_valid is True:
            score += 40
        if ev.ocr_match is True:
            score += 20
        if ev.liveness == LIVENESS_PASS:
            score += 20
        if ev.face_score is not None:
            score += min(20, round_half_up(ev.face_score / 100 * 20))
        return score

    def calculate_match_score(self, ev: Evidence) -> int:
        """0-100; face similarity when known, otherwise the weighted evidence score"""
        deduction = ev.failed_informational_checks * self.informational_deduction

        if ev.face_score is not None:
            score = round_half_up(ev.face_score) - deduction
        else:
            score = self.weighted_evidence_score(ev) - deduction
        return max(0, min(100, score))

    def calculate_risk_level(self, ev: Evidence, verified: bool, flags: List[str]) -> RiskLevel:
        if not flags and verified and ev.failed_informational_checks == 0:
            return RiskLevel.LOW
        if len(flags) >= 2 or FLAG_FACE_MATCH in flags or FLAG_BEHAVIORAL in flags:
            return RiskLevel.HIGH
        return RiskLevel.MEDIUM

    def select_failure_reason(self, verified: bool, flags: List[str]) -> Optional[str]:
        if verified:
            return None
        for flag, reason in FAILURE_REASONS:
            if flag in flags:
                return reason
        return DEFAULT_FAILURE_REASON

    def make_decision(self, ev: Evidence) -> DecisionOutcome:
        verified = self.is_verified(ev)
        flags = self.collect_flags(ev, verified)
        return DecisionOutcome(
            verified=verified,
            flags=flags,
            match_score=self.calculate_match_score(ev),
            risk_level=self.calculate_risk_level(ev, verified, flags),
            status=VerificationStatus.COMPLETED if verified else VerificationStatus.REJECTED,
            failure_reason=self.select_failure_reason(verified, flags),
        )
