from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ParsedDocument(BaseModel):
    full_name: Optional[str] = None
    dob: Optional[str] = None          # ISO YYYY-MM-DD when parseable
    id_number: Optional[str] = None
    address: Optional[str] = None
    expiry_date: Optional[str] = None  # ISO YYYY-MM-DD when parseable
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)

    def has_identity(self) -> bool:
        return bool(self.full_name and self.id_number)


class FaceMatchResult(BaseModel):
    similarity: float   # 0-100
    is_match: bool
    confidence: float   # 0-100


class FaceDetectionResult(BaseModel):
    face_count: int
    has_face: bool


class VideoLivenessResult(BaseModel):
    face_present: bool
    movement_detected: bool
    face_count: int


class SpoofResult(BaseModel):
    spoof_risk_score: int = 0
    signals: List[str] = Field(default_factory=list)


class BehavioralRisk(BaseModel):
    score: int = 0
    reasons: List[str] = Field(default_factory=list)


class CheckStatus(str, Enum):
    PASSED = "pass"
    FAILED = "fail"
    # Rule could not run (no input, or an internal error). Never counted as failed.
    SKIPPED = "skipped"


class RuleResult(BaseModel):
    status: CheckStatus
    detail: Optional[str] = None

    @classmethod
    def passed(cls, detail: Optional[str] = None) -> "RuleResult":
        return cls(status=CheckStatus.PASSED, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> "RuleResult":
        return cls(status=CheckStatus.FAILED, detail=detail)

    @classmethod
    def skipped(cls, detail: str) -> "RuleResult":
        return cls(status=CheckStatus.SKIPPED, detail=detail)

    @property
    def is_failure(self) -> bool:
        return self.status is CheckStatus.FAILED
