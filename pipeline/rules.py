"""
Organization rule toggles and the registry of informational validation rules.

Rules are composed, not inherited: every enabled rule whose input is available
runs on its own, and a rule that raises is reported as skipped.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .checks import DocumentChecks
from .quality import ImageQualityGate
from .schemas import ParsedDocument, RuleResult

logger = logging.getLogger(__name__)


# Blocking checks: off unless explicitly enabled
BLOCKING_TOGGLES = (
    "documentExpiryCheckEnabled",
    "ghostSpoofCheckEnabled",
    "behavioralFraudCheckEnabled",
)

# Informational checks: on unless explicitly disabled
INFORMATIONAL_TOGGLES = (
    "templateMatchingEnabled",
    "tamperingDetectionEnabled",
    "ocrValidationEnabled",
    "fieldConsistencyEnabled",
    "crossFieldConsistencyEnabled",
    "mrzChecksumEnabled",
    "imageQualityEnabled",
)


@dataclass
class OrganizationVerificationRules:
    documentExpiryCheckEnabled: bool = False
    ghostSpoofCheckEnabled: bool = False
    behavioralFraudCheckEnabled: bool = False
    templateMatchingEnabled: bool = True
    tamperingDetectionEnabled: bool = True
    ocrValidationEnabled: bool = True
    fieldConsistencyEnabled: bool = True
    crossFieldConsistencyEnabled: bool = True
    mrzChecksumEnabled: bool = True
    imageQualityEnabled: bool = True
    faceMatchThreshold: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "OrganizationVerificationRules":
        """Apply the documented defaults to a stored (possibly partial) toggle map."""
        raw = raw if isinstance(raw, dict) else {}
        values: Dict[str, Any] = {}
        for key in BLOCKING_TOGGLES:
            values[key] = raw.get(key) is True
        for key in INFORMATIONAL_TOGGLES:
            values[key] = raw.get(key) is not False

        threshold = raw.get("faceMatchThreshold")
        if isinstance(threshold, (int, float)) and not isinstance(threshold, bool) and 0 <= threshold <= 100:
            values["faceMatchThreshold"] = float(threshold)
        return cls(**values)

    def face_match_threshold(self, default: float) -> float:
        return self.faceMatchThreshold if self.faceMatchThreshold is not None else default

    def needs_document_image(self) -> bool:
        return self.templateMatchingEnabled or self.tamperingDetectionEnabled or self.imageQualityEnabled


@dataclass
class RuleContext:
    """Inputs available to the rules for one verification."""
    image: Optional[bytes] = None
    parsed: Optional[ParsedDocument] = None

    @property
    def mrz_line(self) -> Optional[str]:
        if self.parsed is None:
            return None
        return self.parsed.extracted_fields.get("mrzLine")


@dataclass
class ValidationRule:
    check_key: str
    toggle: str
    requires: str   # "image" | "parsed" | "mrz"
    evaluate: Callable[[RuleContext], RuleResult]
    description: str = ""

    def input_available(self, ctx: RuleContext) -> bool:
        if self.requires == "image":
            return ctx.image is not None
        # MRZ checksum still runs (and skips) when parsing produced nothing
        return self.requires == "mrz" or ctx.parsed is not None


_image_gate = ImageQualityGate()
_document_checks = DocumentChecks()

VALIDATION_RULES = [
    ValidationRule(
        "templateMatching", "templateMatchingEnabled", "image",
        lambda ctx: _image_gate.check_template_layout(ctx.image),
        "Document dimensions and aspect ratio",
    ),
    ValidationRule(
        "tamperingDetection", "tamperingDetectionEnabled", "image",
        lambda ctx: _image_gate.check_tampering(ctx.image),
        "Re-encode size delta and blur variance",
    ),
    ValidationRule(
        "imageQuality", "imageQualityEnabled", "image",
        lambda ctx: _image_gate.check_image_quality(ctx.image),
        "Resolution and Laplacian sharpness",
    ),
    ValidationRule(
        "ocrValidation", "ocrValidationEnabled", "parsed",
        lambda ctx: _document_checks.check_ocr_fields(ctx.parsed),
        "Name and ID number present",
    ),
    ValidationRule(
        "fieldConsistency", "fieldConsistencyEnabled", "parsed",
        lambda ctx: _document_checks.check_field_consistency(ctx.parsed),
        "DOB in the past, expiry after issue",
    ),
    ValidationRule(
        "crossFieldConsistency", "crossFieldConsistencyEnabled", "parsed",
        lambda ctx: _document_checks.check_cross_field_consistency(ctx.parsed),
        "Visual fields against MRZ/barcode",
    ),
    ValidationRule(
        "mrzChecksum", "mrzChecksumEnabled", "mrz",
        lambda ctx: _document_checks.check_mrz_checksum(ctx.mrz_line),
        "ICAO 9303 check digits",
    ),
]


@dataclass
class RuleReport:
    results: Dict[str, RuleResult] = field(default_factory=dict)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results.values() if r.is_failure)


def run_rule(rule: ValidationRule, ctx: RuleContext) -> RuleResult:
    """Evaluate one rule, failing open: an internal error means 'not run', not 'failed'."""
    try:
        return rule.evaluate(ctx)
    except Exception as e:
        logger.warning(f"[RULES] {rule.check_key} skipped after error: {e}")
        return RuleResult.skipped(f"{rule.check_key} skipped: {e}")


def run_validation_rules(config: OrganizationVerificationRules, ctx: RuleContext, rules=None) -> RuleReport:
    report = RuleReport()
    for rule in rules if rules is not None else VALIDATION_RULES:
        if not getattr(config, rule.toggle, False):
            continue
        if not rule.input_available(ctx):
            continue
        report.results[rule.check_key] = run_rule(rule, ctx)
    return report
