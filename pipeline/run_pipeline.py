import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from config import settings
from db import SessionLocal
from models import (
    Organization,
    RiskLevel,
    Verification,
    VerificationBehavior,
    VerificationDecision,
    VerificationPii,
    VerificationStatus,
    legacy_status,
)
from .behavioral import calculate_behavioral_risk
from .decision import (
    LIVENESS_FAIL,
    LIVENESS_PASS,
    LIVENESS_UNKNOWN,
    DecisionEngine,
    Evidence,
    round_half_up,
)
from .document_parser import is_document_expired
from .extractor import extract_document_fields
from .face_match import compare_faces, detect_faces
from .file_converter import load_document_image
from .liveness import analyze_video, extract_liveness_frame
from .rules import OrganizationVerificationRules, RuleContext, run_validation_rules
from .schemas import (
    FaceDetectionResult,
    FaceMatchResult,
    ParsedDocument,
    SpoofResult,
    VideoLivenessResult,
)
from .spoof import analyze_spoof_signals
from .utils import mask_name

logger = logging.getLogger(__name__)

PROVIDER_TAG = "openai+opencv"
PROCESSING_ERROR = "processing_error"

EVENT_MANUAL_REVIEW = "manual_review_required"
EVENT_REJECTED = "verification_rejected"

Notify = Callable[[str, str, Dict[str, Any]], None]


class VerificationNotFound(LookupError):
    pass


@dataclass
class EvidenceProviders:
    """The external evidence sources; replaceable for tests or other vendors."""
    extract_document: Callable[[str, str], ParsedDocument] = extract_document_fields
    compare_faces: Callable[[str, str, float], FaceMatchResult] = compare_faces
    detect_faces: Callable[[str], FaceDetectionResult] = detect_faces
    analyze_video: Callable[[str], VideoLivenessResult] = analyze_video
    extract_frame: Callable[[str, str, str], str] = extract_liveness_frame
    analyze_spoof: Callable[[List[str]], SpoofResult] = analyze_spoof_signals
    load_document_image: Callable[[str], bytes] = load_document_image


def _media_ref(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry or None
    if isinstance(entry, dict):
        return entry.get("ref") or None
    return None


def _first_liveness_frame(images: Dict[str, Any]) -> Optional[str]:
    for key in sorted(k for k in images if k.startswith("liveness_frame_")):
        ref = _media_ref(images[key])
        if ref:
            return ref
    return None


class VerificationPipeline:
    """
    Runs the decision for one verification: gathers evidence, evaluates the
    organization's rules, fuses everything into a decision and persists it in
    a single transaction. The outcome is announced through `notify` after commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        providers: Optional[EvidenceProviders] = None,
        notify: Optional[Notify] = None,
        engine: Optional[DecisionEngine] = None,
    ):
        self.session_factory = session_factory
        self.providers = providers or EvidenceProviders()
        self.notify = notify
        self.engine = engine or DecisionEngine()

    def decide(self, verification_id: str) -> None:
        try:
            with self.session_factory() as session, session.begin():
                organization_id, event, payload = self._decide(session, verification_id)
        except Exception as e:
            logger.exception(f"[PIPELINE] verification {verification_id} failed")
            self._mark_failed(verification_id, str(e) or e.__class__.__name__)
            raise

        self._send(organization_id, event, payload)

    # ------------------------
    # Decision
    # ------------------------
    def _decide(self, session: Session, verification_id: str):
        verification = session.get(Verification, verification_id)
        if verification is None:
            raise VerificationNotFound(verification_id)

        pii = verification.pii
        organization = session.get(Organization, verification.organization_id)
        rules = OrganizationVerificationRules.from_raw(organization.verification_rules if organization else None)
        behavior = session.get(VerificationBehavior, verification_id)
        behavioral_signals = behavior.signals if behavior else None

        images: Dict[str, Any] = dict((pii.document_images if pii else None) or {})
        document_ref = _media_ref(images.get("document"))
        liveness_entry = images.get("liveness")
        liveness_ref = _media_ref(liveness_entry)
        liveness_type = liveness_entry.get("type") if isinstance(liveness_entry, dict) else None

        threshold = rules.face_match_threshold(settings.FACE_MATCH_THRESHOLD)
        ev = Evidence(face_match_threshold=threshold)
        checks: Dict[str, Any] = {}
        raw: Dict[str, Any] = {}
        extra_signals: Dict[str, Any] = {}

        logger.info(
            f"[PIPELINE] deciding {verification_id} type={verification.id_type} "
            f"document={bool(document_ref)} liveness={liveness_type or bool(liveness_ref)}"
        )

        # Step 1: document fields
        parsed: Optional[ParsedDocument] = None
        if document_ref:
            try:
                parsed = self.providers.extract_document(document_ref, verification.id_type)
                ev.document_valid = ev.ocr_match = parsed.has_identity()
                fields = parsed.extracted_fields
                raw["ocr"] = {
                    "extracted": {
                        "fullName": parsed.full_name,
                        "idNumber": parsed.id_number,
                        "dob": fields.get("dobDisplay") or parsed.dob,
                        "address": parsed.address,
                        "documentExpiryDate": fields.get("expiryDateDisplay") or parsed.expiry_date,
                    },
                    "rawText": fields.get("rawText"),
                    "extractedFields": fields,
                }
            except Exception as e:
                ev.document_valid = ev.ocr_match = False
                raw["ocrError"] = str(e) or e.__class__.__name__
                logger.warning(f"[PIPELINE] OCR extraction failed for {verification_id}: {e}")

            checks["documentValid"] = ev.document_valid
            checks["ocrMatch"] = ev.ocr_match

            if parsed is not None:
                pii = self._write_back_pii(session, verification_id, pii, parsed)

            # Step 2: informational validation rules
            image = None
            if rules.needs_document_image():
                try:
                    image = self.providers.load_document_image(document_ref)
                except Exception as e:
                    logger.warning(f"[RULES] document image unavailable for {verification_id}: {e}")

            report = run_validation_rules(rules, RuleContext(image=image, parsed=parsed))
            for check_key, result in report.results.items():
                checks[check_key] = result.status.value
                if result.detail:
                    raw[f"{check_key}Detail"] = result.detail
            ev.informational = report.results

        # Step 3: liveness and face match
        if document_ref and liveness_ref:
            try:
                if liveness_type == "video":
                    self._assess_video(
                        ev, checks, raw, images, pii, verification, document_ref, liveness_ref, threshold
                    )
                else:
                    match = self.providers.compare_faces(document_ref, liveness_ref, threshold)
                    self._record_face_match(ev, checks, raw, match, "image_comparison")
                    ev.liveness = LIVENESS_PASS if match.similarity >= threshold else LIVENESS_FAIL
            except Exception as e:
                ev.liveness = LIVENESS_UNKNOWN
                raw["faceMatchError"] = str(e) or e.__class__.__name__
                logger.warning(f"[PIPELINE] liveness/face match failed for {verification_id}: {e}")
        elif document_ref:
            try:
                faces = self.providers.detect_faces(document_ref)
                ev.liveness = LIVENESS_PASS if faces.has_face else LIVENESS_FAIL
                raw["liveness"] = {
                    "type": "document_only",
                    "faceDetected": faces.has_face,
                    "faceCount": faces.face_count,
                }
            except Exception as e:
                ev.liveness = LIVENESS_UNKNOWN
                raw["livenessError"] = str(e) or e.__class__.__name__

        if ev.liveness is not None:
            checks["liveness"] = ev.liveness

        # Step 4: spoof screening
        if (document_ref or liveness_ref) and rules.ghostSpoofCheckEnabled:
            spoof_refs = [document_ref] if document_ref else []
            if liveness_type == "video":
                frame_ref = _first_liveness_frame(images)
                if frame_ref:
                    spoof_refs.append(frame_ref)
            elif liveness_ref:
                spoof_refs.append(liveness_ref)

            try:
                spoof = self.providers.analyze_spoof(spoof_refs)
                raw["spoofDetection"] = spoof.model_dump()
                summary = {"score": spoof.spoof_risk_score, "signals": spoof.signals}
                if spoof.spoof_risk_score >= settings.SPOOF_RISK_THRESHOLD:
                    ev.spoof_detected = True
                    checks["spoofDetection"] = {"status": "failed", **summary}
                    extra_signals["spoofDetected"] = spoof.model_dump()
                elif spoof.spoof_risk_score > 0:
                    checks["spoofDetection"] = {"status": "passed", **summary}
                    extra_signals["spoofDetected"] = spoof.model_dump()
            except Exception as e:
                raw["spoofDetectionError"] = str(e) or e.__class__.__name__

        # Step 5: behavioral fraud
        if rules.behavioralFraudCheckEnabled and behavioral_signals:
            risk = calculate_behavioral_risk(behavioral_signals)
            raw["behavioral"] = {"score": risk.score, "reasons": risk.reasons, "signals": behavioral_signals}
            summary = {"score": risk.score, "reasons": risk.reasons}
            if risk.score >= settings.BEHAVIORAL_RISK_THRESHOLD:
                ev.behavioral_fraud = True
                checks["behavioralFraud"] = {"status": "failed", **summary}
                extra_signals["behavioralFraud"] = summary
            elif risk.score > 0:
                checks["behavioralFraud"] = {"status": "passed", **summary}
                extra_signals["behavioralFraud"] = summary

        # Step 6: document expiry
        if rules.documentExpiryCheckEnabled and parsed is not None and parsed.expiry_date:
            ev.document_expired = is_document_expired(parsed.expiry_date)
            checks["documentExpiry"] = "fail" if ev.document_expired else "pass"

        # Step 7: fuse and persist
        outcome = self.engine.make_decision(ev)
        risk_signals = outcome.risk_signals(extra_signals)

        decision = session.get(VerificationDecision, verification_id)
        if decision is None:
            decision = VerificationDecision(verification_id=verification_id)
            session.add(decision)
        decision.provider = PROVIDER_TAG
        decision.raw_response = raw
        decision.checks = checks
        decision.risk_signals = risk_signals

        verification.status = outcome.status.value
        verification.match_score = outcome.match_score
        verification.risk_level = outcome.risk_level.value
        verification.failure_reason = outcome.failure_reason
        verification.is_auto_approved = False
        verification.verified_at = None

        logger.info(
            f"[PIPELINE] {verification_id} -> {outcome.status.value} score={outcome.match_score} "
            f"risk={outcome.risk_level.value} flags={outcome.flags}"
        )

        event = EVENT_MANUAL_REVIEW if outcome.verified else EVENT_REJECTED
        payload = {
            "verificationId": verification_id,
            "verificationStatus": legacy_status(outcome.status),
            "matchScore": outcome.match_score,
            "riskLevel": outcome.risk_level.value,
            "failureReason": outcome.failure_reason,
            "checks": checks,
            "riskSignals": risk_signals,
        }
        return verification.organization_id, event, payload

    def _assess_video(self, ev, checks, raw, images, pii, verification, document_ref, liveness_ref, threshold):
        video = self.providers.analyze_video(liveness_ref)
        passed = video.face_present and video.movement_detected
        ev.liveness = LIVENESS_PASS if passed else LIVENESS_FAIL
        raw["liveness"] = {
            "type": "video",
            "facePresent": video.face_present,
            "movementDetected": video.movement_detected,
            "faceCount": video.face_count,
        }
        if not passed:
            return

        frame_ref = _first_liveness_frame(images)
        if not frame_ref:
            frame_ref = self.providers.extract_frame(liveness_ref, verification.organization_id, verification.id)
            images["liveness_frame_1"] = {"ref": frame_ref, "type": "image"}
            pii.document_images = dict(images)

        try:
            match = self.providers.compare_faces(document_ref, frame_ref, threshold)
        except Exception as e:
            ev.liveness = LIVENESS_UNKNOWN
            raw["faceMatchError"] = str(e) or "Face comparison failed"
            return

        self._record_face_match(ev, checks, raw, match, "document_and_video")
        if not match.is_match:
            ev.liveness = LIVENESS_FAIL

    def _record_face_match(self, ev, checks, raw, match: FaceMatchResult, kind: str):
        ev.face_score = round_half_up(match.similarity)
        checks["faceMatch"] = f"{ev.face_score}%"
        raw["faceMatch"] = {
            "similarity": match.similarity,
            "isMatch": match.is_match,
            "confidence": match.confidence,
            "type": kind,
        }

    def _write_back_pii(self, session: Session, verification_id: str, pii, parsed: ParsedDocument):
        """OCR values never overwrite user-confirmed details; other fields only fill blanks."""
        if pii is None:
            pii = VerificationPii(verification_id=verification_id)
            session.add(pii)

        confirmed = pii.confirmed_at is not None
        if not confirmed:
            if parsed.full_name:
                pii.full_name = parsed.full_name
            pii.dob = pii.dob or parsed.dob
            pii.id_number = pii.id_number or parsed.id_number
            pii.address = pii.address or parsed.address
            if parsed.expiry_date:
                pii.document_expiry_date = pii.document_expiry_date or parsed.expiry_date
                if pii.document_expired is None:
                    pii.document_expired = is_document_expired(parsed.expiry_date)
        else:
            logger.info(f"[PIPELINE] {verification_id} details confirmed by user; OCR fields not written")

        pii.extracted_fields = dict(parsed.extracted_fields)
        logger.debug(f"[PIPELINE] {verification_id} PII updated for {mask_name(pii.full_name)}")
        return pii

    # ------------------------
    # Failure path and notification
    # ------------------------
    def _mark_failed(self, verification_id: str, error: Optional[str] = None) -> None:
        organization_id = None
        try:
            with self.session_factory() as session, session.begin():
                verification = session.get(Verification, verification_id)
                if verification is None:
                    return
                verification.status = VerificationStatus.REJECTED.value
                verification.match_score = 0
                verification.risk_level = RiskLevel.HIGH.value
                verification.failure_reason = PROCESSING_ERROR
                organization_id = verification.organization_id

                # replace any decision left by an earlier run so it agrees with the rejection
                decision = session.get(VerificationDecision, verification_id)
                if decision is None:
                    decision = VerificationDecision(verification_id=verification_id)
                    session.add(decision)
                decision.provider = PROVIDER_TAG
                decision.raw_response = {"error": error or "processing failed"}
                decision.checks = {}
                decision.risk_signals = {"verified": False, "flags": [PROCESSING_ERROR]}
        except Exception:
            logger.exception(f"[PIPELINE] could not mark {verification_id} as rejected")
            return

        self._send(organization_id, EVENT_REJECTED, {
            "verificationId": verification_id,
            "verificationStatus": legacy_status(VerificationStatus.REJECTED),
            "matchScore": 0,
            "riskLevel": RiskLevel.HIGH.value,
            "failureReason": PROCESSING_ERROR,
        })

    def _send(self, organization_id: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        if self.notify is None or organization_id is None:
            return
        try:
            self.notify(organization_id, event, payload)
        except Exception:
            logger.exception(f"[PIPELINE] could not dispatch {event} for {payload.get('verificationId')}")
