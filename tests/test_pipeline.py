from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from models import (
    Verification,
    VerificationDecision,
    VerificationPii,
    VerificationStatus,
)
from pipeline.decision import DecisionEngine
from pipeline.run_pipeline import EvidenceProviders, VerificationNotFound, VerificationPipeline
from pipeline.schemas import (
    FaceDetectionResult,
    FaceMatchResult,
    ParsedDocument,
    SpoofResult,
    VideoLivenessResult,
)

DOCUMENT = {"document": {"ref": "org/v/document.jpg", "type": "image"}}
SELFIE = {"liveness": {"ref": "org/v/selfie.jpg", "type": "image"}}
VIDEO = {"liveness": {"ref": "org/v/liveness.mp4", "type": "video"}}


def _parsed(**kw):
    fields = dict(
        full_name="Anna Maria Eriksson",
        id_number="L898902C3",
        dob="1974-08-12",
        expiry_date="2035-04-15",
        extracted_fields={"source": "vision", "dobDisplay": "12/08/1974"},
    )
    fields.update(kw)
    return ParsedDocument(**fields)


def _face(similarity):
    def compare(a, b, threshold):
        return FaceMatchResult(similarity=similarity, is_match=similarity >= threshold, confidence=99)
    return compare


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, organization_id, event, payload):
        self.calls.append((organization_id, event, payload))


@pytest.fixture
def providers(noise_jpeg):
    def build(**overrides):
        defaults = dict(
            extract_document=lambda ref, doc_type: _parsed(),
            compare_faces=_face(95),
            detect_faces=lambda ref: FaceDetectionResult(face_count=1, has_face=True),
            analyze_video=lambda ref: VideoLivenessResult(face_present=True, movement_detected=True, face_count=1),
            extract_frame=lambda ref, org_id, verification_id: f"{org_id}/{verification_id}/liveness/frame.jpg",
            analyze_spoof=lambda refs: SpoofResult(),
            load_document_image=lambda ref: noise_jpeg,
        )
        defaults.update(overrides)
        return EvidenceProviders(**defaults)
    return build


def _load(session_factory, verification_id):
    with session_factory() as session:
        verification = session.get(Verification, verification_id)
        decision = session.get(VerificationDecision, verification_id)
        pii = session.get(VerificationPii, verification_id)
        session.expunge_all()
        return verification, decision, pii


def test_document_and_selfie_match_completes(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    notify = Recorder()

    VerificationPipeline(session_factory, providers(), notify).decide(vid)

    verification, decision, pii = _load(session_factory, vid)
    assert verification.status == VerificationStatus.COMPLETED.value
    assert verification.match_score == 95
    assert verification.risk_level == "Low"
    assert verification.failure_reason is None
    assert verification.is_auto_approved is False
    assert verification.verified_at is None

    assert decision.provider == "openai+opencv"
    assert decision.checks["faceMatch"] == "95%"
    assert decision.checks["liveness"] == "pass"
    assert decision.checks["documentValid"] is True
    assert decision.checks["imageQuality"] == "pass"
    assert decision.checks["mrzChecksum"] == "skipped"
    assert decision.risk_signals == {"verified": True, "flags": []}
    assert decision.raw_response["faceMatch"]["type"] == "image_comparison"
    assert decision.raw_response["ocr"]["extracted"]["dob"] == "12/08/1974"

    assert pii.full_name == "Anna Maria Eriksson"
    assert pii.id_number == "L898902C3"
    assert pii.document_expiry_date == "2035-04-15"
    assert pii.document_expired is False

    [(org_id, event, payload)] = notify.calls
    assert org_id == verification.organization_id
    assert event == "manual_review_required"
    assert payload["verificationStatus"] == "Completed"
    assert payload["matchScore"] == 95
    assert payload["riskSignals"]["verified"] is True


def test_low_similarity_rejects(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    notify = Recorder()

    VerificationPipeline(session_factory, providers(compare_faces=_face(60)), notify).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert verification.status == VerificationStatus.REJECTED.value
    assert verification.match_score == 60
    assert verification.risk_level == "High"
    assert verification.failure_reason == "face_match_too_low"
    assert decision.checks["liveness"] == "fail"
    assert decision.risk_signals["flags"] == ["liveness_check_failed", "face_match_below_threshold"]
    assert notify.calls[0][1] == "verification_rejected"
    assert notify.calls[0][2]["verificationStatus"] == "Rejected"


def test_organization_threshold_override(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE}, rules={"faceMatchThreshold": 55})

    VerificationPipeline(session_factory, providers(compare_faces=_face(60))).decide(vid)

    verification, _, _ = _load(session_factory, vid)
    assert verification.status == VerificationStatus.COMPLETED.value


def test_video_liveness_extracts_and_persists_frame(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **VIDEO})
    compared = []

    def compare(a, b, threshold):
        compared.append((a, b))
        return FaceMatchResult(similarity=91.5, is_match=True, confidence=97)

    VerificationPipeline(session_factory, providers(compare_faces=compare)).decide(vid)

    verification, decision, pii = _load(session_factory, vid)
    frame_ref = pii.document_images["liveness_frame_1"]["ref"]
    assert frame_ref.endswith("/liveness/frame.jpg")
    assert compared == [("org/v/document.jpg", frame_ref)]
    assert decision.checks["faceMatch"] == "92%"
    assert decision.raw_response["liveness"]["type"] == "video"
    assert verification.status == VerificationStatus.COMPLETED.value
    assert verification.match_score == 92


def test_video_reuses_existing_thumbnail(session_factory, make_verification, providers):
    images = {**DOCUMENT, **VIDEO, "liveness_frame_2": {"ref": "f2.jpg"}, "liveness_frame_1": {"ref": "f1.jpg"}}
    vid = make_verification(document_images=images)

    def no_extraction(*a):
        raise AssertionError("frame should not be extracted")

    compared = []

    def compare(a, b, threshold):
        compared.append(b)
        return FaceMatchResult(similarity=90, is_match=True, confidence=90)

    VerificationPipeline(session_factory, providers(extract_frame=no_extraction, compare_faces=compare)).decide(vid)
    assert compared == ["f1.jpg"]


def test_video_without_movement_fails_liveness(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **VIDEO})
    still = lambda ref: VideoLivenessResult(face_present=True, movement_detected=False, face_count=1)

    VerificationPipeline(session_factory, providers(analyze_video=still)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["liveness"] == "fail"
    assert "faceMatch" not in decision.checks
    assert verification.failure_reason == "liveness_video_not_clear"


def test_video_face_compare_error_is_unknown(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **VIDEO})

    def broken(a, b, threshold):
        raise RuntimeError("vision API unavailable")

    VerificationPipeline(session_factory, providers(compare_faces=broken)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["liveness"] == "unknown"
    assert decision.raw_response["faceMatchError"] == "vision API unavailable"
    assert verification.status == VerificationStatus.REJECTED.value
    assert "liveness_check_failed" in decision.risk_signals["flags"]


def test_document_only_uses_face_detection(session_factory, make_verification, providers):
    vid = make_verification(document_images=DOCUMENT)
    no_face = lambda ref: FaceDetectionResult(face_count=0, has_face=False)

    VerificationPipeline(session_factory, providers(detect_faces=no_face)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["liveness"] == "fail"
    assert decision.raw_response["liveness"] == {"type": "document_only", "faceDetected": False, "faceCount": 0}
    assert verification.match_score == 60
    assert verification.risk_level == "Medium"


def test_extraction_failure_is_not_fatal(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})

    def broken(ref, doc_type):
        raise IOError("tesseract missing")

    VerificationPipeline(session_factory, providers(extract_document=broken)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["documentValid"] is False
    assert decision.checks["ocrMatch"] is False
    assert decision.raw_response["ocrError"] == "tesseract missing"
    assert "ocrValidation" not in decision.checks
    assert verification.failure_reason == "document_not_clear"
    assert verification.status == VerificationStatus.REJECTED.value


def test_confirmed_details_are_not_overwritten(session_factory, make_verification, providers):
    vid = make_verification(
        document_images={**DOCUMENT, **SELFIE},
        full_name="Anna M. Eriksson",
        confirmed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    VerificationPipeline(session_factory, providers()).decide(vid)

    _, _, pii = _load(session_factory, vid)
    assert pii.full_name == "Anna M. Eriksson"
    assert pii.id_number is None
    assert pii.extracted_fields["source"] == "vision"


def test_existing_fields_are_coalesced(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE}, dob="1974-08-13", full_name="Old Name")

    VerificationPipeline(session_factory, providers()).decide(vid)

    _, _, pii = _load(session_factory, vid)
    assert pii.full_name == "Anna Maria Eriksson"
    assert pii.dob == "1974-08-13"
    assert pii.id_number == "L898902C3"


def test_expiry_check_blocks_when_enabled(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE}, rules={"documentExpiryCheckEnabled": True})
    expired = lambda ref, doc_type: _parsed(expiry_date="2020-01-01")

    VerificationPipeline(session_factory, providers(extract_document=expired)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["documentExpiry"] == "fail"
    assert verification.failure_reason == "document_expired"


def test_expired_document_ignored_when_toggle_off(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    expired = lambda ref, doc_type: _parsed(expiry_date="2020-01-01")

    VerificationPipeline(session_factory, providers(extract_document=expired)).decide(vid)

    verification, decision, pii = _load(session_factory, vid)
    assert "documentExpiry" not in decision.checks
    assert verification.status == VerificationStatus.COMPLETED.value
    assert pii.document_expired is True


def test_spoof_detection_blocks(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE}, rules={"ghostSpoofCheckEnabled": True})
    seen = []

    def spoofed(refs):
        seen.append(list(refs))
        return SpoofResult(spoof_risk_score=85, signals=["screen_capture_suspected"])

    VerificationPipeline(session_factory, providers(analyze_spoof=spoofed)).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert seen == [["org/v/document.jpg", "org/v/selfie.jpg"]]
    assert decision.checks["spoofDetection"]["status"] == "failed"
    assert decision.risk_signals["spoofDetected"]["spoof_risk_score"] == 85
    assert verification.failure_reason == "document_spoof_detected"


def test_behavioral_fraud_blocks(session_factory, make_verification, providers):
    vid = make_verification(
        document_images={**DOCUMENT, **SELFIE},
        rules={"behavioralFraudCheckEnabled": True},
        behavior={"documentCaptureVisitCount": 5, "livenessVisitCount": 5},
    )

    VerificationPipeline(session_factory, providers()).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert decision.checks["behavioralFraud"]["status"] == "failed"
    assert decision.risk_signals["behavioralFraud"]["score"] == 80
    assert verification.risk_level == "High"
    assert verification.failure_reason == "behavioral_fraud_detected"


def test_behavioral_check_needs_signals(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE}, rules={"behavioralFraudCheckEnabled": True})

    VerificationPipeline(session_factory, providers()).decide(vid)

    _, decision, _ = _load(session_factory, vid)
    assert "behavioralFraud" not in decision.checks
    assert "behavioral" not in decision.raw_response


def test_reprocessing_replaces_decision(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    pipeline = VerificationPipeline(session_factory, providers())

    pipeline.decide(vid)
    first, first_decision, _ = _load(session_factory, vid)
    pipeline.decide(vid)
    second, second_decision, _ = _load(session_factory, vid)

    with session_factory() as session:
        count = session.scalar(select(func.count()).select_from(VerificationDecision))
    assert count == 1
    assert (first.status, first.match_score, first.risk_level) == (second.status, second.match_score, second.risk_level)
    assert first_decision.checks == second_decision.checks


def test_missing_verification_raises(session_factory, providers):
    notify = Recorder()
    with pytest.raises(VerificationNotFound):
        VerificationPipeline(session_factory, providers(), notify).decide("does-not-exist")
    assert notify.calls == []


class ExplodingEngine(DecisionEngine):
    def make_decision(self, ev):
        raise RuntimeError("database went away")


def test_fatal_error_forces_rejection(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    notify = Recorder()
    pipeline = VerificationPipeline(session_factory, providers(), notify, engine=ExplodingEngine())

    with pytest.raises(RuntimeError):
        pipeline.decide(vid)

    verification, decision, pii = _load(session_factory, vid)
    assert verification.status == VerificationStatus.REJECTED.value
    assert verification.match_score == 0
    assert verification.risk_level == "High"
    assert verification.failure_reason == "processing_error"
    assert decision.risk_signals == {"verified": False, "flags": ["processing_error"]}
    assert decision.raw_response == {"error": "database went away"}
    # the failed transaction left no PII behind
    assert pii.full_name is None

    [(_, event, payload)] = notify.calls
    assert event == "verification_rejected"
    assert payload == {
        "verificationId": vid,
        "verificationStatus": "Rejected",
        "matchScore": 0,
        "riskLevel": "High",
        "failureReason": "processing_error",
    }


def test_fatal_error_after_verified_run_replaces_decision(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    VerificationPipeline(session_factory, providers()).decide(vid)
    _, decision, _ = _load(session_factory, vid)
    assert decision.risk_signals["verified"] is True

    with pytest.raises(RuntimeError):
        VerificationPipeline(session_factory, providers(), engine=ExplodingEngine()).decide(vid)

    verification, decision, _ = _load(session_factory, vid)
    assert verification.status == VerificationStatus.REJECTED.value
    assert decision.risk_signals["verified"] is False
    assert decision.risk_signals["flags"] != []
    assert decision.checks == {}


@pytest.mark.parametrize("overrides", [
    {},
    {"compare_faces": _face(40)},
    {"extract_document": lambda ref, doc_type: _parsed(full_name=None, id_number=None)},
])
def test_same_inputs_give_same_decision(session_factory, make_verification, providers, overrides):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})
    pipeline = VerificationPipeline(session_factory, providers(**overrides))

    outcomes = []
    for _ in range(2):
        pipeline.decide(vid)
        verification, decision, _ = _load(session_factory, vid)
        outcomes.append((
            verification.status,
            verification.match_score,
            verification.risk_level,
            verification.failure_reason,
            decision.risk_signals,
        ))
        # verified exactly when no flag was raised
        assert decision.risk_signals["verified"] == (decision.risk_signals["flags"] == [])

    assert outcomes[0] == outcomes[1]

def test_notification_errors_do_not_affect_decision(session_factory, make_verification, providers):
    vid = make_verification(document_images={**DOCUMENT, **SELFIE})

    def broken_notify(*a):
        raise RuntimeError("queue full")

    VerificationPipeline(session_factory, providers(), broken_notify).decide(vid)

    verification, _, _ = _load(session_factory, vid)
    assert verification.status == VerificationStatus.COMPLETED.value
