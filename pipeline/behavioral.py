from typing import Any, Dict, Optional

from .schemas import BehavioralRisk


def _average_step_ms(timing: Optional[Dict[str, Any]]) -> float:
    if not isinstance(timing, dict):
        return 0.0
    total = timing.get("totalTimeMs") or 0
    visits = timing.get("visitCount") or 0
    try:
        total, visits = float(total), float(visits)
    except (TypeError, ValueError):
        return 0.0
    return total / visits if total and visits else 0.0


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def calculate_behavioral_risk(signals: Optional[Dict[str, Any]]) -> BehavioralRisk:
    """
    Score client-side capture telemetry from 0 to 100.

    Reads documentCaptureVisitCount, livenessVisitCount and
    stepTimings.{capture|document-selection,liveness}.{totalTimeMs,visitCount}.
    """
    if not isinstance(signals, dict):
        return BehavioralRisk()

    reasons = []
    score = 0

    step_timings = signals.get("stepTimings") or {}
    capture_timing = step_timings.get("capture") or step_timings.get("document-selection")
    liveness_timing = step_timings.get("liveness")

    capture_visits = _as_int(signals.get("documentCaptureVisitCount"))
    liveness_visits = _as_int(signals.get("livenessVisitCount"))

    if capture_visits > 3:
        score += 40
        reasons.append("many_document_capture_retries")
    elif capture_visits > 1:
        score += 15
        reasons.append("some_document_capture_retries")

    if liveness_visits > 3:
        score += 40
        reasons.append("many_liveness_retries")
    elif liveness_visits > 1:
        score += 20
        reasons.append("some_liveness_retries")

    capture_avg_ms = _average_step_ms(capture_timing)
    liveness_avg_ms = _average_step_ms(liveness_timing)

    if 0 < capture_avg_ms < 2000:
        score += 15
        reasons.append("very_fast_document_capture")

    if 0 < liveness_avg_ms < 3000:
        score += 20
        reasons.append("very_fast_liveness_capture")

    if liveness_avg_ms > 120000:
        score += 15
        reasons.append("very_slow_liveness_capture")

    return BehavioralRisk(score=max(0, min(100, score)), reasons=reasons)
