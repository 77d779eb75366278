import logging
from typing import Callable, Dict, List, Sequence

from openai import OpenAI

from config import settings, SCREEN_LABEL_KEYWORDS
from .schemas import SpoofResult
from .utils import encode_image, read_media_bytes, safe_json_parse

logger = logging.getLogger(__name__)

SCREEN_CAPTURE_SIGNAL = "screen_capture_suspected"
SCREEN_CAPTURE_RISK = 70

LABEL_PROMPT = """
You are an image labelling system.

Describe what this image physically shows with up to 10 short labels
(for example: "identity document", "person", "face", "computer monitor",
"lcd screen", "printed paper", "hand").

Pay attention to whether the photo was taken of a screen or display
(moire patterns, pixel grid, bezels, screen glare).

Return STRICT JSON ONLY.

Format:
{
  "labels": [
    {"description": "string", "score": 0.0-1.0}
  ]
}
"""


def label_image(image_ref: str) -> List[Dict]:
    """Label an image with the vision model. Returns [{description, score}, ...]."""
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not configured")

    client = OpenAI(api_key=settings.OPENAI_API_KEY)
    response = client.chat.completions.create(
        model=settings.FACE_MODEL,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": LABEL_PROMPT},
                    {"type": "image_url", "image_url": {"url": encode_image(read_media_bytes(image_ref))}}
                ]
            }
        ],
        max_tokens=300,
        temperature=0
    )

    parsed = safe_json_parse(response.choices[0].message.content)
    labels = parsed.get("labels") or []
    return [label for label in labels if isinstance(label, dict)][:10]


def _label_score(label: Dict) -> float:
    try:
        return float(label.get("score") or 0)
    except (TypeError, ValueError):
        return 0.0


def score_labels(labels: Sequence[Dict]) -> SpoofResult:
    """A screen-like label seen with enough confidence suggests a re-photographed display."""
    signals = []
    risk = 0

    screen_like = any(
        _label_score(label) >= settings.SPOOF_LABEL_MIN_SCORE
        and any(k in str(label.get("description") or "").lower() for k in SCREEN_LABEL_KEYWORDS)
        for label in labels
    )
    if screen_like:
        signals.append(SCREEN_CAPTURE_SIGNAL)
        risk += SCREEN_CAPTURE_RISK

    return SpoofResult(spoof_risk_score=min(100, risk), signals=signals)


def analyze_spoof_signals(
    image_refs: Sequence[str],
    label_image: Callable[[str], List[Dict]] = label_image,
) -> SpoofResult:
    """
    Screen each image independently; a failed image counts as score 0.
    Result is the max score and the union of signals.
    """
    max_score = 0
    combined: List[str] = []

    for ref in image_refs:
        try:
            result = score_labels(label_image(ref))
        except Exception as e:
            logger.warning(f"[SPOOF] labelling failed for one image: {e}")
            result = SpoofResult()

        max_score = max(max_score, result.spoof_risk_score)
        for signal in result.signals:
            if signal not in combined:
                combined.append(signal)

    return SpoofResult(spoof_risk_score=max_score, signals=combined)
