import logging
from typing import Optional

import cv2
import numpy as np
from openai import OpenAI

from config import settings
from .schemas import FaceDetectionResult, FaceMatchResult
from .utils import encode_image, read_media_bytes, safe_json_parse

logger = logging.getLogger(__name__)

FACE_MATCH_PROMPT = """
You are an identity verification assistant.

You will be given two images:
1. A photo from a government-issued identity document
2. A live capture (selfie or video frame) of a user

Task:
Estimate how likely both images show the SAME PERSON.

Consider:
- Facial structure
- Eyes, nose, mouth
- Face shape
- Relative age
- Hairline (ignore hairstyle differences)
- Ignore lighting, image quality, or background differences

If either image contains no visible face, return similarity 0.

Return STRICT JSON ONLY.

Format:
{
  "similarity": 0-100,
  "confidence": 0.0-1.0,
  "reasoning_summary": "short explanation"
}
"""

_face_cascade = None


def _cascade():
    global _face_cascade
    if _face_cascade is None:
        _face_cascade = cv2.CascadeClassifier(
            cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        )
    return _face_cascade


def find_faces(img: np.ndarray):
    """Haar-cascade face boxes (x, y, w, h) in a BGR image"""
    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return _cascade().detectMultiScale(gray, scaleFactor=1.1, minNeighbors=5, minSize=(40, 40))


def detect_faces(image_ref: str) -> FaceDetectionResult:
    """Count faces in a stored image. Raises when the image cannot be read."""
    data = read_media_bytes(image_ref)
    img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError(f"Could not decode image {image_ref}")
    face_count = len(find_faces(img))
    return FaceDetectionResult(face_count=face_count, has_face=face_count > 0)


def _to_similarity(val) -> float:
    if val is None:
        return 0.0
    try:
        v = float(str(val).strip().replace("%", ""))
    except ValueError:
        return 0.0
    return max(0.0, min(100.0, v))


def _to_conf(val) -> float:
    if val is None:
        return 0.0
    try:
        v = float(str(val).strip().replace("%", ""))
    except ValueError:
        return 0.0
    if v > 1:
        v = v / 100.0
    return max(0.0, min(1.0, v))


def compare_faces(image_ref_a: str, image_ref_b: str, threshold: float, model: Optional[str] = None) -> FaceMatchResult:
    """
    Run an LLM-based face similarity check between a document photo and a live capture.
    Raises on transport errors or unparseable output so the caller can record 'unknown'.
    """
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not configured")

    client = OpenAI(api_key=settings.OPENAI_API_KEY)
    model = model or settings.FACE_MODEL

    document_image = encode_image(read_media_bytes(image_ref_a))
    capture_image = encode_image(read_media_bytes(image_ref_b))

    response = client.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": FACE_MATCH_PROMPT},
                    {"type": "image_url", "image_url": {"url": document_image}},
                    {"type": "image_url", "image_url": {"url": capture_image}}
                ]
            }
        ],
        max_tokens=300,
        temperature=0
    )

    parsed = safe_json_parse(response.choices[0].message.content)
    similarity = _to_similarity(parsed.get("similarity"))
    confidence = _to_conf(parsed.get("confidence")) * 100

    logger.info(f"[FACE] similarity={similarity:.1f} threshold={threshold}")
    return FaceMatchResult(
        similarity=similarity,
        is_match=similarity >= threshold,
        confidence=confidence,
    )
