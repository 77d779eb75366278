import cv2
import numpy as np

from pipeline.quality import ImageQualityGate
from pipeline.schemas import CheckStatus

gate = ImageQualityGate()


def _jpeg(img, quality=90):
    ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, quality])
    assert ok
    return buf.tobytes()


def _flat(w, h, value=128):
    return np.full((h, w, 3), value, dtype=np.uint8)


def test_undecodable_input_is_skipped():
    assert gate.check_template_layout(None).status is CheckStatus.SKIPPED
    assert gate.check_image_quality(b"not an image").status is CheckStatus.SKIPPED
    assert gate.check_tampering(b"").status is CheckStatus.SKIPPED


def test_sharp_document_passes_all_image_rules(noise_jpeg):
    assert gate.check_template_layout(noise_jpeg).status is CheckStatus.PASSED
    assert gate.check_tampering(noise_jpeg).status is CheckStatus.PASSED
    assert gate.check_image_quality(noise_jpeg).status is CheckStatus.PASSED


def test_template_rejects_small_image():
    result = gate.check_template_layout(_jpeg(_flat(150, 100)))
    assert result.status is CheckStatus.FAILED
    assert "too small" in result.detail


def test_template_rejects_extreme_aspect_ratio():
    result = gate.check_template_layout(_jpeg(_flat(1000, 200)))
    assert result.status is CheckStatus.FAILED
    assert "Aspect ratio" in result.detail


def test_quality_rejects_low_resolution():
    result = gate.check_image_quality(_jpeg(_flat(320, 240)))
    assert result.status is CheckStatus.FAILED
    assert "Resolution" in result.detail


def test_quality_rejects_blurry_image():
    result = gate.check_image_quality(_jpeg(_flat(800, 600)))
    assert result.status is CheckStatus.FAILED
    assert "blurry" in result.detail


def test_tampering_rejects_tiny_image():
    result = gate.check_tampering(_jpeg(_flat(40, 40)))
    assert result.status is CheckStatus.FAILED


def test_tampering_rejects_flat_image():
    result = gate.check_tampering(_jpeg(_flat(400, 300)))
    assert result.status is CheckStatus.FAILED
