import cv2
import numpy as np
from typing import Optional, Tuple
from config import settings
from .schemas import RuleResult

class ImageQualityGate:
    """
    Image-level document checks: template layout, tampering heuristics
    and raw quality. All results are informational.
    """

    def __init__(self):
        self.template_min_width = settings.TEMPLATE_MIN_WIDTH
        self.template_min_height = settings.TEMPLATE_MIN_HEIGHT
        self.min_aspect = settings.TEMPLATE_MIN_ASPECT
        self.max_aspect = settings.TEMPLATE_MAX_ASPECT
        self.min_width = settings.MIN_IMAGE_WIDTH
        self.min_height = settings.MIN_IMAGE_HEIGHT
        self.blur_threshold = settings.BLUR_THRESHOLD
        self.tamper_min_size = settings.TAMPER_MIN_SIZE
        self.tamper_reencode_ratio = settings.TAMPER_REENCODE_RATIO
        self.tamper_min_sharpness = settings.TAMPER_MIN_SHARPNESS

    def decode(self, image_bytes: Optional[bytes]) -> Optional[np.ndarray]:
        """Decode image bytes into a BGR array"""
        if not image_bytes:
            return None
        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        return cv2.imdecode(buffer, cv2.IMREAD_COLOR)

    def dimensions(self, img: np.ndarray) -> Tuple[int, int]:
        h, w = img.shape[:2]
        return w, h

    def laplacian_variance(self, img: np.ndarray) -> float:
        """Sharpness score using Laplacian variance"""
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        return float(cv2.Laplacian(gray, cv2.CV_64F).var())

    def check_template_layout(self, image_bytes: Optional[bytes]) -> RuleResult:
        """Document dimensions and aspect ratio must look like an ID card or passport page"""
        img = self.decode(image_bytes)
        if img is None:
            return RuleResult.skipped("Dimensions not checked")

        w, h = self.dimensions(img)
        if w < self.template_min_width or h < self.template_min_height:
            return RuleResult.failed(
                f"Image too small ({w}x{h}; min {self.template_min_width}x{self.template_min_height})"
            )

        aspect = w / h
        if aspect < self.min_aspect or aspect > self.max_aspect:
            return RuleResult.failed(
                f"Aspect ratio {aspect:.2f} outside expected range [{self.min_aspect}, {self.max_aspect}]"
            )
        return RuleResult.passed()

    def check_tampering(self, image_bytes: Optional[bytes]) -> RuleResult:
        """ELA-style re-encode size delta plus blur variance"""
        img = self.decode(image_bytes)
        if img is None:
            return RuleResult.skipped("No image")

        w, h = self.dimensions(img)
        if w < self.tamper_min_size or h < self.tamper_min_size:
            return RuleResult.failed("Image too small for analysis")

        ok, reencoded = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
        if not ok:
            return RuleResult.skipped("Re-encoding failed")

        diff = abs(len(image_bytes) - len(reencoded))
        ratio = diff / len(image_bytes)
        if ratio > self.tamper_reencode_ratio:
            return RuleResult.failed(
                f"High re-encoding difference (ELA-style ratio {ratio * 100:.1f}%)"
            )

        variance = self.laplacian_variance(img)
        if variance < self.tamper_min_sharpness:
            return RuleResult.failed(f"Low sharpness (variance {variance:.0f})")
        return RuleResult.passed()

    def check_image_quality(self, image_bytes: Optional[bytes]) -> RuleResult:
        """Minimum resolution and Laplacian sharpness"""
        img = self.decode(image_bytes)
        if img is None:
            return RuleResult.skipped("No image")

        w, h = self.dimensions(img)
        if w < self.min_width or h < self.min_height:
            return RuleResult.failed(
                f"Resolution too low ({w}x{h}; min {self.min_width}x{self.min_height})"
            )

        variance = self.laplacian_variance(img)
        if variance < self.blur_threshold:
            return RuleResult.failed(f"Image may be blurry (sharpness score {variance:.0f})")
        return RuleResult.passed()
