"""
Identity Verification Pipeline

This package contains the decision pipeline for identity verifications:
- Document field extraction (OpenAI Vision, Tesseract OCR, regex fallback)
- Toggleable validation rules (template, tampering, quality, OCR, MRZ)
- Video liveness, face similarity and spoof screening
- Behavioral risk scoring
- Final decision making
"""

__version__ = "1.0.0"
