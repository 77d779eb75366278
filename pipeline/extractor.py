import json
import logging
from typing import Any, Dict, Optional

import cv2
import numpy as np
import pytesseract
from openai import OpenAI
from PIL import Image

from config import settings, DOCUMENT_CONFIGS
from .document_parser import extract_mrz, normalize_date, parse_document_text
from .file_converter import load_document_image
from .schemas import ParsedDocument
from .utils import encode_image, mask_id_number, mask_name, safe_json_parse

logger = logging.getLogger(__name__)

FIELD_SCHEMA = """{
  "full_name": "string or null",
  "id_number": "string or null",
  "date_of_birth": "string or null",
  "expiry_date": "string or null",
  "issue_date": "string or null",
  "address": "string or null",
  "mrz_lines": ["string"] or null
}"""

DATE_RULES = """
IMPORTANT DATE RULES:
- Return dates exactly as printed, using only numbers and separators (DD-MM-YYYY or DD/MM/YYYY)
- DO NOT use day names, month names or ordinals
- DO NOT guess day or month if they are not visible
"""

TEXT_PROMPT_PREFIX = """
Extract the following fields from the OCR text of an identity document.
Return STRICT JSON only. No markdown, no code fences, no explanation.
Use null for any field not found.
""" + DATE_RULES + """
Schema:
""" + FIELD_SCHEMA


class DocumentExtractor:
    """
    Extracts identity fields from a document image in tiers:
    vision model JSON, then OCR text mapped by a chat model, then regex over the OCR text.
    Each tier only runs when the previous one did not produce both name and id number.
    """

    def __init__(self, client: Optional[OpenAI] = None):
        self.model = settings.OPENAI_MODEL
        self.client = client
        if self.client is None and settings.OPENAI_API_KEY:
            self.client = OpenAI(api_key=settings.OPENAI_API_KEY)

    def get_extraction_prompt(self, doc_type: str) -> str:
        """Vision prompt for one declared document type"""
        config = DOCUMENT_CONFIGS.get(doc_type, {})
        label = config.get("label", "identity document")
        id_regex = config.get("id_regex")

        prompt = f"""
You are a {label} extraction system.

Extract the holder's identity details from this document.
Even if text is blurry or partially visible, read carefully, but DO NOT guess or hallucinate.
{DATE_RULES}
If the document has a machine-readable zone (lines of capital letters, digits and '<'),
copy each MRZ line verbatim into mrz_lines.

Return STRICT JSON only.

Expected format:
{FIELD_SCHEMA}
"""
        if id_regex:
            prompt += f"\nThe id number should match the pattern {id_regex} once spaces are removed.\n"
        return prompt

    # ------------------------
    # Tier 1: vision
    # ------------------------
    def extract_structured(self, image: bytes, doc_type: str) -> Optional[ParsedDocument]:
        if self.client is None:
            return None

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.get_extraction_prompt(doc_type)},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": encode_image(image)
                            }
                        }
                    ]
                }
            ],
            max_tokens=600,
            temperature=0
        )

        try:
            raw = safe_json_parse(response.choices[0].message.content)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(f"[OCR] vision output unparseable: {e}")
            return None
        return self._to_parsed_document(raw, source="vision")

    # ------------------------
    # Tier 2: OCR text + chat model
    # ------------------------
    def ocr_text(self, image: bytes) -> str:
        """Grayscale + Otsu binarization, then Tesseract"""
        img = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Could not decode document image")
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        _, bw = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        return pytesseract.image_to_string(Image.fromarray(bw))

    def extract_from_text(self, ocr_text: str) -> Optional[ParsedDocument]:
        """Map OCR text to the field schema; one retry on unparseable output"""
        if self.client is None or not ocr_text.strip():
            return None

        prompt = f"{TEXT_PROMPT_PREFIX}\n\nOCR TEXT:\n{ocr_text}"
        for attempt in range(2):
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=400,
                temperature=0
            )
            try:
                raw = safe_json_parse(response.choices[0].message.content)
            except (ValueError, json.JSONDecodeError) as e:
                logger.warning(f"[OCR] text extraction attempt {attempt + 1} unparseable: {e}")
                continue
            parsed = self._to_parsed_document(raw, source="llm_text")
            parsed.extracted_fields["rawText"] = ocr_text
            return parsed
        return None

    def _to_parsed_document(self, raw: Dict[str, Any], source: str) -> ParsedDocument:
        def text(key: str) -> Optional[str]:
            value = raw.get(key)
            if not isinstance(value, str):
                return None
            value = value.strip()
            return value or None

        parsed = ParsedDocument(
            full_name=text("full_name"),
            id_number=text("id_number"),
            address=text("address"),
            extracted_fields={"source": source},
        )

        dob_raw = text("date_of_birth")
        if dob_raw:
            parsed.dob = normalize_date(dob_raw)
            parsed.extracted_fields["dobDisplay"] = dob_raw

        expiry_raw = text("expiry_date")
        if expiry_raw:
            parsed.expiry_date = normalize_date(expiry_raw)
            parsed.extracted_fields["expiryDateDisplay"] = expiry_raw

        issue_raw = text("issue_date")
        if issue_raw:
            parsed.extracted_fields["issueDate"] = normalize_date(issue_raw)

        mrz_lines = raw.get("mrz_lines")
        if isinstance(mrz_lines, list):
            parsed.extracted_fields["mrzText"] = "\n".join(str(line) for line in mrz_lines)
        return parsed

    # ------------------------
    # Orchestration
    # ------------------------
    def extract(self, image_ref: str, document_type: str) -> ParsedDocument:
        """Extract identity fields from a stored document image"""
        image = load_document_image(image_ref)

        best: Optional[ParsedDocument] = None
        try:
            best = self.extract_structured(image, document_type)
        except Exception as e:
            logger.warning(f"[OCR] vision extraction failed: {e}")

        if best is not None and best.has_identity():
            return self._finish(best, raw_text=None)

        try:
            raw_text = self.ocr_text(image)
        except Exception:
            if best is None:
                raise
            logger.exception("[OCR] tesseract failed; keeping partial vision result")
            return self._finish(best, raw_text=None)

        candidate = None
        try:
            candidate = self.extract_from_text(raw_text)
        except Exception as e:
            logger.warning(f"[OCR] text extraction failed: {e}")
        best = _better(best, candidate)

        if best is None or not best.has_identity():
            regex_result = parse_document_text(raw_text, document_type)
            regex_result.extracted_fields["source"] = "regex"
            best = _better(best, regex_result)

        return self._finish(best, raw_text=raw_text)

    def _finish(self, parsed: ParsedDocument, raw_text: Optional[str]) -> ParsedDocument:
        fields = parsed.extracted_fields
        if raw_text is not None:
            fields.setdefault("rawText", raw_text)

        mrz_source = "\n".join(t for t in (fields.pop("mrzText", None), raw_text) if t)
        mrz = extract_mrz(mrz_source)
        if mrz:
            fields.update(mrz)

        logger.info(
            f"[OCR] extracted via {fields.get('source')}: "
            f"name={mask_name(parsed.full_name)} id={mask_id_number(parsed.id_number)} "
            f"dob={bool(parsed.dob)} mrz={bool(mrz)}"
        )
        return parsed


def _score(parsed: Optional[ParsedDocument]) -> int:
    if parsed is None:
        return -1
    return sum(1 for v in (parsed.full_name, parsed.id_number, parsed.dob, parsed.expiry_date, parsed.address) if v)


def _better(current: Optional[ParsedDocument], candidate: Optional[ParsedDocument]) -> Optional[ParsedDocument]:
    """Prefer a candidate with the name + id pair, otherwise the one with more fields"""
    if candidate is None:
        return current
    if current is None:
        return candidate
    if candidate.has_identity() and not current.has_identity():
        return candidate
    if current.has_identity():
        return current
    return candidate if _score(candidate) > _score(current) else current


_default_extractor: Optional[DocumentExtractor] = None


def extract_document_fields(image_ref: str, document_type: str) -> ParsedDocument:
    """Provider entry point used by the decision pipeline"""
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = DocumentExtractor()
    return _default_extractor.extract(image_ref, document_type)
