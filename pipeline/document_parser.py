"""
Regex fallback parsing of OCR text into identity fields, date helpers and
machine-readable-zone (MRZ) extraction.
"""
import re
from datetime import date, datetime
from typing import List, Optional

from config import EXPIRY_KEYWORDS
from .schemas import ParsedDocument

DATE_PATTERN = re.compile(r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})")
NAME_LINE = re.compile(r"^[A-Za-z\s.\-]+$")
# TD3 (passport) MRZ lines are 44 characters of [A-Z0-9<]
MRZ_LINE = re.compile(r"^[A-Z0-9<]{44}$")


def normalize_date(date_str: str) -> str:
    """Turn D/M/Y or D-M-Y into ISO YYYY-MM-DD; two-digit years pivot at 50."""
    cleaned = re.sub(r"[^\d/\-]", "", date_str or "")
    parts = re.split(r"[/\-]", cleaned)

    if len(parts) == 3 and all(parts):
        if len(parts[0]) == 4:
            year, month, day = parts
        else:
            day, month, year = parts
        if len(year) == 2:
            year = f"20{year}" if int(year) < 50 else f"19{year}"
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    return cleaned


def parse_date(value: Optional[str]) -> Optional[date]:
    """Lenient date parsing for extracted fields; None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d", "%d.%m.%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def is_document_expired(expiry: Optional[str], today: Optional[date] = None) -> bool:
    """Expired when the expiry date is strictly before today. Unparseable dates are not expired."""
    expiry_date = parse_date(expiry)
    if expiry_date is None:
        return False
    return expiry_date < (today or date.today())


def extract_expiry_from_text(text: str) -> Optional[str]:
    if not text:
        return None

    for line in text.split("\n"):
        lower = line.lower()
        if not any(k in lower for k in EXPIRY_KEYWORDS):
            continue
        match = DATE_PATTERN.search(line)
        if match:
            return normalize_date(match.group(1))

    fallback = re.search(
        r"(?:exp|expiry|expiration|valid)[^0-9]{0,12}(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})",
        text,
        re.IGNORECASE,
    )
    if fallback:
        return normalize_date(fallback.group(1))
    return None


def extract_name_from_labels(lines: List[str]) -> Optional[str]:
    """Name is the line after a Name label, or the line before a DOB label."""
    for i, line in enumerate(lines):
        upper = line.upper()
        if "NAME" in upper or "GIVEN NAMES" in upper:
            if i + 1 < len(lines):
                candidate = lines[i + 1].strip()
                if len(candidate) >= 3 and NAME_LINE.match(candidate):
                    return candidate

        if "DOB" in upper or "DATE OF BIRTH" in upper or "YEAR OF BIRTH" in upper:
            if i > 0:
                candidate = lines[i - 1].strip()
                if len(candidate) >= 3 and NAME_LINE.match(candidate):
                    return candidate
    return None


def _dob_from_lines(lines: List[str]) -> Optional[str]:
    for i, line in enumerate(lines):
        upper = line.upper()
        if "DATE OF BIRTH" in upper or "DOB" in upper or "BIRTH" in upper:
            match = DATE_PATTERN.search(line)
            if match:
                return normalize_date(match.group(1))
            if i + 1 < len(lines):
                match = DATE_PATTERN.search(lines[i + 1])
                if match:
                    return normalize_date(match.group(1))
    return None


def _parse_passport(lines: List[str], parsed: ParsedDocument) -> None:
    for i, line in enumerate(lines):
        upper = line.upper()
        if "PASSPORT" in upper and not parsed.id_number:
            # Skip the label words themselves, take the first alphanumeric token with a digit
            for token in re.findall(r"[A-Z0-9]{6,12}", upper):
                if any(c.isdigit() for c in token):
                    parsed.id_number = token
                    break
        if ("ADDRESS" in upper or "PLACE OF BIRTH" in upper) and not parsed.address:
            if i + 1 < len(lines):
                parsed.address = lines[i + 1].strip()


def _parse_aadhaar(lines: List[str], parsed: ParsedDocument) -> None:
    for i, line in enumerate(lines):
        if re.fullmatch(r"\d{4}\s?\d{4}\s?\d{4}", line):
            parsed.id_number = re.sub(r"\s", "", line)
        if "ADDRESS" in line.upper() and not parsed.address and i + 1 < len(lines):
            parsed.address = ", ".join(lines[i + 1:i + 4]).strip()


def _parse_pan(lines: List[str], parsed: ParsedDocument) -> None:
    for i, line in enumerate(lines):
        upper = line.upper()
        if re.fullmatch(r"[A-Z]{5}\d{4}[A-Z]", upper):
            parsed.id_number = upper
        if "FATHER" in upper and i + 1 < len(lines):
            parsed.extracted_fields["fatherName"] = lines[i + 1].strip()


def _parse_nric(lines: List[str], parsed: ParsedDocument) -> None:
    match = re.search(r"([STGF]\d{7}[A-Z])", " ".join(lines), re.IGNORECASE)
    if match:
        parsed.id_number = match.group(1).upper()


def _parse_driving_license(lines: List[str], parsed: ParsedDocument) -> None:
    for line in lines:
        upper = line.upper()
        if ("LICENSE" in upper or "LICENCE" in upper or "DL NO" in upper) and not parsed.id_number:
            match = re.search(r"([A-Z]{2}[\d\- ]{8,18}\d)", upper)
            if match:
                parsed.id_number = re.sub(r"[\s\-]", "", match.group(1))
        if "ISSUE" in upper and "issueDate" not in parsed.extracted_fields:
            match = DATE_PATTERN.search(line)
            if match:
                parsed.extracted_fields["issueDate"] = normalize_date(match.group(1))


PARSERS = {
    "passport": _parse_passport,
    "aadhaar": _parse_aadhaar,
    "pan": _parse_pan,
    "nric": _parse_nric,
    "driving_license": _parse_driving_license,
}


def parse_document_text(raw_text: str, document_type: str) -> ParsedDocument:
    """Regex / label extraction over raw OCR text for one declared document type."""
    lines = [line.strip() for line in (raw_text or "").split("\n") if line.strip()]
    parsed = ParsedDocument(extracted_fields={"rawText": raw_text})

    parser = PARSERS.get(document_type)
    if parser is None:
        return parsed

    parsed.full_name = extract_name_from_labels(lines)
    parsed.dob = _dob_from_lines(lines)
    parser(lines, parsed)
    parsed.expiry_date = extract_expiry_from_text("\n".join(lines))
    return parsed


# ------------------------
# Machine-readable zone
# ------------------------

def _mrz_field(value: str) -> str:
    return value.replace("<", " ").strip()


def _mrz_date(yymmdd: str, future: bool) -> Optional[str]:
    if not re.fullmatch(r"\d{6}", yymmdd):
        return None
    yy, mm, dd = int(yymmdd[:2]), yymmdd[2:4], yymmdd[4:]
    if future:
        century = 2000
    else:
        century = 1900 if yy > date.today().year % 100 else 2000
    return f"{century + yy}-{mm}-{dd}"


def extract_mrz(raw_text: str) -> Optional[dict]:
    """
    Find a TD3 machine-readable zone (two 44-char lines) in OCR text.
    Returns the extracted_fields entries: mrz, mrzLine, mrzFullName, mrzIdNumber, ...
    """
    if not raw_text:
        return None

    candidates = [
        re.sub(r"\s", "", line).upper()
        for line in raw_text.split("\n")
    ]
    candidates = [c for c in candidates if MRZ_LINE.match(c)]

    for first, second in zip(candidates, candidates[1:]):
        if not first.startswith("P"):
            continue
        names = first[5:].split("<<", 1)
        surname = _mrz_field(names[0])
        given = _mrz_field(names[1]) if len(names) > 1 else ""
        full_name = " ".join(part for part in (given, surname) if part)

        return {
            "mrz": True,
            "mrzLine": second,
            "mrzFullName": full_name or None,
            "mrzIdNumber": _mrz_field(second[0:9]) or None,
            "mrzNationality": _mrz_field(second[10:13]) or None,
            "mrzDob": _mrz_date(second[13:19], future=False),
            "mrzExpiryDate": _mrz_date(second[21:27], future=True),
        }
    return None
