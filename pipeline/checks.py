import re
from datetime import date
from typing import Optional
from .document_parser import parse_date
from .schemas import ParsedDocument, RuleResult

MRZ_WEIGHTS = (7, 3, 1)


def icao_check_digit(value: str) -> int:
    """
    ICAO 9303 check digit: digits keep their value, A-Z map to 10-35, '<' is 0,
    weights 7,3,1 repeat. Returns -1 for characters outside the MRZ alphabet.
    """
    total = 0
    for i, c in enumerate(value):
        if c.isdigit():
            v = int(c)
        elif "A" <= c <= "Z":
            v = ord(c) - 55
        elif c == "<":
            v = 0
        else:
            return -1
        total += v * MRZ_WEIGHTS[i % 3]
    return total % 10


class DocumentChecks:
    """
    Validation checks on extracted document data. Each returns a RuleResult
    and never blocks the decision on its own.
    """

    def normalize_text(self, text: Optional[str]) -> str:
        """Normalize text for comparison"""
        if not text:
            return ""
        return re.sub(r"\s+", " ", str(text).strip().upper())

    def check_ocr_fields(self, parsed: ParsedDocument) -> RuleResult:
        """Required OCR fields (name and id number) must be present"""
        missing = []
        if not parsed.full_name or not str(parsed.full_name).strip():
            missing.append("name")
        if not parsed.id_number or not str(parsed.id_number).strip():
            missing.append("ID number")

        if missing:
            return RuleResult.failed(f"Missing or empty: {', '.join(missing)}")
        return RuleResult.passed()

    def check_field_consistency(self, parsed: ParsedDocument, today: Optional[date] = None) -> RuleResult:
        """DOB in the past; expiry not before issue date"""
        today = today or date.today()
        issues = []

        dob = parse_date(parsed.dob)
        expiry = parse_date(parsed.expiry_date)
        issue_date = parse_date(str(parsed.extracted_fields.get("issueDate") or ""))

        if dob and dob > today:
            issues.append("DOB is in the future")

        if expiry and issue_date and expiry < issue_date:
            issues.append("Expiry date is earlier than issue date")

        if issues:
            return RuleResult.failed("; ".join(issues))
        return RuleResult.passed()

    def check_cross_field_consistency(self, parsed: ParsedDocument) -> RuleResult:
        """Visual name / id number against the machine-readable zone or barcode"""
        fields = parsed.extracted_fields
        if not fields.get("mrz"):
            return RuleResult.skipped("No MRZ/barcode to compare")

        other_name = fields.get("mrzFullName")
        other_id = fields.get("mrzIdNumber")
        if other_name is None and other_id is None:
            return RuleResult.skipped("No MRZ/barcode to compare")

        issues = []
        # Token sets: MRZ puts the surname first, the visual zone usually last
        visual_name = set(self.normalize_text(parsed.full_name).split())
        mrz_name = set(self.normalize_text(other_name).split())
        if visual_name and mrz_name and visual_name != mrz_name:
            issues.append("Name mismatch between document and MRZ/barcode")

        visual_id = self.normalize_text(parsed.id_number).replace(" ", "")
        mrz_id = self.normalize_text(other_id).replace(" ", "")
        if visual_id and mrz_id and visual_id != mrz_id:
            issues.append("ID number mismatch between document and MRZ/barcode")

        if issues:
            return RuleResult.failed("; ".join(issues))
        return RuleResult.passed()

    def check_mrz_checksum(self, mrz_line: Optional[str]) -> RuleResult:
        """
        ICAO 9303 check digits. A 44-char TD3 second line is checked field by field
        (document number, birth date, expiry, composite); any other line is
        treated as data followed by a single check digit.
        """
        if not mrz_line or not isinstance(mrz_line, str):
            return RuleResult.skipped("No MRZ data")

        line = mrz_line.strip().upper()
        if len(line) < 2:
            return RuleResult.skipped("MRZ line too short")

        if len(line) == 44:
            return self._check_td3_line(line)

        data, expected = line[:-1], line[-1]
        if not expected.isdigit():
            return RuleResult.failed("Invalid MRZ check digit character")
        computed = icao_check_digit(data)
        if computed < 0:
            return RuleResult.failed("Invalid MRZ characters")
        if computed != int(expected):
            return RuleResult.failed(f"MRZ checksum mismatch (expected {expected}, got {computed})")
        return RuleResult.passed()

    def _check_td3_line(self, line: str) -> RuleResult:
        fields = [
            ("document number", line[0:9], line[9]),
            ("birth date", line[13:19], line[19]),
            ("expiry date", line[21:27], line[27]),
            ("composite", line[0:10] + line[13:20] + line[21:43], line[43]),
        ]
        issues = []
        for name, data, check in fields:
            computed = icao_check_digit(data)
            if computed < 0:
                return RuleResult.failed("Invalid MRZ characters")
            if not check.isdigit() or computed != int(check):
                issues.append(f"{name} check digit mismatch (expected {check}, got {computed})")

        if issues:
            return RuleResult.failed("MRZ " + "; ".join(issues))
        return RuleResult.passed()
