"""
card_quality.py — Data-quality checks on extracted card fields.
Covers the most common extraction slips only. Issues never fail a card;
they ride along with the saved record so staff review can flag it.
"""

import re
from dataclasses import asdict, dataclass

ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: str = ERROR

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ValidationResult:
    issues: tuple

    @property
    def needs_review(self):
        return any(issue.severity == ERROR for issue in self.issues)

    @property
    def is_valid(self):
        return not self.needs_review


def _digits(text):
    return re.sub(r"\D", "", text or "")


def validate_card_data(fields):
    issues = []

    name = (fields.get("name") or "").strip()
    if len(name) < 2:
        issues.append(ValidationIssue("name", "Name is missing or too short"))

    phone = (fields.get("phone") or "").strip()
    if phone:
        digits = _digits(phone)
        if len(digits) == 9:
            issues.append(ValidationIssue("phone", "Phone number has only 9 digits (expected 10)"))
        elif 0 < len(digits) < 9:
            issues.append(ValidationIssue("phone", f"Phone number has only {len(digits)} digits"))
        elif len(digits) >= 10 and len(set(digits)) == 1:
            issues.append(ValidationIssue("phone", "Phone number is all the same digit"))
    else:
        issues.append(ValidationIssue("phone", "Phone number is missing"))

    email = (fields.get("email") or "").strip()
    if email:
        if "@" not in email:
            issues.append(ValidationIssue("email", "Email is missing @ symbol"))
    else:
        issues.append(ValidationIssue("email", "Email is missing"))

    return ValidationResult(issues=tuple(issues))


def format_validation_summary(result):
    if result.is_valid:
        return "No issues detected - ready to save"
    count = sum(1 for issue in result.issues if issue.severity == ERROR)
    return f"{count} issue{'s' if count != 1 else ''} detected - needs review"


def format_phone_number(phone):
    """(XXX) XXX-XXXX for US numbers, anything else trimmed and left alone."""
    if phone is None:
        return None
    digits = _digits(phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return phone.strip() or None
