"""
Validators — Regex and rule-based validation for payer and Mexican banking identifiers.
"""
import re
from datetime import datetime
from typing import Any

CLABE_PATTERN = re.compile(r"^\d{18}$")
BANK_CODE_PATTERN = re.compile(r"^\d{5}$")
AGREEMENT_CODE_PATTERN = re.compile(r"^\d{6,8}$")
POSTAL_CODE_PATTERN = re.compile(r"^\d{5}$")
EMAIL_PATTERN = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.[A-Za-z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
RFC_PATTERN = re.compile(r"^[A-Z&Ñ]{3,4}[0-9]{2}(0[1-9]|1[012])(0[1-9]|[12][0-9]|3[01])[A-Z0-9]{2}[0-9A]$")

CLABE_WEIGHTS = (3, 7, 1)


def validate_clabe(clabe: Any, check_digit: bool = True) -> bool:
    """Validate an 18-digit CLABE, including its trailing control digit."""
    if not isinstance(clabe, str) or not CLABE_PATTERN.match(clabe.strip()):
        return False
    if not check_digit:
        return True
    digits = [int(c) for c in clabe.strip()]
    total = sum((d * CLABE_WEIGHTS[i % 3]) % 10 for i, d in enumerate(digits[:17]))
    return (10 - total % 10) % 10 == digits[17]


def validate_bank_code(code: Any) -> bool:
    """Institution code: exactly 5 digits (e.g. 40012)."""
    if not isinstance(code, str) or not code:
        return False
    return bool(BANK_CODE_PATTERN.match(code.strip()))


def validate_agreement_code(code: Any) -> bool:
    if not isinstance(code, str) or not code:
        return False
    return bool(AGREEMENT_CODE_PATTERN.match(code.strip()))


def validate_postal_code(code: Any) -> bool:
    if not isinstance(code, str) or not code:
        return False
    return bool(POSTAL_CODE_PATTERN.match(code.strip()))


def validate_email(email: Any) -> bool:
    if not isinstance(email, str) or not email:
        return False
    return bool(EMAIL_PATTERN.match(email.strip()))


def validate_phone(phone: Any) -> bool:
    """E.164-style phone: optional +, up to 15 digits, no leading zero."""
    if not isinstance(phone, str) or not phone:
        return False
    return bool(PHONE_PATTERN.match(phone.strip()))


def validate_rfc(tax_id: Any) -> bool:
    """Validate Mexican RFC format (12 chars for companies, 13 for people)."""
    if not isinstance(tax_id, str) or not tax_id:
        return False
    return bool(RFC_PATTERN.match(tax_id.strip().upper()))


def validate_iso_date(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def length_between(value: Any, minimum: int, maximum: int) -> bool:
    if not isinstance(value, str):
        return False
    return minimum <= len(value.strip()) <= maximum
