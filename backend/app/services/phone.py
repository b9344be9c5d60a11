from __future__ import annotations

import re
from typing import Optional

from backend.app.errors import ValidationError
from backend.app.models import CanonicalPhone, EgyptianValidation, PhoneAnalysis, TwoNumberResult

EGYPT_COUNTRY_CODE = "20"
MIN_DIGITS = 8
MAX_DIGITS = 15

COUNTRY_CODES = {
    "20": "Egypt",
    "966": "Saudi Arabia",
    "971": "United Arab Emirates",
    "965": "Kuwait",
    "968": "Oman",
    "973": "Bahrain",
    "974": "Qatar",
    "962": "Jordan",
    "961": "Lebanon",
    "963": "Syria",
    "964": "Iraq",
    "967": "Yemen",
    "212": "Morocco",
    "213": "Algeria",
    "216": "Tunisia",
    "218": "Libya",
    "249": "Sudan",
    "90": "Turkey",
}

_ARABIC_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹", "0123456789" * 2)
_SEPARATORS = re.compile(r"[\s\-().+\u200b-\u200f\u202a-\u202e\u2066-\u2069\ufeff]")
_NON_DIGITS = re.compile(r"[^0-9]")
_ASCII_DIGITS = re.compile(r"^[0-9]+$")


def normalize_digits(value: Optional[str]) -> str:
    return (value or "").translate(_ARABIC_DIGITS)


def clean_phone_number(number: Optional[str]) -> str:
    value = _SEPARATORS.sub("", normalize_digits(number).strip())
    if value.startswith("00"):
        value = value[2:]
    return value


def _extract_country_code(digits: str) -> Optional[str]:
    for size in (3, 2):
        prefix = digits[:size]
        if prefix in COUNTRY_CODES:
            return prefix
    return None


def validate_egyptian_number(number: Optional[str]) -> EgyptianValidation:
    original = number or ""
    digits = _NON_DIGITS.sub("", normalize_digits(original))
    if not digits:
        return EgyptianValidation(
            original=original,
            is_valid=False,
            national_number="",
            errors=["phone number is empty"],
        )

    national = digits
    if national.startswith("0020"):
        national = national[4:]
    elif national.startswith(EGYPT_COUNTRY_CODE) and len(national) > 10:
        national = national[2:]
    elif national.startswith("0"):
        national = national[1:]

    errors: list[str] = []
    if len(national) != 10:
        errors.append(
            f"must contain exactly 10 digits after the country prefix (found {len(national)})"
        )
    if not national.startswith("1"):
        errors.append("must start with 1 after the country prefix")

    return EgyptianValidation(
        original=original,
        is_valid=not errors,
        national_number=national,
        final_format=None if errors else f"{EGYPT_COUNTRY_CODE}{national}",
        errors=errors,
    )


def analyze_phone_number(number: Optional[str]) -> PhoneAnalysis:
    original = number or ""
    cleaned = clean_phone_number(original)

    def invalid(errors: list[str], suggestions: list[str], **extra) -> PhoneAnalysis:
        return PhoneAnalysis(
            original=original,
            cleaned=cleaned,
            formatted="",
            is_valid=False,
            validation_errors=errors,
            suggestions=suggestions,
            **extra,
        )

    if not cleaned:
        return invalid(["phone number is empty"], ["enter a mobile number such as 01012345678"])
    if not _ASCII_DIGITS.match(cleaned):
        return invalid(
            ["phone number contains non-digit characters"],
            ["remove letters and symbols from the number"],
        )

    length_errors: list[str] = []
    if len(cleaned) < MIN_DIGITS:
        length_errors.append(f"phone number is too short ({len(cleaned)} digits, minimum {MIN_DIGITS})")
    elif len(cleaned) > MAX_DIGITS:
        length_errors.append(f"phone number is too long ({len(cleaned)} digits, maximum {MAX_DIGITS})")
    if length_errors:
        return invalid(length_errors, ["check for missing or extra digits"])

    egyptian = validate_egyptian_number(cleaned)
    if egyptian.is_valid:
        return PhoneAnalysis(
            original=original,
            cleaned=cleaned,
            formatted=egyptian.final_format or "",
            is_valid=True,
            country_code=EGYPT_COUNTRY_CODE,
            country_name=COUNTRY_CODES[EGYPT_COUNTRY_CODE],
            national_number=egyptian.national_number,
            is_egyptian=True,
        )

    country_code = _extract_country_code(cleaned)
    if country_code is None:
        return invalid(
            ["cannot determine country code"],
            ["add the international prefix, for example +20 for Egypt"],
        )
    if country_code == EGYPT_COUNTRY_CODE:
        return invalid(
            list(egyptian.errors),
            ["Egyptian mobile numbers look like 01XXXXXXXXX or +201XXXXXXXXX"],
            country_code=country_code,
            country_name=COUNTRY_CODES[country_code],
            national_number=egyptian.national_number,
            is_egyptian=True,
        )

    national = cleaned[len(country_code) :]
    if not 7 <= len(national) <= 12:
        return invalid(
            [f"national number length {len(national)} is outside 7-12 digits"],
            ["verify the number with the customer"],
            country_code=country_code,
            country_name=COUNTRY_CODES[country_code],
            national_number=national,
        )
    return PhoneAnalysis(
        original=original,
        cleaned=cleaned,
        formatted=f"{country_code}{national}",
        is_valid=True,
        country_code=country_code,
        country_name=COUNTRY_CODES[country_code],
        national_number=national,
    )


def process_two_numbers(phone: Optional[str], whatsapp_number: Optional[str]) -> TwoNumberResult:
    """Pick one canonical Egyptian number out of the two phone columns.

    The WhatsApp column wins when both validate. The log lists every step so a
    skipped row can be explained from the stats endpoints.
    """
    log: list[str] = []
    accepted: dict[str, str] = {}
    for field, raw in (("whatsapp", whatsapp_number), ("phone", phone)):
        if not (raw or "").strip():
            log.append(f"{field}: empty, skipped")
            continue
        result = validate_egyptian_number(raw)
        if result.is_valid and result.final_format:
            accepted[field] = result.final_format
            log.append(f"{field}: {raw!r} accepted as {result.final_format}")
        else:
            log.append(f"{field}: {raw!r} rejected ({'; '.join(result.errors)})")

    if not accepted:
        log.append("no valid number found")
        return TwoNumberResult(is_valid=False, processing_log=log)

    source = "whatsapp" if "whatsapp" in accepted else "phone"
    preferred = accepted[source]
    alternative = accepted.get("phone") if source == "whatsapp" else None
    if alternative == preferred:
        alternative = None
    log.append(f"selected {source} number {preferred}")
    return TwoNumberResult(
        preferred_number=preferred,
        alternative_number=alternative,
        source=source,
        is_valid=True,
        processing_log=log,
    )


def canonicalize_row_phone(phone: Optional[str], whatsapp_number: Optional[str]) -> CanonicalPhone:
    raw = (whatsapp_number or "").strip() or (phone or "").strip()
    result = process_two_numbers(phone, whatsapp_number)
    if not result.is_valid or not result.preferred_number:
        return CanonicalPhone(
            raw=raw,
            is_valid=False,
            validation_errors=[line for line in result.processing_log if "rejected" in line]
            or ["no phone number provided"],
        )
    raw = whatsapp_number if result.source == "whatsapp" else phone
    return CanonicalPhone(
        raw=raw or "",
        normalized=result.preferred_number,
        country_code=EGYPT_COUNTRY_CODE,
        is_valid=True,
    )


def format_for_whatsapp(number: Optional[str]) -> str:
    result = validate_egyptian_number(number)
    if not result.is_valid or not result.final_format:
        raise ValidationError(f"invalid Egyptian number: {number!r}", result.errors)
    return result.final_format


def generate_order_id(name: Optional[str], phone: Optional[str], order_date: Optional[str]) -> str:
    prefix = re.sub(r"\s+", "", name or "")[:3].upper()
    digits = _NON_DIGITS.sub("", normalize_digits(phone))
    if not prefix or not digits:
        return ""
    stamp = _NON_DIGITS.sub("", normalize_digits(order_date))[-6:].rjust(6, "0")
    return f"{prefix}-{digits[-4:]}-{stamp}"
