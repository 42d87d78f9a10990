"""
Brazilian Phone Validation
Normalizes phones to 55 + DDD + number and rejects unknown area codes.
"""
import re

from menu_session.domain.schemas.auth import PhoneValidationResult

VALID_DDDS = frozenset(
    {
        11, 12, 13, 14, 15, 16, 17, 18, 19,
        21, 22, 24, 27, 28,
        31, 32, 33, 34, 35, 37, 38,
        41, 42, 43, 44, 45, 46, 47, 48, 49,
        51, 53, 54, 55,
        61, 62, 63, 64, 65, 66, 67, 68, 69,
        71, 73, 74, 75, 77, 79,
        81, 82, 83, 84, 85, 86, 87, 88, 89,
        91, 92, 93, 94, 95, 96, 97, 98, 99,
    }
)

COUNTRY_CODE = "55"


def strip_phone(phone: str) -> str:
    """Digits only, without the Brazilian country code."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(COUNTRY_CODE) and len(digits) in (12, 13):
        digits = digits[2:]
    return digits


def validate_br_phone(phone: str) -> PhoneValidationResult:
    """
    Validate a Brazilian phone number.

    Args:
        phone: Phone in any formatting, with or without +55

    Returns:
        Result with the normalized form (55 + DDD + number) when valid
    """
    digits = strip_phone(phone)

    if len(digits) not in (10, 11):
        return PhoneValidationResult(
            is_valid=False, reason="Número deve ter 10 ou 11 dígitos com DDD"
        )

    ddd = int(digits[:2])
    if ddd not in VALID_DDDS:
        return PhoneValidationResult(is_valid=False, reason=f"DDD {ddd:02d} inválido")

    if len(digits) == 11 and digits[2] != "9":
        return PhoneValidationResult(
            is_valid=False, reason="Celular deve começar com 9 após o DDD"
        )

    return PhoneValidationResult(is_valid=True, normalized=f"{COUNTRY_CODE}{digits}")


def mask_phone(phone: str) -> str:
    """Keep only the last four digits for logs."""
    digits = re.sub(r"\D", "", phone or "")
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"
