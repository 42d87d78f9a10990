"""
Brazilian phone validation unit tests
"""
import pytest

from menu_session.application.services.phone_validation import mask_phone, validate_br_phone


class TestValidateBrPhone:
    @pytest.mark.parametrize(
        "raw",
        ["11987654321", "(11) 98765-4321", "+55 11 98765-4321", "5511987654321"],
    )
    def test_mobile_formats_normalize_to_country_code(self, raw):
        result = validate_br_phone(raw)

        assert result.is_valid is True
        assert result.normalized == "5511987654321"

    def test_landline_is_accepted(self):
        result = validate_br_phone("(21) 3333-4444")

        assert result.is_valid is True
        assert result.normalized == "552133334444"

    def test_unknown_area_code_is_rejected(self):
        result = validate_br_phone("20987654321")

        assert result.is_valid is False
        assert result.reason == "DDD 20 inválido"

    def test_mobile_must_start_with_nine(self):
        result = validate_br_phone("11887654321")

        assert result.is_valid is False
        assert "9" in result.reason

    @pytest.mark.parametrize("raw", ["", "12345", "119876543210123"])
    def test_wrong_length_is_rejected(self, raw):
        assert validate_br_phone(raw).is_valid is False


def test_mask_phone_keeps_last_four_digits():
    assert mask_phone("5511987654321") == "***4321"
    assert mask_phone("12") == "***"
