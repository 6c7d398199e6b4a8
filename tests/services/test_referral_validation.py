"""
Unit tests for referral code validation.
"""
import pytest

from attribution.services.referrals.validation import is_valid_referral_code


class TestIsValidReferralCode:
    """Tests for is_valid_referral_code function"""

    @pytest.mark.parametrize("code", ["CG-ab12cd", "CG-AB12CD", "cg-0f0f0f", "CG-123456"])
    def test_structured_codes_accepted(self, code):
        """CG- followed by 6 hex characters is valid in any case"""
        assert is_valid_referral_code(code) is True

    @pytest.mark.parametrize("code", ["abcd", "Partner2024", "A" * 20])
    def test_custom_codes_accepted(self, code):
        """Alphanumeric tokens of 4-20 chars are valid"""
        assert is_valid_referral_code(code) is True

    @pytest.mark.parametrize(
        "code",
        [
            "",
            "abc",
            "A" * 21,
            "CG-12345",
            "CG-ghijkl",
            "CG-ab12cd1",
            "has space",
            "emoji🙂code",
            "abcd\n",
            "ab-cd",
        ],
    )
    def test_malformed_codes_rejected(self, code):
        """Everything else is rejected"""
        assert is_valid_referral_code(code) is False

    @pytest.mark.parametrize("value", [None, 1234, ["CG-ab12cd"]])
    def test_non_strings_rejected(self, value):
        """Non-string values are never valid"""
        assert is_valid_referral_code(value) is False
