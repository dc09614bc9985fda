"""Tests for device token format validation."""

import pytest

from veilguard.common.exceptions import ValidationError
from veilguard.registry import TokenValidator


class TestTokenValidator:
    
    @pytest.fixture
    def validator(self):
        return TokenValidator(denylist=["null", "Undefined"])
    
    @pytest.mark.parametrize("token", ["abc-1", "device_42", "3f2c9a1e-8d4b-4c7a-9e1f-0a2b3c4d5e6f"])
    def test_accepts_well_formed_tokens(self, validator, token):
        assert validator.validate(token) == token
    
    @pytest.mark.parametrize("token", [None, "", "   ", "ab", "a" * 129, "abc 1", "abc/1", "<script>"])
    def test_rejects_malformed_tokens(self, validator, token):
        with pytest.raises(ValidationError):
            validator.validate(token)
    
    def test_denylist_is_case_insensitive(self, validator):
        with pytest.raises(ValidationError, match="not allowed"):
            validator.validate("UNDEFINED")
        assert validator.is_valid("NULL") is False
    
    def test_uuid_only(self):
        validator = TokenValidator.uuid_only()
        
        assert validator.is_valid("3F2C9A1E-8D4B-4C7A-9E1F-0A2B3C4D5E6F")
        assert not validator.is_valid("abc-1")
