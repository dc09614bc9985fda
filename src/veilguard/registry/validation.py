"""Device token format validation.

Validation is side-effect free and runs before any registry write.
"""

import re
from typing import Iterable, Optional, Pattern

from veilguard.common.constants import DeviceConstants
from veilguard.common.exceptions import ValidationError


class TokenValidator:
    """Rejects empty, oversized, malformed and denylisted device tokens."""
    
    def __init__(
        self,
        pattern: str = DeviceConstants.DEFAULT_TOKEN_PATTERN,
        min_length: int = DeviceConstants.TOKEN_MIN_LENGTH,
        max_length: int = DeviceConstants.TOKEN_MAX_LENGTH,
        denylist: Optional[Iterable[str]] = None,
    ):
        """Initialize validator.
        
        Args:
            pattern: Regular expression a token must fully match
            min_length: Minimum token length
            max_length: Maximum token length
            denylist: Tokens that are never accepted (case-insensitive)
        """
        self.pattern: Pattern[str] = re.compile(pattern)
        self.min_length = min_length
        self.max_length = max_length
        self.denylist = {token.lower() for token in (denylist or [])}
    
    @classmethod
    def uuid_only(cls, denylist: Optional[Iterable[str]] = None) -> "TokenValidator":
        """Validator that accepts only canonical UUID tokens."""
        return cls(pattern=f"(?i){DeviceConstants.UUID_PATTERN}", min_length=36, max_length=36, denylist=denylist)
    
    def validate(self, token: Optional[str]) -> str:
        """Validate a device token.
        
        Returns:
            The token, unchanged
            
        Raises:
            ValidationError: If the token is malformed or denylisted
        """
        if token is None or not token.strip():
            raise ValidationError("Device token is required")
        
        if len(token) < self.min_length or len(token) > self.max_length:
            raise ValidationError(
                f"Device token length must be between {self.min_length} and {self.max_length}",
                {"length": len(token)},
            )
        
        if not self.pattern.fullmatch(token):
            raise ValidationError("Device token has an invalid format")
        
        if token.lower() in self.denylist:
            raise ValidationError("Device token is not allowed")
        
        return token
    
    def is_valid(self, token: Optional[str]) -> bool:
        try:
            self.validate(token)
            return True
        except ValidationError:
            return False
