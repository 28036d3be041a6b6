"""
Access control: signed status tokens, admin passwords and login throttling.
"""

from .tokens import StatusTokenService, TokenClaims, hash_token
from .passwords import hash_password, verify_password
from .rate_limit import LoginRateLimiter, LoginLimitStatus
from .admin import AdminAuthService

__all__ = [
    "StatusTokenService",
    "TokenClaims",
    "hash_token",
    "hash_password",
    "verify_password",
    "LoginRateLimiter",
    "LoginLimitStatus",
    "AdminAuthService",
]
