"""Authentication, authorization and rate limiting.

The request pipeline itself lives in ``joinery.api.pipeline``; this package
holds the stages it is composed of. ``require_scope`` is imported directly
from ``joinery.auth.scopes``.
"""

from joinery.auth.context import AuthKind, AuthLevel, Identity
from joinery.auth.keys import generate_api_key, hash_api_key

__all__ = ["AuthKind", "AuthLevel", "Identity", "generate_api_key", "hash_api_key"]
