"""API key authentication, authorization and rate limiting.

Note: ``require_scope`` lives in ``api.deps`` and is NOT re-exported here
to avoid a circular import (auth → api.deps → auth).
Import directly: ``from waveorder.api.deps import require_scope``.
"""

from waveorder.auth.authenticator import AuthOutcome, AuthResult, RequestAuthenticator
from waveorder.auth.context import ApiIdentity
from waveorder.auth.keys import KeyKind, generate_key, hash_key

__all__ = [
    "ApiIdentity",
    "AuthOutcome",
    "AuthResult",
    "KeyKind",
    "RequestAuthenticator",
    "generate_key",
    "hash_key",
]
