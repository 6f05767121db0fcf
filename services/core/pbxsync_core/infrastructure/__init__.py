"""Infrastructure components for the PBX sync engine.

This package contains infrastructure-level components like:
- Credential encryption
- Retry with backoff for flaky I/O
"""

from pbxsync_core.infrastructure.crypto import (
    CredentialCipher,
    DecryptionError,
    InvalidKeyError,
)
from pbxsync_core.infrastructure.retry import (
    RetryConfig,
    call_with_retry,
    with_retry,
)

__all__ = [
    "CredentialCipher",
    "DecryptionError",
    "InvalidKeyError",
    "RetryConfig",
    "call_with_retry",
    "with_retry",
]
