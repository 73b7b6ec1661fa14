"""
Envelope encryption for Tessera archives.
"""

from tessera.security.encryption import (
    DecryptionError,
    EncryptionEnvelope,
    EncryptionError,
    EncryptionManager,
)

__all__ = [
    "EncryptionManager",
    "EncryptionEnvelope",
    "EncryptionError",
    "DecryptionError",
]
