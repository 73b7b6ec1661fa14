"""
Envelope encryption for archive entries and standalone files.

Each backup run generates one random data encryption key (DEK). The DEK is
wrapped once with a key derived from the configured master key and stored,
wrapped, in the header of every encrypted stream. The unwrapped DEK lives in
memory for the duration of the run only.

Encrypted stream format:
    u32be header_length | header JSON | (u32be block_length | cipher_block)*

Header JSON fields:
    version      Envelope format version (2)
    method       Cipher name, e.g. "AES-256-CBC"
    iv           Base64 IV used for every block of this stream
    wrapped_key  Base64 of IV(16) || AES-256-CBC(SHA-256(master), DEK)
    key_id       First 8 hex chars of SHA-256(master), for diagnostics

Plaintext is read in 8 KiB blocks; every block is PKCS7-padded and encrypted
independently so a stream can be decrypted without buffering it whole.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import os
import struct
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tessera.config.settings import (
    SUPPORTED_ENCRYPTION_METHODS,
    ConfigurationError,
    Settings,
)

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 2
BLOCK_SIZE = 8192
DEK_SIZE = 32
WRAP_IV_SIZE = 16

KEY_LENGTHS = {
    "AES-128-CBC": 16,
    "AES-192-CBC": 24,
    "AES-256-CBC": 32,
}

_LENGTH = struct.Struct(">I")


class EncryptionError(Exception):
    """Raised when data cannot be encrypted (e.g. no master key)."""

    pass


class DecryptionError(EncryptionError):
    """Raised when data cannot be decrypted: wrong key or corrupt data."""

    pass


@dataclass(frozen=True)
class EncryptionEnvelope:
    """Header of one encrypted stream."""

    version: int
    method: str
    iv: bytes
    wrapped_key: bytes
    key_id: str

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "version": self.version,
                "method": self.method,
                "iv": base64.b64encode(self.iv).decode("ascii"),
                "wrapped_key": base64.b64encode(self.wrapped_key).decode("ascii"),
                "key_id": self.key_id,
            }
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> EncryptionEnvelope:
        """
        Parse an envelope header.

        Raises:
            DecryptionError: If the header is malformed or too old.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
            version = int(data.get("version", 0))
            if version < ENVELOPE_VERSION:
                raise DecryptionError(f"Unsupported encryption format version: {version}")
            return cls(
                version=version,
                method=str(data["method"]).upper(),
                iv=base64.b64decode(data["iv"], validate=True),
                wrapped_key=base64.b64decode(data["wrapped_key"], validate=True),
                key_id=str(data.get("key_id", "")),
            )
        except DecryptionError:
            raise
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise DecryptionError(f"Malformed encryption header: {e}") from e


class EncryptionManager:
    """
    Envelope encryption with a per-run data key.

    Usage:
        manager = EncryptionManager(master_key="secret")
        with manager.session():
            manager.encrypt_stream(plain, out)
            manager.encrypt_stream(other_plain, other_out)

    Outside a session every encrypt call generates its own one-off DEK.
    """

    def __init__(self, master_key: str | bytes | None, method: str = "AES-256-CBC") -> None:
        """
        Initialize the manager.

        Args:
            master_key: Long-lived key-encryption secret. May be None, in which
                case every encrypt/decrypt call raises EncryptionError.
            method: Cipher name.

        Raises:
            ConfigurationError: If the method is not supported.
        """
        method = method.upper()
        if method not in SUPPORTED_ENCRYPTION_METHODS:
            raise ConfigurationError(f"Unsupported encryption method: {method}")
        if isinstance(master_key, str):
            master_key = master_key.encode("utf-8")
        self._master_key = master_key or None
        self.method = method
        self._session_key: bytes | None = None
        self._session_wrapped: bytes | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> EncryptionManager:
        return cls(
            settings.security.backup_password,
            method=settings.security.encryption_method,
        )

    @property
    def has_key(self) -> bool:
        return self._master_key is not None

    @property
    def key_id(self) -> str:
        """First 8 hex characters of SHA-256(master key)."""
        return hashlib.sha256(self.require_key()).hexdigest()[:8]

    def require_key(self) -> bytes:
        """
        Return the master key.

        Raises:
            EncryptionError: If no master key is configured.
        """
        if self._master_key is None:
            raise EncryptionError(
                "Backup encryption key not configured. Set TESSERA_BACKUP_PASSWORD."
            )
        return self._master_key

    # -------------------------------------------------------------------------
    # Session (one DEK per run)
    # -------------------------------------------------------------------------

    def start_session(self) -> None:
        """Generate and wrap the data key for a backup run."""
        master = self.require_key()
        self._session_key = os.urandom(DEK_SIZE)
        self._session_wrapped = self._wrap_key(self._session_key, master)
        logger.debug(f"Started encryption session (key_id={self.key_id})")

    def end_session(self) -> None:
        """Drop the data key of the current run."""
        self._session_key = None
        self._session_wrapped = None

    @contextmanager
    def session(self) -> Iterator[EncryptionManager]:
        self.start_session()
        try:
            yield self
        finally:
            self.end_session()

    @property
    def in_session(self) -> bool:
        return self._session_key is not None

    def _data_key(self) -> tuple[bytes, bytes]:
        if self._session_key is not None and self._session_wrapped is not None:
            return self._session_key, self._session_wrapped
        master = self.require_key()
        dek = os.urandom(DEK_SIZE)
        return dek, self._wrap_key(dek, master)

    # -------------------------------------------------------------------------
    # Key wrapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _derive_wrapping_key(master: bytes) -> bytes:
        return hashlib.sha256(master).digest()

    def _wrap_key(self, dek: bytes, master: bytes) -> bytes:
        iv = os.urandom(WRAP_IV_SIZE)
        ciphertext = _cbc_encrypt(self._derive_wrapping_key(master), iv, dek)
        return iv + ciphertext

    def _unwrap_key(self, wrapped: bytes, master: bytes) -> bytes:
        if len(wrapped) <= WRAP_IV_SIZE:
            raise DecryptionError("Decryption failed: wrong key or corrupt data")
        iv, ciphertext = wrapped[:WRAP_IV_SIZE], wrapped[WRAP_IV_SIZE:]
        dek = _cbc_decrypt(self._derive_wrapping_key(master), iv, ciphertext)
        if len(dek) != DEK_SIZE:
            raise DecryptionError("Decryption failed: wrong key or corrupt data")
        return dek

    # -------------------------------------------------------------------------
    # Streams
    # -------------------------------------------------------------------------

    def encrypt_stream(self, source: BinaryIO, target: BinaryIO) -> int:
        """
        Encrypt a plaintext stream into target.

        Returns:
            Number of plaintext bytes consumed.

        Raises:
            EncryptionError: If no master key is configured.
        """
        dek, wrapped = self._data_key()
        key = dek[: KEY_LENGTHS[self.method]]
        iv = os.urandom(algorithms.AES.block_size // 8)

        header = EncryptionEnvelope(
            version=ENVELOPE_VERSION,
            method=self.method,
            iv=iv,
            wrapped_key=wrapped,
            key_id=self.key_id,
        ).to_json()
        target.write(_LENGTH.pack(len(header)))
        target.write(header)

        consumed = 0
        while True:
            block = source.read(BLOCK_SIZE)
            if not block:
                break
            consumed += len(block)
            encrypted = _cbc_encrypt(key, iv, block)
            target.write(_LENGTH.pack(len(encrypted)))
            target.write(encrypted)
        return consumed

    def read_envelope(self, source: BinaryIO) -> EncryptionEnvelope:
        """Read and parse the envelope header at the start of a stream."""
        raw_length = source.read(_LENGTH.size)
        if len(raw_length) < _LENGTH.size:
            raise DecryptionError("Decryption failed: missing encryption header")
        (header_length,) = _LENGTH.unpack(raw_length)
        raw_header = source.read(header_length)
        if len(raw_header) < header_length:
            raise DecryptionError("Decryption failed: truncated encryption header")
        return EncryptionEnvelope.from_json(raw_header)

    def iter_decrypt(self, source: BinaryIO) -> Iterator[bytes]:
        """
        Decrypt an encrypted stream block by block.

        Yields:
            Plaintext blocks in order.

        Raises:
            EncryptionError: If no master key is configured.
            DecryptionError: On a wrong key, a bad header or a truncated block.
        """
        master = self.require_key()
        envelope = self.read_envelope(source)
        if envelope.method not in KEY_LENGTHS:
            raise DecryptionError(f"Unsupported encryption method: {envelope.method}")
        if envelope.key_id and envelope.key_id != self.key_id:
            logger.warning(
                f"Key id mismatch: stream was encrypted with {envelope.key_id}, "
                f"configured key is {self.key_id}"
            )

        dek = self._unwrap_key(envelope.wrapped_key, master)
        key = dek[: KEY_LENGTHS[envelope.method]]

        while True:
            raw_length = source.read(_LENGTH.size)
            if not raw_length:
                return
            if len(raw_length) < _LENGTH.size:
                raise DecryptionError("Decryption failed: wrong key or corrupt data")
            (block_length,) = _LENGTH.unpack(raw_length)
            block = source.read(block_length)
            if len(block) < block_length:
                raise DecryptionError("Decryption failed: wrong key or corrupt data")
            yield _cbc_decrypt(key, envelope.iv, block)

    def decrypt_stream(self, source: BinaryIO, target: BinaryIO) -> int:
        """Decrypt source into target. Returns plaintext bytes written."""
        written = 0
        for block in self.iter_decrypt(source):
            target.write(block)
            written += len(block)
        return written

    def encrypt_bytes(self, data: bytes) -> bytes:
        out = io.BytesIO()
        self.encrypt_stream(io.BytesIO(data), out)
        return out.getvalue()

    def decrypt_bytes(self, data: bytes) -> bytes:
        return b"".join(self.iter_decrypt(io.BytesIO(data)))

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def encrypt_file(self, input_path: Path, output_path: Path) -> dict[str, Any]:
        """
        Encrypt a file.

        Returns:
            Metadata for the manifest: method, key_id, envelope_version.
        """
        self.require_key()
        with open(input_path, "rb") as source, open(output_path, "wb") as target:
            self.encrypt_stream(source, target)
        return {
            "method": self.method,
            "key_id": self.key_id,
            "envelope_version": ENVELOPE_VERSION,
        }

    def decrypt_file(self, input_path: Path, output_path: Path) -> dict[str, Any]:
        """Decrypt a file produced by encrypt_file()."""
        self.require_key()
        output_path = Path(output_path)
        try:
            with open(input_path, "rb") as source:
                envelope = self.read_envelope(source)
                source.seek(0)
                with open(output_path, "wb") as target:
                    self.decrypt_stream(source, target)
        except DecryptionError:
            if output_path.exists():
                output_path.unlink()
            raise
        return {
            "method": envelope.method,
            "key_id": envelope.key_id,
            "envelope_version": envelope.version,
        }


# -----------------------------------------------------------------------------
# Cipher helpers
# -----------------------------------------------------------------------------


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("Decryption failed: wrong key or corrupt data") from e
