"""
Encryption Foundation for DataGuard.

This module provides envelope encryption for protected records.

Key Features:
- Per-record data keys (AES-256-GCM, fresh 96-bit nonce per seal)
- Data keys wrapped under a master key (AES Key Wrap, RFC 3394)
- Wrapped keys carry their master key id, so old and new master keys
  coexist during rotation
- SHA-256 integrity hash of the plaintext for dedup and tamper evidence

Dependencies:
- cryptography>=41.0.0 (AES-256-GCM, AES key wrap)
- keyring>=23.0.0 (optional master key storage)

Usage:
    from dataguard.lib.encryption import CryptoVault, VaultConfig, Classification

    vault = CryptoVault(VaultConfig.from_master_key(load_master_key()))
    sealed = vault.seal("quarterly numbers", Classification.CONFIDENTIAL)
    plaintext = vault.open(sealed.ciphertext, sealed.wrapped_key, sealed.algorithm_id)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import secrets
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.keywrap import (
    InvalidUnwrap,
    aes_key_unwrap,
    aes_key_wrap,
)

from dataguard.lib.exceptions import (
    ConfigurationError,
    DecryptionError,
    EncryptionError,
)

logger = logging.getLogger(__name__)

# Keyring service name
SERVICE_NAME = "dataguard"

KEY_SIZE = 32  # 256 bits for AES-256
NONCE_SIZE = 12  # 96 bits for GCM (recommended)
TAG_SIZE = 16

ALGORITHM_AES_256_GCM = "aes-256-gcm+a256kw"
SUPPORTED_ALGORITHMS = frozenset({ALGORITHM_AES_256_GCM})


# =============================================================================
# Data Classification Enum
# =============================================================================

class Classification(StrEnum):
    """
    Sensitivity label of a protected record.

    The classification selects which DLP rules apply to a submission.
    Every level is sealed with the same authenticated construction.
    """
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"

    @classmethod
    def parse(cls, value: str | Classification) -> Classification:
        """Parse a classification label, raising ValueError for unknown labels."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


# =============================================================================
# Key material
# =============================================================================

def key_id_from_key_bytes(key: bytes) -> str:
    """Stable, non-secret identifier for a master key."""
    return hashlib.sha256(key).hexdigest()[:16]


def generate_master_key() -> bytes:
    # AES-256 key
    return secrets.token_bytes(KEY_SIZE)


def _b64decode_strict(encoded: str) -> bytes:
    """
    Decode base64 that must be exactly what b64encode would produce.

    Non-canonical padding bits in the last character would otherwise
    decode to the same bytes.

    Raises:
        ValueError: Invalid or non-canonical base64
    """
    decoded = base64.b64decode(encoded, validate=True)
    if base64.b64encode(decoded).decode("ascii") != encoded:
        raise ValueError("Non-canonical base64")
    return decoded


def load_master_key(environ: Mapping[str, str] | None = None) -> bytes:
    """
    Load the master encryption key.

    Priority:
    1. Environment variable DATAGUARD_MASTER_KEY (base64 encoded)
    2. Keyring storage
    3. Deterministic dev key (DATAGUARD_DEV_MODE=1, never in production)

    Returns:
        32-byte master key

    Raises:
        ConfigurationError: If no valid key can be loaded
    """
    env = os.environ if environ is None else environ

    env_key = env.get("DATAGUARD_MASTER_KEY")
    if env_key:
        try:
            decoded = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ConfigurationError("DATAGUARD_MASTER_KEY is not valid base64") from e
        if len(decoded) != KEY_SIZE:
            raise ConfigurationError(
                f"DATAGUARD_MASTER_KEY must be exactly {KEY_SIZE} bytes "
                f"when base64-decoded, got {len(decoded)} bytes."
            )
        return decoded

    try:
        stored = keyring.get_password(SERVICE_NAME, "master_key")
        if stored:
            decoded = base64.b64decode(stored)
            if len(decoded) == KEY_SIZE:
                return decoded
            logger.warning("Keyring master key has wrong length, ignoring it")
    except Exception as e:
        logger.debug(
            "Keyring unavailable for master key, trying next method",
            extra={"error": type(e).__name__},
        )

    # SECURITY: This key is NOT secret. Development only.
    if env.get("DATAGUARD_DEV_MODE") == "1":
        if env.get("DATAGUARD_ENVIRONMENT") == "production":
            raise ConfigurationError(
                "DATAGUARD_DEV_MODE=1 is set but DATAGUARD_ENVIRONMENT=production. "
                "Refusing to use deterministic dev key in production."
            )
        logger.warning(
            "SECURITY WARNING: Using deterministic dev key. "
            "Data is NOT securely encrypted. "
            "Set DATAGUARD_MASTER_KEY for real encryption."
        )
        return hashlib.sha256(b"dataguard-dev-key-DO-NOT-USE-IN-PRODUCTION").digest()

    raise ConfigurationError(
        "No master key found. Set DATAGUARD_MASTER_KEY environment variable "
        "or configure keyring."
    )


@dataclass(frozen=True)
class VaultConfig:
    """
    Immutable master key set.

    Attributes:
        master_keys: master_key_id -> 32-byte key, for every key still
            referenced by a wrapped record key
        active_key_id: key used to wrap newly sealed record keys
    """
    master_keys: Mapping[str, bytes]
    active_key_id: str

    def __post_init__(self) -> None:
        for key_id, key in self.master_keys.items():
            if len(key) != KEY_SIZE:
                raise ConfigurationError(
                    f"Master key {key_id} must be {KEY_SIZE} bytes (AES-256)."
                )
        if self.active_key_id not in self.master_keys:
            raise ConfigurationError(f"Active master key {self.active_key_id} is not loaded")
        object.__setattr__(self, "master_keys", MappingProxyType(dict(self.master_keys)))

    @classmethod
    def from_master_key(cls, key: bytes) -> VaultConfig:
        key_id = key_id_from_key_bytes(key)
        return cls(master_keys={key_id: key}, active_key_id=key_id)

    def with_active_key(self, key: bytes) -> VaultConfig:
        """Copy of this config with `key` added and made active."""
        key_id = key_id_from_key_bytes(key)
        keys = dict(self.master_keys)
        keys[key_id] = key
        return VaultConfig(master_keys=keys, active_key_id=key_id)

    def without_key(self, key_id: str) -> VaultConfig:
        keys = {k: v for k, v in self.master_keys.items() if k != key_id}
        return VaultConfig(master_keys=keys, active_key_id=self.active_key_id)


# =============================================================================
# Sealed payload
# =============================================================================

@dataclass(frozen=True)
class SealedPayload:
    """
    Output of CryptoVault.seal.

    Attributes:
        ciphertext: base64(nonce || ciphertext || tag)
        wrapped_key: "<master_key_id>:<base64 wrapped record key>"
        algorithm_id: construction used, bound into the GCM associated data
        integrity_hash: SHA-256 hex of the plaintext
    """
    ciphertext: str
    wrapped_key: str = field(repr=False)
    algorithm_id: str
    integrity_hash: str

    @property
    def master_key_id(self) -> str:
        return self.wrapped_key.partition(":")[0]


# =============================================================================
# Crypto Vault
# =============================================================================

class CryptoVault:
    """
    Seals and opens record payloads with envelope encryption.

    Security Properties:
    - AES-256-GCM authenticated encryption, fresh random nonce per seal
    - Fresh random data key per record, wrapped with AES-KW under the master key
    - Any tag mismatch, unwrap failure or malformed input raises DecryptionError;
      partial plaintext is never returned

    The vault holds no mutable state besides the VaultConfig reference.
    Rotation swaps that reference; in-flight calls keep the snapshot they
    started with, so readers are never blocked.

    Example:
        >>> vault = CryptoVault(VaultConfig.from_master_key(generate_master_key()))
        >>> sealed = vault.seal("card 4111", Classification.RESTRICTED)
        >>> vault.open(sealed.ciphertext, sealed.wrapped_key, sealed.algorithm_id)
        'card 4111'
    """

    def __init__(self, config: VaultConfig):
        self._config = config
        self._rotation_lock = threading.Lock()

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def active_key_id(self) -> str:
        return self._config.active_key_id

    @staticmethod
    def compute_integrity_hash(plaintext: str) -> str:
        """SHA-256 hex digest of the UTF-8 plaintext."""
        return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()

    def seal(
        self,
        plaintext: str,
        classification: Classification | str,
    ) -> SealedPayload:
        """
        Encrypt a payload under a fresh record key.

        Args:
            plaintext: The payload to protect
            classification: Sensitivity label of the payload

        Returns:
            SealedPayload with everything needed to open it later

        Raises:
            EncryptionError: On empty plaintext or an unsupported classification
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty plaintext")
        try:
            Classification.parse(classification)
        except ValueError as e:
            raise EncryptionError(f"Unsupported classification: {classification!r}") from e

        config = self._config
        master_key = config.master_keys[config.active_key_id]

        record_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_SIZE)
        aad = ALGORITHM_AES_256_GCM.encode("ascii")

        try:
            ciphertext = AESGCM(record_key).encrypt(nonce, plaintext.encode("utf-8"), aad)
            wrapped = aes_key_wrap(master_key, record_key)
        except (ValueError, UnicodeEncodeError) as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

        return SealedPayload(
            ciphertext=base64.b64encode(nonce + ciphertext).decode("ascii"),
            wrapped_key=f"{config.active_key_id}:{base64.b64encode(wrapped).decode('ascii')}",
            algorithm_id=ALGORITHM_AES_256_GCM,
            integrity_hash=self.compute_integrity_hash(plaintext),
        )

    def open(self, ciphertext: str, wrapped_key: str, algorithm_id: str) -> str:
        """
        Authenticate and decrypt a sealed payload.

        Raises:
            DecryptionError: If decryption fails (unknown key, tampered data)
        """
        if algorithm_id not in SUPPORTED_ALGORITHMS:
            raise DecryptionError(f"Unsupported algorithm: {algorithm_id!r}")

        record_key = self._unwrap(self._config, wrapped_key)

        try:
            blob = _b64decode_strict(ciphertext)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Ciphertext is truncated")

        nonce, body = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = AESGCM(record_key).decrypt(
                nonce, body, algorithm_id.encode("ascii")
            )
            return plaintext.decode("utf-8")
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from e

    def rotate_master_key(self, new_master_key: bytes | None = None) -> str:
        """
        Install a new active master key.

        Existing keys stay loaded so records wrapped under them remain
        readable until they are re-wrapped with rewrap_key().

        Returns:
            The id of the new active master key
        """
        key = new_master_key if new_master_key is not None else generate_master_key()
        with self._rotation_lock:
            self._config = self._config.with_active_key(key)
            new_id = self._config.active_key_id
        logger.info("Master key rotated", extra={"master_key_id": new_id})
        return new_id

    def rewrap_key(self, wrapped_key: str) -> str:
        """Re-wrap a record key under the active master key. Ciphertext is untouched."""
        config = self._config
        if wrapped_key.partition(":")[0] == config.active_key_id:
            return wrapped_key
        record_key = self._unwrap(config, wrapped_key)
        master_key = config.master_keys[config.active_key_id]
        wrapped = aes_key_wrap(master_key, record_key)
        return f"{config.active_key_id}:{base64.b64encode(wrapped).decode('ascii')}"

    def retire_master_key(self, key_id: str) -> None:
        """Drop a non-active master key once nothing references it."""
        with self._rotation_lock:
            if key_id == self._config.active_key_id:
                raise EncryptionError("Cannot retire the active master key")
            self._config = self._config.without_key(key_id)

    @staticmethod
    def _unwrap(config: VaultConfig, wrapped_key: str) -> bytes:
        key_id, sep, encoded = wrapped_key.partition(":")
        if not sep or not encoded:
            raise DecryptionError("Wrapped key is malformed")
        master_key = config.master_keys.get(key_id)
        if master_key is None:
            raise DecryptionError(f"Unknown master key id: {key_id!r}")
        try:
            wrapped = _b64decode_strict(encoded)
            record_key = aes_key_unwrap(master_key, wrapped)
        except (binascii.Error, ValueError, InvalidUnwrap) as e:
            raise DecryptionError("Record key unwrap failed") from e
        if len(record_key) != KEY_SIZE:
            raise DecryptionError("Record key has wrong length")
        return record_key
