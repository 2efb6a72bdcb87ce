"""PULSE — Credential Vault.

AES-256-GCM encryption for per-account provider credentials.

Encrypted records are three colon-separated lowercase hex strings:
``nonce:tag:ciphertext``. The key is 32 random bytes kept in a single
owner-only file that is created exactly once and never regenerated.
"""

import json
import os
import re
import secrets
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pulse.core.logging import get_logger

logger = get_logger("core.crypto")

NONCE_LENGTH = 12  # 96-bit nonce, the GCM recommended size
LEGACY_NONCE_LENGTH = 16  # accepted on decrypt only
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class VaultError(Exception):
    """Base class for credential vault failures."""


class IntegrityError(VaultError):
    """Raised when an encrypted record is malformed or fails authentication."""


class KeyFileError(VaultError):
    """Raised when the key file is unusable. Never triggers key regeneration."""


def load_or_create_key(key_path: str | os.PathLike) -> bytes:
    """Read the key file, creating it exclusively on first run.

    A key file of the wrong length is fatal: regenerating it would strand
    every credential encrypted with the old key.
    """
    path = Path(key_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        return _read_key(path)

    key = secrets.token_bytes(KEY_LENGTH)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another process won the first-run race; use its key.
        logger.warning(f"Key file appeared concurrently at {path}, reading it")
        return _read_key(path)

    with os.fdopen(fd, "wb") as fh:
        fh.write(key)
    logger.info(f"Generated new encryption key at {path}")
    return key


def _read_key(path: Path) -> bytes:
    stored = path.read_bytes()
    if len(stored) != KEY_LENGTH:
        raise KeyFileError(
            f"Encryption key file is corrupted (expected {KEY_LENGTH} bytes, got {len(stored)}). "
            f"Restore {path} from backup or delete it to start fresh "
            "(existing credentials will be lost)."
        )
    return stored


class CredentialVault:
    """Encrypts credential material before it reaches storage."""

    def __init__(self, key_path: Optional[str] = None, key: Optional[bytes] = None):
        if key is None and key_path is None:
            raise ValueError("CredentialVault needs a key or a key_path")
        if key is not None and len(key) != KEY_LENGTH:
            raise KeyFileError(f"Encryption key must be {KEY_LENGTH} bytes")
        self.key_path = key_path
        self._key = key

    @property
    def key(self) -> bytes:
        if self._key is None:
            self._key = load_or_create_key(self.key_path)
        return self._key

    # ── Raw records ──

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string with a fresh random nonce."""
        nonce = secrets.token_bytes(NONCE_LENGTH)
        sealed = AESGCM(self.key).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, record: str) -> str:
        """Decrypt a record produced by :meth:`encrypt`."""
        parts = record.split(":")
        if len(parts) != 3:
            raise IntegrityError("Invalid encrypted data format")

        try:
            nonce = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as e:
            raise IntegrityError("Encrypted data is not valid hex") from e

        if len(nonce) not in (NONCE_LENGTH, LEGACY_NONCE_LENGTH):
            raise IntegrityError("Invalid nonce length")
        if len(tag) != TAG_LENGTH:
            raise IntegrityError("Invalid auth tag length")

        try:
            plaintext = AESGCM(self.key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag mismatch") from e
        return plaintext.decode("utf-8")

    @staticmethod
    def is_encrypted(value: str) -> bool:
        """Format check: hex triplet with the expected nonce and tag lengths."""
        parts = value.split(":")
        if len(parts) != 3:
            return False
        if len(parts[0]) not in (NONCE_LENGTH * 2, LEGACY_NONCE_LENGTH * 2):
            return False
        if len(parts[1]) != TAG_LENGTH * 2:
            return False
        return bool(_HEX_RE.match("".join(parts)))

    # ── Credential dictionaries ──

    def encrypt_credentials(self, credentials: Dict[str, str]) -> str:
        return self.encrypt(json.dumps(credentials))

    def decrypt_credentials(self, stored: str) -> Dict[str, str]:
        """Decrypt a stored credential blob.

        Plaintext JSON written before encryption was introduced is still
        accepted so both formats work during the migration window.
        """
        if self.is_encrypted(stored):
            return json.loads(self.decrypt(stored))
        return json.loads(stored)
