"""
SecureMsg - Password-protected at-rest storage.

Created by orpheus497

Keyrings and session stores hold private key material and live symmetric
keys, so they are written as AES-256-GCM ciphertext under a key derived
from a password with Argon2id:

- Unique 16-byte salt per file write
- Unique 12-byte nonce per encryption
- Atomic writes (temp file then rename)
"""

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    NONCE_SIZE,
    SALT_SIZE,
    VAULT_FORMAT_VERSION,
    VAULT_KEY_SIZE,
)
from .errors import ErrorCode, VaultError

logger = logging.getLogger(__name__)


class Vault:
    """Encrypts JSON-serializable documents with a password-derived key."""

    def __init__(
        self,
        password: str,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ):
        if not password:
            raise VaultError("Vault password must not be empty", code=ErrorCode.E002_INVALID_ARGUMENT)
        self._password = password.encode('utf-8')
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    def _derive_key(self, salt: bytes, kdf: Optional[Dict[str, int]] = None) -> bytes:
        # Envelope cost parameters take precedence over this instance's
        kdf = kdf or {}
        return hash_secret_raw(
            secret=self._password,
            salt=salt,
            time_cost=kdf.get('time_cost', self.time_cost),
            memory_cost=kdf.get('memory_cost', self.memory_cost),
            parallelism=kdf.get('parallelism', self.parallelism),
            hash_len=VAULT_KEY_SIZE,
            type=Type.ID
        )

    def encrypt(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt a document and return the envelope dictionary."""
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(document).encode('utf-8')
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext, None)
        return {
            'salt': base64.b64encode(salt).decode('utf-8'),
            'nonce': base64.b64encode(nonce).decode('utf-8'),
            'ciphertext': base64.b64encode(ciphertext).decode('utf-8'),
            'version': VAULT_FORMAT_VERSION,
            'kdf': {
                'time_cost': self.time_cost,
                'memory_cost': self.memory_cost,
                'parallelism': self.parallelism,
            },
        }

    def decrypt(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            VaultError: If the password is wrong or the envelope is corrupted
        """
        try:
            salt = base64.b64decode(envelope['salt'])
            nonce = base64.b64decode(envelope['nonce'])
            ciphertext = base64.b64decode(envelope['ciphertext'])
        except (KeyError, TypeError, binascii.Error) as e:
            raise VaultError(
                f"Corrupted vault envelope: {e}", code=ErrorCode.E501_VAULT_LOAD_FAILED
            ) from e

        try:
            key = self._derive_key(salt, envelope.get('kdf'))
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise VaultError(
                "Failed to decrypt vault. Incorrect password or corrupted file.",
                code=ErrorCode.E503_VAULT_DECRYPT_FAILED,
            ) from e
        return json.loads(plaintext.decode('utf-8'))

    def save(self, path: Path, document: Dict[str, Any]) -> None:
        """
        Encrypt and atomically write a document to path.

        Raises:
            VaultError: If writing fails
        """
        path = Path(path)
        envelope = self.encrypt(document)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = path.with_suffix(path.suffix + '.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(envelope, f, indent=2)
            os.chmod(temp_file, 0o600)
            os.replace(temp_file, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise VaultError(f"Cannot save {path}: {e}", code=ErrorCode.E502_VAULT_SAVE_FAILED) from e
        logger.debug(f"Saved encrypted document to {path}")

    def load(self, path: Path) -> Optional[Dict[str, Any]]:
        """
        Read and decrypt a document, or return None if path does not exist.

        Raises:
            VaultError: If the file is unreadable, corrupted, or the password is wrong
        """
        path = Path(path)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                envelope = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            raise VaultError(f"Cannot load {path}: {e}", code=ErrorCode.E501_VAULT_LOAD_FAILED) from e
        return self.decrypt(envelope)
