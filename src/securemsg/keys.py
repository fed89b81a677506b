"""
SecureMsg - Asymmetric key pairs.

Created by orpheus497

Identity keys, signed prekeys and one-time prekeys all use NIST P-256.
A single curve lets the identity key both sign the prekey (ECDSA) and
take part in the session key agreement (ECDH).

Public keys travel as PEM SubjectPublicKeyInfo text; private keys are
only serialized for the encrypted keyring file.
"""

import base64
import logging
from enum import Enum
from typing import Dict, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import KeyGenerationFailure, MessagingError, ErrorCode

logger = logging.getLogger(__name__)

CURVE = ec.SECP256R1()


class KeyRole(Enum):
    """What a key pair is used for."""

    IDENTITY = "identity"
    PREKEY = "prekey"
    ONE_TIME_PREKEY = "one_time_prekey"
    EPHEMERAL = "ephemeral"


class KeyPair:
    """
    An asymmetric P-256 key pair.

    The private half never leaves the object that owns it except through
    to_dict(), which is only used for encrypted at-rest storage.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, role: KeyRole = KeyRole.IDENTITY):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.role = role

    def public_pem(self) -> str:
        """Get the public key as PEM text (the wire encoding)."""
        return encode_public_key(self.public_key)

    def private_pem(self) -> str:
        """Get the private key as unencrypted PKCS8 PEM text."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode('ascii')

    def sign(self, data: bytes) -> str:
        """Sign data with ECDSA-SHA256 and return the base64 DER signature."""
        signature = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode('ascii')

    def exchange(self, peer_public: ec.EllipticCurvePublicKey) -> bytes:
        """ECDH with a peer public key."""
        return self.private_key.exchange(ec.ECDH(), peer_public)

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {
            'role': self.role.value,
            'private': self.private_pem(),
            'public': self.public_pem()
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> 'KeyPair':
        """Import key pair from dictionary."""
        try:
            private_key = serialization.load_pem_private_key(
                data['private'].encode('ascii'), password=None
            )
        except (KeyError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise MessagingError(
                f"Cannot load private key: {e}", code=ErrorCode.E102_INVALID_KEY
            ) from e
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise MessagingError("Stored key is not an EC key", code=ErrorCode.E102_INVALID_KEY)
        return KeyPair(private_key, KeyRole(data.get('role', KeyRole.IDENTITY.value)))


class KeyPairFactory:
    """Generates key pairs for the identity, prekey and one-time prekey roles."""

    def __init__(self, curve: Optional[ec.EllipticCurve] = None):
        self.curve = curve or CURVE

    def generate(self, role: KeyRole = KeyRole.IDENTITY) -> KeyPair:
        """
        Generate a fresh key pair.

        Raises:
            KeyGenerationFailure: If the underlying primitive errors
        """
        try:
            private_key = ec.generate_private_key(self.curve)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error(f"Key generation failed for role {role.value}: {e}")
            raise KeyGenerationFailure(
                f"Cannot generate {role.value} key pair: {e}", {"role": role.value}
            ) from e
        return KeyPair(private_key, role)


def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Encode a public key as PEM SubjectPublicKeyInfo text."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode('ascii')


def load_public_key(pem: str) -> ec.EllipticCurvePublicKey:
    """
    Load a PEM-encoded P-256 public key.

    Raises:
        ValueError: If the text is not a PEM EC public key on the expected curve
    """
    if not isinstance(pem, str):
        raise ValueError("Public key must be PEM text")
    try:
        public_key = serialization.load_pem_public_key(pem.encode('ascii'))
    except UnsupportedAlgorithm as e:
        raise ValueError(f"Unsupported public key: {e}") from e
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError("Public key is not an elliptic curve key")
    if public_key.curve.name != CURVE.name:
        raise ValueError(f"Unexpected curve: {public_key.curve.name}")
    return public_key
