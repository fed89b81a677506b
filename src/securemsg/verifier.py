"""
SecureMsg - Bundle signature verification.

Created by orpheus497

Checks that a peer's prekey is authentically bound to their identity key.
Verification is fail-closed: any malformed input or primitive error
yields False instead of raising.
"""

import base64
import binascii
import logging
from typing import Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from .keyring import IdentityBundle
from .keys import load_public_key

logger = logging.getLogger(__name__)


class BundleVerifier:
    """ECDSA-SHA256 verification matching IdentityKeyring's signatures."""

    def verify(self, data: Union[str, bytes], signature: str, public_key: str) -> bool:
        """
        Verify a base64 DER signature over data with a PEM public key.

        Returns:
            True only if the signature is valid
        """
        try:
            if isinstance(data, str):
                data = data.encode('ascii')
            key = load_public_key(public_key)
            raw_signature = base64.b64decode(signature, validate=True)
            key.verify(raw_signature, data, ec.ECDSA(hashes.SHA256()))
            return True
        except InvalidSignature:
            logger.warning("Signature verification failed")
            return False
        except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as e:
            logger.warning(f"Verification error: {e}")
            return False

    def verify_bundle(self, bundle: IdentityBundle) -> bool:
        """Verify a bundle's prekey signature under its identity key."""
        return self.verify(bundle.pre_key, bundle.signature, bundle.identity_key)
