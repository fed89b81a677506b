"""
SecureMsg - Symmetric ratchet.

A single symmetric chain per session, advanced once after every accepted
encrypt or decrypt. Both parties apply the same steps in the same order,
so the chain stays in lockstep without any extra input after establishment.

Each step:
- output = HMAC-SHA256(key=RATCHET_STEP_LABEL, msg=chain_key)
- next encryption, MAC and chain keys are separate HKDF-Expand outputs of
  that value under their own labels, truncated to SESSION_KEY_SIZE

No role ever shares bytes with another, and the old keys are replaced,
not retained.

Author: orpheus497
Version: 1.0.0
"""

import hashlib
import hmac
import logging
from typing import Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .constants import (
    KDF_LABEL_CHAIN,
    KDF_LABEL_ENCRYPTION,
    KDF_LABEL_MAC,
    RATCHET_STEP_LABEL,
    SESSION_KEY_SIZE,
)
from .session import Session

logger = logging.getLogger(__name__)


class RatchetEngine:
    """Deterministic, session-local key update."""

    def __init__(self, step_label: bytes = RATCHET_STEP_LABEL):
        self.step_label = step_label

    def _step_output(self, chain_key: bytes) -> bytes:
        return hmac.new(self.step_label, chain_key, hashlib.sha256).digest()

    @staticmethod
    def _expand(output: bytes, label: bytes) -> bytes:
        hkdf = HKDFExpand(algorithm=hashes.SHA256(), length=SESSION_KEY_SIZE, info=label)
        return hkdf.derive(output)

    def next_keys(self, chain_key: bytes) -> Tuple[bytes, bytes, bytes]:
        """Derive the (encryption, mac, chain) keys that follow chain_key."""
        output = self._step_output(chain_key)
        return (
            self._expand(output, KDF_LABEL_ENCRYPTION),
            self._expand(output, KDF_LABEL_MAC),
            self._expand(output, KDF_LABEL_CHAIN),
        )

    def advance(self, session: Session) -> None:
        """Replace the session's keys with the next step of its chain."""
        encryption_key, mac_key, chain_key = self.next_keys(session.chain_key)
        session.rekey(encryption_key, mac_key, chain_key)
        logger.debug(f"Advanced ratchet for session {session.session_id} at counter {session.counter}")
