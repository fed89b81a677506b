"""
SecureMsg - Message encryption, authentication and replay protection.

Created by orpheus497

Every message travels as a MessagePackage:

    {sessionId, counter, iv, ciphertext, mac, sender, recipient, timestamp}
    plus an optional handshake header on initiator packages

Encryption is AES-128-GCM under the session's encryption key with a fresh
12-byte nonce; the (sessionId, counter, sender, recipient) header is bound
as associated data. The package MAC is HMAC-SHA256 under the session's MAC
key over a fixed, length-prefixed byte encoding of every other field, so
signing and verifying never depend on a serializer's field order.

Decrypt order (cheapest rejection first):
1. Unknown session        -> SessionNotFound
2. counter <= session     -> ReplayDetected   (nothing else checked)
3. MAC does not match     -> MacMismatch      (before any decryption)
4. Cipher rejects         -> DecryptionFailure
5. Success                -> counter updated, ratchet advanced

Any failure leaves the session untouched.
"""

import base64
import binascii
import dataclasses
import hashlib
import hmac
import logging
import os
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import MAC_ENCODING_VERSION, NONCE_SIZE
from .errors import (
    DecryptionFailure,
    ErrorCode,
    MacMismatch,
    MalformedPackage,
    MessagingError,
    ReplayDetected,
)
from .ratchet import RatchetEngine
from .session import Handshake, Session, SessionStore

logger = logging.getLogger(__name__)

MAX_COUNTER = 2 ** 64 - 1
MIN_TIMESTAMP = -(2 ** 63)
MAX_TIMESTAMP = 2 ** 63 - 1


@dataclass(frozen=True)
class MessagePackage:
    """One encrypted message, consumed once by the recipient."""

    session_id: str
    counter: int
    iv: bytes
    ciphertext: bytes
    mac: bytes
    sender: str
    recipient: str
    timestamp: int
    handshake: Optional[Handshake] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary (binary fields base64)."""
        data = {
            "sessionId": self.session_id,
            "counter": self.counter,
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "mac": base64.b64encode(self.mac).decode("ascii"),
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
        }
        if self.handshake is not None:
            data["handshake"] = self.handshake.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessagePackage":
        """
        Create from the wire dictionary.

        Raises:
            MalformedPackage: If a field is missing, mistyped or out of range
        """
        try:
            counter = data["counter"]
            timestamp = data["timestamp"]
            if isinstance(counter, bool) or not isinstance(counter, int):
                raise TypeError("counter must be an integer")
            if not 0 <= counter <= MAX_COUNTER:
                raise ValueError(f"counter out of range: {counter}")
            if isinstance(timestamp, bool) or not isinstance(timestamp, int):
                raise TypeError("timestamp must be integer milliseconds")
            if not MIN_TIMESTAMP <= timestamp <= MAX_TIMESTAMP:
                raise ValueError(f"timestamp out of range: {timestamp}")
            for name in ("sessionId", "sender", "recipient"):
                if not isinstance(data[name], str):
                    raise TypeError(f"{name} must be a string")
            handshake = data.get("handshake")
            return cls(
                session_id=data["sessionId"],
                counter=counter,
                iv=base64.b64decode(data["iv"], validate=True),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                mac=base64.b64decode(data["mac"], validate=True),
                sender=data["sender"],
                recipient=data["recipient"],
                timestamp=timestamp,
                handshake=Handshake.from_dict(handshake) if handshake else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as e:
            raise MalformedPackage(f"Invalid message package: {e}") from e


def _field(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return struct.pack("!I", len(value)) + value


def associated_data(session_id: str, counter: int, sender: str, recipient: str) -> bytes:
    """Header bound into the AEAD tag."""
    return b"".join([
        MAC_ENCODING_VERSION,
        _field(session_id),
        struct.pack("!Q", counter),
        _field(sender),
        _field(recipient),
    ])


def canonical_mac_input(package: MessagePackage) -> bytes:
    """
    Fixed byte encoding of every package field except the MAC.

    Layout: version tag, then in order sessionId, counter (8-byte BE), iv,
    ciphertext, sender, recipient, timestamp (8-byte BE signed) and the
    handshake block (presence byte, then identityKey, baseKey, oneTimePreKey).
    Variable-length fields carry a 4-byte big-endian length prefix.
    """
    parts = [
        MAC_ENCODING_VERSION,
        _field(package.session_id),
        struct.pack("!Q", package.counter),
        _field(package.iv),
        _field(package.ciphertext),
        _field(package.sender),
        _field(package.recipient),
        struct.pack("!q", package.timestamp),
    ]
    if package.handshake is None:
        parts.append(b"\x00")
    else:
        parts.append(b"\x01")
        parts.append(_field(package.handshake.identity_key))
        parts.append(_field(package.handshake.base_key))
        parts.append(_field(package.handshake.one_time_pre_key or ""))
    return b"".join(parts)


def compute_mac(package: MessagePackage, mac_key: bytes) -> bytes:
    """HMAC-SHA256 of the canonical encoding."""
    return hmac.new(mac_key, canonical_mac_input(package), hashlib.sha256).digest()


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageCodec:
    """Authenticated encryption over sessions held in a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        local_id: str,
        ratchet: Optional[RatchetEngine] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.local_id = local_id
        self.ratchet = ratchet or RatchetEngine()
        self.clock = clock or _now_ms

    def encrypt(self, session: Session, plaintext: Union[str, bytes]) -> MessagePackage:
        """
        Encrypt plaintext on session and advance its ratchet.

        Returns:
            A package whose counter equals the session's new counter

        Raises:
            SessionNotFound: If the session is not held by the store
            MessagingError: If the cipher fails (session unchanged)
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        with self.store.locked(session.session_id) as session:
            counter = session.counter + 1
            recipient = session.peer_id
            iv = os.urandom(NONCE_SIZE)
            aad = associated_data(session.session_id, counter, self.local_id, recipient)
            try:
                ciphertext = AESGCM(session.encryption_key).encrypt(iv, plaintext, aad)
            except (ValueError, OverflowError) as e:
                raise MessagingError(
                    f"Message encryption failed: {e}", code=ErrorCode.E305_ENCRYPTION_FAILED
                ) from e

            package = MessagePackage(
                session_id=session.session_id,
                counter=counter,
                iv=iv,
                ciphertext=ciphertext,
                mac=b"",
                sender=self.local_id,
                recipient=recipient,
                timestamp=self.clock(),
                handshake=session.handshake,
            )
            package = dataclasses.replace(package, mac=compute_mac(package, session.mac_key))

            session.counter = counter
            self.ratchet.advance(session)

        logger.debug(f"Encrypted message #{counter} on session {package.session_id}")
        return package

    def decrypt_bytes(self, package: MessagePackage) -> bytes:
        """
        Verify and decrypt a package, returning the raw plaintext.

        Raises:
            SessionNotFound: If the package names an unknown session
            ReplayDetected: If the counter is not above the session counter
            MacMismatch: If the MAC does not match the package fields
            DecryptionFailure: If the cipher rejects the ciphertext
        """
        with self.store.locked(package.session_id) as session:
            if package.counter <= session.counter:
                logger.warning(
                    f"Replay rejected on session {session.session_id}: "
                    f"counter {package.counter} <= {session.counter}"
                )
                raise ReplayDetected(
                    f"Counter {package.counter} already seen",
                    {"session_id": session.session_id, "counter": package.counter},
                )

            expected = compute_mac(package, session.mac_key)
            if not hmac.compare_digest(expected, package.mac):
                logger.warning(f"MAC mismatch on session {session.session_id} (possible tampering)")
                raise MacMismatch(
                    "Message authentication failed",
                    {"session_id": session.session_id, "counter": package.counter},
                )

            aad = associated_data(package.session_id, package.counter, package.sender, package.recipient)
            try:
                plaintext = AESGCM(session.encryption_key).decrypt(package.iv, package.ciphertext, aad)
            except (InvalidTag, ValueError) as e:
                logger.error(f"Cipher rejected authenticated package on session {session.session_id}")
                raise DecryptionFailure(
                    "Message decryption failed",
                    {"session_id": session.session_id, "counter": package.counter},
                ) from e

            session.counter = package.counter
            session.handshake = None
            self.ratchet.advance(session)

        logger.debug(f"Decrypted message #{package.counter} on session {package.session_id}")
        return plaintext

    def decrypt(self, package: MessagePackage) -> str:
        """Verify and decrypt a package carrying UTF-8 text.

        Raises:
            DecryptionFailure: Additionally, if the plaintext is not valid UTF-8
        """
        plaintext = self.decrypt_bytes(package)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailure("Plaintext is not valid UTF-8") from e
