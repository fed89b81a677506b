"""
SecureMsg - Identity keyring and registration bundles.

Created by orpheus497

The keyring owns one identity key pair, one signed prekey pair and a pool
of one-time prekey pairs. It publishes an IdentityBundle whose signature
binds the prekey to the identity key, and hands out private halves of
one-time prekeys exactly once when a peer's handshake consumes them.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import DEFAULT_ONE_TIME_PREKEYS
from .errors import InvalidHandshake, MalformedPackage, UninitializedClient
from .keys import KeyPair, KeyPairFactory, KeyRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityBundle:
    """Public registration bundle published to the relay.

    Wire shape: {userId, identityKey, preKey, oneTimePreKeys, signature}.
    """

    user_id: str
    identity_key: str
    pre_key: str
    one_time_pre_keys: List[str] = field(default_factory=list)
    signature: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary."""
        return {
            "userId": self.user_id,
            "identityKey": self.identity_key,
            "preKey": self.pre_key,
            "oneTimePreKeys": list(self.one_time_pre_keys),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityBundle":
        """Create from the wire dictionary.

        Raises:
            MalformedPackage: If a field is missing or of the wrong type
        """
        try:
            one_time = data.get("oneTimePreKeys") or []
            if not isinstance(one_time, list):
                raise TypeError("oneTimePreKeys must be a list")
            return cls(
                user_id=str(data["userId"]),
                identity_key=data["identityKey"],
                pre_key=data["preKey"],
                one_time_pre_keys=list(one_time),
                signature=data["signature"],
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedPackage(f"Invalid identity bundle: {e}") from e

    def with_one_time_pre_keys(self, keys: List[str]) -> "IdentityBundle":
        """Copy of this bundle advertising a different one-time prekey list.

        The signature only covers the prekey, so it stays valid.
        """
        return IdentityBundle(
            self.user_id, self.identity_key, self.pre_key, list(keys), self.signature
        )


class IdentityKeyring:
    """Local identity material for one user."""

    def __init__(self, factory: Optional[KeyPairFactory] = None):
        self.factory = factory or KeyPairFactory()
        self.identity_key: Optional[KeyPair] = None
        self.pre_key: Optional[KeyPair] = None
        # public PEM -> key pair, in generation order
        self.one_time_pre_keys: Dict[str, KeyPair] = {}
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self.identity_key is not None and self.pre_key is not None

    def initialize(self, one_time_count: int = DEFAULT_ONE_TIME_PREKEYS) -> None:
        """
        Generate the identity, prekey and one-time prekey pairs.

        Raises:
            KeyGenerationFailure: If the underlying primitive errors
        """
        if one_time_count < 0:
            raise ValueError("one_time_count must not be negative")

        identity_key = self.factory.generate(KeyRole.IDENTITY)
        pre_key = self.factory.generate(KeyRole.PREKEY)
        one_time = [self.factory.generate(KeyRole.ONE_TIME_PREKEY) for _ in range(one_time_count)]

        with self._lock:
            self.identity_key = identity_key
            self.pre_key = pre_key
            self.one_time_pre_keys = {pair.public_pem(): pair for pair in one_time}

        logger.info(f"Keyring initialized with {one_time_count} one-time prekeys")

    def replenish(self, count: int) -> int:
        """Generate one-time prekeys until the pool holds at least count.

        Returns:
            Number of keys generated
        """
        self.require_initialized()
        generated = 0
        while len(self.one_time_pre_keys) < count:
            pair = self.factory.generate(KeyRole.ONE_TIME_PREKEY)
            with self._lock:
                self.one_time_pre_keys[pair.public_pem()] = pair
            generated += 1
        if generated:
            logger.info(f"Generated {generated} one-time prekeys")
        return generated

    def create_registration_bundle(self, user_id: str) -> IdentityBundle:
        """
        Build the signed bundle to publish for user_id.

        The signature is ECDSA over the prekey's PEM text under the
        identity private key.

        Raises:
            UninitializedClient: If initialize() has not run
        """
        self.require_initialized()
        pre_key_public = self.pre_key.public_pem()
        with self._lock:
            one_time = list(self.one_time_pre_keys)
        return IdentityBundle(
            user_id=user_id,
            identity_key=self.identity_key.public_pem(),
            pre_key=pre_key_public,
            one_time_pre_keys=one_time,
            signature=self.identity_key.sign(pre_key_public.encode('ascii')),
        )

    def consume_one_time_pre_key(self, public_pem: str) -> KeyPair:
        """
        Remove and return the one-time prekey pair for public_pem.

        Raises:
            InvalidHandshake: If the key is unknown or already consumed
        """
        with self._lock:
            pair = self.one_time_pre_keys.pop(public_pem, None)
        if pair is None:
            logger.warning("Handshake referenced an unknown or consumed one-time prekey")
            raise InvalidHandshake("One-time prekey unknown or already consumed")
        logger.debug(f"Consumed one-time prekey, {len(self.one_time_pre_keys)} remaining")
        return pair

    def restore_one_time_pre_key(self, pair: KeyPair) -> None:
        """Put back a pair taken by consume_one_time_pre_key() for a handshake that failed."""
        with self._lock:
            self.one_time_pre_keys[pair.public_pem()] = pair

    def require_initialized(self) -> None:
        if not self.initialized:
            raise UninitializedClient("Keyring has no identity material; call initialize()")

    def to_dict(self) -> Dict[str, Any]:
        """Export all key pairs, private halves included, for encrypted storage."""
        self.require_initialized()
        with self._lock:
            one_time = [pair.to_dict() for pair in self.one_time_pre_keys.values()]
        return {
            "identity": self.identity_key.to_dict(),
            "prekey": self.pre_key.to_dict(),
            "one_time": one_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], factory: Optional[KeyPairFactory] = None) -> "IdentityKeyring":
        """Import a keyring exported by to_dict()."""
        keyring = cls(factory)
        keyring.identity_key = KeyPair.from_dict(data["identity"])
        keyring.pre_key = KeyPair.from_dict(data["prekey"])
        pairs = [KeyPair.from_dict(item) for item in data.get("one_time", [])]
        keyring.one_time_pre_keys = {pair.public_pem(): pair for pair in pairs}
        return keyring
