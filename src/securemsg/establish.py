"""
SecureMsg - Session establishment.

Created by orpheus497

Turns a verified peer bundle plus local identity material into a Session.
The shared secret comes from an X3DH-style agreement over P-256:

    Initiator I, responder R, I's fresh ephemeral key EK
    DH1 = DH(IK_I, SPK_R)
    DH2 = DH(EK_I, IK_R)
    DH3 = DH(EK_I, SPK_R)
    DH4 = DH(EK_I, OPK_R)      only when R advertised a one-time prekey
    SK  = HKDF-SHA256(DH1 || DH2 || DH3 || DH4)

The responder computes the same four values from its private keys and the
initiator's public handshake, so the secret is never transmitted.

From SK, HKDF with the labels "encryption", "mac" and "chain" yields the
three 16-byte session keys.
"""

import logging
import secrets
from enum import Enum
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    KDF_LABEL_CHAIN,
    KDF_LABEL_ENCRYPTION,
    KDF_LABEL_MAC,
    KEY_AGREEMENT_INFO,
    SESSION_ID_RANDOM_BYTES,
    SESSION_KEY_SIZE,
    SHARED_SECRET_SIZE,
)
from .errors import InvalidBundleSignature, InvalidHandshake, MalformedPackage
from .keyring import IdentityBundle, IdentityKeyring
from .keys import KeyPairFactory, KeyRole, load_public_key
from .session import Handshake, Session, SessionStore
from .verifier import BundleVerifier

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Establishment state of a peer."""

    UNESTABLISHED = "unestablished"
    ESTABLISHED = "established"


def combine_shared_secret(dh_outputs: Tuple[bytes, ...]) -> bytes:
    """Derive the session secret from the concatenated DH outputs."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SHARED_SECRET_SIZE,
        salt=None,
        info=KEY_AGREEMENT_INFO
    )
    return hkdf.derive(b"".join(dh_outputs))


def derive_session_keys(shared_secret: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Derive (encryption_key, mac_key, chain_key) from a shared secret.

    Each key uses its own HKDF info label and is truncated to
    SESSION_KEY_SIZE bytes.
    """
    keys = []
    for label in (KDF_LABEL_ENCRYPTION, KDF_LABEL_MAC, KDF_LABEL_CHAIN):
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=label
        )
        keys.append(hkdf.derive(shared_secret)[:SESSION_KEY_SIZE])
    return keys[0], keys[1], keys[2]


def generate_session_id(peer_id: str) -> str:
    """128 random bits in hex, suffixed with the peer id."""
    return f"{secrets.token_hex(SESSION_ID_RANDOM_BYTES)}-{peer_id}"


class SessionEstablisher:
    """Creates sessions from verified peer bundles (both roles)."""

    def __init__(
        self,
        keyring: IdentityKeyring,
        store: SessionStore,
        verifier: Optional[BundleVerifier] = None,
        factory: Optional[KeyPairFactory] = None,
    ):
        self.keyring = keyring
        self.store = store
        self.verifier = verifier or BundleVerifier()
        self.factory = factory or keyring.factory

    def state(self, peer_id: str) -> SessionState:
        if self.store.for_peer(peer_id) is None:
            return SessionState.UNESTABLISHED
        return SessionState.ESTABLISHED

    def _verify(self, peer_id: str, bundle: IdentityBundle) -> None:
        if not self.verifier.verify_bundle(bundle):
            logger.warning(f"Rejected bundle for {peer_id}: invalid prekey signature")
            raise InvalidBundleSignature(
                f"Invalid signature on bundle for {peer_id}", {"peer_id": peer_id}
            )

    def establish_session(self, peer_id: str, peer_bundle: IdentityBundle) -> str:
        """
        Initiate a session with peer_id from their published bundle.

        The first advertised one-time prekey is used. The returned session
        carries a Handshake for the responder until the peer replies.

        Returns:
            The new session id

        Raises:
            InvalidBundleSignature: If the bundle's prekey signature is invalid
            UninitializedClient: If the local keyring has no identity material
            KeyGenerationFailure: If the ephemeral key cannot be generated
            MalformedPackage: If a bundle key cannot be parsed
        """
        self._verify(peer_id, peer_bundle)
        self.keyring.require_initialized()

        one_time_pem = peer_bundle.one_time_pre_keys[0] if peer_bundle.one_time_pre_keys else None
        try:
            peer_identity = load_public_key(peer_bundle.identity_key)
            peer_pre_key = load_public_key(peer_bundle.pre_key)
            peer_one_time = load_public_key(one_time_pem) if one_time_pem else None
        except ValueError as e:
            raise MalformedPackage(f"Invalid key in bundle for {peer_id}: {e}") from e

        ephemeral = self.factory.generate(KeyRole.EPHEMERAL)
        dh_outputs = [
            self.keyring.identity_key.exchange(peer_pre_key),
            ephemeral.exchange(peer_identity),
            ephemeral.exchange(peer_pre_key),
        ]
        if peer_one_time is not None:
            dh_outputs.append(ephemeral.exchange(peer_one_time))
        else:
            logger.warning(f"No one-time prekey available for {peer_id}; establishing without one")

        encryption_key, mac_key, chain_key = derive_session_keys(
            combine_shared_secret(tuple(dh_outputs))
        )
        session = Session(
            session_id=generate_session_id(peer_id),
            peer_id=peer_id,
            encryption_key=encryption_key,
            mac_key=mac_key,
            chain_key=chain_key,
            counter=0,
            handshake=Handshake(
                identity_key=self.keyring.identity_key.public_pem(),
                base_key=ephemeral.public_pem(),
                one_time_pre_key=one_time_pem,
            ),
        )
        self.store.add(session)
        logger.info(f"Session established with {peer_id}")
        return session.session_id

    def accept_session(
        self,
        peer_id: str,
        peer_bundle: IdentityBundle,
        session_id: str,
        handshake: Handshake,
    ) -> str:
        """
        Mirror a session that peer_id initiated with us.

        Returns:
            session_id, now present in the store

        Raises:
            InvalidBundleSignature: If the peer bundle's signature is invalid
            InvalidHandshake: If the handshake does not match the bundle, names an
                unknown or consumed one-time prekey, or the session already exists
            UninitializedClient: If the local keyring has no identity material
        """
        self._verify(peer_id, peer_bundle)
        self.keyring.require_initialized()

        if handshake.identity_key != peer_bundle.identity_key:
            logger.warning(f"Handshake identity key for {peer_id} does not match published bundle")
            raise InvalidHandshake(
                f"Handshake identity key does not match bundle for {peer_id}", {"peer_id": peer_id}
            )
        if session_id in self.store:
            raise InvalidHandshake(f"Session already exists: {session_id}", {"session_id": session_id})

        try:
            peer_identity = load_public_key(handshake.identity_key)
            peer_base = load_public_key(handshake.base_key)
        except ValueError as e:
            raise InvalidHandshake(f"Invalid handshake key from {peer_id}: {e}") from e

        dh_outputs = [
            self.keyring.pre_key.exchange(peer_identity),
            self.keyring.identity_key.exchange(peer_base),
            self.keyring.pre_key.exchange(peer_base),
        ]
        if handshake.one_time_pre_key:
            one_time = self.keyring.consume_one_time_pre_key(handshake.one_time_pre_key)
            dh_outputs.append(one_time.exchange(peer_base))

        encryption_key, mac_key, chain_key = derive_session_keys(
            combine_shared_secret(tuple(dh_outputs))
        )
        self.store.add(Session(
            session_id=session_id,
            peer_id=peer_id,
            encryption_key=encryption_key,
            mac_key=mac_key,
            chain_key=chain_key,
            counter=0,
        ))
        logger.info(f"Accepted session from {peer_id}")
        return session_id
