"""
SecureMsg - Key, bundle and session establishment tests.

Created by orpheus497

Tests for key generation, signed registration bundles, bundle verification
and X3DH-style agreement between initiator and responder.
"""

import base64
import dataclasses

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from securemsg import keys
from securemsg.errors import (
    InvalidBundleSignature,
    InvalidHandshake,
    KeyGenerationFailure,
    MalformedPackage,
    UninitializedClient,
)
from securemsg.establish import (
    SessionEstablisher,
    SessionState,
    derive_session_keys,
    generate_session_id,
)
from securemsg.keyring import IdentityBundle, IdentityKeyring
from securemsg.keys import KeyPair, KeyPairFactory, KeyRole, load_public_key
from securemsg.session import Handshake, SessionStore
from securemsg.verifier import BundleVerifier


def test_keypair_generation():
    """Test P-256 key pair generation."""
    pair = KeyPairFactory().generate(KeyRole.PREKEY)

    assert isinstance(pair.private_key, ec.EllipticCurvePrivateKey)
    assert pair.private_key.curve.name == "secp256r1"
    assert pair.role == KeyRole.PREKEY
    assert pair.public_pem().startswith("-----BEGIN PUBLIC KEY-----")


def test_keypair_serialization():
    """Test key pair export and import."""
    original = KeyPairFactory().generate(KeyRole.ONE_TIME_PREKEY)

    restored = KeyPair.from_dict(original.to_dict())

    assert restored.public_pem() == original.public_pem()
    assert restored.private_pem() == original.private_pem()
    assert restored.role == KeyRole.ONE_TIME_PREKEY


def test_key_generation_failure(monkeypatch):
    """Test that primitive errors surface as KeyGenerationFailure."""
    def broken(curve):
        raise ValueError("no entropy")

    monkeypatch.setattr(keys.ec, "generate_private_key", broken)

    with pytest.raises(KeyGenerationFailure):
        KeyPairFactory().generate()
    with pytest.raises(KeyGenerationFailure):
        IdentityKeyring().initialize(2)


def test_load_public_key_rejects_bad_input():
    """Test that public key parsing rejects garbage and other curves."""
    with pytest.raises(ValueError):
        load_public_key("not a key")
    with pytest.raises(ValueError):
        load_public_key(None)

    other_curve = ec.generate_private_key(ec.SECP384R1()).public_key()
    with pytest.raises(ValueError):
        load_public_key(keys.encode_public_key(other_curve))


def test_keyring_initialize():
    """Test keyring initialization counts."""
    keyring = IdentityKeyring()
    assert not keyring.initialized

    keyring.initialize(4)

    assert keyring.initialized
    assert len(keyring.one_time_pre_keys) == 4
    assert keyring.identity_key.public_pem() != keyring.pre_key.public_pem()


def test_registration_bundle_requires_initialization():
    """Test that an uninitialized keyring cannot build a bundle."""
    with pytest.raises(UninitializedClient):
        IdentityKeyring().create_registration_bundle("alice")


def test_registration_bundle(alice_keyring):
    """Test that a fresh bundle carries every public key and verifies."""
    bundle = alice_keyring.create_registration_bundle("alice")

    assert bundle.user_id == "alice"
    assert bundle.identity_key == alice_keyring.identity_key.public_pem()
    assert bundle.pre_key == alice_keyring.pre_key.public_pem()
    assert bundle.one_time_pre_keys == list(alice_keyring.one_time_pre_keys)
    assert BundleVerifier().verify_bundle(bundle)


def test_bundle_wire_format(alice_keyring):
    """Test the bundle's wire field names."""
    data = alice_keyring.create_registration_bundle("alice").to_dict()

    assert set(data) == {"userId", "identityKey", "preKey", "oneTimePreKeys", "signature"}
    assert IdentityBundle.from_dict(data).to_dict() == data

    del data["preKey"]
    with pytest.raises(MalformedPackage):
        IdentityBundle.from_dict(data)


def test_signature_binding(alice_keyring, bob_keyring):
    """Test that swapping the prekey invalidates the signature."""
    bundle = alice_keyring.create_registration_bundle("alice")
    forged = dataclasses.replace(bundle, pre_key=bob_keyring.pre_key.public_pem())

    assert not BundleVerifier().verify_bundle(forged)
    assert not BundleVerifier().verify(forged.pre_key, forged.signature, forged.identity_key)


def test_verify_fails_closed(alice_keyring):
    """Test that malformed signatures and keys yield False instead of raising."""
    verifier = BundleVerifier()
    bundle = alice_keyring.create_registration_bundle("alice")

    assert not verifier.verify(bundle.pre_key, "%%%not-base64%%%", bundle.identity_key)
    assert not verifier.verify(bundle.pre_key, base64.b64encode(b"short").decode(), bundle.identity_key)
    assert not verifier.verify(bundle.pre_key, bundle.signature, "garbage")
    assert not verifier.verify(bundle.pre_key, None, bundle.identity_key)
    assert verifier.verify(bundle.pre_key, bundle.signature, bundle.identity_key)


def test_consume_one_time_pre_key(alice_keyring):
    """Test that a one-time prekey can be consumed once and restored."""
    public = next(iter(alice_keyring.one_time_pre_keys))

    pair = alice_keyring.consume_one_time_pre_key(public)

    assert pair.public_pem() == public
    assert public not in alice_keyring.one_time_pre_keys
    with pytest.raises(InvalidHandshake):
        alice_keyring.consume_one_time_pre_key(public)

    alice_keyring.restore_one_time_pre_key(pair)
    assert public in alice_keyring.one_time_pre_keys


def test_keyring_replenish(alice_keyring):
    """Test that replenish tops the pool back up."""
    alice_keyring.consume_one_time_pre_key(next(iter(alice_keyring.one_time_pre_keys)))

    assert alice_keyring.replenish(3) == 1
    assert len(alice_keyring.one_time_pre_keys) == 3
    assert alice_keyring.replenish(3) == 0


def test_keyring_serialization(alice_keyring):
    """Test keyring export and import, private halves included."""
    restored = IdentityKeyring.from_dict(alice_keyring.to_dict())

    assert restored.identity_key.private_pem() == alice_keyring.identity_key.private_pem()
    assert restored.pre_key.private_pem() == alice_keyring.pre_key.private_pem()
    assert list(restored.one_time_pre_keys) == list(alice_keyring.one_time_pre_keys)


def test_derive_session_keys():
    """Test that the three session keys are 16 bytes and distinct."""
    encryption_key, mac_key, chain_key = derive_session_keys(b"\x01" * 32)

    assert len(encryption_key) == len(mac_key) == len(chain_key) == 16
    assert len({encryption_key, mac_key, chain_key}) == 3
    assert derive_session_keys(b"\x01" * 32) == (encryption_key, mac_key, chain_key)


def test_generate_session_id():
    """Test session id format."""
    first = generate_session_id("alice")
    second = generate_session_id("alice")

    assert first.endswith("-alice")
    assert len(first.split("-")[0]) == 32
    assert first != second


def test_both_parties_derive_same_keys(established):
    """Test that initiator and responder agree on every session key."""
    bob_session = established.bob_store.get(established.session_id)
    alice_session = established.alice_store.get(established.session_id)

    assert bob_session.encryption_key == alice_session.encryption_key
    assert bob_session.mac_key == alice_session.mac_key
    assert bob_session.chain_key == alice_session.chain_key
    assert bob_session.counter == alice_session.counter == 0
    assert bob_session.peer_id == "alice"
    assert alice_session.peer_id == "bob"
    assert bob_session.handshake is not None
    assert alice_session.handshake is None


def test_establish_without_one_time_pre_key(alice_keyring, bob_keyring):
    """Test agreement when the bundle has run out of one-time prekeys."""
    bundle = alice_keyring.create_registration_bundle("alice").with_one_time_pre_keys([])
    bob_store, alice_store = SessionStore(), SessionStore()

    session_id = SessionEstablisher(bob_keyring, bob_store).establish_session("alice", bundle)
    handshake = bob_store.get(session_id).handshake
    assert handshake.one_time_pre_key is None

    SessionEstablisher(alice_keyring, alice_store).accept_session(
        "bob", bob_keyring.create_registration_bundle("bob"), session_id, handshake
    )

    assert alice_store.get(session_id).encryption_key == bob_store.get(session_id).encryption_key
    assert len(alice_keyring.one_time_pre_keys) == 3


def test_establish_consumes_first_one_time_pre_key(alice_keyring, bob_keyring):
    """Test that the initiator uses the first advertised one-time prekey."""
    bundle = alice_keyring.create_registration_bundle("alice")
    store = SessionStore()

    session_id = SessionEstablisher(bob_keyring, store).establish_session("alice", bundle)

    assert store.get(session_id).handshake.one_time_pre_key == bundle.one_time_pre_keys[0]


def test_establish_rejects_invalid_signature(alice_keyring, bob_keyring):
    """Test that a forged bundle creates no session."""
    bundle = alice_keyring.create_registration_bundle("alice")
    forged = dataclasses.replace(bundle, pre_key=bob_keyring.pre_key.public_pem())
    store = SessionStore()
    establisher = SessionEstablisher(bob_keyring, store)

    with pytest.raises(InvalidBundleSignature):
        establisher.establish_session("alice", forged)

    assert len(store) == 0
    assert establisher.state("alice") == SessionState.UNESTABLISHED


def test_establish_requires_initialized_keyring(alice_keyring):
    """Test establishment with an empty local keyring."""
    establisher = SessionEstablisher(IdentityKeyring(), SessionStore())

    with pytest.raises(UninitializedClient):
        establisher.establish_session("alice", alice_keyring.create_registration_bundle("alice"))


def test_state_transition(alice_keyring, bob_keyring):
    """Test Unestablished -> Established."""
    establisher = SessionEstablisher(bob_keyring, SessionStore())
    assert establisher.state("alice") == SessionState.UNESTABLISHED

    establisher.establish_session("alice", alice_keyring.create_registration_bundle("alice"))

    assert establisher.state("alice") == SessionState.ESTABLISHED


def test_accept_rejects_mismatched_identity(alice_keyring, bob_keyring):
    """Test that the handshake identity key must match the sender's bundle."""
    bob_store = SessionStore()
    session_id = SessionEstablisher(bob_keyring, bob_store).establish_session(
        "alice", alice_keyring.create_registration_bundle("alice")
    )
    handshake = bob_store.get(session_id).handshake
    impostor = IdentityKeyring()
    impostor.initialize(0)

    alice_store = SessionStore()
    with pytest.raises(InvalidHandshake):
        SessionEstablisher(alice_keyring, alice_store).accept_session(
            "bob", impostor.create_registration_bundle("bob"), session_id, handshake
        )
    assert len(alice_store) == 0


def test_accept_rejects_reused_one_time_pre_key(alice_keyring, bob_keyring):
    """Test that a one-time prekey cannot back two sessions."""
    bundle = alice_keyring.create_registration_bundle("alice")
    bob_bundle = bob_keyring.create_registration_bundle("bob")
    bob_store = SessionStore()
    bob_establisher = SessionEstablisher(bob_keyring, bob_store)
    alice_establisher = SessionEstablisher(alice_keyring, SessionStore())

    first = bob_establisher.establish_session("alice", bundle)
    alice_establisher.accept_session("bob", bob_bundle, first, bob_store.get(first).handshake)

    # Same (stale) bundle, so the same one-time prekey is picked again
    second = bob_establisher.establish_session("alice", bundle)
    with pytest.raises(InvalidHandshake):
        alice_establisher.accept_session("bob", bob_bundle, second, bob_store.get(second).handshake)


def test_accept_rejects_existing_session(established, alice_keyring, bob_keyring):
    """Test that a session id cannot be accepted twice."""
    handshake = Handshake(
        identity_key=bob_keyring.identity_key.public_pem(),
        base_key=KeyPairFactory().generate(KeyRole.EPHEMERAL).public_pem(),
    )

    with pytest.raises(InvalidHandshake):
        SessionEstablisher(alice_keyring, established.alice_store).accept_session(
            "bob", bob_keyring.create_registration_bundle("bob"), established.session_id, handshake
        )


def test_accept_rejects_bad_base_key(alice_keyring, bob_keyring):
    """Test a handshake whose ephemeral key does not parse."""
    handshake = Handshake(identity_key=bob_keyring.identity_key.public_pem(), base_key="junk")

    with pytest.raises(InvalidHandshake):
        SessionEstablisher(alice_keyring, SessionStore()).accept_session(
            "bob", bob_keyring.create_registration_bundle("bob"), "abc-bob", handshake
        )
