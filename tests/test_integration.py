"""
SecureMsg - Integration tests.

Created by orpheus497

End-to-end tests for complete client workflows over an in-process relay.
"""

import pytest

from securemsg.client import MessagingClient
from securemsg.codec import MessagePackage
from securemsg.errors import (
    BundleNotFound,
    MacMismatch,
    RelayUnavailable,
    ReplayDetected,
    SessionNotFound,
    UninitializedClient,
    VaultError,
)
from securemsg.relay import RelayService
from securemsg.relay_client import LocalRelay


class FlakyRelay(LocalRelay):
    """LocalRelay whose enqueue and fetch can be switched off."""

    def __init__(self, service=None):
        super().__init__(service)
        self.fail_enqueue = False
        self.fail_fetch = False

    async def enqueue(self, recipient_id, package):
        if self.fail_enqueue:
            raise RelayUnavailable("relay down")
        await super().enqueue(recipient_id, package)

    async def fetch(self, user_id):
        if self.fail_fetch:
            raise RelayUnavailable("relay down")
        return await super().fetch(user_id)


async def make_client(user_id, relay, config, data_dir=None, password=None):
    client = MessagingClient(user_id, relay, data_dir=data_dir, password=password, config=config)
    await client.initialize()
    return client


@pytest.mark.asyncio
async def test_end_to_end_scenario(fast_config):
    """Test alice and bob exchanging messages through the relay."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    first = await bob.send_message("alice", "hello")
    assert first.counter == 1
    assert first.handshake is not None

    received = await alice.receive_messages()
    assert [(m.sender, m.content) for m in received] == [("bob", "hello")]
    assert alice.store.get(first.session_id).counter == 1
    assert len(alice.keyring.one_time_pre_keys) == 2

    second = await bob.send_message("alice", "second")
    assert second.counter == 2
    received = await alice.receive_messages()
    assert [m.content for m in received] == ["second"]

    with pytest.raises(ReplayDetected):
        alice.codec.decrypt(MessagePackage.from_dict(first.to_dict()))
    with pytest.raises(ReplayDetected):
        await alice.process_package(first.to_dict())


@pytest.mark.asyncio
async def test_reply_on_accepted_session(fast_config):
    """Test that the responder replies on the initiator's session."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    first = await bob.send_message("alice", "hi alice")
    await alice.receive_messages()
    reply = await alice.send_message("bob", "hi bob")

    assert reply.session_id == first.session_id
    assert reply.handshake is None
    assert [m.content for m in await bob.receive_messages()] == ["hi bob"]
    assert bob.store.get(first.session_id).handshake is None

    third = await bob.send_message("alice", "how are you")
    assert third.handshake is None
    assert [m.content for m in await alice.receive_messages()] == ["how are you"]


@pytest.mark.asyncio
async def test_replayed_package_dropped_from_mailbox(fast_config):
    """Test that a replay in the mailbox is dropped and the rest delivered."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    first = await bob.send_message("alice", "one")
    await alice.receive_messages()
    relay.service.enqueue("alice", first.to_dict())
    await bob.send_message("alice", "two")

    received = await alice.receive_messages()

    assert [m.content for m in received] == ["two"]


@pytest.mark.asyncio
async def test_tampered_first_package_is_not_kept(fast_config):
    """Test that a tampered handshake package leaves no session behind."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    package = await bob.send_message("alice", "hello")
    relay.service.drain("alice")
    tampered = package.to_dict()
    tampered["timestamp"] += 1

    with pytest.raises(MacMismatch):
        await alice.process_package(tampered)
    assert package.session_id not in alice.store
    assert len(alice.keyring.one_time_pre_keys) == 3

    received = await alice.process_package(package.to_dict())
    assert received.content == "hello"


@pytest.mark.asyncio
async def test_unknown_session_without_handshake(fast_config):
    """Test a package for an unknown session that carries no handshake."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    package = (await bob.send_message("alice", "hello")).to_dict()
    del package["handshake"]

    with pytest.raises(SessionNotFound):
        await alice.process_package(package)


@pytest.mark.asyncio
async def test_out_of_range_timestamp_dropped(fast_config):
    """Test that a package with an unencodable timestamp does not cost the rest of the mailbox."""
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    await bob.send_message("alice", "hello")
    genuine = relay.service.drain("alice")[0]
    bogus = dict(genuine, timestamp=2 ** 70)
    relay.service.enqueue("alice", bogus)
    relay.service.enqueue("alice", genuine)
    await bob.send_message("alice", "still here")

    received = await alice.receive_messages()

    assert [m.content for m in received] == ["hello", "still here"]
    assert alice.store.session_ids() == [genuine["sessionId"]]
    assert len(alice.keyring.one_time_pre_keys) == 2
    assert relay.service.drain("alice") == []


@pytest.mark.asyncio
async def test_handshake_held_while_relay_down(fast_config):
    """Test that packages needing the relay are kept until it recovers."""
    relay = FlakyRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)
    await bob.send_message("alice", "hello")
    await bob.send_message("alice", "again")

    relay.fail_fetch = True
    assert await alice.receive_messages() == []
    assert len(alice.store) == 0
    assert len(alice.keyring.one_time_pre_keys) == 3

    relay.fail_fetch = False
    received = await alice.receive_messages()

    assert [m.content for m in received] == ["hello", "again"]
    assert await alice.receive_messages() == []


@pytest.mark.asyncio
async def test_failed_delivery_rolls_back(fast_config):
    """Test that a relay failure leaves the session as it was."""
    relay = FlakyRelay()
    alice = await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)
    session_id = await bob.start_session("alice")
    before = bob.store.get(session_id).to_dict()

    relay.fail_enqueue = True
    with pytest.raises(RelayUnavailable):
        await bob.send_message("alice", "lost")
    assert bob.store.get(session_id).to_dict() == before

    relay.fail_enqueue = False
    package = await bob.send_message("alice", "delivered")
    assert package.counter == 1
    assert [m.content for m in await alice.receive_messages()] == ["delivered"]


@pytest.mark.asyncio
async def test_start_session_reuses_existing(fast_config):
    relay = LocalRelay()
    await make_client("alice", relay, fast_config)
    bob = await make_client("bob", relay, fast_config)

    first = await bob.start_session("alice")

    assert await bob.start_session("alice") == first
    assert len(relay.service.fetch("alice")["oneTimePreKeys"]) == 2


@pytest.mark.asyncio
async def test_list_users_excludes_self(fast_config):
    relay = LocalRelay()
    alice = await make_client("alice", relay, fast_config)
    await make_client("bob", relay, fast_config)
    await make_client("carol", relay, fast_config)

    assert await alice.list_users() == ["bob", "carol"]


@pytest.mark.asyncio
async def test_send_to_unknown_user(fast_config):
    bob = await make_client("bob", LocalRelay(), fast_config)

    with pytest.raises(BundleNotFound):
        await bob.send_message("nobody", "hello?")


@pytest.mark.asyncio
async def test_uninitialized_client(fast_config):
    client = MessagingClient("bob", LocalRelay(), config=fast_config)

    with pytest.raises(UninitializedClient):
        await client.send_message("alice", "too early")
    with pytest.raises(UninitializedClient):
        await client.receive_messages()


@pytest.mark.asyncio
async def test_persistence_across_restart(temp_dir, fast_config):
    """Test that keys and sessions survive a client restart."""
    relay = LocalRelay(RelayService())
    alice_dir = temp_dir / "alice"
    alice = await make_client("alice", relay, fast_config, alice_dir, "alice-password")
    bob = await make_client("bob", relay, fast_config, temp_dir / "bob", "bob-password")

    await bob.send_message("alice", "before restart")
    await alice.receive_messages()
    identity = alice.keyring.identity_key.public_pem()
    assert (alice_dir / "alice-sessions.json").exists()
    assert (alice_dir / "alice-keyring.json").exists()

    restarted = await make_client("alice", relay, fast_config, alice_dir, "alice-password")

    assert restarted.keyring.identity_key.public_pem() == identity
    assert len(restarted.store) == 1
    await bob.send_message("alice", "after restart")
    assert [m.content for m in await restarted.receive_messages()] == ["after restart"]


@pytest.mark.asyncio
async def test_handshake_accepted_after_restart(temp_dir, fast_config):
    """Test that a restarted client still holds the one-time prekeys it published."""
    relay = LocalRelay()
    alice_dir = temp_dir / "alice"
    await make_client("alice", relay, fast_config, alice_dir, "pw")
    bob = await make_client("bob", relay, fast_config)

    await bob.send_message("alice", "queued while offline")
    restarted = await make_client("alice", relay, fast_config, alice_dir, "pw")

    assert [m.content for m in await restarted.receive_messages()] == ["queued while offline"]


@pytest.mark.asyncio
async def test_wrong_password(temp_dir, fast_config):
    relay = LocalRelay()
    await make_client("alice", relay, fast_config, temp_dir, "right")

    with pytest.raises(VaultError):
        await make_client("alice", relay, fast_config, temp_dir, "wrong")


def test_password_required_for_persistence(temp_dir, fast_config):
    with pytest.raises(ValueError):
        MessagingClient("alice", LocalRelay(), data_dir=temp_dir, config=fast_config)
