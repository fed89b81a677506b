"""
Pytest configuration and fixtures for SecureMsg tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests.
"""

import tempfile
import shutil
from pathlib import Path
from types import SimpleNamespace
from typing import Generator
import pytest

from securemsg.codec import MessageCodec
from securemsg.config import Config
from securemsg.establish import SessionEstablisher
from securemsg.keyring import IdentityKeyring
from securemsg.session import SessionStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="securemsg_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def fast_config(temp_dir: Path) -> Config:
    """
    Configuration with cheap Argon2 parameters and a small prekey pool.

    Returns:
        Config: Configuration backed by a (missing) file in temp_dir
    """
    config = Config(temp_dir / "config.toml")
    config.set("vault", "time_cost", 1)
    config.set("vault", "memory_cost", 8)
    config.set("vault", "parallelism", 1)
    config.set("client", "one_time_prekeys", 3)
    return config


@pytest.fixture
def alice_keyring() -> IdentityKeyring:
    keyring = IdentityKeyring()
    keyring.initialize(3)
    return keyring


@pytest.fixture
def bob_keyring() -> IdentityKeyring:
    keyring = IdentityKeyring()
    keyring.initialize(3)
    return keyring


@pytest.fixture
def established(alice_keyring: IdentityKeyring, bob_keyring: IdentityKeyring) -> SimpleNamespace:
    """
    Session initiated by bob towards alice and accepted by alice.

    Returns:
        SimpleNamespace: session_id, bob/alice stores and codecs
    """
    bob_store = SessionStore()
    alice_store = SessionStore()

    session_id = SessionEstablisher(bob_keyring, bob_store).establish_session(
        "alice", alice_keyring.create_registration_bundle("alice")
    )
    SessionEstablisher(alice_keyring, alice_store).accept_session(
        "bob",
        bob_keyring.create_registration_bundle("bob"),
        session_id,
        bob_store.get(session_id).handshake,
    )

    return SimpleNamespace(
        session_id=session_id,
        bob_store=bob_store,
        alice_store=alice_store,
        bob=MessageCodec(bob_store, "bob"),
        alice=MessageCodec(alice_store, "alice"),
    )


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to integration test modules
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
