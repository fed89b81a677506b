"""
SecureMsg - End-to-end encrypted messaging over an untrusted relay

Signed prekey bundles, X3DH-style session establishment, a symmetric
key ratchet and authenticated, replay-protected message packages.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

from .client import MessagingClient, ReceivedMessage
from .codec import MessageCodec, MessagePackage
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    BundleNotFound,
    ConfigError,
    DecryptionFailure,
    ErrorCode,
    InvalidBundleSignature,
    InvalidHandshake,
    KeyGenerationFailure,
    MacMismatch,
    MalformedPackage,
    MessagingError,
    RelayError,
    RelayUnavailable,
    ReplayDetected,
    SessionNotFound,
    UninitializedClient,
    VaultError,
)
from .establish import SessionEstablisher
from .keyring import IdentityBundle, IdentityKeyring
from .keys import KeyPair, KeyPairFactory, KeyRole
from .ratchet import RatchetEngine
from .relay import RelayService
from .relay_client import LocalRelay, RelayClient
from .session import Handshake, Session, SessionStore
from .verifier import BundleVerifier

__all__ = [
    "APP_NAME",
    "VERSION",
    "BundleNotFound",
    "BundleVerifier",
    "Config",
    "ConfigError",
    "DecryptionFailure",
    "ErrorCode",
    "Handshake",
    "IdentityBundle",
    "IdentityKeyring",
    "InvalidBundleSignature",
    "InvalidHandshake",
    "KeyGenerationFailure",
    "KeyPair",
    "KeyPairFactory",
    "KeyRole",
    "LocalRelay",
    "MacMismatch",
    "MalformedPackage",
    "MessageCodec",
    "MessagePackage",
    "MessagingClient",
    "MessagingError",
    "RatchetEngine",
    "ReceivedMessage",
    "RelayClient",
    "RelayError",
    "RelayService",
    "RelayUnavailable",
    "ReplayDetected",
    "Session",
    "SessionEstablisher",
    "SessionNotFound",
    "SessionStore",
    "UninitializedClient",
    "VaultError",
]
