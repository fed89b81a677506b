"""
SecureMsg - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the SecureMsg package. Each error has a unique code for logging and debugging.

Security-relevant failures (bad bundle signatures, replays, MAC mismatches)
each have their own class so callers can tell them apart and decide whether
to drop a message, alert, or re-establish a session.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all SecureMsg error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_UNINITIALIZED_CLIENT = "E003"

    # Key Errors (E100-E199)
    E101_KEY_GENERATION_FAILED = "E101"
    E102_INVALID_KEY = "E102"

    # Establishment Errors (E200-E299)
    E201_INVALID_BUNDLE_SIGNATURE = "E201"
    E202_INVALID_HANDSHAKE = "E202"

    # Message Errors (E300-E399)
    E301_SESSION_NOT_FOUND = "E301"
    E302_REPLAY_DETECTED = "E302"
    E303_MAC_MISMATCH = "E303"
    E304_DECRYPTION_FAILED = "E304"
    E305_ENCRYPTION_FAILED = "E305"
    E306_MALFORMED_PACKAGE = "E306"

    # Relay Errors (E400-E499)
    E400_RELAY_ERROR = "E400"
    E401_RELAY_UNAVAILABLE = "E401"
    E402_BUNDLE_NOT_FOUND = "E402"
    E403_INVALID_COMMAND = "E403"
    E404_RELAY_STORAGE_FAILED = "E404"

    # Storage Errors (E500-E599)
    E500_VAULT_ERROR = "E500"
    E501_VAULT_LOAD_FAILED = "E501"
    E502_VAULT_SAVE_FAILED = "E502"
    E503_VAULT_DECRYPT_FAILED = "E503"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class MessagingError(Exception):
    """Base exception class for all SecureMsg errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    default_code = ErrorCode.E001_UNKNOWN_ERROR
    default_message = "Secure messaging operation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        """Initialize a SecureMsg error.

        Args:
            message: Human-readable error message
            details: Additional error context (optional)
            code: Error code overriding the class default (optional)
        """
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class UninitializedClient(MessagingError):
    """Raised when key material is requested before initialize() ran."""

    default_code = ErrorCode.E003_UNINITIALIZED_CLIENT
    default_message = "Client not initialized"


class KeyGenerationFailure(MessagingError):
    """Raised when the asymmetric key generation primitive errors."""

    default_code = ErrorCode.E101_KEY_GENERATION_FAILED
    default_message = "Key generation failed"


class InvalidBundleSignature(MessagingError):
    """Raised when a peer bundle's prekey signature does not verify.

    Terminal for the establishment attempt: no session is created.
    """

    default_code = ErrorCode.E201_INVALID_BUNDLE_SIGNATURE
    default_message = "Invalid signature on peer bundle"


class InvalidHandshake(MessagingError):
    """Raised when a responder cannot mirror an initiator's handshake.

    Covers identity keys that do not match the published bundle and
    one-time prekeys that are unknown or already consumed.
    """

    default_code = ErrorCode.E202_INVALID_HANDSHAKE
    default_message = "Invalid session handshake"


class SessionNotFound(MessagingError):
    """Raised when a package names a session the local store does not hold.

    Callers should establish a session (via the bundle-fetch collaborator)
    and retry.
    """

    default_code = ErrorCode.E301_SESSION_NOT_FOUND
    default_message = "Session not found"


class ReplayDetected(MessagingError):
    """Raised when a package counter is not above the session counter."""

    default_code = ErrorCode.E302_REPLAY_DETECTED
    default_message = "Potential replay attack detected"


class MacMismatch(MessagingError):
    """Raised when a package MAC does not match its fields."""

    default_code = ErrorCode.E303_MAC_MISMATCH
    default_message = "Message authentication failed"


class DecryptionFailure(MessagingError):
    """Raised when the cipher rejects an authenticated package."""

    default_code = ErrorCode.E304_DECRYPTION_FAILED
    default_message = "Message decryption failed"


class MalformedPackage(MessagingError):
    """Raised when a wire dictionary cannot be parsed into a package or bundle."""

    default_code = ErrorCode.E306_MALFORMED_PACKAGE
    default_message = "Malformed message package"


class RelayError(MessagingError):
    """Base class for relay (transport-layer) failures. Never raised by the core."""

    default_code = ErrorCode.E400_RELAY_ERROR
    default_message = "Relay operation failed"


class RelayUnavailable(RelayError):
    """Raised when the relay cannot be reached or times out."""

    default_code = ErrorCode.E401_RELAY_UNAVAILABLE
    default_message = "Relay unavailable"


class BundleNotFound(RelayError):
    """Raised when the relay has no bundle registered for a user."""

    default_code = ErrorCode.E402_BUNDLE_NOT_FOUND
    default_message = "User not found"


class VaultError(MessagingError):
    """Raised when encrypted at-rest files cannot be read or written."""

    default_code = ErrorCode.E500_VAULT_ERROR
    default_message = "Vault operation failed"


class ConfigError(MessagingError):
    """Raised for loading, parsing, and saving configuration failures."""

    default_code = ErrorCode.E700_CONFIG_ERROR
    default_message = "Configuration operation failed"
