"""
SecureMsg - Global Constants and Configuration Values

This module defines all constants used throughout the SecureMsg package.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "SecureMsg"

# Relay Network Constants
DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 3000

# Relay Timeouts and Retry (seconds)
RELAY_REQUEST_TIMEOUT = 10
RELAY_RETRY_ATTEMPTS = 3
RELAY_RETRY_DELAY = 0.5
RELAY_RETRY_BACKOFF_MULTIPLIER = 2
RELAY_READ_CHUNK = 4096
MAX_RELAY_LINE_SIZE = 4 * 1024 * 1024  # 4 MB per JSON line

# Key Material
SESSION_KEY_SIZE = 16  # AES-128, HMAC key, chain key
SHARED_SECRET_SIZE = 32
NONCE_SIZE = 12  # 96 bits for AES-GCM
SESSION_ID_RANDOM_BYTES = 16  # 128 bits
DEFAULT_ONE_TIME_PREKEYS = 5

# KDF labels
KDF_LABEL_ENCRYPTION = b"encryption"
KDF_LABEL_MAC = b"mac"
KDF_LABEL_CHAIN = b"chain"
KEY_AGREEMENT_INFO = b"securemsg-x3dh"
RATCHET_STEP_LABEL = b"RatchetStep"

# Canonical MAC encoding
MAC_ENCODING_VERSION = b"SMv1"

# At-rest encryption (Argon2id)
SALT_SIZE = 16  # 128 bits
VAULT_KEY_SIZE = 32  # AES-256-GCM
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
VAULT_FORMAT_VERSION = "1.0"

# File Paths
DEFAULT_DATA_DIR = "~/.securemsg"
KEYRING_FILENAME = "{user}-keyring.json"
SESSIONS_FILENAME = "{user}-sessions.json"
RELAY_STORAGE_FILENAME = "relay-storage.json"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "securemsg.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

