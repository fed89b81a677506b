"""
SecureMsg - Relay mailbox service.

Created by orpheus497

The relay stores each user's published key bundle and a per-recipient
queue of message packages. It never sees plaintext or session keys.

Operations:
- publish(bundle)       last write wins per user id
- fetch(user_id)        bundle with consumed one-time prekeys filtered out
- claim(user_id)        bundle advertising only the first unconsumed one-time
                        prekey, which is marked consumed
- enqueue(recipient, p) append-only per-recipient queue
- drain(user_id)        return and clear the queue (at-most-once delivery)
- list_users()          registered user ids

Storage is injected through the RelayStore interface; there is no module
level state. Thread safety: one lock serializes every operation.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .errors import BundleNotFound, ErrorCode, MalformedPackage, RelayError
from .keyring import IdentityBundle

logger = logging.getLogger(__name__)


class RelayStore(ABC):
    """Persistence interface behind RelayService.

    Bundles and packages are kept in wire (dictionary) form.
    """

    @abstractmethod
    def get_bundle(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a stored bundle, or None."""

    @abstractmethod
    def put_bundle(self, user_id: str, bundle: Dict[str, Any]) -> None:
        """Store a bundle, replacing any previous one."""

    @abstractmethod
    def user_ids(self) -> List[str]:
        """All user ids with a stored bundle."""

    @abstractmethod
    def consumed_pre_keys(self, user_id: str) -> Set[str]:
        """One-time prekeys of user_id already handed out."""

    @abstractmethod
    def mark_pre_key_consumed(self, user_id: str, pre_key: str) -> None:
        """Record that a one-time prekey was handed out."""

    @abstractmethod
    def append_message(self, recipient_id: str, package: Dict[str, Any]) -> None:
        """Append a package to a recipient's queue."""

    @abstractmethod
    def pop_messages(self, user_id: str) -> List[Dict[str, Any]]:
        """Remove and return a recipient's whole queue."""


class MemoryRelayStore(RelayStore):
    """In-memory storage; contents are lost when the process exits."""

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.consumed: Dict[str, Set[str]] = {}

    def get_bundle(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.users.get(user_id)

    def put_bundle(self, user_id: str, bundle: Dict[str, Any]) -> None:
        self.users[user_id] = bundle

    def user_ids(self) -> List[str]:
        return list(self.users)

    def consumed_pre_keys(self, user_id: str) -> Set[str]:
        return set(self.consumed.get(user_id, ()))

    def mark_pre_key_consumed(self, user_id: str, pre_key: str) -> None:
        self.consumed.setdefault(user_id, set()).add(pre_key)

    def append_message(self, recipient_id: str, package: Dict[str, Any]) -> None:
        self.messages.setdefault(recipient_id, []).append(package)

    def pop_messages(self, user_id: str) -> List[Dict[str, Any]]:
        return self.messages.pop(user_id, [])


class JsonFileRelayStore(MemoryRelayStore):
    """
    Memory store mirrored to a JSON file after every change.

    Writes are atomic (temp file, then rename). A change whose write fails
    is undone in memory before the RelayError propagates.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"No relay storage at {self.path}")
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RelayError(
                f"Cannot load relay storage: {e}",
                {"path": str(self.path)},
                code=ErrorCode.E404_RELAY_STORAGE_FAILED,
            ) from e
        self.users = data.get('users', {})
        self.messages = data.get('messages', {})
        self.consumed = {uid: set(keys) for uid, keys in data.get('consumed', {}).items()}
        logger.info(f"Loaded relay storage: {len(self.users)} users")

    def _save(self) -> None:
        data = {
            'users': self.users,
            'messages': self.messages,
            'consumed': {uid: sorted(keys) for uid, keys in self.consumed.items()},
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f)
            os.replace(temp_file, self.path)
        except OSError as e:
            logger.error(f"Failed to save relay storage: {e}")
            raise RelayError(
                f"Cannot save relay storage: {e}",
                {"path": str(self.path)},
                code=ErrorCode.E404_RELAY_STORAGE_FAILED,
            ) from e

    def put_bundle(self, user_id: str, bundle: Dict[str, Any]) -> None:
        previous = self.users.get(user_id)
        super().put_bundle(user_id, bundle)
        try:
            self._save()
        except RelayError:
            if previous is None:
                del self.users[user_id]
            else:
                self.users[user_id] = previous
            raise

    def mark_pre_key_consumed(self, user_id: str, pre_key: str) -> None:
        if pre_key in self.consumed_pre_keys(user_id):
            return
        super().mark_pre_key_consumed(user_id, pre_key)
        try:
            self._save()
        except RelayError:
            self.consumed[user_id].discard(pre_key)
            raise

    def append_message(self, recipient_id: str, package: Dict[str, Any]) -> None:
        super().append_message(recipient_id, package)
        try:
            self._save()
        except RelayError:
            queue = self.messages[recipient_id]
            queue.pop()
            if not queue:
                del self.messages[recipient_id]
            raise

    def pop_messages(self, user_id: str) -> List[Dict[str, Any]]:
        messages = super().pop_messages(user_id)
        if messages:
            try:
                self._save()
            except RelayError:
                self.messages[user_id] = messages
                raise
        return messages


class RelayService:
    """Mailbox operations over an injected RelayStore."""

    def __init__(self, store: Optional[RelayStore] = None):
        self.store = store or MemoryRelayStore()
        self._lock = threading.Lock()

    def publish(self, bundle: Dict[str, Any]) -> None:
        """
        Register or replace a user's bundle.

        Raises:
            MalformedPackage: If the bundle is not a valid wire bundle
        """
        parsed = IdentityBundle.from_dict(bundle)
        with self._lock:
            self.store.put_bundle(parsed.user_id, parsed.to_dict())
        logger.info(f"User registered: {parsed.user_id}")

    def _available(self, user_id: str) -> IdentityBundle:
        data = self.store.get_bundle(user_id)
        if data is None:
            raise BundleNotFound(f"User {user_id} not found", {"user_id": user_id})
        bundle = IdentityBundle.from_dict(data)
        consumed = self.store.consumed_pre_keys(user_id)
        return bundle.with_one_time_pre_keys(
            [key for key in bundle.one_time_pre_keys if key not in consumed]
        )

    def fetch(self, user_id: str) -> Dict[str, Any]:
        """
        Get a user's bundle without consuming any one-time prekey.

        Raises:
            BundleNotFound: If the user never published a bundle
        """
        with self._lock:
            return self._available(user_id).to_dict()

    def claim(self, user_id: str) -> Dict[str, Any]:
        """
        Get a user's bundle for session establishment.

        The returned bundle advertises at most one one-time prekey, and that
        key is never handed out again.

        Raises:
            BundleNotFound: If the user never published a bundle
        """
        with self._lock:
            bundle = self._available(user_id)
            selected = bundle.one_time_pre_keys[:1]
            if selected:
                self.store.mark_pre_key_consumed(user_id, selected[0])
            else:
                logger.warning(f"One-time prekeys exhausted for {user_id}")
            return bundle.with_one_time_pre_keys(selected).to_dict()

    def enqueue(self, recipient_id: str, package: Dict[str, Any]) -> None:
        """Append a package to recipient_id's queue."""
        if not isinstance(package, dict):
            raise MalformedPackage("Package must be a JSON object")
        with self._lock:
            self.store.append_message(recipient_id, package)
        logger.info(f"Message queued for {recipient_id}")

    def drain(self, user_id: str) -> List[Dict[str, Any]]:
        """Return and clear every package queued for user_id."""
        with self._lock:
            messages = self.store.pop_messages(user_id)
        if messages:
            logger.info(f"Delivered {len(messages)} messages to {user_id}")
        return messages

    def list_users(self) -> List[str]:
        with self._lock:
            return sorted(self.store.user_ids())
